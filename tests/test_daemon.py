"""Tests for BrokerManager wiring and task supervision."""

from __future__ import annotations

import logging
from unittest.mock import MagicMock

import pytest
import tenacity
from mocks import FakeBroker, FakeInstaller

from mosqctl.config.model import AccessRule, BridgeDefinition, ManagerConfig, TopicRoute
from mosqctl.daemon import BrokerManager, SupervisedTaskSpec, build_parser
from mosqctl.errors import ValidationError
from mosqctl.supervisor import ProcessSupervisor


class _TestException(Exception):
    """A normal exception that can be retried."""


@pytest.fixture()
def manager(manager_config: ManagerConfig) -> BrokerManager:
    manager_config.sys_stats_enabled = False
    return BrokerManager(manager_config, broker=FakeBroker(), installer=FakeInstaller())


@pytest.mark.asyncio
async def test_open_compiles_every_artifact(manager: BrokerManager) -> None:
    await manager.open()
    assert manager.layout.password_file.exists()
    assert manager.layout.acl_file.exists()
    assert manager.layout.broker_config_file.exists()
    assert not manager.layout.certs_dir.exists()


@pytest.mark.asyncio
async def test_open_generates_certificates_when_tls_enabled(manager_config: ManagerConfig) -> None:
    manager_config.tls_enabled = True
    manager = BrokerManager(manager_config, broker=FakeBroker(), installer=FakeInstaller())
    await manager.open()

    assert manager.layout.server_cert.exists()
    conf = manager.layout.broker_config_file.read_text()
    assert f"certfile {manager.layout.server_cert}" in conf
    status = await manager.get_status()
    assert status["tls"]["valid"] is True


@pytest.mark.asyncio
async def test_start_installs_missing_broker(manager_config: ManagerConfig) -> None:
    installer = FakeInstaller(installed=False)
    broker = FakeBroker()
    manager = BrokerManager(manager_config, broker=broker, installer=installer)
    await manager.open()
    await manager.start()
    try:
        assert installer.install_calls == 1
        assert broker.start_calls == 1
        assert manager.supervisor.fsm_state == ProcessSupervisor.STATE_RUNNING
    finally:
        await manager.stop()
    assert broker.stop_calls == 1
    assert manager.supervisor.fsm_state == ProcessSupervisor.STATE_STOPPED


@pytest.mark.asyncio
async def test_start_without_auto_start(manager_config: ManagerConfig) -> None:
    manager_config.auto_start = False
    broker = FakeBroker()
    manager = BrokerManager(manager_config, broker=broker, installer=FakeInstaller())
    await manager.open()
    await manager.start()
    try:
        assert broker.start_calls == 0
    finally:
        await manager.stop()


@pytest.mark.asyncio
async def test_apply_changes_restarts_running_broker(manager: BrokerManager) -> None:
    broker = manager.broker
    assert isinstance(broker, FakeBroker)
    await manager.open()
    assert await manager.apply_changes() is False
    assert broker.restart_calls == 0

    await manager.start()
    try:
        await manager.bridges.add_bridge(
            BridgeDefinition(id="cloud", name="Cloud", remote_host="r", topics=[TopicRoute(pattern="x/#")])
        )
        assert await manager.apply_changes() is True
        assert broker.restart_calls == 1
        assert "connection cloud" in manager.layout.broker_config_file.read_text()
    finally:
        await manager.stop()


@pytest.mark.asyncio
async def test_get_status_counts(manager: BrokerManager) -> None:
    await manager.open()
    await manager.credentials.add_user("alice", "s3cret")
    await manager.credentials.add_rule(AccessRule(topic="public/#"))
    await manager.bridges.add_bridge(
        BridgeDefinition(id="b", name="B", remote_host="r", enabled=False, topics=[TopicRoute(pattern="x")])
    )

    status = await manager.get_status()
    assert status["users"] == 1
    assert status["acl_rules"] == 1
    assert status["bridges"] == 1
    assert status["active_bridges"] == 0
    assert status["broker"]["running"] is False
    assert status["supervisor"]["state"] == ProcessSupervisor.STATE_STOPPED
    assert status["config"]["broker_port"] == 1883
    assert status["config_source"] == "defaults"
    assert "tls" not in status


@pytest.mark.asyncio
async def test_get_status_survives_broker_errors(manager: BrokerManager) -> None:
    broker = manager.broker
    assert isinstance(broker, FakeBroker)
    broker.status_error = OSError("boom")
    await manager.open()
    status = await manager.get_status()
    assert status["broker"] == {"running": False, "error": "boom"}


@pytest.mark.asyncio
async def test_update_config_validates_and_applies(manager: BrokerManager) -> None:
    await manager.open()
    updated = await manager.update_config({"max_connections": 50, "health_check_interval": 60})
    assert updated is manager.config
    assert manager.config.max_connections == 50
    assert manager.supervisor.health_interval == 60
    assert "max_connections 50" in manager.layout.broker_config_file.read_text()

    with pytest.raises(ValidationError):
        await manager.update_config({"broker_port": 70000})
    assert manager.config.broker_port == 1883
    with pytest.raises(ValidationError):
        await manager.update_config({"data_dir": "/elsewhere"})


@pytest.mark.asyncio
async def test_supervise_task_restarts_until_limit(manager: BrokerManager) -> None:
    calls = 0

    async def flaky() -> None:
        nonlocal calls
        calls += 1
        raise _TestException("boom")

    spec = SupervisedTaskSpec(name="flaky", factory=flaky, max_restarts=2, min_backoff=0.001, max_backoff=0.001)
    with pytest.raises(_TestException):
        await manager._supervise_task(spec)
    assert calls == 3
    health = manager.task_health["flaky"]
    assert health.restarts == 3
    assert health.fatal is True


@pytest.mark.asyncio
async def test_supervise_task_fatal_exception_not_retried(manager: BrokerManager) -> None:
    async def fatal() -> None:
        raise ValidationError(["bad"])

    spec = SupervisedTaskSpec(name="fatal", factory=fatal, fatal_exceptions=(ValidationError,))
    with pytest.raises(ValidationError):
        await manager._supervise_task(spec)
    assert manager.task_health["fatal"].fatal is True


@pytest.mark.asyncio
async def test_supervise_task_clean_exit(manager: BrokerManager) -> None:
    async def done() -> None:
        return None

    await manager._supervise_task(SupervisedTaskSpec(name="done", factory=done))
    assert manager.task_health["done"].restarts == 0


def test_setup_supervision_follows_config(manager: BrokerManager) -> None:
    assert [spec.name for spec in manager._setup_supervision()] == ["status-writer", "log-maintenance"]
    manager.config.sys_stats_enabled = True
    manager.config.enable_logging = False
    assert [spec.name for spec in manager._setup_supervision()] == ["status-writer", "sys-stats"]


def test_supervisor_callbacks_before_sleep_logs_error(manager: BrokerManager) -> None:
    log = MagicMock(spec=logging.Logger)
    callbacks = BrokerManager._SupervisorCallbacks("test-task", log, manager)

    retry_state = MagicMock(spec=tenacity.RetryCallState)
    retry_state.outcome = MagicMock()
    retry_state.outcome.exception.return_value = _TestException("Test failure")
    retry_state.next_action = MagicMock()
    retry_state.next_action.sleep = 2.5

    callbacks.before_sleep(retry_state)

    log.error.assert_called_once()
    assert "test-task" in log.error.call_args[0]


def test_parser_accepts_config_path() -> None:
    args = build_parser().parse_args(["--config", "/etc/mosqctl.json"])
    assert args.config == "/etc/mosqctl.json"
    assert build_parser().parse_args([]).config is None


@pytest.mark.asyncio
async def test_status_reports_config_source(manager_config: ManagerConfig) -> None:
    manager = BrokerManager(
        manager_config,
        broker=FakeBroker(),
        installer=FakeInstaller(),
        config_source="/etc/mosqctl.json",
    )
    await manager.open()
    assert (await manager.get_status())["config_source"] == "/etc/mosqctl.json"
