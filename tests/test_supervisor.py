"""Tests for the broker process supervisor state machine."""

from __future__ import annotations

import asyncio
from collections.abc import Callable

import msgspec
import pytest
from mocks import FakeBroker

from mosqctl.config.model import ManagerConfig
from mosqctl.supervisor import ProcessSupervisor


class SlowBroker(FakeBroker):
    """Broker whose restart blocks until ``release`` is set."""

    def __init__(self, **kwargs: object) -> None:
        super().__init__(**kwargs)  # type: ignore[arg-type]
        self.release = asyncio.Event()

    async def restart(self) -> None:
        self.restart_calls += 1
        await self.release.wait()
        self.running = True


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        assert loop.time() < deadline, "condition not reached in time"
        await asyncio.sleep(0.005)


def make_supervisor(manager_config: ManagerConfig, broker: FakeBroker, **overrides: object) -> ProcessSupervisor:
    config = msgspec.structs.replace(manager_config, **overrides) if overrides else manager_config
    return ProcessSupervisor(broker, config, settle_delay=0)


@pytest.mark.asyncio
async def test_start_launches_broker_and_timers(manager_config: ManagerConfig) -> None:
    broker = FakeBroker()
    supervisor = make_supervisor(manager_config, broker)
    await supervisor.start()
    try:
        assert broker.start_calls == 1
        assert supervisor.fsm_state == ProcessSupervisor.STATE_RUNNING
        assert supervisor.monitoring
    finally:
        await supervisor.stop()
    assert supervisor.fsm_state == ProcessSupervisor.STATE_STOPPED
    assert not supervisor.monitoring


@pytest.mark.asyncio
async def test_start_failure_degrades(manager_config: ManagerConfig) -> None:
    broker = FakeBroker(fail_start=True)
    supervisor = make_supervisor(manager_config, broker)
    await supervisor.start()
    try:
        assert supervisor.fsm_state == ProcessSupervisor.STATE_DEGRADED
        assert "refused" in (supervisor.last_error or "")
    finally:
        await supervisor.stop()


@pytest.mark.asyncio
async def test_single_not_running_check_does_not_restart(manager_config: ManagerConfig) -> None:
    broker = FakeBroker(running=False)
    supervisor = make_supervisor(manager_config, broker)
    await supervisor.check_status()
    assert broker.restart_calls == 0
    assert supervisor.consecutive_status_failures == 1


@pytest.mark.asyncio
async def test_two_failed_checks_restart_once_then_counters_clear(manager_config: ManagerConfig) -> None:
    broker = FakeBroker()
    supervisor = make_supervisor(manager_config, broker)
    await supervisor.start()
    try:
        broker.running = False
        await supervisor.check_status()
        assert supervisor.fsm_state == ProcessSupervisor.STATE_DEGRADED
        await supervisor.check_status()
        assert broker.restart_calls == 1
        assert supervisor.fsm_state == ProcessSupervisor.STATE_RUNNING

        await supervisor.check_status()
        assert broker.restart_calls == 1
        assert supervisor.consecutive_status_failures == 0
        assert supervisor.restart_attempts == 0
    finally:
        await supervisor.stop()


@pytest.mark.asyncio
async def test_status_query_errors_need_three_in_a_row(manager_config: ManagerConfig) -> None:
    broker = FakeBroker(running=False, status_error=OSError("socket gone"))
    supervisor = make_supervisor(manager_config, broker)

    await supervisor.check_status()
    await supervisor.check_status()
    assert broker.restart_calls == 0
    await supervisor.check_status()
    assert broker.restart_calls == 1
    assert supervisor.last_error == "socket gone"


@pytest.mark.asyncio
async def test_never_recovers_then_force_restart(manager_config: ManagerConfig) -> None:
    broker = FakeBroker(recover_on_restart=False)
    supervisor = make_supervisor(manager_config, broker)
    await supervisor.start()
    try:
        broker.running = False
        for _ in range(3):
            assert await supervisor.check_health() is False
        assert broker.restart_calls == 3
        assert supervisor.restart_attempts == 3
        assert supervisor.fsm_state == ProcessSupervisor.STATE_DEGRADED

        assert await supervisor.check_health() is False
        assert broker.restart_calls == 3
        assert supervisor.fsm_state == ProcessSupervisor.STATE_FAILED

        # Checks stay quiet in failed until an explicit restart.
        await supervisor.check_status()
        assert broker.restart_calls == 3

        broker.recover_on_restart = True
        assert await supervisor.force_restart() is True
        assert broker.restart_calls == 4
        assert supervisor.fsm_state == ProcessSupervisor.STATE_RUNNING
        assert supervisor.restart_attempts == 1
    finally:
        await supervisor.stop()


@pytest.mark.asyncio
async def test_zero_budget_goes_straight_to_failed(manager_config: ManagerConfig) -> None:
    broker = FakeBroker()
    supervisor = make_supervisor(manager_config, broker, max_restart_attempts=0)
    await supervisor.start()
    try:
        broker.running = False
        await supervisor.check_health()
        assert broker.restart_calls == 0
        assert supervisor.fsm_state == ProcessSupervisor.STATE_FAILED
    finally:
        await supervisor.stop()


@pytest.mark.asyncio
async def test_healthy_check_resets_counters(manager_config: ManagerConfig) -> None:
    broker = FakeBroker(running=True)
    supervisor = make_supervisor(manager_config, broker)
    supervisor.restart_attempts = 2
    supervisor.consecutive_status_failures = 1

    assert await supervisor.check_health() is True
    assert supervisor.restart_attempts == 0
    assert supervisor.consecutive_status_failures == 0
    assert supervisor.last_health_check is not None


@pytest.mark.asyncio
async def test_only_one_restart_in_flight(manager_config: ManagerConfig) -> None:
    broker = SlowBroker(running=False)
    supervisor = make_supervisor(manager_config, broker)

    first = asyncio.create_task(supervisor.check_health())
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    assert supervisor.restart_in_flight
    assert await supervisor.check_health() is False

    broker.release.set()
    await first
    assert broker.restart_calls == 1
    assert supervisor.restart_attempts == 1


@pytest.mark.asyncio
async def test_stop_suppresses_checks(manager_config: ManagerConfig) -> None:
    broker = FakeBroker()
    supervisor = make_supervisor(manager_config, broker)
    await supervisor.start()
    await supervisor.stop()

    broker.running = False
    await supervisor.check_status()
    await supervisor.check_status()
    assert broker.restart_calls == 0


@pytest.mark.asyncio
async def test_update_configuration_applies_floors(manager_config: ManagerConfig) -> None:
    supervisor = make_supervisor(manager_config, FakeBroker())
    snapshot = await supervisor.update_configuration(
        status_interval=0.1,
        health_interval=1.0,
        max_restart_attempts=5,
    )
    assert snapshot["status_check_interval"] == 1.0
    assert snapshot["health_check_interval"] == 5.0
    assert snapshot["max_restart_attempts"] == 5
    assert snapshot["monitoring"] is False


@pytest.mark.asyncio
async def test_unexpected_status_error_counts_as_failure(manager_config: ManagerConfig) -> None:
    broker = FakeBroker(running=False, status_error=KeyError("connected_clients"))
    supervisor = make_supervisor(manager_config, broker)

    for _ in range(3):
        await supervisor.check_status()
    assert broker.restart_calls == 1
    assert "connected_clients" in (supervisor.last_error or "")
    assert await supervisor.is_healthy() is False


@pytest.mark.asyncio
async def test_status_path_exhausts_restart_budget(manager_config: ManagerConfig) -> None:
    broker = FakeBroker(recover_on_restart=False)
    supervisor = make_supervisor(manager_config, broker, max_restart_attempts=1)
    await supervisor.start()
    try:
        broker.running = False
        await supervisor.check_status()
        await supervisor.check_status()
        assert broker.restart_calls == 1
        assert supervisor.fsm_state == ProcessSupervisor.STATE_DEGRADED

        await supervisor.check_status()
        assert broker.restart_calls == 1
        assert supervisor.fsm_state == ProcessSupervisor.STATE_FAILED
        assert supervisor.last_error == "broker not running"
    finally:
        await supervisor.stop()


@pytest.mark.asyncio
async def test_checks_during_last_restart_do_not_give_up(manager_config: ManagerConfig) -> None:
    broker = SlowBroker()
    supervisor = make_supervisor(manager_config, broker, max_restart_attempts=1)
    await supervisor.start()
    try:
        broker.running = False
        first = asyncio.create_task(supervisor.check_health())
        await wait_until(lambda: supervisor.restart_in_flight)

        assert await supervisor.check_health() is False
        await supervisor.check_status()
        await supervisor.check_status()
        assert supervisor.fsm_state == ProcessSupervisor.STATE_RESTARTING

        broker.release.set()
        assert await first is True
        assert supervisor.fsm_state == ProcessSupervisor.STATE_RUNNING

        await supervisor.check_status()
        assert supervisor.fsm_state == ProcessSupervisor.STATE_RUNNING
        assert supervisor.restart_attempts == 0
        assert broker.restart_calls == 1
    finally:
        await supervisor.stop()


@pytest.mark.asyncio
async def test_stop_waits_for_in_flight_restart(manager_config: ManagerConfig) -> None:
    broker = SlowBroker()
    supervisor = make_supervisor(manager_config, broker)
    await supervisor.start()
    broker.running = False
    first = asyncio.create_task(supervisor.check_health())
    await wait_until(lambda: supervisor.restart_in_flight)

    stopper = asyncio.create_task(supervisor.stop())
    for _ in range(5):
        await asyncio.sleep(0)
    assert not stopper.done()
    assert not supervisor.monitoring

    broker.release.set()
    await stopper
    assert await first is True
    assert supervisor.fsm_state == ProcessSupervisor.STATE_STOPPED
    assert not supervisor.restart_in_flight

    broker.running = False
    assert await supervisor.check_health() is False
    await supervisor.check_status()
    await supervisor.check_status()
    assert broker.restart_calls == 1


@pytest.mark.asyncio
async def test_timers_drive_status_checks(manager_config: ManagerConfig) -> None:
    broker = FakeBroker()
    supervisor = make_supervisor(manager_config, broker)
    supervisor.status_interval = 0.01
    supervisor.health_interval = 60.0
    await supervisor.start()
    try:
        broker.running = False
        await wait_until(lambda: broker.restart_calls == 1 and supervisor.fsm_state == ProcessSupervisor.STATE_RUNNING)
        assert broker.running
    finally:
        await supervisor.stop()


@pytest.mark.asyncio
async def test_status_timer_survives_unexpected_errors(manager_config: ManagerConfig) -> None:
    broker = FakeBroker()
    supervisor = make_supervisor(manager_config, broker)
    supervisor.status_interval = 0.01
    supervisor.health_interval = 60.0
    await supervisor.start()
    try:
        status_task = supervisor._status_task
        assert status_task is not None
        broker.status_error = KeyError("connected_clients")
        await wait_until(lambda: supervisor.fsm_state == ProcessSupervisor.STATE_FAILED)
        assert broker.restart_calls == 3
        assert not status_task.done()
        assert supervisor.monitoring
    finally:
        await supervisor.stop()


@pytest.mark.asyncio
async def test_failing_cycle_does_not_end_timer(manager_config: ManagerConfig) -> None:
    supervisor = make_supervisor(manager_config, FakeBroker())
    calls = 0

    async def flaky() -> None:
        nonlocal calls
        calls += 1
        if calls == 1:
            raise RuntimeError("first cycle breaks")

    task = supervisor._spawn_timer("flaky", 0.01, flaky)
    try:
        await wait_until(lambda: calls >= 3)
        assert not task.done()
    finally:
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)


@pytest.mark.asyncio
async def test_update_configuration_replaces_running_timers(manager_config: ManagerConfig) -> None:
    supervisor = make_supervisor(manager_config, FakeBroker())
    await supervisor.start()
    try:
        old_tasks = (supervisor._status_task, supervisor._health_task)
        snapshot = await supervisor.update_configuration(status_interval=2.0, health_interval=10.0)

        assert snapshot["monitoring"] is True
        assert supervisor._status_task is not None and supervisor._status_task not in old_tasks
        assert supervisor._health_task is not None and supervisor._health_task not in old_tasks
        assert all(task is not None and task.done() for task in old_tasks)
        assert supervisor.status_interval == 2.0
    finally:
        await supervisor.stop()
