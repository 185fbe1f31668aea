"""Tests for the logging configuration."""

import json
import logging
from pathlib import Path
from unittest.mock import patch

import msgspec

from mosqctl.config import logging as log_mod
from mosqctl.config.model import ManagerConfig


def _record(name: str = "mosqctl.credentials") -> logging.LogRecord:
    return logging.LogRecord(
        name=name,
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg="user %s added",
        args=("alice",),
        exc_info=None,
    )


def test_formatter_trims_prefix_and_serialises_extras() -> None:
    record = _record()
    record.path = Path("/data/passwd")  # type: ignore[attr-defined]
    record.custom_obj = object()  # type: ignore[attr-defined]

    payload = json.loads(log_mod.StructuredLogFormatter().format(record))

    assert payload["logger"] == "credentials"
    assert payload["message"] == "user alice added"
    assert payload["extra"]["path"] == "/data/passwd"
    assert str(record.custom_obj) in payload["extra"]["custom_obj"]
    assert payload["ts"].endswith("Z")


def test_formatter_redacts_secret_extras() -> None:
    record = _record()
    record.password = "hunter2"  # type: ignore[attr-defined]
    record.remote_password = "s3cret"  # type: ignore[attr-defined]

    text = log_mod.StructuredLogFormatter().format(record)

    assert "hunter2" not in text
    assert "s3cret" not in text
    assert json.loads(text)["extra"]["password"] == "[REDACTED]"


def test_formatter_keeps_foreign_logger_names() -> None:
    payload = json.loads(log_mod.StructuredLogFormatter().format(_record("aiomqtt")))
    assert payload["logger"] == "aiomqtt"
    assert "extra" not in payload


def test_configure_logging_syslog(tmp_path, monkeypatch) -> None:
    fake_socket = tmp_path / "log"
    fake_socket.touch()
    monkeypatch.delenv(log_mod.LOG_STREAM_ENV, raising=False)
    config = ManagerConfig(debug_logging=True)

    with patch("mosqctl.config.logging.SYSLOG_SOCKET", fake_socket):
        with patch("mosqctl.config.logging.dictConfig") as mock_dict_config:
            log_mod.configure_logging(config)
    mock_dict_config.assert_called_once()
    config_arg = mock_dict_config.call_args[0][0]
    assert "mosqctl" in config_arg["handlers"]
    assert config_arg["root"]["level"] == "DEBUG"
    assert config_arg["loggers"]["mosqctl.bridges.probe"] == {"level": "WARNING"}


def test_build_handler_prefers_stream_env(monkeypatch) -> None:
    monkeypatch.setenv(log_mod.LOG_STREAM_ENV, "1")
    handler = log_mod._build_handler()
    assert type(handler) is logging.StreamHandler


def test_build_handler_falls_back_to_stream(tmp_path, monkeypatch) -> None:
    monkeypatch.delenv(log_mod.LOG_STREAM_ENV, raising=False)
    monkeypatch.setattr(log_mod, "SYSLOG_SOCKET", tmp_path / "missing")
    handler = log_mod._build_handler()
    assert type(handler) is logging.StreamHandler


def test_configure_logging_installs_structured_handler(monkeypatch) -> None:
    monkeypatch.setenv(log_mod.LOG_STREAM_ENV, "1")
    log_mod.configure_logging(msgspec.structs.replace(ManagerConfig(), debug_logging=False))
    root = logging.getLogger()
    assert root.level == logging.INFO
    assert any(isinstance(h.formatter, log_mod.StructuredLogFormatter) for h in root.handlers)
