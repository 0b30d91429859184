from __future__ import annotations

import json
import logging
import signal
import sys
import threading
from typing import Any
from unittest.mock import MagicMock, patch

import pytest

from registry_operator.src.__main__ import (
    JSONFormatter,
    build_controllers,
    main,
    redact_sensitive_text,
)
from registry_operator.src.config import ConfigError, OperatorConfig
from registry_operator.tests.fakes import FakeClientSet, FakeInformerFactory, FakeStore


class TestJSONFormatter:
    """Tests for the structured JSON log formatter."""

    def _make_record(
        self,
        msg: str = "test message",
        level: int = logging.INFO,
        exc_info: object = None,
    ) -> logging.LogRecord:
        return logging.LogRecord(
            name="test.logger",
            level=level,
            pathname="test.py",
            lineno=1,
            msg=msg,
            args=(),
            exc_info=exc_info,  # type: ignore[arg-type]
        )

    def test_format_produces_valid_json(self) -> None:
        parsed = json.loads(JSONFormatter().format(self._make_record()))

        assert parsed["msg"] == "test message"
        assert parsed["level"] == "INFO"
        assert parsed["logger"] == "test.logger"
        assert "ts" in parsed

    def test_format_includes_error_on_exception(self) -> None:
        try:
            raise ValueError("boom")
        except ValueError:
            record = self._make_record(exc_info=sys.exc_info())

        parsed = json.loads(JSONFormatter().format(record))

        assert "ValueError" in parsed["error"]
        assert "boom" in parsed["error"]

    def test_format_omits_error_when_no_exception(self) -> None:
        parsed = json.loads(JSONFormatter().format(self._make_record()))
        assert "error" not in parsed

    def test_format_is_single_line(self) -> None:
        output = JSONFormatter().format(self._make_record(msg="line one\nline two"))
        assert output.count("\n") == 0

    def test_format_redacts_sensitive_values(self) -> None:
        record = self._make_record(
            msg=(
                "token=abc123 password=hunter2 Authorization: Bearer abc.def.ghi "
                "url=/healthz?access_token=qwerty"
            )
        )

        message = json.loads(JSONFormatter().format(record))["msg"]

        assert "[REDACTED]" in message
        assert "abc123" not in message
        assert "hunter2" not in message
        assert "abc.def.ghi" not in message
        assert "access_token=qwerty" not in message

    def test_format_redacts_sensitive_values_in_exception_text(self) -> None:
        try:
            raise ValueError("token=abc123")
        except ValueError:
            record = self._make_record(exc_info=sys.exc_info())

        parsed = json.loads(JSONFormatter().format(record))

        assert "[REDACTED]" in parsed["error"]
        assert "abc123" not in parsed["error"]


def test_registry_http_secret_is_redacted() -> None:
    redacted = redact_sensitive_text("generated httpSecret=5f1e0c9a for registry")
    assert "5f1e0c9a" not in redacted
    assert "httpSecret=[REDACTED]" in redacted


def test_build_controllers_wires_every_worker() -> None:
    store = FakeStore()
    informers = FakeInformerFactory(store)

    controllers = build_controllers(
        OperatorConfig(),
        FakeClientSet(store),  # type: ignore[arg-type]
        informers,  # type: ignore[arg-type]
    )

    assert [c.name for c in controllers] == [
        "imageregistry",
        "imagepruner",
        "clusteroperator",
        "certificates",
        "nodecadaemon",
        "imageconfig",
    ]
    assert len({c.queue_key for c in controllers}) == 6
    # Controllers share informers rather than each opening their own watch.
    config_informer = informers.informer("Config")
    assert all(config_informer in c.informers for c in controllers)


class TestMainEntrypoint:
    """Integration-style tests for the main() function wiring."""

    def _run_main(self, supervisor_result: bool) -> dict[str, Any]:
        mock_supervisor = MagicMock()
        mock_supervisor.run.return_value = supervisor_result
        mock_informers = MagicMock()
        mock_informers.informers.return_value = ["informer"]
        registered: dict[int, object] = {}

        def tracking_signal(signum: int, handler: object) -> None:
            registered[signum] = handler

        with (
            patch("registry_operator.src.__main__.load_kube_configuration") as mock_load,
            patch("registry_operator.src.__main__.build_client_set") as mock_clients,
            patch("registry_operator.src.__main__.InformerFactory", return_value=mock_informers),
            patch("registry_operator.src.__main__.build_controllers", return_value=["controller"]),
            patch("registry_operator.src.__main__.Supervisor", return_value=mock_supervisor) as mock_cls,
            patch("registry_operator.src.__main__.start_health_server") as mock_health,
            patch("registry_operator.src.__main__.signal.signal", side_effect=tracking_signal),
        ):
            main()
        return {
            "load": mock_load,
            "clients": mock_clients,
            "supervisor_cls": mock_cls,
            "supervisor": mock_supervisor,
            "health": mock_health,
            "signals": registered,
        }

    def test_main_wires_supervisor_and_health(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LOG_LEVEL", "WARNING")
        monkeypatch.setenv("HEALTH_PORT", "18080")
        monkeypatch.setenv("SHUTDOWN_TIMEOUT_SECONDS", "7")

        result = self._run_main(supervisor_result=True)

        result["load"].assert_called_once()
        args, kwargs = result["supervisor_cls"].call_args
        assert args == (["controller"], ["informer"])
        assert kwargs["shutdown_timeout"] == 7.0
        health_kwargs = result["health"].call_args.kwargs
        assert health_kwargs["port"] == 18080
        assert health_kwargs["ready"] == result["supervisor"].ready
        assert health_kwargs["live"] == result["supervisor"].healthy
        shutdown_event = result["supervisor"].run.call_args.args[0]
        assert isinstance(shutdown_event, threading.Event)
        result["health"].return_value.shutdown.assert_called_once()

    def test_main_registers_signal_handlers(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LOG_LEVEL", "WARNING")

        result = self._run_main(supervisor_result=True)

        assert signal.SIGTERM in result["signals"]
        assert signal.SIGINT in result["signals"]
        shutdown_event = result["supervisor"].run.call_args.args[0]
        result["signals"][signal.SIGTERM](signal.SIGTERM, None)
        assert shutdown_event.is_set()

    def test_main_exits_nonzero_when_a_worker_failed(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LOG_LEVEL", "WARNING")

        with pytest.raises(SystemExit) as excinfo:
            self._run_main(supervisor_result=False)

        assert excinfo.value.code == 1

    def test_main_rejects_bad_config_before_connecting(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LOG_LEVEL", "WARNING")
        monkeypatch.setenv("HEALTH_PORT", "not-a-port")

        with (
            patch("registry_operator.src.__main__.load_kube_configuration") as mock_load,
            pytest.raises(ConfigError),
        ):
            main()

        mock_load.assert_not_called()
