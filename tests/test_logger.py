"""Tests for logging helpers."""

from unittest.mock import MagicMock

from structlog.dev import ConsoleRenderer
from structlog.processors import JSONRenderer

from ledger_ingest import logger as logger_module


def test_select_renderer_uses_console_in_debug(monkeypatch) -> None:
    monkeypatch.setattr(logger_module.settings, "debug", True)
    renderer = logger_module._select_renderer()
    assert isinstance(renderer, ConsoleRenderer)


def test_select_renderer_uses_json_in_production(monkeypatch) -> None:
    monkeypatch.setattr(logger_module.settings, "debug", False)
    renderer = logger_module._select_renderer()
    assert isinstance(renderer, JSONRenderer)


def test_log_timing_reports_duration_and_context() -> None:
    log = MagicMock()

    with logger_module.log_timing("parse_statement", logger=log, source="ofx") as timing:
        timing["rows"] = 3

    log.info.assert_called_once()
    args, kwargs = log.info.call_args
    assert args == ("parse_statement completed",)
    assert kwargs["source"] == "ofx"
    assert kwargs["rows"] == 3
    assert kwargs["duration_ms"] >= 0
    assert timing["duration_ms"] == kwargs["duration_ms"]


def test_log_exception_with_traceback() -> None:
    log = MagicMock()
    exc = ValueError("bad row")

    logger_module.log_exception(log, exc, "Row failed", import_id="abc")

    log.error.assert_called_once_with(
        "Row failed",
        exc_info=exc,
        error="bad row",
        error_type="ValueError",
        error_module="builtins",
        import_id="abc",
    )


def test_log_exception_warning_without_traceback() -> None:
    log = MagicMock()

    logger_module.log_exception(log, RuntimeError("boom"), "Retrying", level="warning", include_traceback=False)

    log.warning.assert_called_once()
    assert "exc_info" not in log.warning.call_args.kwargs
