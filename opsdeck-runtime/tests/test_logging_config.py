from __future__ import annotations

import io
import logging

from opsdeck_runtime.logging_utils import configure_logging


def _reset_root_logger() -> None:
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    root.setLevel(logging.NOTSET)


def test_configure_logging_sets_level(monkeypatch) -> None:
    _reset_root_logger()
    monkeypatch.setenv("OPSDECK_LOG_LEVEL", "debug")

    configure_logging(force=True)

    assert logging.getLogger().level == logging.DEBUG
    assert logging.getLogger("httpx").level == logging.WARNING


def test_unknown_level_falls_back_to_info(monkeypatch) -> None:
    _reset_root_logger()
    monkeypatch.setenv("OPSDECK_LOG_LEVEL", "chatty")

    configure_logging(force=True)

    assert logging.getLogger().level == logging.INFO


def test_configure_logging_is_idempotent(monkeypatch) -> None:
    _reset_root_logger()
    monkeypatch.delenv("OPSDECK_LOG_LEVEL", raising=False)

    configure_logging(force=True)
    first_count = len(logging.getLogger().handlers)

    configure_logging()
    second_count = len(logging.getLogger().handlers)

    assert first_count == second_count != 0


def test_explicit_level_and_stream_override_environment(monkeypatch) -> None:
    _reset_root_logger()
    monkeypatch.setenv("OPSDECK_LOG_LEVEL", "error")
    buffer = io.StringIO()

    configure_logging("warning", force=True, stream=buffer)
    logging.getLogger("opsdeck.test").warning("agent %s offline", "a1")

    assert logging.getLogger().level == logging.WARNING
    assert "agent a1 offline" in buffer.getvalue()
    _reset_root_logger()
