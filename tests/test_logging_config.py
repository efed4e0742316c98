"""Tests for logger construction."""
from structlog.testing import capture_logs

from app.logging_config import get_logger


def test_get_logger_binds_context_lazily() -> None:
    log = get_logger(component="webhook")

    with capture_logs() as captured:
        log.info("conversation_received", conversation_id="conv-1")

    assert captured == [
        {
            "component": "webhook",
            "conversation_id": "conv-1",
            "event": "conversation_received",
            "log_level": "info",
        }
    ]


def test_bound_loggers_keep_their_own_context() -> None:
    log = get_logger(component="worker")

    with capture_logs() as captured:
        log.bind(conversation_id="conv-2").warning("attempt_not_found")
        log.info("worker_idle")

    assert captured[0]["conversation_id"] == "conv-2"
    assert "conversation_id" not in captured[1]
    assert all(entry["component"] == "worker" for entry in captured)
