"""Tests for structured logging setup."""

from __future__ import annotations

import json
import logging

import pytest

from concierge.core.logging import (
    _NOISE_LOGGERS,
    _service_context,
    add_otel_context,
    add_service_context,
    configure_logging,
    get_service_context,
    set_service_context,
)

pytestmark = pytest.mark.unit


@pytest.fixture(autouse=True)
def _reset_logging():
    token = _service_context.set(None)
    yield
    _service_context.reset(token)
    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(logging.WARNING)
    for name in _NOISE_LOGGERS:
        logging.getLogger(name).handlers.clear()


class TestServiceContext:
    def test_default_is_none(self):
        assert get_service_context() is None

    def test_processor_injects_service(self):
        set_service_context("clinic")
        assert add_service_context(None, "info", {"event": "x"})["service"] == "clinic"

    def test_otel_context_without_span(self):
        event = add_otel_context(None, "info", {"event": "x"})
        assert event["trace_id"] == "0" * 32
        assert event["span_id"] == "0" * 16


class TestConfigureLogging:
    def test_text_console(self):
        configure_logging(level="DEBUG", fmt="text", service_name="clinic")
        root = logging.getLogger()
        assert len(root.handlers) == 1
        assert root.level == logging.DEBUG
        assert get_service_context() == "clinic"
        assert logging.getLogger("httpx").level == logging.WARNING

    def test_reconfiguring_does_not_duplicate_handlers(self):
        configure_logging()
        configure_logging()
        assert len(logging.getLogger().handlers) == 1

    def test_json_log_files(self, tmp_path):
        configure_logging(fmt="json", log_root=tmp_path, service_name="clinic")

        logging.getLogger("concierge.test").warning("reminder sent")
        for handler in logging.getLogger().handlers:
            handler.flush()

        log_file = tmp_path / "concierge" / "clinic.log"
        assert (tmp_path / "uvicorn" / "clinic.log").exists()
        record = json.loads(log_file.read_text().strip().splitlines()[-1])
        assert record["event"] == "reminder sent"
        assert record["service"] == "clinic"
        assert record["level"] == "warning"
