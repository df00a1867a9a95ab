"""Tests for logging setup and per-run context binding."""

import logging

import pytest
import structlog

from core.logging_config import plugin_log_context, setup_logging


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    structlog.reset_defaults()
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.mark.unit
class TestLogging:

    def test_setup_levels(self, restore_logging):
        setup_logging(level="debug", log_format="json")
        assert logging.getLogger().level == logging.DEBUG
        assert logging.getLogger("httpx").level == logging.WARNING
        assert len(logging.getLogger().handlers) == 1

    def test_plugin_context_bound_and_cleared(self):
        with plugin_log_context("wx", 1, "weather"):
            bound = structlog.contextvars.get_contextvars()
            assert bound == {"instance_id": "wx", "target": 1, "template_id": "weather"}
        assert "instance_id" not in structlog.contextvars.get_contextvars()
