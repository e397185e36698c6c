"""Tests for the observability module.

Covers metrics collection, timing wrappers and logging configuration.
"""
import logging
from logging.handlers import RotatingFileHandler

import pytest

from notepad_store.observability import (
    MetricsCollector,
    configure_logging,
    metrics,
    timed_operation,
    traced,
)


@pytest.fixture
def clean_logger():
    """Restore the package logger after configure_logging()."""
    package_logger = logging.getLogger("notepad_store")
    handlers = list(package_logger.handlers)
    level = package_logger.level
    yield package_logger
    for handler in package_logger.handlers[:]:
        if handler not in handlers:
            package_logger.removeHandler(handler)
            handler.close()
    package_logger.setLevel(level)


class TestMetricsCollector:
    """Tests for MetricsCollector."""

    def test_record_success_and_failure(self):
        collector = MetricsCollector()
        collector.record_operation("op", 10.0, True)
        collector.record_operation("op", 30.0, False, "boom")

        m = collector.get_metrics()["op"]
        assert m["count"] == 2
        assert m["success_count"] == 1
        assert m["error_count"] == 1
        assert m["avg_duration_ms"] == 20.0
        assert m["min_duration_ms"] == 10.0
        assert m["max_duration_ms"] == 30.0
        assert m["last_error"] == "boom"
        assert m["last_error_time"] is not None

    def test_operations_tracked_separately_and_reset(self):
        collector = MetricsCollector()
        collector.record_operation("a", 1.0, True)
        collector.record_operation("b", 1.0, False, "x")
        snapshot = collector.get_metrics()
        assert set(snapshot) == {"a", "b"}
        assert snapshot["a"]["success_rate"] == 1.0
        assert snapshot["b"]["success_rate"] == 0.0

        collector.reset()
        assert collector.get_metrics() == {}


class TestTiming:
    def test_timed_operation_records(self):
        with timed_operation("unit_op", key="value") as op:
            op["result_count"] = 3
        assert metrics.get_metrics()["unit_op"]["success_count"] == 1

    def test_timed_operation_reraises(self):
        with pytest.raises(ValueError):
            with timed_operation("failing_op"):
                raise ValueError("bad")
        assert metrics.get_metrics()["failing_op"]["last_error"] == "bad"

    def test_traced_uses_function_name(self):
        @traced()
        def list_things():
            return [1, 2]

        assert list_things() == [1, 2]
        assert metrics.get_metrics()["list_things"]["count"] == 1


class TestConfigureLogging:
    def test_file_logging(self, tmp_path, clean_logger):
        log_dir = configure_logging(log_dir=tmp_path, console=False)
        assert log_dir == tmp_path
        logging.getLogger("notepad_store.test").warning("hello file")
        for handler in clean_logger.handlers:
            handler.flush()
        assert "hello file" in (tmp_path / "notepad.log").read_text(encoding="utf-8")

    def test_repeat_calls_do_not_duplicate_handlers(self, tmp_path, clean_logger):
        configure_logging(log_dir=tmp_path, console=False)
        configure_logging(log_dir=tmp_path, console=False)
        file_handlers = [
            h for h in clean_logger.handlers if isinstance(h, RotatingFileHandler)
        ]
        assert len(file_handlers) == 1

    def test_console_only(self, clean_logger):
        assert configure_logging(file_logging=False, console=True) is None
