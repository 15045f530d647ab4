"""Tests for the observability module.

Tests for metrics collection, operation timing, and logging configuration.
"""
import json
import logging
import time
from logging.handlers import RotatingFileHandler
from unittest.mock import patch

import pytest

from notegraph.observability import (MetricsCollector, configure_logging,
                                     is_logging_configured, timed_operation,
                                     traced)


@pytest.fixture
def collector(tmp_path):
    """A MetricsCollector persisting to a temp file."""
    return MetricsCollector(metrics_file=tmp_path / "metrics.json")


@pytest.fixture
def clean_notegraph_logger():
    """Remove handlers added to the notegraph logger during a test."""
    logger = logging.getLogger("notegraph")
    before = list(logger.handlers)
    level = logger.level
    yield logger
    for handler in logger.handlers:
        if handler not in before:
            logger.removeHandler(handler)
            handler.close()
    logger.setLevel(level)


class TestMetricsCollector:
    """Tests for MetricsCollector class."""

    def test_record_successful_operation(self, collector):
        collector.record_operation("test_op", 100.0, True)

        metrics = collector.get_metrics()
        assert metrics["test_op"]["count"] == 1
        assert metrics["test_op"]["success_count"] == 1
        assert metrics["test_op"]["error_count"] == 0
        assert metrics["test_op"]["avg_duration_ms"] == 100.0

    def test_record_failed_operation(self, collector):
        collector.record_operation("test_op", 50.0, False, "Test error")

        metrics = collector.get_metrics()
        assert metrics["test_op"]["error_count"] == 1
        assert metrics["test_op"]["last_error"] == "Test error"
        assert metrics["test_op"]["last_error_time"] is not None

    def test_multiple_operations_aggregated(self, collector):
        collector.record_operation("test_op", 100.0, True)
        collector.record_operation("test_op", 200.0, True)
        collector.record_operation("test_op", 300.0, False, "Error")

        metrics = collector.get_metrics()["test_op"]
        assert metrics["count"] == 3
        assert metrics["success_count"] == 2
        assert metrics["avg_duration_ms"] == 200.0
        assert metrics["min_duration_ms"] == 100.0
        assert metrics["max_duration_ms"] == 300.0

    def test_save_metrics_writes_json(self, collector, tmp_path):
        collector.record_operation("op1", 100.0, True)
        collector.record_operation("op2", 200.0, False, "Error")

        assert collector.save_metrics() is True
        data = json.loads((tmp_path / "metrics.json").read_text())
        assert set(data["operations"]) == {"op1", "op2"}
        assert data["operations"]["op2"]["error_count"] == 1

    def test_save_without_file_is_noop(self):
        assert MetricsCollector().save_metrics() is False

    def test_get_summary(self, collector):
        collector.record_operation("op1", 100.0, True)
        collector.record_operation("op2", 200.0, False, "Error")

        summary = collector.get_summary()
        assert summary["total_operations"] == 2
        assert summary["total_success"] == 1
        assert summary["total_errors"] == 1
        assert summary["operations_tracked"] == ["op1", "op2"]

    def test_reset_metrics(self, collector):
        collector.record_operation("test_op", 100.0, True)
        collector.reset()
        assert collector.get_metrics() == {}


class TestTimedOperation:
    """Tests for timed_operation and traced."""

    def test_timed_operation_records_success(self, collector):
        with patch("notegraph.observability.metrics", collector):
            with timed_operation("test_op") as op:
                time.sleep(0.01)
                op["custom_data"] = "value"

        metrics = collector.get_metrics()
        assert metrics["test_op"]["success_count"] == 1
        assert metrics["test_op"]["avg_duration_ms"] >= 10

    def test_timed_operation_records_failure_and_reraises(self, collector):
        with patch("notegraph.observability.metrics", collector):
            with pytest.raises(ValueError):
                with timed_operation("test_op"):
                    raise ValueError("Test error")

        metrics = collector.get_metrics()
        assert metrics["test_op"]["error_count"] == 1
        assert "Test error" in metrics["test_op"]["last_error"]

    def test_traced_records_named_operation(self, collector):
        @traced("lookup")
        def lookup(identifier):
            return [identifier, identifier]

        with patch("notegraph.observability.metrics", collector):
            assert lookup(identifier="a") == ["a", "a"]

        assert collector.get_metrics()["lookup"]["count"] == 1

    def test_traced_defaults_to_function_name(self, collector):
        @traced()
        def compute():
            return None

        with patch("notegraph.observability.metrics", collector):
            compute()

        assert "compute" in collector.get_metrics()


class TestConfigureLogging:
    """Tests for configure_logging function."""

    def test_creates_directory_and_returns_it(self, tmp_path, clean_notegraph_logger):
        log_dir = tmp_path / "logs"
        assert configure_logging(log_dir=log_dir, console=False) == log_dir
        assert log_dir.is_dir()
        assert is_logging_configured()

    def test_sets_level_from_name(self, tmp_path, clean_notegraph_logger):
        configure_logging(log_dir=tmp_path, level="debug", console=False)
        assert clean_notegraph_logger.level == logging.DEBUG

    def test_file_handler_not_duplicated(self, tmp_path, clean_notegraph_logger):
        configure_logging(log_dir=tmp_path, console=False)
        configure_logging(log_dir=tmp_path, console=False)

        file_handlers = [
            h for h in clean_notegraph_logger.handlers
            if isinstance(h, RotatingFileHandler)
        ]
        assert len(file_handlers) == 1

    def test_module_loggers_write_to_file(self, tmp_path, clean_notegraph_logger):
        configure_logging(log_dir=tmp_path, console=False)
        logging.getLogger("notegraph.storage.index_store").info("store opened")

        for handler in clean_notegraph_logger.handlers:
            handler.flush()
        assert "store opened" in (tmp_path / "notegraph.log").read_text()
