"""Tests for the observability module.

Tests for metrics collection, logging configuration and operation tracing.
"""
import logging
from logging.handlers import RotatingFileHandler

import pytest

from noteindex.observability import (
    MetricsCollector,
    configure_logging,
    is_logging_configured,
    metrics,
    timed_operation,
    traced,
)


@pytest.fixture(autouse=True)
def clean_metrics():
    metrics.reset()
    yield
    metrics.reset()


class TestMetricsCollector:
    """Tests for MetricsCollector class."""

    def test_records_success_and_failure(self):
        collector = MetricsCollector()
        collector.record_operation("search", 10.0, True)
        collector.record_operation("search", 30.0, False, "boom")

        stats = collector.get_metrics()["search"]
        assert stats["count"] == 2
        assert stats["success_count"] == 1
        assert stats["error_count"] == 1
        assert stats["avg_duration_ms"] == 20.0
        assert stats["min_duration_ms"] == 10.0
        assert stats["max_duration_ms"] == 30.0
        assert stats["last_error"] == "boom"

    def test_summary(self):
        collector = MetricsCollector()
        collector.record_operation("a", 1.0, True)
        collector.record_operation("b", 1.0, False)
        summary = collector.get_summary()
        assert summary["total_operations"] == 2
        assert summary["overall_success_rate"] == 0.5
        assert summary["operations_tracked"] == ["a", "b"]

    def test_reset(self):
        collector = MetricsCollector()
        collector.record_operation("a", 1.0, True)
        collector.reset()
        assert collector.get_metrics() == {}


class TestTimedOperation:
    def test_records_metrics(self):
        with timed_operation("rebuild", notes_dir="x") as op:
            op["indexed"] = 3
        assert metrics.get_metrics()["rebuild"]["success_count"] == 1

    def test_failure_recorded_and_reraised(self):
        with pytest.raises(ValueError):
            with timed_operation("rebuild"):
                raise ValueError("bad")
        stats = metrics.get_metrics()["rebuild"]
        assert stats["error_count"] == 1
        assert stats["last_error"] == "bad"

    def test_traced_decorator(self):
        @traced("lookup")
        def lookup(topic):
            return [1, 2]

        assert lookup(topic="x") == [1, 2]
        assert metrics.get_metrics()["lookup"]["count"] == 1

    def test_repository_queries_are_traced(self, repository, make_note):
        repository.upsert(make_note(topics=["t"]), "h", "n.md")
        repository.list_by_topic("t")
        assert metrics.get_metrics()["list_by_topic"]["success_count"] == 1


class TestConfigureLogging:
    def test_installs_single_rotating_handler(self, tmp_path):
        logger = logging.getLogger("noteindex")
        before = list(logger.handlers)
        try:
            log_dir = configure_logging(tmp_path / "logs", level=logging.DEBUG)
            configure_logging(tmp_path / "logs", level=logging.DEBUG)

            handlers = [
                h for h in logger.handlers
                if isinstance(h, RotatingFileHandler) and h not in before
            ]
            assert len(handlers) == 1
            assert is_logging_configured()
            logging.getLogger("noteindex.storage.note_repository").info("hello log")
            handlers[0].flush()
            assert "hello log" in (log_dir / "noteindex.log").read_text()
        finally:
            for handler in list(logger.handlers):
                if handler not in before:
                    logger.removeHandler(handler)
                    handler.close()
