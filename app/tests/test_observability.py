"""Tests for logging formatters and the metrics collector."""

import json
import logging

from switchboard.core.logging import ColorFormatter, StructuredFormatter, setup_logging
from switchboard.core.metrics import MetricsCollector, metrics


def _record(msg="hello", **extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="switchboard.kernel.task_queue",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg=msg,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


# ── Logging ────────────────────────────────────────────────


def test_structured_formatter_lifts_extras():
    out = StructuredFormatter().format(
        _record("Task started", task_id="t-1", channel_id="c-9", user="ignored")
    )
    entry = json.loads(out)

    assert entry["msg"] == "Task started"
    assert entry["level"] == "INFO"
    assert entry["task_id"] == "t-1"
    assert entry["channel_id"] == "c-9"
    assert "user" not in entry


def test_color_formatter_restores_record():
    record = _record()
    out = ColorFormatter(use_color=True).format(record)

    assert "hello" in out
    assert record.levelname == "INFO"
    assert record.name == "switchboard.kernel.task_queue"


def test_setup_logging_json(monkeypatch):
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    monkeypatch.setenv("SWITCHBOARD_LOG_FORMAT", "json")
    monkeypatch.setenv("SWITCHBOARD_LOG_LEVEL", "debug")
    try:
        setup_logging()
        assert root.level == logging.DEBUG
        assert isinstance(root.handlers[0].formatter, StructuredFormatter)
        assert logging.getLogger("httpx").level == logging.WARNING
    finally:
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)


# ── Metrics ────────────────────────────────────────────────


def test_counters_and_labels():
    metrics.inc("queue.tasks.enqueued", labels={"platform": "telegram"})
    metrics.inc("queue.tasks.enqueued", labels={"platform": "telegram"})
    metrics.inc("queue.tasks.enqueued", labels={"platform": "web"})

    assert metrics.counter("queue.tasks.enqueued", {"platform": "telegram"}) == 2
    assert metrics.counter("queue.tasks.enqueued", {"platform": "web"}) == 1
    assert metrics.counter("queue.tasks.enqueued") == 0


def test_gauges():
    metrics.gauge_set("queue.pending", 3, {"channel": "c1"})
    metrics.gauge_inc("queue.pending", labels={"channel": "c1"})
    metrics.gauge_dec("queue.pending", 2, labels={"channel": "c1"})
    assert metrics.gauge("queue.pending", {"channel": "c1"}) == 2


def test_histogram_snapshot():
    for value in range(1, 101):
        metrics.observe("agent.duration_ms", value)

    summary = metrics.snapshot()["histograms"]["agent.duration_ms"]
    assert summary["count"] == 100
    assert summary["p50"] == 51
    assert summary["max"] == 100


def test_histogram_window_is_bounded():
    collector = MetricsCollector()
    for value in range(MetricsCollector.HISTOGRAM_MAX_SAMPLES + 10):
        collector.observe("x", value)
    assert collector.snapshot()["histograms"]["x"]["count"] == (
        MetricsCollector.HISTOGRAM_MAX_SAMPLES
    )


def test_singleton():
    assert MetricsCollector.get() is metrics
