import logging

from prometheus_client import CollectorRegistry

from expense_tracker.services.job_events import (
    CompositeJobEventSink,
    JobEventSink,
    LoggingJobEventSink,
    PrometheusJobEventSink,
)


def test_prometheus_sink_counts_by_kind():
    registry = CollectorRegistry()
    sink = PrometheusJobEventSink(registry=registry)

    sink.job_completed("send-email", "j1")
    sink.job_completed("send-email", "j2")
    sink.job_failed("categorize-expense", "j3", RuntimeError("x"), 3, 3, True)
    sink.job_progress("bulk-recategorize", "j4", 40.0)

    assert registry.get_sample_value("expense_jobs_completed_total", {"kind": "send-email"}) == 2
    assert registry.get_sample_value(
        "expense_jobs_failed_total", {"kind": "categorize-expense", "exhausted": "true"}
    ) == 1
    assert registry.get_sample_value("expense_job_progress_percent", {"kind": "bulk-recategorize"}) == 40.0


def test_logging_sink_logs_exhausted_failures_as_errors(caplog):
    sink = LoggingJobEventSink()

    with caplog.at_level(logging.WARNING):
        sink.job_failed("send-email", "j1", RuntimeError("smtp down"), 1, 2, False)
        sink.job_failed("send-email", "j1", RuntimeError("smtp down"), 2, 2, True)

    levels = [r.levelno for r in caplog.records]
    assert levels == [logging.WARNING, logging.ERROR]
    assert "permanently failed after 2/2 attempts" in caplog.records[1].getMessage()


def test_composite_sink_isolates_broken_sinks():
    class Broken(JobEventSink):
        def job_completed(self, kind, job_id, result=None):
            raise RuntimeError("sink down")

    class Recording(JobEventSink):
        def __init__(self):
            self.completed = []

        def job_completed(self, kind, job_id, result=None):
            self.completed.append(job_id)

    recording = Recording()
    CompositeJobEventSink([Broken(), recording]).job_completed("send-email", "j1")

    assert recording.completed == ["j1"]
