"""
Job lifecycle observability.

The queue reports completions, failures and progress to a JobEventSink
instead of wiring listeners onto the broker, so sinks can be swapped or
recorded in tests independently of RQ.
"""
import logging
from typing import Any, Iterable, Optional

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge

logger = logging.getLogger(__name__)


class JobEventSink:
    """No-op base sink."""

    def job_completed(self, kind: str, job_id: str, result: Any = None) -> None:
        pass

    def job_failed(self, kind: str, job_id: str, error: BaseException, attempt: int,
                   max_attempts: int, exhausted: bool) -> None:
        pass

    def job_progress(self, kind: str, job_id: str, progress: float) -> None:
        pass


class LoggingJobEventSink(JobEventSink):
    def job_completed(self, kind, job_id, result=None):
        logger.debug("%s job %s completed: %s", kind, job_id, result)

    def job_failed(self, kind, job_id, error, attempt, max_attempts, exhausted):
        if exhausted:
            logger.error(
                "%s job %s permanently failed after %s/%s attempts: %s",
                kind, job_id, attempt, max_attempts, error,
            )
        else:
            logger.warning(
                "%s job %s failed on attempt %s/%s, retry scheduled: %s",
                kind, job_id, attempt, max_attempts, error,
            )

    def job_progress(self, kind, job_id, progress):
        logger.debug("%s job %s progress %.1f%%", kind, job_id, progress)


class PrometheusJobEventSink(JobEventSink):
    def __init__(self, registry: Optional[CollectorRegistry] = None):
        registry = registry if registry is not None else REGISTRY
        self.completed = Counter(
            "expense_jobs_completed_total", "Jobs that completed successfully",
            ["kind"], registry=registry,
        )
        self.failed = Counter(
            "expense_jobs_failed_total", "Job attempts that raised",
            ["kind", "exhausted"], registry=registry,
        )
        self.progress = Gauge(
            "expense_job_progress_percent", "Last reported progress of running jobs",
            ["kind"], registry=registry,
        )

    def job_completed(self, kind, job_id, result=None):
        self.completed.labels(kind=kind).inc()

    def job_failed(self, kind, job_id, error, attempt, max_attempts, exhausted):
        self.failed.labels(kind=kind, exhausted=str(exhausted).lower()).inc()

    def job_progress(self, kind, job_id, progress):
        self.progress.labels(kind=kind).set(progress)


class CompositeJobEventSink(JobEventSink):
    def __init__(self, sinks: Iterable[JobEventSink]):
        self.sinks = list(sinks)

    def _each(self, method: str, *args, **kwargs) -> None:
        for sink in self.sinks:
            try:
                getattr(sink, method)(*args, **kwargs)
            except Exception:
                logger.exception("Job event sink %s failed in %s", type(sink).__name__, method)

    def job_completed(self, kind, job_id, result=None):
        self._each("job_completed", kind, job_id, result)

    def job_failed(self, kind, job_id, error, attempt, max_attempts, exhausted):
        self._each("job_failed", kind, job_id, error, attempt, max_attempts, exhausted)

    def job_progress(self, kind, job_id, progress):
        self._each("job_progress", kind, job_id, progress)
