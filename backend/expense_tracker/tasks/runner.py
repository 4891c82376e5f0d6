"""
RQ entry point shared by every job kind.

Each queue enqueues ``run_job(kind, payload)``; the processor for the kind is
looked up in the processors installed in this worker process.
"""
import logging
from typing import Any, Dict, Optional

from rq import get_current_job
from rq.job import Job

from expense_tracker.services.container import get_worker_processors
from expense_tracker.services.job_events import JobEventSink
from expense_tracker.services.job_queue import coerce_kind, get_event_sink

logger = logging.getLogger(__name__)


class RQJobContext:
    """Progress channel of the running RQ job."""

    def __init__(self, job: Optional[Job], kind: str, sink: JobEventSink):
        self.job = job
        self.kind = kind
        self.sink = sink

    @property
    def job_id(self) -> Optional[str]:
        return self.job.id if self.job else None

    def start_attempt(self) -> int:
        if not self.job:
            return 1
        attempt = int(self.job.meta.get("attempts", 0)) + 1
        self.job.meta["attempts"] = attempt
        self.job.save_meta()
        return attempt

    def report_progress(self, progress: float) -> None:
        progress = max(0.0, min(100.0, float(progress)))
        if self.job:
            self.job.meta["progress"] = progress
            self.job.save_meta()
        self.sink.job_progress(self.kind, self.job_id, progress)


def run_job(kind: str, payload: Dict[str, Any]) -> Any:
    job_kind = coerce_kind(kind)
    processor = get_worker_processors()[job_kind]
    context = RQJobContext(get_current_job(), job_kind.value, get_event_sink())

    attempt = context.start_attempt()
    logger.info("Running %s job %s (attempt %s)", job_kind.value, context.job_id, attempt)
    return processor(payload, context)
