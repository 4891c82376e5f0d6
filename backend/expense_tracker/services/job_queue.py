import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

from redis import Redis
from rq import Callback, Queue, Retry
from rq.job import Job, JobStatus
from rq.registry import BaseRegistry
from rq.results import Result

from expense_tracker.config import settings
from expense_tracker.services.job_events import JobEventSink, LoggingJobEventSink

logger = logging.getLogger(__name__)

RUNNER_PATH = "expense_tracker.tasks.runner.run_job"


class JobKind(str, Enum):
    CATEGORIZE_EXPENSE = "categorize-expense"
    LEARN_FROM_CORRECTION = "learn-from-correction"
    BULK_RECATEGORIZE = "bulk-recategorize"
    SEND_EMAIL = "send-email"
    SEND_BUDGET_ALERT = "send-budget-alert"
    GENERATE_REPORT = "generate-report"


class JobState(str, Enum):
    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"


_STATUS_TO_STATE = {
    JobStatus.QUEUED: JobState.QUEUED,
    JobStatus.DEFERRED: JobState.QUEUED,
    JobStatus.STARTED: JobState.ACTIVE,
    JobStatus.FINISHED: JobState.COMPLETED,
    JobStatus.SCHEDULED: JobState.RETRY_SCHEDULED,
    JobStatus.FAILED: JobState.FAILED,
    JobStatus.STOPPED: JobState.FAILED,
    JobStatus.CANCELED: JobState.FAILED,
}


class UnknownJobKindError(ValueError):
    pass


@dataclass(frozen=True)
class ExponentialBackoff:
    base_ms: int

    def delay_seconds(self, retry_number: int) -> int:
        """Delay before the n-th retry (1-based): base, 2*base, 4*base, ..."""
        return max(1, math.ceil(self.base_ms * 2 ** (retry_number - 1) / 1000))


@dataclass(frozen=True)
class QueuePolicy:
    """Settings shared by every job kind of one logical queue."""
    name: str
    max_attempts: int
    backoff: Optional[ExponentialBackoff]
    keep_completed: int
    keep_failed: int
    timeout: int

    def retry(self) -> Optional[Retry]:
        retries = self.max_attempts - 1
        if retries <= 0:
            return None
        if self.backoff is None:
            return Retry(max=retries)
        return Retry(max=retries, interval=[self.backoff.delay_seconds(n) for n in range(1, retries + 1)])


@dataclass(frozen=True)
class JobRoute:
    queue: QueuePolicy
    concurrency: int

    def rq_name(self, kind: JobKind) -> str:
        return f"{self.queue.name}.{kind.value}"


def build_routes(config=settings) -> Dict[JobKind, JobRoute]:
    ai = QueuePolicy(
        name=config.AI_QUEUE_NAME,
        max_attempts=3,
        backoff=ExponentialBackoff(base_ms=2000),
        keep_completed=10,
        keep_failed=5,
        timeout=config.AI_JOB_TIMEOUT,
    )
    email = QueuePolicy(
        name=config.EMAIL_QUEUE_NAME,
        max_attempts=2,
        backoff=ExponentialBackoff(base_ms=1000),
        keep_completed=5,
        keep_failed=3,
        timeout=config.EMAIL_JOB_TIMEOUT,
    )
    report = QueuePolicy(
        name=config.REPORT_QUEUE_NAME,
        max_attempts=1,
        backoff=None,
        keep_completed=3,
        keep_failed=2,
        timeout=config.REPORT_JOB_TIMEOUT,
    )
    routes = {
        JobKind.CATEGORIZE_EXPENSE: JobRoute(ai, concurrency=5),
        JobKind.LEARN_FROM_CORRECTION: JobRoute(ai, concurrency=3),
        JobKind.BULK_RECATEGORIZE: JobRoute(ai, concurrency=1),
        JobKind.SEND_EMAIL: JobRoute(email, concurrency=10),
        JobKind.SEND_BUDGET_ALERT: JobRoute(email, concurrency=5),
        JobKind.GENERATE_REPORT: JobRoute(report, concurrency=2),
    }
    validate_routes(routes)
    return routes


def validate_routes(routes: Dict[JobKind, JobRoute]) -> None:
    missing = [kind.value for kind in JobKind if kind not in routes]
    if missing:
        raise RuntimeError(f"No queue route configured for job kinds: {', '.join(missing)}")
    for kind, route in routes.items():
        if route.concurrency < 1:
            raise RuntimeError(f"Concurrency for {kind.value} must be at least 1")
        if route.queue.max_attempts < 1:
            raise RuntimeError(f"Max attempts for {route.queue.name} must be at least 1")


# Validated at import so a missing route fails at startup, not mid-request
JOB_ROUTES = build_routes()


def coerce_kind(kind: Union[JobKind, str]) -> JobKind:
    try:
        return JobKind(kind)
    except ValueError:
        raise UnknownJobKindError(f"Unknown job type: {kind}") from None


# Event sink used by the RQ callbacks. Workers install theirs at startup.
_event_sink: JobEventSink = LoggingJobEventSink()


def set_event_sink(sink: JobEventSink) -> None:
    global _event_sink
    _event_sink = sink


def get_event_sink() -> JobEventSink:
    return _event_sink


def prune_registry(registry: BaseRegistry, keep: int) -> int:
    """Delete the oldest job records beyond ``keep``. Returns how many were removed."""
    job_ids = registry.get_job_ids()  # oldest first
    stale = job_ids[:-keep] if keep > 0 else job_ids
    for job_id in stale:
        registry.remove(job_id, delete_job=True)
    return len(stale)


def _route_for_job(job: Job) -> Tuple[str, Optional[JobRoute]]:
    kind = (job.meta or {}).get("kind", "unknown")
    try:
        return kind, JOB_ROUTES[JobKind(kind)]
    except ValueError:
        return kind, None


# RQ runs callbacks before it adds the job to the finished or failed registry,
# so they prune to one below the keep count to leave room for it.
def on_job_success(job: Job, connection: Redis, result: Any, *args, **kwargs) -> None:
    kind, route = _route_for_job(job)
    _event_sink.job_completed(kind, job.id, result)
    if route is not None:
        queue = Queue(route.rq_name(JobKind(kind)), connection=connection)
        prune_registry(queue.finished_job_registry, route.queue.keep_completed - 1)


def on_job_failure(job: Job, connection: Redis, exc_type, exc_value, traceback) -> None:
    kind, route = _route_for_job(job)
    max_attempts = route.queue.max_attempts if route else 1
    retries_left = job.retries_left or 0
    exhausted = retries_left <= 0
    attempt = max_attempts - retries_left
    _event_sink.job_failed(kind, job.id, exc_value, attempt, max_attempts, exhausted)
    if exhausted and route is not None:
        queue = Queue(route.rq_name(JobKind(kind)), connection=connection)
        prune_registry(queue.failed_job_registry, route.queue.keep_failed - 1)


class JobQueue:
    """Dispatches typed jobs to their RQ queues on one Redis connection."""

    def __init__(self, connection: Redis, routes: Optional[Dict[JobKind, JobRoute]] = None,
                 record_ttl: int = settings.JOB_RECORD_TTL):
        self.connection = connection
        self.routes = routes if routes is not None else JOB_ROUTES
        validate_routes(self.routes)
        self.record_ttl = record_ttl
        self._queues: Dict[JobKind, Queue] = {}

    @classmethod
    def from_settings(cls, config=settings) -> "JobQueue":
        return cls(Redis.from_url(config.REDIS_URL), routes=build_routes(config), record_ttl=config.JOB_RECORD_TTL)

    def get_queue(self, kind: Union[JobKind, str]) -> Queue:
        job_kind = coerce_kind(kind)
        queue = self._queues.get(job_kind)
        if queue is None:
            route = self.routes[job_kind]
            queue = Queue(
                route.rq_name(job_kind),
                connection=self.connection,
                default_timeout=route.queue.timeout,
            )
            self._queues[job_kind] = queue
        return queue

    def enqueue(self, kind: Union[JobKind, str], payload: Dict[str, Any], *,
                meta: Optional[Dict[str, Any]] = None) -> Job:
        job_kind = coerce_kind(kind)
        policy = self.routes[job_kind].queue
        job_meta = {
            "kind": job_kind.value,
            "progress": 0,
            "attempts": 0,
            "max_attempts": policy.max_attempts,
            **(meta or {}),
        }
        job = self.get_queue(job_kind).enqueue(
            RUNNER_PATH,
            job_kind.value,
            payload,
            job_timeout=policy.timeout,
            retry=policy.retry(),
            result_ttl=self.record_ttl,
            failure_ttl=self.record_ttl,
            on_success=Callback(on_job_success),
            on_failure=Callback(on_job_failure),
            meta=job_meta,
            description=job_kind.value,
        )
        logger.info("Enqueued %s job %s on %s", job_kind.value, job.id, policy.name)
        return job

    def get_job_info(self, job_id: str) -> Dict[str, Any]:
        """Raises rq.exceptions.NoSuchJobError for unknown or pruned jobs."""
        job = Job.fetch(job_id, connection=self.connection)
        meta = job.meta or {}
        status = job.get_status()
        info = {
            "job_id": job.id,
            "kind": meta.get("kind"),
            "state": _STATUS_TO_STATE.get(status, JobState.QUEUED).value,
            "status": status.value if hasattr(status, "value") else status,
            "progress": meta.get("progress", 0),
            "attempts": meta.get("attempts", 0),
            "max_attempts": meta.get("max_attempts"),
            "enqueued_at": job.enqueued_at.isoformat() if job.enqueued_at else None,
            "started_at": job.started_at.isoformat() if job.started_at else None,
            "ended_at": job.ended_at.isoformat() if job.ended_at else None,
            "meta": meta,
        }

        if job.is_finished:
            info["result"] = job.return_value()
        elif job.is_failed:
            latest = job.latest_result()
            if latest is not None and latest.type == Result.Type.FAILED:
                info["error"] = latest.exc_string

        return info

    def get_queue_stats(self) -> Dict[str, Dict[str, Any]]:
        """Job counts per logical queue, with a per-kind breakdown."""
        stats: Dict[str, Dict[str, Any]] = {}
        for kind, route in self.routes.items():
            queue = self.get_queue(kind)
            counts = {
                "waiting": queue.count,
                "active": queue.started_job_registry.count,
                "completed": queue.finished_job_registry.count,
                "failed": queue.failed_job_registry.count,
                "delayed": queue.scheduled_job_registry.count,
            }
            entry = stats.setdefault(route.queue.name, {
                "waiting": 0, "active": 0, "completed": 0, "failed": 0, "delayed": 0, "kinds": {},
            })
            for key, value in counts.items():
                entry[key] += value
            entry["kinds"][kind.value] = counts
        return stats

    def close_all(self) -> None:
        """Release the Redis connections held by every queue."""
        self._queues.clear()
        self.connection.close()
        logger.info("All queues closed")