"""
Composition root.

API and worker processes build their collaborators once at start-up and pass
them explicitly to the resolver, the orchestrator and the job processors.
"""
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from redis import Redis
from sqlalchemy.orm import sessionmaker

from expense_tracker.config import Settings, settings as default_settings
from expense_tracker.database.expense_store import ExpenseStore
from expense_tracker.database.postgres_db import init_db
from expense_tracker.services.batch_orchestrator import BatchOrchestrator
from expense_tracker.services.cache import ResponseCache
from expense_tracker.services.categorization_client import CategorizationClient, UsageCounters
from expense_tracker.services.confidence_resolver import ConfidenceResolver
from expense_tracker.services.email_sender import EmailSender
from expense_tracker.services.job_queue import JobKind, JobQueue
from expense_tracker.services.report_renderer import ReportRenderer
from expense_tracker.tasks.categorization import (
    BulkRecategorizeProcessor,
    CategorizeExpenseProcessor,
    LearnFromCorrectionProcessor,
)
from expense_tracker.tasks.email import BudgetAlertProcessor, SendEmailProcessor
from expense_tracker.tasks.reports import GenerateReportProcessor

logger = logging.getLogger(__name__)

Processor = Callable[[Dict[str, Any], Any], Any]


@dataclass
class Services:
    settings: Settings
    store: ExpenseStore
    cache: ResponseCache
    client: CategorizationClient
    resolver: ConfidenceResolver
    orchestrator: BatchOrchestrator
    queue: JobQueue
    email_sender: EmailSender
    report_renderer: ReportRenderer

    @property
    def ai_enabled(self) -> bool:
        return self.settings.ENABLE_AI_CATEGORIZATION

    def close(self) -> None:
        self.queue.close_all()


def build_services(
    config: Settings = default_settings,
    session_factory: Optional[sessionmaker] = None,
    redis_connection: Optional[Redis] = None,
) -> Services:
    session_factory = session_factory or init_db(config.DATABASE_URL)
    redis_connection = redis_connection or Redis.from_url(config.REDIS_URL)

    store = ExpenseStore(session_factory)
    cache = ResponseCache(redis_connection, prefix=config.CACHE_PREFIX, ttl=config.CACHE_TTL)
    client = CategorizationClient.from_settings(config, catalog=store, counters=UsageCounters(redis_connection))
    resolver = ConfidenceResolver(client, store, ai_enabled=config.ENABLE_AI_CATEGORIZATION)

    return Services(
        settings=config,
        store=store,
        cache=cache,
        client=client,
        resolver=resolver,
        orchestrator=BatchOrchestrator.from_settings(config, store, resolver, client, cache),
        queue=JobQueue.from_settings(config),
        email_sender=EmailSender.from_settings(config),
        report_renderer=ReportRenderer(store, reports_dir=config.REPORTS_DIR),
    )


def build_processors(services: Services) -> Dict[JobKind, Processor]:
    processors = {
        JobKind.CATEGORIZE_EXPENSE: CategorizeExpenseProcessor(services.client, services.store, services.cache),
        JobKind.LEARN_FROM_CORRECTION: LearnFromCorrectionProcessor(services.client),
        JobKind.BULK_RECATEGORIZE: BulkRecategorizeProcessor(
            services.orchestrator, default_limit=services.settings.BULK_DEFAULT_LIMIT,
        ),
        JobKind.SEND_EMAIL: SendEmailProcessor(services.email_sender),
        JobKind.SEND_BUDGET_ALERT: BudgetAlertProcessor(services.store, services.email_sender),
        JobKind.GENERATE_REPORT: GenerateReportProcessor(services.store, services.report_renderer),
    }
    missing = [kind.value for kind in JobKind if kind not in processors]
    if missing:
        raise RuntimeError(f"No processor registered for job kinds: {', '.join(missing)}")
    return processors


# Installed by worker.py in every worker process before it starts consuming
_worker_processors: Optional[Dict[JobKind, Processor]] = None


def install_worker_processors(processors: Dict[JobKind, Processor]) -> None:
    global _worker_processors
    _worker_processors = processors


def get_worker_processors() -> Dict[JobKind, Processor]:
    global _worker_processors
    if _worker_processors is None:
        logger.info("No processors installed in this process, building them from settings")
        _worker_processors = build_processors(build_services())
    return _worker_processors
