import logging
import multiprocessing
import os
import signal
import sys

from redis import Redis
from rq import Worker, Queue

from expense_tracker.config import settings

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def run_worker(queue_name: str, index: int):
    """Consume one RQ queue. Runs in its own process."""
    from expense_tracker.services.container import build_processors, build_services, install_worker_processors
    from expense_tracker.services.job_events import (
        CompositeJobEventSink,
        LoggingJobEventSink,
        PrometheusJobEventSink,
    )
    from expense_tracker.services.job_queue import set_event_sink

    services = build_services(settings)
    install_worker_processors(build_processors(services))
    # Set PROMETHEUS_MULTIPROC_DIR to aggregate these across worker processes
    set_event_sink(CompositeJobEventSink([LoggingJobEventSink(), PrometheusJobEventSink()]))

    redis_conn = Redis.from_url(settings.REDIS_URL)
    worker = Worker(
        [Queue(queue_name, connection=redis_conn)],
        connection=redis_conn,
        name=f"{queue_name}-{os.getpid()}-{index}",
        log_job_description=True,
        job_monitoring_interval=5,
    )
    logger.info(f"Worker {worker.name} ready on {queue_name}")
    # The scheduler moves retried jobs back onto the queue once their backoff expires
    worker.work(with_scheduler=True, logging_level=logging.INFO)


def worker_plan():
    from expense_tracker.services.job_queue import build_routes, coerce_kind

    routes = build_routes(settings)
    # QUEUE_LIST restricts this host to some job kinds, e.g. "send-email,send-budget-alert"
    queue_list = os.getenv("QUEUE_LIST")
    if queue_list:
        wanted = {coerce_kind(k.strip()) for k in queue_list.split(",") if k.strip()}
    else:
        wanted = set(routes)
    return [(route.rq_name(kind), route.concurrency) for kind, route in routes.items() if kind in wanted]


def main():
    plan = worker_plan()
    if not plan:
        logger.error("No queues to listen on")
        sys.exit(1)

    processes = []
    for queue_name, concurrency in plan:
        for index in range(concurrency):
            process = multiprocessing.Process(
                target=run_worker,
                args=(queue_name, index),
                name=f"worker-{queue_name}-{index}",
            )
            process.start()
            processes.append(process)
        logger.info(f"Started {concurrency} worker(s) for {queue_name}")

    def signal_handler(signum, frame):
        """Forward shutdown signals so every worker finishes its current job"""
        logger.info(f"Received signal {signum}, shutting down workers gracefully...")
        for process in processes:
            if process.is_alive() and process.pid:
                os.kill(process.pid, signal.SIGTERM)

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    for process in processes:
        process.join()
    logger.info("All workers stopped")


if __name__ == "__main__":
    main()
