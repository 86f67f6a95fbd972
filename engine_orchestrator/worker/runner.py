"""
Worker entry point for the maintenance queue.
Run with: python -m engine_orchestrator.worker.runner [--burst]

Queue drains, SLA sweeps, decay and snapshots are enqueued by an external
scheduler (or POST /api/v1/jobs/{name}); this process only executes them.
"""

import argparse

import structlog
from rq import Worker

from engine_orchestrator.config import settings
from engine_orchestrator.observability.logging import setup_logging
from engine_orchestrator.worker.jobs import get_queue

logger = structlog.get_logger(__name__)


def main(argv=None):
    parser = argparse.ArgumentParser(description="Run the orchestrator maintenance worker.")
    parser.add_argument("--burst", action="store_true", help="Exit once the queue is empty")
    args = parser.parse_args(argv)

    setup_logging()

    queue = get_queue()
    worker = Worker(
        queues=[queue],
        connection=queue.connection,
        name=f"orchestrator-worker-{settings.APP_VERSION}",
    )

    logger.info("worker_starting", queue=queue.name, burst=args.burst, worker=worker.name)
    worker.work(burst=args.burst, with_scheduler=False)


if __name__ == "__main__":
    main()
