"""
Fact Engine - Worker Process

Usage:
    python -m factengine.worker                 # poll forever
    python -m factengine.worker --once          # drain available jobs and exit
    python -m factengine.worker --job-types TRADING_READINESS_RECOMPUTE,EXPLAIN_RECOMPUTE
"""
import argparse
import logging
import signal
import threading

from .config import WORKER_POLL_INTERVAL_SECONDS
from .database import SessionLocal, init_db
from .logging_config import configure_logging
from .models.jobs import JobType
from .services.explain.generator import build_generator
from .services.jobs import Worker
from .services.producers.registry import get_producer_registry


logger = logging.getLogger(__name__)


def parse_job_types(raw):
    if not raw:
        return None
    job_types = [t.strip().upper() for t in raw.split(",") if t.strip()]
    for job_type in job_types:
        JobType(job_type)
    return job_types


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Fact Engine job worker")
    parser.add_argument("--once", action="store_true", help="Run available jobs, then exit")
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=WORKER_POLL_INTERVAL_SECONDS,
        help="Seconds to wait when the queue is empty",
    )
    parser.add_argument("--job-types", default="", help="Comma-separated job types to consume")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    configure_logging()
    init_db()

    try:
        job_types = parse_job_types(args.job_types)
    except ValueError as e:
        logger.error(f"Unknown job type: {e}")
        return 2

    worker = Worker(SessionLocal, get_producer_registry(), build_generator(), job_types=job_types)

    if args.once:
        processed = 0
        while worker.run_once() is not None:
            processed += 1
        logger.info(f"Processed {processed} job(s)")
        return 0

    stop = threading.Event()
    signal.signal(signal.SIGTERM, lambda *_: stop.set())
    signal.signal(signal.SIGINT, lambda *_: stop.set())
    worker.run_forever(stop, poll_interval=args.poll_interval)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
