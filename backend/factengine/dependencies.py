"""
Fact Engine - Shared FastAPI Dependencies
Process-wide collaborators (producers, generator, rate limiter) and the
per-request job dispatcher built from them
"""
from functools import lru_cache

from fastapi import Depends
from sqlalchemy.orm import Session, sessionmaker

from .config import RECOMPUTE_INLINE, RECOMPUTE_WAIT_SECONDS
from .database import get_db, get_session_factory
from .services.explain.generator import ExplanationGenerator, build_generator
from .services.explain.ratelimit import FixedWindowRateLimiter
from .services.jobs.worker import Worker
from .services.producers.registry import ProducerRegistry, get_producer_registry
from .services.queue import JobDispatcher


def get_registry() -> ProducerRegistry:
    return get_producer_registry()


@lru_cache(maxsize=1)
def get_explanation_generator() -> ExplanationGenerator:
    return build_generator()


@lru_cache(maxsize=1)
def get_rate_limiter() -> FixedWindowRateLimiter:
    return FixedWindowRateLimiter()


def get_worker(
    session_factory: sessionmaker = Depends(get_session_factory),
    registry: ProducerRegistry = Depends(get_registry),
    generator: ExplanationGenerator = Depends(get_explanation_generator),
) -> Worker:
    return Worker(session_factory, registry, generator)


def get_dispatcher(
    db: Session = Depends(get_db),
    session_factory: sessionmaker = Depends(get_session_factory),
    worker: Worker = Depends(get_worker),
) -> JobDispatcher:
    """Dispatcher that runs the job in-process when RECOMPUTE_INLINE is on."""
    return JobDispatcher(
        db,
        session_factory,
        run_inline=worker.run_job if RECOMPUTE_INLINE else None,
        wait_seconds=RECOMPUTE_WAIT_SECONDS,
    )
