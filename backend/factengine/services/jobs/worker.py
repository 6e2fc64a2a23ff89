"""
Job Worker Runtime

Claims jobs from the queue and runs them through their handler, one session
per job. Settlement follows the error taxonomy:

- JobValidationError: JOB_FAILED audit, job FAILED, never retried
- other FactEngineError: retried while `retryable` and attempts remain
- unexpected exceptions: logged with traceback, retried
"""
import logging
import threading
from typing import Dict, Iterable, Optional

from sqlalchemy.orm import sessionmaker

from .handlers import ExplainHandler, JobHandler, RecomputeHandler
from .nightly import NightlyRefreshHandler
from ..audit import Actor, AuditEventType, AuditSink
from ..explain.generator import ExplanationGenerator
from ..producers.registry import ProducerRegistry
from ..queue import JobQueue
from ...config import AUTO_EXPLAIN_ON_DRIFT, WORKER_POLL_INTERVAL_SECONDS
from ...errors import FactEngineError, GeneratorRateLimitedError, JobValidationError
from ...models.jobs import JobType, parse_job_payload


logger = logging.getLogger(__name__)


class Worker:
    """
    Usage:
        worker = Worker(SessionLocal, get_producer_registry(), build_generator())
        worker.run_once()            # one job, if any is available
        worker.run_forever(stop)     # poll until `stop` is set
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        registry: ProducerRegistry,
        generator: Optional[ExplanationGenerator] = None,
        job_types: Optional[Iterable[str]] = None,
        auto_explain_on_drift: bool = AUTO_EXPLAIN_ON_DRIFT,
    ):
        self.session_factory = session_factory
        self.job_types = list(job_types) if job_types else None

        recompute = RecomputeHandler(registry, generator, auto_explain_on_drift)
        self.handlers: Dict[JobType, JobHandler] = {
            JobType.TRADING_READINESS_RECOMPUTE: recompute,
            JobType.ESG_KPI_RECOMPUTE: recompute,
            JobType.COVENANT_RECOMPUTE: recompute,
            JobType.PORTFOLIO_RISK_RECOMPUTE: recompute,
            JobType.EXPLAIN_RECOMPUTE: ExplainHandler(registry, generator, auto_explain_on_drift),
            JobType.NIGHTLY_REFRESH_TENANT: NightlyRefreshHandler(registry, generator, auto_explain_on_drift),
        }

    # =========================================================================
    # Entry points
    # =========================================================================

    def run_once(self) -> Optional[dict]:
        """Claim and run the next available job. Returns its settled state, or None if idle."""
        db = self.session_factory()
        try:
            job = JobQueue(db).claim_next(self.job_types)
            job_id = job.id if job else None
        finally:
            db.close()

        if job_id is None:
            return None
        return self._execute(job_id)

    def run_job(self, job_id: str) -> Optional[dict]:
        """Claim and run one specific job. Returns None if another worker already has it."""
        db = self.session_factory()
        try:
            claimed = JobQueue(db).claim(job_id) is not None
        finally:
            db.close()

        if not claimed:
            logger.info(f"Job {job_id} was not pending; skipping")
            return None
        return self._execute(job_id)

    def run_forever(
        self,
        stop_event: Optional[threading.Event] = None,
        poll_interval: float = WORKER_POLL_INTERVAL_SECONDS,
    ) -> None:
        stop_event = stop_event or threading.Event()
        logger.info(f"Worker started (job types: {self.job_types or 'all'})")
        while not stop_event.is_set():
            if self.run_once() is None:
                stop_event.wait(poll_interval)
        logger.info("Worker stopped")

    # =========================================================================
    # Execution
    # =========================================================================

    def _execute(self, job_id: str) -> dict:
        db = self.session_factory()
        try:
            queue = JobQueue(db)
            job = queue.get(job_id)

            try:
                payload = parse_job_payload(job.payload)
            except JobValidationError as e:
                AuditSink(db).record(
                    tenant_id=job.tenant_id,
                    event_type=AuditEventType.JOB_FAILED,
                    summary=f"{job.job_type} rejected: {e.message}",
                    actor=Actor.service(),
                    payload={"jobId": job.id, "jobType": job.job_type, "error": e.message},
                    evidence_ref=job.id,
                    correlation_id=job.correlation_id,
                )
                db.commit()
                return queue.fail(job.id, e.message, retryable=False, error_code=e.code).to_dict()

            handler = self.handlers[JobType(payload.job_type)]
            try:
                result = handler.run(db, job, payload)
            except GeneratorRateLimitedError as e:
                return queue.fail(
                    job_id, e.message, retryable=True, error_code=e.code,
                    retry_after_seconds=e.retry_after_seconds,
                ).to_dict()
            except FactEngineError as e:
                return queue.fail(job_id, e.message, retryable=e.retryable, error_code=e.code).to_dict()
            except Exception as e:
                logger.exception(f"Job {job_id} ({payload.job_type}) raised unexpectedly")
                return queue.fail(job_id, str(e) or type(e).__name__, retryable=True).to_dict()

            return queue.complete(job_id, result).to_dict()
        finally:
            db.close()
