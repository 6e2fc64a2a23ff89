"""
Fact Job Queue

Database-backed work queue for recompute, explain and nightly refresh jobs.

Core Principles:
1. At-least-once: a job may run more than once; handlers are idempotent.
2. Claiming is a conditional PENDING -> RUNNING update, so two workers never
   both claim the same row.
3. Failed attempts are re-queued with exponential backoff until max_attempts;
   non-retryable failures go straight to FAILED.
"""
import logging
import time
from datetime import timedelta
from typing import Any, Callable, Dict, Iterable, Optional
from uuid import uuid4

from sqlalchemy.orm import Session, sessionmaker

from ..config import (
    JOB_MAX_ATTEMPTS,
    JOB_BACKOFF_BASE_SECONDS,
    JOB_BACKOFF_MAX_SECONDS,
    RECOMPUTE_WAIT_SECONDS,
)
from ..models.db_models import FactJobDB, JobStatus, TERMINAL_JOB_STATUSES, utcnow


logger = logging.getLogger(__name__)


def backoff_delay(attempt: int) -> float:
    """Delay before the next attempt after `attempt` failures."""
    return min(JOB_BACKOFF_BASE_SECONDS * (2 ** max(attempt - 1, 0)), JOB_BACKOFF_MAX_SECONDS)


class JobQueue:
    """
    Enqueue, claim and settle jobs.

    Claims and settlements commit immediately; enqueue only flushes so the job
    joins the caller's transaction.
    """

    def __init__(self, db: Session):
        self.db = db

    # =========================================================================
    # Producer side
    # =========================================================================

    def enqueue(
        self,
        payload,
        max_attempts: int = JOB_MAX_ATTEMPTS,
        delay_seconds: float = 0.0,
    ) -> FactJobDB:
        """
        Add a job for a validated payload model.

        Args:
            payload: One of the JobPayload variants
            max_attempts: Attempts before the job is marked FAILED
            delay_seconds: Hold the job back this long
        """
        now = utcnow()
        job = FactJobDB(
            id=str(uuid4()),
            tenant_id=payload.tenant_id,
            job_type=payload.job_type,
            payload=payload.model_dump(mode="json"),
            correlation_id=payload.correlation_id,
            status=JobStatus.PENDING,
            attempts=0,
            max_attempts=max_attempts,
            available_at=now + timedelta(seconds=delay_seconds),
            created_at=now,
        )
        self.db.add(job)
        self.db.flush()
        logger.info(f"Enqueued {job.job_type} job {job.id} for tenant {job.tenant_id}")
        return job

    # =========================================================================
    # Worker side
    # =========================================================================

    def _try_claim(self, job_id: str) -> bool:
        claimed = (
            self.db.query(FactJobDB)
            .filter(FactJobDB.id == job_id, FactJobDB.status == JobStatus.PENDING)
            .update(
                {
                    FactJobDB.status: JobStatus.RUNNING,
                    FactJobDB.attempts: FactJobDB.attempts + 1,
                    FactJobDB.started_at: utcnow(),
                },
                synchronize_session=False,
            )
        )
        self.db.commit()
        return claimed == 1

    def claim(self, job_id: str) -> Optional[FactJobDB]:
        """Claim one specific job if it is still PENDING."""
        if not self._try_claim(job_id):
            return None
        return self.get(job_id)

    def claim_next(self, job_types: Optional[Iterable[str]] = None) -> Optional[FactJobDB]:
        """Claim the oldest available job, optionally restricted to some job types."""
        query = self.db.query(FactJobDB.id).filter(
            FactJobDB.status == JobStatus.PENDING,
            FactJobDB.available_at <= utcnow(),
        )
        if job_types:
            query = query.filter(FactJobDB.job_type.in_(list(job_types)))

        candidates = [row.id for row in query.order_by(FactJobDB.available_at).limit(10).all()]
        for job_id in candidates:
            if self._try_claim(job_id):
                return self.get(job_id)
        return None

    def complete(self, job_id: str, result: Optional[Dict[str, Any]] = None) -> FactJobDB:
        job = self.get(job_id)
        job.status = JobStatus.COMPLETED
        job.result = result or {}
        job.last_error = None
        job.finished_at = utcnow()
        self.db.commit()
        return job

    def fail(
        self,
        job_id: str,
        error: str,
        retryable: bool = True,
        error_code: Optional[str] = None,
        retry_after_seconds: Optional[float] = None,
    ) -> FactJobDB:
        """
        Record a failed attempt.

        Re-queues with backoff while attempts remain and the error is retryable;
        otherwise the job is FAILED for good. `retry_after_seconds` (from a
        rate-limited generator) is a floor on the backoff delay.
        """
        job = self.get(job_id)
        job.last_error = error
        job.result = {"errorCode": error_code} if error_code else None

        if retryable and job.attempts < job.max_attempts:
            delay = backoff_delay(job.attempts)
            if retry_after_seconds is not None:
                delay = max(delay, retry_after_seconds)
            job.status = JobStatus.PENDING
            job.available_at = utcnow() + timedelta(seconds=delay)
            logger.warning(
                f"Job {job.id} ({job.job_type}, tenant {job.tenant_id}) failed attempt "
                f"{job.attempts}/{job.max_attempts}; retrying in {delay:.1f}s: {error}"
            )
        else:
            job.status = JobStatus.FAILED
            job.finished_at = utcnow()
            logger.error(
                f"Job {job.id} ({job.job_type}, tenant {job.tenant_id}) failed permanently "
                f"after {job.attempts} attempt(s): {error}"
            )

        self.db.commit()
        return job

    def get(self, job_id: str, tenant_id: Optional[str] = None) -> Optional[FactJobDB]:
        query = self.db.query(FactJobDB).filter(FactJobDB.id == job_id)
        if tenant_id is not None:
            query = query.filter(FactJobDB.tenant_id == tenant_id)
        return query.populate_existing().first()


def wait_for_job(
    session_factory: sessionmaker,
    job_id: str,
    timeout: float = RECOMPUTE_WAIT_SECONDS,
    initial_interval: float = 0.05,
    max_interval: float = 0.5,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> Optional[Dict[str, Any]]:
    """
    Poll until a job reaches COMPLETED or FAILED, backing off between polls.

    Each poll uses a fresh session so it sees other workers' commits.

    Returns:
        The job as a dict, or None if it was not terminal within `timeout`
    """
    deadline = clock() + timeout
    interval = initial_interval

    while True:
        db = session_factory()
        try:
            job = db.query(FactJobDB).filter(FactJobDB.id == job_id).first()
            if job is not None and job.status in TERMINAL_JOB_STATUSES:
                return job.to_dict()
        finally:
            db.close()

        remaining = deadline - clock()
        if remaining <= 0:
            return None
        sleep(min(interval, remaining))
        interval = min(interval * 2, max_interval)


class JobDispatcher:
    """
    Enqueue a job and wait for its outcome within a bounded time.

    When `run_inline` is given (the API process running recomputes itself),
    the job is executed right away through it; otherwise an external worker
    is expected to pick it up.
    """

    def __init__(
        self,
        db: Session,
        session_factory: sessionmaker,
        run_inline: Optional[Callable[[str], Any]] = None,
        wait_seconds: float = RECOMPUTE_WAIT_SECONDS,
    ):
        self.db = db
        self.session_factory = session_factory
        self.run_inline = run_inline
        self.wait_seconds = wait_seconds

    def enqueue(self, payload) -> FactJobDB:
        """Enqueue and commit so other sessions can claim the job."""
        job = JobQueue(self.db).enqueue(payload)
        self.db.commit()
        return job

    def dispatch_and_wait(self, payload) -> Dict[str, Any]:
        """
        Returns:
            {"jobId": ..., "job": terminal job dict or None on timeout}
        """
        job_id = self.enqueue(payload).id
        if self.run_inline is not None:
            self.run_inline(job_id)
        finished = wait_for_job(self.session_factory, job_id, timeout=self.wait_seconds)
        return {"jobId": job_id, "job": finished}
