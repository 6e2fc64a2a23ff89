"""
Scheduler API Routes

Internal endpoints for system-automatic tasks: the nightly tenant refresh
trigger and a one-shot worker drain for deployments without a long-running
worker process.
"""
import logging
from typing import List, Literal
from uuid import uuid4

from fastapi import APIRouter, Depends, HTTPException, Header
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..config import INTERNAL_API_KEY
from ..database import get_db
from ..dependencies import get_worker
from ..models.jobs import NightlyRefreshTenantPayload
from ..services.jobs import Worker
from ..services.queue import JobQueue


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/internal", tags=["scheduler"])


# =============================================================================
# INTERNAL API KEY VALIDATION
# =============================================================================

async def verify_internal_key(x_internal_key: str = Header(...)):
    """Verify internal API key for scheduler endpoints."""
    if x_internal_key != INTERNAL_API_KEY:
        raise HTTPException(status_code=403, detail="Invalid internal API key")
    return True


# =============================================================================
# REQUEST MODELS
# =============================================================================

class NightlyRefreshRequest(BaseModel):
    tenant_ids: List[str] = Field(..., min_length=1)
    reason: Literal["SCHEDULED_NIGHTLY", "MANUAL"] = "SCHEDULED_NIGHTLY"


class RunWorkerRequest(BaseModel):
    max_jobs: int = Field(default=10, ge=1, le=100)


# =============================================================================
# SCHEDULER ENDPOINTS (SYSTEM-ONLY)
# =============================================================================

@router.post("/nightly-refresh", response_model=dict)
async def trigger_nightly_refresh(
    request: NightlyRefreshRequest,
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    """
    Enqueue one NIGHTLY_REFRESH_TENANT job per tenant.

    System-automatic - the jobs are picked up by the workers.
    """
    queue = JobQueue(db)
    correlation_id = str(uuid4())

    jobs = []
    for tenant_id in dict.fromkeys(request.tenant_ids):
        payload = NightlyRefreshTenantPayload(
            tenant_id=tenant_id,
            reason=request.reason,
            correlation_id=correlation_id,
        )
        job = queue.enqueue(payload)
        jobs.append({"tenantId": tenant_id, "jobId": job.id})

    db.commit()
    logger.info(f"Nightly refresh enqueued for {len(jobs)} tenant(s) ({request.reason})")

    return {
        "task": "nightly_refresh",
        "correlationId": correlation_id,
        "jobs": jobs,
    }


@router.post("/run-worker-once", response_model=dict)
def run_worker_once(
    request: RunWorkerRequest,
    worker: Worker = Depends(get_worker),
    _: bool = Depends(verify_internal_key),
):
    """
    Drain up to `max_jobs` available jobs in this process.
    """
    processed = []
    for _slot in range(request.max_jobs):
        job = worker.run_once()
        if job is None:
            break
        processed.append({"jobId": job["id"], "jobType": job["jobType"], "status": job["status"]})

    return {
        "task": "run_worker_once",
        "processed": len(processed),
        "jobs": processed,
    }
