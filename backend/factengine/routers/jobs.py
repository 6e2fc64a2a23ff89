"""
Job API Routes

Status of queued recompute / explain / refresh jobs.
"""
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..auth import RequestContext, get_request_context
from ..database import get_db
from ..services.queue import JobQueue


router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.get("/{job_id}", response_model=dict)
async def get_job(
    job_id: str,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
):
    job = JobQueue(db).get(job_id, tenant_id=ctx.tenant_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return job.to_dict()
