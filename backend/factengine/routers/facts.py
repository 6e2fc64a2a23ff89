"""
Fact API Routes

Latest snapshot lookup, snapshot history, on-demand recompute and
cached explanations, per fact domain.

Module path segment: TRADING | ESG | SERVICING | PORTFOLIO (case-insensitive).
"""
from typing import Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..auth import RequestContext, get_request_context
from ..database import get_db
from ..dependencies import get_dispatcher, get_explanation_generator, get_rate_limiter
from ..errors import FactsNotReadyError, error_for_code
from ..models.facts import FactModule, Verbosity, normalize_entity_keys
from ..models.jobs import recompute_payload_for
from ..services.explain import ExplainOrchestrator
from ..services.queue import JobDispatcher
from ..services.snapshots import FactSnapshotStore


router = APIRouter(prefix="/facts", tags=["facts"])


# =============================================================================
# REQUEST MODELS
# =============================================================================

class EntityKeysRequest(BaseModel):
    """Entity keys; which ones are required depends on the module."""
    loan_id: Optional[str] = Field(None, description="Loan id (TRADING, ESG, SERVICING)")
    kpi_id: Optional[str] = Field(None, description="ESG KPI id (ESG)")
    covenant_id: Optional[str] = Field(None, description="Covenant id (SERVICING)")
    portfolio_id: Optional[str] = Field(None, description="Portfolio id (PORTFOLIO, defaults to 'default')")


class RecomputeRequest(EntityKeysRequest):
    wait: bool = Field(default=False, description="Return the snapshot instead of a job handle")


class ExplainRequest(EntityKeysRequest):
    verbosity: Verbosity = Field(default=Verbosity.STANDARD)


# =============================================================================
# HELPERS
# =============================================================================

def parse_module(module: str) -> FactModule:
    try:
        return FactModule(module.upper())
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Unknown fact module: {module}")


def entity_keys_for(
    module: FactModule,
    loan_id: Optional[str] = None,
    kpi_id: Optional[str] = None,
    covenant_id: Optional[str] = None,
    portfolio_id: Optional[str] = None,
) -> Dict[str, str]:
    raw = {
        "loanId": loan_id,
        "kpiId": kpi_id,
        "covenantId": covenant_id,
        "portfolioId": portfolio_id,
    }
    try:
        return normalize_entity_keys(module, {k: v for k, v in raw.items() if v})
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))


def _keys_from_request(module: FactModule, request: EntityKeysRequest) -> Dict[str, str]:
    return entity_keys_for(
        module, request.loan_id, request.kpi_id, request.covenant_id, request.portfolio_id
    )


# =============================================================================
# SNAPSHOTS
# =============================================================================

@router.get("/{module}/latest", response_model=dict)
async def get_latest_facts(
    module: str,
    loan_id: Optional[str] = None,
    kpi_id: Optional[str] = None,
    covenant_id: Optional[str] = None,
    portfolio_id: Optional[str] = None,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
):
    """Latest fact snapshot for an entity."""
    fact_module = parse_module(module)
    keys = entity_keys_for(fact_module, loan_id, kpi_id, covenant_id, portfolio_id)

    snapshot = FactSnapshotStore(db, fact_module).get_latest(ctx.tenant_id, keys)
    if snapshot is None:
        raise HTTPException(status_code=404, detail="No fact snapshot for this entity")

    return snapshot.to_dict()


@router.get("/{module}/snapshots", response_model=dict)
async def list_snapshots(
    module: str,
    loan_id: Optional[str] = None,
    kpi_id: Optional[str] = None,
    covenant_id: Optional[str] = None,
    portfolio_id: Optional[str] = None,
    limit: int = Query(10, ge=1, le=100),
    cursor: Optional[str] = None,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
):
    """Snapshot history for an entity, newest first."""
    fact_module = parse_module(module)
    keys = entity_keys_for(fact_module, loan_id, kpi_id, covenant_id, portfolio_id)

    items = FactSnapshotStore(db, fact_module).list_for_entity(ctx.tenant_id, keys, limit, cursor)
    return {
        "items": [s.to_dict() for s in items],
        "nextCursor": items[-1].id if len(items) == limit else None,
    }


@router.post("/{module}/recompute")
def recompute_facts(
    module: str,
    request: RecomputeRequest,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
    dispatcher: JobDispatcher = Depends(get_dispatcher),
):
    """
    Enqueue a recompute.

    With `wait: true` the snapshot is returned once the job finishes (bounded
    wait), together with whether it drifted from the previous one. Otherwise
    202 with a job handle to poll at /jobs/{job_id}.
    """
    fact_module = parse_module(module)
    keys = _keys_from_request(fact_module, request)
    payload = recompute_payload_for(
        fact_module, ctx.tenant_id, keys, correlation_id=ctx.correlation_id, actor_user_id=ctx.user_id
    )

    if not request.wait:
        job = dispatcher.enqueue(payload)
        return JSONResponse(
            status_code=202,
            content={"jobId": job.id, "status": job.status.value, "correlationId": ctx.correlation_id},
        )

    outcome = dispatcher.dispatch_and_wait(payload)
    job = outcome["job"]
    if job is None:
        raise FactsNotReadyError("Recompute did not finish in time; poll the job", job_id=outcome["jobId"])
    if job["status"] != "COMPLETED":
        raise error_for_code((job.get("result") or {}).get("errorCode"), job.get("lastError") or "Recompute failed")

    result = job["result"]
    snapshot = FactSnapshotStore(db, fact_module).get_by_id(ctx.tenant_id, result["snapshotId"])
    return {
        "jobId": outcome["jobId"],
        "snapshot": snapshot.to_dict(),
        "created": result["created"],
        "drifted": result["drifted"],
    }


# =============================================================================
# EXPLANATIONS
# =============================================================================

@router.post("/{module}/explain", response_model=dict)
def explain_facts(
    module: str,
    request: ExplainRequest,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
    dispatcher: JobDispatcher = Depends(get_dispatcher),
    generator=Depends(get_explanation_generator),
    rate_limiter=Depends(get_rate_limiter),
):
    """
    Explain the latest facts for an entity.

    Audience comes from the caller's roles. Served from cache when the fact
    hash, audience and verbosity were explained before.
    """
    fact_module = parse_module(module)
    keys = _keys_from_request(fact_module, request)

    orchestrator = ExplainOrchestrator(db, generator, dispatcher=dispatcher, rate_limiter=rate_limiter)
    result = orchestrator.explain(
        ctx.tenant_id,
        fact_module,
        keys,
        ctx.audience,
        request.verbosity,
        ctx.actor,
        ctx.correlation_id,
    )
    return result.model_dump(mode="json")


@router.get("/{module}/explain/latest", response_model=dict)
async def get_latest_explanation(
    module: str,
    loan_id: Optional[str] = None,
    kpi_id: Optional[str] = None,
    covenant_id: Optional[str] = None,
    portfolio_id: Optional[str] = None,
    verbosity: Optional[Verbosity] = None,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
    generator=Depends(get_explanation_generator),
):
    """Most recent cached explanation for an entity, with a staleness flag."""
    fact_module = parse_module(module)
    keys = entity_keys_for(fact_module, loan_id, kpi_id, covenant_id, portfolio_id)

    cached = ExplainOrchestrator(db, generator).get_cached_latest(
        ctx.tenant_id, fact_module, keys, ctx.audience, verbosity
    )
    if cached is None:
        raise HTTPException(status_code=404, detail="No cached explanation for this entity")
    return cached
