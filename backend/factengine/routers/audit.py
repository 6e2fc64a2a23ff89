"""
Audit API Routes

Read-only access to the tenant's append-only audit trail.
"""
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..auth import RequestContext, get_request_context
from ..database import get_db
from ..models.db_models import ActorType
from ..services.audit import AuditQueryService


router = APIRouter(prefix="/audit", tags=["audit"])


def _as_utc_naive(value: Optional[datetime]) -> Optional[datetime]:
    """Audit timestamps are stored as naive UTC."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


@router.get("/events", response_model=dict)
async def list_audit_events(
    actor_type: Optional[ActorType] = None,
    correlation_id: Optional[str] = None,
    module: Optional[str] = None,
    entity_key: Optional[str] = None,
    event_type: Optional[str] = Query(None, alias="type"),
    created_from: Optional[datetime] = Query(None, alias="from"),
    created_to: Optional[datetime] = Query(None, alias="to"),
    limit: int = Query(50, ge=1, le=200),
    cursor: Optional[str] = None,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
):
    """
    List audit events for the caller's tenant, newest first.

    `entity_key` matches the canonical key string, e.g. `loanId=loan-1`.
    Pass the returned `nextCursor` to fetch the next page.
    """
    return AuditQueryService(db).list(
        ctx.tenant_id,
        actor_type=actor_type,
        correlation_id=correlation_id,
        module=module.upper() if module else None,
        entity_key=entity_key,
        event_type=event_type,
        created_from=_as_utc_naive(created_from),
        created_to=_as_utc_naive(created_to),
        limit=limit,
        cursor=cursor,
    )
