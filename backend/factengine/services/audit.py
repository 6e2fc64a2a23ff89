"""
Audit Sink

Append-only event log for every state transition in the fact engine.

Core Principles:
1. One record per transition (job started/completed/failed, drift detected,
   explanation generated, cache hit, rate-limit denial).
2. Append-only - no updates or deletes.
3. Audit is a log of attempts, not a dedup index: a retried job writes its
   started/failed events again.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from ..models.db_models import AuditEventDB, ActorType, utcnow


# Worker service identity
SERVICE_CLIENT_ID = "fact-engine-worker"


class AuditEventType:
    """Audit event type names."""
    JOB_STARTED = "JOB_STARTED"
    JOB_COMPLETED = "JOB_COMPLETED"
    JOB_FAILED = "JOB_FAILED"
    FACT_DRIFT_DETECTED = "FACT_DRIFT_DETECTED"
    EXPLAIN_CACHE_HIT = "EXPLAIN_CACHE_HIT"
    EXPLANATION_GENERATED = "EXPLANATION_GENERATED"
    AI_RATE_LIMIT_DENIED = "AI_RATE_LIMIT_DENIED"
    OPS_JOB_STARTED = "OPS_JOB_STARTED"
    OPS_JOB_COMPLETED = "OPS_JOB_COMPLETED"
    OPS_JOB_FAILED = "OPS_JOB_FAILED"


@dataclass(frozen=True)
class Actor:
    """Who is acting: a user (with id) or a service (with client id)."""
    actor_type: ActorType
    actor_id: Optional[str] = None
    client_id: Optional[str] = None
    roles: List[str] = field(default_factory=list)

    @classmethod
    def service(cls, client_id: str = SERVICE_CLIENT_ID) -> "Actor":
        return cls(actor_type=ActorType.SERVICE, client_id=client_id)

    @classmethod
    def user(cls, user_id: str, roles: Optional[List[str]] = None) -> "Actor":
        return cls(actor_type=ActorType.USER, actor_id=user_id, roles=list(roles or []))


class AuditSink:
    """Writes audit events. Never reads, never edits."""

    def __init__(self, db: Session):
        self.db = db

    def record(
        self,
        tenant_id: str,
        event_type: str,
        summary: str,
        actor: Actor,
        payload: Optional[Dict[str, Any]] = None,
        evidence_ref: Optional[str] = None,
        correlation_id: Optional[str] = None,
        module: Optional[str] = None,
        entity_key: Optional[str] = None,
    ) -> AuditEventDB:
        """
        Append one audit event.

        Args:
            tenant_id: Tenant scope
            event_type: One of AuditEventType
            summary: Human-readable one-liner
            actor: USER or SERVICE actor
            payload: Structured details (hashes, counters, error message)
            evidence_ref: Primary entity id the event is about
            correlation_id: Trace token of the logical operation
            module: Fact domain tag, for filtering
            entity_key: Canonical entity key, for filtering

        Returns:
            The created audit record (flushed, not committed)
        """
        event = AuditEventDB(
            id=str(uuid4()),
            tenant_id=tenant_id,
            actor_id=actor.actor_id,
            actor_type=actor.actor_type,
            actor_client_id=actor.client_id,
            type=event_type,
            summary=summary,
            evidence_ref=evidence_ref,
            payload=payload or {},
            module=module,
            entity_key=entity_key,
            correlation_id=correlation_id,
            created_at=utcnow(),
        )
        self.db.add(event)
        self.db.flush()
        return event


class AuditQueryService:
    """
    Read-only projection of the audit log.

    Tenant-scoped, newest first, cursor-paginated on (created_at, id).
    """

    MAX_LIMIT = 200

    def __init__(self, db: Session):
        self.db = db

    def list(
        self,
        tenant_id: str,
        actor_type: Optional[ActorType] = None,
        correlation_id: Optional[str] = None,
        module: Optional[str] = None,
        entity_key: Optional[str] = None,
        event_type: Optional[str] = None,
        created_from: Optional[datetime] = None,
        created_to: Optional[datetime] = None,
        limit: int = 50,
        cursor: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        List audit events with filters.

        Args:
            cursor: id of the last item of the previous page

        Returns:
            {"items": [...], "nextCursor": id or None}
        """
        limit = max(1, min(limit, self.MAX_LIMIT))

        query = self.db.query(AuditEventDB).filter(AuditEventDB.tenant_id == tenant_id)

        if actor_type:
            query = query.filter(AuditEventDB.actor_type == actor_type)
        if correlation_id:
            query = query.filter(AuditEventDB.correlation_id == correlation_id)
        if module:
            query = query.filter(AuditEventDB.module == module)
        if entity_key:
            query = query.filter(AuditEventDB.entity_key == entity_key)
        if event_type:
            query = query.filter(AuditEventDB.type == event_type)
        if created_from:
            query = query.filter(AuditEventDB.created_at >= created_from)
        if created_to:
            query = query.filter(AuditEventDB.created_at <= created_to)

        if cursor:
            anchor = (
                self.db.query(AuditEventDB)
                .filter(AuditEventDB.id == cursor, AuditEventDB.tenant_id == tenant_id)
                .first()
            )
            if anchor is not None:
                query = query.filter(
                    or_(
                        AuditEventDB.created_at < anchor.created_at,
                        and_(
                            AuditEventDB.created_at == anchor.created_at,
                            AuditEventDB.id < anchor.id,
                        ),
                    )
                )

        items = (
            query.order_by(AuditEventDB.created_at.desc(), AuditEventDB.id.desc())
            .limit(limit)
            .all()
        )

        next_cursor = items[-1].id if len(items) == limit else None

        return {
            "items": [item.to_dict() for item in items],
            "nextCursor": next_cursor,
        }
