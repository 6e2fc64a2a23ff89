"""
Fact Engine - SQLAlchemy ORM Models
Persistent storage for fact snapshots, explanation cache, audit trail and jobs
"""
from datetime import datetime, timezone
from enum import Enum
from sqlalchemy import (
    Column, String, Integer, DateTime, Text, JSON, Index, UniqueConstraint,
    Enum as SQLEnum,
)
from sqlalchemy.orm import declared_attr

from ..database import Base
from .facts import FactModule


def utcnow() -> datetime:
    """Naive UTC timestamp; all DateTime columns store UTC without tzinfo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# =============================================================================
# ENUMS
# =============================================================================

class ActorType(str, Enum):
    """Who caused an audit event."""
    USER = "USER"
    SERVICE = "SERVICE"


class JobStatus(str, Enum):
    """Lifecycle of a queued job."""
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


TERMINAL_JOB_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED)


# =============================================================================
# FACT SNAPSHOTS
# =============================================================================
# One table per fact domain, identical shape. Rows are immutable:
# created once per (tenant_id, fact_hash), never updated, never deleted.
# "Latest" for an entity = max(computed_at) over its rows.
# =============================================================================

class FactSnapshotMixin:
    """Columns shared by every fact snapshot table."""

    id = Column(String(36), primary_key=True)  # UUID
    tenant_id = Column(String(64), nullable=False)

    # Composite entity key (e.g. {"loanId": "l1", "kpiId": "k1"}) plus its canonical string form
    entity_keys = Column(JSON, nullable=False)
    entity_key = Column(String(255), nullable=False)

    # Fact content (the hashed core) and provenance
    payload = Column(JSON, nullable=False)
    fact_version = Column(Integer, nullable=False, default=1)
    fact_hash = Column(String(64), nullable=False)
    computed_at = Column(DateTime, nullable=False, default=utcnow)
    computed_by = Column(String(100), nullable=False)
    correlation_id = Column(String(64), nullable=True)

    @declared_attr
    def __table_args__(cls):
        return (
            UniqueConstraint("tenant_id", "fact_hash", name=f"uq_{cls.__tablename__}_tenant_hash"),
            Index(f"ix_{cls.__tablename__}_entity_latest", "tenant_id", "entity_key", "computed_at"),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenantId": self.tenant_id,
            "entityKeys": self.entity_keys,
            "payload": self.payload,
            "factVersion": self.fact_version,
            "factHash": self.fact_hash,
            "computedAt": self.computed_at.isoformat() if self.computed_at else None,
            "computedBy": self.computed_by,
            "correlationId": self.correlation_id,
        }


class TradingReadinessFactSnapshotDB(FactSnapshotMixin, Base):
    """Trading readiness facts per loan."""
    __tablename__ = "trading_readiness_fact_snapshots"


class EsgKpiFactSnapshotDB(FactSnapshotMixin, Base):
    """ESG KPI evaluation facts per loan + KPI."""
    __tablename__ = "esg_kpi_fact_snapshots"


class CovenantEvaluationFactSnapshotDB(FactSnapshotMixin, Base):
    """Covenant evaluation facts per loan + covenant."""
    __tablename__ = "covenant_evaluation_fact_snapshots"


class PortfolioRiskFactSnapshotDB(FactSnapshotMixin, Base):
    """Portfolio risk aggregate facts per portfolio."""
    __tablename__ = "portfolio_risk_fact_snapshots"


SNAPSHOT_TABLES = {
    FactModule.TRADING: TradingReadinessFactSnapshotDB,
    FactModule.ESG: EsgKpiFactSnapshotDB,
    FactModule.SERVICING: CovenantEvaluationFactSnapshotDB,
    FactModule.PORTFOLIO: PortfolioRiskFactSnapshotDB,
}


# =============================================================================
# EXPLANATION CACHE
# =============================================================================

class ExplanationCacheDB(Base):
    """
    Generated explanation of a fact, keyed per tenant by
    (fact_hash, audience, verbosity, explain_version, provider).

    The value is a pure function of the key, so entries never expire.
    """
    __tablename__ = "explanation_cache"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "fact_hash", "audience", "verbosity", "explain_version", "provider",
            name="uq_explanation_cache_key",
        ),
        Index("ix_explanation_cache_entity", "tenant_id", "module", "entity_key", "generated_at"),
    )

    id = Column(String(36), primary_key=True)  # UUID

    # Cache key
    tenant_id = Column(String(64), nullable=False)
    fact_hash = Column(String(64), nullable=False)
    audience = Column(String(50), nullable=False)
    verbosity = Column(String(20), nullable=False)
    explain_version = Column(Integer, nullable=False, default=1)
    provider = Column(String(100), nullable=False)

    # Cached value: {summary, explanation[], recommendations[], confidence, version}
    result = Column(JSON, nullable=False)

    # Provenance (first writer wins)
    module = Column(String(20), nullable=False)
    entity_key = Column(String(255), nullable=False)
    correlation_id = Column(String(64), nullable=True)
    generated_at = Column(DateTime, nullable=False, default=utcnow)


# =============================================================================
# AUDIT TRAIL
# =============================================================================

class AuditEventDB(Base):
    """
    Append-only audit record.
    Written once by a worker or request handler; never updated or deleted.
    """
    __tablename__ = "audit_events"
    __table_args__ = (
        Index("ix_audit_events_tenant_created", "tenant_id", "created_at"),
    )

    id = Column(String(36), primary_key=True)  # UUID
    tenant_id = Column(String(64), nullable=False)

    # Actor attribution
    actor_id = Column(String(64), nullable=True)  # NULL for SERVICE actions
    actor_type = Column(SQLEnum(ActorType), nullable=False)
    actor_client_id = Column(String(100), nullable=True)

    # Event details
    type = Column(String(64), nullable=False, index=True)  # JOB_STARTED, FACT_DRIFT_DETECTED, ...
    summary = Column(Text, nullable=False)
    evidence_ref = Column(String(255), nullable=True)
    payload = Column(JSON, nullable=True)

    # Filter columns
    module = Column(String(20), nullable=True, index=True)
    entity_key = Column(String(255), nullable=True, index=True)

    # Tracing
    correlation_id = Column(String(64), nullable=True, index=True)

    # Timestamps (immutable)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenantId": self.tenant_id,
            "actorId": self.actor_id,
            "actorType": self.actor_type.value if self.actor_type else None,
            "actorClientId": self.actor_client_id,
            "type": self.type,
            "summary": self.summary,
            "evidenceRef": self.evidence_ref,
            "payload": self.payload,
            "module": self.module,
            "entityKey": self.entity_key,
            "correlationId": self.correlation_id,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


# =============================================================================
# JOB QUEUE
# =============================================================================

class FactJobDB(Base):
    """
    Queued unit of work for the fact workers.
    Claimed by a conditional PENDING -> RUNNING update; retried with backoff.
    """
    __tablename__ = "fact_jobs"
    __table_args__ = (
        Index("ix_fact_jobs_claim", "status", "available_at"),
    )

    id = Column(String(36), primary_key=True)  # UUID
    tenant_id = Column(String(64), nullable=False, index=True)

    # Task Details
    job_type = Column(String(50), nullable=False)
    payload = Column(JSON, nullable=False)
    correlation_id = Column(String(64), nullable=True)

    # Scheduling
    status = Column(SQLEnum(JobStatus), nullable=False, default=JobStatus.PENDING)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    available_at = Column(DateTime, nullable=False, default=utcnow)

    # Outcome
    result = Column(JSON, nullable=True)
    last_error = Column(Text, nullable=True)

    # Timestamps
    created_at = Column(DateTime, nullable=False, default=utcnow)
    started_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenantId": self.tenant_id,
            "jobType": self.job_type,
            "status": self.status.value if self.status else None,
            "attempts": self.attempts,
            "maxAttempts": self.max_attempts,
            "result": self.result,
            "lastError": self.last_error,
            "correlationId": self.correlation_id,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
        }
