"""
Job Handlers

One handler per job family. Every handler run is wrapped in an audited
lifecycle:

    JOB_STARTED  -> process() -> JOB_COMPLETED
                on error -> JOB_FAILED (error message) -> re-raise

The started event is committed before any work, and the failed event is
committed after rolling back the partial work, so a crash mid-job still
leaves a trace. Retries write the lifecycle again.
"""
import logging
from typing import Any, Dict, Mapping, Optional, Tuple

from sqlalchemy.orm import Session

from ..audit import Actor, AuditEventType, AuditSink
from ..drift import DriftDetector
from ..explain.generator import ExplanationGenerator
from ..explain.orchestrator import ExplainOrchestrator
from ..hashing import compute_fact_hash
from ..producers.registry import ProducerRegistry
from ..queue import JobQueue
from ..snapshots import FactSnapshotStore, SnapshotMetadata
from ...config import AUTO_EXPLAIN_ON_DRIFT
from ...errors import UpstreamNotFoundError
from ...models.db_models import FactJobDB
from ...models.facts import Audience, FactModule, Verbosity, entity_key_string
from ...models.jobs import ExplainRecomputePayload


logger = logging.getLogger(__name__)


# =============================================================================
# FACT RECOMPUTE
# =============================================================================

class FactRecomputer:
    """
    Produce, hash, store and drift-check one entity's fact.

    Writes to the session but never commits.
    """

    def __init__(
        self,
        db: Session,
        registry: ProducerRegistry,
        actor: Actor,
        auto_explain_on_drift: bool = AUTO_EXPLAIN_ON_DRIFT,
    ):
        self.db = db
        self.registry = registry
        self.actor = actor
        self.auto_explain_on_drift = auto_explain_on_drift
        self.audit = AuditSink(db)

    def recompute(
        self,
        tenant_id: str,
        module: FactModule,
        entity_keys: Mapping[str, str],
        correlation_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        keys = dict(entity_keys)
        producer = self.registry.get(module)

        fact = producer.compute(tenant_id, keys)
        core = fact.fact_core(keys)
        fact_hash = compute_fact_hash(core)

        store = FactSnapshotStore(self.db, module)
        previous = store.get_latest(tenant_id, keys)
        upsert = store.upsert_by_hash(
            tenant_id,
            keys,
            core,
            fact_hash,
            SnapshotMetadata(
                computed_by=producer.name,
                fact_version=fact.fact_version,
                correlation_id=correlation_id,
            ),
        )

        drift_event = DriftDetector(self.audit).check(
            tenant_id=tenant_id,
            module=module,
            entity_keys=keys,
            previous=previous,
            current=upsert.snapshot,
            created=upsert.created,
            actor=self.actor,
            correlation_id=correlation_id,
        )

        if drift_event is not None and self.auto_explain_on_drift:
            JobQueue(self.db).enqueue(
                ExplainRecomputePayload(
                    tenant_id=tenant_id,
                    correlation_id=correlation_id,
                    module=module,
                    entity_keys=keys,
                    fact_hash=fact_hash,
                    audience=Audience.DEFAULT,
                    verbosity=Verbosity.STANDARD,
                )
            )

        return {
            "module": module.value,
            "entityKeys": keys,
            "snapshotId": upsert.snapshot.id,
            "factHash": fact_hash,
            "created": upsert.created,
            "drifted": drift_event is not None,
        }


# =============================================================================
# HANDLERS
# =============================================================================

class JobHandler:
    """Base class: audited lifecycle around `process`."""

    started_event = AuditEventType.JOB_STARTED
    completed_event = AuditEventType.JOB_COMPLETED
    failed_event = AuditEventType.JOB_FAILED

    def __init__(
        self,
        registry: ProducerRegistry,
        generator: Optional[ExplanationGenerator] = None,
        auto_explain_on_drift: bool = AUTO_EXPLAIN_ON_DRIFT,
    ):
        self.registry = registry
        self.generator = generator
        self.auto_explain_on_drift = auto_explain_on_drift

    def audit_tags(self, payload) -> Tuple[Optional[str], Optional[str]]:
        """(module, entity_key) recorded on lifecycle events."""
        return None, None

    def process(self, db: Session, job: FactJobDB, payload, actor: Actor) -> Dict[str, Any]:
        raise NotImplementedError

    def run(self, db: Session, job: FactJobDB, payload) -> Dict[str, Any]:
        actor = Actor.service()
        audit = AuditSink(db)
        module, entity_key = self.audit_tags(payload)
        base = {"jobId": job.id, "jobType": job.job_type, "attempt": job.attempts}

        audit.record(
            tenant_id=payload.tenant_id,
            event_type=self.started_event,
            summary=f"{job.job_type} started (attempt {job.attempts}/{job.max_attempts})",
            actor=actor,
            payload=base,
            evidence_ref=job.id,
            correlation_id=payload.correlation_id,
            module=module,
            entity_key=entity_key,
        )
        db.commit()

        try:
            result = self.process(db, job, payload, actor)
            audit.record(
                tenant_id=payload.tenant_id,
                event_type=self.completed_event,
                summary=f"{job.job_type} completed",
                actor=actor,
                payload={**base, **result},
                evidence_ref=job.id,
                correlation_id=payload.correlation_id,
                module=module,
                entity_key=entity_key,
            )
            db.commit()
            return result
        except Exception as e:
            db.rollback()
            audit.record(
                tenant_id=payload.tenant_id,
                event_type=self.failed_event,
                summary=f"{job.job_type} failed: {e}",
                actor=actor,
                payload={**base, "error": str(e), "errorType": type(e).__name__},
                evidence_ref=job.id,
                correlation_id=payload.correlation_id,
                module=module,
                entity_key=entity_key,
            )
            db.commit()
            raise


class RecomputeHandler(JobHandler):
    """TRADING_READINESS / ESG_KPI / COVENANT / PORTFOLIO_RISK recompute jobs."""

    def audit_tags(self, payload):
        return payload.module.value, entity_key_string(payload.entity_keys())

    def process(self, db, job, payload, actor):
        recomputer = FactRecomputer(db, self.registry, actor, self.auto_explain_on_drift)
        return recomputer.recompute(
            payload.tenant_id, payload.module, payload.entity_keys(), payload.correlation_id
        )


class ExplainHandler(JobHandler):
    """EXPLAIN_RECOMPUTE: make sure an explanation exists for a known fact hash."""

    def audit_tags(self, payload):
        return payload.module.value, entity_key_string(payload.entity_keys)

    def process(self, db, job, payload, actor):
        if self.generator is None:
            raise RuntimeError("Explain job received but no explanation generator is configured")

        snapshot = FactSnapshotStore(db, payload.module).get_by_hash(payload.tenant_id, payload.fact_hash)
        if snapshot is None:
            raise UpstreamNotFoundError(f"Snapshot {payload.fact_hash[:12]} not found")

        orchestrator = ExplainOrchestrator(db, self.generator)
        result = orchestrator.explain_snapshot(
            payload.tenant_id,
            payload.module,
            snapshot,
            payload.audience,
            payload.verbosity,
            actor,
            payload.correlation_id,
        )
        return {
            "factHash": payload.fact_hash,
            "audience": payload.audience.value,
            "verbosity": payload.verbosity.value,
            "summary": result.summary,
        }
