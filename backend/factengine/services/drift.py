"""
Drift Detector

Decides whether a freshly persisted snapshot changed the fact for its entity
and, if so, writes a FACT_DRIFT_DETECTED audit event.

Drift requires a predecessor: the first snapshot of an entity is never drift,
and an idempotent upsert (hash already known) is never drift.
"""
import logging
from dataclasses import dataclass
from typing import Mapping, Optional

from .audit import Actor, AuditEventType, AuditSink
from ..models.db_models import AuditEventDB, FactSnapshotMixin
from ..models.facts import FactModule, entity_key_string


logger = logging.getLogger(__name__)

DRIFT_REASON_RECOMPUTE = "RECOMPUTE_CHANGED_FACT"


@dataclass(frozen=True)
class DriftDecision:
    drift: bool
    prev_hash: Optional[str]
    next_hash: str


def detect(prev_hash: Optional[str], next_hash: str) -> DriftDecision:
    """Drift means a previous hash exists and differs from the new one."""
    return DriftDecision(
        drift=bool(prev_hash) and prev_hash != next_hash,
        prev_hash=prev_hash,
        next_hash=next_hash,
    )


class DriftDetector:
    """Compares a new snapshot to its predecessor and records drift."""

    def __init__(self, audit: AuditSink):
        self.audit = audit

    def check(
        self,
        tenant_id: str,
        module: FactModule,
        entity_keys: Mapping[str, str],
        previous: Optional[FactSnapshotMixin],
        current: FactSnapshotMixin,
        created: bool,
        actor: Actor,
        correlation_id: Optional[str] = None,
        reason: str = DRIFT_REASON_RECOMPUTE,
    ) -> Optional[AuditEventDB]:
        """
        Record drift between `previous` and `current`.

        Args:
            previous: Latest snapshot read before the upsert (None on first compute)
            current: Snapshot returned by the upsert
            created: Whether the upsert inserted a new row

        Returns:
            The FACT_DRIFT_DETECTED event, or None when nothing drifted
        """
        if not created:
            return None

        decision = detect(previous.fact_hash if previous else None, current.fact_hash)
        if not decision.drift:
            return None

        entity_key = entity_key_string(entity_keys)
        logger.info(
            f"Fact drift for {module.value} {entity_key} (tenant {tenant_id}): "
            f"{decision.prev_hash[:12]} -> {decision.next_hash[:12]}"
        )

        return self.audit.record(
            tenant_id=tenant_id,
            event_type=AuditEventType.FACT_DRIFT_DETECTED,
            summary=f"{module.value} fact changed for {entity_key}",
            actor=actor,
            payload={
                "module": module.value,
                "entityKeys": dict(entity_keys),
                "prevFactHash": decision.prev_hash,
                "nextFactHash": decision.next_hash,
                "prevComputedAt": previous.computed_at.isoformat() if previous.computed_at else None,
                "nextComputedAt": current.computed_at.isoformat() if current.computed_at else None,
                "reason": reason,
            },
            evidence_ref=current.id,
            correlation_id=correlation_id,
            module=module.value,
            entity_key=entity_key,
        )
