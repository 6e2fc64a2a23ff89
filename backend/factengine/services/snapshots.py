"""
Fact Snapshot Store

Hash-keyed, append-mostly persistence for fact payloads, one store per domain.

Core Principles:
1. At most one row per (tenant, fact_hash). Writing a known hash again is a
   no-op that returns the existing row - never an error, never a duplicate.
2. Rows are immutable. A changed fact is a new row; the old one is superseded,
   not deleted.
3. "Latest" for an entity is the row with the greatest computed_at. There is
   no pointer record.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional
from uuid import uuid4

from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..models.db_models import SNAPSHOT_TABLES, FactSnapshotMixin, utcnow
from ..models.facts import FactModule, entity_key_string


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SnapshotMetadata:
    """Provenance recorded with a new snapshot."""
    computed_by: str
    fact_version: int = 1
    correlation_id: Optional[str] = None


@dataclass
class UpsertResult:
    snapshot: FactSnapshotMixin
    created: bool


class FactSnapshotStore:
    """
    Snapshot persistence for one fact domain.

    Usage:
        store = FactSnapshotStore(db, FactModule.TRADING)
        result = store.upsert_by_hash(tenant_id, {"loanId": "l1"}, core, fact_hash, meta)
    """

    def __init__(
        self,
        db: Session,
        module: FactModule,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.module = module
        self.table = SNAPSHOT_TABLES[module]
        self.clock = clock

    # =========================================================================
    # Writes
    # =========================================================================

    def upsert_by_hash(
        self,
        tenant_id: str,
        entity_keys: Mapping[str, str],
        payload: Dict[str, Any],
        fact_hash: str,
        metadata: SnapshotMetadata,
    ) -> UpsertResult:
        """
        Insert a snapshot unless one with this hash already exists for the tenant.

        A unique-constraint violation means a concurrent producer won the race
        with the same hash; the winner's row is read back and returned.

        Returns:
            UpsertResult with `created=False` when the hash was already known
        """
        existing = self.get_by_hash(tenant_id, fact_hash)
        if existing is not None:
            return UpsertResult(snapshot=existing, created=False)

        snapshot = self.table(
            id=str(uuid4()),
            tenant_id=tenant_id,
            entity_keys=dict(entity_keys),
            entity_key=entity_key_string(entity_keys),
            payload=payload,
            fact_version=metadata.fact_version,
            fact_hash=fact_hash,
            computed_at=self.clock(),
            computed_by=metadata.computed_by,
            correlation_id=metadata.correlation_id,
        )

        savepoint = self.db.begin_nested()
        try:
            self.db.add(snapshot)
            self.db.flush()
            savepoint.commit()
        except IntegrityError:
            savepoint.rollback()
            winner = self.get_by_hash(tenant_id, fact_hash)
            if winner is None:
                raise
            logger.info(
                f"{self.module.value} snapshot {fact_hash[:12]} inserted concurrently; "
                f"using existing row {winner.id}"
            )
            return UpsertResult(snapshot=winner, created=False)

        return UpsertResult(snapshot=snapshot, created=True)

    # =========================================================================
    # Reads
    # =========================================================================

    def get_by_hash(self, tenant_id: str, fact_hash: str) -> Optional[FactSnapshotMixin]:
        return (
            self.db.query(self.table)
            .filter(self.table.tenant_id == tenant_id, self.table.fact_hash == fact_hash)
            .first()
        )

    def get_by_id(self, tenant_id: str, snapshot_id: str) -> Optional[FactSnapshotMixin]:
        return (
            self.db.query(self.table)
            .filter(self.table.tenant_id == tenant_id, self.table.id == snapshot_id)
            .first()
        )

    def get_latest(
        self,
        tenant_id: str,
        entity_keys: Mapping[str, str],
    ) -> Optional[FactSnapshotMixin]:
        """Most recently computed snapshot for the entity, or None if never computed."""
        return (
            self.db.query(self.table)
            .filter(
                self.table.tenant_id == tenant_id,
                self.table.entity_key == entity_key_string(entity_keys),
            )
            .order_by(self.table.computed_at.desc(), self.table.id.desc())
            .first()
        )

    def list_for_entity(
        self,
        tenant_id: str,
        entity_keys: Mapping[str, str],
        limit: int = 10,
        cursor: Optional[str] = None,
    ) -> List[FactSnapshotMixin]:
        """Snapshot history for the entity, newest first."""
        query = self.db.query(self.table).filter(
            self.table.tenant_id == tenant_id,
            self.table.entity_key == entity_key_string(entity_keys),
        )

        if cursor:
            anchor = self.get_by_id(tenant_id, cursor)
            if anchor is not None:
                query = query.filter(
                    or_(
                        self.table.computed_at < anchor.computed_at,
                        and_(
                            self.table.computed_at == anchor.computed_at,
                            self.table.id < anchor.id,
                        ),
                    )
                )

        return (
            query.order_by(self.table.computed_at.desc(), self.table.id.desc())
            .limit(max(1, min(limit, 100)))
            .all()
        )
