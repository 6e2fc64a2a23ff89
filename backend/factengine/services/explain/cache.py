"""
Explanation Cache

Stores generated explanations per tenant under
(fact_hash, audience, verbosity, explain_version, provider).
An explanation is a pure function of its key, so entries never expire and
are never overwritten: the first writer wins. Bumping the explain version or
switching provider starts a fresh set of entries.
"""
import logging
from dataclasses import dataclass
from typing import Optional, Tuple
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...models.db_models import ExplanationCacheDB, utcnow
from ...models.facts import Audience, ExplanationResult, FactModule, Verbosity


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheKey:
    tenant_id: str
    fact_hash: str
    audience: Audience
    verbosity: Verbosity
    explain_version: int
    provider: str


class ExplanationCache:

    def __init__(self, db: Session):
        self.db = db

    def get(self, key: CacheKey) -> Optional[ExplanationCacheDB]:
        return (
            self.db.query(ExplanationCacheDB)
            .filter(
                ExplanationCacheDB.tenant_id == key.tenant_id,
                ExplanationCacheDB.fact_hash == key.fact_hash,
                ExplanationCacheDB.audience == key.audience.value,
                ExplanationCacheDB.verbosity == key.verbosity.value,
                ExplanationCacheDB.explain_version == key.explain_version,
                ExplanationCacheDB.provider == key.provider,
            )
            .first()
        )

    def put(
        self,
        key: CacheKey,
        result: ExplanationResult,
        module: FactModule,
        entity_key: str,
        correlation_id: Optional[str] = None,
    ) -> Tuple[ExplanationCacheDB, bool]:
        """
        Store an explanation unless the key is already cached.

        Returns:
            (entry, created). On a lost insert race the winner's entry is returned
            with created=False.
        """
        existing = self.get(key)
        if existing is not None:
            return existing, False

        entry = ExplanationCacheDB(
            id=str(uuid4()),
            tenant_id=key.tenant_id,
            fact_hash=key.fact_hash,
            audience=key.audience.value,
            verbosity=key.verbosity.value,
            explain_version=key.explain_version,
            provider=key.provider,
            result=result.model_dump(mode="json"),
            module=module.value,
            entity_key=entity_key,
            correlation_id=correlation_id,
            generated_at=utcnow(),
        )

        savepoint = self.db.begin_nested()
        try:
            self.db.add(entry)
            self.db.flush()
            savepoint.commit()
        except IntegrityError:
            savepoint.rollback()
            winner = self.get(key)
            if winner is None:
                raise
            logger.info(f"Explanation for {key.fact_hash[:12]} cached concurrently; keeping first entry")
            return winner, False

        return entry, True

    def latest_for_entity(
        self,
        tenant_id: str,
        module: FactModule,
        entity_key: str,
        audience: Optional[Audience] = None,
        verbosity: Optional[Verbosity] = None,
        explain_version: Optional[int] = None,
    ) -> Optional[ExplanationCacheDB]:
        """Most recently generated explanation for an entity, across fact hashes."""
        query = self.db.query(ExplanationCacheDB).filter(
            ExplanationCacheDB.tenant_id == tenant_id,
            ExplanationCacheDB.module == module.value,
            ExplanationCacheDB.entity_key == entity_key,
        )
        if audience is not None:
            query = query.filter(ExplanationCacheDB.audience == audience.value)
        if verbosity is not None:
            query = query.filter(ExplanationCacheDB.verbosity == verbosity.value)
        if explain_version is not None:
            query = query.filter(ExplanationCacheDB.explain_version == explain_version)
        return query.order_by(
            ExplanationCacheDB.generated_at.desc(), ExplanationCacheDB.id.desc()
        ).first()
