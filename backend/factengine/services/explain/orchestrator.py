"""
Explain Orchestrator

Drift-aware explanation flow:

1. Find the latest fact snapshot for the entity. If there is none, dispatch
   one recompute, wait for it within a bounded time, and look again exactly
   once. Still nothing -> NoFactsAvailableError; wait timed out ->
   FactsNotReadyError (retryable).
2. Key the cache per tenant by (fact_hash, audience, verbosity,
   explain_version, provider). A hit is returned as stored.
3. On a miss, call the generator, cache the result, audit the generation
   with the fact hash, and return it.

Rate-limit errors from the generator propagate and are never cached.
"""
import logging
from typing import Any, Dict, Mapping, Optional

from sqlalchemy.orm import Session

from .cache import CacheKey, ExplanationCache
from .generator import ExplanationGenerator, ExplanationRequest
from .ratelimit import FixedWindowRateLimiter, RateLimitedGenerator
from ..audit import Actor, AuditEventType, AuditSink
from ..hashing import compute_explanation_key_hash
from ..queue import JobDispatcher
from ..snapshots import FactSnapshotStore
from ...config import EXPLAIN_VERSION
from ...errors import FactsNotReadyError, GeneratorRateLimitedError, NoFactsAvailableError
from ...models.db_models import FactSnapshotMixin
from ...models.facts import (
    Audience,
    ExplanationResult,
    FactModule,
    Verbosity,
    entity_key_string,
    normalize_entity_keys,
)
from ...models.jobs import recompute_payload_for


logger = logging.getLogger(__name__)


class ExplainOrchestrator:
    """
    Usage:
        orchestrator = ExplainOrchestrator(db, generator, dispatcher=dispatcher)
        result = orchestrator.explain(tenant_id, FactModule.TRADING, {"loanId": "loan-1"},
                                      Audience.DEFAULT, Verbosity.STANDARD, actor)
    """

    def __init__(
        self,
        db: Session,
        generator: ExplanationGenerator,
        dispatcher: Optional[JobDispatcher] = None,
        rate_limiter: Optional[FixedWindowRateLimiter] = None,
        explain_version: int = EXPLAIN_VERSION,
    ):
        self.db = db
        self.audit = AuditSink(db)
        self.cache = ExplanationCache(db)
        self.dispatcher = dispatcher
        self.explain_version = explain_version
        if rate_limiter is not None:
            generator = RateLimitedGenerator(generator, rate_limiter, self.audit)
        self.generator = generator

    # =========================================================================
    # Public API
    # =========================================================================

    def explain(
        self,
        tenant_id: str,
        module: FactModule,
        entity_keys: Mapping[str, Any],
        audience: Audience,
        verbosity: Verbosity,
        actor: Actor,
        correlation_id: Optional[str] = None,
    ) -> ExplanationResult:
        keys = normalize_entity_keys(module, entity_keys)
        store = FactSnapshotStore(self.db, module)

        snapshot = store.get_latest(tenant_id, keys)
        if snapshot is None:
            self._recompute_once(tenant_id, module, keys, actor, correlation_id)
            snapshot = store.get_latest(tenant_id, keys)
            if snapshot is None:
                raise NoFactsAvailableError(
                    f"No {module.value} facts available for {entity_key_string(keys)}"
                )

        return self.explain_snapshot(
            tenant_id, module, snapshot, audience, verbosity, actor, correlation_id
        )

    def explain_snapshot(
        self,
        tenant_id: str,
        module: FactModule,
        snapshot: FactSnapshotMixin,
        audience: Audience,
        verbosity: Verbosity,
        actor: Actor,
        correlation_id: Optional[str] = None,
    ) -> ExplanationResult:
        """Cache lookup and, on a miss, generation for one known snapshot."""
        entity_key = snapshot.entity_key
        cache_key = CacheKey(
            tenant_id=tenant_id,
            fact_hash=snapshot.fact_hash,
            audience=audience,
            verbosity=verbosity,
            explain_version=self.explain_version,
            provider=self.generator.provider,
        )
        key_hash = compute_explanation_key_hash(
            snapshot.fact_hash, audience.value, verbosity.value, self.explain_version, self.generator.provider
        )

        cached = self.cache.get(cache_key)
        if cached is not None:
            self.audit.record(
                tenant_id=tenant_id,
                event_type=AuditEventType.EXPLAIN_CACHE_HIT,
                summary=f"{module.value} explanation served from cache",
                actor=actor,
                payload={
                    "factHash": snapshot.fact_hash,
                    "audience": audience.value,
                    "verbosity": verbosity.value,
                    "explanationKeyHash": key_hash,
                },
                evidence_ref=cached.id,
                correlation_id=correlation_id,
                module=module.value,
                entity_key=entity_key,
            )
            self.db.commit()
            return ExplanationResult.model_validate(cached.result)

        request = ExplanationRequest(
            tenant_id=tenant_id,
            module=module,
            entity_keys=dict(snapshot.entity_keys),
            fact_hash=snapshot.fact_hash,
            payload=snapshot.payload,
            audience=audience,
            verbosity=verbosity,
            actor=actor,
            correlation_id=correlation_id,
        )

        try:
            result = self.generator.generate(request)
        except GeneratorRateLimitedError:
            # keep the denial audit, store nothing
            self.db.commit()
            raise

        entry, created = self.cache.put(
            cache_key,
            result,
            module=module,
            entity_key=entity_key,
            correlation_id=correlation_id,
        )

        if created:
            self.audit.record(
                tenant_id=tenant_id,
                event_type=AuditEventType.EXPLANATION_GENERATED,
                summary=f"{module.value} explanation generated",
                actor=actor,
                payload={
                    "factHash": snapshot.fact_hash,
                    "snapshotId": snapshot.id,
                    "audience": audience.value,
                    "verbosity": verbosity.value,
                    "provider": self.generator.provider,
                    "explanationKeyHash": key_hash,
                },
                evidence_ref=entry.id,
                correlation_id=correlation_id,
                module=module.value,
                entity_key=entity_key,
            )
            logger.info(f"Generated {module.value} explanation for {entity_key} ({snapshot.fact_hash[:12]})")

        self.db.commit()
        return ExplanationResult.model_validate(entry.result)

    def get_cached_latest(
        self,
        tenant_id: str,
        module: FactModule,
        entity_keys: Mapping[str, Any],
        audience: Optional[Audience] = None,
        verbosity: Optional[Verbosity] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Latest cached explanation for the entity, flagged stale when it was
        generated for a fact hash other than the current latest snapshot's.
        """
        keys = normalize_entity_keys(module, entity_keys)
        entity_key = entity_key_string(keys)

        entry = self.cache.latest_for_entity(
            tenant_id, module, entity_key, audience, verbosity, explain_version=self.explain_version
        )
        if entry is None:
            return None

        latest = FactSnapshotStore(self.db, module).get_latest(tenant_id, keys)
        latest_hash = latest.fact_hash if latest else None

        return {
            "explanation": entry.result,
            "factHash": entry.fact_hash,
            "latestFactHash": latest_hash,
            "isStale": latest_hash is not None and latest_hash != entry.fact_hash,
            "audience": entry.audience,
            "verbosity": entry.verbosity,
            "provider": entry.provider,
            "explainVersion": entry.explain_version,
            "generatedAt": entry.generated_at.isoformat() if entry.generated_at else None,
        }

    # =========================================================================
    # Internals
    # =========================================================================

    def _recompute_once(
        self,
        tenant_id: str,
        module: FactModule,
        keys: Dict[str, str],
        actor: Actor,
        correlation_id: Optional[str],
    ) -> None:
        if self.dispatcher is None:
            raise NoFactsAvailableError(
                f"No {module.value} facts available for {entity_key_string(keys)}"
            )

        logger.info(f"No {module.value} snapshot for {entity_key_string(keys)}; recomputing before explain")
        payload = recompute_payload_for(
            module, tenant_id, keys, correlation_id=correlation_id, actor_user_id=actor.actor_id
        )
        outcome = self.dispatcher.dispatch_and_wait(payload)
        if outcome["job"] is None:
            raise FactsNotReadyError(
                f"{module.value} facts are still being computed; retry shortly",
                job_id=outcome["jobId"],
            )
