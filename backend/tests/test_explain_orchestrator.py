"""
Tests for the drift-aware explain flow: cache keyed by fact hash, a single
bounded recompute when no facts exist, and rate limits that never cache.
"""
from unittest.mock import MagicMock

import pytest

from factengine.errors import FactsNotReadyError, GeneratorRateLimitedError, NoFactsAvailableError
from factengine.models.db_models import AuditEventDB, ExplanationCacheDB
from factengine.models.facts import Audience, FactModule, Verbosity
from factengine.services.audit import Actor, AuditEventType
from factengine.services.explain import ExplainOrchestrator, FixedWindowRateLimiter, RateLimit
from factengine.services.jobs import FactRecomputer
from factengine.services.queue import JobDispatcher

from conftest import TENANT, CountingGenerator, make_loan_1


KEYS = {"loanId": "loan-1"}
USER = Actor.user("user-1")


def _recompute(db, registry, tenant_id=TENANT):
    result = FactRecomputer(db, registry, Actor.service(), auto_explain_on_drift=False).recompute(
        tenant_id, FactModule.TRADING, KEYS
    )
    db.commit()
    return result


def _explain(orchestrator, audience=Audience.DEFAULT, verbosity=Verbosity.STANDARD, keys=KEYS, tenant_id=TENANT):
    return orchestrator.explain(tenant_id, FactModule.TRADING, keys, audience, verbosity, USER, "corr-x")


def _events(db, event_type):
    return db.query(AuditEventDB).filter(AuditEventDB.type == event_type).all()


# =============================================================================
# CACHE
# =============================================================================

class TestExplainCache:

    def test_miss_generates_and_caches(self, db, registry, generator):
        facts = _recompute(db, registry)

        result = _explain(ExplainOrchestrator(db, generator))

        assert "AMBER" in result.summary
        assert len(generator.calls) == 1
        entry = db.query(ExplanationCacheDB).one()
        assert (entry.fact_hash, entry.audience, entry.verbosity) == (facts["factHash"], "default", "STANDARD")
        generated = _events(db, AuditEventType.EXPLANATION_GENERATED)
        assert len(generated) == 1
        assert generated[0].payload["factHash"] == facts["factHash"]
        assert generated[0].actor_id == "user-1"

    def test_hit_does_not_call_generator(self, db, registry, generator):
        _recompute(db, registry)
        orchestrator = ExplainOrchestrator(db, generator)

        first = _explain(orchestrator)
        second = _explain(orchestrator)

        assert first == second
        assert len(generator.calls) == 1
        assert len(_events(db, AuditEventType.EXPLAIN_CACHE_HIT)) == 1

    def test_audience_and_verbosity_are_part_of_key(self, db, registry, generator):
        _recompute(db, registry)
        orchestrator = ExplainOrchestrator(db, generator)

        _explain(orchestrator)
        _explain(orchestrator, verbosity=Verbosity.SHORT)
        _explain(orchestrator, audience=Audience.INVESTOR)

        assert len(generator.calls) == 3
        assert db.query(ExplanationCacheDB).count() == 3

    def test_changed_fact_misses_cache(self, db, registry, generator, upstream):
        _recompute(db, registry)
        orchestrator = ExplainOrchestrator(db, generator)
        _explain(orchestrator)

        upstream.get_loan(TENANT, "loan-1").checklist[3].status = "DONE"
        _recompute(db, registry)
        result = _explain(orchestrator)

        assert "GREEN" in result.summary
        assert len(generator.calls) == 2

    def test_explain_version_bump_misses_cache(self, db, registry, generator):
        _recompute(db, registry)

        _explain(ExplainOrchestrator(db, generator, explain_version=1))
        _explain(ExplainOrchestrator(db, generator, explain_version=2))

        assert len(generator.calls) == 2
        versions = sorted(e.explain_version for e in db.query(ExplanationCacheDB).all())
        assert versions == [1, 2]

    def test_provider_switch_misses_cache(self, db, registry, generator):
        _recompute(db, registry)
        other = CountingGenerator()
        other.provider = "http"

        _explain(ExplainOrchestrator(db, generator))
        _explain(ExplainOrchestrator(db, other))

        assert len(generator.calls) == 1
        assert len(other.calls) == 1
        assert sorted(e.provider for e in db.query(ExplanationCacheDB).all()) == ["demo", "http"]

    def test_cache_is_scoped_per_tenant(self, db, registry, generator, upstream):
        upstream.put_loan("tenant-2", make_loan_1())
        first = _recompute(db, registry)
        second = _recompute(db, registry, tenant_id="tenant-2")
        assert first["factHash"] == second["factHash"]
        orchestrator = ExplainOrchestrator(db, generator)

        _explain(orchestrator)
        _explain(orchestrator, tenant_id="tenant-2")

        assert len(generator.calls) == 2
        assert {e.tenant_id for e in db.query(ExplanationCacheDB).all()} == {TENANT, "tenant-2"}
        assert _events(db, AuditEventType.EXPLAIN_CACHE_HIT) == []

        latest = orchestrator.get_cached_latest("tenant-2", FactModule.TRADING, KEYS)
        assert latest is not None
        assert latest["factHash"] == second["factHash"]
        assert latest["isStale"] is False


# =============================================================================
# MISSING FACTS
# =============================================================================

class TestMissingFacts:

    def test_recomputes_once_then_explains(self, db, session_factory, worker, generator):
        dispatcher = JobDispatcher(db, session_factory, run_inline=worker.run_job, wait_seconds=2.0)

        result = _explain(ExplainOrchestrator(db, generator, dispatcher=dispatcher))

        assert "75" in result.summary
        assert len(generator.calls) == 1
        assert len(_events(db, AuditEventType.JOB_COMPLETED)) == 1

    def test_wait_timeout_is_not_ready(self, db, session_factory, generator):
        dispatcher = JobDispatcher(db, session_factory, run_inline=None, wait_seconds=0.0)

        with pytest.raises(FactsNotReadyError) as exc_info:
            _explain(ExplainOrchestrator(db, generator, dispatcher=dispatcher))

        assert exc_info.value.retryable is True
        assert exc_info.value.job_id is not None
        assert generator.calls == []

    def test_unknown_entity_has_no_facts(self, db, session_factory, worker, generator):
        dispatcher = JobDispatcher(db, session_factory, run_inline=worker.run_job, wait_seconds=2.0)
        dispatcher.dispatch_and_wait = MagicMock(wraps=dispatcher.dispatch_and_wait)

        with pytest.raises(NoFactsAvailableError):
            _explain(ExplainOrchestrator(db, generator, dispatcher=dispatcher), keys={"loanId": "ghost"})

        assert dispatcher.dispatch_and_wait.call_count == 1
        assert generator.calls == []

    def test_without_dispatcher_has_no_facts(self, db, generator):
        with pytest.raises(NoFactsAvailableError):
            _explain(ExplainOrchestrator(db, generator))


# =============================================================================
# RATE LIMITS
# =============================================================================

class TestRateLimitedExplain:

    def test_denial_is_audited_and_not_cached(self, db, registry, generator):
        _recompute(db, registry)
        limiter = FixedWindowRateLimiter({FactModule.TRADING: RateLimit(window_seconds=60, max_calls=1)})
        orchestrator = ExplainOrchestrator(db, generator, rate_limiter=limiter)

        _explain(orchestrator)
        with pytest.raises(GeneratorRateLimitedError) as exc_info:
            _explain(orchestrator, verbosity=Verbosity.DETAILED)

        assert exc_info.value.retry_after_seconds > 0
        assert db.query(ExplanationCacheDB).count() == 1
        assert len(_events(db, AuditEventType.AI_RATE_LIMIT_DENIED)) == 1

    def test_cache_hits_do_not_consume_quota(self, db, registry, generator):
        _recompute(db, registry)
        limiter = FixedWindowRateLimiter({FactModule.TRADING: RateLimit(window_seconds=60, max_calls=1)})
        orchestrator = ExplainOrchestrator(db, generator, rate_limiter=limiter)

        for _ in range(5):
            _explain(orchestrator)

        assert len(generator.calls) == 1

    def test_generator_429_is_not_cached(self, db, registry):
        _recompute(db, registry)
        limited = MagicMock()
        limited.provider = "http"
        limited.generate.side_effect = GeneratorRateLimitedError("slow down", retry_after_seconds=30)

        with pytest.raises(GeneratorRateLimitedError):
            _explain(ExplainOrchestrator(db, limited))

        assert db.query(ExplanationCacheDB).count() == 0


# =============================================================================
# LATEST CACHED
# =============================================================================

def test_cached_latest_flags_stale(db, registry, generator, upstream):
    _recompute(db, registry)
    orchestrator = ExplainOrchestrator(db, generator)
    _explain(orchestrator)

    fresh = orchestrator.get_cached_latest(TENANT, FactModule.TRADING, KEYS)
    assert fresh["isStale"] is False

    upstream.get_loan(TENANT, "loan-1").checklist[3].status = "DONE"
    _recompute(db, registry)

    stale = orchestrator.get_cached_latest(TENANT, FactModule.TRADING, KEYS)
    assert stale["isStale"] is True
    assert stale["factHash"] != stale["latestFactHash"]
    assert orchestrator.get_cached_latest(TENANT, FactModule.TRADING, {"loanId": "other"}) is None
