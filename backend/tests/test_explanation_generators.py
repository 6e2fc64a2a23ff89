"""
Tests for the demo and HTTP explanation generators and the rate limiter.
"""
import httpx
import pytest

from factengine.errors import GeneratorError, GeneratorRateLimitedError
from factengine.models.db_models import AuditEventDB
from factengine.models.facts import Audience, FactModule, Verbosity
from factengine.services.audit import Actor, AuditEventType, AuditSink
from factengine.services.explain import (
    DemoExplanationGenerator,
    ExplanationRequest,
    FixedWindowRateLimiter,
    HttpExplanationGenerator,
    RateLimit,
    RateLimitedGenerator,
    build_generator,
)

from conftest import TENANT


TRADING_FACT = {
    "loanId": "loan-1",
    "readinessScore": 75,
    "readinessBand": "AMBER",
    "contributingFactors": {"documentationCompleteness": 1.0, "servicingAlerts": 1},
    "blockingIssues": ["Missing: Servicing Setup"],
    "factVersion": 1,
}


def _request(audience=Audience.DEFAULT, verbosity=Verbosity.STANDARD, actor=None):
    return ExplanationRequest(
        tenant_id=TENANT,
        module=FactModule.TRADING,
        entity_keys={"loanId": "loan-1"},
        fact_hash="h" * 64,
        payload=TRADING_FACT,
        audience=audience,
        verbosity=verbosity,
        actor=actor,
    )


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


# =============================================================================
# DEMO GENERATOR
# =============================================================================

class TestDemoGenerator:

    def test_deterministic(self):
        generator = DemoExplanationGenerator()
        assert generator.generate(_request()) == generator.generate(_request())

    def test_summary_mentions_score_and_band(self):
        result = DemoExplanationGenerator().generate(_request())
        assert "AMBER" in result.summary
        assert "75" in result.summary

    def test_verbosity_limits_lines(self):
        generator = DemoExplanationGenerator()
        short = generator.generate(_request(verbosity=Verbosity.SHORT))
        standard = generator.generate(_request(verbosity=Verbosity.STANDARD))
        detailed = generator.generate(_request(verbosity=Verbosity.DETAILED))

        assert len(short.explanation) == 1
        assert len(standard.explanation) == 3
        assert len(detailed.explanation) == 4
        assert len(short.recommendations) == 1

    def test_audience_changes_framing(self):
        generator = DemoExplanationGenerator()
        default = generator.generate(_request())
        investor = generator.generate(_request(audience=Audience.INVESTOR))

        assert investor.summary.startswith("For investors: ")
        assert investor.summary != default.summary

    def test_build_generator_selects_demo_without_url(self):
        assert isinstance(build_generator(""), DemoExplanationGenerator)
        assert isinstance(build_generator("http://generator.local/explain"), HttpExplanationGenerator)


# =============================================================================
# HTTP GENERATOR
# =============================================================================

def _http_generator(handler):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return HttpExplanationGenerator(url="http://generator.local/explain", timeout=5.0, client=client)


class TestHttpGenerator:

    def test_success(self):
        seen = {}

        def handler(request):
            seen["body"] = request.read()
            return httpx.Response(200, json={
                "summary": "Loan is AMBER.",
                "explanation": ["Score 75."],
                "recommendations": ["Finish servicing setup."],
                "confidence": "high",
                "version": 1,
            })

        result = _http_generator(handler).generate(_request())

        assert result.summary == "Loan is AMBER."
        assert result.confidence == "HIGH"
        assert b'"factHash"' in seen["body"]
        assert b'"module":"TRADING"' in seen["body"].replace(b" ", b"")

    def test_429_is_rate_limited_with_retry_after(self):
        generator = _http_generator(lambda request: httpx.Response(429, headers={"Retry-After": "17"}))

        with pytest.raises(GeneratorRateLimitedError) as exc_info:
            generator.generate(_request())

        assert exc_info.value.retry_after_seconds == 17

    def test_429_without_header_uses_default(self):
        generator = _http_generator(lambda request: httpx.Response(429))

        with pytest.raises(GeneratorRateLimitedError) as exc_info:
            generator.generate(_request())

        assert exc_info.value.retry_after_seconds == 60

    def test_5xx_is_retryable(self):
        generator = _http_generator(lambda request: httpx.Response(503))

        with pytest.raises(GeneratorError) as exc_info:
            generator.generate(_request())

        assert exc_info.value.retryable is True

    def test_4xx_is_terminal(self):
        generator = _http_generator(lambda request: httpx.Response(400, json={"error": "bad"}))

        with pytest.raises(GeneratorError) as exc_info:
            generator.generate(_request())

        assert exc_info.value.retryable is False

    def test_invalid_body_is_terminal(self):
        generator = _http_generator(lambda request: httpx.Response(200, json={"summary": ""}))

        with pytest.raises(GeneratorError) as exc_info:
            generator.generate(_request())

        assert exc_info.value.retryable is False

    def test_timeout_is_retryable(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(GeneratorError) as exc_info:
            _http_generator(handler).generate(_request())

        assert exc_info.value.retryable is True
        assert not isinstance(exc_info.value, GeneratorRateLimitedError)

    def test_connection_error_is_retryable(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(GeneratorError) as exc_info:
            _http_generator(handler).generate(_request())

        assert exc_info.value.retryable is True


# =============================================================================
# RATE LIMITING
# =============================================================================

class TestFixedWindowRateLimiter:

    def test_denies_over_limit_until_window_ends(self):
        clock = FakeClock()
        limiter = FixedWindowRateLimiter({FactModule.TRADING: RateLimit(window_seconds=60, max_calls=2)}, clock=clock)

        limiter.hit(TENANT, "user-1", FactModule.TRADING)
        limiter.hit(TENANT, "user-1", FactModule.TRADING)

        clock.now += 15
        with pytest.raises(GeneratorRateLimitedError) as exc_info:
            limiter.hit(TENANT, "user-1", FactModule.TRADING)
        assert exc_info.value.retry_after_seconds == 45
        assert exc_info.value.key == f"explain:rl:{TENANT}:user-1:TRADING"

        clock.now += 45
        limiter.hit(TENANT, "user-1", FactModule.TRADING)

    def test_scoped_per_actor_and_module(self):
        limiter = FixedWindowRateLimiter({FactModule.TRADING: RateLimit(window_seconds=60, max_calls=1)}, clock=FakeClock())

        limiter.hit(TENANT, "user-1", FactModule.TRADING)
        limiter.hit(TENANT, "user-2", FactModule.TRADING)
        limiter.hit("tenant-2", "user-1", FactModule.TRADING)
        limiter.hit(TENANT, "user-1", FactModule.ESG)  # falls back to default limit

    def test_expired_windows_are_dropped(self):
        clock = FakeClock()
        limiter = FixedWindowRateLimiter({FactModule.TRADING: RateLimit(window_seconds=60, max_calls=5)}, clock=clock)

        for actor in ("user-1", "user-2", "user-3"):
            limiter.hit(TENANT, actor, FactModule.TRADING)
        assert len(limiter._windows) == 3

        clock.now += 60
        limiter.hit(TENANT, "user-4", FactModule.TRADING)

        assert list(limiter._windows) == [f"explain:rl:{TENANT}:user-4:TRADING"]

    def test_module_defaults(self):
        limiter = FixedWindowRateLimiter()
        assert limiter.limits[FactModule.TRADING].max_calls == 30
        assert limiter.limits[FactModule.PORTFOLIO].max_calls == 10

    def test_denial_is_audited(self, db):
        limiter = FixedWindowRateLimiter({FactModule.TRADING: RateLimit(window_seconds=60, max_calls=0)}, clock=FakeClock())
        generator = RateLimitedGenerator(DemoExplanationGenerator(), limiter, AuditSink(db))

        with pytest.raises(GeneratorRateLimitedError):
            generator.generate(_request(actor=Actor.user("user-1")))
        db.commit()

        events = db.query(AuditEventDB).filter(AuditEventDB.type == AuditEventType.AI_RATE_LIMIT_DENIED).all()
        assert len(events) == 1
        assert events[0].actor_id == "user-1"
        assert events[0].payload["retryAfterSeconds"] == 60
