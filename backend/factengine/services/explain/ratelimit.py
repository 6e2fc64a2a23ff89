"""
Explanation Rate Limits

Fixed-window limit on generator calls, scoped per
tenant + actor + module. Only cache misses reach the generator, so cache
hits never consume quota.

Limits per module (calls per 60s window):
- TRADING: 30    (interactive, frequent)
- ESG: 20
- SERVICING: 20
- PORTFOLIO: 10  (expensive aggregates)
"""
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from .generator import ExplanationGenerator, ExplanationRequest
from ..audit import Actor, AuditEventType, AuditSink
from ...errors import GeneratorRateLimitedError
from ...models.facts import ExplanationResult, FactModule, entity_key_string


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimit:
    window_seconds: int
    max_calls: int


DEFAULT_RATE_LIMIT = RateLimit(window_seconds=60, max_calls=15)

RATE_LIMITS: Dict[FactModule, RateLimit] = {
    FactModule.TRADING: RateLimit(window_seconds=60, max_calls=30),
    FactModule.ESG: RateLimit(window_seconds=60, max_calls=20),
    FactModule.SERVICING: RateLimit(window_seconds=60, max_calls=20),
    FactModule.PORTFOLIO: RateLimit(window_seconds=60, max_calls=10),
}


class FixedWindowRateLimiter:
    """
    In-process fixed-window counter.

    Each key gets a window starting at its first call; the count resets when
    the window ends. Thread-safe.
    """

    def __init__(
        self,
        limits: Optional[Dict[FactModule, RateLimit]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.limits = dict(limits if limits is not None else RATE_LIMITS)
        self.clock = clock
        # key -> (window start, calls, window length)
        self._windows: Dict[str, Tuple[float, int, int]] = {}
        self._lock = threading.Lock()

    @staticmethod
    def build_key(tenant_id: str, actor_id: str, module: FactModule) -> str:
        return f"explain:rl:{tenant_id}:{actor_id}:{module.value}"

    def hit(self, tenant_id: str, actor_id: str, module: FactModule) -> None:
        """
        Count one call.

        Raises:
            GeneratorRateLimitedError: window is full; retry_after_seconds is the
                time left in the window
        """
        limit = self.limits.get(module, DEFAULT_RATE_LIMIT)
        key = self.build_key(tenant_id, actor_id, module)
        now = self.clock()

        with self._lock:
            self._prune(now)
            started, count, _ = self._windows.get(key, (now, 0, limit.window_seconds))

            if count >= limit.max_calls:
                retry_after = max(1, int(limit.window_seconds - (now - started) + 0.999))
                raise GeneratorRateLimitedError(
                    f"Explanation rate limit exceeded for {module.value} "
                    f"({limit.max_calls} per {limit.window_seconds}s)",
                    retry_after_seconds=retry_after,
                    key=key,
                )

            self._windows[key] = (started, count + 1, limit.window_seconds)

    def _prune(self, now: float) -> None:
        """Drop windows that have ended. Caller holds the lock."""
        expired = [
            key for key, (started, _, window) in self._windows.items()
            if now - started >= window
        ]
        for key in expired:
            del self._windows[key]


class RateLimitedGenerator(ExplanationGenerator):
    """
    Wraps a generator with a FixedWindowRateLimiter.

    A denial writes AI_RATE_LIMIT_DENIED (flushed, not committed) and re-raises.
    """

    def __init__(self, inner: ExplanationGenerator, limiter: FixedWindowRateLimiter, audit: AuditSink):
        self.inner = inner
        self.limiter = limiter
        self.audit = audit
        self.provider = inner.provider

    def generate(self, request: ExplanationRequest) -> ExplanationResult:
        actor_id = "SERVICE"
        if request.actor is not None:
            actor_id = request.actor.actor_id or request.actor.client_id or "SERVICE"

        try:
            self.limiter.hit(request.tenant_id, actor_id, request.module)
        except GeneratorRateLimitedError as e:
            logger.warning(f"Rate limit denied explain for {e.key}; retry after {e.retry_after_seconds}s")
            self.audit.record(
                tenant_id=request.tenant_id,
                event_type=AuditEventType.AI_RATE_LIMIT_DENIED,
                summary=f"Explanation rate limit exceeded for {request.module.value}",
                actor=request.actor or Actor.service(),
                payload={
                    "key": e.key,
                    "retryAfterSeconds": e.retry_after_seconds,
                    "factHash": request.fact_hash,
                },
                correlation_id=request.correlation_id,
                module=request.module.value,
                entity_key=entity_key_string(request.entity_keys),
            )
            raise

        return self.inner.generate(request)
