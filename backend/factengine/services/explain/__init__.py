"""
Explanation pipeline: generators, rate limiting, cache and orchestration.
"""
from .cache import CacheKey, ExplanationCache
from .generator import (
    DemoExplanationGenerator,
    ExplanationGenerator,
    ExplanationRequest,
    HttpExplanationGenerator,
    build_generator,
)
from .orchestrator import ExplainOrchestrator
from .ratelimit import FixedWindowRateLimiter, RateLimit, RateLimitedGenerator, RATE_LIMITS

__all__ = [
    "CacheKey",
    "ExplanationCache",
    "ExplanationGenerator",
    "ExplanationRequest",
    "DemoExplanationGenerator",
    "HttpExplanationGenerator",
    "build_generator",
    "ExplainOrchestrator",
    "FixedWindowRateLimiter",
    "RateLimitedGenerator",
    "RateLimit",
    "RATE_LIMITS",
]
