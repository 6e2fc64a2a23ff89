"""
Fact Engine - Job handlers and worker runtime.
"""
from .handlers import ExplainHandler, FactRecomputer, JobHandler, RecomputeHandler
from .nightly import NightlyRefreshHandler
from .worker import Worker

__all__ = [
    "FactRecomputer",
    "JobHandler",
    "RecomputeHandler",
    "ExplainHandler",
    "NightlyRefreshHandler",
    "Worker",
]
