"""Fact Engine - API Routers"""
from .facts import router as facts_router
from .audit import router as audit_router
from .jobs import router as jobs_router
from .scheduler import router as scheduler_router

__all__ = [
    "facts_router",
    "audit_router",
    "jobs_router",
    "scheduler_router",
]
