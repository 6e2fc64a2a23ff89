"""Fact Engine - Data Models"""
from .facts import (
    FactModule, Audience, Verbosity, FactPayload, ExplanationResult,
    REQUIRED_ENTITY_KEYS, DEFAULT_PORTFOLIO_ID,
    derive_audience, normalize_entity_keys, entity_key_string,
)
from .jobs import JobType, parse_job_payload, recompute_payload_for

__all__ = [
    "FactModule", "Audience", "Verbosity", "FactPayload", "ExplanationResult",
    "REQUIRED_ENTITY_KEYS", "DEFAULT_PORTFOLIO_ID",
    "derive_audience", "normalize_entity_keys", "entity_key_string",
    "JobType", "parse_job_payload", "recompute_payload_for",
]
