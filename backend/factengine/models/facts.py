"""
Fact Engine - Fact Domain Types

Plain value types shared by producers, the snapshot store, the explain
pipeline and the HTTP layer.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping

from pydantic import BaseModel, Field, field_validator


class FactModule(str, Enum):
    """Fact domains. Values double as the audit `module` tag."""
    TRADING = "TRADING"        # trading readiness per loan
    ESG = "ESG"                # ESG KPI evaluation per loan + KPI
    SERVICING = "SERVICING"    # covenant evaluation per loan + covenant
    PORTFOLIO = "PORTFOLIO"    # portfolio risk aggregate


# Composite entity key per domain
REQUIRED_ENTITY_KEYS: Dict[FactModule, tuple] = {
    FactModule.TRADING: ("loanId",),
    FactModule.ESG: ("loanId", "kpiId"),
    FactModule.SERVICING: ("loanId", "covenantId"),
    FactModule.PORTFOLIO: ("portfolioId",),
}

DEFAULT_PORTFOLIO_ID = "default"


class Audience(str, Enum):
    """Who the explanation is written for."""
    DEFAULT = "default"
    TRADING_ANALYST = "TRADING_ANALYST"
    TRADING_VIEWER = "TRADING_VIEWER"
    INVESTOR = "INVESTOR"
    COMPLIANCE = "COMPLIANCE"


class Verbosity(str, Enum):
    """How long the explanation should be."""
    SHORT = "SHORT"
    STANDARD = "STANDARD"
    DETAILED = "DETAILED"


def derive_audience(roles: List[str]) -> Audience:
    """
    Map user roles to an explanation audience.

    Priority: analysts get the analyst view, compliance auditors the
    compliance view, everybody else the default view.
    """
    if "TRADING_ANALYST" in roles:
        return Audience.TRADING_ANALYST
    if "COMPLIANCE_AUDITOR" in roles:
        return Audience.COMPLIANCE
    return Audience.DEFAULT


def normalize_entity_keys(module: FactModule, entity_keys: Mapping[str, Any]) -> Dict[str, str]:
    """
    Validate and reduce entity keys to exactly the module's required keys.

    Raises:
        ValueError: if a required key is missing or blank
    """
    required = REQUIRED_ENTITY_KEYS[module]
    keys = dict(entity_keys or {})
    if module == FactModule.PORTFOLIO and not keys.get("portfolioId"):
        keys["portfolioId"] = DEFAULT_PORTFOLIO_ID

    missing = [k for k in required if not keys.get(k) or not str(keys[k]).strip()]
    if missing:
        raise ValueError(f"Missing entity keys for {module.value}: {', '.join(missing)}")

    return {k: str(keys[k]) for k in required}


def entity_key_string(entity_keys: Mapping[str, str]) -> str:
    """Canonical single-column form of a composite key: `covenantId=c1|loanId=l1`."""
    return "|".join(f"{k}={entity_keys[k]}" for k in sorted(entity_keys))


@dataclass(frozen=True)
class FactPayload:
    """
    Output of a fact producer.

    `data` is the domain-specific content (score, band, factors, ...).
    Never mutated after creation.
    """
    module: FactModule
    data: Dict[str, Any] = field(default_factory=dict)
    fact_version: int = 1

    def fact_core(self, entity_keys: Mapping[str, str]) -> Dict[str, Any]:
        """The exact structure that gets hashed: entity keys + data + version."""
        core: Dict[str, Any] = dict(entity_keys)
        core.update(self.data)
        core["factVersion"] = self.fact_version
        return core


class ExplanationResult(BaseModel):
    """Generator output and explanation cache value."""
    summary: str = Field(min_length=1)
    explanation: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
    confidence: str = "MEDIUM"
    version: int = 1

    @field_validator("confidence")
    @classmethod
    def _confidence_level(cls, value: str) -> str:
        value = value.upper()
        if value not in ("HIGH", "MEDIUM", "LOW"):
            raise ValueError(f"confidence must be HIGH, MEDIUM or LOW, got {value}")
        return value
