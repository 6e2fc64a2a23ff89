"""
Fact Engine - Job Payloads

One concrete payload model per job type, dispatched on `job_type`.
Identifiers are required and non-blank so a malformed job fails validation
before any work starts.
"""
from enum import Enum
from typing import Annotated, Dict, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from ..errors import JobValidationError
from .facts import Audience, FactModule, Verbosity, DEFAULT_PORTFOLIO_ID

# at least one non-whitespace character, value kept as given
Identifier = Annotated[str, Field(min_length=1, pattern=r"\S")]


class JobType(str, Enum):
    """Named job types consumed by the workers."""
    TRADING_READINESS_RECOMPUTE = "TRADING_READINESS_RECOMPUTE"
    ESG_KPI_RECOMPUTE = "ESG_KPI_RECOMPUTE"
    COVENANT_RECOMPUTE = "COVENANT_RECOMPUTE"
    PORTFOLIO_RISK_RECOMPUTE = "PORTFOLIO_RISK_RECOMPUTE"
    EXPLAIN_RECOMPUTE = "EXPLAIN_RECOMPUTE"
    NIGHTLY_REFRESH_TENANT = "NIGHTLY_REFRESH_TENANT"


class _JobPayloadBase(BaseModel):
    tenant_id: Identifier
    correlation_id: Optional[str] = None
    actor_user_id: Optional[str] = None


class _RecomputePayloadBase(_JobPayloadBase):
    """Shared accessors for the four fact recompute payloads."""

    def entity_keys(self) -> Dict[str, str]:
        raise NotImplementedError

    @property
    def module(self) -> FactModule:
        raise NotImplementedError


class TradingReadinessRecomputePayload(_RecomputePayloadBase):
    job_type: Literal["TRADING_READINESS_RECOMPUTE"] = "TRADING_READINESS_RECOMPUTE"
    loan_id: Identifier

    @property
    def module(self) -> FactModule:
        return FactModule.TRADING

    def entity_keys(self) -> Dict[str, str]:
        return {"loanId": self.loan_id}


class EsgKpiRecomputePayload(_RecomputePayloadBase):
    job_type: Literal["ESG_KPI_RECOMPUTE"] = "ESG_KPI_RECOMPUTE"
    loan_id: Identifier
    kpi_id: Identifier

    @property
    def module(self) -> FactModule:
        return FactModule.ESG

    def entity_keys(self) -> Dict[str, str]:
        return {"loanId": self.loan_id, "kpiId": self.kpi_id}


class CovenantRecomputePayload(_RecomputePayloadBase):
    job_type: Literal["COVENANT_RECOMPUTE"] = "COVENANT_RECOMPUTE"
    loan_id: Identifier
    covenant_id: Identifier

    @property
    def module(self) -> FactModule:
        return FactModule.SERVICING

    def entity_keys(self) -> Dict[str, str]:
        return {"loanId": self.loan_id, "covenantId": self.covenant_id}


class PortfolioRiskRecomputePayload(_RecomputePayloadBase):
    job_type: Literal["PORTFOLIO_RISK_RECOMPUTE"] = "PORTFOLIO_RISK_RECOMPUTE"
    portfolio_id: Identifier = DEFAULT_PORTFOLIO_ID

    @property
    def module(self) -> FactModule:
        return FactModule.PORTFOLIO

    def entity_keys(self) -> Dict[str, str]:
        return {"portfolioId": self.portfolio_id}


class ExplainRecomputePayload(_JobPayloadBase):
    """Generate (or confirm cached) explanation for one known fact hash."""
    job_type: Literal["EXPLAIN_RECOMPUTE"] = "EXPLAIN_RECOMPUTE"
    module: FactModule
    entity_keys: Dict[str, str]
    fact_hash: Identifier
    audience: Audience = Audience.DEFAULT
    verbosity: Verbosity = Verbosity.STANDARD


class NightlyRefreshTenantPayload(_JobPayloadBase):
    job_type: Literal["NIGHTLY_REFRESH_TENANT"] = "NIGHTLY_REFRESH_TENANT"
    reason: Literal["SCHEDULED_NIGHTLY", "MANUAL"] = "SCHEDULED_NIGHTLY"


RecomputePayload = Union[
    TradingReadinessRecomputePayload,
    EsgKpiRecomputePayload,
    CovenantRecomputePayload,
    PortfolioRiskRecomputePayload,
]

JobPayload = Annotated[
    Union[
        TradingReadinessRecomputePayload,
        EsgKpiRecomputePayload,
        CovenantRecomputePayload,
        PortfolioRiskRecomputePayload,
        ExplainRecomputePayload,
        NightlyRefreshTenantPayload,
    ],
    Field(discriminator="job_type"),
]

_job_payload_adapter = TypeAdapter(JobPayload)

RECOMPUTE_JOB_TYPES = {
    FactModule.TRADING: JobType.TRADING_READINESS_RECOMPUTE,
    FactModule.ESG: JobType.ESG_KPI_RECOMPUTE,
    FactModule.SERVICING: JobType.COVENANT_RECOMPUTE,
    FactModule.PORTFOLIO: JobType.PORTFOLIO_RISK_RECOMPUTE,
}


def parse_job_payload(data: dict):
    """
    Validate a raw job payload into its typed variant.

    Raises:
        JobValidationError: unknown job type or missing identifiers
    """
    try:
        return _job_payload_adapter.validate_python(data)
    except ValidationError as e:
        fields = ", ".join(
            ".".join(str(p) for p in err["loc"]) or "payload" for err in e.errors()
        )
        raise JobValidationError(f"Invalid job payload ({fields}): {e.error_count()} error(s)") from e


def recompute_payload_for(
    module: FactModule,
    tenant_id: str,
    entity_keys: Dict[str, str],
    correlation_id: Optional[str] = None,
    actor_user_id: Optional[str] = None,
):
    """Build the recompute payload variant for a module from generic entity keys."""
    data = {
        "job_type": RECOMPUTE_JOB_TYPES[module].value,
        "tenant_id": tenant_id,
        "correlation_id": correlation_id,
        "actor_user_id": actor_user_id,
        "loan_id": entity_keys.get("loanId"),
        "kpi_id": entity_keys.get("kpiId"),
        "covenant_id": entity_keys.get("covenantId"),
    }
    if module == FactModule.PORTFOLIO:
        data["portfolio_id"] = entity_keys.get("portfolioId") or DEFAULT_PORTFOLIO_ID
    return parse_job_payload({k: v for k, v in data.items() if v is not None})
