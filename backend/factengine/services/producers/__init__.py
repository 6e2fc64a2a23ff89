"""
Fact producers: one per domain, plus the upstream state they read.
"""
from .base import FactProducer
from .covenant import CovenantEvaluationProducer, evaluate_covenant
from .esg import EsgKpiProducer, measurement_status, verify_evidence
from .portfolio import PortfolioRiskProducer
from .registry import ProducerRegistry, get_producer_registry
from .trading import TradingReadinessProducer, band_from_score, readiness_score
from .upstream import (
    ChecklistItem,
    CovenantState,
    EsgKpiState,
    EvidenceRef,
    InMemoryUpstreamSource,
    LoanState,
    UpstreamSource,
)

__all__ = [
    "FactProducer",
    "ProducerRegistry",
    "get_producer_registry",
    "TradingReadinessProducer",
    "EsgKpiProducer",
    "CovenantEvaluationProducer",
    "PortfolioRiskProducer",
    "band_from_score",
    "readiness_score",
    "evaluate_covenant",
    "measurement_status",
    "verify_evidence",
    "UpstreamSource",
    "InMemoryUpstreamSource",
    "LoanState",
    "ChecklistItem",
    "EsgKpiState",
    "EvidenceRef",
    "CovenantState",
]
