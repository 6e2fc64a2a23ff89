"""
Trading Readiness Producer

Scores a loan's trading readiness from its weighted checklist.

Score = done weight / total weight, as a 0-100 integer.
Band:  >= 80 GREEN, >= 55 AMBER, otherwise RED.
"""
from typing import Dict, List

from .base import FactProducer
from .upstream import ChecklistItem, LoanState
from ...errors import UpstreamNotFoundError
from ...models.facts import FactModule, FactPayload


# Open items at or above this weight block trading
BLOCKING_WEIGHT = 15


def band_from_score(score: int) -> str:
    if score >= 80:
        return "GREEN"
    if score >= 55:
        return "AMBER"
    return "RED"


def readiness_score(checklist: List[ChecklistItem]) -> int:
    """Weighted completion, rounded half up."""
    total_weight = sum(item.weight for item in checklist) or 1
    done_weight = sum(item.weight for item in checklist if item.status == "DONE")
    return int(done_weight * 100 / total_weight + 0.5)


def _completion(items: List[ChecklistItem]) -> float:
    if not items:
        return 0.0
    done = sum(1 for item in items if item.status == "DONE")
    return round(done / len(items), 4)


def _amendment_stability(loan: LoanState) -> str:
    if not loan.has_versioned_documents:
        return "NONE"
    if loan.document_count < 3:
        return "HIGH"
    if loan.document_count < 6:
        return "MEDIUM"
    return "LOW"


class TradingReadinessProducer(FactProducer):
    """Readiness score, band, contributing factors and blocking issues per loan."""

    module = FactModule.TRADING
    name = "trading-readiness-producer"

    def compute(self, tenant_id: str, entity_keys: Dict[str, str]) -> FactPayload:
        loan_id = entity_keys["loanId"]
        loan = self.upstream.get_loan(tenant_id, loan_id)
        if loan is None:
            raise UpstreamNotFoundError(f"Loan not found: {loan_id}")

        checklist = loan.checklist
        score = readiness_score(checklist)

        by_category: Dict[str, List[ChecklistItem]] = {}
        for item in checklist:
            by_category.setdefault(item.category, []).append(item)

        servicing_items = by_category.get("SERVICING", [])
        contributing_factors = {
            "documentationCompleteness": _completion(by_category.get("DOCUMENTS", [])),
            "covenantCompliance": all(i.status == "DONE" for i in servicing_items),
            "amendmentStability": _amendment_stability(loan),
            "servicingAlerts": sum(1 for i in servicing_items if i.status in ("OPEN", "BLOCKED")),
            "esgDisclosureCoverage": _completion(by_category.get("ESG", [])),
            "auditTrailCompleteness": loan.audit_trail_present,
        }

        blocking_issues = [f"Blocked: {i.title}" for i in checklist if i.status == "BLOCKED"]
        blocking_issues += [
            f"Missing: {i.title}"
            for i in checklist
            if i.status == "OPEN" and i.weight >= BLOCKING_WEIGHT
        ]
        if loan.document_count == 0:
            blocking_issues.append("No documents uploaded")
        if not loan.has_scenarios:
            blocking_issues.append("Servicing scenarios not configured")

        return FactPayload(
            module=self.module,
            fact_version=self.fact_version,
            data={
                "readinessScore": score,
                "readinessBand": band_from_score(score),
                "contributingFactors": contributing_factors,
                "blockingIssues": blocking_issues,
            },
        )
