"""
Covenant Evaluation Producer

Tests one covenant's observed metric against its threshold.
A passing covenant with less than AT_RISK_HEADROOM of headroom is AT_RISK.
"""
from typing import Dict, Optional

from .base import FactProducer
from .upstream import CovenantState
from ...errors import UpstreamNotFoundError
from ...models.facts import FactModule, FactPayload


AT_RISK_HEADROOM = 0.10


def evaluate_covenant(covenant: CovenantState) -> str:
    """COMPLIANT | AT_RISK | BREACH | UNKNOWN"""
    observed, threshold = covenant.observed, covenant.threshold
    if observed is None or covenant.operator not in ("GTE", "LTE"):
        return "UNKNOWN"

    if covenant.operator == "GTE":
        passes = observed >= threshold
        headroom = observed - threshold
    else:
        passes = observed <= threshold
        headroom = threshold - observed

    if not passes:
        return "BREACH"
    if threshold and headroom / abs(threshold) < AT_RISK_HEADROOM:
        return "AT_RISK"
    return "COMPLIANT"


def _breach_detail(covenant: CovenantState, status: str) -> Optional[Dict[str, float]]:
    if status != "BREACH":
        return None
    return {"delta": round(covenant.observed - covenant.threshold, 6)}


class CovenantEvaluationProducer(FactProducer):
    """Compliance status per loan + covenant."""

    module = FactModule.SERVICING
    name = "covenant-evaluation-producer"

    def compute(self, tenant_id: str, entity_keys: Dict[str, str]) -> FactPayload:
        loan_id, covenant_id = entity_keys["loanId"], entity_keys["covenantId"]
        covenant = self.upstream.get_covenant(tenant_id, loan_id, covenant_id)
        if covenant is None:
            raise UpstreamNotFoundError(f"Covenant not found: {covenant_id} on loan {loan_id}")

        status = evaluate_covenant(covenant)

        return FactPayload(
            module=self.module,
            fact_version=self.fact_version,
            data={
                "covenantCode": covenant.code,
                "covenantName": covenant.name,
                "status": status,
                "threshold": {
                    "metric": covenant.metric,
                    "operator": covenant.operator,
                    "value": covenant.threshold,
                },
                "observed": {
                    "metric": covenant.metric,
                    "value": covenant.observed,
                    "asOf": covenant.as_of,
                },
                "breachDetail": _breach_detail(covenant, status),
            },
        )
