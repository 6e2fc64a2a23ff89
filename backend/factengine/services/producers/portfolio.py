"""
Portfolio Risk Producer

Aggregates the tenant's loans into one portfolio fact: totals, status
distributions and the most common risk drivers.

The fact carries no as-of timestamp, so an unchanged portfolio hashes to the
same snapshot on every nightly run.
"""
from typing import Dict

from .base import FactProducer
from .covenant import evaluate_covenant
from .esg import measurement_status
from .trading import band_from_score, readiness_score
from ...models.facts import FactModule, FactPayload


def _portfolio_currency(currencies: set) -> str:
    if not currencies:
        return "USD"
    if len(currencies) == 1:
        return next(iter(currencies))
    return "MIXED"


class PortfolioRiskProducer(FactProducer):
    """Tenant-wide aggregate keyed by portfolioId."""

    module = FactModule.PORTFOLIO
    name = "portfolio-risk-producer"

    def compute(self, tenant_id: str, entity_keys: Dict[str, str]) -> FactPayload:
        loans = sorted(self.upstream.list_loans(tenant_id), key=lambda l: l.loan_id)

        readiness_bands = {"GREEN": 0, "AMBER": 0, "RED": 0}
        covenant_status = {"COMPLIANT": 0, "AT_RISK": 0, "BREACH": 0, "UNKNOWN": 0}
        esg_status = {"PASS": 0, "FAIL": 0, "UNKNOWN": 0}
        drivers = {
            "Blocked checklist items": 0,
            "Covenant breaches": 0,
            "ESG targets missed": 0,
            "Missing ESG measurements": 0,
        }

        exposure = 0.0
        currencies = set()

        for loan in loans:
            exposure += loan.exposure
            currencies.add(loan.currency)
            readiness_bands[band_from_score(readiness_score(loan.checklist))] += 1
            drivers["Blocked checklist items"] += sum(
                1 for item in loan.checklist if item.status == "BLOCKED"
            )

            for covenant in self.upstream.list_covenants(tenant_id, loan.loan_id):
                status = evaluate_covenant(covenant)
                covenant_status[status] += 1
                if status == "BREACH":
                    drivers["Covenant breaches"] += 1

            for kpi in self.upstream.list_kpis(tenant_id, loan.loan_id):
                status = measurement_status(kpi)
                esg_status[status] += 1
                if status == "FAIL":
                    drivers["ESG targets missed"] += 1
                elif status == "UNKNOWN":
                    drivers["Missing ESG measurements"] += 1

        top_drivers = [
            {"driver": name, "count": count}
            for name, count in sorted(drivers.items(), key=lambda kv: (-kv[1], kv[0]))
            if count > 0
        ]

        return FactPayload(
            module=self.module,
            fact_version=self.fact_version,
            data={
                "totals": {
                    "loans": len(loans),
                    "exposure": round(exposure, 2),
                    "currency": _portfolio_currency(currencies),
                },
                "distributions": {
                    "readinessBands": readiness_bands,
                    "covenantStatus": covenant_status,
                    "esgStatus": esg_status,
                },
                "topDrivers": top_drivers,
            },
        )
