"""
Nightly Tenant Refresh

Recomputes a tenant's facts in one sequential pass:

1. Portfolio risk facts
2. Trading readiness for the most recently touched loans
3. Per loan, the most recently touched ESG KPIs
4. Per loan, the most recently created covenants

Drift detection runs for every entity as part of its recompute. The whole
pass is wrapped in OPS_JOB_STARTED / OPS_JOB_COMPLETED / OPS_JOB_FAILED with
aggregate counters. Each entity commits on its own, so a failure part-way
keeps the entities already refreshed.
"""
import logging
from typing import Any, Dict, Optional

from .handlers import FactRecomputer, JobHandler
from ..audit import AuditEventType
from ...config import NIGHTLY_LOAN_LIMIT, NIGHTLY_CHILD_LIMIT
from ...models.facts import DEFAULT_PORTFOLIO_ID, FactModule


logger = logging.getLogger(__name__)


class NightlyRefreshHandler(JobHandler):
    """
    NIGHTLY_REFRESH_TENANT job.

    Usage:
        handler = NightlyRefreshHandler(registry)
        stats = handler.run(db, job, payload)
    """

    started_event = AuditEventType.OPS_JOB_STARTED
    completed_event = AuditEventType.OPS_JOB_COMPLETED
    failed_event = AuditEventType.OPS_JOB_FAILED

    loan_limit = NIGHTLY_LOAN_LIMIT
    child_limit = NIGHTLY_CHILD_LIMIT

    def process(self, db, job, payload, actor) -> Dict[str, Any]:
        tenant_id = payload.tenant_id
        correlation_id = payload.correlation_id
        upstream = self.registry.upstream
        recomputer = FactRecomputer(db, self.registry, actor, self.auto_explain_on_drift)

        stats = {
            "reason": payload.reason,
            "portfolioRefreshed": False,
            "loansRefreshed": 0,
            "kpisRefreshed": 0,
            "covenantsRefreshed": 0,
            "driftDetected": 0,
        }

        def refresh(module: FactModule, keys: Dict[str, str], counter: Optional[str] = None) -> None:
            outcome = recomputer.recompute(tenant_id, module, keys, correlation_id)
            db.commit()
            if outcome["drifted"]:
                stats["driftDetected"] += 1
            if counter:
                stats[counter] += 1

        logger.info(f"Nightly refresh for tenant {tenant_id} ({payload.reason})")

        refresh(FactModule.PORTFOLIO, {"portfolioId": DEFAULT_PORTFOLIO_ID})
        stats["portfolioRefreshed"] = True

        for loan in upstream.list_recent_loans(tenant_id, self.loan_limit):
            refresh(FactModule.TRADING, {"loanId": loan.loan_id}, "loansRefreshed")

            for kpi in upstream.list_recent_kpis(tenant_id, loan.loan_id, self.child_limit):
                refresh(
                    FactModule.ESG,
                    {"loanId": loan.loan_id, "kpiId": kpi.kpi_id},
                    "kpisRefreshed",
                )

            for covenant in upstream.list_recent_covenants(tenant_id, loan.loan_id, self.child_limit):
                refresh(
                    FactModule.SERVICING,
                    {"loanId": loan.loan_id, "covenantId": covenant.covenant_id},
                    "covenantsRefreshed",
                )

        logger.info(
            f"Nightly refresh for tenant {tenant_id} done: {stats['loansRefreshed']} loans, "
            f"{stats['kpisRefreshed']} KPIs, {stats['covenantsRefreshed']} covenants, "
            f"{stats['driftDetected']} drifted"
        )
        return {"stats": stats}
