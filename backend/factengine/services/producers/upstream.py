"""
Upstream Source

Read-only view of the loan-servicing state the fact producers evaluate:
loans with their trading checklist, ESG KPIs with evidence references, and
covenants with their latest observed metric.

The engine never writes upstream state. Producers only read it, and the
nightly refresh only lists it.
"""
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from ...models.db_models import utcnow


# =============================================================================
# UPSTREAM RECORDS
# =============================================================================

@dataclass
class ChecklistItem:
    """One weighted trading readiness checklist item."""
    code: str
    title: str
    category: str            # DOCUMENTS | SERVICING | ESG | KYC | DATA
    weight: int
    status: str = "OPEN"     # DONE | OPEN | BLOCKED


@dataclass
class LoanState:
    loan_id: str
    name: str = ""
    exposure: float = 0.0
    currency: str = "USD"
    checklist: List[ChecklistItem] = field(default_factory=list)
    document_count: int = 0
    has_versioned_documents: bool = False
    has_scenarios: bool = False
    audit_trail_present: bool = False
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class EvidenceRef:
    """Uploaded ESG evidence file."""
    evidence_id: str
    file_key: str
    title: str = ""
    content_type: str = "application/pdf"
    checksum: Optional[str] = None


@dataclass
class EsgKpiState:
    loan_id: str
    kpi_id: str
    code: str
    name: str
    unit: str
    target: float
    direction: str = "LTE"   # LTE: at or below target passes, GTE: at or above
    value: Optional[float] = None
    period: str = ""
    evidence: List[EvidenceRef] = field(default_factory=list)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class CovenantState:
    loan_id: str
    covenant_id: str
    code: str
    name: str
    metric: str
    operator: str            # GTE | LTE
    threshold: float
    observed: Optional[float] = None
    as_of: str = ""
    created_at: datetime = field(default_factory=utcnow)


# =============================================================================
# INTERFACE
# =============================================================================

class UpstreamSource(ABC):
    """Tenant-scoped reads of loan, KPI and covenant state."""

    @abstractmethod
    def get_loan(self, tenant_id: str, loan_id: str) -> Optional[LoanState]:
        raise NotImplementedError

    @abstractmethod
    def get_kpi(self, tenant_id: str, loan_id: str, kpi_id: str) -> Optional[EsgKpiState]:
        raise NotImplementedError

    @abstractmethod
    def get_covenant(self, tenant_id: str, loan_id: str, covenant_id: str) -> Optional[CovenantState]:
        raise NotImplementedError

    @abstractmethod
    def list_loans(self, tenant_id: str) -> List[LoanState]:
        raise NotImplementedError

    @abstractmethod
    def list_kpis(self, tenant_id: str, loan_id: str) -> List[EsgKpiState]:
        raise NotImplementedError

    @abstractmethod
    def list_covenants(self, tenant_id: str, loan_id: str) -> List[CovenantState]:
        raise NotImplementedError

    # Nightly refresh ordering: most recently touched first

    def list_recent_loans(self, tenant_id: str, limit: int) -> List[LoanState]:
        loans = sorted(self.list_loans(tenant_id), key=lambda l: l.updated_at, reverse=True)
        return loans[:limit]

    def list_recent_kpis(self, tenant_id: str, loan_id: str, limit: int) -> List[EsgKpiState]:
        kpis = sorted(self.list_kpis(tenant_id, loan_id), key=lambda k: k.updated_at, reverse=True)
        return kpis[:limit]

    def list_recent_covenants(self, tenant_id: str, loan_id: str, limit: int) -> List[CovenantState]:
        covenants = sorted(
            self.list_covenants(tenant_id, loan_id), key=lambda c: c.created_at, reverse=True
        )
        return covenants[:limit]


# =============================================================================
# IN-MEMORY IMPLEMENTATION
# =============================================================================

class InMemoryUpstreamSource(UpstreamSource):
    """
    Dict-backed upstream state, keyed by tenant.

    Usage:
        source = InMemoryUpstreamSource()
        source.put_loan("tenant-1", LoanState(loan_id="loan-1", checklist=[...]))
    """

    def __init__(self):
        self._loans: Dict[str, Dict[str, LoanState]] = {}
        self._kpis: Dict[str, Dict[tuple, EsgKpiState]] = {}
        self._covenants: Dict[str, Dict[tuple, CovenantState]] = {}

    def put_loan(self, tenant_id: str, loan: LoanState) -> LoanState:
        self._loans.setdefault(tenant_id, {})[loan.loan_id] = loan
        return loan

    def put_kpi(self, tenant_id: str, kpi: EsgKpiState) -> EsgKpiState:
        self._kpis.setdefault(tenant_id, {})[(kpi.loan_id, kpi.kpi_id)] = kpi
        return kpi

    def put_covenant(self, tenant_id: str, covenant: CovenantState) -> CovenantState:
        self._covenants.setdefault(tenant_id, {})[(covenant.loan_id, covenant.covenant_id)] = covenant
        return covenant

    def get_loan(self, tenant_id: str, loan_id: str) -> Optional[LoanState]:
        return self._loans.get(tenant_id, {}).get(loan_id)

    def get_kpi(self, tenant_id: str, loan_id: str, kpi_id: str) -> Optional[EsgKpiState]:
        return self._kpis.get(tenant_id, {}).get((loan_id, kpi_id))

    def get_covenant(self, tenant_id: str, loan_id: str, covenant_id: str) -> Optional[CovenantState]:
        return self._covenants.get(tenant_id, {}).get((loan_id, covenant_id))

    def list_loans(self, tenant_id: str) -> List[LoanState]:
        return list(self._loans.get(tenant_id, {}).values())

    def list_kpis(self, tenant_id: str, loan_id: str) -> List[EsgKpiState]:
        return [k for k in self._kpis.get(tenant_id, {}).values() if k.loan_id == loan_id]

    def list_covenants(self, tenant_id: str, loan_id: str) -> List[CovenantState]:
        return [c for c in self._covenants.get(tenant_id, {}).values() if c.loan_id == loan_id]

    # =========================================================================
    # Seeding
    # =========================================================================

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InMemoryUpstreamSource":
        """
        Build a source from a seed document:

            {"tenants": {"tenant-1": {"loans": [...], "kpis": [...], "covenants": [...]}}}

        Loan entries carry their checklist as a list of item dicts; KPI entries
        carry their evidence as a list of evidence dicts.
        """
        source = cls()
        for tenant_id, tenant in (data.get("tenants") or {}).items():
            for raw in tenant.get("loans", []):
                raw = dict(raw)
                raw["checklist"] = [ChecklistItem(**item) for item in raw.get("checklist", [])]
                if "updated_at" in raw:
                    raw["updated_at"] = datetime.fromisoformat(raw["updated_at"])
                source.put_loan(tenant_id, LoanState(**raw))
            for raw in tenant.get("kpis", []):
                raw = dict(raw)
                raw["evidence"] = [EvidenceRef(**e) for e in raw.get("evidence", [])]
                if "updated_at" in raw:
                    raw["updated_at"] = datetime.fromisoformat(raw["updated_at"])
                source.put_kpi(tenant_id, EsgKpiState(**raw))
            for raw in tenant.get("covenants", []):
                raw = dict(raw)
                if "created_at" in raw:
                    raw["created_at"] = datetime.fromisoformat(raw["created_at"])
                source.put_covenant(tenant_id, CovenantState(**raw))
        return source

    @classmethod
    def from_json_file(cls, path: str) -> "InMemoryUpstreamSource":
        with open(path, "r", encoding="utf-8") as f:
            return cls.from_dict(json.load(f))
