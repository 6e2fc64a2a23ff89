"""
ESG KPI Producer

Evaluates one KPI of a loan: verifies each uploaded evidence file with
simple heuristics, then compares the measured value to the target.

Evidence heuristics (per file):
- missing checksum          -> NEEDS_REVIEW
- empty file                -> REJECTED
- very small file (<20 B)   -> NEEDS_REVIEW
- PDF raises confidence, other content types cap it

KPI status:
- no measurement                    -> UNKNOWN
- no VERIFIED evidence              -> NEEDS_VERIFICATION
- measurement meets target          -> PASS, otherwise FAIL
"""
from typing import Any, Dict, List, Optional

from .base import FactProducer
from .upstream import EsgKpiState, EvidenceRef, UpstreamSource
from ..storage import BlobStore, BlobRetryConfig, fetch_with_retry
from ...errors import UpstreamNotFoundError
from ...models.facts import FactModule, FactPayload


MIN_EVIDENCE_BYTES = 20


def verify_evidence(ref: EvidenceRef, size: int) -> Dict[str, Any]:
    """Heuristic verification of one evidence file."""
    status = "VERIFIED"
    confidence = 0.85
    notes: List[str] = []

    if not ref.checksum:
        status = "NEEDS_REVIEW"
        confidence = 0.4
        notes.append("Missing checksum")

    if size <= 0:
        status = "REJECTED"
        confidence = 0.1
        notes.append("Empty file")
    elif size < MIN_EVIDENCE_BYTES:
        status = "NEEDS_REVIEW"
        confidence = min(confidence, 0.55)
        notes.append("Evidence file is very small; needs manual review")
    else:
        notes.append("File present and non-empty")

    if "pdf" in (ref.content_type or ""):
        notes.append("PDF evidence detected")
        confidence = min(0.95, confidence + 0.05)
    else:
        notes.append(f"Non-PDF evidence ({ref.content_type})")
        confidence = min(confidence, 0.8)

    return {
        "evidenceId": ref.evidence_id,
        "status": status,
        "confidence": round(confidence, 2),
        "bytes": size,
        "notes": notes,
    }


def measurement_status(kpi: EsgKpiState) -> str:
    """PASS/FAIL on the measured value alone, UNKNOWN without one."""
    if kpi.value is None:
        return "UNKNOWN"
    if kpi.direction == "GTE":
        return "PASS" if kpi.value >= kpi.target else "FAIL"
    return "PASS" if kpi.value <= kpi.target else "FAIL"


class EsgKpiProducer(FactProducer):
    """KPI status, measurement and evidence verification per loan + KPI."""

    module = FactModule.ESG
    name = "esg-kpi-producer"

    def __init__(
        self,
        upstream: UpstreamSource,
        blob_store: BlobStore,
        retry_config: Optional[BlobRetryConfig] = None,
    ):
        super().__init__(upstream)
        self.blob_store = blob_store
        self.retry_config = retry_config

    def compute(self, tenant_id: str, entity_keys: Dict[str, str]) -> FactPayload:
        loan_id, kpi_id = entity_keys["loanId"], entity_keys["kpiId"]
        kpi = self.upstream.get_kpi(tenant_id, loan_id, kpi_id)
        if kpi is None:
            raise UpstreamNotFoundError(f"ESG KPI not found: {kpi_id} on loan {loan_id}")

        evidence = []
        for ref in sorted(kpi.evidence, key=lambda e: e.evidence_id):
            content = fetch_with_retry(self.blob_store, ref.file_key, self.retry_config)
            evidence.append(verify_evidence(ref, len(content)))

        reason_codes: List[str] = []
        status = measurement_status(kpi)
        if status == "UNKNOWN":
            reason_codes.append("MISSING_MEASUREMENT")
        elif not any(e["status"] == "VERIFIED" for e in evidence):
            status = "NEEDS_VERIFICATION"
            reason_codes.append("MISSING_VERIFICATION_EVIDENCE")
        elif status == "FAIL":
            reason_codes.append("TARGET_NOT_MET")

        return FactPayload(
            module=self.module,
            fact_version=self.fact_version,
            data={
                "kpiCode": kpi.code,
                "kpiName": kpi.name,
                "status": status,
                "reasonCodes": reason_codes,
                "measurement": {
                    "value": kpi.value,
                    "unit": kpi.unit,
                    "period": kpi.period,
                    "target": kpi.target,
                    "direction": kpi.direction,
                },
                "evidence": evidence,
            },
        )
