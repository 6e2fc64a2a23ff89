"""
Tests for the reference fact producers: trading readiness, ESG KPI,
covenant evaluation and portfolio risk.
"""
import pytest

from factengine.errors import UpstreamNotFoundError
from factengine.models.facts import FactModule
from factengine.services.hashing import compute_fact_hash
from factengine.services.producers import (
    ChecklistItem,
    CovenantEvaluationProducer,
    CovenantState,
    EsgKpiProducer,
    EsgKpiState,
    EvidenceRef,
    InMemoryUpstreamSource,
    LoanState,
    PortfolioRiskProducer,
    ProducerRegistry,
    TradingReadinessProducer,
    band_from_score,
    evaluate_covenant,
    readiness_score,
    verify_evidence,
)
from factengine.services.storage import InMemoryBlobStore

from conftest import TENANT, make_loan_1


# =============================================================================
# TRADING READINESS
# =============================================================================

class TestTradingReadiness:

    @pytest.mark.parametrize("score,band", [(100, "GREEN"), (80, "GREEN"), (79, "AMBER"), (55, "AMBER"), (54, "RED"), (0, "RED")])
    def test_band_thresholds(self, score, band):
        assert band_from_score(score) == band

    def test_weighted_score_rounds_half_up(self):
        items = [
            ChecklistItem(code="A", title="A", category="DOCUMENTS", weight=1, status="DONE"),
            ChecklistItem(code="B", title="B", category="DOCUMENTS", weight=1, status="OPEN"),
        ]
        assert readiness_score(items) == 50
        items.append(ChecklistItem(code="C", title="C", category="DOCUMENTS", weight=6, status="OPEN"))
        assert readiness_score(items) == 13  # 12.5 -> 13

    def test_empty_checklist_scores_zero(self):
        assert readiness_score([]) == 0

    def test_loan_1_is_75_amber(self, upstream):
        fact = TradingReadinessProducer(upstream).compute(TENANT, {"loanId": "loan-1"})

        assert fact.module == FactModule.TRADING
        assert fact.data["readinessScore"] == 75
        assert fact.data["readinessBand"] == "AMBER"
        assert fact.data["blockingIssues"] == ["Missing: Servicing Setup"]
        assert fact.data["contributingFactors"]["documentationCompleteness"] == 1.0
        assert fact.data["contributingFactors"]["servicingAlerts"] == 1

    def test_deterministic(self, upstream):
        producer = TradingReadinessProducer(upstream)
        first = producer.compute(TENANT, {"loanId": "loan-1"}).fact_core({"loanId": "loan-1"})
        second = producer.compute(TENANT, {"loanId": "loan-1"}).fact_core({"loanId": "loan-1"})
        assert compute_fact_hash(first) == compute_fact_hash(second)

    def test_missing_documents_and_scenarios_block(self):
        source = InMemoryUpstreamSource()
        source.put_loan(TENANT, LoanState(loan_id="bare"))

        fact = TradingReadinessProducer(source).compute(TENANT, {"loanId": "bare"})

        assert "No documents uploaded" in fact.data["blockingIssues"]
        assert "Servicing scenarios not configured" in fact.data["blockingIssues"]

    def test_unknown_loan(self, upstream):
        with pytest.raises(UpstreamNotFoundError):
            TradingReadinessProducer(upstream).compute(TENANT, {"loanId": "missing"})


# =============================================================================
# ESG KPI
# =============================================================================

class TestEsgKpi:

    def test_verified_evidence_and_met_target_pass(self, upstream, blob_store):
        fact = EsgKpiProducer(upstream, blob_store).compute(TENANT, {"loanId": "loan-1", "kpiId": "kpi-1"})

        assert fact.data["status"] == "PASS"
        assert fact.data["reasonCodes"] == []
        assert fact.data["evidence"][0]["status"] == "VERIFIED"

    def test_no_verified_evidence_needs_verification(self, upstream, blob_store):
        kpi = upstream.get_kpi(TENANT, "loan-1", "kpi-1")
        kpi.evidence[0].checksum = None

        fact = EsgKpiProducer(upstream, blob_store).compute(TENANT, {"loanId": "loan-1", "kpiId": "kpi-1"})

        assert fact.data["status"] == "NEEDS_VERIFICATION"
        assert fact.data["reasonCodes"] == ["MISSING_VERIFICATION_EVIDENCE"]

    def test_missed_target_fails(self, upstream, blob_store):
        upstream.get_kpi(TENANT, "loan-1", "kpi-1").value = 1200.0

        fact = EsgKpiProducer(upstream, blob_store).compute(TENANT, {"loanId": "loan-1", "kpiId": "kpi-1"})

        assert fact.data["status"] == "FAIL"
        assert fact.data["reasonCodes"] == ["TARGET_NOT_MET"]

    def test_no_measurement_is_unknown(self, blob_store):
        source = InMemoryUpstreamSource()
        source.put_kpi(TENANT, EsgKpiState(
            loan_id="loan-1", kpi_id="kpi-2", code="WATER", name="Water use", unit="m3", target=10.0,
        ))

        fact = EsgKpiProducer(source, blob_store).compute(TENANT, {"loanId": "loan-1", "kpiId": "kpi-2"})

        assert fact.data["status"] == "UNKNOWN"
        assert fact.data["reasonCodes"] == ["MISSING_MEASUREMENT"]

    def test_evidence_heuristics(self):
        ref = EvidenceRef(evidence_id="e", file_key="k", checksum="sha256:1")
        assert verify_evidence(ref, 0)["status"] == "REJECTED"
        assert verify_evidence(ref, 5)["status"] == "NEEDS_REVIEW"
        assert verify_evidence(ref, 500)["status"] == "VERIFIED"

        no_checksum = EvidenceRef(evidence_id="e", file_key="k")
        assert verify_evidence(no_checksum, 500)["status"] == "NEEDS_REVIEW"

    def test_missing_blob_is_not_found(self, upstream):
        producer = EsgKpiProducer(upstream, InMemoryBlobStore())
        with pytest.raises(UpstreamNotFoundError):
            producer.compute(TENANT, {"loanId": "loan-1", "kpiId": "kpi-1"})


# =============================================================================
# COVENANTS
# =============================================================================

def _covenant(operator, threshold, observed):
    return CovenantState(
        loan_id="loan-1", covenant_id="c", code="X", name="X", metric="m",
        operator=operator, threshold=threshold, observed=observed,
    )


class TestCovenantEvaluation:

    @pytest.mark.parametrize("operator,threshold,observed,status", [
        ("GTE", 3.0, 4.2, "COMPLIANT"),
        ("GTE", 3.0, 3.1, "AT_RISK"),
        ("GTE", 3.0, 2.5, "BREACH"),
        ("LTE", 4.0, 3.0, "COMPLIANT"),
        ("LTE", 4.0, 3.8, "AT_RISK"),
        ("LTE", 4.0, 4.5, "BREACH"),
        ("GTE", 3.0, None, "UNKNOWN"),
        ("EQ", 3.0, 3.0, "UNKNOWN"),
    ])
    def test_status(self, operator, threshold, observed, status):
        assert evaluate_covenant(_covenant(operator, threshold, observed)) == status

    def test_breach_detail(self, upstream):
        upstream.get_covenant(TENANT, "loan-1", "cov-1").observed = 2.5

        fact = CovenantEvaluationProducer(upstream).compute(TENANT, {"loanId": "loan-1", "covenantId": "cov-1"})

        assert fact.data["status"] == "BREACH"
        assert fact.data["breachDetail"] == {"delta": -0.5}

    def test_compliant_has_no_breach_detail(self, upstream):
        fact = CovenantEvaluationProducer(upstream).compute(TENANT, {"loanId": "loan-1", "covenantId": "cov-1"})

        assert fact.data["status"] == "COMPLIANT"
        assert fact.data["breachDetail"] is None


# =============================================================================
# PORTFOLIO
# =============================================================================

class TestPortfolioRisk:

    def test_aggregates(self, upstream):
        second = make_loan_1(done=4)
        second.loan_id = "loan-2"
        second.exposure = 5_000_000.0
        upstream.put_loan(TENANT, second)

        fact = PortfolioRiskProducer(upstream).compute(TENANT, {"portfolioId": "default"})

        assert fact.data["totals"] == {"loans": 2, "exposure": 30_000_000.0, "currency": "USD"}
        assert fact.data["distributions"]["readinessBands"] == {"GREEN": 1, "AMBER": 1, "RED": 0}
        assert fact.data["distributions"]["covenantStatus"]["COMPLIANT"] == 1
        assert fact.data["distributions"]["esgStatus"]["PASS"] == 1

    def test_empty_portfolio(self):
        fact = PortfolioRiskProducer(InMemoryUpstreamSource()).compute(TENANT, {"portfolioId": "default"})

        assert fact.data["totals"] == {"loans": 0, "exposure": 0.0, "currency": "USD"}
        assert fact.data["topDrivers"] == []

    def test_top_drivers_ordered_by_count(self, upstream):
        upstream.get_covenant(TENANT, "loan-1", "cov-1").observed = 1.0
        upstream.get_kpi(TENANT, "loan-1", "kpi-1").value = None

        fact = PortfolioRiskProducer(upstream).compute(TENANT, {"portfolioId": "default"})

        assert [d["driver"] for d in fact.data["topDrivers"]] == [
            "Covenant breaches",
            "Missing ESG measurements",
        ]


# =============================================================================
# REGISTRY + SEED
# =============================================================================

def test_registry_lookup(registry):
    assert isinstance(registry.get(FactModule.TRADING), TradingReadinessProducer)
    assert isinstance(registry.get(FactModule.PORTFOLIO), PortfolioRiskProducer)

    with pytest.raises(KeyError):
        ProducerRegistry(InMemoryUpstreamSource(), {}).get(FactModule.ESG)


def test_upstream_from_dict():
    source = InMemoryUpstreamSource.from_dict({
        "tenants": {
            TENANT: {
                "loans": [{
                    "loan_id": "loan-9",
                    "checklist": [{"code": "A", "title": "A", "category": "DOCUMENTS", "weight": 10, "status": "DONE"}],
                    "updated_at": "2025-01-01T00:00:00",
                }],
                "kpis": [{
                    "loan_id": "loan-9", "kpi_id": "k", "code": "C", "name": "N", "unit": "u", "target": 1.0,
                    "evidence": [{"evidence_id": "e", "file_key": "f"}],
                }],
                "covenants": [{
                    "loan_id": "loan-9", "covenant_id": "c", "code": "C", "name": "N", "metric": "m",
                    "operator": "GTE", "threshold": 1.0,
                }],
            }
        }
    })

    loan = source.get_loan(TENANT, "loan-9")
    assert loan.checklist[0].status == "DONE"
    assert source.get_kpi(TENANT, "loan-9", "k").evidence[0].file_key == "f"
    assert source.get_covenant(TENANT, "loan-9", "c").operator == "GTE"
    assert source.get_loan("tenant-2", "loan-9") is None
