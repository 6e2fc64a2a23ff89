"""
Shared fixtures: file-backed SQLite per test, seeded in-memory upstream,
deterministic generator with a call counter, FastAPI TestClient.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from factengine.auth import create_access_token
from factengine.database import build_engine, get_db, get_session_factory, init_db
from factengine.dependencies import get_explanation_generator, get_rate_limiter, get_registry
from factengine.main import app
from factengine.services.explain import DemoExplanationGenerator, FixedWindowRateLimiter
from factengine.services.jobs import Worker
from factengine.services.producers import (
    ChecklistItem,
    CovenantState,
    EsgKpiState,
    EvidenceRef,
    InMemoryUpstreamSource,
    LoanState,
    ProducerRegistry,
)
from factengine.services.storage import InMemoryBlobStore


TENANT = "tenant-1"


class CountingGenerator(DemoExplanationGenerator):
    """Demo generator that records every request it is asked to explain."""

    def __init__(self):
        self.calls = []

    def generate(self, request):
        self.calls.append(request)
        return super().generate(request)


def make_loan_1(done: int = 3) -> LoanState:
    """loan-1: four checklist items of weight 25, `done` of them DONE."""
    codes = ["DOC_FACILITY", "DOC_SECURITY", "KYC_BORROWER", "SERVICING_SETUP"]
    categories = ["DOCUMENTS", "DOCUMENTS", "KYC", "SERVICING"]
    checklist = [
        ChecklistItem(
            code=code,
            title=code.replace("_", " ").title(),
            category=category,
            weight=25,
            status="DONE" if i < done else "OPEN",
        )
        for i, (code, category) in enumerate(zip(codes, categories))
    ]
    return LoanState(
        loan_id="loan-1",
        name="Acme Term Loan B",
        exposure=25_000_000.0,
        currency="USD",
        checklist=checklist,
        document_count=4,
        has_versioned_documents=True,
        has_scenarios=True,
        audit_trail_present=True,
    )


# =============================================================================
# DATABASE
# =============================================================================

@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'facts.db'}")
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


# =============================================================================
# UPSTREAM + PRODUCERS
# =============================================================================

@pytest.fixture
def blob_store():
    return InMemoryBlobStore({
        "evidence/kpi-1-verifier.pdf": b"%PDF-1.7 verifier statement for scope 1 emissions",
    })


@pytest.fixture
def upstream():
    source = InMemoryUpstreamSource()
    source.put_loan(TENANT, make_loan_1())
    source.put_kpi(TENANT, EsgKpiState(
        loan_id="loan-1",
        kpi_id="kpi-1",
        code="GHG_SCOPE1",
        name="Scope 1 emissions",
        unit="tCO2e",
        target=1000.0,
        direction="LTE",
        value=850.0,
        period="2025",
        evidence=[EvidenceRef(
            evidence_id="ev-1",
            file_key="evidence/kpi-1-verifier.pdf",
            title="Verifier statement",
            checksum="sha256:abc",
        )],
    ))
    source.put_covenant(TENANT, CovenantState(
        loan_id="loan-1",
        covenant_id="cov-1",
        code="ICR",
        name="Interest cover",
        metric="interestCover",
        operator="GTE",
        threshold=3.0,
        observed=4.2,
        as_of="2025-06-30",
    ))
    return source


@pytest.fixture
def registry(upstream, blob_store):
    return ProducerRegistry.reference(upstream, blob_store)


@pytest.fixture
def generator():
    return CountingGenerator()


@pytest.fixture
def rate_limiter():
    return FixedWindowRateLimiter()


@pytest.fixture
def worker(session_factory, registry, generator):
    return Worker(session_factory, registry, generator, auto_explain_on_drift=False)


# =============================================================================
# HTTP
# =============================================================================

@pytest.fixture
def client(session_factory, registry, generator, rate_limiter):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_registry] = lambda: registry
    app.dependency_overrides[get_explanation_generator] = lambda: generator
    app.dependency_overrides[get_rate_limiter] = lambda: rate_limiter

    yield TestClient(app)

    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    token = create_access_token("user-1", TENANT, roles=[])
    return {"Authorization": f"Bearer {token}", "X-Correlation-Id": "corr-test-1"}
