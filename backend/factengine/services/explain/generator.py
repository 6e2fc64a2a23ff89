"""
Explanation Generators

Turn a fact payload into a natural-language ExplanationResult for an
audience and verbosity.

Two implementations:
1. DemoExplanationGenerator - deterministic templates, no network
2. HttpExplanationGenerator - remote generator service over HTTP (httpx)

Errors are distinguishable by the caller:
- GeneratorRateLimitedError: 429, carries retry_after_seconds, never cached
- GeneratorError(retryable=True): 5xx, timeouts, connection failures
- GeneratorError(retryable=False): other 4xx, malformed responses
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError

from ..audit import Actor
from ...config import GENERATOR_URL, GENERATOR_TIMEOUT_SECONDS
from ...errors import GeneratorError, GeneratorRateLimitedError
from ...models.facts import Audience, ExplanationResult, FactModule, Verbosity


logger = logging.getLogger(__name__)

DEFAULT_RETRY_AFTER_SECONDS = 60


@dataclass
class ExplanationRequest:
    """Everything a generator may need to explain one fact snapshot."""
    tenant_id: str
    module: FactModule
    entity_keys: Dict[str, str]
    fact_hash: str
    payload: Dict[str, Any]
    audience: Audience = Audience.DEFAULT
    verbosity: Verbosity = Verbosity.STANDARD
    actor: Optional[Actor] = None
    correlation_id: Optional[str] = None


class ExplanationGenerator(ABC):
    """Produces explanations. Implementations must not cache."""

    provider: str = "generator"

    @abstractmethod
    def generate(self, request: ExplanationRequest) -> ExplanationResult:
        raise NotImplementedError


# =============================================================================
# DEMO GENERATOR
# =============================================================================

AUDIENCE_FRAMING = {
    Audience.DEFAULT: "",
    Audience.TRADING_ANALYST: "For trading desk review: ",
    Audience.TRADING_VIEWER: "Overview: ",
    Audience.INVESTOR: "For investors: ",
    Audience.COMPLIANCE: "Compliance view: ",
}

VERBOSITY_LINES = {
    Verbosity.SHORT: 1,
    Verbosity.STANDARD: 3,
    Verbosity.DETAILED: 10,
}


def _trading_points(fact: Dict[str, Any]) -> Dict[str, Any]:
    score, band = fact.get("readinessScore"), fact.get("readinessBand")
    factors = fact.get("contributingFactors") or {}
    issues = fact.get("blockingIssues") or []
    lines = [
        f"Readiness score is {score} out of 100, placing the loan in the {band} band.",
        f"Documentation completeness is {round(factors.get('documentationCompleteness', 0) * 100)}%.",
        f"There are {factors.get('servicingAlerts', 0)} open servicing alerts.",
    ]
    lines += [f"Blocking issue: {issue}" for issue in issues]
    recommendations = [f"Resolve: {issue}" for issue in issues[:3]] or ["No blocking issues; keep evidence current."]
    return {
        "summary": f"Loan {fact.get('loanId')} trading readiness is {band} ({score}/100).",
        "lines": lines,
        "recommendations": recommendations,
        "confidence": "HIGH" if band == "GREEN" else "MEDIUM",
    }


def _esg_points(fact: Dict[str, Any]) -> Dict[str, Any]:
    measurement = fact.get("measurement") or {}
    lines = [
        f"KPI {fact.get('kpiCode')} ({fact.get('kpiName')}) is {fact.get('status')}.",
        f"Measured {measurement.get('value')} {measurement.get('unit')} against a target of "
        f"{measurement.get('target')} ({measurement.get('direction')}).",
    ]
    lines += [f"Evidence {e['evidenceId']}: {e['status']}" for e in fact.get("evidence") or []]
    lines += [f"Reason: {code}" for code in fact.get("reasonCodes") or []]
    recommendations = []
    if "MISSING_VERIFICATION_EVIDENCE" in (fact.get("reasonCodes") or []):
        recommendations.append("Upload verifier evidence for this KPI.")
    if fact.get("status") == "FAIL":
        recommendations.append("Agree a remediation plan with the borrower.")
    return {
        "summary": f"ESG KPI {fact.get('kpiCode')} on loan {fact.get('loanId')} is {fact.get('status')}.",
        "lines": lines,
        "recommendations": recommendations or ["No action required."],
        "confidence": "MEDIUM" if fact.get("status") == "NEEDS_VERIFICATION" else "HIGH",
    }


def _covenant_points(fact: Dict[str, Any]) -> Dict[str, Any]:
    threshold = fact.get("threshold") or {}
    observed = fact.get("observed") or {}
    lines = [
        f"Covenant {fact.get('covenantCode')} ({fact.get('covenantName')}) is {fact.get('status')}.",
        f"{observed.get('metric')} observed at {observed.get('value')} vs threshold "
        f"{threshold.get('operator')} {threshold.get('value')}.",
    ]
    if fact.get("breachDetail"):
        lines.append(f"Breach delta: {fact['breachDetail'].get('delta')}.")
    recommendations = {
        "BREACH": ["Issue a breach notice and request a cure plan."],
        "AT_RISK": ["Monitor the next compliance certificate closely."],
    }.get(fact.get("status"), ["No action required."])
    return {
        "summary": f"Covenant {fact.get('covenantCode')} on loan {fact.get('loanId')} is {fact.get('status')}.",
        "lines": lines,
        "recommendations": recommendations,
        "confidence": "LOW" if fact.get("status") == "UNKNOWN" else "HIGH",
    }


def _portfolio_points(fact: Dict[str, Any]) -> Dict[str, Any]:
    totals = fact.get("totals") or {}
    distributions = fact.get("distributions") or {}
    bands = distributions.get("readinessBands") or {}
    lines = [
        f"{totals.get('loans')} loans with total exposure {totals.get('exposure')} {totals.get('currency')}.",
        f"Readiness bands: {bands.get('GREEN', 0)} green, {bands.get('AMBER', 0)} amber, {bands.get('RED', 0)} red.",
    ]
    lines += [f"Driver: {d['driver']} ({d['count']})" for d in fact.get("topDrivers") or []]
    recommendations = [f"Address {d['driver'].lower()}." for d in (fact.get("topDrivers") or [])[:2]]
    return {
        "summary": f"Portfolio {fact.get('portfolioId')} covers {totals.get('loans')} loans.",
        "lines": lines,
        "recommendations": recommendations or ["No portfolio-level action required."],
        "confidence": "MEDIUM",
    }


MODULE_TEMPLATES = {
    FactModule.TRADING: _trading_points,
    FactModule.ESG: _esg_points,
    FactModule.SERVICING: _covenant_points,
    FactModule.PORTFOLIO: _portfolio_points,
}


class DemoExplanationGenerator(ExplanationGenerator):
    """
    Deterministic template renderer.

    Same request in, same explanation out. Audience changes the framing,
    verbosity changes how many lines are kept.
    """

    provider = "demo"

    def generate(self, request: ExplanationRequest) -> ExplanationResult:
        points = MODULE_TEMPLATES[request.module](request.payload)
        limit = VERBOSITY_LINES[request.verbosity]

        recommendations: List[str] = points["recommendations"]
        if request.verbosity == Verbosity.SHORT:
            recommendations = recommendations[:1]

        return ExplanationResult(
            summary=AUDIENCE_FRAMING[request.audience] + points["summary"],
            explanation=points["lines"][:limit],
            recommendations=recommendations,
            confidence=points["confidence"],
            version=1,
        )


# =============================================================================
# HTTP GENERATOR
# =============================================================================

class HttpExplanationGenerator(ExplanationGenerator):
    """
    Calls a remote explanation service.

    POST {url} with {module, audience, verbosity, factHash, entityKeys, fact};
    expects an ExplanationResult JSON body.

    Args:
        url: Endpoint URL
        timeout: Request timeout in seconds
        client: Optional pre-built httpx.Client (tests pass one with a MockTransport)
    """

    provider = "http"

    def __init__(
        self,
        url: str = GENERATOR_URL,
        timeout: float = GENERATOR_TIMEOUT_SECONDS,
        client: Optional[httpx.Client] = None,
    ):
        self.url = url
        self.timeout = timeout
        self.client = client

    def _post(self, body: Dict[str, Any]) -> httpx.Response:
        if self.client is not None:
            return self.client.post(self.url, json=body, timeout=self.timeout)
        with httpx.Client(timeout=httpx.Timeout(self.timeout)) as client:
            return client.post(self.url, json=body)

    def generate(self, request: ExplanationRequest) -> ExplanationResult:
        body = {
            "module": request.module.value,
            "audience": request.audience.value,
            "verbosity": request.verbosity.value,
            "factHash": request.fact_hash,
            "entityKeys": request.entity_keys,
            "fact": request.payload,
        }

        try:
            response = self._post(body)
        except httpx.TimeoutException as e:
            raise GeneratorError(f"Generator timed out after {self.timeout}s") from e
        except httpx.RequestError as e:
            raise GeneratorError(f"Generator unreachable: {type(e).__name__}") from e

        if response.status_code == 429:
            retry_after = _parse_retry_after(response.headers.get("Retry-After"))
            logger.warning(f"Generator rate limited; retry after {retry_after}s")
            raise GeneratorRateLimitedError(
                "Explanation generator rate limit exceeded",
                retry_after_seconds=retry_after,
                key=f"{request.tenant_id}:{request.module.value}",
            )
        if response.status_code >= 500:
            raise GeneratorError(f"Generator failed with status {response.status_code}")
        if response.status_code >= 400:
            raise GeneratorError(
                f"Generator rejected request with status {response.status_code}",
                retryable=False,
            )

        try:
            return ExplanationResult.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise GeneratorError(f"Generator returned an invalid explanation: {e}", retryable=False) from e


def _parse_retry_after(value: Optional[str]) -> int:
    if not value:
        return DEFAULT_RETRY_AFTER_SECONDS
    try:
        return max(1, int(float(value)))
    except ValueError:
        return DEFAULT_RETRY_AFTER_SECONDS


def build_generator(url: str = GENERATOR_URL) -> ExplanationGenerator:
    """HTTP generator when a URL is configured, otherwise the demo generator."""
    if url:
        return HttpExplanationGenerator(url=url)
    return DemoExplanationGenerator()
