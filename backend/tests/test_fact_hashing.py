"""
Tests for canonical fact hashing.

The hash is the identity of a snapshot, so it must ignore mapping insertion
order but respect array order and every value.
"""
from datetime import datetime
from decimal import Decimal

import pytest

from factengine.models.facts import FactModule, FactPayload
from factengine.services.hashing import (
    canonicalize,
    compute_explanation_key_hash,
    compute_fact_hash,
)


# =============================================================================
# CANONICAL FORM
# =============================================================================

class TestCanonicalize:

    def test_mapping_keys_sorted_at_every_level(self):
        assert canonicalize({"b": 1, "a": {"d": 2, "c": 3}}) == '{"a":{"c":3,"d":2},"b":1}'

    def test_sequences_keep_order(self):
        assert canonicalize([3, 1, 2]) == "[3,1,2]"

    def test_primitives(self):
        assert canonicalize(None) == "null"
        assert canonicalize(True) == "true"
        assert canonicalize("loan-1") == '"loan-1"'
        assert canonicalize(0.5) == "0.5"

    def test_datetime_and_decimal(self):
        assert canonicalize(datetime(2025, 1, 2, 3, 4, 5)) == '"2025-01-02T03:04:05"'
        assert canonicalize(Decimal("1.10")) == '"1.10"'

    def test_enum_uses_value(self):
        assert canonicalize(FactModule.TRADING) == '"TRADING"'

    def test_rejects_nan(self):
        with pytest.raises(TypeError):
            canonicalize(float("nan"))

    def test_rejects_non_string_keys(self):
        with pytest.raises(TypeError):
            canonicalize({1: "a"})


# =============================================================================
# FACT HASH
# =============================================================================

class TestComputeFactHash:

    def test_insertion_order_does_not_matter(self):
        first = {"loanId": "loan-1", "readinessScore": 75, "factors": {"a": 1, "b": 2}}
        second = {"factors": {"b": 2, "a": 1}, "readinessScore": 75, "loanId": "loan-1"}
        assert compute_fact_hash(first) == compute_fact_hash(second)

    def test_value_change_changes_hash(self):
        assert compute_fact_hash({"readinessScore": 75}) != compute_fact_hash({"readinessScore": 76})

    def test_array_order_changes_hash(self):
        assert compute_fact_hash({"issues": ["a", "b"]}) != compute_fact_hash({"issues": ["b", "a"]})

    def test_sha256_hex_digest(self):
        digest = compute_fact_hash({"loanId": "loan-1"})
        assert len(digest) == 64
        int(digest, 16)

    def test_fact_core_includes_keys_and_version(self):
        payload = FactPayload(module=FactModule.TRADING, data={"readinessScore": 75}, fact_version=1)
        core = payload.fact_core({"loanId": "loan-1"})

        assert core == {"loanId": "loan-1", "readinessScore": 75, "factVersion": 1}

        bumped = FactPayload(module=FactModule.TRADING, data={"readinessScore": 75}, fact_version=2)
        assert compute_fact_hash(core) != compute_fact_hash(bumped.fact_core({"loanId": "loan-1"}))


def test_explanation_key_hash_depends_on_every_part():
    base = compute_explanation_key_hash("h", "default", "STANDARD", 1)
    assert base == compute_explanation_key_hash("h", "default", "STANDARD", 1)
    assert base != compute_explanation_key_hash("h", "investor", "STANDARD", 1)
    assert base != compute_explanation_key_hash("h", "default", "SHORT", 1)
    assert base != compute_explanation_key_hash("h", "default", "STANDARD", 2)
    assert base != compute_explanation_key_hash("h", "default", "STANDARD", 1, "http")
