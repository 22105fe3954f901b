"""
Causal consistency checker tests.

Runs every history in history_vectors.json5 through check_causal, then checks
properties that must hold for any history:

- Arrival order of records never changes the verdict
- Serial executions are accepted under every model
- A violation seen only when unobserved info writes are assumed applied
  yields "unknown", never False
"""

from __future__ import annotations

import random
from collections import Counter

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from causal.checker import check_causal
from causal.checker.causal import (
    GraphBuilder,
    observe,
    prohibited_anomalies,
    register_version_pairs,
)
from causal.checker.graph import PREFERENCE
from causal.config import CONSISTENCY_MODELS
from causal.history import HistoryError
from lib.histories import HistoryBuilder, history_from_ops, interleave, serial_history

pytestmark = pytest.mark.checker


def run_vector(vector: dict, ops: list | None = None) -> dict:
    options = dict(vector["options"])
    return check_causal(history_from_ops(ops or vector["ops"]), vector["semantics"], **options)


# =============================================================================
# Vectors
# =============================================================================


class TestCausalVectors:
    """Verdicts for known histories."""

    def test_vectors(self, history_vectors: dict) -> None:
        for vector in history_vectors["causal"]:
            expected = vector["expected"]
            result = run_vector(vector)
            assert result["valid"] == expected["valid"], vector["name"]
            assert result["anomaly-types"] == expected["anomaly_types"], vector["name"]

            if "cycle_length" in expected:
                name = expected["anomaly_types"][0]
                assert len(result["anomalies"][name][0]["cycle"]) == expected["cycle_length"], vector["name"]
            if "pessimistic_anomaly_types" in expected:
                assert (
                    result["pessimistic"]["anomaly-types"] == expected["pessimistic_anomaly_types"]
                ), vector["name"]

    def test_vector_edges(self, history_vectors: dict) -> None:
        for vector in history_vectors["causal"]:
            if "edges" not in vector["expected"]:
                continue
            txns = history_from_ops(vector["ops"]).transactions()
            obs = observe(txns, vector["semantics"])
            builder = GraphBuilder(obs, txns)
            builder.build_register(register_version_pairs(obs))
            counts: Counter[str] = Counter()
            for _, _, kinds in builder.graph.edges():
                for kind in PREFERENCE:
                    if kinds & kind:
                        counts[kind.label] += 1
            assert dict(counts) == vector["expected"]["edges"], vector["name"]

    def test_without_process_order_only_session_anomalies_drop(self, history_vectors: dict) -> None:
        """Dropping process order can only remove -process anomalies."""
        for vector in history_vectors["causal"]:
            strict = run_vector(vector)
            loose = check_causal(
                history_from_ops(vector["ops"]),
                vector["semantics"],
                consistency_models=vector["options"].get("consistency_models", ("strong-session-serializable",)),
                process_order=False,
                realtime=vector["options"].get("realtime", False),
            )
            dropped = set(strict["anomaly-types"]) - set(loose["anomaly-types"])
            assert all(name.endswith("-process") for name in dropped), vector["name"]

    def test_cycle_reports_steps(self, history_vectors: dict) -> None:
        vector = next(v for v in history_vectors["causal"] if v["name"] == "read-write-cycle")
        cycle = run_vector(vector)["anomalies"]["G-single"][0]
        assert [step["type"] for step in cycle["steps"]].count("rw") == 1
        assert all(step.get("key") == 1 for step in cycle["steps"] if step["type"] != "process")


# =============================================================================
# Properties
# =============================================================================


class TestArrivalOrder:
    """Verdicts depend on what happened, not on the order records arrived in."""

    @settings(max_examples=30)
    @given(seed=st.integers(min_value=0, max_value=10_000))
    def test_interleavings_agree(self, history_vectors: dict, seed: int) -> None:
        rng = random.Random(seed)
        for vector in history_vectors["causal"]:
            baseline = run_vector(vector)
            shuffled = run_vector(vector, interleave(vector["ops"], rng))
            assert shuffled["valid"] == baseline["valid"], vector["name"]
            assert shuffled["anomaly-types"] == baseline["anomaly-types"], vector["name"]


mop_shapes = st.lists(
    st.lists(
        st.tuples(st.sampled_from(["r", "write"]), st.integers(min_value=1, max_value=3), st.none()),
        min_size=1,
        max_size=4,
    ),
    max_size=15,
)


class TestSerialHistories:
    """Serial executions satisfy every model."""

    @settings(max_examples=60)
    @given(
        shapes=mop_shapes,
        semantics=st.sampled_from(["list", "set", "register"]),
        realtime=st.booleans(),
        seed=st.integers(min_value=0, max_value=1000),
    )
    def test_serial_is_valid(self, shapes: list, semantics: str, realtime: bool, seed: int) -> None:
        write_f = "w" if semantics == "register" else "append"
        txns = [[(write_f if f == "write" else f, k, v) for f, k, v in txn] for txn in shapes]
        history = serial_history(txns, semantics, rng=random.Random(seed))
        result = check_causal(history, semantics, consistency_models=CONSISTENCY_MODELS, realtime=realtime)
        assert result["valid"] is True, result["anomaly-types"]
        assert result["anomaly-types"] == []


# =============================================================================
# Info handling and errors
# =============================================================================


class TestInfo:
    """Indeterminate transactions."""

    def test_failed_write_never_conflicts(self) -> None:
        b = HistoryBuilder()
        b.txn(0, [["append", 1, 1]], type_="fail")
        b.txn(0, [["r", 1, None]], [["r", 1, None]])
        assert check_causal(b.history())["valid"] is True

    def test_observed_info_joins_optimistic_pass(self) -> None:
        b = HistoryBuilder()
        b.txn(0, [["append", 1, 1]], type_="info")
        b.txn(1, [["r", 1, None]], [["r", 1, [1]]])
        result = check_causal(b.history())
        assert result["valid"] is True
        assert result["optimistic"]["txn-count"] == 2
        assert result["info-count"] == 1

    def test_pending_invoke_is_info(self) -> None:
        b = HistoryBuilder()
        b.invoke(0, [["append", 1, 1]])
        b.txn(1, [["r", 1, None]], [["r", 1, [1]]])
        result = check_causal(b.history())
        assert result["valid"] is True
        assert result["info-count"] == 1

    def test_info_cycle_is_unknown_not_false(self) -> None:
        """Both optimistic and pessimistic views of the same history are reported."""
        b = HistoryBuilder()
        b.txn(0, [["append", 1, 1]], type_="info")
        b.txn(0, [["r", 1, None]], [["r", 1, None]])
        result = check_causal(b.history())
        assert result["valid"] == "unknown"
        assert result["optimistic"]["valid"] is True
        assert result["pessimistic"]["valid"] is False
        assert result["violations"] == []


class TestModels:
    """Prohibited anomaly sets."""

    def test_serializable_prohibits_g2(self) -> None:
        assert "G2" in prohibited_anomalies(["serializable"])
        assert "G2-process" not in prohibited_anomalies(["serializable"])

    def test_session_adds_process_variants(self) -> None:
        prohibited = prohibited_anomalies(["strong-session-consistent-view"])
        assert {"G-single", "G-single-process"} <= prohibited
        assert "G2" not in prohibited

    def test_causal_allows_single(self) -> None:
        prohibited = prohibited_anomalies(["causal"])
        assert "G1c-process" in prohibited
        assert "G-single" not in prohibited

    def test_realtime_variants(self) -> None:
        assert "G0-realtime" in prohibited_anomalies(["causal"], realtime=True)
        assert "G0-realtime" not in prohibited_anomalies(["causal"])

    def test_noncycle_always_prohibited(self) -> None:
        assert {"G1a", "garbage-read", "internal"} <= prohibited_anomalies(["causal"])

    def test_unknown_model(self) -> None:
        with pytest.raises(ValueError):
            prohibited_anomalies(["linearizable"])


class TestErrors:
    """Malformed histories raise instead of producing a verdict."""

    def test_duplicate_write_value(self) -> None:
        b = HistoryBuilder()
        b.txn(0, [["append", 1, 1]])
        b.txn(1, [["append", 1, 1]])
        with pytest.raises(HistoryError, match="more than once"):
            check_causal(b.history())

    def test_unknown_semantics(self) -> None:
        with pytest.raises(ValueError):
            check_causal(HistoryBuilder().history(), "bag")
