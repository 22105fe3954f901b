#!/usr/bin/env python3
"""
Causal Harness Test Vector Generator

Generates canonical histories with known verdicts for the causal consistency
checker, the strong convergence checker and the transaction wire contract.
These vectors pin down checker behaviour independently of the runner.

Usage:
    python specs/generate_vectors.py

Output:
    ../tests/vectors/history_vectors.json5
    ../tests/vectors/wire_vectors.json5

The script is IDEMPOTENT: running twice produces identical output (except
for the _metadata.generated timestamp). Histories are written by hand below;
nothing is random.
"""

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

HARNESS_VERSION = "0.1.0"

# Output directory
VECTORS_DIR = Path(__file__).parent.parent / "tests" / "vectors"


# =============================================================================
# History construction helpers
# =============================================================================


def invoke(process: Any, time: int, value: list, f: str = "txn", node: str | None = None) -> dict:
    op = {"process": process, "type": "invoke", "f": f, "time": time, "value": value}
    if node is not None:
        op["node"] = node
    return op


def complete(process: Any, time: int, type_: str, value: list, f: str = "txn", node: str | None = None) -> dict:
    op = {"process": process, "type": type_, "f": f, "time": time, "value": value}
    if node is not None:
        op["node"] = node
    return op


def final_read(node: str, time: int, value: list) -> list[dict]:
    """A final read of `node`, invoked at `time` and completed one tick later."""
    process = f"final-{node}"
    reads = [["r", k, None] for k, _ in value]
    return [
        invoke(process, time, reads, f="final-read", node=node),
        complete(process, time + 1, "ok", [["r", k, v] for k, v in value], f="final-read", node=node),
    ]


def case(name: str, description: str, semantics: str, ops: list, expected: dict, **options: Any) -> dict:
    return {
        "name": name,
        "description": description,
        "semantics": semantics,
        "options": options,
        "ops": ops,
        "expected": expected,
    }


# =============================================================================
# Causal consistency cases
# =============================================================================


def generate_causal_cases() -> list[dict]:
    cases = []

    cases.append(case(
        "empty",
        "An empty history is valid",
        "list",
        [],
        {"valid": True, "anomaly_types": []},
    ))

    cases.append(case(
        "single-write",
        "One acknowledged append, then a final read that sees it",
        "list",
        [
            invoke(0, 0, [["append", 1, 1]]),
            complete(0, 10, "ok", [["append", 1, 1]]),
            *final_read("n1", 20, [(1, [1])]),
        ],
        {"valid": True, "anomaly_types": []},
    ))

    cases.append(case(
        "write-then-read",
        "Process 1 writes k=1 v=5; process 2 reads 5; one write-read edge",
        "register",
        [
            invoke(1, 0, [["w", 1, 5]]),
            complete(1, 10, "ok", [["w", 1, 5]]),
            invoke(2, 20, [["r", 1, None]]),
            complete(2, 30, "ok", [["r", 1, 5]]),
        ],
        {"valid": True, "anomaly_types": [], "edges": {"wr": 1}},
    ))

    cases.append(case(
        "info-append-observed",
        "Second append times out (info) but every node's final read shows it",
        "list",
        [
            invoke(1, 0, [["append", 1, 1]]),
            complete(1, 10, "ok", [["append", 1, 1]]),
            invoke(1, 20, [["append", 1, 2]]),
            complete(1, 1020, "info", [["append", 1, 2]]),
            *final_read("n1", 2000, [(1, [1, 2])]),
            *final_read("n2", 2000, [(1, [1, 2])]),
            *final_read("n3", 2000, [(1, [1, 2])]),
        ],
        {"valid": True, "anomaly_types": []},
    ))

    cases.append(case(
        "read-write-cycle",
        "Two processes read k=1 empty, then each append; each misses the other's write",
        "list",
        [
            invoke(0, 0, [["r", 1, None], ["append", 1, 1]]),
            invoke(1, 1, [["r", 1, None], ["append", 1, 2]]),
            complete(0, 10, "ok", [["r", 1, None], ["append", 1, 1]]),
            complete(1, 11, "ok", [["r", 1, None], ["append", 1, 2]]),
            *final_read("n1", 100, [(1, [1, 2])]),
        ],
        {"valid": False, "anomaly_types": ["G-single"], "cycle_length": 2},
    ))

    cases.append(case(
        "write-cycle",
        "Appends to two keys land in opposite orders",
        "list",
        [
            invoke(0, 0, [["append", 1, 1], ["append", 2, 1]]),
            invoke(1, 1, [["append", 1, 2], ["append", 2, 2]]),
            complete(0, 10, "ok", [["append", 1, 1], ["append", 2, 1]]),
            complete(1, 11, "ok", [["append", 1, 2], ["append", 2, 2]]),
            *final_read("n1", 100, [(1, [1, 2]), (2, [2, 1])]),
        ],
        {"valid": False, "anomaly_types": ["G0"], "cycle_length": 2},
    ))

    cases.append(case(
        "circular-information-flow",
        "Each transaction reads the other's append",
        "list",
        [
            invoke(0, 0, [["append", 1, 1], ["r", 2, None]]),
            invoke(1, 1, [["append", 2, 1], ["r", 1, None]]),
            complete(0, 10, "ok", [["append", 1, 1], ["r", 2, [1]]]),
            complete(1, 11, "ok", [["append", 2, 1], ["r", 1, [1]]]),
        ],
        {"valid": False, "anomaly_types": ["G1c"], "cycle_length": 2},
    ))

    cases.append(case(
        "aborted-read",
        "A read observes the value of a failed append",
        "list",
        [
            invoke(0, 0, [["append", 1, 1]]),
            complete(0, 10, "fail", [["append", 1, 1]]),
            invoke(1, 20, [["r", 1, None]]),
            complete(1, 30, "ok", [["r", 1, [1]]]),
        ],
        {"valid": False, "anomaly_types": ["G1a"]},
    ))

    cases.append(case(
        "garbage-read",
        "A read observes a value nobody wrote",
        "list",
        [
            invoke(0, 0, [["r", 1, None]]),
            complete(0, 10, "ok", [["r", 1, [7]]]),
        ],
        {"valid": False, "anomaly_types": ["garbage-read"]},
    ))

    cases.append(case(
        "incompatible-order",
        "Two reads of k=1 disagree on which append came first",
        "list",
        [
            invoke(0, 0, [["append", 1, 1]]),
            complete(0, 10, "ok", [["append", 1, 1]]),
            invoke(1, 1, [["append", 1, 2]]),
            complete(1, 11, "ok", [["append", 1, 2]]),
            invoke(2, 20, [["r", 1, None]]),
            complete(2, 30, "ok", [["r", 1, [1]]]),
            invoke(3, 21, [["r", 1, None]]),
            complete(3, 31, "ok", [["r", 1, [2]]]),
        ],
        {"valid": False, "anomaly_types": ["incompatible-order"]},
    ))

    cases.append(case(
        "duplicate-elements",
        "A read returns the same appended element twice",
        "list",
        [
            invoke(0, 0, [["append", 1, 1]]),
            complete(0, 10, "ok", [["append", 1, 1]]),
            invoke(1, 20, [["r", 1, None]]),
            complete(1, 30, "ok", [["r", 1, [1, 1]]]),
        ],
        {"valid": False, "anomaly_types": ["duplicate-elements"]},
    ))

    cases.append(case(
        "internal",
        "A transaction does not see its own append",
        "list",
        [
            invoke(0, 0, [["append", 1, 1], ["r", 1, None]]),
            complete(0, 10, "ok", [["append", 1, 1], ["r", 1, []]]),
        ],
        {"valid": False, "anomaly_types": ["internal"]},
    ))

    cases.append(case(
        "info-unknown",
        "A later transaction on the same process misses an unobserved info append",
        "list",
        [
            invoke(0, 0, [["append", 1, 1]]),
            complete(0, 1000, "info", [["append", 1, 1]]),
            invoke(0, 1010, [["r", 1, None]]),
            complete(0, 1020, "ok", [["r", 1, None]]),
        ],
        {"valid": "unknown", "anomaly_types": [], "pessimistic_anomaly_types": ["G-single-process"]},
    ))

    cases.append(case(
        "stale-read-realtime",
        "A read that starts after an append completed misses it",
        "list",
        [
            invoke(0, 0, [["append", 1, 1]]),
            complete(0, 10, "ok", [["append", 1, 1]]),
            invoke(1, 20, [["r", 1, None]]),
            complete(1, 30, "ok", [["r", 1, None]]),
        ],
        {"valid": False, "anomaly_types": ["G-single-realtime"]},
        realtime=True,
    ))

    cases.append(case(
        "stale-read-no-realtime",
        "The same stale read is allowed when realtime order is not checked",
        "list",
        [
            invoke(0, 0, [["append", 1, 1]]),
            complete(0, 10, "ok", [["append", 1, 1]]),
            invoke(1, 20, [["r", 1, None]]),
            complete(1, 30, "ok", [["r", 1, None]]),
        ],
        {"valid": True, "anomaly_types": []},
    ))

    cases.append(case(
        "session-stale-read",
        "A process reads nothing right after its own write; a session violation only",
        "register",
        [
            invoke(0, 0, [["w", 1, 1]]),
            complete(0, 10, "ok", [["w", 1, 1]]),
            invoke(0, 20, [["r", 1, None]]),
            complete(0, 30, "ok", [["r", 1, None]]),
        ],
        {"valid": False, "anomaly_types": ["G-single-process"]},
    ))

    cases.append(case(
        "session-stale-read-consistent-view",
        "The same history passes under a model without session guarantees",
        "register",
        [
            invoke(0, 0, [["w", 1, 1]]),
            complete(0, 10, "ok", [["w", 1, 1]]),
            invoke(0, 20, [["r", 1, None]]),
            complete(0, 30, "ok", [["r", 1, None]]),
        ],
        {"valid": True, "anomaly_types": ["G-single-process"]},
        consistency_models=["consistent-view"],
    ))

    cases.append(case(
        "set-write-skew",
        "Each transaction misses the other's set element",
        "set",
        [
            invoke(0, 0, [["append", 1, 1], ["r", 2, None]]),
            invoke(1, 1, [["append", 2, 1], ["r", 1, None]]),
            complete(0, 10, "ok", [["append", 1, 1], ["r", 2, None]]),
            complete(1, 11, "ok", [["append", 2, 1], ["r", 1, None]]),
            *final_read("n1", 100, [(1, [1]), (2, [1])]),
        ],
        {"valid": False, "anomaly_types": ["G2"], "cycle_length": 2},
    ))

    cases.append(case(
        "set-valid",
        "Appends and reads of a grow-only set in a consistent order",
        "set",
        [
            invoke(0, 0, [["append", 1, 1]]),
            complete(0, 10, "ok", [["append", 1, 1]]),
            invoke(1, 20, [["r", 1, None]]),
            complete(1, 30, "ok", [["r", 1, [1]]]),
            invoke(0, 40, [["append", 1, 2]]),
            complete(0, 50, "ok", [["append", 1, 2]]),
            *final_read("n1", 100, [(1, [1, 2])]),
        ],
        {"valid": True, "anomaly_types": []},
    ))

    return cases


# =============================================================================
# Convergence cases
# =============================================================================


def generate_convergence_cases() -> list[dict]:
    cases = []

    cases.append(case(
        "agreement-after-info",
        "All nodes report k=1 -> [1 2], including the timed-out append",
        "list",
        [
            invoke(1, 0, [["append", 1, 1]]),
            complete(1, 10, "ok", [["append", 1, 1]]),
            invoke(1, 20, [["append", 1, 2]]),
            complete(1, 1020, "info", [["append", 1, 2]]),
            *final_read("n1", 2000, [(1, [1, 2])]),
            *final_read("n2", 2000, [(1, [1, 2])]),
            *final_read("n3", 2000, [(1, [1, 2])]),
        ],
        {"valid": True, "divergent_keys": [], "unreachable": []},
        nodes=["n1", "n2", "n3"],
    ))

    cases.append(case(
        "partitioned-node-diverges",
        "n1 took writes while isolated and never reconciled with n2 and n3",
        "list",
        [
            invoke(0, 0, [["append", 1, 1]], node="n1"),
            complete(0, 10, "ok", [["append", 1, 1]], node="n1"),
            invoke(1, 5, [["append", 1, 2]], node="n2"),
            complete(1, 15, "ok", [["append", 1, 2]], node="n2"),
            *final_read("n1", 2000, [(1, [1])]),
            *final_read("n2", 2000, [(1, [2])]),
            *final_read("n3", 2000, [(1, [2])]),
        ],
        {"valid": False, "divergent_keys": [1], "unreachable": []},
        nodes=["n1", "n2", "n3"],
    ))

    cases.append(case(
        "unreachable-node",
        "n3 never answers its final read",
        "register",
        [
            invoke(0, 0, [["w", 1, 1]]),
            complete(0, 10, "ok", [["w", 1, 1]]),
            *final_read("n1", 2000, [(1, 1)]),
            *final_read("n2", 2000, [(1, 1)]),
            invoke("final-n3", 2000, [["r", 1, None]], f="final-read", node="n3"),
            complete("final-n3", 3000, "info", [["r", 1, None]], f="final-read", node="n3"),
        ],
        {"valid": False, "divergent_keys": [], "unreachable": ["n3"]},
        nodes=["n1", "n2", "n3"],
    ))

    cases.append(case(
        "excluded-node",
        "The diverging node is excluded from the comparison",
        "list",
        [
            invoke(0, 0, [["append", 1, 1]], node="n1"),
            complete(0, 10, "ok", [["append", 1, 1]], node="n1"),
            *final_read("n1", 2000, [(1, [1])]),
            *final_read("n2", 2000, [(1, [1])]),
            *final_read("n3", 2000, [(1, [])]),
        ],
        {"valid": True, "divergent_keys": [], "unreachable": []},
        nodes=["n1", "n2", "n3"],
        excluded_nodes=["n3"],
    ))

    cases.append(case(
        "set-lost-element",
        "Every node agrees, but an acknowledged set element is gone",
        "set",
        [
            invoke(0, 0, [["append", 1, 1]]),
            complete(0, 10, "ok", [["append", 1, 1]]),
            invoke(0, 20, [["append", 1, 2]]),
            complete(0, 30, "ok", [["append", 1, 2]]),
            *final_read("n1", 2000, [(1, [1])]),
            *final_read("n2", 2000, [(1, [1])]),
        ],
        {"valid": False, "divergent_keys": [], "unreachable": [], "lost": {"1": [2]}},
        nodes=["n1", "n2"],
    ))

    cases.append(case(
        "unexpected-value",
        "Nodes agree on a value no write ever attempted",
        "register",
        [
            invoke(0, 0, [["w", 1, 1]]),
            complete(0, 10, "ok", [["w", 1, 1]]),
            *final_read("n1", 2000, [(1, 9)]),
            *final_read("n2", 2000, [(1, 9)]),
        ],
        {"valid": False, "divergent_keys": [], "unreachable": [], "unexpected": {"1": [9]}},
        nodes=["n1", "n2"],
    ))

    return cases


# =============================================================================
# Wire contract cases
# =============================================================================


def generate_wire_cases() -> list[dict]:
    return [
        {
            "name": "list-read-string",
            "semantics": "list",
            "txn": [["r", 1, None], ["append", 1, 5]],
            "response": {"type": "ok", "value": [{"f": "r", "k": 1, "v": "3 4"}, {"f": "append", "k": 1, "v": 5}]},
            "expected": {"type": "ok", "value": [["r", 1, [3, 4]], ["append", 1, 5]]},
        },
        {
            "name": "list-read-json-list",
            "semantics": "list",
            "txn": [["r", 2, None]],
            "response": {"type": "ok", "value": [{"f": "r", "k": 2, "v": [1, 2, 3]}]},
            "expected": {"type": "ok", "value": [["r", 2, [1, 2, 3]]]},
        },
        {
            "name": "list-read-absent",
            "semantics": "list",
            "txn": [["r", 3, None]],
            "response": {"type": "ok", "value": [{"f": "r", "k": 3, "v": None}]},
            "expected": {"type": "ok", "value": [["r", 3, None]]},
        },
        {
            "name": "register-read",
            "semantics": "register",
            "txn": [["r", 1, None], ["w", 1, 8]],
            "response": {"type": "ok", "value": [{"f": "r", "k": 1, "v": "7"}, {"f": "w", "k": 1, "v": 8}]},
            "expected": {"type": "ok", "value": [["r", 1, 7], ["w", 1, 8]]},
        },
        {
            "name": "fail-response",
            "semantics": "list",
            "txn": [["append", 1, 1]],
            "response": {"type": "fail", "error": "SQLITE_BUSY"},
            "expected": {"type": "fail", "value": None},
        },
        {
            "name": "wrong-key-echo",
            "semantics": "list",
            "txn": [["r", 1, None]],
            "response": {"type": "ok", "value": [{"f": "r", "k": 2, "v": None}]},
            "expected": {"error": True},
        },
        {
            "name": "munged-write",
            "semantics": "list",
            "txn": [["append", 1, 5]],
            "response": {"type": "ok", "value": [{"f": "append", "k": 1, "v": 6}]},
            "expected": {"error": True},
        },
        {
            "name": "short-response",
            "semantics": "list",
            "txn": [["r", 1, None], ["append", 1, 5]],
            "response": {"type": "ok", "value": [{"f": "r", "k": 1, "v": None}]},
            "expected": {"error": True},
        },
        {
            "name": "unknown-type",
            "semantics": "list",
            "txn": [["r", 1, None]],
            "response": {"type": "maybe"},
            "expected": {"error": True},
        },
    ]


# =============================================================================
# Main
# =============================================================================


def metadata(description: str) -> dict:
    return {
        "description": description,
        "generated": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "generator": "specs/generate_vectors.py",
        "harness_version": HARNESS_VERSION,
    }


def write_json5(data: dict, path: Path) -> None:
    """Write data as JSON with a json5 comment header."""
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w") as f:
        f.write(f"// Causal harness v{HARNESS_VERSION} test vectors\n")
        f.write("// Generated by specs/generate_vectors.py\n")
        f.write("// DO NOT EDIT - regenerate with: python specs/generate_vectors.py\n")
        f.write("\n")
        json.dump(data, f, indent=2)
        f.write("\n")

    print(f"  Written: {path}")


def main():
    print(f"Causal Harness Test Vector Generator v{HARNESS_VERSION}")
    print("=" * 60)
    print()
    print("Generating vectors...")

    write_json5(
        {
            "_metadata": metadata("Histories with known checker verdicts"),
            "_notes": [
                "Record indices are positions in the ops list",
                "Times are nanoseconds relative to the start of the run",
                "Final reads run on process final-<node> with f = final-read",
            ],
            "causal": generate_causal_cases(),
            "convergence": generate_convergence_cases(),
        },
        VECTORS_DIR / "history_vectors.json5",
    )
    write_json5(
        {
            "_metadata": metadata("Transaction wire contract request/response pairs"),
            "cases": generate_wire_cases(),
        },
        VECTORS_DIR / "wire_vectors.json5",
    )

    print()
    print("=" * 60)
    print(f"Generated 2 vector files in {VECTORS_DIR}")


if __name__ == "__main__":
    main()
