"""
Strong convergence checker.

After faults are healed and the cluster has had time to settle, every node
should hold the same state. This checker compares the final reads
(f == "final-read") taken from each node:

    register  the same value per key
    list      the same list per key
    set       the same set per key

A node that never answered a final read is unreachable, which is a
violation: silence cannot prove convergence. Values no write ever attempted
are unexpected. Acknowledged writes missing from the agreed state are lost;
that is a violation for sets (nothing may be dropped from a grow-only set)
and informational for last-write-wins semantics, where overwrites are the
point.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable, Sequence
from typing import Any

import structlog

from causal.history import FINAL_READ, History, OpType

log = structlog.get_logger()


def _normalize(semantics: str, value: Any) -> Any:
    if semantics == "register":
        return value
    if semantics == "set":
        return frozenset(value or ())
    return tuple(value or ())


def _render(value: Any) -> Any:
    if isinstance(value, frozenset):
        return sorted(value)
    if isinstance(value, tuple):
        return list(value)
    return value


def final_snapshots(history: History) -> dict[str, dict[int, Any]]:
    """Latest ok final read per node, as key -> value."""
    snapshots: dict[str, dict[int, Any]] = {}
    for op in history:
        if op.f != FINAL_READ or op.type is not OpType.OK or op.node is None:
            continue
        snapshots[op.node] = {m.k: m.v for m in op.value or ()}
    return snapshots


def check_convergence(
    history: History,
    semantics: str = "list",
    *,
    nodes: Sequence[str] | None = None,
    excluded_nodes: Iterable[str] = (),
) -> dict[str, Any]:
    """Check that all nodes ended in the same state.

    Args:
        history: Frozen history including the final-read phase.
        semantics: "list", "set" or "register".
        nodes: Nodes expected to answer; defaults to those that did.
        excluded_nodes: Nodes to leave out of the comparison.

    Returns:
        A result map with "valid" and, on violation, the per-node snapshot.
    """
    if semantics not in ("list", "set", "register"):
        raise ValueError(f"Unknown semantics {semantics!r}")
    snapshots = final_snapshots(history)
    excluded = sorted(set(excluded_nodes))
    if excluded:
        log.info("convergence_excluded_nodes", nodes=excluded)
    expected = list(nodes) if nodes is not None else sorted(snapshots)
    checked = [n for n in expected if n not in excluded]
    unreachable = [n for n in checked if n not in snapshots]
    reached = [n for n in checked if n in snapshots]

    keys = sorted({k for n in reached for k in snapshots[n]})
    divergent: dict[int, dict[str, Any]] = {}
    agreed: dict[int, Any] = {}
    for k in keys:
        values = {n: _normalize(semantics, snapshots[n].get(k)) for n in reached}
        if len(set(values.values())) > 1:
            divergent[k] = {n: _render(v) for n, v in values.items()}
        elif values:
            agreed[k] = next(iter(values.values()))

    attempted: set[tuple[int, Any]] = set()
    acknowledged: dict[int, list[Any]] = defaultdict(list)
    for txn in history.transactions():
        for mop in txn.writes():
            attempted.add((mop.k, mop.v))
            if txn.ok:
                acknowledged[mop.k].append(mop.v)

    unexpected: dict[int, list[Any]] = {}
    for k in keys:
        seen = set()
        for n in reached:
            value = _normalize(semantics, snapshots[n].get(k))
            seen.update(value if semantics != "register" else ([] if value is None else [value]))
        bad = sorted(v for v in seen if (k, v) not in attempted)
        if bad:
            unexpected[k] = bad

    lost: dict[int, list[Any]] = {}
    if semantics != "register" and reached:
        for k, values in acknowledged.items():
            if k in divergent:
                continue
            present = agreed.get(k, _normalize(semantics, None))
            missing = sorted(v for v in values if v not in present)
            if missing:
                lost[k] = missing

    valid = not (unreachable or divergent or unexpected or (semantics == "set" and lost))
    result: dict[str, Any] = {
        "valid": valid,
        "nodes": checked,
        "excluded": excluded,
        "unreachable": unreachable,
        "divergent": divergent,
        "unexpected": unexpected,
        "lost": lost,
        "lost-count": sum(len(v) for v in lost.values()),
        "key-count": len(keys),
    }
    if not valid:
        result["snapshot"] = {
            n: {k: _render(_normalize(semantics, v)) for k, v in sorted(snapshots[n].items())}
            for n in reached
        }
        log.warning(
            "convergence_failed",
            unreachable=unreachable,
            divergent_keys=sorted(divergent),
            unexpected_keys=sorted(unexpected),
        )
    else:
        log.info("convergence_passed", nodes=len(reached), keys=len(keys))
    return result
