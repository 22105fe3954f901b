"""
Causal consistency checker.

Infers a dependency graph between transactions from what they wrote and read,
then looks for cycles and for reads that could not have happened.

Version orders, per workload:

    list      every read is a prefix of the longest read of the key; the
              longest read is the order of appends
    set       no order, only membership: a read that misses a value
              precedes that value's write
    register  the initial (absent) value precedes every write; a read of v
              followed by a write of v' in one transaction puts v before v';
              with linearizable_keys, writes that do not overlap in real
              time are ordered by it

Because every written value is unique per key, each observed value names its
single writer. ok transactions are certain; fail transactions never happened;
info transactions may have. Reads of info transactions are never evidence.
The check runs twice: an optimistic pass keeps only info transactions whose
writes somebody observed, a pessimistic pass keeps them all. A prohibited
cycle in the optimistic pass is a violation; one that only shows up in the
pessimistic pass makes the result unknown.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

import structlog

from causal.checker.graph import (
    DATA,
    Cycle,
    DepGraph,
    EdgeKind,
    explain,
    find_cycle,
    strongly_connected_components,
)
from causal.history import History, HistoryError, OpType, Transaction

log = structlog.get_logger()

# Cycle anomaly classes, most severe first
CYCLE_CLASSES = ("G0", "G1c", "G-single", "G2")

# Anomalies that need no cycle; prohibited under every model
NONCYCLE_ANOMALIES = ("G1a", "garbage-read", "incompatible-order", "duplicate-elements", "internal")

_BASE_PROHIBITED: dict[str, tuple[str, ...]] = {
    "serializable": ("G0", "G1c", "G-single", "G2"),
    "consistent-view": ("G0", "G1c", "G-single"),
    "causal": ("G0", "G1c"),
}

_SESSION_MODELS = {
    "strong-session-serializable": "serializable",
    "strong-session-consistent-view": "consistent-view",
    "causal": "causal",
}


def prohibited_anomalies(models: Iterable[str], *, realtime: bool = False) -> frozenset[str]:
    """Anomaly names the given consistency models rule out.

    Session variants add the -process form of every cycle class. With
    realtime on, the -realtime forms are prohibited as well.
    """
    prohibited: set[str] = set(NONCYCLE_ANOMALIES)
    for model in models:
        base = _SESSION_MODELS.get(model, model)
        if base not in _BASE_PROHIBITED:
            raise ValueError(f"Unknown consistency model {model!r}")
        classes = _BASE_PROHIBITED[base]
        prohibited.update(classes)
        if model in _SESSION_MODELS:
            prohibited.update(f"{c}-process" for c in classes)
        if realtime:
            prohibited.update(f"{c}-realtime" for c in classes)
    return frozenset(prohibited)


@dataclass
class Observations:
    """What the history says about writes and reads, independent of passes."""

    semantics: str
    txns: list[Transaction]
    # (k, v) -> transaction that wrote it (ok or info)
    writers: dict[tuple[int, Any], Transaction] = field(default_factory=dict)
    # (k, v) -> failed transaction that tried to write it
    failed_writers: dict[tuple[int, Any], Transaction] = field(default_factory=dict)
    # k -> writers of k (ok or info), in transaction order
    key_writers: dict[int, list[Transaction]] = field(default_factory=lambda: defaultdict(list))
    # Authoritative reads from ok transactions: (txn, k, value)
    reads: list[tuple[Transaction, int, Any]] = field(default_factory=list)
    # Values observed by some ok read, as (k, v)
    observed: set[tuple[int, Any]] = field(default_factory=set)
    anomalies: dict[str, list[dict[str, Any]]] = field(default_factory=lambda: defaultdict(list))

    def anomaly(self, name: str, **details: Any) -> None:
        self.anomalies[name].append(details)


def _elements(semantics: str, value: Any) -> tuple[Any, ...]:
    if value is None:
        return ()
    if semantics == "register":
        return (value,)
    return tuple(value)


def observe(txns: Sequence[Transaction], semantics: str) -> Observations:
    """Index writes and ok reads, and find the anomalies that need no graph.

    Raises:
        HistoryError: If two transactions claim the same (key, value) write.
    """
    obs = Observations(semantics, list(txns))
    for txn in txns:
        for mop in txn.writes():
            kv = (mop.k, mop.v)
            if kv in obs.writers or kv in obs.failed_writers:
                raise HistoryError(f"Value {mop.v} written to key {mop.k} more than once")
            if txn.type is OpType.FAIL:
                obs.failed_writers[kv] = txn
            else:
                obs.writers[kv] = txn
                obs.key_writers[mop.k].append(txn)

    for txn in txns:
        if not txn.ok:
            continue
        _check_internal(obs, txn)
        for mop in txn.reads():
            obs.reads.append((txn, mop.k, mop.v))
            elements = _elements(semantics, mop.v)
            if semantics == "list" and len(set(elements)) != len(elements):
                obs.anomaly("duplicate-elements", txn=txn.describe(), key=mop.k, value=list(elements))
            for v in elements:
                kv = (mop.k, v)
                if kv in obs.failed_writers:
                    obs.anomaly(
                        "G1a", reader=txn.describe(), writer=obs.failed_writers[kv].describe(), key=mop.k, value=v
                    )
                elif kv not in obs.writers:
                    obs.anomaly("garbage-read", txn=txn.describe(), key=mop.k, value=v)
                else:
                    obs.observed.add(kv)
    return obs


def _check_internal(obs: Observations, txn: Transaction) -> None:
    """A read must reflect the transaction's own earlier reads and writes."""
    last_read: dict[int, Any] = {}
    written: dict[int, list[Any]] = defaultdict(list)
    for mop in txn.mops:
        if mop.is_write:
            written[mop.k].append(mop.v)
            continue
        own = written.get(mop.k, [])
        expected: Any = None
        if obs.semantics == "register":
            if own:
                expected = own[-1]
            elif mop.k in last_read:
                expected = last_read[mop.k]
            else:
                expected = mop.v
            ok = mop.v == expected
        elif obs.semantics == "list":
            value = tuple(mop.v or ())
            if mop.k in last_read:
                expected = tuple(last_read[mop.k] or ()) + tuple(own)
                ok = value == expected
            else:
                expected = ("...", *own)
                ok = not own or value[len(value) - len(own):] == tuple(own)
        else:
            value = set(mop.v or ())
            expected = sorted(set(last_read.get(mop.k) or ()) | set(own))
            ok = value >= set(expected)
        if not ok:
            obs.anomaly("internal", txn=txn.describe(), mop=list(mop), expected=expected)
        last_read[mop.k] = mop.v
        written.pop(mop.k, None)


# =============================================================================
# Version orders
# =============================================================================


def list_version_orders(obs: Observations) -> dict[int, tuple[Any, ...]]:
    """Longest read per key; every other read of the key must be its prefix."""
    longest: dict[int, tuple[Any, ...]] = {}
    for _, k, v in obs.reads:
        value = tuple(v or ())
        if len(value) > len(longest.get(k, ())):
            longest[k] = value
    for txn, k, v in obs.reads:
        value = tuple(v or ())
        if longest.get(k, ())[: len(value)] != value:
            obs.anomaly("incompatible-order", key=k, txn=txn.describe(), value=list(value), longest=list(longest[k]))
    return longest


def register_version_pairs(
    obs: Observations,
    *,
    linearizable_keys: bool = False,
) -> dict[int, set[tuple[Any, Any]]]:
    """Known (earlier, later) value pairs per key. None is the initial state."""
    pairs: dict[int, set[tuple[Any, Any]]] = defaultdict(set)
    for k, writers in obs.key_writers.items():
        for txn in writers:
            for mop in txn.writes():
                if mop.k == k:
                    pairs[k].add((None, mop.v))

    for txn in obs.txns:
        if not txn.ok:
            continue
        last_read: dict[int, Any] = {}
        for mop in txn.mops:
            if mop.is_read:
                last_read[mop.k] = mop.v
            elif mop.k in last_read and last_read[mop.k] != mop.v:
                pairs[mop.k].add((last_read.pop(mop.k), mop.v))

    if linearizable_keys:
        for k, writers in obs.key_writers.items():
            done = [t for t in writers if t.ok]
            for w1 in done:
                for w2 in done:
                    if w1 is w2 or w1.complete_time is None or w1.complete_time >= w2.invoke_time:
                        continue
                    v1 = _last_write(w1, k)
                    v2 = _first_write(w2, k)
                    if v1 is not None and v2 is not None:
                        pairs[k].add((v1, v2))
    return pairs


def _first_write(txn: Transaction, k: int) -> Any:
    return next((m.v for m in txn.writes() if m.k == k), None)


def _last_write(txn: Transaction, k: int) -> Any:
    values = [m.v for m in txn.writes() if m.k == k]
    return values[-1] if values else None


# =============================================================================
# Graph construction
# =============================================================================


class GraphBuilder:
    """Builds one pass's dependency graph over the selected transactions."""

    def __init__(self, obs: Observations, members: Sequence[Transaction]) -> None:
        self.obs = obs
        self.members = list(members)
        self.vertex = {t.id: i for i, t in enumerate(self.members)}
        self.graph = DepGraph(len(self.members))

    def edge(self, a: Transaction | None, b: Transaction | None, kind: EdgeKind, key: int | None = None) -> None:
        if a is None or b is None or a.id == b.id:
            return
        va, vb = self.vertex.get(a.id), self.vertex.get(b.id)
        if va is None or vb is None:
            return
        self.graph.add_edge(va, vb, kind, key)

    def writer(self, k: int, v: Any) -> Transaction | None:
        return self.obs.writers.get((k, v))

    def build_list(self, orders: Mapping[int, tuple[Any, ...]]) -> None:
        for k, order in orders.items():
            for v1, v2 in zip(order, order[1:]):
                self.edge(self.writer(k, v1), self.writer(k, v2), EdgeKind.WW, k)
        for reader, k, v in self.obs.reads:
            value = tuple(v or ())
            order = orders.get(k, ())
            if value:
                self.edge(self.writer(k, value[-1]), reader, EdgeKind.WR, k)
                if len(value) < len(order):
                    self.edge(reader, self.writer(k, order[len(value)]), EdgeKind.RW, k)
            else:
                for writer in self.obs.key_writers.get(k, ()):
                    self.edge(reader, writer, EdgeKind.RW, k)

    def build_set(self) -> None:
        for reader, k, v in self.obs.reads:
            seen = set(v or ())
            for element in sorted(seen):
                self.edge(self.writer(k, element), reader, EdgeKind.WR, k)
            for writer in self.obs.key_writers.get(k, ()):
                if not any(m.k == k and m.v in seen for m in writer.writes()):
                    self.edge(reader, writer, EdgeKind.RW, k)

    def build_register(self, pairs: Mapping[int, set[tuple[Any, Any]]]) -> None:
        readers: dict[tuple[int, Any], list[Transaction]] = defaultdict(list)
        for reader, k, v in self.obs.reads:
            readers[(k, v)].append(reader)
            if v is not None:
                self.edge(self.writer(k, v), reader, EdgeKind.WR, k)
        for k in sorted(pairs):
            for v1, v2 in sorted(pairs[k], key=repr):
                later = self.writer(k, v2)
                if v1 is not None:
                    self.edge(self.writer(k, v1), later, EdgeKind.WW, k)
                for reader in readers.get((k, v1), ()):
                    self.edge(reader, later, EdgeKind.RW, k)

    def build_process(self) -> None:
        by_process: dict[Any, list[Transaction]] = defaultdict(list)
        for txn in self.members:
            by_process[txn.process].append(txn)
        for txns in by_process.values():
            txns.sort(key=lambda t: (t.invoke_time, t.invoke_index))
            for t1, t2 in zip(txns, txns[1:]):
                self.edge(t1, t2, EdgeKind.PROCESS)

    def build_realtime(self) -> None:
        """Realtime precedence, transitively reduced.

        Walk invocations and completions in time order keeping a frontier of
        completed transactions not yet followed by anything. Each invocation
        depends on the whole frontier; each completion retires the frontier
        members its own invocation already depended on.
        """
        events = []
        for txn in self.members:
            events.append((txn.invoke_time, 0, txn.id, txn))
            if txn.complete_time is not None:
                events.append((txn.complete_time, 1, txn.id, txn))
        events.sort(key=lambda e: e[:3])

        frontier: dict[int, Transaction] = {}
        preds: dict[int, list[int]] = {}
        for _, is_complete, tid, txn in events:
            if is_complete:
                for p in preds.get(tid, ()):
                    frontier.pop(p, None)
                frontier[tid] = txn
            else:
                preds[tid] = list(frontier)
                for p in frontier.values():
                    self.edge(p, txn, EdgeKind.REALTIME)


# =============================================================================
# Cycle search
# =============================================================================


def _suffix(cycle: Cycle) -> str:
    if EdgeKind.REALTIME in cycle.steps:
        return "-realtime"
    if EdgeKind.PROCESS in cycle.steps:
        return "-process"
    return ""


def _rw_count(graph: DepGraph, cycle: Cycle, mask: EdgeKind) -> int:
    # Count anti-dependencies only where no ww/wr edge explains the step
    return sum(1 for a, b in cycle.pairs() if explain(graph.kinds(a, b), mask) == EdgeKind.RW)


def cycle_anomalies(graph: DepGraph, extras: Sequence[EdgeKind]) -> list[tuple[str, Cycle]]:
    """Find one shortest cycle per anomaly class and edge family in each SCC.

    Args:
        graph: The dependency graph.
        extras: Non-data edge families to widen the search with, in order,
            e.g. (0, PROCESS, PROCESS | REALTIME).

    Returns:
        (anomaly name, cycle) pairs.
    """
    ww, wr, rw = EdgeKind.WW, EdgeKind.WR, EdgeKind.RW
    found: list[tuple[str, Cycle]] = []
    widest = DATA
    for extra in extras:
        widest |= extra
    for component in strongly_connected_components(graph, widest):
        names: set[str] = set()
        for extra in extras:
            searches = (
                ("G0", ww | extra, ww | extra),
                ("G1c", wr, ww | wr | extra),
                ("G-single", rw, ww | wr | extra),
                ("G2", rw, DATA | extra),
            )
            for base, edge_mask, path_mask in searches:
                cycle = find_cycle(graph, component, edge_mask, path_mask)
                if cycle is None:
                    continue
                if base == "G2" and _rw_count(graph, cycle, path_mask) < 2:
                    continue
                name = base + _suffix(cycle)
                if name not in names:
                    names.add(name)
                    found.append((name, cycle))
    return found


def _describe_cycle(graph: DepGraph, members: Sequence[Transaction], cycle: Cycle) -> dict[str, Any]:
    steps = []
    for (a, b), kind in zip(cycle.pairs(), cycle.steps):
        step: dict[str, Any] = {"type": kind.label}
        key = graph.keys.get((a, b, kind))
        if key is not None:
            step["key"] = key
        steps.append(step)
    return {
        "cycle": [members[v].describe() for v in cycle.vertices],
        "steps": steps,
    }


@dataclass
class PassResult:
    """Outcome of one info-handling pass."""

    name: str
    txn_count: int
    anomalies: dict[str, list[dict[str, Any]]]
    prohibited: frozenset[str]

    @property
    def anomaly_types(self) -> list[str]:
        return sorted(self.anomalies)

    @property
    def valid(self) -> bool:
        return not any(a in self.prohibited for a in self.anomalies)

    def to_dict(self) -> dict[str, Any]:
        return {
            "valid": self.valid,
            "txn-count": self.txn_count,
            "anomaly-types": self.anomaly_types,
            "anomalies": self.anomalies,
        }


def check_pass(
    name: str,
    obs: Observations,
    members: Sequence[Transaction],
    *,
    prohibited: frozenset[str],
    process_order: bool = True,
    realtime: bool = False,
    linearizable_keys: bool = False,
    list_orders: Mapping[int, tuple[Any, ...]] | None = None,
) -> PassResult:
    builder = GraphBuilder(obs, members)
    if obs.semantics == "list":
        builder.build_list(list_orders or {})
    elif obs.semantics == "set":
        builder.build_set()
    else:
        builder.build_register(register_version_pairs(obs, linearizable_keys=linearizable_keys))

    extras = [EdgeKind(0)]
    if process_order:
        builder.build_process()
        extras.append(EdgeKind.PROCESS)
    if realtime:
        builder.build_realtime()
        extras.append(extras[-1] | EdgeKind.REALTIME)

    graph = builder.graph
    anomalies: dict[str, list[dict[str, Any]]] = defaultdict(list)
    for anomaly, cycle in cycle_anomalies(graph, extras):
        anomalies[anomaly].append(_describe_cycle(graph, builder.members, cycle))
    for anomaly in anomalies.values():
        anomaly.sort(key=lambda c: len(c["cycle"]))
    log.debug(
        "checker_pass",
        name=name,
        txns=len(members),
        edges=graph.edge_count(),
        anomalies=sorted(anomalies),
    )
    return PassResult(name, len(members), dict(anomalies), prohibited)


def check_causal(
    history: History,
    semantics: str = "list",
    *,
    consistency_models: Sequence[str] = ("strong-session-serializable",),
    process_order: bool = True,
    realtime: bool = False,
    linearizable_keys: bool = False,
) -> dict[str, Any]:
    """Check a history for causal consistency anomalies.

    Args:
        history: Frozen history of the run.
        semantics: "list", "set" or "register".
        consistency_models: Models whose prohibited anomalies count as
            violations.
        process_order: Add per-process order edges.
        realtime: Add realtime edges.
        linearizable_keys: Order non-overlapping register writes by real time.

    Returns:
        A result map with "valid" (True, False or "unknown"), the anomalies
        found, and the optimistic and pessimistic pass results.

    Raises:
        HistoryError: If the history is malformed.
        CheckerError: On an internal graph fault.
    """
    if semantics not in ("list", "set", "register"):
        raise ValueError(f"Unknown semantics {semantics!r}")
    prohibited = prohibited_anomalies(consistency_models, realtime=realtime)
    txns = history.transactions()
    obs = observe(txns, semantics)
    list_orders = list_version_orders(obs) if semantics == "list" else None
    noncycle = {name: list(found) for name, found in obs.anomalies.items()}

    certain = [t for t in txns if t.ok]
    info = [t for t in txns if t.type is OpType.INFO]
    observed_info = [t for t in info if any((m.k, m.v) in obs.observed for m in t.writes())]

    options = {
        "prohibited": prohibited,
        "process_order": process_order,
        "realtime": realtime,
        "linearizable_keys": linearizable_keys,
        "list_orders": list_orders,
    }
    optimistic = check_pass("optimistic", obs, _by_id(certain + observed_info), **options)
    pessimistic = check_pass("pessimistic", obs, _by_id(certain + info), **options)

    noncycle_bad = any(name in prohibited for name in noncycle)
    if noncycle_bad or not optimistic.valid:
        valid: bool | str = False
    elif not pessimistic.valid:
        valid = "unknown"
    else:
        valid = True

    anomalies = dict(noncycle)
    for name, cycles in optimistic.anomalies.items():
        anomalies.setdefault(name, cycles)
    anomaly_types = sorted(anomalies)

    if valid is not True:
        log.warning("causal_check_failed", valid=valid, anomaly_types=anomaly_types)
    else:
        log.info("causal_check_passed", txns=len(txns))

    return {
        "valid": valid,
        "anomaly-types": anomaly_types,
        "anomalies": anomalies,
        "prohibited": sorted(prohibited),
        "violations": sorted(a for a in anomaly_types if a in prohibited),
        "txn-count": len(txns),
        "ok-count": len(certain),
        "info-count": len(info),
        "fail-count": sum(1 for t in txns if t.type is OpType.FAIL),
        "optimistic": optimistic.to_dict(),
        "pessimistic": pessimistic.to_dict(),
    }


def _by_id(txns: Iterable[Transaction]) -> list[Transaction]:
    return sorted(txns, key=lambda t: t.id)

