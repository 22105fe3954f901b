"""
In-process replicated store.

SimCluster is a small eventually-convergent store with one replica per node.
Each replica executes transactions locally and atomically; anti-entropy
(sync) merges replicas pairwise along links the current partition allows:

    list      last-write-wins on the whole accumulated list
    set       union of elements (grow-only set)
    register  last-write-wins single value

Timestamps are Lamport clocks tie-broken by node name, so every replica picks
the same winner. The cluster also plays both collaborator roles the nemesis
needs: database lifecycle (start/kill/pause/resume) and network control
(partition/heal/delay). SimClient is the matching in-process client adapter.
"""

from __future__ import annotations

import asyncio
import contextlib
import random
import threading
from collections.abc import AsyncIterator, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

import structlog

from causal.client import Result
from causal.history import Mop

log = structlog.get_logger()

RUNNING = "running"
PAUSED = "paused"
KILLED = "killed"


class NodeUnreachableError(ConnectionError):
    """Raised by control operations against a node that cannot be reached."""


@dataclass
class Entry:
    """A replicated value with its last-write-wins timestamp."""

    value: Any
    ts: tuple[int, str]


@dataclass
class SimNode:
    """One replica."""

    name: str
    data: dict[int, Entry] = field(default_factory=dict)
    clock: int = 0
    state: str = RUNNING
    delay: float = 0.0
    jitter: float = 0.0
    replicating: bool = True


class SimCluster:
    """An in-process replicated store with injectable faults.

    Args:
        nodes: Replica names.
        semantics: "list", "set" or "register".
        replication_interval: Seconds between background sync rounds.
        rng: Random source for delay jitter.
    """

    def __init__(
        self,
        nodes: Iterable[str],
        semantics: str = "list",
        *,
        replication_interval: float = 0.05,
        rng: random.Random | None = None,
    ) -> None:
        if semantics not in ("list", "set", "register"):
            raise ValueError(f"Unknown semantics {semantics!r}")
        self.nodes: dict[str, SimNode] = {n: SimNode(n) for n in nodes}
        self.semantics = semantics
        self.replication_interval = replication_interval
        self.rng = rng or random.Random()
        self.grudge: dict[str, frozenset[str]] = {}
        self._lock = threading.Lock()
        self._unreachable: dict[str, int] = {}

    # =========================================================================
    # Transactions
    # =========================================================================

    def execute(self, node: str, txn: Sequence[Mop]) -> tuple[Mop, ...]:
        """Apply a transaction atomically on one replica and return resolved micro-ops."""
        with self._lock:
            replica = self.nodes[node]
            result = []
            for mop in txn:
                mop = Mop(*mop)
                if mop.f == "r":
                    result.append(Mop("r", mop.k, self._read(replica, mop.k)))
                else:
                    self._write(replica, mop)
                    result.append(mop)
            return tuple(result)

    def _read(self, replica: SimNode, k: int) -> Any:
        entry = replica.data.get(k)
        if entry is None:
            return None
        if self.semantics == "set":
            return tuple(sorted(entry.value))
        return entry.value

    def _write(self, replica: SimNode, mop: Mop) -> None:
        replica.clock += 1
        ts = (replica.clock, replica.name)
        entry = replica.data.get(mop.k)
        if self.semantics == "list":
            old = entry.value if entry else ()
            replica.data[mop.k] = Entry(old + (mop.v,), ts)
        elif self.semantics == "set":
            old = entry.value if entry else frozenset()
            replica.data[mop.k] = Entry(old | {mop.v}, ts)
        else:
            replica.data[mop.k] = Entry(mop.v, ts)

    def read_all(self, node: str) -> dict[int, Any]:
        """Current local state of a replica, keyed by key."""
        with self._lock:
            replica = self.nodes[node]
            return {k: self._read(replica, k) for k in sorted(replica.data)}

    # =========================================================================
    # Anti-entropy
    # =========================================================================

    def can_talk(self, a: str, b: str) -> bool:
        """Whether replication traffic flows from a to b."""
        return b not in self.grudge.get(a, frozenset()) and a not in self.grudge.get(b, frozenset())

    def _live(self, node: SimNode) -> bool:
        return node.state == RUNNING and node.replicating

    def sync(self) -> int:
        """Run anti-entropy to a fixpoint over the currently allowed links.

        Returns:
            Number of entries that changed.
        """
        changed = 0
        with self._lock:
            for _ in range(len(self.nodes)):
                round_changed = 0
                for src in self.nodes.values():
                    for dst in self.nodes.values():
                        if src is dst or not (self._live(src) and self._live(dst)):
                            continue
                        if not self.can_talk(src.name, dst.name):
                            continue
                        round_changed += self._merge(src, dst)
                changed += round_changed
                if not round_changed:
                    break
        return changed

    def _merge(self, src: SimNode, dst: SimNode) -> int:
        changed = 0
        for k, entry in src.data.items():
            dst.clock = max(dst.clock, entry.ts[0])
            mine = dst.data.get(k)
            if self.semantics == "set":
                merged = (mine.value if mine else frozenset()) | entry.value
                if mine is None or merged != mine.value:
                    ts = max(entry.ts, mine.ts) if mine else entry.ts
                    dst.data[k] = Entry(merged, ts)
                    changed += 1
            elif mine is None or entry.ts > mine.ts:
                dst.data[k] = Entry(entry.value, entry.ts)
                changed += 1
        return changed

    async def replicate(self, stop: asyncio.Event) -> None:
        """Background anti-entropy loop until stop is set."""
        while not stop.is_set():
            await asyncio.to_thread(self.sync)
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(stop.wait(), timeout=self.replication_interval)

    @contextlib.asynccontextmanager
    async def running(self) -> AsyncIterator[SimCluster]:
        """Run background replication for the duration of the context."""
        stop = asyncio.Event()
        task = asyncio.create_task(self.replicate(stop))
        try:
            yield self
        finally:
            stop.set()
            await task

    def stop_replication(self, node: str) -> None:
        """Make a replica stop exchanging state; it diverges from then on."""
        with self._lock:
            self.nodes[node].replicating = False

    # =========================================================================
    # Database lifecycle
    # =========================================================================

    def make_unreachable(self, node: str, attempts: int) -> None:
        """Fail the next `attempts` control operations on a node."""
        with self._lock:
            self._unreachable[node] = attempts

    def _control(self, node: str) -> SimNode:
        remaining = self._unreachable.get(node, 0)
        if remaining > 0:
            self._unreachable[node] = remaining - 1
            raise NodeUnreachableError(f"{node} is unreachable")
        return self.nodes[node]

    def start(self, node: str) -> str:
        with self._lock:
            replica = self._control(node)
            if replica.state == RUNNING:
                return "already-running"
            replica.state = RUNNING
        log.debug("sim_node_started", node=node)
        return "started"

    def kill(self, node: str) -> str:
        with self._lock:
            self._control(node).state = KILLED
        log.debug("sim_node_killed", node=node)
        return "killed"

    def pause(self, node: str) -> str:
        with self._lock:
            replica = self._control(node)
            if replica.state == KILLED:
                return "not-running"
            replica.state = PAUSED
        return "paused"

    def resume(self, node: str) -> str:
        with self._lock:
            replica = self._control(node)
            if replica.state != PAUSED:
                return "not-paused"
            replica.state = RUNNING
        return "resumed"

    def state(self, node: str) -> str:
        with self._lock:
            return self.nodes[node].state

    # =========================================================================
    # Network control
    # =========================================================================

    def partition(self, grudge: Mapping[str, Iterable[str]]) -> str:
        with self._lock:
            for node in grudge:
                self._control(node)
            self.grudge = {n: frozenset(d) for n, d in grudge.items()}
        log.debug("sim_partitioned", grudge={n: sorted(d) for n, d in self.grudge.items()})
        return "partitioned"

    def heal(self) -> str:
        with self._lock:
            self.grudge = {}
        return "healed"

    def delay(self, nodes: Iterable[str], delay_ms: int, jitter_ms: int = 0) -> str:
        with self._lock:
            for node in nodes:
                replica = self._control(node)
                replica.delay = delay_ms / 1000
                replica.jitter = jitter_ms / 1000
        return "delayed"

    def clear_delay(self, nodes: Iterable[str]) -> str:
        with self._lock:
            for node in nodes:
                replica = self.nodes[node]
                replica.delay = 0.0
                replica.jitter = 0.0
        return "cleared"

    def latency(self, node: str) -> float:
        with self._lock:
            replica = self.nodes[node]
            if replica.jitter:
                return max(0.0, replica.delay + self.rng.uniform(-replica.jitter, replica.jitter))
            return replica.delay


class SimClient:
    """Client adapter for SimCluster.

    A killed node refuses connections (fail). A paused node holds the request
    until it is resumed, which surfaces as a timeout (info) in the runner.
    """

    poll_interval = 0.01

    def __init__(self, cluster: SimCluster) -> None:
        self.cluster = cluster
        self.node: str | None = None

    async def open(self, node: str) -> None:
        if node not in self.cluster.nodes:
            raise ConnectionRefusedError(f"unknown node {node}")
        if self.cluster.state(node) == KILLED:
            raise ConnectionRefusedError(f"{node} is down")
        self.node = node

    async def invoke(self, txn: Sequence[Mop]) -> Result:
        node = self.node
        if node is None:
            return Result.fail("not-open", "client is not open")
        if self.cluster.state(node) == KILLED:
            return Result.fail("connection-refused", f"{node} is down")

        latency = self.cluster.latency(node)
        if latency:
            await asyncio.sleep(latency)
        while self.cluster.state(node) == PAUSED:
            await asyncio.sleep(self.poll_interval)
        if self.cluster.state(node) == KILLED:
            # Killed while the request was in flight
            return Result.info("connection-reset", f"{node} died during request")
        return Result.ok(self.cluster.execute(node, txn))

    async def teardown(self) -> None:
        pass

    async def close(self) -> None:
        self.node = None
