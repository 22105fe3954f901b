"""
Nemesis: fault scheduling and injection.

Four fault kinds, each a small state machine driven by start/stop events:

    partition  healed <-> partitioned   split nodes into components
    pause      running <-> paused       SIGSTOP/SIGCONT equivalent
    kill       kill on start, restart (db.start) on stop
    packet     add network delay on start, clear it on stop

The faults talk to two collaborators: a DbLifecycle (start/kill/pause/resume)
and a NetworkControl (partition/heal/delay/clear_delay). Docker-backed
implementations live in causal.containers and causal.chaos; causal.sim
provides an in-process one.

A NemesisPackage composes the enabled faults into one schedule on its own
clock, independent of the workload, and remembers which faults are active so
that the final phase can unwind them in reverse start order no matter where
the time limit fell. The NemesisController executes events with a bounded
retry budget; a fault that keeps failing is logged and recorded, never raised
into the workload.
"""

from __future__ import annotations

import asyncio
import random
import time
from collections.abc import Callable, Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

import structlog

from causal.history import NEMESIS_PROCESS, HistoryRecorder, Op, OpType

log = structlog.get_logger()

# A target strategy name ("one", "majority", ...) or an explicit node list
TargetSpec = str | tuple[str, ...]

DEFAULT_INTERVAL = 5.0


class Fault(str, Enum):
    """Kinds of fault the nemesis can inject."""

    PARTITION = "partition"
    PAUSE = "pause"
    KILL = "kill"
    PACKET = "packet"


class Action(str, Enum):
    """Whether an event begins or ends a fault."""

    START = "start"
    STOP = "stop"


# Faults whose start must be matched by a stop
STATEFUL_FAULTS = frozenset({Fault.PARTITION, Fault.PAUSE, Fault.PACKET})


class ScheduleError(ValueError):
    """Raised when a nemesis schedule violates its start/stop invariant."""


class DbLifecycle(Protocol):
    """Process lifecycle hooks of the system under test."""

    def start(self, node: str) -> str: ...

    def kill(self, node: str) -> str: ...

    def pause(self, node: str) -> str: ...

    def resume(self, node: str) -> str: ...


class NetworkControl(Protocol):
    """Network manipulation hooks."""

    def partition(self, grudge: Mapping[str, Iterable[str]]) -> str: ...

    def heal(self) -> str: ...

    def delay(self, nodes: Iterable[str], delay_ms: int, jitter_ms: int = 0) -> str: ...

    def clear_delay(self, nodes: Iterable[str]) -> str: ...


@dataclass(frozen=True)
class NemesisEvent:
    """One scheduled fault transition."""

    time_offset: float
    fault: Fault
    action: Action
    targets: TargetSpec | None = None

    @property
    def f(self) -> str:
        return f"{self.action.value}-{self.fault.value}"


# =============================================================================
# Target selection
# =============================================================================


def _minority_size(n: int, rng: random.Random) -> int:
    return rng.randint(1, max(1, (n - 1) // 2))


def select_nodes(spec: TargetSpec, nodes: Sequence[str], rng: random.Random) -> list[str]:
    """Pick the nodes a pause/kill/packet fault applies to.

    Args:
        spec: "one", "minority", "majority", "all", or explicit node names.
        nodes: All nodes.
        rng: Random source.

    Returns:
        Target nodes, in the order of `nodes`.
    """
    nodes = list(nodes)
    if not isinstance(spec, str):
        chosen = set(spec)
    elif spec == "one":
        chosen = {rng.choice(nodes)}
    elif spec == "minority":
        chosen = set(rng.sample(nodes, _minority_size(len(nodes), rng)))
    elif spec == "majority":
        chosen = set(rng.sample(nodes, len(nodes) // 2 + 1))
    elif spec == "all":
        chosen = set(nodes)
    else:
        raise ValueError(f"Unknown target strategy {spec!r}")
    return [n for n in nodes if n in chosen]


def partition_components(
    spec: TargetSpec | tuple[tuple[str, ...], ...],
    nodes: Sequence[str],
    rng: random.Random,
) -> list[list[str]]:
    """Split nodes into components that can only talk among themselves.

    Strategies:
        one             isolate a single node from the rest
        minority        isolate a random minority
        majority        random halves; the larger half is a bare majority
        minority-third  three groups: a minority, then the rest split in two
        all             every node alone
        (a, b, ...)     isolate the named nodes from the rest
        ((a,), (b, c))  explicit components

    Returns:
        Non-empty components covering every node exactly once.
    """
    nodes = list(nodes)
    shuffled = rng.sample(nodes, len(nodes))
    n = len(nodes)

    if not isinstance(spec, str):
        if spec and all(not isinstance(c, str) for c in spec):
            components = [list(c) for c in spec]
            covered = {node for c in components for node in c}
            rest = [node for node in nodes if node not in covered]
            if rest:
                components.append(rest)
        else:
            isolated = [node for node in nodes if node in set(spec)]
            components = [isolated, [node for node in nodes if node not in isolated]]
    elif spec == "one":
        components = [shuffled[:1], shuffled[1:]]
    elif spec == "minority":
        m = _minority_size(n, rng)
        components = [shuffled[:m], shuffled[m:]]
    elif spec == "majority":
        components = [shuffled[: n // 2], shuffled[n // 2 :]]
    elif spec == "minority-third":
        if n < 3:
            components = [shuffled[:1], shuffled[1:]]
        else:
            m = max(1, n // 3)
            rest = shuffled[m:]
            half = len(rest) // 2
            components = [shuffled[:m], rest[:half], rest[half:]]
    elif spec == "all":
        components = [[node] for node in shuffled]
    else:
        raise ValueError(f"Unknown partition strategy {spec!r}")
    return [sorted(c) for c in components if c]


def complete_grudge(components: Iterable[Iterable[str]]) -> dict[str, frozenset[str]]:
    """Map each node to the nodes it must drop traffic from.

    Every node drops every node outside its own component.
    """
    components = [frozenset(c) for c in components]
    everyone = frozenset().union(*components) if components else frozenset()
    return {node: everyone - c for c in components for node in c}


# =============================================================================
# Fault state machines
# =============================================================================


class PartitionFault:
    """healed <-> partitioned."""

    fault = Fault.PARTITION

    def __init__(self, net: NetworkControl, nodes: Sequence[str]) -> None:
        self.net = net
        self.nodes = list(nodes)
        self.components: list[list[str]] | None = None

    @property
    def active(self) -> bool:
        return self.components is not None

    @property
    def state(self) -> str:
        return "partitioned" if self.active else "healed"

    def resolve(self, spec: TargetSpec, rng: random.Random) -> list[list[str]]:
        return partition_components(spec, self.nodes, rng)

    def start(self, components: list[list[str]]) -> dict[str, Any]:
        if self.active:
            return {"status": "already-partitioned", "components": self.components}
        status = self.net.partition(complete_grudge(components))
        self.components = components
        return {"status": status, "components": components}

    def stop(self) -> dict[str, Any]:
        status = self.net.heal()
        self.components = None
        return {"status": status}


class PauseFault:
    """running <-> paused, per target node; resumed processes continue where they stopped."""

    fault = Fault.PAUSE

    def __init__(self, db: DbLifecycle, nodes: Sequence[str]) -> None:
        self.db = db
        self.nodes = list(nodes)
        self.paused: list[str] = []

    @property
    def active(self) -> bool:
        return bool(self.paused)

    @property
    def state(self) -> str:
        return "paused" if self.active else "running"

    def resolve(self, spec: TargetSpec, rng: random.Random) -> list[str]:
        return select_nodes(spec, self.nodes, rng)

    def start(self, targets: list[str]) -> dict[str, Any]:
        statuses = {}
        for node in targets:
            if node in self.paused:
                statuses[node] = "already-paused"
                continue
            statuses[node] = self.db.pause(node)
            self.paused.append(node)
        return {"status": statuses}

    def stop(self) -> dict[str, Any]:
        statuses = {}
        # Only forget a node once it has actually resumed, so a retry picks up the rest
        for node in list(self.paused):
            statuses[node] = self.db.resume(node)
            self.paused.remove(node)
        return {"status": statuses}


class KillFault:
    """Kill on start; restart through db.start on stop.

    `on_kill` is called with the killed nodes after every kill, for drivers
    that need to react (reopen sessions, schedule a restart).
    """

    fault = Fault.KILL

    def __init__(
        self,
        db: DbLifecycle,
        nodes: Sequence[str],
        on_kill: Callable[[list[str]], None] | None = None,
    ) -> None:
        self.db = db
        self.nodes = list(nodes)
        self.on_kill = on_kill
        self.killed: list[str] = []

    @property
    def active(self) -> bool:
        return bool(self.killed)

    @property
    def state(self) -> str:
        return "killed" if self.active else "running"

    def resolve(self, spec: TargetSpec, rng: random.Random) -> list[str]:
        return select_nodes(spec, self.nodes, rng)

    def start(self, targets: list[str]) -> dict[str, Any]:
        statuses = {}
        for node in targets:
            statuses[node] = self.db.kill(node)
            if node not in self.killed:
                self.killed.append(node)
        if self.on_kill is not None:
            self.on_kill(list(targets))
        return {"status": statuses}

    def stop(self) -> dict[str, Any]:
        statuses = {}
        for node in list(self.killed):
            statuses[node] = self.db.start(node)
            self.killed.remove(node)
        return {"status": statuses}


class PacketFault:
    """Network delay on target nodes for the active interval."""

    fault = Fault.PACKET

    def __init__(
        self,
        net: NetworkControl,
        nodes: Sequence[str],
        delay_ms: int = 100,
        jitter_ms: int = 0,
    ) -> None:
        self.net = net
        self.nodes = list(nodes)
        self.delay_ms = delay_ms
        self.jitter_ms = jitter_ms
        self.delayed: list[str] = []
        self._requested: list[str] = []

    @property
    def active(self) -> bool:
        return bool(self.delayed)

    @property
    def state(self) -> str:
        return "delayed" if self.active else "normal"

    def resolve(self, spec: TargetSpec, rng: random.Random) -> list[str]:
        return select_nodes(spec, self.nodes, rng)

    def start(self, targets: list[str]) -> dict[str, Any]:
        if self.active:
            return {"status": "already-delayed", "targets": self.delayed}
        self._requested = list(targets)
        status = self.net.delay(targets, self.delay_ms, self.jitter_ms)
        self.delayed = list(targets)
        return {"status": status, "delay_ms": self.delay_ms}

    def stop(self) -> dict[str, Any]:
        # A delay that failed partway may have reached some of its targets
        status = self.net.clear_delay(self.delayed or self._requested)
        self.delayed = []
        self._requested = []
        return {"status": status}


# =============================================================================
# Package: composed schedule
# =============================================================================

DEFAULT_TARGETS: dict[Fault, tuple[TargetSpec, ...]] = {
    Fault.PARTITION: ("one", "minority-third", "majority"),
    Fault.PAUSE: ("one", "minority", "majority", "all"),
    Fault.KILL: ("one", "minority", "majority", "all"),
    Fault.PACKET: ("one", "minority", "majority", "all"),
}


class NemesisPackage:
    """Composes enabled faults into one independent schedule.

    Args:
        faults: Fault names to enable.
        nodes: All nodes of the system under test.
        db: Lifecycle collaborator (needed for pause and kill).
        net: Network collaborator (needed for partition and packet).
        interval: Mean seconds between nemesis events.
        targets: Target strategies per fault; one is drawn at every start.
        packet_delay_ms: Delay applied by the packet fault.
        packet_jitter_ms: Jitter applied by the packet fault.
        on_kill: Hook called with the nodes after every kill.
        rng: Random source for timing and target choice.
    """

    def __init__(
        self,
        faults: Iterable[str | Fault],
        nodes: Sequence[str],
        *,
        db: DbLifecycle | None = None,
        net: NetworkControl | None = None,
        interval: float = DEFAULT_INTERVAL,
        targets: Mapping[Fault | str, Sequence[TargetSpec]] | None = None,
        packet_delay_ms: int = 100,
        packet_jitter_ms: int = 0,
        on_kill: Callable[[list[str]], None] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.faults = [Fault(f) for f in faults]
        self.nodes = list(nodes)
        self.interval = interval
        self.rng = rng or random.Random()
        self.targets = dict(DEFAULT_TARGETS)
        for fault, specs in (targets or {}).items():
            self.targets[Fault(fault)] = tuple(specs)

        self.handlers: dict[Fault, Any] = {}
        for fault in self.faults:
            if fault in (Fault.PARTITION, Fault.PACKET) and net is None:
                raise ValueError(f"{fault.value} faults need a NetworkControl")
            if fault in (Fault.PAUSE, Fault.KILL) and db is None:
                raise ValueError(f"{fault.value} faults need a DbLifecycle")
            if fault is Fault.PARTITION:
                self.handlers[fault] = PartitionFault(net, self.nodes)
            elif fault is Fault.PAUSE:
                self.handlers[fault] = PauseFault(db, self.nodes)
            elif fault is Fault.KILL:
                self.handlers[fault] = KillFault(db, self.nodes, on_kill)
            else:
                self.handlers[fault] = PacketFault(net, self.nodes, packet_delay_ms, packet_jitter_ms)
        self._started: list[Fault] = []

    def events(self, rng: random.Random | None = None) -> Iterator[NemesisEvent]:
        """Infinite schedule: each fault alternates start/stop on a shared clock.

        Gaps are uniform in [0, 2 * interval), so events average one per
        interval. Targets are drawn per start event.
        """
        if not self.faults:
            return
        rng = rng or self.rng
        next_action = {fault: Action.START for fault in self.faults}
        t = 0.0
        while True:
            t += rng.uniform(0, 2 * self.interval)
            fault = rng.choice(self.faults)
            action = next_action[fault]
            next_action[fault] = Action.STOP if action is Action.START else Action.START
            targets = rng.choice(self.targets[fault]) if action is Action.START else None
            yield NemesisEvent(t, fault, action, targets)

    def plan(self, time_limit: float, rng: random.Random | None = None) -> list[NemesisEvent]:
        """The finite prefix of events() that falls inside the time limit."""
        planned = []
        for event in self.events(rng):
            if event.time_offset >= time_limit:
                break
            planned.append(event)
        return planned

    def mark(self, event: NemesisEvent) -> None:
        """Track touched faults.

        Starts are marked before they run, stops once they have succeeded, so
        a start that failed or was cancelled halfway is still unwound.
        """
        if event.action is Action.START:
            if event.fault in self._started:
                self._started.remove(event.fault)
            self._started.append(event.fault)
        elif event.fault in self._started:
            self._started.remove(event.fault)

    def _needs_stop(self, fault: Fault) -> bool:
        if self.handlers[fault].active:
            return True
        # Network rules may be half applied without the handler knowing;
        # heal and clear_delay are idempotent, so stop them anyway
        return fault in (Fault.PARTITION, Fault.PACKET) and fault in self._started

    def final_events(self, time_offset: float = 0.0) -> list[NemesisEvent]:
        """Stop events for every fault left applied, most recently started first."""
        order = [*reversed(self._started), *(f for f in self.faults if f not in self._started)]
        return [NemesisEvent(time_offset, fault, Action.STOP) for fault in order if self._needs_stop(fault)]

    def active_faults(self) -> list[Fault]:
        return [f for f in self._started if self._needs_stop(f)]


def unwind_events(events: Sequence[NemesisEvent], time_offset: float = 0.0) -> list[NemesisEvent]:
    """Stops for the faults a planned schedule leaves active, in reverse start order."""
    started: list[Fault] = []
    for event in sorted(events, key=lambda e: e.time_offset):
        if event.fault in started:
            started.remove(event.fault)
        if event.action is Action.START:
            started.append(event.fault)
    return [NemesisEvent(time_offset, fault, Action.STOP) for fault in reversed(started)]


def validate_schedule(
    events: Sequence[NemesisEvent],
    final_events: Sequence[NemesisEvent] = (),
) -> None:
    """Check that every stateful start has a matching stop.

    Faults still active at the end of `events` must be stopped by
    `final_events`, the let-faults-resolve phase.

    Raises:
        ScheduleError: On a double start, a stop without a start, or a fault
            left active after the final events.
    """
    active: set[Fault] = set()
    last = float("-inf")
    for event in [*events, *final_events]:
        if event in events and event.time_offset < last:
            raise ScheduleError(f"Events out of order at {event.time_offset}")
        last = max(last, event.time_offset)
        if event.fault not in STATEFUL_FAULTS:
            continue
        if event.action is Action.START:
            if event.fault in active:
                raise ScheduleError(f"{event.fault.value} started twice at {event.time_offset}")
            active.add(event.fault)
        else:
            if event.fault not in active:
                raise ScheduleError(f"{event.fault.value} stopped at {event.time_offset} without a start")
            active.discard(event.fault)
    if active:
        raise ScheduleError(f"Faults left active: {sorted(f.value for f in active)}")


# =============================================================================
# Controller
# =============================================================================


class NemesisController:
    """Executes nemesis events against the collaborators and records them.

    Args:
        package: The composed nemesis.
        recorder: History recorder shared with the client workers.
        retries: Extra attempts after a collaborator error.
        retry_delay: Seconds between attempts.
    """

    def __init__(
        self,
        package: NemesisPackage,
        recorder: HistoryRecorder,
        *,
        retries: int = 3,
        retry_delay: float = 1.0,
    ) -> None:
        self.package = package
        self.recorder = recorder
        self.retries = retries
        self.retry_delay = retry_delay
        self.failures = 0
        self._inflight: set[asyncio.Future[Any]] = set()

    async def execute(self, event: NemesisEvent) -> Op:
        """Apply one event, retrying on collaborator errors.

        Returns:
            The completion record: ok with the collaborator status, or info
            when the retry budget ran out.
        """
        handler = self.package.handlers[event.fault]
        if event.action is Action.START:
            resolved = handler.resolve(event.targets, self.package.rng)
            step: Callable[[], dict[str, Any]] = lambda: handler.start(resolved)  # noqa: E731
            value: Any = {"targets": resolved}
        else:
            step = handler.stop
            value = None

        invocation = self.recorder.invoke(NEMESIS_PROCESS, event.f, value)
        log.info("nemesis_invoke", f=event.f, targets=value)
        if event.action is Action.START:
            self.package.mark(event)
        last: Exception | None = None
        try:
            for attempt in range(self.retries + 1):
                call = asyncio.ensure_future(asyncio.to_thread(step))
                self._inflight.add(call)
                call.add_done_callback(self._inflight.discard)
                try:
                    # Shielded: a cancelled event leaves its thread running, and
                    # unwind waits for it before undoing anything
                    result = await asyncio.shield(call)
                except Exception as e:
                    last = e
                    log.warning("nemesis_retry", f=event.f, attempt=attempt + 1, error=str(e))
                    if attempt < self.retries:
                        await asyncio.sleep(self.retry_delay)
                    continue
                self.package.mark(event)
                log.info("nemesis_ok", f=event.f, result=result)
                return self.recorder.complete(invocation, OpType.OK, result)
        except asyncio.CancelledError:
            self.recorder.complete(invocation, OpType.INFO, error="cancelled")
            raise

        self.failures += 1
        log.error("nemesis_failed", f=event.f, attempts=self.retries + 1, error=str(last))
        return self.recorder.complete(invocation, OpType.INFO, error=f"{type(last).__name__}: {last}")

    async def run(
        self,
        events: Iterable[NemesisEvent],
        deadline: float,
        *,
        started_at: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Execute events at their offsets until the deadline passes.

        Args:
            events: Schedule, possibly infinite, ordered by time_offset.
            deadline: Absolute clock value after which nothing new starts.
            started_at: Clock value offsets are relative to (default: now).
            clock: Monotonic clock.
        """
        started_at = clock() if started_at is None else started_at
        for event in events:
            at = started_at + event.time_offset
            if at >= deadline:
                break
            delay = at - clock()
            if delay > 0:
                await asyncio.sleep(delay)
            await self.execute(event)

    async def unwind(self) -> list[Op]:
        """Stop every fault left applied, most recently started first.

        Waits first for steps still running in worker threads, so a start
        cancelled at the time limit cannot land after its stop.
        """
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)
        ops = []
        for event in self.package.final_events():
            ops.append(await self.execute(event))
        remaining = self.package.active_faults()
        if remaining:
            log.error("nemesis_unwind_incomplete", active=[f.value for f in remaining])
        return ops
