"""
Operation history.

Every client and nemesis action is recorded twice: once when it is invoked
and once when it completes with ok, fail or info. The HistoryRecorder assigns
indices in arrival order and timestamps from a monotonic clock; it is safe to
append from many tasks and threads. Once the run phase ends, snapshot()
freezes the recorder and hands an immutable History to the checkers.

History.transactions() pairs invocations with completions and rebuilds the
per-transaction view the checkers work on. Ordering evidence for the checkers
comes from timestamps and per-process sequencing, never from arrival order.
"""

from __future__ import annotations

import itertools
import json
import threading
import time
from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, NamedTuple

import structlog

log = structlog.get_logger()

# Process name used for nemesis operations
NEMESIS_PROCESS = "nemesis"

# Operation functions
TXN = "txn"
FINAL_READ = "final-read"


class OpType(str, Enum):
    """Type of a history record."""

    INVOKE = "invoke"
    OK = "ok"
    FAIL = "fail"
    INFO = "info"


class HistoryError(Exception):
    """Raised when a history violates its structural invariants.

    This is a checker-internal fault: a malformed history can never be
    reported as a passing check.
    """


class Mop(NamedTuple):
    """A micro-operation inside a transaction: [f k v]."""

    f: str
    k: int
    v: Any

    @property
    def is_read(self) -> bool:
        return self.f == "r"

    @property
    def is_write(self) -> bool:
        return self.f in ("append", "w")


@dataclass(frozen=True)
class Op:
    """A single history record."""

    index: int
    time: int  # nanoseconds since the recorder was created
    process: int | str
    type: OpType
    f: str
    value: Any = None
    node: str | None = None
    error: str | None = None

    @property
    def is_client(self) -> bool:
        return self.process != NEMESIS_PROCESS

    def to_dict(self) -> dict[str, Any]:
        value = self.value
        if self.f in (TXN, FINAL_READ) and value is not None:
            value = [list(m) for m in value]
        d: dict[str, Any] = {
            "index": self.index,
            "time": self.time,
            "process": self.process,
            "type": self.type.value,
            "f": self.f,
            "value": value,
        }
        if self.node is not None:
            d["node"] = self.node
        if self.error is not None:
            d["error"] = self.error
        return d

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Op:
        value = d.get("value")
        if d["f"] in (TXN, FINAL_READ) and value is not None:
            value = tuple(Mop(f, k, _freeze(v)) for f, k, v in value)
        return cls(
            index=d["index"],
            time=d["time"],
            process=d["process"],
            type=OpType(d["type"]),
            f=d["f"],
            value=value,
            node=d.get("node"),
            error=d.get("error"),
        )


def _freeze(v: Any) -> Any:
    return tuple(v) if isinstance(v, list) else v


@dataclass
class Transaction:
    """A paired invocation and completion of one client transaction.

    `mops` holds the completed micro-ops for ok transactions and the invoked
    micro-ops otherwise, since only ok results are authoritative.
    """

    id: int
    process: int | str
    type: OpType
    f: str
    mops: tuple[Mop, ...]
    invoke_time: int
    complete_time: int | None
    invoke_index: int
    complete_index: int | None
    node: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.type is OpType.OK

    def writes(self) -> Iterator[Mop]:
        return (m for m in self.mops if m.is_write)

    def reads(self) -> Iterator[Mop]:
        return (m for m in self.mops if m.is_read)

    def describe(self) -> dict[str, Any]:
        """Compact description used in checker reports."""
        return {
            "process": self.process,
            "type": self.type.value,
            "node": self.node,
            "value": [[m.f, m.k, list(m.v) if isinstance(m.v, tuple | frozenset) else m.v]
                      for m in self.mops],
            "index": self.invoke_index,
        }


@dataclass(frozen=True)
class History:
    """An immutable, arrival-ordered sequence of history records."""

    ops: tuple[Op, ...] = ()

    def __len__(self) -> int:
        return len(self.ops)

    def __iter__(self) -> Iterator[Op]:
        return iter(self.ops)

    def client_ops(self) -> list[Op]:
        return [op for op in self.ops if op.is_client]

    def nemesis_ops(self) -> list[Op]:
        return [op for op in self.ops if not op.is_client]

    def transactions(self, functions: Iterable[str] = (TXN, FINAL_READ)) -> list[Transaction]:
        """Pair client invocations with their completions.

        A process may have at most one outstanding invocation. Invocations
        left without a completion are treated as info, because their effect
        is unknown.

        Args:
            functions: Operation functions to include.

        Returns:
            Transactions sorted by (invoke_time, process, invoke_index), with
            ids assigned in that order.

        Raises:
            HistoryError: On completions without invocations, overlapping
                invocations on one process, or mismatched micro-ops.
        """
        functions = frozenset(functions)
        pending: dict[int | str, Op] = {}
        pairs: list[tuple[Op, Op | None]] = []

        for op in self.ops:
            if not op.is_client or op.f not in functions:
                continue
            if op.type is OpType.INVOKE:
                if op.process in pending:
                    raise HistoryError(
                        f"Process {op.process} invoked op {op.index} while op "
                        f"{pending[op.process].index} was still outstanding"
                    )
                pending[op.process] = op
                continue
            invoke = pending.pop(op.process, None)
            if invoke is None:
                raise HistoryError(f"Completion {op.index} on process {op.process} has no invocation")
            if invoke.f != op.f:
                raise HistoryError(
                    f"Completion {op.index} ({op.f}) does not match invocation {invoke.index} ({invoke.f})"
                )
            if op.time < invoke.time:
                raise HistoryError(f"Completion {op.index} precedes its invocation {invoke.index}")
            pairs.append((invoke, op))

        for invoke in pending.values():
            log.warning("incomplete_operation", index=invoke.index, process=invoke.process)
            pairs.append((invoke, None))

        pairs.sort(key=lambda p: (p[0].time, str(p[0].process), p[0].index))
        txns = []
        for i, (invoke, complete) in enumerate(pairs):
            txns.append(_transaction(i, invoke, complete))
        return txns

    def to_jsonl(self, path: Path | str) -> None:
        """Write one JSON object per record."""
        with open(path, "w") as f:
            for op in self.ops:
                f.write(json.dumps(op.to_dict()) + "\n")

    @classmethod
    def from_jsonl(cls, path: Path | str) -> History:
        """Read a history written by to_jsonl."""
        ops = []
        with open(path) as f:
            for line in f:
                line = line.strip()
                if line:
                    ops.append(Op.from_dict(json.loads(line)))
        return cls(tuple(ops))

    @classmethod
    def from_ops(cls, ops: Sequence[Op]) -> History:
        return cls(tuple(ops))


def _transaction(i: int, invoke: Op, complete: Op | None) -> Transaction:
    invoked = tuple(invoke.value or ())
    if complete is None:
        return Transaction(
            id=i,
            process=invoke.process,
            type=OpType.INFO,
            f=invoke.f,
            mops=invoked,
            invoke_time=invoke.time,
            complete_time=None,
            invoke_index=invoke.index,
            complete_index=None,
            node=invoke.node,
            error="incomplete",
        )

    mops = invoked
    if complete.type is OpType.OK:
        mops = tuple(complete.value or ())
        if len(mops) != len(invoked) or any(
            (a.f, a.k) != (b.f, b.k) for a, b in zip(invoked, mops)
        ):
            raise HistoryError(
                f"Completion {complete.index} micro-ops do not match invocation {invoke.index}"
            )
    return Transaction(
        id=i,
        process=invoke.process,
        type=complete.type,
        f=invoke.f,
        mops=mops,
        invoke_time=invoke.time,
        # info completions say nothing about when the effect happened
        complete_time=complete.time if complete.type is not OpType.INFO else None,
        invoke_index=invoke.index,
        complete_index=complete.index,
        node=invoke.node,
        error=complete.error,
    )


@dataclass
class HistoryRecorder:
    """Append-only, thread-safe history log.

    Only index assignment and the list append happen under the lock, so
    concurrent workers never wait on each other's client calls.
    """

    clock: Any = time.monotonic_ns
    _ops: list[Op] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock)
    _counter: Iterator[int] = field(default_factory=itertools.count)
    _frozen: History | None = None
    _origin: int = -1

    def __post_init__(self) -> None:
        self._origin = self.clock()

    def _append(
        self,
        process: int | str,
        type: OpType,
        f: str,
        value: Any,
        node: str | None,
        error: str | None,
    ) -> Op:
        with self._lock:
            if self._frozen is not None:
                raise HistoryError("History is frozen; no appends after snapshot")
            op = Op(
                index=next(self._counter),
                time=self.clock() - self._origin,
                process=process,
                type=type,
                f=f,
                value=value,
                node=node,
                error=error,
            )
            self._ops.append(op)
        return op

    def invoke(
        self,
        process: int | str,
        f: str,
        value: Any = None,
        node: str | None = None,
    ) -> Op:
        """Record an invocation."""
        if f in (TXN, FINAL_READ) and value is not None:
            value = tuple(Mop(*m) for m in value)
        return self._append(process, OpType.INVOKE, f, value, node, None)

    def complete(
        self,
        invocation: Op,
        type: OpType,
        value: Any = None,
        error: str | None = None,
    ) -> Op:
        """Record the completion of an earlier invocation.

        Args:
            invocation: The invoke record being completed.
            type: ok, fail or info.
            value: Completed value; defaults to the invoked value.
            error: Error cause for fail/info completions.
        """
        if type is OpType.INVOKE:
            raise HistoryError("A completion cannot have type invoke")
        if value is None:
            value = invocation.value
        elif invocation.f in (TXN, FINAL_READ):
            value = tuple(Mop(m[0], m[1], _freeze(m[2])) for m in value)
        return self._append(invocation.process, type, invocation.f, value, invocation.node, error)

    def snapshot(self) -> History:
        """Freeze the recorder and return the immutable history."""
        with self._lock:
            if self._frozen is None:
                self._frozen = History(tuple(self._ops))
            return self._frozen

    def __len__(self) -> int:
        with self._lock:
            return len(self._ops)
