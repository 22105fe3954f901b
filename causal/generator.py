"""
Workload generators.

A generator is a lazy, infinite iterator of transactions. It knows nothing
about time: pacing (stagger), time limits and phases belong to the runner.
Each phase asks its Workload for a fresh generator, so phases restart
cleanly.

Keys rotate: `key_count` keys are active at once, and a key that has taken
`max_writes_per_key` writes is retired in favour of a fresh one. Written
values are unique per key, so every value a read observes has exactly one
possible writer.
"""

from __future__ import annotations

import random
from collections.abc import Iterable, Iterator
from dataclasses import dataclass

from causal.config import TestConfig
from causal.history import Mop

# Convergence/version semantics per workload
SEMANTICS = {
    "list-append": "list",
    "g-set": "set",
    "lww-register": "register",
}


class TxnGenerator:
    """Random read/write transactions over a rotating key space.

    Args:
        key_count: Keys in active rotation.
        min_txn_length: Minimum micro-ops per transaction.
        max_txn_length: Maximum micro-ops per transaction.
        max_writes_per_key: Writes after which a key is retired.
        write_f: Micro-op function for writes ("append" or "w").
        rng: Random source; pass a seeded Random for reproducible runs.
    """

    def __init__(
        self,
        key_count: int = 10,
        min_txn_length: int = 1,
        max_txn_length: int = 4,
        max_writes_per_key: int = 256,
        *,
        write_f: str = "append",
        rng: random.Random | None = None,
    ) -> None:
        if key_count <= 0 or min_txn_length <= 0 or max_txn_length < min_txn_length:
            raise ValueError("Invalid generator bounds")
        self.min_txn_length = min_txn_length
        self.max_txn_length = max_txn_length
        self.max_writes_per_key = max_writes_per_key
        self.write_f = write_f
        self.rng = rng or random.Random()
        self.active: list[int] = list(range(key_count))
        self.next_key = key_count
        self.next_value: dict[int, int] = {}

    def __iter__(self) -> Iterator[list[Mop]]:
        return self

    def __next__(self) -> list[Mop]:
        length = self.rng.randint(self.min_txn_length, self.max_txn_length)
        return [self._mop() for _ in range(length)]

    def _mop(self) -> Mop:
        slot = self.rng.randrange(len(self.active))
        k = self.active[slot]
        if self.rng.random() < 0.5:
            return Mop("r", k, None)

        v = self.next_value.get(k, 0) + 1
        self.next_value[k] = v
        if v >= self.max_writes_per_key:
            # Retire the key; its last write still goes out
            self.active[slot] = self.next_key
            self.next_key += 1
        return Mop(self.write_f, k, v)


def final_reads(keys: Iterable[int]) -> list[Mop]:
    """A single transaction reading every given key, in key order."""
    return [Mop("r", k, None) for k in sorted(set(keys))]


@dataclass
class Workload:
    """A workload: transaction generator factory plus checker semantics."""

    name: str
    write_f: str
    semantics: str
    key_count: int = 10
    min_txn_length: int = 1
    max_txn_length: int = 4
    max_writes_per_key: int = 256

    def generator(self, rng: random.Random | None = None) -> TxnGenerator:
        """A fresh, independent transaction stream for one phase."""
        return TxnGenerator(
            self.key_count,
            self.min_txn_length,
            self.max_txn_length,
            self.max_writes_per_key,
            write_f=self.write_f,
            rng=rng,
        )

    def final_generator(self, keys: Iterable[int]) -> Iterator[list[Mop]]:
        """Final-read phase: one read-everything transaction per request."""
        txn = final_reads(keys)
        while True:
            yield list(txn)


def workload_for(config: TestConfig) -> Workload:
    """Build the workload named in a configuration."""
    return Workload(
        name=config.workload,
        write_f="w" if config.workload == "lww-register" else "append",
        semantics=SEMANTICS[config.workload],
        key_count=config.key_count,
        min_txn_length=config.min_txn_length,
        max_txn_length=config.max_txn_length,
        max_writes_per_key=config.max_writes_per_key,
    )


def stagger(rate: float, concurrency: int, rng: random.Random | None = None) -> Iterator[float]:
    """Per-process delays between operations.

    Delays are exponentially distributed with mean concurrency/rate, so the
    processes together issue roughly `rate` operations per second without
    moving in lockstep.

    Args:
        rate: Target operations per second across all processes.
        concurrency: Number of processes sharing the rate.
        rng: Random source for this process.

    Yields:
        Seconds to wait before the next operation.
    """
    rng = rng or random.Random()
    mean = concurrency / rate
    while True:
        yield rng.expovariate(1.0 / mean)
