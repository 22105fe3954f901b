"""
Test runner.

One run goes through four phases:

    main            client workers run the workload until the time limit
                    while the nemesis task injects faults on its own clock
    final nemesis   every fault still active is stopped, newest first
    settle          quiet period so replication can catch up
    final reads     one read-everything transaction per node

Concurrency model: one asyncio task per client process plus one nemesis task.
The HistoryRecorder is the only shared mutable state. Each invoke is bounded
by op_timeout; a timeout is recorded as info, and a process that saw an info
completion retires its id (process += concurrency) so that every process
stays sequential in the history. Workers stop drawing operations at the
deadline, and a hard bound cancels anything still running after that, again
recording info.
"""

from __future__ import annotations

import asyncio
import random
import time
from collections.abc import Awaitable, Callable, Iterator, Sequence
from dataclasses import dataclass, field
from typing import Any

import structlog

from causal.checker import Verdict, check
from causal.client import (
    Client,
    ClientFactory,
    ClientSetupError,
    Result,
    classify_exception,
    close_quietly,
    open_client,
)
from causal.config import TestConfig
from causal.generator import Workload, stagger, workload_for
from causal.history import FINAL_READ, TXN, History, HistoryRecorder, Mop, Op, OpType
from causal.nemesis import DbLifecycle, NemesisController, NemesisPackage, NetworkControl

log = structlog.get_logger()

# Slack added to the hard bound after the deadline, in seconds
GRACE = 1.0


@dataclass
class RunContext:
    """Everything the phases share for one run."""

    config: TestConfig
    recorder: HistoryRecorder
    client_factory: ClientFactory
    workload: Workload
    rng: random.Random
    nemesis: NemesisController | None = None
    clock: Callable[[], float] = time.monotonic
    # Set once the system under test is ready for clients
    db_ready: asyncio.Event = field(default_factory=asyncio.Event)
    deadline: float = 0.0
    keys: set[int] = field(default_factory=set)
    kill_epoch: dict[str, int] = field(default_factory=dict)
    setup_failures: list[ClientSetupError] = field(default_factory=list)

    def on_kill(self, nodes: list[str]) -> None:
        """Nemesis hook: sessions to killed nodes must be reopened."""
        for node in nodes:
            self.kill_epoch[node] = self.kill_epoch.get(node, 0) + 1
        log.info("nodes_killed", nodes=nodes)

    def expired(self) -> bool:
        return self.clock() >= self.deadline


@dataclass
class RunResult:
    """A finished run: the frozen history and the checkers' verdict."""

    history: History
    verdict: Verdict
    nemesis_failures: int = 0

    @property
    def valid(self) -> bool | str:
        return self.verdict.valid


async def invoke_txn(
    ctx: RunContext,
    client: Client,
    process: int | str,
    node: str,
    txn: Sequence[Mop],
    f: str = TXN,
) -> Op:
    """Invoke one transaction and record both ends of it.

    Returns:
        The completion record.
    """
    ctx.keys.update(m.k for m in txn)
    invocation = ctx.recorder.invoke(process, f, txn, node)
    try:
        result = await asyncio.wait_for(client.invoke(txn), timeout=ctx.config.op_timeout)
    except asyncio.TimeoutError:
        result = Result.info("timeout", f"no response within {ctx.config.op_timeout}s")
    except asyncio.CancelledError:
        ctx.recorder.complete(invocation, OpType.INFO, error="cancelled")
        raise
    except Exception as e:
        result = classify_exception(e)
    error = str(result.error) if result.error is not None else None
    return ctx.recorder.complete(invocation, OpType(result.outcome.value), result.value, error)


class Session:
    """A worker's client, reopened after info completions and node kills."""

    def __init__(self, ctx: RunContext, node: str) -> None:
        self.ctx = ctx
        self.node = node
        self.client: Client | None = None
        self.epoch = ctx.kill_epoch.get(node, 0)

    async def open(self) -> Client:
        config = self.ctx.config
        client = self.ctx.client_factory(self.node)
        self.client = await open_client(
            client,
            self.node,
            retries=config.open_retries,
            timeout=config.open_timeout,
            interval=min(1.0, config.open_timeout / config.open_retries),
        )
        self.epoch = self.ctx.kill_epoch.get(self.node, 0)
        return self.client

    @property
    def stale(self) -> bool:
        return self.client is None or self.epoch != self.ctx.kill_epoch.get(self.node, 0)

    async def reset(self) -> None:
        if self.client is not None:
            client, self.client = self.client, None
            await close_quietly(client)


async def worker(ctx: RunContext, slot: int, node: str, txns: Iterator[list[Mop]]) -> None:
    """Run transactions for one logical process until the deadline."""
    config = ctx.config
    process = slot
    delays = stagger(config.rate, config.concurrency, random.Random(ctx.rng.random()))
    session = Session(ctx, node)

    await ctx.db_ready.wait()
    try:
        await session.open()
    except ClientSetupError as e:
        ctx.setup_failures.append(e)
        log.error("worker_setup_failed", process=process, node=node, error=str(e))
        return

    try:
        for txn in txns:
            if ctx.expired():
                break
            await asyncio.sleep(min(next(delays), max(0.0, ctx.deadline - ctx.clock())))
            if ctx.expired():
                break
            if session.stale:
                await session.reset()
                try:
                    await session.open()
                except ClientSetupError as e:
                    log.warning("client_reopen_failed", process=process, node=node, error=str(e))
                    continue
            completion = await invoke_txn(ctx, session.client, process, node, txn)
            if completion.type is OpType.INFO:
                # The op may still be in flight; continue as a fresh process
                process += config.concurrency
                await session.reset()
    finally:
        await session.reset()


async def final_read(ctx: RunContext, node: str, keys: Sequence[int]) -> Op | None:
    """Read every key on one node, retrying until ok or out of attempts."""
    config = ctx.config
    process: int | str = f"final-{node}"
    session = Session(ctx, node)
    txn = ctx.workload.final_generator(keys)
    last: Op | None = None
    try:
        for attempt in range(config.final_read_retries):
            if session.stale:
                await session.reset()
                try:
                    await session.open()
                except ClientSetupError as e:
                    log.warning("final_read_open_failed", node=node, attempt=attempt + 1, error=str(e))
                    continue
            last = await invoke_txn(ctx, session.client, process, node, next(txn), f=FINAL_READ)
            if last.type is OpType.OK:
                return last
            if last.type is OpType.INFO:
                process = f"final-{node}-{attempt + 1}"
                await session.reset()
            await asyncio.sleep(config.op_timeout)
    finally:
        await session.reset()
    log.error("final_read_failed", node=node, attempts=config.final_read_retries)
    return last


async def run_main_phase(ctx: RunContext) -> None:
    config = ctx.config
    start = ctx.clock()
    ctx.deadline = start + config.time_limit
    hard_bound = ctx.deadline + config.op_timeout * (config.open_retries + 1) + GRACE

    # One stream shared by every worker keeps written values unique per key
    txns = ctx.workload.generator(random.Random(ctx.rng.random()))
    tasks: list[asyncio.Task[Any]] = []
    for slot in range(config.concurrency):
        node = config.client_nodes[slot % len(config.client_nodes)]
        tasks.append(asyncio.create_task(worker(ctx, slot, node, txns), name=f"worker-{slot}"))
    if ctx.nemesis is not None:
        events = ctx.nemesis.package.events(random.Random(ctx.rng.random()))
        tasks.append(
            asyncio.create_task(ctx.nemesis.run(events, ctx.deadline, started_at=start), name="nemesis")
        )
    log.info("main_phase_started", concurrency=config.concurrency, time_limit=config.time_limit)

    done, pending = await asyncio.wait(tasks, timeout=max(0.0, hard_bound - ctx.clock()))
    if pending:
        log.warning("cancelling_stragglers", tasks=sorted(t.get_name() for t in pending))
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
    for task in done:
        if not task.cancelled() and task.exception() is not None:
            log.error("task_crashed", task=task.get_name(), error=repr(task.exception()))
    log.info("main_phase_finished", ops=len(ctx.recorder))


async def run_final_nemesis(ctx: RunContext) -> None:
    if ctx.nemesis is None:
        return
    log.info("final_nemesis_started", active=[f.value for f in ctx.nemesis.package.active_faults()])
    await ctx.nemesis.unwind()


async def run_final_reads(ctx: RunContext) -> None:
    config = ctx.config
    keys = sorted(ctx.keys)
    log.info("final_reads_started", nodes=list(config.active_nodes), keys=len(keys))
    await asyncio.gather(*(final_read(ctx, node, keys) for node in config.active_nodes))


async def run_phases(ctx: RunContext, db_setup: Callable[[], Awaitable[Any]] | None = None) -> History:
    """Run every phase and freeze the history."""
    if db_setup is not None:
        await db_setup()
    ctx.db_ready.set()

    await run_main_phase(ctx)
    await run_final_nemesis(ctx)
    if ctx.config.settle_delay:
        log.info("settling", seconds=ctx.config.settle_delay)
        await asyncio.sleep(ctx.config.settle_delay)
    await run_final_reads(ctx)
    return ctx.recorder.snapshot()


def build_context(
    config: TestConfig,
    client_factory: ClientFactory,
    *,
    db: DbLifecycle | None = None,
    net: NetworkControl | None = None,
    recorder: HistoryRecorder | None = None,
) -> RunContext:
    """Wire a configuration, a client factory and the fault collaborators together."""
    rng = random.Random(config.seed)
    ctx = RunContext(
        config=config,
        recorder=recorder or HistoryRecorder(),
        client_factory=client_factory,
        workload=workload_for(config),
        rng=rng,
    )
    if config.nemesis:
        package = NemesisPackage(
            config.nemesis,
            config.nodes,
            db=db,
            net=net,
            interval=config.nemesis_interval,
            targets={
                "partition": config.partition_targets,
                "pause": config.pause_targets,
                "kill": config.kill_targets,
                "packet": config.packet_targets,
            },
            packet_delay_ms=config.packet_delay_ms,
            packet_jitter_ms=config.packet_jitter_ms,
            on_kill=ctx.on_kill,
            rng=random.Random(rng.random()),
        )
        ctx.nemesis = NemesisController(
            package,
            ctx.recorder,
            retries=config.nemesis_retries,
            retry_delay=config.nemesis_retry_delay,
        )
    return ctx


async def run_test(
    config: TestConfig,
    client_factory: ClientFactory,
    *,
    db: DbLifecycle | None = None,
    net: NetworkControl | None = None,
    db_setup: Callable[[], Awaitable[Any]] | None = None,
) -> RunResult:
    """Run one test end to end and check it.

    Args:
        config: Test configuration.
        client_factory: node -> fresh client.
        db: Lifecycle collaborator for pause/kill faults.
        net: Network collaborator for partition/packet faults.
        db_setup: Awaited before clients start, e.g. table creation.

    Returns:
        The history and the verdict.
    """
    ctx = build_context(config, client_factory, db=db, net=net)
    log.info("test_started", name=config.name, nodes=list(config.nodes), nemesis=list(config.nemesis))
    history = await run_phases(ctx, db_setup)
    verdict = check(history, config)
    failures = ctx.nemesis.failures if ctx.nemesis else 0
    log.info("test_finished", name=config.name, valid=verdict.valid, ops=len(history), nemesis_failures=failures)
    return RunResult(history, verdict, failures)
