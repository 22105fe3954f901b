"""
Client adapter contract.

A client executes transactions against one node of the system under test.
Every backend implements the same four capabilities:

    open(node)     acquire a session; may fail, see open_client
    invoke(txn)    run one transaction and return a Result
    teardown()     release per-run state; idempotent, never raises
    close()        release the session; idempotent, never raises

The Result is the single boundary where an outcome is classified, and the
classification is load-bearing for the checkers:

    ok    the transaction applied and its values are authoritative
    fail  the transaction certainly did not apply
    info  unknown: the request may have reached the server

Backends are selected at runtime by name (TestConfig.client and
client_by_node), not by subclassing.
"""

from __future__ import annotations

import asyncio
import errno
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol

import structlog

if TYPE_CHECKING:
    from causal.config import TestConfig
    from causal.history import Mop

log = structlog.get_logger()


class Outcome(str, Enum):
    """Terminal classification of a client operation."""

    OK = "ok"
    FAIL = "fail"
    INFO = "info"


@dataclass(frozen=True)
class ErrorCause:
    """Structured cause attached to fail/info results."""

    kind: str
    message: str = ""

    def __str__(self) -> str:
        return f"{self.kind}: {self.message}" if self.message else self.kind


@dataclass(frozen=True)
class Result:
    """Outcome of one invoke, built once at the adapter boundary."""

    outcome: Outcome
    value: tuple[Mop, ...] | None = None
    error: ErrorCause | None = None

    @classmethod
    def ok(cls, value: Sequence[Mop]) -> Result:
        return cls(Outcome.OK, tuple(value))

    @classmethod
    def fail(cls, kind: str, message: str = "") -> Result:
        return cls(Outcome.FAIL, None, ErrorCause(kind, message))

    @classmethod
    def info(cls, kind: str, message: str = "") -> Result:
        return cls(Outcome.INFO, None, ErrorCause(kind, message))


class ClientSetupError(Exception):
    """Raised when a client cannot open a session within its retry budget.

    Fatal for the process that owns the client; the run continues with
    reduced concurrency.
    """

    def __init__(self, node: str, attempts: int, cause: BaseException | None) -> None:
        self.node = node
        self.attempts = attempts
        self.cause = cause
        super().__init__(f"Could not open client on {node} after {attempts} attempts: {cause}")


class Client(Protocol):
    """Capabilities every backend client provides."""

    node: str | None

    async def open(self, node: str) -> None: ...

    async def invoke(self, txn: Sequence[Mop]) -> Result: ...

    async def teardown(self) -> None: ...

    async def close(self) -> None: ...


# errno values meaning nothing left the client
_REFUSED_ERRNOS = {errno.ECONNREFUSED, errno.EHOSTUNREACH, errno.ENETUNREACH}


def classify_exception(exc: BaseException, *, request_sent: bool = True) -> Result:
    """Classify a transport-level exception.

    Args:
        exc: The exception raised while executing a transaction.
        request_sent: Whether any part of the request may have left the
            client. Before that point every failure is a definite fail.

    Returns:
        fail for refused connections or anything before the request was
        sent; info for timeouts, resets and everything else.
    """
    if isinstance(exc, ConnectionRefusedError) or (
        isinstance(exc, OSError) and exc.errno in _REFUSED_ERRNOS
    ):
        return Result.fail("connection-refused", str(exc))
    if not request_sent:
        return Result.fail("not-sent", f"{type(exc).__name__}: {exc}")
    if isinstance(exc, TimeoutError | asyncio.TimeoutError):
        return Result.info("timeout", str(exc))
    if isinstance(exc, ConnectionResetError | BrokenPipeError):
        return Result.info("connection-reset", str(exc))
    return Result.info(type(exc).__name__, str(exc))


async def open_client(
    client: Client,
    node: str,
    *,
    retries: int = 5,
    timeout: float = 5.0,
    interval: float = 1.0,
) -> Client:
    """Open a client, retrying until the budget is spent.

    Args:
        client: Unopened client.
        node: Node to open against.
        retries: Maximum attempts.
        timeout: Total time budget in seconds.
        interval: Delay between attempts.

    Returns:
        The opened client.

    Raises:
        ClientSetupError: If no attempt succeeded within the budget.
    """
    deadline = time.monotonic() + timeout
    last: BaseException | None = None
    attempts = 0
    while attempts < retries:
        attempts += 1
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            break
        try:
            await asyncio.wait_for(client.open(node), timeout=remaining)
            log.debug("client_opened", node=node, attempts=attempts)
            return client
        except asyncio.CancelledError:
            raise
        except Exception as e:
            last = e
            log.debug("client_open_retry", node=node, attempt=attempts, error=str(e))
            await close_quietly(client)
            if attempts < retries and time.monotonic() + interval < deadline:
                await asyncio.sleep(interval)

    log.error("client_open_failed", node=node, attempts=attempts, error=str(last))
    raise ClientSetupError(node, attempts, last)


async def close_quietly(client: Client) -> None:
    """Teardown and close a client, logging instead of raising."""
    for step in (client.teardown, client.close):
        try:
            await step()
        except Exception as e:
            log.debug("client_close_error", node=client.node, error=str(e))


ClientFactory = Callable[[str], Client]


def make_client_factory(config: TestConfig, **backends: Any) -> ClientFactory:
    """Build a node -> client factory from configuration.

    Args:
        config: Test configuration; client kinds come from `client` and
            `client_by_node`.
        **backends: Extra constructor arguments, e.g. cluster=SimCluster for
            the in-process backend.

    Returns:
        A callable creating a fresh, unopened client for a node.
    """
    from causal.clients.http import HttpClient
    from causal.clients.postgres import PostgresClient
    from causal.generator import SEMANTICS
    from causal.sim import SimClient

    semantics = SEMANTICS[config.workload]

    def factory(node: str) -> Client:
        kind = config.client_kind(node)
        if kind == "http":
            return HttpClient(
                port=config.http_port,
                path=config.http_path,
                timeout=config.op_timeout,
                semantics=semantics,
            )
        if kind == "postgres":
            return PostgresClient(
                dsn=config.postgres_dsn,
                table=config.postgres_table,
                semantics=semantics,
            )
        cluster = backends.get("cluster")
        if cluster is None:
            raise ValueError("The sim client needs cluster=SimCluster(...)")
        return SimClient(cluster)

    return factory
