"""
Causal Stub Node

A minimal single-replica node that:
1. Exposes health/ready/status endpoints on the transaction port
2. Executes wire-contract transactions in one local sqlite transaction
3. Logs all activity for debugging

This is NOT a replicated database. Every node keeps its own sqlite file and
never talks to its peers, so a multi-node run against stub nodes is expected
to diverge. It exists to exercise the harness end to end: the HTTP client,
the docker lifecycle, partitions and packet delay.

Environment:
    CAUSAL_NODE       node name for logs (default: hostname)
    CAUSAL_PORT       listen port (default: 8089)
    CAUSAL_DB_PATH    sqlite file (default: /tmp/causal-<node>.db)
    CAUSAL_LOG_LEVEL  log level (default: debug)
"""

from __future__ import annotations

import asyncio
import json
import os
import signal
import socket
import sqlite3
import sys
import threading
from typing import Any

import structlog
from aiohttp import web

# Configure logging
structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(
        structlog.stdlib.NAME_TO_LEVEL.get(os.environ.get("CAUSAL_LOG_LEVEL", "debug").lower(), 10)
    ),
)
log = structlog.get_logger()

TXN_PATH = "/lww/better-sqlite3"

APPEND_SQL = "INSERT INTO lww (k, v) VALUES (?, ?) ON CONFLICT (k) DO UPDATE SET v = lww.v || ' ' || excluded.v"
WRITE_SQL = "INSERT INTO lww (k, v) VALUES (?, ?) ON CONFLICT (k) DO UPDATE SET v = excluded.v"
READ_SQL = "SELECT v FROM lww WHERE k = ?"


class TxnRejected(Exception):
    """The transaction was rolled back; reported to the client as fail."""


class StubNode:
    """One node: an HTTP front end over a local sqlite database."""

    def __init__(self) -> None:
        self.node = os.environ.get("CAUSAL_NODE", socket.gethostname())
        self.port = int(os.environ.get("CAUSAL_PORT", "8089"))
        self.db_path = os.environ.get("CAUSAL_DB_PATH", f"/tmp/causal-{self.node}.db")
        self.running = False
        self.txns_ok = 0
        self.txns_failed = 0
        self._lock = threading.Lock()
        self._db = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        self._db.execute("CREATE TABLE IF NOT EXISTS lww (k INTEGER PRIMARY KEY, v TEXT)")

    def execute(self, mops: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Run micro-ops in one immediate transaction.

        Raises:
            TxnRejected: If sqlite refused the transaction; nothing was applied.
            ValueError: On a malformed micro-op.
        """
        result = []
        with self._lock:
            try:
                self._db.execute("BEGIN IMMEDIATE")
                for mop in mops:
                    f, k, v = mop["f"], int(mop["k"]), mop.get("v")
                    if f == "r":
                        row = self._db.execute(READ_SQL, (k,)).fetchone()
                        result.append({"f": "r", "k": k, "v": row[0] if row else None})
                    elif f in ("append", "w"):
                        self._db.execute(APPEND_SQL if f == "append" else WRITE_SQL, (k, str(int(v))))
                        result.append({"f": f, "k": k, "v": int(v)})
                    else:
                        raise ValueError(f"unknown micro-op function {f!r}")
                self._db.execute("COMMIT")
            except sqlite3.OperationalError as e:
                self._db.execute("ROLLBACK")
                raise TxnRejected(str(e)) from e
            except Exception:
                self._db.execute("ROLLBACK")
                raise
        return result

    async def txn_handler(self, request: web.Request) -> web.Response:
        """Execute one wire-contract transaction."""
        try:
            body = await request.json()
            if body.get("type") != "invoke" or not isinstance(body.get("value"), list):
                raise ValueError("expected {type: invoke, value: [...]}")
            mops = await asyncio.to_thread(self.execute, body["value"])
        except TxnRejected as e:
            self.txns_failed += 1
            log.info("txn_rejected", node=self.node, error=str(e))
            return web.json_response({"type": "fail", "error": str(e)})
        except (ValueError, KeyError, TypeError, json.JSONDecodeError) as e:
            log.warning("bad_request", node=self.node, error=str(e))
            return web.json_response({"type": "fail", "error": f"bad request: {e}"}, status=400)

        self.txns_ok += 1
        log.debug("txn_ok", node=self.node, mops=len(mops))
        return web.json_response({"type": "ok", "value": mops})

    async def health_handler(self, _request: web.Request) -> web.Response:
        """Health check endpoint."""
        return web.Response(text="OK", status=200)

    async def ready_handler(self, _request: web.Request) -> web.Response:
        """Readiness check - are we ready to accept transactions?"""
        if self.running:
            return web.Response(text="READY", status=200)
        return web.Response(text="NOT READY", status=503)

    async def status_handler(self, _request: web.Request) -> web.Response:
        """Status endpoint with node counters."""
        return web.json_response(
            {
                "node": self.node,
                "running": self.running,
                "txns_ok": self.txns_ok,
                "txns_failed": self.txns_failed,
            }
        )

    async def run(self) -> None:
        """Run the stub node until SIGINT/SIGTERM."""
        log.info("stub_node_starting", node=self.node, port=self.port, db=self.db_path)

        app = web.Application()
        app.router.add_post(TXN_PATH, self.txn_handler)
        app.router.add_get("/health", self.health_handler)
        app.router.add_get("/ready", self.ready_handler)
        app.router.add_get("/status", self.status_handler)

        runner = web.AppRunner(app)
        await runner.setup()
        site = web.TCPSite(runner, "0.0.0.0", self.port)
        await site.start()
        self.running = True
        log.info("stub_node_started", node=self.node, port=self.port)

        stop_event = asyncio.Event()

        def signal_handler() -> None:
            log.info("shutdown_signal_received")
            stop_event.set()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, signal_handler)

        await stop_event.wait()

        log.info("shutting_down")
        self.running = False
        await runner.cleanup()
        self._db.close()
        log.info("shutdown_complete")


async def main() -> None:
    """Entry point."""
    node = StubNode()
    await node.run()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        sys.exit(0)
