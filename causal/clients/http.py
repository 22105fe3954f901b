"""
SQL-over-HTTP client.

Each node runs a small web service next to its local replica (see
docker/stub/stub_node.py for the reference shape) that executes a transaction
in one local SQL transaction and returns the wire-contract response.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Sequence
from typing import TYPE_CHECKING

import aiohttp
import structlog

from causal.client import Result, classify_exception
from causal.wire import WireError, decode_response, encode_request

if TYPE_CHECKING:
    from causal.history import Mop

log = structlog.get_logger()

DEFAULT_PORT = 8089
DEFAULT_PATH = "/lww/better-sqlite3"


class HttpClient:
    """Posts transactions to http://<node>:<port><path>."""

    def __init__(
        self,
        *,
        port: int = DEFAULT_PORT,
        path: str = DEFAULT_PATH,
        timeout: float = 1.0,
        semantics: str = "list",
    ) -> None:
        self.port = port
        self.path = path
        self.timeout = timeout
        self.semantics = semantics
        self.node: str | None = None
        self.url: str | None = None
        self._session: aiohttp.ClientSession | None = None

    async def open(self, node: str) -> None:
        self.node = node
        self.url = f"http://{node}:{self.port}{self.path}"
        self._session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.timeout, sock_connect=self.timeout),
        )

    async def invoke(self, txn: Sequence[Mop]) -> Result:
        if self._session is None or self.url is None:
            return Result.fail("not-open", "client is not open")

        body = encode_request(txn)
        try:
            async with self._session.post(self.url, json=body) as response:
                if response.status != 200:
                    text = await response.text()
                    return Result.info(f"http-{response.status}", text[:200])
                payload = await response.json(content_type=None)
        except aiohttp.ClientConnectorError as e:
            # The TCP connection never came up, so nothing was sent
            if isinstance(e.os_error, ConnectionRefusedError):
                return Result.fail("connection-refused", str(e))
            return Result.fail("connect-error", str(e))
        except (aiohttp.ServerTimeoutError, asyncio.TimeoutError) as e:
            return Result.info("timeout", str(e))
        except aiohttp.ServerDisconnectedError as e:
            return Result.info("server-disconnected", str(e))
        except (aiohttp.ClientError, json.JSONDecodeError) as e:
            return classify_exception(e)

        try:
            rtype, mops, error = decode_response(txn, payload, semantics=self.semantics)
        except WireError as e:
            log.warning("malformed_response", node=self.node, error=str(e))
            return Result.info("malformed-response", str(e))

        if rtype == "ok":
            return Result.ok(mops or ())
        if rtype == "fail":
            return Result.fail("rejected", str(error or ""))
        return Result.info("node-info", str(error or ""))

    async def teardown(self) -> None:
        pass

    async def close(self) -> None:
        if self._session is not None:
            session, self._session = self._session, None
            await session.close()
        self.node = None
        self.url = None
