"""
SQL-over-wire-protocol client for PostgreSQL-compatible endpoints.

Transactions run at REPEATABLE READ. Append logs live in a text column and
grow by string concatenation; registers are overwritten. Deadlocks and
serialization failures are rolled back by the server with no partial effect,
so they classify as fail.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING

import psycopg
import structlog
from psycopg import errors, sql

from causal.client import Result, classify_exception
from causal.history import Mop
from causal.wire import parse_list_value, parse_register_value

if TYPE_CHECKING:
    from psycopg import AsyncConnection

log = structlog.get_logger()

APPEND_SQL = (
    "INSERT INTO {table} (k, v) VALUES (%s, %s) "
    "ON CONFLICT (k) DO UPDATE SET v = {table}.v || ' ' || excluded.v"
)
WRITE_SQL = "INSERT INTO {table} (k, v) VALUES (%s, %s) ON CONFLICT (k) DO UPDATE SET v = excluded.v"
READ_SQL = "SELECT v FROM {table} WHERE k = %s"
CREATE_SQL = "CREATE TABLE IF NOT EXISTS {table} (k integer PRIMARY KEY, v text)"


class PostgresClient:
    """psycopg-backed client; one connection per process."""

    def __init__(
        self,
        *,
        dsn: str,
        table: str = "lww",
        semantics: str = "list",
        connect_timeout: int = 5,
    ) -> None:
        self.dsn = dsn
        self.table = table
        self.semantics = semantics
        self.connect_timeout = connect_timeout
        self.node: str | None = None
        self._conn: AsyncConnection | None = None

    async def open(self, node: str) -> None:
        self.node = node
        self._conn = await psycopg.AsyncConnection.connect(
            self.dsn.replace("{node}", node), autocommit=True, connect_timeout=self.connect_timeout
        )
        await self._conn.set_isolation_level(psycopg.IsolationLevel.REPEATABLE_READ)

    async def setup_table(self) -> None:
        """Create the backing table if it does not exist."""
        if self._conn is None:
            raise RuntimeError("client is not open")
        await self._conn.execute(self._query(CREATE_SQL))

    def _query(self, template: str) -> sql.Composed:
        return sql.SQL(template).format(table=sql.Identifier(self.table))

    async def invoke(self, txn: Sequence[Mop]) -> Result:
        conn = self._conn
        if conn is None or conn.closed:
            return Result.fail("not-open", "connection is closed")

        mops: list[Mop] = []
        try:
            async with conn.transaction(), conn.cursor() as cur:
                for mop in txn:
                    mop = Mop(*mop)
                    if mop.f == "r":
                        await cur.execute(self._query(READ_SQL), (mop.k,))
                        row = await cur.fetchone()
                        v = row[0] if row else None
                        if self.semantics == "register":
                            mops.append(Mop("r", mop.k, parse_register_value(v)))
                        else:
                            mops.append(Mop("r", mop.k, parse_list_value(v)))
                    else:
                        template = WRITE_SQL if mop.f == "w" else APPEND_SQL
                        await cur.execute(self._query(template), (mop.k, str(mop.v)))
                        if cur.rowcount != 1:
                            raise RuntimeError(f"expected one row for {mop}, got {cur.rowcount}")
                        mops.append(mop)
        except errors.DeadlockDetected as e:
            return Result.fail("deadlock", str(e))
        except errors.SerializationFailure as e:
            return Result.fail("concurrent-update", str(e))
        except psycopg.InterfaceError as e:
            # The connection was already unusable; nothing reached the server
            return Result.fail("not-open", str(e))
        except psycopg.OperationalError as e:
            return Result.info("connection-lost", str(e))
        except Exception as e:
            return classify_exception(e)
        return Result.ok(mops)

    async def teardown(self) -> None:
        pass

    async def close(self) -> None:
        if self._conn is not None:
            conn, self._conn = self._conn, None
            try:
                await conn.close()
            except psycopg.Error as e:
                log.debug("postgres_close_error", node=self.node, error=str(e))
