from collections.abc import AsyncIterator, Iterator, Sequence
from contextlib import AbstractAsyncContextManager, asynccontextmanager, contextmanager
from typing import Any, Protocol

import psycopg
import structlog
from ddtrace.trace import tracer
from psycopg import AsyncConnection
from psycopg.rows import dict_row

from .errors import StoreError
from .query import EmbeddingQueryBuilder

logger = structlog.get_logger()

SourceRow = dict[str, Any]
TargetRow = dict[str, Any]


class TableStore(Protocol):
    """
    The operations a run needs from the storage engine.

    A store is bound to one source table and one destination table.
    """

    async def target_columns(self) -> list[str]:
        """The destination's columns, or an empty list if it does not exist."""
        ...

    async def fetch_sample(self, limit: int) -> list[SourceRow]:
        """Reads at most ``limit`` filtered, projected source rows."""
        ...

    async def create_target(self, rows: Sequence[TargetRow]) -> int:
        """
        Creates the destination if it does not exist and inserts ``rows``
        into it, atomically. Returns the number of rows inserted.
        """
        ...

    def materialize_pending(
        self, limit: int
    ) -> AbstractAsyncContextManager[list[SourceRow]]:
        """
        Materializes at most ``limit`` source rows that have no destination
        row, and yields them. The working set is released on exit.
        """
        ...

    async def insert(self, rows: Sequence[TargetRow]) -> int:
        """Appends ``rows`` to the destination. Returns the number inserted."""
        ...


@contextmanager
def store_errors(action: str) -> Iterator[None]:
    try:
        yield
    except psycopg.Error as e:
        raise StoreError(f"failed to {action}: {e}") from e


class PostgresStore:
    """
    A ``TableStore`` backed by PostgreSQL.

    The connection must be in autocommit mode: every statement is its own
    unit of durability, except ``create_target`` and ``insert`` which run in
    a transaction. The pending working set lives in a session temp table.

    Attributes:
        conn (AsyncConnection): The connection, with pgvector registered.
        queries (EmbeddingQueryBuilder): Builds the statements of the run.
    """

    def __init__(self, conn: AsyncConnection, queries: EmbeddingQueryBuilder):
        self.conn = conn
        self.queries = queries
        self._column_types: dict[str, int] | None = None

    async def _load_column_types(self) -> dict[str, int]:
        async with self.conn.cursor() as cursor:
            await cursor.execute(
                self.queries.target_columns_query, (self.queries.target_regclass,)
            )
            return {row[0]: row[1] for row in await cursor.fetchall()}

    async def target_columns(self) -> list[str]:
        with store_errors("read the destination columns"):
            return list(await self._load_column_types())

    async def fetch_sample(self, limit: int) -> list[SourceRow]:
        with store_errors("read the source sample"):
            async with self.conn.cursor(row_factory=dict_row) as cursor:
                await cursor.execute(self.queries.sample_query(limit))
                return await cursor.fetchall()

    async def create_target(self, rows: Sequence[TargetRow]) -> int:
        with store_errors("create the destination table"):
            async with self.conn.transaction():
                await self.conn.execute(self.queries.create_target_query)
                return await self._copy(rows)

    @asynccontextmanager
    async def materialize_pending(self, limit: int) -> AsyncIterator[list[SourceRow]]:
        with store_errors("materialize pending rows"):
            async with self.conn.cursor(row_factory=dict_row) as cursor:
                await cursor.execute(self.queries.drop_staging_query)
                await cursor.execute(self.queries.create_staging_query(limit))
                await cursor.execute(self.queries.select_staging_query)
                rows = await cursor.fetchall()
        try:
            yield rows
        finally:
            if not self.conn.closed:
                with store_errors("drop the working set"):
                    await self.conn.execute(self.queries.drop_staging_query)

    @tracer.wrap()
    async def insert(self, rows: Sequence[TargetRow]) -> int:
        if not rows:
            return 0
        with store_errors("insert into the destination table"):
            async with self.conn.transaction():
                return await self._copy(rows)

    async def _copy(self, rows: Sequence[TargetRow]) -> int:
        """
        Writes rows with a binary COPY, typed with the destination's column
        types. All rows must have the same columns.
        """
        if not rows:
            return 0
        if self._column_types is None:
            self._column_types = await self._load_column_types()
        columns = list(rows[0])
        missing = [c for c in columns if c not in self._column_types]
        if missing:
            raise StoreError(
                f"destination table has no columns: {', '.join(missing)}"
            )
        async with (
            self.conn.cursor(binary=True) as cursor,
            cursor.copy(self.queries.copy_query(columns)) as copy,
        ):
            copy.set_types([self._column_types[c] for c in columns])
            for row in rows:
                await copy.write_row([row[c] for c in columns])
        await logger.adebug("rows copied into destination", rows=len(rows))
        return len(rows)
