import asyncio
import os
import time
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

import psycopg
import structlog
from pgvector.psycopg import register_vector_async  # type: ignore

from .embedders import resolve_embedder
from .embeddings import Embedder
from .errors import ConfigurationError
from .loop import Clock, ConvergenceLoop
from .ml_options import MlOptions, parse_ml_options
from .options import Configuration, resolve_options
from .query import EmbeddingQueryBuilder
from .store import PostgresStore, TableStore, store_errors
from .target import TargetInitializer

logger = structlog.get_logger()

DB_URL_ENV = "PGEMBED_DB_URL"


@dataclass
class RunResult:
    """
    Summary of a run.

    Attributes:
        probe_rows: Rows written while creating the destination.
        iterations: Loop iterations completed.
        rows_inserted: Rows written by the loop.
        converged: True if every eligible row was processed. False if the
            time budget ran out first, or if the last iteration only produced
            retryable failures.
        elapsed_secs: Time spent in the loop.
    """

    probe_rows: int
    iterations: int
    rows_inserted: int
    converged: bool
    elapsed_secs: float


async def run_embedding(
    store: TableStore,
    embedder: Embedder,
    queries: EmbeddingQueryBuilder,
    configuration: Configuration,
    ml_options: MlOptions,
    clock: Clock = time.monotonic,
) -> RunResult:
    """Initializes the destination, then runs the loop to completion."""
    probe_rows = await TargetInitializer(
        store, embedder, queries, ml_options
    ).initialize()
    loop = ConvergenceLoop(store, embedder, configuration, ml_options, clock=clock)
    state = await loop.run()
    return RunResult(
        probe_rows=probe_rows,
        iterations=state.iterations,
        rows_inserted=state.rows_inserted,
        converged=state.converged,
        elapsed_secs=loop.elapsed(state),
    )


async def agenerate_embeddings(
    source_table: str,
    target_table: str,
    ml_model: str,
    content_column: str,
    key_columns: Sequence[str],
    options_string: str | dict[str, Any] = "{}",
    *,
    db_url: str | None = None,
    embedder: Embedder | None = None,
) -> RunResult:
    """
    Embeds every row of ``source_table`` that has no row in ``target_table``.

    Safe to call repeatedly: rows already in the destination are skipped, so
    a run resumes where the previous one stopped.

    Args:
        source_table: The table holding the text, as ``table`` or
            ``schema.table``.
        target_table: The table receiving the embeddings. Created if missing.
        ml_model: The embedding model, as ``provider/model``.
        content_column: The source column holding the text to embed.
        key_columns: The source columns that uniquely identify a row.
        options_string: A JSON object of run options, see ``resolve_options``.
        db_url: The database URL. Defaults to ``$PGEMBED_DB_URL``.
        embedder: An embedder to use instead of the one ``ml_model`` names.

    Returns:
        RunResult: A summary of the run.

    Raises:
        ConfigurationError: On invalid arguments, before any table is touched.
        StoreError: If a database statement fails.
        BackendInvocationError: If the embedding backend fails as a whole.
    """
    configuration = resolve_options(options_string)
    ml_options = parse_ml_options(configuration.ml_options)
    queries = EmbeddingQueryBuilder(
        source_table,
        target_table,
        content_column,
        key_columns,
        configuration,
        ml_options,
    )
    if embedder is None:
        embedder = resolve_embedder(ml_model)
    embedder.check_options(ml_options)
    db_url = db_url or os.getenv(DB_URL_ENV)
    if not db_url:
        raise ConfigurationError(f"no database URL given and ${DB_URL_ENV} is not set")

    await logger.ainfo(
        "generating embeddings",
        source_table=source_table,
        target_table=target_table,
        ml_model=ml_model,
        content_column=content_column,
        key_columns=list(key_columns),
        batch_size=configuration.batch_size,
        termination_time_secs=configuration.termination_time_secs,
        where_clause=configuration.where_clause,
        projection_columns=list(configuration.projection_columns),
        ml_options=configuration.ml_options,
    )

    with store_errors("connect to the database"):
        conn = await psycopg.AsyncConnection.connect(
            db_url, autocommit=True, application_name="pgembed"
        )
    async with conn:
        with store_errors("register the vector type"):
            await register_vector_async(conn)
        await embedder.setup()
        return await run_embedding(
            PostgresStore(conn, queries), embedder, queries, configuration, ml_options
        )


def generate_embeddings(
    source_table: str,
    target_table: str,
    ml_model: str,
    content_column: str,
    key_columns: Sequence[str],
    options_string: str | dict[str, Any] = "{}",
    *,
    db_url: str | None = None,
    embedder: Embedder | None = None,
) -> RunResult:
    """Blocking version of ``agenerate_embeddings``."""
    return asyncio.run(
        agenerate_embeddings(
            source_table,
            target_table,
            ml_model,
            content_column,
            key_columns,
            options_string,
            db_url=db_url,
            embedder=embedder,
        )
    )
