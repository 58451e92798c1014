import asyncio
import logging
import signal
import sys
from collections.abc import Sequence
from typing import Any

import click
import psycopg
import structlog
from dotenv import find_dotenv, load_dotenv

from .__init__ import __version__
from .errors import PgEmbedError

load_dotenv(dotenv_path=find_dotenv(usecwd=True))

structlog.configure(wrapper_class=structlog.make_filtering_bound_logger(logging.INFO))
log = structlog.get_logger()


def get_log_level(level: str) -> int:
    level_upper = level.upper()
    # getLevelName maps a name to its number, and unknown names to a string
    level_name = logging.getLevelName(level_upper)  # type: ignore
    if isinstance(level_name, int):
        return level_name
    return logging.INFO


def shutdown_handler(signum: int, _frame: Any):
    signame = signal.Signals(signum).name
    log.info(f"received {signame}, exiting")
    # Rows already inserted are kept, a later run resumes from there
    exit(130)


@click.command(name="generate")
@click.version_option(version=__version__)
@click.option(
    "-d",
    "--db-url",
    type=click.STRING,
    envvar="PGEMBED_DB_URL",
    required=True,
    help="The database URL to connect to. Defaults to $PGEMBED_DB_URL.",
)
@click.option(
    "-s",
    "--source-table",
    type=click.STRING,
    required=True,
    help="The table holding the text to embed, as table or schema.table",
)
@click.option(
    "-t",
    "--target-table",
    type=click.STRING,
    required=True,
    help="The table receiving the embeddings. Created if it does not exist.",
)
@click.option(
    "-m",
    "--ml-model",
    type=click.STRING,
    required=True,
    help="The embedding model, as provider/model (e.g. openai/text-embedding-3-small"
    " or ollama/nomic-embed-text)",
)
@click.option(
    "-c",
    "--content-column",
    type=click.STRING,
    required=True,
    help="The source column holding the text to embed",
)
@click.option(
    "-k",
    "--key-column",
    "key_columns",
    type=click.STRING,
    multiple=True,
    required=True,
    help="A source column that identifies a row. Repeat for composite keys.",
)
@click.option(
    "-o",
    "--options",
    "options_string",
    type=click.STRING,
    default="{}",
    show_default=True,
    help="A JSON object with batch_size, termination_time_secs, where_clause, "
    "projection_columns and ml_options",
)
@click.option(
    "--log-level",
    type=click.Choice(
        ["DEBUG", "INFO", "WARN", "ERROR", "FATAL", "CRITICAL"], case_sensitive=False
    ),
    default="INFO",
)
def generate(
    db_url: str,
    source_table: str,
    target_table: str,
    ml_model: str,
    content_column: str,
    key_columns: Sequence[str],
    options_string: str,
    log_level: str,
) -> None:
    """Embed every source row that has no row in the target table yet."""
    asyncio.run(
        async_generate(
            db_url,
            source_table,
            target_table,
            ml_model,
            content_column,
            key_columns,
            options_string,
            log_level,
        )
    )


async def async_generate(
    db_url: str,
    source_table: str,
    target_table: str,
    ml_model: str,
    content_column: str,
    key_columns: Sequence[str],
    options_string: str,
    log_level: str,
) -> None:
    from .generate import agenerate_embeddings

    # gracefully handle being asked to shut down
    signal.signal(signal.SIGINT, shutdown_handler)
    signal.signal(signal.SIGTERM, shutdown_handler)

    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(get_log_level(log_level))
    )

    try:
        result = await agenerate_embeddings(
            source_table,
            target_table,
            ml_model,
            content_column,
            list(key_columns),
            options_string,
            db_url=db_url,
        )
    except (PgEmbedError, psycopg.Error) as e:
        await log.aerror("embedding run failed", error=str(e))
        sys.exit(1)

    click.echo(
        f"probe rows: {result.probe_rows}, "
        f"iterations: {result.iterations}, "
        f"rows inserted: {result.rows_inserted}, "
        f"converged: {result.converged}"
    )


@click.group()
@click.version_option(version=__version__)
def cli():
    pass


cli.add_command(generate)
