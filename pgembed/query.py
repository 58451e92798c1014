from collections.abc import Sequence
from functools import cached_property

from psycopg import sql

from .errors import ConfigurationError
from .ml_options import MlOptions
from .options import WILDCARD, Configuration

RESULT_COLUMN = "ml_generate_embedding_result"
STATISTICS_COLUMN = "ml_generate_embedding_statistics"
STATUS_COLUMN = "ml_generate_embedding_status"
CONTENT_ALIAS = "content"

STAGING_TABLE = "embedding_batch"

PROBE_SIZE = 10


def parse_table_name(name: str) -> tuple[str, ...]:
    """
    Splits a table path into its parts.

    Accepted forms are ``table``, ``schema.table`` and ``db.schema.table``.
    Each part is later quoted as its own identifier, so names are matched
    case-sensitively.
    """
    parts = tuple(part.strip() for part in name.strip().split("."))
    if not 1 <= len(parts) <= 3 or any(part == "" for part in parts):
        raise ConfigurationError(f"Invalid table name: {name!r}")
    return parts


def quote_ident(parts: Sequence[str]) -> str:
    """Renders a qualified name as text, e.g. for ``to_regclass``."""
    return ".".join('"' + part.replace('"', '""') + '"' for part in parts)


def validate_key_columns(key_columns: Sequence[str]) -> tuple[str, ...]:
    if isinstance(key_columns, str) or len(key_columns) == 0:
        raise ConfigurationError("key_columns must be a non-empty list of columns")
    if any(key.strip() in ("", WILDCARD) for key in key_columns):
        raise ConfigurationError("key_columns may not contain '*' or empty names")
    return tuple(key_columns)


class EmbeddingQueryBuilder:
    """
    Builds the SQL statements of a run.

    Every statement is a ``psycopg.sql.Composed``. Table and column names are
    quoted identifiers; only ``where_clause`` is injected verbatim, so it must
    come from a trusted caller.

    Queries are rebuilt on every access, since the tables they read may
    change between iterations.

    Attributes:
        source (tuple[str, ...]): The parts of the source table name.
        target (tuple[str, ...]): The parts of the destination table name.
        content_column (str): The source column holding the text to embed.
        key_columns (tuple[str, ...]): The columns identifying a source row.
        configuration (Configuration): The resolved options of the run.
        ml_options (MlOptions): The parsed backend options.
    """

    def __init__(
        self,
        source_table: str,
        target_table: str,
        content_column: str,
        key_columns: Sequence[str],
        configuration: Configuration,
        ml_options: MlOptions,
    ):
        self.source = parse_table_name(source_table)
        self.target = parse_table_name(target_table)
        if not content_column.strip():
            raise ConfigurationError("content_column must not be empty")
        self.content_column = content_column
        self.key_columns = validate_key_columns(key_columns)
        self.configuration = configuration
        self.ml_options = ml_options

    @property
    def source_table_ident(self) -> sql.Identifier:
        return sql.Identifier(*self.source)

    @property
    def target_table_ident(self) -> sql.Identifier:
        return sql.Identifier(*self.target)

    @property
    def target_regclass(self) -> str:
        return quote_ident(self.target)

    @cached_property
    def projected_columns(self) -> tuple[str, ...] | None:
        """
        The explicit projection, with any key column that was left out
        prepended in key order. None when every column is projected.
        """
        if self.configuration.projects_all_columns:
            return None
        projection = self.configuration.projection_columns
        missing = tuple(key for key in self.key_columns if key not in projection)
        return missing + projection

    @property
    def _aliases_content(self) -> bool:
        if self.content_column != CONTENT_ALIAS:
            return True
        projected = self.projected_columns
        return projected is not None and CONTENT_ALIAS not in projected

    @property
    def projection(self) -> sql.Composable:
        columns: list[sql.Composable]
        if self.projected_columns is None:
            columns = [sql.SQL(WILDCARD)]
        else:
            columns = [sql.Identifier(c) for c in self.projected_columns]
        if self._aliases_content:
            columns.append(
                sql.SQL("{} AS {}").format(
                    sql.Identifier(self.content_column),
                    sql.Identifier(CONTENT_ALIAS),
                )
            )
        return sql.SQL(", ").join(columns)

    @property
    def source_query(self) -> sql.Composed:
        """The projected, filtered read of the source table."""
        return sql.SQL("SELECT {projection} FROM {source} WHERE {where}").format(
            projection=self.projection,
            source=self.source_table_ident,
            where=sql.SQL(self.configuration.where_clause),
        )

    def sample_query(self, limit: int = PROBE_SIZE) -> sql.Composed:
        return sql.SQL("SELECT * FROM ({source_query}) AS s LIMIT {limit}").format(
            source_query=self.source_query,
            limit=sql.Literal(limit),
        )

    @property
    def key_predicate(self) -> sql.Composed:
        """
        Matches a source row ``s`` with a destination row ``t`` on every key
        column, e.g. ``s."a" = t."a" AND s."b" = t."b"``.
        """
        return sql.SQL(" AND ").join(
            [
                sql.SQL("s.{key} = t.{key}").format(key=sql.Identifier(key))
                for key in self.key_columns
            ]
        )

    @property
    def key_not_null_predicate(self) -> sql.Composed:
        return sql.SQL(" AND ").join(
            [
                sql.SQL("s.{key} IS NOT NULL").format(key=sql.Identifier(key))
                for key in self.key_columns
            ]
        )

    def pending_query(self, limit: int) -> sql.Composed:
        """
        Selects at most ``limit`` source rows that have no destination row.

        Rows with a NULL key can never match a destination row, so they are
        left out instead of being embedded again on every iteration.
        """
        return sql.SQL("""
            SELECT s.*
            FROM ({source_query}) AS s
            WHERE {key_not_null}
            AND NOT EXISTS (
                SELECT 1 FROM {target} AS t WHERE {key_predicate}
            )
            LIMIT {limit}
        """).format(
            source_query=self.source_query,
            key_not_null=self.key_not_null_predicate,
            target=self.target_table_ident,
            key_predicate=self.key_predicate,
            limit=sql.Literal(limit),
        )

    @property
    def result_column_type(self) -> sql.SQL:
        if not self.ml_options.flatten_json_output:
            return sql.SQL("jsonb")
        dimensions = self.ml_options.output_dimensionality
        if dimensions is None:
            return sql.SQL("vector")
        return sql.SQL(f"vector({int(dimensions)})")

    @property
    def create_target_query(self) -> sql.Composed:
        """
        Creates the destination with the source projection followed by the
        result columns. No rows are copied.
        """
        return sql.SQL("""
            CREATE TABLE IF NOT EXISTS {target} AS
            SELECT s.*
                 , NULL::{result_type} AS {result}
                 , NULL::jsonb AS {statistics}
                 , NULL::text AS {status}
            FROM ({source_query}) AS s
            WITH NO DATA
        """).format(
            target=self.target_table_ident,
            result_type=self.result_column_type,
            result=sql.Identifier(RESULT_COLUMN),
            statistics=sql.Identifier(STATISTICS_COLUMN),
            status=sql.Identifier(STATUS_COLUMN),
            source_query=self.source_query,
        )

    @property
    def required_target_columns(self) -> list[str]:
        return [
            *self.key_columns,
            CONTENT_ALIAS,
            RESULT_COLUMN,
            STATISTICS_COLUMN,
            STATUS_COLUMN,
        ]

    @property
    def target_columns_query(self) -> sql.SQL:
        """
        Lists the columns and type oids of the destination, in table order.
        Returns no rows when the destination does not exist.
        """
        return sql.SQL("""
            SELECT a.attname, a.atttypid
            FROM pg_catalog.pg_attribute a
            WHERE a.attrelid = pg_catalog.to_regclass(%s)
            AND a.attnum > 0
            AND NOT a.attisdropped
            ORDER BY a.attnum
        """)

    @property
    def drop_staging_query(self) -> sql.Composed:
        return sql.SQL("DROP TABLE IF EXISTS pg_temp.{}").format(
            sql.Identifier(STAGING_TABLE)
        )

    def create_staging_query(self, limit: int) -> sql.Composed:
        return sql.SQL("CREATE TEMP TABLE {staging} AS {pending}").format(
            staging=sql.Identifier(STAGING_TABLE),
            pending=self.pending_query(limit),
        )

    @property
    def select_staging_query(self) -> sql.Composed:
        return sql.SQL("SELECT * FROM pg_temp.{}").format(
            sql.Identifier(STAGING_TABLE)
        )

    def copy_query(self, columns: Sequence[str]) -> sql.Composed:
        return sql.SQL("COPY {target} ({columns}) FROM STDIN WITH (FORMAT BINARY)").format(
            target=self.target_table_ident,
            columns=sql.SQL(", ").join([sql.Identifier(c) for c in columns]),
        )
