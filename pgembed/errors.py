class PgEmbedError(Exception):
    """Base class for every error raised by pgembed."""


class ConfigurationError(PgEmbedError):
    """
    Raised when the run arguments or the options document are invalid.

    Always raised before any table is touched.
    """


class StoreError(PgEmbedError):
    """
    Raised when a statement against the table store fails.

    The underlying database error is available as ``__cause__``.
    """


class SchemaMismatchError(StoreError):
    """Raised when an existing destination table lacks a required column."""

    def __init__(self, table: str, missing: list[str]):
        self.table = table
        self.missing = missing
        super().__init__(
            f"destination table {table} is missing columns: {', '.join(missing)}"
        )


class BackendInvocationError(PgEmbedError):
    """
    Raised when an embedding backend fails as a whole, rather than per row.
    """

    msg = "embedding backend failed"
