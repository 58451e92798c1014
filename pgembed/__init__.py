__version__ = "0.1.0"

from .errors import (
    BackendInvocationError,
    ConfigurationError,
    PgEmbedError,
    SchemaMismatchError,
    StoreError,
)
from .generate import RunResult, agenerate_embeddings, generate_embeddings
from .tracing import configure_tracing

configure_tracing()

__all__ = [
    "agenerate_embeddings",
    "generate_embeddings",
    "RunResult",
    "PgEmbedError",
    "ConfigurationError",
    "StoreError",
    "SchemaMismatchError",
    "BackendInvocationError",
]
