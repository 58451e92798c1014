import structlog

from .embeddings import Embedder
from .errors import SchemaMismatchError
from .ml_options import MlOptions
from .query import PROBE_SIZE, EmbeddingQueryBuilder
from .status import accept
from .store import TableStore

logger = structlog.get_logger()


class TargetInitializer:
    """
    Makes sure the destination table exists before the first iteration.

    A missing destination is created from a small probe of the source: the
    probe is embedded, and its accepted rows both define the destination's
    columns and become its first rows. An existing destination is left as
    it is, but must carry the key, content and result columns.
    """

    def __init__(
        self,
        store: TableStore,
        embedder: Embedder,
        queries: EmbeddingQueryBuilder,
        ml_options: MlOptions,
        probe_size: int = PROBE_SIZE,
    ):
        self.store = store
        self.embedder = embedder
        self.queries = queries
        self.ml_options = ml_options
        self.probe_size = probe_size

    async def initialize(self) -> int:
        """
        Returns:
            int: The number of probe rows written, 0 if the destination
            already existed.

        Raises:
            SchemaMismatchError: If the existing destination lacks a
                required column.
        """
        existing = await self.store.target_columns()
        if existing:
            missing = [
                c for c in self.queries.required_target_columns if c not in existing
            ]
            if missing:
                raise SchemaMismatchError(".".join(self.queries.target), missing)
            await logger.adebug("destination table exists", columns=len(existing))
            return 0

        probe = await self.store.fetch_sample(self.probe_size)
        results = await self.embedder.embed(probe, self.ml_options)
        accepted = [
            r.to_target_row(self.ml_options.flatten_json_output)
            for r in results
            if accept(r)
        ]
        inserted = await self.store.create_target(accepted)
        await logger.ainfo(
            "created destination table",
            target=".".join(self.queries.target),
            probe_rows=len(probe),
            inserted=inserted,
        )
        return inserted
