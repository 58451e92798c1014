from collections import Counter
from collections.abc import AsyncIterator, Callable, Sequence
from contextlib import asynccontextmanager
from typing import Any

from typing_extensions import override

from pgembed.embeddings import (
    Embedder,
    EmbeddingResponse,
    EmbeddingResult,
    SourceRow,
    Usage,
)
from pgembed.ml_options import MlOptions
from pgembed.query import (
    CONTENT_ALIAS,
    RESULT_COLUMN,
    STATISTICS_COLUMN,
    STATUS_COLUMN,
    EmbeddingQueryBuilder,
)
from pgembed.status import SUCCESS_STATUS

RESULT_COLUMNS = [RESULT_COLUMN, STATISTICS_COLUMN, STATUS_COLUMN]


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeStore:
    """
    An in-memory TableStore. Source rows are plain dicts, the where clause
    is a Python predicate over them.
    """

    def __init__(
        self,
        queries: EmbeddingQueryBuilder,
        source: list[dict[str, Any]],
        where: Callable[[dict[str, Any]], bool] = lambda _: True,
        target: list[dict[str, Any]] | None = None,
        target_columns: list[str] | None = None,
    ):
        self.queries = queries
        self.source = source
        self.where = where
        self.target = target
        self.columns = target_columns or []
        if target is not None and not self.columns:
            self.columns = self._projected_columns() + RESULT_COLUMNS
        self.materialized: list[int] = []
        self.open_working_sets = 0

    def _projected_columns(self) -> list[str]:
        if self.source:
            return list(self._project(self.source[0]))
        return [*self.queries.key_columns, CONTENT_ALIAS]

    def _project(self, row: dict[str, Any]) -> dict[str, Any]:
        projected = self.queries.projected_columns
        if projected is None:
            out = dict(row)
        else:
            out = {c: row[c] for c in projected}
        out[CONTENT_ALIAS] = row[self.queries.content_column]
        return out

    def key(self, row: dict[str, Any]) -> tuple[Any, ...]:
        return tuple(row[k] for k in self.queries.key_columns)

    def _filtered(self) -> list[dict[str, Any]]:
        return [self._project(r) for r in self.source if self.where(r)]

    async def target_columns(self) -> list[str]:
        return list(self.columns) if self.target is not None else []

    async def fetch_sample(self, limit: int) -> list[SourceRow]:
        return self._filtered()[:limit]

    async def create_target(self, rows: Sequence[dict[str, Any]]) -> int:
        if self.target is None:
            self.target = []
            self.columns = self._projected_columns() + RESULT_COLUMNS
        return await self.insert(rows)

    @asynccontextmanager
    async def materialize_pending(self, limit: int) -> AsyncIterator[list[SourceRow]]:
        assert self.target is not None
        done = {self.key(r) for r in self.target}
        pending = [
            r
            for r in self._filtered()
            if None not in self.key(r) and self.key(r) not in done
        ][:limit]
        self.materialized.append(len(pending))
        self.open_working_sets += 1
        try:
            yield pending
        finally:
            self.open_working_sets -= 1

    async def insert(self, rows: Sequence[dict[str, Any]]) -> int:
        assert self.target is not None
        for row in rows:
            missing = set(row) - set(self.columns)
            assert not missing, f"unknown destination columns {missing}"
        self.target.extend(dict(r) for r in rows)
        return len(rows)

    def target_keys(self) -> list[tuple[Any, ...]]:
        assert self.target is not None
        return [self.key(r) for r in self.target]

    def statuses(self) -> dict[tuple[Any, ...], str]:
        assert self.target is not None
        return {self.key(r): r[STATUS_COLUMN] for r in self.target}


StatusScript = Callable[[SourceRow, int], str]


class ScriptedEmbedder(Embedder):
    """
    Returns a fixed vector per row, with a status chosen by ``script``.

    ``script`` receives the row and how many times its content was embedded
    before, and returns the status of this attempt.
    """

    def __init__(
        self,
        script: StatusScript | None = None,
        dimensions: int = 3,
        on_embed: Callable[[], None] | None = None,
    ):
        self.script = script or (lambda _row, _attempt: SUCCESS_STATUS)
        self.dimensions = dimensions
        self.on_embed = on_embed
        self.calls: list[int] = []
        self.attempts: Counter[str] = Counter()

    @override
    def _max_documents_per_batch(self) -> int:
        return 1000

    @override
    async def call_embed_api(
        self, documents: list[str], options: MlOptions
    ) -> EmbeddingResponse:
        return EmbeddingResponse(
            embeddings=[[float(len(d))] * self.dimensions for d in documents],
            usage=Usage(prompt_tokens=0, total_tokens=0),
        )

    @override
    async def embed(
        self, rows: list[SourceRow], options: MlOptions
    ) -> list[EmbeddingResult]:
        self.calls.append(len(rows))
        if self.on_embed is not None:
            self.on_embed()
        results: list[EmbeddingResult] = []
        for row in rows:
            content = str(row[CONTENT_ALIAS])
            status = self.script(row, self.attempts[content])
            self.attempts[content] += 1
            if status == SUCCESS_STATUS:
                results.append(
                    EmbeddingResult(
                        row=row,
                        embedding=[float(len(content))] * self.dimensions,
                        statistics={"token_count": len(content), "truncated": False},
                    )
                )
            else:
                results.append(EmbeddingResult(row=row, status=status))
        return results


def documents(count: int, start: int = 1) -> list[dict[str, Any]]:
    return [
        {"id": i, "title": f"title {i}", "body": f"document number {i}"}
        for i in range(start, start + count)
    ]
