import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, TypeAlias

import structlog
from ddtrace.trace import tracer

from .errors import BackendInvocationError
from .ml_options import MlOptions
from .query import CONTENT_ALIAS, RESULT_COLUMN, STATISTICS_COLUMN, STATUS_COLUMN
from .status import SUCCESS_STATUS, is_retryable, terminal_status

logger = structlog.get_logger()

EmbeddingVector: TypeAlias = list[float]
SourceRow: TypeAlias = dict[str, Any]


@dataclass
class Usage:
    """The number of tokens used in an embedding request"""

    prompt_tokens: int
    total_tokens: int


@dataclass
class EmbeddingResponse:
    """A generic embedding response, one vector per input document"""

    embeddings: list[EmbeddingVector]
    usage: Usage


@dataclass
class PreparedDocuments:
    """Documents ready to be sent, with their per-document statistics"""

    documents: list[str]
    token_counts: list[int]
    truncated: list[bool]


@dataclass
class EmbeddingResult:
    """
    The outcome of embedding one source row.

    Attributes:
        row: The source row, passed through unchanged.
        embedding: The vector, or None if the row failed.
        statistics: Provider statistics for the row, if any.
        status: Empty on success, a diagnostic message otherwise.
    """

    row: SourceRow
    embedding: EmbeddingVector | None = None
    statistics: dict[str, Any] | None = None
    status: str = SUCCESS_STATUS

    def to_target_row(self, flatten_json_output: bool = True) -> dict[str, Any]:
        """The destination row: the source columns followed by the results."""
        # Note: deferred import to avoid import overhead
        import numpy as np

        target_row = dict(self.row)
        if flatten_json_output:
            target_row[RESULT_COLUMN] = (
                np.array(self.embedding) if self.embedding is not None else None
            )
            target_row[STATISTICS_COLUMN] = self.statistics
        else:
            target_row[RESULT_COLUMN] = (
                {
                    "embeddings": {
                        "values": self.embedding,
                        "statistics": self.statistics,
                    }
                }
                if self.embedding is not None
                else None
            )
            target_row[STATISTICS_COLUMN] = None
        target_row[STATUS_COLUMN] = self.status
        return target_row


class BatchingError(Exception):
    pass


def batch_indices(
    token_counts: list[int],
    max_documents_per_batch: int,
    max_tokens_per_batch: int | None,
) -> list[tuple[int, int]]:
    """
    Given a list of document token counts, determines how to split them into
    requests, adhering to 'max_documents_per_batch' and
    'max_tokens_per_batch'.

    Returns a list of (start, end) index pairs, one per request.
    """
    batches: list[list[int]] = []
    batch: list[int] = []
    token_count = 0
    for idx, document_tokens in enumerate(token_counts):
        if max_tokens_per_batch is not None and document_tokens > max_tokens_per_batch:
            raise BatchingError(
                f"document length {document_tokens} greater than max_tokens_per_batch {max_tokens_per_batch}"  # noqa
            )
        max_tokens_reached = (
            max_tokens_per_batch is not None
            and token_count + document_tokens > max_tokens_per_batch
        )
        max_documents_reached = len(batch) + 1 > max_documents_per_batch
        if max_tokens_reached or max_documents_reached:
            batches.append(batch)
            batch = []
            token_count = 0
        batch.append(idx)
        token_count += document_tokens
    if batch:
        batches.append(batch)
    return [(idxs[0], idxs[-1] + 1) for idxs in batches]


class Embedder(ABC):
    """
    Abstract base class for an embedding backend.

    ``embed`` returns exactly one ``EmbeddingResult`` per input row. Provider
    failures are reported per row through the result status, as classified
    by ``classify_error``. Any failure ``classify_error`` does not recognize
    is raised as ``BackendInvocationError``.
    """

    async def setup(self) -> None:  # noqa: B027 empty on purpose
        """
        Setup the embedder
        """

    @abstractmethod
    def _max_documents_per_batch(self) -> int:
        """
        The maximum number of documents that can be embedded per API call
        """

    def _max_tokens_per_batch(self) -> int | None:
        """
        The maximum number of tokens that can be embedded per API call
        """
        return None

    @abstractmethod
    async def call_embed_api(
        self, documents: list[str], options: MlOptions
    ) -> EmbeddingResponse:
        """
        Call the embed API
        """

    def check_options(self, options: MlOptions) -> None:  # noqa: B027 empty on purpose
        """
        Rejects backend options this embedder cannot honor.

        Raises:
            ConfigurationError: If an option is unusable with this model.
        """

    def classify_error(self, error: Exception) -> str | None:
        """
        Maps a failed API call to the status of every row in the request.

        Returns None when the error is not a provider error, in which case
        it is raised.
        """
        return None

    async def prepare_documents(self, documents: list[str]) -> PreparedDocuments:
        return PreparedDocuments(
            documents=documents,
            token_counts=[0 for _ in documents],
            truncated=[False for _ in documents],
        )

    def batch_token_counts(self, prepared: PreparedDocuments) -> list[int]:
        """The token counts used to split documents into requests"""
        return prepared.token_counts

    @tracer.wrap()
    async def embed(
        self, rows: list[SourceRow], options: MlOptions
    ) -> list[EmbeddingResult]:
        """
        Embeds the content of each row.

        Args:
            rows (list[SourceRow]): The rows to embed. Each carries its text
                in the ``content`` column.
            options (MlOptions): The backend options of the run.

        Returns:
            list[EmbeddingResult]: One result per row, in input order.
        """
        results = [EmbeddingResult(row=row) for row in rows]
        pending: list[int] = []
        for i, row in enumerate(rows):
            content = row.get(CONTENT_ALIAS)
            if content is None or (isinstance(content, str) and not content.strip()):
                results[i].status = terminal_status(
                    "INVALID_ARGUMENT", "content is null or empty"
                )
            else:
                pending.append(i)

        if not pending:
            return results

        prepared = await self.prepare_documents(
            [str(rows[i][CONTENT_ALIAS]) for i in pending]
        )
        token_counts = self.batch_token_counts(prepared)
        max_tokens_per_batch = self._max_tokens_per_batch()
        if max_tokens_per_batch is not None:
            # a document larger than a whole request can never be sent
            keep = [
                pos
                for pos, count in enumerate(token_counts)
                if count <= max_tokens_per_batch
            ]
            if len(keep) < len(pending):
                for pos, count in enumerate(token_counts):
                    if count > max_tokens_per_batch:
                        results[pending[pos]].status = terminal_status(
                            "INVALID_ARGUMENT",
                            f"document length {count} greater than"
                            f" max_tokens_per_batch {max_tokens_per_batch}",
                        )
                await logger.awarning(
                    "documents too large to embed",
                    documents=len(pending) - len(keep),
                    max_tokens_per_batch=max_tokens_per_batch,
                )
                pending = [pending[pos] for pos in keep]
                token_counts = [token_counts[pos] for pos in keep]
                prepared = PreparedDocuments(
                    documents=[prepared.documents[pos] for pos in keep],
                    token_counts=[prepared.token_counts[pos] for pos in keep],
                    truncated=[prepared.truncated[pos] for pos in keep],
                )
                if not pending:
                    return results

        batches = batch_indices(
            token_counts,
            max_documents_per_batch=self._max_documents_per_batch(),
            max_tokens_per_batch=max_tokens_per_batch,
        )
        num_batches = len(batches)
        embedding_stats = EmbeddingStats()
        total_duration = 0.0

        for batch_num, (start, end) in enumerate(batches, 1):
            await logger.adebug(
                f"Request {batch_num} of {num_batches} initiated",
                documents=end - start,
            )
            start_time = time.perf_counter()
            try:
                response = await self.call_embed_api(
                    prepared.documents[start:end], options
                )
            except Exception as e:
                status = self.classify_error(e)
                if status is None:
                    raise BackendInvocationError() from e
                if is_retryable(status):
                    await logger.awarning(
                        "embedding request failed, rows will be retried",
                        status=status,
                        documents=end - start,
                    )
                else:
                    await logger.aerror(
                        "embedding request failed", status=status, documents=end - start
                    )
                for i in pending[start:end]:
                    results[i].status = status
                continue
            finally:
                total_duration += time.perf_counter() - start_time

            if len(response.embeddings) != end - start:
                raise BackendInvocationError(
                    f"expected {end - start} embeddings, got {len(response.embeddings)}"
                )
            await logger.adebug(
                f"Request {batch_num} of {num_batches} done", usage=response.usage
            )
            for offset, embedding in enumerate(response.embeddings):
                pos = start + offset
                results[pending[pos]].embedding = embedding
                results[pending[pos]].statistics = {
                    "token_count": prepared.token_counts[pos],
                    "truncated": prepared.truncated[pos],
                }

        embedding_stats.add_request_time(total_duration, len(pending))
        await embedding_stats.print_stats()
        return results


class BaseURLMixin:
    """
    A mixin class that provides functionality for managing base URLs.

    Attributes:
        base_url (str | None): The base URL for the API.
    """

    base_url: str | None = None


class ApiKeyMixin:
    """
    A mixin class that provides functionality for managing API keys.

    The key is taken from the value passed to ``set_api_key`` or, failing
    that, from the environment variable named by ``api_key_name``.

    Attributes:
        api_key_name (str): The name of the environment variable holding the key.
    """

    api_key_name: str | None = None
    _api_key_: str | None = None

    @property
    def _api_key(self) -> str:
        """
        Retrieves the API key.

        Raises:
            ValueError: If the API key is neither set nor in the environment.
        """
        if self._api_key_ is None and self.api_key_name is not None:
            self._api_key_ = os.getenv(self.api_key_name)
        if self._api_key_ is None:
            raise ValueError(f"missing API key: {self.api_key_name}")
        return self._api_key_

    def set_api_key(self, api_key: str):
        self._api_key_ = api_key


class EmbeddingStats:
    """
    Singleton class that tracks embedding statistics.

    Attributes:
        total_request_time (float): The total time spent on embedding requests.
        total_documents (int): The total number of documents embedded.
        wall_start (float): The time at which tracking started.
    """

    total_request_time: float
    total_documents: int
    wall_start: float

    def __new__(cls):
        if not hasattr(cls, "_instance"):
            cls._instance = super().__new__(cls)

            cls._instance.total_request_time = 0.0
            cls._instance.total_documents = 0
            cls._instance.wall_start = time.perf_counter()
        return cls._instance

    def add_request_time(self, duration: float, document_count: int):
        self.total_request_time += duration
        self.total_documents += document_count

    def documents_per_second(self) -> float:
        return (
            self.total_documents / self.total_request_time
            if self.total_request_time > 0
            else 0
        )

    async def print_stats(self):
        await logger.adebug(
            "Embedding stats",
            total_request_time=self.total_request_time,
            wall_time=time.perf_counter() - self.wall_start,
            total_documents=self.total_documents,
            documents_per_second=self.documents_per_second(),
        )
