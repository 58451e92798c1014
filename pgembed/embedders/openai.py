import math
from collections.abc import AsyncIterator
from functools import cached_property
from typing import TYPE_CHECKING, Any, Literal

import ijson  # type: ignore
from pydantic import BaseModel
from typing_extensions import override

from ..embeddings import (
    ApiKeyMixin,
    BaseURLMixin,
    Embedder,
    EmbeddingResponse,
    EmbeddingVector,
    PreparedDocuments,
    Usage,
    logger,
)
from ..errors import ConfigurationError
from ..ml_options import MlOptions
from ..status import retryable_status, terminal_status

if TYPE_CHECKING:
    import openai
    import tiktoken
    from openai import AsyncAPIResponse, resources, types

EMBEDDING_MODEL_CONTEXT_LENGTH = {
    "text-embedding-ada-002": 8191,
    "text-embedding-3-small": 8191,
    "text-embedding-3-large": 8191,
}

# ijson reads the input in chunks of buf_size. The same value is used to
# iterate over the streamed response body. 64KB is the ijson default.
RESPONSE_READ_BUF_SIZE = 64 * 1024

RETRYABLE_HTTP_STATUSES = {408, 409, 429}

HTTP_STATUS_CODES = {
    400: "INVALID_ARGUMENT",
    401: "UNAUTHENTICATED",
    403: "PERMISSION_DENIED",
    404: "NOT_FOUND",
    422: "INVALID_ARGUMENT",
}


class ResponseWithRead:
    def __init__(self, response: "AsyncAPIResponse[types.CreateEmbeddingResponse]"):
        self.iter: AsyncIterator[bytes] = response.iter_bytes(RESPONSE_READ_BUF_SIZE)

    async def read(self, n: int) -> bytes:
        if n == 0:
            return b""
        try:
            return await anext(self.iter)
        except StopAsyncIteration:
            return b""


class OpenAI(ApiKeyMixin, BaseURLMixin, BaseModel, Embedder):
    """
    Embedder that uses OpenAI's API to embed documents into vector representations.

    Attributes:
        implementation (Literal["openai"]): The literal identifier for this
            implementation.
        model (str): The name of the OpenAI model used for embeddings.
        dimensions (int | None): Optional dimensions for the embeddings.
            Overridden by the ``output_dimensionality`` option of a run.
        user (str | None): Optional user identifier for OpenAI API usage.
    """

    implementation: Literal["openai"]
    model: str
    dimensions: int | None = None
    user: str | None = None
    api_key_name: str | None = "OPENAI_API_KEY"

    def _openai_dimensions(self, options: MlOptions) -> "int | openai.NotGiven":
        # Note: deferred import to avoid import overhead
        import openai

        dimensions = options.output_dimensionality or self.dimensions
        if self.model == "text-embedding-ada-002":
            if dimensions not in (None, 1536):
                raise ConfigurationError(
                    "output_dimensionality must be 1536 for text-embedding-ada-002"
                )
            return openai.NOT_GIVEN
        return dimensions if dimensions is not None else openai.NOT_GIVEN

    @cached_property
    def _openai_user(self) -> "str | openai.NotGiven":
        import openai

        return self.user if self.user is not None else openai.NOT_GIVEN

    @cached_property
    def _embedder(self) -> "resources.AsyncEmbeddingsWithStreamingResponse":
        import openai

        return openai.AsyncOpenAI(
            base_url=self.base_url, api_key=self._api_key, max_retries=3
        ).embeddings.with_streaming_response

    @override
    def check_options(self, options: MlOptions) -> None:
        self._openai_dimensions(options)

    @override
    def _max_documents_per_batch(self) -> int:
        return 2048

    @override
    def _max_tokens_per_batch(self) -> int:
        return 300_000

    @override
    def classify_error(self, error: Exception) -> str | None:
        import openai

        if isinstance(error, openai.APIConnectionError):
            # includes timeouts
            return retryable_status(str(error))
        if isinstance(error, openai.APIStatusError):
            if (
                error.status_code in RETRYABLE_HTTP_STATUSES
                or error.status_code >= 500
            ):
                return retryable_status(str(error))
            code = HTTP_STATUS_CODES.get(error.status_code, "UNKNOWN")
            return terminal_status(code, str(error))
        return None

    @override
    async def call_embed_api(
        self, documents: list[str], options: MlOptions
    ) -> EmbeddingResponse:
        embeddings: list[EmbeddingVector] = []
        current_embedding: list[float] = []
        total_tokens = 0
        prompt_tokens = 0
        extra_body: dict[str, Any] | None = options.provider_options or None
        async with self._embedder.create(
            input=documents,
            model=self.model,
            dimensions=self._openai_dimensions(options),
            user=self._openai_user,
            encoding_format="float",
            extra_body=extra_body,
        ) as streaming_response:
            # The response is parsed as a stream: it carries one vector per
            # document and can get large. Both `data.item.embedding` and
            # `usage` are read in a single pass.
            async for prefix, event, value in ijson.parse_async(
                ResponseWithRead(streaming_response),
                use_float=True,
                buf_size=RESPONSE_READ_BUF_SIZE,
            ):
                if prefix == "data.item.embedding" and event == "start_array":
                    current_embedding = []
                if prefix == "data.item.embedding" and event == "end_array":
                    embeddings.append(current_embedding)
                elif prefix == "data.item.embedding.item" and event == "number":
                    current_embedding.append(value)
                elif prefix == "usage.prompt_tokens" and event == "number":
                    prompt_tokens = value
                elif prefix == "usage.total_tokens" and event == "number":
                    total_tokens = value

        return EmbeddingResponse(
            embeddings=embeddings, usage=Usage(prompt_tokens, total_tokens)
        )

    @staticmethod
    def _estimate_token_length(document: str) -> int:
        """
        Estimates token count based on UTF-8 byte length, the way OpenAI
        counts tokens against its per request limit.
        """
        return math.ceil(len(document.encode("utf-8")) * 0.25)

    @override
    def batch_token_counts(self, prepared: PreparedDocuments) -> list[int]:
        return [self._estimate_token_length(d) for d in prepared.documents]

    @override
    async def prepare_documents(self, documents: list[str]) -> PreparedDocuments:
        """
        Truncates every document to the model's context window, so that a
        single long document does not fail its whole request.
        """
        encoder = self._encoder
        context_length = self._context_length
        prepared = await super().prepare_documents(list(documents))
        if encoder is None:
            return prepared
        for i, document in enumerate(prepared.documents):
            tokenized = encoder.encode(document)
            if context_length is not None and len(tokenized) > context_length:
                await logger.awarning(
                    f"document truncated from {len(tokenized)} to {context_length} tokens"  # noqa
                )
                tokenized = tokenized[:context_length]
                prepared.documents[i] = encoder.decode(tokenized)
                prepared.truncated[i] = True
            prepared.token_counts[i] = len(tokenized)
        return prepared

    @cached_property
    def _encoder(self) -> "tiktoken.Encoding | None":
        # Note: deferred import to avoid import overhead
        import tiktoken

        try:
            encoder = tiktoken.encoding_for_model(self.model)
        except KeyError:
            logger.warning(f"Tokenizer for the model {self.model} not found.")
            return None
        return encoder

    @cached_property
    def _context_length(self) -> int | None:
        return EMBEDDING_MODEL_CONTEXT_LENGTH.get(self.model, None)
