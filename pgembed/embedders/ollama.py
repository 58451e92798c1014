import os
from collections.abc import Sequence
from typing import Any, Literal

from pydantic import BaseModel
from typing_extensions import TypedDict, override

from ..embeddings import BaseURLMixin, Embedder, EmbeddingResponse, Usage, logger
from ..ml_options import MlOptions
from ..status import retryable_status, terminal_status

RETRYABLE_HTTP_STATUSES = {408, 429}


# Note: this is a re-declaration of ollama.Options, which we are forced to do
# otherwise pydantic complains (ollama.Options subclasses typing.TypedDict):
# pydantic.errors.PydanticUserError: Please use `typing_extensions.TypedDict` instead of `typing.TypedDict` on Python < 3.12. # noqa
class OllamaOptions(TypedDict, total=False):
    # load time options
    numa: bool
    num_ctx: int
    num_batch: int
    num_gpu: int
    main_gpu: int
    low_vram: bool
    f16_kv: bool
    logits_all: bool
    vocab_only: bool
    use_mmap: bool
    use_mlock: bool
    embedding_only: bool
    num_thread: int

    # runtime options
    num_keep: int
    seed: int
    num_predict: int
    top_k: int
    top_p: float
    tfs_z: float
    typical_p: float
    repeat_last_n: int
    temperature: float
    repeat_penalty: float
    presence_penalty: float
    frequency_penalty: float
    mirostat: int
    mirostat_tau: float
    mirostat_eta: float
    penalize_newline: bool
    stop: Sequence[str]


class Ollama(BaseModel, BaseURLMixin, Embedder):
    """
    Embedder that uses Ollama to embed documents into vector representations.

    Attributes:
        implementation (Literal["ollama"]): The literal identifier for this
            implementation.
        model (str): The name of the Ollama model used for embeddings.
        options (dict): Additional ollama-specific runtime options. The
            provider options of a run are merged over them.
        keep_alive (str): How long to keep the model loaded after the request
    """

    implementation: Literal["ollama"]
    model: str
    base_url: str | None = None
    options: OllamaOptions | None = None
    keep_alive: str | None = None

    @override
    def _max_documents_per_batch(self) -> int:
        # Note: the chosen default is arbitrary - Ollama doesn't place a limit
        return int(
            os.getenv("PGEMBED_OLLAMA_MAX_CHUNKS_PER_BATCH", default="2048")
        )

    @override
    async def setup(self):
        # Note: deferred import to avoid import overhead
        import ollama

        client = ollama.AsyncClient(host=self.base_url)
        try:
            await client.show(self.model)
        except ollama.ResponseError as e:
            if f"model '{self.model}' not found" in e.error:
                await logger.awarning(
                    f"pulling ollama model '{self.model}', this may take a while"
                )
                await client.pull(self.model)

    @override
    def classify_error(self, error: Exception) -> str | None:
        import httpx
        import ollama

        if isinstance(error, httpx.TransportError):
            return retryable_status(str(error))
        if isinstance(error, ollama.ResponseError):
            if error.status_code in RETRYABLE_HTTP_STATUSES or error.status_code >= 500:
                return retryable_status(error.error)
            return terminal_status("INVALID_ARGUMENT", error.error)
        return None

    def _request_options(self, options: MlOptions) -> dict[str, Any] | None:
        merged: dict[str, Any] = {**(self.options or {}), **options.provider_options}
        return merged or None

    @override
    async def call_embed_api(
        self, documents: list[str], options: MlOptions
    ) -> EmbeddingResponse:
        # Note: deferred import to avoid import overhead
        import ollama

        if options.output_dimensionality is not None:
            await logger.awarning(
                "output_dimensionality is not supported by ollama, ignoring it"
            )
        response = await ollama.AsyncClient(host=self.base_url).embed(
            model=self.model,
            input=documents,
            options=self._request_options(options),
            keep_alive=self.keep_alive,
        )
        usage = Usage(
            prompt_tokens=response["prompt_eval_count"] or 0,
            total_tokens=response["prompt_eval_count"] or 0,
        )
        return EmbeddingResponse(
            embeddings=[list(e) for e in response["embeddings"]], usage=usage
        )
