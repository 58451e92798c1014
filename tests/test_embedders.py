import httpx
import ollama
import openai
import pytest

from pgembed.embedders import Ollama, OpenAI, resolve_embedder
from pgembed.embeddings import PreparedDocuments
from pgembed.errors import ConfigurationError
from pgembed.generate import agenerate_embeddings
from pgembed.ml_options import MlOptions
from pgembed.status import is_retryable

REQUEST = httpx.Request("POST", "https://api.openai.com/v1/embeddings")


def openai_embedder(**kwargs: object) -> OpenAI:
    return OpenAI(
        implementation="openai",
        model=kwargs.pop("model", "text-embedding-3-small"),  # type: ignore
        **kwargs,  # type: ignore
    )


def status_error(cls: type[openai.APIStatusError], status_code: int):
    return cls(
        f"Error code: {status_code}",
        response=httpx.Response(status_code, request=REQUEST),
        body=None,
    )


@pytest.mark.parametrize(
    "error",
    [
        openai.APIConnectionError(request=REQUEST),
        openai.APITimeoutError(request=REQUEST),
        status_error(openai.RateLimitError, 429),
        status_error(openai.ConflictError, 409),
        status_error(openai.InternalServerError, 500),
        status_error(openai.APIStatusError, 503),
    ],
)
def test_openai_retryable_errors(error: Exception):
    status = openai_embedder().classify_error(error)
    assert status is not None
    assert is_retryable(status)


@pytest.mark.parametrize(
    "error,code",
    [
        (status_error(openai.BadRequestError, 400), "INVALID_ARGUMENT"),
        (status_error(openai.AuthenticationError, 401), "UNAUTHENTICATED"),
        (status_error(openai.PermissionDeniedError, 403), "PERMISSION_DENIED"),
        (status_error(openai.NotFoundError, 404), "NOT_FOUND"),
        (status_error(openai.UnprocessableEntityError, 422), "INVALID_ARGUMENT"),
        (status_error(openai.APIStatusError, 418), "UNKNOWN"),
    ],
)
def test_openai_terminal_errors(error: Exception, code: str):
    status = openai_embedder().classify_error(error)
    assert status is not None
    assert not is_retryable(status)
    assert status.startswith(f"{code}: ")


def test_openai_unknown_errors_are_not_classified():
    assert openai_embedder().classify_error(ValueError("bug")) is None


def test_openai_dimensions():
    embedder = openai_embedder(dimensions=512)
    assert embedder._openai_dimensions(MlOptions()) == 512
    assert embedder._openai_dimensions(MlOptions(output_dimensionality=256)) == 256
    assert openai_embedder()._openai_dimensions(MlOptions()) is openai.NOT_GIVEN


def test_openai_ada_dimensions():
    embedder = openai_embedder(model="text-embedding-ada-002")
    assert embedder._openai_dimensions(MlOptions()) is openai.NOT_GIVEN
    embedder.check_options(MlOptions(output_dimensionality=1536))
    with pytest.raises(ConfigurationError, match="1536"):
        embedder.check_options(MlOptions(output_dimensionality=256))


async def test_unusable_dimensions_fail_before_connecting():
    with pytest.raises(ConfigurationError, match="1536"):
        await agenerate_embeddings(
            "docs",
            "docs_embeddings",
            "openai/text-embedding-ada-002",
            "body",
            ["id"],
            {
                "ml_options": "STRUCT(TRUE AS flatten_json_output,"
                " 256 AS output_dimensionality)"
            },
            db_url="postgresql://localhost:1/unreachable",
        )


def test_openai_batch_token_estimate():
    # The estimator counts a quarter token per utf-8 byte
    prepared = PreparedDocuments(
        documents=["中" * 1000, "apple " * 10, "a"],
        token_counts=[0, 0, 0],
        truncated=[False, False, False],
    )
    assert openai_embedder().batch_token_counts(prepared) == [750, 15, 1]


def test_openai_api_key_from_environment(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    assert openai_embedder()._api_key == "sk-test"


def test_openai_missing_api_key(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    with pytest.raises(ValueError, match="OPENAI_API_KEY"):
        openai_embedder()._api_key  # noqa: B018


def test_openai_explicit_api_key(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    embedder = openai_embedder()
    embedder.set_api_key("sk-explicit")
    assert embedder._api_key == "sk-explicit"


def ollama_embedder(**kwargs: object) -> Ollama:
    return Ollama(
        implementation="ollama",
        model="nomic-embed-text",
        **kwargs,  # type: ignore
    )


def test_ollama_errors():
    embedder = ollama_embedder()
    assert is_retryable(embedder.classify_error(httpx.ConnectError("refused")) or "")
    assert is_retryable(
        embedder.classify_error(ollama.ResponseError("overloaded", 503)) or ""
    )
    assert is_retryable(
        embedder.classify_error(ollama.ResponseError("slow down", 429)) or ""
    )
    assert (
        embedder.classify_error(ollama.ResponseError("model not found", 404))
        == "INVALID_ARGUMENT: model not found"
    )
    assert embedder.classify_error(KeyError("embeddings")) is None


def test_ollama_request_options():
    embedder = ollama_embedder(options={"num_ctx": 512, "seed": 1})
    ml_options = MlOptions.model_validate({"num_ctx": 1024})
    assert embedder._request_options(ml_options) == {"num_ctx": 1024, "seed": 1}
    assert ollama_embedder()._request_options(MlOptions()) is None


def test_ollama_max_documents(monkeypatch: pytest.MonkeyPatch):
    assert ollama_embedder()._max_documents_per_batch() == 2048
    monkeypatch.setenv("PGEMBED_OLLAMA_MAX_CHUNKS_PER_BATCH", "16")
    assert ollama_embedder()._max_documents_per_batch() == 16


def test_resolve_embedder(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("OLLAMA_HOST", "http://ollama:11434")

    embedder = resolve_embedder("openai/text-embedding-3-large")
    assert isinstance(embedder, OpenAI)
    assert embedder.model == "text-embedding-3-large"

    embedder = resolve_embedder("text-embedding-3-small")
    assert isinstance(embedder, OpenAI)
    assert embedder.model == "text-embedding-3-small"

    embedder = resolve_embedder("ollama/nomic-embed-text")
    assert isinstance(embedder, Ollama)
    assert embedder.model == "nomic-embed-text"
    assert embedder.base_url == "http://ollama:11434"


@pytest.mark.parametrize("ml_model", ["cohere/embed-english-v3.0", "openai/", ""])
def test_resolve_embedder_rejects(ml_model: str):
    with pytest.raises(ConfigurationError):
        resolve_embedder(ml_model)
