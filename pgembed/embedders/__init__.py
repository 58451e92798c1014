import os

from ..embeddings import Embedder
from ..errors import ConfigurationError
from .ollama import Ollama
from .openai import OpenAI

DEFAULT_PROVIDER = "openai"


def resolve_embedder(ml_model: str) -> Embedder:
    """
    Builds the embedder named by ``ml_model``.

    The name has the form ``provider/model``, e.g.
    ``openai/text-embedding-3-small`` or ``ollama/nomic-embed-text``. A name
    without a provider refers to an OpenAI model.
    """
    provider, sep, model = ml_model.strip().partition("/")
    if not sep:
        provider, model = DEFAULT_PROVIDER, provider
    if not model:
        raise ConfigurationError(f"Invalid ml_model: {ml_model!r}")
    if provider == "openai":
        return OpenAI(implementation="openai", model=model)
    if provider == "ollama":
        return Ollama(
            implementation="ollama", model=model, base_url=os.getenv("OLLAMA_HOST")
        )
    raise ConfigurationError(f"Unknown embedding provider {provider!r} in ml_model")


__all__ = ["OpenAI", "Ollama", "resolve_embedder"]
