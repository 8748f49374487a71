"""
Base provider protocols.

These define the interfaces that concrete providers must implement.
Using Protocol for structural subtyping - no explicit inheritance required.
"""

from typing import Protocol, runtime_checkable


# -----------------------------------------------------------------------------
# Embedding Generation
# -----------------------------------------------------------------------------

@runtime_checkable
class EmbeddingProvider(Protocol):
    """
    Generates vector embeddings from text.

    The same model must be used for indexing and querying: vectors from
    different models are not comparable, and usually differ in dimension.

    Example implementation:
        class HashEmbedding:
            model_name = "hash"

            def embed(self, text: str) -> list[float]:
                h = hashlib.md5(text.encode()).digest()
                return [b / 255 for b in h]
    """

    model_name: str

    def embed(self, text: str) -> list[float]:
        """
        Generate an embedding vector for the given text.

        Args:
            text: The text to embed

        Returns:
            A list of floats representing the embedding vector

        Raises:
            EmbeddingFailed: If the provider returned no vector
        """
        ...


# -----------------------------------------------------------------------------
# Chat Completion
# -----------------------------------------------------------------------------

@runtime_checkable
class CompletionProvider(Protocol):
    """
    Produces an assistant reply for a list of chat messages.

    Messages are plain ``{"role", "content"}`` dicts, oldest first.
    """

    model_name: str

    def chat(self, messages: list[dict[str, str]]) -> str:
        """
        Return the assistant's reply text.

        Raises:
            CompletionFailed: If the provider did not answer
        """
        ...


# -----------------------------------------------------------------------------
# Provider Registry
# -----------------------------------------------------------------------------

class ProviderRegistry:
    """
    Registry for discovering and instantiating providers.

    Providers are registered by name and instantiated from configuration,
    so the store's TOML file can name a provider without code changes.

    Example:
        registry = ProviderRegistry()
        registry.register_embedding("ollama", OllamaEmbedding)

        # Later, from config:
        provider = registry.create_embedding("ollama", {"model": "nomic-embed-text"})
    """

    def __init__(self):
        self._embedding_providers: dict[str, type] = {}
        self._completion_providers: dict[str, type] = {}
        self._lazy_loaded = False

    def _ensure_providers_loaded(self) -> None:
        """Import provider modules so they register themselves."""
        if self._lazy_loaded:
            return
        self._lazy_loaded = True
        from . import embeddings, llm  # noqa: F401

    def register_embedding(self, name: str, provider_class: type) -> None:
        """Register an embedding provider class."""
        self._embedding_providers[name] = provider_class

    def register_completion(self, name: str, provider_class: type) -> None:
        """Register a completion provider class."""
        self._completion_providers[name] = provider_class

    @staticmethod
    def _create_provider(kind: str, name: str, providers: dict, params: dict | None):
        """Shared factory logic for all provider types."""
        if name not in providers:
            available = ", ".join(providers.keys()) or "none"
            raise ValueError(
                f"Unknown {kind} provider: '{name}'. "
                f"Available providers: {available}."
            )
        return providers[name](**(params or {}))

    def create_embedding(self, name: str, params: dict | None = None) -> EmbeddingProvider:
        """Create an embedding provider instance."""
        self._ensure_providers_loaded()
        return self._create_provider("embedding", name, self._embedding_providers, params)

    def create_completion(self, name: str, params: dict | None = None) -> CompletionProvider:
        """Create a completion provider instance."""
        self._ensure_providers_loaded()
        return self._create_provider("completion", name, self._completion_providers, params)

    def list_embedding_providers(self) -> list[str]:
        """List registered embedding provider names."""
        self._ensure_providers_loaded()
        return list(self._embedding_providers.keys())

    def list_completion_providers(self) -> list[str]:
        """List registered completion provider names."""
        self._ensure_providers_loaded()
        return list(self._completion_providers.keys())


# Global registry instance
# Concrete providers register themselves on import
_registry = ProviderRegistry()


def get_registry() -> ProviderRegistry:
    """Get the global provider registry."""
    return _registry
