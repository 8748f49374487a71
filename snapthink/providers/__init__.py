"""
Provider implementations for snapthink.

Embedding and completion providers are looked up by name through the
registry; the Ollama providers register themselves on import.
"""

from .base import CompletionProvider, EmbeddingProvider, ProviderRegistry, get_registry

__all__ = [
    "CompletionProvider",
    "EmbeddingProvider",
    "ProviderRegistry",
    "get_registry",
]
