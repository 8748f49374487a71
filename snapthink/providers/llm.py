"""
Chat completion providers.
"""

import requests

from ..errors import CompletionFailed
from .base import get_registry
from .ollama_utils import ollama_base_url


class OllamaChat:
    """
    Completion provider using Ollama's local API.

    Respects OLLAMA_HOST env var (default: http://localhost:11434).
    """

    def __init__(
        self,
        model: str = "llama3:8b",
        base_url: str | None = None,
        timeout: float = 300,
    ):
        self.model_name = model
        self.base_url = ollama_base_url(base_url)
        self.timeout = timeout

    def chat(self, messages: list[dict[str, str]]) -> str:
        """Send the conversation to POST /api/chat and return the reply text."""
        try:
            response = requests.post(
                f"{self.base_url}/api/chat",
                json={
                    "model": self.model_name,
                    "messages": messages,
                    "stream": False,
                },
                timeout=(10, self.timeout),  # (connect, read)
            )
        except requests.RequestException as e:
            raise CompletionFailed(
                f"Cannot reach Ollama at {self.base_url} (model={self.model_name}): {e}"
            ) from e

        if not response.ok:
            detail = response.text[:200] if response.text else ""
            raise CompletionFailed(
                f"Ollama chat failed (model={self.model_name}): "
                f"HTTP {response.status_code} from {self.base_url}. {detail}"
            )
        try:
            return response.json()["message"]["content"].strip()
        except (ValueError, KeyError, TypeError) as e:
            raise CompletionFailed(f"Unexpected Ollama chat response: {e}") from e


get_registry().register_completion("ollama", OllamaChat)
