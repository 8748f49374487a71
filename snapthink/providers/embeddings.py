"""
Embedding providers and the EmbeddingClient used by the document pipeline.
"""

import logging
from collections.abc import Callable, Iterable

import requests

from ..errors import EmbeddingFailed, ModelUnavailable
from .base import EmbeddingProvider, get_registry
from .ollama_utils import (
    DONE,
    DownloadEvent,
    DownloadJob,
    list_local_models,
    model_installed,
    ollama_base_url,
)

logger = logging.getLogger(__name__)


class OllamaEmbedding:
    """
    Embedding provider using Ollama's local API.

    Respects OLLAMA_HOST env var (default: http://localhost:11434).
    """

    def __init__(
        self,
        model: str = "nomic-embed-text:latest",
        base_url: str | None = None,
        timeout: float = 60,
    ):
        self.model_name = model
        self.base_url = ollama_base_url(base_url)
        self.timeout = timeout

    def embed(self, text: str) -> list[float]:
        """Embed one string with POST /api/embeddings."""
        try:
            response = requests.post(
                f"{self.base_url}/api/embeddings",
                json={"model": self.model_name, "prompt": text},
                timeout=(10, self.timeout),  # (connect, read)
            )
        except requests.RequestException as e:
            raise EmbeddingFailed(
                f"Cannot reach Ollama at {self.base_url} (model={self.model_name}): {e}"
            ) from e

        if not response.ok:
            detail = response.text[:200] if response.text else ""
            raise EmbeddingFailed(
                f"Ollama embedding failed (model={self.model_name}): "
                f"HTTP {response.status_code} from {self.base_url}. {detail}"
            )
        try:
            embedding = response.json().get("embedding")
        except ValueError as e:
            raise EmbeddingFailed(f"Ollama returned invalid JSON: {e}") from e
        if not embedding:
            raise EmbeddingFailed(f"No embedding returned for: {text[:30]!r}")
        return [float(x) for x in embedding]


get_registry().register_embedding("ollama", OllamaEmbedding)


ConsentCallback = Callable[[str], bool]
EventCallback = Callable[[DownloadEvent], None]


class EmbeddingClient:
    """
    Embeds text for the document pipeline and makes sure the model exists.

    Before the first embedding the local model inventory is checked. If the
    model is missing, the ``download`` policy decides what happens:

    - ``"prompt"``: ask ``consent(model)``; pull only if it returns True
    - ``"auto"``: pull without asking
    - ``"never"``: fail with ModelUnavailable

    A pull runs as a DownloadJob owned by this client; its events are
    forwarded to ``on_event`` and it can be stopped with cancel_download().
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        *,
        model: str | None = None,
        download: str = "prompt",
        check_model: bool = True,
        consent: ConsentCallback | None = None,
        on_event: EventCallback | None = None,
        inventory: Callable[[], Iterable] = list_local_models,
        job_factory: Callable[[str], DownloadJob] = DownloadJob,
    ):
        self.provider = provider
        self.model = model or provider.model_name
        self.download_policy = download
        self.consent = consent
        self.on_event = on_event
        self._inventory = inventory
        self._job_factory = job_factory
        self._model_ready = not check_model
        self.download_job: DownloadJob | None = None

    @property
    def downloading(self) -> bool:
        return self.download_job is not None and self.download_job.downloading

    def ensure_model_available(self, model_id: str | None = None) -> None:
        """
        Check the inventory and pull the model if allowed.

        Raises:
            ModelUnavailable: If the model is absent and could not be pulled
        """
        model_id = model_id or self.model
        if self._model_ready and model_id == self.model:
            return

        installed = [getattr(m, "name", m) for m in self._inventory()]
        if model_installed(model_id, installed):
            logger.debug("Embedding model present: %s", model_id)
        else:
            self._download(model_id)

        if model_id == self.model:
            self._model_ready = True

    def _download(self, model_id: str) -> None:
        if self.download_policy == "never":
            raise ModelUnavailable(
                f"Embedding model '{model_id}' is not installed. "
                f"Pull it with: ollama pull {model_id}"
            )
        if self.download_policy == "prompt":
            if self.consent is None or not self.consent(model_id):
                raise ModelUnavailable(
                    f"Download of embedding model '{model_id}' was declined"
                )

        job = self._job_factory(model_id)
        self.download_job = job
        final = None
        try:
            for event in job.run():
                final = event
                if self.on_event is not None:
                    self.on_event(event)
        finally:
            self.download_job = None

        if final is None or final.status != DONE:
            detail = final.detail if final is not None else "no output"
            raise ModelUnavailable(f"Failed to pull '{model_id}': {detail}")

    def cancel_download(self) -> bool:
        """Stop the running pull, if any."""
        job = self.download_job
        if job is None:
            return False
        return job.cancel()

    def embed(self, text: str) -> list[float]:
        """
        Embed one string.

        Raises:
            ModelUnavailable: If the model is missing and could not be pulled
            EmbeddingFailed: If the provider returned no vector
        """
        self.ensure_model_available()
        try:
            return self.provider.embed(text)
        except EmbeddingFailed:
            raise
        except Exception as e:
            raise EmbeddingFailed(f"Embedding failed: {e}") from e

    def embed_batch(self, texts: list[str]) -> list[list[float] | None]:
        """
        Embed texts one at a time, in order.

        A failed item is logged and comes back as None at its own index, so
        the result stays aligned with ``texts``; callers drop the Nones
        together with the matching inputs.

        Raises:
            ModelUnavailable: If the model is missing and could not be pulled
        """
        self.ensure_model_available()
        results: list[list[float] | None] = []
        failed = 0
        for i, text in enumerate(texts):
            try:
                results.append(self.provider.embed(text))
            except Exception as e:
                failed += 1
                logger.warning("Embedding failed for item %d of %d: %s", i + 1, len(texts), e)
                results.append(None)
        if failed:
            logger.info("Embedded %d of %d texts", len(texts) - failed, len(texts))
        return results
