"""
Workspace: one store directory with its sessions, documents and models.

This is the entry point the CLI (and any embedding application) uses. It
resolves configuration, opens both session layouts, and creates the
embedding and completion providers lazily so read-only operations never
touch the network.
"""

import logging
from pathlib import Path
from typing import Optional

from .archive import ImportResult, export_session, import_session
from .config import StoreConfig, get_default_store_path, load_or_create_config
from .document_store import ChatDocumentStore, DocumentStore, NotebookDocumentStore
from .errors import InvalidArgument, NotFound
from .migration import MigrationResult, backup_chats, migrate_all
from .providers.base import CompletionProvider, EmbeddingProvider, get_registry
from .providers.documents import extract_text
from .providers.embeddings import ConsentCallback, EmbeddingClient, EventCallback
from .providers.ollama_utils import DownloadEvent, DownloadJob, ModelInfo, list_local_models
from .rag import RagEngine, question_prompt, summary_prompt
from .session_store import ChatSessionStore, NotebookStore
from .types import (
    Document,
    DocumentSummary,
    LegacyRecord,
    Message,
    NotebookMeta,
    NotebookRecord,
    SessionRecord,
    SessionSummary,
    Source,
    new_message_id,
    utc_now,
)

logger = logging.getLogger(__name__)


class Workspace:
    """
    A snapthink store: legacy chats and notebooks side by side.

    Example:
        ws = Workspace()
        nb = ws.create_notebook("Reading list")
        ws.add_document(nb.id, Path("paper.pdf"))
        answer = ws.ask(nb.id, "What is the main result?")
    """

    def __init__(
        self,
        store_path: Optional[str | Path] = None,
        *,
        config: Optional[StoreConfig] = None,
        embedding_provider: Optional[EmbeddingProvider] = None,
        completion_provider: Optional[CompletionProvider] = None,
        consent: Optional[ConsentCallback] = None,
        on_event: Optional[EventCallback] = None,
        inventory=None,
        job_factory=None,
    ) -> None:
        """
        Open (or create) a store.

        Args:
            store_path: Store directory. Defaults to SNAPTHINK_STORE_PATH or ~/.snapthink
            config: Pre-loaded StoreConfig (skips config discovery)
            embedding_provider: Injected provider (skips the registry)
            completion_provider: Injected provider (skips the registry)
            consent: Asked before pulling a missing embedding model
            on_event: Receives DownloadEvents while a model is pulled
            inventory: Replacement for ``ollama list`` (tests)
            job_factory: Replacement for DownloadJob (tests)
        """
        if config is not None:
            self._config = config
        else:
            path = Path(store_path).expanduser() if store_path is not None else get_default_store_path()
            self._config = load_or_create_config(path)
        self._store_path = self._config.path

        self.chats = ChatSessionStore(self._config.chats_path, self._config.manifest_path)
        self.notebooks = NotebookStore(
            self._config.notebooks_path,
            max_media_bytes=self._config.max_media_mb * 1024 * 1024,
        )

        self._embedding_provider = embedding_provider
        self._completion_provider = completion_provider
        self._embedder: Optional[EmbeddingClient] = None
        self._consent = consent
        self._on_event = on_event
        self._inventory = inventory or list_local_models
        self._job_factory = job_factory or DownloadJob

        from .logging_config import configure_ops_log
        self._ops_log_handler = configure_ops_log(self._store_path)

    @property
    def config(self) -> StoreConfig:
        return self._config

    @property
    def store_path(self) -> Path:
        return self._store_path

    def close(self) -> None:
        """Detach the operations log."""
        if self._ops_log_handler is not None:
            from .logging_config import remove_ops_log
            remove_ops_log(self._ops_log_handler)
            self._ops_log_handler = None

    def __enter__(self) -> "Workspace":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # -- providers -----------------------------------------------------------

    @property
    def embedder(self) -> EmbeddingClient:
        """The EmbeddingClient, created on first use."""
        if self._embedder is None:
            provider = self._embedding_provider
            if provider is None:
                provider = get_registry().create_embedding(
                    self._config.embedding.name,
                    self._config.embedding.params,
                )
            self._embedder = EmbeddingClient(
                provider,
                model=self._config.embedding_model,
                download=self._config.download,
                check_model=self._config.check_model,
                consent=self._consent,
                on_event=self._on_event,
                inventory=self._inventory,
                job_factory=self._job_factory,
            )
        return self._embedder

    @property
    def completion(self) -> CompletionProvider:
        if self._completion_provider is None:
            self._completion_provider = get_registry().create_completion(
                self._config.completion.name,
                self._config.completion.params,
            )
        return self._completion_provider

    # -- session lookup ------------------------------------------------------

    def store_for(self, id: str):
        """The session store holding ``id``.

        Raises:
            NotFound: If neither layout has the session
        """
        if self.notebooks.exists(id):
            return self.notebooks
        if self.chats.exists(id):
            return self.chats
        raise NotFound(f"Session not found: {id}")

    def documents_for(self, id: str, *, embed: bool = False) -> DocumentStore:
        store = self.store_for(id)
        embedder = self.embedder if embed else None
        chunking = self._config.chunking
        cls = NotebookDocumentStore if store is self.notebooks else ChatDocumentStore
        return cls(store, embedder, window_size=chunking.window_size, overlap=chunking.overlap)

    def rag_for(self, id: str, *, answer: bool = False) -> RagEngine:
        return RagEngine(
            self.documents_for(id),
            self.embedder,
            self.completion if answer else None,
            self._config.retrieval,
        )

    # -- sessions ------------------------------------------------------------

    def create_notebook(self, title: str | None = None, **kwargs) -> NotebookRecord:
        return self.notebooks.create(title, **kwargs)

    def create_chat(self, name: str | None = None) -> LegacyRecord:
        return self.chats.create(name)

    def list_sessions(self) -> list[SessionSummary]:
        """Notebooks and legacy chats, most recently updated first."""
        summaries = self.notebooks.list() + self.chats.list()
        return sorted(summaries, key=lambda s: s.updated_at or "", reverse=True)

    def load(self, id: str) -> SessionRecord:
        return self.store_for(id).load(id)

    def title(self, id: str) -> str:
        store = self.store_for(id)
        if store is self.chats:
            return self.chats.display_name(id)
        return store.load(id).meta.title

    def rename(self, id: str, name: str) -> bool:
        return self.store_for(id).rename(id, name)

    def update(self, id: str, fields: dict) -> NotebookMeta | None:
        """Edit notebook metadata (title, description, tags, thumbnail, model ...)."""
        if self.store_for(id) is not self.notebooks:
            raise InvalidArgument(f"Only notebooks have editable metadata: {id}")
        return self.notebooks.update(id, fields)

    def delete(self, id: str) -> None:
        """Delete a session of either kind. Unknown ids are ignored."""
        self.notebooks.delete(id)
        self.chats.delete(id)

    def append_messages(self, id: str, messages: list[Message]) -> list[Message]:
        """Append to a session's history; returns the full history."""
        store = self.store_for(id)
        history = store.load(id).messages + list(messages)
        store.save_messages(id, history)
        return history

    # -- documents and media -------------------------------------------------

    def add_document(self, id: str, path: Path) -> Document:
        """
        Parse, chunk, embed and store a document file.

        Raises:
            NotFound: If the session does not exist
            InvalidArgument: If the file type is unsupported
            ParseError: If no text could be extracted
            ModelUnavailable: If the embedding model is missing and not pulled
        """
        path = Path(path)
        data = path.read_bytes()
        text = extract_text(path.name, data)
        return self.documents_for(id, embed=True).add_document(id, path.name, data, text)

    def list_documents(self, id: str) -> list[DocumentSummary]:
        return self.documents_for(id).list_documents(id)

    def remove_document(self, id: str, doc_id: str) -> bool:
        return self.documents_for(id).remove_document(id, doc_id)

    def add_media(self, id: str, path: Path, mime: str | None = None) -> Message:
        """Store an image or video in a notebook and record it as a user message."""
        if self.store_for(id) is not self.notebooks:
            raise InvalidArgument(f"Media can only be added to notebooks: {id}")
        path = Path(path)
        media = self.notebooks.add_media(id, path.name, path.read_bytes(), mime)
        message = Message(
            role="user",
            content=f"[{media.file_type.upper()}] {media.original_name}",
            id=new_message_id(),
            timestamp=utc_now(),
            media_file=media,
        )
        self.append_messages(id, [message])
        return message

    # -- retrieval -----------------------------------------------------------

    def search(self, id: str, query: str, k: int | None = None) -> list[Source]:
        return self.rag_for(id).search(id, query, k)

    def ask(self, id: str, question: str, k: int | None = None) -> Message:
        """Answer a question from the session's documents and record both turns."""
        history = self.load(id).messages
        question_message = Message(
            role="user",
            content=question_prompt(question),
            id=new_message_id(),
            timestamp=utc_now(),
        )
        answer = self.rag_for(id, answer=True).ask(id, question, history, k)
        answer.id = new_message_id()
        self.append_messages(id, [question_message, answer])
        return answer

    def summarize_document(self, id: str, doc_id: str) -> Message:
        """Auto-summary of one document, recorded in the session history."""
        history = self.load(id).messages
        answer = self.rag_for(id, answer=True).summarize(id, doc_id, history)
        answer.id = new_message_id()
        name = answer.sources[0].file_name if answer.sources else doc_id
        request = Message(
            role="user",
            content=summary_prompt(name),
            id=new_message_id(),
            timestamp=utc_now(),
        )
        self.append_messages(id, [request, answer])
        return answer

    # -- migration and archives ----------------------------------------------

    def migrate(self, *, force: bool = False, backup: Path | None = None) -> MigrationResult:
        """Migrate every legacy chat to a notebook, optionally zipping the chats first."""
        if backup is not None:
            backup_chats(self.chats.root, backup)
        return migrate_all(self.chats, self.notebooks, force=force)

    def export(self, id: str, dest: Path) -> Path:
        return export_session(self.store_for(id), id, dest, title=self.title(id))

    def import_archive(self, archive: Path) -> ImportResult:
        return import_session(archive, self.chats, self.notebooks)

    # -- models --------------------------------------------------------------

    def list_models(self) -> list[ModelInfo]:
        return self._inventory()

    def pull_model(self, model: str) -> DownloadEvent | None:
        """Pull a model, forwarding events to on_event. Returns the final event."""
        final = None
        for event in self._job_factory(model).run():
            final = event
            if self._on_event is not None:
                self._on_event(event)
        return final
