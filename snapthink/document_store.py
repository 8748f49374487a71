"""
Document pipeline: chunk, embed and persist uploads per session.

A document is stored as three things: the original bytes, the ordered
chunk texts, and one embedding per chunk. Chunks and embeddings are always
parallel arrays; a chunk whose embedding failed is dropped together with
its (missing) vector, so a document may keep fewer chunks than the chunker
produced.

The two session layouts store these differently:

    chats/<id>/docs/<docId>/file.<ext>      original bytes
    chats/<id>/docs/<docId>/chunks.json     ["chunk", ...]
    chats/<id>/docs/<docId>/embeddings.json [{"chunk", "embedding"}, ...]
    chats/<id>/docsMetadata.json            [{id, name, ext, size, uploadedAt}, ...]

    notebooks/<id>/docs/<name>              original bytes
    notebooks/<id>/docs/<name>.meta.json    {id, name, ext, size, uploadedAt,
                                             fileName, chunks, embeddings}

Readers never trust a manifest entry on its own: missing or malformed
artifact files read as "no data" (None) and are logged, not raised.
"""

import logging
import shutil
import uuid
from pathlib import Path

from .chunker import DEFAULT_OVERLAP, DEFAULT_WINDOW_SIZE, chunk_text
from .errors import InvalidArgument, ModelUnavailable, NotFound, ParseError
from .files import load_json, read_json, safe_file_name, unique_name, write_json
from .providers.documents import file_extension
from .providers.embeddings import EmbeddingClient
from .session_store import (
    DOC_SIDECAR_SUFFIX,
    DOCS_MANIFEST_FILE,
    ChatSessionStore,
    NotebookStore,
)
from .types import Document, DocumentSummary, normalize_embeddings, utc_now

logger = logging.getLogger(__name__)

CHUNKS_FILE = "chunks.json"
EMBEDDINGS_FILE = "embeddings.json"


class DocumentStore:
    """
    Shared upload pipeline. Subclasses decide where the artifacts go.

    ``embedder`` may be None for read-only use (listing, loading, removing);
    add_document() then fails with ModelUnavailable.
    """

    def __init__(
        self,
        sessions,
        embedder: EmbeddingClient | None = None,
        *,
        window_size: int = DEFAULT_WINDOW_SIZE,
        overlap: int = DEFAULT_OVERLAP,
    ):
        self.sessions = sessions
        self.embedder = embedder
        self.window_size = window_size
        self.overlap = overlap

    def docs_dir(self, session_id: str) -> Path:
        return self.sessions.session_dir(session_id) / "docs"

    def add_document(self, session_id: str, name: str, data: bytes, parsed_text: str) -> Document:
        """
        Store an upload and index its text.

        The model is checked (and pulled, if policy allows) before anything
        is written. The original bytes are written once, then the text is
        chunked and embedded chunk by chunk. Chunks whose embedding failed
        are dropped; the rest are persisted as parallel arrays and the
        session's document list is updated.

        Args:
            session_id: Owning session
            name: Original file name
            data: Original file bytes, stored as-is
            parsed_text: Extracted text to chunk and embed

        Returns:
            The stored Document (possibly with fewer chunks than produced)

        Raises:
            NotFound: If the session does not exist
            InvalidArgument: If the name or chunking parameters are invalid
            ModelUnavailable: If no embedder is configured or the model is
                missing and could not be pulled
        """
        if not self.sessions.exists(session_id):
            raise NotFound(f"Session not found: {session_id}")
        name = safe_file_name(name)
        chunks = chunk_text(parsed_text, self.window_size, self.overlap)

        if self.embedder is None:
            raise ModelUnavailable("No embedding model configured")
        self.embedder.ensure_model_available()

        doc = Document(
            id=str(uuid.uuid4()),
            name=name,
            ext=file_extension(name),
            size=len(data),
            uploaded_at=utc_now(),
        )
        location = self._write_original(session_id, doc, data)
        try:
            vectors = self.embedder.embed_batch(chunks)
            kept = [(c, v) for c, v in zip(chunks, vectors) if v is not None]
            doc.chunks = [c for c, _ in kept]
            doc.embeddings = [v for _, v in kept]
            if len(kept) < len(chunks):
                logger.warning(
                    "%s: %d of %d chunks failed to embed and were dropped",
                    name, len(chunks) - len(kept), len(chunks),
                )
            self._write_artifacts(session_id, doc, location)
        except BaseException:
            self._discard(session_id, doc, location)
            raise

        self.sessions.update_docs(session_id, self.list_documents(session_id))
        logger.info(
            "Added document %s (%s) to %s: %d chunks", doc.id, name, session_id, len(doc.chunks)
        )
        return doc

    def load_corpus(self, session_id: str) -> list[Document]:
        """Every readable, embedded document of a session, in list order."""
        corpus = []
        for summary in self.list_documents(session_id):
            doc = self.load_document(session_id, summary.id)
            if doc is None:
                continue
            if not doc.is_embedded:
                logger.debug("Document %s has no embeddings; not searchable", doc.id)
                continue
            corpus.append(doc)
        return corpus

    # -- layout hooks --------------------------------------------------------

    def _write_original(self, session_id: str, doc: Document, data: bytes) -> Path:
        raise NotImplementedError

    def _write_artifacts(self, session_id: str, doc: Document, location: Path) -> None:
        raise NotImplementedError

    def _discard(self, session_id: str, doc: Document, location: Path) -> None:
        raise NotImplementedError

    def load_document(self, session_id: str, doc_id: str) -> Document | None:
        raise NotImplementedError

    def list_documents(self, session_id: str) -> list[DocumentSummary]:
        raise NotImplementedError

    def remove_document(self, session_id: str, doc_id: str) -> bool:
        raise NotImplementedError

    def document_path(self, session_id: str, doc_id: str) -> Path | None:
        raise NotImplementedError


def _check_doc_id(doc_id: str) -> None:
    if not doc_id or safe_file_name(doc_id) != doc_id:
        raise InvalidArgument(f"Invalid document id: {doc_id!r}")


class ChatDocumentStore(DocumentStore):
    """Documents of legacy chats: one directory per document."""

    def __init__(self, sessions: ChatSessionStore, embedder: EmbeddingClient | None = None, **kwargs):
        super().__init__(sessions, embedder, **kwargs)

    def _manifest_path(self, session_id: str) -> Path:
        return self.sessions.session_dir(session_id) / DOCS_MANIFEST_FILE

    def _read_manifest(self, session_id: str) -> list[dict]:
        entries = load_json(self._manifest_path(session_id))
        if entries is None:
            # Older chats kept the list only inside chat.json
            return [d.to_dict() for d in self.sessions.load(session_id).docs]
        if not isinstance(entries, list):
            logger.warning("Ignoring malformed %s in %s", DOCS_MANIFEST_FILE, session_id)
            return []
        return [e for e in entries if isinstance(e, dict) and e.get("id")]

    def _write_manifest(self, session_id: str, entries: list[dict]) -> None:
        write_json(self._manifest_path(session_id), entries)

    def _write_original(self, session_id, doc, data):
        folder = self.docs_dir(session_id) / doc.id
        folder.mkdir(parents=True, exist_ok=False)
        (folder / f"file.{doc.ext or 'bin'}").write_bytes(data)
        return folder

    def _write_artifacts(self, session_id, doc, location):
        write_json(location / CHUNKS_FILE, doc.chunks)
        write_json(location / EMBEDDINGS_FILE, doc.embedding_records())
        entries = self._read_manifest(session_id)
        entries.append({
            "id": doc.id,
            "name": doc.name,
            "ext": doc.ext,
            "size": doc.size,
            "uploadedAt": doc.uploaded_at,
        })
        self._write_manifest(session_id, entries)

    def _discard(self, session_id, doc, location):
        shutil.rmtree(location, ignore_errors=True)

    def list_documents(self, session_id: str) -> list[DocumentSummary]:
        return [DocumentSummary.from_dict(e) for e in self._read_manifest(session_id)]

    def document_path(self, session_id: str, doc_id: str) -> Path | None:
        _check_doc_id(doc_id)
        folder = self.docs_dir(session_id) / doc_id
        if not folder.is_dir():
            return None
        for path in sorted(folder.glob("file.*")):
            return path
        return None

    def load_document(self, session_id: str, doc_id: str) -> Document | None:
        """Read a document's artifacts; None if they are missing or corrupted."""
        _check_doc_id(doc_id)
        folder = self.docs_dir(session_id) / doc_id
        entry = next((e for e in self._read_manifest(session_id) if e["id"] == doc_id), None)
        if entry is None and not folder.is_dir():
            return None
        entry = dict(entry or {"id": doc_id})

        try:
            chunks = read_json(folder / CHUNKS_FILE)
            raw_embeddings = read_json(folder / EMBEDDINGS_FILE)
        except FileNotFoundError:
            logger.warning("Document %s in %s has no chunk/embedding files", doc_id, session_id)
            return None
        except ParseError as e:
            logger.warning("Document %s in %s is unreadable: %s", doc_id, session_id, e)
            return None

        if not isinstance(chunks, list):
            logger.warning("Document %s in %s has malformed chunks", doc_id, session_id)
            return None
        original = self.document_path(session_id, doc_id)
        if original is None:
            logger.warning("Original file for document %s in %s is missing", doc_id, session_id)
        elif not entry.get("ext"):
            entry["ext"] = original.suffix.lstrip(".")

        try:
            texts, vectors = normalize_embeddings(raw_embeddings)
            entry["chunks"] = texts if texts is not None else chunks
            entry["embeddings"] = vectors
            return Document.from_dict(entry)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Document %s in %s is unreadable: %s", doc_id, session_id, e)
            return None

    def remove_document(self, session_id: str, doc_id: str) -> bool:
        """Delete a document and its artifacts. Returns False if it was absent."""
        _check_doc_id(doc_id)
        folder = self.docs_dir(session_id) / doc_id
        entries = self._read_manifest(session_id)
        remaining = [e for e in entries if e["id"] != doc_id]
        found = folder.exists() or len(remaining) != len(entries)
        if folder.exists():
            shutil.rmtree(folder)
        if len(remaining) != len(entries):
            self._write_manifest(session_id, remaining)
        if found:
            self.sessions.update_docs(session_id, self.list_documents(session_id))
            logger.info("Removed document %s from %s", doc_id, session_id)
        return found


class NotebookDocumentStore(DocumentStore):
    """Documents of notebooks: the upload itself plus a sidecar in docs/."""

    def __init__(self, sessions: NotebookStore, embedder: EmbeddingClient | None = None, **kwargs):
        super().__init__(sessions, embedder, **kwargs)

    def _sidecars(self, session_id: str) -> list[tuple[Path, dict]]:
        folder = self.docs_dir(session_id)
        if not folder.is_dir():
            return []
        found = []
        for sidecar in folder.glob(f"*{DOC_SIDECAR_SUFFIX}"):
            data = load_json(sidecar)
            if not isinstance(data, dict) or not data.get("id"):
                logger.warning("Ignoring malformed document sidecar %s", sidecar)
                continue
            found.append((sidecar, data))
        found.sort(key=lambda item: (item[1].get("uploadedAt") or "", item[0].name))
        return found

    def _find(self, session_id: str, doc_id: str) -> tuple[Path, dict] | None:
        for sidecar, data in self._sidecars(session_id):
            if data["id"] == doc_id:
                return sidecar, data
        return None

    @staticmethod
    def _payload_for(sidecar: Path, data: dict) -> Path:
        stored = data.get("fileName") or sidecar.name[: -len(DOC_SIDECAR_SUFFIX)]
        return sidecar.parent / safe_file_name(stored)

    def _write_original(self, session_id, doc, data):
        folder = self.docs_dir(session_id)
        folder.mkdir(parents=True, exist_ok=True)
        path = folder / unique_name(folder, doc.name)
        path.write_bytes(data)
        return path

    def _write_artifacts(self, session_id, doc, location):
        record = doc.to_dict()
        record["fileName"] = location.name
        write_json(location.parent / f"{location.name}{DOC_SIDECAR_SUFFIX}", record)

    def _discard(self, session_id, doc, location):
        location.unlink(missing_ok=True)
        (location.parent / f"{location.name}{DOC_SIDECAR_SUFFIX}").unlink(missing_ok=True)

    def list_documents(self, session_id: str) -> list[DocumentSummary]:
        return [DocumentSummary.from_dict(data) for _, data in self._sidecars(session_id)]

    def document_path(self, session_id: str, doc_id: str) -> Path | None:
        found = self._find(session_id, doc_id)
        if found is None:
            return None
        path = self._payload_for(*found)
        return path if path.is_file() else None

    def load_document(self, session_id: str, doc_id: str) -> Document | None:
        """Read a document from its sidecar; None if absent or unreadable."""
        found = self._find(session_id, doc_id)
        if found is None:
            return None
        sidecar, data = found
        if not self._payload_for(sidecar, data).is_file():
            logger.warning("Original file for document %s in %s is missing", doc_id, session_id)
        try:
            return Document.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Document %s in %s is unreadable: %s", doc_id, session_id, e)
            return None

    def remove_document(self, session_id: str, doc_id: str) -> bool:
        """Delete a document and its sidecar. Returns False if it was absent."""
        found = self._find(session_id, doc_id)
        if found is None:
            return False
        sidecar, data = found
        self._payload_for(sidecar, data).unlink(missing_ok=True)
        sidecar.unlink(missing_ok=True)
        self.sessions.update_docs(session_id, self.list_documents(session_id))
        logger.info("Removed document %s from %s", doc_id, session_id)
        return True
