"""
Session stores: legacy chats and notebooks, both as JSON on disk.

Two layouts live side by side:

    chats/<id>/chat.json                  {"messages": [...], "docs": [...]}
    chats/<id>/docsMetadata.json          document manifest
    chats/<id>/docs/<docId>/...           see document_store.ChatDocumentStore

    notebooks/<id>/notebook.json          NotebookMeta
    notebooks/<id>/messages.json          {"messages": [...]}
    notebooks/<id>/{docs,images,videos,outputs}/<file>
    notebooks/<id>/<bucket>/<file>.meta.json | <file>.info.json   sidecars

Every mutation is a whole-file read-modify-write: the current record is
read, one field is replaced, and the whole record is written back with any
fields this code does not know about left as they were. There is no
locking; two writers to the same session can lose each other's update.

Loading a session that does not exist, or whose JSON is corrupted, returns
an empty record instead of raising, so "new" and "existing but empty"
sessions look the same to callers.
"""

import logging
import shutil
from pathlib import Path
from typing import Any

from .errors import InvalidArgument, NotFound
from .files import load_json, safe_file_name, unique_name, write_json
from .providers.documents import media_type
from .types import (
    DEFAULT_CHAT_NAME,
    DEFAULT_NOTEBOOK_TITLE,
    MEDIA_BUCKETS,
    NOTEBOOK_BUCKETS,
    DocumentSummary,
    FileEntry,
    LegacyRecord,
    MediaFile,
    Message,
    NotebookMeta,
    NotebookRecord,
    SessionSummary,
    messages_from_list,
    new_session_id,
    timestamp_to_iso,
    utc_now,
    validate_session_id,
)

logger = logging.getLogger(__name__)

CHAT_FILE = "chat.json"
DOCS_MANIFEST_FILE = "docsMetadata.json"
NOTEBOOK_FILE = "notebook.json"
MESSAGES_FILE = "messages.json"

DOC_SIDECAR_SUFFIX = ".meta.json"
FILE_SIDECAR_SUFFIX = ".info.json"
SIDECAR_SUFFIXES = (DOC_SIDECAR_SUFFIX, FILE_SIDECAR_SUFFIX)

RAG_PLUGIN = "document-rag"


def _is_payload(path: Path) -> bool:
    """True for a bucket file that is neither a sidecar nor a temp file."""
    return (
        path.is_file()
        and not path.name.startswith(".")
        and not path.name.endswith(SIDECAR_SUFFIXES)
    )


def _sort_newest_first(summaries: list[SessionSummary]) -> list[SessionSummary]:
    return sorted(summaries, key=lambda s: s.updated_at or "", reverse=True)


class NameManifest:
    """Top-level ``{session id: display name}`` map for explicitly named chats."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> dict[str, str]:
        data = load_json(self.path, {})
        if not isinstance(data, dict):
            logger.warning("Ignoring malformed name manifest %s", self.path)
            return {}
        return {str(k): str(v) for k, v in data.items()}

    def get(self, id: str) -> str | None:
        return self.load().get(id)

    def set(self, id: str, name: str) -> None:
        names = self.load()
        names[id] = name
        write_json(self.path, names)

    def remove(self, id: str) -> None:
        names = self.load()
        if names.pop(id, None) is not None:
            write_json(self.path, names)


# -----------------------------------------------------------------------------
# Legacy chats
# -----------------------------------------------------------------------------

class ChatSessionStore:
    """Flat legacy chat sessions under ``root``."""

    kind = "chat"

    def __init__(self, root: Path, manifest_path: Path | None = None):
        self.root = Path(root)
        self.manifest = NameManifest(manifest_path or self.root.parent / "chat-names.json")

    def session_dir(self, id: str) -> Path:
        validate_session_id(id)
        return self.root / id

    def exists(self, id: str) -> bool:
        return self.session_dir(id).is_dir()

    def list_ids(self) -> list[str]:
        if not self.root.is_dir():
            return []
        return sorted(p.name for p in self.root.iterdir() if p.is_dir() and not p.name.startswith("."))

    def _read(self, id: str) -> dict[str, Any]:
        data = load_json(self.session_dir(id) / CHAT_FILE, {})
        if isinstance(data, list):
            # Oldest format: the file was just the message array
            return {"messages": data}
        if not isinstance(data, dict):
            logger.warning("Ignoring malformed chat record for %s", id)
            return {}
        return data

    def _write(self, id: str, data: dict[str, Any]) -> None:
        write_json(self.session_dir(id) / CHAT_FILE, data)

    def create(self, name: str | None = None) -> LegacyRecord:
        """Create an empty chat. ``name`` is recorded in the manifest if given."""
        id = new_session_id("chat")
        self.session_dir(id).mkdir(parents=True, exist_ok=False)
        self._write(id, {"messages": [], "docs": []})
        if name:
            self.manifest.set(id, name)
        logger.info("Created chat %s", id)
        return LegacyRecord(id=id)

    def display_name(self, id: str) -> str:
        return self.manifest.get(id) or DEFAULT_CHAT_NAME

    def rename(self, id: str, name: str) -> bool:
        """Set the display name. Returns False if the chat does not exist."""
        name = name.strip()
        if not name:
            raise InvalidArgument("Name must not be empty")
        if not self.exists(id):
            logger.warning("Rename of missing chat %s ignored", id)
            return False
        self.manifest.set(id, name)
        return True

    def load(self, id: str) -> LegacyRecord:
        """Load a chat; a missing or unreadable chat loads as empty."""
        data = self._read(id)
        docs = []
        for entry in data.get("docs") or []:
            try:
                docs.append(DocumentSummary.from_dict(entry))
            except (KeyError, TypeError, AttributeError):
                logger.warning("Skipping malformed doc entry in chat %s: %r", id, entry)
        return LegacyRecord(
            id=id,
            messages=messages_from_list(data.get("messages")),
            docs=docs,
            extra={k: v for k, v in data.items() if k not in ("messages", "docs")},
        )

    def save_messages(self, id: str, messages: list[Message]) -> None:
        """Replace the message list, keeping every other field of chat.json."""
        data = self._read(id)
        data["messages"] = [m.to_dict() for m in messages]
        data.setdefault("docs", [])
        self._write(id, data)

    def update_docs(self, id: str, docs: list[DocumentSummary]) -> None:
        """Replace the document summaries, keeping every other field of chat.json."""
        data = self._read(id)
        data.setdefault("messages", [])
        data["docs"] = [d.to_dict() for d in docs]
        self._write(id, data)

    def delete(self, id: str) -> None:
        """Remove the chat directory and its name. Deleting twice is fine."""
        path = self.session_dir(id)
        if path.exists():
            shutil.rmtree(path)
            logger.info("Deleted chat %s", id)
        self.manifest.remove(id)

    def summary(self, id: str) -> SessionSummary:
        record = self.load(id)
        chat_file = self.session_dir(id) / CHAT_FILE
        updated = timestamp_to_iso(chat_file.stat().st_mtime) if chat_file.exists() else None
        created = record.messages[0].timestamp if record.messages else None
        return SessionSummary(
            id=id,
            title=self.display_name(id),
            kind=self.kind,
            created_at=created or updated,
            updated_at=updated,
            message_count=len(record.messages),
            document_count=len(record.docs),
        )

    def list(self) -> list[SessionSummary]:
        return _sort_newest_first([self.summary(id) for id in self.list_ids()])


# -----------------------------------------------------------------------------
# Notebooks
# -----------------------------------------------------------------------------

class NotebookStore:
    """Notebook sessions under ``root``."""

    kind = "notebook"

    def __init__(self, root: Path, *, max_media_bytes: int = 50 * 1024 * 1024):
        self.root = Path(root)
        self.max_media_bytes = max_media_bytes

    def session_dir(self, id: str) -> Path:
        validate_session_id(id)
        return self.root / id

    def exists(self, id: str) -> bool:
        return (self.session_dir(id) / NOTEBOOK_FILE).exists()

    def list_ids(self) -> list[str]:
        if not self.root.is_dir():
            return []
        return sorted(p.name for p in self.root.iterdir() if p.is_dir() and not p.name.startswith("."))

    def bucket_dir(self, id: str, bucket: str) -> Path:
        if bucket not in NOTEBOOK_BUCKETS:
            raise InvalidArgument(f"Unknown notebook folder: {bucket!r}")
        return self.session_dir(id) / bucket

    # -- metadata ------------------------------------------------------------

    def load_meta(self, id: str) -> NotebookMeta | None:
        """Read notebook.json; None if missing or unreadable."""
        data = load_json(self.session_dir(id) / NOTEBOOK_FILE)
        if not isinstance(data, dict):
            return None
        data = dict(data, id=id)
        try:
            return NotebookMeta.from_dict(data)
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            logger.warning("Ignoring malformed notebook metadata for %s: %s", id, e)
            return None

    def _write_meta(self, meta: NotebookMeta) -> None:
        write_json(self.session_dir(meta.id) / NOTEBOOK_FILE, meta.to_dict())

    def _meta_or_default(self, id: str) -> NotebookMeta:
        meta = self.load_meta(id)
        if meta is None:
            now = utc_now()
            meta = NotebookMeta(id=id, created_at=now, updated_at=now)
        return meta

    def _read_messages(self, id: str) -> dict[str, Any]:
        data = load_json(self.session_dir(id) / MESSAGES_FILE, {})
        if isinstance(data, list):
            return {"messages": data}
        if not isinstance(data, dict):
            logger.warning("Ignoring malformed messages record for %s", id)
            return {}
        return data

    # -- lifecycle -----------------------------------------------------------

    def create(
        self,
        title: str | None = None,
        *,
        description: str = "",
        tags: list[str] | None = None,
        model: str | None = None,
    ) -> NotebookRecord:
        now = utc_now()
        meta = NotebookMeta(
            id=new_session_id("notebook"),
            title=(title or "").strip() or DEFAULT_NOTEBOOK_TITLE,
            description=description,
            created_at=now,
            updated_at=now,
            tags=list(tags or []),
            model=model,
        )
        meta.stats.last_active = now
        record = NotebookRecord(meta=meta)
        self.write_record(record, exist_ok=False)
        logger.info("Created notebook %s (%s)", meta.id, meta.title)
        return record

    def write_record(self, record: NotebookRecord, *, exist_ok: bool = True) -> None:
        """Create the directory layout and write metadata and messages."""
        path = self.session_dir(record.id)
        path.mkdir(parents=True, exist_ok=exist_ok)
        for bucket in NOTEBOOK_BUCKETS:
            (path / bucket).mkdir(exist_ok=True)
        write_json(path / MESSAGES_FILE, {"messages": [m.to_dict() for m in record.messages]})
        self._write_meta(record.meta)

    def load(self, id: str) -> NotebookRecord:
        """Load a notebook; a missing or unreadable one loads as empty.

        Stats are recomputed from what is actually on disk.
        """
        meta = self._meta_or_default(id)
        messages = messages_from_list(self._read_messages(id).get("messages"))
        files = self.list_files(id)
        meta.stats.total_messages = len(messages)
        meta.stats.total_files = len(files["docs"])
        meta.stats.last_active = meta.updated_at or (messages[-1].timestamp if messages else None)
        return NotebookRecord(meta=meta, messages=messages, files=files)

    def delete(self, id: str) -> None:
        """Remove the notebook directory. Deleting twice is fine."""
        path = self.session_dir(id)
        if path.exists():
            shutil.rmtree(path)
            logger.info("Deleted notebook %s", id)

    # -- mutations -----------------------------------------------------------

    def save_messages(self, id: str, messages: list[Message]) -> None:
        """Replace the message list and refresh updatedAt and the counters.

        Raises:
            NotFound: If the notebook does not exist
        """
        if not self.exists(id):
            raise NotFound(f"Notebook not found: {id}")
        data = self._read_messages(id)
        data["messages"] = [m.to_dict() for m in messages]
        write_json(self.session_dir(id) / MESSAGES_FILE, data)

        meta = self._meta_or_default(id)
        meta.updated_at = utc_now()
        meta.stats.total_messages = len(messages)
        meta.stats.last_active = meta.updated_at
        self._write_meta(meta)

    def update(self, id: str, updates: dict[str, Any]) -> NotebookMeta | None:
        """Merge camelCase metadata fields into notebook.json.

        ``id`` is immutable and ignored. Returns None if the notebook does
        not exist.
        """
        meta = self.load_meta(id)
        if meta is None:
            logger.warning("Update of missing notebook %s ignored", id)
            return None
        merged = meta.to_dict()
        merged.update({k: v for k, v in updates.items() if k != "id"})
        merged["updatedAt"] = utc_now()
        meta = NotebookMeta.from_dict(merged)
        self._write_meta(meta)
        return meta

    def rename(self, id: str, name: str) -> bool:
        name = name.strip()
        if not name:
            raise InvalidArgument("Name must not be empty")
        return self.update(id, {"title": name}) is not None

    def update_docs(self, id: str, docs: list[DocumentSummary]) -> None:
        """Record the current document set in the notebook metadata."""
        meta = self._meta_or_default(id)
        enabled = [p for p in meta.plugins.get("enabled", []) if p != RAG_PLUGIN]
        if docs:
            enabled.append(RAG_PLUGIN)
        meta.plugins = dict(meta.plugins, enabled=enabled)
        meta.stats.total_files = len(docs)
        meta.updated_at = utc_now()
        self._write_meta(meta)

    # -- files ---------------------------------------------------------------

    def list_files(self, id: str) -> dict[str, list[FileEntry]]:
        files: dict[str, list[FileEntry]] = {bucket: [] for bucket in NOTEBOOK_BUCKETS}
        for bucket in NOTEBOOK_BUCKETS:
            folder = self.bucket_dir(id, bucket)
            if not folder.is_dir():
                continue
            for path in sorted(folder.iterdir()):
                if not _is_payload(path):
                    continue
                metadata = {}
                for suffix in SIDECAR_SUFFIXES:
                    sidecar = folder / f"{path.name}{suffix}"
                    if sidecar.exists():
                        data = load_json(sidecar, {})
                        if isinstance(data, dict):
                            metadata.update(data)
                files[bucket].append(FileEntry(
                    name=path.name,
                    bucket=bucket,
                    size=path.stat().st_size,
                    metadata=metadata,
                ))
        return files

    def add_file(
        self,
        id: str,
        bucket: str,
        name: str,
        data: bytes,
        *,
        info: dict[str, Any] | None = None,
    ) -> str:
        """Write a payload file; returns the stored (possibly renamed) file name."""
        if not self.exists(id):
            raise NotFound(f"Notebook not found: {id}")
        folder = self.bucket_dir(id, bucket)
        folder.mkdir(parents=True, exist_ok=True)
        stored = unique_name(folder, safe_file_name(name))
        (folder / stored).write_bytes(data)
        if info is not None:
            write_json(folder / f"{stored}{FILE_SIDECAR_SUFFIX}", info)
        return stored

    def add_media(self, id: str, name: str, data: bytes, mime: str | None = None) -> MediaFile:
        """
        Store an image or video in the matching folder.

        Raises:
            InvalidArgument: If the type is not a supported image/video or
                the file is larger than the configured limit
            NotFound: If the notebook does not exist
        """
        file_type = media_type(name, mime)
        if file_type is None:
            raise InvalidArgument(f"Unsupported file type: {name}. Please upload images or videos.")
        if len(data) > self.max_media_bytes:
            limit_mb = self.max_media_bytes // (1024 * 1024)
            raise InvalidArgument(f"File too large. Maximum size is {limit_mb}MB.")

        original = safe_file_name(name)
        media = MediaFile(
            file_name=original,
            original_name=original,
            size=len(data),
            file_type=file_type,
            uploaded_at=utc_now(),
        )
        stored = self.add_file(id, MEDIA_BUCKETS[file_type], original, data, info={
            "originalName": original,
            "size": media.size,
            "fileType": file_type,
            "uploadedAt": media.uploaded_at,
        })
        media.file_name = stored
        self.update(id, {})
        logger.info("Added %s %s to notebook %s", file_type, stored, id)
        return media

    def remove_file(self, id: str, bucket: str, name: str) -> bool:
        """Delete a payload file and its sidecars. Returns False if it was absent."""
        folder = self.bucket_dir(id, bucket)
        name = safe_file_name(name)
        removed = False
        for path in [folder / name] + [folder / f"{name}{s}" for s in SIDECAR_SUFFIXES]:
            if path.exists():
                path.unlink()
                removed = True
        return removed

    def media_path(self, id: str, file_name: str, file_type: str) -> Path | None:
        bucket = MEDIA_BUCKETS.get(file_type)
        if bucket is None:
            raise InvalidArgument(f"Unsupported media type: {file_type!r}")
        path = self.bucket_dir(id, bucket) / safe_file_name(file_name)
        return path if path.is_file() else None

    # -- listing -------------------------------------------------------------

    def summary(self, id: str) -> SessionSummary:
        record = self.load(id)
        meta = record.meta
        return SessionSummary(
            id=id,
            title=meta.title,
            kind=self.kind,
            created_at=meta.created_at or None,
            updated_at=meta.updated_at or None,
            tags=list(meta.tags),
            message_count=meta.stats.total_messages,
            document_count=meta.stats.total_files,
        )

    def list(self) -> list[SessionSummary]:
        return _sort_newest_first([self.summary(id) for id in self.list_ids()])
