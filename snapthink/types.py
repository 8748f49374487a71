"""
Data types for sessions, messages, documents and media.

On-disk records use the camelCase keys the desktop app has always written
(``uploadedAt``, ``mediaFile``, ``fileName`` ...). The dataclasses here use
Python names and convert at the ``to_dict``/``from_dict`` boundary. Keys a
dataclass does not know about are kept in ``extra`` and written back
untouched.
"""

import logging
import random
import re
import string
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Union

from .errors import InvalidArgument

logger = logging.getLogger(__name__)


ROLES = frozenset({"user", "assistant", "system"})
MEDIA_TYPES = ("image", "video")

# Notebook payload folders, keyed by bucket name
NOTEBOOK_BUCKETS = ("docs", "images", "videos", "outputs")
MEDIA_BUCKETS = {"image": "images", "video": "videos"}

DEFAULT_CHAT_NAME = "New Chat"
DEFAULT_NOTEBOOK_TITLE = "Untitled Notebook"

# Session ids double as directory names
_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")

_THINK_RE = re.compile(r"<think>(.*?)</think>", re.DOTALL | re.IGNORECASE)


def utc_now() -> str:
    """Current UTC timestamp, ISO-8601 with milliseconds and a ``Z`` suffix.

    Matches the format the desktop app writes, so old and new records sort
    together as strings.
    """
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def parse_utc_timestamp(ts: str) -> datetime:
    """Parse a stored timestamp string to a timezone-aware UTC datetime.

    Handles the ``Z`` suffix, explicit offsets, and naive timestamps
    (assumed UTC).
    """
    ts = ts.replace("Z", "+00:00")
    dt = datetime.fromisoformat(ts)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def timestamp_to_iso(seconds: float) -> str:
    """Format a POSIX timestamp in the canonical stored format."""
    dt = datetime.fromtimestamp(seconds, tz=timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


_id_lock = threading.Lock()
_last_id_ms = 0


def _monotonic_ms() -> int:
    """Wall-clock milliseconds, forced strictly increasing within the process."""
    global _last_id_ms
    with _id_lock:
        now = int(time.time() * 1000)
        if now <= _last_id_ms:
            now = _last_id_ms + 1
        _last_id_ms = now
        return now


def new_session_id(prefix: str = "notebook") -> str:
    """Generate ``<prefix>-<ms>-<9 random base36 chars>``."""
    alphabet = string.ascii_lowercase + string.digits
    suffix = "".join(random.choices(alphabet, k=9))
    return f"{prefix}-{_monotonic_ms()}-{suffix}"


def new_message_id() -> str:
    return f"msg-{_monotonic_ms()}"


def validate_session_id(id: str) -> None:
    """Reject ids that are not safe to use as a single directory name."""
    if not isinstance(id, str) or not _SESSION_ID_RE.match(id) or id in (".", ".."):
        raise InvalidArgument(f"Invalid session id: {id!r}")


def split_thinking(content: str) -> tuple[str | None, str]:
    """Separate ``<think>...</think>`` blocks from the visible answer.

    Returns (thinking, answer). ``thinking`` is None when there is no block.
    """
    blocks = [m.strip() for m in _THINK_RE.findall(content)]
    if not blocks:
        return None, content
    return "\n\n".join(blocks), _THINK_RE.sub("", content).strip()


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

@dataclass
class Source:
    """A snippet cited by a RAG answer."""
    text: str
    index: int
    file_name: str = "Uploaded Document"
    score: float | None = None

    def to_dict(self) -> dict:
        d = {"text": self.text, "index": self.index, "fileName": self.file_name}
        if self.score is not None:
            d["score"] = self.score
        return d

    @classmethod
    def from_dict(cls, data: dict) -> "Source":
        return cls(
            text=data.get("text", ""),
            index=int(data.get("index", 0)),
            file_name=data.get("fileName") or "Uploaded Document",
            score=data.get("score"),
        )


@dataclass
class MediaFile:
    """An image or video attached to a notebook."""
    file_name: str
    original_name: str
    size: int
    file_type: str
    uploaded_at: str | None = None

    def __post_init__(self):
        if self.file_type not in MEDIA_TYPES:
            raise InvalidArgument(f"Unsupported media type: {self.file_type!r}")

    def to_dict(self) -> dict:
        d = {
            "fileName": self.file_name,
            "originalName": self.original_name,
            "fileType": self.file_type,
            "size": self.size,
        }
        if self.uploaded_at:
            d["uploadedAt"] = self.uploaded_at
        return d

    @classmethod
    def from_dict(cls, data: dict) -> "MediaFile":
        return cls(
            file_name=data["fileName"],
            original_name=data.get("originalName") or data["fileName"],
            size=int(data.get("size", 0)),
            file_type=data.get("fileType", ""),
            uploaded_at=data.get("uploadedAt"),
        )


_MESSAGE_KEYS = ("id", "role", "content", "timestamp", "sources", "mediaFile")


@dataclass
class Message:
    """One turn of a conversation. Ordering within a session is conversation order."""
    role: str
    content: str
    id: str | None = None
    timestamp: str | None = None
    sources: list[Source] | None = None
    media_file: MediaFile | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.role not in ROLES:
            raise InvalidArgument(f"Invalid message role: {self.role!r}")

    @property
    def thinking(self) -> str | None:
        return split_thinking(self.content)[0]

    @property
    def answer(self) -> str:
        """Content with any thinking block removed."""
        return split_thinking(self.content)[1]

    def to_dict(self) -> dict:
        d: dict[str, Any] = {}
        if self.id is not None:
            d["id"] = self.id
        d["role"] = self.role
        d["content"] = self.content
        if self.timestamp is not None:
            d["timestamp"] = self.timestamp
        if self.sources is not None:
            d["sources"] = [s.to_dict() for s in self.sources]
        if self.media_file is not None:
            d["mediaFile"] = self.media_file.to_dict()
        d.update(self.extra)
        return d

    @classmethod
    def from_dict(cls, data: dict) -> "Message":
        if not isinstance(data, dict) or "role" not in data:
            raise InvalidArgument(f"Not a message record: {data!r:.80}")
        sources = data.get("sources")
        media = data.get("mediaFile")
        return cls(
            role=data["role"],
            content=data.get("content") or "",
            id=data.get("id"),
            timestamp=data.get("timestamp"),
            sources=(
                [Source.from_dict(s) for s in sources if isinstance(s, dict)]
                if isinstance(sources, list) else None
            ),
            media_file=MediaFile.from_dict(media) if isinstance(media, dict) else None,
            extra={k: v for k, v in data.items() if k not in _MESSAGE_KEYS},
        )


def messages_from_list(raw: Any) -> list[Message]:
    """Decode a persisted message list, skipping records that don't decode."""
    if not isinstance(raw, list):
        return []
    messages = []
    for i, item in enumerate(raw):
        try:
            messages.append(Message.from_dict(item))
        except (InvalidArgument, AttributeError, KeyError, TypeError, ValueError) as e:
            logger.warning("Skipping malformed message at index %d: %s", i, e)
    return messages


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------

@dataclass
class DocumentSummary:
    """Manifest entry for a document: enough to locate its artifacts."""
    id: str
    name: str
    ext: str

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "ext": self.ext}

    @classmethod
    def from_dict(cls, data: dict) -> "DocumentSummary":
        return cls(id=data["id"], name=data.get("name", data["id"]), ext=data.get("ext", ""))


def normalize_embeddings(raw: Any) -> tuple[list[str] | None, list[list[float]]]:
    """Decode a persisted embeddings array.

    Accepts bare vectors or ``{"chunk", "embedding"}`` objects (the form the
    desktop app wrote). Returns (chunk texts if the objects carried them,
    vectors).
    """
    if not isinstance(raw, list):
        return None, []
    texts: list[str] = []
    vectors: list[list[float]] = []
    for entry in raw:
        if isinstance(entry, dict):
            vec = entry.get("embedding")
            if isinstance(vec, dict):
                vec = vec.get("embedding")
            if not isinstance(vec, list):
                continue
            texts.append(entry.get("chunk", ""))
            vectors.append([float(x) for x in vec])
        elif isinstance(entry, list):
            vectors.append([float(x) for x in entry])
    if texts and len(texts) == len(vectors):
        return texts, vectors
    return None, vectors


@dataclass
class Document:
    """A parsed, chunked and embedded upload.

    ``chunks`` and ``embeddings`` are parallel: index i of one belongs to
    index i of the other.
    """
    id: str
    name: str
    ext: str
    size: int = 0
    uploaded_at: str = ""
    chunks: list[str] = field(default_factory=list)
    embeddings: list[list[float]] = field(default_factory=list)

    @property
    def is_embedded(self) -> bool:
        return bool(self.embeddings) and len(self.embeddings) == len(self.chunks)

    def summary(self) -> DocumentSummary:
        return DocumentSummary(id=self.id, name=self.name, ext=self.ext)

    def embedding_records(self) -> list[dict]:
        return [
            {"chunk": chunk, "embedding": vec}
            for chunk, vec in zip(self.chunks, self.embeddings)
        ]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "ext": self.ext,
            "size": self.size,
            "uploadedAt": self.uploaded_at,
            "chunks": list(self.chunks),
            "embeddings": self.embedding_records(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Document":
        chunks = data.get("chunks") if isinstance(data.get("chunks"), list) else []
        paired, vectors = normalize_embeddings(data.get("embeddings"))
        if paired is not None:
            chunks = paired
        elif len(vectors) != len(chunks):
            logger.warning(
                "Document %s has %d chunks but %d embeddings; ignoring embeddings",
                data.get("id"), len(chunks), len(vectors),
            )
            vectors = []
        return cls(
            id=data["id"],
            name=data.get("name", data["id"]),
            ext=data.get("ext", ""),
            size=int(data.get("size", 0)),
            uploaded_at=data.get("uploadedAt", ""),
            chunks=[str(c) for c in chunks],
            embeddings=vectors,
        )


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

@dataclass
class SessionStats:
    """Derived counters. Recomputed on load; never trusted from disk."""
    total_messages: int = 0
    total_files: int = 0
    total_tokens: int = 0
    last_active: str | None = None

    def to_dict(self) -> dict:
        return {
            "totalMessages": self.total_messages,
            "totalTokens": self.total_tokens,
            "totalFiles": self.total_files,
            "lastActive": self.last_active,
        }

    @classmethod
    def from_dict(cls, data: dict | None) -> "SessionStats":
        if not isinstance(data, dict):
            data = {}
        last_active = data.get("lastActive")
        return cls(
            total_messages=_count(data.get("totalMessages")),
            total_files=_count(data.get("totalFiles")),
            total_tokens=_count(data.get("totalTokens")),
            last_active=last_active if isinstance(last_active, str) else None,
        )


def _count(value: Any) -> int:
    """A stored counter as an int; anything unusable counts as 0."""
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


@dataclass
class MigrationInfo:
    """Provenance block for a notebook created from a legacy chat."""
    original_chat_id: str
    migrated_at: str
    version: str = "1.0"

    def to_dict(self) -> dict:
        return {
            "originalChatId": self.original_chat_id,
            "migratedAt": self.migrated_at,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "MigrationInfo":
        return cls(
            original_chat_id=data["originalChatId"],
            migrated_at=data.get("migratedAt", ""),
            version=data.get("version", "1.0"),
        )


_META_KEYS = (
    "id", "title", "description", "createdAt", "updatedAt", "thumbnail",
    "tags", "model", "plugins", "stats", "migration",
)


@dataclass
class NotebookMeta:
    """Contents of ``notebook.json``."""
    id: str
    title: str = DEFAULT_NOTEBOOK_TITLE
    description: str = ""
    created_at: str = ""
    updated_at: str = ""
    thumbnail: str | None = None
    tags: list[str] = field(default_factory=list)
    model: str | None = None
    plugins: dict[str, Any] = field(default_factory=lambda: {"enabled": [], "settings": {}})
    stats: SessionStats = field(default_factory=SessionStats)
    migration: MigrationInfo | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        d = {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "thumbnail": self.thumbnail,
            "tags": list(self.tags),
            "model": self.model,
            "plugins": self.plugins,
            "stats": self.stats.to_dict(),
        }
        if self.migration is not None:
            d["migration"] = self.migration.to_dict()
        d.update(self.extra)
        return d

    @classmethod
    def from_dict(cls, data: dict) -> "NotebookMeta":
        migration = data.get("migration")
        plugins = data.get("plugins")
        return cls(
            id=data["id"],
            title=data.get("title") or DEFAULT_NOTEBOOK_TITLE,
            description=data.get("description") or "",
            created_at=data.get("createdAt") or "",
            updated_at=data.get("updatedAt") or "",
            thumbnail=data.get("thumbnail"),
            tags=list(data.get("tags") or []),
            model=data.get("model"),
            plugins=plugins if isinstance(plugins, dict) else {"enabled": [], "settings": {}},
            stats=SessionStats.from_dict(data.get("stats")),
            migration=MigrationInfo.from_dict(migration) if isinstance(migration, dict) else None,
            extra={k: v for k, v in data.items() if k not in _META_KEYS},
        )


@dataclass
class FileEntry:
    """A payload file in one of a notebook's buckets, with its sidecar data."""
    name: str
    bucket: str
    size: int
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        d = dict(self.metadata)
        d.pop("chunks", None)
        d.pop("embeddings", None)
        d.update({"name": self.name, "type": self.bucket, "size": self.size})
        return d


@dataclass
class LegacyRecord:
    """Flat legacy chat: ``<id>/chat.json`` = {messages, docs}."""
    id: str
    messages: list[Message] = field(default_factory=list)
    docs: list[DocumentSummary] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)
    kind = "chat"

    def to_dict(self) -> dict:
        d = dict(self.extra)
        d["messages"] = [m.to_dict() for m in self.messages]
        d["docs"] = [doc.to_dict() for doc in self.docs]
        return d


@dataclass
class NotebookRecord:
    """Notebook: metadata, messages, and typed payload folders."""
    meta: NotebookMeta
    messages: list[Message] = field(default_factory=list)
    files: dict[str, list[FileEntry]] = field(
        default_factory=lambda: {bucket: [] for bucket in NOTEBOOK_BUCKETS}
    )
    kind = "notebook"

    @property
    def id(self) -> str:
        return self.meta.id


SessionRecord = Union[LegacyRecord, NotebookRecord]


@dataclass
class SessionSummary:
    """List entry for a session of either kind."""
    id: str
    title: str
    kind: str
    created_at: str | None = None
    updated_at: str | None = None
    tags: list[str] = field(default_factory=list)
    message_count: int = 0
    document_count: int = 0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "kind": self.kind,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "tags": list(self.tags),
            "messages": self.message_count,
            "documents": self.document_count,
        }
