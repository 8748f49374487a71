"""
One-way migration of legacy chats into notebooks.

Migration is explicit (never run implicitly on startup) and additive: legacy
chat directories are only read, never changed or removed. Each migrated chat
becomes a new notebook carrying a ``migration`` provenance block.

Chats that were already migrated are recorded in ``.migrated.json`` in the
notebooks root (legacy id -> notebook id) and skipped on later runs unless
``force=True`` is given.
"""

import logging
import shutil
import time
import zipfile
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path

from .document_store import ChatDocumentStore
from .errors import NotFound, ParseError, PartialMigrationFailure
from .files import load_json, read_json, unique_name, write_json
from .providers.documents import classify_media_bucket
from .session_store import (
    CHAT_FILE,
    DOC_SIDECAR_SUFFIX,
    RAG_PLUGIN,
    ChatSessionStore,
    NotebookStore,
)
from .types import (
    DEFAULT_CHAT_NAME,
    LegacyRecord,
    MigrationInfo,
    NotebookMeta,
    NotebookRecord,
    SessionStats,
    SessionSummary,
    new_session_id,
    timestamp_to_iso,
    utc_now,
)

logger = logging.getLogger(__name__)

MARKER_FILE = ".migrated.json"
MIGRATION_VERSION = "1.0"
MIGRATED_TAGS = ("migrated", "legacy-chat")
FALLBACK_TITLE = "Migrated Chat"
TITLE_LENGTH = 50


@dataclass
class MigrationResult:
    """Outcome of migrate_all()."""
    notebooks: list[SessionSummary] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failures: list[PartialMigrationFailure] = field(default_factory=list)

    @property
    def migrated(self) -> int:
        return len(self.notebooks)

    def to_dict(self) -> dict:
        return {
            "migrated": self.migrated,
            "notebooks": [n.to_dict() for n in self.notebooks],
            "skipped": list(self.skipped),
            "failures": [{"chatId": f.chat_id, "reason": f.reason} for f in self.failures],
        }


def derive_title(record: LegacyRecord, explicit_name: str | None = None) -> str:
    """Explicit name if one was set, else the first user message, else a fallback."""
    if explicit_name and explicit_name not in (record.id, DEFAULT_CHAT_NAME):
        return explicit_name
    first_user = next((m for m in record.messages if m.role == "user"), None)
    if first_user is not None:
        title = first_user.content[:TITLE_LENGTH].replace("\n", " ").strip()
        if len(title) == TITLE_LENGTH:
            title += "..."
        if title:
            return title
    return FALLBACK_TITLE


def legacy_to_notebook(
    record: LegacyRecord,
    *,
    notebook_id: str,
    explicit_name: str | None = None,
    directory_time: str | None = None,
    now: str | None = None,
) -> NotebookRecord:
    """
    Convert a legacy chat record into a notebook record.

    Pure: nothing is read or written. ``directory_time`` is the legacy
    directory's creation time, used when the messages carry no timestamps.
    Messages without an id get ``msg-<ms>-<index>``; messages without a
    timestamp get the notebook's creation time.
    """
    now = now or utc_now()
    messages = record.messages

    created_at = None
    if messages and messages[0].timestamp:
        created_at = messages[0].timestamp
    elif not messages:
        created_at = directory_time
    created_at = created_at or now
    updated_at = messages[-1].timestamp if messages and messages[-1].timestamp else created_at

    ms = int(time.time() * 1000)
    migrated = [
        replace(msg, id=msg.id or f"msg-{ms}-{i}", timestamp=msg.timestamp or created_at)
        for i, msg in enumerate(messages)
    ]

    meta = NotebookMeta(
        id=notebook_id,
        title=derive_title(record, explicit_name),
        description=f"Migrated from chat session: {record.id}",
        created_at=created_at,
        updated_at=updated_at,
        tags=list(MIGRATED_TAGS),
        plugins={"enabled": [RAG_PLUGIN] if record.docs else [], "settings": {}},
        stats=SessionStats(
            total_messages=len(migrated),
            total_files=len(record.docs),
            last_active=updated_at,
        ),
        migration=MigrationInfo(
            original_chat_id=record.id,
            migrated_at=now,
            version=MIGRATION_VERSION,
        ),
    )
    return NotebookRecord(meta=meta, messages=migrated)


class Migrator:
    """Migrates every legacy chat of one store into a notebook store."""

    def __init__(
        self,
        chats: ChatSessionStore,
        notebooks: NotebookStore,
        chat_docs: ChatDocumentStore | None = None,
    ):
        self.chats = chats
        self.notebooks = notebooks
        self.chat_docs = chat_docs or ChatDocumentStore(chats)

    @property
    def marker_path(self) -> Path:
        return self.notebooks.root / MARKER_FILE

    def load_marker(self) -> dict[str, str]:
        data = load_json(self.marker_path, {})
        return data if isinstance(data, dict) else {}

    def migrate_all(self, *, force: bool = False) -> MigrationResult:
        """
        Migrate every legacy chat.

        A chat with no readable chat.json is skipped. A chat that fails
        part-way is recorded as a PartialMigrationFailure, its partial
        notebook is removed, and the loop moves on.
        """
        result = MigrationResult()
        ids = self.chats.list_ids()
        if not ids:
            logger.info("No legacy chats to migrate")
            return result

        marker = self.load_marker()
        names = self.chats.manifest.load()
        logger.info("Migrating %d legacy chats", len(ids))

        for chat_id in ids:
            if chat_id in marker and not force:
                logger.info("Skipping %s: already migrated to %s", chat_id, marker[chat_id])
                result.skipped.append(chat_id)
                continue

            chat_dir = self.chats.session_dir(chat_id)
            try:
                raw = read_json(chat_dir / CHAT_FILE)
            except FileNotFoundError:
                logger.warning("Skipping %s: no %s found", chat_id, CHAT_FILE)
                result.skipped.append(chat_id)
                continue
            except ParseError as e:
                logger.warning("Skipping %s: %s", chat_id, e)
                result.skipped.append(chat_id)
                continue
            if not isinstance(raw, (dict, list)):
                logger.warning("Skipping %s: malformed %s", chat_id, CHAT_FILE)
                result.skipped.append(chat_id)
                continue

            notebook_id = new_session_id("notebook")
            try:
                record = legacy_to_notebook(
                    self.chats.load(chat_id),
                    notebook_id=notebook_id,
                    explicit_name=names.get(chat_id),
                    directory_time=_directory_time(chat_dir),
                )
                self.notebooks.write_record(record, exist_ok=False)
                self._copy_documents(chat_id, notebook_id)
                self._copy_media(chat_id, notebook_id)
            except Exception as e:
                self.notebooks.delete(notebook_id)
                failure = PartialMigrationFailure(chat_id, str(e))
                logger.warning("%s", failure, exc_info=True)
                result.failures.append(failure)
                continue

            marker[chat_id] = notebook_id
            write_json(self.marker_path, marker)
            result.notebooks.append(self.notebooks.summary(notebook_id))
            logger.info("Migrated chat %s -> notebook %s: %r", chat_id, notebook_id, record.meta.title)

        logger.info(
            "Migration finished: %d migrated, %d skipped, %d failed",
            result.migrated, len(result.skipped), len(result.failures),
        )
        return result

    def _copy_documents(self, chat_id: str, notebook_id: str) -> None:
        """Copy each legacy document's bytes and write a notebook sidecar."""
        source_dir = self.chat_docs.docs_dir(chat_id)
        target_dir = self.notebooks.bucket_dir(notebook_id, "docs")
        if not source_dir.is_dir():
            return

        for summary in self.chat_docs.list_documents(chat_id):
            original = self.chat_docs.document_path(chat_id, summary.id)
            if original is None:
                logger.warning("Chat %s: document %s has no file; not copied", chat_id, summary.id)
                continue
            stored = unique_name(target_dir, summary.name)
            shutil.copyfile(original, target_dir / stored)

            doc = self.chat_docs.load_document(chat_id, summary.id)
            if doc is None:
                sidecar = {"id": summary.id, "name": summary.name, "ext": summary.ext,
                           "size": original.stat().st_size, "chunks": [], "embeddings": []}
            else:
                sidecar = doc.to_dict()
            sidecar["fileName"] = stored
            write_json(target_dir / f"{stored}{DOC_SIDECAR_SUFFIX}", sidecar)

        # Loose files directly under docs/ are copied as they are
        for path in sorted(source_dir.iterdir()):
            if path.is_file() and not path.name.startswith("."):
                shutil.copyfile(path, target_dir / unique_name(target_dir, path.name))

    def _copy_media(self, chat_id: str, notebook_id: str) -> None:
        media_dir = self.chats.session_dir(chat_id) / "media"
        if not media_dir.is_dir():
            return
        for path in sorted(media_dir.iterdir()):
            if not path.is_file():
                continue
            target_dir = self.notebooks.bucket_dir(notebook_id, classify_media_bucket(path.name))
            shutil.copyfile(path, target_dir / unique_name(target_dir, path.name))


def _directory_time(path: Path) -> str | None:
    try:
        st = path.stat()
    except OSError:
        return None
    return timestamp_to_iso(getattr(st, "st_birthtime", st.st_ctime))


def migrate_all(
    chats: ChatSessionStore,
    notebooks: NotebookStore,
    *,
    chat_docs: ChatDocumentStore | None = None,
    force: bool = False,
) -> MigrationResult:
    """Migrate every legacy chat in ``chats`` into ``notebooks``."""
    return Migrator(chats, notebooks, chat_docs).migrate_all(force=force)


def backup_chats(chats_root: Path, dest: Path) -> Path:
    """
    Zip the whole legacy chats directory.

    ``dest`` may be a directory, in which case the archive is named
    ``snapthink-chats-backup-<date>.zip``.

    Raises:
        NotFound: If there is no chats directory
    """
    chats_root = Path(chats_root)
    if not chats_root.is_dir():
        raise NotFound(f"No chats directory found at {chats_root}")
    dest = Path(dest)
    if dest.is_dir():
        date = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        dest = dest / f"snapthink-chats-backup-{date}.zip"
    dest.parent.mkdir(parents=True, exist_ok=True)

    count = 0
    with zipfile.ZipFile(dest, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for path in sorted(chats_root.rglob("*")):
            if path.is_file():
                zf.write(path, path.relative_to(chats_root).as_posix())
                count += 1
    logger.info("Backed up %d files from %s to %s", count, chats_root, dest)
    return dest
