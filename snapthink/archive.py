"""
Session export and import as zip archives.

An archive holds one session directory under ``session/`` plus an
``export.json`` header:

    export.json      {"format": 1, "kind", "id", "title", "exportedAt"}
    session/...      the session directory, as on disk

Notebooks export with a ``.snap`` suffix, legacy chats with ``.zip``. Import
always assigns a fresh session id, so importing the same archive twice gives
two sessions.
"""

import json
import logging
import shutil
import zipfile
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath

from .errors import InvalidArgument, NotFound, ParseError
from .files import load_json, write_json
from .session_store import (
    DOC_SIDECAR_SUFFIX,
    DOCS_MANIFEST_FILE,
    MESSAGES_FILE,
    NOTEBOOK_FILE,
    ChatSessionStore,
    NotebookStore,
)
from .types import (
    DEFAULT_NOTEBOOK_TITLE,
    NOTEBOOK_BUCKETS,
    DocumentSummary,
    new_session_id,
    utc_now,
)

logger = logging.getLogger(__name__)

HEADER_FILE = "export.json"
SESSION_PREFIX = "session/"
ARCHIVE_FORMAT = 1
SUFFIXES = {"notebook": ".snap", "chat": ".zip"}


@dataclass
class ImportResult:
    id: str
    kind: str
    title: str | None = None
    missing_documents: list[str] = field(default_factory=list)

    @property
    def warning(self) -> bool:
        return bool(self.missing_documents)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind,
            "title": self.title,
            "missingDocuments": list(self.missing_documents),
            "warning": self.warning,
        }


def _store_for(kind: str, chats: ChatSessionStore, notebooks: NotebookStore):
    if kind == "chat":
        return chats
    if kind == "notebook":
        return notebooks
    raise InvalidArgument(f"Unknown session kind: {kind!r}")


def export_session(store, id: str, dest: Path, *, title: str | None = None) -> Path:
    """
    Write a session directory to an archive.

    ``dest`` may be a directory, in which case the archive is named after the
    session id with the suffix for its kind.

    Raises:
        NotFound: If the session does not exist
    """
    if not store.exists(id):
        raise NotFound(f"Session not found: {id}")
    source = store.session_dir(id)
    dest = Path(dest)
    if dest.is_dir():
        dest = dest / f"{id}{SUFFIXES[store.kind]}"
    dest.parent.mkdir(parents=True, exist_ok=True)

    header = {
        "format": ARCHIVE_FORMAT,
        "kind": store.kind,
        "id": id,
        "title": title,
        "exportedAt": utc_now(),
    }
    files = 0
    with zipfile.ZipFile(dest, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        zf.writestr(HEADER_FILE, _dumps(header))
        for path in sorted(source.rglob("*")):
            if path.is_file() and not path.name.endswith(".tmp"):
                zf.write(path, SESSION_PREFIX + path.relative_to(source).as_posix())
                files += 1
    logger.info("Exported %s %s (%d files) to %s", store.kind, id, files, dest)
    return dest


def _dumps(data: dict) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False)


def _read_header(zf: zipfile.ZipFile, archive: Path) -> dict:
    try:
        header = json.loads(zf.read(HEADER_FILE).decode("utf-8"))
    except KeyError as e:
        raise ParseError(f"{archive} is not a session archive (no {HEADER_FILE})") from e
    except (ValueError, UnicodeDecodeError) as e:
        raise ParseError(f"Corrupted {HEADER_FILE} in {archive}: {e}") from e
    if not isinstance(header, dict):
        raise ParseError(f"Corrupted {HEADER_FILE} in {archive}")
    if int(header.get("format", 1)) > ARCHIVE_FORMAT:
        raise ParseError(f"{archive} uses archive format {header['format']}, newer than supported")
    return header


def _member_target(name: str) -> PurePosixPath | None:
    """Relative path of a session member, or None for non-session members.

    Raises:
        InvalidArgument: For absolute paths or paths escaping the session
    """
    if not name.startswith(SESSION_PREFIX):
        return None
    rel = PurePosixPath(name[len(SESSION_PREFIX):])
    if name.endswith("/") or not rel.parts:
        return None
    if rel.is_absolute() or ".." in rel.parts or ":" in rel.parts[0]:
        raise InvalidArgument(f"Unsafe path in archive: {name!r}")
    return rel


def import_session(
    archive: Path,
    chats: ChatSessionStore,
    notebooks: NotebookStore,
) -> ImportResult:
    """
    Import an archive as a new session with a fresh id.

    Document metadata whose file is missing from the archive is dropped and
    reported in ``missing_documents``.

    Raises:
        ParseError: If the archive has no readable header
        InvalidArgument: If the archive contains unsafe paths or an unknown kind
    """
    archive = Path(archive)
    try:
        zf = zipfile.ZipFile(archive)
    except zipfile.BadZipFile as e:
        raise ParseError(f"{archive} is not a zip archive: {e}") from e

    with zf:
        header = _read_header(zf, archive)
        kind = header.get("kind", "notebook")
        store = _store_for(kind, chats, notebooks)
        members = [(info, _member_target(info.filename)) for info in zf.infolist()]

        new_id = new_session_id(kind)
        target = store.session_dir(new_id)
        target.mkdir(parents=True, exist_ok=False)
        try:
            for info, rel in members:
                if rel is None:
                    continue
                path = target.joinpath(*rel.parts)
                path.parent.mkdir(parents=True, exist_ok=True)
                with zf.open(info) as src, open(path, "wb") as dst:
                    shutil.copyfileobj(src, dst)

            result = ImportResult(id=new_id, kind=kind, title=header.get("title"))
            if kind == "notebook":
                _finish_notebook(notebooks, new_id, result)
            else:
                _finish_chat(chats, new_id, result)
        except BaseException:
            shutil.rmtree(target, ignore_errors=True)
            raise

    if result.warning:
        logger.warning(
            "Imported %s %s with %d missing documents: %s",
            kind, new_id, len(result.missing_documents), ", ".join(result.missing_documents),
        )
    logger.info("Imported %s from %s as %s", kind, archive, new_id)
    return result


def _finish_notebook(notebooks: NotebookStore, id: str, result: ImportResult) -> None:
    meta_path = notebooks.session_dir(id) / NOTEBOOK_FILE
    meta = load_json(meta_path, {})
    if not isinstance(meta, dict):
        meta = {}
    meta["id"] = id
    write_json(meta_path, meta)

    docs_dir = notebooks.bucket_dir(id, "docs")
    docs = []
    if docs_dir.is_dir():
        for sidecar in sorted(docs_dir.glob(f"*{DOC_SIDECAR_SUFFIX}")):
            data = load_json(sidecar, {})
            if not isinstance(data, dict):
                data = {}
            stored = data.get("fileName") or sidecar.name[: -len(DOC_SIDECAR_SUFFIX)]
            if data.get("id") and (docs_dir / stored).is_file():
                docs.append(DocumentSummary.from_dict(data))
                continue
            result.missing_documents.append(data.get("name") or stored)
            sidecar.unlink()

    for bucket in NOTEBOOK_BUCKETS:
        notebooks.bucket_dir(id, bucket).mkdir(exist_ok=True)
    messages_path = notebooks.session_dir(id) / MESSAGES_FILE
    if not messages_path.exists():
        write_json(messages_path, {"messages": []})
    notebooks.update_docs(id, docs)
    meta = notebooks.load_meta(id)
    result.title = meta.title if meta is not None else DEFAULT_NOTEBOOK_TITLE


def _finish_chat(chats: ChatSessionStore, id: str, result: ImportResult) -> None:
    session_dir = chats.session_dir(id)
    manifest_path = session_dir / DOCS_MANIFEST_FILE
    record = chats.load(id)
    entries = load_json(manifest_path)
    if not isinstance(entries, list):
        entries = [d.to_dict() for d in record.docs]

    kept = []
    for entry in entries:
        if not isinstance(entry, dict) or not entry.get("id"):
            continue
        folder = session_dir / "docs" / str(entry["id"])
        if folder.is_dir() and any(folder.glob("file.*")):
            kept.append(entry)
        else:
            result.missing_documents.append(entry.get("name", entry["id"]))
    if kept or manifest_path.exists():
        write_json(manifest_path, kept)
    chats.update_docs(id, [DocumentSummary.from_dict(e) for e in kept])
    if result.title:
        chats.manifest.set(id, result.title)

