"""
snapthink - local notebooks and chats with document retrieval.

Documents uploaded to a session are split into overlapping word windows,
embedded with a local Ollama model, and searched by cosine similarity.
Sessions are plain JSON on disk, in the legacy chat layout or the notebook
layout, with a one-way migration from the first to the second.

Quick start:
    from snapthink import Workspace

    ws = Workspace()
    nb = ws.create_notebook("Reading list")
    ws.add_document(nb.id, Path("paper.pdf"))
    for source in ws.search(nb.id, "main result"):
        print(source.file_name, source.text[:80])

Default store: ~/.snapthink (override with SNAPTHINK_STORE_PATH)
"""

__version__ = "0.3.0"

from .api import Workspace
from .chunker import chunk_text, iter_chunks
from .errors import (
    CompletionFailed,
    EmbeddingFailed,
    InvalidArgument,
    ModelUnavailable,
    NotFound,
    ParseError,
    PartialMigrationFailure,
    SnapthinkError,
)
from .similarity import cosine_similarity, rank
from .types import (
    Document,
    DocumentSummary,
    LegacyRecord,
    MediaFile,
    Message,
    NotebookMeta,
    NotebookRecord,
    SessionRecord,
    SessionSummary,
    Source,
)

__all__ = [
    "Workspace",
    "chunk_text",
    "iter_chunks",
    "cosine_similarity",
    "rank",
    "Document",
    "DocumentSummary",
    "LegacyRecord",
    "MediaFile",
    "Message",
    "NotebookMeta",
    "NotebookRecord",
    "SessionRecord",
    "SessionSummary",
    "Source",
    "SnapthinkError",
    "InvalidArgument",
    "EmbeddingFailed",
    "CompletionFailed",
    "ModelUnavailable",
    "NotFound",
    "ParseError",
    "PartialMigrationFailure",
]
