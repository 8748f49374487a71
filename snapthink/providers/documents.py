"""
Text extraction and file-type detection for uploads.

Only plain text, Markdown and PDF are parsed. PDF parsing is delegated to
pypdf; anything else is rejected before it reaches the chunker.
"""

import io
import logging
from pathlib import PurePath

from ..errors import InvalidArgument, ParseError

logger = logging.getLogger(__name__)

EXTENSION_TYPES = {
    ".md": "text/markdown",
    ".markdown": "text/markdown",
    ".txt": "text/plain",
    ".pdf": "application/pdf",
    # Images
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".bmp": "image/bmp",
    # Video
    ".mp4": "video/mp4",
    ".webm": "video/webm",
    ".ogg": "video/ogg",
    ".avi": "video/avi",
    ".mov": "video/mov",
}

DOCUMENT_EXTENSIONS = frozenset({".txt", ".md", ".markdown", ".pdf"})

SUPPORTED_IMAGE_TYPES = frozenset({
    "image/jpeg", "image/jpg", "image/png", "image/gif", "image/webp", "image/bmp",
})
SUPPORTED_VIDEO_TYPES = frozenset({
    "video/mp4", "video/webm", "video/ogg", "video/avi", "video/mov",
})

# Loose legacy media is sorted by extension only
IMAGE_EXTENSIONS = frozenset({".jpg", ".jpeg", ".png", ".gif", ".webp"})
VIDEO_EXTENSIONS = frozenset({".mp4", ".avi", ".mov", ".webm"})


def file_extension(name: str) -> str:
    """Extension without the dot, as stored in document manifests."""
    return PurePath(name).suffix.lstrip(".")


def content_type(name: str) -> str | None:
    return EXTENSION_TYPES.get(PurePath(name).suffix.lower())


def media_type(name: str, mime: str | None = None) -> str | None:
    """Return "image", "video", or None for an upload."""
    mime = mime or content_type(name)
    if mime in SUPPORTED_IMAGE_TYPES:
        return "image"
    if mime in SUPPORTED_VIDEO_TYPES:
        return "video"
    return None


def classify_media_bucket(name: str) -> str:
    """Bucket for a loose legacy media file: images, videos, or outputs."""
    suffix = PurePath(name).suffix.lower()
    if suffix in IMAGE_EXTENSIONS:
        return "images"
    if suffix in VIDEO_EXTENSIONS:
        return "videos"
    return "outputs"


def extract_text(name: str, data: bytes) -> str:
    """
    Extract text from an uploaded document.

    Args:
        name: Original file name (used for the type)
        data: File contents

    Returns:
        The document text

    Raises:
        InvalidArgument: If the file type is not supported
        ParseError: If a PDF yields no text
    """
    suffix = PurePath(name).suffix.lower()
    if suffix == ".pdf":
        return _extract_pdf_text(name, data)
    if suffix in DOCUMENT_EXTENSIONS:
        return data.decode("utf-8", errors="replace")
    raise InvalidArgument(
        f"Unsupported file type: {name}. Please upload PDF, TXT, or Markdown."
    )


def _extract_pdf_text(name: str, data: bytes) -> str:
    from pypdf import PdfReader
    from pypdf.errors import PdfReadError

    try:
        reader = PdfReader(io.BytesIO(data))
        pages = [page.extract_text() or "" for page in reader.pages]
    except PdfReadError as e:
        raise ParseError(f"Failed to extract text from PDF {name}: {e}") from e

    text = "\n\n".join(p for p in pages if p.strip())
    if not text.strip():
        raise ParseError(f"No text extracted from PDF: {name}")
    logger.debug("Extracted %d characters from %d PDF pages (%s)", len(text), len(pages), name)
    return text
