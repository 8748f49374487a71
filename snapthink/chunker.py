"""
Word-window chunking for retrieval.

Documents are split on whitespace and cut into fixed-size windows of words
that overlap by a fixed number of words, so a sentence straddling a window
boundary still appears whole in one of the two neighbouring chunks.
"""

from collections.abc import Iterator

from .errors import InvalidArgument

DEFAULT_WINDOW_SIZE = 300
DEFAULT_OVERLAP = 50


def _check_window(window_size: int, overlap: int) -> None:
    if not isinstance(window_size, int) or window_size <= 0:
        raise InvalidArgument(f"window_size must be a positive integer, got {window_size!r}")
    if not isinstance(overlap, int) or overlap < 0:
        raise InvalidArgument(f"overlap must be a non-negative integer, got {overlap!r}")
    if overlap >= window_size:
        raise InvalidArgument(
            f"overlap ({overlap}) must be smaller than window_size ({window_size})"
        )


def _windows(words: list[str], window_size: int, stride: int) -> Iterator[str]:
    start = 0
    while start < len(words):
        chunk = " ".join(words[start:start + window_size])
        if chunk.strip():
            yield chunk
        start += stride


def iter_chunks(
    text: str,
    window_size: int = DEFAULT_WINDOW_SIZE,
    overlap: int = DEFAULT_OVERLAP,
) -> Iterator[str]:
    """
    Lazily yield overlapping word windows of ``text``.

    Each window holds up to ``window_size`` words joined by single spaces;
    consecutive windows start ``window_size - overlap`` words apart. The
    final window may be shorter.

    Arguments are validated eagerly, before the first chunk is requested.

    Raises:
        InvalidArgument: If window_size <= 0, overlap < 0 or overlap >= window_size
    """
    _check_window(window_size, overlap)
    return _windows(text.split(), window_size, window_size - overlap)


def chunk_text(
    text: str,
    window_size: int = DEFAULT_WINDOW_SIZE,
    overlap: int = DEFAULT_OVERLAP,
) -> list[str]:
    """Split ``text`` into a list of overlapping word windows. See iter_chunks()."""
    return list(iter_chunks(text, window_size, overlap))


def expected_chunk_count(word_count: int, window_size: int, overlap: int) -> int:
    """Number of windows chunk_text() produces for ``word_count`` words."""
    _check_window(window_size, overlap)
    stride = window_size - overlap
    return -(-word_count // stride) if word_count > 0 else 0
