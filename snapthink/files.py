"""
JSON file helpers shared by the stores.

All records are whole-file JSON documents. Writes go through a temporary
file and ``os.replace`` so a crash mid-write never leaves a truncated record.
"""

import json
import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Any

from .errors import InvalidArgument, ParseError

logger = logging.getLogger(__name__)


def read_json(path: Path) -> Any:
    """Read and decode a JSON file.

    Raises:
        FileNotFoundError: If the file does not exist
        ParseError: If the file exists but is not valid JSON
    """
    try:
        with open(path, encoding="utf-8") as f:
            return json.load(f)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ParseError(f"Corrupted JSON in {path}: {e}") from e


def load_json(path: Path, default: Any = None) -> Any:
    """Read a JSON file, returning ``default`` when missing or corrupted."""
    if not path.exists():
        return default
    try:
        return read_json(path)
    except ParseError as e:
        logger.warning("%s", e)
        return default
    except OSError as e:
        logger.warning("Failed to read %s: %s", path, e)
        return default


def write_json(path: Path, data: Any) -> None:
    """Atomically write ``data`` as indented JSON."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


def unique_name(directory: Path, name: str) -> str:
    """Return ``name`` or, if taken in ``directory``, ``stem-<ms>.ext``."""
    if not (directory / name).exists():
        return name
    stem, dot, ext = name.rpartition(".")
    if not stem:
        stem, dot, ext = name, "", ""
    candidate = f"{stem}-{int(time.time() * 1000)}{dot}{ext}"
    while (directory / candidate).exists():
        time.sleep(0.001)
        candidate = f"{stem}-{int(time.time() * 1000)}{dot}{ext}"
    return candidate


def safe_file_name(name: str) -> str:
    """Strip directory components from an uploaded file name."""
    base = Path(name.replace("\\", "/")).name
    if base in ("", ".", ".."):
        raise InvalidArgument(f"Invalid file name: {name!r}")
    return base
