"""
Error types and error logging for snapthink.

Logs full stack traces for debugging while showing clean messages to users.
Nothing in the storage or retrieval layers is allowed to take the host
process down: loaders degrade to empty defaults, batch operations collect
per-item failures, and only calls with invalid arguments raise outright.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path


class SnapthinkError(Exception):
    """Base class for all snapthink errors."""


class InvalidArgument(SnapthinkError, ValueError):
    """Bad parameters for a call (e.g. chunk overlap >= window size)."""


class EmbeddingFailed(SnapthinkError):
    """The embedding provider did not return a vector for one input."""


class CompletionFailed(SnapthinkError):
    """The completion provider did not return a message."""


class ModelUnavailable(SnapthinkError):
    """The required model is not installed and could not be downloaded."""


class NotFound(SnapthinkError):
    """A session or document does not exist."""


class ParseError(SnapthinkError):
    """A persisted JSON record could not be decoded."""


class PartialMigrationFailure(SnapthinkError):
    """One legacy session failed to migrate; the others continue."""

    def __init__(self, chat_id: str, reason: str):
        super().__init__(f"Failed to migrate chat {chat_id}: {reason}")
        self.chat_id = chat_id
        self.reason = reason


def _error_log_path() -> Path:
    """Resolve error log path, respecting SNAPTHINK_STORE_PATH."""
    store = os.environ.get("SNAPTHINK_STORE_PATH")
    if store:
        return Path(store) / "snapthink-errors.log"
    return Path.home() / ".snapthink" / "snapthink-errors.log"


def log_exception(exc: Exception, context: str = "") -> Path:
    """
    Log exception with full traceback to file.

    Args:
        exc: The exception that occurred
        context: Optional context string (e.g., command name)

    Returns:
        Path to the error log file
    """
    log_path = _error_log_path()
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a") as f:
            f.write(f"\n{'='*60}\n")
            f.write(f"[{timestamp}]")
            if context:
                f.write(f" {context}")
            f.write("\n")
            f.write("".join(traceback.format_exception(exc)))
    except OSError:
        pass  # error log unwritable
    return log_path
