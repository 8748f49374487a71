"""
Shared Ollama utilities: base URL, local model inventory, and model pulls.

The inventory and pulls go through the ``ollama`` executable (``ollama list``
and ``ollama pull``) rather than the HTTP API, so they work the same way the
desktop app's model wizard does and report progress from the CLI's own
output.
"""

import codecs
import logging
import os
import re
import subprocess
from collections.abc import Iterator
from dataclasses import dataclass

from ..errors import ModelUnavailable

logger = logging.getLogger(__name__)

DEFAULT_OLLAMA_URL = "http://localhost:11434"

# Download event statuses, in the order a successful pull emits them
STARTING = "starting"
DOWNLOADING = "downloading"
DONE = "done"
ERROR = "error"

_ANSI_RE = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]")
_PERCENT_RE = re.compile(r"(\d{1,3}(?:\.\d+)?)\s*%")
_SIZE_RE = re.compile(r"^\s*([\d.]+)\s*([KMGT]?B)\s*$", re.IGNORECASE)
_SIZE_TO_GB = {"B": 1 / 1024 ** 3, "KB": 1 / 1024 ** 2, "MB": 1 / 1024, "GB": 1.0, "TB": 1024.0}


def ollama_base_url(base_url: str | None = None) -> str:
    """Resolve the Ollama HTTP endpoint: explicit value, OLLAMA_HOST, or localhost."""
    url = base_url or os.environ.get("OLLAMA_HOST") or DEFAULT_OLLAMA_URL
    if not url.startswith(("http://", "https://")):
        url = f"http://{url}"
    return url.rstrip("/")


# -----------------------------------------------------------------------------
# Inventory
# -----------------------------------------------------------------------------

@dataclass
class ModelInfo:
    """One row of ``ollama list``."""
    name: str
    id: str
    size_raw: str
    size_in_gb: float | None

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "id": self.id,
            "sizeRaw": self.size_raw,
            "sizeInGB": self.size_in_gb,
        }


def _size_in_gb(size_raw: str) -> float | None:
    match = _SIZE_RE.match(size_raw)
    if not match:
        return None
    value, unit = float(match.group(1)), match.group(2).upper()
    return round(value * _SIZE_TO_GB[unit], 2)


def parse_model_table(output: str) -> list[ModelInfo]:
    """
    Parse the columnar table printed by ``ollama list``.

    Columns are separated by runs of two or more spaces:

        NAME                       ID              SIZE      MODIFIED
        nomic-embed-text:latest    0a109f422b47    274 MB    3 weeks ago
    """
    models = []
    for line in output.splitlines():
        line = _ANSI_RE.sub("", line).strip()
        if not line or line.upper().startswith("NAME"):
            continue
        cols = re.split(r"\s{2,}", line)
        if len(cols) < 3:
            logger.debug("Ignoring unparseable model row: %r", line)
            continue
        models.append(ModelInfo(
            name=cols[0],
            id=cols[1],
            size_raw=cols[2],
            size_in_gb=_size_in_gb(cols[2]),
        ))
    return models


def list_local_models(
    executable: str = "ollama",
    *,
    runner=subprocess.run,
    timeout: float = 15,
) -> list[ModelInfo]:
    """Run ``ollama list`` and parse the result.

    Raises:
        ModelUnavailable: If the executable is missing or exits non-zero
    """
    try:
        result = runner(
            [executable, "list"],
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except FileNotFoundError as e:
        raise ModelUnavailable(
            f"'{executable}' not found. Install Ollama from https://ollama.com"
        ) from e
    except (OSError, subprocess.TimeoutExpired) as e:
        raise ModelUnavailable(f"Failed to list models with '{executable}': {e}") from e

    if result.returncode != 0:
        detail = (result.stderr or result.stdout or "").strip()[:200]
        raise ModelUnavailable(
            f"'{executable} list' exited with {result.returncode}. "
            f"Is Ollama running? Start it with: ollama serve. {detail}"
        )
    return parse_model_table(result.stdout)


def model_installed(model: str, installed: list[str]) -> bool:
    """Check a model name against an inventory, treating ``:latest`` as implicit."""
    names = set(installed)
    bare = model.split(":")[0] if ":" in model else model
    # Ollama lists models as "name:tag"; check both exact and bare+:latest
    if model in names or f"{model}:latest" in names:
        return True
    if model.endswith(":latest") and bare in names:
        return True
    return False


# -----------------------------------------------------------------------------
# Download
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class DownloadEvent:
    """Progress report from a model pull."""
    status: str
    model: str
    progress: float | None = None
    detail: str | None = None


def _iter_output_lines(stream) -> Iterator[str]:
    """Yield lines from a byte stream, splitting on both ``\\r`` and ``\\n``.

    ``ollama pull`` redraws its progress bar with carriage returns, so
    splitting on newlines alone would deliver progress only at the end.
    """
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""
    while True:
        data = stream.read(4096)
        if not data:
            break
        buffer += decoder.decode(data)
        parts = re.split(r"[\r\n]", buffer)
        buffer = parts.pop()
        for part in parts:
            yield part
    buffer += decoder.decode(b"", final=True)
    if buffer:
        yield buffer


def parse_progress_line(model: str, line: str) -> DownloadEvent | None:
    """Turn one line of pull output into a DOWNLOADING event, or None if blank."""
    text = _ANSI_RE.sub("", line).strip()
    if not text:
        return None
    match = _PERCENT_RE.search(text)
    progress = min(float(match.group(1)), 100.0) if match else None
    return DownloadEvent(DOWNLOADING, model, progress=progress, detail=text)


class DownloadJob:
    """
    A cancellable ``ollama pull`` for one model.

    Owned by the EmbeddingClient that started it. ``run()`` is a generator of
    DownloadEvent: STARTING first, then DOWNLOADING events as output arrives,
    then exactly one DONE or ERROR. ``cancel()`` may be called from another
    thread while ``run()`` is being consumed; it terminates the process and
    the stream ends with an ERROR event.
    """

    def __init__(self, model: str, *, executable: str = "ollama", popen=subprocess.Popen):
        self.model = model
        self._executable = executable
        self._popen = popen
        self._process = None
        self._cancelled = False
        self.last_event: DownloadEvent | None = None

    @property
    def downloading(self) -> bool:
        return self._process is not None

    def run(self) -> Iterator[DownloadEvent]:
        if self._process is not None:
            raise RuntimeError(f"Download of {self.model} is already running")
        self._cancelled = False

        yield self._emit(DownloadEvent(STARTING, self.model))
        logger.info("Pulling model %s", self.model)

        try:
            self._process = self._popen(
                [self._executable, "pull", self.model],
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                bufsize=0,
            )
        except OSError as e:
            logger.warning("Could not start model pull for %s: %s", self.model, e)
            yield self._emit(DownloadEvent(ERROR, self.model, detail=str(e)))
            return

        last_detail = None
        last_key = None
        process = self._process
        try:
            for line in _iter_output_lines(process.stdout):
                event = parse_progress_line(self.model, line)
                if event is None:
                    continue
                last_detail = event.detail
                pct = int(event.progress) if event.progress is not None else None
                label = _PERCENT_RE.split(event.detail)[0].strip()
                if (label, pct) == last_key:
                    continue
                last_key = (label, pct)
                yield self._emit(event)
            returncode = process.wait()
        finally:
            if process.poll() is None:
                process.terminate()
                process.wait()
            self._process = None

        if self._cancelled:
            logger.info("Model pull cancelled: %s", self.model)
            yield self._emit(DownloadEvent(ERROR, self.model, detail="Download cancelled"))
        elif returncode != 0:
            logger.warning("Model pull failed for %s (exit %d)", self.model, returncode)
            detail = f"ollama pull exited with {returncode}"
            if last_detail:
                detail += f": {last_detail}"
            yield self._emit(DownloadEvent(ERROR, self.model, detail=detail))
        else:
            logger.info("Model ready: %s", self.model)
            yield self._emit(DownloadEvent(DONE, self.model, progress=100.0))

    def cancel(self) -> bool:
        """Terminate a running pull. Returns False if nothing was running."""
        process = self._process
        if process is None:
            return False
        self._cancelled = True
        process.terminate()
        return True

    def _emit(self, event: DownloadEvent) -> DownloadEvent:
        self.last_event = event
        return event
