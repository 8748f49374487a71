"""
Shared pytest fixtures for snapthink tests.

Provides mock providers and fake Ollama processes so no model server or
`ollama` executable is needed.
"""

import hashlib
import io
import json
from pathlib import Path

import pytest

from snapthink.config import StoreConfig
from snapthink.providers.embeddings import EmbeddingClient
from snapthink.providers.ollama_utils import DownloadJob, ModelInfo
from snapthink.session_store import ChatSessionStore, NotebookStore


class MockEmbeddingProvider:
    """
    Deterministic mock embedding provider for testing.

    Generates consistent embeddings based on text hash - no model server.
    """

    dimension = 16
    model_name = "mock-model"

    def __init__(self):
        self.embed_calls = 0
        self.texts: list[str] = []

    def embed(self, text: str) -> list[float]:
        """Generate deterministic embedding from text hash."""
        self.embed_calls += 1
        self.texts.append(text)
        h = hashlib.md5(text.encode()).hexdigest()
        return [int(h[i:i+2], 16) / 255.0 for i in range(0, 32, 2)]


class FailingEmbeddingProvider(MockEmbeddingProvider):
    """Mock provider that raises on selected (0-based) call numbers."""

    model_name = "failing-model"

    def __init__(self, fail_on: set[int] | None = None, fail_all: bool = False):
        super().__init__()
        self.fail_on = fail_on or set()
        self.fail_all = fail_all

    def embed(self, text: str) -> list[float]:
        call = self.embed_calls
        if self.fail_all or call in self.fail_on:
            self.embed_calls += 1
            raise ConnectionError(f"Provider unreachable (call {call})")
        return super().embed(text)


class KeywordEmbeddingProvider:
    """Embeds text as keyword counts, so similarity is predictable in tests."""

    model_name = "keyword-model"
    keywords = ("apple", "banana", "cherry", "durian")

    def embed(self, text: str) -> list[float]:
        words = text.lower().split()
        return [float(words.count(k)) for k in self.keywords]


class MockCompletionProvider:
    """Records the messages it was sent and answers with a fixed reply."""

    model_name = "mock-chat"

    def __init__(self, reply: str = "<think>pondering</think>The answer is 42."):
        self.reply = reply
        self.calls: list[list[dict]] = []

    def chat(self, messages: list[dict[str, str]]) -> str:
        self.calls.append(messages)
        return self.reply


class FakeProcess:
    """Stand-in for a subprocess.Popen running `ollama pull`."""

    def __init__(self, output: bytes = b"", returncode: int = 0):
        self.stdout = io.BytesIO(output)
        self.returncode = returncode
        self.terminated = False
        self._done = False

    def poll(self):
        return self.returncode if self._done or self.terminated else None

    def wait(self):
        self._done = True
        return -15 if self.terminated else self.returncode

    def terminate(self):
        self.terminated = True


class FakePopen:
    """Callable replacement for subprocess.Popen that records its calls."""

    def __init__(self, output: bytes = b"", returncode: int = 0):
        self.output = output
        self.returncode = returncode
        self.calls: list[list[str]] = []
        self.process: FakeProcess | None = None

    def __call__(self, args, **kwargs):
        self.calls.append(list(args))
        self.process = FakeProcess(self.output, self.returncode)
        return self.process


PULL_OUTPUT = (
    b"pulling manifest\r\n"
    b"pulling 970aa74c0a90...  10% \xe2\x96\x95     \xe2\x96\x8f  27 MB/274 MB\r"
    b"pulling 970aa74c0a90...  10% \xe2\x96\x95     \xe2\x96\x8f  28 MB/274 MB\r"
    b"pulling 970aa74c0a90...  55% \xe2\x96\x95     \xe2\x96\x8f 150 MB/274 MB\r"
    b"pulling 970aa74c0a90... 100% \xe2\x96\x95     \xe2\x96\x8f 274 MB/274 MB\r\n"
    b"verifying sha256 digest\n"
    b"success\n"
)


def fake_inventory(*names: str):
    """An inventory callable returning ModelInfo rows for ``names``."""
    def inventory():
        return [ModelInfo(name=n, id="0a109f422b47", size_raw="274 MB", size_in_gb=0.27) for n in names]
    return inventory


@pytest.fixture
def mock_embedding_provider():
    """Create a fresh MockEmbeddingProvider instance."""
    return MockEmbeddingProvider()


@pytest.fixture
def embedder(mock_embedding_provider):
    """EmbeddingClient over the mock provider, with the model already installed."""
    return EmbeddingClient(
        mock_embedding_provider,
        model="nomic-embed-text:latest",
        inventory=fake_inventory("nomic-embed-text:latest"),
    )


@pytest.fixture
def job_factory():
    """Factory for DownloadJobs driven by a FakePopen with successful output."""
    popen = FakePopen(PULL_OUTPUT)

    def factory(model):
        return DownloadJob(model, popen=popen)
    factory.popen = popen
    return factory


@pytest.fixture
def chat_store(tmp_path):
    return ChatSessionStore(tmp_path / "chats", tmp_path / "chat-names.json")


@pytest.fixture
def notebook_store(tmp_path):
    return NotebookStore(tmp_path / "notebooks")


@pytest.fixture
def store_config(tmp_path) -> StoreConfig:
    return StoreConfig(path=tmp_path / "store")


@pytest.fixture(autouse=True)
def isolated_store_env(tmp_path, monkeypatch):
    """Keep error logs and default stores inside the test's tmp dir."""
    monkeypatch.setenv("SNAPTHINK_STORE_PATH", str(tmp_path / "default-store"))
    monkeypatch.delenv("OLLAMA_HOST", raising=False)
    yield


def write_legacy_chat(
    chats_root: Path,
    chat_id: str,
    messages: list[dict],
    docs: dict[str, tuple[str, bytes]] | None = None,
    media: dict[str, bytes] | None = None,
) -> Path:
    """Lay out a legacy chat the way the desktop app wrote it.

    ``docs`` maps doc id -> (file name, bytes). Each document gets two
    chunks with ``{chunk, embedding}`` records.
    """
    chat_dir = chats_root / chat_id
    chat_dir.mkdir(parents=True)
    doc_entries = []
    for doc_id, (name, data) in (docs or {}).items():
        ext = name.rsplit(".", 1)[-1]
        doc_dir = chat_dir / "docs" / doc_id
        doc_dir.mkdir(parents=True)
        (doc_dir / f"file.{ext}").write_bytes(data)
        chunks = ["first chunk text", "second chunk text"]
        (doc_dir / "chunks.json").write_text(json.dumps(chunks))
        (doc_dir / "embeddings.json").write_text(json.dumps([
            {"chunk": c, "embedding": [float(i), 1.0, 0.5]} for i, c in enumerate(chunks)
        ]))
        doc_entries.append({"id": doc_id, "name": name, "ext": ext})
    if doc_entries:
        (chat_dir / "docsMetadata.json").write_text(json.dumps(doc_entries))
    for name, data in (media or {}).items():
        (chat_dir / "media").mkdir(exist_ok=True)
        (chat_dir / "media" / name).write_bytes(data)
    (chat_dir / "chat.json").write_text(json.dumps({"messages": messages, "docs": doc_entries}))
    return chat_dir


@pytest.fixture
def make_legacy_chat():
    return write_legacy_chat
