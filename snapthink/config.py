"""
Configuration management for snapthink stores.

The configuration is stored as a TOML file in the store directory.
It specifies which providers to use, how documents are chunked, and how
many snippets retrieval returns at each call site.
"""

import os
import tomllib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import tomli_w


CONFIG_FILENAME = "snapthink.toml"
CONFIG_VERSION = 1

DEFAULT_EMBEDDING_MODEL = "nomic-embed-text:latest"
DEFAULT_COMPLETION_MODEL = "llama3:8b"

# How a missing embedding model is handled
DOWNLOAD_MODES = ("prompt", "auto", "never")


def get_default_store_path() -> Path:
    """Store root: SNAPTHINK_STORE_PATH, else ~/.snapthink."""
    env = os.environ.get("SNAPTHINK_STORE_PATH")
    if env:
        return Path(env).expanduser()
    return Path.home() / ".snapthink"


@dataclass
class ProviderConfig:
    """Configuration for a single provider."""
    name: str
    params: dict[str, Any] = field(default_factory=dict)


@dataclass
class ChunkingConfig:
    """Word-window chunking parameters."""
    window_size: int = 300
    overlap: int = 50


@dataclass
class RetrievalConfig:
    """Top-K per call site. The reference app used 3 for summaries and 5-7 elsewhere."""
    summary_k: int = 3
    question_k: int = 7
    search_k: int = 5


@dataclass
class StoreConfig:
    """Complete store configuration."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    embedding: ProviderConfig = field(
        default_factory=lambda: ProviderConfig("ollama", {"model": DEFAULT_EMBEDDING_MODEL})
    )
    completion: ProviderConfig = field(
        default_factory=lambda: ProviderConfig("ollama", {"model": DEFAULT_COMPLETION_MODEL})
    )
    chunking: ChunkingConfig = field(default_factory=ChunkingConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)

    # "prompt": ask before pulling the embedding model; "auto": pull directly;
    # "never": fail with ModelUnavailable
    download: str = "prompt"
    # False skips the inventory check entirely (explicit bypass)
    check_model: bool = True
    max_media_mb: int = 50

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.path / CONFIG_FILENAME

    @property
    def chats_path(self) -> Path:
        """Legacy chat sessions root."""
        return self.path / "chats"

    @property
    def notebooks_path(self) -> Path:
        """Notebook sessions root."""
        return self.path / "notebooks"

    @property
    def manifest_path(self) -> Path:
        """Session id -> display name manifest for explicitly named chats."""
        return self.path / "chat-names.json"

    @property
    def embedding_model(self) -> str:
        return self.embedding.params.get("model", DEFAULT_EMBEDDING_MODEL)

    @property
    def completion_model(self) -> str:
        return self.completion.params.get("model", DEFAULT_COMPLETION_MODEL)

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_path.exists()


def load_config(store_path: Path) -> StoreConfig:
    """
    Load configuration from a store directory.

    Raises:
        FileNotFoundError: If config doesn't exist
        ValueError: If config is invalid
    """
    config_path = store_path / CONFIG_FILENAME

    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    version = data.get("store", {}).get("version", 1)
    if version > CONFIG_VERSION:
        raise ValueError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

    def parse_provider(section: dict, default_model: str) -> ProviderConfig:
        params = {k: v for k, v in section.items() if k not in ("name", "download", "check_model")}
        params.setdefault("model", default_model)
        return ProviderConfig(name=section.get("name", "ollama"), params=params)

    embedding_section = data.get("embedding", {})
    download = embedding_section.get("download", "prompt")
    if download not in DOWNLOAD_MODES:
        raise ValueError(
            f"Invalid embedding.download: {download!r} (expected one of {', '.join(DOWNLOAD_MODES)})"
        )

    chunking_section = data.get("chunking", {})
    retrieval_section = data.get("retrieval", {})
    defaults = RetrievalConfig()

    return StoreConfig(
        path=store_path,
        version=version,
        created=data.get("store", {}).get("created", ""),
        embedding=parse_provider(embedding_section, DEFAULT_EMBEDDING_MODEL),
        completion=parse_provider(data.get("completion", {}), DEFAULT_COMPLETION_MODEL),
        chunking=ChunkingConfig(
            window_size=int(chunking_section.get("window_size", 300)),
            overlap=int(chunking_section.get("overlap", 50)),
        ),
        retrieval=RetrievalConfig(
            summary_k=int(retrieval_section.get("summary_k", defaults.summary_k)),
            question_k=int(retrieval_section.get("question_k", defaults.question_k)),
            search_k=int(retrieval_section.get("search_k", defaults.search_k)),
        ),
        download=download,
        check_model=bool(embedding_section.get("check_model", True)),
        max_media_mb=int(data.get("media", {}).get("max_size_mb", 50)),
    )


def save_config(config: StoreConfig) -> None:
    """
    Save configuration to the store directory.

    Creates the directory if it doesn't exist.
    """
    config.path.mkdir(parents=True, exist_ok=True)

    def provider_to_dict(p: ProviderConfig) -> dict:
        d = {"name": p.name}
        d.update(p.params)
        return d

    embedding = provider_to_dict(config.embedding)
    embedding["download"] = config.download
    embedding["check_model"] = config.check_model

    data = {
        "store": {
            "version": config.version,
            "created": config.created,
        },
        "embedding": embedding,
        "completion": provider_to_dict(config.completion),
        "chunking": {
            "window_size": config.chunking.window_size,
            "overlap": config.chunking.overlap,
        },
        "retrieval": {
            "summary_k": config.retrieval.summary_k,
            "question_k": config.retrieval.question_k,
            "search_k": config.retrieval.search_k,
        },
        "media": {
            "max_size_mb": config.max_media_mb,
        },
    }

    with open(config.config_path, "wb") as f:
        tomli_w.dump(data, f)


def load_or_create_config(store_path: Path) -> StoreConfig:
    """
    Load existing config or create a new one with defaults.

    This is the main entry point for config management.
    """
    config_path = store_path / CONFIG_FILENAME

    if config_path.exists():
        return load_config(store_path)
    config = StoreConfig(path=store_path)
    save_config(config)
    return config
