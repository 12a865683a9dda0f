"""UksConfig: project-local config for the file-resident knowledge graph.

Default layout (all relative to the project root):

    uks.toml                  # project config (git-tracked)
    .env                      # optional: UKS_STORAGE_PATH, GEMINI_API_KEY (gitignore this)
    knowledge/uks_graph/
        graph-<context>.jsonl # one graph per context
        vectors.jsonl         # embedding records
        .lock                 # writer lock marker (pid)
        .vectors.lock
        .backups/             # pre-write snapshots

uks.toml example:

    [uks]
    name = "my-project"

    [storage]
    path = "knowledge/uks_graph"
    namespace = "local"       # urn:uks:<namespace>:...
    max_backups = 5
    lock_timeout_ms = 5000
    lock_retries = 3

    [embeddings]
    model = "fastembed:sentence-transformers/all-MiniLM-L6-v2"
    dimensions = 384

    [ingest]
    default_entity_type = "KnowledgeAsset"
    strict = false
"""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

_CONFIG_FILENAME = "uks.toml"
_DEFAULT_STORAGE_PATH = "knowledge/uks_graph"
_DEFAULT_MODEL = "fastembed:sentence-transformers/all-MiniLM-L6-v2"
_STORAGE_ENV = "UKS_STORAGE_PATH"


@dataclass
class StorageConfig:
    path: Path = field(default_factory=lambda: Path(_DEFAULT_STORAGE_PATH))
    namespace: str = "local"
    max_backups: int = 5
    lock_timeout_ms: int = 5000
    lock_retries: int = 3
    lock_retry_delay_ms: int = 100


@dataclass
class EmbeddingsConfig:
    model: str = _DEFAULT_MODEL
    dimensions: int = 384
    enabled: bool = True


@dataclass
class IngestConfig:
    default_entity_type: str = "KnowledgeAsset"
    strict: bool = False


@dataclass
class UksConfig:
    """Resolved configuration for a knowledge graph project."""

    root: Path                      # directory that contains uks.toml
    name: str = ""
    storage: StorageConfig = field(default_factory=StorageConfig)
    embeddings: EmbeddingsConfig = field(default_factory=EmbeddingsConfig)
    ingest: IngestConfig = field(default_factory=IngestConfig)

    @property
    def storage_path(self) -> Path:
        return self.storage.path

    @property
    def embedding_cache_dir(self) -> Path:
        return self.storage.path / ".cache" / "embeddings"

    def ensure_dirs(self) -> None:
        self.storage.path.mkdir(parents=True, exist_ok=True)

    @classmethod
    def for_path(cls, storage_path: Path | str) -> UksConfig:
        """Config with defaults and an explicit storage directory (tests, scripts)."""
        path = Path(storage_path)
        return cls(root=path, name=path.name, storage=StorageConfig(path=path))


def _load_env(root: Path) -> dict[str, str]:
    """Parse a simple KEY=VALUE .env file."""
    env_file = root / ".env"
    if not env_file.exists():
        return {}
    env: dict[str, str] = {}
    for line in env_file.read_text().splitlines():
        line = line.strip()
        if line and not line.startswith("#") and "=" in line:
            k, _, v = line.partition("=")
            env[k.strip()] = v.strip().strip('"').strip("'")
    return env


def load_config(root: Path | str | None = None) -> UksConfig:
    """Load uks.toml from root (or search upward from cwd if root is None)."""
    root_path = _find_root(Path(root) if root else Path.cwd())
    config_path = root_path / _CONFIG_FILENAME

    raw: dict[str, Any] = {}
    if config_path.exists():
        with config_path.open("rb") as f:
            raw = tomllib.load(f)

    env = _load_env(root_path)
    for key in ("GEMINI_API_KEY", "GOOGLE_API_KEY"):
        if key in env:
            os.environ.setdefault(key, env[key])

    uks_section = raw.get("uks", {})
    st_section = raw.get("storage", {})
    emb_section = raw.get("embeddings", {})
    ing_section = raw.get("ingest", {})

    # Storage path: process env > .env > uks.toml > default
    storage_raw = (
        os.environ.get(_STORAGE_ENV)
        or env.get(_STORAGE_ENV)
        or str(st_section.get("path", _DEFAULT_STORAGE_PATH))
    )
    storage_path = Path(storage_raw).expanduser()
    if not storage_path.is_absolute():
        storage_path = root_path / storage_path

    return UksConfig(
        root=root_path,
        name=uks_section.get("name", root_path.name),
        storage=StorageConfig(
            path=storage_path,
            namespace=str(st_section.get("namespace", "local")),
            max_backups=int(st_section.get("max_backups", 5)),
            lock_timeout_ms=int(st_section.get("lock_timeout_ms", 5000)),
            lock_retries=int(st_section.get("lock_retries", 3)),
            lock_retry_delay_ms=int(st_section.get("lock_retry_delay_ms", 100)),
        ),
        embeddings=EmbeddingsConfig(
            model=emb_section.get("model", _DEFAULT_MODEL),
            dimensions=int(emb_section.get("dimensions", 384)),
            enabled=bool(emb_section.get("enabled", True)),
        ),
        ingest=IngestConfig(
            default_entity_type=ing_section.get("default_entity_type", "KnowledgeAsset"),
            strict=bool(ing_section.get("strict", False)),
        ),
    )


def _find_root(start: Path) -> Path:
    """Walk upward from start looking for uks.toml."""
    for directory in (start, *start.parents):
        if (directory / _CONFIG_FILENAME).exists():
            return directory
    return start


def init_config(root: Path, name: str | None = None) -> Path:
    """Write a default uks.toml at root. Raises if already exists."""
    config_path = root / _CONFIG_FILENAME
    if config_path.exists():
        msg = f"uks.toml already exists at {config_path}"
        raise FileExistsError(msg)

    project_name = name or root.name
    content = f"""\
[uks]
name = "{project_name}"

[storage]
# path = "knowledge/uks_graph"   # or set UKS_STORAGE_PATH
# namespace = "local"            # urn:uks:<namespace>:<type>:<uuid>
# max_backups = 5                # snapshots kept per context (undo depth)
# lock_timeout_ms = 5000         # a live holder older than this is treated as abandoned
# lock_retries = 3

# [embeddings]
# model = "{_DEFAULT_MODEL}"
# dimensions = 384
# enabled = true                 # false: zero vectors, keyword search only

# [ingest]
# default_entity_type = "KnowledgeAsset"
# strict = false                 # validate every record, not only bento records
"""
    config_path.write_text(content)
    return config_path
