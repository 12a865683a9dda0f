"""Shared pytest fixtures for uks tests."""

from __future__ import annotations

from pathlib import Path

import pytest

from uks.config import UksConfig
from uks.container import create_container
from uks.store import GraphStore
from uks.vectors import VectorIndex

VOCAB = ["redis", "cache", "database", "python", "graph", "queue"]


def keyword_embed(text: str) -> list[float]:
    """Deterministic toy embedding: one dimension per vocabulary word."""
    lower = text.lower()
    return [float(lower.count(word)) for word in VOCAB]


@pytest.fixture
def storage(tmp_path: Path) -> Path:
    path = tmp_path / "graph"
    path.mkdir()
    return path


@pytest.fixture
def store(storage: Path) -> GraphStore:
    return GraphStore(storage, lock_retry_delay_ms=5)


@pytest.fixture
def vectors(storage: Path) -> VectorIndex:
    return VectorIndex(storage, keyword_embed, dimensions=len(VOCAB), lock_retry_delay_ms=5)


@pytest.fixture
def container(storage: Path):
    cfg = UksConfig.for_path(storage)
    cfg.embeddings.dimensions = len(VOCAB)
    return create_container(cfg, embed_fn=keyword_embed)


@pytest.fixture
def embed_fn():
    return keyword_embed
