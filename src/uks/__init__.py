"""File-resident knowledge graph: JSONL graph files, cross-process lock, undo snapshots.

Layout (one storage directory):
    graph-<context>.jsonl   # header line + entity/relation lines (source of truth)
    vectors.jsonl           # embedding records for semantic search
    .lock, .vectors.lock    # writer lock markers (holder pid)
    .backups/               # snapshot before every write, newest N kept

Concurrent writers (CLI, MCP server, batch jobs) are serialized by the lock
marker; every write replaces the whole file, so lock-free readers never see a
partial graph.
"""

from uks.config import UksConfig, init_config, load_config
from uks.container import Container, create_container
from uks.errors import LockError, NotFoundError, PluginError, StorageError, UksError, ValidationError
from uks.models import Entity, Graph, Relation, SearchResult, VectorRecord
from uks.store import GraphStore
from uks.vectors import VectorIndex, cosine_similarity

__all__ = [
    "Container",
    "Entity",
    "Graph",
    "GraphStore",
    "LockError",
    "NotFoundError",
    "PluginError",
    "Relation",
    "SearchResult",
    "StorageError",
    "UksConfig",
    "UksError",
    "ValidationError",
    "VectorIndex",
    "VectorRecord",
    "cosine_similarity",
    "create_container",
    "init_config",
    "load_config",
]
