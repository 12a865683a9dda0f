"""Wiring: one store, vector index, plugin registry and ingest pipeline per process.

Callers (CLI commands, protocol tool handlers, batch jobs) receive these
objects explicitly instead of reaching for module-level instances, which keeps
two containers on two storage paths fully independent.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from uks.ingest import IngestPipeline
from uks.plugins import PluginManager
from uks.store import GraphStore
from uks.vectors import VectorIndex

if TYPE_CHECKING:
    from collections.abc import Callable

    from uks.config import UksConfig
    from uks.ingest import MappedFields, SchemaCheck
    from uks.vectors import EmbedFn


@dataclass
class Container:
    config: UksConfig
    store: GraphStore
    vectors: VectorIndex
    plugins: PluginManager
    ingest: IngestPipeline


def create_container(
    cfg: UksConfig,
    *,
    embed_fn: EmbedFn | None = None,
    validator: Callable[[dict[str, Any]], SchemaCheck] | None = None,
    mapper: Callable[[dict[str, Any]], MappedFields] | None = None,
) -> Container:
    cfg.ensure_dirs()
    store = GraphStore.from_config(cfg)
    vectors = VectorIndex.from_config(cfg, embed_fn)
    plugins = PluginManager()
    pipeline = IngestPipeline(
        store,
        vectors,
        plugins,
        validator=validator,
        mapper=mapper,
        default_entity_type=cfg.ingest.default_entity_type,
    )
    return Container(config=cfg, store=store, vectors=vectors, plugins=plugins, ingest=pipeline)
