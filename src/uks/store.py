"""GraphStore: JSONL graph files with a locked load/mutate/snapshot/write cycle.

Layout (one storage directory, any number of contexts):

    graph-<context>.jsonl
        {"type": "_aim", "source": "uks", "version": "1.1.0"}            # header (line 1)
        {"type": "entity", "id": ..., "name": ..., "entityType": ..., "observations": [...]}
        {"type": "relation", "fromId": ..., "toId": ..., "fromName": ..., "toName": ..., "relationType": ...}
    .lock                # writer lock marker (pid)
    .backups/            # snapshots taken before every write

Writers go through update_graph(), which holds the lock for the whole
transaction and replaces the file in one step. Readers (search, get_all) take
no lock: they see the file before or after a write, never a partial one.

Graphs are loaded fully into memory on every transaction; this is meant for
small graphs.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar

from uks.backup import BackupManager, graph_filename
from uks.errors import LockError, NotFoundError, StorageError
from uks.lock import FileLock
from uks.models import (
    DEFAULT_ENTITY_TYPE,
    DEFAULT_NAMESPACE,
    FILE_MARKER,
    FORMAT_VERSION,
    Entity,
    Graph,
    Relation,
    SearchResult,
    legacy_id,
    new_urn,
)
from uks.validation import (
    DEFAULT_CONTEXT,
    require_string,
    sanitize_string,
    validate_context,
    validate_observations,
    validate_safe_path,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from uks.config import UksConfig

T = TypeVar("T")

logger = logging.getLogger("uks.store")

_MAX_NAME_LENGTH = 500


class GraphStore:
    """File-resident knowledge graph, one JSONL file per context."""

    def __init__(
        self,
        base_path: Path | str,
        *,
        namespace: str = DEFAULT_NAMESPACE,
        max_backups: int = 5,
        lock_timeout_ms: int = 5000,
        lock_retries: int = 3,
        lock_retry_delay_ms: int = 100,
        backup_manager: BackupManager | None = None,
        file_marker: dict[str, str] | None = None,
    ) -> None:
        self.base_path = Path(base_path)
        self.namespace = namespace
        self.file_marker = file_marker or dict(FILE_MARKER)
        self.lock = FileLock(
            self.base_path / ".lock",
            timeout_ms=lock_timeout_ms,
            retries=lock_retries,
            retry_delay_ms=lock_retry_delay_ms,
        )
        self.backups = backup_manager or BackupManager(self.base_path, max_backups=max_backups)
        self.base_path.mkdir(parents=True, exist_ok=True)
        self.backups.ensure_dir()

    @classmethod
    def from_config(cls, cfg: UksConfig) -> GraphStore:
        st = cfg.storage
        return cls(
            st.path,
            namespace=st.namespace,
            max_backups=st.max_backups,
            lock_timeout_ms=st.lock_timeout_ms,
            lock_retries=st.lock_retries,
            lock_retry_delay_ms=st.lock_retry_delay_ms,
        )

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def file_path(self, context: str = DEFAULT_CONTEXT) -> Path:
        return validate_safe_path(graph_filename(validate_context(context)), self.base_path)

    def list_contexts(self) -> list[str]:
        """Contexts that have a graph file."""
        return sorted(
            p.name[len("graph-"):-len(".jsonl")]
            for p in self.base_path.glob("graph-*.jsonl")
            if p.is_file()
        )

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def _read(self, context: str) -> bytes | None:
        """Raw bytes of a context's graph file; None if it does not exist."""
        path = self.file_path(context)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as exc:
            msg = f"Failed to load graph: {exc}"
            raise StorageError(msg, {"context": context, "path": str(path)}) from exc

    def load_graph(self, context: str = DEFAULT_CONTEXT) -> Graph:
        """Parse a context's graph file. A missing file is an empty graph."""
        ctx = validate_context(context)
        raw = self._read(ctx)
        return Graph() if raw is None else self._parse(raw, ctx)

    def _parse(self, raw: bytes, context: str) -> Graph:
        graph = Graph()
        raw_relations: list[dict[str, Any]] = []
        for n, line in enumerate(raw.split(b"\n"), start=1):
            line = line.strip()
            if not line:
                continue
            try:
                obj = json.loads(line.decode("utf-8"))
            except (UnicodeDecodeError, json.JSONDecodeError):
                logger.debug("%s line %d: malformed line skipped", context, n)
                continue
            if not isinstance(obj, dict):
                continue
            kind = obj.get("type")
            if kind == "_aim":
                version = obj.get("version")
                if version and version != FORMAT_VERSION:
                    logger.info("upgrading graph %s from v%s to v%s", context, version, FORMAT_VERSION)
            elif kind == "entity":
                try:
                    entity = Entity.from_dict(obj)
                except (KeyError, TypeError):
                    logger.debug("%s line %d: entity without name skipped", context, n)
                    continue
                if not entity.id:
                    entity.id = legacy_id(entity.name, self.namespace)
                graph.entities.append(entity)
            elif kind == "relation":
                raw_relations.append(obj)

        for obj in raw_relations:
            try:
                rel = Relation.from_dict(obj)
            except (KeyError, TypeError):
                continue
            # Legacy relations name their endpoints instead of carrying ids
            if not rel.from_id and rel.from_name:
                found = graph.find_by_name(rel.from_name)
                rel.from_id = found.id if found else legacy_id(rel.from_name, self.namespace)
            if not rel.to_id and rel.to_name:
                found = graph.find_by_name(rel.to_name)
                rel.to_id = found.id if found else legacy_id(rel.to_name, self.namespace)
            if rel.from_id and rel.to_id:
                graph.relations.append(rel)
        return graph

    def get_all(self, context: str = DEFAULT_CONTEXT) -> Graph:
        return self.load_graph(context)

    def search(self, query: str, context: str = DEFAULT_CONTEXT) -> SearchResult:
        """Case-insensitive substring match on names and observations.

        Also returns every relation touching a matched entity. Takes no lock.
        """
        q = require_string(query, "query").lower()
        graph = self.load_graph(context)
        entities = [
            e for e in graph.entities
            if q in e.name.lower() or any(q in o.lower() for o in e.observations)
        ]
        ids = {e.id for e in entities}
        relations = [r for r in graph.relations if r.from_id in ids or r.to_id in ids]
        return SearchResult(entities=entities, relations=relations)

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def _serialize(self, graph: Graph) -> str:
        lines = [json.dumps(self.file_marker)]
        lines.extend(json.dumps({"type": "entity", **e.to_dict()}) for e in graph.entities)
        lines.extend(json.dumps({"type": "relation", **r.to_dict()}) for r in graph.relations)
        return "\n".join(lines) + "\n"

    def _write(self, context: str, graph: Graph) -> None:
        path = self.file_path(context)
        tmp = path.with_suffix(".jsonl.tmp")
        try:
            tmp.write_text(self._serialize(graph), encoding="utf-8")
            os.replace(tmp, path)
        except OSError as exc:
            msg = f"Failed to write graph: {exc}"
            raise StorageError(msg, {"context": context, "path": str(path)}) from exc

    def update_graph(self, mutator: Callable[[Graph], T], context: str = DEFAULT_CONTEXT) -> T:
        """Run mutator on the loaded graph and persist the result atomically.

        Holds the storage lock throughout. If mutator raises, nothing is
        snapshotted or written and the error propagates. If the graph
        serializes to the bytes already on disk, nothing is written either,
        so no-op calls leave the undo history alone. Returns whatever mutator
        returns.
        """
        ctx = validate_context(context)
        if not self.lock.acquire():
            msg = "Failed to acquire lock: Graph is busy."
            raise LockError(msg, {"context": ctx, "path": str(self.lock.path)})
        try:
            raw = self._read(ctx)
            graph = Graph() if raw is None else self._parse(raw, ctx)
            before = raw if raw is not None else self._serialize(Graph()).encode("utf-8")
            result = mutator(graph)
            if self._serialize(graph).encode("utf-8") == before:
                logger.debug("graph %s unchanged, write skipped", ctx)
                return result
            self.backups.create_snapshot(ctx)
            self._write(ctx, graph)
            return result
        finally:
            self.lock.release()

    def undo(self, context: str = DEFAULT_CONTEXT) -> str:
        """Restore the snapshot taken before the most recent write.

        Each call consumes one snapshot, so repeated calls walk back through up
        to max_backups writes (multi-level, not a single-level undo). Raises
        NotFoundError when none is left.
        """
        ctx = validate_context(context)
        if not self.lock.acquire():
            msg = "Failed to acquire lock: Graph is busy."
            raise LockError(msg, {"context": ctx, "path": str(self.lock.path)})
        try:
            return self.backups.restore_latest(ctx)
        finally:
            self.lock.release()

    def add_entity(
        self,
        name: str,
        entity_type: str | None = None,
        observations: list[str] | None = None,
        context: str = DEFAULT_CONTEXT,
    ) -> str:
        """Create an entity, or merge observations into the one with this name.

        Returns the entity id, which never changes once assigned.
        """
        clean_name = sanitize_string(name, "entity.name", _MAX_NAME_LENGTH)
        obs = validate_observations(observations)
        etype = entity_type.strip() if isinstance(entity_type, str) and entity_type.strip() else None
        namespace = self.namespace

        def _upsert(graph: Graph) -> str:
            existing = graph.find_by_name(clean_name)
            if existing is not None:
                existing.merge_observations(obs)
                return existing.id
            entity = Entity(
                id=new_urn(etype, namespace),
                name=clean_name,
                entity_type=etype or DEFAULT_ENTITY_TYPE,
            )
            entity.merge_observations(obs)
            graph.entities.append(entity)
            return entity.id

        return self.update_graph(_upsert, context)

    def add_relation(
        self,
        from_: str,
        to: str,
        relation_type: str,
        context: str = DEFAULT_CONTEXT,
    ) -> bool:
        """Link two existing entities (by name or id).

        Returns False when the same (from, to, type) edge already exists.
        Raises NotFoundError if either endpoint is missing.
        """
        src = sanitize_string(from_, "relation.from", _MAX_NAME_LENGTH)
        dst = sanitize_string(to, "relation.to", _MAX_NAME_LENGTH)
        rtype = require_string(relation_type, "relation.relationType")

        def _link(graph: Graph) -> bool:
            source = graph.find_entity(src)
            target = graph.find_entity(dst)
            if source is None or target is None:
                msg = f"Cannot link: Entity not found ('{src}' or '{dst}')"
                raise NotFoundError(msg, {
                    "from": src,
                    "to": dst,
                    "missing": [n for n, e in ((src, source), (dst, target)) if e is None],
                })
            return graph.link(source, target, rtype)

        return self.update_graph(_link, context)
