"""Batch ingest of JSON (or plugin-handled) files into one graph transaction.

Per file: read → plugin or JSON parse → optional schema check → entity name,
type, observations and outgoing relations. Every file that parses becomes one
queued operation; all operations then run inside a single
GraphStore.update_graph() call, so a batch lands entirely or not at all.
Files that fail to parse or validate are reported and left out of the batch.

Relation targets that do not exist yet are created as Concept stubs here.
GraphStore.add_relation never does that.
"""

from __future__ import annotations

import glob
import json
import logging
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from uks.errors import ValidationError
from uks.models import DEFAULT_ENTITY_TYPE, Entity, hashed_urn, new_urn
from uks.validation import DEFAULT_CONTEXT, require_string, validate_observations

if TYPE_CHECKING:
    from collections.abc import Callable

    from uks.models import Graph
    from uks.plugins import PluginManager
    from uks.store import GraphStore
    from uks.vectors import VectorIndex

logger = logging.getLogger("uks.ingest")

# List-valued keys whose named items become "includes" relations
_INCLUDE_KEYS = ("pillars", "components", "phases", "layers", "patterns")


@dataclass
class SchemaCheck:
    """Outcome of the external schema-validation predicate."""

    valid: bool
    errors: list[str] = field(default_factory=list)


@dataclass
class MappedFields:
    """Outcome of the external field mapper. None fields fall back to defaults."""

    name: str | None = None
    entity_type: str | None = None
    relations: list[tuple[str, str]] | None = None


@dataclass
class IngestReport:
    total_files: int = 0
    processed: int = 0
    entities_added: int = 0
    relations_added: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)
    preview: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_files": self.total_files,
            "processed": self.processed,
            "entities_added": self.entities_added,
            "relations_added": self.relations_added,
            "errors": self.errors,
            "preview": self.preview,
        }


@dataclass
class _Record:
    file: str
    name: str
    entity_type: str
    observations: list[str]
    relations: list[tuple[str, str]]
    embed_text: str
    id: str | None = None


def extract_relations(data: dict[str, Any]) -> list[tuple[str, str]]:
    """Default relation heuristics: (target name, relation type) pairs."""
    rels: list[tuple[str, str]] = []
    for key in _INCLUDE_KEYS:
        items = data.get(key)
        if isinstance(items, list):
            for item in items:
                if isinstance(item, dict) and item.get("name"):
                    rels.append((str(item["name"]), "includes"))
    related = data.get("related_to")
    if isinstance(related, list):
        rels.extend((str(item), "related_to") for item in related if item)
    source = data.get("source")
    if isinstance(source, str) and source and not source.startswith("http"):
        rels.append((source, "derived_from"))
    return rels


class IngestPipeline:
    """Turns files into entities/relations in one GraphStore transaction."""

    def __init__(
        self,
        store: GraphStore,
        vectors: VectorIndex | None = None,
        plugins: PluginManager | None = None,
        *,
        validator: Callable[[dict[str, Any]], SchemaCheck] | None = None,
        mapper: Callable[[dict[str, Any]], MappedFields] | None = None,
        default_entity_type: str = "KnowledgeAsset",
    ) -> None:
        self.store = store
        self.vectors = vectors
        self.plugins = plugins
        self.validator = validator
        self.mapper = mapper
        self.default_entity_type = default_entity_type

    # ------------------------------------------------------------------
    # Per-file preparation
    # ------------------------------------------------------------------

    def _parse(self, path: str, content: str) -> dict[str, Any] | None:
        data: Any = None
        handled = False
        if self.plugins is not None:
            for plugin in self.plugins.ingest_plugins():
                if plugin.can_handle(path):
                    result = plugin.ingest(path, content)
                    if result:
                        data, handled = result, True
                        break
        if not handled:
            if Path(path).suffix != ".json":
                return None
            data = json.loads(content)
        if not data:
            return None
        if not isinstance(data, dict):
            msg = "Expected a JSON object at top level"
            raise ValidationError(msg, {"file": path})
        return data

    def _prepare(self, path: str, data: dict[str, Any], strict: bool) -> _Record:
        namespace = self.store.namespace
        is_bento = bool(data.get("flavor") or data.get("nutrition"))
        record_id = data.get("id") if isinstance(data.get("id"), str) else None
        if is_bento and not record_id:
            seed = str(data.get("title") or uuid.uuid4())
            record_id = hashed_urn(data.get("flavor") or DEFAULT_ENTITY_TYPE, seed, namespace)

        if self.validator is not None and (is_bento or strict):
            check = self.validator(data)
            if not check.valid:
                msg = f"Schema Validation Failed: {', '.join(check.errors)}"
                raise ValidationError(msg, {"file": path, "errors": check.errors})

        mapped = self.mapper(data) if self.mapper is not None else MappedFields()
        name = mapped.name or data.get("dish") or data.get("title") or Path(path).stem
        entity_type = (
            mapped.entity_type or data.get("flavor") or data.get("archetype") or self.default_entity_type
        )
        observations: list[str] = []
        if data.get("version"):
            observations.append(f"v{data['version']}")
        observations.extend(validate_observations(data.get("observations")))
        relations = mapped.relations if mapped.relations is not None else extract_relations(data)

        if data.get("description"):
            embed_text = str(data["description"])
        elif data.get("nutrition"):
            embed_text = json.dumps(data["nutrition"])
        else:
            embed_text = str(name)

        return _Record(
            file=path,
            name=require_string(str(name), "entity.name"),
            entity_type=str(entity_type),
            observations=observations,
            relations=[(t, r) for t, r in relations if t],
            embed_text=embed_text,
            id=record_id,
        )

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    def _apply(self, graph: Graph, records: list[_Record]) -> tuple[int, int, list[tuple[str, str]]]:
        """Merge records into graph. Returns counts and (id, text) pairs to embed."""
        namespace = self.store.namespace
        entities_added = relations_added = 0
        to_embed: list[tuple[str, str]] = []
        for rec in records:
            entity = graph.find_by_name(rec.name)
            if entity is None:
                entity_id = rec.id
                if not entity_id or any(e.id == entity_id for e in graph.entities):
                    entity_id = new_urn(rec.entity_type, namespace)
                entity = Entity(id=entity_id, name=rec.name, entity_type=rec.entity_type)
                entity.merge_observations(rec.observations)
                if rec.embed_text:
                    to_embed.append((entity.id, rec.embed_text))
                graph.entities.append(entity)
                entities_added += 1
            else:
                entity.merge_observations(rec.observations)

            for target_name, relation_type in rec.relations:
                target = graph.find_by_name(target_name)
                if target is None:
                    target = Entity(
                        id=new_urn(DEFAULT_ENTITY_TYPE, namespace),
                        name=target_name,
                        entity_type=DEFAULT_ENTITY_TYPE,
                    )
                    graph.entities.append(target)
                if graph.link(entity, target, relation_type):
                    relations_added += 1
        return entities_added, relations_added, to_embed

    def ingest(
        self,
        pattern: str,
        *,
        dry_run: bool = False,
        strict: bool = False,
        context: str = DEFAULT_CONTEXT,
    ) -> IngestReport:
        """Ingest every file matching a (recursive) glob pattern."""
        require_string(pattern, "pattern")
        files = sorted(f for f in glob.glob(pattern, recursive=True) if Path(f).is_file())
        report = IngestReport(total_files=len(files))
        records: list[_Record] = []

        for path in files:
            try:
                content = Path(path).read_text(encoding="utf-8")
                data = self._parse(path, content)
                if data is None:
                    continue
                record = self._prepare(path, data, strict)
            except Exception as exc:  # reported per file; the batch goes on
                logger.warning("ingest failed for %s: %s", path, exc)
                report.errors.append({"file": path, "error": str(exc)})
                continue

            report.processed += 1
            if dry_run:
                report.preview.append({
                    "file": path,
                    "entity": {
                        "name": record.name,
                        "type": record.entity_type,
                        "observations": record.observations,
                    },
                    "relations": [{"to": t, "type": r} for t, r in record.relations],
                })
            else:
                records.append(record)

        if records:
            added, linked, to_embed = self.store.update_graph(lambda g: self._apply(g, records), context)
            report.entities_added, report.relations_added = added, linked
            # Embedding runs after the graph lock is released
            if self.vectors is not None:
                for entity_id, text in to_embed:
                    self.vectors.upsert(entity_id, text)
            logger.info(
                "ingested %d files: +%d entities, +%d relations",
                len(records), report.entities_added, report.relations_added,
            )
        return report
