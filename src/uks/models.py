"""Data models for the graph file and the vector file."""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from typing import Any

DEFAULT_ENTITY_TYPE = "Concept"
DEFAULT_NAMESPACE = "local"

# Format version written in the header line. 1.0.0 files carry entities without ids.
FORMAT_VERSION = "1.1.0"
FILE_MARKER: dict[str, str] = {"type": "_aim", "source": "uks", "version": FORMAT_VERSION}

# Fixed namespace for name-derived ids of legacy records.
_LEGACY_NS = uuid.UUID("6f1c2b9e-4a57-5d2e-9c1b-2f0e8d7a3b64")
_SLUG_RE = re.compile(r"[^a-z0-9-]")


def type_slug(entity_type: str | None) -> str:
    """Lower-case entity type with anything outside [a-z0-9-] removed."""
    slug = _SLUG_RE.sub("", (entity_type or DEFAULT_ENTITY_TYPE).lower())
    return slug or DEFAULT_ENTITY_TYPE.lower()


def new_urn(entity_type: str | None, namespace: str = DEFAULT_NAMESPACE) -> str:
    """Generate a fresh entity id: urn:uks:<namespace>:<type-slug>:<uuid4>."""
    return f"urn:uks:{namespace}:{type_slug(entity_type)}:{uuid.uuid4()}"


def hashed_urn(entity_type: str | None, seed: str, namespace: str = DEFAULT_NAMESPACE) -> str:
    """Deterministic entity id derived from seed (same seed, same id)."""
    return f"urn:uks:{namespace}:{type_slug(entity_type)}:{uuid.uuid5(_LEGACY_NS, seed)}"


def legacy_id(name: str, namespace: str = DEFAULT_NAMESPACE) -> str:
    """Stable id for an entity stored without one."""
    return f"urn:uks:{namespace}:legacy:{uuid.uuid5(_LEGACY_NS, name)}"


def _require_optional_str(d: dict[str, Any], *keys: str) -> None:
    for key in keys:
        if d.get(key) is not None and not isinstance(d[key], str):
            msg = f"{key} must be a string"
            raise TypeError(msg)


@dataclass
class Entity:
    """A typed, named node. Observations only ever grow."""

    id: str
    name: str
    entity_type: str = DEFAULT_ENTITY_TYPE
    observations: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Entity:
        """Build from a stored line. Raises KeyError or TypeError on a bad shape."""
        name = d["name"]
        if not isinstance(name, str) or not name:
            msg = "entity name must be a non-empty string"
            raise TypeError(msg)
        _require_optional_str(d, "id", "entityType")
        observations = d.get("observations")
        if observations is None:
            observations = []
        elif not isinstance(observations, list):
            msg = "entity observations must be a list"
            raise TypeError(msg)
        return cls(
            id=d.get("id") or "",
            name=name,
            entity_type=d.get("entityType") or DEFAULT_ENTITY_TYPE,
            observations=[o for o in observations if isinstance(o, str)],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "entityType": self.entity_type,
            "observations": list(self.observations),
        }

    def merge_observations(self, observations: list[str]) -> list[str]:
        """Append unseen observations in first-seen order. Returns the ones added."""
        added: list[str] = []
        for obs in observations:
            if obs not in self.observations:
                self.observations.append(obs)
                added.append(obs)
        return added


@dataclass
class Relation:
    """A directed, typed edge. Identity is (from_id, to_id, relation_type)."""

    from_id: str
    to_id: str
    from_name: str
    to_name: str
    relation_type: str

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.from_id, self.to_id, self.relation_type)

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Relation:
        if not isinstance(d["relationType"], str) or not d["relationType"]:
            msg = "relationType must be a non-empty string"
            raise TypeError(msg)
        _require_optional_str(d, "fromId", "toId", "fromName", "toName", "from", "to")
        return cls(
            from_id=d.get("fromId") or "",
            to_id=d.get("toId") or "",
            from_name=d.get("fromName") or d.get("from") or "",
            to_name=d.get("toName") or d.get("to") or "",
            relation_type=d["relationType"],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "fromId": self.from_id,
            "toId": self.to_id,
            "fromName": self.from_name,
            "toName": self.to_name,
            "relationType": self.relation_type,
        }


@dataclass
class Graph:
    """All entities and relations of one context, held in memory."""

    entities: list[Entity] = field(default_factory=list)
    relations: list[Relation] = field(default_factory=list)

    def find_entity(self, name_or_id: str) -> Entity | None:
        """Look up an entity by exact name, then by id."""
        for e in self.entities:
            if e.name == name_or_id:
                return e
        for e in self.entities:
            if e.id == name_or_id:
                return e
        return None

    def find_by_name(self, name: str) -> Entity | None:
        for e in self.entities:
            if e.name == name:
                return e
        return None

    def has_relation(self, from_id: str, to_id: str, relation_type: str) -> bool:
        key = (from_id, to_id, relation_type)
        return any(r.key == key for r in self.relations)

    def link(self, source: Entity, target: Entity, relation_type: str) -> bool:
        """Add source -> target unless the same edge exists. Returns True if added."""
        if self.has_relation(source.id, target.id, relation_type):
            return False
        self.relations.append(Relation(
            from_id=source.id,
            to_id=target.id,
            from_name=source.name,
            to_name=target.name,
            relation_type=relation_type,
        ))
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            "entities": [e.to_dict() for e in self.entities],
            "relations": [r.to_dict() for r in self.relations],
        }


@dataclass
class SearchResult:
    """Keyword search hits plus every relation touching a hit."""

    entities: list[Entity] = field(default_factory=list)
    relations: list[Relation] = field(default_factory=list)
    mode: str = "keyword"

    def to_dict(self) -> dict[str, Any]:
        return {
            "entities": [e.to_dict() for e in self.entities],
            "relations": [r.to_dict() for r in self.relations],
            "metadata": {"mode": self.mode},
        }


@dataclass
class VectorRecord:
    """One embedded entity in vectors.jsonl."""

    id: str
    text: str
    vector: list[float]
    metadata: dict[str, Any] | None = None

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> VectorRecord:
        if not isinstance(d["id"], str) or not isinstance(d.get("vector", []), list):
            msg = "vector record needs a string id and a list vector"
            raise TypeError(msg)
        return cls(
            id=d["id"],
            text=d.get("text", ""),
            vector=[float(x) for x in d.get("vector", [])],
            metadata=d.get("metadata"),
        )

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"id": self.id, "text": self.text, "vector": self.vector}
        if self.metadata:
            d["metadata"] = self.metadata
        return d


@dataclass
class VectorHit:
    id: str
    score: float
    text: str
    metadata: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "score": self.score, "text": self.text, "metadata": self.metadata}
