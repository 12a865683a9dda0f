"""Vector index: embedding records in vectors.jsonl with linear cosine search.

vectors.jsonl holds one {"id", "text", "vector", "metadata"?} object per line
and is rewritten in full on every change, under its own lock marker
(.vectors.lock) so that upserts from different processes are merged instead of
overwriting each other. The graph lock is never needed here.

If the embedding function is missing or fails, a zero vector of the configured
dimensionality is stored instead: semantic search then ranks everything
equally, while keyword search and graph writes keep working.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING

import numpy as np

from uks.errors import LockError, StorageError
from uks.lock import FileLock
from uks.models import DEFAULT_ENTITY_TYPE, VectorHit, VectorRecord
from uks.validation import require_string

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from uks.config import UksConfig
    from uks.models import Entity, Graph

    EmbedFn = Callable[[str], Sequence[float]]

logger = logging.getLogger("uks.vectors")

_PREVIEW_CHARS = 200


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """dot(a, b) / (|a| * |b|) over the common prefix; 0.0 if either norm is 0."""
    n = min(len(a), len(b))
    if n == 0:
        return 0.0
    va = np.asarray(a[:n], dtype=np.float64)
    vb = np.asarray(b[:n], dtype=np.float64)
    norm_a = float(np.linalg.norm(va))
    norm_b = float(np.linalg.norm(vb))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return float(np.dot(va, vb)) / (norm_a * norm_b)


def entity_text(entity: Entity) -> str:
    """Text embedded for an entity by embed_all."""
    return f"[{entity.entity_type or DEFAULT_ENTITY_TYPE}] {entity.name}. " + ". ".join(entity.observations)


class VectorIndex:
    """Embedding records persisted independently of the graph files."""

    def __init__(
        self,
        storage_path: Path | str,
        embed_fn: EmbedFn | None = None,
        *,
        dimensions: int = 384,
        lock_timeout_ms: int = 5000,
        lock_retries: int = 3,
        lock_retry_delay_ms: int = 100,
    ) -> None:
        self.storage_path = Path(storage_path)
        self.vector_file = self.storage_path / "vectors.jsonl"
        self.embed_fn = embed_fn
        self.dimensions = dimensions
        self.lock = FileLock(
            self.storage_path / ".vectors.lock",
            timeout_ms=lock_timeout_ms,
            retries=lock_retries,
            retry_delay_ms=lock_retry_delay_ms,
        )
        self.records: dict[str, VectorRecord] = {}
        self._embedding_available = embed_fn is not None

    @classmethod
    def from_config(cls, cfg: UksConfig, embed_fn: EmbedFn | None = None) -> VectorIndex:
        if embed_fn is None and cfg.embeddings.enabled:
            from uks.embedder import get_embedder
            embedder = get_embedder(
                cfg.embeddings.model, cfg.embedding_cache_dir, dimensions=cfg.embeddings.dimensions,
            )
            embed_fn = embedder.embed_document
        st = cfg.storage
        return cls(
            st.path,
            embed_fn,
            dimensions=cfg.embeddings.dimensions,
            lock_timeout_ms=st.lock_timeout_ms,
            lock_retries=st.lock_retries,
            lock_retry_delay_ms=st.lock_retry_delay_ms,
        )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self) -> dict[str, VectorRecord]:
        """(Re)read vectors.jsonl. A missing file means no records."""
        records: dict[str, VectorRecord] = {}
        try:
            raw = self.vector_file.read_bytes()
        except FileNotFoundError:
            raw = b""
        except OSError as exc:
            msg = f"Failed to load vectors: {exc}"
            raise StorageError(msg, {"path": str(self.vector_file)}) from exc
        for line in raw.split(b"\n"):
            line = line.strip()
            if not line:
                continue
            try:
                record = VectorRecord.from_dict(json.loads(line.decode("utf-8")))
            except (UnicodeDecodeError, json.JSONDecodeError, KeyError, TypeError, ValueError):
                logger.debug("malformed vector record skipped")
                continue
            records[record.id] = record
        self.records = records
        return records

    def _save(self) -> None:
        tmp = self.vector_file.with_suffix(".jsonl.tmp")
        try:
            self.storage_path.mkdir(parents=True, exist_ok=True)
            lines = [json.dumps(r.to_dict()) for r in self.records.values()]
            tmp.write_text("\n".join(lines) + ("\n" if lines else ""), encoding="utf-8")
            os.replace(tmp, self.vector_file)
        except OSError as exc:
            msg = f"Failed to save vectors: {exc}"
            raise StorageError(msg, {"path": str(self.vector_file)}) from exc

    def _store(self, new_records: list[VectorRecord]) -> None:
        """Merge records into the file under the vector lock."""
        if not self.lock.acquire():
            msg = "Failed to acquire vector lock: index is busy."
            raise LockError(msg, {"path": str(self.lock.path)})
        try:
            self.load()
            for record in new_records:
                self.records[record.id] = record
            self._save()
        finally:
            self.lock.release()

    # ------------------------------------------------------------------
    # Embedding
    # ------------------------------------------------------------------

    def _zero(self) -> list[float]:
        return [0.0] * self.dimensions

    def embed(self, text: str) -> list[float]:
        """Embed text, or return a zero vector if embeddings are unavailable."""
        if self.embed_fn is None or not self._embedding_available:
            return self._zero()
        try:
            vector = self.embed_fn(text)
        except Exception:  # model missing, download failed, API error...
            logger.warning("embedding model unavailable, semantic search disabled", exc_info=True)
            self._embedding_available = False
            return self._zero()
        return [float(x) for x in np.asarray(vector, dtype=np.float64).ravel()]

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def upsert(self, entity_id: str, text: str) -> VectorRecord | None:
        """Embed text and store it under entity_id, replacing any previous record.

        Empty text is a no-op.
        """
        if not text:
            return None
        rid = require_string(entity_id, "id")
        record = VectorRecord(id=rid, text=text[:_PREVIEW_CHARS], vector=self.embed(text))
        self._store([record])
        return record

    def embed_all(self, graph: Graph, force: bool = False) -> int:
        """Embed every entity of graph lacking a record (all of them if force).

        Returns the number of records written.
        """
        self.load()
        pending = [e for e in graph.entities if force or e.id not in self.records]
        if not pending:
            return 0
        records = []
        for entity in pending:
            text = entity_text(entity)
            records.append(VectorRecord(
                id=entity.id,
                text=text,
                vector=self.embed(text),
                metadata={"type": entity.entity_type, "name": entity.name},
            ))
        self._store(records)
        logger.info("embedded %d entities", len(records))
        return len(records)

    def search(self, query_text: str, top_k: int = 5) -> list[VectorHit]:
        """Rank every stored record by cosine similarity to the query."""
        query = require_string(query_text, "queryText")
        if top_k <= 0:
            return []
        # Reload every time: other processes may have written since
        self.load()
        query_vec = self.embed(query)
        hits = [
            VectorHit(
                id=r.id,
                score=cosine_similarity(query_vec, r.vector),
                text=r.text,
                metadata=r.metadata,
            )
            for r in self.records.values()
        ]
        hits.sort(key=lambda h: h.score, reverse=True)
        return hits[:top_k]
