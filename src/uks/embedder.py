"""Embedding functions for the vector index.

A model string picks the backend: ``fastembed:<model>`` (local ONNX, default)
or ``gemini:<model>`` (API). Either way vectors are cached on disk under the
storage directory, keyed by model, dimensions and text, so re-embedding an
unchanged entity never reaches the model.
"""

from __future__ import annotations

import hashlib
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    import numpy as np
    from diskcache import Cache
    from fastembed import TextEmbedding
    from google import genai
    from numpy.typing import NDArray


class Embedder(Protocol):
    model: str
    dimensions: int

    def embed_document(self, text: str) -> NDArray[np.float32]: ...


def _safe_model_name(model: str) -> str:
    """Sanitize a model string for use as a filesystem directory name."""
    return model.replace("/", "_").replace(":", "_")


# ---------------------------------------------------------------------------
# FastEmbedEmbedder
# ---------------------------------------------------------------------------

@dataclass
class FastEmbedEmbedder:
    """Local embedder using fastembed TextEmbedding (ONNX, no API key needed)."""

    model: str = "sentence-transformers/all-MiniLM-L6-v2"
    dimensions: int = 384
    _fe_model: TextEmbedding | None = field(default=None, repr=False, init=False)

    @property
    def _model(self) -> TextEmbedding:
        """Get or create the fastembed model (lazy)."""
        if self._fe_model is None:
            from fastembed import TextEmbedding
            self._fe_model = TextEmbedding(self.model)
        return self._fe_model

    def embed_document(self, text: str) -> NDArray[np.float32]:
        import numpy as np
        embeddings = list(self._model.embed([text]))
        return np.array(embeddings[0], dtype=np.float32)


# ---------------------------------------------------------------------------
# GeminiEmbedder
# ---------------------------------------------------------------------------

@dataclass
class GeminiEmbedder:
    """Embedder backed by the Google Gemini embedding API."""

    model: str = "gemini-embedding-001"
    dimensions: int = 768
    task_type: str = "RETRIEVAL_DOCUMENT"
    api_key: str | None = None

    _client: genai.Client | None = field(default=None, repr=False, init=False)

    @property
    def client(self) -> genai.Client:
        """Get or create the Gemini client (lazy)."""
        if self._client is None:
            try:
                from google import genai as _genai
            except ImportError as e:
                msg = "google-genai is required for Gemini embeddings: pip install google-genai"
                raise ImportError(msg) from e
            key = self.api_key or os.environ.get("GEMINI_API_KEY") or os.environ.get("GOOGLE_API_KEY")
            self._client = _genai.Client(api_key=key) if key else _genai.Client()
        return self._client

    def _embed(self, text: str) -> list[NDArray[np.float32]]:
        import numpy as np
        result = self.client.models.embed_content(
            model=self.model,
            contents=text,
            config={
                "task_type": self.task_type,
                "output_dimensionality": self.dimensions,
            },
        )
        if result.embeddings is None:
            msg = "Gemini API returned no embeddings"
            raise RuntimeError(msg)
        return [np.array(emb.values, dtype=np.float32) for emb in result.embeddings]

    def embed_document(self, text: str) -> NDArray[np.float32]:
        return self._embed(text)[0]


# ---------------------------------------------------------------------------
# CachedEmbedder
# ---------------------------------------------------------------------------

@dataclass
class CachedEmbedder:
    """Wraps an embedder with a diskcache keyed by text.

    Cache key: sha256 of "{model}:{dimensions}:{text}"
    Cache path: {cache_dir}/{safe_model_name}/
    Stored as raw float32 bytes.
    """

    embedder: Embedder
    cache_dir: Path = field(default_factory=lambda: Path.home() / ".cache" / "uks" / "embeddings")
    _disk_cache: Cache | None = field(default=None, repr=False, init=False)

    @property
    def model(self) -> str:
        return self.embedder.model

    @property
    def dimensions(self) -> int:
        return self.embedder.dimensions

    @property
    def _cache(self) -> Cache:
        if self._disk_cache is None:
            from diskcache import Cache
            model_dir = self.cache_dir / _safe_model_name(self.embedder.model)
            model_dir.mkdir(parents=True, exist_ok=True)
            self._disk_cache = Cache(str(model_dir))
        return self._disk_cache

    def _cache_key(self, text: str) -> str:
        raw = f"{self.embedder.model}:{self.dimensions}:{text}"
        return hashlib.sha256(raw.encode()).hexdigest()

    def embed_document(self, text: str) -> NDArray[np.float32]:
        import numpy as np
        key = self._cache_key(text)
        cached = self._cache.get(key)
        if cached is not None:
            return np.frombuffer(cached, dtype=np.float32)  # type: ignore[arg-type]
        embedding = self.embedder.embed_document(text)
        self._cache.set(key, embedding.tobytes())
        return embedding


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def get_embedder(model: str, cache_dir: Path, dimensions: int | None = None) -> CachedEmbedder:
    """Create a CachedEmbedder for a model string.

    - ``gemini:<model>``  → GeminiEmbedder (reads GEMINI_API_KEY or GOOGLE_API_KEY)
    - ``fastembed:<model>`` or bare name → FastEmbedEmbedder
    """
    lower = model.lower()
    base: FastEmbedEmbedder | GeminiEmbedder
    if lower.startswith("gemini:"):
        base = GeminiEmbedder(model=model[len("gemini:"):])
    elif lower.startswith("fastembed:"):
        base = FastEmbedEmbedder(model=model[len("fastembed:"):])
    else:
        base = FastEmbedEmbedder(model=model)
    if dimensions is not None:
        base.dimensions = dimensions
    return CachedEmbedder(embedder=base, cache_dir=cache_dir)
