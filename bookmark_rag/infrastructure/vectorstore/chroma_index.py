from __future__ import annotations

import os
from collections.abc import Collection
from dataclasses import dataclass
from typing import Any

from bookmark_rag.application.ports.embedding_index_port import EmbeddingIndexPort
from bookmark_rag.domain.errors import ConfigurationError, RepositoryError
from bookmark_rag.domain.models import EmbeddingRecord
from bookmark_rag.domain.similarity import top_k_by_cosine
from bookmark_rag.domain.types import Score, Vector

try:  # pragma: no cover - exercised via tests with monkeypatch
    import chromadb
except Exception:  # noqa: BLE001
    chromadb = None


def _column(result: dict[str, Any], key: str) -> list[Any]:
    # Chroma may hand back numpy arrays, whose truth value is ambiguous
    value = result.get(key)
    return [] if value is None else list(value)


@dataclass
class ChromaEmbeddingIndex(EmbeddingIndexPort):
    persist_dir: str = "var/chroma"
    collection: str = "bookmark_embeddings"
    _client: Any | None = None
    _coll: Any | None = None

    def __post_init__(self) -> None:
        if chromadb is None:
            raise ConfigurationError("chromadb not installed.")
        os.makedirs(self.persist_dir, exist_ok=True)
        try:
            self._client = chromadb.PersistentClient(path=self.persist_dir)
            self._coll = self._client.get_or_create_collection(
                name=self.collection,
                metadata={"hnsw:space": "cosine"},
            )
        except Exception as ex:  # noqa: BLE001
            raise RepositoryError(f"Failed to init Chroma at '{self.persist_dir}': {ex}") from ex

    def get(self, bookmark_id: str) -> EmbeddingRecord | None:
        try:
            result = self._coll.get(ids=[bookmark_id], include=["embeddings", "metadatas"])
        except Exception as ex:  # noqa: BLE001
            raise RepositoryError(f"Get failed: {ex}") from ex
        ids = _column(result, "ids")
        vectors = _column(result, "embeddings")
        if not ids or not vectors:
            return None
        metadatas = _column(result, "metadatas")
        meta = (metadatas[0] if metadatas else None) or {}
        return EmbeddingRecord(
            bookmark_id=str(ids[0]),
            content_hash=str(meta.get("content_hash", "")),
            vector=tuple(float(x) for x in vectors[0]),
            model=str(meta.get("model", "")),
        )

    def put(self, record: EmbeddingRecord) -> None:
        # one id per upsert: each item is replaced atomically
        try:
            self._coll.upsert(
                ids=[record.bookmark_id],
                embeddings=[list(record.vector)],
                metadatas=[{"content_hash": record.content_hash, "model": record.model}],
            )
        except Exception as ex:  # noqa: BLE001
            raise RepositoryError(f"Upsert failed: {ex}") from ex

    def delete(self, bookmark_id: str) -> None:
        try:
            self._coll.delete(ids=[bookmark_id])
        except Exception as ex:  # noqa: BLE001
            raise RepositoryError(f"Delete failed: {ex}") from ex

    def nearest(
        self,
        query: Vector,
        top_k: int,
        min_similarity: float = 0.0,
        ids: Collection[str] | None = None,
    ) -> list[tuple[str, Score]]:
        if top_k <= 0:
            return []
        if ids is not None:
            return self._nearest_among(query, list(ids), top_k, min_similarity)
        try:
            n = min(top_k, self._coll.count())
            if n == 0:
                return []
            result = self._coll.query(query_embeddings=[list(query)], n_results=n)
        except Exception as ex:  # noqa: BLE001
            raise RepositoryError(f"Search failed: {ex}") from ex

        found = (_column(result, "ids") or [[]])[0]
        distances = (_column(result, "distances") or [[]])[0]
        hits: list[tuple[str, Score]] = []
        for idx, rid in enumerate(found):
            distance = float(distances[idx]) if idx < len(distances) else 1.0
            score = 1.0 - distance  # cosine distance -> similarity
            if score >= min_similarity:
                hits.append((str(rid), score))
        return hits

    def _nearest_among(
        self, query: Vector, ids: list[str], top_k: int, min_similarity: float
    ) -> list[tuple[str, Score]]:
        if not ids:
            return []
        try:
            result = self._coll.get(ids=ids, include=["embeddings"])
        except Exception as ex:  # noqa: BLE001
            raise RepositoryError(f"Get failed: {ex}") from ex
        by_id = {
            str(rid): tuple(float(x) for x in vec)
            for rid, vec in zip(_column(result, "ids"), _column(result, "embeddings"), strict=False)
        }
        items = [(rid, by_id[rid]) for rid in ids if rid in by_id]
        return top_k_by_cosine(query, items, top_k, min_similarity)

    def count(self) -> int:
        try:
            return int(self._coll.count())
        except Exception as ex:  # noqa: BLE001
            raise RepositoryError(f"Count failed: {ex}") from ex

    def flush(self) -> None:
        # PersistentClient writes through on every upsert
        return None
