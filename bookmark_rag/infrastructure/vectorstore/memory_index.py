"""In-memory embedding index with optional JSON persistence.

Linear scan; fine for a personal corpus of a few thousand vectors.
"""

from __future__ import annotations

import json
import os
import tempfile
import threading
from collections.abc import Collection

from bookmark_rag.application.ports.embedding_index_port import EmbeddingIndexPort
from bookmark_rag.domain.errors import RepositoryError, ValidationError
from bookmark_rag.domain.models import EmbeddingRecord
from bookmark_rag.domain.similarity import top_k_by_cosine
from bookmark_rag.domain.types import Score, Vector

_FORMAT_VERSION = 1


class InMemoryEmbeddingIndex(EmbeddingIndexPort):
    def __init__(self, path: str | None = None) -> None:
        self._path = path
        self._records: dict[str, EmbeddingRecord] = {}
        self._lock = threading.Lock()
        self._dirty = False
        if path:
            self._load(path)

    def get(self, bookmark_id: str) -> EmbeddingRecord | None:
        return self._records.get(bookmark_id)

    def put(self, record: EmbeddingRecord) -> None:
        if not record.vector:
            raise ValidationError(f"empty vector for {record.bookmark_id}")
        # single dict assignment: readers see the old record or the new one
        with self._lock:
            self._records[record.bookmark_id] = record
            self._dirty = True

    def delete(self, bookmark_id: str) -> None:
        with self._lock:
            if self._records.pop(bookmark_id, None) is not None:
                self._dirty = True

    def nearest(
        self,
        query: Vector,
        top_k: int,
        min_similarity: float = 0.0,
        ids: Collection[str] | None = None,
    ) -> list[tuple[str, Score]]:
        with self._lock:
            snapshot = dict(self._records)
        if ids is None:
            items = [(rid, rec.vector) for rid, rec in snapshot.items()]
        else:
            items = [(rid, snapshot[rid].vector) for rid in ids if rid in snapshot]
        return top_k_by_cosine(query, items, top_k, min_similarity)

    def count(self) -> int:
        return len(self._records)

    def flush(self) -> None:
        """Write the index to ``path`` (temp file + rename, never half-written)."""
        if not self._path:
            return
        with self._lock:
            if not self._dirty:
                return
            payload = {
                "version": _FORMAT_VERSION,
                "records": [
                    {
                        "bookmark_id": r.bookmark_id,
                        "content_hash": r.content_hash,
                        "model": r.model,
                        "vector": list(r.vector),
                    }
                    for r in self._records.values()
                ],
            }
            self._dirty = False
        directory = os.path.dirname(os.path.abspath(self._path))
        tmp = None
        try:
            os.makedirs(directory, exist_ok=True)
            fd, tmp = tempfile.mkstemp(prefix=".embeddings-", suffix=".json", dir=directory)
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(payload, fh)
            os.replace(tmp, self._path)
        except OSError as ex:
            with self._lock:
                self._dirty = True
            if tmp is not None and os.path.exists(tmp):
                os.unlink(tmp)
            raise RepositoryError(f"cannot write embedding index {self._path}: {ex}") from ex

    def _load(self, path: str) -> None:
        if not os.path.exists(path):
            return
        try:
            with open(path, encoding="utf-8") as fh:
                payload = json.load(fh)
            records = {
                item["bookmark_id"]: EmbeddingRecord(
                    bookmark_id=item["bookmark_id"],
                    content_hash=item["content_hash"],
                    vector=tuple(float(x) for x in item["vector"]),
                    model=item.get("model", ""),
                )
                for item in payload.get("records", [])
            }
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as ex:
            raise RepositoryError(f"cannot read embedding index {path}: {ex}") from ex
        self._records = records
