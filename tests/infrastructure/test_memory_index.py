"""Tests for the in-memory embedding index and its JSON persistence."""

import pytest

from bookmark_rag.domain.errors import RepositoryError, ValidationError
from bookmark_rag.domain.models import EmbeddingRecord
from bookmark_rag.infrastructure.vectorstore.memory_index import InMemoryEmbeddingIndex


def _rec(i: str, vec, h: str = "h") -> EmbeddingRecord:
    return EmbeddingRecord(bookmark_id=i, content_hash=h, vector=tuple(vec), model="m")


def test_put_replaces_record():
    index = InMemoryEmbeddingIndex()
    index.put(_rec("a", [1.0, 0.0], "old"))
    index.put(_rec("a", [0.0, 1.0], "new"))

    assert index.count() == 1
    assert index.get("a").content_hash == "new"


def test_empty_vector_is_rejected():
    with pytest.raises(ValidationError):
        InMemoryEmbeddingIndex().put(_rec("a", []))


def test_nearest_ranks_and_filters():
    index = InMemoryEmbeddingIndex()
    index.put(_rec("a", [1.0, 0.0]))
    index.put(_rec("b", [0.7, 0.7]))
    index.put(_rec("c", [0.0, 1.0]))

    ranked = index.nearest((1.0, 0.0), top_k=3, min_similarity=0.5)
    assert [i for i, _ in ranked] == ["a", "b"]

    restricted = index.nearest((1.0, 0.0), top_k=3, ids=["c", "b", "missing"])
    assert [i for i, _ in restricted] == ["b", "c"]


def test_delete():
    index = InMemoryEmbeddingIndex()
    index.put(_rec("a", [1.0]))
    index.delete("a")
    index.delete("a")

    assert index.get("a") is None


def test_flush_and_reload(tmp_path):
    path = str(tmp_path / "index" / "embeddings.json")
    index = InMemoryEmbeddingIndex(path)
    index.put(_rec("a", [0.25, 0.5]))
    index.flush()

    reloaded = InMemoryEmbeddingIndex(path)
    assert reloaded.get("a") == _rec("a", [0.25, 0.5])
    assert not list((tmp_path / "index").glob(".embeddings-*"))


def test_flush_without_path_is_a_no_op():
    index = InMemoryEmbeddingIndex()
    index.put(_rec("a", [1.0]))
    index.flush()


def test_corrupt_file_is_reported(tmp_path):
    path = tmp_path / "embeddings.json"
    path.write_text("{broken", encoding="utf-8")

    with pytest.raises(RepositoryError):
        InMemoryEmbeddingIndex(str(path))
