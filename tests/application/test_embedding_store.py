"""Tests for the EmbeddingStore use case."""

import asyncio
from datetime import UTC, datetime

import pytest

from bookmark_rag.application.use_cases.embedding_store import EmbeddingStore
from bookmark_rag.domain.errors import EmbeddingBatchFailure, EmbeddingError, RepositoryError
from bookmark_rag.domain.models import Bookmark
from bookmark_rag.infrastructure.storage.memory_repository import InMemoryBookmarkRepository
from bookmark_rag.infrastructure.vectorstore.memory_index import InMemoryEmbeddingIndex


def _vec(text: str) -> tuple[float, ...]:
    return (1.0, len(text) / 100.0)


class FakeEmbedder:
    model_name = "fake-embed"

    def __init__(self, reject=(), fail_batches: bool = False, delay: float = 0.0) -> None:
        self.reject = set(reject)
        self.fail_batches = fail_batches
        self.delay = delay
        self.calls: list[list[str]] = []

    async def embed_texts(self, texts):
        self.calls.append(list(texts))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_batches and len(texts) > 1:
            raise EmbeddingError("batch rejected")
        return [None if t in self.reject else _vec(t) for t in texts]


def _bm(i: int | str, text: str = "") -> Bookmark:
    return Bookmark(
        id=str(i),
        author_handle="alice",
        author_name="Alice",
        text=text or f"bookmark number {i}",
        posted_at=datetime(2024, 1, 1, tzinfo=UTC),
    )


def test_second_request_reuses_stored_vector():
    embedder = FakeEmbedder()
    store = EmbeddingStore(embedder, InMemoryEmbeddingIndex())
    bm = _bm(1)

    first = asyncio.run(store.ensure_embedding(bm))
    second = asyncio.run(store.ensure_embedding(bm))

    assert first == second == _vec(bm.text)
    assert len(embedder.calls) == 1


def test_pending_items_are_batched():
    embedder = FakeEmbedder()
    store = EmbeddingStore(embedder, InMemoryEmbeddingIndex(), batch_size=20)
    corpus = [_bm(i) for i in range(45)]

    report = asyncio.run(store.ensure_embeddings(corpus))
    again = asyncio.run(store.ensure_embeddings(corpus))

    assert [len(c) for c in embedder.calls] == [20, 20, 5]
    assert len(report.embedded) == 45
    assert report.failure is None
    assert again.embedded == ()
    assert len(again.reused) == 45


def test_changed_text_makes_vector_stale():
    embedder = FakeEmbedder()
    index = InMemoryEmbeddingIndex()
    store = EmbeddingStore(embedder, index)
    bm = _bm(1, "old text")
    asyncio.run(store.ensure_embedding(bm))

    edited = bm.with_changes(text="completely new text")
    assert store.current_vector(edited) is None

    asyncio.run(store.ensure_embedding(edited))
    assert index.get("1").content_hash == edited.content_hash
    assert len(embedder.calls) == 2


def test_rejected_batch_is_retried_item_by_item():
    embedder = FakeEmbedder(fail_batches=True)
    store = EmbeddingStore(embedder, InMemoryEmbeddingIndex())

    report = asyncio.run(store.ensure_embeddings([_bm(1), _bm(2), _bm(3)]))

    assert len(embedder.calls) == 4
    assert sorted(report.embedded) == ["1", "2", "3"]
    assert report.failed == ()


def test_items_failing_every_attempt_are_reported():
    embedder = FakeEmbedder(reject={"bad"})
    store = EmbeddingStore(embedder, InMemoryEmbeddingIndex(), max_attempts=3)

    report = asyncio.run(store.ensure_embeddings([_bm("a", "fine"), _bm("b", "bad")]))

    assert report.embedded == ("a",)
    assert report.failed == ("b",)
    assert isinstance(report.failure, EmbeddingBatchFailure)
    # one batch call, then two solo attempts for the rejected item
    assert embedder.calls == [["fine", "bad"], ["bad"], ["bad"]]

    with pytest.raises(EmbeddingBatchFailure):
        asyncio.run(store.ensure_embedding(_bm("b", "bad")))


def test_blank_text_is_skipped_without_calls():
    embedder = FakeEmbedder()
    store = EmbeddingStore(embedder, InMemoryEmbeddingIndex())

    report = asyncio.run(store.ensure_embeddings([_bm(1, "   ")]))

    assert report.skipped == ("1",)
    assert embedder.calls == []


def test_query_embedding_times_out():
    store = EmbeddingStore(FakeEmbedder(delay=1.0), InMemoryEmbeddingIndex(), timeout_s=0.01)
    with pytest.raises(EmbeddingError):
        asyncio.run(store.embed_query("rust"))


def test_empty_query_is_rejected():
    store = EmbeddingStore(FakeEmbedder(), InMemoryEmbeddingIndex())
    with pytest.raises(EmbeddingError):
        asyncio.run(store.embed_query("  "))


def test_similarity_ignores_stale_vectors():
    store = EmbeddingStore(FakeEmbedder(), InMemoryEmbeddingIndex())
    a, b = _bm("a", "alpha"), _bm("b", "beta")
    asyncio.run(store.ensure_embeddings([a, b]))

    ranked = store.similarity(_vec("alpha"), [a, b.with_changes(text="edited")], top_m=5)

    assert [i for i, _ in ranked] == ["a"]


def test_embedded_vectors_are_flushed(tmp_path):
    path = tmp_path / "embeddings.json"
    store = EmbeddingStore(FakeEmbedder(), InMemoryEmbeddingIndex(str(path)))

    asyncio.run(store.ensure_embeddings([_bm(1)]))

    assert path.exists()
    assert InMemoryEmbeddingIndex(str(path)).count() == 1


class UnwritableIndex(InMemoryEmbeddingIndex):
    def flush(self) -> None:
        raise RepositoryError("disk full")


def test_flush_failure_keeps_vectors_in_memory():
    store = EmbeddingStore(FakeEmbedder(), UnwritableIndex())
    bm = _bm(1)

    report = asyncio.run(store.ensure_embeddings([bm]))

    assert report.embedded == ("1",)
    assert report.failure is None
    assert store.current_vector(bm) == _vec(bm.text)


class TestBackfill:
    def test_embeds_only_missing_and_reports_progress(self):
        embedder = FakeEmbedder()
        store = EmbeddingStore(embedder, InMemoryEmbeddingIndex(), batch_size=2)
        bookmarks = [_bm(i) for i in range(1, 6)]
        asyncio.run(store.ensure_embeddings(bookmarks[:1]))
        repository = InMemoryBookmarkRepository(bookmarks)
        progress: list[tuple[int, int]] = []

        assert store.missing_count(bookmarks) == 4
        report = asyncio.run(store.backfill(repository, lambda done, total: progress.append((done, total))))

        assert report.embedded == ("2", "3", "4", "5")
        assert progress == [(2, 4), (4, 4)]
        assert store.missing_count(bookmarks) == 0
        assert store.embedded_count() == 5

    def test_failed_items_are_left_for_the_next_run(self):
        bookmarks = [_bm(1), _bm(2, "rejected")]
        repository = InMemoryBookmarkRepository(bookmarks)
        store = EmbeddingStore(FakeEmbedder(reject={"rejected"}), InMemoryEmbeddingIndex())

        report = asyncio.run(store.backfill(repository))

        assert report.embedded == ("1",)
        assert report.failed == ("2",)
        assert store.missing_count(bookmarks) == 1

        store.embedder = FakeEmbedder()
        retry = asyncio.run(store.backfill(repository))
        assert retry.embedded == ("2",)
        assert retry.failure is None

    def test_nothing_missing_makes_no_calls(self):
        embedder = FakeEmbedder()
        store = EmbeddingStore(embedder, InMemoryEmbeddingIndex())

        report = asyncio.run(store.backfill(InMemoryBookmarkRepository([])))

        assert report.embedded == ()
        assert embedder.calls == []
