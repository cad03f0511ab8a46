# bookmark_rag/application/use_cases/embedding_store.py
from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable, Sequence

from bookmark_rag.application.dto.import_dto import EmbeddingReport
from bookmark_rag.application.ports.bookmark_repository_port import BookmarkRepositoryPort
from bookmark_rag.application.ports.embedding_index_port import EmbeddingIndexPort
from bookmark_rag.application.ports.embedding_port import EmbeddingPort
from bookmark_rag.application.ports.telemetry_port import NoopTelemetry, TelemetryPort
from bookmark_rag.domain.errors import EmbeddingBatchFailure, EmbeddingError, RepositoryError
from bookmark_rag.domain.models import Bookmark, EmbeddingRecord
from bookmark_rag.domain.types import Score, Vector

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


class EmbeddingStore:
    """
    Keeps one current vector per bookmark.

    - A stored vector is reused while its content hash matches the bookmark text.
    - Missing or stale vectors are fetched in batches of at most ``batch_size``.
    - Items the provider rejects are retried alone, up to ``max_attempts`` calls in total.
    - Each provider call is bounded by ``timeout_s``.
    """

    def __init__(
        self,
        embedder: EmbeddingPort,
        index: EmbeddingIndexPort,
        batch_size: int = 20,
        max_attempts: int = 3,
        timeout_s: float = 30.0,
        telemetry: TelemetryPort | None = None,
    ) -> None:
        self.embedder = embedder
        self.index = index
        self.batch_size = max(1, batch_size)
        self.max_attempts = max(1, max_attempts)
        self.timeout_s = timeout_s
        self.telemetry = telemetry or NoopTelemetry()

    # ===== Bookmarks =====

    def current_vector(self, bookmark: Bookmark) -> Vector | None:
        record = self.index.get(bookmark.id)
        if record is not None and record.is_current_for(bookmark):
            return record.vector
        return None

    async def ensure_embedding(self, bookmark: Bookmark) -> Vector:
        """Vector for the bookmark's current text; no provider call when it is already stored.

        Raises:
            EmbeddingBatchFailure: when every attempt failed or the text is blank
        """
        cached = self.current_vector(bookmark)
        if cached is not None:
            return cached
        report = await self.ensure_embeddings([bookmark])
        if report.failure is not None:
            raise report.failure
        vector = self.current_vector(bookmark)
        if vector is None:
            raise EmbeddingBatchFailure((bookmark.id,), "nothing to embed")
        return vector

    async def ensure_embeddings(self, bookmarks: Iterable[Bookmark]) -> EmbeddingReport:
        reused: list[str] = []
        skipped: list[str] = []
        pending: list[Bookmark] = []
        seen: set[str] = set()
        for bm in bookmarks:
            if bm.id in seen:
                continue
            seen.add(bm.id)
            if not bm.text.strip():
                skipped.append(bm.id)
            elif self.current_vector(bm) is not None:
                reused.append(bm.id)
            else:
                pending.append(bm)

        embedded: list[str] = []
        retry: list[Bookmark] = []
        for start in range(0, len(pending), self.batch_size):
            batch = pending[start : start + self.batch_size]
            try:
                vectors = await self._call([bm.text for bm in batch])
            except EmbeddingError as ex:
                logger.warning("embedding batch of %d failed, retrying items alone: %s", len(batch), ex)
                retry.extend(batch)
                continue
            for bm, vec in zip(batch, vectors, strict=True):
                if vec is None:
                    retry.append(bm)
                else:
                    self._store(bm, vec)
                    embedded.append(bm.id)

        failed: list[str] = []
        last_error = ""
        for bm in retry:
            for attempt in range(2, self.max_attempts + 1):
                try:
                    vec = (await self._call([bm.text]))[0]
                except EmbeddingError as ex:
                    last_error = str(ex)
                    logger.warning("embedding %s failed (attempt %d/%d): %s", bm.id, attempt, self.max_attempts, ex)
                    continue
                if vec is not None:
                    self._store(bm, vec)
                    embedded.append(bm.id)
                    break
                last_error = "provider returned no vector"
            else:
                failed.append(bm.id)

        if embedded:
            try:
                self.index.flush()
            except RepositoryError as ex:
                # vectors stay usable in memory; the next flush retries
                logger.warning("embedding index not persisted: %s", ex)
        failure = None
        if failed:
            failure = EmbeddingBatchFailure(tuple(failed), last_error or "provider returned no vector")
            self.telemetry.incr("rag.embeddings.failed", {"count": str(len(failed))})
            logger.warning("%s", failure)
        if embedded:
            logger.info("embedded %d bookmark(s), reused %d", len(embedded), len(reused))
        return EmbeddingReport(
            embedded=tuple(embedded),
            reused=tuple(reused),
            skipped=tuple(skipped),
            failure=failure,
        )

    # ===== Maintenance =====

    def missing_count(self, bookmarks: Iterable[Bookmark]) -> int:
        """Bookmarks with text but no vector current for it."""
        return sum(1 for bm in bookmarks if bm.text.strip() and self.current_vector(bm) is None)

    def embedded_count(self) -> int:
        return self.index.count()

    async def backfill(
        self,
        repository: BookmarkRepositoryPort,
        on_progress: ProgressCallback | None = None,
    ) -> EmbeddingReport:
        """
        Embed every current bookmark that lacks a current vector.

        Runs one batch at a time and reports ``(done, total)`` after each batch.
        Items that still fail are listed in the report and picked up by the next run.
        """
        pending = [
            bm for bm in repository.all_current() if bm.text.strip() and self.current_vector(bm) is None
        ]
        total = len(pending)
        embedded: list[str] = []
        failed: list[str] = []
        reason = ""
        for start in range(0, total, self.batch_size):
            report = await self.ensure_embeddings(pending[start : start + self.batch_size])
            embedded.extend(report.embedded)
            if report.failure is not None:
                failed.extend(report.failure.items)
                reason = report.failure.reason
            if on_progress is not None:
                on_progress(min(start + self.batch_size, total), total)
        logger.info("backfill embedded %d of %d missing bookmark(s)", len(embedded), total)
        return EmbeddingReport(
            embedded=tuple(embedded),
            failure=EmbeddingBatchFailure(tuple(failed), reason) if failed else None,
        )

    # ===== Queries =====

    async def embed_query(self, text: str) -> Vector:
        if not text.strip():
            raise EmbeddingError("query text must not be empty")
        vec = (await self._call([text]))[0]
        if vec is None:
            raise EmbeddingError("provider returned no vector for the query")
        return vec

    def similarity(
        self,
        query: Vector,
        candidates: Sequence[Bookmark],
        top_m: int,
        min_similarity: float = 0.0,
    ) -> list[tuple[str, Score]]:
        """Rank candidates by cosine similarity, considering only vectors current for their text."""
        eligible = [bm.id for bm in candidates if self.current_vector(bm) is not None]
        if not eligible:
            return []
        return self.index.nearest(query, top_m, min_similarity, ids=eligible)

    # ===== Internals =====

    async def _call(self, texts: list[str]) -> list[Vector | None]:
        try:
            vectors = await asyncio.wait_for(self.embedder.embed_texts(texts), self.timeout_s)
        except TimeoutError as ex:
            raise EmbeddingError(f"embedding call timed out after {self.timeout_s:g}s") from ex
        if len(vectors) != len(texts):
            raise EmbeddingError(f"expected {len(texts)} vectors, got {len(vectors)}")
        return [tuple(v) if v else None for v in vectors]

    def _store(self, bookmark: Bookmark, vector: Vector) -> None:
        self.index.put(
            EmbeddingRecord(
                bookmark_id=bookmark.id,
                content_hash=bookmark.content_hash,
                vector=vector,
                model=self.embedder.model_name,
            )
        )
