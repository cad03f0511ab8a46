# bookmark_rag/application/use_cases/import_bookmarks.py
from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any

from pydantic import ValidationError as SchemaError

from bookmark_rag.application.dto.import_dto import EmbeddingReport, ImportRecord, ImportResult
from bookmark_rag.application.ports.bookmark_repository_port import BookmarkRepositoryPort
from bookmark_rag.application.use_cases.embedding_store import EmbeddingStore
from bookmark_rag.domain.errors import DomainError, ValidationError
from bookmark_rag.domain.models import Bookmark
from bookmark_rag.domain.types import Result

logger = logging.getLogger(__name__)


class ImportBookmarks:
    """
    Application Use-Case: upsert scraper records and embed their text eagerly.

    - De-duplicates by external id.
    - Re-imports refresh content fields; tags, folder and favorite are kept.
    - Embedding failures are reported, never fatal: retrieval embeds lazily later.
    """

    def __init__(
        self,
        repository: BookmarkRepositoryPort,
        embeddings: EmbeddingStore | None = None,
    ) -> None:
        self.repository = repository
        self.embeddings = embeddings

    async def execute(self, records: Iterable[ImportRecord | Mapping[str, Any]]) -> ImportResult:
        new_count = updated_count = unchanged_count = 0
        skipped: list[str] = []
        touched: dict[str, Bookmark] = {}

        for position, raw in enumerate(records):
            try:
                record = (
                    raw if isinstance(raw, ImportRecord) else ImportRecord.model_validate(raw)
                )
            except SchemaError as ex:
                reason = f"record {position}: {ex.error_count()} validation error(s)"
                logger.warning("skipping invalid import %s", reason)
                skipped.append(reason)
                continue

            existing = self.repository.get(record.external_id)
            if existing is None:
                bookmark = record.to_bookmark()
                self.repository.upsert(bookmark)
                new_count += 1
            else:
                bookmark = _merge(existing, record)
                if bookmark == existing:
                    unchanged_count += 1
                else:
                    self.repository.upsert(bookmark)
                    updated_count += 1
            touched[bookmark.id] = bookmark

        report = EmbeddingReport()
        if self.embeddings is not None and touched:
            report = await self.embeddings.ensure_embeddings(touched.values())

        logger.info(
            "import finished: %d new, %d updated, %d unchanged, %d skipped, %d embedding failure(s)",
            new_count,
            updated_count,
            unchanged_count,
            len(skipped),
            len(report.failed),
        )
        return ImportResult(
            new_count=new_count,
            updated_count=updated_count,
            unchanged_count=unchanged_count,
            skipped=tuple(skipped),
            embedding_report=report,
        )

    async def load_json(self, path: str | Path) -> Result[ImportResult, DomainError]:
        """Import a scraper export: a JSON list of records or ``{"bookmarks": [...]}``."""
        try:
            payload = json.loads(Path(path).read_text(encoding="utf-8"))
        except OSError as ex:
            return Result.failure(ValidationError(f"cannot read {path}: {ex}"))
        except json.JSONDecodeError as ex:
            return Result.failure(ValidationError(f"{path} is not valid JSON: {ex}"))

        if isinstance(payload, Mapping):
            payload = payload.get("bookmarks")
        if not isinstance(payload, list):
            return Result.failure(
                ValidationError(f"{path}: expected a list of bookmarks or {{'bookmarks': [...]}}")
            )
        items = [item if isinstance(item, Mapping) else {} for item in payload]
        return Result.success(await self.execute(items))


def _merge(existing: Bookmark, record: ImportRecord) -> Bookmark:
    """Content fields from the new record, organisational fields from storage."""
    return existing.with_changes(
        author_handle=record.author_handle,
        author_name=record.author_display_name or existing.author_name,
        author_avatar=record.author_avatar or existing.author_avatar,
        text=record.text,
        posted_at=record.posted_at,
        saved_at=record.saved_at or existing.saved_at,
        url=record.url or existing.url,
        media_urls=tuple(record.media_urls) or existing.media_urls,
        deleted=False,
    )
