# bookmark_rag/application/dto/import_dto.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from bookmark_rag.domain.errors import EmbeddingBatchFailure
from bookmark_rag.domain.models import Bookmark


class ImportRecord(BaseModel):
    """One post as exported by the browser-side scraper."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    external_id: str = Field(
        min_length=1, validation_alias=AliasChoices("external_id", "tweet_id", "id")
    )
    author_handle: str = Field(min_length=1)
    author_display_name: str = Field(
        default="", validation_alias=AliasChoices("author_display_name", "author_name")
    )
    author_avatar: str | None = None
    text: str
    posted_at: datetime
    saved_at: datetime | None = None
    url: str = ""
    media_urls: list[str] = Field(default_factory=list)

    @field_validator("external_id", mode="before")
    @classmethod
    def _id_as_string(cls, v: Any) -> Any:
        # scrapers emit numeric post ids as JSON numbers
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v

    @field_validator("author_handle")
    @classmethod
    def _strip_at(cls, v: str) -> str:
        handle = v.strip().lstrip("@")
        if not handle:
            raise ValueError("author_handle must not be empty")
        return handle

    @field_validator("media_urls", mode="before")
    @classmethod
    def _none_to_empty(cls, v: Any) -> Any:
        return [] if v is None else v

    @field_validator("posted_at", "saved_at")
    @classmethod
    def _assume_utc(cls, v: datetime | None) -> datetime | None:
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=UTC)
        return v

    def to_bookmark(self) -> Bookmark:
        return Bookmark(
            id=self.external_id,
            author_handle=self.author_handle,
            author_name=self.author_display_name or self.author_handle,
            text=self.text,
            posted_at=self.posted_at,
            saved_at=self.saved_at,
            url=self.url,
            media_urls=tuple(self.media_urls),
            author_avatar=self.author_avatar,
        )


@dataclass(frozen=True)
class EmbeddingReport:
    """
    Outcome of one ensure_embeddings call.

    - embedded: ids that got a fresh vector
    - reused:   ids whose stored vector still matched the text (no network call)
    - skipped:  ids with blank text, nothing to embed
    - failure:  items that failed every attempt, if any
    """

    embedded: tuple[str, ...] = ()
    reused: tuple[str, ...] = ()
    skipped: tuple[str, ...] = ()
    failure: EmbeddingBatchFailure | None = None

    @property
    def failed(self) -> tuple[str, ...]:
        return self.failure.items if self.failure is not None else ()


@dataclass(frozen=True)
class ImportResult:
    new_count: int = 0
    updated_count: int = 0
    unchanged_count: int = 0
    skipped: tuple[str, ...] = ()  # reasons, one per rejected record
    embedding_report: EmbeddingReport = field(default_factory=EmbeddingReport)
