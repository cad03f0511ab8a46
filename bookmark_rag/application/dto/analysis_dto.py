# bookmark_rag/application/dto/analysis_dto.py
from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class RelativeDateRange(BaseModel):
    """``{"unit": "months", "amount": 3}`` means the last three months."""

    unit: str = "months"
    amount: int = Field(default=1, ge=0)


class SearchParams(BaseModel):
    """Structured search parameters returned by the analysis model.

    Lenient on purpose: unknown keys are ignored, ``null`` lists become empty,
    numeric strings are coerced. Anything else fails validation and the caller
    degrades the intent.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    keywords: list[str] = Field(default_factory=list)
    date_range: RelativeDateRange | None = Field(default=None, alias="dateRange")
    authors: list[str] | None = None
    topics: list[str] | None = None

    @field_validator("keywords", mode="before")
    @classmethod
    def _none_to_empty(cls, v: Any) -> Any:
        return [] if v is None else v

    @field_validator("keywords", "authors", "topics", mode="before")
    @classmethod
    def _single_string(cls, v: Any) -> Any:
        if isinstance(v, str):
            return [v]
        return v
