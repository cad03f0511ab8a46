"""Tests for the pydantic DTOs at the application boundary."""

from datetime import UTC, datetime

import pytest
from pydantic import ValidationError as SchemaError

from bookmark_rag.application.dto.analysis_dto import SearchParams
from bookmark_rag.application.dto.import_dto import EmbeddingReport, ImportRecord
from bookmark_rag.domain.errors import EmbeddingBatchFailure


class TestSearchParams:
    def test_model_output_shape(self):
        params = SearchParams.model_validate(
            {
                "keywords": ["anime"],
                "dateRange": {"unit": "months", "amount": 3},
                "authors": None,
                "topics": ["anime"],
                "confidence": 0.9,
            }
        )

        assert params.keywords == ["anime"]
        assert params.date_range.amount == 3
        assert params.authors is None

    def test_lenient_coercions(self):
        params = SearchParams.model_validate({"keywords": None, "authors": "bob", "topics": "ai"})

        assert params.keywords == []
        assert params.authors == ["bob"]
        assert params.topics == ["ai"]

    def test_negative_amount_is_rejected(self):
        with pytest.raises(SchemaError):
            SearchParams.model_validate({"dateRange": {"unit": "days", "amount": -1}})


class TestImportRecord:
    def test_scraper_aliases_and_normalization(self):
        record = ImportRecord.model_validate(
            {
                "tweet_id": 1790000000000000000,
                "author_handle": "@bob",
                "author_name": "Bob",
                "text": "hi",
                "posted_at": "2024-05-01T08:00:00",
                "media_urls": None,
            }
        )
        bm = record.to_bookmark()

        assert bm.id == "1790000000000000000"
        assert bm.author_handle == "bob"
        assert bm.author_name == "Bob"
        assert bm.posted_at == datetime(2024, 5, 1, 8, 0, tzinfo=UTC)
        assert bm.media_urls == ()

    def test_display_name_defaults_to_handle(self):
        record = ImportRecord(
            external_id="1", author_handle="bob", text="x", posted_at=datetime(2024, 1, 1, tzinfo=UTC)
        )
        assert record.to_bookmark().author_name == "bob"

    def test_bare_at_handle_is_rejected(self):
        with pytest.raises(SchemaError):
            ImportRecord.model_validate(
                {"id": "1", "author_handle": "@", "text": "x", "posted_at": "2024-01-01T00:00:00Z"}
            )


def test_embedding_report_failed_ids():
    assert EmbeddingReport().failed == ()
    report = EmbeddingReport(failure=EmbeddingBatchFailure(("a", "b"), "timeout"))
    assert report.failed == ("a", "b")
