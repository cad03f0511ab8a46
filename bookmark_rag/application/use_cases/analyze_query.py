# bookmark_rag/application/use_cases/analyze_query.py
from __future__ import annotations

import asyncio
import logging
from collections.abc import Collection

from pydantic import ValidationError as SchemaError

from bookmark_rag.application.dto.analysis_dto import SearchParams
from bookmark_rag.application.ports.clock_port import ClockPort
from bookmark_rag.application.ports.llm_port import ChatMessage, LLMPort
from bookmark_rag.application.ports.telemetry_port import NoopTelemetry, TelemetryPort
from bookmark_rag.domain.errors import AnalysisUnavailable, StreamTransportError, ValidationError
from bookmark_rag.domain.models import QueryIntent
from bookmark_rag.domain.services.prompting import ANALYSIS_SYSTEM_PROMPT, analysis_prompt
from bookmark_rag.domain.services.query_parsing import (
    build_intent,
    first_json_object,
    resolve_relative_range,
)

logger = logging.getLogger(__name__)


class QueryAnalyzer:
    """
    Turns a free-form question into a QueryIntent with one cheap model call.

    The model output is parsed defensively; anything unusable yields the
    degraded intent instead of an error.
    """

    def __init__(
        self,
        llm: LLMPort,
        clock: ClockPort,
        model: str | None = None,
        timeout_s: float = 15.0,
        max_tokens: int = 300,
        telemetry: TelemetryPort | None = None,
    ) -> None:
        self.llm = llm
        self.clock = clock
        self.model = model
        self.timeout_s = timeout_s
        self.max_tokens = max_tokens
        self.telemetry = telemetry or NoopTelemetry()

    async def analyze(self, question: str, recent_authors: Collection[str] = ()) -> QueryIntent:
        """Raises AnalysisUnavailable when the model call fails or times out."""
        q = question.strip()
        if not q:
            raise ValidationError("question must not be empty")
        messages = [ChatMessage(role="user", content=analysis_prompt(q, recent_authors))]
        try:
            raw = await asyncio.wait_for(
                self.llm.complete(
                    messages,
                    system=ANALYSIS_SYSTEM_PROMPT,
                    max_tokens=self.max_tokens,
                    model=self.model,
                ),
                timeout=self.timeout_s,
            )
        except TimeoutError as ex:
            raise AnalysisUnavailable(f"analysis timed out after {self.timeout_s:g}s") from ex
        except StreamTransportError as ex:
            raise AnalysisUnavailable(f"analysis call failed: {ex}") from ex
        return self.parse(q, raw)

    async def analyze_or_degrade(
        self, question: str, recent_authors: Collection[str] = ()
    ) -> QueryIntent:
        """Never raises: a blank question or an unavailable model yields the degraded intent."""
        if not question.strip():
            self.telemetry.incr("rag.analysis.degraded", {"reason": "blank"})
            return QueryIntent.degraded_for("")
        try:
            return await self.analyze(question, recent_authors)
        except AnalysisUnavailable as ex:
            logger.warning("query analysis unavailable, using degraded intent: %s", ex)
            self.telemetry.incr("rag.analysis.degraded", {"reason": "unavailable"})
            return QueryIntent.degraded_for(question.strip())

    def parse(self, question: str, raw: str) -> QueryIntent:
        obj = first_json_object(raw)
        if obj is None:
            logger.warning("analysis output has no JSON object: %.200r", raw)
            self.telemetry.incr("rag.analysis.degraded", {"reason": "malformed"})
            return QueryIntent.degraded_for(question)
        try:
            params = SearchParams.model_validate(obj)
        except SchemaError as ex:
            logger.warning("analysis output has unexpected shape: %s", ex.errors()[:3])
            self.telemetry.incr("rag.analysis.degraded", {"reason": "malformed"})
            return QueryIntent.degraded_for(question)

        date_range = None
        if params.date_range is not None:
            date_range = resolve_relative_range(
                params.date_range.unit, params.date_range.amount, self.clock.now()
            )
        intent = build_intent(question, params.keywords, params.authors, date_range, params.topics)
        if intent.degraded:
            self.telemetry.incr("rag.analysis.degraded", {"reason": "empty"})
        return intent
