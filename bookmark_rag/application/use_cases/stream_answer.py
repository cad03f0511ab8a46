# bookmark_rag/application/use_cases/stream_answer.py
from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from contextlib import aclosing
from typing import Any

from bookmark_rag.application.ports.bookmark_repository_port import BookmarkRepositoryPort
from bookmark_rag.application.ports.clock_port import ClockPort
from bookmark_rag.application.ports.llm_port import ChatMessage, LLMPort
from bookmark_rag.application.ports.telemetry_port import NoopTelemetry, TelemetryPort
from bookmark_rag.application.use_cases.answer_stream import AnswerStream
from bookmark_rag.domain.errors import RepositoryError, StreamTransportError, TransportErrorKind
from bookmark_rag.domain.events import (
    CitationDetected,
    Completed,
    Failed,
    FollowUpsReady,
    TextDelta,
)
from bookmark_rag.domain.models import (
    Citation,
    Conversation,
    RetrievalCandidate,
    Role,
    StreamState,
    Turn,
)
from bookmark_rag.domain.services.prompting import answer_system_prompt, build_messages
from bookmark_rag.domain.services.response_parser import ParseUpdate, ResponseStructureParser

logger = logging.getLogger(__name__)

_TEXT = "text"
_END = "end"
_ERROR = "error"


class AnswerStreamer:
    """
    Streams one grounded answer and turns raw model output into AnswerEvents.

    A reader task pulls increments from the provider into an internal queue;
    the pump coalesces them, flushing on newline or every ``flush_interval_s``,
    and feeds the response parser. Transient transport errors are retried only
    before the first increment arrived. This is the only writer of conversation
    turns.
    """

    def __init__(
        self,
        llm: LLMPort,
        repository: BookmarkRepositoryPort,
        model: str | None = None,
        max_tokens: int = 1500,
        flush_interval_s: float = 0.05,
        idle_timeout_s: float = 30.0,
        max_retries: int = 2,
        backoff_base_s: float = 0.5,
        backoff_max_s: float = 8.0,
        queue_size: int = 256,
        history_max_turns: int = 10,
        history_max_chars: int = 12000,
        follow_up_limit: int | None = 3,
        clock: ClockPort | None = None,
        telemetry: TelemetryPort | None = None,
    ) -> None:
        self.llm = llm
        self.repository = repository
        self.model = model
        self.max_tokens = max_tokens
        self.flush_interval_s = flush_interval_s
        self.idle_timeout_s = idle_timeout_s
        self.max_retries = max_retries
        self.backoff_base_s = backoff_base_s
        self.backoff_max_s = backoff_max_s
        self.queue_size = queue_size
        self.history_max_turns = history_max_turns
        self.history_max_chars = history_max_chars
        self.follow_up_limit = follow_up_limit
        self.clock = clock
        self.telemetry = telemetry or NoopTelemetry()

    def open(
        self,
        question: str,
        conversation: Conversation,
        context: Sequence[RetrievalCandidate],
    ) -> AnswerStream:
        stream = AnswerStream(self.queue_size)
        stream.start(
            lambda s: self.run(s, question, conversation, context),
            on_cancel_unstarted=lambda: self.record_turn(
                conversation,
                question,
                "",
                context_ids=tuple(c.bookmark.id for c in context),
                complete=False,
            ),
        )
        return stream

    async def run(
        self,
        stream: AnswerStream,
        question: str,
        conversation: Conversation,
        context: Sequence[RetrievalCandidate],
    ) -> None:
        """Produce the events of one answer into ``stream`` and record the turn."""
        context_ids = tuple(c.bookmark.id for c in context)
        messages = build_messages(
            question, conversation.turns, self.history_max_turns, self.history_max_chars
        )
        system = answer_system_prompt([c.bookmark for c in context])
        parser = ResponseStructureParser(
            allowed_ids=context_ids, follow_up_limit=self.follow_up_limit
        )
        loop = asyncio.get_running_loop()
        started_at = loop.time()
        recorded = False

        try:
            attempt = 0
            while True:
                try:
                    await self._attempt(stream, parser, messages, system, started_at)
                    break
                except StreamTransportError as err:
                    if err.retryable and not stream.state.raw and attempt < self.max_retries:
                        delay = min(self.backoff_base_s * (2**attempt), self.backoff_max_s)
                        attempt += 1
                        logger.warning(
                            "answer stream %s, retry %d/%d in %.1fs",
                            err.kind.value,
                            attempt,
                            self.max_retries,
                            delay,
                        )
                        self.telemetry.incr("rag.stream.retries", {"kind": err.kind.value})
                        await asyncio.sleep(delay)
                        continue
                    await self._fail(stream, parser, err, started_at)
                    return

            update = parser.finish()
            await self._publish_update(stream, update, started_at)
            answer = parser.result(update.follow_ups or ())
            if answer.follow_ups:
                await stream.publish(FollowUpsReady(answer.follow_ups))
            stream.state.state = StreamState.COMPLETED
            self.record_turn(
                conversation,
                question,
                answer.plain_text,
                citations=answer.citations,
                follow_ups=answer.follow_ups,
                context_ids=context_ids,
                complete=True,
            )
            recorded = True
            self.telemetry.incr("rag.stream.terminal", {"outcome": "completed"})
            logger.info(
                "answer completed: %d chars, %d citation(s), %d follow-up(s), %d anomaly(ies)",
                len(answer.plain_text),
                len(answer.citations),
                len(answer.follow_ups),
                len(answer.anomalies),
            )
            await stream.publish(Completed(answer))
        except asyncio.CancelledError:
            if not recorded:
                self.record_turn(
                    conversation,
                    question,
                    stream.partial_text,
                    citations=tuple(stream.state.emitted_citations),
                    context_ids=context_ids,
                    complete=False,
                )
                self.telemetry.incr("rag.stream.terminal", {"outcome": "cancelled"})
                logger.info("answer cancelled after %d chars", len(stream.partial_text))
            raise

    def record_turn(
        self,
        conversation: Conversation,
        question: str,
        answer_text: str,
        citations: tuple[Citation, ...] = (),
        follow_ups: tuple[str, ...] = (),
        context_ids: tuple[str, ...] = (),
        complete: bool = True,
    ) -> None:
        """Append the question and its answer to the conversation and to storage."""
        now = self.clock.now() if self.clock is not None else None
        turns = (
            Turn(role=Role.USER, text=question, created_at=now),
            Turn(
                role=Role.ASSISTANT,
                text=answer_text,
                citations=citations,
                follow_ups=follow_ups,
                context_ids=context_ids,
                complete=complete,
                created_at=now,
            ),
        )
        for turn in turns:
            conversation.append(turn)
            try:
                self.repository.append_conversation_turn(turn)
            except RepositoryError as ex:
                logger.warning("could not persist %s turn: %s", turn.role.value, ex)

    # ===== Streaming =====

    async def _attempt(
        self,
        stream: AnswerStream,
        parser: ResponseStructureParser,
        messages: list[ChatMessage],
        system: str,
        started_at: float,
    ) -> None:
        increments: asyncio.Queue[tuple[str, Any]] = asyncio.Queue()
        reader = asyncio.create_task(self._read(messages, system, increments))
        try:
            await self._pump(stream, parser, increments, started_at)
        finally:
            if not reader.done():
                reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)

    async def _read(
        self,
        messages: list[ChatMessage],
        system: str,
        increments: asyncio.Queue[tuple[str, Any]],
    ) -> None:
        chunks = self.llm.stream_complete(
            messages, system=system, max_tokens=self.max_tokens, model=self.model
        )
        try:
            async with aclosing(chunks):
                async for chunk in chunks:
                    if chunk:
                        increments.put_nowait((_TEXT, chunk))
        except StreamTransportError as err:
            increments.put_nowait((_ERROR, err))
        except Exception as ex:
            logger.exception("provider stream raised an unexpected error")
            increments.put_nowait(
                (_ERROR, StreamTransportError(TransportErrorKind.PROVIDER_ERROR, str(ex)))
            )
        else:
            increments.put_nowait((_END, None))

    async def _pump(
        self,
        stream: AnswerStream,
        parser: ResponseStructureParser,
        increments: asyncio.Queue[tuple[str, Any]],
        started_at: float,
    ) -> None:
        loop = asyncio.get_running_loop()
        pending = ""
        flush_at = 0.0
        while True:
            timeout = max(flush_at - loop.time(), 0.0) if pending else self.idle_timeout_s
            try:
                kind, payload = await asyncio.wait_for(increments.get(), timeout)
            except TimeoutError:
                if pending:
                    await self._flush(stream, parser, pending, started_at)
                    pending = ""
                    continue
                raise StreamTransportError(
                    TransportErrorKind.PROVIDER_ERROR,
                    f"no data from provider for {self.idle_timeout_s:g}s",
                ) from None

            if kind == _TEXT:
                if not pending:
                    flush_at = loop.time() + self.flush_interval_s
                pending += payload
                if "\n" in payload or loop.time() >= flush_at:
                    await self._flush(stream, parser, pending, started_at)
                    pending = ""
                continue

            if pending:
                await self._flush(stream, parser, pending, started_at)
                pending = ""
            if kind == _ERROR:
                raise payload
            return

    async def _flush(
        self,
        stream: AnswerStream,
        parser: ResponseStructureParser,
        chunk: str,
        started_at: float,
    ) -> None:
        stream.state.raw += chunk
        update = parser.feed(chunk)
        stream.state.cursor = parser.cursor
        await self._publish_update(stream, update, started_at)

    async def _publish_update(
        self, stream: AnswerStream, update: ParseUpdate, started_at: float
    ) -> None:
        state = stream.state
        if state.is_terminal:
            return
        if update.text:
            if not state.display:
                elapsed_ms = (asyncio.get_running_loop().time() - started_at) * 1000.0
                self.telemetry.observe("rag.stream.first_delta_ms", elapsed_ms, {})
            state.display += update.text
            await stream.publish(TextDelta(update.text, len(state.raw)))
        for citation in update.citations:
            state.emitted_citations.append(citation)
            await stream.publish(CitationDetected(citation))
        for anomaly in update.anomalies:
            logger.debug("answer parse anomaly %s: %.80r", anomaly.kind.value, anomaly.raw)

    async def _fail(
        self,
        stream: AnswerStream,
        parser: ResponseStructureParser,
        err: StreamTransportError,
        started_at: float,
    ) -> None:
        await self._publish_update(stream, parser.abort(), started_at)
        stream.state.state = StreamState.FAILED
        self.telemetry.incr("rag.stream.terminal", {"outcome": "failed", "kind": err.kind.value})
        logger.warning("answer stream failed: %s", err)
        await stream.publish(Failed(err.kind, err.user_message))
