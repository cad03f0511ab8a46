# bookmark_rag/application/use_cases/ask_bookmarks.py
from __future__ import annotations

import asyncio
import logging
from collections.abc import Collection
from enum import Enum

from bookmark_rag.application.ports.bookmark_repository_port import BookmarkRepositoryPort
from bookmark_rag.application.use_cases.analyze_query import QueryAnalyzer
from bookmark_rag.application.use_cases.answer_stream import AnswerStream
from bookmark_rag.application.use_cases.hybrid_retrieval import HybridRetriever
from bookmark_rag.application.use_cases.stream_answer import AnswerStreamer
from bookmark_rag.domain.errors import RepositoryError, TransportErrorKind, ValidationError
from bookmark_rag.domain.events import ContextReady, Failed
from bookmark_rag.domain.models import Bookmark, Conversation, Role, StreamState
from bookmark_rag.domain.services.prompting import STARTER_QUESTIONS

logger = logging.getLogger(__name__)


class AskBookmarks:
    """
    Application Use-Case for one question: analysis, retrieval, then streaming.

    All three steps run inside the stream's producer task, so cancelling the
    stream stops whichever step is in progress.
    """

    def __init__(
        self,
        analyzer: QueryAnalyzer,
        retriever: HybridRetriever,
        streamer: AnswerStreamer,
    ) -> None:
        self.analyzer = analyzer
        self.retriever = retriever
        self.streamer = streamer

    def open(
        self,
        question: str,
        conversation: Conversation,
        recent_authors: Collection[str] = (),
    ) -> AnswerStream:
        q = question.strip()
        if not q:
            raise ValidationError("question must not be empty")
        authors = frozenset(recent_authors)
        stream = AnswerStream(self.streamer.queue_size)
        stream.start(
            lambda s: self._produce(s, q, conversation, authors),
            on_cancel_unstarted=lambda: self.streamer.record_turn(
                conversation, q, "", complete=False
            ),
        )
        return stream

    async def _produce(
        self,
        stream: AnswerStream,
        question: str,
        conversation: Conversation,
        recent_authors: frozenset[str],
    ) -> None:
        streaming = False
        try:
            intent = await self.analyzer.analyze_or_degrade(question, recent_authors)
            try:
                candidates = await self.retriever.retrieve(intent)
            except RepositoryError as ex:
                logger.error("retrieval failed: %s", ex)
                stream.state.state = StreamState.FAILED
                await stream.publish(
                    Failed(TransportErrorKind.PROVIDER_ERROR, f"Bookmark storage unavailable ({ex})")
                )
                return
            await stream.publish(ContextReady(intent=intent, candidates=tuple(candidates)))
            streaming = True
            await self.streamer.run(stream, question, conversation, candidates)
        except asyncio.CancelledError:
            if not streaming:
                self.streamer.record_turn(conversation, question, "", complete=False)
            raise


class QuickAction(str, Enum):
    FAVORITE = "favorite"
    TAG = "tag"
    FOLDER = "folder"


class ChatSession:
    """
    Caller-owned chat state: the active conversation and at most one in-flight answer.

    Asking a new question cancels the previous answer and waits for it to wind
    down before the new one starts.
    """

    def __init__(
        self,
        ask: AskBookmarks,
        repository: BookmarkRepositoryPort,
        conversation: Conversation | None = None,
        history_limit: int = 50,
    ) -> None:
        self._ask = ask
        self.repository = repository
        self.conversation = conversation or Conversation()
        self.history_limit = history_limit
        self._active: AnswerStream | None = None

    @property
    def active(self) -> AnswerStream | None:
        if self._active is not None and self._active.done:
            return None
        return self._active

    @property
    def recent_authors(self) -> frozenset[str]:
        """Handles cited in this conversation; passed to the analyzer as hints."""
        return frozenset(
            c.author_handle.lower()
            for turn in self.conversation.turns
            if turn.role is Role.ASSISTANT
            for c in turn.citations
            if c.author_handle
        )

    @property
    def follow_ups(self) -> tuple[str, ...]:
        last = self.conversation.last_assistant_turn
        if last is None or not last.complete:
            return ()
        return last.follow_ups

    @property
    def suggested_questions(self) -> tuple[str, ...]:
        """Starter questions for an empty conversation, follow-ups afterwards."""
        if not self.conversation.turns:
            return STARTER_QUESTIONS
        return self.follow_ups

    async def ask(self, question: str) -> AnswerStream:
        await self.cancel()
        stream = self._ask.open(question, self.conversation, self.recent_authors)
        self._active = stream
        return stream

    async def cancel(self) -> bool:
        """Cancel the in-flight answer, if any, and wait for its producer to finish."""
        stream = self._active
        if stream is None:
            return False
        cancelled = stream.cancel()
        await stream.wait()
        self._active = None
        return cancelled

    async def select_follow_up(self, index: int) -> AnswerStream:
        suggestions = self.follow_ups
        if not 0 <= index < len(suggestions):
            raise ValidationError(f"no follow-up suggestion at index {index}")
        return await self.ask(suggestions[index])

    def apply_quick_action(
        self, bookmark_id: str, action: QuickAction | str, value: str | bool | None = None
    ) -> Bookmark:
        """Change an organisational field of a cited bookmark and return the updated bookmark."""
        bookmark = self.repository.get(bookmark_id)
        if bookmark is None:
            raise ValidationError(f"unknown bookmark: {bookmark_id}")
        try:
            action = QuickAction(action)
        except ValueError as ex:
            raise ValidationError(f"unknown quick action: {action}") from ex
        if action is QuickAction.FAVORITE:
            favorite = (not bookmark.is_favorite) if value is None else bool(value)
            self.repository.set_favorite(bookmark_id, favorite)
        elif action is QuickAction.TAG:
            tag = str(value or "").strip()
            if not tag:
                raise ValidationError("tag must not be empty")
            self.repository.add_tag(bookmark_id, tag)
        else:
            folder = str(value).strip() if value else None
            self.repository.set_folder(bookmark_id, folder or None)
        updated = self.repository.get(bookmark_id)
        if updated is None:
            raise RepositoryError(f"bookmark {bookmark_id} vanished during update")
        return updated

    async def resume(self) -> Conversation:
        """Replace the conversation with the stored history (bounded by ``history_limit``)."""
        await self.cancel()
        turns = self.repository.load_conversation_history(self.history_limit)
        self.conversation = Conversation(id=self.conversation.id, turns=list(turns))
        return self.conversation

    async def clear(self) -> None:
        await self.cancel()
        self.repository.clear_conversation_history()
        self.conversation = Conversation(id=self.conversation.id)
