"""Tests for the AnswerStreamer use case: event order, retries, cancellation."""

import asyncio
from datetime import UTC, datetime

from bookmark_rag.application.use_cases.stream_answer import AnswerStreamer
from bookmark_rag.domain.errors import StreamTransportError, TransportErrorKind
from bookmark_rag.domain.events import (
    Cancelled,
    CitationDetected,
    Completed,
    Failed,
    FollowUpsReady,
    TextDelta,
)
from bookmark_rag.domain.models import (
    Bookmark,
    Conversation,
    Provenance,
    RetrievalCandidate,
    Role,
    Turn,
)
from bookmark_rag.infrastructure.storage.memory_repository import InMemoryBookmarkRepository

HANG = object()


class ScriptedLLM:
    """Each stream_complete call plays the next script: text, a pause in seconds, an exception, or HANG."""

    def __init__(self, *scripts) -> None:
        self.scripts = list(scripts)
        self.calls: list[tuple[list, str | None]] = []

    async def complete(self, messages, system=None, max_tokens=512, model=None) -> str:
        return ""

    async def stream_complete(self, messages, system=None, max_tokens=1500, model=None):
        self.calls.append((list(messages), system))
        script = self.scripts.pop(0) if self.scripts else []
        for step in script:
            if step is HANG:
                await asyncio.Event().wait()
            elif isinstance(step, float):
                await asyncio.sleep(step)
            elif isinstance(step, BaseException):
                raise step
            else:
                yield step


class RecordingTelemetry:
    def __init__(self) -> None:
        self.counters: list[tuple[str, dict]] = []
        self.observed: list[str] = []

    def incr(self, name: str, tags: dict) -> None:
        self.counters.append((name, tags))

    def observe(self, name: str, value: float, tags: dict) -> None:
        self.observed.append(name)


def _candidate(i: str, handle: str) -> RetrievalCandidate:
    bm = Bookmark(
        id=i,
        author_handle=handle,
        author_name=handle.title(),
        text=f"post {i} by {handle}",
        posted_at=datetime(2024, 3, 1, tzinfo=UTC),
    )
    return RetrievalCandidate(bm, 1.0, Provenance.LEXICAL, 1.0, 0.0)


CONTEXT = [_candidate("42", "bob"), _candidate("5", "al")]


def _streamer(llm, repository=None, **kwargs) -> AnswerStreamer:
    kwargs.setdefault("flush_interval_s", 0.0)
    kwargs.setdefault("backoff_base_s", 0.0)
    return AnswerStreamer(llm, repository or InMemoryBookmarkRepository(), **kwargs)


def _run(streamer, question="q?", conversation=None, context=CONTEXT):
    conversation = conversation if conversation is not None else Conversation()

    async def main():
        stream = streamer.open(question, conversation, context)
        events = await stream.collect()
        await stream.wait()
        return events

    return asyncio.run(main()), conversation


def test_completed_answer_event_order():
    llm = ScriptedLLM(["A [TWEET:42]@bob", "[/TWEET] B ---FOLLOW", "UPS---\nQ1?\nQ2?"])
    repository = InMemoryBookmarkRepository()
    events, conversation = _run(_streamer(llm, repository))

    assert [type(e) for e in events] == [
        TextDelta,
        TextDelta,
        CitationDetected,
        FollowUpsReady,
        Completed,
    ]
    assert "".join(e.text for e in events if isinstance(e, TextDelta)) == "A <citation:42> B"
    raw_lengths = [e.raw_length for e in events if isinstance(e, TextDelta)]
    assert raw_lengths == sorted(raw_lengths)
    assert events[2].citation.bookmark_id == "42"
    assert events[3].questions == ("Q1?", "Q2?")
    answer = events[-1].answer
    assert answer.plain_text == "A <citation:42> B"
    assert answer.follow_ups == ("Q1?", "Q2?")

    user, assistant = conversation.turns
    assert (user.role, user.text) == (Role.USER, "q?")
    assert assistant.complete
    assert assistant.follow_ups == ("Q1?", "Q2?")
    assert assistant.context_ids == ("42", "5")
    assert len(repository.load_conversation_history()) == 2
    assert "ID:42" in llm.calls[0][1]


def test_history_precedes_the_question():
    llm = ScriptedLLM(["ok"])
    conversation = Conversation(
        turns=[Turn(role=Role.USER, text="earlier"), Turn(role=Role.ASSISTANT, text="reply")]
    )
    _run(_streamer(llm), question="now?", conversation=conversation)

    messages = llm.calls[0][0]
    assert [(m.role, m.content) for m in messages] == [
        ("user", "earlier"),
        ("assistant", "reply"),
        ("user", "now?"),
    ]


def test_cancel_after_partial_output():
    llm = ScriptedLLM(["one", " two", " three", HANG])
    conversation = Conversation()
    streamer = _streamer(llm)

    async def main():
        stream = streamer.open("q?", conversation, CONTEXT)
        seen = []
        async for event in stream:
            seen.append(event)
            if len(seen) == 3:
                assert stream.cancel()
        await stream.wait()
        return stream, seen

    stream, events = asyncio.run(main())

    assert [e.text for e in events[:3]] == ["one", " two", " three"]
    assert events[3:] == [Cancelled(partial_text="one two three")]
    assert stream.done
    assert not stream.cancel()
    assistant = conversation.turns[-1]
    assert assistant.text == "one two three"
    assert not assistant.complete


def test_cancel_before_any_output():
    llm = ScriptedLLM([HANG])
    conversation = Conversation()

    async def main():
        stream = _streamer(llm).open("q?", conversation, CONTEXT)
        await asyncio.sleep(0.01)
        stream.cancel()
        events = await stream.collect()
        await stream.wait()
        return events

    assert asyncio.run(main()) == [Cancelled(partial_text="")]
    assert conversation.turns[-1].text == ""
    assert not conversation.turns[-1].complete


def test_transient_error_before_first_increment_is_retried():
    telemetry = RecordingTelemetry()
    llm = ScriptedLLM(
        [StreamTransportError(TransportErrorKind.NETWORK_UNAVAILABLE, "offline")],
        ["ok"],
    )
    events, _ = _run(_streamer(llm, telemetry=telemetry))

    assert [type(e) for e in events] == [TextDelta, Completed]
    assert len(llm.calls) == 2
    assert ("rag.stream.retries", {"kind": "network_unavailable"}) in telemetry.counters
    assert "rag.stream.first_delta_ms" in telemetry.observed


def test_no_retry_after_partial_output():
    llm = ScriptedLLM(
        ["partial ", StreamTransportError(TransportErrorKind.NETWORK_UNAVAILABLE, "reset")],
        ["never"],
    )
    events, conversation = _run(_streamer(llm))

    assert [type(e) for e in events] == [TextDelta, Failed]
    assert events[-1].kind is TransportErrorKind.NETWORK_UNAVAILABLE
    assert events[-1].retryable
    assert len(llm.calls) == 1
    assert conversation.turns == []


def test_auth_failure_is_not_retried():
    llm = ScriptedLLM([StreamTransportError(TransportErrorKind.AUTH_INVALID, "bad key")], ["never"])
    events, _ = _run(_streamer(llm))

    assert len(events) == 1
    assert events[0].kind is TransportErrorKind.AUTH_INVALID
    assert "API key" in events[0].message
    assert len(llm.calls) == 1


def test_retries_are_bounded():
    rate = StreamTransportError(TransportErrorKind.RATE_LIMITED, "slow down")
    llm = ScriptedLLM([rate], [rate], ["never"])
    events, _ = _run(_streamer(llm, max_retries=1))

    assert events[-1].kind is TransportErrorKind.RATE_LIMITED
    assert len(llm.calls) == 2


def test_idle_provider_times_out():
    events, _ = _run(_streamer(ScriptedLLM([HANG]), idle_timeout_s=0.05))

    assert len(events) == 1
    assert events[0].kind is TransportErrorKind.PROVIDER_ERROR


def test_unexpected_provider_exception_becomes_provider_error():
    events, _ = _run(_streamer(ScriptedLLM([RuntimeError("boom")])))

    assert [type(e) for e in events] == [Failed]
    assert events[0].kind is TransportErrorKind.PROVIDER_ERROR


def test_unterminated_marker_is_shown_verbatim():
    events, _ = _run(_streamer(ScriptedLLM(["see [TWEET:5]@al"])))

    deltas = "".join(e.text for e in events if isinstance(e, TextDelta))
    assert deltas == "see [TWEET:5]@al"
    assert events[-1].answer.plain_text == deltas
    assert not any(isinstance(e, CitationDetected) for e in events)


def test_reference_outside_context_is_not_a_citation():
    events, _ = _run(_streamer(ScriptedLLM(["x [TWEET:99]@eve[/TWEET]"])))

    assert not any(isinstance(e, CitationDetected) for e in events)
    assert events[-1].answer.plain_text == "x [TWEET:99]@eve[/TWEET]"


def test_increments_are_coalesced_until_newline():
    llm = ScriptedLLM(["a", "b", "c\n", "d"])
    events, _ = _run(_streamer(llm, flush_interval_s=10.0))

    assert [e.text for e in events if isinstance(e, TextDelta)] == ["abc", "\nd"]


def test_increments_without_newline_flush_on_interval():
    llm = ScriptedLLM(["ab", "cd", 0.3, "ef", "gh", 0.3, "ij"])
    events, _ = _run(_streamer(llm, flush_interval_s=0.05))

    assert [e.text for e in events if isinstance(e, TextDelta)] == ["abcd", "efgh", "ij"]
    assert isinstance(events[-1], Completed)
    assert events[-1].answer.plain_text == "abcdefghij"
