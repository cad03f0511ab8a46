"""Tests for the AnswerStream channel."""

import asyncio

import pytest

from bookmark_rag.application.use_cases.answer_stream import AnswerStream
from bookmark_rag.domain.errors import TransportErrorKind
from bookmark_rag.domain.events import Cancelled, Failed, TextDelta


def test_events_arrive_in_order_through_small_queue():
    async def producer(stream):
        for i in range(5):
            await stream.publish(TextDelta(str(i), i))
        await stream.publish(Failed(TransportErrorKind.PROVIDER_ERROR, "done"))

    async def main():
        stream = AnswerStream(maxsize=1)
        stream.start(producer)
        events = await stream.collect()
        await stream.wait()
        return events

    events = asyncio.run(main())

    assert [e.text for e in events[:-1]] == ["0", "1", "2", "3", "4"]
    assert isinstance(events[-1], Failed)


def test_nothing_is_published_after_terminal_event():
    async def main():
        stream = AnswerStream()
        assert await stream.publish(Failed(TransportErrorKind.PROVIDER_ERROR, "x"))
        assert not await stream.publish(TextDelta("late", 1))
        return await stream.collect()

    assert len(asyncio.run(main())) == 1


def test_crashing_producer_ends_with_failed():
    async def producer(stream):
        raise RuntimeError("boom")

    async def main():
        stream = AnswerStream()
        stream.start(producer)
        return await stream.collect()

    events = asyncio.run(main())

    assert events == [Failed(TransportErrorKind.PROVIDER_ERROR, "boom")]


def test_producer_without_terminal_event_ends_with_failed():
    async def producer(stream):
        await stream.publish(TextDelta("hi", 2))

    async def main():
        stream = AnswerStream()
        stream.start(producer)
        return await stream.collect()

    events = asyncio.run(main())

    assert isinstance(events[0], TextDelta)
    assert isinstance(events[-1], Failed)


def test_cancel_drops_undelivered_events():
    async def producer(stream):
        for i in range(3):
            await stream.publish(TextDelta(str(i), i))
        await asyncio.Event().wait()

    async def main():
        stream = AnswerStream()
        stream.start(producer)
        await asyncio.sleep(0.01)
        assert stream.cancel()
        events = await stream.collect()
        await stream.wait()
        return stream, events

    stream, events = asyncio.run(main())

    assert events == [Cancelled(partial_text="")]
    assert stream.done
    assert stream.closed


def test_stream_starts_once():
    async def producer(stream):
        await stream.publish(Failed(TransportErrorKind.PROVIDER_ERROR, "x"))

    async def main():
        stream = AnswerStream()
        stream.start(producer)
        with pytest.raises(RuntimeError):
            stream.start(producer)
        await stream.wait()

    asyncio.run(main())


def test_cancel_before_first_step_runs_unstarted_hook():
    ran: list[str] = []

    async def producer(stream):
        ran.append("producer")

    async def main():
        stream = AnswerStream()
        stream.start(producer, on_cancel_unstarted=lambda: ran.append("hook"))
        assert stream.cancel()
        await stream.wait()
        return await stream.collect()

    assert asyncio.run(main()) == [Cancelled(partial_text="")]
    assert ran == ["hook"]


def test_unstarted_hook_is_skipped_once_producer_runs():
    ran: list[str] = []

    async def producer(stream):
        await asyncio.Event().wait()

    async def main():
        stream = AnswerStream()
        stream.start(producer, on_cancel_unstarted=lambda: ran.append("hook"))
        await asyncio.sleep(0.01)
        stream.cancel()
        await stream.wait()

    asyncio.run(main())
    assert ran == []
