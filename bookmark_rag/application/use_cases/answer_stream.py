# bookmark_rag/application/use_cases/answer_stream.py
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from bookmark_rag.domain.errors import TransportErrorKind
from bookmark_rag.domain.events import AnswerEvent, Cancelled, Failed, is_terminal
from bookmark_rag.domain.models import StreamingAnswerState, StreamState

logger = logging.getLogger(__name__)

Producer = Callable[["AnswerStream"], Awaitable[None]]


class AnswerStream:
    """
    Cancellable, ordered channel of AnswerEvent for one question.

    Exactly one terminal event (Completed, Cancelled or Failed) is ever
    delivered and iteration stops after it. The queue is bounded, so a slow
    consumer applies backpressure to the producer.

    Example:
        stream = ask.open("what did @bob say about rust?", conversation)
        async for event in stream:
            ...
    """

    def __init__(self, maxsize: int = 256) -> None:
        self._queue: asyncio.Queue[AnswerEvent] = asyncio.Queue(maxsize)
        self._task: asyncio.Task[None] | None = None
        self._closed = False  # terminal event enqueued, nothing else may follow
        self._delivered_terminal = False
        self._started = False
        self._on_cancel_unstarted: Callable[[], None] | None = None
        self.state = StreamingAnswerState()

    # ===== Producer side =====

    def start(
        self, producer: Producer, on_cancel_unstarted: Callable[[], None] | None = None
    ) -> None:
        """Run ``producer`` as a task.

        ``on_cancel_unstarted`` runs when cancel() arrives before the producer's first
        step; the producer itself never runs in that case.
        """
        if self._task is not None:
            raise RuntimeError("answer stream already started")
        self._on_cancel_unstarted = on_cancel_unstarted
        self._task = asyncio.get_running_loop().create_task(self._run(producer))

    async def publish(self, event: AnswerEvent) -> bool:
        """Enqueue an event; returns False once the stream is closed."""
        if self._closed:
            return False
        if is_terminal(event):
            self._closed = True
        await self._queue.put(event)
        return True

    async def _run(self, producer: Producer) -> None:
        self._started = True
        try:
            await producer(self)
        except asyncio.CancelledError:
            raise
        except Exception as ex:
            logger.exception("answer producer crashed")
            self.state.state = StreamState.FAILED
            await self.publish(Failed(TransportErrorKind.PROVIDER_ERROR, str(ex)))
            return
        if not self._closed:
            self.state.state = StreamState.FAILED
            await self.publish(
                Failed(TransportErrorKind.PROVIDER_ERROR, "answer ended without a result")
            )

    # ===== Consumer side =====

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def partial_text(self) -> str:
        return self.state.display

    def cancel(self) -> bool:
        """
        Stop the answer. Undelivered events are dropped and a single
        Cancelled(partial_text) becomes the next and last event.

        Returns False when the stream had already reached a terminal event.
        """
        if self._closed:
            return False
        self._closed = True
        self.state.state = StreamState.CANCELLED
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(Cancelled(partial_text=self.state.display))
        if self._task is not None:
            if not self._started and self._on_cancel_unstarted is not None:
                self._on_cancel_unstarted()
            self._task.cancel()
        return True

    async def wait(self) -> None:
        """Wait until the producer has finished, including its cleanup after cancel()."""
        if self._task is None:
            return
        await asyncio.gather(self._task, return_exceptions=True)

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    def __aiter__(self) -> AnswerStream:
        return self

    async def __anext__(self) -> AnswerEvent:
        if self._delivered_terminal:
            raise StopAsyncIteration
        event = await self._queue.get()
        if is_terminal(event):
            self._delivered_terminal = True
        return event

    async def collect(self) -> list[AnswerEvent]:
        """Drain every remaining event up to and including the terminal one."""
        return [event async for event in self]
