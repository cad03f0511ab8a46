"""LLM adapters against fake openai / anthropic SDK modules."""

import asyncio
import sys
import types

import pytest

from bookmark_rag.application.ports.llm_port import ChatMessage
from bookmark_rag.domain.errors import StreamTransportError, TransportErrorKind
from bookmark_rag.infrastructure.llm.anthropic_adapter import (
    AnthropicChatAdapter,
    translate_anthropic_error,
)
from bookmark_rag.infrastructure.llm.openai_adapter import (
    OpenAIChatAdapter,
    translate_openai_error,
)

MESSAGES = [ChatMessage(role="user", content="hi")]


def _sdk_module(name: str, client_cls) -> types.ModuleType:
    module = types.ModuleType(name)

    class APIError(Exception):
        pass

    module.APIError = APIError
    module.AuthenticationError = type("AuthenticationError", (APIError,), {})
    module.PermissionDeniedError = type("PermissionDeniedError", (APIError,), {})
    module.RateLimitError = type("RateLimitError", (APIError,), {})
    module.APIConnectionError = type("APIConnectionError", (APIError,), {})
    setattr(module, client_cls.__name__, client_cls)
    return module


def _ns(**kw):
    return types.SimpleNamespace(**kw)


async def _aiter(items):
    for item in items:
        yield item


class _FakeChatStream:
    def __init__(self, chunks):
        self._chunks = _aiter(chunks)
        self.closed = False

    def __aiter__(self):
        return self._chunks

    async def close(self):
        self.closed = True


def _collect(agen) -> list[str]:
    async def main():
        return [chunk async for chunk in agen]

    return asyncio.run(main())


# ===== OpenAI =====


class AsyncOpenAI:
    instances: list["AsyncOpenAI"] = []
    error: Exception | None = None

    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.requests: list[dict] = []
        self.streams: list[_FakeChatStream] = []
        self.chat = _ns(completions=_ns(create=self._create))
        AsyncOpenAI.instances.append(self)

    async def _create(self, **kwargs):
        self.requests.append(kwargs)
        if AsyncOpenAI.error is not None:
            raise AsyncOpenAI.error
        if kwargs.get("stream"):
            chunks = [
                _ns(choices=[_ns(delta=_ns(content="Hel"))]),
                _ns(choices=[]),
                _ns(choices=[_ns(delta=_ns(content=None))]),
                _ns(choices=[_ns(delta=_ns(content="lo"))]),
            ]
            stream = _FakeChatStream(chunks)
            self.streams.append(stream)
            return stream
        return _ns(choices=[_ns(message=_ns(content="answer"))])


@pytest.fixture
def openai_module(monkeypatch):
    AsyncOpenAI.instances = []
    AsyncOpenAI.error = None
    module = _sdk_module("openai", AsyncOpenAI)
    monkeypatch.setitem(sys.modules, "openai", module)
    return module


class TestOpenAIChatAdapter:
    def test_complete_sends_system_first(self, openai_module):
        adapter = OpenAIChatAdapter(base_url="http://localhost:8000/v1", model="m")

        assert asyncio.run(adapter.complete(MESSAGES, system="sys", max_tokens=10)) == "answer"

        client = AsyncOpenAI.instances[0]
        assert client.kwargs["max_retries"] == 0
        assert client.kwargs["base_url"] == "http://localhost:8000/v1"
        request = client.requests[0]
        assert request["messages"][0] == {"role": "system", "content": "sys"}
        assert request["messages"][1] == {"role": "user", "content": "hi"}
        assert request["max_tokens"] == 10

    def test_stream_yields_non_empty_deltas(self, openai_module):
        adapter = OpenAIChatAdapter()

        assert _collect(adapter.stream_complete(MESSAGES, model="other")) == ["Hel", "lo"]
        assert AsyncOpenAI.instances[0].requests[0]["model"] == "other"
        assert AsyncOpenAI.instances[0].streams[0].closed

    def test_stream_closed_when_consumer_stops_early(self, openai_module):
        adapter = OpenAIChatAdapter()

        async def main():
            agen = adapter.stream_complete(MESSAGES)
            first = await agen.__anext__()
            await agen.aclose()
            return first

        assert asyncio.run(main()) == "Hel"
        assert AsyncOpenAI.instances[0].streams[0].closed

    def test_sdk_errors_are_translated(self, openai_module):
        AsyncOpenAI.error = openai_module.RateLimitError("429")
        adapter = OpenAIChatAdapter()

        with pytest.raises(StreamTransportError) as exc:
            _collect(adapter.stream_complete(MESSAGES))
        assert exc.value.kind is TransportErrorKind.RATE_LIMITED

    @pytest.mark.parametrize(
        "name,kind",
        [
            ("AuthenticationError", TransportErrorKind.AUTH_INVALID),
            ("PermissionDeniedError", TransportErrorKind.AUTH_INVALID),
            ("RateLimitError", TransportErrorKind.RATE_LIMITED),
            ("APIConnectionError", TransportErrorKind.NETWORK_UNAVAILABLE),
            ("APIError", TransportErrorKind.PROVIDER_ERROR),
        ],
    )
    def test_error_kinds(self, openai_module, name, kind):
        assert translate_openai_error(getattr(openai_module, name)("x")).kind is kind


# ===== Anthropic =====


class _FakeMessageStream:
    def __init__(self, parts):
        self.text_stream = _aiter(parts)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class AsyncAnthropic:
    instances: list["AsyncAnthropic"] = []
    error: Exception | None = None

    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.requests: list[dict] = []
        self.messages = _ns(create=self._create, stream=self._stream)
        AsyncAnthropic.instances.append(self)

    async def _create(self, **kwargs):
        self.requests.append(kwargs)
        if AsyncAnthropic.error is not None:
            raise AsyncAnthropic.error
        return _ns(content=[_ns(type="text", text="Hello "), _ns(type="tool_use"), _ns(type="text", text="there")])

    def _stream(self, **kwargs):
        self.requests.append(kwargs)
        if AsyncAnthropic.error is not None:
            raise AsyncAnthropic.error
        return _FakeMessageStream(["a", "", "b"])


@pytest.fixture
def anthropic_module(monkeypatch):
    AsyncAnthropic.instances = []
    AsyncAnthropic.error = None
    module = _sdk_module("anthropic", AsyncAnthropic)
    monkeypatch.setitem(sys.modules, "anthropic", module)
    return module


class TestAnthropicChatAdapter:
    def test_missing_key_is_an_auth_error(self, anthropic_module):
        with pytest.raises(StreamTransportError) as exc:
            asyncio.run(AnthropicChatAdapter(api_key="").complete(MESSAGES))
        assert exc.value.kind is TransportErrorKind.AUTH_INVALID
        assert AsyncAnthropic.instances == []

    def test_complete_joins_text_blocks(self, anthropic_module):
        adapter = AnthropicChatAdapter(api_key="k")

        assert asyncio.run(adapter.complete(MESSAGES)) == "Hello there"
        request = AsyncAnthropic.instances[0].requests[0]
        assert "system" not in request
        assert request["messages"] == [{"role": "user", "content": "hi"}]

    def test_stream_passes_system_and_skips_empty_text(self, anthropic_module):
        adapter = AnthropicChatAdapter(api_key="k")

        assert _collect(adapter.stream_complete(MESSAGES, system="sys")) == ["a", "b"]
        assert AsyncAnthropic.instances[0].requests[0]["system"] == "sys"

    def test_connection_errors_are_network_errors(self, anthropic_module):
        AsyncAnthropic.error = anthropic_module.APIConnectionError("offline")

        with pytest.raises(StreamTransportError) as exc:
            asyncio.run(AnthropicChatAdapter(api_key="k").complete(MESSAGES))
        assert exc.value.kind is TransportErrorKind.NETWORK_UNAVAILABLE
        assert translate_anthropic_error(ValueError("x")).kind is TransportErrorKind.PROVIDER_ERROR
