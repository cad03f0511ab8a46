from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass
from importlib import import_module
from typing import Any

from bookmark_rag.application.ports.llm_port import ChatMessage, LLMPort
from bookmark_rag.domain.errors import (
    ConfigurationError,
    StreamTransportError,
    TransportErrorKind,
)


def _payload(messages: Sequence[ChatMessage], system: str | None) -> list[dict[str, str]]:
    out = [{"role": "system", "content": system}] if system else []
    out.extend({"role": m.role, "content": m.content} for m in messages)
    return out


def translate_openai_error(ex: Exception) -> StreamTransportError:
    """Map openai SDK exceptions onto transport error kinds."""
    openai = import_module("openai")
    if isinstance(ex, openai.AuthenticationError | openai.PermissionDeniedError):
        kind = TransportErrorKind.AUTH_INVALID
    elif isinstance(ex, openai.RateLimitError):
        kind = TransportErrorKind.RATE_LIMITED
    elif isinstance(ex, openai.APIConnectionError):  # includes APITimeoutError
        kind = TransportErrorKind.NETWORK_UNAVAILABLE
    else:
        kind = TransportErrorKind.PROVIDER_ERROR
    return StreamTransportError(kind, str(ex))


@dataclass
class OpenAIChatAdapter(LLMPort):
    """Any OpenAI-compatible chat endpoint (OpenAI, vLLM, Ollama, LM Studio)."""

    base_url: str | None = None  # e.g. "http://localhost:8000/v1"; None = api.openai.com
    api_key: str = "EMPTY"
    model: str = "gpt-4o-mini"
    timeout_s: float = 60.0
    temperature: float = 0.2

    def __post_init__(self) -> None:
        # Defer import of OpenAI to first call to avoid hard dependency in tests
        self._client: Any | None = None

    def _get_client(self) -> Any:
        if self._client is None:
            try:
                module = import_module("openai")
            except ImportError as ex:
                raise ConfigurationError("openai not installed") from ex
            # retries are the caller's policy
            self._client = module.AsyncOpenAI(
                base_url=self.base_url,
                api_key=self.api_key,
                timeout=self.timeout_s,
                max_retries=0,
            )
        return self._client

    async def complete(
        self,
        messages: Sequence[ChatMessage],
        system: str | None = None,
        max_tokens: int = 512,
        model: str | None = None,
    ) -> str:
        client = self._get_client()
        try:
            resp: Any = await client.chat.completions.create(
                model=model or self.model,
                messages=_payload(messages, system),
                temperature=self.temperature,
                max_tokens=max_tokens,
            )
        except Exception as ex:  # noqa: BLE001
            raise translate_openai_error(ex) from ex
        if not resp.choices:
            raise StreamTransportError(TransportErrorKind.PROVIDER_ERROR, "empty completion")
        return resp.choices[0].message.content or ""

    async def stream_complete(
        self,
        messages: Sequence[ChatMessage],
        system: str | None = None,
        max_tokens: int = 1500,
        model: str | None = None,
    ) -> AsyncIterator[str]:
        client = self._get_client()
        try:
            stream: Any = await client.chat.completions.create(
                model=model or self.model,
                messages=_payload(messages, system),
                temperature=self.temperature,
                max_tokens=max_tokens,
                stream=True,
            )
            try:
                async for chunk in stream:
                    if not chunk.choices:
                        continue
                    text = chunk.choices[0].delta.content
                    if text:
                        yield text
            finally:
                # releases the HTTP response when the consumer stops early
                await stream.close()
        except Exception as ex:  # noqa: BLE001
            raise translate_openai_error(ex) from ex
