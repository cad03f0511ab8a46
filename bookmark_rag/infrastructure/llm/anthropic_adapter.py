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


def translate_anthropic_error(ex: Exception) -> StreamTransportError:
    """Map anthropic SDK exceptions onto transport error kinds."""
    anthropic = import_module("anthropic")
    if isinstance(ex, anthropic.AuthenticationError | anthropic.PermissionDeniedError):
        kind = TransportErrorKind.AUTH_INVALID
    elif isinstance(ex, anthropic.RateLimitError):
        kind = TransportErrorKind.RATE_LIMITED
    elif isinstance(ex, anthropic.APIConnectionError):  # includes APITimeoutError
        kind = TransportErrorKind.NETWORK_UNAVAILABLE
    else:
        kind = TransportErrorKind.PROVIDER_ERROR
    return StreamTransportError(kind, str(ex))


@dataclass
class AnthropicChatAdapter(LLMPort):
    """Claude via the Messages API; streaming uses ``messages.stream``."""

    api_key: str = ""
    model: str = "claude-sonnet-4-20250514"
    timeout_s: float = 60.0

    def __post_init__(self) -> None:
        self._client: Any | None = None

    def _get_client(self) -> Any:
        if not self.api_key:
            raise StreamTransportError(
                TransportErrorKind.AUTH_INVALID, "no Anthropic API key configured"
            )
        if self._client is None:
            try:
                module = import_module("anthropic")
            except ImportError as ex:
                raise ConfigurationError("anthropic not installed") from ex
            self._client = module.AsyncAnthropic(
                api_key=self.api_key, timeout=self.timeout_s, max_retries=0
            )
        return self._client

    def _kwargs(
        self,
        messages: Sequence[ChatMessage],
        system: str | None,
        max_tokens: int,
        model: str | None,
    ) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": model or self.model,
            "max_tokens": max_tokens,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
        }
        if system:
            kwargs["system"] = system
        return kwargs

    async def complete(
        self,
        messages: Sequence[ChatMessage],
        system: str | None = None,
        max_tokens: int = 512,
        model: str | None = None,
    ) -> str:
        client = self._get_client()
        try:
            resp: Any = await client.messages.create(
                **self._kwargs(messages, system, max_tokens, model)
            )
        except Exception as ex:  # noqa: BLE001
            raise translate_anthropic_error(ex) from ex
        return "".join(
            block.text for block in resp.content if getattr(block, "type", "") == "text"
        )

    async def stream_complete(
        self,
        messages: Sequence[ChatMessage],
        system: str | None = None,
        max_tokens: int = 1500,
        model: str | None = None,
    ) -> AsyncIterator[str]:
        client = self._get_client()
        try:
            async with client.messages.stream(
                **self._kwargs(messages, system, max_tokens, model)
            ) as stream:
                async for text in stream.text_stream:
                    if text:
                        yield text
        except Exception as ex:  # noqa: BLE001
            raise translate_anthropic_error(ex) from ex
