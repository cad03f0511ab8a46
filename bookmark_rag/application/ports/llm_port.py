from collections.abc import AsyncIterator, Sequence
from typing import Protocol, runtime_checkable

# Import domain model and re-export for convenience
from bookmark_rag.domain.services.prompting import ChatMessage

__all__ = ["ChatMessage", "LLMPort"]


@runtime_checkable
class LLMPort(Protocol):
    """Language-model collaborator.

    Both calls raise ``StreamTransportError`` whose ``kind`` tells network, auth,
    rate-limit and provider failures apart.
    """

    async def complete(
        self,
        messages: Sequence[ChatMessage],
        system: str | None = None,
        max_tokens: int = 512,
        model: str | None = None,
    ) -> str: ...

    def stream_complete(
        self,
        messages: Sequence[ChatMessage],
        system: str | None = None,
        max_tokens: int = 1500,
        model: str | None = None,
    ) -> AsyncIterator[str]:
        """Yield text increments until end of stream."""
        ...

    async def generate(self, prompt: str, system: str | None = None, max_tokens: int = 512) -> str:
        """Convenience method for single-shot text generation.

        Note:
            Default implementation uses complete with a single user message.
        """
        msg = ChatMessage(role="user", content=prompt)
        return await self.complete([msg], system=system, max_tokens=max_tokens)
