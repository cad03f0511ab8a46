from collections.abc import Sequence
from typing import Protocol, runtime_checkable

from bookmark_rag.domain.types import Vector


@runtime_checkable
class EmbeddingPort(Protocol):
    model_name: str

    async def embed_texts(self, texts: Sequence[str]) -> list[Vector | None]:
        """One vector per input; ``None`` marks an item the provider could not embed.

        Raises EmbeddingError when the whole batch failed.
        """
        ...
