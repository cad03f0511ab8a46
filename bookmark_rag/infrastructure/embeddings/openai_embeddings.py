from collections.abc import Sequence
from dataclasses import dataclass
from importlib import import_module
from typing import Any

from bookmark_rag.application.ports.embedding_port import EmbeddingPort
from bookmark_rag.domain.errors import EmbeddingError
from bookmark_rag.domain.types import Vector


@dataclass
class OpenAIEmbeddingAdapter(EmbeddingPort):
    """OpenAI-compatible ``/embeddings`` endpoint."""

    base_url: str | None = None
    api_key: str = "EMPTY"
    model_name: str = "text-embedding-3-small"
    timeout_s: float = 30.0

    def __post_init__(self) -> None:
        self._client: Any | None = None

    def _get_client(self) -> Any:
        if self._client is None:
            try:
                module = import_module("openai")
            except ImportError as ex:
                raise EmbeddingError("openai not installed") from ex
            self._client = module.AsyncOpenAI(
                base_url=self.base_url, api_key=self.api_key, timeout=self.timeout_s, max_retries=0
            )
        return self._client

    async def embed_texts(self, texts: Sequence[str]) -> list[Vector | None]:
        if not texts:
            return []
        client = self._get_client()
        try:
            resp: Any = await client.embeddings.create(model=self.model_name, input=list(texts))
        except Exception as ex:  # noqa: BLE001
            raise EmbeddingError(f"embedding request failed: {ex}") from ex
        out: list[Vector | None] = [None] * len(texts)
        for item in resp.data:
            # the endpoint may reorder items; ``index`` points back at the input
            if 0 <= item.index < len(out) and item.embedding:
                out[item.index] = tuple(float(x) for x in item.embedding)
        return out
