import asyncio
import threading
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from bookmark_rag.application.ports.embedding_port import EmbeddingPort
from bookmark_rag.domain.errors import EmbeddingError
from bookmark_rag.domain.types import Vector


@dataclass
class SentenceTransformersEmbeddingAdapter(EmbeddingPort):
    """Local sentence-transformers model; encoding runs in a worker thread."""

    model_name: str = "sentence-transformers/all-MiniLM-L6-v2"
    device: str = "cpu"  # "cuda" | "mps" if available
    normalize: bool = True

    def __post_init__(self) -> None:
        self._model: Any | None = None
        self._lock = threading.Lock()

    def _get(self) -> Any:
        with self._lock:
            if self._model is None:
                try:
                    from sentence_transformers import SentenceTransformer  # type: ignore
                except Exception as ex:  # pragma: no cover
                    raise EmbeddingError("sentence-transformers not installed") from ex
                self._model = SentenceTransformer(self.model_name, device=self.device)
            return self._model

    def _encode(self, texts: Sequence[str]) -> list[Vector | None]:
        model = self._get()
        try:
            vectors = model.encode(
                list(texts), normalize_embeddings=self.normalize, convert_to_numpy=True
            )
        except Exception as ex:  # noqa: BLE001
            raise EmbeddingError(f"local embedding failed: {ex}") from ex
        return [tuple(float(x) for x in v) for v in vectors]

    async def embed_texts(self, texts: Sequence[str]) -> list[Vector | None]:
        if not texts:
            return []
        return await asyncio.to_thread(self._encode, texts)
