from collections.abc import Collection
from typing import Protocol, runtime_checkable

from bookmark_rag.domain.models import EmbeddingRecord
from bookmark_rag.domain.types import Score, Vector


@runtime_checkable
class EmbeddingIndexPort(Protocol):
    """Persistent vector storage keyed by bookmark id.

    ``put`` is atomic per item: readers see the old record or the new one, never a mix.
    ``nearest`` may be a linear scan or an approximate index; callers do not care.
    """

    def get(self, bookmark_id: str) -> EmbeddingRecord | None: ...

    def put(self, record: EmbeddingRecord) -> None: ...

    def delete(self, bookmark_id: str) -> None: ...

    def nearest(
        self,
        query: Vector,
        top_k: int,
        min_similarity: float = 0.0,
        ids: Collection[str] | None = None,
    ) -> list[tuple[str, Score]]: ...

    def count(self) -> int: ...

    def flush(self) -> None: ...
