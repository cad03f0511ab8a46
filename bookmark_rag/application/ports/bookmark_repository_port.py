from collections.abc import Sequence
from typing import Protocol, runtime_checkable

from bookmark_rag.domain.models import Bookmark, Turn


@runtime_checkable
class BookmarkRepositoryPort(Protocol):
    """Storage collaborator. Each call is transactional on its own; nothing spans calls."""

    def find_by_keyword(self, terms: Sequence[str]) -> list[Bookmark]:
        """Current bookmarks whose text or author may match any term (a superset is fine)."""
        ...

    def all_current(self) -> list[Bookmark]:
        """Every non-deleted bookmark."""
        ...

    def get(self, bookmark_id: str) -> Bookmark | None: ...

    def upsert(self, bookmark: Bookmark) -> None: ...

    def set_favorite(self, bookmark_id: str, favorite: bool) -> None: ...

    def add_tag(self, bookmark_id: str, tag: str) -> None: ...

    def set_folder(self, bookmark_id: str, folder_id: str | None) -> None: ...

    def append_conversation_turn(self, turn: Turn) -> None: ...

    def load_conversation_history(self, limit: int = 50) -> list[Turn]:
        """Most recent turns, oldest first."""
        ...

    def clear_conversation_history(self) -> None: ...
