from __future__ import annotations

from collections.abc import Sequence

from bookmark_rag.application.ports.bookmark_repository_port import BookmarkRepositoryPort
from bookmark_rag.domain.errors import RepositoryError
from bookmark_rag.domain.models import Bookmark, Turn
from bookmark_rag.domain.services.ranking import keyword_needles


class InMemoryBookmarkRepository(BookmarkRepositoryPort):
    """Process-local storage for tests and throwaway sessions."""

    def __init__(self, bookmarks: Sequence[Bookmark] = ()) -> None:
        self._bookmarks: dict[str, Bookmark] = {}
        self._turns: list[Turn] = []
        for bm in bookmarks:
            self.upsert(bm)

    def find_by_keyword(self, terms: Sequence[str]) -> list[Bookmark]:
        needles = keyword_needles(terms)
        if not needles:
            return []
        out = []
        for bm in self.all_current():
            haystack = f"{bm.text}\n{bm.author_handle}\n{bm.author_name}".casefold()
            if any(n in haystack for n in needles):
                out.append(bm)
        return out

    def all_current(self) -> list[Bookmark]:
        return [bm for bm in self._bookmarks.values() if not bm.deleted]

    def get(self, bookmark_id: str) -> Bookmark | None:
        return self._bookmarks.get(bookmark_id)

    def upsert(self, bookmark: Bookmark) -> None:
        self._bookmarks[bookmark.id] = bookmark

    def set_favorite(self, bookmark_id: str, favorite: bool) -> None:
        self._update(bookmark_id, is_favorite=favorite)

    def add_tag(self, bookmark_id: str, tag: str) -> None:
        bm = self._require(bookmark_id)
        self._update(bookmark_id, tags=bm.tags | {tag})

    def set_folder(self, bookmark_id: str, folder_id: str | None) -> None:
        self._update(bookmark_id, folder_id=folder_id)

    def append_conversation_turn(self, turn: Turn) -> None:
        self._turns.append(turn)

    def load_conversation_history(self, limit: int = 50) -> list[Turn]:
        return list(self._turns[-limit:]) if limit > 0 else []

    def clear_conversation_history(self) -> None:
        self._turns.clear()

    def _require(self, bookmark_id: str) -> Bookmark:
        bm = self._bookmarks.get(bookmark_id)
        if bm is None:
            raise RepositoryError(f"unknown bookmark: {bookmark_id}")
        return bm

    def _update(self, bookmark_id: str, **changes: object) -> None:
        self._bookmarks[bookmark_id] = self._require(bookmark_id).with_changes(**changes)
