"""SQLite-backed bookmark and chat history storage (stdlib sqlite3, WAL)."""

from __future__ import annotations

import json
import os
import sqlite3
import threading
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime
from typing import Any

from bookmark_rag.application.ports.bookmark_repository_port import BookmarkRepositoryPort
from bookmark_rag.domain.errors import RepositoryError
from bookmark_rag.domain.models import Bookmark, Citation, Role, Turn
from bookmark_rag.domain.services.ranking import keyword_needles

SCHEMA_SQL = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS bookmarks (
  id TEXT PRIMARY KEY,
  author_handle TEXT NOT NULL,
  author_name TEXT NOT NULL DEFAULT '',
  author_avatar TEXT,
  text TEXT NOT NULL,
  posted_at TEXT NOT NULL,
  saved_at TEXT,
  url TEXT NOT NULL DEFAULT '',
  media_urls TEXT NOT NULL DEFAULT '[]',
  tags TEXT NOT NULL DEFAULT '[]',
  folder_id TEXT,
  is_favorite INTEGER NOT NULL DEFAULT 0,
  deleted INTEGER NOT NULL DEFAULT 0,
  updated_at TEXT DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_bookmarks_author ON bookmarks(author_handle COLLATE NOCASE);
CREATE INDEX IF NOT EXISTS idx_bookmarks_posted ON bookmarks(posted_at);

CREATE TABLE IF NOT EXISTS chat_messages (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  role TEXT NOT NULL,
  content TEXT NOT NULL,
  citations TEXT NOT NULL DEFAULT '[]',
  follow_ups TEXT NOT NULL DEFAULT '[]',
  context_bookmark_ids TEXT NOT NULL DEFAULT '[]',
  complete INTEGER NOT NULL DEFAULT 1,
  created_at TEXT DEFAULT (datetime('now'))
);
"""

_COLUMNS = (
    "id, author_handle, author_name, author_avatar, text, posted_at, saved_at, url, "
    "media_urls, tags, folder_id, is_favorite, deleted"
)


def _contains(haystack: str | None, needle: str | None) -> int:
    if not haystack or not needle:
        return 0
    return int(needle in haystack.casefold())


def _ts(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class SQLiteBookmarkRepository(BookmarkRepositoryPort):
    """
    Every public call runs in its own transaction.

    One connection shared under a lock; callers may sit on different threads.
    """

    def __init__(self, path: str = "var/bookmarks.db") -> None:
        self.path = path
        if path != ":memory:":
            os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
        try:
            self._conn = sqlite3.connect(path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.create_function("casefold_contains", 2, _contains, deterministic=True)
            self._conn.executescript(SCHEMA_SQL)
        except sqlite3.Error as ex:
            raise RepositoryError(f"cannot open bookmark database {path}: {ex}") from ex
        self._lock = threading.Lock()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @contextmanager
    def _tx(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                with self._conn:
                    yield self._conn
            except sqlite3.Error as ex:
                raise RepositoryError(f"bookmark storage failed: {ex}") from ex

    # ===== Bookmarks =====

    def find_by_keyword(self, terms: Sequence[str]) -> list[Bookmark]:
        needles = keyword_needles(terms)
        if not needles:
            return []
        match = " OR ".join(
            "casefold_contains(text, ?) OR casefold_contains(author_handle, ?)"
            " OR casefold_contains(author_name, ?)"
            for _ in needles
        )
        params = [n for n in needles for _ in range(3)]
        sql = f"SELECT {_COLUMNS} FROM bookmarks WHERE deleted = 0 AND ({match}) ORDER BY id"
        with self._tx() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._to_bookmark(r) for r in rows]

    def all_current(self) -> list[Bookmark]:
        with self._tx() as conn:
            rows = conn.execute(
                f"SELECT {_COLUMNS} FROM bookmarks WHERE deleted = 0 ORDER BY id"
            ).fetchall()
        return [self._to_bookmark(r) for r in rows]

    def get(self, bookmark_id: str) -> Bookmark | None:
        with self._tx() as conn:
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM bookmarks WHERE id = ?", (bookmark_id,)
            ).fetchone()
        return self._to_bookmark(row) if row is not None else None

    def upsert(self, bookmark: Bookmark) -> None:
        with self._tx() as conn:
            conn.execute(
                f"""
                INSERT INTO bookmarks ({_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                  author_handle = excluded.author_handle,
                  author_name = excluded.author_name,
                  author_avatar = excluded.author_avatar,
                  text = excluded.text,
                  posted_at = excluded.posted_at,
                  saved_at = excluded.saved_at,
                  url = excluded.url,
                  media_urls = excluded.media_urls,
                  tags = excluded.tags,
                  folder_id = excluded.folder_id,
                  is_favorite = excluded.is_favorite,
                  deleted = excluded.deleted,
                  updated_at = datetime('now')
                """,
                (
                    bookmark.id,
                    bookmark.author_handle,
                    bookmark.author_name,
                    bookmark.author_avatar,
                    bookmark.text,
                    _ts(bookmark.posted_at),
                    _ts(bookmark.saved_at),
                    bookmark.url,
                    json.dumps(list(bookmark.media_urls)),
                    json.dumps(sorted(bookmark.tags)),
                    bookmark.folder_id,
                    int(bookmark.is_favorite),
                    int(bookmark.deleted),
                ),
            )

    def set_favorite(self, bookmark_id: str, favorite: bool) -> None:
        self._update(bookmark_id, "is_favorite = ?", int(favorite))

    def add_tag(self, bookmark_id: str, tag: str) -> None:
        with self._tx() as conn:
            row = conn.execute("SELECT tags FROM bookmarks WHERE id = ?", (bookmark_id,)).fetchone()
            if row is None:
                raise RepositoryError(f"unknown bookmark: {bookmark_id}")
            tags = set(json.loads(row["tags"] or "[]"))
            tags.add(tag)
            conn.execute(
                "UPDATE bookmarks SET tags = ?, updated_at = datetime('now') WHERE id = ?",
                (json.dumps(sorted(tags)), bookmark_id),
            )

    def set_folder(self, bookmark_id: str, folder_id: str | None) -> None:
        self._update(bookmark_id, "folder_id = ?", folder_id)

    def _update(self, bookmark_id: str, assignment: str, value: Any) -> None:
        with self._tx() as conn:
            cur = conn.execute(
                f"UPDATE bookmarks SET {assignment}, updated_at = datetime('now') WHERE id = ?",
                (value, bookmark_id),
            )
            if cur.rowcount == 0:
                raise RepositoryError(f"unknown bookmark: {bookmark_id}")

    @staticmethod
    def _to_bookmark(row: sqlite3.Row) -> Bookmark:
        return Bookmark(
            id=row["id"],
            author_handle=row["author_handle"],
            author_name=row["author_name"],
            author_avatar=row["author_avatar"],
            text=row["text"],
            posted_at=datetime.fromisoformat(row["posted_at"]),
            saved_at=_parse_ts(row["saved_at"]),
            url=row["url"],
            media_urls=tuple(json.loads(row["media_urls"] or "[]")),
            tags=frozenset(json.loads(row["tags"] or "[]")),
            folder_id=row["folder_id"],
            is_favorite=bool(row["is_favorite"]),
            deleted=bool(row["deleted"]),
        )

    # ===== Conversation =====

    def append_conversation_turn(self, turn: Turn) -> None:
        citations = [
            {"bookmark_id": c.bookmark_id, "author_handle": c.author_handle, "order": c.order}
            for c in turn.citations
        ]
        with self._tx() as conn:
            conn.execute(
                """
                INSERT INTO chat_messages
                  (role, content, citations, follow_ups, context_bookmark_ids, complete, created_at)
                VALUES (?, ?, ?, ?, ?, ?, COALESCE(?, datetime('now')))
                """,
                (
                    turn.role.value,
                    turn.text,
                    json.dumps(citations),
                    json.dumps(list(turn.follow_ups)),
                    json.dumps(list(turn.context_ids)),
                    int(turn.complete),
                    _ts(turn.created_at),
                ),
            )

    def load_conversation_history(self, limit: int = 50) -> list[Turn]:
        if limit <= 0:
            return []
        with self._tx() as conn:
            rows = conn.execute(
                "SELECT * FROM chat_messages ORDER BY id DESC LIMIT ?", (limit,)
            ).fetchall()
        return [self._to_turn(r) for r in reversed(rows)]

    def clear_conversation_history(self) -> None:
        with self._tx() as conn:
            conn.execute("DELETE FROM chat_messages")

    @staticmethod
    def _to_turn(row: sqlite3.Row) -> Turn:
        citations = tuple(
            Citation(c["bookmark_id"], c.get("author_handle", ""), int(c.get("order", 0)))
            for c in json.loads(row["citations"] or "[]")
        )
        created = row["created_at"]
        return Turn(
            role=Role(row["role"]),
            text=row["content"],
            citations=citations,
            follow_ups=tuple(json.loads(row["follow_ups"] or "[]")),
            context_ids=tuple(json.loads(row["context_bookmark_ids"] or "[]")),
            complete=bool(row["complete"]),
            created_at=_parse_ts(created),
        )
