from __future__ import annotations

import os
import re
import sqlite3
import threading
from dataclasses import dataclass, field
from typing import Any

import sqlite_vec


class StorageError(Exception):
    """A storage query failed or timed out while serving a request."""


SCHEMA_SQL = """
PRAGMA journal_mode=WAL;
PRAGMA foreign_keys=ON;

CREATE TABLE IF NOT EXISTS books (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  user_id TEXT NOT NULL,
  title TEXT NOT NULL,
  author TEXT,
  cover_image_url TEXT,
  created_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS highlights (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  user_id TEXT NOT NULL,
  book_id INTEGER NOT NULL REFERENCES books(id) ON DELETE CASCADE,
  content TEXT NOT NULL,
  chapter TEXT,
  page INTEGER,
  embedding BLOB,  -- float32 vector from serialize_f32, NULL until computed
  created_at TEXT DEFAULT (datetime('now')),
  updated_at TEXT DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_highlights_user_id ON highlights(user_id);
CREATE INDEX IF NOT EXISTS idx_highlights_book_id ON highlights(book_id);

CREATE TABLE IF NOT EXISTS tags (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  user_id TEXT NOT NULL,
  name TEXT NOT NULL,
  color TEXT,
  UNIQUE(user_id, name)
);

CREATE TABLE IF NOT EXISTS highlight_tags (
  highlight_id INTEGER NOT NULL REFERENCES highlights(id) ON DELETE CASCADE,
  tag_id INTEGER NOT NULL REFERENCES tags(id) ON DELETE CASCADE,
  PRIMARY KEY (highlight_id, tag_id)
);

CREATE TABLE IF NOT EXISTS book_tags (
  book_id INTEGER NOT NULL REFERENCES books(id) ON DELETE CASCADE,
  tag_id INTEGER NOT NULL REFERENCES tags(id) ON DELETE CASCADE,
  PRIMARY KEY (book_id, tag_id)
);

-- Highlight text plus book title/author for keyword search
CREATE VIRTUAL TABLE IF NOT EXISTS highlights_fts USING fts5(
  content, book_title, book_author,
  highlight_id UNINDEXED,
  tokenize='porter unicode61'
);
"""

TAG_FILTER_SQL = """
  AND (
    EXISTS (SELECT 1 FROM highlight_tags ht WHERE ht.highlight_id = h.id AND ht.tag_id IN ({ph}))
    OR EXISTS (SELECT 1 FROM book_tags bt WHERE bt.book_id = h.book_id AND bt.tag_id IN ({ph}))
  )
"""

_WORD_RE = re.compile(r"\w+", re.UNICODE)

# Snowball English stopwords, the list PostgreSQL's 'english' dictionary drops
ENGLISH_STOPWORDS: frozenset[str] = frozenset(
    """
    i me my myself we our ours ourselves you your yours yourself yourselves
    he him his himself she her hers herself it its itself they them their
    theirs themselves what which who whom this that these those am is are was
    were be been being have has had having do does did doing a an the and but
    if or because as until while of at by for with about against between into
    through during before after above below to from up down in out on off over
    under again further then once here there when where why how all any both
    each few more most other some such no nor not only own same so than too
    very s t can will just don should now
    """.split()
)


def fts_query(text: str) -> str:
    """Build an FTS5 MATCH expression from plain text.

    English stopwords are dropped, every remaining word becomes a quoted
    term and terms are ANDed, so user input never reaches FTS5 operator
    syntax. Returns an empty string when no terms are left.
    """
    words = [w for w in _WORD_RE.findall(text) if w.lower() not in ENGLISH_STOPWORDS]
    return " ".join(f'"{w}"' for w in words)


def _tag_filter(tag_ids: list[int] | None) -> tuple[str, list[Any]]:
    if not tag_ids:
        return "", []
    ph = ",".join("?" * len(tag_ids))
    return TAG_FILTER_SQL.format(ph=ph), list(tag_ids) + list(tag_ids)


@dataclass
class DB:
    conn: sqlite3.Connection
    dimensions: int = 384
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def init(self) -> None:
        with self._lock:
            self.conn.executescript(SCHEMA_SQL)
            self.conn.commit()

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    # ==================== Write path (import / edit) ====================

    def create_book(
        self,
        user_id: str,
        title: str,
        author: str | None = None,
        cover_image_url: str | None = None,
    ) -> int:
        with self._lock:
            cur = self.conn.execute(
                "INSERT INTO books (user_id, title, author, cover_image_url) VALUES (?, ?, ?, ?)",
                (user_id, title, author, cover_image_url),
            )
            self.conn.commit()
            return cur.lastrowid

    def update_book(self, book_id: int, title: str, author: str | None = None) -> bool:
        """Rename a book and refresh the keyword index of its highlights."""
        with self._lock:
            cur = self.conn.execute(
                "UPDATE books SET title = ?, author = ? WHERE id = ?",
                (title, author, book_id),
            )
            if cur.rowcount == 0:
                return False
            self.conn.execute(
                """
                UPDATE highlights_fts SET book_title = ?, book_author = ?
                WHERE highlight_id IN (SELECT id FROM highlights WHERE book_id = ?)
                """,
                (title, author or "", book_id),
            )
            self.conn.commit()
            return True

    def save_highlight(
        self,
        user_id: str,
        book_id: int,
        content: str,
        chapter: str | None = None,
        page: int | None = None,
    ) -> int:
        """Insert a highlight without an embedding and index its text."""
        with self._lock:
            book = self.conn.execute(
                "SELECT title, author FROM books WHERE id = ?", (book_id,)
            ).fetchone()
            if book is None:
                raise ValueError(f"Book {book_id} does not exist")

            cur = self.conn.execute(
                "INSERT INTO highlights (user_id, book_id, content, chapter, page) VALUES (?, ?, ?, ?, ?)",
                (user_id, book_id, content, chapter, page),
            )
            highlight_id = cur.lastrowid
            self.conn.execute(
                "INSERT INTO highlights_fts (content, book_title, book_author, highlight_id) VALUES (?, ?, ?, ?)",
                (content, book[0], book[1] or "", highlight_id),
            )
            self.conn.commit()
            return highlight_id

    def update_highlight_content(self, highlight_id: int, content: str) -> bool:
        """Replace highlight text. The stored embedding is cleared since it no longer matches."""
        with self._lock:
            cur = self.conn.execute(
                """
                UPDATE highlights SET content = ?, embedding = NULL, updated_at = datetime('now')
                WHERE id = ?
                """,
                (content, highlight_id),
            )
            if cur.rowcount == 0:
                return False
            self.conn.execute(
                "UPDATE highlights_fts SET content = ? WHERE highlight_id = ?",
                (content, highlight_id),
            )
            self.conn.commit()
            return True

    def create_tag(self, user_id: str, name: str, color: str | None = None) -> int:
        with self._lock:
            cur = self.conn.execute(
                "INSERT INTO tags (user_id, name, color) VALUES (?, ?, ?)",
                (user_id, name, color),
            )
            self.conn.commit()
            return cur.lastrowid

    def tag_highlight(self, highlight_id: int, tag_id: int) -> None:
        with self._lock:
            self.conn.execute(
                "INSERT OR IGNORE INTO highlight_tags (highlight_id, tag_id) VALUES (?, ?)",
                (highlight_id, tag_id),
            )
            self.conn.commit()

    def tag_book(self, book_id: int, tag_id: int) -> None:
        with self._lock:
            self.conn.execute(
                "INSERT OR IGNORE INTO book_tags (book_id, tag_id) VALUES (?, ?)",
                (book_id, tag_id),
            )
            self.conn.commit()

    # ==================== Retrieval ====================

    def vector_search(
        self,
        user_id: str,
        query_embedding: bytes,
        tag_ids: list[int] | None = None,
        limit: int = 30,
    ) -> list[tuple[int, float]]:
        """Nearest highlights by cosine distance, closest first.

        Highlights without an embedding are never returned.

        Returns:
            List of (highlight_id, distance)
        """
        tag_sql, tag_params = _tag_filter(tag_ids)
        query = f"""
            SELECT h.id, vec_distance_cosine(h.embedding, ?) AS distance
            FROM highlights h
            WHERE h.user_id = ? AND h.embedding IS NOT NULL
            {tag_sql}
            ORDER BY distance, h.id
            LIMIT ?
        """
        params = [query_embedding, user_id] + tag_params + [limit]
        with self._lock:
            cur = self.conn.execute(query, params)
            return [(row[0], row[1]) for row in cur.fetchall()]

    def lexical_search(
        self,
        user_id: str,
        query: str,
        tag_ids: list[int] | None = None,
        limit: int = 30,
    ) -> list[tuple[int, float]]:
        """Keyword relevance over highlight text, book title and author, best first.

        Returns:
            List of (highlight_id, rank) where larger rank is more relevant
        """
        match = fts_query(query)
        if not match:
            return []

        tag_sql, tag_params = _tag_filter(tag_ids)
        sql = f"""
            SELECT h.id, -bm25(highlights_fts) AS score
            FROM highlights_fts f
            JOIN highlights h ON h.id = f.highlight_id
            WHERE highlights_fts MATCH ? AND h.user_id = ?
            {tag_sql}
            ORDER BY score DESC, h.id
            LIMIT ?
        """
        params = [match, user_id] + tag_params + [limit]
        with self._lock:
            cur = self.conn.execute(sql, params)
            return [(row[0], row[1]) for row in cur.fetchall()]

    def get_highlights(self, highlight_ids: list[int]) -> dict[int, dict[str, Any]]:
        """Load display fields for highlights, joined with their book."""
        if not highlight_ids:
            return {}
        ph = ",".join("?" * len(highlight_ids))
        with self._lock:
            cur = self.conn.execute(
                f"""
                SELECT h.id, h.content, h.chapter, h.page, h.book_id,
                       b.title, b.author, b.cover_image_url
                FROM highlights h JOIN books b ON b.id = h.book_id
                WHERE h.id IN ({ph})
                """,
                list(highlight_ids),
            )
            rows = cur.fetchall()
        return {
            r[0]: {
                "id": r[0],
                "content": r[1],
                "chapter": r[2],
                "page": r[3],
                "book_id": r[4],
                "book_title": r[5],
                "book_author": r[6],
                "cover_image_url": r[7],
            }
            for r in rows
        }

    def get_highlight_tags(self, highlight_ids: list[int]) -> dict[int, list[dict[str, Any]]]:
        if not highlight_ids:
            return {}
        ph = ",".join("?" * len(highlight_ids))
        with self._lock:
            cur = self.conn.execute(
                f"""
                SELECT ht.highlight_id, t.id, t.name, t.color
                FROM highlight_tags ht JOIN tags t ON t.id = ht.tag_id
                WHERE ht.highlight_id IN ({ph})
                ORDER BY t.id
                """,
                list(highlight_ids),
            )
            rows = cur.fetchall()
        tags: dict[int, list[dict[str, Any]]] = {}
        for r in rows:
            tags.setdefault(r[0], []).append({"id": r[1], "name": r[2], "color": r[3]})
        return tags

    def get_book_tags(self, book_ids: list[int]) -> dict[int, list[dict[str, Any]]]:
        if not book_ids:
            return {}
        ph = ",".join("?" * len(book_ids))
        with self._lock:
            cur = self.conn.execute(
                f"""
                SELECT bt.book_id, t.id, t.name, t.color
                FROM book_tags bt JOIN tags t ON t.id = bt.tag_id
                WHERE bt.book_id IN ({ph})
                ORDER BY t.id
                """,
                list(book_ids),
            )
            rows = cur.fetchall()
        tags: dict[int, list[dict[str, Any]]] = {}
        for r in rows:
            tags.setdefault(r[0], []).append({"id": r[1], "name": r[2], "color": r[3]})
        return tags

    # ==================== Embeddings ====================

    def find_unembedded(self, user_id: str | None = None, limit: int = 1000) -> list[dict[str, Any]]:
        """Get highlights that have no embedding yet, oldest first."""
        query = "SELECT id, content FROM highlights WHERE embedding IS NULL"
        params: list[Any] = []
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)
        query += " ORDER BY id LIMIT ?"
        params.append(limit)
        with self._lock:
            cur = self.conn.execute(query, params)
            return [{"id": r[0], "content": r[1]} for r in cur.fetchall()]

    def save_embedding(self, highlight_id: int, embedding: bytes) -> bool:
        """Store an embedding for a highlight.

        Args:
            highlight_id: The highlight ID
            embedding: Serialized embedding bytes (from serialize_f32)

        Returns:
            False if the highlight no longer exists
        """
        if len(embedding) != self.dimensions * 4:
            raise ValueError(
                f"Embedding has {len(embedding) // 4} dimensions, expected {self.dimensions}"
            )
        with self._lock:
            cur = self.conn.execute(
                "UPDATE highlights SET embedding = ? WHERE id = ?",
                (embedding, highlight_id),
            )
            self.conn.commit()
            return cur.rowcount > 0

    def get_embedding_stats(self, user_id: str) -> dict[str, int]:
        with self._lock:
            cur = self.conn.execute(
                """
                SELECT SUM(CASE WHEN embedding IS NOT NULL THEN 1 ELSE 0 END),
                       SUM(CASE WHEN embedding IS NULL THEN 1 ELSE 0 END)
                FROM highlights WHERE user_id = ?
                """,
                (user_id,),
            )
            row = cur.fetchone()
        return {"with_embedding": row[0] or 0, "without_embedding": row[1] or 0}


def connect(db_path: str) -> sqlite3.Connection:
    """Open a connection with sqlite-vec loaded."""
    if db_path != ":memory:":
        os.makedirs(os.path.dirname(db_path) or ".", exist_ok=True)

    conn = sqlite3.connect(db_path, check_same_thread=False)

    # sqlite-vec must be loaded into this connection
    conn.enable_load_extension(True)
    sqlite_vec.load(conn)
    conn.enable_load_extension(False)
    return conn

