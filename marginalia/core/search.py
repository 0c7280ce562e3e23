"""Hybrid highlight search with Reciprocal Rank Fusion (RRF).

A query is embedded once, then a semantic (vector distance) and a lexical
(full-text rank) retrieval run concurrently against storage. Both lists
are over-fetched, fused by RRF, trimmed to the requested limit and
decorated with merged highlight + book tags.

RRF formula: score = sum(1 / (k + rank)) over every list the highlight
appears in, with 1-indexed ranks and k = 60.
"""

from __future__ import annotations

import asyncio
import logging
import math
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable

from marginalia.core.embedding_queue import EmbeddingJob
from marginalia.core.embeddings import serialize_f32
from marginalia.core.storage import StorageError

if TYPE_CHECKING:
    from marginalia.core.embedding_queue import EmbeddingQueue
    from marginalia.core.embeddings import EmbeddingService
    from marginalia.core.storage import DB

logger = logging.getLogger(__name__)

RRF_K = 60
DEFAULT_LIMIT = 10
MAX_LIMIT = 50
OVERFETCH_FACTOR = 3
MAX_FETCH_LIMIT = 100
# Brings a top hit in both lists (2/61 ~ 0.033) close to 1.0; not a probability
SIMILARITY_SCALE = 30
RELATED_TAGS_LIMIT = 10
REEMBED_LIMIT = 500

_LEADING_INT_RE = re.compile(r"[+-]?\d+")


class SearchError(Exception):
    """A search request the caller can correct or retry."""

    status_code = 400


class InvalidQuery(SearchError):
    pass


class EmbeddingUnavailable(SearchError):
    pass


@dataclass
class SearchCandidate:
    highlight_id: int
    semantic_rank: int | None = None
    keyword_rank: int | None = None
    rrf_score: float = 0.0

    def sort_key(self) -> tuple[float, float, float, int]:
        """rrf descending, then semantic rank, then keyword rank (absent last), then id."""
        return (
            -self.rrf_score,
            self.semantic_rank if self.semantic_rank is not None else math.inf,
            self.keyword_rank if self.keyword_rank is not None else math.inf,
            self.highlight_id,
        )


@dataclass
class SearchResponse:
    query: str
    filter_tag_ids: list[int]
    results: list[dict[str, Any]] = field(default_factory=list)
    related_tags: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "query": self.query,
            "filterTagIds": self.filter_tag_ids,
            "results": self.results,
            "relatedTags": self.related_tags,
        }


def parse_limit(value: Any) -> int:
    """Parse a requested result count, clamped into [1, 50].

    Reads the leading integer ("25.5" and "25abc" give 25); text without
    one gives the default of 10.
    """
    if value is None:
        return DEFAULT_LIMIT
    match = _LEADING_INT_RE.match(str(value).strip())
    if match is None:
        return DEFAULT_LIMIT
    return max(1, min(int(match.group()), MAX_LIMIT))


def parse_tag_ids(value: str | None) -> list[int]:
    """Parse a comma-separated tag id list. Blank entries are ignored."""
    if not value:
        return []
    tag_ids = []
    for part in value.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            tag_ids.append(int(part))
        except ValueError:
            raise InvalidQuery(f"Invalid tag id: {part!r}") from None
    return tag_ids


def fetch_limit(limit: int) -> int:
    return min(limit * OVERFETCH_FACTOR, MAX_FETCH_LIMIT)


def rrf_score(semantic_rank: int | None, keyword_rank: int | None, k: int = RRF_K) -> float:
    score = 0.0
    if semantic_rank is not None:
        score += 1 / (k + semantic_rank)
    if keyword_rank is not None:
        score += 1 / (k + keyword_rank)
    return score


def fuse(semantic_ids: list[int], keyword_ids: list[int], k: int = RRF_K) -> list[SearchCandidate]:
    """Fuse two ranked id lists into candidates sorted best first."""
    semantic_ranks = {hid: i + 1 for i, hid in enumerate(semantic_ids)}
    keyword_ranks = {hid: i + 1 for i, hid in enumerate(keyword_ids)}

    candidates = []
    for hid in dict.fromkeys(semantic_ids + keyword_ids):
        s = semantic_ranks.get(hid)
        kw = keyword_ranks.get(hid)
        candidates.append(
            SearchCandidate(highlight_id=hid, semantic_rank=s, keyword_rank=kw, rrf_score=rrf_score(s, kw, k))
        )

    candidates.sort(key=SearchCandidate.sort_key)
    return candidates


def normalize_score(rrf: float) -> float:
    return min(rrf * SIMILARITY_SCALE, 1.0)


def merge_tags(highlight_tags: list[dict[str, Any]], book_tags: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Own tags first, then book tags not already present, unique by id."""
    merged: dict[Any, dict[str, Any]] = {}
    for tag in highlight_tags:
        merged.setdefault(tag["id"], tag)
    for tag in book_tags:
        merged.setdefault(tag["id"], tag)
    return list(merged.values())


def related_tags(results: list[dict[str, Any]], limit: int = RELATED_TAGS_LIMIT) -> list[dict[str, Any]]:
    """Count tags across results, most frequent first; ties keep first appearance."""
    counts: dict[Any, dict[str, Any]] = {}
    for result in results:
        for tag in result["tags"]:
            if tag["id"] in counts:
                counts[tag["id"]]["count"] += 1
            else:
                counts[tag["id"]] = {**tag, "count": 1}
    return sorted(counts.values(), key=lambda t: t["count"], reverse=True)[:limit]


class HybridSearch:
    """Read-only search over one user's highlights, plus embedding maintenance hooks."""

    def __init__(
        self,
        db: DB,
        embedder: EmbeddingService,
        queue: EmbeddingQueue,
        storage_timeout: float | None = None,
    ) -> None:
        self.db = db
        self.embedder = embedder
        self.queue = queue
        self.storage_timeout = storage_timeout

    async def _storage(self, fn: Callable[..., Any], *args: Any) -> Any:
        name = getattr(fn, "__name__", "storage call")
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args), self.storage_timeout)
        except asyncio.TimeoutError as e:
            raise StorageError(f"{name} timed out after {self.storage_timeout}s") from e
        except Exception as e:
            raise StorageError(f"{name} failed: {e}") from e

    async def search(
        self,
        user_id: str,
        query: str | None,
        tag_ids: list[int] | None = None,
        limit: Any = None,
    ) -> SearchResponse:
        """Run a hybrid search.

        Raises:
            InvalidQuery: Query is empty after trimming.
            EmbeddingUnavailable: The query could not be embedded.
            StorageError: Any retrieval query failed; no partial results.
        """
        if not query or not query.strip():
            raise InvalidQuery("Query parameter 'q' is required")

        limit = parse_limit(limit)
        tag_ids = list(tag_ids or [])
        per_channel = fetch_limit(limit)

        query_embedding = await self.embedder.generate_embedding(query)
        if query_embedding is None:
            raise EmbeddingUnavailable("Failed to generate query embedding")

        semantic_rows, keyword_rows = await asyncio.gather(
            self._storage(self.db.vector_search, user_id, serialize_f32(query_embedding), tag_ids, per_channel),
            self._storage(self.db.lexical_search, user_id, query, tag_ids, per_channel),
        )

        candidates = fuse([r[0] for r in semantic_rows], [r[0] for r in keyword_rows])[:limit]
        highlight_ids = [c.highlight_id for c in candidates]

        rows = await self._storage(self.db.get_highlights, highlight_ids)
        book_ids = list(dict.fromkeys(r["book_id"] for r in rows.values()))
        highlight_tags, book_tags = await asyncio.gather(
            self._storage(self.db.get_highlight_tags, highlight_ids),
            self._storage(self.db.get_book_tags, book_ids),
        )

        results = []
        for candidate in candidates:
            row = rows.get(candidate.highlight_id)
            if row is None:
                # Deleted between retrieval and hydration
                continue
            keyword_matched = candidate.keyword_rank is not None
            results.append({
                "id": row["id"],
                "content": row["content"],
                "chapter": row["chapter"],
                "page": row["page"],
                "bookId": row["book_id"],
                "bookTitle": row["book_title"],
                "bookAuthor": row["book_author"],
                "coverImageUrl": row["cover_image_url"],
                "similarity": normalize_score(candidate.rrf_score),
                "tags": merge_tags(
                    highlight_tags.get(row["id"], []),
                    book_tags.get(row["book_id"], []),
                ),
                "tagBoost": keyword_matched,
                "keywordMatched": keyword_matched,
            })

        logger.info(
            f"Search for user {user_id}: {len(semantic_rows)} semantic, "
            f"{len(keyword_rows)} keyword, {len(results)} returned"
        )
        return SearchResponse(
            query=query,
            filter_tag_ids=tag_ids,
            results=results,
            related_tags=related_tags(results),
        )

    async def request_reembedding(self, user_id: str) -> int:
        """Queue up to 500 of the user's unembedded highlights. Returns the count queued."""
        rows = await self._storage(self.db.find_unembedded, user_id, REEMBED_LIMIT)
        self.queue.add_batch(EmbeddingJob(highlight_id=r["id"], content=r["content"]) for r in rows)
        return len(rows)

    async def embedding_status(self, user_id: str) -> dict[str, Any]:
        stats = await self._storage(self.db.get_embedding_stats, user_id)
        return {
            "embeddings": {
                "complete": stats["with_embedding"],
                "pending": stats["without_embedding"],
            },
            "queue": self.queue.status().to_dict(),
            "modelLoaded": self.embedder.is_loaded(),
        }
