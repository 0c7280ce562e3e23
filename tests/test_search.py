"""Tests for hybrid search fusion and orchestration."""

import sqlite3
import threading
import time

import pytest

from marginalia.core.embedding_queue import EmbeddingQueue
from marginalia.core.embeddings import EmbeddingService
from marginalia.core.search import (
    EmbeddingUnavailable,
    HybridSearch,
    InvalidQuery,
    SearchCandidate,
    fetch_limit,
    fuse,
    merge_tags,
    normalize_score,
    parse_limit,
    parse_tag_ids,
    related_tags,
    rrf_score,
)
from marginalia.core.storage import StorageError

from conftest import FakeProvider

A, B, C, D = 1, 2, 3, 4


class FakeStore:
    """Records storage calls and serves canned retrieval results."""

    def __init__(self, semantic=(), keyword=(), book_of=None, highlight_tags=None, book_tags=None):
        self.semantic = list(semantic)
        self.keyword = list(keyword)
        self.book_of = book_of or {}
        self.highlight_tags = highlight_tags or {}
        self.book_tags = book_tags or {}
        self.unembedded = []
        self.fail_on = None
        self.calls = []

    def _record(self, name, *args):
        self.calls.append((name, *args))
        if self.fail_on == name:
            raise sqlite3.OperationalError("database is locked")

    def vector_search(self, user_id, query_embedding, tag_ids=None, limit=30):
        self._record("vector_search", user_id, tag_ids, limit)
        return [(hid, 0.1 * i) for i, hid in enumerate(self.semantic)][:limit]

    def lexical_search(self, user_id, query, tag_ids=None, limit=30):
        self._record("lexical_search", user_id, query, tag_ids, limit)
        return [(hid, 10.0 - i) for i, hid in enumerate(self.keyword)][:limit]

    def get_highlights(self, highlight_ids):
        self._record("get_highlights", highlight_ids)
        return {
            hid: {
                "id": hid,
                "content": f"highlight {hid}",
                "chapter": None,
                "page": hid,
                "book_id": self.book_of.get(hid, 100),
                "book_title": "Book",
                "book_author": "Author",
                "cover_image_url": None,
            }
            for hid in highlight_ids
        }

    def get_highlight_tags(self, highlight_ids):
        self._record("get_highlight_tags", highlight_ids)
        return {hid: self.highlight_tags[hid] for hid in highlight_ids if hid in self.highlight_tags}

    def get_book_tags(self, book_ids):
        self._record("get_book_tags", book_ids)
        return {bid: self.book_tags[bid] for bid in book_ids if bid in self.book_tags}

    def find_unembedded(self, user_id=None, limit=1000):
        self._record("find_unembedded", user_id, limit)
        return self.unembedded[:limit]

    def get_embedding_stats(self, user_id):
        self._record("get_embedding_stats", user_id)
        return {"with_embedding": 7, "without_embedding": 3}

    def save_embedding(self, highlight_id, embedding):
        self._record("save_embedding", highlight_id)
        return True


def _search(store, provider=None):
    embedder = EmbeddingService(provider or FakeProvider())
    queue = EmbeddingQueue(embedder, store, delay=0)
    return HybridSearch(store, embedder, queue)


def _tag(i, name):
    return {"id": i, "name": name, "color": None}


# ==================== Pure functions ====================


@pytest.mark.parametrize(
    "value,expected",
    [
        (None, 10), ("100", 50), ("25", 25), ("abc", 10), ("", 10), (" 7 ", 7),
        ("0", 1), ("-3", 1), (12, 12), ("25.5", 25), ("25abc", 25), ("abc25", 10),
    ],
)
def test_parse_limit(value, expected):
    assert parse_limit(value) == expected


def test_fetch_limit():
    assert fetch_limit(10) == 30
    assert fetch_limit(50) == 100
    assert fetch_limit(1) == 3


def test_parse_tag_ids():
    assert parse_tag_ids(None) == []
    assert parse_tag_ids("") == []
    assert parse_tag_ids("3, 5,,  ,8") == [3, 5, 8]
    with pytest.raises(InvalidQuery, match="Invalid tag id"):
        parse_tag_ids("3,abc")


def test_rrf_score():
    assert rrf_score(1, 2) == pytest.approx(1 / 61 + 1 / 62)
    assert rrf_score(3, None) == pytest.approx(1 / 63)
    assert rrf_score(None, 4) == pytest.approx(1 / 64)
    assert rrf_score(None, None) == 0.0


def test_fuse_example_with_ties():
    candidates = fuse([A, B, C], [B, A, D])

    scores = {c.highlight_id: c.rrf_score for c in candidates}
    assert scores[A] == pytest.approx(0.032522, abs=1e-6)
    assert scores[B] == scores[A]
    assert scores[C] == pytest.approx(0.015873, abs=1e-6)
    assert scores[D] == scores[C]
    # Ties go to the better semantic rank; semantic presence beats keyword-only
    assert [c.highlight_id for c in candidates] == [A, B, C, D]


def test_fuse_records_ranks():
    candidates = {c.highlight_id: c for c in fuse([A, B, C], [B, A, D])}
    assert candidates[A] == SearchCandidate(A, semantic_rank=1, keyword_rank=2, rrf_score=rrf_score(1, 2))
    assert candidates[C].keyword_rank is None
    assert candidates[D].semantic_rank is None


def test_fuse_keyword_only_ties_break_on_id():
    candidates = fuse([], [D, C])
    assert [c.highlight_id for c in candidates] == [D, C]
    tied = [SearchCandidate(9, None, 1, 0.5), SearchCandidate(2, None, 1, 0.5)]
    tied.sort(key=SearchCandidate.sort_key)
    assert [c.highlight_id for c in tied] == [2, 9]


def test_fuse_empty():
    assert fuse([], []) == []


def test_normalize_score_bounds():
    assert normalize_score(0.0) == 0.0
    assert normalize_score(rrf_score(1, 1)) == pytest.approx(60 / 61)
    assert normalize_score(0.5) == 1.0
    for s in range(1, 101):
        for k in (None, 1, 50, 100):
            assert 0.0 <= normalize_score(rrf_score(s, k)) <= 1.0


def test_merge_tags_own_first_deduplicated():
    own = [_tag(2, "stoic"), _tag(5, "quotes")]
    book = [_tag(5, "quotes"), _tag(1, "philosophy")]
    assert [t["id"] for t in merge_tags(own, book)] == [2, 5, 1]
    assert merge_tags([], []) == []


def test_related_tags_counts_and_limits():
    results = [
        {"tags": [_tag(1, "a"), _tag(2, "b")]},
        {"tags": [_tag(2, "b")]},
        {"tags": [_tag(3, "c"), _tag(2, "b"), _tag(1, "a")]},
    ]
    related = related_tags(results)
    assert [(t["id"], t["count"]) for t in related] == [(2, 3), (1, 2), (3, 1)]
    assert related[0]["name"] == "b"

    many = [{"tags": [_tag(i, f"t{i}") for i in range(15)]}]
    assert len(related_tags(many)) == 10
    # Ties keep first appearance order
    assert [t["id"] for t in related_tags(many)] == list(range(10))


# ==================== Orchestration ====================


@pytest.mark.asyncio
@pytest.mark.parametrize("query", ["", "   ", None])
async def test_empty_query_makes_no_storage_calls(query):
    store = FakeStore(semantic=[A])
    provider = FakeProvider()

    with pytest.raises(InvalidQuery):
        await _search(store, provider).search("u1", query)

    assert store.calls == []
    assert provider.calls == []


@pytest.mark.asyncio
async def test_embedding_failure_aborts_without_storage_calls():
    store = FakeStore(semantic=[A], keyword=[A])
    provider = FakeProvider()
    provider.fail = True

    with pytest.raises(EmbeddingUnavailable):
        await _search(store, provider).search("u1", "stoicism")

    assert store.calls == []


@pytest.mark.asyncio
async def test_search_fuses_both_channels():
    store = FakeStore(semantic=[A, B, C], keyword=[B, A, D])

    response = await _search(store).search("u1", "virtue", limit="10")

    results = response.results
    assert [r["id"] for r in results] == [A, B, C, D]
    assert results[0]["similarity"] == pytest.approx((1 / 61 + 1 / 62) * 30)
    assert results[2]["similarity"] == pytest.approx(30 / 63)
    assert [r["tagBoost"] for r in results] == [True, True, False, True]
    assert [r["keywordMatched"] for r in results] == [True, True, False, True]
    assert results[0]["bookTitle"] == "Book"
    assert response.query == "virtue"


@pytest.mark.asyncio
async def test_search_overfetches_and_passes_filters():
    store = FakeStore(semantic=[A], keyword=[A])

    await _search(store).search("u1", "virtue", tag_ids=[7, 9], limit=None)

    vector_call = next(c for c in store.calls if c[0] == "vector_search")
    lexical_call = next(c for c in store.calls if c[0] == "lexical_search")
    assert vector_call == ("vector_search", "u1", [7, 9], 30)
    assert lexical_call == ("lexical_search", "u1", "virtue", [7, 9], 30)


@pytest.mark.asyncio
async def test_search_fetch_limit_capped_at_100():
    store = FakeStore()
    response = await _search(store).search("u1", "virtue", limit="100")

    vector_call = next(c for c in store.calls if c[0] == "vector_search")
    assert vector_call[-1] == 100
    assert response.results == []
    assert response.related_tags == []


@pytest.mark.asyncio
async def test_search_trims_to_limit():
    store = FakeStore(semantic=list(range(1, 41)), keyword=list(range(40, 0, -1)))

    response = await _search(store).search("u1", "virtue", limit=5)

    assert len(response.results) == 5
    hydrated = next(c for c in store.calls if c[0] == "get_highlights")
    assert len(hydrated[1]) == 5


@pytest.mark.asyncio
async def test_lexical_only_hit_still_returned():
    # Unembedded highlights can only come from the keyword channel
    store = FakeStore(semantic=[A], keyword=[D])

    response = await _search(store).search("u1", "virtue")

    assert [r["id"] for r in response.results] == [A, D]
    assert response.results[1]["tagBoost"] is True
    assert response.results[0]["tagBoost"] is False


@pytest.mark.asyncio
async def test_search_merges_tags_and_related_tags():
    stoic, quotes, philosophy = _tag(1, "stoic"), _tag(2, "quotes"), _tag(3, "philosophy")
    store = FakeStore(
        semantic=[A, B],
        keyword=[],
        book_of={A: 100, B: 200},
        highlight_tags={A: [quotes], B: [stoic]},
        book_tags={100: [philosophy, quotes], 200: [philosophy]},
    )

    response = await _search(store).search("u1", "virtue")

    assert [t["id"] for t in response.results[0]["tags"]] == [2, 3]
    assert [t["id"] for t in response.results[1]["tags"]] == [1, 3]
    assert [(t["id"], t["count"]) for t in response.related_tags] == [(3, 2), (2, 1), (1, 1)]
    book_call = next(c for c in store.calls if c[0] == "get_book_tags")
    assert book_call[1] == [100, 200]


@pytest.mark.asyncio
async def test_search_response_to_dict():
    store = FakeStore(semantic=[A])
    response = await _search(store).search("u1", "virtue", tag_ids=[4])
    body = response.to_dict()
    assert set(body) == {"query", "filterTagIds", "results", "relatedTags"}
    assert body["filterTagIds"] == [4]


@pytest.mark.asyncio
@pytest.mark.parametrize("failing", ["vector_search", "lexical_search", "get_highlights", "get_book_tags"])
async def test_storage_failure_fails_whole_search(failing):
    store = FakeStore(semantic=[A], keyword=[A])
    store.fail_on = failing

    with pytest.raises(StorageError, match=failing):
        await _search(store).search("u1", "virtue")


@pytest.mark.asyncio
async def test_storage_timeout_is_storage_error():
    class SlowStore(FakeStore):
        def vector_search(self, *args):
            time.sleep(0.5)
            return []

    store = SlowStore()
    embedder = EmbeddingService(FakeProvider())
    search = HybridSearch(store, embedder, EmbeddingQueue(embedder, store), storage_timeout=0.05)

    with pytest.raises(StorageError, match="timed out"):
        await search.search("u1", "virtue")


@pytest.mark.asyncio
async def test_retrievals_run_concurrently():
    # Both channels must be in flight together or the barrier breaks
    barrier = threading.Barrier(2, timeout=2)

    class BarrierStore(FakeStore):
        def vector_search(self, *args):
            barrier.wait()
            return [(A, 0.0)]

        def lexical_search(self, *args):
            barrier.wait()
            return [(A, 1.0)]

    response = await _search(BarrierStore()).search("u1", "virtue")

    assert [r["id"] for r in response.results] == [A]
    assert response.results[0]["keywordMatched"] is True


@pytest.mark.asyncio
async def test_request_reembedding_queues_user_highlights():
    store = FakeStore()
    store.unembedded = [{"id": i, "content": f"text {i}"} for i in range(3)]
    search = _search(store)

    queued = await search.request_reembedding("u1")
    await search.queue.join()

    assert queued == 3
    assert ("find_unembedded", "u1", 500) in store.calls
    assert [c[1] for c in store.calls if c[0] == "save_embedding"] == [0, 1, 2]


@pytest.mark.asyncio
async def test_request_reembedding_nothing_missing():
    search = _search(FakeStore())
    assert await search.request_reembedding("u1") == 0
    assert search.queue.status().processing is False


@pytest.mark.asyncio
async def test_embedding_status():
    provider = FakeProvider()
    search = _search(FakeStore(), provider)

    status = await search.embedding_status("u1")

    assert status == {
        "embeddings": {"complete": 7, "pending": 3},
        "queue": {"pending": 0, "processing": False, "processed": 0, "failed": 0},
        "modelLoaded": False,
    }
