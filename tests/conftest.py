"""Shared fakes for engine tests."""

from __future__ import annotations

import pytest

from marginalia.core.embedding_providers import EmbeddingError, EmbeddingProvider
from marginalia.core.storage import DB, connect

DIMS = 384


def basis(i: int, dims: int = DIMS) -> list[float]:
    """Unit vector along axis i."""
    v = [0.0] * dims
    v[i] = 1.0
    return v


class FakeProvider(EmbeddingProvider):
    """Returns canned vectors; unknown texts get the default vector."""

    def __init__(self, vectors: dict[str, list[float]] | None = None, default: list[float] | None = None):
        self.vectors = vectors or {}
        self.default = default or basis(0)
        self.fail = False
        self.calls: list[str] = []
        self._loaded = False

    @property
    def name(self) -> str:
        return "Fake"

    @property
    def model_id(self) -> str:
        return "fake-minilm"

    @property
    def dimensions(self) -> int:
        return DIMS

    @property
    def is_loaded(self) -> bool:
        return self._loaded

    async def embed_single(self, text: str) -> list[float]:
        self.calls.append(text)
        if self.fail:
            raise EmbeddingError("model exploded", provider=self.name)
        self._loaded = True
        return self.vectors.get(text, self.default)


@pytest.fixture
def db():
    """In-memory database with sqlite-vec loaded."""
    database = DB(conn=connect(":memory:"), dimensions=DIMS)
    database.init()
    yield database
    database.close()
