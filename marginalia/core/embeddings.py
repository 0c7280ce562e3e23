"""Embedding function used by search and the background queue."""

from __future__ import annotations

import asyncio
import logging
import struct

from marginalia.core.embedding_providers import EmbeddingProvider

logger = logging.getLogger(__name__)

# Longer highlights are embedded by their prefix only
MAX_EMBED_CHARS = 1000


def serialize_f32(vector: list[float]) -> bytes:
    """Serialize a list of floats into bytes for sqlite-vec."""
    return struct.pack(f"{len(vector)}f", *vector)


def deserialize_f32(blob: bytes) -> list[float]:
    """Inverse of serialize_f32."""
    return list(struct.unpack(f"{len(blob) // 4}f", blob))


class EmbeddingService:
    """Turns text into a vector, or None when the provider cannot.

    Never raises on provider failure; callers decide whether a missing
    vector means skip (background queue) or abort (search). No retries.
    """

    def __init__(self, provider: EmbeddingProvider, timeout: float | None = None) -> None:
        self.provider = provider
        self.timeout = timeout

    @property
    def dimensions(self) -> int:
        return self.provider.dimensions

    def is_loaded(self) -> bool:
        return self.provider.is_loaded

    async def generate_embedding(self, text: str) -> list[float] | None:
        """Generate an embedding for the first MAX_EMBED_CHARS characters of text."""
        truncated = text[:MAX_EMBED_CHARS]
        try:
            return await asyncio.wait_for(self.provider.embed_single(truncated), self.timeout)
        except asyncio.TimeoutError:
            logger.error(f"Embedding generation timed out after {self.timeout}s")
            return None
        except Exception as e:
            logger.error(f"Embedding generation failed: {e}")
            return None
