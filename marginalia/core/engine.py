"""Wiring for the search engine: storage, embedding function, queue and search."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from marginalia.core.embedding_providers import get_provider
from marginalia.core.embedding_queue import EmbeddingJob, EmbeddingQueue
from marginalia.core.embeddings import EmbeddingService
from marginalia.core.search import HybridSearch
from marginalia.core.settings import Settings
from marginalia.core.storage import DB, connect

logger = logging.getLogger(__name__)


@dataclass
class Engine:
    db: DB
    embedder: EmbeddingService
    queue: EmbeddingQueue
    search: HybridSearch
    reconcile_on_startup: bool = True

    async def start(self) -> None:
        if self.reconcile_on_startup:
            queued = await self.queue.reconcile()
            logger.info(f"Startup reconciliation queued {queued} highlights for embedding")

    async def shutdown(self) -> None:
        await self.queue.shutdown()
        self.db.close()

    async def add_highlight(
        self,
        user_id: str,
        book_id: int,
        content: str,
        chapter: str | None = None,
        page: int | None = None,
    ) -> int:
        """Store a new highlight and queue its embedding."""
        content = content.strip()
        highlight_id = await asyncio.to_thread(
            self.db.save_highlight, user_id, book_id, content, chapter, page
        )
        self.queue.add(EmbeddingJob(highlight_id=highlight_id, content=content))
        return highlight_id

    async def update_highlight_content(self, highlight_id: int, content: str) -> bool:
        """Replace highlight text and re-embed it; the old vector is cleared first."""
        content = content.strip()
        updated = await asyncio.to_thread(self.db.update_highlight_content, highlight_id, content)
        if updated:
            self.queue.add(EmbeddingJob(highlight_id=highlight_id, content=content))
        return updated


def build_engine(settings: Settings) -> Engine:
    provider = get_provider(settings.embedding_provider, settings.embedding_model)
    embedder = EmbeddingService(provider, timeout=settings.embed_timeout_s)

    db = DB(conn=connect(settings.db_path), dimensions=provider.dimensions)
    db.init()

    queue = EmbeddingQueue(embedder, db, delay=settings.embed_queue_delay_ms / 1000)
    search = HybridSearch(db, embedder, queue, storage_timeout=settings.search_timeout_s)
    logger.info(f"Engine ready: {provider.name}/{provider.model_id} ({provider.dimensions} dims)")
    return Engine(
        db=db,
        embedder=embedder,
        queue=queue,
        search=search,
        reconcile_on_startup=settings.reconcile_on_startup,
    )
