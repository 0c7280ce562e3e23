"""Background embedding queue.

Highlights are embedded one at a time by a single worker task that drains
an in-memory FIFO and exits when it is empty. The next enqueue starts a
new worker. Jobs are not persisted: reconcile() rediscovers highlights
whose jobs were lost on restart.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Iterable

from marginalia.core.embeddings import serialize_f32

if TYPE_CHECKING:
    from marginalia.core.embeddings import EmbeddingService
    from marginalia.core.storage import DB

logger = logging.getLogger(__name__)

DELAY_BETWEEN_JOBS = 0.1  # seconds
RECONCILE_LIMIT = 1000


@dataclass(frozen=True)
class EmbeddingJob:
    highlight_id: int
    content: str


@dataclass(frozen=True)
class QueueStatus:
    pending: int
    processing: bool
    processed: int = 0
    failed: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "pending": self.pending,
            "processing": self.processing,
            "processed": self.processed,
            "failed": self.failed,
        }


class EmbeddingQueue:
    """Single-consumer FIFO that computes and stores highlight embeddings.

    At most one worker runs at a time. The processing flag is checked and
    set without an intervening await, which makes it atomic on the event
    loop, so concurrent enqueues from many request handlers cannot start a
    second worker. A failed job is logged, counted and dropped.
    """

    def __init__(
        self,
        embedder: EmbeddingService,
        db: DB,
        delay: float = DELAY_BETWEEN_JOBS,
    ) -> None:
        self._embedder = embedder
        self._db = db
        self._delay = delay
        self._queue: deque[EmbeddingJob] = deque()
        self._processing = False
        self._worker: asyncio.Task | None = None
        self.processed = 0
        self.failed = 0

    def add(self, job: EmbeddingJob) -> None:
        """Append a job; starts a worker if none is running. Needs a running event loop."""
        self._queue.append(job)
        self._ensure_worker()

    def add_batch(self, jobs: Iterable[EmbeddingJob]) -> None:
        jobs = list(jobs)
        if not jobs:
            return
        self._queue.extend(jobs)
        logger.info(f"Added {len(jobs)} highlights for embedding ({len(self._queue)} total pending)")
        self._ensure_worker()

    def _ensure_worker(self) -> None:
        if self._processing:
            return
        self._processing = True
        self._worker = asyncio.get_running_loop().create_task(self._process_queue())

    async def _process_queue(self) -> None:
        logger.info("Starting embedding generation...")
        done = 0
        try:
            while self._queue:
                job = self._queue.popleft()
                if await self._process_job(job):
                    done += 1

                if self._queue:
                    await asyncio.sleep(self._delay)
        finally:
            self._processing = False

        logger.info(f"Embedding generation complete ({done} embedded, {self.failed} failed in total)")

    async def _process_job(self, job: EmbeddingJob) -> bool:
        try:
            embedding = await self._embedder.generate_embedding(job.content)
            if embedding is None:
                self.failed += 1
                logger.warning(f"No embedding produced for highlight {job.highlight_id}, dropping job")
                return False

            found = await asyncio.to_thread(
                self._db.save_embedding, job.highlight_id, serialize_f32(embedding)
            )
            if not found:
                logger.warning(f"Highlight {job.highlight_id} no longer exists, skipping")
                return False

            self.processed += 1
            return True

        except Exception as e:
            self.failed += 1
            logger.error(f"Error embedding highlight {job.highlight_id}: {e}")
            return False

    async def reconcile(self, limit: int = RECONCILE_LIMIT) -> int:
        """Queue highlights that are missing an embedding.

        Returns:
            Number of highlights queued (at most limit)
        """
        missing = await asyncio.to_thread(self._db.find_unembedded, None, limit)
        self.add_batch(EmbeddingJob(highlight_id=row["id"], content=row["content"]) for row in missing)
        return len(missing)

    def status(self) -> QueueStatus:
        return QueueStatus(
            pending=len(self._queue),
            processing=self._processing,
            processed=self.processed,
            failed=self.failed,
        )

    async def join(self) -> None:
        """Wait until the queue is drained and the worker has exited."""
        while self._worker is not None and not self._worker.done():
            await self._worker

    async def shutdown(self) -> None:
        """Stop the worker. Pending jobs are discarded; reconcile() finds them again."""
        worker = self._worker
        if worker is not None and not worker.done():
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass
        self._queue.clear()
        self._processing = False
