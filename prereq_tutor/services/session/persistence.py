import asyncio
from dataclasses import dataclass
from typing import Optional, Union

from prereq_tutor.config import Config
from prereq_tutor.errors import TutorError, UpstreamError
from prereq_tutor.logging_utils import StructuredLogger
from prereq_tutor.metrics import tutor_store_writes_total
from prereq_tutor.services.session.store import Document, DocumentStore

logger = StructuredLogger("session_writer")


@dataclass(frozen=True)
class ImmediateWrite:
    """Write now and await the store."""


@dataclass(frozen=True)
class DebouncedWrite:
    """Write after `interval` seconds unless superseded by a newer write."""

    interval: float = Config.SESSION.DEBOUNCE_SECONDS


WritePolicy = Union[ImmediateWrite, DebouncedWrite]


class SessionWriter:
    """
    Writes full session snapshots to one store collection.

    At most one debounced write is pending at a time. A newer write of
    either kind cancels it while it is still waiting out its interval.
    Store calls are serialized and every write carries a generation, so a
    snapshot that was already superseded is skipped instead of landing
    after a newer one.
    """

    def __init__(self, store: DocumentStore, collection: str):
        self.store = store
        self.collection = collection
        self._pending: Optional[asyncio.Task] = None
        self._pending_snapshot: Optional[tuple[int, str, Document]] = None
        self._write_lock = asyncio.Lock()
        self._generation = 0
        self._written_generation = 0
        self._in_flight: set[asyncio.Task] = set()

    @property
    def has_pending(self) -> bool:
        return self._pending is not None and not self._pending.done()

    def _next_generation(self) -> int:
        self._generation += 1
        return self._generation

    async def write(self, doc_id: str, document: Document, policy: WritePolicy) -> None:
        generation = self._next_generation()
        if isinstance(policy, DebouncedWrite):
            self.cancel_pending()
            self._pending_snapshot = (generation, doc_id, document)
            self._pending = asyncio.create_task(
                self._write_later(generation, doc_id, document, policy.interval)
            )
            return

        self.cancel_pending()
        if await self._store_set(generation, doc_id, document):
            tutor_store_writes_total.labels(policy="immediate").inc()

    def cancel_pending(self) -> bool:
        """
        Drop the pending debounced write, if any. Returns True if one was cancelled.

        A debounced write whose store call already started still finishes;
        later writes wait for it on the write lock.
        """
        cancelled = False
        if self.has_pending:
            self._pending.cancel()
            cancelled = True
        self._pending = None
        self._pending_snapshot = None
        return cancelled

    async def flush(self) -> bool:
        """Write the pending debounced snapshot right away. Returns True if one was written."""
        if not self.has_pending or self._pending_snapshot is None:
            self.cancel_pending()
            if self._in_flight:
                await asyncio.gather(*self._in_flight)
            return False

        generation, doc_id, document = self._pending_snapshot
        self.cancel_pending()
        await self._store_set(generation, doc_id, document)
        tutor_store_writes_total.labels(policy="flush").inc()
        return True

    async def _write_later(
        self, generation: int, doc_id: str, document: Document, interval: float
    ) -> None:
        await asyncio.sleep(interval)
        # Only the wait is cancellable; a started store call runs to completion
        task = asyncio.ensure_future(self._debounced_set(generation, doc_id, document))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)
        await asyncio.shield(task)

    async def _debounced_set(self, generation: int, doc_id: str, document: Document) -> None:
        try:
            if await self._store_set(generation, doc_id, document, latest_only=True):
                tutor_store_writes_total.labels(policy="debounced").inc()
        except TutorError as e:
            logger.error(
                "Debounced session write failed",
                context={"doc_id": doc_id, "error": str(e)},
            )
        finally:
            if self._pending_snapshot is not None and self._pending_snapshot[0] == generation:
                self._pending = None
                self._pending_snapshot = None

    async def _store_set(
        self, generation: int, doc_id: str, document: Document, latest_only: bool = False
    ) -> bool:
        async with self._write_lock:
            superseded = latest_only and generation < self._generation
            if superseded or generation <= self._written_generation:
                logger.debug(
                    "Skipping superseded session write",
                    context={"doc_id": doc_id, "generation": generation},
                )
                return False
            try:
                await self.store.set(self.collection, doc_id, document)
            except TutorError:
                raise
            except Exception as e:
                raise UpstreamError(f"Failed to save {self.collection}/{doc_id}: {e}") from e
            self._written_generation = generation
            return True
