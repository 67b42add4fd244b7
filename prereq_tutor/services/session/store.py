"""
Document store used for session, proficiency and skill graph persistence.

Documents are JSON-compatible dicts addressed by (collection, doc_id).

Key Structure (Redis backend):
    {prefix}:{collection}:{doc_id}   -> String (JSON document)
    {prefix}:{collection}:__ids      -> Set (doc ids in the collection)
"""

import asyncio
import copy
import json
from abc import ABC, abstractmethod
from typing import Any, Optional, Sequence

import redis

from prereq_tutor.config import Config
from prereq_tutor.errors import NotFoundError, UpstreamError
from prereq_tutor.logging_utils import StructuredLogger
from prereq_tutor.models.schemas import utc_now

logger = StructuredLogger("store")

Document = dict[str, Any]


class _ServerTimestamp:
    """Sentinel replaced with the store's own UTC time when written."""

    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = _ServerTimestamp()


def _resolve_timestamps(fields: Document) -> Document:
    now = utc_now().isoformat()
    return {k: (now if v is SERVER_TIMESTAMP else v) for k, v in fields.items()}


class DocumentStore(ABC):
    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        """Return a copy of the document, or None if absent."""

    @abstractmethod
    async def set(self, collection: str, doc_id: str, data: Document) -> None:
        """Create or fully replace a document."""

    @abstractmethod
    async def merge(self, collection: str, doc_id: str, fields: Document) -> None:
        """Partially update an existing document. Raises NotFoundError if absent."""

    @abstractmethod
    async def delete(self, collection: str, doc_id: str) -> None: ...

    @abstractmethod
    async def query(
        self, collection: str, field: str, values: Sequence[Any]
    ) -> list[tuple[str, Document]]:
        """Documents whose `field` equals one of `values`."""

    async def ping(self) -> bool:
        return True


class InMemoryDocumentStore(DocumentStore):
    def __init__(self) -> None:
        self._collections: dict[str, dict[str, Document]] = {}

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        document = self._collections.get(collection, {}).get(doc_id)
        return copy.deepcopy(document) if document is not None else None

    async def set(self, collection: str, doc_id: str, data: Document) -> None:
        self._collections.setdefault(collection, {})[doc_id] = copy.deepcopy(
            _resolve_timestamps(data)
        )

    async def merge(self, collection: str, doc_id: str, fields: Document) -> None:
        documents = self._collections.setdefault(collection, {})
        if doc_id not in documents:
            raise NotFoundError(f"Document not found: {collection}/{doc_id}")
        documents[doc_id].update(copy.deepcopy(_resolve_timestamps(fields)))

    async def delete(self, collection: str, doc_id: str) -> None:
        self._collections.get(collection, {}).pop(doc_id, None)

    async def query(
        self, collection: str, field: str, values: Sequence[Any]
    ) -> list[tuple[str, Document]]:
        return [
            (doc_id, copy.deepcopy(document))
            for doc_id, document in self._collections.get(collection, {}).items()
            if document.get(field) in values
        ]


class RedisDocumentStore(DocumentStore):
    """
    Redis-backed store. The synchronous client runs in a worker thread so
    the event loop never blocks on network I/O.
    """

    def __init__(self, client: Optional[redis.Redis] = None, prefix: str = Config.STORE.KEY_PREFIX):
        self.client = client or redis.Redis(
            host=Config.STORE.REDIS_HOST,
            port=Config.STORE.REDIS_PORT,
            password=Config.STORE.REDIS_PASSWORD,
            db=Config.STORE.REDIS_DB,
            decode_responses=True,
        )
        self.prefix = prefix

    # ==================== Key Builders ====================

    def _doc_key(self, collection: str, doc_id: str) -> str:
        return f"{self.prefix}:{collection}:{doc_id}"

    def _index_key(self, collection: str) -> str:
        return f"{self.prefix}:{collection}:__ids"

    # ==================== Operations ====================

    async def _call(self, func, *args):
        try:
            return await asyncio.to_thread(func, *args)
        except redis.RedisError as e:
            logger.error(
                "Redis operation failed",
                context={"operation": getattr(func, "__name__", str(func)), "error": str(e)},
            )
            raise UpstreamError(f"Persistence store failure: {e}") from e

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        raw = await self._call(self.client.get, self._doc_key(collection, doc_id))
        return json.loads(raw) if raw else None

    def _write(self, collection: str, doc_id: str, data: Document) -> None:
        pipe = self.client.pipeline()
        pipe.set(self._doc_key(collection, doc_id), json.dumps(data))
        pipe.sadd(self._index_key(collection), doc_id)
        pipe.execute()

    async def set(self, collection: str, doc_id: str, data: Document) -> None:
        await self._call(self._write, collection, doc_id, _resolve_timestamps(data))

    async def merge(self, collection: str, doc_id: str, fields: Document) -> None:
        existing = await self.get(collection, doc_id)
        if existing is None:
            raise NotFoundError(f"Document not found: {collection}/{doc_id}")
        existing.update(_resolve_timestamps(fields))
        await self._call(self._write, collection, doc_id, existing)

    def _remove(self, collection: str, doc_id: str) -> None:
        pipe = self.client.pipeline()
        pipe.delete(self._doc_key(collection, doc_id))
        pipe.srem(self._index_key(collection), doc_id)
        pipe.execute()

    async def delete(self, collection: str, doc_id: str) -> None:
        await self._call(self._remove, collection, doc_id)

    async def query(
        self, collection: str, field: str, values: Sequence[Any]
    ) -> list[tuple[str, Document]]:
        doc_ids = await self._call(self.client.smembers, self._index_key(collection))
        results: list[tuple[str, Document]] = []
        for doc_id in sorted(doc_ids):
            document = await self.get(collection, doc_id)
            if document is not None and document.get(field) in values:
                results.append((doc_id, document))
        return results

    async def ping(self) -> bool:
        try:
            return bool(await self._call(self.client.ping))
        except UpstreamError:
            return False


def create_store(backend: str = Config.STORE.BACKEND) -> DocumentStore:
    if backend == "redis":
        logger.info(
            "Using Redis document store",
            context={"host": Config.STORE.REDIS_HOST, "port": Config.STORE.REDIS_PORT},
        )
        return RedisDocumentStore()
    logger.info("Using in-memory document store")
    return InMemoryDocumentStore()
