"""
PaySys Approvals - Document Store

Keyed document storage with a conditional (versioned) write. Every document
carries an integer ``version``; ``compare_and_swap`` only replaces the stored
document when the stored version still equals the version the caller read.

Implementations:
- MongoDocumentStore: MongoDB via motor, one collection per document type
- InMemoryDocumentStore: process-local store for development and tests
"""

import os
import copy
import asyncio
import logging
import threading
from typing import Optional, Dict, List, Any

from pymongo.errors import PyMongoError, DuplicateKeyError

from services.errors import NotFoundError, StorageError

logger = logging.getLogger(__name__)

# Configuration
STORE_TIMEOUT_SECONDS = float(os.environ.get("STORE_TIMEOUT_SECONDS", "5"))
STORE_READ_RETRIES = int(os.environ.get("STORE_READ_RETRIES", "2"))
STORE_RETRY_DELAY = 0.2  # seconds

# Collections that are not document types
SECURITY_DAYS_COLLECTION = "security_days"
COUNTERS_COLLECTION = "counters"


class DocumentStore:
    """
    Contract consumed by the transition executor.

    get: the stored document (including ``version``) or NotFoundError
    list: all documents of a collection matching an equality query
    insert: store a new document; False if the id already exists
    compare_and_swap: replace only if the stored version equals expected_version
    """

    async def get(self, collection: str, doc_id: str) -> Dict[str, Any]:
        raise NotImplementedError

    async def list(self, collection: str, query: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        raise NotImplementedError

    async def insert(self, collection: str, document: Dict[str, Any]) -> bool:
        raise NotImplementedError

    async def compare_and_swap(
        self,
        collection: str,
        doc_id: str,
        expected_version: int,
        new_document: Dict[str, Any]
    ) -> bool:
        raise NotImplementedError


def _matches(document: Dict[str, Any], query: Optional[Dict[str, Any]]) -> bool:
    if not query:
        return True
    return all(document.get(key) == value for key, value in query.items())


# =============================================================================
# IN-MEMORY STORE
# =============================================================================

class InMemoryDocumentStore(DocumentStore):
    """
    Process-local store. Documents are deep-copied in and out so callers can
    never mutate stored state without going through compare_and_swap.

    Every call yields to the event loop once before touching state, so
    concurrent coroutines interleave the way they would against a remote store.
    """

    def __init__(self):
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.Lock()

    async def get(self, collection: str, doc_id: str) -> Dict[str, Any]:
        await asyncio.sleep(0)
        with self._lock:
            document = self._collections.get(collection, {}).get(doc_id)
            if document is None:
                raise NotFoundError(
                    f"Document '{doc_id}' not found in {collection}",
                    {"collection": collection, "id": doc_id}
                )
            return copy.deepcopy(document)

    async def list(self, collection: str, query: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        await asyncio.sleep(0)
        with self._lock:
            return [
                copy.deepcopy(d)
                for d in self._collections.get(collection, {}).values()
                if _matches(d, query)
            ]

    async def insert(self, collection: str, document: Dict[str, Any]) -> bool:
        await asyncio.sleep(0)
        with self._lock:
            docs = self._collections.setdefault(collection, {})
            if document["id"] in docs:
                return False
            docs[document["id"]] = copy.deepcopy(document)
            return True

    async def compare_and_swap(
        self,
        collection: str,
        doc_id: str,
        expected_version: int,
        new_document: Dict[str, Any]
    ) -> bool:
        await asyncio.sleep(0)
        with self._lock:
            docs = self._collections.get(collection, {})
            stored = docs.get(doc_id)
            if stored is None or stored.get("version") != expected_version:
                return False
            docs[doc_id] = copy.deepcopy(new_document)
            return True


# =============================================================================
# MONGODB STORE
# =============================================================================

class MongoDocumentStore(DocumentStore):
    """
    MongoDB-backed store.

    The conditional write is a single ``replace_one`` filtered on id and
    version, which MongoDB applies atomically: either the whole new document
    lands or nothing changes.

    Reads are retried on timeout. A timed-out write is surfaced as StorageError
    instead of being re-sent, because the first attempt may already have landed.
    """

    def __init__(self, db, timeout: float = None, read_retries: int = None):
        self.db = db
        self.timeout = timeout if timeout is not None else STORE_TIMEOUT_SECONDS
        self.read_retries = read_retries if read_retries is not None else STORE_READ_RETRIES

    def _collection(self, collection: str):
        return self.db[collection.lower()]

    async def _read(self, operation: str, factory):
        last_error = None
        for attempt in range(1, self.read_retries + 2):
            try:
                return await asyncio.wait_for(factory(), timeout=self.timeout)
            except (asyncio.TimeoutError, PyMongoError) as e:
                last_error = e
                logger.warning(
                    "Store read failed: op=%s, attempt=%d, error=%s",
                    operation, attempt, str(e)
                )
                await asyncio.sleep(STORE_RETRY_DELAY * attempt)
        raise StorageError(
            f"Store read failed after retries: {operation}",
            {"operation": operation, "error": str(last_error)}
        )

    async def _write(self, operation: str, awaitable):
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except DuplicateKeyError:
            raise
        except (asyncio.TimeoutError, PyMongoError) as e:
            logger.error("Store write failed: op=%s, error=%s", operation, str(e))
            raise StorageError(
                f"Store write failed: {operation}",
                {"operation": operation, "error": str(e)}
            ) from e

    async def get(self, collection: str, doc_id: str) -> Dict[str, Any]:
        document = await self._read(
            f"get {collection}/{doc_id}",
            lambda: self._collection(collection).find_one({"id": doc_id}, {"_id": 0})
        )
        if document is None:
            raise NotFoundError(
                f"Document '{doc_id}' not found in {collection}",
                {"collection": collection, "id": doc_id}
            )
        return document

    async def list(self, collection: str, query: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        return await self._read(
            f"list {collection}",
            lambda: self._collection(collection).find(query or {}, {"_id": 0}).to_list(None)
        )

    async def insert(self, collection: str, document: Dict[str, Any]) -> bool:
        # insert_one adds _id to the dict it is given
        record = dict(document)
        try:
            await self._write(
                f"insert {collection}/{document['id']}",
                self._collection(collection).insert_one(record)
            )
        except DuplicateKeyError:
            return False
        return True

    async def compare_and_swap(
        self,
        collection: str,
        doc_id: str,
        expected_version: int,
        new_document: Dict[str, Any]
    ) -> bool:
        replacement = {k: v for k, v in new_document.items() if k != "_id"}
        result = await self._write(
            f"cas {collection}/{doc_id}@{expected_version}",
            self._collection(collection).replace_one(
                {"id": doc_id, "version": expected_version},
                replacement
            )
        )
        return result.matched_count == 1

    async def create_indexes(self, collections: List[str]):
        """Unique id per collection; status for queue queries."""
        for name in collections:
            await self._collection(name).create_index("id", unique=True)
            await self._collection(name).create_index("status")
            await self._collection(name).create_index("day")
        await self._collection(SECURITY_DAYS_COLLECTION).create_index("id", unique=True)
        await self._collection(COUNTERS_COLLECTION).create_index("id", unique=True)
        logger.info("Document store indexes created")
