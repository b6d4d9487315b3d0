# bhejo-tracking/bhejo/documents.py
"""
In-memory document store for orders, users and ratings.

Collections hold schemaless documents (dicts) under generated ids, with
field queries, ordering, limits and per-document live subscriptions.

Two primitives make read-then-write sequences safe under concurrency:
- compare_and_set: merge fields only if the current values match expectations
- transaction: run a function against the current document and merge its
  result, with no other write in between

Every operation yields to the event loop once before touching data, so
concurrent callers interleave the way they would against a remote store.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import threading
import uuid
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

Document = Dict[str, Any]
Filter = Tuple[str, str, Any]
DocumentCallback = Callable[[Optional[Document]], None]

_MISSING = object()


class DocumentNotFound(LookupError):
    """The addressed document does not exist."""

    def __init__(self, collection: str, doc_id: str) -> None:
        super().__init__(f"{collection}/{doc_id} not found")
        self.collection = collection
        self.doc_id = doc_id


def _matches(document: Document, filters: Iterable[Filter]) -> bool:
    for field_name, op, expected in filters:
        value = document.get(field_name)
        if op == "==":
            ok = value == expected
        elif op == "!=":
            ok = value != expected
        elif op == "in":
            ok = value in expected
        elif op == ">=":
            ok = value is not None and value >= expected
        elif op == "<=":
            ok = value is not None and value <= expected
        else:
            raise ValueError(f"Unsupported query operator: {op!r}")
        if not ok:
            return False
    return True


class InMemoryDocumentStore:
    """Process-local document store; safe to share between threads and tasks."""

    def __init__(self, id_factory: Optional[Callable[[], str]] = None) -> None:
        self._collections: Dict[str, Dict[str, Document]] = {}
        self._lock = threading.RLock()
        self._listeners: Dict[int, Tuple[str, str, DocumentCallback]] = {}
        self._next_listener_id = 0
        self._id_factory = id_factory or (lambda: uuid.uuid4().hex[:20])

    def _collection(self, name: str) -> Dict[str, Document]:
        return self._collections.setdefault(name, {})

    async def add(self, collection: str, data: Document) -> str:
        """Insert a document under a generated id and return the id."""
        await asyncio.sleep(0)
        with self._lock:
            doc_id = self._id_factory()
            self._collection(collection)[doc_id] = copy.deepcopy(data)
        self._notify(collection, doc_id)
        return doc_id

    async def set(self, collection: str, doc_id: str, data: Document) -> None:
        await asyncio.sleep(0)
        with self._lock:
            self._collection(collection)[doc_id] = copy.deepcopy(data)
        self._notify(collection, doc_id)

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        await asyncio.sleep(0)
        with self._lock:
            document = self._collection(collection).get(doc_id)
            return copy.deepcopy(document) if document is not None else None

    async def update(self, collection: str, doc_id: str, fields: Document) -> None:
        """
        Merge fields into an existing document.

        Raises:
            DocumentNotFound: If the document does not exist
        """
        await asyncio.sleep(0)
        with self._lock:
            document = self._collection(collection).get(doc_id)
            if document is None:
                raise DocumentNotFound(collection, doc_id)
            document.update(copy.deepcopy(fields))
        self._notify(collection, doc_id)

    async def compare_and_set(
        self,
        collection: str,
        doc_id: str,
        expected: Document,
        fields: Document,
    ) -> bool:
        """
        Merge ``fields`` only if every key in ``expected`` currently has that value.

        Returns:
            True if the write happened, False if a precondition did not hold

        Raises:
            DocumentNotFound: If the document does not exist
        """
        await asyncio.sleep(0)
        with self._lock:
            document = self._collection(collection).get(doc_id)
            if document is None:
                raise DocumentNotFound(collection, doc_id)
            for key, value in expected.items():
                if document.get(key, _MISSING) != value:
                    return False
            document.update(copy.deepcopy(fields))
        self._notify(collection, doc_id)
        return True

    async def transaction(
        self,
        collection: str,
        doc_id: str,
        apply: Callable[[Optional[Document]], Optional[Document]],
    ) -> Optional[Document]:
        """
        Atomically read-modify-write one document.

        ``apply`` receives a copy of the current document (None if missing) and
        returns the fields to merge, or None to abort. It must not block.

        Returns:
            The document after the write, or None if ``apply`` aborted
        """
        await asyncio.sleep(0)
        with self._lock:
            current = self._collection(collection).get(doc_id)
            changes = apply(copy.deepcopy(current) if current is not None else None)
            if changes is None:
                return None
            merged = dict(current or {})
            merged.update(copy.deepcopy(changes))
            self._collection(collection)[doc_id] = merged
            result = copy.deepcopy(merged)
        self._notify(collection, doc_id)
        return result

    async def query(
        self,
        collection: str,
        where: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Tuple[str, Document]]:
        """
        Find documents matching every filter.

        Args:
            collection: Collection name
            where: (field, op, value) filters; op is one of ==, !=, in, >=, <=
            order_by: Field to sort by; documents lacking it sort last
            descending: Sort direction
            limit: Maximum number of results

        Returns:
            List of (doc_id, document) pairs
        """
        await asyncio.sleep(0)
        with self._lock:
            results = [
                (doc_id, copy.deepcopy(document))
                for doc_id, document in self._collection(collection).items()
                if _matches(document, where)
            ]
        if order_by is not None:
            present = [r for r in results if r[1].get(order_by) is not None]
            absent = [r for r in results if r[1].get(order_by) is None]
            present.sort(key=lambda r: r[1][order_by], reverse=descending)
            results = present + absent
        if limit is not None:
            results = results[:limit]
        return results

    def on_snapshot(self, collection: str, doc_id: str, callback: DocumentCallback) -> Callable[[], None]:
        """Push the document (or None) to ``callback`` now and after every write."""
        with self._lock:
            listener_id = self._next_listener_id
            self._next_listener_id += 1
            self._listeners[listener_id] = (collection, doc_id, callback)
            document = copy.deepcopy(self._collection(collection).get(doc_id))
        self._dispatch(callback, document)

        def unsubscribe() -> None:
            with self._lock:
                self._listeners.pop(listener_id, None)

        return unsubscribe

    def _notify(self, collection: str, doc_id: str) -> None:
        with self._lock:
            callbacks = [
                cb for (coll, did, cb) in self._listeners.values()
                if coll == collection and did == doc_id
            ]
            document = copy.deepcopy(self._collection(collection).get(doc_id))
        for callback in callbacks:
            self._dispatch(callback, copy.deepcopy(document))

    @staticmethod
    def _dispatch(callback: DocumentCallback, document: Optional[Document]) -> None:
        try:
            callback(document)
        except Exception:
            logger.exception("Document subscriber callback failed")
