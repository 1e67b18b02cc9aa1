"""
In-process document store with live subscriptions.

Used in dev (DOCUMENT_STORE_PROVIDER=memory) and by the test-suite. All state
lives on one event loop; snapshot callbacks are scheduled with call_soon so a
writer never observes its own change synchronously, the same as with Firestore.
"""
import asyncio
import uuid
from copy import deepcopy
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from telehealth.services.document_store import (
    SERVER_TIMESTAMP,
    CollectionCallback,
    DocumentCallback,
    DocumentNotFound,
    DocumentSnapshot,
    DocumentStore,
    DocumentStoreError,
    ErrorCallback,
    Filters,
    QuerySnapshot,
    Subscription,
    WriteBatch,
    WriteOp,
    split_path,
)
from telehealth.utils.logger import get_logger

logger = get_logger("memory_store")


class _Watcher:
    def __init__(self, kind: str, target: str, on_snapshot, on_error, order_by=None) -> None:
        self.kind = kind
        self.target = target
        self.on_snapshot = on_snapshot
        self.on_error = on_error
        self.order_by = order_by
        self.active = True
        self.loop = asyncio.get_running_loop()


class MemoryDocumentStore(DocumentStore):
    def __init__(self, initial: Optional[Dict[str, Dict[str, Any]]] = None) -> None:
        self._docs: Dict[str, Dict[str, Any]] = {
            path: deepcopy(data) for path, data in (initial or {}).items()
        }
        self._watchers: List[_Watcher] = []
        self._pending_error: DocumentStoreError | None = None
        # Journal of committed operations, with server timestamps resolved
        self.writes: List[WriteOp] = []

    # ------------------------ fault injection ------------------------

    def fail_next(self, error: DocumentStoreError) -> None:
        """Make the next read or write raise `error`."""
        self._pending_error = error

    def break_watches(self, error: DocumentStoreError) -> None:
        """Terminate every live subscription with `error` on its error channel."""
        for watcher in list(self._watchers):
            self._remove(watcher)
            if watcher.on_error is not None:
                watcher.loop.call_soon(self._deliver_error, watcher, error)

    def _raise_pending(self) -> None:
        error, self._pending_error = self._pending_error, None
        if error is not None:
            raise error

    # ------------------------ reads ------------------------

    def _snapshot(self, path: str) -> DocumentSnapshot:
        _, doc_id = split_path(path)
        data = self._docs.get(path)
        if data is None:
            return DocumentSnapshot(id=doc_id, exists=False)
        return DocumentSnapshot(id=doc_id, exists=True, data=deepcopy(data))

    def _children(self, collection_path: str, filters: Filters = (), order_by: str | None = None) -> QuerySnapshot:
        prefix = collection_path.rstrip("/") + "/"
        docs = []
        for path, data in self._docs.items():
            if not path.startswith(prefix) or "/" in path[len(prefix):]:
                continue
            if any(data.get(f) != v for f, v in filters):
                continue
            # Firestore leaves out documents missing the ordering field
            if order_by and order_by not in data:
                continue
            docs.append(DocumentSnapshot(id=path[len(prefix):], exists=True, data=deepcopy(data)))
        if order_by:
            docs.sort(key=lambda d: (d.data[order_by], d.id))
        else:
            docs.sort(key=lambda d: d.id)
        return QuerySnapshot(documents=docs)

    async def get(self, path: str) -> DocumentSnapshot:
        self._raise_pending()
        return self._snapshot(path)

    async def query(self, collection_path: str, filters: Filters = (), order_by: str | None = None) -> QuerySnapshot:
        self._raise_pending()
        return self._children(collection_path, filters, order_by)

    # ------------------------ writes ------------------------

    @staticmethod
    def _resolve(data: Dict[str, Any], now: datetime) -> Dict[str, Any]:
        return {k: (now if v is SERVER_TIMESTAMP else deepcopy(v)) for k, v in data.items()}

    async def set(self, path: str, data: Dict[str, Any]) -> None:
        await self.commit(WriteBatch().set(path, data))

    async def update(self, path: str, data: Dict[str, Any]) -> None:
        await self.commit(WriteBatch().update(path, data))

    async def delete(self, path: str) -> None:
        await self.commit(WriteBatch().delete(path))

    async def add(self, collection_path: str, data: Dict[str, Any]) -> str:
        doc_id = uuid.uuid4().hex[:20]
        await self.commit(WriteBatch().set(f"{collection_path}/{doc_id}", data))
        return doc_id

    async def commit(self, batch: WriteBatch) -> None:
        self._raise_pending()
        now = datetime.now(timezone.utc)
        staged: Dict[str, Optional[Dict[str, Any]]] = {}
        applied: List[WriteOp] = []

        # Stage everything first so a failing op leaves the store untouched
        for op in batch.ops:
            current = staged[op.path] if op.path in staged else self._docs.get(op.path)
            if op.kind == "set":
                staged[op.path] = self._resolve(op.data or {}, now)
            elif op.kind == "update":
                if current is None:
                    raise DocumentNotFound(op.path)
                merged = dict(current)
                merged.update(self._resolve(op.data or {}, now))
                staged[op.path] = merged
            elif op.kind == "delete":
                staged[op.path] = None
            else:
                raise ValueError(f"Unknown write kind: {op.kind}")
            applied.append(WriteOp(op.kind, op.path, self._resolve(op.data, now) if op.data else None))

        for path, data in staged.items():
            if data is None:
                self._docs.pop(path, None)
            else:
                self._docs[path] = data
        self.writes.extend(applied)
        self._notify(staged.keys())

    async def update_if(self, path: str, expected: Dict[str, Any], data: Dict[str, Any]) -> bool:
        self._raise_pending()
        current = self._docs.get(path)
        if current is None:
            raise DocumentNotFound(path)
        if any(current.get(k) != v for k, v in expected.items()):
            return False
        await self.commit(WriteBatch().update(path, data))
        return True

    # ------------------------ subscriptions ------------------------

    def watch_document(self, path: str, on_snapshot: DocumentCallback, on_error: ErrorCallback | None = None) -> Subscription:
        self._raise_pending()
        watcher = _Watcher("document", path, on_snapshot, on_error)
        self._watchers.append(watcher)
        watcher.loop.call_soon(self._deliver, watcher, self._snapshot(path))
        return Subscription(lambda: self._remove(watcher))

    def watch_collection(
        self,
        collection_path: str,
        on_snapshot: CollectionCallback,
        on_error: ErrorCallback | None = None,
        order_by: str | None = None,
    ) -> Subscription:
        self._raise_pending()
        watcher = _Watcher("collection", collection_path, on_snapshot, on_error, order_by)
        self._watchers.append(watcher)
        watcher.loop.call_soon(self._deliver, watcher, self._children(collection_path, order_by=order_by))
        return Subscription(lambda: self._remove(watcher))

    def _remove(self, watcher: _Watcher) -> None:
        watcher.active = False
        if watcher in self._watchers:
            self._watchers.remove(watcher)

    def _notify(self, paths) -> None:
        touched_collections = {split_path(p)[0] for p in paths}
        for watcher in list(self._watchers):
            if watcher.kind == "document" and watcher.target in paths:
                watcher.loop.call_soon(self._deliver, watcher, self._snapshot(watcher.target))
            elif watcher.kind == "collection" and watcher.target in touched_collections:
                snapshot = self._children(watcher.target, order_by=watcher.order_by)
                watcher.loop.call_soon(self._deliver, watcher, snapshot)

    @staticmethod
    def _deliver(watcher: _Watcher, snapshot) -> None:
        if not watcher.active:
            return
        try:
            watcher.on_snapshot(snapshot)
        except Exception:
            logger.exception(f"Snapshot listener for {watcher.target} failed")

    @staticmethod
    def _deliver_error(watcher: _Watcher, error: DocumentStoreError) -> None:
        try:
            watcher.on_error(error)
        except Exception:
            logger.exception(f"Error listener for {watcher.target} failed")

    def seed(self, path: str, data: Dict[str, Any]) -> None:
        """Place a document directly, without journaling or notifying watchers."""
        self._docs[path] = deepcopy(data)

    def document_count(self, collection_path: str) -> int:
        return len(self._children(collection_path))
