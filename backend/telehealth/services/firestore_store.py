"""
Firestore adapter for the document store port.

The Admin SDK hands out the synchronous google-cloud-firestore client; blocking
calls are pushed to worker threads and watch callbacks (which fire on the SDK's
own thread) are marshalled back onto the event loop.
"""
import asyncio
from typing import Any, Dict

import firebase_admin
from firebase_admin import credentials, firestore
from google.api_core import exceptions as google_exceptions
from google.cloud.firestore_v1.base_query import FieldFilter

from telehealth.config import get_settings
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
    StorePermissionDenied,
    StoreUnavailable,
    Subscription,
    WriteBatch,
)
from telehealth.utils.logger import get_logger

logger = get_logger("firestore_store")


def _default_client():
    """Initialise the Firebase app once and return its Firestore client."""
    settings = get_settings()
    try:
        app = firebase_admin.get_app()
    except ValueError:
        options = {"projectId": settings.FIREBASE_PROJECT_ID} if settings.FIREBASE_PROJECT_ID else None
        if settings.FIREBASE_CREDENTIALS_FILE:
            cred = credentials.Certificate(settings.FIREBASE_CREDENTIALS_FILE)
        else:
            cred = credentials.ApplicationDefault()
        app = firebase_admin.initialize_app(cred, options)
    return firestore.client(app)


def _translate(error: Exception, path: str | None = None) -> DocumentStoreError:
    if isinstance(error, DocumentStoreError):
        return error
    if isinstance(error, google_exceptions.NotFound):
        return DocumentNotFound(path or "")
    if isinstance(error, google_exceptions.PermissionDenied):
        return StorePermissionDenied(str(error), path=path)
    if isinstance(error, (google_exceptions.ServiceUnavailable, google_exceptions.DeadlineExceeded)):
        return StoreUnavailable(str(error), path=path)
    if isinstance(error, google_exceptions.GoogleAPICallError):
        return StoreUnavailable(str(error), path=path)
    return DocumentStoreError(str(error), path=path)


def _prepare(data: Dict[str, Any] | None) -> Dict[str, Any]:
    return {k: (firestore.SERVER_TIMESTAMP if v is SERVER_TIMESTAMP else v) for k, v in (data or {}).items()}


def _to_snapshot(snap) -> DocumentSnapshot:
    if snap is None or not snap.exists:
        return DocumentSnapshot(id=snap.id if snap is not None else "", exists=False)
    return DocumentSnapshot(id=snap.id, exists=True, data=snap.to_dict() or {})


class _Listener:
    """One SDK watch bridged onto the event loop.

    The SDK closes a broken stream on its own thread without calling back, so a
    supervisor task polls `Watch.is_active` and reports the loss on `on_error`.
    """

    def __init__(self, path: str, on_snapshot, on_error) -> None:
        self.path = path
        self.on_snapshot = on_snapshot
        self.on_error = on_error
        self.active = True
        self.watch = None
        self.supervisor: asyncio.Task | None = None

    def deliver(self, snapshot) -> None:
        # Snapshots already queued on the loop are dropped once stopped
        if self.active:
            self.on_snapshot(snapshot)

    def fail(self, error: DocumentStoreError) -> None:
        if not self.active:
            return
        self.stop()
        logger.error(f"❌ Firestore listener for {self.path} failed: {error}")
        if self.on_error is not None:
            self.on_error(error)

    def stop(self) -> None:
        self.active = False
        if self.supervisor is not None and self.supervisor is not asyncio.current_task():
            self.supervisor.cancel()
        if self.watch is not None:
            self.watch.unsubscribe()

    async def supervise(self, interval: float) -> None:
        while self.active:
            await asyncio.sleep(interval)
            if self.active and not self.watch.is_active:
                self.fail(StoreUnavailable("Live subscription lost", path=self.path))


class FirestoreDocumentStore(DocumentStore):
    def __init__(self, client=None, watch_poll_interval: float | None = None) -> None:
        self._client = client or _default_client()
        if watch_poll_interval is None:
            watch_poll_interval = get_settings().FIRESTORE_WATCH_POLL_SECONDS
        self.watch_poll_interval = watch_poll_interval

    def _doc(self, path: str):
        return self._client.document(path)

    async def _run(self, fn, *args, path: str | None = None):
        try:
            return await asyncio.to_thread(fn, *args)
        except DocumentStoreError:
            raise
        except Exception as e:
            raise _translate(e, path) from e

    async def get(self, path: str) -> DocumentSnapshot:
        snap = await self._run(self._doc(path).get, path=path)
        return _to_snapshot(snap)

    async def set(self, path: str, data: Dict[str, Any]) -> None:
        await self._run(self._doc(path).set, _prepare(data), path=path)

    async def update(self, path: str, data: Dict[str, Any]) -> None:
        await self._run(self._doc(path).update, _prepare(data), path=path)

    async def delete(self, path: str) -> None:
        await self._run(self._doc(path).delete, path=path)

    async def add(self, collection_path: str, data: Dict[str, Any]) -> str:
        _, ref = await self._run(self._client.collection(collection_path).add, _prepare(data), path=collection_path)
        return ref.id

    def _build_query(self, collection_path: str, filters: Filters = (), order_by: str | None = None):
        q = self._client.collection(collection_path)
        for field_name, value in filters:
            q = q.where(filter=FieldFilter(field_name, "==", value))
        if order_by:
            q = q.order_by(order_by)
        return q

    async def query(self, collection_path: str, filters: Filters = (), order_by: str | None = None) -> QuerySnapshot:
        q = self._build_query(collection_path, filters, order_by)
        docs = await self._run(lambda: list(q.stream()), path=collection_path)
        return QuerySnapshot(documents=[_to_snapshot(d) for d in docs])

    async def commit(self, batch: WriteBatch) -> None:
        def _commit():
            fs_batch = self._client.batch()
            for op in batch.ops:
                ref = self._doc(op.path)
                if op.kind == "set":
                    fs_batch.set(ref, _prepare(op.data))
                elif op.kind == "update":
                    fs_batch.update(ref, _prepare(op.data))
                else:
                    fs_batch.delete(ref)
            fs_batch.commit()

        first_path = batch.ops[0].path if batch.ops else None
        await self._run(_commit, path=first_path)

    async def update_if(self, path: str, expected: Dict[str, Any], data: Dict[str, Any]) -> bool:
        ref = self._doc(path)

        @firestore.transactional
        def _apply(transaction) -> bool:
            snap = ref.get(transaction=transaction)
            if not snap.exists:
                raise DocumentNotFound(path)
            current = snap.to_dict() or {}
            if any(current.get(k) != v for k, v in expected.items()):
                return False
            transaction.update(ref, _prepare(data))
            return True

        return await self._run(lambda: _apply(self._client.transaction()), path=path)

    # ------------------------ subscriptions ------------------------

    def _listen(self, target, path: str, convert, on_snapshot, on_error) -> Subscription:
        loop = asyncio.get_running_loop()
        listener = _Listener(path, on_snapshot, on_error)

        def _callback(docs, changes, read_time):
            # Runs on the SDK thread
            try:
                snapshot = convert(docs)
            except Exception as e:
                loop.call_soon_threadsafe(listener.fail, _translate(e, path))
                return
            loop.call_soon_threadsafe(listener.deliver, snapshot)

        try:
            listener.watch = target.on_snapshot(_callback)
        except Exception as e:
            raise _translate(e, path) from e
        listener.supervisor = loop.create_task(listener.supervise(self.watch_poll_interval))
        return Subscription(listener.stop)

    def watch_document(self, path: str, on_snapshot: DocumentCallback, on_error: ErrorCallback | None = None) -> Subscription:
        _, doc_id = path.rstrip("/").rsplit("/", 1)

        def _convert(docs) -> DocumentSnapshot:
            live = [d for d in docs if d.exists]
            return _to_snapshot(live[0]) if live else DocumentSnapshot(id=doc_id, exists=False)

        return self._listen(self._doc(path), path, _convert, on_snapshot, on_error)

    def watch_collection(
        self,
        collection_path: str,
        on_snapshot: CollectionCallback,
        on_error: ErrorCallback | None = None,
        order_by: str | None = None,
    ) -> Subscription:
        def _convert(docs) -> QuerySnapshot:
            return QuerySnapshot(documents=[_to_snapshot(d) for d in docs])

        query = self._build_query(collection_path, order_by=order_by)
        return self._listen(query, collection_path, _convert, on_snapshot, on_error)

    async def ping(self) -> bool:
        try:
            await asyncio.to_thread(lambda: list(self._client.collections()))
            return True
        except Exception as e:
            logger.warning(f"Firestore ping failed: {e}")
            return False

    async def close(self) -> None:
        await asyncio.to_thread(self._client.close)
