"""
Document store port used by the session and appointment services.

The shape follows Firestore: documents addressed by slash-separated paths
(``appointments/<id>``, ``appointments/<id>/messages/<id>``), atomic write
batches, a server-assigned timestamp sentinel and live subscriptions that
deliver a fresh snapshot on every change.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple


class _ServerTimestamp:
    """Sentinel replaced by the store's commit time."""

    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = _ServerTimestamp()


# ------------------------ Errors ------------------------


class DocumentStoreError(Exception):
    """Base error for every store operation."""

    retryable = False

    def __init__(self, message: str, *, path: str | None = None) -> None:
        super().__init__(message)
        self.path = path


class DocumentNotFound(DocumentStoreError):
    """Update against a document that does not exist."""

    def __init__(self, path: str) -> None:
        super().__init__(f"No document at {path}", path=path)


class StorePermissionDenied(DocumentStoreError):
    pass


class StoreUnavailable(DocumentStoreError):
    """Transient network/backend failure; the caller may retry."""

    retryable = True


# ------------------------ Snapshots & batches ------------------------


@dataclass
class DocumentSnapshot:
    id: str
    exists: bool
    data: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.data or {})


@dataclass
class QuerySnapshot:
    documents: List[DocumentSnapshot] = field(default_factory=list)

    def __iter__(self):
        return iter(self.documents)

    def __len__(self) -> int:
        return len(self.documents)


@dataclass
class WriteOp:
    kind: str  # set | update | delete
    path: str
    data: Optional[Dict[str, Any]] = None


class WriteBatch:
    """Ordered set of writes applied together or not at all."""

    def __init__(self) -> None:
        self.ops: List[WriteOp] = []

    def set(self, path: str, data: Dict[str, Any]) -> "WriteBatch":
        self.ops.append(WriteOp("set", path, dict(data)))
        return self

    def update(self, path: str, data: Dict[str, Any]) -> "WriteBatch":
        self.ops.append(WriteOp("update", path, dict(data)))
        return self

    def delete(self, path: str) -> "WriteBatch":
        self.ops.append(WriteOp("delete", path))
        return self

    def __len__(self) -> int:
        return len(self.ops)


class Subscription:
    """Handle for a live subscription; unsubscribe() may be called any number of times."""

    def __init__(self, cancel: Callable[[], None]) -> None:
        self._cancel: Callable[[], None] | None = cancel

    @property
    def active(self) -> bool:
        return self._cancel is not None

    def unsubscribe(self) -> None:
        cancel, self._cancel = self._cancel, None
        if cancel is not None:
            cancel()


DocumentCallback = Callable[[DocumentSnapshot], None]
CollectionCallback = Callable[[QuerySnapshot], None]
ErrorCallback = Callable[[DocumentStoreError], None]
# (field, value) equality filters
Filters = Sequence[Tuple[str, Any]]


def split_path(path: str) -> Tuple[str, str]:
    """Split ``collection/.../doc_id`` into (collection path, document id)."""
    parent, _, doc_id = path.rstrip("/").rpartition("/")
    if not parent or not doc_id:
        raise ValueError(f"Not a document path: {path!r}")
    return parent, doc_id


class DocumentStore(ABC):
    """Async document store with live subscriptions."""

    @abstractmethod
    async def get(self, path: str) -> DocumentSnapshot: ...

    @abstractmethod
    async def set(self, path: str, data: Dict[str, Any]) -> None: ...

    @abstractmethod
    async def update(self, path: str, data: Dict[str, Any]) -> None:
        """Merge fields into an existing document; raises DocumentNotFound."""

    @abstractmethod
    async def delete(self, path: str) -> None:
        """Delete a document. Deleting a missing document is not an error."""

    @abstractmethod
    async def add(self, collection_path: str, data: Dict[str, Any]) -> str:
        """Append a document with a store-assigned id and return that id."""

    @abstractmethod
    async def query(
        self,
        collection_path: str,
        filters: Filters = (),
        order_by: str | None = None,
    ) -> QuerySnapshot: ...

    @abstractmethod
    async def commit(self, batch: WriteBatch) -> None: ...

    @abstractmethod
    async def update_if(self, path: str, expected: Dict[str, Any], data: Dict[str, Any]) -> bool:
        """Atomically apply `data` only when every `expected` field matches.

        Returns False when a field differs; raises DocumentNotFound when the
        document is missing.
        """

    @abstractmethod
    def watch_document(
        self,
        path: str,
        on_snapshot: DocumentCallback,
        on_error: ErrorCallback | None = None,
    ) -> Subscription: ...

    @abstractmethod
    def watch_collection(
        self,
        collection_path: str,
        on_snapshot: CollectionCallback,
        on_error: ErrorCallback | None = None,
        order_by: str | None = None,
    ) -> Subscription: ...

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None
