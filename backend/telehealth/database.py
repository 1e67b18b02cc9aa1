from telehealth.config import get_settings
from telehealth.services.document_store import DocumentStore
from telehealth.utils.logger import get_logger

settings = get_settings()
logger = get_logger("database")

_store: DocumentStore | None = None


def _create_store() -> DocumentStore:
    provider = (settings.DOCUMENT_STORE_PROVIDER or "memory").lower()
    if provider == "firestore":
        # Lazy import: the Firebase SDK is only needed when it is the configured backend
        from telehealth.services.firestore_store import FirestoreDocumentStore
        return FirestoreDocumentStore()
    if provider != "memory":
        raise RuntimeError(f"Unknown DOCUMENT_STORE_PROVIDER: {settings.DOCUMENT_STORE_PROVIDER}")
    from telehealth.services.memory_store import MemoryDocumentStore
    logger.warning("Using in-memory document store; data is lost on restart")
    return MemoryDocumentStore()


async def init_db() -> DocumentStore:
    """Initialize the configured document store once."""
    global _store
    if _store is None:
        _store = _create_store()
        logger.info(f"Document store ready ({type(_store).__name__})")
    return _store


def set_store(store: DocumentStore | None) -> None:
    """Install an explicit store (tests, scripts)."""
    global _store
    _store = store


async def close_db() -> None:
    global _store
    if _store is not None:
        await _store.close()
        _store = None


async def ping_db() -> bool:
    """Check document store connectivity."""
    if _store is None:
        return False
    try:
        return await _store.ping()
    except Exception:
        return False


def get_store() -> DocumentStore:
    """FastAPI dependency returning the process-wide store handle."""
    if _store is None:
        raise RuntimeError("Document store not initialized")
    return _store
