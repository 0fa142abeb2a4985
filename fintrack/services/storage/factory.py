"""
Storage Initialization

DESIGN DECISION: The backend is chosen ONCE, before anything is served,
and handed to whoever needs it. There is no module-level singleton and
no lazy switch mid-request, so a request can never see a half-initialized
backend or a backend that changes under it.

Selection (AppSettings.storage_backend):
- "memory": always in-memory
- "sql":    the database must answer the probe, or startup fails
- "auto":   use the database when configured and reachable; otherwise
            fall back to memory if fallback_to_memory is enabled
"""

from typing import Optional

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from fintrack.audit import AuditLogger
from fintrack.config import Settings, get_settings
from fintrack.services.storage.interface import (
    StorageError,
    StorageInterface,
    StorageUnavailableError,
)
from fintrack.services.storage.memory import InMemoryStorage
from fintrack.services.storage.sql import SqlStorage, create_storage_engine


logger = structlog.get_logger(__name__)


async def probe_storage(storage: StorageInterface, attempts: int = 3) -> bool:
    """
    Ping a backend, retrying with exponential backoff.

    Raises:
        StorageUnavailableError: If every attempt failed
    """
    reachable = False
    async for attempt in AsyncRetrying(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type(StorageUnavailableError),
        reraise=True,
    ):
        with attempt:
            reachable = await storage.ping()
    return reachable


async def initialize_storage(
    settings: Optional[Settings] = None,
    audit_logger: Optional[AuditLogger] = None,
) -> StorageInterface:
    """
    Resolve the storage backend for this process.

    Args:
        settings: Settings to use (defaults to get_settings())
        audit_logger: Receives the selection and fallback events

    Raises:
        StorageUnavailableError: "sql" was requested, or fallback is
            disabled, and the database could not be reached
        StorageError: "sql" was requested without DATABASE_URL
    """
    settings = settings or get_settings()
    app = settings.app
    database = settings.database

    storage: Optional[StorageInterface] = None

    if app.storage_backend == "memory":
        storage = InMemoryStorage()

    elif app.storage_backend == "sql" or database.is_configured:
        if not database.is_configured:
            raise StorageError("storage_backend is 'sql' but DATABASE_URL is not set")

        sql_storage = SqlStorage(create_storage_engine(database), create_schema=False)
        try:
            await probe_storage(sql_storage, attempts=database.connect_retries)
            sql_storage.create_schema()
            storage = sql_storage
        except StorageUnavailableError as e:
            await sql_storage.close()
            if app.storage_backend == "sql" or not app.fallback_to_memory:
                logger.error("storage_unavailable", error=str(e))
                if audit_logger:
                    await audit_logger.log_error(
                        error_type=type(e).__name__,
                        error_message=str(e),
                        details={"backend": "sql"},
                    )
                raise
            logger.warning("storage_fallback", error=str(e))
            if audit_logger:
                await audit_logger.log_storage_fallback(str(e))
            storage = InMemoryStorage()

    else:
        # auto without a database configured
        storage = InMemoryStorage()

    logger.info("storage_selected", backend=storage.backend_name)
    if audit_logger:
        await audit_logger.log_storage_selected(storage.backend_name)

    return storage
