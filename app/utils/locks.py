import logging
import threading
import time
from contextlib import contextmanager
from typing import Dict

logger = logging.getLogger(__name__)


class TenantImportLock:
    """
    Serialises legacy imports for one tenant within this process.

    Imports for the same tenant share duplicate checks and the legacy-id map,
    so a second caller waits until the first one finishes. Different tenants
    never block each other.
    """
    _locks: Dict[str, threading.Lock] = {}
    _registry_lock = threading.Lock()

    @classmethod
    def get_lock(cls, tenant_id: str) -> threading.Lock:
        with cls._registry_lock:
            return cls._locks.setdefault(tenant_id, threading.Lock())

    @classmethod
    def is_locked(cls, tenant_id: str) -> bool:
        return cls.get_lock(tenant_id).locked()

    @classmethod
    @contextmanager
    def acquire(cls, tenant_id: str):
        """Hold the tenant's import lock for the duration of the block."""
        lock = cls.get_lock(tenant_id)
        if lock.locked():
            logger.info(f"Import already running for tenant '{tenant_id}'; waiting")
        started = time.monotonic()
        lock.acquire()
        logger.debug(f"Acquired import lock for tenant '{tenant_id}' after {time.monotonic() - started:.2f}s")
        try:
            yield
        finally:
            lock.release()
            logger.debug(f"Released import lock for tenant '{tenant_id}'")
