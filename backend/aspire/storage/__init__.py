from aspire.core.config import StorageSettings
from aspire.storage.base import HidingNotSupportedError, StorageAdapter, StorageError
from aspire.storage.json_backend import JsonBackend
from aspire.storage.redis_backend import RedisHashBackend


def create_storage_adapter(settings: StorageSettings) -> StorageAdapter:
    """Build the configured storage backend; called once at startup"""
    if settings.is_local:
        return JsonBackend(settings.DATA_DIR)
    return RedisHashBackend(
        redis_url=settings.REDIS_URL,
        cases_hkey=settings.CASES_HKEY,
        jobs_hkey=settings.JOBS_HKEY,
    )


__all__ = [
    "StorageAdapter",
    "StorageError",
    "HidingNotSupportedError",
    "JsonBackend",
    "RedisHashBackend",
    "create_storage_adapter",
]
