"""Storage engine selection from settings."""

from typing import Optional

from notevault.core.config import settings
from notevault.storage.b2 import B2StorageEngine
from notevault.storage.b2_client import B2Client
from notevault.storage.base import StorageEngine
from notevault.storage.local import LocalStorageEngine

_engine: Optional[StorageEngine] = None


def _build_b2_engine() -> B2StorageEngine:
    missing = [
        name
        for name in ("B2_APPLICATION_KEY_ID", "B2_APPLICATION_KEY", "B2_BUCKET_ID", "B2_BUCKET_NAME")
        if not getattr(settings, name)
    ]
    if missing:
        raise ValueError(f"{', '.join(missing)} not configured")

    client = B2Client(
        application_key_id=settings.B2_APPLICATION_KEY_ID,
        application_key=settings.B2_APPLICATION_KEY,
        api_url=settings.B2_API_URL,
        timeout=settings.B2_REQUEST_TIMEOUT,
    )
    return B2StorageEngine(
        client,
        bucket_id=settings.B2_BUCKET_ID,
        bucket_name=settings.B2_BUCKET_NAME,
        bucket_region=settings.B2_BUCKET_REGION,
        retry_backoff=settings.B2_RETRY_BACKOFF_SECONDS,
    )


def get_storage_engine() -> StorageEngine:
    """Return the process-wide storage engine, building it on first use.

    The engine is cached so its B2 authorization is shared by every upload.

    Raises:
        ValueError: If the configured backend is unknown or incomplete
    """
    global _engine
    if _engine is None:
        if settings.STORAGE_BACKEND == "b2":
            _engine = _build_b2_engine()
        elif settings.STORAGE_BACKEND == "local":
            _engine = LocalStorageEngine(settings.LOCAL_STORAGE_PATH)
        else:
            raise ValueError(f"Unknown STORAGE_BACKEND: {settings.STORAGE_BACKEND}")
    return _engine


def reset_storage_engine() -> None:
    """Drop the cached engine so the next call rebuilds it from settings."""
    global _engine
    _engine = None
