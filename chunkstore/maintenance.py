from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from chunkstore.config import settings
from chunkstore.errors import ChunkStoreError
from chunkstore.events import store_event
from chunkstore.models import UploadState
from chunkstore.registry import UploadRegistry


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _upload_id_from_key(key: str) -> str | None:
    parts = key.split("/")
    if len(parts) < 3 or parts[0] != "uploads":
        return None
    return parts[1]


def cleanup_once(registry: UploadRegistry, ttl_seconds: int | None = None) -> dict[str, int]:
    ttl = settings.stale_upload_ttl_seconds if ttl_seconds is None else ttl_seconds
    stale_before = _utc_now() - timedelta(seconds=ttl)

    stale_uploads = [
        info
        for info in registry.list_uploads()
        if info.state is UploadState.open and info.created_at < stale_before
    ]
    expired = 0
    for info in stale_uploads:
        try:
            if registry.discard(info.id):
                expired += 1
        except ChunkStoreError as exc:
            # Best effort; the next pass picks it up again.
            store_event(
                {"event": "stale_upload_cleanup_failed", "upload_id": info.id, "detail": exc.detail},
                level=logging.WARNING,
            )

    # List first, then ask the registry per key: anything registered after the
    # listing cannot have files in it.
    keys = registry.storage.list_keys("uploads/")
    orphan_deleted = 0
    for key in keys:
        upload_id = _upload_id_from_key(key)
        if upload_id is None or registry.is_known(upload_id):
            continue
        try:
            registry.storage.remove(key)
            orphan_deleted += 1
        except ChunkStoreError as exc:
            store_event(
                {"event": "orphan_cleanup_failed", "handle": key, "detail": exc.detail},
                level=logging.WARNING,
            )

    return {
        "stale_uploads_expired": expired,
        "orphan_keys_deleted": orphan_deleted,
    }
