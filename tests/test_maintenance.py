from datetime import datetime, timedelta, timezone
from pathlib import Path

from chunkstore.maintenance import cleanup_once
from chunkstore.registry import build_registry
from chunkstore.storage import LocalChunkStorage


def test_cleanup_expires_stale_open_uploads_and_orphans(tmp_path: Path) -> None:
    storage = LocalChunkStorage(str(tmp_path))
    registry = build_registry(storage)

    stale_id = registry.register("stale.bin", "application/octet-stream")
    registry.append_chunk(stale_id, 0, b"old")
    fresh_id = registry.register("fresh.bin", "application/octet-stream")
    registry.append_chunk(fresh_id, 0, b"new")
    done_id = registry.register("done.bin", "application/octet-stream")
    registry.append_chunk(done_id, 0, b"done")
    registry.finalize(done_id)

    old = datetime.now(timezone.utc) - timedelta(days=2)
    registry._uploads[stale_id].created_at = old
    registry._uploads[done_id].created_at = old

    storage.create_scratch("orphan-upload")
    storage.put("orphan-upload", 0, b"left over")

    stats = cleanup_once(registry, ttl_seconds=3600)

    assert stats == {"stale_uploads_expired": 1, "orphan_keys_deleted": 1}
    remaining = {info.id for info in registry.list_uploads()}
    assert remaining == {fresh_id, done_id}
    assert not any(key.startswith("uploads/orphan-upload/") for key in storage.list_keys("uploads/"))
    assert not any(key.startswith(f"uploads/{stale_id}/") for key in storage.list_keys("uploads/"))


def test_cleanup_is_noop_on_healthy_store(tmp_path: Path) -> None:
    registry = build_registry(LocalChunkStorage(str(tmp_path)))
    upload_id = registry.register("a.txt", "text/plain")
    registry.append_chunk(upload_id, 0, b"a")

    stats = cleanup_once(registry, ttl_seconds=3600)

    assert stats == {"stale_uploads_expired": 0, "orphan_keys_deleted": 0}
    assert registry.describe(upload_id).chunk_indexes == [0]


def test_cleanup_keeps_files_of_upload_registered_during_sweep(tmp_path: Path, monkeypatch) -> None:
    storage = LocalChunkStorage(str(tmp_path))
    registry = build_registry(storage)
    real_list_keys = storage.list_keys
    registered: list[str] = []

    def _list_keys_with_new_upload(prefix: str = "") -> list[str]:
        upload_id = registry.register("live.bin", "application/octet-stream")
        registry.append_chunk(upload_id, 0, b"live data")
        registered.append(upload_id)
        return real_list_keys(prefix)

    monkeypatch.setattr(storage, "list_keys", _list_keys_with_new_upload)
    stats = cleanup_once(registry, ttl_seconds=3600)
    monkeypatch.setattr(storage, "list_keys", real_list_keys)

    assert stats == {"stale_uploads_expired": 0, "orphan_keys_deleted": 0}
    upload_id = registered[0]
    registry.finalize(upload_id)
    _, stream = registry.read(upload_id)
    with stream:
        assert stream.read() == b"live data"


def test_cleanup_never_expires_finalized_upload(tmp_path: Path) -> None:
    registry = build_registry(LocalChunkStorage(str(tmp_path)))
    upload_id = registry.register("late.bin", "application/octet-stream")
    registry.append_chunk(upload_id, 0, b"late")
    registry._uploads[upload_id].created_at = datetime.now(timezone.utc) - timedelta(days=2)
    registry.finalize(upload_id)

    assert registry.discard(upload_id) is False
    stats = cleanup_once(registry, ttl_seconds=3600)

    assert stats["stale_uploads_expired"] == 0
    _, stream = registry.read(upload_id)
    with stream:
        assert stream.read() == b"late"
