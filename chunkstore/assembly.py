import logging
import shutil
import time
from collections.abc import Mapping

from chunkstore.errors import StorageUnavailable
from chunkstore.events import store_event
from chunkstore.metrics import assembly_latency_seconds, chunk_cleanup_failures_total
from chunkstore.storage import ChunkStorage
from chunkstore.tracing import upload_span


class AssemblyEngine:
    """Concatenates an upload's chunks into one artifact in ascending index order.

    Gaps in the index sequence are not an error: whatever indices are present
    are written back to back and missing ones are simply skipped.
    """

    def __init__(self, storage: ChunkStorage, copy_buffer_bytes: int = 1024 * 1024) -> None:
        self.storage = storage
        self.copy_buffer_bytes = copy_buffer_bytes

    def assemble(self, upload_id: str, chunk_locations: Mapping[int, str]) -> str:
        ordered = sorted(chunk_locations.items(), key=lambda item: int(item[0]))
        start = time.perf_counter()
        with upload_span("assemble_upload", upload_id, chunk_count=len(ordered)):
            with self.storage.open_artifact(upload_id) as sink:
                for _, handle in ordered:
                    source = self.storage.get(handle)
                    try:
                        shutil.copyfileobj(source, sink, self.copy_buffer_bytes)
                    finally:
                        source.close()
        assembly_latency_seconds.observe(time.perf_counter() - start)
        return self.storage.artifact_key(upload_id)

    def discard_chunks(self, upload_id: str, handles: list[str]) -> int:
        """Best-effort removal of consumed chunk files; returns how many were left behind."""
        failed = 0
        for handle in handles:
            try:
                self.storage.remove(handle)
            except StorageUnavailable as exc:
                failed += 1
                chunk_cleanup_failures_total.inc()
                store_event(
                    {
                        "event": "chunk_cleanup_failed",
                        "upload_id": upload_id,
                        "handle": handle,
                        "detail": exc.detail,
                    },
                    level=logging.WARNING,
                )
        return failed
