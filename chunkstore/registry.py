import logging
import threading
import time
import uuid
from typing import BinaryIO

from chunkstore.assembly import AssemblyEngine
from chunkstore.errors import AlreadyFinalized, NotFound, NotReady, StorageUnavailable
from chunkstore.events import store_event
from chunkstore.metrics import (
    bytes_appended_total,
    chunk_append_failures_total,
    chunk_write_latency_seconds,
    chunks_appended_total,
    finalize_failures_total,
    open_uploads,
    uploads_finalized_total,
    uploads_registered_total,
)
from chunkstore.models import Upload, UploadInfo, UploadState, utc_now
from chunkstore.storage import ChunkStorage


class UploadRegistry:
    """Owns every upload record and serializes state transitions per upload.

    The map lock is only held for lookups and inserts. Each upload carries its
    own lock, taken for the chunk-map update in :meth:`append_chunk` and for
    the whole of :meth:`finalize`, so uploads never wait on each other.
    """

    def __init__(
        self,
        storage: ChunkStorage,
        engine: AssemblyEngine | None = None,
        delete_chunks_after_finalize: bool = True,
        owns_storage: bool = False,
    ) -> None:
        self.storage = storage
        self.engine = engine or AssemblyEngine(storage)
        self.delete_chunks_after_finalize = delete_chunks_after_finalize
        self.owns_storage = owns_storage
        self._uploads: dict[str, Upload] = {}
        self._lock = threading.Lock()

    def _get(self, upload_id: str) -> Upload:
        with self._lock:
            upload = self._uploads.get(upload_id)
        if upload is None:
            raise NotFound(upload_id)
        return upload

    def register(self, name: str, content_type: str) -> str:
        with self._lock:
            upload_id = str(uuid.uuid4())
            while upload_id in self._uploads:
                upload_id = str(uuid.uuid4())
            self._uploads[upload_id] = Upload(id=upload_id, name=name, content_type=content_type)
        try:
            self.storage.create_scratch(upload_id)
        except StorageUnavailable:
            with self._lock:
                self._uploads.pop(upload_id, None)
            raise
        uploads_registered_total.inc()
        open_uploads.inc()
        return upload_id

    def append_chunk(self, upload_id: str, chunk_index: int, data: bytes) -> None:
        if chunk_index < 0:
            raise ValueError("chunk_index must be non-negative")
        upload = self._get(upload_id)
        if upload.state is UploadState.finalized:
            raise AlreadyFinalized(upload_id)

        start = time.perf_counter()
        try:
            handle = self.storage.put(upload_id, chunk_index, data)
        except StorageUnavailable:
            chunk_append_failures_total.inc()
            if upload.discarded:
                # Scratch area went away with the upload.
                raise NotFound(upload_id) from None
            raise
        chunk_write_latency_seconds.observe(time.perf_counter() - start)

        with upload.lock:
            rejection = self._write_rejection(upload)
            previous = None
            if rejection is None:
                previous = upload.chunk_locations.get(chunk_index)
                upload.chunk_locations[chunk_index] = handle

        if rejection is not None:
            # Finalize or discard won the race; this write never became part of the upload.
            self.engine.discard_chunks(upload_id, [handle])
            raise rejection
        if previous is not None:
            self.engine.discard_chunks(upload_id, [previous])
        chunks_appended_total.inc()
        bytes_appended_total.inc(len(data))

    def finalize(self, upload_id: str) -> None:
        upload = self._get(upload_id)
        with upload.lock:
            rejection = self._write_rejection(upload)
            if rejection is not None:
                raise rejection
            snapshot = dict(upload.chunk_locations)
            try:
                final_location = self.engine.assemble(upload_id, snapshot)
                size_bytes = self.storage.size(final_location)
            except StorageUnavailable as exc:
                finalize_failures_total.inc()
                store_event(
                    {
                        "event": "finalize_failed",
                        "upload_id": upload_id,
                        "chunk_count": len(snapshot),
                        "detail": exc.detail,
                    },
                    level=logging.WARNING,
                )
                raise
            upload.final_location = final_location
            upload.size_bytes = size_bytes
            upload.finalized_at = utc_now()
            upload.state = UploadState.finalized

        uploads_finalized_total.inc()
        open_uploads.dec()
        if self.delete_chunks_after_finalize:
            self.engine.discard_chunks(upload_id, list(snapshot.values()))

    def read(self, upload_id: str) -> tuple[UploadInfo, BinaryIO]:
        upload = self._get(upload_id)
        with upload.lock:
            if upload.state is not UploadState.finalized:
                raise NotReady(upload_id)
            info = upload.info()
            final_location = upload.final_location
        return info, self.storage.get(final_location)

    def describe(self, upload_id: str) -> UploadInfo:
        upload = self._get(upload_id)
        with upload.lock:
            return upload.info()

    def list_uploads(self) -> list[UploadInfo]:
        with self._lock:
            uploads = list(self._uploads.values())
        infos = []
        for upload in uploads:
            with upload.lock:
                infos.append(upload.info())
        return infos

    def is_known(self, upload_id: str) -> bool:
        with self._lock:
            return upload_id in self._uploads

    def discard(self, upload_id: str) -> bool:
        """Forget an open upload and delete its scratch area.

        Finalized uploads are left alone and ``False`` is returned. Operations
        already holding the record see the discard under the upload lock and
        fail with :class:`NotFound`.
        """
        upload = self._get(upload_id)
        with upload.lock:
            if upload.state is not UploadState.open or upload.discarded:
                return False
            upload.discarded = True
            with self._lock:
                self._uploads.pop(upload_id, None)
        open_uploads.dec()
        self.storage.remove_scratch(upload_id)
        return True

    @staticmethod
    def _write_rejection(upload: Upload) -> Exception | None:
        if upload.discarded:
            return NotFound(upload.id)
        if upload.state is UploadState.finalized:
            return AlreadyFinalized(upload.id)
        return None

    def close(self) -> None:
        if self.owns_storage:
            self.storage.teardown()


def build_registry(
    storage: ChunkStorage,
    copy_buffer_bytes: int = 1024 * 1024,
    delete_chunks_after_finalize: bool = True,
    owns_storage: bool = False,
) -> UploadRegistry:
    return UploadRegistry(
        storage,
        engine=AssemblyEngine(storage, copy_buffer_bytes=copy_buffer_bytes),
        delete_chunks_after_finalize=delete_chunks_after_finalize,
        owns_storage=owns_storage,
    )
