"""Error kinds raised by the chunk-assembly store.

Each kind carries a stable ``error_code`` and the HTTP status the transport
adapter answers with, so no two kinds ever collapse into the same signal.
"""


class ChunkStoreError(Exception):
    error_code = "store_error"
    status_code = 500

    def __init__(self, detail: str, upload_id: str | None = None) -> None:
        super().__init__(detail)
        self.detail = detail
        self.upload_id = upload_id


class NotFound(ChunkStoreError):
    """Raised for an upload id the registry has never issued (or has discarded)."""

    error_code = "not_found"
    status_code = 404

    def __init__(self, upload_id: str) -> None:
        super().__init__(f"upload {upload_id!r} not found", upload_id=upload_id)


class AlreadyFinalized(ChunkStoreError):
    """Raised when a write path hits an upload that is already finalized."""

    error_code = "already_finalized"
    status_code = 409

    def __init__(self, upload_id: str) -> None:
        super().__init__(f"upload {upload_id!r} is already finalized", upload_id=upload_id)


class NotReady(ChunkStoreError):
    """Raised when reading an upload that has not been finalized yet."""

    error_code = "not_ready"
    status_code = 409

    def __init__(self, upload_id: str) -> None:
        super().__init__(f"upload {upload_id!r} is not finalized yet", upload_id=upload_id)


class StorageUnavailable(ChunkStoreError):
    """Raised when the durable storage medium fails a create, write or read."""

    error_code = "storage_unavailable"
    status_code = 503
