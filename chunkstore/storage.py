import os
import shutil
import tempfile
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import BinaryIO

from chunkstore.errors import StorageUnavailable


class ChunkStorage:
    def create_scratch(self, upload_id: str) -> None:
        raise NotImplementedError

    def remove_scratch(self, upload_id: str) -> None:
        raise NotImplementedError

    def put(self, upload_id: str, chunk_index: int, data: bytes) -> str:
        raise NotImplementedError

    def get(self, handle: str) -> BinaryIO:
        raise NotImplementedError

    def size(self, handle: str) -> int:
        raise NotImplementedError

    def remove(self, handle: str) -> None:
        raise NotImplementedError

    def artifact_key(self, upload_id: str) -> str:
        raise NotImplementedError

    def open_artifact(self, upload_id: str):
        raise NotImplementedError

    def list_keys(self, prefix: str = "") -> list[str]:
        raise NotImplementedError

    def teardown(self) -> None:
        return None


class LocalChunkStorage(ChunkStorage):
    """Filesystem backend with one scratch directory per upload under ``root``.

    Every write lands in a hidden ``.part`` file first and is moved into place
    with ``os.replace`` only after it has been flushed and fsynced, so a handle
    returned by :meth:`put` never points at a partially written file.
    """

    def __init__(self, root: str) -> None:
        self.root = Path(root)
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageUnavailable(f"failed to create storage root {root!r}: {exc}") from exc

    def scratch_key(self, upload_id: str) -> str:
        return f"uploads/{upload_id}"

    def chunk_key(self, upload_id: str, chunk_index: int) -> str:
        # Unique per put so a rewrite of the same index never touches a file a reader may hold.
        return f"uploads/{upload_id}/chunk_{chunk_index}.{uuid.uuid4().hex[:12]}"

    def artifact_key(self, upload_id: str) -> str:
        return f"uploads/{upload_id}/assembled"

    def create_scratch(self, upload_id: str) -> None:
        try:
            (self.root / self.scratch_key(upload_id)).mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageUnavailable(f"failed to create scratch area: {exc}", upload_id=upload_id) from exc

    def remove_scratch(self, upload_id: str) -> None:
        target = self.root / self.scratch_key(upload_id)
        try:
            shutil.rmtree(target)
        except FileNotFoundError:
            return
        except OSError as exc:
            raise StorageUnavailable(f"failed to remove scratch area: {exc}", upload_id=upload_id) from exc

    def put(self, upload_id: str, chunk_index: int, data: bytes) -> str:
        relative_key = self.chunk_key(upload_id, chunk_index)
        full_path = self.root / relative_key
        try:
            with self._atomic_writer(full_path) as fh:
                fh.write(data)
        except OSError as exc:
            raise StorageUnavailable(
                f"failed to write chunk {chunk_index}: {exc}", upload_id=upload_id
            ) from exc
        return relative_key

    def get(self, handle: str) -> BinaryIO:
        try:
            return open(self.root / handle, "rb")
        except OSError as exc:
            raise StorageUnavailable(f"failed to open {handle!r}: {exc}") from exc

    def size(self, handle: str) -> int:
        try:
            return (self.root / handle).stat().st_size
        except OSError as exc:
            raise StorageUnavailable(f"failed to stat {handle!r}: {exc}") from exc

    def remove(self, handle: str) -> None:
        target = self.root / handle
        try:
            target.unlink(missing_ok=True)
        except OSError as exc:
            raise StorageUnavailable(f"failed to remove {handle!r}: {exc}") from exc

    @contextmanager
    def open_artifact(self, upload_id: str) -> Iterator[BinaryIO]:
        """Yield a writable stream that becomes :meth:`artifact_key` on clean exit.

        On any error the partial output is discarded and the previous artifact
        (if any) is left untouched.
        """
        full_path = self.root / self.artifact_key(upload_id)
        try:
            with self._atomic_writer(full_path) as fh:
                yield fh
        except OSError as exc:
            raise StorageUnavailable(f"failed to write assembled artifact: {exc}", upload_id=upload_id) from exc

    def list_keys(self, prefix: str = "") -> list[str]:
        base = self.root / prefix if prefix else self.root
        if not base.exists():
            return []
        root = self.root
        return [str(path.relative_to(root)).replace("\\", "/") for path in base.rglob("*") if path.is_file()]

    def teardown(self) -> None:
        shutil.rmtree(self.root, ignore_errors=True)

    @contextmanager
    def _atomic_writer(self, target: Path) -> Iterator[BinaryIO]:
        fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".part")
        try:
            with os.fdopen(fd, "wb") as fh:
                yield fh
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, target)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise


def build_storage(root: str) -> ChunkStorage:
    return LocalChunkStorage(root)
