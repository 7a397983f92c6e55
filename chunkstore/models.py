import enum
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone


class UploadState(str, enum.Enum):
    open = "OPEN"
    finalized = "FINALIZED"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Upload:
    id: str
    name: str
    content_type: str
    state: UploadState = UploadState.open
    chunk_locations: dict[int, str] = field(default_factory=dict)
    final_location: str | None = None
    size_bytes: int | None = None
    created_at: datetime = field(default_factory=utc_now)
    finalized_at: datetime | None = None
    discarded: bool = False
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def info(self) -> "UploadInfo":
        return UploadInfo(
            id=self.id,
            name=self.name,
            content_type=self.content_type,
            state=self.state,
            chunk_indexes=sorted(self.chunk_locations),
            size_bytes=self.size_bytes,
            created_at=self.created_at,
            finalized_at=self.finalized_at,
        )


@dataclass(frozen=True)
class UploadInfo:
    """Read-only snapshot of an upload handed out by the registry."""

    id: str
    name: str
    content_type: str
    state: UploadState
    chunk_indexes: list[int]
    size_bytes: int | None
    created_at: datetime
    finalized_at: datetime | None
