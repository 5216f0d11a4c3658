"""Upload data models."""

import mimetypes
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from capture_upload.exceptions import ErrorKind


class ArtifactKind(str, Enum):
    """Kind of capture being uploaded."""

    SCREENSHOT = "screenshot"
    VIDEO = "video"


class UploadState(str, Enum):
    """Lifecycle states of an upload session."""

    CREATED = "created"
    VALIDATING = "validating"
    REQUESTING_GRANT = "requesting_grant"
    TRANSFERRING = "transferring"
    RETRYING = "retrying"
    CONFIRMING = "confirming"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    CONFIRMATION_FAILED = "confirmation_failed"  # Bytes stored, catalog not updated

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {
        UploadState.COMPLETED,
        UploadState.FAILED,
        UploadState.CANCELLED,
        UploadState.CONFIRMATION_FAILED,
    }
)


class UploadRequest(BaseModel):
    """A capture handed to the pipeline by a capture source."""

    model_config = ConfigDict(frozen=True)

    payload: bytes = Field(..., repr=False, description="Artifact content")
    size_bytes: int = Field(..., description="Declared byte length")
    content_type: str = Field(..., description="Declared MIME type")
    case_id: str = Field(..., description="Owning case identifier")
    kind: ArtifactKind
    file_name: str = "capture.bin"
    tags: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    description: Optional[str] = None
    origin_url: Optional[str] = Field(None, description="Page the capture was taken from")

    @classmethod
    def from_file(
        cls,
        path: str | Path,
        *,
        case_id: str,
        kind: ArtifactKind,
        content_type: str | None = None,
        **kwargs: Any,
    ) -> "UploadRequest":
        """Build a request from a capture stored on disk.

        The MIME type is guessed from the file extension when not given.
        """
        path = Path(path)
        payload = path.read_bytes()
        if content_type is None:
            content_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        return cls(
            payload=payload,
            size_bytes=len(payload),
            content_type=content_type,
            case_id=case_id,
            kind=kind,
            file_name=path.name,
            **kwargs,
        )


class WriteGrant(BaseModel):
    """Time-limited permission to write one object, issued by the broker."""

    model_config = ConfigDict(frozen=True)

    grant_id: str
    upload_url: str
    object_url: str
    object_key: str
    method: Literal["PUT", "POST"] = "PUT"
    headers: dict[str, str] = Field(default_factory=dict)
    fields: dict[str, str] = Field(default_factory=dict, description="Form fields for POST uploads")
    expires_at: datetime
    multipart_upload_id: Optional[str] = None

    def is_expired(self, now: datetime | None = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return now >= self.expires_at


class PartWriteEndpoint(BaseModel):
    """Where and how to write a single part of a multipart upload."""

    model_config = ConfigDict(frozen=True)

    part_number: int
    url: str
    method: Literal["PUT"] = "PUT"
    headers: dict[str, str] = Field(default_factory=dict)


class PartResult(BaseModel):
    """A part acknowledged by the storage endpoint.

    The byte range is half-open: ``[start, end)``.
    """

    model_config = ConfigDict(frozen=True)

    part_number: int
    start: int
    end: int
    etag: str
    attempts: int = 1

    @property
    def size_bytes(self) -> int:
        return self.end - self.start


class FinalObjectRef(BaseModel):
    """The object produced once a multipart upload is assembled."""

    model_config = ConfigDict(frozen=True)

    object_key: str
    object_url: str


class ProgressEvent(BaseModel):
    """Progress data delivered to ``on_progress`` observers."""

    model_config = ConfigDict(frozen=True)

    session_id: str = ""
    percentage: float
    bytes_loaded: int
    bytes_total: int
    speed: Optional[float] = Field(None, description="Bytes per second")
    eta_seconds: Optional[float] = None


class UploadFailure(BaseModel):
    """Terminal error classification delivered to ``on_error``."""

    model_config = ConfigDict(frozen=True)

    kind: ErrorKind
    message: str
    attempts: int = 1
    bytes_may_be_stored: bool = False
    violations: list[str] = Field(default_factory=list)


class UploadOutcome(BaseModel):
    """The single terminal result of an upload session."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    success: bool
    state: UploadState
    object_key: Optional[str] = None
    object_url: Optional[str] = None
    size_bytes: int
    elapsed_seconds: float
    attempts: int = 0
    parts: list[PartResult] = Field(default_factory=list)
    checksum: Optional[str] = None
    error: Optional[UploadFailure] = None


class SessionSnapshot(BaseModel):
    """Read-only view of an upload session."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    case_id: str
    kind: ArtifactKind
    file_name: str
    state: UploadState
    bytes_transferred: int
    total_bytes: int
    percentage: float
    attempts: int
    object_key: Optional[str] = None
    parts: list[PartResult] = Field(default_factory=list)
    cancel_requested: bool = False
    created_at: datetime
    updated_at: datetime
    outcome: Optional[UploadOutcome] = None
