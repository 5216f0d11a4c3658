"""Mutable per-upload session record."""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from capture_upload.models.upload import (
    PartResult,
    ProgressEvent,
    SessionSnapshot,
    UploadFailure,
    UploadOutcome,
    UploadRequest,
    UploadState,
    WriteGrant,
)


@dataclass
class UploadCallbacks:
    """Observer hooks supplied by the caller of ``submit``."""

    on_progress: Optional[Callable[[ProgressEvent], None]] = None
    on_success: Optional[Callable[[UploadOutcome], None]] = None
    on_error: Optional[Callable[[UploadFailure], None]] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class UploadSession:
    """Run-time record of one upload. Owned by the session manager only."""

    session_id: str
    request: UploadRequest
    callbacks: UploadCallbacks = field(default_factory=UploadCallbacks)
    state: UploadState = UploadState.CREATED
    grant: Optional[WriteGrant] = None
    bytes_transferred: int = 0
    attempts: int = 0
    parts: list[PartResult] = field(default_factory=list)
    cancel_requested: bool = False
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    started_monotonic: float = 0.0
    outcome: Optional[UploadOutcome] = None
    task: Optional[asyncio.Task] = field(default=None, repr=False)
    done: Optional[asyncio.Future] = field(default=None, repr=False)

    @property
    def total_bytes(self) -> int:
        return self.request.size_bytes

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def transition(self, state: UploadState) -> None:
        self.state = state
        self.updated_at = _utcnow()

    def snapshot(self) -> SessionSnapshot:
        total = self.total_bytes
        if self.state == UploadState.COMPLETED or total <= 0:
            percentage = 100.0 if self.state == UploadState.COMPLETED else 0.0
        else:
            percentage = round(min(self.bytes_transferred, total) * 100 / total, 2)
        return SessionSnapshot(
            session_id=self.session_id,
            case_id=self.request.case_id,
            kind=self.request.kind,
            file_name=self.request.file_name,
            state=self.state,
            bytes_transferred=self.bytes_transferred,
            total_bytes=total,
            percentage=percentage,
            attempts=self.attempts,
            object_key=self.grant.object_key if self.grant else None,
            parts=sorted(self.parts, key=lambda p: p.part_number),
            cancel_requested=self.cancel_requested,
            created_at=self.created_at,
            updated_at=self.updated_at,
            outcome=self.outcome,
        )
