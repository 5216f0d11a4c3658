"""In-memory grant broker for tests and dry runs."""

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional, Sequence

from capture_upload.broker.base import GrantBroker
from capture_upload.exceptions import ConfirmationError, GrantError
from capture_upload.models.upload import (
    FinalObjectRef,
    PartResult,
    PartWriteEndpoint,
    UploadRequest,
    WriteGrant,
)


@dataclass
class MultipartRecord:
    """Broker-side state of one multipart upload."""

    upload_id: str
    object_key: str
    object_url: str
    parts_issued: list[int] = field(default_factory=list)
    completed_parts: list[PartResult] = field(default_factory=list)
    aborted: bool = False
    completed: bool = False


class InMemoryGrantBroker(GrantBroker):
    """Grant broker that issues grants against an in-memory bucket.

    Every call is appended to :attr:`calls` so tests can assert which broker
    operations ran. Failures are scripted by putting exceptions into the
    ``*_errors`` lists; each call pops the first one.
    """

    def __init__(
        self,
        *,
        base_url: str = "https://captures.example.test",
        grant_ttl: timedelta = timedelta(hours=1),
    ):
        self.base_url = base_url.rstrip("/")
        self.grant_ttl = grant_ttl
        self.calls: list[str] = []
        self.grants: dict[str, WriteGrant] = {}
        self.multipart: dict[str, MultipartRecord] = {}
        self.confirmed: dict[str, dict] = {}
        self.grant_errors: list[Exception] = []
        self.part_grant_errors: list[Exception] = []
        self.complete_errors: list[Exception] = []
        self.confirm_errors: list[Exception] = []
        self.delete_errors: list[Exception] = []
        self.deleted: list[tuple[str, str]] = []

    def generate_object_key(self, request: UploadRequest) -> str:
        """Build ``cases/{case_id}/{kind}/{date}/{unique}_{file}``."""
        date = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        unique = uuid.uuid4().hex[:8]
        return f"cases/{request.case_id}/{request.kind.value}/{date}/{unique}_{_sanitize_filename(request.file_name)}"

    async def request_grant(self, request: UploadRequest, *, multipart: bool = False) -> WriteGrant:
        self.calls.append("request_grant")
        if self.grant_errors:
            raise self.grant_errors.pop(0)

        grant_id = uuid.uuid4().hex
        object_key = self.generate_object_key(request)
        object_url = f"{self.base_url}/{object_key}"
        upload_id = None
        if multipart:
            upload_id = f"mpu-{grant_id[:12]}"
            self.multipart[upload_id] = MultipartRecord(
                upload_id=upload_id, object_key=object_key, object_url=object_url
            )

        grant = WriteGrant(
            grant_id=grant_id,
            upload_url=f"{object_url}?grant={grant_id}",
            object_url=object_url,
            object_key=object_key,
            method="PUT",
            headers={"x-amz-acl": "bucket-owner-full-control"},
            expires_at=datetime.now(timezone.utc) + self.grant_ttl,
            multipart_upload_id=upload_id,
        )
        self.grants[grant_id] = grant
        return grant

    async def request_part_grant(self, multipart_upload_id: str, part_number: int) -> PartWriteEndpoint:
        self.calls.append("request_part_grant")
        if self.part_grant_errors:
            raise self.part_grant_errors.pop(0)

        record = self._get_multipart(multipart_upload_id)
        record.parts_issued.append(part_number)
        return PartWriteEndpoint(
            part_number=part_number,
            url=f"{record.object_url}?uploadId={multipart_upload_id}&partNumber={part_number}",
        )

    async def complete_multipart(
        self, multipart_upload_id: str, parts: Sequence[PartResult]
    ) -> FinalObjectRef:
        self.calls.append("complete_multipart")
        if self.complete_errors:
            raise self.complete_errors.pop(0)

        record = self._get_multipart(multipart_upload_id)
        record.completed_parts = list(parts)
        record.completed = True
        return FinalObjectRef(object_key=record.object_key, object_url=record.object_url)

    async def abort_multipart(self, multipart_upload_id: str) -> None:
        self.calls.append("abort_multipart")
        record = self.multipart.get(multipart_upload_id)
        if record is not None:
            record.aborted = True

    async def confirm_write(
        self, grant_id: str, size_bytes: int, checksum: Optional[str] = None
    ) -> None:
        self.calls.append("confirm_write")
        if self.confirm_errors:
            raise self.confirm_errors.pop(0)
        if grant_id not in self.grants:
            raise ConfirmationError(f"Unknown grant: {grant_id}")
        self.confirmed[grant_id] = {"size_bytes": size_bytes, "checksum": checksum}

    async def delete_object(self, object_key: str, case_id: str) -> None:
        self.calls.append("delete_object")
        if self.delete_errors:
            raise self.delete_errors.pop(0)
        self.deleted.append((object_key, case_id))

    def _get_multipart(self, upload_id: str) -> MultipartRecord:
        record = self.multipart.get(upload_id)
        if record is None or record.aborted:
            raise GrantError(f"Unknown multipart upload: {upload_id}")
        return record


def _sanitize_filename(filename: str) -> str:
    """Replace anything outside ``[a-zA-Z0-9.-]`` and collapse underscores."""
    safe = re.sub(r"[^a-zA-Z0-9.-]", "_", filename)
    safe = re.sub(r"_{2,}", "_", safe)
    return safe.lower()[:255] or "file"
