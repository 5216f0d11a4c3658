"""Pre-flight validation of upload requests."""

import hashlib
from dataclasses import dataclass, field

from capture_upload.core.config import Settings
from capture_upload.models.upload import ArtifactKind, UploadRequest

MB = 1024 * 1024


@dataclass(frozen=True)
class UploadPolicy:
    """Size and type rules applied per artifact kind."""

    max_bytes: dict[ArtifactKind, int]
    allowed_mime_types: dict[ArtifactKind, frozenset[str]] = field(default_factory=dict)
    min_bytes: int = 1024

    @classmethod
    def from_settings(cls, settings: Settings) -> "UploadPolicy":
        return cls(
            max_bytes={
                ArtifactKind.SCREENSHOT: settings.max_screenshot_bytes,
                ArtifactKind.VIDEO: settings.max_video_bytes,
            },
            allowed_mime_types={
                ArtifactKind.SCREENSHOT: frozenset(settings.allowed_screenshot_mime_types),
                ArtifactKind.VIDEO: frozenset(settings.allowed_video_mime_types),
            },
            min_bytes=settings.MIN_UPLOAD_BYTES,
        )


def validate_request(request: UploadRequest, policy: UploadPolicy) -> list[str]:
    """Check a request against the policy.

    Args:
        request: Upload request to check
        policy: Size and type rules

    Returns:
        Human-readable violations; empty when the artifact is eligible
    """
    violations: list[str] = []

    if not request.case_id or not request.case_id.strip():
        violations.append("case_id is required")

    max_bytes = policy.max_bytes.get(request.kind)
    if max_bytes is not None and request.size_bytes > max_bytes:
        violations.append(
            f"File size exceeds {max_bytes / MB:g}MB limit for {request.kind.value}"
        )

    if request.size_bytes < policy.min_bytes:
        violations.append(f"File is too small (minimum {policy.min_bytes} bytes)")

    allowed = policy.allowed_mime_types.get(request.kind)
    # An empty allow-list means every type is accepted
    if allowed and request.content_type not in allowed:
        violations.append(
            f"File type {request.content_type} is not allowed for {request.kind.value}"
        )

    if request.size_bytes != len(request.payload):
        violations.append(
            f"Declared size {request.size_bytes} does not match payload length {len(request.payload)}"
        )

    return violations


def compute_checksum(payload: bytes) -> str:
    """Return the SHA-256 hex digest of the payload."""
    return hashlib.sha256(payload).hexdigest()
