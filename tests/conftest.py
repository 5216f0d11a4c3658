"""Pytest configuration and shared fixtures."""

import random

import pytest

from capture_upload.broker.memory import InMemoryGrantBroker
from capture_upload.models.upload import ArtifactKind, UploadRequest
from capture_upload.pipeline.manager import UploadSessionManager
from capture_upload.pipeline.retry import RetryController
from capture_upload.pipeline.validator import UploadPolicy
from capture_upload.storage.memory import InMemoryObjectWriter

MB = 1024 * 1024
PATTERN = bytes(range(251))


class RecordingSleep:
    """Async sleep replacement that records requested delays and returns at once."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def make_request():
    """Factory for upload requests with a payload of the given size."""

    def _make(
        size_bytes: int = 200 * 1024,
        *,
        kind: ArtifactKind = ArtifactKind.SCREENSHOT,
        content_type: str = "image/png",
        case_id: str = "case-42",
        file_name: str = "capture.png",
        **kwargs,
    ) -> UploadRequest:
        return UploadRequest(
            payload=(PATTERN * (size_bytes // len(PATTERN) + 1))[:size_bytes],
            size_bytes=size_bytes,
            content_type=content_type,
            case_id=case_id,
            kind=kind,
            file_name=file_name,
            **kwargs,
        )

    return _make


@pytest.fixture
def policy():
    return UploadPolicy(
        max_bytes={ArtifactKind.SCREENSHOT: 100 * MB, ArtifactKind.VIDEO: 100 * MB},
        allowed_mime_types={
            ArtifactKind.SCREENSHOT: frozenset({"image/png", "image/jpeg"}),
            ArtifactKind.VIDEO: frozenset({"video/webm", "video/mp4"}),
        },
        min_bytes=1024,
    )


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def retry(sleep):
    return RetryController(
        max_attempts=3,
        base_delay=1.0,
        max_delay=30.0,
        max_jitter=0.0,
        rng=random.Random(7),
        sleep=sleep,
    )


@pytest.fixture
def broker():
    return InMemoryGrantBroker()


@pytest.fixture
def writer():
    return InMemoryObjectWriter()


@pytest.fixture
def manager(broker, writer, policy, retry):
    return UploadSessionManager(
        broker,
        writer,
        policy=policy,
        retry=retry,
        multipart_threshold=5 * MB,
        part_size=5 * MB,
        max_concurrency=4,
        retention_seconds=60.0,
    )
