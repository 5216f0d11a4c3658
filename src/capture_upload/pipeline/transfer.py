"""Transfer engine: moves artifact bytes to storage.

Artifacts at or below the multipart threshold are written in a single
request. Larger artifacts are split into fixed-size parts that are uploaded
concurrently (bounded by a semaphore), each part retried on its own, and
assembled by the broker once every part is acknowledged.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from capture_upload.exceptions import (
    MultipartAbortedError,
    TransferError,
    UploadCancelledError,
    UploadError,
)
from capture_upload.models.upload import PartResult, UploadRequest, WriteGrant
from capture_upload.pipeline.grant_client import GrantClient
from capture_upload.pipeline.retry import RetryController, default_retryable
from capture_upload.storage.base import ObjectWriter, WriteTarget

logger = logging.getLogger(__name__)


def _never() -> bool:
    return False


def _ignore(*args) -> None:
    return None


@dataclass
class TransferObserver:
    """Callbacks through which the engine reports to the session owner."""

    is_cancelled: Callable[[], bool] = _never
    on_bytes: Callable[[int], None] = _ignore
    on_attempt: Callable[[int], None] = _ignore
    on_retry: Callable[[BaseException, int, float], None] = _ignore
    on_grant: Callable[[WriteGrant], None] = _ignore
    on_part: Callable[[PartResult], None] = _ignore


@dataclass(frozen=True)
class PartPlan:
    """Byte range ``[start, end)`` assigned to one part."""

    part_number: int
    start: int
    end: int

    @property
    def size_bytes(self) -> int:
        return self.end - self.start


@dataclass(frozen=True)
class TransferResult:
    grant: WriteGrant
    object_key: str
    object_url: str
    attempts: int
    parts: list[PartResult] = field(default_factory=list)
    etag: Optional[str] = None


def plan_parts(total_bytes: int, part_size: int) -> list[PartPlan]:
    """Split ``[0, total_bytes)`` into contiguous parts numbered from 1.

    Every part is ``part_size`` bytes except the last, which may be shorter.
    """
    if part_size <= 0:
        raise ValueError("part_size must be positive")
    return [
        PartPlan(part_number=index + 1, start=start, end=min(start + part_size, total_bytes))
        for index, start in enumerate(range(0, total_bytes, part_size))
    ]


class TransferEngine:
    """Executes single-shot or multipart writes against a write grant."""

    def __init__(
        self,
        writer: ObjectWriter,
        grant_client: GrantClient,
        retry: RetryController,
        *,
        multipart_threshold: int = 5 * 1024 * 1024,
        part_size: int = 5 * 1024 * 1024,
        max_concurrency: int = 4,
    ):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.writer = writer
        self.grant_client = grant_client
        self.retry = retry
        self.multipart_threshold = multipart_threshold
        self.part_size = part_size
        self.max_concurrency = max_concurrency

    def uses_multipart(self, total_bytes: int) -> bool:
        return total_bytes > self.multipart_threshold

    async def transfer(
        self,
        request: UploadRequest,
        grant: WriteGrant,
        observer: Optional[TransferObserver] = None,
    ) -> TransferResult:
        """Write the request's payload using the strategy its size calls for."""
        observer = observer or TransferObserver()
        if self.uses_multipart(request.size_bytes):
            if grant.multipart_upload_id is not None:
                return await self._multipart(request, grant, observer)
            logger.warning(
                "Multipart upload requested but grant has no multipart session, falling back to single-shot",
                extra={"object_key": grant.object_key, "size_bytes": request.size_bytes},
            )
        return await self._single_shot(request, grant, observer)

    async def _single_shot(
        self, request: UploadRequest, grant: WriteGrant, observer: TransferObserver
    ) -> TransferResult:
        current = grant

        async def attempt(number: int):
            nonlocal current
            if number > 1 and current.is_expired():
                logger.info("Write grant expired, requesting a new one", extra={"grant_id": current.grant_id})
                current = await self.grant_client.request_grant(request)
                observer.on_grant(current)
            observer.on_attempt(number)
            target = WriteTarget(
                url=current.upload_url,
                method=current.method,
                headers=current.headers,
                fields=current.fields,
            )
            return await self.writer.write(
                target, request.payload, request.content_type, on_bytes=observer.on_bytes
            )

        receipt, attempts = await self.retry.run(
            attempt,
            retryable=default_retryable,
            on_retry=observer.on_retry,
            is_cancelled=observer.is_cancelled,
            description="Single-shot upload",
        )
        return TransferResult(
            grant=current,
            object_key=current.object_key,
            object_url=current.object_url,
            attempts=attempts,
            etag=receipt.etag,
        )

    async def _multipart(
        self, request: UploadRequest, grant: WriteGrant, observer: TransferObserver
    ) -> TransferResult:
        plans = plan_parts(request.size_bytes, self.part_size)
        part_bytes = [0] * len(plans)
        results: dict[int, PartResult] = {}
        semaphore = asyncio.Semaphore(self.max_concurrency)
        payload = memoryview(request.payload)

        logger.info(
            "Starting multipart upload",
            extra={
                "multipart_upload_id": grant.multipart_upload_id,
                "parts": len(plans),
                "part_size": self.part_size,
                "max_concurrency": self.max_concurrency,
            },
        )
        observer.on_attempt(1)

        async def upload_part(index: int, plan: PartPlan) -> None:
            async with semaphore:
                if observer.is_cancelled():
                    raise UploadCancelledError()
                chunk = bytes(payload[plan.start : plan.end])

                def on_bytes(sent: int) -> None:
                    # Per-part high-water mark keeps the aggregate from regressing on retries
                    part_bytes[index] = max(part_bytes[index], sent)
                    observer.on_bytes(sum(part_bytes))

                async def attempt(number: int):
                    endpoint = await self.grant_client.request_part_endpoint(grant, plan.part_number)
                    target = WriteTarget(url=endpoint.url, method=endpoint.method, headers=endpoint.headers)
                    receipt = await self.writer.write(
                        target, chunk, request.content_type, on_bytes=on_bytes
                    )
                    if not receipt.etag:
                        raise TransferError(f"Part {plan.part_number} response is missing an ETag")
                    return receipt

                receipt, attempts = await self.retry.run(
                    attempt,
                    retryable=default_retryable,
                    is_cancelled=observer.is_cancelled,
                    description=f"Part {plan.part_number} upload",
                )

            part_bytes[index] = plan.size_bytes
            observer.on_bytes(sum(part_bytes))
            result = PartResult(
                part_number=plan.part_number,
                start=plan.start,
                end=plan.end,
                etag=receipt.etag,
                attempts=attempts,
            )
            results[plan.part_number] = result
            observer.on_part(result)

        tasks = [asyncio.ensure_future(upload_part(i, plan)) for i, plan in enumerate(plans)]
        try:
            await asyncio.gather(*tasks)
            if observer.is_cancelled():
                raise UploadCancelledError()
            ordered = [results[plan.part_number] for plan in plans]
            final, _ = await self.retry.run(
                lambda number: self.grant_client.complete_multipart(grant, ordered),
                retryable=default_retryable,
                is_cancelled=observer.is_cancelled,
                description="Multipart completion",
            )
        except BaseException as exc:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            await self.grant_client.abort_multipart(grant)
            if isinstance(exc, UploadError) and not isinstance(exc, UploadCancelledError):
                aborted = MultipartAbortedError(f"Multipart upload aborted: {exc.message}")
                aborted.attempts = exc.attempts
                raise aborted from exc
            raise

        logger.info(
            "Multipart upload completed",
            extra={
                "multipart_upload_id": grant.multipart_upload_id,
                "object_key": final.object_key,
                "parts": len(ordered),
            },
        )
        return TransferResult(
            grant=grant,
            object_key=final.object_key,
            object_url=final.object_url,
            attempts=max(part.attempts for part in ordered),
            parts=ordered,
        )
