"""HTTP object writer for presigned storage URLs."""

import logging
from typing import AsyncIterator, Optional

import httpx

from capture_upload.exceptions import TransferError, is_retryable_status
from capture_upload.storage.base import BytesCallback, ObjectWriter, WriteReceipt, WriteTarget

logger = logging.getLogger(__name__)

STREAM_CHUNK_BYTES = 64 * 1024


class HttpObjectWriter(ObjectWriter):
    """Writes payloads to presigned URLs with httpx.

    PUT targets receive the raw payload as a streamed body so progress can be
    sampled as bytes leave the client. POST targets (presigned form uploads)
    receive a multipart form built from the grant's fields, streamed the same
    way; its progress is scaled from form bytes to payload bytes.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        *,
        timeout: float = 600.0,
        chunk_size: int = STREAM_CHUNK_BYTES,
    ):
        self._client = client
        self._owns_client = client is None
        self._timeout = timeout
        self._chunk_size = chunk_size

    def _get_client(self) -> httpx.AsyncClient:
        """Lazy-load and cache the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def write(
        self,
        target: WriteTarget,
        payload: bytes,
        content_type: str,
        on_bytes: Optional[BytesCallback] = None,
    ) -> WriteReceipt:
        """Send the payload and return the storage receipt."""
        client = self._get_client()
        try:
            if target.method.upper() == "POST":
                form = client.build_request(
                    "POST",
                    target.url,
                    data=dict(target.fields),
                    files={"file": ("file", payload, content_type)},
                )
                body = form.read()
                headers = {
                    **target.headers,
                    "Content-Type": form.headers["Content-Type"],
                    "Content-Length": str(len(body)),
                }
                response = await client.post(
                    target.url,
                    content=self._stream(body, _scaled(on_bytes, len(payload), len(body))),
                    headers=headers,
                )
            else:
                headers = {
                    "Content-Type": content_type,
                    **target.headers,
                    "Content-Length": str(len(payload)),
                }
                response = await client.request(
                    target.method.upper(),
                    target.url,
                    content=self._stream(payload, on_bytes),
                    headers=headers,
                )
        except httpx.TimeoutException as e:
            logger.warning(
                "Storage write timed out",
                extra={"url": _strip_query(target.url), "error": str(e)},
            )
            raise TransferError("Upload timeout", retryable=True) from e
        except httpx.TransportError as e:
            logger.warning(
                "Network error during storage write",
                extra={"url": _strip_query(target.url), "error": str(e)},
            )
            raise TransferError(f"Network error during upload: {e}", retryable=True) from e

        if not response.is_success:
            raise TransferError(
                f"Upload failed with status: {response.status_code}",
                retryable=is_retryable_status(response.status_code),
                status_code=response.status_code,
            )

        return WriteReceipt(
            status_code=response.status_code,
            etag=response.headers.get("ETag"),
        )

    async def _stream(
        self, payload: bytes, on_bytes: Optional[BytesCallback]
    ) -> AsyncIterator[bytes]:
        view = memoryview(payload)
        sent = 0
        for offset in range(0, len(payload), self._chunk_size):
            chunk = bytes(view[offset : offset + self._chunk_size])
            yield chunk
            sent += len(chunk)
            if on_bytes is not None:
                on_bytes(sent)

    def get_backend_name(self) -> str:
        return "http"

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


def _strip_query(url: str) -> str:
    """Drop the signature part of a presigned URL before logging it."""
    return url.split("?", 1)[0]


def _scaled(on_bytes: Optional[BytesCallback], payload_size: int, body_size: int) -> Optional[BytesCallback]:
    """Report form-body progress as a share of the payload size."""
    if on_bytes is None or body_size == 0:
        return on_bytes
    return lambda sent: on_bytes(sent * payload_size // body_size)
