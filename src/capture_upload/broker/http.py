"""HTTP client for the grant broker API."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Sequence, Type

import httpx
from pydantic import BaseModel, ConfigDict, Field

from capture_upload.broker.base import GrantBroker
from capture_upload.exceptions import (
    ConfirmationError,
    GrantError,
    UploadError,
    is_retryable_status,
)
from capture_upload.models.upload import (
    FinalObjectRef,
    PartResult,
    PartWriteEndpoint,
    UploadRequest,
    WriteGrant,
)

logger = logging.getLogger(__name__)


class GrantResponse(BaseModel):
    """Presigned URL response as returned by the broker."""

    model_config = ConfigDict(populate_by_name=True)

    upload_url: str = Field(..., alias="uploadUrl")
    file_url: str = Field(..., alias="fileUrl")
    key: str
    file_name: Optional[str] = Field(None, alias="fileName")
    expires_in: int = Field(3600, alias="expiresIn", description="Seconds until the grant lapses")
    grant_id: Optional[str] = Field(None, alias="grantId")
    upload_id: Optional[str] = Field(None, alias="uploadId")
    method: Optional[str] = None
    headers: Dict[str, str] = Field(default_factory=dict)
    fields: Dict[str, str] = Field(default_factory=dict)

    def to_grant(self, issued_at: datetime) -> WriteGrant:
        """Convert to a WriteGrant; form fields imply a POST upload."""
        method = (self.method or ("POST" if self.fields else "PUT")).upper()
        return WriteGrant(
            grant_id=self.grant_id or self.key,
            upload_url=self.upload_url,
            object_url=self.file_url,
            object_key=self.key,
            method=method,
            headers=self.headers,
            fields=self.fields,
            expires_at=issued_at + timedelta(seconds=self.expires_in),
            multipart_upload_id=self.upload_id,
        )


class PartGrantResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    url: str
    headers: Dict[str, str] = Field(default_factory=dict)


class CompleteResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    key: str
    file_url: str = Field(..., alias="fileUrl")


class HttpGrantBroker(GrantBroker):
    """Grant broker reached over its REST API.

    Transport failures, timeouts and 408/429/5xx responses are reported as
    retryable; any other non-2xx response is fatal.
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_token: str = "",
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._api_token = api_token
        self._timeout = timeout
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        """Lazy-load and cache the HTTP client."""
        if self._client is None:
            headers = {"Content-Type": "application/json"}
            if self._api_token:
                headers["Authorization"] = f"Bearer {self._api_token}"
            self._client = httpx.AsyncClient(
                base_url=self.base_url, headers=headers, timeout=self._timeout
            )
        return self._client

    async def _call(
        self,
        method: str,
        path: str,
        *,
        error_cls: Type[UploadError],
        action: str,
        json: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        """Send a request and translate failures into ``error_cls``."""
        client = self._get_client()
        try:
            response = await client.request(method, path, json=json)
        except httpx.TimeoutException as e:
            logger.warning(
                f"Broker request timed out: {action}",
                extra={"path": path, "error": str(e)},
            )
            raise error_cls(f"Failed to {action}: timeout", retryable=True) from e
        except httpx.TransportError as e:
            logger.warning(
                f"Broker request failed: {action}",
                extra={"path": path, "error": str(e)},
            )
            raise error_cls(f"Failed to {action}: {e}", retryable=True) from e

        if not response.is_success:
            detail = _error_message(response)
            logger.warning(
                f"Broker rejected request: {action}",
                extra={"path": path, "status_code": response.status_code, "error": detail},
            )
            raise error_cls(
                f"Failed to {action}: {detail}",
                retryable=is_retryable_status(response.status_code),
                status_code=response.status_code,
            )
        return response

    async def request_grant(self, request: UploadRequest, *, multipart: bool = False) -> WriteGrant:
        payload = {
            "fileName": request.file_name,
            "fileType": request.content_type,
            "fileSize": request.size_bytes,
            "caseId": request.case_id,
            "captureType": request.kind.value,
            "multipart": multipart,
            "tags": request.tags,
            "metadata": request.metadata,
            "description": request.description,
            "sourceUrl": request.origin_url,
        }
        issued_at = datetime.now(timezone.utc)
        response = await self._call(
            "POST",
            "/upload/presigned-url",
            json=payload,
            error_cls=GrantError,
            action="get upload URL",
        )
        try:
            return GrantResponse.model_validate(response.json()).to_grant(issued_at)
        except ValueError as e:
            raise GrantError(f"Malformed grant response: {e}") from e

    async def request_part_grant(self, multipart_upload_id: str, part_number: int) -> PartWriteEndpoint:
        response = await self._call(
            "POST",
            f"/upload/multipart/{multipart_upload_id}/parts/{part_number}",
            error_cls=GrantError,
            action=f"get URL for part {part_number}",
        )
        try:
            data = PartGrantResponse.model_validate(response.json())
        except ValueError as e:
            raise GrantError(f"Malformed part grant response: {e}") from e
        return PartWriteEndpoint(part_number=part_number, url=data.url, headers=data.headers)

    async def complete_multipart(
        self, multipart_upload_id: str, parts: Sequence[PartResult]
    ) -> FinalObjectRef:
        payload = {
            "parts": [
                {"partNumber": part.part_number, "etag": part.etag}
                for part in sorted(parts, key=lambda p: p.part_number)
            ]
        }
        response = await self._call(
            "POST",
            f"/upload/multipart/{multipart_upload_id}/complete",
            json=payload,
            error_cls=GrantError,
            action="complete multipart upload",
        )
        try:
            data = CompleteResponse.model_validate(response.json())
        except ValueError as e:
            raise GrantError(f"Malformed completion response: {e}") from e
        return FinalObjectRef(object_key=data.key, object_url=data.file_url)

    async def abort_multipart(self, multipart_upload_id: str) -> None:
        await self._call(
            "DELETE",
            f"/upload/multipart/{multipart_upload_id}",
            error_cls=GrantError,
            action="abort multipart upload",
        )

    async def confirm_write(
        self, grant_id: str, size_bytes: int, checksum: Optional[str] = None
    ) -> None:
        await self._call(
            "POST",
            "/upload/confirm",
            json={"grantId": grant_id, "fileSize": size_bytes, "checksum": checksum},
            error_cls=ConfirmationError,
            action="confirm upload",
        )

    async def delete_object(self, object_key: str, case_id: str) -> None:
        await self._call(
            "DELETE",
            "/upload/delete",
            json={"fileKey": object_key, "caseId": case_id},
            error_cls=GrantError,
            action="delete file",
        )

    async def check_connection(self) -> bool:
        """Check the broker health endpoint."""
        try:
            response = await self._get_client().get("/health")
        except httpx.HTTPError as e:
            logger.warning("Broker health check failed", extra={"error": str(e)})
            return False
        return response.is_success

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


def _error_message(response: httpx.Response) -> str:
    """Prefer the broker's ``message`` field over the bare status code."""
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return f"HTTP error! status: {response.status_code}"
