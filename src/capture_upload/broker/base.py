"""Abstract grant broker interface."""

from abc import ABC, abstractmethod
from typing import Optional, Sequence

from capture_upload.models.upload import (
    FinalObjectRef,
    PartResult,
    PartWriteEndpoint,
    UploadRequest,
    WriteGrant,
)


class GrantBroker(ABC):
    """The external service that issues and finalizes write grants.

    Implementations raise :class:`~capture_upload.exceptions.GrantError`
    (with ``retryable`` set for transient failures) or
    :class:`~capture_upload.exceptions.ConfirmationError` from
    :meth:`confirm_write`.
    """

    @abstractmethod
    async def request_grant(self, request: UploadRequest, *, multipart: bool = False) -> WriteGrant:
        """Ask permission to write the artifact.

        Args:
            request: The artifact to be written
            multipart: Whether the client will send the artifact in parts

        Returns:
            Write grant; carries ``multipart_upload_id`` when multipart was granted
        """
        pass

    @abstractmethod
    async def request_part_grant(self, multipart_upload_id: str, part_number: int) -> PartWriteEndpoint:
        """Issue the write endpoint for one part."""
        pass

    @abstractmethod
    async def complete_multipart(
        self, multipart_upload_id: str, parts: Sequence[PartResult]
    ) -> FinalObjectRef:
        """Assemble the uploaded parts into the final object."""
        pass

    @abstractmethod
    async def abort_multipart(self, multipart_upload_id: str) -> None:
        """Discard a multipart upload and its stored parts."""
        pass

    @abstractmethod
    async def confirm_write(
        self, grant_id: str, size_bytes: int, checksum: Optional[str] = None
    ) -> None:
        """Record that the write behind ``grant_id`` finished."""
        pass

    @abstractmethod
    async def delete_object(self, object_key: str, case_id: str) -> None:
        """Delete a stored artifact."""
        pass

    async def check_connection(self) -> bool:
        """Return True when the broker is reachable."""
        return True

    async def aclose(self) -> None:
        """Release network resources."""
        return None
