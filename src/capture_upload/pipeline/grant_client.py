"""Grant client: the pipeline's view of the grant broker."""

import logging
from typing import Optional, Sequence

from capture_upload.broker.base import GrantBroker
from capture_upload.exceptions import ConfirmationError, GrantError, UploadError
from capture_upload.models.upload import (
    FinalObjectRef,
    PartResult,
    PartWriteEndpoint,
    UploadRequest,
    WriteGrant,
)

logger = logging.getLogger(__name__)


class GrantClient:
    """Normalises broker failures into the pipeline's error taxonomy.

    Broker implementations are expected to raise GrantError or
    ConfirmationError already; anything else escaping a broker call is
    wrapped here so the session manager only ever sees UploadError.
    """

    def __init__(self, broker: GrantBroker):
        self.broker = broker

    async def request_grant(self, request: UploadRequest, *, multipart: bool = False) -> WriteGrant:
        try:
            grant = await self.broker.request_grant(request, multipart=multipart)
        except UploadError:
            raise
        except Exception as e:
            raise GrantError(f"Failed to get upload URL: {e}") from e

        logger.info(
            "Write grant issued",
            extra={
                "grant_id": grant.grant_id,
                "object_key": grant.object_key,
                "multipart": grant.multipart_upload_id is not None,
                "expires_at": grant.expires_at.isoformat(),
            },
        )
        return grant

    async def request_part_endpoint(self, grant: WriteGrant, part_number: int) -> PartWriteEndpoint:
        upload_id = _require_upload_id(grant)
        try:
            return await self.broker.request_part_grant(upload_id, part_number)
        except UploadError:
            raise
        except Exception as e:
            raise GrantError(f"Failed to get URL for part {part_number}: {e}") from e

    async def complete_multipart(
        self, grant: WriteGrant, parts: Sequence[PartResult]
    ) -> FinalObjectRef:
        upload_id = _require_upload_id(grant)
        try:
            return await self.broker.complete_multipart(upload_id, parts)
        except UploadError:
            raise
        except Exception as e:
            raise GrantError(f"Failed to complete multipart upload: {e}") from e

    async def abort_multipart(self, grant: WriteGrant) -> None:
        """Ask the broker to discard stored parts. Failures are logged only."""
        if grant.multipart_upload_id is None:
            return
        try:
            await self.broker.abort_multipart(grant.multipart_upload_id)
        except Exception as e:
            logger.error(
                "Failed to abort multipart upload",
                extra={
                    "multipart_upload_id": grant.multipart_upload_id,
                    "object_key": grant.object_key,
                    "error": str(e),
                },
            )
        else:
            logger.info(
                "Multipart upload aborted",
                extra={"multipart_upload_id": grant.multipart_upload_id},
            )

    async def confirm_write(
        self, grant: WriteGrant, size_bytes: int, checksum: Optional[str] = None
    ) -> None:
        """Tell the broker the write finished.

        Raises:
            ConfirmationError: The bytes are stored but the broker did not
                record them. Never swallowed.
        """
        try:
            await self.broker.confirm_write(grant.grant_id, size_bytes, checksum)
        except ConfirmationError:
            raise
        except Exception as e:
            raise ConfirmationError(f"Failed to confirm upload: {e}") from e


    async def delete_object(self, object_key: str, case_id: str) -> None:
        try:
            await self.broker.delete_object(object_key, case_id)
        except UploadError:
            raise
        except Exception as e:
            raise GrantError(f"Failed to delete file: {e}") from e
        logger.info("Stored artifact deleted", extra={"object_key": object_key, "case_id": case_id})


def _require_upload_id(grant: WriteGrant) -> str:
    if grant.multipart_upload_id is None:
        raise GrantError("Grant does not carry a multipart upload id")
    return grant.multipart_upload_id
