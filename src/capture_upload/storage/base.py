"""Abstract object writer interface."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Optional

# Receives the cumulative number of bytes sent in the current write
BytesCallback = Callable[[int], None]


@dataclass(frozen=True)
class WriteTarget:
    """Endpoint a payload is written to."""

    url: str
    method: str = "PUT"
    headers: dict[str, str] = field(default_factory=dict)
    fields: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class WriteReceipt:
    """Storage acknowledgement of a write."""

    status_code: int
    etag: Optional[str] = None


class ObjectWriter(ABC):
    """Abstract base class for object writers."""

    @abstractmethod
    async def write(
        self,
        target: WriteTarget,
        payload: bytes,
        content_type: str,
        on_bytes: Optional[BytesCallback] = None,
    ) -> WriteReceipt:
        """Write a payload to the target endpoint.

        Args:
            target: Endpoint, method and required headers/fields
            payload: Bytes to write
            content_type: MIME type of the payload
            on_bytes: Called with the cumulative bytes sent so far

        Returns:
            Receipt with the storage integrity tag, if any

        Raises:
            TransferError: On network failure, timeout or non-2xx response
        """
        pass

    @abstractmethod
    def get_backend_name(self) -> str:
        """Return backend identifier."""
        pass

    async def aclose(self) -> None:
        """Release network resources."""
        return None
