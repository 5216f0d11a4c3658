"""In-memory object writer for tests and dry runs."""

import asyncio
import hashlib
from collections import defaultdict, deque
from typing import Callable, Optional

from capture_upload.storage.base import BytesCallback, ObjectWriter, WriteReceipt, WriteTarget


class InMemoryObjectWriter(ObjectWriter):
    """Object writer that keeps written payloads in a dict keyed by URL.

    Payloads are "sent" in ``chunk_size`` steps with an await point between
    steps, so progress callbacks and cancellation behave like a real network
    write. Failures can be scripted per URL with :meth:`fail_next`.
    """

    def __init__(self, *, chunk_size: int = 256 * 1024, chunk_delay: float = 0.0):
        self.chunk_size = chunk_size
        self.chunk_delay = chunk_delay
        self.objects: dict[str, bytes] = {}
        self.attempts: dict[str, int] = defaultdict(int)
        self._failures: list[tuple[Callable[[str], bool], deque]] = []

    def fail_next(self, url_matches: Callable[[str], bool] | str, *errors: Exception) -> None:
        """Raise the given errors, in order, on the next writes to matching URLs."""
        if isinstance(url_matches, str):
            needle = url_matches

            def url_matches(url: str) -> bool:
                return needle in url

        self._failures.append((url_matches, deque(errors)))

    def _pop_failure(self, url: str) -> Optional[Exception]:
        for matches, errors in self._failures:
            if errors and matches(url):
                return errors.popleft()
        return None

    async def write(
        self,
        target: WriteTarget,
        payload: bytes,
        content_type: str,
        on_bytes: Optional[BytesCallback] = None,
    ) -> WriteReceipt:
        """Store the payload under the target URL."""
        self.attempts[target.url] += 1
        failure = self._pop_failure(target.url)

        sent = 0
        for offset in range(0, len(payload), self.chunk_size):
            await asyncio.sleep(self.chunk_delay)
            sent = min(offset + self.chunk_size, len(payload))
            if failure is not None and sent * 2 >= len(payload):
                # Fail half way through, after some bytes were reported
                raise failure
            if on_bytes is not None:
                on_bytes(sent)

        if failure is not None:
            raise failure

        self.objects[target.url] = bytes(payload)
        etag = '"' + hashlib.md5(payload).hexdigest() + '"'
        return WriteReceipt(status_code=200, etag=etag)

    def get_backend_name(self) -> str:
        return "memory"
