"""Progress estimation from byte-count samples."""

import threading
import time
from typing import Callable

from capture_upload.models.upload import ProgressEvent


class ProgressEstimator:
    """Turns ``bytes_so_far`` samples into percentage, speed and ETA.

    Samples may arrive from several concurrently running parts. The lock
    serialises them and the byte counter is clamped to its high-water mark,
    so observers never see the percentage go down.
    """

    def __init__(
        self,
        total_bytes: int,
        *,
        session_id: str = "",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.total_bytes = total_bytes
        self.session_id = session_id
        self._clock = clock
        self._lock = threading.Lock()
        self._last_time: float | None = None
        self._last_bytes = 0

    @property
    def bytes_loaded(self) -> int:
        return self._last_bytes

    @property
    def percentage(self) -> float:
        return self._percentage(self._last_bytes)

    def record(self, bytes_so_far: int) -> ProgressEvent:
        """Add a sample and return the resulting progress event."""
        with self._lock:
            now = self._clock()
            loaded = min(max(bytes_so_far, self._last_bytes), self.total_bytes)

            speed = None
            if self._last_time is not None:
                elapsed = now - self._last_time
                if elapsed > 0:
                    speed = (loaded - self._last_bytes) / elapsed

            eta = None
            if speed:
                eta = (self.total_bytes - loaded) / speed

            self._last_time = now
            self._last_bytes = loaded

            return ProgressEvent(
                session_id=self.session_id,
                percentage=self._percentage(loaded),
                bytes_loaded=loaded,
                bytes_total=self.total_bytes,
                speed=speed,
                eta_seconds=eta,
            )

    def complete(self) -> ProgressEvent:
        """Record the final sample: every byte transferred."""
        return self.record(self.total_bytes)

    def _percentage(self, loaded: int) -> float:
        if self.total_bytes <= 0:
            return 100.0
        if loaded >= self.total_bytes:
            return 100.0
        return round(loaded * 100 / self.total_bytes, 2)
