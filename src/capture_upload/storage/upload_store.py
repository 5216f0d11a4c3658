"""Local history of completed uploads.

This is a display/audit cache only; the case registry remains the catalog of
record. Entries are optionally persisted to a JSON file.
"""

import json
import logging
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional

logger = logging.getLogger(__name__)

RECENT_UPLOADS_LIMIT = 10


@dataclass
class UploadRecord:
    """Upload record metadata."""

    artifact_id: str
    case_id: str
    kind: str
    file_name: str
    content_type: str
    object_key: str
    object_url: str
    size_bytes: int
    uploaded_at: datetime
    upload_seconds: float = 0.0
    checksum: Optional[str] = None
    tags: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["uploaded_at"] = self.uploaded_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "UploadRecord":
        data = dict(data)
        data["uploaded_at"] = datetime.fromisoformat(data["uploaded_at"])
        return cls(**data)


@dataclass
class UploadStats:
    """Aggregate figures over the cached history."""

    total_files: int
    total_size: int
    by_kind: Dict[str, int]
    by_case: Dict[str, int]
    success_rate: float
    average_upload_seconds: float
    recent_uploads: list[UploadRecord]


class UploadHistory:
    """Bounded, newest-first store of completed upload records."""

    def __init__(self, max_entries: int = 100, path: Optional[Path] = None):
        self.max_entries = max_entries
        self.path = Path(path) if path else None
        self._records: list[UploadRecord] = []
        self._succeeded = 0
        self._failed = 0
        self._lock = threading.Lock()
        if self.path is not None:
            self._load()

    def add(self, record: UploadRecord) -> None:
        """Store a completed upload, evicting the oldest beyond ``max_entries``."""
        with self._lock:
            self._records.insert(0, record)
            del self._records[self.max_entries :]
            self._succeeded += 1
        self._save()

    def record_failure(self) -> None:
        """Count a session that ended without a stored artifact."""
        with self._lock:
            self._failed += 1
        self._save()

    def get(self, artifact_id: str) -> Optional[UploadRecord]:
        """Retrieve a record by artifact id."""
        return next((r for r in self._records if r.artifact_id == artifact_id), None)

    def remove(self, object_key: str) -> bool:
        """Drop records for an object deleted from storage."""
        with self._lock:
            before = len(self._records)
            self._records = [r for r in self._records if r.object_key != object_key]
            removed = len(self._records) != before
        if removed:
            self._save()
        return removed

    def list_all(self, case_id: Optional[str] = None) -> list[UploadRecord]:
        """List records, newest first, optionally for one case."""
        records = list(self._records)
        if case_id is not None:
            records = [r for r in records if r.case_id == case_id]
        return records

    def stats(self, case_id: Optional[str] = None) -> UploadStats:
        records = self.list_all(case_id)

        by_kind: Dict[str, int] = {"screenshot": 0, "video": 0}
        by_case: Dict[str, int] = {}
        for record in records:
            by_kind[record.kind] = by_kind.get(record.kind, 0) + 1
            by_case[record.case_id] = by_case.get(record.case_id, 0) + 1

        finished = self._succeeded + self._failed
        success_rate = 100.0 if finished == 0 else round(self._succeeded * 100 / finished, 2)
        average = sum(r.upload_seconds for r in records) / len(records) if records else 0.0

        return UploadStats(
            total_files=len(records),
            total_size=sum(r.size_bytes for r in records),
            by_kind=by_kind,
            by_case=by_case,
            success_rate=success_rate,
            average_upload_seconds=round(average, 3),
            recent_uploads=sorted(records, key=lambda r: r.uploaded_at, reverse=True)[
                :RECENT_UPLOADS_LIMIT
            ],
        )

    def _save(self) -> None:
        if self.path is None:
            return
        data = {
            "uploadHistory": [r.to_dict() for r in self._records],
            "uploadCounts": {"succeeded": self._succeeded, "failed": self._failed},
            "lastUpdated": datetime.now(timezone.utc).isoformat(),
        }
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(data, ensure_ascii=False), encoding="utf-8")
        except OSError as e:
            logger.error("Failed to save upload history", extra={"path": str(self.path), "error": str(e)})

    def _load(self) -> None:
        if self.path is None or not self.path.exists():
            return
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            self._records = [
                UploadRecord.from_dict(item) for item in data.get("uploadHistory", [])
            ][: self.max_entries]
            counts = data.get("uploadCounts") or {}
            self._succeeded = int(counts.get("succeeded", len(self._records)))
            self._failed = int(counts.get("failed", 0))
        except (OSError, ValueError, TypeError, KeyError) as e:
            logger.error("Failed to load upload history", extra={"path": str(self.path), "error": str(e)})
