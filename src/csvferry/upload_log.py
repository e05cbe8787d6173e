"""
Append-only upload log.

One JSON object per line. Each record is written with a single ``write``
on a file opened with ``O_APPEND`` while holding a lock, so concurrent
dispatch workers never interleave partial records.
"""

from __future__ import annotations

import json
import os
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from csvferry.utils.logging import get_logger

logger = get_logger("csvferry.upload_log")

OUTCOME_SUCCEEDED = "succeeded"
OUTCOME_FAILED = "failed"
OUTCOME_UNMATCHED = "unmatched"


def _now() -> str:
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")


@dataclass(frozen=True)
class UploadRecord:
    """One terminal outcome: a dispatched invocation, a failed table, or a match miss."""

    batch_id: str
    table: str | None
    files: tuple[str, ...]
    outcome: str
    attempts: int = 0
    error: str | None = None
    timestamp: str = field(default_factory=_now)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["files"] = list(self.files)
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UploadRecord:
        return cls(**{**data, "files": tuple(data.get("files") or ())})


class UploadLog:
    """
    JSON-lines upload log.

    Examples:
        >>> log = UploadLog(Path("/data/incoming/upload.log"))
        >>> log.append(UploadRecord(batch_id="b1", table="t", files=("a.csv",), outcome="succeeded", attempts=1))
        >>> log.read()[0].outcome
        'succeeded'
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def append(self, record: UploadRecord) -> None:
        """Append one record; I/O errors are logged, never raised."""
        line = (record.to_json() + "\n").encode("utf-8")
        with self._lock:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                fd = os.open(self.path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o644)
                try:
                    os.write(fd, line)
                finally:
                    os.close(fd)
            except OSError as e:
                logger.error(f"Failed to write upload log {self.path}: {e}")
                return
        logger.debug(f"Upload log: {record.outcome} table={record.table} files={len(record.files)}")

    def read(self) -> list[UploadRecord]:
        """Read all records (missing log reads as empty)."""
        if not self.path.exists():
            return []
        records = []
        with open(self.path, encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if line:
                    records.append(UploadRecord.from_dict(json.loads(line)))
        return records
