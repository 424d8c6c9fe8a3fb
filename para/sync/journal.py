"""Append-only journal of remote sync operations.

Every remote mutation attempted by the orchestrator is recorded as one JSON
line, which makes failed steps easy to find after the fact and survives
process restarts.

Stored as: <instance_dir>/.sync-log.jsonl
"""

import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass
class JournalEntry:
    """Record of a single remote operation."""

    op_id: str
    op_type: str  # "upload", "index_add", "index_remove", "delete"
    filename: str
    status: str  # "success", "failed"
    remote_id: str | None = None
    error: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "op_id": self.op_id,
            "op_type": self.op_type,
            "filename": self.filename,
            "status": self.status,
            "remote_id": self.remote_id,
            "error": self.error,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "JournalEntry":
        return cls(
            op_id=data["op_id"],
            op_type=data["op_type"],
            filename=data["filename"],
            status=data["status"],
            remote_id=data.get("remote_id"),
            error=data.get("error"),
            timestamp=datetime.fromisoformat(data["timestamp"]),
        )


class SyncJournal:
    """Transaction log for remote sync operations."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def record(
        self,
        op_type: str,
        filename: str,
        status: str,
        remote_id: str | None = None,
        error: str | None = None,
    ) -> str | None:
        """Append an operation to the journal.

        Journal failures are logged and swallowed; they must never abort
        the sync step being recorded.

        Returns:
            Operation ID, or None if the entry could not be written
        """
        timestamp = datetime.now(timezone.utc)
        op_id = f"{int(timestamp.timestamp() * 1000)}_{hashlib.md5(filename.encode()).hexdigest()[:8]}"
        entry = JournalEntry(
            op_id=op_id,
            op_type=op_type,
            filename=filename,
            status=status,
            remote_id=remote_id,
            error=error,
            timestamp=timestamp,
        )

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry.to_dict()) + "\n")
        except OSError as e:
            logger.error(f"Failed to write to sync journal: {e}")
            return None

        return op_id

    def _read_all(self) -> list[JournalEntry]:
        if not self.path.exists():
            return []

        entries = []
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                for line in f:
                    if not line.strip():
                        continue
                    try:
                        entries.append(JournalEntry.from_dict(json.loads(line)))
                    except (json.JSONDecodeError, KeyError, ValueError) as e:
                        logger.warning(f"Skipping invalid journal entry: {e}")
        except OSError as e:
            logger.error(f"Failed to read sync journal: {e}")
            return []

        return entries

    def recent(self, limit: int = 50) -> list[JournalEntry]:
        """Return the most recent entries, newest first."""
        return self._read_all()[-limit:][::-1]

    def failed_operations(self) -> list[JournalEntry]:
        return [e for e in self._read_all() if e.status == "failed"]

    def entries_for(self, filename: str) -> list[JournalEntry]:
        return [e for e in self._read_all() if e.filename == filename]

    def truncate(self, keep_days: int = 7) -> int:
        """Drop successful entries older than ``keep_days``; keep all failures.

        Returns:
            Number of entries removed, 0 if the journal could not be rewritten
        """
        entries = self._read_all()
        cutoff = datetime.now(timezone.utc) - timedelta(days=keep_days)
        kept = [e for e in entries if e.status != "success" or e.timestamp > cutoff]

        removed = len(entries) - len(kept)
        if removed > 0:
            try:
                with open(self.path, "w", encoding="utf-8") as f:
                    for entry in kept:
                        f.write(json.dumps(entry.to_dict()) + "\n")
                logger.info(f"Truncated sync journal: removed {removed} old entries")
            except OSError as e:
                logger.error(f"Failed to truncate sync journal: {e}")
                return 0

        return removed
