"""Durable mapping from remote file ids back to local mirror filenames.

The ledger is a single JSON document (``{remote_id: filename}``). Each
mutation is a full read-modify-write of that document, so all mutations are
serialized through one asyncio lock, and writes go through a temp file and
``os.replace`` so a crash never leaves a truncated document behind.
"""

import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path

from para.exceptions import ParaError

logger = logging.getLogger(__name__)


class LedgerError(ParaError):
    """Raised when the ledger document cannot be read or written."""


class FileIdLedger:
    """Id-mapping ledger stored as ``<instance_dir>/fileMap.json``."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = asyncio.Lock()

    def read(self) -> dict[str, str]:
        """Load the mapping. A missing document is an empty mapping.

        Raises:
            LedgerError: If the document exists but is not a JSON object
        """
        if not self.path.exists():
            return {}

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise LedgerError(f"Failed to read ledger {self.path}: {e}") from e

        if not isinstance(data, dict):
            raise LedgerError(f"Ledger {self.path} is not a JSON object")
        return {str(k): str(v) for k, v in data.items()}

    def write(self, mapping: dict[str, str]) -> None:
        """Replace the document with ``mapping`` atomically."""
        self.path.parent.mkdir(parents=True, exist_ok=True)

        fd, temp_path = tempfile.mkstemp(
            dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(mapping, f, indent=2, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_path, self.path)
        except OSError as e:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise LedgerError(f"Failed to write ledger {self.path}: {e}") from e

    def ensure_exists(self) -> None:
        """Create an empty document if none exists yet."""
        if not self.path.exists():
            self.write({})

    async def add(self, filename: str, remote_id: str) -> None:
        """Record that ``remote_id`` was uploaded from ``filename``."""
        async with self._lock:
            mapping = self.read()
            mapping[remote_id] = filename
            self.write(mapping)
        logger.debug(f"Ledger: {remote_id} -> {filename}")

    async def remove(self, remote_id: str) -> bool:
        """Drop the entry for ``remote_id``.

        Returns:
            True if an entry was removed
        """
        async with self._lock:
            mapping = self.read()
            if remote_id not in mapping:
                return False
            del mapping[remote_id]
            self.write(mapping)
        logger.debug(f"Ledger: removed {remote_id}")
        return True

    def ids_for(self, filename: str) -> list[str]:
        """Return every remote id mapped to ``filename``."""
        return [rid for rid, name in self.read().items() if name == filename]

    def filename_for(self, remote_id: str) -> str | None:
        return self.read().get(remote_id)
