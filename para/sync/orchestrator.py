"""Reconcile the flattened mirror with the remote file store and index.

The orchestrator is the only component that mutates remote state or the
ledger. For every mirrored filename it maintains:

- at most one remote file record with that filename,
- that record's membership in the vector store index,
- one ledger entry mapping the record's id back to the filename.

Events for one filename are serialized with a per-filename lock; batch
operations are capped by an admission semaphore. Nothing is retried
automatically: a failed step is logged and journaled, and the next Add for
the same file (a watcher event, ``$sync``, or the next startup) detects the
leftover state and completes it.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import AsyncIterator

from para.exceptions import (
    NotFoundError,
    ParaError,
    PartialSyncFailure,
    RemoteServiceError,
)
from para.files.mirror import EventKind, FileEvent
from para.sync.journal import SyncJournal
from para.sync.ledger import FileIdLedger
from para.sync.locks import KeyedLock
from para.sync.remote import RemoteFileRecord, RemoteService

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 5


class SyncOutcome(str, Enum):
    UPLOADED = "uploaded"
    REPAIRED = "repaired"
    UNCHANGED = "unchanged"
    REPLACED = "replaced"
    DELETED = "deleted"
    ABSENT = "absent"
    SKIPPED = "skipped"
    FAILED = "failed"

    @property
    def ok(self) -> bool:
        return self is not SyncOutcome.FAILED


@dataclass
class BatchResult:
    """Outcome counts of a batch sync."""

    outcomes: dict[str, SyncOutcome]

    @property
    def succeeded(self) -> list[str]:
        return [name for name, outcome in self.outcomes.items() if outcome.ok]

    @property
    def failed(self) -> list[str]:
        return [name for name, outcome in self.outcomes.items() if not outcome.ok]


class SyncOrchestrator:
    """Keep the remote store, its index and the ledger in step with the mirror."""

    def __init__(
        self,
        remote: RemoteService,
        ledger: FileIdLedger,
        mirror_dir: Path,
        index_id: str,
        journal: SyncJournal | None = None,
        max_concurrency: int = DEFAULT_CONCURRENCY,
    ):
        """Initialize the orchestrator.

        Args:
            remote: Remote file store and index
            ledger: Id-mapping ledger, written only by this orchestrator
            mirror_dir: Flattened mirror directory to read file content from
            index_id: Id of the remote index (vector store)
            journal: Optional journal of remote operations
            max_concurrency: Admission limit for in-flight file operations
        """
        self.remote = remote
        self.ledger = ledger
        self.mirror_dir = Path(mirror_dir)
        self.index_id = index_id
        self.journal = journal

        self._file_locks = KeyedLock()
        self._admission = asyncio.Semaphore(max_concurrency)

    # ------------------------------------------------------------------
    # Public operations

    async def add(self, filename: str) -> SyncOutcome:
        """Make sure ``filename`` is uploaded, indexed and in the ledger."""
        return await self._guarded(filename, "add", self._add)

    async def change(self, filename: str) -> SyncOutcome:
        """Replace the remote copy of ``filename`` with the mirror content."""
        return await self._guarded(filename, "change", self._change)

    async def delete(self, filename: str) -> SyncOutcome:
        """Remove every remote record of ``filename``."""
        return await self._guarded(filename, "delete", self._delete)

    async def handle(self, event: FileEvent) -> SyncOutcome:
        """Apply one mirror event."""
        if event.kind == EventKind.ADD:
            outcome = await self.add(event.filename)
        elif event.kind == EventKind.CHANGE:
            outcome = await self.change(event.filename)
        else:
            outcome = await self.delete(event.filename)

        if outcome == SyncOutcome.UPLOADED:
            logger.info(f"{event.filename} was added to the assistant's memory.")
        elif outcome == SyncOutcome.REPLACED:
            logger.info(f"Memory updated with latest {event.filename}.")
        elif outcome == SyncOutcome.DELETED:
            logger.info(f"{event.filename} was removed from the assistant's memory.")
        return outcome

    async def run(self, events: AsyncIterator[FileEvent]) -> None:
        """Dispatch events until the stream ends.

        Each event gets its own task. Tasks take the per-filename lock before
        anything else, so events for one filename apply in arrival order
        while different filenames proceed concurrently.
        """
        pending: set[asyncio.Task] = set()
        try:
            async for event in events:
                task = asyncio.create_task(self.handle(event))
                pending.add(task)
                task.add_done_callback(pending.discard)
        finally:
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

    async def sync_all(self, filenames: list[str] | None = None) -> BatchResult:
        """Apply Add to every file in the mirror (startup reconciliation).

        Args:
            filenames: Restrict the pass to these mirror names

        Returns:
            BatchResult with the outcome per filename
        """
        if filenames is None:
            filenames = self._mirror_files()

        outcomes = await asyncio.gather(*(self.add(name) for name in filenames))
        result = BatchResult(outcomes=dict(zip(filenames, outcomes)))
        logger.info(
            f"Synchronized {len(result.succeeded)} of {len(filenames)} files"
            + (f", {len(result.failed)} failed" if result.failed else "")
        )
        return result

    async def purge(self) -> int:
        """Delete every record in the remote file store.

        Returns:
            Number of records fully purged. Records that fail any step are
            logged, keep their ledger entries and are not counted.
        """
        try:
            records = await self.remote.list_files()
        except RemoteServiceError as e:
            logger.error(f"Purge aborted, could not list remote files: {e}")
            raise

        async def purge_one(record: RemoteFileRecord) -> bool:
            async with self._file_locks.hold(record.filename):
                async with self._admission:
                    return await self._purge_record(record)

        results = await asyncio.gather(*(purge_one(r) for r in records))
        count = sum(1 for ok in results if ok)
        logger.info(f"Purged {count} of {len(records)} remote files")
        return count

    # ------------------------------------------------------------------
    # Sequences (called with the filename lock held)

    async def _guarded(self, filename: str, operation: str, sequence) -> SyncOutcome:
        async with self._file_locks.hold(filename):
            async with self._admission:
                try:
                    return await sequence(filename)
                except PartialSyncFailure as e:
                    logger.warning(
                        f"Partial sync of {filename} during {operation}: {e}. "
                        "It will be completed on the next sync pass."
                    )
                except (ParaError, OSError) as e:
                    logger.error(f"Failed to {operation} {filename}: {e}")
                return SyncOutcome.FAILED

    async def _add(self, filename: str) -> SyncOutcome:
        path = self.mirror_dir / filename
        if not path.is_file():
            logger.debug(f"Skipping add of {filename}: not in mirror")
            return SyncOutcome.SKIPPED

        records = await self._records_for(filename)
        if not records:
            await self._upload_and_index(filename, path.read_bytes())
            return SyncOutcome.UPLOADED

        members = set(await self.remote.list_index_members(self.index_id))
        indexed = [r for r in records if r.remote_id in members]
        keep = indexed[0] if indexed else records[0]

        repaired = False
        for extra in records:
            if extra is keep:
                continue
            logger.warning(
                f"Removing duplicate remote record {extra.remote_id} for {filename}"
            )
            if not await self._purge_record(extra):
                raise PartialSyncFailure(filename, extra.remote_id, "duplicate removal")
            repaired = True

        if keep.remote_id not in members:
            await self._reindex(filename, keep.remote_id)
            repaired = True

        if self.ledger.filename_for(keep.remote_id) != filename:
            await self.ledger.add(filename, keep.remote_id)
            repaired = True

        if repaired:
            logger.info(f"Repaired remote state of {filename} ({keep.remote_id})")
            return SyncOutcome.REPAIRED
        return SyncOutcome.UNCHANGED

    async def _change(self, filename: str) -> SyncOutcome:
        for record in await self._records_for(filename):
            if not await self._purge_record(record):
                # Uploading now would leave two records for one filename.
                return SyncOutcome.FAILED

        outcome = await self._add(filename)
        if outcome == SyncOutcome.UPLOADED:
            return SyncOutcome.REPLACED
        return outcome

    async def _delete(self, filename: str) -> SyncOutcome:
        records = await self._records_for(filename)
        if not records:
            return SyncOutcome.ABSENT

        results = [await self._purge_record(record) for record in records]
        return SyncOutcome.DELETED if all(results) else SyncOutcome.FAILED

    # ------------------------------------------------------------------
    # Steps

    async def _records_for(self, filename: str) -> list[RemoteFileRecord]:
        return [r for r in await self.remote.list_files() if r.filename == filename]

    async def _upload_and_index(self, filename: str, content: bytes) -> str:
        try:
            remote_id = await self.remote.upload_file(filename, content)
        except RemoteServiceError as e:
            self._journal("upload", filename, None, e)
            raise
        self._journal("upload", filename, remote_id)

        try:
            await self.ledger.add(filename, remote_id)
        except ParaError as e:
            raise PartialSyncFailure(filename, remote_id, "ledger write", e) from e

        await self._index(filename, remote_id)
        return remote_id

    async def _reindex(self, filename: str, remote_id: str) -> None:
        # A failed ingestion stays attached to the index and blocks a new one.
        try:
            await self.remote.remove_from_index(self.index_id, remote_id)
            self._journal("index_remove", filename, remote_id)
        except NotFoundError:
            pass
        except RemoteServiceError as e:
            self._journal("index_remove", filename, remote_id, e)
            raise PartialSyncFailure(filename, remote_id, "index add", e) from e
        await self._index(filename, remote_id)

    async def _index(self, filename: str, remote_id: str) -> None:
        try:
            await self.remote.add_to_index(self.index_id, remote_id)
        except RemoteServiceError as e:
            self._journal("index_add", filename, remote_id, e)
            raise PartialSyncFailure(filename, remote_id, "index add", e) from e
        self._journal("index_add", filename, remote_id)

    async def _purge_record(self, record: RemoteFileRecord) -> bool:
        """Remove index membership, file and ledger entry of one record.

        "Not found" counts as done at every step. The ledger entry is removed
        only once the remote file is gone.
        """
        filename, remote_id = record.filename, record.remote_id

        try:
            await self.remote.remove_from_index(self.index_id, remote_id)
            self._journal("index_remove", filename, remote_id)
        except NotFoundError:
            pass
        except RemoteServiceError as e:
            self._journal("index_remove", filename, remote_id, e)
            logger.error(f"Failed to remove {filename} ({remote_id}) from index: {e}")
            return False

        try:
            await self.remote.delete_file(remote_id)
            self._journal("delete", filename, remote_id)
        except NotFoundError:
            pass
        except RemoteServiceError as e:
            self._journal("delete", filename, remote_id, e)
            logger.error(f"Failed to delete {filename} ({remote_id}): {e}")
            return False

        try:
            await self.ledger.remove(remote_id)
        except ParaError as e:
            logger.error(f"Deleted {remote_id} but could not update ledger: {e}")
            return False
        return True

    def _journal(self, op_type: str, filename: str, remote_id: str | None, error=None):
        if self.journal is None:
            return
        self.journal.record(
            op_type,
            filename,
            "failed" if error else "success",
            remote_id=remote_id,
            error=str(error) if error else None,
        )

    def _mirror_files(self) -> list[str]:
        if not self.mirror_dir.exists():
            return []
        return sorted(p.name for p in self.mirror_dir.iterdir() if p.is_file())
