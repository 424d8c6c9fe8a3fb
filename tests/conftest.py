"""Shared fixtures: an in-memory remote service and a ready orchestrator."""

import asyncio
from pathlib import Path

import pytest

from para.exceptions import NotFoundError, TransientServiceError, UploadError
from para.sync.journal import SyncJournal
from para.sync.ledger import FileIdLedger
from para.sync.orchestrator import SyncOrchestrator
from para.sync.remote import RemoteFileRecord, RemoteService


class FakeRemoteService(RemoteService):
    """In-memory RemoteService with failure injection.

    Every call yields to the event loop once so concurrent operations
    interleave the way real network calls do.
    """

    def __init__(self):
        self.files: dict[str, tuple[str, bytes]] = {}
        self.indexes: dict[str, set[str]] = {}
        self.index_names: dict[str, str] = {}
        # Memberships whose ingestion failed stay attached, as in the real store
        self.failed_members: dict[str, set[str]] = {}
        self.calls: list[tuple] = []

        self.fail_upload: set[str] = set()
        self.fail_index_add: set[str] = set()
        self.fail_index_remove: set[str] = set()
        self.fail_delete: set[str] = set()
        self.fail_list = False

        self._next_id = 0

    async def _tick(self, *call):
        self.calls.append(call)
        await asyncio.sleep(0)

    async def upload_file(self, filename: str, content: bytes) -> str:
        await self._tick("upload_file", filename)
        if filename in self.fail_upload:
            raise UploadError(f"quota exceeded uploading {filename}")
        self._next_id += 1
        remote_id = f"file-{self._next_id}"
        self.files[remote_id] = (filename, content)
        return remote_id

    async def delete_file(self, remote_id: str) -> None:
        await self._tick("delete_file", remote_id)
        if remote_id in self.fail_delete:
            raise TransientServiceError(f"server error deleting {remote_id}")
        if remote_id not in self.files:
            raise NotFoundError(remote_id)
        del self.files[remote_id]
        for members in (*self.indexes.values(), *self.failed_members.values()):
            members.discard(remote_id)

    async def list_files(self) -> list[RemoteFileRecord]:
        await self._tick("list_files")
        if self.fail_list:
            raise TransientServiceError("listing unavailable")
        return [RemoteFileRecord(rid, name) for rid, (name, _) in self.files.items()]

    async def add_to_index(self, index_id: str, remote_id: str) -> str:
        await self._tick("add_to_index", index_id, remote_id)
        if remote_id not in self.files:
            raise NotFoundError(remote_id)
        failed = self.failed_members.setdefault(index_id, set())
        if remote_id in failed:
            raise TransientServiceError(f"{remote_id} is already attached to {index_id}")
        if self.files[remote_id][0] in self.fail_index_add:
            failed.add(remote_id)
            raise TransientServiceError(f"indexing failed for {remote_id}")
        self.indexes.setdefault(index_id, set()).add(remote_id)
        return remote_id

    async def remove_from_index(self, index_id: str, remote_id: str) -> None:
        await self._tick("remove_from_index", index_id, remote_id)
        if remote_id in self.fail_index_remove:
            raise TransientServiceError(f"server error unindexing {remote_id}")
        failed = self.failed_members.setdefault(index_id, set())
        if remote_id in failed:
            failed.discard(remote_id)
            return
        members = self.indexes.setdefault(index_id, set())
        if remote_id not in members:
            raise NotFoundError(remote_id)
        members.discard(remote_id)

    async def list_index_members(self, index_id: str) -> list[str]:
        await self._tick("list_index_members", index_id)
        return sorted(self.indexes.get(index_id, set()))

    async def find_or_create_index(self, name: str) -> str:
        await self._tick("find_or_create_index", name)
        for index_id, index_name in self.index_names.items():
            if index_name == name:
                return index_id
        index_id = f"vs-{len(self.index_names) + 1}"
        self.index_names[index_id] = name
        self.indexes[index_id] = set()
        return index_id

    # Helpers for assertions

    def seed(self, filename: str, content: bytes = b"", index_id: str | None = None) -> str:
        """Create a record directly, optionally already indexed."""
        self._next_id += 1
        remote_id = f"file-{self._next_id}"
        self.files[remote_id] = (filename, content)
        if index_id is not None:
            self.indexes.setdefault(index_id, set()).add(remote_id)
        return remote_id

    def ids_named(self, filename: str) -> list[str]:
        return [rid for rid, (name, _) in self.files.items() if name == filename]

    def members(self, index_id: str) -> set[str]:
        return set(self.indexes.get(index_id, set()))


INDEX_ID = "vs-test"


@pytest.fixture
def fake_remote():
    remote = FakeRemoteService()
    remote.indexes[INDEX_ID] = set()
    remote.index_names[INDEX_ID] = "Test Store"
    return remote


@pytest.fixture
def mirror_dir(tmp_path) -> Path:
    path = tmp_path / "tracked"
    path.mkdir()
    return path


@pytest.fixture
def ledger(tmp_path) -> FileIdLedger:
    return FileIdLedger(tmp_path / "fileMap.json")


@pytest.fixture
def journal(tmp_path) -> SyncJournal:
    return SyncJournal(tmp_path / ".sync-log.jsonl")


@pytest.fixture
def orchestrator(fake_remote, ledger, mirror_dir, journal) -> SyncOrchestrator:
    return SyncOrchestrator(
        remote=fake_remote,
        ledger=ledger,
        mirror_dir=mirror_dir,
        index_id=INDEX_ID,
        journal=journal,
    )
