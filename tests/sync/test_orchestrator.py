"""Tests for the sync orchestrator."""

import asyncio

import pytest

from para.files.mirror import EventKind, FileEvent
from para.sync.orchestrator import SyncOrchestrator, SyncOutcome

INDEX_ID = "vs-test"


def write_mirror(mirror_dir, filename, content=b"print('hi')\n"):
    path = mirror_dir / filename
    path.write_bytes(content)
    return path


class TestAdd:
    """Add uploads once, indexes once and records one ledger entry."""

    @pytest.mark.asyncio
    async def test_add_new_file(self, orchestrator, fake_remote, ledger, mirror_dir):
        write_mirror(mirror_dir, "src->app.py", b"app")

        outcome = await orchestrator.add("src->app.py")

        assert outcome == SyncOutcome.UPLOADED
        [remote_id] = fake_remote.ids_named("src->app.py")
        assert fake_remote.files[remote_id][1] == b"app"
        assert fake_remote.members(INDEX_ID) == {remote_id}
        assert ledger.read() == {remote_id: "src->app.py"}

    @pytest.mark.asyncio
    async def test_add_is_idempotent(self, orchestrator, fake_remote, ledger, mirror_dir):
        write_mirror(mirror_dir, "app.py")

        first = await orchestrator.add("app.py")
        second = await orchestrator.add("app.py")

        assert first == SyncOutcome.UPLOADED
        assert second == SyncOutcome.UNCHANGED
        assert len(fake_remote.ids_named("app.py")) == 1
        assert len(fake_remote.members(INDEX_ID)) == 1
        assert len(ledger.read()) == 1

    @pytest.mark.asyncio
    async def test_add_missing_mirror_file_is_skipped(self, orchestrator, fake_remote):
        outcome = await orchestrator.add("gone.py")

        assert outcome == SyncOutcome.SKIPPED
        assert fake_remote.files == {}

    @pytest.mark.asyncio
    async def test_upload_failure_leaves_nothing_behind(
        self, orchestrator, fake_remote, ledger, mirror_dir, journal
    ):
        write_mirror(mirror_dir, "app.py")
        fake_remote.fail_upload.add("app.py")

        outcome = await orchestrator.add("app.py")

        assert outcome == SyncOutcome.FAILED
        assert fake_remote.files == {}
        assert ledger.read() == {}
        [failure] = journal.failed_operations()
        assert failure.op_type == "upload"
        assert "quota" in failure.error

    @pytest.mark.asyncio
    async def test_index_failure_is_repaired_without_reupload(
        self, orchestrator, fake_remote, ledger, mirror_dir
    ):
        write_mirror(mirror_dir, "app.py")
        fake_remote.fail_index_add.add("app.py")

        outcome = await orchestrator.add("app.py")

        assert outcome == SyncOutcome.FAILED
        [remote_id] = fake_remote.ids_named("app.py")
        assert fake_remote.members(INDEX_ID) == set()
        assert fake_remote.failed_members[INDEX_ID] == {remote_id}
        # The record is traceable even though indexing failed
        assert ledger.read() == {remote_id: "app.py"}

        fake_remote.fail_index_add.clear()
        outcome = await orchestrator.add("app.py")

        assert outcome == SyncOutcome.REPAIRED
        assert fake_remote.ids_named("app.py") == [remote_id]
        assert fake_remote.members(INDEX_ID) == {remote_id}
        uploads = [c for c in fake_remote.calls if c[0] == "upload_file"]
        assert len(uploads) == 1
        assert fake_remote.failed_members[INDEX_ID] == set()

    @pytest.mark.asyncio
    async def test_repair_of_record_created_elsewhere(
        self, orchestrator, fake_remote, ledger, mirror_dir
    ):
        """A record that exists but is unindexed and unmapped gets both."""
        write_mirror(mirror_dir, "app.py")
        remote_id = fake_remote.seed("app.py")

        outcome = await orchestrator.add("app.py")

        assert outcome == SyncOutcome.REPAIRED
        assert fake_remote.ids_named("app.py") == [remote_id]
        assert fake_remote.members(INDEX_ID) == {remote_id}
        assert ledger.read() == {remote_id: "app.py"}

    @pytest.mark.asyncio
    async def test_add_collapses_duplicates(
        self, orchestrator, fake_remote, ledger, mirror_dir
    ):
        write_mirror(mirror_dir, "app.py")
        stray = fake_remote.seed("app.py")
        indexed = fake_remote.seed("app.py", index_id=INDEX_ID)
        await ledger.add("app.py", stray)
        await ledger.add("app.py", indexed)

        outcome = await orchestrator.add("app.py")

        assert outcome == SyncOutcome.REPAIRED
        assert fake_remote.ids_named("app.py") == [indexed]
        assert ledger.read() == {indexed: "app.py"}


class TestChange:
    """Change replaces the remote record."""

    @pytest.mark.asyncio
    async def test_change_replaces_record(
        self, orchestrator, fake_remote, ledger, mirror_dir
    ):
        write_mirror(mirror_dir, "app.py", b"v1")
        await orchestrator.add("app.py")
        [old_id] = fake_remote.ids_named("app.py")

        write_mirror(mirror_dir, "app.py", b"v2")
        outcome = await orchestrator.change("app.py")

        assert outcome == SyncOutcome.REPLACED
        [new_id] = fake_remote.ids_named("app.py")
        assert new_id != old_id
        assert old_id not in fake_remote.files
        assert fake_remote.files[new_id][1] == b"v2"
        assert fake_remote.members(INDEX_ID) == {new_id}
        assert ledger.read() == {new_id: "app.py"}

    @pytest.mark.asyncio
    async def test_change_without_existing_record_uploads(
        self, orchestrator, fake_remote, mirror_dir
    ):
        write_mirror(mirror_dir, "app.py")

        outcome = await orchestrator.change("app.py")

        assert outcome == SyncOutcome.REPLACED
        assert len(fake_remote.ids_named("app.py")) == 1

    @pytest.mark.asyncio
    async def test_change_aborts_when_old_record_cannot_be_deleted(
        self, orchestrator, fake_remote, ledger, mirror_dir
    ):
        write_mirror(mirror_dir, "app.py", b"v1")
        await orchestrator.add("app.py")
        [old_id] = fake_remote.ids_named("app.py")
        fake_remote.fail_delete.add(old_id)

        write_mirror(mirror_dir, "app.py", b"v2")
        outcome = await orchestrator.change("app.py")

        assert outcome == SyncOutcome.FAILED
        assert fake_remote.ids_named("app.py") == [old_id]
        assert ledger.read() == {old_id: "app.py"}


class TestDelete:
    """Delete removes membership, record and ledger entry."""

    @pytest.mark.asyncio
    async def test_delete_existing(self, orchestrator, fake_remote, ledger, mirror_dir):
        write_mirror(mirror_dir, "app.py")
        await orchestrator.add("app.py")

        outcome = await orchestrator.delete("app.py")

        assert outcome == SyncOutcome.DELETED
        assert fake_remote.files == {}
        assert fake_remote.members(INDEX_ID) == set()
        assert ledger.read() == {}

    @pytest.mark.asyncio
    async def test_delete_absent_is_noop(self, orchestrator, fake_remote, ledger):
        outcome = await orchestrator.delete("never-synced.py")

        assert outcome == SyncOutcome.ABSENT
        assert ledger.read() == {}
        mutations = [c for c in fake_remote.calls if c[0] != "list_files"]
        assert mutations == []

    @pytest.mark.asyncio
    async def test_delete_tolerates_missing_index_membership(
        self, orchestrator, fake_remote, ledger
    ):
        remote_id = fake_remote.seed("app.py")
        await ledger.add("app.py", remote_id)

        outcome = await orchestrator.delete("app.py")

        assert outcome == SyncOutcome.DELETED
        assert fake_remote.files == {}
        assert ledger.read() == {}

    @pytest.mark.asyncio
    async def test_failed_delete_keeps_ledger_entry(
        self, orchestrator, fake_remote, ledger, mirror_dir
    ):
        write_mirror(mirror_dir, "app.py")
        await orchestrator.add("app.py")
        [remote_id] = fake_remote.ids_named("app.py")
        fake_remote.fail_delete.add(remote_id)

        outcome = await orchestrator.delete("app.py")

        assert outcome == SyncOutcome.FAILED
        assert ledger.read() == {remote_id: "app.py"}


class TestBatch:
    """Startup reconciliation and bulk purge."""

    @pytest.mark.asyncio
    async def test_sync_all_uploads_every_mirror_file(
        self, orchestrator, fake_remote, ledger, mirror_dir
    ):
        for n in range(12):
            write_mirror(mirror_dir, f"f{n}.py", str(n).encode())

        result = await orchestrator.sync_all()

        assert len(result.succeeded) == 12
        assert result.failed == []
        assert len(fake_remote.files) == 12
        assert len(fake_remote.members(INDEX_ID)) == 12
        assert len(ledger.read()) == 12

    @pytest.mark.asyncio
    async def test_sync_all_tolerates_already_synced_files(
        self, orchestrator, fake_remote, mirror_dir
    ):
        write_mirror(mirror_dir, "a.py")
        write_mirror(mirror_dir, "b.py")
        await orchestrator.add("a.py")

        result = await orchestrator.sync_all()

        assert result.outcomes == {
            "a.py": SyncOutcome.UNCHANGED,
            "b.py": SyncOutcome.UPLOADED,
        }
        assert len(fake_remote.files) == 2

    @pytest.mark.asyncio
    async def test_sync_all_respects_admission_limit(
        self, fake_remote, ledger, mirror_dir
    ):
        orchestrator = SyncOrchestrator(
            fake_remote, ledger, mirror_dir, INDEX_ID, max_concurrency=2
        )
        in_flight = 0
        peak = 0
        original_upload = fake_remote.upload_file

        async def slow_upload(filename, content):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            try:
                return await original_upload(filename, content)
            finally:
                in_flight -= 1

        fake_remote.upload_file = slow_upload
        for n in range(8):
            write_mirror(mirror_dir, f"f{n}.py")

        result = await orchestrator.sync_all()

        assert len(result.succeeded) == 8
        assert peak <= 2

    @pytest.mark.asyncio
    async def test_purge_counts_only_successes(
        self, orchestrator, fake_remote, ledger, mirror_dir
    ):
        for n in range(5):
            write_mirror(mirror_dir, f"f{n}.py")
        await orchestrator.sync_all()
        ids = sorted(ledger.read())
        failing = set(ids[:2])
        fake_remote.fail_delete.update(failing)

        count = await orchestrator.purge()

        assert count == 3
        assert set(ledger.read()) == failing
        assert set(fake_remote.files) == failing

    @pytest.mark.asyncio
    async def test_purge_includes_records_not_in_ledger(self, orchestrator, fake_remote):
        fake_remote.seed("foreign.txt")

        count = await orchestrator.purge()

        assert count == 1
        assert fake_remote.files == {}


class TestConcurrency:
    """Per-filename serialization."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("first", ["add", "delete"])
    async def test_concurrent_add_and_delete_end_consistent(
        self, orchestrator, fake_remote, ledger, mirror_dir, first
    ):
        write_mirror(mirror_dir, "app.py")
        await orchestrator.add("app.py")

        ops = {"add": orchestrator.add, "delete": orchestrator.delete}
        second = "delete" if first == "add" else "add"
        await asyncio.gather(ops[first]("app.py"), ops[second]("app.py"))

        records = fake_remote.ids_named("app.py")
        entries = ledger.read()
        members = fake_remote.members(INDEX_ID)
        fully_present = (
            len(records) == 1 and members == set(records) and set(entries) == set(records)
        )
        fully_absent = records == [] and members == set() and entries == {}
        assert fully_present or fully_absent

    @pytest.mark.asyncio
    async def test_concurrent_changes_leave_single_record(
        self, orchestrator, fake_remote, ledger, mirror_dir
    ):
        write_mirror(mirror_dir, "app.py", b"v1")
        await orchestrator.add("app.py")
        write_mirror(mirror_dir, "app.py", b"v2")

        await asyncio.gather(
            orchestrator.change("app.py"),
            orchestrator.change("app.py"),
            orchestrator.add("app.py"),
        )

        [remote_id] = fake_remote.ids_named("app.py")
        assert fake_remote.members(INDEX_ID) == {remote_id}
        assert ledger.read() == {remote_id: "app.py"}

    @pytest.mark.asyncio
    async def test_concurrent_different_files_do_not_corrupt_ledger(
        self, orchestrator, ledger, mirror_dir
    ):
        names = [f"f{n}.py" for n in range(20)]
        for name in names:
            write_mirror(mirror_dir, name)

        await asyncio.gather(*(orchestrator.add(name) for name in names))
        await asyncio.gather(*(orchestrator.delete(name) for name in names[:10]))

        assert sorted(ledger.read().values()) == names[10:]


class TestRun:
    """The event dispatcher."""

    @pytest.mark.asyncio
    async def test_run_applies_events_in_order(
        self, orchestrator, fake_remote, ledger, mirror_dir
    ):
        write_mirror(mirror_dir, "app.py", b"v1")

        async def events():
            yield FileEvent(EventKind.ADD, "app.py")
            yield FileEvent(EventKind.CHANGE, "app.py")
            yield FileEvent(EventKind.DELETE, "app.py")

        await orchestrator.run(events())

        assert fake_remote.files == {}
        assert ledger.read() == {}

    @pytest.mark.asyncio
    async def test_run_continues_after_failure(
        self, orchestrator, fake_remote, mirror_dir
    ):
        write_mirror(mirror_dir, "bad.py")
        write_mirror(mirror_dir, "good.py")
        fake_remote.fail_upload.add("bad.py")

        async def events():
            yield FileEvent(EventKind.ADD, "bad.py")
            yield FileEvent(EventKind.ADD, "good.py")

        await orchestrator.run(events())

        assert fake_remote.ids_named("bad.py") == []
        assert len(fake_remote.ids_named("good.py")) == 1
