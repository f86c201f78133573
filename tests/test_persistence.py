"""Tests for the persistence engine.

Tests cover:
- Atomic writes through the staging file
- Debounce coalescing of routine writes
- Failure handling for forced and deferred writes
- Loading missing, corrupt and mismatched ledgers
"""

import asyncio
import json
from unittest.mock import patch

import pytest

from taskledger.errors import PersistenceError
from taskledger.log_sink import MemorySink
from taskledger.models import Ledger
from taskledger.persistence import FileLockRegistry, PersistenceEngine, read_ledger

from conftest import SlowWrites, make_session


@pytest.fixture
def sessions():
    return {}


def make_engine(tmp_path, sessions, sink=None, min_interval_seconds=0.0):
    return PersistenceEngine(
        tmp_path / ".taskledger" / "sessions.json",
        snapshot=lambda: list(sessions.values()),
        sink=sink or MemorySink(),
        min_interval_seconds=min_interval_seconds,
    )


class TestFileLockRegistry:
    """Test FileLockRegistry."""

    def test_same_path_same_lock(self, tmp_path):
        registry = FileLockRegistry()
        assert registry.lock_for(tmp_path / "a.json") is registry.lock_for(tmp_path / "." / "a.json")

    def test_different_paths_different_locks(self, tmp_path):
        registry = FileLockRegistry()
        assert registry.lock_for(tmp_path / "a.json") is not registry.lock_for(tmp_path / "b.json")

    @pytest.mark.asyncio
    async def test_acquire_serializes_holders(self, tmp_path):
        """Test that a second holder waits for the first."""
        registry = FileLockRegistry()
        order = []

        async def holder(name):
            async with registry.acquire(tmp_path / "a.json"):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(holder("first"), holder("second"))

        assert order == ["first-in", "first-out", "second-in", "second-out"]


class TestWriting:
    """Test PersistenceEngine writes."""

    @pytest.mark.asyncio
    async def test_persist_writes_ledger(self, tmp_path, sessions):
        engine = make_engine(tmp_path, sessions)
        sessions["session-1-aaaaaaaa"] = make_session("session-1-aaaaaaaa")
        engine.mark_dirty("session-1-aaaaaaaa")

        await engine.persist(force=True)

        data = json.loads(engine.path.read_text())
        assert [s["id"] for s in data["sessions"]] == ["session-1-aaaaaaaa"]
        assert data["version"] == "1.0.0"
        assert "lastUpdated" in data
        assert not engine.tmp_path.exists()
        assert not engine.has_pending_changes
        assert engine.write_count == 1

    @pytest.mark.asyncio
    async def test_nothing_dirty_is_a_no_op(self, tmp_path, sessions):
        engine = make_engine(tmp_path, sessions)
        await engine.persist(force=True)
        assert not engine.path.exists()
        assert engine.write_count == 0

    @pytest.mark.asyncio
    async def test_logs_persisted_count(self, tmp_path, sessions):
        sink = MemorySink()
        engine = make_engine(tmp_path, sessions, sink=sink)
        sessions["session-1-aaaaaaaa"] = make_session("session-1-aaaaaaaa")
        engine.mark_dirty("session-1-aaaaaaaa")

        await engine.persist()

        assert sink.contains("[PersistenceEngine] Persisted 1 sessions to file")

    @pytest.mark.asyncio
    async def test_routine_writes_are_coalesced(self, tmp_path, sessions):
        """Test that writes inside the debounce window collapse into one."""
        engine = make_engine(tmp_path, sessions, min_interval_seconds=0.05)
        sessions["session-1-aaaaaaaa"] = make_session("session-1-aaaaaaaa")
        engine.mark_dirty("session-1-aaaaaaaa")
        await engine.persist(force=True)
        assert engine.write_count == 1

        for _ in range(5):
            engine.mark_dirty("session-1-aaaaaaaa")
            await engine.persist()

        assert engine.has_deferred_write
        assert engine.write_count == 1

        await asyncio.sleep(0.15)

        assert engine.write_count == 2
        assert not engine.has_pending_changes
        assert not engine.has_deferred_write

    @pytest.mark.asyncio
    async def test_forced_write_skips_debounce(self, tmp_path, sessions):
        engine = make_engine(tmp_path, sessions, min_interval_seconds=10)
        sessions["session-1-aaaaaaaa"] = make_session("session-1-aaaaaaaa")
        engine.mark_dirty("session-1-aaaaaaaa")
        await engine.persist(force=True)

        sessions["session-2-bbbbbbbb"] = make_session("session-2-bbbbbbbb")
        engine.mark_dirty("session-2-bbbbbbbb")
        await engine.persist(force=True)

        assert engine.write_count == 2
        assert len(read_ledger(engine.path).sessions) == 2

    @pytest.mark.asyncio
    async def test_flush_writes_deferred_changes_now(self, tmp_path, sessions):
        engine = make_engine(tmp_path, sessions, min_interval_seconds=10)
        sessions["session-1-aaaaaaaa"] = make_session("session-1-aaaaaaaa")
        engine.mark_dirty("session-1-aaaaaaaa")
        await engine.persist(force=True)

        sessions["session-2-bbbbbbbb"] = make_session("session-2-bbbbbbbb")
        engine.mark_dirty("session-2-bbbbbbbb")
        await engine.persist()
        assert engine.has_deferred_write

        await engine.flush()

        assert not engine.has_deferred_write
        assert not engine.has_pending_changes
        assert len(read_ledger(engine.path).sessions) == 2

    @pytest.mark.asyncio
    async def test_concurrent_forced_writes_all_land(self, tmp_path, sessions):
        engine = make_engine(tmp_path, sessions)

        async def add(session_id):
            sessions[session_id] = make_session(session_id)
            engine.mark_dirty(session_id)
            await engine.persist(force=True)

        await asyncio.gather(*(add(f"session-{i}-aaaaaaaa") for i in range(5)))

        assert len(read_ledger(engine.path).sessions) == 5
        assert not engine.has_pending_changes

    @pytest.mark.asyncio
    async def test_cancelled_writer_holds_lock_until_write_ends(self, tmp_path, sessions):
        """Test that the next write waits for a cancelled writer's thread."""
        engine = make_engine(tmp_path, sessions)
        sessions["session-1-aaaaaaaa"] = make_session("session-1-aaaaaaaa")
        engine.mark_dirty("session-1-aaaaaaaa")
        slow = SlowWrites(engine)

        with patch.object(engine, "_write_atomic", side_effect=slow):
            writer = asyncio.ensure_future(engine.persist(force=True))
            await slow.wait_started()
            writer.cancel()

            sessions["session-2-bbbbbbbb"] = make_session("session-2-bbbbbbbb")
            engine.mark_dirty("session-2-bbbbbbbb")
            await engine.persist(force=True)

            with pytest.raises(asyncio.CancelledError):
                await writer

        assert slow.max_concurrent == 1
        assert engine.write_count == 2
        assert len(read_ledger(engine.path).sessions) == 2
        assert not engine.has_pending_changes


class TestWriteFailures:
    """Test failure handling."""

    @pytest.mark.asyncio
    async def test_forced_failure_raises(self, tmp_path, sessions):
        engine = make_engine(tmp_path, sessions)
        sessions["session-1-aaaaaaaa"] = make_session("session-1-aaaaaaaa")
        engine.mark_dirty("session-1-aaaaaaaa")

        with patch.object(engine, "_write_atomic", side_effect=OSError("disk full")):
            with pytest.raises(PersistenceError, match="disk full"):
                await engine.persist(force=True)

        assert engine.has_pending_changes

    @pytest.mark.asyncio
    async def test_routine_failure_is_logged(self, tmp_path, sessions):
        """Test that a routine write failure is logged and retried later."""
        sink = MemorySink()
        engine = make_engine(tmp_path, sessions, sink=sink)
        sessions["session-1-aaaaaaaa"] = make_session("session-1-aaaaaaaa")
        engine.mark_dirty("session-1-aaaaaaaa")

        with patch.object(engine, "_write_atomic", side_effect=OSError("disk full")):
            await engine.persist()

        assert sink.contains("Background persist failed, will retry")
        assert engine.has_pending_changes

        await engine.persist()
        assert not engine.has_pending_changes
        assert engine.path.exists()

    @pytest.mark.asyncio
    async def test_failed_rename_keeps_previous_ledger(self, tmp_path, sessions):
        """Test that the ledger is the last good snapshot after a failed write."""
        engine = make_engine(tmp_path, sessions)
        sessions["session-1-aaaaaaaa"] = make_session("session-1-aaaaaaaa")
        engine.mark_dirty("session-1-aaaaaaaa")
        await engine.persist(force=True)
        before = engine.path.read_text()

        sessions["session-2-bbbbbbbb"] = make_session("session-2-bbbbbbbb")
        engine.mark_dirty("session-2-bbbbbbbb")
        with patch("taskledger.persistence.os.replace", side_effect=OSError("rename failed")):
            with pytest.raises(PersistenceError):
                await engine.persist(force=True)

        assert engine.path.read_text() == before
        assert not engine.tmp_path.exists()


class TestLoading:
    """Test PersistenceEngine.load()."""

    @pytest.mark.asyncio
    async def test_missing_file_starts_fresh(self, tmp_path, sessions):
        sink = MemorySink()
        engine = make_engine(tmp_path, sessions, sink=sink)

        ledger = await engine.load()

        assert ledger.sessions == []
        assert sink.contains("Sessions file not found, starting fresh")

    @pytest.mark.asyncio
    async def test_corrupt_file_raises(self, tmp_path, sessions):
        engine = make_engine(tmp_path, sessions)
        engine.path.parent.mkdir(parents=True)
        engine.path.write_text("{broken")

        with pytest.raises(PersistenceError):
            await engine.load()

    @pytest.mark.asyncio
    async def test_version_mismatch_warns(self, tmp_path, sessions):
        sink = MemorySink()
        engine = make_engine(tmp_path, sessions, sink=sink)
        engine.path.parent.mkdir(parents=True)
        engine.path.write_text(Ledger(version="0.9.0").model_dump_json(by_alias=True))

        ledger = await engine.load()

        assert ledger.version == "0.9.0"
        assert sink.contains("Warning: Sessions data version mismatch")


class TestReadLedger:
    """Test read_ledger()."""

    def test_missing_returns_none(self, tmp_path):
        assert read_ledger(tmp_path / "missing.json") is None

    def test_invalid_schema_raises(self, tmp_path):
        path = tmp_path / "sessions.json"
        path.write_text(json.dumps({"sessions": [{"id": "x"}]}))
        with pytest.raises(PersistenceError) as exc_info:
            read_ledger(path)
        assert exc_info.value.path == str(path)
