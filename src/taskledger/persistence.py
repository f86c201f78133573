"""Atomic, debounced persistence of the session ledger.

The ledger file is always either the last good snapshot or absent:
every write goes to a sibling `.tmp` file, is flushed with os.fsync and is
then renamed over the canonical path with os.replace.

Writes to one path are serialized by an asyncio lock (waiters are served
in FIFO order). A writer cancelled mid-write keeps the lock until its
thread has finished with the staging file. Routine writes closer together
than the minimum interval are coalesced into a single deferred write;
forced writes skip the debounce and report failures to the caller.
"""

import asyncio
import json
import os
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Callable, Iterable, Optional

from pydantic import ValidationError

from .errors import PersistenceError
from .log_sink import ComponentLog, ConsoleSink
from .models import LEDGER_VERSION, Ledger, Session, utc_now
from .protocols import LogSink


class FileLockRegistry:
    """One mutual-exclusion slot per logical file path."""

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}

    def lock_for(self, path: Path) -> asyncio.Lock:
        key = str(Path(path).resolve())
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    @asynccontextmanager
    async def acquire(self, path: Path) -> AsyncIterator[None]:
        """Hold the lock for a path until the block exits."""
        lock = self.lock_for(path)
        async with lock:
            yield


def read_ledger(path: Path) -> Optional[Ledger]:
    """Read and validate a ledger file.

    Args:
        path: Canonical ledger path

    Returns:
        The parsed Ledger, or None if the file does not exist

    Raises:
        PersistenceError: If the file cannot be read or parsed
    """
    path = Path(path)
    if not path.exists():
        return None

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        return Ledger.model_validate(data)
    except (OSError, json.JSONDecodeError, ValidationError) as e:
        raise PersistenceError(f"Could not read ledger {path}: {e}", path=str(path)) from e


class PersistenceEngine:
    """Writes the full session set to a single JSON file.

    The engine does not own the sessions. It asks the `snapshot` callable
    for the current set whenever it writes.
    """

    def __init__(
        self,
        path: Path,
        snapshot: Callable[[], Iterable[Session]],
        sink: Optional[LogSink] = None,
        min_interval_seconds: float = 1.0,
        version: str = LEDGER_VERSION,
        locks: Optional[FileLockRegistry] = None,
    ):
        """Initialize the engine.

        Args:
            path: Canonical ledger path
            snapshot: Returns the sessions to write
            sink: Log sink (defaults to the console)
            min_interval_seconds: Debounce window for routine writes
            version: Version string written to the ledger
            locks: Lock registry shared with other engines on the same path
        """
        self.path = Path(path)
        self.tmp_path = self.path.with_name(self.path.name + ".tmp")
        self.min_interval_seconds = min_interval_seconds
        self.version = version
        self._snapshot = snapshot
        self._locks = locks or FileLockRegistry()
        self._log = ComponentLog(sink or ConsoleSink(), "PersistenceEngine")

        self._dirty: set[str] = set()
        self._last_persist: Optional[float] = None
        self._deferred: Optional[asyncio.Task] = None
        self.write_count = 0

    # -------------------------------------------------------------------------
    # Dirty tracking
    # -------------------------------------------------------------------------

    def mark_dirty(self, session_id: str) -> None:
        self._dirty.add(session_id)

    @property
    def has_pending_changes(self) -> bool:
        return bool(self._dirty)

    @property
    def has_deferred_write(self) -> bool:
        return self._deferred is not None and not self._deferred.done()

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[None]:
        """Hold this engine's file lock."""
        async with self._locks.acquire(self.path):
            yield

    # -------------------------------------------------------------------------
    # Writing
    # -------------------------------------------------------------------------

    async def persist(self, force: bool = False) -> None:
        """Write the ledger if anything is dirty.

        Args:
            force: Skip the debounce and raise on failure

        Raises:
            PersistenceError: Only for forced writes
        """
        if not self._dirty:
            return

        if not force:
            remaining = self._debounce_remaining()
            if remaining > 0:
                self._schedule_deferred(remaining)
                return

        try:
            await self._write()
        except PersistenceError as e:
            if force:
                raise
            self._log.error(f"Background persist failed, will retry: {e}")

    def _debounce_remaining(self) -> float:
        if self._last_persist is None:
            return 0.0
        elapsed = time.monotonic() - self._last_persist
        return max(0.0, self.min_interval_seconds - elapsed)

    def _schedule_deferred(self, delay: float) -> None:
        # At most one deferred write is pending; later requests ride on it
        if self.has_deferred_write:
            return
        loop = asyncio.get_running_loop()
        self._deferred = loop.create_task(self._run_deferred(delay))

    async def _run_deferred(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._deferred = None
        await self.persist(force=False)

    async def _write(self) -> None:
        async with self._locks.acquire(self.path):
            # Another writer may have flushed while we waited
            if not self._dirty:
                return

            written_ids = set(self._dirty)
            sessions = list(self._snapshot())
            payload = self._serialize(sessions)

            cancelled, error = await self._run_to_completion(payload)
            if error is not None:
                self._log.error(f"Failed to persist sessions: {error}")
                if cancelled:
                    raise asyncio.CancelledError()
                raise PersistenceError(
                    f"Failed to write ledger {self.path}: {error}", path=str(self.path)
                ) from error

            # Ids marked while the write was in flight stay dirty
            self._dirty -= written_ids
            self._last_persist = time.monotonic()
            self.write_count += 1
            self._log.info(f"Persisted {len(sessions)} sessions to file")
            if cancelled:
                raise asyncio.CancelledError()

    async def _run_to_completion(self, payload: str) -> tuple[bool, Optional[OSError]]:
        """Run the blocking write in a thread and wait for it even if cancelled.

        The thread cannot be interrupted, so the caller keeps the file lock
        until the staging file has been renamed or removed.

        Returns:
            Whether the caller was cancelled while waiting, and the write error
        """
        worker = asyncio.ensure_future(asyncio.to_thread(self._write_atomic, payload))
        cancelled = False
        while not worker.done():
            try:
                await asyncio.wait({worker})
            except asyncio.CancelledError:
                cancelled = True

        error = worker.exception()
        if error is not None and not isinstance(error, OSError):
            raise error
        return cancelled, error

    def _serialize(self, sessions: list[Session]) -> str:
        ledger = Ledger(sessions=sessions, last_updated=utc_now(), version=self.version)
        try:
            return ledger.model_dump_json(by_alias=True, indent=2)
        except (ValueError, TypeError) as e:
            raise PersistenceError(f"Could not serialize sessions: {e}", path=str(self.path)) from e

    def _write_atomic(self, payload: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with open(self.tmp_path, "w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(self.tmp_path, self.path)
        except OSError:
            try:
                self.tmp_path.unlink()
            except OSError:
                pass  # Staging file may not exist
            raise

    async def flush(self) -> None:
        """Cancel any deferred write and write now if dirty."""
        if self.has_deferred_write:
            self._deferred.cancel()
            try:
                await self._deferred
            except asyncio.CancelledError:
                pass
        self._deferred = None
        await self.persist(force=True)

    async def close(self) -> None:
        """Flush pending changes before the engine is discarded."""
        await self.flush()

    # -------------------------------------------------------------------------
    # Reading
    # -------------------------------------------------------------------------

    async def load(self) -> Ledger:
        """Load the ledger from disk.

        A missing file yields an empty ledger; a version mismatch is logged.

        Raises:
            PersistenceError: If the file exists but cannot be parsed
        """
        async with self._locks.acquire(self.path):
            ledger = await asyncio.to_thread(read_ledger, self.path)

        if ledger is None:
            self._log.info("Sessions file not found, starting fresh")
            return Ledger(version=self.version)

        if ledger.version != self.version:
            self._log.warning(
                f"Sessions data version mismatch ({ledger.version} vs {self.version})"
            )
        return ledger
