"""Idle-session sweeps and graceful shutdown.

Handles:
- A background task that times out idle sessions at a fixed interval
- Signal handlers for graceful shutdown (SIGINT, SIGTERM)
- Final persist of every active session as cancelled on teardown

The sweep schedule itself is not persisted. Timeouts after a restart rely
on last_active_at being in the ledger.
"""

import asyncio
import signal
import sys
from typing import Any, Optional

from .log_sink import ComponentLog, ConsoleSink
from .protocols import LogSink
from .session_store import SessionStore


class LifecycleScheduler:
    """Runs periodic cleanup and drives shutdown for a SessionStore."""

    def __init__(
        self,
        store: SessionStore,
        sink: Optional[LogSink] = None,
        interval_seconds: Optional[float] = None,
        max_age_seconds: Optional[float] = None,
    ):
        """Initialize the scheduler.

        Args:
            store: Store whose sessions are swept
            sink: Log sink (defaults to the console)
            interval_seconds: Seconds between sweeps (config default: 300)
            max_age_seconds: Idle time before timeout (config default: 1800)
        """
        self.store = store
        self.interval_seconds = interval_seconds or store.config.cleanup_interval_seconds
        self.max_age_seconds = (
            max_age_seconds if max_age_seconds is not None
            else store.config.session_timeout_seconds
        )
        self._log = ComponentLog(sink or ConsoleSink(), "LifecycleScheduler")
        self._task: Optional[asyncio.Task] = None
        self._shutdown_task: Optional[asyncio.Task] = None
        self._shut_down = False
        self.shutdown_requested = False

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the sweep loop on the running event loop."""
        if self.is_running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())
        self._log.info(f"Cleanup timer started (interval: {self.interval_seconds:g}s)")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            await self._sweep_safely()

    async def _sweep_safely(self) -> None:
        try:
            count = await self.sweep()
        except Exception as e:
            self._log.error(f"Auto cleanup failed: {e}")
            return
        if count > 0:
            self._log.info(f"Auto cleanup: {count} session(s) timed out")

    async def sweep(self) -> int:
        """Run one cleanup pass and return the number of timed-out sessions."""
        return await self.store.cleanup_expired(self.max_age_seconds)

    async def stop(self) -> None:
        """Stop the sweep loop."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        self._log.info("Cleanup timer stopped")

    async def shutdown(self) -> int:
        """Stop sweeping, cancel active sessions and flush the ledger.

        Safe to call more than once; later calls do nothing.

        Returns:
            Number of sessions cancelled
        """
        if self._shut_down:
            return 0
        self._shut_down = True

        self._log.info("Disposing session lifecycle...")
        await self.stop()
        cancelled = await self.store.shutdown_all_active_sessions()
        await self.store.engine.close()
        self._log.info("Session lifecycle disposed")
        return cancelled

    def install_signal_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """Schedule shutdown() when SIGINT or SIGTERM arrives.

        On Windows, only SIGINT (Ctrl+C) is supported.
        """
        loop = loop or asyncio.get_running_loop()
        signals = [signal.SIGINT]
        if sys.platform != "win32":
            signals.append(signal.SIGTERM)

        for signum in signals:
            try:
                loop.add_signal_handler(signum, self._handle_shutdown_signal, signum)
            except (NotImplementedError, RuntimeError):
                # Proactor loops have no add_signal_handler
                signal.signal(
                    signum,
                    lambda s, frame: loop.call_soon_threadsafe(self._handle_shutdown_signal, s)
                )

    def _handle_shutdown_signal(self, signum: Any) -> None:
        signal_name = signal.Signals(signum).name if hasattr(signal, "Signals") else str(signum)
        self._log.info(f"Shutdown signal received ({signal_name}) - closing sessions...")
        self.shutdown_requested = True
        if self._shutdown_task is None:
            self._shutdown_task = asyncio.get_running_loop().create_task(self.shutdown())
