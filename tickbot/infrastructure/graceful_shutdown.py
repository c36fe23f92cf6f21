"""
Graceful shutdown on SIGINT / SIGTERM.

Runs registered cleanup coroutines in priority order, each under its own
timeout, so the session can unsubscribe, close the transport and send its
final summary before the process exits.

Usage:
    shutdown = GracefulShutdown()
    shutdown.register_cleanup("session", lambda: session.stop("signal"))
    shutdown.install_signal_handlers()
"""

import asyncio
import signal
import sys
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

from tickbot.infrastructure.logging import get_logger

logger = get_logger(__name__)


class ShutdownPhase(Enum):
    """Phases of graceful shutdown."""
    RUNNING = "running"
    STOPPING = "stopping"
    CLEANUP = "cleanup"
    COMPLETE = "complete"


@dataclass
class CleanupTask:
    """A registered cleanup task."""
    name: str
    handler: Callable[[], Awaitable[None]]
    priority: int  # lower runs first
    timeout_seconds: float


class GracefulShutdown:
    """Signal-driven shutdown sequencing."""

    def __init__(self, shutdown_timeout_seconds: float = 30.0):
        self.shutdown_timeout = shutdown_timeout_seconds

        self._phase = ShutdownPhase.RUNNING
        self._cleanup_tasks: list[CleanupTask] = []
        self._shutdown_event = asyncio.Event()
        self._shutdown_start_time = 0.0
        self._shutdown_reason = ""
        self._signal_handlers_installed = False
        self._pending: set[asyncio.Task] = set()

    @property
    def is_shutting_down(self) -> bool:
        return self._phase != ShutdownPhase.RUNNING

    @property
    def phase(self) -> ShutdownPhase:
        return self._phase

    def register_cleanup(
        self,
        name: str,
        handler: Callable[[], Awaitable[None]],
        priority: int = 50,
        timeout_seconds: float = 10.0,
    ) -> None:
        self._cleanup_tasks.append(CleanupTask(
            name=name,
            handler=handler,
            priority=priority,
            timeout_seconds=timeout_seconds,
        ))
        logger.debug("Registered cleanup", name=name, priority=priority)

    def install_signal_handlers(self) -> None:
        """Install signal handlers on the running loop."""
        if self._signal_handlers_installed:
            return

        loop = asyncio.get_running_loop()
        if sys.platform != "win32":
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(sig, self._on_signal, sig)
        else:
            signal.signal(
                signal.SIGINT,
                lambda signum, frame: loop.call_soon_threadsafe(self._on_signal, signal.SIGINT),
            )

        self._signal_handlers_installed = True
        logger.debug("Signal handlers installed")

    def _on_signal(self, sig: signal.Signals) -> None:
        logger.warning("Received shutdown signal", signal=sig.name)
        task = asyncio.create_task(self.initiate_shutdown(f"signal {sig.name}"))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def initiate_shutdown(self, reason: str = "requested") -> None:
        """Run every cleanup task once; later calls are ignored."""
        if self._phase != ShutdownPhase.RUNNING:
            logger.warning("Already shutting down")
            return

        self._phase = ShutdownPhase.STOPPING
        self._shutdown_start_time = time.time()
        self._shutdown_reason = reason
        logger.warning("Initiating graceful shutdown", reason=reason)

        self._phase = ShutdownPhase.CLEANUP
        await self._run_cleanup()

        self._phase = ShutdownPhase.COMPLETE
        self._shutdown_event.set()
        logger.info(
            "Shutdown complete",
            elapsed_seconds=round(time.time() - self._shutdown_start_time, 2),
        )

    async def _run_cleanup(self) -> None:
        for task in sorted(self._cleanup_tasks, key=lambda t: t.priority):
            try:
                await asyncio.wait_for(task.handler(), timeout=task.timeout_seconds)
                logger.debug("Cleanup complete", name=task.name)
            except asyncio.TimeoutError:
                logger.error("Cleanup timeout", name=task.name, timeout_seconds=task.timeout_seconds)
            except Exception as e:
                logger.error("Cleanup failed", name=task.name, error=str(e))

    async def wait_for_shutdown(self) -> None:
        await self._shutdown_event.wait()

    def get_status(self) -> dict[str, Any]:
        return {
            "phase": self._phase.value,
            "is_shutting_down": self.is_shutting_down,
            "reason": self._shutdown_reason,
            "cleanup_tasks_registered": len(self._cleanup_tasks),
        }
