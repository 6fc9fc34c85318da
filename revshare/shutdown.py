"""
Graceful Shutdown Handler - ordered cleanup on SIGINT/SIGTERM.

Handlers run in priority order (lower first) with a per-handler timeout.
Stopping the scheduler cancels in-flight tasks; since every state change is
a single storage transaction, a cancelled run leaves no partial writes.
"""

import asyncio
import logging
import signal
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, auto
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


class ShutdownPhase(Enum):
    RUNNING = auto()
    GRACEFUL_SHUTDOWN = auto()
    TERMINATED = auto()


@dataclass
class ShutdownHandler:
    name: str
    callback: Callable
    priority: int = 50  # 0-100, lower = earlier
    timeout: float = 10.0


@dataclass
class ShutdownState:
    phase: ShutdownPhase = ShutdownPhase.RUNNING
    started_at: Optional[datetime] = None
    reason: str = ""
    handlers_completed: List[str] = field(default_factory=list)
    handlers_failed: List[str] = field(default_factory=list)


class GracefulShutdown:
    """
    Usage:
        shutdown = GracefulShutdown()
        shutdown.register("scheduler", scheduler.stop, priority=10)
        shutdown.register("store", store.close, priority=90)
        shutdown.install_signal_handlers()
        await shutdown.wait_for_shutdown()
    """

    def __init__(self, graceful_timeout: float = 30.0):
        self.graceful_timeout = graceful_timeout
        self._handlers: List[ShutdownHandler] = []
        self._state = ShutdownState()
        self._shutdown_event = asyncio.Event()
        self._lock = asyncio.Lock()

    @property
    def is_shutting_down(self) -> bool:
        return self._state.phase != ShutdownPhase.RUNNING

    @property
    def state(self) -> ShutdownState:
        return self._state

    def register(self, name: str, callback: Callable, priority: int = 50, timeout: float = 10.0):
        """Register a sync or async cleanup callback."""
        self._handlers.append(ShutdownHandler(name=name, callback=callback, priority=priority, timeout=timeout))
        self._handlers.sort(key=lambda h: h.priority)
        logger.debug(f"Registered shutdown handler: {name} (priority={priority})")

    def install_signal_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        """Install SIGINT/SIGTERM handlers on the running loop."""
        loop = loop or asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(
                    sig, lambda s=sig: asyncio.ensure_future(self.initiate(f"Received signal {s.name}"))
                )
            except NotImplementedError:
                # Windows event loops have no add_signal_handler
                signal.signal(
                    sig, lambda signum, frame: loop.call_soon_threadsafe(
                        asyncio.ensure_future, self.initiate(f"Received signal {signum}")
                    )
                )
        logger.info("Signal handlers installed for graceful shutdown")

    async def initiate(self, reason: str = "Shutdown requested"):
        async with self._lock:
            if self.is_shutting_down:
                logger.warning("Shutdown already in progress")
                return
            self._state.phase = ShutdownPhase.GRACEFUL_SHUTDOWN
            self._state.started_at = datetime.now(timezone.utc)
            self._state.reason = reason

        logger.info(f"Initiating graceful shutdown: {reason}")
        try:
            await asyncio.wait_for(self._run_handlers(), timeout=self.graceful_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Graceful shutdown timed out after {self.graceful_timeout}s")

        self._state.phase = ShutdownPhase.TERMINATED
        self._shutdown_event.set()
        logger.info(
            f"Shutdown complete. Completed: {len(self._state.handlers_completed)}, "
            f"Failed: {len(self._state.handlers_failed)}"
        )

    async def _run_handlers(self):
        for handler in self._handlers:
            try:
                logger.info(f"Running shutdown handler: {handler.name}")
                result = handler.callback()
                if asyncio.iscoroutine(result):
                    await asyncio.wait_for(result, timeout=handler.timeout)
                self._state.handlers_completed.append(handler.name)
            except asyncio.TimeoutError:
                logger.error(f"Shutdown handler {handler.name} timed out after {handler.timeout}s")
                self._state.handlers_failed.append(handler.name)
            except Exception as e:
                # keep going: later handlers (store close) must still run
                logger.error(f"Shutdown handler {handler.name} failed: {e}", exc_info=True)
                self._state.handlers_failed.append(handler.name)

    async def wait_for_shutdown(self):
        await self._shutdown_event.wait()

    def get_status(self) -> dict:
        return {
            "phase": self._state.phase.name,
            "reason": self._state.reason,
            "started_at": self._state.started_at.isoformat() if self._state.started_at else None,
            "handlers_completed": self._state.handlers_completed,
            "handlers_failed": self._state.handlers_failed,
        }
