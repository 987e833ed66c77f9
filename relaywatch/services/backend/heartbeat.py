"""
Heartbeat Module

Sends a heartbeat to the backend every 30 seconds while a session exists.
Fire-and-forget: a failed heartbeat is logged and the pulse keeps going.
"""

import asyncio
import time

from relaywatch.common.events import EventBus, LogSeverity
from relaywatch.common.exceptions import RelayWatchError
from relaywatch.common.logging_setup import get_service_logger
from .gateway import BackendGateway

logger = get_service_logger("backend.heartbeat")


class HeartbeatSender:
    """Periodic liveness pulse toward the backend"""

    def __init__(
        self,
        gateway: BackendGateway,
        events: EventBus,
        interval_seconds: float = 30.0,
    ):
        self.gateway = gateway
        self.interval_seconds = interval_seconds
        self._events = events

        self._start_time = time.monotonic()
        self._task: asyncio.Task | None = None

        self._sent_count = 0
        self._consecutive_failures = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def sent_count(self) -> int:
        return self._sent_count

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    async def start(self) -> None:
        """Start sending heartbeats (no-op when already running)"""
        if self.is_running:
            return
        self._task = asyncio.create_task(self._heartbeat_loop())
        self._events.log(
            f"Heartbeat started (every {self.interval_seconds:g}s)", LogSeverity.INFO
        )

    async def stop(self) -> None:
        """Stop sending heartbeats"""
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("Heartbeat sender stopped")

    async def _heartbeat_loop(self) -> None:
        """Main heartbeat loop; the first pulse goes out immediately"""
        while True:
            await self.send_once()
            await asyncio.sleep(self.interval_seconds)

    async def send_once(self) -> bool:
        """Send a single heartbeat; never raises for backend failures"""
        if not self.gateway.is_authenticated:
            return False
        try:
            await self.gateway.heartbeat(int(time.monotonic() - self._start_time))
        except RelayWatchError as e:
            self._consecutive_failures += 1
            self._events.log(f"Heartbeat error: {e}", LogSeverity.WARNING)
            logger.debug(
                "Heartbeat failed",
                extra={"consecutive_failures": self._consecutive_failures},
            )
            return False

        self._sent_count += 1
        self._consecutive_failures = 0
        logger.debug("Heartbeat sent")
        return True
