"""
Per-Device Read Timer

Fires a callback after an initial delay, then every interval. The
interval is looked up again after each fire, so a changed interval takes
effect from the next scheduled read without restarting the timer.

Usage:
    timer = DeviceTimer("meter-1", fire, lambda: device.interval_seconds, initial_delay=8)
    await timer.start()

    # Later:
    await timer.stop()
    print(timer.get_stats())
"""

import asyncio
from typing import Awaitable, Callable

from relaywatch.common.logging_setup import get_service_logger

logger = get_service_logger("polling.timer")


class DeviceTimer:
    """
    Cancellable repeating timer for one device.

    The callback returns True when a read was started and False when the
    fire was skipped (device still busy with the previous read).

    Attributes:
        name: Device id, for logging
        initial_delay: Seconds before the first fire
        execution_count: Fires that started a read
        skipped_count: Fires dropped because the device was busy
    """

    def __init__(
        self,
        name: str,
        callback: Callable[[], Awaitable[bool]],
        interval_fn: Callable[[], float],
        initial_delay: float = 0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.name = name
        self.callback = callback
        self.interval_fn = interval_fn
        self.initial_delay = initial_delay
        self._sleep = sleep

        self._task: asyncio.Task | None = None

        # Observability metrics
        self._execution_count = 0
        self._skipped_count = 0
        self._error_count = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Arm the timer in a background task"""
        if self.is_running:
            return
        self._task = asyncio.create_task(self._run(), name=f"timer-{self.name}")

    def cancel(self) -> None:
        """Request cancellation without waiting for it"""
        if self._task:
            self._task.cancel()

    async def stop(self) -> None:
        """Cancel the timer and wait until it is gone"""
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _run(self) -> None:
        if self.initial_delay > 0:
            await self._sleep(self.initial_delay)

        while True:
            try:
                if await self.callback():
                    self._execution_count += 1
                else:
                    self._skipped_count += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._error_count += 1
                logger.error(f"Timer '{self.name}' callback error: {e}")

            await self._sleep(self.interval_fn())

    @property
    def execution_count(self) -> int:
        return self._execution_count

    @property
    def skipped_count(self) -> int:
        return self._skipped_count

    def get_stats(self) -> dict:
        """Timer statistics for observability"""
        return {
            "name": self.name,
            "initial_delay_s": self.initial_delay,
            "interval_s": self.interval_fn(),
            "execution_count": self._execution_count,
            "skipped_count": self._skipped_count,
            "error_count": self._error_count,
        }
