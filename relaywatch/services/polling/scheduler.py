"""
Polling Scheduler

Drives one read timer per active device:
- First reads are staggered across devices to avoid bursts
- Each device then repeats on its own interval
- A shared one-second ticker publishes countdowns for display
- Live reconfiguration (add/remove/enable/disable) via reconcile()

load(), start(), stop() and reconcile() run under a single lock so a
reconcile always sees a consistent device set.
"""

import asyncio
import math
from typing import Awaitable, Callable

from relaywatch.common.config import Device, DeviceStatus
from relaywatch.common.events import CountdownTick, EventBus, LogSeverity, PollingChanged
from relaywatch.common.logging_setup import get_service_logger
from relaywatch.services.device.executor import ReadExecutor
from .device_set import DeviceSet
from .timer import DeviceTimer

logger = get_service_logger("polling.scheduler")

TICK_SECONDS = 1


def compute_stagger(devices: list[Device]) -> int:
    """ceil(mean interval of active devices / number of active devices)"""
    active = [d for d in devices if d.active]
    if not active:
        return 0
    mean_interval = sum(d.interval_seconds for d in active) / len(active)
    return math.ceil(mean_interval / len(active))


def initial_delays(devices: list[Device]) -> dict[str, int]:
    """First-read delay per active device, in list order"""
    stagger = compute_stagger(devices)
    active = [d for d in devices if d.active]
    return {device.id: i * stagger for i, device in enumerate(active)}


class PollingScheduler:
    """Owns the live device set and its timers"""

    def __init__(
        self,
        device_set: DeviceSet,
        executor: ReadExecutor,
        events: EventBus,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.devices = device_set
        self._executor = executor
        self._events = events
        self._sleep = sleep

        self._lock = asyncio.Lock()
        self._running = False
        self._fingerprint: str | None = None
        self._timers: dict[str, DeviceTimer] = {}
        self._ticker: asyncio.Task | None = None
        self._reads: set[asyncio.Task] = set()

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def config_fingerprint(self) -> str | None:
        """Fingerprint of the device payload last applied"""
        return self._fingerprint

    @property
    def ticker_active(self) -> bool:
        return self._ticker is not None and not self._ticker.done()

    def armed_device_ids(self) -> list[str]:
        return list(self._timers)

    def get_timer(self, device_id: str) -> DeviceTimer | None:
        return self._timers.get(device_id)

    def get_stats(self) -> dict:
        """Scheduler statistics for observability"""
        return {
            "running": self._running,
            "devices": len(self.devices),
            "armed": len(self._timers),
            "reads_in_flight": len(self._reads),
            "timers": {device_id: t.get_stats() for device_id, t in self._timers.items()},
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def load(self, devices: list[Device], fingerprint: str | None = None) -> None:
        """Install a full device list (polling must be restarted afterwards)"""
        async with self._lock:
            if self._running:
                await self._stop_locked()
            self.devices.replace_all(devices)
            self._fingerprint = fingerprint
            active = len(self.devices.active_devices())
            self._events.log(
                f"Loaded {len(devices)} devices ({active} active)", LogSeverity.INFO
            )
            self.devices.publish_snapshot()

    async def start(self) -> bool:
        """
        Arm a timer for every active device with staggered first reads.

        Returns:
            True when polling started, False when already running or
            there is nothing to poll
        """
        async with self._lock:
            if self._running:
                return False

            devices = self.devices.devices()
            delays = initial_delays(devices)
            if not delays:
                self._events.log("No active devices to poll", LogSeverity.WARNING)
                return False

            self._running = True
            stagger = compute_stagger(devices)
            self._events.log(
                f"Polling started: {len(delays)} devices, stagger {stagger}s",
                LogSeverity.SUCCESS,
            )

            for device in devices:
                if device.id in delays:
                    await self._arm(device, delays[device.id])

            self._events.publish(PollingChanged(active=True))
            return True

    async def stop(self, cancel_reads: bool = False) -> None:
        """Cancel every timer and the ticker; counters are kept"""
        async with self._lock:
            await self._stop_locked()

        if cancel_reads:
            reads = list(self._reads)
            for task in reads:
                task.cancel()
            for task in reads:
                try:
                    await task
                except asyncio.CancelledError:
                    pass

    async def _stop_locked(self) -> None:
        was_running = self._running
        self._running = False

        for device_id in list(self._timers):
            await self._disarm(device_id)
        await self._stop_ticker()

        if was_running:
            self._events.log("Polling stopped", LogSeverity.INFO)
            self._events.publish(PollingChanged(active=False))

    async def reconcile(self, new_devices: list[Device], fingerprint: str | None = None) -> None:
        """
        Apply a new device list against the live one by id.

        Removed devices are torn down and lose their counters; new ones are
        added (and armed immediately while running); common ones get their
        fields replaced. An interval change alone leaves the running timer
        as is; it picks the new interval up after its next fire.
        """
        async with self._lock:
            new_by_id = {d.id: d for d in new_devices}
            added = removed = changed = 0

            for device in self.devices.devices():
                if device.id not in new_by_id:
                    await self._disarm(device.id)
                    self.devices.remove(device.id)
                    removed += 1
                    self._events.log(f"Device removed: {device.name}", LogSeverity.INFO, device.id)

            ordered: list[Device] = []
            for incoming in new_devices:
                current = self.devices.get(incoming.id)

                if current is None:
                    self.devices.add(incoming)
                    ordered.append(incoming)
                    added += 1
                    self._events.log(f"Device added: {incoming.name}", LogSeverity.INFO, incoming.id)
                    if self._running and incoming.active:
                        await self._arm(incoming, 0)
                    continue

                was_active = current.active
                current.apply_config(incoming)
                ordered.append(current)

                if was_active and not current.active:
                    changed += 1
                    await self._disarm(current.id)
                    self.devices.set_status(current, DeviceStatus.INACTIVE, clear_countdown=True)
                    self._events.log(f"Device disabled: {current.name}", LogSeverity.INFO, current.id)
                elif not was_active and current.active:
                    changed += 1
                    if self._running:
                        await self._arm(current, 0)
                    else:
                        self.devices.set_status(current, DeviceStatus.ACTIVE)
                    self._events.log(f"Device enabled: {current.name}", LogSeverity.INFO, current.id)

            # Keep backend order for snapshots and future staggering
            self.devices.replace_all(ordered)
            if fingerprint is not None:
                self._fingerprint = fingerprint

            logger.info(
                f"Reconciled device set: +{added} -{removed} ~{changed}",
                extra={"added": added, "removed": removed, "toggled": changed},
            )
            self.devices.publish_snapshot()

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    async def _arm(self, device: Device, delay: int) -> None:
        await self._disarm(device.id)

        countdown = delay if delay > 0 else device.interval_seconds
        self.devices.set_status(device, DeviceStatus.ACTIVE, countdown=countdown)

        async def fire() -> bool:
            return self._fire(device)

        timer = DeviceTimer(
            device.id,
            fire,
            lambda: device.interval_seconds,
            initial_delay=delay,
            sleep=self._sleep,
        )
        self._timers[device.id] = timer
        await timer.start()
        self._ensure_ticker()

    async def _disarm(self, device_id: str) -> None:
        timer = self._timers.pop(device_id, None)
        if timer is not None:
            await timer.stop()
        device = self.devices.get(device_id)
        if device is not None:
            self.devices.set_countdown(device, None)

    def _fire(self, device: Device) -> bool:
        if not self.devices.is_live(device) or not device.active:
            return False

        self.devices.set_countdown(device, device.interval_seconds)

        if self._executor.is_busy(device):
            self._events.log(
                f"{device.name}: previous read still running, skipping",
                LogSeverity.WARNING,
                device.id,
            )
            return False

        self._events.log(f"Reading {device.name} ({device.target})", LogSeverity.CYCLE, device.id)
        task = asyncio.create_task(self._executor.execute_read(device))
        self._reads.add(task)
        task.add_done_callback(self._reads.discard)
        return True

    # ------------------------------------------------------------------
    # Countdown ticker
    # ------------------------------------------------------------------

    def _ensure_ticker(self) -> None:
        if not self.ticker_active:
            self._ticker = asyncio.create_task(self._tick_loop(), name="countdown-ticker")

    async def _stop_ticker(self) -> None:
        if self._ticker is not None:
            self._ticker.cancel()
            try:
                await self._ticker
            except asyncio.CancelledError:
                pass
            self._ticker = None

    async def _tick_loop(self) -> None:
        while True:
            await self._sleep(TICK_SECONDS)
            self._events.publish(CountdownTick(countdowns=self.devices.tick()))
