"""
Live Device Set

Holds the polled devices (in backend order) and their read counters.

Counters are created on the first recorded outcome and dropped when a
device leaves the set, so a device removed and later re-added under the
same id starts from "no counters" rather than from zero. Disabling a
device keeps them.

Every status transition publishes a StatusDelta on the event bus.
"""

from dataclasses import dataclass

from relaywatch.common.config import Device, DeviceStatus
from relaywatch.common.events import DevicesSnapshot, EventBus, StatusDelta
from relaywatch.common.logging_setup import get_service_logger

logger = get_service_logger("polling.devices")


@dataclass
class ReadCounters:
    """Outcome totals for one device"""
    success_count: int = 0
    fail_count: int = 0


class DeviceSet:
    """
    Ordered devices plus counters.

    Mutated by the scheduler (membership) and by the executor through
    record_outcome() / set_status(). Updates addressed to a Device object
    that is no longer the live one for its id are ignored.
    """

    def __init__(self, events: EventBus):
        self._events = events
        self._devices: dict[str, Device] = {}
        self._counters: dict[str, ReadCounters] = {}

    def __contains__(self, device_id: str) -> bool:
        return device_id in self._devices

    def __len__(self) -> int:
        return len(self._devices)

    def get(self, device_id: str) -> Device | None:
        return self._devices.get(device_id)

    def devices(self) -> list[Device]:
        return list(self._devices.values())

    def active_devices(self) -> list[Device]:
        return [d for d in self._devices.values() if d.active]

    def counters(self, device_id: str) -> ReadCounters | None:
        """Counters for a device, None until its first read outcome"""
        return self._counters.get(device_id)

    def is_live(self, device: Device) -> bool:
        return self._devices.get(device.id) is device

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    def replace_all(self, devices: list[Device]) -> None:
        """Install a new device list; counters of ids that disappear are dropped"""
        self._devices = {d.id: d for d in devices}
        for device_id in list(self._counters):
            if device_id not in self._devices:
                del self._counters[device_id]
        logger.debug(f"Device set replaced ({len(self._devices)} devices)")

    def add(self, device: Device) -> None:
        self._devices[device.id] = device
        self._counters.pop(device.id, None)

    def remove(self, device_id: str) -> Device | None:
        self._counters.pop(device_id, None)
        return self._devices.pop(device_id, None)

    # ------------------------------------------------------------------
    # Runtime state
    # ------------------------------------------------------------------

    def set_status(
        self,
        device: Device,
        status: DeviceStatus,
        countdown: int | None = None,
        clear_countdown: bool = False,
    ) -> None:
        """Change a device's status and publish the delta"""
        if not self.is_live(device):
            return
        device.status = status
        if countdown is not None:
            device.next_read_countdown = countdown
        elif clear_countdown:
            device.next_read_countdown = None
        self._events.publish(self.delta(device.id))

    def set_countdown(self, device: Device, seconds: int | None) -> None:
        if self.is_live(device):
            device.next_read_countdown = seconds

    def record_outcome(self, device: Device, success: bool) -> None:
        """Count a finished read and move the device to active/error"""
        if not self.is_live(device):
            logger.debug(f"Discarding outcome for removed device {device.id}")
            return

        counters = self._counters.setdefault(device.id, ReadCounters())
        if success:
            counters.success_count += 1
        else:
            counters.fail_count += 1

        # A device disabled while its read was in flight stays inactive
        if device.active:
            status = DeviceStatus.ACTIVE if success else DeviceStatus.ERROR
        else:
            status = DeviceStatus.INACTIVE
        self.set_status(device, status)

    def tick(self) -> dict[str, int]:
        """Decrement every positive countdown; returns the armed countdown map"""
        countdowns: dict[str, int] = {}
        for device in self._devices.values():
            if device.next_read_countdown is None:
                continue
            if device.next_read_countdown > 0:
                device.next_read_countdown -= 1
            countdowns[device.id] = device.next_read_countdown
        return countdowns

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def delta(self, device_id: str) -> StatusDelta:
        device = self._devices[device_id]
        counters = self._counters.get(device_id) or ReadCounters()
        return StatusDelta(
            id=device.id,
            status=device.status.value,
            countdown=device.next_read_countdown,
            success_count=counters.success_count,
            fail_count=counters.fail_count,
        )

    def snapshot(self) -> list[dict]:
        """Plain-dict view of every device with its counters"""
        result = []
        for device in self._devices.values():
            item = device.to_dict()
            counters = self._counters.get(device.id)
            item["success_count"] = counters.success_count if counters else None
            item["fail_count"] = counters.fail_count if counters else None
            result.append(item)
        return result

    def publish_snapshot(self) -> None:
        self._events.publish(DevicesSnapshot(devices=self.snapshot()))
