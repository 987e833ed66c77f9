import asyncio
import math

import pytest

from relaywatch.common.config import DeviceStatus
from relaywatch.common.events import CountdownTick, LogSeverity, PollingChanged
from relaywatch.services.device.executor import ReadExecutor
from relaywatch.services.polling.device_set import DeviceSet, ReadCounters
from relaywatch.services.polling.scheduler import PollingScheduler, compute_stagger, initial_delays

from conftest import make_device, settle


class RecordingExecutor:
    """Records when each device read was started"""

    def __init__(self, clock):
        self.clock = clock
        self.fires: list[tuple[float, str]] = []
        self.busy: set[str] = set()

    def is_busy(self, device):
        return device.id in self.busy

    async def execute_read(self, device):
        self.fires.append((self.clock.now, device.id))

    def times(self, device_id):
        return [t for t, d in self.fires if d == device_id]


@pytest.fixture
def device_set(bus):
    return DeviceSet(bus)


@pytest.fixture
def recording(clock):
    return RecordingExecutor(clock)


@pytest.fixture
def scheduler(device_set, recording, bus, clock):
    return PollingScheduler(device_set, recording, bus, sleep=clock.sleep)


@pytest.fixture
def real_scheduler(device_set, fake_gateway, reader, bus, clock):
    executor = ReadExecutor(fake_gateway, reader, device_set, bus)
    return PollingScheduler(device_set, executor, bus, sleep=clock.sleep)


# ----------------------------------------------------------------------
# Stagger
# ----------------------------------------------------------------------

def test_stagger_for_two_devices():
    devices = [make_device("A", interval=10), make_device("B", interval=20)]

    assert compute_stagger(devices) == 8
    assert initial_delays(devices) == {"A": 0, "B": 8}


def test_stagger_ignores_inactive_devices():
    devices = [
        make_device("A", interval=10),
        make_device("off", interval=500, active=False),
        make_device("B", interval=20),
    ]

    assert compute_stagger(devices) == 8
    assert initial_delays(devices) == {"A": 0, "B": 8}


def test_stagger_without_active_devices():
    assert compute_stagger([make_device("A", active=False)]) == 0
    assert initial_delays([]) == {}


@pytest.mark.parametrize("intervals", [
    [60],
    [1, 1, 1, 1],
    [5, 7, 11, 300, 2],
    [60] * 12,
    [3, 600],
])
def test_initial_delays_strictly_increase_in_list_order(intervals):
    devices = [make_device(f"d{i}", interval=v) for i, v in enumerate(intervals)]
    mean = sum(intervals) / len(intervals)

    delays = list(initial_delays(devices).values())

    assert compute_stagger(devices) == math.ceil(mean / len(intervals))
    assert delays[0] == 0
    assert all(a < b for a, b in zip(delays, delays[1:]))


# ----------------------------------------------------------------------
# Timing
# ----------------------------------------------------------------------

async def test_two_devices_fire_on_staggered_independent_cadences(scheduler, device_set, recording, clock):
    await scheduler.load([make_device("A", interval=10), make_device("B", interval=20)])

    assert await scheduler.start() is True
    await clock.advance(45)

    assert recording.times("A") == [0, 10, 20, 30, 40]
    assert recording.times("B") == [8, 28]
    await scheduler.stop()


async def test_countdowns_reset_on_fire_and_tick_down(scheduler, device_set, recorder, clock):
    await scheduler.load([make_device("A", interval=10), make_device("B", interval=20)])
    await scheduler.start()

    await clock.advance(3)

    ticks = recorder.of_type(CountdownTick)
    assert len(ticks) == 3
    assert ticks[-1].countdowns == {"A": 7, "B": 5}

    await clock.advance(5)
    # B fired at t=8 (countdown back to its full 20s), then the t=8 tick ran
    assert device_set.get("B").next_read_countdown == 19
    assert device_set.get("A").next_read_countdown == 2
    await scheduler.stop()


async def test_interval_change_applies_after_next_fire(scheduler, recording, clock):
    await scheduler.load([make_device("A", interval=10)])
    await scheduler.start()
    await clock.advance(5)
    timer = scheduler.get_timer("A")

    await scheduler.reconcile([make_device("A", interval=30)])
    await clock.advance(40)

    assert scheduler.get_timer("A") is timer
    assert recording.times("A") == [0, 10, 40]
    await scheduler.stop()


async def test_busy_device_fire_is_skipped(scheduler, recording, recorder, clock):
    await scheduler.load([make_device("A", interval=10)])
    recording.busy.add("A")

    await scheduler.start()
    await clock.advance(25)

    assert recording.times("A") == []
    assert scheduler.get_timer("A").skipped_count == 3
    skips = [e for e in recorder.logs() if "skipping" in e.message]
    assert len(skips) == 3
    assert all(e.severity == LogSeverity.WARNING for e in skips)
    await scheduler.stop()


# ----------------------------------------------------------------------
# Lifecycle
# ----------------------------------------------------------------------

async def test_start_is_noop_without_active_devices(scheduler):
    await scheduler.load([make_device("A", active=False)])

    assert await scheduler.start() is False
    assert not scheduler.is_running
    assert not scheduler.ticker_active


async def test_start_twice_is_noop(scheduler, recording, clock):
    await scheduler.load([make_device("A", interval=10)])

    assert await scheduler.start() is True
    assert await scheduler.start() is False
    await clock.advance(1)

    assert recording.times("A") == [0]
    await scheduler.stop()


async def test_stop_is_idempotent(scheduler, device_set, recorder, clock):
    await scheduler.load([make_device("A"), make_device("B")])
    await scheduler.start()
    await clock.advance(2)

    await scheduler.stop()
    first_state = (scheduler.is_running, scheduler.armed_device_ids(), scheduler.ticker_active)
    await scheduler.stop()

    assert first_state == (False, [], False)
    assert (scheduler.is_running, scheduler.armed_device_ids(), scheduler.ticker_active) == first_state
    assert all(d.next_read_countdown is None for d in device_set.devices())
    assert [e.active for e in recorder.of_type(PollingChanged)] == [True, False]


async def test_stop_keeps_counters(real_scheduler, device_set, clock):
    await real_scheduler.load([make_device("A")])
    await real_scheduler.start()
    await clock.advance(0)

    await real_scheduler.stop()

    assert device_set.counters("A") == ReadCounters(success_count=1, fail_count=0)


async def test_load_replaces_running_timers(scheduler, recording, clock):
    await scheduler.load([make_device("A")])
    await scheduler.start()

    await scheduler.load([make_device("B")])

    assert not scheduler.is_running
    assert scheduler.armed_device_ids() == []


# ----------------------------------------------------------------------
# Reconcile
# ----------------------------------------------------------------------

async def test_reconcile_adds_new_device_without_touching_others(scheduler, recording, clock):
    await scheduler.load([make_device("A", interval=10), make_device("B", interval=20)])
    await scheduler.start()
    await clock.advance(3)
    timer_a, timer_b = scheduler.get_timer("A"), scheduler.get_timer("B")

    await scheduler.reconcile([
        make_device("A", interval=10),
        make_device("B", interval=20),
        make_device("C", interval=15),
    ])
    await clock.advance(0)

    assert scheduler.get_timer("A") is timer_a
    assert scheduler.get_timer("B") is timer_b
    assert recording.times("C") == [3]
    assert recording.times("A") == [0]
    await scheduler.stop()


async def test_reconcile_added_inactive_device_is_not_armed(scheduler, clock):
    await scheduler.load([make_device("A")])
    await scheduler.start()

    await scheduler.reconcile([make_device("A"), make_device("C", active=False)])

    assert scheduler.armed_device_ids() == ["A"]
    await scheduler.stop()


async def test_reconcile_while_stopped_only_updates_set(scheduler, device_set):
    await scheduler.load([make_device("A")])

    await scheduler.reconcile([make_device("A"), make_device("B")])

    assert [d.id for d in device_set.devices()] == ["A", "B"]
    assert scheduler.armed_device_ids() == []


async def test_reconcile_removes_device(scheduler, device_set, recording, clock):
    await scheduler.load([make_device("A"), make_device("B")])
    await scheduler.start()

    await scheduler.reconcile([make_device("A")])
    await clock.advance(30)

    assert "B" not in device_set
    assert scheduler.armed_device_ids() == ["A"]
    assert recording.times("B") == []
    await scheduler.stop()


async def test_counters_survive_disable_enable_toggle(real_scheduler, device_set, clock):
    await real_scheduler.load([make_device("A", interval=10)])
    await real_scheduler.start()
    await clock.advance(0)
    assert device_set.counters("A").success_count == 1

    await real_scheduler.reconcile([make_device("A", interval=10, active=False)])
    device = device_set.get("A")
    assert device.status == DeviceStatus.INACTIVE
    assert device.next_read_countdown is None
    assert real_scheduler.get_timer("A") is None
    assert device_set.counters("A").success_count == 1

    await clock.advance(30)
    assert device_set.counters("A").success_count == 1

    await real_scheduler.reconcile([make_device("A", interval=10, active=True)])
    await clock.advance(0)

    assert device_set.counters("A").success_count == 2
    assert device_set.get("A").status == DeviceStatus.ACTIVE
    await real_scheduler.stop()


async def test_counters_absent_after_remove_and_readd(real_scheduler, device_set, clock):
    await real_scheduler.load([make_device("A"), make_device("B")])
    await real_scheduler.start()
    await clock.advance(5)
    assert device_set.counters("A") is not None
    assert device_set.counters("B") is not None
    await real_scheduler.stop()

    await real_scheduler.reconcile([make_device("B")])
    await real_scheduler.reconcile([make_device("A"), make_device("B")])

    assert device_set.counters("A") is None
    assert device_set.counters("B") is not None


async def test_readded_device_starts_counting_from_scratch(real_scheduler, device_set, clock):
    await real_scheduler.load([make_device("A", interval=10)])
    await real_scheduler.start()
    await clock.advance(10)
    assert device_set.counters("A").success_count == 2

    await real_scheduler.reconcile([])
    await real_scheduler.reconcile([make_device("A", interval=10)])
    await clock.advance(0)

    assert device_set.counters("A") == ReadCounters(success_count=1, fail_count=0)
    await real_scheduler.stop()


async def test_reconcile_records_fingerprint(scheduler):
    await scheduler.load([make_device("A")], fingerprint="f1")
    assert scheduler.config_fingerprint == "f1"

    await scheduler.reconcile([make_device("A")], fingerprint="f2")

    assert scheduler.config_fingerprint == "f2"


async def test_concurrent_fires_never_overlap_reads(real_scheduler, device_set, reader, clock):
    reader.gate = asyncio.Event()
    await real_scheduler.load([make_device("A", interval=1)])
    await real_scheduler.start()

    await clock.advance(5)
    assert len(reader.calls) == 1
    assert real_scheduler.get_timer("A").skipped_count == 5

    reader.gate.set()
    await settle()
    assert device_set.counters("A").success_count == 1
    await real_scheduler.stop()
