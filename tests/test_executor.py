import asyncio

import pytest

from relaywatch.common.config import ConnectionTarget, DeviceStatus, TestKind, TestRequest
from relaywatch.common.exceptions import TransportFailure
from relaywatch.services.device.executor import ReadExecutor
from relaywatch.services.polling.device_set import DeviceSet

from conftest import make_device, settle


@pytest.fixture
def device_set(bus):
    return DeviceSet(bus)


@pytest.fixture
def executor(fake_gateway, reader, device_set, bus):
    return ReadExecutor(fake_gateway, reader, device_set, bus)


@pytest.fixture
def device(device_set):
    device = make_device("r1", start_index=10, count=3, timeout_ms=2500)
    device_set.replace_all([device])
    return device


def _request(test_id="t1", kind=TestKind.REGISTERS):
    return TestRequest(
        id=test_id,
        target=ConnectionTarget("10.0.0.50", 502, 2),
        kind=kind,
        start_index=0,
        count=2,
    )


async def test_successful_read_forwards_one_reading(executor, device, reader, fake_gateway, device_set, recorder):
    outcome = await executor.execute_read(device)

    assert outcome.success
    assert reader.calls == [("registers", device.target, 10, 3, 2500)]
    assert len(fake_gateway.readings) == 1
    record = fake_gateway.readings[0]
    assert record["registradorId"] == "r1"
    assert record["valores"] == [1, 2, 3]
    assert record["exito"] is True
    assert "error" not in record
    assert "timestamp" in record
    assert device_set.counters("r1").success_count == 1
    assert device_set.counters("r1").fail_count == 0
    assert device.status == DeviceStatus.ACTIVE

    statuses = [d.status for d in recorder.deltas("r1")]
    assert statuses == ["reading", "active"]
    assert recorder.deltas("r1")[-1].success_count == 1


async def test_protocol_failure_posts_exactly_one_failure_record(executor, device, reader, fake_gateway, device_set):
    reader.error = "Timeout after 2500ms reading 10.0.0.10:502"

    outcome = await executor.execute_read(device)

    assert not outcome.success
    assert len(fake_gateway.readings) == 1
    record = fake_gateway.readings[0]
    assert record["exito"] is False
    assert record["valores"] == []
    assert record["error"] == "Timeout after 2500ms reading 10.0.0.10:502"
    assert device_set.counters("r1").fail_count == 1
    assert device_set.counters("r1").success_count == 0
    assert device.status == DeviceStatus.ERROR


async def test_failure_record_that_cannot_be_forwarded_is_swallowed(executor, device, reader, fake_gateway, device_set):
    reader.error = "Connection refused"
    fake_gateway.post_error = TransportFailure("backend down")

    outcome = await executor.execute_read(device)

    assert not outcome.success
    assert len(fake_gateway.readings) == 1
    assert device_set.counters("r1").fail_count == 1


async def test_reading_rejected_by_backend_counts_as_failure(executor, device, fake_gateway, device_set, recorder):
    fake_gateway.accept = False

    outcome = await executor.execute_read(device)

    assert not outcome.success
    assert len(fake_gateway.readings) == 1
    assert device_set.counters("r1").fail_count == 1
    assert device_set.counters("r1").success_count == 0
    assert recorder.deltas("r1")[-1].status == "error"


async def test_forward_transport_failure_counts_once(executor, device, fake_gateway, device_set):
    fake_gateway.post_error = TransportFailure("backend down")

    outcome = await executor.execute_read(device)

    assert not outcome.success
    assert len(fake_gateway.readings) == 1
    assert device_set.counters("r1").fail_count == 1


async def test_at_most_one_read_in_flight_per_device(executor, device, reader, device_set):
    reader.gate = asyncio.Event()

    tasks = [asyncio.create_task(executor.execute_read(device)) for _ in range(5)]
    await settle()
    assert executor.is_busy(device)

    reader.gate.set()
    results = await asyncio.gather(*tasks)

    assert len(reader.calls) == 1
    assert sum(1 for r in results if r is None) == 4
    assert device_set.counters("r1").success_count == 1
    assert not executor.is_busy(device)


async def test_outcome_for_removed_device_is_discarded(executor, device, reader, device_set):
    reader.gate = asyncio.Event()
    task = asyncio.create_task(executor.execute_read(device))
    await settle()

    device_set.remove("r1")
    reader.gate.set()
    await task

    assert device_set.counters("r1") is None
    assert "r1" not in device_set


async def test_readded_device_is_not_blocked_by_old_read(executor, device, reader, device_set):
    reader.gate = asyncio.Event()
    old_read = asyncio.create_task(executor.execute_read(device))
    await settle()

    device_set.remove("r1")
    fresh = make_device("r1", start_index=10, count=3, timeout_ms=2500)
    device_set.add(fresh)
    assert not executor.is_busy(fresh)

    new_read = asyncio.create_task(executor.execute_read(fresh))
    await settle()
    assert executor.is_busy(fresh)

    reader.gate.set()
    old_outcome, new_outcome = await asyncio.gather(old_read, new_read)

    assert len(reader.calls) == 2
    assert old_outcome is not None and new_outcome is not None
    assert device_set.counters("r1").success_count == 1
    assert not executor.is_busy(fresh)


async def test_register_test_reports_values(executor, reader, fake_gateway):
    result = await executor.execute_test(_request())

    assert result["exito"] is True
    assert result["valores"] == [1, 2, 3]
    assert "tiempoRespuestaMs" in result
    assert fake_gateway.test_results == [("t1", result)]
    assert reader.calls[0][0] == "registers"


async def test_coil_test_reports_bits(executor, reader, fake_gateway):
    result = await executor.execute_test(_request(kind=TestKind.COILS))

    assert result["coils"] == [True, False]
    assert "valores" not in result
    assert reader.calls[0][0] == "coils"


async def test_failed_test_reports_error_message(executor, reader, fake_gateway):
    reader.error = "Modbus error: IllegalAddress"

    result = await executor.execute_test(_request())

    assert result["exito"] is False
    assert result["errorMensaje"] == "Modbus error: IllegalAddress"
    assert fake_gateway.test_results[0][0] == "t1"


async def test_duplicate_test_id_runs_once(executor, reader, fake_gateway):
    reader.gate = asyncio.Event()

    first = asyncio.create_task(executor.execute_test(_request("t7")))
    await settle()
    second = await executor.execute_test(_request("t7"))
    reader.gate.set()
    await first

    assert second is None
    assert len(reader.calls) == 1
    assert len(fake_gateway.test_results) == 1
    assert not executor.test_in_flight("t7")


async def test_test_id_released_when_test_crashes(executor, reader):
    async def broken(*args):
        raise RuntimeError("driver crashed")

    reader.read_values = broken

    with pytest.raises(RuntimeError):
        await executor.execute_test(_request("t8"))

    assert not executor.test_in_flight("t8")


async def test_report_failure_does_not_raise(executor, fake_gateway):
    fake_gateway.post_error = TransportFailure("backend down")

    result = await executor.execute_test(_request())

    assert result["exito"] is True
    assert not executor.test_in_flight("t1")
