"""
Read/Test Executor

Performs one device read or one connectivity test and reports it once.

Reads:  status -> reading, protocol call, forward the reading record,
        record exactly one outcome (success or failure) on the device set.
Tests:  de-duplicated by request id, register or coil read, result posted
        back to the backend under the request id.

At most one read is in flight per device; callers check is_busy() and a
second execute_read() for a busy device returns None without reading.
A device removed and re-added under the same id is a new device and is
not held up by a read still running for the old one.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from relaywatch.common.config import DEFAULT_TIMEOUT_MS, Device, DeviceStatus, TestKind, TestRequest
from relaywatch.common.events import EventBus, LogSeverity
from relaywatch.common.exceptions import ProtocolFailure, RelayWatchError
from relaywatch.common.logging_setup import get_service_logger, log_device_read
from relaywatch.services.backend.gateway import BackendGateway
from .modbus_client import ModbusReader

logger = get_service_logger("device.executor")


@dataclass
class ReadOutcome:
    """Result of one device read, as recorded"""
    success: bool
    values: list[int] = field(default_factory=list)
    elapsed_ms: int = 0
    error: str | None = None


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class ReadExecutor:
    """Runs device reads and connectivity tests"""

    def __init__(
        self,
        gateway: BackendGateway,
        reader: ModbusReader,
        device_set,
        events: EventBus,
    ):
        self._gateway = gateway
        self._reader = reader
        self._devices = device_set
        self._events = events

        # device id -> the Device object being read
        self._reads_in_flight: dict[str, Device] = {}
        self._tests_in_flight: set[str] = set()

    def is_busy(self, device: Device) -> bool:
        return self._reads_in_flight.get(device.id) is device

    def test_in_flight(self, test_id: str) -> bool:
        return test_id in self._tests_in_flight

    # ------------------------------------------------------------------
    # Device reads
    # ------------------------------------------------------------------

    async def execute_read(self, device: Device) -> ReadOutcome | None:
        """
        Read a device once and forward the reading.

        Returns:
            The recorded outcome, or None when the device already had a
            read in flight
        """
        if self.is_busy(device):
            logger.debug(f"Read for {device.id} already in flight, skipping")
            return None

        self._reads_in_flight[device.id] = device
        try:
            return await self._read(device)
        finally:
            if self._reads_in_flight.get(device.id) is device:
                del self._reads_in_flight[device.id]

    async def _read(self, device: Device) -> ReadOutcome:
        self._devices.set_status(device, DeviceStatus.READING)
        started = time.monotonic()

        try:
            values = await self._reader.read_values(
                device.target, device.start_index, device.count, device.timeout_ms
            )
        except ProtocolFailure as e:
            outcome = ReadOutcome(success=False, elapsed_ms=_elapsed_ms(started), error=e.message)
            await self._forward_failure(device, outcome)
            self._finish(device, outcome)
            return outcome

        outcome = ReadOutcome(success=True, values=values, elapsed_ms=_elapsed_ms(started))
        record = {
            "registradorId": device.id,
            "valores": values,
            "tiempoMs": outcome.elapsed_ms,
            "exito": True,
            "timestamp": _utc_now(),
        }

        try:
            result = await self._gateway.post_readings([record])
        except RelayWatchError as e:
            outcome.success = False
            outcome.error = f"could not forward reading: {e}"
        else:
            if not result.get("ok"):
                outcome.success = False
                outcome.error = result.get("error") or "backend rejected the reading"

        self._finish(device, outcome)
        return outcome

    async def _forward_failure(self, device: Device, outcome: ReadOutcome) -> None:
        record = {
            "registradorId": device.id,
            "valores": [],
            "tiempoMs": outcome.elapsed_ms,
            "exito": False,
            "error": outcome.error,
            "timestamp": _utc_now(),
        }
        try:
            await self._gateway.post_readings([record])
        except RelayWatchError as e:
            logger.warning(f"Could not forward failed reading for {device.id}: {e}")

    def _finish(self, device: Device, outcome: ReadOutcome) -> None:
        self._devices.record_outcome(device, outcome.success)
        log_device_read(
            logger.logger,
            device.name,
            outcome.values,
            outcome.elapsed_ms,
            success=outcome.success,
            error=outcome.error,
        )

        if outcome.success:
            self._events.log(
                f"{device.name}: {len(outcome.values)} values read in {outcome.elapsed_ms}ms",
                LogSeverity.SUCCESS,
                device.id,
            )
        else:
            self._events.log(f"{device.name}: {outcome.error}", LogSeverity.ERROR, device.id)

    # ------------------------------------------------------------------
    # Connectivity tests
    # ------------------------------------------------------------------

    async def execute_test(self, request: TestRequest) -> dict[str, Any] | None:
        """
        Run a connectivity test and report the result to the backend.

        Returns:
            The reported result, or None when the same request id is
            already running
        """
        if request.id in self._tests_in_flight:
            logger.info(f"Test {request.id} already running, ignoring duplicate")
            return None

        self._tests_in_flight.add(request.id)
        try:
            return await self._run_test(request)
        finally:
            self._tests_in_flight.discard(request.id)

    async def _run_test(self, request: TestRequest) -> dict[str, Any]:
        label = "coils" if request.kind == TestKind.COILS else "registers"
        end_index = request.start_index + request.count - 1
        self._events.log(
            f"Testing {request.target} ({label} {request.start_index}-{end_index})",
            LogSeverity.CYCLE,
        )

        started = time.monotonic()
        try:
            if request.kind == TestKind.COILS:
                bits = await self._reader.read_bits(
                    request.target, request.start_index, request.count, DEFAULT_TIMEOUT_MS
                )
                result: dict[str, Any] = {
                    "exito": True,
                    "tiempoRespuestaMs": _elapsed_ms(started),
                    "coils": bits,
                }
            else:
                values = await self._reader.read_values(
                    request.target, request.start_index, request.count, DEFAULT_TIMEOUT_MS
                )
                result = {
                    "exito": True,
                    "tiempoRespuestaMs": _elapsed_ms(started),
                    "valores": values,
                }
            self._events.log(
                f"Test {request.target} OK: {request.count} {label} in {result['tiempoRespuestaMs']}ms",
                LogSeverity.SUCCESS,
            )
        except ProtocolFailure as e:
            result = {
                "exito": False,
                "tiempoRespuestaMs": _elapsed_ms(started),
                "errorMensaje": e.message,
            }
            self._events.log(f"Test {request.target} failed: {e.message}", LogSeverity.ERROR)

        try:
            await self._gateway.post_test_result(request.id, result)
        except RelayWatchError as e:
            self._events.log(f"Error reporting test result: {e}", LogSeverity.ERROR)

        logger.debug("Test finished", extra={"test_id": request.id, "success": result["exito"]})
        return result
