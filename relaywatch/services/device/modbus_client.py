"""
Async Modbus Reader

Wrapper around pymodbus for one-shot Modbus TCP reads. Each call opens a
connection, performs a single transaction and closes it, bounded by the
caller's timeout.

Two address spaces are exposed and never mixed in one call:
- holding registers (16-bit words) via read_values()
- coils (single bits) via read_bits()
"""

import asyncio

from pymodbus.client import AsyncModbusTcpClient
from pymodbus.exceptions import ModbusException

from relaywatch.common.config import ConnectionTarget
from relaywatch.common.exceptions import ProtocolFailure
from relaywatch.common.logging_setup import get_service_logger

logger = get_service_logger("device.modbus")


class ModbusReader:
    """Device read client used by the executor"""

    def __init__(self, client_factory=AsyncModbusTcpClient):
        self._client_factory = client_factory

    async def read_values(
        self,
        target: ConnectionTarget,
        start_index: int,
        count: int,
        timeout_ms: int,
    ) -> list[int]:
        """
        Read `count` holding registers starting at `start_index`.

        Raises:
            ProtocolFailure: invalid parameters, connection error, Modbus
                exception response or timeout
        """
        response = await self._transact(target, start_index, count, timeout_ms, coils=False)
        return list(response.registers[:count])

    async def read_bits(
        self,
        target: ConnectionTarget,
        start_index: int,
        count: int,
        timeout_ms: int,
    ) -> list[bool]:
        """Read `count` coils starting at `start_index`"""
        response = await self._transact(target, start_index, count, timeout_ms, coils=True)
        # pymodbus pads coil responses to a byte boundary
        return [bool(b) for b in response.bits[:count]]

    async def _transact(
        self,
        target: ConnectionTarget,
        start_index: int,
        count: int,
        timeout_ms: int,
        coils: bool,
    ):
        if not target.host or not target.port or start_index < 0 or count <= 0:
            raise ProtocolFailure(
                f"Invalid parameters: host={target.host} port={target.port} "
                f"start={start_index} count={count}",
                host=target.host,
                port=target.port,
            )

        timeout = max(timeout_ms, 1) / 1000
        try:
            return await asyncio.wait_for(
                self._read(target, start_index, count, timeout, coils),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            raise ProtocolFailure(
                f"Timeout after {timeout_ms}ms reading {target}",
                host=target.host,
                port=target.port,
            )

    async def _read(
        self,
        target: ConnectionTarget,
        start_index: int,
        count: int,
        timeout: float,
        coils: bool,
    ):
        client = self._client_factory(host=target.host, port=target.port, timeout=timeout)
        try:
            await client.connect()
            if not client.connected:
                raise ProtocolFailure(
                    f"Could not connect to {target}", host=target.host, port=target.port
                )

            if coils:
                response = await client.read_coils(
                    address=start_index, count=count, device_id=target.unit_id
                )
            else:
                response = await client.read_holding_registers(
                    address=start_index, count=count, device_id=target.unit_id
                )

            if response.isError():
                raise ProtocolFailure(
                    f"Modbus error: {response}", host=target.host, port=target.port
                )

            logger.debug(
                f"Read {count} {'coils' if coils else 'registers'} from {target} "
                f"unit={target.unit_id} start={start_index}"
            )
            return response

        except ModbusException as e:
            raise ProtocolFailure(
                f"Modbus exception: {e}", host=target.host, port=target.port
            ) from e
        except OSError as e:
            raise ProtocolFailure(
                f"Connection error to {target}: {e}", host=target.host, port=target.port
            ) from e
        finally:
            client.close()
