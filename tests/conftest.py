"""
Shared fixtures and fakes for the agent tests.

- VirtualClock: injectable sleep; advance() releases sleepers in deadline order
- FakeReader: device protocol collaborator with scripted results
- FakeGateway: records forwarded readings and test results
- EventRecorder: drains an EventBus subscription
- AgentBackend: httpx.MockTransport handler for a whole-agent run
"""

import asyncio
import heapq
import json
from typing import Any

import httpx
import pytest

from relaywatch.common.config import AgentSettings, BackendSettings, ConnectionTarget, Device, StatusSettings
from relaywatch.common.events import EventBus, LogEvent, StatusDelta
from relaywatch.common.exceptions import ProtocolFailure
from relaywatch.services.agent.service import AgentService


async def settle(rounds: int = 20) -> None:
    """Let every ready task run until nothing is left to do"""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def eventually(predicate, timeout: float = 2.0) -> None:
    """Poll on real time until predicate() holds"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


class VirtualClock:
    """Deterministic time source for timers and tickers"""

    def __init__(self):
        self.now = 0.0
        self._waiters: list[tuple[float, int, asyncio.Future]] = []
        self._seq = 0

    async def sleep(self, seconds: float) -> None:
        future = asyncio.get_running_loop().create_future()
        self._seq += 1
        heapq.heappush(self._waiters, (self.now + seconds, self._seq, future))
        await future

    async def advance(self, seconds: float) -> None:
        target = self.now + seconds
        await settle()
        while self._waiters and self._waiters[0][0] <= target:
            deadline, _, future = heapq.heappop(self._waiters)
            if future.done():
                continue
            self.now = deadline
            future.set_result(None)
            await settle()
        self.now = target


class FakeReader:
    """Scripted protocol collaborator"""

    def __init__(self, values: list[int] | None = None, bits: list[bool] | None = None):
        self.values = values if values is not None else [1, 2, 3]
        self.bits = bits if bits is not None else [True, False]
        self.error: str | None = None
        self.gate: asyncio.Event | None = None
        self.calls: list[tuple[str, ConnectionTarget, int, int, int]] = []

    async def _call(self, kind, target, start_index, count, timeout_ms):
        self.calls.append((kind, target, start_index, count, timeout_ms))
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise ProtocolFailure(self.error, host=target.host, port=target.port)

    async def read_values(self, target, start_index, count, timeout_ms):
        await self._call("registers", target, start_index, count, timeout_ms)
        return list(self.values)

    async def read_bits(self, target, start_index, count, timeout_ms):
        await self._call("coils", target, start_index, count, timeout_ms)
        return list(self.bits)


class FakeGateway:
    """Backend stand-in for executor and heartbeat tests"""

    def __init__(self):
        self.is_authenticated = True
        self.readings: list[dict[str, Any]] = []
        self.test_results: list[tuple[str, dict[str, Any]]] = []
        self.heartbeats: list[int | None] = []
        self.post_error: Exception | None = None
        self.heartbeat_errors: list[Exception] = []
        self.accept = True

    async def post_readings(self, readings):
        self.readings.extend(readings)
        if self.post_error is not None:
            raise self.post_error
        return {"ok": self.accept, "insertadas": len(readings) if self.accept else 0}

    async def post_test_result(self, test_id, result):
        self.test_results.append((test_id, result))
        if self.post_error is not None:
            raise self.post_error
        return {"ok": True}

    async def heartbeat(self, uptime_seconds=None):
        self.heartbeats.append(uptime_seconds)
        if self.heartbeat_errors:
            raise self.heartbeat_errors.pop(0)


class EventRecorder:
    """Collects everything published on a bus"""

    def __init__(self, bus: EventBus):
        self._queue = bus.subscribe()
        self.events: list[Any] = []

    def drain(self) -> list[Any]:
        while not self._queue.empty():
            self.events.append(self._queue.get_nowait())
        return self.events

    def of_type(self, event_type) -> list[Any]:
        return [e for e in self.drain() if isinstance(e, event_type)]

    def logs(self) -> list[LogEvent]:
        return self.of_type(LogEvent)

    def deltas(self, device_id: str) -> list[StatusDelta]:
        return [d for d in self.of_type(StatusDelta) if d.id == device_id]


def make_device(
    device_id: str,
    interval: int = 10,
    active: bool = True,
    host: str = "10.0.0.10",
    **kwargs,
) -> Device:
    return Device(
        id=device_id,
        name=kwargs.pop("name", f"Meter {device_id}"),
        target=ConnectionTarget(host=host, port=502, unit_id=1),
        interval_seconds=interval,
        active=active,
        **kwargs,
    )


def device_payload(device_id: str, interval: int = 10, active: bool = True, **overrides) -> dict:
    """Backend "registrador" dict"""
    data = {
        "id": device_id,
        "nombre": f"Meter {device_id}",
        "tipo": "medidor",
        "ip": "10.0.0.10",
        "puerto": 502,
        "unitId": 1,
        "indiceInicial": 0,
        "cantidadRegistros": 4,
        "intervaloSegundos": interval,
        "timeoutMs": 3000,
        "activo": active,
    }
    data.update(overrides)
    return data


async def hang():
    yield b"event: connected\ndata: {}\n\n"
    await asyncio.sleep(3600)


class AgentBackend:
    """MockTransport handler covering the agent API"""

    def __init__(self, devices=None):
        self.auth_status = 200
        self.devices = devices if devices is not None else [device_payload("A"), device_payload("B", interval=20)]
        self.readings: list[dict] = []
        self.logs: list[dict] = []
        self.paths: list[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.paths.append(path)

        if path == "/api/agente/auth":
            if self.auth_status != 200:
                return httpx.Response(self.auth_status, json={"error": "Clave invalida"})
            return httpx.Response(200, json={
                "exito": True,
                "token": "tok-1",
                "agente": {"id": "ag-1", "nombre": "Agent One"},
                "workspaces": [{"id": "ws-1", "nombre": "Plant"}],
            })
        if path == "/api/agente/config":
            return httpx.Response(200, json={"registradores": self.devices})
        if path == "/api/agente/lecturas":
            body = json.loads(request.content)
            self.readings.extend(body["lecturas"])
            return httpx.Response(200, json={"ok": True, "insertadas": len(body["lecturas"])})
        if path == "/api/agente/log":
            self.logs.append(json.loads(request.content))
            return httpx.Response(200, json={"ok": True})
        if path == "/api/agente/vincular":
            body = json.loads(request.content)
            if body["codigo"] != "GOOD":
                return httpx.Response(200, json={"exito": False, "error": "codigo invalido"})
            return httpx.Response(200, json={"exito": True, "workspace": {"id": "ws-2", "nombre": "North"}})
        if path == "/api/agente/eventos":
            return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=hang())
        return httpx.Response(200, json={"ok": True})


def make_agent(backend, secret="s3cret", clock=None):
    settings = AgentSettings(
        backend=BackendSettings(url="http://backend.test", secret=secret),
        status=StatusSettings(enabled=False),
    )
    clock = clock or VirtualClock()
    return AgentService(
        settings=settings,
        transport=httpx.MockTransport(backend),
        reader=FakeReader(values=[7, 8]),
        sleep=clock.sleep,
    )


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def recorder(bus) -> EventRecorder:
    return EventRecorder(bus)


@pytest.fixture
def clock() -> VirtualClock:
    return VirtualClock()


@pytest.fixture
def reader() -> FakeReader:
    return FakeReader()


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()
