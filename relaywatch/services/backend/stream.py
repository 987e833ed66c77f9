"""
Event Stream Client

Consumes the backend's server-push channel (text/event-stream):

    IDLE -> CONNECTING -> STREAMING -> (CLOSED | ERRORED) -> RECONNECT_WAIT -> CONNECTING ...

- Incremental frame decoding (chunks may split lines and records anywhere)
- Silence watchdog: no byte for `silence_timeout` seconds aborts the stream
- Exactly one reconnect attempt per terminal state, after a fixed delay,
  and only while the session is still authenticated
- An explicit stop() never triggers a reconnect
"""

import asyncio
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

import httpx

from relaywatch.common.config import TestKind, config_fingerprint, parse_devices, parse_test_request
from relaywatch.common.events import EventBus, LogSeverity
from relaywatch.common.exceptions import RelayWatchError, StreamFailure
from relaywatch.common.logging_setup import get_service_logger
from relaywatch.services.device.executor import ReadExecutor
from relaywatch.services.polling.scheduler import PollingScheduler
from .gateway import BackendGateway

logger = get_service_logger("backend.stream")

TEST_EVENTS = {
    "test-registrador": TestKind.REGISTERS,
    "test-coils": TestKind.COILS,
}


class StreamState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    CLOSED = "closed"
    ERRORED = "errored"
    RECONNECT_WAIT = "reconnect_wait"
    STOPPED = "stopped"


@dataclass(frozen=True)
class StreamEvent:
    """One decoded record"""
    name: str
    data: Any
    raw: str


class FrameDecoder:
    """
    Incremental decoder for the event-stream text protocol.

    Records are separated by a blank line. Within a record, `event:` names
    the event and `data:` lines carry the payload (joined with newlines).
    Lines starting with ':' are comments. Records without data are dropped.
    """

    def __init__(self):
        self._buffer = ""
        self._event_name: str | None = None
        self._data_lines: list[str] = []

    def feed(self, chunk: str) -> list[StreamEvent]:
        self._buffer += chunk
        events: list[StreamEvent] = []

        while True:
            newline = self._buffer.find("\n")
            if newline < 0:
                break
            line = self._buffer[:newline].rstrip("\r")
            self._buffer = self._buffer[newline + 1:]

            event = self._process_line(line)
            if event is not None:
                events.append(event)

        return events

    def _process_line(self, line: str) -> StreamEvent | None:
        if line == "":
            return self._dispatch()
        if line.startswith(":"):
            return None

        name, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]

        if name == "event":
            self._event_name = value.strip() or None
        elif name == "data":
            self._data_lines.append(value)
        # id / retry and unknown fields are not used

        return None

    def _dispatch(self) -> StreamEvent | None:
        name = self._event_name or "message"
        raw = "\n".join(self._data_lines)
        self._event_name = None
        self._data_lines = []

        if not raw.strip():
            return None

        try:
            data = json.loads(raw)
        except ValueError:
            data = raw

        return StreamEvent(name=name, data=data, raw=raw)


class EventStreamClient:
    """Long-lived push channel with watchdog and reconnect"""

    def __init__(
        self,
        gateway: BackendGateway,
        executor: ReadExecutor,
        scheduler: PollingScheduler,
        events: EventBus,
        path: str = "/agente/eventos",
        silence_timeout: float = 60.0,
        watchdog_interval: float = 10.0,
        reconnect_delay: float = 3.0,
        on_config_applied: Callable[[], Awaitable[None]] | None = None,
    ):
        self._gateway = gateway
        self._executor = executor
        self._scheduler = scheduler
        self._events = events
        self.path = path
        self.silence_timeout = silence_timeout
        self.watchdog_interval = watchdog_interval
        self.reconnect_delay = reconnect_delay
        self._on_config_applied = on_config_applied

        self._state = StreamState.IDLE
        self._task: asyncio.Task | None = None
        self._stream_task: asyncio.Task | None = None
        self._closing = False
        self._silence_aborted = False
        self._last_byte_at = 0.0
        self._background: set[asyncio.Task] = set()

        # Observability
        self._connect_count = 0
        self._reconnect_count = 0
        self._events_received = 0

    @property
    def state(self) -> StreamState:
        return self._state

    @property
    def connect_count(self) -> int:
        return self._connect_count

    @property
    def reconnect_count(self) -> int:
        return self._reconnect_count

    @property
    def events_received(self) -> int:
        return self._events_received

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Open the stream (no-op when already running)"""
        if self.is_running:
            return
        self._closing = False
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Tear down the stream without scheduling a reconnect"""
        self._closing = True
        tasks = [t for t in (self._task, *self._background) if t is not None]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._task = None
        self._stream_task = None
        self._background.clear()
        self._state = StreamState.STOPPED
        logger.info("Event stream stopped")

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def _run(self) -> None:
        while not self._closing:
            reason = await self._connect_once()
            if self._closing:
                break

            if not self._gateway.is_authenticated:
                self._events.log("Event stream ended and no session is active", LogSeverity.WARNING)
                self._state = StreamState.IDLE
                break

            self._state = StreamState.RECONNECT_WAIT
            self._events.log(
                f"Event stream {reason}, reconnecting in {self.reconnect_delay:g}s",
                LogSeverity.WARNING,
            )
            await asyncio.sleep(self.reconnect_delay)

            if not self._gateway.is_authenticated:
                self._state = StreamState.IDLE
                break
            self._reconnect_count += 1

    async def _connect_once(self) -> str:
        """Run one connection until it terminates; returns why it ended"""
        self._state = StreamState.CONNECTING
        self._silence_aborted = False
        self._stream_task = asyncio.create_task(self._consume())

        try:
            await self._stream_task
        except asyncio.CancelledError:
            if self._closing or not self._silence_aborted:
                raise
            self._state = StreamState.ERRORED
            return "went silent"
        except httpx.TransportError as e:
            self._state = StreamState.ERRORED
            self._gateway.mark_disconnected(str(e) or e.__class__.__name__)
            return f"lost ({e.__class__.__name__})"
        except httpx.HTTPError as e:
            self._state = StreamState.ERRORED
            return f"failed ({e.__class__.__name__})"
        except StreamFailure as e:
            self._state = StreamState.ERRORED
            return f"failed ({e.message})"
        finally:
            self._stream_task = None

        self._state = StreamState.CLOSED
        return "closed by server"

    async def _consume(self) -> None:
        async with self._gateway.open_stream(self.path) as response:
            if response.status_code == 401:
                await self._refresh_session()
                raise StreamFailure("session rejected", reason="unauthorized")
            if response.status_code != 200:
                raise StreamFailure(f"HTTP {response.status_code}", reason="http")

            self._gateway.mark_connected()
            self._state = StreamState.STREAMING
            self._connect_count += 1
            self._last_byte_at = asyncio.get_running_loop().time()
            logger.info("Event stream open")

            decoder = FrameDecoder()
            watchdog = asyncio.create_task(self._watchdog())
            try:
                async for chunk in response.aiter_text():
                    self._last_byte_at = asyncio.get_running_loop().time()
                    for event in decoder.feed(chunk):
                        self._dispatch(event)
            finally:
                watchdog.cancel()

    async def _watchdog(self) -> None:
        """Abort the current stream when it stays silent too long"""
        loop = asyncio.get_running_loop()
        while True:
            await asyncio.sleep(self.watchdog_interval)
            silence = loop.time() - self._last_byte_at
            if silence > self.silence_timeout:
                self._silence_aborted = True
                self._events.log(
                    f"No data on event stream for {silence:.0f}s, aborting",
                    LogSeverity.WARNING,
                )
                if self._stream_task is not None:
                    self._stream_task.cancel()
                return

    async def _refresh_session(self) -> None:
        try:
            await self._gateway.authenticate()
        except RelayWatchError as e:
            logger.warning(f"Could not refresh session for event stream: {e}")

    # ------------------------------------------------------------------
    # Event handling
    # ------------------------------------------------------------------

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _dispatch(self, event: StreamEvent) -> None:
        self._events_received += 1

        if event.name == "connected":
            self._events.log("Event stream connected", LogSeverity.INFO)
        elif event.name == "heartbeat":
            return
        elif event.name in TEST_EVENTS:
            self._handle_test(TEST_EVENTS[event.name], event.data)
        elif event.name == "config-actualizada":
            reason = event.data.get("reason") if isinstance(event.data, dict) else None
            self._spawn(self.refresh_config(reason))
        else:
            logger.info(f"Ignoring unknown stream event '{event.name}'")

    def _handle_test(self, kind: TestKind, data: Any) -> None:
        if not isinstance(data, dict):
            self._events.log("Malformed test request ignored", LogSeverity.WARNING)
            return
        try:
            request = parse_test_request(kind, data)
        except ValueError as e:
            self._events.log(f"Invalid test request ignored: {e}", LogSeverity.WARNING)
            return

        self._events.log(f"Connection test requested: {request.target}", LogSeverity.INFO)
        self._spawn(self._executor.execute_test(request))

    async def refresh_config(self, reason: str | None = None) -> bool:
        """
        Refetch the device list and reconcile the scheduler.

        Returns:
            True when a reconcile pass was applied
        """
        suffix = f" ({reason})" if reason else ""
        self._events.log(f"Configuration update received{suffix}", LogSeverity.INFO)

        try:
            config = await self._gateway.get_config()
        except RelayWatchError as e:
            self._events.log(f"Error fetching configuration: {e}", LogSeverity.WARNING)
            return False

        payload = config.get("registradores") or []
        fingerprint = config_fingerprint(payload)
        if fingerprint == self._scheduler.config_fingerprint:
            logger.info("Configuration unchanged, skipping reconcile")
            return False

        devices, problems = parse_devices(payload)
        for problem in problems:
            self._events.log(problem, LogSeverity.WARNING)

        await self._scheduler.reconcile(devices, fingerprint=fingerprint)

        if self._on_config_applied is not None:
            await self._on_config_applied()
        return True
