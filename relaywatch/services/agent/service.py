"""
Agent Service

Wires the agent together and keeps the state a shell would display:
- Connectivity: session, heartbeat, event stream
- Polling: device set, scheduler, read/test executor
- A ring buffer of the last 100 log lines (newest first)
- Commands: snapshot, reload, start/stop polling, link workspace

Runs until SIGTERM/SIGINT, then stops polling and tears the session down.
"""

import asyncio
import signal
import time
from collections import deque
from typing import Any, Awaitable, Callable

import httpx

from relaywatch.common.config import (
    AgentSettings,
    config_fingerprint,
    find_config_path,
    load_agent_settings,
    parse_devices,
    read_config_file,
)
from relaywatch.common.events import EventBus, LogEvent, LogSeverity, WorkspaceLinked
from relaywatch.common.exceptions import RelayWatchError
from relaywatch.common.logging_setup import apply_log_settings, get_service_logger
from relaywatch.services.backend.connectivity import ConnectivityManager
from relaywatch.services.backend.gateway import BackendGateway
from relaywatch.services.backend.heartbeat import HeartbeatSender
from relaywatch.services.backend.stream import EventStreamClient
from relaywatch.services.device.executor import ReadExecutor
from relaywatch.services.device.modbus_client import ModbusReader
from relaywatch.services.polling.device_set import DeviceSet
from relaywatch.services.polling.scheduler import PollingScheduler
from .status_server import StatusServer

logger = get_service_logger("agent")

LOG_BUFFER_SIZE = 100

# Wait between connection attempts while the backend is unreachable
CONNECT_RETRY_SECONDS = 30


class AgentService:
    """
    RelayWatch field agent.

    Collaborators can be injected (HTTP transport, device reader, sleep)
    so the whole agent runs against fakes.
    """

    def __init__(
        self,
        config_path: str | None = None,
        settings: AgentSettings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        reader: ModbusReader | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config_path = config_path or find_config_path()
        if settings is None:
            settings = load_agent_settings(self._load_config())
        self.settings = settings
        apply_log_settings(settings.logging.level, settings.logging.format)
        self._sleep = sleep

        self.events = EventBus()
        self._log_inbox = self.events.subscribe(LogEvent)

        self.gateway = BackendGateway(
            settings.backend.url,
            settings.backend.secret,
            self.events,
            timeout=settings.backend.request_timeout_s,
            version=settings.version,
            transport=transport,
        )
        self.device_set = DeviceSet(self.events)
        self.executor = ReadExecutor(self.gateway, reader or ModbusReader(), self.device_set, self.events)
        self.scheduler = PollingScheduler(self.device_set, self.executor, self.events, sleep=sleep)

        self.heartbeat = HeartbeatSender(self.gateway, self.events, settings.heartbeat_interval_s)
        self.stream = EventStreamClient(
            self.gateway,
            self.executor,
            self.scheduler,
            self.events,
            path=settings.stream.path,
            silence_timeout=settings.stream.silence_timeout_s,
            watchdog_interval=settings.stream.watchdog_interval_s,
            reconnect_delay=settings.stream.reconnect_delay_s,
            on_config_applied=self._on_config_applied,
        )
        self.connectivity = ConnectivityManager(self.gateway, self.heartbeat, self.stream, self.events)

        self.status_server: StatusServer | None = None
        if settings.status.enabled:
            self.status_server = StatusServer(self, settings.status.host, settings.status.port)

        # Log ring buffer, fed from the event channel
        self._logs: deque[dict[str, Any]] = deque(maxlen=LOG_BUFFER_SIZE)
        self._linked_workspace: dict[str, Any] | None = None

        self._polling_wanted = False
        self._started_at = time.monotonic()
        self._shutdown_event = asyncio.Event()
        self._is_running = False

    def _load_config(self) -> dict:
        """Load configuration from YAML file"""
        data = read_config_file(self.config_path)
        if not data:
            logger.warning(f"Config file not found or empty: {self.config_path}")
        return data

    @property
    def is_running(self) -> bool:
        return self._is_running

    @property
    def uptime_seconds(self) -> int:
        return int(time.monotonic() - self._started_at)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> bool:
        """
        Start the agent: status server, session, configuration, polling.

        Returns:
            False when startup halted (no credential, or credential refused)
        """
        logger.info("Starting RelayWatch agent", extra={"version": self.settings.version})
        self._is_running = True

        if self.status_server is not None:
            await self.status_server.start()

        if not self.settings.backend.secret:
            self.events.log(
                "Agent secret not configured (backend.secret or RELAYWATCH_SECRET)",
                LogSeverity.ERROR,
            )
            return False

        while True:
            result = await self.connectivity.connect()
            if result.authenticated:
                break
            if not result.recoverable or self._shutdown_event.is_set():
                return False
            self.events.log(
                f"Retrying connection in {CONNECT_RETRY_SECONDS}s", LogSeverity.WARNING
            )
            await self._sleep(CONNECT_RETRY_SECONDS)
            if self._shutdown_event.is_set():
                return False

        await self.gateway.send_log("info", "Agent started", {"version": self.settings.version})
        await self.reload()
        return True

    async def run(self) -> bool:
        """Start, then wait for a shutdown signal"""
        if not await self.start():
            return False

        self._setup_signal_handlers()
        await self._shutdown_event.wait()
        return True

    async def stop(self) -> None:
        """Stop polling and tear down the session"""
        logger.info("Stopping RelayWatch agent")
        self._is_running = False
        self._polling_wanted = False

        await self.scheduler.stop(cancel_reads=True)
        await self.gateway.send_log("info", "Agent stopped")
        await self.connectivity.teardown()
        self._linked_workspace = None

        if self.status_server is not None:
            await self.status_server.stop()

        logger.info("RelayWatch agent stopped")

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    def _setup_signal_handlers(self) -> None:
        """Setup graceful shutdown signal handlers"""
        loop = asyncio.get_running_loop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self._handle_shutdown)
            except NotImplementedError:
                # Windows doesn't support add_signal_handler
                signal.signal(sig, lambda s, f: self._handle_shutdown())

    def _handle_shutdown(self) -> None:
        """Handle shutdown signal"""
        logger.info("Received shutdown signal")
        self._shutdown_event.set()

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def reload(self) -> bool:
        """Stop polling, refetch the device list, load it and start again"""
        self._polling_wanted = True
        await self.scheduler.stop()

        try:
            config = await self.gateway.get_config()
        except RelayWatchError as e:
            self.events.log(f"Error loading configuration: {e}", LogSeverity.ERROR)
            return False

        payload = config.get("registradores") or []
        devices, problems = parse_devices(payload)
        for problem in problems:
            self.events.log(problem, LogSeverity.WARNING)

        await self.scheduler.load(devices, fingerprint=config_fingerprint(payload))
        await self.scheduler.start()
        return True

    async def start_polling(self) -> bool:
        self._polling_wanted = True
        return await self.scheduler.start()

    async def stop_polling(self) -> None:
        self._polling_wanted = False
        await self.scheduler.stop()

    async def link_workspace(self, code: str) -> dict[str, Any] | None:
        """Link the agent to a workspace with a pairing code"""
        try:
            workspace = await self.gateway.link_workspace(code)
        except RelayWatchError as e:
            self.events.log(f"Error linking workspace: {e}", LogSeverity.ERROR)
            return None

        if workspace is None:
            self.events.log("Workspace code was not accepted", LogSeverity.WARNING)
            return None

        self._linked_workspace = dict(workspace)
        self.events.publish(WorkspaceLinked(workspace=dict(workspace)))
        self.events.log(
            f"Linked to workspace {workspace.get('nombre', workspace.get('id', ''))}",
            LogSeverity.SUCCESS,
        )
        return workspace

    async def _on_config_applied(self) -> None:
        # Polling idle at startup (no active device) starts once one shows up
        if self._polling_wanted and not self.scheduler.is_running:
            await self.scheduler.start()

    # ------------------------------------------------------------------
    # Presentation state
    # ------------------------------------------------------------------

    def drain_events(self) -> None:
        """Move pending log lines into the ring buffer"""
        while not self._log_inbox.empty():
            event = self._log_inbox.get_nowait()
            self._logs.appendleft({
                "timestamp": event.timestamp,
                "severity": event.severity.value,
                "message": event.message,
                "device_id": event.device_id,
            })

    def snapshot(self) -> dict[str, Any]:
        """Current agent state for display"""
        self.drain_events()
        session = self.gateway.session
        workspace = None
        if session is not None:
            workspace = self._linked_workspace or session.linked_workspace
        return {
            "connected": self.gateway.connected,
            "agent": dict(session.agent) if session else None,
            "workspace": workspace,
            "devices": self.device_set.snapshot(),
            "logs": list(self._logs),
            "polling_active": self.scheduler.is_running,
            "uptime_seconds": self.uptime_seconds,
            "stream": {
                "state": self.stream.state.value,
                "connects": self.stream.connect_count,
                "reconnects": self.stream.reconnect_count,
            },
        }
