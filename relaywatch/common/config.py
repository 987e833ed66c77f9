"""
Configuration Dataclasses

Type-safe structures for the agent:
- Local agent settings loaded from YAML (with environment fallbacks)
- Devices ("registradores") as delivered by the backend
- Ad-hoc test requests pushed over the event stream
"""

import hashlib
import json
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

from .exceptions import ConfigError

DEFAULT_INTERVAL_SECONDS = 60
DEFAULT_TIMEOUT_MS = 5000
DEFAULT_UNIT_ID = 1


class DeviceStatus(str, Enum):
    """Runtime status of a polled device"""
    INACTIVE = "inactive"
    ACTIVE = "active"
    READING = "reading"
    ERROR = "error"


class TestKind(str, Enum):
    """Address space exercised by a connectivity test"""
    REGISTERS = "registers"
    COILS = "coils"

    # not a pytest test class
    __test__ = False


@dataclass(frozen=True)
class ConnectionTarget:
    """Modbus TCP endpoint"""
    host: str
    port: int = 502
    unit_id: int = DEFAULT_UNIT_ID

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"


@dataclass
class Device:
    """A remote device polled on its own interval"""
    id: str
    name: str
    target: ConnectionTarget
    start_index: int = 0
    count: int = 1
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    interval_seconds: int = DEFAULT_INTERVAL_SECONDS
    active: bool = True
    kind: str | None = None      # "tipo" in the backend payload
    feeder: str | None = None    # "alimentador" in the backend payload
    # Runtime fields
    status: DeviceStatus = DeviceStatus.INACTIVE
    next_read_countdown: int | None = None

    def __post_init__(self):
        if self.status == DeviceStatus.INACTIVE and self.active:
            self.status = DeviceStatus.ACTIVE

    def apply_config(self, other: "Device") -> None:
        """Copy configuration fields from a freshly parsed device, keeping runtime state"""
        self.name = other.name
        self.target = other.target
        self.start_index = other.start_index
        self.count = other.count
        self.timeout_ms = other.timeout_ms
        self.interval_seconds = other.interval_seconds
        self.active = other.active
        self.kind = other.kind
        self.feeder = other.feeder

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "host": self.target.host,
            "port": self.target.port,
            "unit_id": self.target.unit_id,
            "start_index": self.start_index,
            "count": self.count,
            "timeout_ms": self.timeout_ms,
            "interval_seconds": self.interval_seconds,
            "active": self.active,
            "kind": self.kind,
            "feeder": self.feeder,
            "status": self.status.value,
            "next_read_countdown": self.next_read_countdown,
        }


@dataclass(frozen=True)
class TestRequest:
    """One-shot connectivity check requested by the backend"""
    id: str
    target: ConnectionTarget
    kind: TestKind = TestKind.REGISTERS
    start_index: int = 0
    count: int = 10

    __test__ = False


def _int_or(value: Any, default: int) -> int:
    """Coerce backend numbers (sometimes sent as strings); fall back on junk"""
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def parse_device(data: dict[str, Any]) -> Device:
    """Build a Device from a backend "registrador" payload"""
    if not data.get("id"):
        raise ValueError("device payload without id")

    active = data.get("activo") is not False
    interval = _int_or(data.get("intervaloSegundos"), DEFAULT_INTERVAL_SECONDS)

    return Device(
        id=str(data["id"]),
        name=data.get("nombre") or str(data["id"]),
        target=ConnectionTarget(
            host=data.get("ip", ""),
            port=_int_or(data.get("puerto"), 502),
            unit_id=_int_or(data.get("unitId"), DEFAULT_UNIT_ID),
        ),
        start_index=_int_or(data.get("indiceInicial"), 0),
        count=_int_or(data.get("cantidadRegistros"), 1),
        timeout_ms=_int_or(data.get("timeoutMs"), DEFAULT_TIMEOUT_MS),
        interval_seconds=interval if interval > 0 else DEFAULT_INTERVAL_SECONDS,
        active=active,
        kind=data.get("tipo"),
        feeder=data.get("alimentador"),
        status=DeviceStatus.ACTIVE if active else DeviceStatus.INACTIVE,
    )


def parse_devices(payload: list[dict[str, Any]] | None) -> tuple[list[Device], list[str]]:
    """
    Parse a backend device list, keeping ids unique.

    Returns:
        (devices in payload order, list of human-readable problems)
    """
    devices: list[Device] = []
    problems: list[str] = []
    seen: set[str] = set()

    for item in payload or []:
        try:
            device = parse_device(item)
        except (ValueError, TypeError, AttributeError) as e:
            problems.append(f"Skipping device payload: {e}")
            continue
        if device.id in seen:
            problems.append(f"Duplicate device id {device.id} ignored")
            continue
        seen.add(device.id)
        devices.append(device)

    return devices, problems


def parse_test_request(kind: TestKind, data: dict[str, Any]) -> TestRequest:
    """Build a TestRequest from a test-registrador / test-coils event payload"""
    if not data.get("id"):
        raise ValueError("test request without id")
    if not data.get("ip") or not _int_or(data.get("puerto"), 0):
        raise ValueError("test request needs ip and puerto")

    count_key = "cantidadBits" if kind == TestKind.COILS else "cantidadRegistros"
    count = _int_or(data.get(count_key), 0) or 10

    return TestRequest(
        id=str(data["id"]),
        target=ConnectionTarget(
            host=data["ip"],
            port=_int_or(data.get("puerto"), 502),
            unit_id=_int_or(data.get("unitId"), DEFAULT_UNIT_ID),
        ),
        kind=kind,
        start_index=_int_or(data.get("indiceInicial"), 0),
        count=count,
    )


def config_fingerprint(payload: list[dict[str, Any]] | None) -> str:
    """Stable hash of a device payload; any field change alters it"""
    relevant = sorted(
        (d for d in payload or [] if isinstance(d, dict)),
        key=lambda d: str(d.get("id") or ""),
    )
    content = json.dumps(relevant, sort_keys=True, default=str)
    return hashlib.md5(content.encode()).hexdigest()


@dataclass
class BackendSettings:
    """Central backend connection"""
    url: str = "http://localhost:3001"
    secret: str | None = None
    request_timeout_s: float = 10.0


@dataclass
class StreamSettings:
    """Server-push event stream"""
    path: str = "/agente/eventos"
    silence_timeout_s: float = 60.0
    watchdog_interval_s: float = 10.0
    reconnect_delay_s: float = 3.0


@dataclass
class StatusSettings:
    """Local status endpoint"""
    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 8090


@dataclass
class LoggingSettings:
    """Log output"""
    level: str = "INFO"
    format: str = "json"


@dataclass
class AgentSettings:
    """Complete local agent configuration"""
    backend: BackendSettings = field(default_factory=BackendSettings)
    stream: StreamSettings = field(default_factory=StreamSettings)
    status: StatusSettings = field(default_factory=StatusSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)
    version: str = "1.0.0"
    heartbeat_interval_s: float = 30.0


def find_config_path() -> str:
    """Find configuration file"""
    possible_paths = [
        os.environ.get("RELAYWATCH_CONFIG", ""),
        "/etc/relaywatch/config.yaml",
        "/opt/relaywatch/config.yaml",
        Path(__file__).parent.parent.parent / "config.yaml",
    ]

    for path in possible_paths:
        if not path:
            continue
        path = Path(path)
        if path.exists():
            return str(path)

    return "/etc/relaywatch/config.yaml"


def load_agent_settings(data: dict[str, Any] | None) -> AgentSettings:
    """Load AgentSettings from a dictionary, applying environment fallbacks"""
    data = data or {}
    backend = data.get("backend") or {}
    agent = data.get("agent") or {}
    stream = data.get("stream") or {}
    status = data.get("status") or {}
    log = data.get("logging") or {}

    return AgentSettings(
        backend=BackendSettings(
            url=(backend.get("url") or os.environ.get("RELAYWATCH_BACKEND_URL")
                 or "http://localhost:3001").rstrip("/"),
            secret=backend.get("secret") or os.environ.get("RELAYWATCH_SECRET") or None,
            request_timeout_s=float(backend.get("request_timeout_s", 10.0)),
        ),
        stream=StreamSettings(
            path=stream.get("path", "/agente/eventos"),
            silence_timeout_s=float(stream.get("silence_timeout_s", 60.0)),
            watchdog_interval_s=float(stream.get("watchdog_interval_s", 10.0)),
            reconnect_delay_s=float(stream.get("reconnect_delay_s", 3.0)),
        ),
        status=StatusSettings(
            enabled=bool(status.get("enabled", True)),
            host=status.get("host", "127.0.0.1"),
            port=int(status.get("port", 8090)),
        ),
        logging=LoggingSettings(
            level=os.environ.get("RELAYWATCH_LOG_LEVEL") or log.get("level", "INFO"),
            format=os.environ.get("RELAYWATCH_LOG_FORMAT") or log.get("format", "json"),
        ),
        version=str(agent.get("version", "1.0.0")),
        heartbeat_interval_s=float(agent.get("heartbeat_interval_s", 30.0)),
    )


def read_config_file(config_path: str) -> dict[str, Any]:
    """
    Read the YAML config file.

    A missing file yields an empty dict (defaults + environment);
    a malformed one raises ConfigError.
    """
    try:
        with open(config_path, "r") as f:
            return yaml.safe_load(f) or {}
    except FileNotFoundError:
        return {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Error parsing {config_path}: {e}")
