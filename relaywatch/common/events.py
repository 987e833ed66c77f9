"""
Agent Event Channel

Typed notifications flowing from the core toward the presentation layer:
device-set snapshots, per-device status deltas, countdown ticks,
connectivity flags and free-text log lines.

Subscribers get their own bounded asyncio.Queue; publishing never blocks
and never fails because a consumer is slow (oldest events are dropped).
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Union

from .logging_setup import get_service_logger

logger = get_service_logger("events")


class LogSeverity(str, Enum):
    """Severity tags understood by the presentation layer"""
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"
    CYCLE = "cycle"


@dataclass(frozen=True)
class LogEvent:
    message: str
    severity: LogSeverity = LogSeverity.INFO
    device_id: str | None = None
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


@dataclass(frozen=True)
class StatusDelta:
    """Status change of one device"""
    id: str
    status: str
    countdown: int | None
    success_count: int
    fail_count: int


@dataclass(frozen=True)
class CountdownTick:
    """Seconds until next read, per armed device"""
    countdowns: dict[str, int]


@dataclass(frozen=True)
class DevicesSnapshot:
    devices: list[dict[str, Any]]


@dataclass(frozen=True)
class PollingChanged:
    active: bool


@dataclass(frozen=True)
class ConnectivityChanged:
    connected: bool
    reason: str | None = None


@dataclass(frozen=True)
class AgentIdentified:
    agent: dict[str, Any]


@dataclass(frozen=True)
class WorkspaceLinked:
    workspace: dict[str, Any]


AgentEvent = Union[
    LogEvent,
    StatusDelta,
    CountdownTick,
    DevicesSnapshot,
    PollingChanged,
    ConnectivityChanged,
    AgentIdentified,
    WorkspaceLinked,
]

_LEVELS = {
    LogSeverity.INFO: logger.info,
    LogSeverity.SUCCESS: logger.info,
    LogSeverity.CYCLE: logger.info,
    LogSeverity.WARNING: logger.warning,
    LogSeverity.ERROR: logger.error,
}


class EventBus:
    """Fan-out of agent events to any number of queue subscribers"""

    def __init__(self, max_queue_size: int = 1000):
        self._max_queue_size = max_queue_size
        self._subscribers: list[tuple[asyncio.Queue, tuple[type, ...]]] = []

    def subscribe(self, *kinds: type) -> asyncio.Queue:
        """Queue receiving every event, or only events of the given types"""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._max_queue_size)
        self._subscribers.append((queue, kinds))
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers = [(q, k) for q, k in self._subscribers if q is not queue]

    def publish(self, event: AgentEvent) -> None:
        for queue, kinds in self._subscribers:
            if kinds and not isinstance(event, kinds):
                continue
            if queue.full():
                # Slow consumer: drop its oldest event
                queue.get_nowait()
            queue.put_nowait(event)

    def log(
        self,
        message: str,
        severity: LogSeverity = LogSeverity.INFO,
        device_id: str | None = None,
    ) -> None:
        """Publish a log line and mirror it to the service log"""
        extra = {"severity": severity.value}
        if device_id:
            extra["device_id"] = device_id
        _LEVELS[severity](message, extra=extra)
        self.publish(LogEvent(message=message, severity=severity, device_id=device_id))
