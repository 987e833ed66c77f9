"""
Common Utilities

Shared modules used across all services:
- config.py - Device/test types, backend payload parsing, local settings
- events.py - Typed event channel toward the presentation layer
- exceptions.py - Custom exception classes
- logging_setup.py - Structured logging setup
"""

from .config import (
    AgentSettings,
    ConnectionTarget,
    Device,
    DeviceStatus,
    TestKind,
    TestRequest,
    config_fingerprint,
    load_agent_settings,
    parse_devices,
    parse_test_request,
)
from .events import (
    EventBus,
    LogSeverity,
)
from .exceptions import (
    RelayWatchError,
    ConfigError,
    AuthFailure,
    SessionExpired,
    NotAuthenticated,
    TransportFailure,
    BackendError,
    ProtocolFailure,
    StreamFailure,
)
from .logging_setup import (
    setup_logging,
    get_service_logger,
    apply_log_settings,
    log_device_read,
)

__all__ = [
    # Config
    "AgentSettings",
    "ConnectionTarget",
    "Device",
    "DeviceStatus",
    "TestKind",
    "TestRequest",
    "config_fingerprint",
    "load_agent_settings",
    "parse_devices",
    "parse_test_request",
    # Events
    "EventBus",
    "LogSeverity",
    # Exceptions
    "RelayWatchError",
    "ConfigError",
    "AuthFailure",
    "SessionExpired",
    "NotAuthenticated",
    "TransportFailure",
    "BackendError",
    "ProtocolFailure",
    "StreamFailure",
    # Logging
    "setup_logging",
    "get_service_logger",
    "apply_log_settings",
    "log_device_read",
]
