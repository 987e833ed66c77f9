"""
Custom Exception Classes for the RelayWatch agent

Hierarchical exception structure for error handling across services.
"""


class RelayWatchError(Exception):
    """Base exception for all agent errors"""

    def __init__(self, message: str, recoverable: bool = True):
        self.message = message
        self.recoverable = recoverable
        super().__init__(message)


class ConfigError(RelayWatchError):
    """Local configuration errors"""

    def __init__(self, message: str, recoverable: bool = False):
        super().__init__(f"Config Error: {message}", recoverable)


class AuthFailure(RelayWatchError):
    """Missing or rejected agent credential - never retried automatically"""

    def __init__(self, message: str):
        super().__init__(f"Auth Error: {message}", recoverable=False)


class SessionExpired(RelayWatchError):
    """Backend reported an expired session token"""

    def __init__(self, message: str = "Session token expired"):
        super().__init__(message, recoverable=True)


class NotAuthenticated(RelayWatchError):
    """Backend call attempted without a session"""

    def __init__(self, message: str = "Not authenticated"):
        super().__init__(message, recoverable=True)


class TransportFailure(RelayWatchError):
    """Backend unreachable (connection refused, DNS, network down, timeout)"""

    def __init__(self, message: str, url: str | None = None):
        self.url = url
        super().__init__(f"Transport Error: {message}", recoverable=True)


class BackendError(RelayWatchError):
    """Backend answered with a non-success status"""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        code: str | None = None,
    ):
        self.status_code = status_code
        self.code = code
        super().__init__(message, recoverable=True)


class ProtocolFailure(RelayWatchError):
    """A single device read or test failed at the field-bus level"""

    def __init__(
        self,
        message: str,
        device_id: str | None = None,
        host: str | None = None,
        port: int | None = None,
    ):
        self.device_id = device_id
        self.host = host
        self.port = port
        super().__init__(message, recoverable=True)


class StreamFailure(RelayWatchError):
    """Event stream aborted, closed or went silent"""

    def __init__(self, message: str, reason: str = "error"):
        self.reason = reason
        super().__init__(f"Stream Error: {message}", recoverable=True)
