"""
Backend Service - Central API Connectivity

Responsibilities:
- Authenticated REST calls with one transparent re-login on token expiry
- Heartbeat every 30 seconds
- Server-push event stream with silence watchdog and reconnect
  (see stream.py / connectivity.py)
"""

from .gateway import BackendGateway, Session
from .heartbeat import HeartbeatSender

__all__ = ["BackendGateway", "Session", "HeartbeatSender"]
