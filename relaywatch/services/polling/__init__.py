"""
Polling Service - Per-Device Timers

Responsibilities:
- Own the live device set and its counters
- Staggered first reads, then one timer per device on its own interval
- Reconcile live configuration changes without a full restart
"""

from .device_set import DeviceSet, ReadCounters
from .scheduler import PollingScheduler

__all__ = ["DeviceSet", "ReadCounters", "PollingScheduler"]
