"""
Device Service - Modbus Reads

Responsibilities:
- One-shot Modbus TCP reads (holding registers and coils)
- Execute device reads and forward readings
- Execute backend-requested connectivity tests
"""

from .modbus_client import ModbusReader
from .executor import ReadExecutor, ReadOutcome

__all__ = ["ModbusReader", "ReadExecutor", "ReadOutcome"]
