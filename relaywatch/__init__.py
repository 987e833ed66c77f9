"""
RelayWatch Field Agent

Reads values from remote Modbus devices on per-device intervals and relays
them to the central backend, staying live-reconfigurable over a
server-push event stream.
"""

__version__ = "1.0.0"
