"""
RelayWatch Agent Services

Layered from the leaf up:
1. Backend - REST gateway, heartbeat, event stream, connectivity manager
2. Device - Modbus reads and the read/test executor
3. Polling - Live device set, per-device timers, scheduler
4. Agent - Session/status facade and local status endpoint
"""
