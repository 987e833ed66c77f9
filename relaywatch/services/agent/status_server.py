"""
Local Status Server

Small aiohttp app exposing the agent state and its commands on localhost:

    GET  /health          liveness + component states
    GET  /status          full agent snapshot
    GET  /devices         device list with counters
    POST /polling/start   start polling
    POST /polling/stop    stop polling
    POST /reload          refetch config and restart polling
    POST /workspace/link  link a workspace ({"code": "..."})
"""

from datetime import datetime, timezone

from aiohttp import web

from relaywatch.common.logging_setup import get_service_logger

logger = get_service_logger("agent.status")


class StatusServer:
    """HTTP front for an AgentService"""

    def __init__(self, agent, host: str = "127.0.0.1", port: int = 8090):
        self.agent = agent
        self.host = host
        self.port = port
        self._runner: web.AppRunner | None = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/health", self._health_handler)
        app.router.add_get("/status", self._status_handler)
        app.router.add_get("/devices", self._devices_handler)
        app.router.add_post("/polling/start", self._start_polling_handler)
        app.router.add_post("/polling/stop", self._stop_polling_handler)
        app.router.add_post("/reload", self._reload_handler)
        app.router.add_post("/workspace/link", self._link_handler)
        return app

    async def start(self) -> None:
        """Start the status HTTP server"""
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()

        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()

        logger.info(f"Status server started on {self.host}:{self.port}")

    async def stop(self) -> None:
        """Stop the status HTTP server"""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

    async def _health_handler(self, request: web.Request) -> web.Response:
        """Handle health check requests"""
        agent = self.agent
        return web.json_response({
            "status": "healthy" if agent.is_running else "unhealthy",
            "service": "relaywatch-agent",
            "uptime": agent.uptime_seconds,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "components": {
                "heartbeat": "running" if agent.heartbeat.is_running else "stopped",
                "stream": agent.stream.state.value,
                "polling": "running" if agent.scheduler.is_running else "stopped",
                "backend": "connected" if agent.gateway.connected else "disconnected",
            },
        })

    async def _status_handler(self, request: web.Request) -> web.Response:
        return web.json_response(self.agent.snapshot())

    async def _devices_handler(self, request: web.Request) -> web.Response:
        return web.json_response({"devices": self.agent.device_set.snapshot()})

    async def _start_polling_handler(self, request: web.Request) -> web.Response:
        started = await self.agent.start_polling()
        return web.json_response({
            "started": started,
            "polling_active": self.agent.scheduler.is_running,
        })

    async def _stop_polling_handler(self, request: web.Request) -> web.Response:
        await self.agent.stop_polling()
        return web.json_response({"polling_active": self.agent.scheduler.is_running})

    async def _reload_handler(self, request: web.Request) -> web.Response:
        ok = await self.agent.reload()
        return web.json_response({"ok": ok}, status=200 if ok else 502)

    async def _link_handler(self, request: web.Request) -> web.Response:
        try:
            body = await request.json()
        except ValueError:
            body = None
        code = body.get("code") if isinstance(body, dict) else None
        if not code:
            return web.json_response({"ok": False, "error": "code is required"}, status=400)

        workspace = await self.agent.link_workspace(str(code))
        if workspace is None:
            return web.json_response({"ok": False, "error": "workspace not linked"}, status=502)
        return web.json_response({"ok": True, "workspace": workspace})
