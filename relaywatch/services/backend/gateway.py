"""
Backend Gateway

Authenticated JSON calls to the central backend.

- Reuses a single httpx.AsyncClient
- Re-authenticates once on an expired session and replays the call
- Tracks backend reachability: transport failures flip `connected` off,
  the next successful call flips it back on
"""

from dataclasses import dataclass, field
from typing import Any

import httpx

from relaywatch.common.events import ConnectivityChanged, EventBus, LogSeverity
from relaywatch.common.exceptions import (
    AuthFailure,
    BackendError,
    NotAuthenticated,
    SessionExpired,
    TransportFailure,
)
from relaywatch.common.logging_setup import get_service_logger

logger = get_service_logger("backend.gateway")

AUTH_ENDPOINT = "/agente/auth"
TOKEN_EXPIRED_CODE = "TOKEN_EXPIRED"


@dataclass
class Session:
    """Authenticated agent session"""
    token: str
    agent: dict[str, Any] = field(default_factory=dict)
    workspaces: list[dict[str, Any]] = field(default_factory=list)

    @property
    def linked_workspace(self) -> dict[str, Any] | None:
        return self.workspaces[0] if self.workspaces else None


class BackendGateway:
    """HTTP client for the agent REST API"""

    def __init__(
        self,
        base_url: str,
        secret: str | None,
        events: EventBus,
        timeout: float = 10.0,
        version: str = "1.0.0",
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.secret = secret
        self.timeout = timeout
        self.version = version
        self._events = events
        self._transport = transport

        self._client: httpx.AsyncClient | None = None
        self._session: Session | None = None
        self._connected = False
        self._connection_lost = False

    # ------------------------------------------------------------------
    # Client / session state
    # ------------------------------------------------------------------

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create reusable HTTP client"""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=f"{self.base_url}/api",
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Drop the session and close the HTTP client"""
        self._session = None
        self._connected = False
        if self._client and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    @property
    def session(self) -> Session | None:
        return self._session

    @property
    def is_authenticated(self) -> bool:
        return self._session is not None

    @property
    def connected(self) -> bool:
        return self._connected and self._session is not None

    def auth_headers(self) -> dict[str, str]:
        if not self._session:
            return {}
        return {"Authorization": f"Bearer {self._session.token}"}

    def mark_disconnected(self, reason: str) -> None:
        """Record a transport failure; notifies only when the flag changes"""
        if self._connected:
            self._connected = False
            self._connection_lost = True
            self._events.publish(ConnectivityChanged(connected=False, reason=reason))
            self._events.log(f"No connection to backend: {reason}", LogSeverity.WARNING)

    def mark_connected(self) -> None:
        if not self._connected:
            self._connected = True
            self._events.publish(ConnectivityChanged(connected=True))
            if self._connection_lost:
                self._events.log("Backend connection restored", LogSeverity.SUCCESS)

    # ------------------------------------------------------------------
    # Core request
    # ------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        endpoint: str,
        payload: Any = None,
        allow_reauth: bool = True,
    ) -> Any:
        client = self._get_client()
        headers = {} if endpoint == AUTH_ENDPOINT else self.auth_headers()

        try:
            response = await client.request(method, endpoint, json=payload, headers=headers)
        except httpx.TransportError as e:
            reason = str(e) or e.__class__.__name__
            self.mark_disconnected(reason)
            raise TransportFailure(reason, url=f"{self.base_url}/api{endpoint}") from e

        self.mark_connected()
        data = self._decode(response)

        if response.is_success:
            return data

        error_code = data.get("code") if isinstance(data, dict) else None
        error_text = (data.get("error") if isinstance(data, dict) else None) or f"HTTP {response.status_code}"

        if response.status_code == 401 and error_code == TOKEN_EXPIRED_CODE and endpoint != AUTH_ENDPOINT:
            if not allow_reauth:
                raise SessionExpired()

            self._events.log("Session expired, re-authenticating...", LogSeverity.WARNING)
            try:
                await self.authenticate()
            except (AuthFailure, TransportFailure, BackendError) as e:
                logger.warning(f"Re-authentication failed: {e}")
                raise SessionExpired() from e

            return await self._request(method, endpoint, payload, allow_reauth=False)

        raise BackendError(error_text, status_code=response.status_code, code=error_code)

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return {"error": response.text}

    def open_stream(self, endpoint: str):
        """Long-lived GET for the server-push channel (no read timeout)"""
        headers = {
            **self.auth_headers(),
            "Accept": "text/event-stream",
            "Cache-Control": "no-cache",
        }
        return self._get_client().stream(
            "GET",
            endpoint,
            headers=headers,
            timeout=httpx.Timeout(self.timeout, read=None),
        )

    def _require_session(self) -> None:
        if not self._session:
            raise NotAuthenticated()

    # ------------------------------------------------------------------
    # API operations
    # ------------------------------------------------------------------

    async def authenticate(self) -> Session:
        """
        Log in with the agent secret.

        Raises:
            AuthFailure: secret missing or rejected
            TransportFailure: backend unreachable
        """
        if not self.secret:
            raise AuthFailure("agent secret is not configured")

        try:
            data = await self._request("POST", AUTH_ENDPOINT, {"claveSecreta": self.secret})
        except BackendError as e:
            if e.status_code in (400, 401, 403):
                raise AuthFailure(e.message) from e
            raise

        if not isinstance(data, dict) or not data.get("exito") or not data.get("token"):
            error = data.get("error") if isinstance(data, dict) else None
            raise AuthFailure(error or "authentication rejected")

        self._session = Session(
            token=data["token"],
            agent=data.get("agente") or {},
            workspaces=list(data.get("workspaces") or []),
        )

        if data.get("advertencia"):
            self._events.log(f"Backend warning: {data['advertencia']}", LogSeverity.WARNING)

        logger.info(
            f"Authenticated as {self._session.agent.get('nombre', 'unknown')}",
            extra={"agent_id": self._session.agent.get("id")},
        )
        return self._session

    async def heartbeat(self, uptime_seconds: int | None = None) -> None:
        self._require_session()
        payload: dict[str, Any] = {"version": self.version}
        if uptime_seconds is not None:
            payload["uptimeSegundos"] = uptime_seconds
        await self._request("POST", "/agente/heartbeat", payload)

    async def get_config(self) -> dict[str, Any]:
        """Fetch the agent configuration ({registradores: [...]})"""
        self._require_session()
        data = await self._request("GET", "/agente/config")
        return data if isinstance(data, dict) else {}

    async def post_readings(self, readings: list[dict[str, Any]]) -> dict[str, Any]:
        """Forward reading records; returns {ok, insertadas}"""
        self._require_session()
        if not readings:
            return {"ok": True, "insertadas": 0}
        data = await self._request("POST", "/agente/lecturas", {"lecturas": readings})
        return data if isinstance(data, dict) else {}

    async def post_test_result(self, test_id: str, result: dict[str, Any]) -> Any:
        self._require_session()
        return await self._request("POST", f"/agente/tests/{test_id}/resultado", result)

    async def send_log(
        self,
        level: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Forward a log line to the backend (best effort)"""
        if not self._session:
            return
        try:
            await self._request(
                "POST",
                "/agente/log",
                {"nivel": level, "mensaje": message, "metadata": metadata or {}},
            )
        except (TransportFailure, BackendError, SessionExpired) as e:
            logger.warning(f"Error sending log to backend: {e}")

    async def link_workspace(self, code: str) -> dict[str, Any] | None:
        """Link this agent to a workspace using a pairing code"""
        self._require_session()
        data = await self._request("POST", "/agente/vincular", {"codigo": code})
        workspace = data.get("workspace") if isinstance(data, dict) else None
        if workspace and data.get("exito"):
            self._session.workspaces.append(workspace)
            return workspace
        return None
