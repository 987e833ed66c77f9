"""
Connectivity Manager

Owns the backend session:
- connect(): authenticate, then start the heartbeat and the event stream
- teardown(): stop both activities and drop the session

Missing or rejected credentials are the only unrecoverable condition;
connect() reports them instead of raising so the caller can halt cleanly.
"""

from dataclasses import dataclass

from relaywatch.common.events import AgentIdentified, EventBus, LogSeverity, WorkspaceLinked
from relaywatch.common.exceptions import AuthFailure, RelayWatchError
from relaywatch.common.logging_setup import get_service_logger
from .gateway import BackendGateway, Session
from .heartbeat import HeartbeatSender
from .stream import EventStreamClient

logger = get_service_logger("backend.connectivity")


@dataclass
class ConnectResult:
    """Outcome of connect()"""
    authenticated: bool
    session: Session | None = None
    error: str | None = None
    # False when the credential itself was refused (do not retry)
    recoverable: bool = True


class ConnectivityManager:
    """Session lifecycle plus heartbeat and event stream"""

    def __init__(
        self,
        gateway: BackendGateway,
        heartbeat: HeartbeatSender,
        stream: EventStreamClient,
        events: EventBus,
    ):
        self.gateway = gateway
        self.heartbeat = heartbeat
        self.stream = stream
        self._events = events

    @property
    def connected(self) -> bool:
        return self.gateway.connected

    @property
    def session(self) -> Session | None:
        return self.gateway.session

    async def connect(self, secret: str | None = None) -> ConnectResult:
        """Authenticate and start the background activities"""
        if secret is not None:
            self.gateway.secret = secret

        self._events.log("Authenticating with backend...", LogSeverity.INFO)
        try:
            session = await self.gateway.authenticate()
        except AuthFailure as e:
            self._events.log(str(e), LogSeverity.ERROR)
            return ConnectResult(authenticated=False, error=e.message, recoverable=False)
        except RelayWatchError as e:
            self._events.log(f"Could not authenticate: {e}", LogSeverity.ERROR)
            return ConnectResult(authenticated=False, error=e.message)

        name = session.agent.get("nombre", "agent")
        self._events.log(f"Authenticated as {name}", LogSeverity.SUCCESS)
        self._events.publish(AgentIdentified(agent=dict(session.agent)))
        if session.linked_workspace:
            self._events.publish(WorkspaceLinked(workspace=dict(session.linked_workspace)))
        else:
            self._events.log("Agent is not linked to any workspace", LogSeverity.WARNING)

        await self.heartbeat.start()
        await self.stream.start()
        return ConnectResult(authenticated=True, session=session)

    async def teardown(self) -> None:
        """Stop the stream and heartbeat, then drop the session"""
        await self.stream.stop()
        await self.heartbeat.stop()
        await self.gateway.close()
        logger.info("Connectivity torn down")
