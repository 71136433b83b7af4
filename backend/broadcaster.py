import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from fastapi.encoders import jsonable_encoder
from fastapi.websockets import WebSocketState

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


def make_message(message_type: str, data: Any = None) -> Dict[str, Any]:
    message = {"type": message_type}
    if data is not None:
        message["data"] = jsonable_encoder(data)
    return message


def transport_closed(socket: Any) -> bool:
    return any(getattr(socket, attr, None) == WebSocketState.DISCONNECTED
               for attr in ("client_state", "application_state"))


@dataclass(eq=False)
class Session:
    """
    One push-channel subscriber. `socket` needs async `send_text(str)` and `close()`,
    which FastAPI's WebSocket provides.
    """
    socket: Any
    ip: str = "unknown"
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    connected_at: datetime = field(default_factory=datetime.now)
    # Last inbound frame of any kind
    last_ack_at: datetime = field(default_factory=datetime.now)
    state: SessionState = SessionState.CONNECTING


class Broadcaster:
    """
    Registry of push sessions. Only OPEN sessions receive broadcasts, so a session
    gets `initial-data` before any `port-update`.
    """

    def __init__(self):
        self.sessions: Dict[str, Session] = {}

    def __len__(self) -> int:
        return len(self.sessions)

    def open_sessions(self) -> List[Session]:
        return [s for s in self.sessions.values() if s.state == SessionState.OPEN]

    def register(self, socket: Any, ip: str = "unknown") -> Session:
        session = Session(socket=socket, ip=ip)
        self.sessions[session.id] = session
        logger.info(f"Client connected from {ip} ({len(self.sessions)} total)")
        return session

    def open(self, session: Session) -> None:
        if session.state == SessionState.CONNECTING:
            session.state = SessionState.OPEN

    def acknowledge(self, session: Session) -> None:
        session.last_ack_at = datetime.now()

    async def remove(self, session: Session, close: bool = True) -> None:
        was_open = session.state != SessionState.CLOSED
        session.state = SessionState.CLOSED
        self.sessions.pop(session.id, None)
        if close and was_open:
            try:
                await session.socket.close()
            except Exception as e:
                logger.debug(f"Error closing session {session.id}: {e}")
        if was_open:
            logger.info(f"Client {session.ip} disconnected ({len(self.sessions)} remaining)")

    async def _send_text(self, session: Session, payload: str) -> bool:
        try:
            await session.socket.send_text(payload)
            return True
        except Exception as e:
            logger.warning(f"Send to {session.ip} failed, dropping session: {e}")
            await self.remove(session)
            return False

    async def send(self, session: Session, message: Dict[str, Any]) -> bool:
        if session.state == SessionState.CLOSED:
            return False
        return await self._send_text(session, json.dumps(message))

    async def broadcast(self, message: Dict[str, Any]) -> int:
        """Send one serialized message to every OPEN session. Returns the delivery count."""
        targets = self.open_sessions()
        if not targets:
            return 0
        payload = json.dumps(message)
        delivered = 0
        for session in targets:
            if await self._send_text(session, payload):
                delivered += 1
        return delivered

    async def heartbeat(self, idle_timeout: Optional[float] = None, now: Optional[datetime] = None) -> int:
        """
        Drop sessions whose transport has gone away. Protocol-level ping/pong is
        left to the server (uvicorn's ws_ping_interval), so nothing is sent here.
        With `idle_timeout` set, sessions silent for longer than that are dropped too.
        Returns the number of sessions removed.
        """
        now = now or datetime.now()
        removed = 0
        for session in list(self.sessions.values()):
            if transport_closed(session.socket):
                logger.info(f"Client {session.ip} transport closed, removing")
            elif idle_timeout is not None and (now - session.last_ack_at).total_seconds() > idle_timeout:
                logger.info(f"Client {session.ip} idle for over {idle_timeout}s, terminating")
            else:
                continue
            await self.remove(session)
            removed += 1
        return removed

    async def close_all(self) -> None:
        for session in list(self.sessions.values()):
            await self.remove(session)
