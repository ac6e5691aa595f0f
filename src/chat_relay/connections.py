"""Live session tracking and best-effort broadcast."""
from __future__ import annotations

import asyncio
import enum
import logging
import uuid
from typing import Any, Dict, List, Optional, Protocol

from .errors import DeliveryError
from .models import OutboundFrame

logger = logging.getLogger(__name__)


class Transport(Protocol):
    async def send_text(self, data: str) -> None: ...


class SessionState(enum.Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ASSOCIATED = "associated"
    DISCONNECTED = "disconnected"


class Session:
    """One live client connection.

    Frames are queued on a bounded outbox and written by :meth:`run_writer`,
    so a broadcast only enqueues and never waits on a slow socket. Frames
    queued for one session always go out in the order they were queued.
    """

    def __init__(self, transport: Transport, *, outbox_size: int = 256) -> None:
        self.id = uuid.uuid4().hex
        self.transport = transport
        self.user: Optional[str] = None
        self.state = SessionState.CONNECTING
        self._outbox: asyncio.Queue[Optional[str]] = asyncio.Queue(maxsize=outbox_size)

    @property
    def closed(self) -> bool:
        return self.state is SessionState.DISCONNECTED

    def push(self, frame: str) -> bool:
        """Queue ``frame``; False if the session is already gone."""
        if self.closed:
            return False
        try:
            self._outbox.put_nowait(frame)
        except asyncio.QueueFull:
            raise DeliveryError(f"outbox full for session {self.id}")
        return True

    def reply(self, event: str, payload: Dict[str, Any]) -> bool:
        """Queue a frame for this session only."""
        return self.push(OutboundFrame(type=event, data=payload).model_dump_json())

    async def run_writer(self) -> None:
        """Drain the outbox into the transport until closed or the socket fails."""
        while True:
            frame = await self._outbox.get()
            if frame is None:
                return
            try:
                await self.transport.send_text(frame)
            except Exception as e:
                if not self.closed:
                    logger.warning("Delivery to session %s (%s) failed: %s", self.id, self.user or "anonymous", e)
                self.state = SessionState.DISCONNECTED
                return

    def close(self) -> None:
        self.state = SessionState.DISCONNECTED
        try:
            self._outbox.put_nowait(None)
        except asyncio.QueueFull:
            # writer is torn down by its owner's task cancellation
            pass

    def backlog(self) -> int:
        return self._outbox.qsize()


class ConnectionRegistry:
    """Owns the set of connected sessions."""

    def __init__(self) -> None:
        self._sessions: Dict[str, Session] = {}
        self._lock = asyncio.Lock()

    async def register(self, session: Session) -> None:
        if session.closed:
            raise ValueError(f"session {session.id} is already disconnected")
        async with self._lock:
            self._sessions[session.id] = session
            session.state = SessionState.CONNECTED
        logger.info("Session %s connected (%d live)", session.id, len(self._sessions))

    async def unregister(self, session: Session) -> None:
        async with self._lock:
            self._sessions.pop(session.id, None)
            session.close()
        logger.info("Session %s disconnected (%s)", session.id, session.user or "anonymous")

    async def associate(self, session: Session, user: str) -> None:
        async with self._lock:
            if session.closed or session.id not in self._sessions:
                logger.debug("Ignoring join for unknown session %s", session.id)
                return
            session.user = user
            session.state = SessionState.ASSOCIATED
        logger.info("Session %s joined as %s", session.id, user)

    async def broadcast(self, event: str, payload: Dict[str, Any]) -> int:
        """Queue ``payload`` for every live session; returns how many accepted it.

        A failing session is logged and skipped, the rest still get the frame.
        """
        frame = OutboundFrame(type=event, data=payload).model_dump_json()
        async with self._lock:
            targets = list(self._sessions.values())
        delivered = 0
        for session in targets:
            try:
                if session.push(frame):
                    delivered += 1
            except DeliveryError as e:
                logger.warning("Broadcast %s skipped session %s: %s", event, session.id, e)
        return delivered

    def sessions(self) -> List[Session]:
        return list(self._sessions.values())

    def __len__(self) -> int:
        return len(self._sessions)
