"""
Per-connection session: role/topic handshake, registration and the read loop.
"""
import threading
import logging
from enum import IntEnum
from typing import Optional

from .protocol import (
    ClientConnection, ProtocolError, Role,
    INVALID_ROLE_MESSAGE, format_ack, format_broadcast, is_terminate,
)
from .registry import Registry


logger = logging.getLogger(__name__)

DEFAULT_TOPIC = 'default'


class SessionState(IntEnum):
    """Session states"""
    AWAITING_ROLE = 1
    AWAITING_TOPIC = 2
    REGISTERED = 3
    CLOSED = 4


class Session:
    """
    Drives one client connection from handshake to close.

    The topic-aware variant reads a role line then a topic line. Without
    topics every session joins ``default_topic`` so publishers reach all
    subscribers.
    """

    def __init__(self,
                 connection: ClientConnection,
                 registry: Registry,
                 topic_aware: bool = True,
                 default_topic: str = DEFAULT_TOPIC):
        self.connection = connection
        self.registry = registry
        self.topic_aware = topic_aware
        self.default_topic = default_topic

        self.role: Optional[Role] = None
        self.topic: Optional[str] = None
        self.state = SessionState.AWAITING_ROLE

        self._lock = threading.Lock()

    @property
    def peer_identity(self) -> str:
        return self.connection.peer_identity

    def run(self) -> None:
        """Run the session until the peer terminates or disconnects"""
        try:
            if self._handshake():
                self._serve()
        except ProtocolError as e:
            logger.info(f"Connection to {self.peer_identity} lost: {e}")
        finally:
            self.close()

    def _handshake(self) -> bool:
        line = self.connection.receive_line()
        if line is None:
            logger.info(f"Client {self.peer_identity} disconnected before sending role")
            return False

        role = Role.resolve(line)
        if role is None:
            logger.warning(f"Rejected {self.peer_identity}: invalid role {line.strip()!r}")
            self.connection.send_line(INVALID_ROLE_MESSAGE)
            return False
        self.role = role

        if self.topic_aware:
            if not self._advance(SessionState.AWAITING_TOPIC):
                return False
            line = self.connection.receive_line()
            if line is None:
                logger.info(f"Client {self.peer_identity} disconnected before sending topic")
                return False
            self.topic = line.strip()
        else:
            self.topic = self.default_topic

        # an acknowledged session is already visible to publish()
        with self._lock:
            if self.state == SessionState.CLOSED:
                return False
            self.registry.register(self)
            self.state = SessionState.REGISTERED

        self.connection.send_line(format_ack(self.role, self.topic if self.topic_aware else None))
        return True

    def _advance(self, state: SessionState) -> bool:
        with self._lock:
            if self.state == SessionState.CLOSED:
                return False
            self.state = state
            return True

    def _serve(self) -> None:
        while True:
            line = self.connection.receive_line()
            if line is None:
                logger.info(f"[{self.role.value} DISCONNECTED] {self.peer_identity} "
                            f"(topic {self.topic!r}) closed the connection")
                return

            if is_terminate(line):
                logger.info(f"[{self.role.value} DISCONNECTED] {self.peer_identity} "
                            f"(topic {self.topic!r}) terminated")
                return

            if self.role is Role.PUBLISHER:
                logger.info(f"[{self.role.value} - {self.peer_identity} - Topic: {self.topic}]: {line}")
                self.registry.publish(self.topic, format_broadcast(self.peer_identity, line), self)
            else:
                logger.debug(f"Ignoring line from subscriber {self.peer_identity}")

    def send(self, line: str) -> None:
        """Deliver one line to this session's peer"""
        self.connection.send_line(line)

    def close(self) -> None:
        """Unregister and release the connection; safe to call more than once"""
        with self._lock:
            if self.state == SessionState.CLOSED:
                return
            self.state = SessionState.CLOSED

        self.registry.unregister(self)
        self.connection.close()

    def __repr__(self) -> str:
        role = self.role.value if self.role else None
        return f"Session(peer={self.peer_identity}, role={role}, topic={self.topic!r}, state={self.state.name})"
