"""
Line-based TCP protocol for the relay.
Every frame is one UTF-8 text line terminated by a newline.
"""
import socket
import threading
import logging
import time
from typing import Optional
from enum import Enum, IntEnum


logger = logging.getLogger(__name__)

ENCODING = 'utf-8'
TERMINATE = 'terminate'
INVALID_ROLE_MESSAGE = 'Invalid role. Use PUBLISHER or SUBSCRIBER'


class ProtocolError(Exception):
    """Protocol-related errors"""
    pass


class ConnectionState(IntEnum):
    """Connection states"""
    CONNECTED = 1
    DISCONNECTING = 2
    DISCONNECTED = 3


class Role(Enum):
    PUBLISHER = 'PUBLISHER'
    SUBSCRIBER = 'SUBSCRIBER'

    @classmethod
    def resolve(cls, line: Optional[str]) -> Optional['Role']:
        if line is None:
            return None
        try:
            return Role(line.strip().upper())
        except ValueError:
            return None


def is_terminate(line: str) -> bool:
    """True for the session termination line, in any case"""
    return line.strip().lower() == TERMINATE


def format_ack(role: Role, topic: Optional[str] = None) -> str:
    if topic is None:
        return f"Registered as {role.value}"
    return f"Registered as {role.value} on topic: {topic}"


def format_broadcast(sender: str, line: str) -> str:
    """Tag a published line with the identity of its publisher"""
    return f"[Publisher {sender}]: {line}"


def peer_identity(address) -> str:
    """Render a socket address as host:port"""
    if isinstance(address, tuple) and len(address) >= 2:
        return f"{address[0]}:{address[1]}"
    return str(address)


class ClientConnection:
    """A newline-delimited text channel to one remote peer"""

    def __init__(self, sock: socket.socket, address: tuple):
        self.socket = sock
        self.address = address
        self.peer_identity = peer_identity(address)
        self.state = ConnectionState.CONNECTED

        self.created_at = time.time()
        self.last_activity = time.time()

        self._lock = threading.RLock()
        self._send_lock = threading.Lock()
        self._reader = sock.makefile('rb')
        self._closed = False

        logger.debug(f"Opened connection to {self.peer_identity}")

    def send_line(self, line: str) -> None:
        """Send a single line to the peer"""
        if self.state != ConnectionState.CONNECTED:
            raise ProtocolError(f"Cannot send: connection {self.peer_identity} not connected")

        try:
            with self._send_lock:
                self.socket.sendall((line + '\n').encode(ENCODING))
                self.last_activity = time.time()

        except OSError as e:
            logger.debug(f"Failed to send to {self.peer_identity}: {e}")
            self.state = ConnectionState.DISCONNECTED
            raise ProtocolError(f"Send failed: {e}")

    def receive_line(self) -> Optional[str]:
        """
        Receive the next line from the peer, without its line terminator.
        Returns None on end of stream, reset, or a forced close.
        """
        if self.state != ConnectionState.CONNECTED:
            return None

        try:
            data = self._reader.readline()
        except (OSError, ValueError) as e:
            # ValueError: the reader was closed underneath us
            logger.debug(f"Read from {self.peer_identity} failed: {e}")
            return None

        if not data:
            return None

        self.last_activity = time.time()
        return data.decode(ENCODING, errors='replace').rstrip('\r\n')

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    def close(self) -> None:
        """Close the connection, unblocking any pending read"""
        with self._lock:
            # a failed send sets DISCONNECTED without releasing the socket
            if self._closed:
                return
            self._closed = True

            self.state = ConnectionState.DISCONNECTING

            try:
                self.socket.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass  # already shut down by the peer

            for resource in (self._reader, self.socket):
                try:
                    resource.close()
                except OSError as e:
                    logger.debug(f"Error closing {self.peer_identity}: {e}")

            self.state = ConnectionState.DISCONNECTED
            logger.debug(f"Closed connection to {self.peer_identity}")
