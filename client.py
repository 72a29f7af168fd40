"""
Client library and CLI for the publish/subscribe relay.
"""
import argparse
import logging
import socket
import sys
import threading
from typing import Callable, Optional, Union

from relay.protocol import ClientConnection, ProtocolError, Role, TERMINATE, is_terminate


logger = logging.getLogger(__name__)


class RelayClient:
    """Client for connecting to the relay as a publisher or subscriber"""

    def __init__(self, host: str, port: int, role: Union[Role, str], topic: Optional[str] = None, timeout: Optional[float] = None):
        resolved = role if isinstance(role, Role) else Role.resolve(role)
        if resolved is None:
            raise ValueError(f"Role must be PUBLISHER or SUBSCRIBER, got {role!r}")

        self.host = host
        self.port = port
        self.role = resolved
        self.topic = topic
        self.timeout = timeout

        self.acknowledgment: Optional[str] = None
        self._connection: Optional[ClientConnection] = None
        self._receive_thread: Optional[threading.Thread] = None
        self._running = False

    @property
    def connected(self) -> bool:
        return self._connection is not None and self._connection.is_connected

    def connect(self) -> str:
        """Connect, perform the handshake and return the server's acknowledgment"""
        if self.connected:
            return self.acknowledgment

        sock = socket.create_connection((self.host, self.port), timeout=self.timeout)
        self._connection = ClientConnection(sock, (self.host, self.port))
        self._running = True

        self._connection.send_line(self.role.value)
        if self.topic is not None:
            self._connection.send_line(self.topic)

        self.acknowledgment = self._connection.receive_line()
        if self.acknowledgment is None:
            self.disconnect()
            raise ProtocolError("Server closed the connection during handshake")

        logger.info(f"Connected to relay at {self.host}:{self.port}: {self.acknowledgment}")
        return self.acknowledgment

    def publish(self, text: str) -> None:
        """Send one line for broadcast"""
        if self.role is not Role.PUBLISHER:
            raise RuntimeError("Only publishers can publish")
        self._require_connection().send_line(text)

    def receive(self) -> Optional[str]:
        """Block for the next delivered line; None once the connection is gone"""
        return self._require_connection().receive_line()

    def listen(self, handler: Callable[[str], None]) -> threading.Thread:
        """Deliver incoming lines to handler from a background thread"""
        self._receive_thread = threading.Thread(
            target=self._receive_worker,
            args=(handler,),
            daemon=True,
            name=f"RelayReceive-{self.role.value}"
        )
        self._receive_thread.start()
        return self._receive_thread

    def _receive_worker(self, handler: Callable[[str], None]) -> None:
        while self._running:
            line = self._connection.receive_line()
            if line is None:
                if self._running:
                    logger.info("Connection closed by server")
                break
            try:
                handler(line)
            except Exception as e:
                logger.error(f"Receive handler error: {e}")

    def terminate(self) -> None:
        """Ask the relay to end the session, then disconnect"""
        if self.connected:
            try:
                self._connection.send_line(TERMINATE)
            except ProtocolError as e:
                logger.debug(f"Terminate not sent: {e}")
        self.disconnect()

    def disconnect(self) -> None:
        self._running = False
        if self._connection is not None:
            self._connection.close()

        thread = self._receive_thread
        if thread and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=5)

        logger.info("Disconnected from relay")

    def _require_connection(self) -> ClientConnection:
        if not self.connected:
            raise RuntimeError("Not connected to relay")
        return self._connection

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.terminate()


def run_publisher(client: RelayClient, lines) -> None:
    print("--- PUBLISHER MODE ---")
    if client.topic is not None:
        print(f"Publishing on topic: {client.topic}")
    print("Type messages to publish, 'terminate' to disconnect\n")

    for line in lines:
        line = line.rstrip('\n')
        if is_terminate(line):
            break
        client.publish(line)


def run_subscriber(client: RelayClient, lines) -> None:
    print("--- SUBSCRIBER MODE ---")
    if client.topic is not None:
        print(f"Subscribed to topic: {client.topic}")
    print("Listening for published messages, type 'terminate' to disconnect\n")

    client.listen(lambda message: print(f"Received: {message}", flush=True))
    for line in lines:
        if is_terminate(line):
            break


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description='Publish/subscribe relay client')
    parser.add_argument('host', help='Relay host')
    parser.add_argument('port', type=int, help='Relay port')
    parser.add_argument('role', help='PUBLISHER or SUBSCRIBER')
    parser.add_argument('topic', nargs='?', help='Topic (omit for a relay started with --no-topics)')

    args = parser.parse_args(argv)
    if Role.resolve(args.role) is None:
        parser.error("role must be PUBLISHER or SUBSCRIBER")
    if not 0 < args.port <= 65535:
        parser.error(f"port must be between 1 and 65535, got {args.port}")
    return args


def cli_main(argv=None):
    """CLI entry point"""
    args = parse_args(argv)

    logging.basicConfig(level=logging.WARNING)

    client = RelayClient(args.host, args.port, args.role, args.topic)
    try:
        print(f"[Server]: {client.connect()}\n")
    except OSError as e:
        print(f"Error: could not connect to {args.host}:{args.port} ({e})", file=sys.stderr)
        sys.exit(1)
    except ProtocolError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    try:
        if client.role is Role.PUBLISHER:
            run_publisher(client, sys.stdin)
        else:
            run_subscriber(client, sys.stdin)
    except KeyboardInterrupt:
        print("\nStopping...")
    except ProtocolError as e:
        print(f"Connection lost: {e}", file=sys.stderr)
    finally:
        print("\nDisconnecting from server...")
        client.terminate()


if __name__ == '__main__':
    cli_main()
