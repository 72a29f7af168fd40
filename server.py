"""
TCP server for the publish/subscribe relay.
"""
import argparse
import logging
import signal
import sys
from socketserver import ThreadingTCPServer, BaseRequestHandler
from typing import Optional

from relay.config import Config, get_config, initialize_config
from relay.protocol import ClientConnection
from relay.registry import Registry
from relay.session import Session


logger = logging.getLogger(__name__)


class RelayRequestHandler(BaseRequestHandler):
    """Runs one session per accepted connection"""
    session: Optional[Session] = None

    def setup(self):
        """Setup the connection"""
        connection = ClientConnection(self.request, self.client_address)
        self.session = self.server.create_session(connection)
        logger.info(f"Client connected: {connection.peer_identity}")

    def handle(self):
        """Handle client communication"""
        self.session.run()

    def finish(self):
        """Clean up the connection"""
        if self.session is not None:
            self.session.close()

        counts = self.server.registry.counts()
        logger.info(f"Client disconnected: {self.session.peer_identity if self.session else self.client_address} "
                    f"- remaining publishers: {counts['publishers']}, subscribers: {counts['subscribers']}")


class RelayServer(ThreadingTCPServer):
    """TCP server owning the registry shared by all sessions"""

    allow_reuse_address = True
    daemon_threads = True  # Allow server to exit even if sessions are running

    def __init__(self,
                 server_address,
                 RequestHandlerClass=RelayRequestHandler,
                 registry: Optional[Registry] = None,
                 config: Optional[Config] = None):
        self.config = config or get_config()
        self.registry = registry or Registry(
            prune_empty_topics=bool(self.config.get('relay.prune_empty_topics', False))
        )
        self.topic_aware = bool(self.config.get('relay.topic_aware', True))
        self.default_topic = str(self.config.get('relay.default_topic', 'default'))
        self.request_queue_size = int(self.config.get('server.backlog', 5))
        super().__init__(server_address, RequestHandlerClass)

    def create_session(self, connection: ClientConnection) -> Session:
        return Session(connection, self.registry,
                       topic_aware=self.topic_aware,
                       default_topic=self.default_topic)

    def server_activate(self):
        super().server_activate()
        mode = 'topic-aware' if self.topic_aware else f"single topic {self.default_topic!r}"
        logger.info(f"Relay server listening on {self.server_address} ({mode})")

    def handle_error(self, request, client_address):
        logger.exception(f"Error handling client {client_address}")

    def server_close(self):
        """Close every session, then release the listening socket"""
        logger.info("Shutting down relay server...")
        self.registry.close_all()
        super().server_close()


def configure_logging(config: Config) -> None:
    """Setup logging from config"""
    log_level = getattr(logging, str(config.get('logging.level', 'INFO')).upper(), logging.INFO)
    handlers = [logging.StreamHandler()]
    log_file = config.get('logging.file')
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=log_level,
        format=config.get('logging.format'),
        handlers=handlers,
        force=True,
    )


def signal_handler(signum, frame):
    """Handle shutdown signals"""
    logger.info(f"Received signal {signum}, shutting down...")
    sys.exit(0)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description='Publish/subscribe relay server')
    parser.add_argument('port', type=int, help='TCP port to listen on')
    parser.add_argument('--host', help='Interface to bind (default from config)')
    parser.add_argument('--config', help='JSON config file')
    parser.add_argument('--no-topics', action='store_true',
                        help='Skip the topic handshake and relay to all subscribers')

    args = parser.parse_args(argv)
    if not 0 <= args.port <= 65535:
        parser.error(f"port must be between 0 and 65535, got {args.port}")
    return args


def main(argv=None):
    """Main server entry point"""
    args = parse_args(argv)

    config = initialize_config(args.config)
    if args.no_topics:
        config.set('relay.topic_aware', False)
    configure_logging(config)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    host = args.host or config.get('server.host')
    port = args.port

    logger.info(f"Starting relay server on {host}:{port}")

    try:
        server = RelayServer((host, port), config=config)
    except OSError as e:
        logger.error(f"Failed to bind {host}:{port}: {e}")
        sys.exit(1)

    try:
        logger.info("Press Ctrl+C to stop the server")
        server.serve_forever()
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt")
    finally:
        server.server_close()
        logger.info("Server stopped")


if __name__ == '__main__':
    main()
