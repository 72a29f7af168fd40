"""
Simple status checker for the relay.
"""
import argparse

from client import RelayClient
from relay.config import get_config
from relay.protocol import Role


def main(argv=None):
    config = get_config()
    parser = argparse.ArgumentParser(description='Relay status check')
    parser.add_argument('--host', default=config.get('server.host'))
    parser.add_argument('--port', type=int, default=config.get('server.port'))
    parser.add_argument('--topic', default='status_check')
    args = parser.parse_args(argv)

    print("Relay Status Check")
    print("=" * 40)

    try:
        with RelayClient(args.host, args.port, Role.SUBSCRIBER, args.topic, timeout=5) as client:
            print("✓ Connected to relay successfully")
            print(f"✓ Handshake acknowledged: {client.acknowledgment}")
            print("\nRelay appears to be working correctly!")
            return 0

    except Exception as e:
        print(f"✗ Error connecting to relay: {e}")
        return 1


if __name__ == '__main__':
    raise SystemExit(main())
