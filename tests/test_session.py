"""
Unit tests for the session module.
Drives the per-connection state machine with scripted client input.
"""
import io
import unittest
import socket
from unittest.mock import Mock
from relay.protocol import ClientConnection, ConnectionState, Role, INVALID_ROLE_MESSAGE
from relay.registry import Registry
from relay.session import Session, SessionState


class RecordingRegistry(Registry):
    """Registry that remembers what it saw while a session ran"""

    def __init__(self):
        super().__init__()
        self.published = []
        self.registered_during_run = []

    def register(self, session):
        super().register(session)
        self.registered_during_run.append((session.role, session.topic))

    def publish(self, topic, message, sender=None):
        self.published.append((topic, message, sender))
        return super().publish(topic, message, sender)


def scripted_connection(incoming: bytes, port: int = 40000) -> ClientConnection:
    mock_socket = Mock(spec=socket.socket)
    mock_socket.makefile.return_value = io.BytesIO(incoming)
    return ClientConnection(mock_socket, ('10.0.0.5', port))


def sent_lines(connection: ClientConnection):
    return [call.args[0].decode('utf-8').rstrip('\n') for call in connection.socket.sendall.call_args_list]


class TestHandshake(unittest.TestCase):
    """Test cases for role and topic negotiation"""

    def setUp(self):
        self.registry = RecordingRegistry()

    def run_session(self, incoming: bytes, **kwargs) -> Session:
        session = Session(scripted_connection(incoming), self.registry, **kwargs)
        session.run()
        return session

    def test_valid_roles_any_case(self):
        cases = [
            (b'PUBLISHER', Role.PUBLISHER),
            (b'publisher', Role.PUBLISHER),
            (b'  Publisher ', Role.PUBLISHER),
            (b'SUBSCRIBER', Role.SUBSCRIBER),
            (b'subscriber', Role.SUBSCRIBER),
            (b'SubScriber\r', Role.SUBSCRIBER),
        ]
        for token, expected in cases:
            with self.subTest(token=token):
                registry = RecordingRegistry()
                session = Session(scripted_connection(token + b'\nSPORTS\n'), registry)
                session.run()

                self.assertEqual(session.role, expected)
                self.assertEqual(registry.registered_during_run, [(expected, 'SPORTS')])
                self.assertEqual(sent_lines(session.connection),
                                 [f'Registered as {expected.value} on topic: SPORTS'])

    def test_invalid_role_rejected(self):
        for token in (b'ADMIN', b'', b'PUBLISHERS', b'SPORTS'):
            with self.subTest(token=token):
                registry = RecordingRegistry()
                session = Session(scripted_connection(token + b'\nSPORTS\nhello\n'), registry)

                with self.assertLogs('relay.session', level='WARNING'):
                    session.run()

                self.assertEqual(sent_lines(session.connection), [INVALID_ROLE_MESSAGE])
                self.assertEqual(registry.registered_during_run, [])
                self.assertEqual(registry.topics(), [])
                self.assertEqual(session.state, SessionState.CLOSED)
                self.assertEqual(session.connection.state, ConnectionState.DISCONNECTED)

    def test_disconnect_before_role(self):
        session = self.run_session(b'')

        self.assertIsNone(session.role)
        self.assertEqual(sent_lines(session.connection), [])
        self.assertEqual(self.registry.registered_during_run, [])
        self.assertEqual(session.state, SessionState.CLOSED)

    def test_disconnect_before_topic(self):
        session = self.run_session(b'SUBSCRIBER\n')

        self.assertEqual(session.role, Role.SUBSCRIBER)
        self.assertIsNone(session.topic)
        self.assertEqual(sent_lines(session.connection), [])
        self.assertEqual(self.registry.registered_during_run, [])
        self.assertEqual(session.state, SessionState.CLOSED)

    def test_topic_is_trimmed_not_case_folded(self):
        session = self.run_session(b'SUBSCRIBER\n  Sports News \t\n')

        self.assertEqual(session.topic, 'Sports News')

    def test_empty_topic_is_accepted(self):
        session = self.run_session(b'SUBSCRIBER\n\n')

        self.assertEqual(session.topic, '')
        self.assertEqual(self.registry.registered_during_run, [(Role.SUBSCRIBER, '')])

    def test_topic_less_variant(self):
        session = self.run_session(b'SUBSCRIBER\nterminate\n', topic_aware=False, default_topic='all')

        self.assertEqual(session.topic, 'all')
        self.assertEqual(sent_lines(session.connection), ['Registered as SUBSCRIBER'])
        self.assertEqual(self.registry.registered_during_run, [(Role.SUBSCRIBER, 'all')])

    def test_topic_less_variant_publishes_first_line(self):
        subscriber = Session(scripted_connection(b''), self.registry)
        subscriber.role = Role.SUBSCRIBER
        subscriber.topic = 'default'
        self.registry.register(subscriber)

        self.run_session(b'PUBLISHER\nHello\n', topic_aware=False)

        self.assertEqual(len(self.registry.published), 1)
        self.assertEqual(self.registry.published[0][0], 'default')
        self.assertTrue(sent_lines(subscriber.connection)[0].endswith('Hello'))


class TestRegisteredSession(unittest.TestCase):
    """Test cases for the read loop after registration"""

    def setUp(self):
        self.registry = RecordingRegistry()

    def test_publisher_lines_are_published(self):
        session = Session(scripted_connection(b'PUBLISHER\nSPORTS\nHello\nGoalScored\n'), self.registry)
        session.run()

        self.assertEqual([(topic, sender) for topic, _, sender in self.registry.published],
                         [('SPORTS', session), ('SPORTS', session)])
        messages = [message for _, message, _ in self.registry.published]
        self.assertTrue(messages[0].endswith('Hello'))
        self.assertTrue(messages[1].endswith('GoalScored'))
        self.assertIn(session.peer_identity, messages[0])

    def test_terminate_stops_reading_and_is_not_published(self):
        session = Session(scripted_connection(b'PUBLISHER\nSPORTS\nHello\nTerminate\nafter\n'), self.registry)
        session.run()

        messages = [message for _, message, _ in self.registry.published]
        self.assertEqual(len(messages), 1)
        self.assertTrue(messages[0].endswith('Hello'))
        self.assertFalse(any('terminate' in m.lower() for m in messages))
        self.assertEqual(session.state, SessionState.CLOSED)
        self.assertFalse(self.registry.is_registered(session))

    def test_subscriber_lines_are_ignored(self):
        session = Session(scripted_connection(b'SUBSCRIBER\nSPORTS\nhello?\nanyone\n'), self.registry)
        session.run()

        self.assertEqual(self.registry.published, [])
        self.assertEqual(sent_lines(session.connection), ['Registered as SUBSCRIBER on topic: SPORTS'])

    def test_abrupt_disconnect_unregisters(self):
        session = Session(scripted_connection(b'PUBLISHER\nSPORTS\nHello\n'), self.registry)
        session.run()

        self.assertEqual(self.registry.registered_during_run, [(Role.PUBLISHER, 'SPORTS')])
        self.assertEqual(self.registry.publishers('SPORTS'), [])
        self.assertEqual(session.connection.state, ConnectionState.DISCONNECTED)

    def test_ack_failure_still_cleans_up(self):
        connection = scripted_connection(b'SUBSCRIBER\nSPORTS\n')
        connection.socket.sendall.side_effect = BrokenPipeError("gone")
        session = Session(connection, self.registry)

        session.run()

        self.assertEqual(session.state, SessionState.CLOSED)
        self.assertEqual(self.registry.subscribers('SPORTS'), [])

    def test_close_is_idempotent(self):
        session = Session(scripted_connection(b'SUBSCRIBER\nSPORTS\n'), self.registry)
        session.run()
        stats = self.registry.get_stats()

        session.close()
        session.close()

        self.assertEqual(self.registry.get_stats(), stats)
        session.connection.socket.close.assert_called_once()

    def test_closed_before_registration_never_registers(self):
        session = Session(scripted_connection(b'SUBSCRIBER\nSPORTS\n'), self.registry)
        session.close()

        session.run()

        self.assertEqual(self.registry.registered_during_run, [])
        self.assertEqual(self.registry.topics(), [])

    def test_send(self):
        session = Session(scripted_connection(b''), self.registry)
        session.send('[Publisher 1.2.3.4:5]: hi')

        self.assertEqual(sent_lines(session.connection), ['[Publisher 1.2.3.4:5]: hi'])


if __name__ == '__main__':
    unittest.main()
