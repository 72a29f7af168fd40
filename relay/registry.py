"""
Session registry and fan-out broadcaster.
Tracks publisher and subscriber sessions per topic and delivers published lines.
"""
import threading
import logging
from typing import Dict, List, Set, Optional, Any, TYPE_CHECKING

from .protocol import Role, ProtocolError

if TYPE_CHECKING:
    from .session import Session


logger = logging.getLogger(__name__)


class Registry:
    """Thread-safe topic -> sessions table shared by all connections"""

    def __init__(self, prune_empty_topics: bool = False):
        self.prune_empty_topics = prune_empty_topics

        self._publishers: Dict[str, Set['Session']] = {}  # topic -> publisher sessions
        self._subscribers: Dict[str, Set['Session']] = {}  # topic -> subscriber sessions
        self._published: Dict[str, int] = {}  # topic -> messages published

        self._lock = threading.RLock()

    def _table_for(self, role: Role) -> Dict[str, Set['Session']]:
        if role is Role.PUBLISHER:
            return self._publishers
        return self._subscribers

    def register(self, session: 'Session') -> None:
        """Add a session under its own topic and role"""
        with self._lock:
            table = self._table_for(session.role)
            members = table.setdefault(session.topic, set())
            members.add(session)
            self._publishers.setdefault(session.topic, set())
            self._subscribers.setdefault(session.topic, set())
            count = len(members)

        logger.info(f"[{session.role.value} CONNECTED] {session.peer_identity} on topic {session.topic!r} "
                    f"({count} {session.role.value.lower()}(s) on topic)")

    def unregister(self, session: 'Session') -> bool:
        """Remove a session; returns False if it was not registered"""
        if session.role is None or session.topic is None:
            return False

        with self._lock:
            members = self._table_for(session.role).get(session.topic)
            if not members or session not in members:
                return False

            members.discard(session)
            if self.prune_empty_topics:
                self._prune(session.topic)

        logger.info(f"Unregistered {session.role.value.lower()} {session.peer_identity} "
                    f"from topic {session.topic!r}")
        return True

    def _prune(self, topic: str) -> None:
        if self._publishers.get(topic) or self._subscribers.get(topic):
            return
        self._publishers.pop(topic, None)
        self._subscribers.pop(topic, None)
        self._published.pop(topic, None)
        logger.debug(f"Pruned empty topic {topic!r}")

    def publish(self, topic: str, message: str, sender: Optional['Session'] = None) -> int:
        """
        Deliver a message to every subscriber currently registered on topic.
        A failed send to one subscriber never stops delivery to the others.
        Returns the number of subscribers the message was delivered to.
        """
        with self._lock:
            recipients = list(self._subscribers.get(topic, ()))
            if topic in self._subscribers:
                self._published[topic] = self._published.get(topic, 0) + 1

        if not recipients:
            logger.debug(f"[BROADCAST] No subscribers on topic {topic!r}")
            return 0

        logger.debug(f"[BROADCAST] Publishing on topic {topic!r} to {len(recipients)} subscriber(s)")

        delivered_count = 0
        for subscriber in recipients:
            if subscriber is sender:
                continue
            try:
                subscriber.send(message)
                delivered_count += 1
            except (ProtocolError, OSError) as e:
                logger.warning(f"Failed to deliver to subscriber {subscriber.peer_identity}: {e}")

        return delivered_count

    def is_registered(self, session: 'Session') -> bool:
        if session.role is None:
            return False
        with self._lock:
            return session in self._table_for(session.role).get(session.topic, ())

    def subscribers(self, topic: str) -> List['Session']:
        with self._lock:
            return list(self._subscribers.get(topic, ()))

    def publishers(self, topic: str) -> List['Session']:
        with self._lock:
            return list(self._publishers.get(topic, ()))

    def topics(self) -> List[str]:
        with self._lock:
            return sorted(set(self._publishers) | set(self._subscribers))

    def counts(self) -> Dict[str, int]:
        """Total registered publishers and subscribers across all topics"""
        with self._lock:
            return {
                'publishers': sum(len(s) for s in self._publishers.values()),
                'subscribers': sum(len(s) for s in self._subscribers.values()),
            }

    def close_all(self) -> None:
        """Force-close every registered session"""
        with self._lock:
            sessions = [s for table in (self._publishers, self._subscribers)
                        for members in table.values() for s in members]

        if sessions:
            logger.info(f"Closing {len(sessions)} registered session(s)")

        for session in sessions:
            try:
                session.close()
            except Exception as e:
                logger.error(f"Error closing session {session.peer_identity}: {e}")

    def get_stats(self) -> Dict[str, Any]:
        """Get registry statistics"""
        with self._lock:
            topics = sorted(set(self._publishers) | set(self._subscribers))
            return {
                'topics': len(topics),
                **self.counts(),
                'topic_stats': [
                    {
                        'topic': topic,
                        'publishers': len(self._publishers.get(topic, ())),
                        'subscribers': len(self._subscribers.get(topic, ())),
                        'published': self._published.get(topic, 0),
                    }
                    for topic in topics
                ]
            }
