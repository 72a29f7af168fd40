"""
Publish/subscribe relay components.
"""

from .config import Config, get_config, initialize_config
from .protocol import ClientConnection, ConnectionState, ProtocolError, Role
from .registry import Registry
from .session import Session, SessionState

__all__ = [
    'Config', 'get_config', 'initialize_config',
    'ClientConnection', 'ConnectionState', 'ProtocolError', 'Role',
    'Registry',
    'Session', 'SessionState',
]
