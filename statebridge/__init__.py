from .server import StateServer, ServerState
from .session import ConnectionSession
from .protocol import CommandRouter, Command
from .state import WorldInfo, WorldState, WorldSnapshot, PlayerSnapshot

__all__ = [
    'StateServer', 'ServerState', 'ConnectionSession', 'CommandRouter', 'Command',
    'WorldInfo', 'WorldState', 'WorldSnapshot', 'PlayerSnapshot',
]
