"""
Relay Module

WebSocket to TCP relay: accepts WebSocket clients and bridges each one
to the TCP target named in its request.
"""

from .server import RelayServer
from .session import RelaySession, RoutingParams, SessionState, parse_routing_params

__all__ = [
    'RelayServer',
    'RelaySession',
    'RoutingParams',
    'SessionState',
    'parse_routing_params',
]
