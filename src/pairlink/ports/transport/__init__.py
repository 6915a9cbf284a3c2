"""
Peer transports

Each transport carries commands between a controller and a responder:
- Loopback: both peers in one process (simulator, tests)
- Socket: peers in separate processes sharing a pair directory
"""

from .base import PeerTransport, TransportError
from .loopback import LoopbackLink, LoopbackTransport
from .socket import LocalSocketTransport

__all__ = ["PeerTransport", "TransportError", "LoopbackLink", "LoopbackTransport", "LocalSocketTransport"]
