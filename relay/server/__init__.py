"""Relay server components."""

from .relay_server import RelayServer, RelayConfig
from .handshake import AdmissionHandshake, HandshakeResult, HandshakeState
from .pipe import RelayStats, copy_simplex, relay

__all__ = [
    "RelayServer",
    "RelayConfig",
    "AdmissionHandshake",
    "HandshakeResult",
    "HandshakeState",
    "RelayStats",
    "copy_simplex",
    "relay",
]
