"""Authenticating TCP relay (ragent).

This module provides:
- Identity: Ed25519 identity used by both relay and clients
- RelayServer: TLS listener that admits clients and relays them upstream
- RelayClient: client side of the admission handshake
- Grant directories: sources of delegation grants

Security:
- Self-signed TLS certificate bound to the relay identity by a signed proof
- Nonce challenge/response authentication of clients
- Grant lookup before any byte is relayed
"""

from .identity import Identity, IdentityError, fmt_key, unfmt_key
from .grants import (
    Grant,
    GrantState,
    GrantDirectory,
    GrantDirectoryError,
    MemoryGrantDirectory,
    SQLiteGrantDirectory,
    EVERYONE_KEY,
)
from .certs import CertificateError
from .client import RelayClient, ClientError, ProofMismatch, AdmissionDenied
from .server.relay_server import RelayServer, RelayConfig

__all__ = [
    "Identity",
    "IdentityError",
    "fmt_key",
    "unfmt_key",
    "Grant",
    "GrantState",
    "GrantDirectory",
    "GrantDirectoryError",
    "MemoryGrantDirectory",
    "SQLiteGrantDirectory",
    "EVERYONE_KEY",
    "CertificateError",
    "RelayClient",
    "ClientError",
    "ProofMismatch",
    "AdmissionDenied",
    "RelayServer",
    "RelayConfig",
]
