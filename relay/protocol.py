"""Relay wire protocol definitions.

After the TLS handshake the exchange is fixed-size and byte-exact::

    server -> client   96 bytes  ServerProof (verify key + signature over cert DER)
    server -> client   32 bytes  nonce
    client -> server   96 bytes  ClientReply (verify key + signature over nonce)
    server -> client    4 bytes  b"OKAY" or b"FAIL"

Anything after ``OKAY`` is the relayed application stream.
"""

from dataclasses import dataclass
from enum import Enum

from .identity import KEY_SIZE, SIGNATURE_SIZE

NONCE_SIZE = 32
PROOF_SIZE = KEY_SIZE + SIGNATURE_SIZE
REPLY_SIZE = KEY_SIZE + SIGNATURE_SIZE
MARKER_SIZE = 4


class ProtocolError(Exception):
    """Base class for wire protocol errors."""


class MalformedMessage(ProtocolError):
    """Raised when a fixed-size message has the wrong length or content."""


class Marker(Enum):
    """Admission result markers sent after the client reply."""
    OKAY = b"OKAY"
    FAIL = b"FAIL"

    @classmethod
    def decode(cls, data: bytes) -> "Marker":
        try:
            return cls(bytes(data))
        except ValueError:
            raise MalformedMessage(f"Unknown admission marker: {bytes(data)!r}") from None


def _split_signed(data: bytes, name: str):
    if len(data) != KEY_SIZE + SIGNATURE_SIZE:
        raise MalformedMessage(
            f"{name} must be {KEY_SIZE + SIGNATURE_SIZE} bytes, got {len(data)}"
        )
    data = bytes(data)
    return data[:KEY_SIZE], data[KEY_SIZE:]


@dataclass(frozen=True)
class ServerProof:
    """Relay's proof that it produced the presented TLS certificate."""
    verify_key: bytes
    signature: bytes

    def __post_init__(self):
        if len(self.verify_key) != KEY_SIZE:
            raise MalformedMessage(f"verify_key must be {KEY_SIZE} bytes")
        if len(self.signature) != SIGNATURE_SIZE:
            raise MalformedMessage(f"signature must be {SIGNATURE_SIZE} bytes")

    def encode(self) -> bytes:
        return bytes(self.verify_key) + bytes(self.signature)

    @classmethod
    def decode(cls, data: bytes) -> "ServerProof":
        verify_key, signature = _split_signed(data, "ServerProof")
        return cls(verify_key=verify_key, signature=signature)


@dataclass(frozen=True)
class ClientReply:
    """Client's claimed identity and its signature over the session nonce."""
    verify_key: bytes
    signature: bytes

    def __post_init__(self):
        if len(self.verify_key) != KEY_SIZE:
            raise MalformedMessage(f"verify_key must be {KEY_SIZE} bytes")
        if len(self.signature) != SIGNATURE_SIZE:
            raise MalformedMessage(f"signature must be {SIGNATURE_SIZE} bytes")

    def encode(self) -> bytes:
        return bytes(self.verify_key) + bytes(self.signature)

    @classmethod
    def decode(cls, data: bytes) -> "ClientReply":
        verify_key, signature = _split_signed(data, "ClientReply")
        return cls(verify_key=verify_key, signature=signature)


def check_nonce(data: bytes) -> bytes:
    """Validate a received nonce's length and return it as bytes."""
    if len(data) != NONCE_SIZE:
        raise MalformedMessage(f"Nonce must be {NONCE_SIZE} bytes, got {len(data)}")
    return bytes(data)

