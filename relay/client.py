"""Client side of the relay handshake.

The relay's TLS certificate is self-signed, so TLS alone authenticates
nothing. Trust comes from the server proof: the relay identity's signature
over the exact certificate this connection presented.
"""

import logging
import socket
import ssl
from typing import Optional

from .identity import Identity, fmt_key
from .protocol import (
    MARKER_SIZE,
    NONCE_SIZE,
    PROOF_SIZE,
    ClientReply,
    MalformedMessage,
    Marker,
    ServerProof,
    check_nonce,
)

logger = logging.getLogger(__name__)


class ClientError(Exception):
    """Base class for client-side relay errors."""


class ProofMismatch(ClientError):
    """The server proof does not match the certificate or the trusted key."""


class AdmissionDenied(ClientError):
    """The relay refused the client or closed before admitting it."""


def recv_exactly(sock: socket.socket, size: int) -> bytes:
    """Read exactly *size* bytes, raising ConnectionError on early EOF."""
    chunks = []
    remaining = size
    while remaining:
        chunk = sock.recv(remaining)
        if not chunk:
            raise ConnectionError(f"Connection closed after {size - remaining} of {size} bytes")
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


class RelayClient:
    """Connects to a relay and completes the admission handshake."""

    def __init__(
        self,
        identity: Identity,
        trusted_vk: Optional[bytes] = None,
        timeout: Optional[float] = 10.0,
    ):
        self.identity = identity
        self.trusted_vk = trusted_vk
        self.timeout = timeout
        self.server_vk: Optional[bytes] = None
        self.last_nonce: Optional[bytes] = None

    def _create_ssl_context(self) -> ssl.SSLContext:
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
        context.minimum_version = ssl.TLSVersion.TLSv1_2
        # Certificate is checked against the server proof instead
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
        return context

    def _check_proof(self, sock: ssl.SSLSocket) -> bytes:
        der = sock.getpeercert(binary_form=True)
        if not der:
            raise ProofMismatch("Relay presented no certificate")

        try:
            proof = ServerProof.decode(recv_exactly(sock, PROOF_SIZE))
        except ConnectionError as e:
            raise ClientError(f"No server proof: {e}") from e

        if self.trusted_vk is not None and proof.verify_key != bytes(self.trusted_vk):
            raise ProofMismatch(
                f"Relay identity {fmt_key(proof.verify_key)} is not the trusted "
                f"{fmt_key(self.trusted_vk)}"
            )
        if not Identity.verify(proof.verify_key, proof.signature, der):
            raise ProofMismatch("Server proof signature does not cover the presented certificate")
        return proof.verify_key

    def handshake(self, sock: ssl.SSLSocket) -> None:
        """Run the admission handshake on an established TLS socket."""
        self.server_vk = self._check_proof(sock)

        try:
            nonce = check_nonce(recv_exactly(sock, NONCE_SIZE))
        except ConnectionError as e:
            raise ClientError(f"No nonce from relay: {e}") from e
        self.last_nonce = nonce

        reply = ClientReply(
            verify_key=self.identity.verify_key,
            signature=self.identity.sign(nonce),
        )
        sock.sendall(reply.encode())

        try:
            marker = Marker.decode(recv_exactly(sock, MARKER_SIZE))
        except ConnectionError as e:
            raise AdmissionDenied(f"Relay closed the connection: {e}") from e
        except MalformedMessage as e:
            raise AdmissionDenied(f"Unexpected reply from relay: {e}") from e
        if marker is Marker.FAIL:
            raise AdmissionDenied("Relay has no grant for this identity")

    def connect(self, host: str, port: int) -> ssl.SSLSocket:
        """Open a TLS connection, authenticate both ways and return the socket.

        The returned socket carries the relayed stream.
        """
        raw = socket.create_connection((host, port), timeout=self.timeout)
        try:
            sock = self._create_ssl_context().wrap_socket(raw, server_hostname=host)
        except (OSError, ssl.SSLError):
            raw.close()
            raise

        try:
            self.handshake(sock)
        except BaseException:
            sock.close()
            raise

        logger.debug(f"Admitted by relay {fmt_key(self.server_vk)} at {host}:{port}")
        return sock
