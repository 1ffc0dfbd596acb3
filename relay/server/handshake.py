"""Per-session admission handshake.

START -> NONCE_SENT -> AWAITING_REPLY -> SIGNATURE_VERIFIED
      -> AUTHORIZATION_CHECKED -> ADMITTED | REJECTED

Only a failed authorization is reported to the client (``FAIL``). A missing
or malformed reply and a bad signature end the session with no marker, so an
unauthenticated peer learns nothing about why it was turned away.
"""

import asyncio
import logging
import secrets
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from config import RAGENT_CAPABILITY, RAGENT_HANDSHAKE_TIMEOUT
from ..grants import GrantDirectory, is_admitted
from ..identity import Identity, fmt_key
from ..protocol import NONCE_SIZE, REPLY_SIZE, ClientReply, Marker

logger = logging.getLogger(__name__)

REASON_NO_REPLY = "malformed or absent reply"
REASON_BAD_SIGNATURE = "invalid signature"
REASON_NOT_PERMITTED = "no matching grant"
REASON_QUERY_FAILED = "authorization query failed"


class HandshakeState(Enum):
    START = "start"
    NONCE_SENT = "nonce_sent"
    AWAITING_REPLY = "awaiting_reply"
    SIGNATURE_VERIFIED = "signature_verified"
    AUTHORIZATION_CHECKED = "authorization_checked"
    ADMITTED = "admitted"
    REJECTED = "rejected"


@dataclass(frozen=True)
class HandshakeResult:
    """Outcome of one admission handshake."""
    state: HandshakeState
    client_vk: Optional[bytes] = None
    reason: str = ""

    @property
    def admitted(self) -> bool:
        return self.state == HandshakeState.ADMITTED

    @property
    def client_key_text(self) -> str:
        return fmt_key(self.client_vk) if self.client_vk else "unknown"


def new_nonce() -> bytes:
    return secrets.token_bytes(NONCE_SIZE)


class AdmissionHandshake:
    """Challenge a client and decide whether it may use the relay.

    One instance per session; not reusable.
    """

    def __init__(
        self,
        identity: Identity,
        directory: GrantDirectory,
        capability: str = RAGENT_CAPABILITY,
        timeout: Optional[float] = RAGENT_HANDSHAKE_TIMEOUT,
        peer: str = "unknown",
    ):
        self.identity = identity
        self.directory = directory
        self.capability = capability
        self.timeout = timeout
        self.peer = peer
        self.state = HandshakeState.START

    def _reject(self, reason: str, client_vk: Optional[bytes] = None) -> HandshakeResult:
        self.state = HandshakeState.REJECTED
        logger.warning(f"Rejected {self.peer}: {reason}")
        return HandshakeResult(HandshakeState.REJECTED, client_vk, reason)

    async def _send(self, writer: asyncio.StreamWriter, data: bytes) -> None:
        writer.write(data)
        await writer.drain()

    async def _read_reply(self, reader: asyncio.StreamReader) -> ClientReply:
        read = reader.readexactly(REPLY_SIZE)
        if self.timeout is not None:
            data = await asyncio.wait_for(read, timeout=self.timeout)
        else:
            data = await read
        return ClientReply.decode(data)

    def _authorize(self, client_vk: bytes) -> bool:
        grants = self.directory.find_grants_from(self.identity.verify_key)
        return is_admitted(grants, client_vk, self.capability)

    async def run(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> HandshakeResult:
        """Run the handshake over an established connection.

        The caller owns the connection and closes it when the result is not
        admitted. Transport errors while sending the nonce or marker
        propagate to the caller.
        """
        if self.state != HandshakeState.START:
            raise RuntimeError("Handshake already run")

        nonce = new_nonce()
        await self._send(writer, nonce)
        self.state = HandshakeState.NONCE_SENT

        self.state = HandshakeState.AWAITING_REPLY
        try:
            reply = await self._read_reply(reader)
        except asyncio.TimeoutError:
            return self._reject(f"{REASON_NO_REPLY} (timed out after {self.timeout}s)")
        except asyncio.IncompleteReadError as e:
            return self._reject(f"{REASON_NO_REPLY} ({len(e.partial)} of {REPLY_SIZE} bytes)")
        except (ConnectionError, OSError) as e:
            return self._reject(f"{REASON_NO_REPLY} ({e})")

        if not Identity.verify(reply.verify_key, reply.signature, nonce):
            return self._reject(REASON_BAD_SIGNATURE, reply.verify_key)
        self.state = HandshakeState.SIGNATURE_VERIFIED
        client_key = fmt_key(reply.verify_key)
        logger.debug(f"Client signature valid for {client_key} from {self.peer}")

        try:
            # Directory may block; keep it off the event loop
            allowed = await asyncio.to_thread(self._authorize, reply.verify_key)
        except Exception as e:
            logger.error(f"Grant lookup for {client_key} failed: {e}")
            allowed = False
            reason = REASON_QUERY_FAILED
        else:
            reason = REASON_NOT_PERMITTED
        self.state = HandshakeState.AUTHORIZATION_CHECKED

        if not allowed:
            await self._send(writer, Marker.FAIL.value)
            return self._reject(f"{reason} for {client_key}", reply.verify_key)

        await self._send(writer, Marker.OKAY.value)
        self.state = HandshakeState.ADMITTED
        logger.info(f"Admitted {client_key} from {self.peer}")
        return HandshakeResult(HandshakeState.ADMITTED, reply.verify_key, "")
