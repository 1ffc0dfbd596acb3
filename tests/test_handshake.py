"""Tests for relay/server/handshake.py module."""

import asyncio

import pytest

from relay.grants import EVERYONE_KEY, GrantDirectory, GrantDirectoryError, GrantState
from relay.identity import Identity
from relay.protocol import NONCE_SIZE
from relay.server.handshake import (
    REASON_BAD_SIGNATURE,
    REASON_NO_REPLY,
    REASON_NOT_PERMITTED,
    REASON_QUERY_FAILED,
    AdmissionHandshake,
    HandshakeState,
    new_nonce,
)


class FailingDirectory(GrantDirectory):
    def find_grants_from(self, issuer_vk):
        raise GrantDirectoryError("directory unavailable")


def signed_reply(identity):
    """Reply function answering the nonce with a valid signature."""
    def reply(nonce):
        return identity.verify_key + identity.sign(nonce)
    return reply


def run_handshake(fake_writer_cls, relay_identity, directory, reply, timeout=1.0, eof=False):
    """Run one handshake; *reply* maps the nonce to the bytes the client sends."""
    async def _run():
        reader = asyncio.StreamReader()
        seen = {}

        def on_write(data):
            if "nonce" in seen:
                return
            seen["nonce"] = data
            answer = reply(data) if reply else None
            if answer:
                reader.feed_data(answer)
            if eof:
                reader.feed_eof()

        writer = fake_writer_cls(on_write)
        handshake = AdmissionHandshake(relay_identity, directory, timeout=timeout)
        result = await handshake.run(reader, writer)
        return result, writer, handshake, seen.get("nonce")

    return asyncio.run(_run())


class TestNonce:
    """Tests for nonce generation."""

    def test_size(self):
        assert len(new_nonce()) == NONCE_SIZE

    def test_unique(self):
        """Test no two nonces collide across a large sample."""
        nonces = {new_nonce() for _ in range(10000)}
        assert len(nonces) == 10000


class TestAdmission:
    """Tests for successful admission."""

    def test_admitted_with_grant(self, fake_writer_cls, relay_identity, directory,
                                 client_identity, make_grant):
        """Test a signed reply with a matching grant is admitted."""
        directory.add(make_grant(client_identity.verify_key))
        result, writer, handshake, nonce = run_handshake(
            fake_writer_cls, relay_identity, directory, signed_reply(client_identity),
        )
        assert result.admitted
        assert result.state == HandshakeState.ADMITTED
        assert handshake.state == HandshakeState.ADMITTED
        assert result.client_vk == client_identity.verify_key
        assert result.client_key_text == client_identity.key_text
        assert writer.data == nonce + b"OKAY"

    def test_first_write_is_nonce(self, fake_writer_cls, relay_identity, directory,
                                  client_identity, make_grant):
        """Test the handshake starts by writing exactly the 32-byte nonce."""
        directory.add(make_grant(client_identity.verify_key))
        _, writer, _, nonce = run_handshake(
            fake_writer_cls, relay_identity, directory, signed_reply(client_identity),
        )
        assert len(nonce) == NONCE_SIZE
        assert writer.chunks[0] == nonce

    def test_wildcard_admits_any_key(self, fake_writer_cls, relay_identity, directory, make_grant):
        """Test a wildcard grant admits a correctly signed unknown client."""
        directory.add(make_grant(EVERYONE_KEY))
        stranger = Identity.generate()
        result, writer, _, _ = run_handshake(
            fake_writer_cls, relay_identity, directory, signed_reply(stranger),
        )
        assert result.admitted
        assert writer.data.endswith(b"OKAY")

    def test_no_timeout(self, fake_writer_cls, relay_identity, directory,
                        client_identity, make_grant):
        """Test the reply read can be unbounded."""
        directory.add(make_grant(client_identity.verify_key))
        result, _, _, _ = run_handshake(
            fake_writer_cls, relay_identity, directory, signed_reply(client_identity),
            timeout=None,
        )
        assert result.admitted

    def test_cannot_rerun(self, fake_writer_cls, relay_identity, directory,
                          client_identity, make_grant):
        """Test a handshake object is single use."""
        directory.add(make_grant(client_identity.verify_key))
        _, _, handshake, _ = run_handshake(
            fake_writer_cls, relay_identity, directory, signed_reply(client_identity),
        )

        async def rerun():
            return await handshake.run(asyncio.StreamReader(), fake_writer_cls())

        with pytest.raises(RuntimeError):
            asyncio.run(rerun())


class TestRejectedBeforeAuthorization:
    """Tests for rejections that send no marker."""

    def test_wrong_key(self, fake_writer_cls, relay_identity, directory,
                       client_identity, make_grant):
        """Test a signature by a different key than the one claimed."""
        directory.add(make_grant(client_identity.verify_key))
        impostor = Identity.generate()

        def reply(nonce):
            return client_identity.verify_key + impostor.sign(nonce)

        result, writer, _, nonce = run_handshake(
            fake_writer_cls, relay_identity, directory, reply,
        )
        assert result.state == HandshakeState.REJECTED
        assert result.reason == REASON_BAD_SIGNATURE
        assert writer.data == nonce

    def test_corrupted_signature(self, fake_writer_cls, relay_identity, directory,
                                 client_identity, make_grant):
        """Test a corrupted signature is rejected without a marker."""
        directory.add(make_grant(client_identity.verify_key))

        def reply(nonce):
            signature = bytearray(client_identity.sign(nonce))
            signature[0] ^= 0xFF
            return client_identity.verify_key + bytes(signature)

        result, writer, _, nonce = run_handshake(
            fake_writer_cls, relay_identity, directory, reply,
        )
        assert not result.admitted
        assert result.reason == REASON_BAD_SIGNATURE
        assert b"FAIL" not in writer.data

    def test_signature_over_other_nonce(self, fake_writer_cls, relay_identity, directory,
                                        client_identity, make_grant):
        """Test a replayed signature over a previous nonce is rejected."""
        directory.add(make_grant(client_identity.verify_key))
        old_nonce = new_nonce()

        def reply(nonce):
            return client_identity.verify_key + client_identity.sign(old_nonce)

        result, _, _, _ = run_handshake(fake_writer_cls, relay_identity, directory, reply)
        assert result.reason == REASON_BAD_SIGNATURE

    def test_short_reply(self, fake_writer_cls, relay_identity, directory):
        """Test a short reply followed by close is rejected."""
        result, writer, _, nonce = run_handshake(
            fake_writer_cls, relay_identity, directory, lambda nonce: b"x" * 40, eof=True,
        )
        assert result.state == HandshakeState.REJECTED
        assert result.reason.startswith(REASON_NO_REPLY)
        assert "40 of 96" in result.reason
        assert writer.data == nonce

    def test_closed_without_reply(self, fake_writer_cls, relay_identity, directory):
        """Test a client that disconnects is rejected."""
        result, _, _, _ = run_handshake(
            fake_writer_cls, relay_identity, directory, None, eof=True,
        )
        assert result.reason.startswith(REASON_NO_REPLY)

    def test_timeout(self, fake_writer_cls, relay_identity, directory):
        """Test a client that never replies is rejected after the timeout."""
        result, writer, _, nonce = run_handshake(
            fake_writer_cls, relay_identity, directory, None, timeout=0.05,
        )
        assert result.state == HandshakeState.REJECTED
        assert result.reason.startswith(REASON_NO_REPLY)
        assert "timed out" in result.reason
        assert writer.data == nonce


class TestRejectedByAuthorization:
    """Tests for rejections that send FAIL."""

    def _assert_fail(self, result, writer, nonce):
        assert result.state == HandshakeState.REJECTED
        assert writer.data == nonce + b"FAIL"

    def test_no_grants(self, fake_writer_cls, relay_identity, directory, client_identity):
        """Test a valid signature with no grant gets FAIL."""
        result, writer, _, nonce = run_handshake(
            fake_writer_cls, relay_identity, directory, signed_reply(client_identity),
        )
        self._assert_fail(result, writer, nonce)
        assert result.reason.startswith(REASON_NOT_PERMITTED)
        assert result.client_vk == client_identity.verify_key

    def test_wrong_capability(self, fake_writer_cls, relay_identity, directory,
                              client_identity, make_grant):
        directory.add(make_grant(client_identity.verify_key, capability="1.0/read"))
        result, writer, _, nonce = run_handshake(
            fake_writer_cls, relay_identity, directory, signed_reply(client_identity),
        )
        self._assert_fail(result, writer, nonce)

    def test_expired_grant(self, fake_writer_cls, relay_identity, directory,
                           client_identity, make_grant):
        directory.add(make_grant(client_identity.verify_key, state=GrantState.EXPIRED))
        result, writer, _, nonce = run_handshake(
            fake_writer_cls, relay_identity, directory, signed_reply(client_identity),
        )
        self._assert_fail(result, writer, nonce)

    def test_wrong_receiver(self, fake_writer_cls, relay_identity, directory,
                            client_identity, make_grant):
        directory.add(make_grant(Identity.generate().verify_key))
        result, writer, _, nonce = run_handshake(
            fake_writer_cls, relay_identity, directory, signed_reply(client_identity),
        )
        self._assert_fail(result, writer, nonce)

    def test_directory_failure(self, fake_writer_cls, relay_identity, client_identity):
        """Test a failing directory rejects the session instead of raising."""
        result, writer, _, nonce = run_handshake(
            fake_writer_cls, relay_identity, FailingDirectory(), signed_reply(client_identity),
        )
        self._assert_fail(result, writer, nonce)
        assert result.reason.startswith(REASON_QUERY_FAILED)


class TestNonceFreshness:
    """Tests that every handshake issues its own nonce."""

    def test_nonces_differ_between_sessions(self, fake_writer_cls, relay_identity, directory,
                                            client_identity, make_grant):
        directory.add(make_grant(client_identity.verify_key))
        nonces = set()
        for _ in range(50):
            result, _, _, nonce = run_handshake(
                fake_writer_cls, relay_identity, directory, signed_reply(client_identity),
            )
            assert result.admitted
            nonces.add(nonce)
        assert len(nonces) == 50
