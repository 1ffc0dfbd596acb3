"""Relay and client identities.

An identity is an Ed25519 keypair. The 32-byte verify key doubles as the
identity's public label; its text form is URL-safe base64 with padding.
"""

import base64
import binascii
import json
import os
from pathlib import Path
from typing import Union

from nacl.exceptions import BadSignatureError, ValueError as NaclValueError
from nacl.signing import SigningKey, VerifyKey

KEY_SIZE = 32
SIGNATURE_SIZE = 64


class IdentityError(Exception):
    """Raised when an identity or key cannot be loaded or parsed."""


def fmt_key(key: bytes) -> str:
    """Format a 32-byte key as text."""
    return base64.urlsafe_b64encode(bytes(key)).decode("ascii")


def unfmt_key(text: str) -> bytes:
    """Parse the text form of a key back to 32 bytes."""
    try:
        key = base64.urlsafe_b64decode(text.strip().encode("ascii"))
    except (binascii.Error, UnicodeEncodeError, AttributeError) as e:
        raise IdentityError(f"Invalid key encoding: {text!r}") from e
    if len(key) != KEY_SIZE:
        raise IdentityError(f"Key must be {KEY_SIZE} bytes, got {len(key)}")
    return key


class Identity:
    """An Ed25519 signing identity."""

    def __init__(self, signing_key: SigningKey):
        self._signing_key = signing_key
        self._verify_key = bytes(signing_key.verify_key)

    @classmethod
    def generate(cls) -> "Identity":
        return cls(SigningKey.generate())

    @classmethod
    def from_seed(cls, seed: bytes) -> "Identity":
        if len(seed) != KEY_SIZE:
            raise IdentityError(f"Signing key seed must be {KEY_SIZE} bytes")
        return cls(SigningKey(bytes(seed)))

    @property
    def verify_key(self) -> bytes:
        return self._verify_key

    @property
    def key_text(self) -> str:
        return fmt_key(self._verify_key)

    def sign(self, message: bytes) -> bytes:
        """Return the 64-byte detached signature of *message*."""
        return self._signing_key.sign(bytes(message)).signature

    @staticmethod
    def verify(verify_key: bytes, signature: bytes, message: bytes) -> bool:
        """Check *signature* over *message* against *verify_key*.

        Returns False for a bad signature or a malformed key instead of raising.
        """
        if len(verify_key) != KEY_SIZE or len(signature) != SIGNATURE_SIZE:
            return False
        try:
            VerifyKey(bytes(verify_key)).verify(bytes(message), bytes(signature))
            return True
        except (BadSignatureError, NaclValueError):
            return False

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "Identity":
        """Load an identity from a JSON identity file."""
        path = Path(path).expanduser()
        try:
            with open(path) as f:
                data = json.load(f)
        except OSError as e:
            raise IdentityError(f"Cannot read identity file {path}: {e}") from e
        except json.JSONDecodeError as e:
            raise IdentityError(f"Identity file {path} is not valid JSON: {e}") from e

        if not isinstance(data, dict) or "signing_key" not in data:
            raise IdentityError(f"Identity file {path} has no signing_key")

        identity = cls.from_seed(unfmt_key(data["signing_key"]))
        stored_vk = data.get("verify_key")
        if stored_vk is not None and unfmt_key(stored_vk) != identity.verify_key:
            raise IdentityError(f"Identity file {path}: verify_key does not match signing_key")
        return identity

    def to_file(self, path: Union[str, Path]) -> None:
        """Save the identity to a JSON file readable only by its owner."""
        path = Path(path).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        data = {
            "signing_key": fmt_key(bytes(self._signing_key)),
            "verify_key": self.key_text,
        }
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, 'w') as f:
            json.dump(data, f, indent=2)
        # Secure the file
        os.chmod(path, 0o600)

    def __repr__(self) -> str:
        return f"Identity({self.key_text})"
