"""Self-signed TLS certificate provisioning bound to the relay identity.

The certificate itself proves nothing: any relay can mint one. What binds it
to the relay's identity is the detached server proof, the identity's
signature over the certificate's DER bytes, which the listener sends first
on every connection.
"""

import datetime
import logging
import os
import secrets
import ssl
import tempfile
from dataclasses import dataclass
from typing import Tuple

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from config import RAGENT_CERT_KEY_SIZE, RAGENT_CERT_VALIDITY_DAYS
from .identity import Identity
from .protocol import ServerProof

logger = logging.getLogger(__name__)


class CertificateError(Exception):
    """Raised when the TLS certificate cannot be generated."""


@dataclass(frozen=True)
class ServerCertificate:
    """A self-signed certificate and its private key."""
    cert: x509.Certificate
    key: rsa.RSAPrivateKey
    der: bytes
    cert_pem: bytes
    key_pem: bytes

    @property
    def common_name(self) -> str:
        return self.cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value

    def ssl_context(self) -> ssl.SSLContext:
        """Create a server-side SSL context using this certificate."""
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        context.minimum_version = ssl.TLSVersion.TLSv1_2

        # load_cert_chain only takes paths
        fd, path = tempfile.mkstemp(prefix="ragent-", suffix=".pem")
        try:
            with os.fdopen(fd, 'wb') as f:
                f.write(self.key_pem)
                f.write(self.cert_pem)
            context.load_cert_chain(path)
        finally:
            os.unlink(path)
        return context


def generate_certificate(
    common_name: str,
    validity_days: int = RAGENT_CERT_VALIDITY_DAYS,
    key_size: int = RAGENT_CERT_KEY_SIZE,
) -> ServerCertificate:
    """Generate a self-signed server certificate for *common_name*.

    The certificate is its own CA (issuer == subject) with key usage for
    digital signature, key encipherment and certificate signing, and
    extended key usage for server authentication.
    """
    try:
        key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)

        name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
        now = datetime.datetime.now(datetime.timezone.utc)

        cert = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(key.public_key())
            .serial_number(secrets.randbits(128) or 1)
            .not_valid_before(now)
            .not_valid_after(now + datetime.timedelta(days=validity_days))
            .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True,
                    content_commitment=False,
                    key_encipherment=True,
                    data_encipherment=False,
                    key_agreement=False,
                    key_cert_sign=True,
                    crl_sign=False,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=True,
            )
            .add_extension(
                x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]),
                critical=False,
            )
            .sign(key, hashes.SHA256())
        )

        key_pem = key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        )
        return ServerCertificate(
            cert=cert,
            key=key,
            der=cert.public_bytes(serialization.Encoding.DER),
            cert_pem=cert.public_bytes(serialization.Encoding.PEM),
            key_pem=key_pem,
        )
    except (ValueError, TypeError) as e:
        raise CertificateError(f"Certificate generation failed: {e}") from e


def make_server_proof(identity: Identity, der: bytes) -> bytes:
    """Sign the certificate DER with the relay identity."""
    return ServerProof(
        verify_key=identity.verify_key,
        signature=identity.sign(der),
    ).encode()


def provision(
    identity: Identity,
    validity_days: int = RAGENT_CERT_VALIDITY_DAYS,
    key_size: int = RAGENT_CERT_KEY_SIZE,
) -> Tuple[ServerCertificate, bytes]:
    """Generate the relay certificate and its server proof."""
    certificate = generate_certificate(identity.key_text, validity_days, key_size)
    proof = make_server_proof(identity, certificate.der)
    logger.info(
        f"Generated certificate for {certificate.common_name} "
        f"(serial {certificate.cert.serial_number:x}, valid {validity_days} days)"
    )
    return certificate, proof
