"""Private keys, certificate signing requests and issued certificates.

Keys are RSA, serialized as unencrypted PKCS#8 PEM. CSRs carry the user name
as their only subject attribute (CN) and are signed by the requesting key
with SHA-256.

Example:
    >>> from kuo.certs import build_csr_pem, generate_private_key, private_key_pem
    >>> key = generate_private_key(2048)
    >>> pem = private_key_pem(key)
    >>> csr = build_csr_pem(key, "alice")
"""

from __future__ import annotations

import base64
import binascii

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from kuo.errors import CryptoError

DEFAULT_KEY_SIZE = 4096
PUBLIC_EXPONENT = 65537


def generate_private_key(key_size: int = DEFAULT_KEY_SIZE) -> rsa.RSAPrivateKey:
    """Generate a new RSA private key.

    Args:
        key_size: Modulus size in bits.

    Raises:
        CryptoError: If the key cannot be generated.
    """
    try:
        return rsa.generate_private_key(public_exponent=PUBLIC_EXPONENT, key_size=key_size)
    except (ValueError, TypeError) as e:
        raise CryptoError("generate private key", str(e)) from e


def private_key_pem(key: rsa.RSAPrivateKey) -> str:
    """Serialize a private key as PKCS#8 PEM text."""
    try:
        return key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        ).decode("ascii")
    except ValueError as e:
        raise CryptoError("serialize private key", str(e)) from e


def load_private_key(pem: str) -> rsa.RSAPrivateKey:
    """Load a PEM private key previously written by private_key_pem.

    Raises:
        CryptoError: If the text is not an unencrypted RSA private key.
    """
    try:
        key = serialization.load_pem_private_key(pem.encode("ascii"), password=None)
    except (ValueError, TypeError, UnicodeEncodeError) as e:
        raise CryptoError("load private key", str(e)) from e
    if not isinstance(key, rsa.RSAPrivateKey):
        raise CryptoError("load private key", f"expected an RSA key, got {type(key).__name__}")
    return key


def build_csr_pem(key: rsa.RSAPrivateKey, common_name: str) -> str:
    """Build a PEM certificate signing request for a user.

    Args:
        key: Key whose public half is certified, and which signs the request.
        common_name: Subject CN, the Kubernetes user name.

    Returns:
        PEM-encoded CSR text.

    Raises:
        CryptoError: If the request cannot be built or signed.
    """
    try:
        csr = (
            x509.CertificateSigningRequestBuilder()
            .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)]))
            .sign(key, hashes.SHA256())
        )
    except (ValueError, TypeError) as e:
        raise CryptoError("build certificate signing request", str(e)) from e
    return csr.public_bytes(serialization.Encoding.PEM).decode("ascii")


def csr_from_key_pem(pem: str, common_name: str) -> str:
    """Rebuild a CSR from a stored private key."""
    return build_csr_pem(load_private_key(pem), common_name)


def decode_certificate(value: str) -> str:
    """Decode the certificate issued on a CSR status.

    Args:
        value: ``status.certificate`` as sent on the wire (base64 of PEM).

    Returns:
        The PEM certificate text.

    Raises:
        CryptoError: If the value is not base64 or not an X.509 PEM certificate.
    """
    try:
        pem = base64.b64decode(value, validate=True)
        x509.load_pem_x509_certificate(pem)
        return pem.decode("ascii")
    except (binascii.Error, ValueError, UnicodeDecodeError) as e:
        raise CryptoError("decode issued certificate", str(e)) from e


__all__ = [
    "DEFAULT_KEY_SIZE",
    "build_csr_pem",
    "csr_from_key_pem",
    "decode_certificate",
    "generate_private_key",
    "load_private_key",
    "private_key_pem",
]
