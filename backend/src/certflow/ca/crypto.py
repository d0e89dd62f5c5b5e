"""Cryptographic utilities for CA operations.

Provides the digest lookup table, RSA key generation, passphrase protection
of private keys and certificate fingerprints.
"""

import logging

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.asymmetric.types import PrivateKeyTypes, PublicKeyTypes

from certflow.domain.states import RSA_KEY_LENGTHS, DigestAlgorithm
from certflow.errors import (
    InvalidEnumError,
    InvalidKeyLengthError,
    MissingFieldError,
    SigningFailedError,
    UnsupportedDigestError,
    WrongPassphraseError,
)

logger = logging.getLogger(__name__)

RSA_PUBLIC_EXPONENT = 65537

# SHA (SHA-0) is accepted as a name but has no implementation
DIGESTS: dict[DigestAlgorithm, type[hashes.HashAlgorithm] | None] = {
    DigestAlgorithm.SHA: None,
    DigestAlgorithm.SHA1: hashes.SHA1,
    DigestAlgorithm.SHA224: hashes.SHA224,
    DigestAlgorithm.SHA256: hashes.SHA256,
    DigestAlgorithm.SHA384: hashes.SHA384,
    DigestAlgorithm.SHA512: hashes.SHA512,
    DigestAlgorithm.MD5: hashes.MD5,
}


def parse_digest(value: object, field: str = "digest") -> DigestAlgorithm:
    """Map user input onto the closed digest enumeration.

    Raises:
        InvalidEnumError: If the value is not a known digest name.
    """
    try:
        return DigestAlgorithm(str(value).upper())
    except ValueError as e:
        raise InvalidEnumError(field, value, [d.value for d in DigestAlgorithm]) from e


def resolve_digest(digest: DigestAlgorithm) -> hashes.HashAlgorithm:
    """Return a hash instance for a digest name.

    Raises:
        UnsupportedDigestError: If the runtime library cannot compute it.
    """
    algorithm_cls = DIGESTS[digest]
    if algorithm_cls is None:
        raise UnsupportedDigestError(f"digest {digest} is not implemented")

    algorithm = algorithm_cls()
    try:
        hashes.Hash(algorithm)
    except UnsupportedAlgorithm as e:
        raise UnsupportedDigestError(f"digest {digest} is not available: {e}") from e
    return algorithm


def check_key_length(key_length: object) -> int:
    """Raises InvalidKeyLengthError unless key_length is a recognised RSA size."""
    if isinstance(key_length, bool) or key_length not in RSA_KEY_LENGTHS:
        raise InvalidKeyLengthError(
            f"key length must be one of {', '.join(map(str, RSA_KEY_LENGTHS))} "
            f"(got {key_length!r})"
        )
    return int(key_length)  # type: ignore[call-overload]


def generate_rsa_key(key_length: int) -> rsa.RSAPrivateKey:
    """Generate an RSA private key of a recognised length."""
    key_length = check_key_length(key_length)
    logger.debug("Generating RSA key", extra={"key_length": key_length})
    return rsa.generate_private_key(public_exponent=RSA_PUBLIC_EXPONENT, key_size=key_length)


def encrypt_private_key(key: PrivateKeyTypes, passphrase: str) -> bytes:
    """Serialize a private key as PKCS#8 PEM encrypted under a passphrase.

    Raises:
        MissingFieldError: If the passphrase is empty.
    """
    if not passphrase:
        raise MissingFieldError("passphrase", "a non-empty passphrase is required")
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.BestAvailableEncryption(passphrase.encode("utf-8")),
    )


def decrypt_private_key(pem: bytes, passphrase: str) -> PrivateKeyTypes:
    """Load a passphrase-protected PEM private key.

    Raises:
        WrongPassphraseError: If the passphrase does not decrypt the key.
    """
    try:
        return serialization.load_pem_private_key(pem, password=passphrase.encode("utf-8"))
    except (TypeError, ValueError) as e:
        # TypeError covers keys stored without encryption
        raise WrongPassphraseError("CA passphrase is incorrect") from e


def private_key_to_pem(key: PrivateKeyTypes) -> str:
    """Serialize an unencrypted private key, for ad hoc issuance output."""
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")


def certificate_to_pem(certificate: x509.Certificate) -> str:
    return certificate.public_bytes(serialization.Encoding.PEM).decode("utf-8")


def sha1_fingerprint(certificate: x509.Certificate) -> str:
    """Return the colon separated SHA-1 fingerprint, as printed by openssl."""
    digest = certificate.fingerprint(hashes.SHA1())
    return ":".join(f"{byte:02X}" for byte in digest)


def public_keys_match(left: PublicKeyTypes, right: PublicKeyTypes) -> bool:
    """Compare two public keys by their SubjectPublicKeyInfo encoding."""
    encoding = serialization.Encoding.DER
    fmt = serialization.PublicFormat.SubjectPublicKeyInfo
    return left.public_bytes(encoding, fmt) == right.public_bytes(encoding, fmt)


def sign_builder(
    builder: x509.CertificateBuilder | x509.CertificateRevocationListBuilder,
    private_key: rsa.RSAPrivateKey,
    digest: DigestAlgorithm,
) -> x509.Certificate | x509.CertificateRevocationList:
    """Sign a certificate or CRL builder with the given digest.

    Raises:
        UnsupportedDigestError: If the library cannot sign with the digest.
        SigningFailedError: If the key cannot produce a signature.
    """
    algorithm = resolve_digest(digest)
    try:
        return builder.sign(private_key, algorithm)
    except UnsupportedAlgorithm as e:
        raise UnsupportedDigestError(f"cannot sign with digest {digest}: {e}") from e
    except (TypeError, ValueError) as e:
        logger.error("signing_failed", extra={"digest": digest.value, "error": str(e)})
        raise SigningFailedError(f"Failed to sign with {digest}: {e}") from e
