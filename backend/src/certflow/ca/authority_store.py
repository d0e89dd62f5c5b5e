"""CA bootstrap and loading.

A CA lives in a directory:

    <ca-path>/
        cakey.pem      # RSA private key, PKCS#8, encrypted with the CA passphrase
        cacert.pem     # self-signed CA certificate
        policy.toml    # CRL signing policy
        revoked/       # revoked certificates picked up by CRL generation

The private key is only held in memory while an Authority is open. Use it as a
context manager so the key is dropped on every exit path.
"""

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives.asymmetric import rsa
from opentelemetry import trace

from certflow.ca.crl import write_default_policy
from certflow.ca.crypto import (
    certificate_to_pem,
    check_key_length,
    decrypt_private_key,
    encrypt_private_key,
    generate_rsa_key,
    parse_digest,
    public_keys_match,
    resolve_digest,
    sign_builder,
)
from certflow.ca.extensions import key_usage
from certflow.ca.identity import DistinguishedName, parse_dn
from certflow.domain.states import DigestAlgorithm
from certflow.errors import (
    AuthorityLockedError,
    DestinationExistsError,
    InvalidFieldError,
    MissingFieldError,
    NotFoundError,
    SigningFailedError,
    WrongPassphraseError,
)
from certflow.metrics import ca_metrics

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

CA_KEY_FILENAME = "cakey.pem"
CA_CERT_FILENAME = "cacert.pem"
POLICY_FILENAME = "policy.toml"
REVOKED_DIRNAME = "revoked"


@dataclass
class Authority:
    """A loaded CA. The private key is discarded by close()."""

    distinguished_name: DistinguishedName
    certificate: x509.Certificate
    path: Path
    _private_key: rsa.RSAPrivateKey | None = field(default=None, repr=False)

    @property
    def private_key(self) -> rsa.RSAPrivateKey:
        if self._private_key is None:
            raise AuthorityLockedError(f"CA {self.dn} is closed, its key is no longer available")
        return self._private_key

    @property
    def dn(self) -> str:
        return str(self.distinguished_name)

    @property
    def certificate_pem(self) -> str:
        return certificate_to_pem(self.certificate)

    @property
    def is_open(self) -> bool:
        return self._private_key is not None

    def close(self) -> None:
        self._private_key = None

    def __enter__(self) -> "Authority":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


@dataclass
class AuthorityBootstrapInput:
    """Options for creating a new CA."""

    dn: str | None
    destination: str | Path | None
    key_length: int = 4096
    validity_days: int = 3650
    digest: str = DigestAlgorithm.SHA256.value


@dataclass(frozen=True)
class ValidatedBootstrap:
    name: DistinguishedName
    destination: Path
    key_length: int
    validity_days: int
    digest: DigestAlgorithm


class AuthorityStore:
    """Creates CAs on disk and loads them for a signing session."""

    def validate(self, options: AuthorityBootstrapInput) -> ValidatedBootstrap:
        """Check every bootstrap option without side effects.

        Raises:
            MissingFieldError, MalformedDNError, InvalidKeyLengthError,
            InvalidFieldError, InvalidEnumError, UnsupportedDigestError,
            DestinationExistsError
        """
        name = parse_dn(options.dn)
        if options.destination is None or not str(options.destination).strip():
            raise MissingFieldError("ca_path", "CA path is required")
        key_length = check_key_length(options.key_length)
        if (
            isinstance(options.validity_days, bool)
            or not isinstance(options.validity_days, int)
            or options.validity_days <= 0
        ):
            raise InvalidFieldError("days", "validity must be a positive number of days")
        digest = parse_digest(options.digest)
        resolve_digest(digest)

        destination = Path(options.destination)
        for filename in (CA_KEY_FILENAME, CA_CERT_FILENAME):
            if (destination / filename).exists():
                raise DestinationExistsError(f"CA material already exists at {destination}")
        if destination.exists() and not destination.is_dir():
            raise DestinationExistsError(f"{destination} exists and is not a directory")

        return ValidatedBootstrap(
            name=name,
            destination=destination,
            key_length=key_length,
            validity_days=options.validity_days,
            digest=digest,
        )

    def bootstrap(self, options: AuthorityBootstrapInput, passphrase: str) -> Authority:
        """Create a new CA key pair and self-signed certificate on disk.

        Returns:
            The new Authority, open.

        Raises:
            Everything validate() raises, MissingFieldError for an empty
            passphrase, SigningFailedError if the self-signature fails.
        """
        with tracer.start_as_current_span("AuthorityStore.bootstrap") as span:
            validated = self.validate(options)
            if not passphrase:
                raise MissingFieldError("passphrase", "a non-empty passphrase is required")

            span.set_attribute("dn", str(validated.name))
            span.set_attribute("key_length", validated.key_length)

            logger.info(
                "Generating new CA key pair",
                extra={"dn": str(validated.name), "key_length": validated.key_length},
            )
            private_key = generate_rsa_key(validated.key_length)
            certificate = self._self_sign(private_key, validated)

            destination = validated.destination
            destination.mkdir(parents=True, exist_ok=True)
            key_path = destination / CA_KEY_FILENAME
            key_path.write_bytes(encrypt_private_key(private_key, passphrase))
            os.chmod(key_path, 0o600)
            (destination / CA_CERT_FILENAME).write_text(certificate_to_pem(certificate))
            (destination / REVOKED_DIRNAME).mkdir(exist_ok=True)
            write_default_policy(destination / POLICY_FILENAME)

            ca_metrics.record_authority_created(validated.key_length)
            logger.info(
                "ca_created",
                extra={
                    "dn": str(validated.name),
                    "path": str(destination),
                    "expires": certificate.not_valid_after_utc.isoformat(),
                },
            )

            return Authority(
                distinguished_name=validated.name,
                certificate=certificate,
                path=destination,
                _private_key=private_key,
            )

    def load(self, path: str | Path, passphrase: str) -> Authority:
        """Decrypt a CA's private key for one signing session.

        Raises:
            NotFoundError: If no CA material exists at path.
            WrongPassphraseError: If the passphrase does not decrypt the key.
            SigningFailedError: If the key does not belong to the certificate.
        """
        with tracer.start_as_current_span("AuthorityStore.load") as span:
            ca_path = Path(path)
            span.set_attribute("path", str(ca_path))

            key_file = ca_path / CA_KEY_FILENAME
            cert_file = ca_path / CA_CERT_FILENAME
            if not key_file.is_file() or not cert_file.is_file():
                ca_metrics.record_authority_load("not_found")
                raise NotFoundError(f"No CA found at {ca_path}")

            try:
                certificate = x509.load_pem_x509_certificate(cert_file.read_bytes())
            except ValueError as e:
                ca_metrics.record_authority_load("not_found")
                raise NotFoundError(f"No readable CA certificate at {cert_file}") from e

            try:
                private_key = decrypt_private_key(key_file.read_bytes(), passphrase or "")
            except WrongPassphraseError:
                ca_metrics.record_authority_load("wrong_passphrase")
                logger.warning("ca_key_decrypt_failed", extra={"path": str(ca_path)})
                raise

            if not isinstance(private_key, rsa.RSAPrivateKey) or not public_keys_match(
                private_key.public_key(), certificate.public_key()
            ):
                ca_metrics.record_authority_load("mismatch")
                raise SigningFailedError(f"CA key at {key_file} does not match {cert_file}")

            authority = Authority(
                distinguished_name=DistinguishedName.from_x509(certificate.subject),
                certificate=certificate,
                path=ca_path,
                _private_key=private_key,
            )

            ca_metrics.record_authority_load("ok")
            logger.info(
                "ca_key_loaded",
                extra={
                    "dn": authority.dn,
                    "path": str(ca_path),
                    "ca_cert_expires": certificate.not_valid_after_utc.isoformat(),
                },
            )
            return authority

    def _self_sign(
        self, private_key: rsa.RSAPrivateKey, validated: ValidatedBootstrap
    ) -> x509.Certificate:
        now = datetime.now(timezone.utc)
        subject = issuer = validated.name.to_x509()
        public_key = private_key.public_key()

        builder = (
            x509.CertificateBuilder()
            .subject_name(subject)
            .issuer_name(issuer)
            .public_key(public_key)
            .serial_number(x509.random_serial_number())
            .not_valid_before(now)
            .not_valid_after(now + timedelta(days=validated.validity_days))
            .add_extension(
                x509.BasicConstraints(ca=True, path_length=0),
                critical=True,
            )
            .add_extension(
                key_usage(digital_signature=True, key_cert_sign=True, crl_sign=True),
                critical=True,
            )
            .add_extension(
                x509.SubjectKeyIdentifier.from_public_key(public_key),
                critical=False,
            )
        )

        return sign_builder(builder, private_key, validated.digest)  # type: ignore[return-value]
