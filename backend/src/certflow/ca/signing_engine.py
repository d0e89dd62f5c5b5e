"""X.509 certificate signing.

Binds a CertificateRequest to an Authority. Extensions follow the request type:

- server: serverAuth, digitalSignature + keyEncipherment
- client: clientAuth, digitalSignature
- peer:   serverAuth + clientAuth, digitalSignature + keyEncipherment
- custom: exactly the operator supplied extensions, nothing else
"""

import logging
import time
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.x509.oid import ExtendedKeyUsageOID
from opentelemetry import trace

from certflow.ca.authority_store import Authority
from certflow.ca.crypto import (
    certificate_to_pem,
    public_keys_match,
    sha1_fingerprint,
    sign_builder,
)
from certflow.ca.extensions import key_usage, parse_extension_specs, parse_general_name
from certflow.ca.identity import DistinguishedName, derive_id
from certflow.ca.request_builder import CertificateRequest
from certflow.domain.states import CertificateType, DigestAlgorithm
from certflow.errors import SigningFailedError
from certflow.metrics import ca_metrics

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

TYPE_EXTENDED_KEY_USAGES = {
    CertificateType.SERVER: [ExtendedKeyUsageOID.SERVER_AUTH],
    CertificateType.CLIENT: [ExtendedKeyUsageOID.CLIENT_AUTH],
    CertificateType.PEER: [ExtendedKeyUsageOID.SERVER_AUTH, ExtendedKeyUsageOID.CLIENT_AUTH],
}

TYPE_KEY_USAGES = {
    CertificateType.SERVER: key_usage(digital_signature=True, key_encipherment=True),
    CertificateType.CLIENT: key_usage(digital_signature=True),
    CertificateType.PEER: key_usage(digital_signature=True, key_encipherment=True),
}


@dataclass(frozen=True)
class Certificate:
    """A signed certificate. Immutable; persistence is a separate step."""

    request_id: str
    subject: DistinguishedName
    issuer: DistinguishedName
    serial: int
    not_before: datetime
    not_after: datetime
    digest: DigestAlgorithm
    type: CertificateType
    sha1_fingerprint: str
    pem: str
    host: str | None = None
    ca_label: str | None = None

    @property
    def serial_hex(self) -> str:
        return format(self.serial, "x")

    def to_x509(self) -> x509.Certificate:
        return x509.load_pem_x509_certificate(self.pem.encode("utf-8"))

    def placed(self, host: str | None, ca_label: str) -> "Certificate":
        """Return the copy to persist, labelled with its host and CA."""
        return replace(self, host=host, ca_label=ca_label)


def ca_label_for(authority: Authority, ca_name: str | None) -> str:
    """The explicit --ca-name wins over the Authority's own DN."""
    return ca_name or authority.dn


class SigningEngine:
    """Signs certificate requests with an Authority's key."""

    def sign(
        self,
        request: CertificateRequest,
        authority: Authority,
        *,
        issuer: DistinguishedName | None = None,
    ) -> Certificate:
        """Sign a request.

        Args:
            request: The validated request.
            authority: An open Authority.
            issuer: Explicit issuer DN; defaults to the Authority's subject.

        Raises:
            UnsupportedDigestError: If request.digest cannot be used for signing.
            SigningFailedError: If the signature cannot be produced or verified.
            AuthorityLockedError: If the Authority was already closed.
        """
        with tracer.start_as_current_span("SigningEngine.sign") as span:
            span.set_attribute("request_id", request.id)
            span.set_attribute("type", request.type.value)
            span.set_attribute("digest", request.digest.value)

            start_time = time.time()

            serial_number = x509.random_serial_number()
            now = datetime.now(timezone.utc)
            not_after = now + timedelta(days=request.requested_days)
            issuer_name = issuer.to_x509() if issuer else authority.certificate.subject

            builder = (
                x509.CertificateBuilder()
                .subject_name(request.name.to_x509())
                .issuer_name(issuer_name)
                .public_key(request.public_key)  # type: ignore[arg-type]
                .serial_number(serial_number)
                .not_valid_before(now)
                .not_valid_after(not_after)
            )
            for extension, critical in self._extensions_for(request, authority):
                builder = builder.add_extension(extension, critical=critical)

            certificate = sign_builder(builder, authority.private_key, request.digest)
            self._verify(certificate, authority)  # type: ignore[arg-type]

            duration = time.time() - start_time
            ca_metrics.record_certificate_signed(request.type.value, duration)

            logger.info(
                "certificate_signed",
                extra={
                    "request_id": request.id,
                    "subject": request.subject,
                    "issuer": authority.dn,
                    "serial": format(serial_number, "x"),
                    "not_after": not_after.isoformat(),
                    "duration_seconds": duration,
                },
            )

            return Certificate(
                request_id=request.id,
                subject=request.name,
                issuer=DistinguishedName.from_x509(issuer_name),
                serial=serial_number,
                not_before=now,
                not_after=not_after,
                digest=request.digest,
                type=request.type,
                sha1_fingerprint=sha1_fingerprint(certificate),  # type: ignore[arg-type]
                pem=certificate_to_pem(certificate),  # type: ignore[arg-type]
                host=request.hostname,
            )

    def accept_external(self, request: CertificateRequest, certificate_pem: str) -> Certificate:
        """Bind a certificate signed elsewhere to a pending request.

        Raises:
            SigningFailedError: If the PEM is unreadable or certifies another key.
        """
        try:
            certificate = x509.load_pem_x509_certificate(certificate_pem.encode("utf-8"))
        except ValueError as e:
            raise SigningFailedError(f"Certificate text is not a valid PEM certificate: {e}") from e

        if not public_keys_match(certificate.public_key(), request.public_key):
            raise SigningFailedError("Certificate does not certify the requested public key")

        subject = DistinguishedName.from_x509(certificate.subject)
        if subject != request.name:
            logger.warning(
                "issued_subject_mismatch",
                extra={
                    "request_id": request.id,
                    "requested": request.subject,
                    "issued": str(subject),
                },
            )

        digest = request.digest
        hash_algorithm = certificate.signature_hash_algorithm
        hash_name = hash_algorithm.name.upper() if hash_algorithm else None
        if hash_name in DigestAlgorithm.__members__:
            digest = DigestAlgorithm[hash_name]

        return Certificate(
            request_id=derive_id(request.name),
            subject=subject,
            issuer=DistinguishedName.from_x509(certificate.issuer),
            serial=certificate.serial_number,
            not_before=certificate.not_valid_before_utc,
            not_after=certificate.not_valid_after_utc,
            digest=digest,
            type=request.type,
            sha1_fingerprint=sha1_fingerprint(certificate),
            pem=certificate_to_pem(certificate),
            host=request.hostname,
        )

    def _extensions_for(
        self, request: CertificateRequest, authority: Authority
    ) -> list[tuple[x509.ExtensionType, bool]]:
        subject_key = request.public_key
        issuer_key = authority.certificate.public_key()

        if request.type is CertificateType.CUSTOM:
            return [
                (spec.build(subject_key, issuer_key), spec.critical)  # type: ignore[arg-type]
                for spec in parse_extension_specs(request.extensions)
            ]

        extensions: list[tuple[x509.ExtensionType, bool]] = [
            (x509.BasicConstraints(ca=False, path_length=None), True),
            (TYPE_KEY_USAGES[request.type], True),
            (x509.ExtendedKeyUsage(TYPE_EXTENDED_KEY_USAGES[request.type]), False),
            (x509.SubjectKeyIdentifier.from_public_key(subject_key), False),  # type: ignore
            (x509.AuthorityKeyIdentifier.from_issuer_public_key(issuer_key), False),  # type: ignore
        ]
        if request.subject_alt_names:
            names = [parse_general_name(entry) for entry in request.subject_alt_names]
            extensions.append((x509.SubjectAlternativeName(names), False))
        return extensions

    def _verify(self, certificate: x509.Certificate, authority: Authority) -> None:
        """Check the new signature against the CA certificate's public key."""
        issuer_key = authority.certificate.public_key()
        if not isinstance(issuer_key, rsa.RSAPublicKey):
            raise SigningFailedError("CA certificate does not carry an RSA key")
        try:
            issuer_key.verify(
                certificate.signature,
                certificate.tbs_certificate_bytes,
                padding.PKCS1v15(),
                certificate.signature_hash_algorithm,  # type: ignore[arg-type]
            )
        except InvalidSignature as e:
            logger.error("signature_verification_failed", extra={"issuer": authority.dn})
            raise SigningFailedError(
                "Signature does not verify against the CA certificate; CA key material is corrupt"
            ) from e
