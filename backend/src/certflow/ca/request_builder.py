"""Builds validated, signable certificate requests.

Raw command options arrive as a CertificateRequestInput. build() checks them
in a fixed order and raises on the first violation, before any key is
generated:

    ca_path -> dn -> type -> digest -> extensions -> host -> days
    -> subject_alt_names -> key_length
"""

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field, replace

from cryptography import x509
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.asymmetric.types import PublicKeyTypes
from opentelemetry import trace

from certflow.ca.crypto import check_key_length, generate_rsa_key, parse_digest
from certflow.ca.extensions import Extension, parse_extension_specs, parse_general_name
from certflow.ca.identity import DistinguishedName, derive_id, parse_dn
from certflow.domain.states import CertificateType, DigestAlgorithm
from certflow.errors import (
    InvalidEnumError,
    InvalidFieldError,
    MalformedExtensionError,
    MissingExtensionsError,
    MissingFieldError,
)
from shared.config import settings

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass
class CertificateRequestInput:
    """Options for one issue/sign command, before validation."""

    dn: object = None
    type: str | None = None
    ca_path: str | None = None
    digest: str | None = None
    days: int | None = None
    extensions: str | Sequence[Extension] | None = None
    host: str | None = None
    save: bool = False
    ca_name: str | None = None
    key_length: int | None = None
    subject_alt_names: Sequence[str] = ()


@dataclass(frozen=True)
class CertificateRequest:
    """A validated request, ready for the Signing Engine."""

    id: str
    name: DistinguishedName
    public_key: PublicKeyTypes
    type: CertificateType
    digest: DigestAlgorithm
    requested_days: int
    extensions: tuple[Extension, ...] = ()
    ca_name: str | None = None
    hostname: str | None = None
    subject_alt_names: tuple[str, ...] = ()
    private_key: rsa.RSAPrivateKey | None = field(default=None, repr=False)
    csr_pem: str | None = field(default=None, repr=False)

    @property
    def subject(self) -> str:
        return str(self.name)


def parse_extensions(text: str) -> tuple[Extension, ...]:
    """Parse ``name:value; name:value`` into extension entries.

    All whitespace is removed first. Each entry is split on its first colon.

    Raises:
        MalformedExtensionError: If an entry has no colon, name or value.
    """
    compact = "".join(text.split())
    extensions = []
    for entry in compact.split(";"):
        if not entry:
            continue
        name, separator, value = entry.partition(":")
        if not separator or not name or not value:
            raise MalformedExtensionError(f"extension {entry!r} must be written as name:value")
        extensions.append(Extension(name=name, value=value))
    return tuple(extensions)


class RequestBuilder:
    """Validates request options and produces CertificateRequests."""

    def build(
        self,
        options: CertificateRequestInput,
        *,
        require_ca_path: bool = True,
        public_key: PublicKeyTypes | None = None,
        csr_pem: str | None = None,
    ) -> CertificateRequest:
        """Validate options, then create the key pair or adopt public_key.

        Args:
            options: The raw command options.
            require_ca_path: Signing flows need a CA path; stored requests do not.
            public_key: Public key of a stored CSR. When None a fresh RSA key
                pair is generated for ad hoc issuance.
            csr_pem: The stored CSR, kept on the request for display.

        Raises:
            MissingFieldError, MalformedDNError, InvalidEnumError,
            MalformedExtensionError, MissingExtensionsError,
            InvalidFieldError, InvalidKeyLengthError
        """
        with tracer.start_as_current_span("RequestBuilder.build") as span:
            if require_ca_path and not options.ca_path:
                raise MissingFieldError("ca_path", "CA path is required")

            name = parse_dn(options.dn)
            request_id = derive_id(name)
            span.set_attribute("request_id", request_id)

            if not options.type:
                raise MissingFieldError("type", "Type is required")
            try:
                cert_type = CertificateType(options.type)
            except ValueError as e:
                allowed = [t.value for t in CertificateType]
                raise InvalidEnumError("type", options.type, allowed) from e

            digest = parse_digest(options.digest or settings.DEFAULT_DIGEST)

            extensions = self._extensions(options.extensions)
            if cert_type is CertificateType.CUSTOM:
                if not extensions:
                    raise MissingExtensionsError("Extensions need to be specified for type custom")
                parse_extension_specs(extensions)

            if options.save and not options.host:
                raise MissingFieldError("host", "host required if the certificate is saved")

            days = settings.DEFAULT_CERT_DAYS if options.days is None else options.days
            if isinstance(days, bool) or not isinstance(days, int) or days <= 0:
                raise InvalidFieldError("days", "requested days must be a positive integer")

            subject_alt_names = tuple(options.subject_alt_names)
            for entry in subject_alt_names:
                parse_general_name(entry)
            if subject_alt_names and cert_type is CertificateType.CUSTOM:
                raise InvalidFieldError(
                    "subject_alt_names",
                    "type custom takes subjectAltName through its extensions, not --san",
                )

            key_length = (
                settings.DEFAULT_KEY_LENGTH if options.key_length is None else options.key_length
            )
            private_key = None
            if public_key is None:
                private_key = generate_rsa_key(check_key_length(key_length))
                public_key = private_key.public_key()

            logger.info(
                "request_built",
                extra={
                    "request_id": request_id,
                    "subject": str(name),
                    "type": cert_type.value,
                    "generated_key": private_key is not None,
                },
            )

            return CertificateRequest(
                id=request_id,
                name=name,
                public_key=public_key,
                type=cert_type,
                digest=digest,
                requested_days=days,
                extensions=extensions,
                ca_name=options.ca_name,
                hostname=options.host,
                subject_alt_names=subject_alt_names,
                private_key=private_key,
                csr_pem=csr_pem,
            )

    def from_csr(self, csr_pem: str, options: CertificateRequestInput) -> CertificateRequest:
        """Build a request around a PEM CSR. The DN comes from the CSR subject.

        Raises:
            InvalidFieldError: If the CSR cannot be read or its signature is bad.
            Anything build() raises.
        """
        try:
            csr = x509.load_pem_x509_csr(csr_pem.encode("utf-8"))
        except ValueError as e:
            raise InvalidFieldError("csr", f"CSR is not a valid PEM request: {e}") from e
        if not csr.is_signature_valid:
            raise InvalidFieldError("csr", "CSR signature does not verify")

        options = replace(options, dn=str(DistinguishedName.from_x509(csr.subject)))
        return self.build(
            options,
            require_ca_path=False,
            public_key=csr.public_key(),
            csr_pem=csr_pem,
        )

    def _extensions(self, value: str | Sequence[Extension] | None) -> tuple[Extension, ...]:
        if value is None:
            return ()
        if isinstance(value, str):
            return parse_extensions(value)

        extensions = []
        for item in value:
            if isinstance(item, Extension):
                extensions.append(item)
            elif isinstance(item, (list, tuple)) and len(item) == 2 and all(item):
                extensions.append(Extension(name=str(item[0]), value=str(item[1])))
            else:
                raise MalformedExtensionError(f"extension {item!r} must be a (name, value) pair")
        return tuple(extensions)
