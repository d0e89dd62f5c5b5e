"""Custom extension entries in OpenSSL config syntax.

Entries look like ``keyUsage:critical,digitalSignature,keyEncipherment`` or
``extendedKeyUsage:serverAuth,clientAuth``. Parsing happens when a request is
built so that a bad entry is rejected before any key is generated. The
resulting ExtensionSpec is materialised at signing time, when the subject and
issuer keys are known.
"""

import ipaddress
from collections.abc import Callable
from dataclasses import dataclass

from cryptography import x509
from cryptography.hazmat.primitives.asymmetric.types import PublicKeyTypes
from cryptography.x509.oid import ExtendedKeyUsageOID

from certflow.errors import MalformedExtensionError


@dataclass(frozen=True)
class Extension:
    """One ``name:value`` entry as supplied by the operator."""

    name: str
    value: str


ExtensionFactory = Callable[[PublicKeyTypes, PublicKeyTypes], x509.ExtensionType]


@dataclass(frozen=True)
class ExtensionSpec:
    name: str
    critical: bool
    factory: ExtensionFactory

    def build(
        self, subject_key: PublicKeyTypes, issuer_key: PublicKeyTypes
    ) -> x509.ExtensionType:
        return self.factory(subject_key, issuer_key)


KEY_USAGE_FLAGS = {
    "digitalSignature": "digital_signature",
    "nonRepudiation": "content_commitment",
    "keyEncipherment": "key_encipherment",
    "dataEncipherment": "data_encipherment",
    "keyAgreement": "key_agreement",
    "keyCertSign": "key_cert_sign",
    "cRLSign": "crl_sign",
    "encipherOnly": "encipher_only",
    "decipherOnly": "decipher_only",
}

EXTENDED_KEY_USAGES = {
    "serverAuth": ExtendedKeyUsageOID.SERVER_AUTH,
    "clientAuth": ExtendedKeyUsageOID.CLIENT_AUTH,
    "codeSigning": ExtendedKeyUsageOID.CODE_SIGNING,
    "emailProtection": ExtendedKeyUsageOID.EMAIL_PROTECTION,
    "timeStamping": ExtendedKeyUsageOID.TIME_STAMPING,
    "OCSPSigning": ExtendedKeyUsageOID.OCSP_SIGNING,
}


def key_usage(**flags: bool) -> x509.KeyUsage:
    """Build a KeyUsage with every unspecified flag off."""
    values = {attribute: False for attribute in KEY_USAGE_FLAGS.values()}
    values.update(flags)
    return x509.KeyUsage(**values)


def parse_extension_specs(extensions: tuple[Extension, ...]) -> tuple[ExtensionSpec, ...]:
    """Validate a list of entries and return their specs in order.

    Raises:
        MalformedExtensionError: On an unknown name, a bad value or a duplicate.
    """
    specs = []
    seen = set()
    for extension in extensions:
        spec = parse_extension_spec(extension)
        if spec.name in seen:
            raise MalformedExtensionError(f"extension {spec.name} is given more than once")
        seen.add(spec.name)
        specs.append(spec)
    return tuple(specs)


def parse_extension_spec(extension: Extension) -> ExtensionSpec:
    parser = _PARSERS.get(extension.name)
    if parser is None:
        raise MalformedExtensionError(
            f"unsupported extension {extension.name!r}, expected one of {', '.join(_PARSERS)}"
        )

    items = [item for item in extension.value.split(",") if item]
    critical = bool(items) and items[0] == "critical"
    if critical:
        items = items[1:]
    if not items:
        raise MalformedExtensionError(f"extension {extension.name} has no value")

    return ExtensionSpec(name=extension.name, critical=critical, factory=parser(items))


def _parse_basic_constraints(items: list[str]) -> ExtensionFactory:
    ca: bool | None = None
    path_length: int | None = None
    for item in items:
        key, _, value = item.partition(":")
        if key.upper() == "CA" and value.upper() in ("TRUE", "FALSE"):
            ca = value.upper() == "TRUE"
        elif key.lower() == "pathlen" and value.isdigit():
            path_length = int(value)
        else:
            raise MalformedExtensionError(f"invalid basicConstraints entry {item!r}")
    if ca is None:
        raise MalformedExtensionError("basicConstraints requires CA:TRUE or CA:FALSE")
    if path_length is not None and not ca:
        raise MalformedExtensionError("basicConstraints pathlen requires CA:TRUE")

    constraints = x509.BasicConstraints(ca=ca, path_length=path_length)
    return lambda subject_key, issuer_key: constraints


def _parse_key_usage(items: list[str]) -> ExtensionFactory:
    flags = {}
    for item in items:
        if item not in KEY_USAGE_FLAGS:
            raise MalformedExtensionError(f"unknown keyUsage {item!r}")
        flags[KEY_USAGE_FLAGS[item]] = True
    try:
        usage = key_usage(**flags)
    except ValueError as e:
        # encipherOnly/decipherOnly without keyAgreement
        raise MalformedExtensionError(f"invalid keyUsage: {e}") from e
    return lambda subject_key, issuer_key: usage


def _parse_extended_key_usage(items: list[str]) -> ExtensionFactory:
    usages = []
    for item in items:
        if item in EXTENDED_KEY_USAGES:
            usages.append(EXTENDED_KEY_USAGES[item])
            continue
        try:
            usages.append(x509.ObjectIdentifier(item))
        except ValueError as e:
            raise MalformedExtensionError(f"unknown extendedKeyUsage {item!r}") from e

    extended = x509.ExtendedKeyUsage(usages)
    return lambda subject_key, issuer_key: extended


def parse_general_name(item: str) -> x509.GeneralName:
    """Parse ``DNS:host``, ``IP:addr``, ``email:addr`` or ``URI:uri``."""
    kind, separator, value = item.partition(":")
    if not separator or not value:
        raise MalformedExtensionError(f"subjectAltName entry {item!r} must be TYPE:value")

    kind = kind.upper()
    if kind == "DNS":
        return x509.DNSName(value)
    if kind == "IP":
        try:
            return x509.IPAddress(ipaddress.ip_address(value))
        except ValueError as e:
            raise MalformedExtensionError(f"invalid IP address {value!r}") from e
    if kind == "EMAIL":
        return x509.RFC822Name(value)
    if kind == "URI":
        return x509.UniformResourceIdentifier(value)
    raise MalformedExtensionError(f"unsupported subjectAltName type {kind!r}")


def _parse_subject_alt_name(items: list[str]) -> ExtensionFactory:
    names = x509.SubjectAlternativeName([parse_general_name(item) for item in items])
    return lambda subject_key, issuer_key: names


def _parse_subject_key_identifier(items: list[str]) -> ExtensionFactory:
    if items != ["hash"]:
        raise MalformedExtensionError("subjectKeyIdentifier only supports 'hash'")
    return lambda subject_key, issuer_key: x509.SubjectKeyIdentifier.from_public_key(
        subject_key  # type: ignore[arg-type]
    )


def _parse_authority_key_identifier(items: list[str]) -> ExtensionFactory:
    if items not in (["keyid"], ["keyid:always"]):
        raise MalformedExtensionError("authorityKeyIdentifier only supports 'keyid'")
    return lambda subject_key, issuer_key: x509.AuthorityKeyIdentifier.from_issuer_public_key(
        issuer_key  # type: ignore[arg-type]
    )


_PARSERS: dict[str, Callable[[list[str]], ExtensionFactory]] = {
    "basicConstraints": _parse_basic_constraints,
    "keyUsage": _parse_key_usage,
    "extendedKeyUsage": _parse_extended_key_usage,
    "subjectAltName": _parse_subject_alt_name,
    "subjectKeyIdentifier": _parse_subject_key_identifier,
    "authorityKeyIdentifier": _parse_authority_key_identifier,
}
