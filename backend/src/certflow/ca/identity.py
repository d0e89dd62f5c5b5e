"""Distinguished name parsing and content-addressed request identifiers.

A request's identity is the SHA-256 of its subject DN in canonical slash
form (``/C=GB/O=Example/CN=www.example.com``). The same DN always maps to the
same identifier, which is what ties a pending request to the certificate
eventually persisted for it.
"""

import hashlib
import re
from dataclasses import dataclass

from cryptography import x509
from cryptography.x509.oid import NameOID

from certflow.errors import MalformedDNError, MissingFieldError

# Short name -> OID, in the spelling used by the canonical form
ATTRIBUTE_OIDS: dict[str, x509.ObjectIdentifier] = {
    "C": NameOID.COUNTRY_NAME,
    "ST": NameOID.STATE_OR_PROVINCE_NAME,
    "L": NameOID.LOCALITY_NAME,
    "O": NameOID.ORGANIZATION_NAME,
    "OU": NameOID.ORGANIZATIONAL_UNIT_NAME,
    "CN": NameOID.COMMON_NAME,
    "emailAddress": NameOID.EMAIL_ADDRESS,
    "DC": NameOID.DOMAIN_COMPONENT,
    "serialNumber": NameOID.SERIAL_NUMBER,
    "street": NameOID.STREET_ADDRESS,
    "title": NameOID.TITLE,
    "SN": NameOID.SURNAME,
    "GN": NameOID.GIVEN_NAME,
    "UID": NameOID.USER_ID,
}

_OID_NAMES = {oid: name for name, oid in ATTRIBUTE_OIDS.items()}

# Case-insensitive aliases, including OpenSSL long names
_ALIASES: dict[str, str] = {name.lower(): name for name in ATTRIBUTE_OIDS}
_ALIASES.update(
    {
        "countryname": "C",
        "stateorprovincename": "ST",
        "localityname": "L",
        "organizationname": "O",
        "organizationalunitname": "OU",
        "commonname": "CN",
        "streetaddress": "street",
        "surname": "SN",
        "givenname": "GN",
        "userid": "UID",
        "domaincomponent": "DC",
    }
)

_DOTTED_OID = re.compile(r"^\d+(\.\d+)+$")
_COMMA_SPACING = re.compile(r"(?<!\\)\s*,\s*")


class _AttributeNames(dict):
    """Attribute name lookup for the RFC 4514 parser, ignoring case."""

    def get(self, key, default=None):
        return super().get(key.lower(), default)


_RFC4514_NAMES = _AttributeNames(
    {alias: ATTRIBUTE_OIDS[name] for alias, name in _ALIASES.items()}
)


@dataclass(frozen=True)
class DistinguishedName:
    """Ordered (attribute type, value) pairs.

    Input order is preserved and every pair is kept in the canonical form.
    When a type appears more than once, get() returns the last value.
    """

    attributes: tuple[tuple[str, str], ...]

    def get(self, attribute: str) -> str | None:
        value = None
        for name, attr_value in self.attributes:
            if name == attribute:
                value = attr_value
        return value

    @property
    def common_name(self) -> str | None:
        return self.get("CN")

    def to_x509(self) -> x509.Name:
        return x509.Name(
            [x509.NameAttribute(_oid_for(name), value) for name, value in self.attributes]
        )

    @classmethod
    def from_x509(cls, name: x509.Name) -> "DistinguishedName":
        attributes = []
        for attribute in name:
            label = _OID_NAMES.get(attribute.oid, attribute.oid.dotted_string)
            value = attribute.value
            if isinstance(value, bytes):
                value = value.decode("utf-8")
            attributes.append((label, value))
        return cls(tuple(attributes))

    def __str__(self) -> str:
        return "".join(f"/{name}={_escape(value)}" for name, value in self.attributes)


def parse_dn(text: object) -> DistinguishedName:
    """Parse a slash-form (``/O=b/CN=a``) or comma-form (``CN=a,O=b``) DN.

    The comma form is RFC 4514, which lists the most specific RDN first, so
    ``CN=a,O=b`` and ``/O=b/CN=a`` are the same name.

    Raises:
        MissingFieldError: If the DN is None or blank.
        MalformedDNError: If the DN is not a string or violates DN grammar.
    """
    if text is None or (isinstance(text, str) and not text.strip()):
        raise MissingFieldError("dn", "dn is required and must be a distinguished name")
    if not isinstance(text, str):
        raise MalformedDNError(f"dn must be a string, got {type(text).__name__}")

    text = text.strip()
    if text.startswith("/"):
        dn = _parse_slash_form(text[1:])
    else:
        dn = _parse_comma_form(text)

    for name, value in dn.attributes:
        if not value:
            raise MalformedDNError(f"empty value for {name} in dn")
        if name == "C" and len(value) != 2:
            raise MalformedDNError(f"country must be a two letter code, got {value!r}")
    return dn


def canonicalize(dn: DistinguishedName) -> bytes:
    """Serialize a DN for hashing. Stable across runs and platforms."""
    return str(dn).encode("utf-8")


def derive_id(dn: DistinguishedName) -> str:
    """Return the hex SHA-256 identifier of a DN.

    Raises:
        MalformedDNError: If the DN has no common name.
    """
    if not dn.common_name:
        raise MalformedDNError(f"dn {dn} has no common name (CN)")
    return hashlib.sha256(canonicalize(dn)).hexdigest()


def _oid_for(name: str) -> x509.ObjectIdentifier:
    if name in ATTRIBUTE_OIDS:
        return ATTRIBUTE_OIDS[name]
    return x509.ObjectIdentifier(name)


def _parse_slash_form(text: str) -> DistinguishedName:
    attributes = []
    for component in _split(text, "/"):
        key, separator, raw_value = component.partition("=")
        if not separator:
            raise MalformedDNError(f"dn component {component.strip()!r} is missing '='")

        key = key.strip()
        if _DOTTED_OID.match(key):
            name = key
        elif key.lower() in _ALIASES:
            name = _ALIASES[key.lower()]
        else:
            raise MalformedDNError(f"unknown attribute type {key!r} in dn")

        attributes.append((name, _unescape(raw_value.strip())))
    return DistinguishedName(tuple(attributes))


def _parse_comma_form(text: str) -> DistinguishedName:
    try:
        name = x509.Name.from_rfc4514_string(
            _COMMA_SPACING.sub(",", text), attr_name_overrides=_RFC4514_NAMES
        )
    except ValueError as e:
        raise MalformedDNError(f"dn {text!r} is not a valid RFC 4514 name") from e
    return DistinguishedName.from_x509(name)


def _split(text: str, separator: str) -> list[str]:
    """Split on unescaped separators, keeping escape sequences intact."""
    components: list[str] = []
    current: list[str] = []
    escaped = False
    for char in text:
        if escaped:
            current.append("\\" + char)
            escaped = False
        elif char == "\\":
            escaped = True
        elif char == separator:
            components.append("".join(current))
            current = []
        else:
            current.append(char)

    if escaped:
        raise MalformedDNError("dn ends with a dangling escape character")

    components.append("".join(current))
    for component in components:
        if not component.strip():
            raise MalformedDNError("dn contains an empty component")
    return components


def _unescape(value: str) -> str:
    return re.sub(r"\\(.)", r"\1", value)


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("/", "\\/")
