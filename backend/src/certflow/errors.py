"""Error kinds raised by the certificate lifecycle.

Every operation validates its input before touching keys, files or the
repository, so any of these errors means nothing was changed.
"""


class CertificateAuthorityError(Exception):
    """Base class for all certificate lifecycle errors."""

    pass


class MissingFieldError(CertificateAuthorityError):
    """Raised when a required field is absent or blank."""

    def __init__(self, field: str, message: str | None = None):
        self.field = field
        super().__init__(message or f"{field} is required")


class InvalidFieldError(CertificateAuthorityError):
    """Raised when a field is present but has an unusable value."""

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(message)


class InvalidEnumError(InvalidFieldError):
    """Raised when a value is not a member of a closed set."""

    def __init__(self, field: str, value: object, allowed: list[str]):
        self.value = value
        self.allowed = allowed
        super().__init__(field, f"{field} must be one of {', '.join(allowed)} (got {value!r})")


class MalformedDNError(CertificateAuthorityError):
    """Raised when a distinguished name is not a string or violates DN grammar."""

    pass


class MalformedExtensionError(CertificateAuthorityError):
    """Raised when an extension entry cannot be parsed or applied."""

    pass


class MissingExtensionsError(CertificateAuthorityError):
    """Raised when a custom certificate request carries no extensions."""

    pass


class InvalidKeyLengthError(CertificateAuthorityError):
    """Raised when an RSA key length is not one of the recognised sizes."""

    pass


class DestinationExistsError(CertificateAuthorityError):
    """Raised when CA material already exists at a bootstrap destination."""

    pass


class WrongPassphraseError(CertificateAuthorityError):
    """Raised when the CA private key cannot be decrypted."""

    pass


class NotFoundError(CertificateAuthorityError):
    """Raised when a CA, request or certificate does not exist."""

    pass


class SigningFailedError(CertificateAuthorityError):
    """Raised when the Authority cannot produce a valid signature."""

    pass


class UnsupportedDigestError(CertificateAuthorityError):
    """Raised when a digest is enumerated but not available at runtime."""

    pass


class SaveConflictError(CertificateAuthorityError):
    """Raised when persisting would overwrite an existing record."""

    pass


class ConfigInvalidError(CertificateAuthorityError):
    """Raised when the CA signing policy cannot be read or parsed."""

    pass


class AuthorityLockedError(CertificateAuthorityError):
    """Raised when an Authority's private key is used after it was closed."""

    pass
