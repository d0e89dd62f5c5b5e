from enum import StrEnum

from cryptography import x509


class CertificateType(StrEnum):
    SERVER = "server"
    CLIENT = "client"
    PEER = "peer"
    CUSTOM = "custom"


class DigestAlgorithm(StrEnum):
    """Digest names accepted on the command line.

    SHA is the legacy SHA-0 name. It is accepted as input but no signer
    implements it, so using it fails with UnsupportedDigestError.
    """

    SHA = "SHA"
    SHA1 = "SHA1"
    SHA224 = "SHA224"
    SHA256 = "SHA256"
    SHA384 = "SHA384"
    SHA512 = "SHA512"
    MD5 = "MD5"


RSA_KEY_LENGTHS = (1024, 2048, 4096, 8192)


class PendingRequestStatus(StrEnum):
    """All possible states for a queued certificate signing request."""

    PENDING = "pending"
    SIGNED = "signed"  # Terminal state


class PendingRequestEvent(StrEnum):
    """All possible events that trigger PendingRequest transitions."""

    CERTIFICATE_ISSUED = "certificate_issued"


class CertificateStatus(StrEnum):
    """All possible states for an issued certificate."""

    ISSUED = "issued"
    REVOKED = "revoked"  # Left only by an explicit reissue


class CertificateEvent(StrEnum):
    """All possible events that trigger IssuedCertificate transitions."""

    REISSUED = "reissued"
    REVOCATION_REQUESTED = "revocation_requested"


class RevocationReason(StrEnum):
    UNSPECIFIED = "unspecified"
    KEY_COMPROMISE = "key_compromise"
    CA_COMPROMISE = "ca_compromise"
    AFFILIATION_CHANGED = "affiliation_changed"
    SUPERSEDED = "superseded"
    CESSATION_OF_OPERATION = "cessation_of_operation"
    CERTIFICATE_HOLD = "certificate_hold"
    PRIVILEGE_WITHDRAWN = "privilege_withdrawn"

    @property
    def flag(self) -> x509.ReasonFlags:
        return x509.ReasonFlags[self.value]
