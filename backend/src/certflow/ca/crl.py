"""Certificate revocation list generation.

A CRL is rebuilt in full from the current set of revocation records every
time. Entries are deduplicated by serial and ordered by revocation date, so
two builds from the same records differ only in their update timestamps and
signature.
"""

import logging
import tomllib
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import TYPE_CHECKING

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from opentelemetry import trace
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from certflow.ca.crypto import sign_builder
from certflow.ca.identity import DistinguishedName
from certflow.domain.states import DigestAlgorithm, RevocationReason
from certflow.errors import ConfigInvalidError

if TYPE_CHECKING:
    from certflow.ca.authority_store import Authority

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

DEFAULT_POLICY = """\
# CRL signing policy for this CA
crl_days = 30
crl_digest = "SHA256"
"""


class SigningPolicy(BaseModel):
    """CA signing configuration read from the policy file."""

    model_config = ConfigDict(extra="forbid")

    crl_days: int = Field(30, gt=0)
    crl_digest: DigestAlgorithm = DigestAlgorithm.SHA256


@dataclass(frozen=True)
class RevocationRecord:
    serial: int
    revoked_at: datetime
    reason: RevocationReason | None = None
    request_id: str | None = None
    host: str | None = None
    ca_label: str | None = None


@dataclass(frozen=True)
class RevokedItemFailure:
    """A file in the revoked-items directory that could not be read."""

    path: Path
    error: str


@dataclass(frozen=True)
class GeneratedCRL:
    issuer: DistinguishedName
    this_update: datetime
    next_update: datetime
    entries: tuple[RevocationRecord, ...]
    pem: str


def write_default_policy(path: Path) -> None:
    path.write_text(DEFAULT_POLICY)


def load_signing_policy(path: str | Path) -> SigningPolicy:
    """Read the CA signing policy.

    Raises:
        ConfigInvalidError: If the file is missing, not TOML or has bad values.
    """
    policy_path = Path(path)
    try:
        with policy_path.open("rb") as f:
            data = tomllib.load(f)
        return SigningPolicy.model_validate(data)
    except OSError as e:
        raise ConfigInvalidError(f"Cannot read CA config {policy_path}: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise ConfigInvalidError(f"CA config {policy_path} is not valid TOML: {e}") from e
    except ValidationError as e:
        raise ConfigInvalidError(f"CA config {policy_path} is invalid: {e}") from e


def load_revoked_directory(
    path: str | Path,
) -> tuple[list[RevocationRecord], list[RevokedItemFailure]]:
    """Read every ``*.pem`` certificate placed in the revoked-items directory.

    The revocation date of each entry is the file's modification time. Files
    that cannot be read are returned as failures instead of aborting the scan.
    A missing directory yields no records.
    """
    directory = Path(path)
    records: list[RevocationRecord] = []
    failures: list[RevokedItemFailure] = []
    if not directory.is_dir():
        return records, failures

    for item in sorted(directory.glob("*.pem")):
        try:
            certificate = x509.load_pem_x509_certificate(item.read_bytes())
            revoked_at = datetime.fromtimestamp(item.stat().st_mtime, tz=timezone.utc)
        except (OSError, ValueError) as e:
            logger.warning("revoked_item_unreadable", extra={"path": str(item), "error": str(e)})
            failures.append(RevokedItemFailure(path=item, error=str(e)))
            continue
        records.append(RevocationRecord(serial=certificate.serial_number, revoked_at=revoked_at))

    return records, failures


def merge_records(*sources: list[RevocationRecord]) -> list[RevocationRecord]:
    """Deduplicate by serial, keeping the earliest revocation, in CRL order."""
    by_serial: dict[int, RevocationRecord] = {}
    for source in sources:
        for record in source:
            current = by_serial.get(record.serial)
            if current is None or as_utc(record.revoked_at) < as_utc(current.revoked_at):
                by_serial[record.serial] = record
    return sorted(by_serial.values(), key=lambda r: (as_utc(r.revoked_at), r.serial))


class CRLBuilder:
    """Builds and signs a CRL for one Authority."""

    def generate(
        self,
        authority: "Authority",
        records: list[RevocationRecord],
        policy: SigningPolicy,
    ) -> GeneratedCRL:
        """Build a signed CRL listing every record.

        Raises:
            UnsupportedDigestError: If the policy digest cannot be used.
            SigningFailedError: If the Authority key cannot sign.
        """
        with tracer.start_as_current_span("CRLBuilder.generate") as span:
            entries = merge_records(records)
            span.set_attribute("entries", len(entries))

            this_update = datetime.now(timezone.utc)
            next_update = this_update + timedelta(days=policy.crl_days)

            builder = (
                x509.CertificateRevocationListBuilder()
                .issuer_name(authority.certificate.subject)
                .last_update(this_update)
                .next_update(next_update)
                .add_extension(
                    x509.AuthorityKeyIdentifier.from_issuer_public_key(
                        authority.certificate.public_key()  # type: ignore[arg-type]
                    ),
                    critical=False,
                )
            )
            for record in entries:
                builder = builder.add_revoked_certificate(self._revoked_entry(record))

            crl = sign_builder(builder, authority.private_key, policy.crl_digest)
            pem = crl.public_bytes(serialization.Encoding.PEM).decode("utf-8")

            logger.info(
                "crl_generated",
                extra={
                    "issuer": authority.dn,
                    "entries": len(entries),
                    "next_update": next_update.isoformat(),
                },
            )

            return GeneratedCRL(
                issuer=authority.distinguished_name,
                this_update=this_update,
                next_update=next_update,
                entries=tuple(entries),
                pem=pem,
            )

    def _revoked_entry(self, record: RevocationRecord) -> x509.RevokedCertificate:
        builder = (
            x509.RevokedCertificateBuilder()
            .serial_number(record.serial)
            .revocation_date(as_utc(record.revoked_at))
        )
        if record.reason is not None and record.reason is not RevocationReason.UNSPECIFIED:
            builder = builder.add_extension(x509.CRLReason(record.reason.flag), critical=False)
        return builder.build()


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
