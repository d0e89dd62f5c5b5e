from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, DateTime, Index, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from shared.database import Base

if TYPE_CHECKING:
    from certflow.domain.state_machines import (
        IssuedCertificateStateMachine,
        PendingRequestStateMachine,
    )

from .states import CertificateStatus, PendingRequestStatus, RevocationReason


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class PendingRequest(Base):
    """A CSR waiting in the queue for a CA to sign it."""

    __tablename__ = "pending_requests"

    request_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    common_name: Mapped[str] = mapped_column(String(255), nullable=False)
    subject: Mapped[str] = mapped_column(Text, nullable=False)
    ca_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    host: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    cert_type: Mapped[str] = mapped_column(String(20), nullable=False)  # CertificateType
    digest: Mapped[str] = mapped_column(String(10), nullable=False)  # DigestAlgorithm
    days: Mapped[int] = mapped_column(Integer, nullable=False)
    extensions: Mapped[list[list[str]]] = mapped_column(JSON, nullable=False, default=list)
    csr_pem: Mapped[str] = mapped_column(Text, nullable=False)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PendingRequestStatus.PENDING.value
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    signed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_pending_requests_ca_name", "ca_name"),
        Index("idx_pending_requests_common_name", "common_name"),
    )

    @property
    def state_machine(self) -> "PendingRequestStateMachine":
        """Get state machine for this entity."""
        from certflow.domain.state_machines import PendingRequestStateMachine

        return PendingRequestStateMachine(self)

    def mark_signed(self) -> "PendingRequestStatus":
        """Mark the request signed via state machine.

        Raises:
            InvalidTransitionError: If the request was already signed
        """
        return self.state_machine.mark_signed(utc_now())


class IssuedCertificate(Base):
    """The persisted certificate for one RequestId."""

    __tablename__ = "issued_certificates"

    request_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    host: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    ca_label: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    subject: Mapped[str] = mapped_column(Text, nullable=False)
    issuer: Mapped[str] = mapped_column(Text, nullable=False)
    serial_number: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    sha1_fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)
    cert_type: Mapped[str] = mapped_column(String(20), nullable=False)
    digest: Mapped[str] = mapped_column(String(10), nullable=False)
    certificate_pem: Mapped[str] = mapped_column(Text, nullable=False)

    not_before: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    not_after: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=CertificateStatus.ISSUED.value
    )
    issued_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    revoked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    revocation_reason: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    @property
    def state_machine(self) -> "IssuedCertificateStateMachine":
        """Get state machine for this entity."""
        from certflow.domain.state_machines import IssuedCertificateStateMachine

        return IssuedCertificateStateMachine(self)

    @property
    def is_revoked(self) -> bool:
        return self.status == CertificateStatus.REVOKED.value

    def reissue(self) -> "CertificateStatus":
        return self.state_machine.reissue()

    def revoke(self, reason: RevocationReason | None = None) -> "CertificateStatus":
        """Revoke certificate via state machine.

        Raises:
            InvalidTransitionError: If already REVOKED
        """
        return self.state_machine.revoke(utc_now(), reason)


class RevocationEntry(Base):
    """Ledger row. No update or delete path exists for these."""

    __tablename__ = "revocations"

    revocation_id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    request_id: Mapped[str] = mapped_column(String(64), nullable=False)
    serial_number: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    ca_label: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    host: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    revoked_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    reason: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)


class CrlRecord(Base):
    __tablename__ = "crls"

    ca_label: Mapped[str] = mapped_column(String(255), primary_key=True)
    crl_pem: Mapped[str] = mapped_column(Text, nullable=False)
    this_update: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    next_update: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    entry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
