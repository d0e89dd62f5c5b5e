"""Repository Gateway: the queryable store of pending requests and certificates.

Translates between the immutable CA objects (CertificateRequest, Certificate,
RevocationRecord) and the persisted rows. Methods flush but never commit; the
calling service owns the transaction.
"""

import logging
from collections.abc import Awaitable

from opentelemetry import trace
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from certflow.ca.crl import GeneratedCRL, RevocationRecord, as_utc
from certflow.ca.identity import parse_dn
from certflow.ca.request_builder import CertificateRequest, CertificateRequestInput, RequestBuilder
from certflow.ca.signing_engine import Certificate
from certflow.domain.models import (
    CrlRecord,
    IssuedCertificate,
    PendingRequest,
    RevocationEntry,
    utc_now,
)
from certflow.domain.states import CertificateType, DigestAlgorithm, RevocationReason
from certflow.errors import MissingFieldError, NotFoundError, SaveConflictError
from certflow.metrics import ca_metrics
from certflow.repository.repositories import (
    CrlRepository,
    IssuedCertificateRepository,
    PendingRequestRepository,
    RevocationRepository,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class RepositoryGateway:
    """SQLAlchemy implementation of the repository contract."""

    def __init__(self, db: AsyncSession, request_builder: RequestBuilder | None = None):
        self.db = db
        self.requests = PendingRequestRepository(db)
        self.certificates = IssuedCertificateRepository(db)
        self.revocations = RevocationRepository(db)
        self.crls = CrlRepository(db)
        self.request_builder = request_builder or RequestBuilder()

    async def submit_request(self, request: CertificateRequest, overwrite: bool = False) -> None:
        """Queue a CSR for signing.

        Raises:
            MissingFieldError: If the request carries no CSR.
            SaveConflictError: If a request with the same id exists and
                overwrite is False.
        """
        if not request.csr_pem:
            raise MissingFieldError("csr", "only requests built from a CSR can be queued")

        existing = await self.requests.get_by_id(request.id)
        if existing is not None:
            if not overwrite:
                ca_metrics.record_save_conflict()
                raise SaveConflictError(f"A request for {request.subject} is already queued")
            await self.db.delete(existing)
            await self.db.flush()

        row = PendingRequest(
            request_id=request.id,
            common_name=request.name.common_name,
            subject=request.subject,
            ca_name=request.ca_name,
            host=request.hostname,
            cert_type=request.type.value,
            digest=request.digest.value,
            days=request.requested_days,
            extensions=[[e.name, e.value] for e in request.extensions],
            csr_pem=request.csr_pem,
        )
        await self._flush_or_conflict(self.requests.create(row), request.id)
        logger.info(
            "request_queued",
            extra={
                "request_id": request.id,
                "subject": request.subject,
                "ca_name": request.ca_name,
            },
        )

    async def search_pending_requests(
        self, ca_name: str | None = None, common_name: str | None = None
    ) -> list[CertificateRequest]:
        """Return unsigned requests in a stable order."""
        with tracer.start_as_current_span("RepositoryGateway.search_pending_requests") as span:
            rows = await self.requests.search_pending(ca_name=ca_name, common_name=common_name)
            span.set_attribute("count", len(rows))
            return [self._to_request(row) for row in rows]

    async def mark_request_signed(self, request_id: str) -> None:
        """Raises NotFoundError if no request with this id is queued."""
        row = await self.requests.get_by_id(request_id)
        if row is None:
            raise NotFoundError(f"No pending request {request_id}")
        row.mark_signed()
        await self.requests.update(row)

    async def persist_certificate(self, cert: Certificate, overwrite: bool = False) -> None:
        """Store a signed certificate under its RequestId.

        Raises:
            MissingFieldError: If the certificate has no CA label.
            SaveConflictError: If a certificate with the same id exists and
                overwrite is False, or a concurrent writer got there first.
        """
        with tracer.start_as_current_span("RepositoryGateway.persist_certificate") as span:
            span.set_attribute("request_id", cert.request_id)
            span.set_attribute("overwrite", overwrite)

            if not cert.ca_label:
                raise MissingFieldError("ca_label", "certificate must be placed under a CA label")

            existing = await self.certificates.get_by_id(cert.request_id)
            if existing is not None and not overwrite:
                ca_metrics.record_save_conflict()
                logger.warning(
                    "certificate_save_conflict",
                    extra={"request_id": cert.request_id, "subject": str(cert.subject)},
                )
                raise SaveConflictError(
                    f"A certificate for {cert.subject} already exists; pass overwrite to replace it"
                )

            if existing is None:
                row = IssuedCertificate(request_id=cert.request_id)
                self._apply(row, cert)
                await self._flush_or_conflict(self.certificates.create(row), cert.request_id)
            else:
                self._apply(existing, cert)
                existing.reissue()
                await self._flush_or_conflict(self.certificates.update(existing), cert.request_id)

            ca_metrics.record_certificate_persisted(existing is not None)
            logger.info(
                "certificate_persisted",
                extra={
                    "request_id": cert.request_id,
                    "host": cert.host,
                    "ca_label": cert.ca_label,
                    "serial": cert.serial_hex,
                    "replaced": existing is not None,
                },
            )

    async def fetch_certificate_by_host(self, hostname: str) -> Certificate:
        """Raises NotFoundError if no certificate was saved for hostname."""
        row = await self.certificates.get_latest_by_host(hostname)
        if row is None:
            raise NotFoundError(f"No certificate found for host {hostname}")
        return self._to_certificate(row)

    async def revoke_certificate(
        self, request_id: str, reason: RevocationReason | None = None
    ) -> tuple[RevocationRecord, bool]:
        """Mark a certificate revoked and append it to the ledger.

        Returns:
            Tuple of (record, created). created is False when the certificate
            was already revoked; the existing record is returned unchanged.

        Raises:
            NotFoundError: If no certificate exists under request_id.
        """
        row = await self.certificates.get_by_id(request_id)
        if row is None:
            raise NotFoundError(f"No certificate {request_id}")

        if row.is_revoked:
            entry = await self.revocations.get_by_serial(row.serial_number)
            if entry is not None:
                return self._to_record(entry), False

        if not row.is_revoked:
            row.revoke(reason)
        entry = RevocationEntry(
            request_id=row.request_id,
            serial_number=row.serial_number,
            ca_label=row.ca_label,
            host=row.host,
            revoked_at=row.revoked_at,
            reason=row.revocation_reason,
        )
        await self._flush_or_conflict(self.revocations.create(entry), request_id)
        return self._to_record(entry), True

    async def list_revoked(self, ca_label: str) -> list[RevocationRecord]:
        entries = await self.revocations.list_by_ca_label(ca_label)
        return [self._to_record(entry) for entry in entries]

    async def save_crl(self, ca_label: str, crl: GeneratedCRL) -> None:
        await self.crls.save(
            CrlRecord(
                ca_label=ca_label,
                crl_pem=crl.pem,
                this_update=crl.this_update,
                next_update=crl.next_update,
                entry_count=len(crl.entries),
            )
        )

    async def _flush_or_conflict(self, operation: Awaitable[object], request_id: str) -> None:
        try:
            await operation
        except (IntegrityError, StaleDataError) as e:
            await self.db.rollback()
            ca_metrics.record_save_conflict()
            logger.warning("save_conflict", extra={"request_id": request_id, "error": str(e)})
            raise SaveConflictError(
                f"Record {request_id} was changed by another writer, nothing was saved"
            ) from e

    def _apply(self, row: IssuedCertificate, cert: Certificate) -> None:
        # Every save, overwrite included, counts as the latest issue for its host
        row.issued_at = utc_now()
        row.host = cert.host
        row.ca_label = cert.ca_label  # type: ignore[assignment]
        row.subject = str(cert.subject)
        row.issuer = str(cert.issuer)
        row.serial_number = cert.serial_hex
        row.sha1_fingerprint = cert.sha1_fingerprint
        row.cert_type = cert.type.value
        row.digest = cert.digest.value
        row.certificate_pem = cert.pem
        row.not_before = cert.not_before
        row.not_after = cert.not_after

    def _to_request(self, row: PendingRequest) -> CertificateRequest:
        options = CertificateRequestInput(
            type=row.cert_type,
            digest=row.digest,
            days=row.days,
            extensions=[(name, value) for name, value in row.extensions],
            host=row.host,
            ca_name=row.ca_name,
        )
        return self.request_builder.from_csr(row.csr_pem, options)

    def _to_certificate(self, row: IssuedCertificate) -> Certificate:
        return Certificate(
            request_id=row.request_id,
            subject=parse_dn(row.subject),
            issuer=parse_dn(row.issuer),
            serial=int(row.serial_number, 16),
            not_before=as_utc(row.not_before),
            not_after=as_utc(row.not_after),
            digest=DigestAlgorithm(row.digest),
            type=CertificateType(row.cert_type),
            sha1_fingerprint=row.sha1_fingerprint,
            pem=row.certificate_pem,
            host=row.host,
            ca_label=row.ca_label,
        )

    def _to_record(self, entry: RevocationEntry) -> RevocationRecord:
        return RevocationRecord(
            serial=int(entry.serial_number, 16),
            revoked_at=as_utc(entry.revoked_at),
            reason=RevocationReason(entry.reason) if entry.reason else None,
            request_id=entry.request_id,
            host=entry.host,
            ca_label=entry.ca_label,
        )
