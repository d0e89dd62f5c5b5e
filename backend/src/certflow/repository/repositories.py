"""Repository layer for certificate lifecycle data access."""

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from certflow.domain.models import CrlRecord, IssuedCertificate, PendingRequest, RevocationEntry
from certflow.domain.states import PendingRequestStatus

logger = logging.getLogger(__name__)


class PendingRequestRepository:
    """Repository for the queue of CSRs waiting to be signed."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(self, request: PendingRequest) -> PendingRequest:
        """Queue a new request."""
        self.db.add(request)
        await self.db.flush()
        return request

    async def get_by_id(self, request_id: str) -> PendingRequest | None:
        result = await self.db.execute(
            select(PendingRequest).where(PendingRequest.request_id == request_id)
        )
        return result.scalar_one_or_none()

    async def search_pending(
        self, ca_name: str | None = None, common_name: str | None = None
    ) -> list[PendingRequest]:
        """
        List unsigned requests, optionally filtered by CA name and common name.

        Ordered by (created_at, request_id) so repeated reads of the same data
        return the same sequence.
        """
        query = select(PendingRequest).where(
            PendingRequest.status == PendingRequestStatus.PENDING.value
        )
        if ca_name is not None:
            query = query.where(PendingRequest.ca_name == ca_name)
        if common_name is not None:
            query = query.where(PendingRequest.common_name == common_name)

        result = await self.db.execute(
            query.order_by(PendingRequest.created_at.asc(), PendingRequest.request_id.asc())
        )
        return list(result.scalars().all())

    async def update(self, request: PendingRequest) -> PendingRequest:
        await self.db.flush()
        return request


class IssuedCertificateRepository:
    """Repository for persisted certificates, keyed by RequestId."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(self, cert: IssuedCertificate) -> IssuedCertificate:
        self.db.add(cert)
        await self.db.flush()
        return cert

    async def get_by_id(self, request_id: str) -> IssuedCertificate | None:
        result = await self.db.execute(
            select(IssuedCertificate).where(IssuedCertificate.request_id == request_id)
        )
        return result.scalar_one_or_none()

    async def get_latest_by_host(self, host: str) -> IssuedCertificate | None:
        """Get the most recently issued certificate for a host."""
        result = await self.db.execute(
            select(IssuedCertificate)
            .where(IssuedCertificate.host == host)
            .order_by(IssuedCertificate.issued_at.desc(), IssuedCertificate.request_id.asc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def update(self, cert: IssuedCertificate) -> IssuedCertificate:
        await self.db.flush()
        return cert


class RevocationRepository:
    """Repository for the revocation ledger (append only)."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(self, entry: RevocationEntry) -> RevocationEntry:
        """
        Record a revocation.

        Note: No update or delete methods exist; the ledger only grows.
        """
        self.db.add(entry)
        await self.db.flush()
        return entry

    async def get_by_serial(self, serial_number: str) -> RevocationEntry | None:
        result = await self.db.execute(
            select(RevocationEntry).where(RevocationEntry.serial_number == serial_number)
        )
        return result.scalar_one_or_none()

    async def list_by_ca_label(self, ca_label: str) -> list[RevocationEntry]:
        result = await self.db.execute(
            select(RevocationEntry)
            .where(RevocationEntry.ca_label == ca_label)
            .order_by(RevocationEntry.revoked_at.asc(), RevocationEntry.serial_number.asc())
        )
        return list(result.scalars().all())


class CrlRepository:
    """Repository for the last generated CRL of each CA."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, ca_label: str) -> CrlRecord | None:
        result = await self.db.execute(select(CrlRecord).where(CrlRecord.ca_label == ca_label))
        return result.scalar_one_or_none()

    async def save(self, record: CrlRecord) -> CrlRecord:
        """Insert or replace the CRL stored for record.ca_label."""
        merged = await self.db.merge(record)
        await self.db.flush()
        return merged
