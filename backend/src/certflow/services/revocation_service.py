"""Revocation ledger."""

import logging
from dataclasses import dataclass

from opentelemetry import trace
from sqlalchemy.ext.asyncio import AsyncSession

from certflow.ca.crl import RevocationRecord
from certflow.ca.signing_engine import Certificate
from certflow.domain.states import RevocationReason
from certflow.metrics import ca_metrics
from certflow.repository.gateway import RepositoryGateway

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass
class RevocationOutcome:
    certificate: Certificate
    record: RevocationRecord
    created: bool


class RevocationLedger:
    """Records revoked certificates. Revocation is monotonic and idempotent."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.gateway = RepositoryGateway(db)

    async def revoke(
        self, hostname: str, reason: RevocationReason | None = None
    ) -> RevocationOutcome:
        """Revoke the certificate saved for hostname.

        Revoking an already revoked certificate succeeds and returns the
        existing record with created=False.

        Raises:
            NotFoundError: If no certificate was saved for hostname. Nothing is written.
        """
        with tracer.start_as_current_span("RevocationLedger.revoke") as span:
            span.set_attribute("host", hostname)

            certificate = await self.gateway.fetch_certificate_by_host(hostname)
            record, created = await self.gateway.revoke_certificate(
                certificate.request_id, reason
            )
            span.set_attribute("created", created)

            if created:
                await self.db.commit()
                ca_metrics.record_certificate_revoked(
                    (reason or RevocationReason.UNSPECIFIED).value
                )
                logger.info(
                    "certificate_revoked",
                    extra={
                        "host": hostname,
                        "request_id": certificate.request_id,
                        "serial": certificate.serial_hex,
                        "reason": reason.value if reason else None,
                    },
                )
            else:
                logger.info(
                    "certificate_already_revoked",
                    extra={"host": hostname, "request_id": certificate.request_id},
                )

            return RevocationOutcome(certificate=certificate, record=record, created=created)
