"""Request queue operations: submitting CSRs and searching pending ones."""

import logging

from opentelemetry import trace
from sqlalchemy.ext.asyncio import AsyncSession

from certflow.ca.request_builder import CertificateRequest, CertificateRequestInput, RequestBuilder
from certflow.repository.gateway import RepositoryGateway

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class RequestService:
    """Service for the queue of certificate requests awaiting a CA."""

    def __init__(self, db: AsyncSession, request_builder: RequestBuilder | None = None):
        self.db = db
        self.request_builder = request_builder or RequestBuilder()
        self.gateway = RepositoryGateway(db, self.request_builder)

    async def submit(
        self, csr_pem: str, options: CertificateRequestInput, overwrite: bool = False
    ) -> CertificateRequest:
        """Validate a CSR and queue it for signing.

        Args:
            csr_pem: PEM encoded CSR. Its subject becomes the request DN.
            options: Type, digest, validity, extensions, host and target CA.
            overwrite: Replace an existing request for the same DN.

        Returns:
            The queued request.

        Raises:
            InvalidFieldError: If the CSR is unreadable or badly signed.
            SaveConflictError: If the DN is already queued and overwrite is False.
            Any validation error from RequestBuilder.build().
        """
        with tracer.start_as_current_span("RequestService.submit") as span:
            request = self.request_builder.from_csr(csr_pem, options)
            span.set_attribute("request_id", request.id)

            await self.gateway.submit_request(request, overwrite=overwrite)
            await self.db.commit()

            logger.info(
                "request_submitted",
                extra={
                    "request_id": request.id,
                    "subject": request.subject,
                    "ca_name": request.ca_name,
                    "host": request.hostname,
                },
            )
            return request

    async def search(
        self, ca_name: str | None = None, common_name: str | None = None
    ) -> list[CertificateRequest]:
        """List pending requests, optionally limited to one CA or common name."""
        with tracer.start_as_current_span("RequestService.search") as span:
            if ca_name:
                span.set_attribute("ca_name", ca_name)
            if common_name:
                span.set_attribute("common_name", common_name)
            return await self.gateway.search_pending_requests(
                ca_name=ca_name, common_name=common_name
            )
