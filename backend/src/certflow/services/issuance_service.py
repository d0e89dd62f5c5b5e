"""Issuance workflows: ad hoc issue, batch autosign and external certificates."""

import logging
from collections.abc import Callable
from dataclasses import dataclass

from opentelemetry import trace
from sqlalchemy.ext.asyncio import AsyncSession

from certflow.ca.authority_store import Authority
from certflow.ca.crypto import private_key_to_pem
from certflow.ca.request_builder import CertificateRequest
from certflow.ca.signing_engine import Certificate, SigningEngine, ca_label_for
from certflow.errors import AuthorityLockedError, CertificateAuthorityError, MissingFieldError
from certflow.repository.gateway import RepositoryGateway

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass
class IssueResult:
    """Outcome of an ad hoc issue."""

    certificate: Certificate
    private_key_pem: str | None
    persisted: bool


@dataclass
class BatchItemResult:
    """Outcome for one request in a batch."""

    request: CertificateRequest
    certificate: Certificate | None = None
    error: CertificateAuthorityError | None = None
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return self.certificate is not None and self.error is None


class IssuanceService:
    """Service for signing certificates and saving them to the repository."""

    def __init__(self, db: AsyncSession, signing_engine: SigningEngine | None = None):
        self.db = db
        self.gateway = RepositoryGateway(db)
        self.signing_engine = signing_engine or SigningEngine()

    async def issue(
        self,
        request: CertificateRequest,
        authority: Authority,
        save: bool = False,
        overwrite: bool = False,
    ) -> IssueResult:
        """Sign an ad hoc request and optionally save the certificate.

        The certificate is saved under derive_id(request.name) and labelled
        with request.ca_name, or the Authority DN when no name was given.

        Raises:
            MissingFieldError: If save is requested without a hostname.
            SaveConflictError: If a certificate for the DN exists and overwrite is False.
            Any error from SigningEngine.sign().
        """
        with tracer.start_as_current_span("IssuanceService.issue") as span:
            span.set_attribute("request_id", request.id)
            span.set_attribute("save", save)

            if save and not request.hostname:
                raise MissingFieldError("host", "host required if the certificate is saved")

            certificate = self.signing_engine.sign(request, authority)

            if save:
                certificate = certificate.placed(
                    request.hostname, ca_label_for(authority, request.ca_name)
                )
                await self.gateway.persist_certificate(certificate, overwrite=overwrite)
                await self.db.commit()

            key_pem = private_key_to_pem(request.private_key) if request.private_key else None
            return IssueResult(certificate=certificate, private_key_pem=key_pem, persisted=save)

    async def autosign(
        self,
        authority: Authority,
        ca_name: str,
        approve: Callable[[CertificateRequest], bool] | None = None,
        overwrite: bool = False,
    ) -> list[BatchItemResult]:
        """Sign every pending request addressed to ca_name.

        Items are handled one at a time; each approved item is signed, saved
        and committed before the next is looked at. A failing item is reported
        in its result and the batch continues. A closed Authority aborts the
        whole batch.

        Args:
            authority: The open signing Authority.
            ca_name: Requests are selected by, and certificates labelled with, this name.
            approve: Called per request; returning False skips it. None approves all.
            overwrite: Replace certificates already saved for the same DN.
        """
        with tracer.start_as_current_span("IssuanceService.autosign") as span:
            span.set_attribute("ca_name", ca_name)

            requests = await self.gateway.search_pending_requests(ca_name=ca_name)
            span.set_attribute("pending", len(requests))

            results = []
            for request in requests:
                if approve is not None and not approve(request):
                    results.append(BatchItemResult(request=request, skipped=True))
                    continue
                results.append(await self._sign_pending(request, authority, ca_name, overwrite))

            signed = sum(1 for r in results if r.ok)
            failed = sum(1 for r in results if r.error is not None)
            span.set_attribute("signed", signed)
            span.set_attribute("failed", failed)
            logger.info(
                "autosign_finished",
                extra={
                    "ca_name": ca_name,
                    "pending": len(requests),
                    "signed": signed,
                    "failed": failed,
                },
            )
            return results

    async def import_certificate(
        self,
        request: CertificateRequest,
        certificate_pem: str,
        save: bool = False,
        overwrite: bool = False,
    ) -> Certificate:
        """Bind a certificate signed outside this tool to a pending request.

        When saved, the certificate is labelled with request.ca_name, or its
        issuer DN, and the pending request is marked signed.

        Raises:
            SigningFailedError: If the PEM is unreadable or certifies another key.
            SaveConflictError: If a certificate for the DN exists and overwrite is False.
        """
        with tracer.start_as_current_span("IssuanceService.import_certificate") as span:
            span.set_attribute("request_id", request.id)

            certificate = self.signing_engine.accept_external(request, certificate_pem)
            if save:
                certificate = certificate.placed(
                    request.hostname, request.ca_name or str(certificate.issuer)
                )
                await self.gateway.persist_certificate(certificate, overwrite=overwrite)
                await self.gateway.mark_request_signed(request.id)
                await self.db.commit()
            return certificate

    async def _sign_pending(
        self,
        request: CertificateRequest,
        authority: Authority,
        ca_name: str,
        overwrite: bool,
    ) -> BatchItemResult:
        try:
            certificate = self.signing_engine.sign(request, authority)
            certificate = certificate.placed(request.hostname, ca_label_for(authority, ca_name))
            await self.gateway.persist_certificate(certificate, overwrite=overwrite)
            await self.gateway.mark_request_signed(request.id)
            await self.db.commit()
        except AuthorityLockedError:
            raise
        except CertificateAuthorityError as e:
            await self.db.rollback()
            logger.warning(
                "autosign_item_failed",
                extra={"request_id": request.id, "subject": request.subject, "error": str(e)},
            )
            return BatchItemResult(request=request, error=e)
        return BatchItemResult(request=request, certificate=certificate)
