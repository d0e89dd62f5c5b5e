"""CRL generation from the revocation ledger and the revoked-items directory."""

import logging
from dataclasses import dataclass, field
from pathlib import Path

from opentelemetry import trace
from sqlalchemy.ext.asyncio import AsyncSession

from certflow.ca.authority_store import POLICY_FILENAME, REVOKED_DIRNAME, Authority
from certflow.ca.crl import (
    CRLBuilder,
    GeneratedCRL,
    RevokedItemFailure,
    load_revoked_directory,
    load_signing_policy,
    merge_records,
)
from certflow.errors import NotFoundError
from certflow.metrics import ca_metrics
from certflow.repository.gateway import RepositoryGateway

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

DEFAULT_CRL_FILENAME = "crl.pem"


@dataclass
class CRLOutcome:
    crl: GeneratedCRL
    path: Path
    ca_label: str
    failures: list[RevokedItemFailure] = field(default_factory=list)


def resolve_path(ca_path: str | Path, value: str | Path) -> Path:
    """Absolute paths are kept; relative ones are taken from the CA directory."""
    path = Path(value)
    return path if path.is_absolute() else Path(ca_path) / path


class CRLService:
    """Service for building, writing and recording CRLs."""

    def __init__(self, db: AsyncSession, builder: CRLBuilder | None = None):
        self.db = db
        self.gateway = RepositoryGateway(db)
        self.builder = builder or CRLBuilder()

    async def generate(
        self,
        authority: Authority,
        ca_config: str | Path = POLICY_FILENAME,
        crl_filename: str | Path = DEFAULT_CRL_FILENAME,
        revoked_path: str | Path = REVOKED_DIRNAME,
        ca_label: str | None = None,
    ) -> CRLOutcome:
        """Rebuild the CRL for an Authority.

        Paths are resolved against the Authority's directory unless absolute.
        The signing policy is read before anything is written, so a bad
        config leaves both the CRL file and the repository untouched.

        Args:
            authority: The open Authority that signs the CRL.
            ca_config: Signing policy file.
            crl_filename: Where the PEM CRL is written.
            revoked_path: Directory of revoked certificates to include.
            ca_label: Ledger label to read and store under; defaults to the Authority DN.

        Raises:
            ConfigInvalidError: If the signing policy cannot be read.
            NotFoundError: If the directory for crl_filename does not exist.
            UnsupportedDigestError, SigningFailedError: If the CRL cannot be signed.
        """
        with tracer.start_as_current_span("CRLService.generate") as span:
            label = ca_label or authority.dn
            span.set_attribute("ca_label", label)

            policy = load_signing_policy(resolve_path(authority.path, ca_config))
            output = resolve_path(authority.path, crl_filename)
            if not output.parent.is_dir():
                raise NotFoundError(f"CRL directory {output.parent} does not exist")

            ledger_records = await self.gateway.list_revoked(label)
            directory_records, failures = load_revoked_directory(
                resolve_path(authority.path, revoked_path)
            )
            records = merge_records(ledger_records, directory_records)

            crl = self.builder.generate(authority, records, policy)

            output.write_text(crl.pem)

            await self.gateway.save_crl(label, crl)
            await self.db.commit()

            ca_metrics.record_crl_generated(len(crl.entries))
            span.set_attribute("entries", len(crl.entries))
            span.set_attribute("failures", len(failures))
            logger.info(
                "crl_written",
                extra={
                    "ca_label": label,
                    "path": str(output),
                    "entries": len(crl.entries),
                    "ledger_entries": len(ledger_records),
                    "directory_entries": len(directory_records),
                    "failures": len(failures),
                },
            )

            return CRLOutcome(crl=crl, path=output, ca_label=label, failures=failures)
