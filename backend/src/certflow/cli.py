"""certflow command line.

Every command maps onto one core operation. Passphrases are only ever read
from a hidden prompt. Confirmation prompts live here; the services receive
plain booleans or an approval callback.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

import click
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from sqlalchemy.ext.asyncio import AsyncSession

from certflow.ca.authority_store import (
    POLICY_FILENAME,
    REVOKED_DIRNAME,
    AuthorityBootstrapInput,
    AuthorityStore,
)
from certflow.ca.request_builder import CertificateRequest, CertificateRequestInput, RequestBuilder
from certflow.ca.signing_engine import Certificate
from certflow.domain.states import RSA_KEY_LENGTHS, RevocationReason
from certflow.errors import CertificateAuthorityError
from certflow.services.crl_service import DEFAULT_CRL_FILENAME, CRLService
from certflow.services.issuance_service import IssuanceService
from certflow.services.request_service import RequestService
from certflow.services.revocation_service import RevocationLedger
from shared.config import settings
from shared.database import engine, get_db_context, init_db
from shared.logging import setup_logging
from shared.metrics import setup_metrics
from shared.tracing import setup_tracing

logger = logging.getLogger(__name__)

T = TypeVar("T")

DIGEST_HELP = "digest algorithm: SHA, SHA1, SHA224, SHA256, SHA384, SHA512 or MD5"


class CertflowGroup(click.Group):
    """Turns lifecycle errors into a message and a non-zero exit."""

    def invoke(self, ctx: click.Context) -> object:
        try:
            return super().invoke(ctx)
        except CertificateAuthorityError as e:
            logger.debug("command_failed", extra={"error": type(e).__name__})
            raise click.ClickException(str(e)) from e


def configure_telemetry(ctx: click.Context) -> None:
    setup_logging()
    tracer_provider = setup_tracing(settings.APP_NAME, settings.TRACING_ENABLED)
    meter_provider = setup_metrics(settings.APP_NAME, settings.METRICS_ENABLED)

    LoggingInstrumentor().instrument(set_logging_format=False)
    SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)

    ctx.call_on_close(tracer_provider.shutdown)
    ctx.call_on_close(meter_provider.shutdown)


def run_in_session(work: Callable[[AsyncSession], Awaitable[T]]) -> T:
    """Run one unit of work against a fresh database session."""

    async def runner() -> T:
        await init_db()
        try:
            async with get_db_context() as db:
                return await work(db)
        finally:
            await engine.dispose()

    return asyncio.run(runner())


def ask_passphrase(prompt: str = "Enter CA passphrase") -> str:
    return click.prompt(prompt, hide_input=True)


def label(text: str) -> str:
    return click.style(text, fg="cyan")


def show_request(request: CertificateRequest) -> None:
    click.echo("")
    click.echo(f"{label('     Node Hostname')}: {request.hostname or '-'}")
    click.echo(f"{label('  Certificate Type')}: {click.style(request.type.value, bold=True)}")
    click.echo(f"{label('    Certificate DN')}: {click.style(request.subject, bold=True)}")
    click.echo(f"{label('      Requested CA')}: {click.style(request.ca_name or '-', bold=True)}")
    click.echo(f"{label('Requested Validity')}: {request.requested_days} days")
    click.echo(f"{label('            Digest')}: {request.digest.value}")
    click.echo("")
    if request.csr_pem:
        click.secho(request.csr_pem.rstrip(), fg="bright_black")


def show_certificate(certificate: Certificate, heading: str = "Certificate") -> None:
    click.echo(f"{label(heading + ':')} SHA1 Fingerprint={certificate.sha1_fingerprint}")
    click.echo(f"{label('Subject:')} {certificate.subject}")
    click.echo(f"{label(' Issuer:')} {certificate.issuer}")
    click.secho(certificate.pem.rstrip(), fg="bright_black")


def read_pasted_certificate() -> str:
    """Read PEM lines until the END marker or an empty line."""
    click.echo("Paste certificate text, finish with an empty line:")
    lines = []
    while True:
        line = click.prompt("", prompt_suffix="", default="", show_default=False)
        if not line.strip():
            break
        lines.append(line.strip())
        if line.startswith("-----END"):
            break
    return "\n".join(lines) + "\n"


@click.group(cls=CertflowGroup)
@click.pass_context
def main(ctx: click.Context) -> None:
    """Certificate authority workflow: create CAs, sign requests, revoke, publish CRLs."""
    configure_telemetry(ctx)


@main.command()
@click.option("--ca-path", help="path to the signing CA")
@click.option("--dn", help="distinguished name for the new certificate, e.g. /CN=www.example.com")
@click.option("--type", "cert_type", help="server, client, peer or custom")
@click.option("--digest", default=settings.DEFAULT_DIGEST, show_default=True, help=DIGEST_HELP)
@click.option("--days", type=int, default=settings.DEFAULT_CERT_DAYS, show_default=True)
@click.option("--key-length", type=int, default=settings.DEFAULT_KEY_LENGTH, show_default=True)
@click.option(
    "--extensions",
    help=(
        "extensions for type custom, "
        "e.g. 'keyUsage:digitalSignature; extendedKeyUsage:serverAuth'"
    ),
)
@click.option(
    "--san",
    "subject_alt_names",
    multiple=True,
    help="subjectAltName entry, e.g. DNS:www.example.com (not for type custom)",
)
@click.option("--save", is_flag=True, help="save the certificate in the repository")
@click.option("--host", help="hostname stored with the certificate, required with --save")
@click.option("--ca-name", help="CA label stored with the certificate, defaults to the CA DN")
@click.option("--overwrite", is_flag=True, help="replace a certificate already saved for this DN")
def issue(
    ca_path: str | None,
    dn: str | None,
    cert_type: str | None,
    digest: str,
    days: int,
    key_length: int,
    extensions: str | None,
    subject_alt_names: tuple[str, ...],
    save: bool,
    host: str | None,
    ca_name: str | None,
    overwrite: bool,
) -> None:
    """Issue an ad hoc certificate."""
    options = CertificateRequestInput(
        dn=dn,
        type=cert_type,
        ca_path=ca_path,
        digest=digest,
        days=days,
        extensions=extensions,
        host=host,
        save=save,
        ca_name=ca_name,
        key_length=key_length,
        subject_alt_names=subject_alt_names,
    )
    request = RequestBuilder().build(options)

    passphrase = ask_passphrase()
    with AuthorityStore().load(ca_path, passphrase) as authority:  # type: ignore[arg-type]
        result = run_in_session(
            lambda db: IssuanceService(db).issue(request, authority, save=save, overwrite=overwrite)
        )

    if result.private_key_pem:
        click.echo(label("Key:"))
        click.secho(result.private_key_pem.rstrip(), fg="bright_black")
        click.echo("")
    show_certificate(result.certificate)
    if result.persisted:
        click.echo("")
        click.echo(f"{label('ID:')} {result.certificate.request_id}")


@main.command()
@click.option("--dn", help="distinguished name of the new CA")
@click.option("--ca-path", help="directory for the new CA")
@click.option(
    "--key-length",
    type=int,
    default=settings.DEFAULT_CA_KEY_LENGTH,
    show_default=True,
    help=f"RSA key length, one of {', '.join(map(str, RSA_KEY_LENGTHS))}",
)
@click.option("--days", type=int, default=settings.DEFAULT_CA_DAYS, show_default=True)
@click.option("--digest", default=settings.DEFAULT_DIGEST, show_default=True, help=DIGEST_HELP)
def makeca(dn: str | None, ca_path: str | None, key_length: int, days: int, digest: str) -> None:
    """Create a new CA."""
    store = AuthorityStore()
    options = AuthorityBootstrapInput(
        dn=dn, destination=ca_path, key_length=key_length, validity_days=days, digest=digest
    )
    validated = store.validate(options)

    click.echo(f"{label(' New CA DN')}: {validated.name}")
    click.echo(f"{label('Key length')}: {validated.key_length}")
    click.echo(f"{label('  Validity')}: {validated.validity_days}")
    click.echo(f"{label('    Digest')}: {validated.digest.value}")
    click.echo("")

    passphrase = ask_passphrase("Enter new CA passphrase")
    confirmation = ask_passphrase("Re-enter new CA passphrase")
    if passphrase != confirmation:
        raise click.ClickException("passphrases do not match")

    click.echo(f"{label('Creating new CA')}: ", nl=False)
    with store.bootstrap(options, passphrase) as authority:
        click.echo("done")
        expires = authority.certificate.not_valid_after_utc.isoformat()
        click.echo(f"{label('   Expires')}: {expires}")


@main.command()
@click.argument("csr_file", type=click.File("r"))
@click.option("--type", "cert_type", required=True, help="server, client, peer or custom")
@click.option("--digest", default=settings.DEFAULT_DIGEST, show_default=True, help=DIGEST_HELP)
@click.option("--days", type=int, default=settings.DEFAULT_CERT_DAYS, show_default=True)
@click.option("--extensions", help="extensions for type custom")
@click.option("--host", required=True, help="hostname the certificate will be saved under")
@click.option("--ca-name", required=True, help="name of the CA that should sign the request")
@click.option("--overwrite", is_flag=True, help="replace a request already queued for this DN")
def submit(
    csr_file: click.utils.LazyFile,
    cert_type: str,
    digest: str,
    days: int,
    extensions: str | None,
    host: str,
    ca_name: str,
    overwrite: bool,
) -> None:
    """Queue a CSR for signing."""
    options = CertificateRequestInput(
        type=cert_type,
        digest=digest,
        days=days,
        extensions=extensions,
        host=host,
        save=True,
        ca_name=ca_name,
    )
    csr_pem = csr_file.read()
    request = run_in_session(
        lambda db: RequestService(db).submit(csr_pem, options, overwrite=overwrite)
    )
    click.echo(f"{label('Queued:')} {request.subject}")
    click.echo(f"{label('    ID:')} {request.id}")


@main.command()
@click.option("--ca-name", help="a name of a CA to limit the search by")
@click.option("--name", "common_name", help="a common name to limit the search by")
def search(ca_name: str | None, common_name: str | None) -> None:
    """Search for outstanding CSRs."""
    if ca_name:
        click.echo(f"{label('Search CA')}: {ca_name}")

    requests = run_in_session(
        lambda db: RequestService(db).search(ca_name=ca_name, common_name=common_name)
    )
    for request in requests:
        show_request(request)
    click.echo(f"{len(requests)} pending request(s).")


@main.command()
@click.option("--name", "common_name", required=True, help="common name of the CSR to search for")
@click.option(
    "--cert",
    "cert_file",
    type=click.File("r"),
    help="PEM certificate to attach; the text is pasted at a prompt otherwise",
)
@click.option("--save", is_flag=True, help="save without asking")
@click.option("--overwrite", is_flag=True, help="replace a certificate already saved for this DN")
def sign(
    common_name: str, cert_file: click.utils.LazyFile | None, save: bool, overwrite: bool
) -> None:
    """Attach an externally signed certificate to a pending CSR."""
    click.echo(f"{label('Search name')}: {common_name}")
    cert_text = cert_file.read() if cert_file else None

    async def work(db: AsyncSession) -> None:
        service = IssuanceService(db)
        requests = await RequestService(db).search(common_name=common_name)
        for request in requests:
            show_request(request)
            if not click.confirm("Sign this?"):
                continue

            certificate_pem = cert_text or read_pasted_certificate()
            certificate = await service.import_certificate(request, certificate_pem)
            show_certificate(certificate, heading=" Signed")
            if certificate.subject != request.name:
                click.secho(
                    "WARNING: Issued certificate DN does not match request DN!",
                    fg="red",
                    bold=True,
                )

            if save or click.confirm("Save certificate?"):
                try:
                    await service.import_certificate(
                        request, certificate_pem, save=True, overwrite=overwrite
                    )
                except CertificateAuthorityError as e:
                    click.secho(f"Error saving: {e}", fg="red", err=True)
                else:
                    click.echo("Saved OK")

    run_in_session(work)


@main.command()
@click.option("--ca-path", required=True, help="the path to the signing CA")
@click.option("--ca-name", required=True, help="the name of the signing CA")
@click.option("--yes", "assume_yes", is_flag=True, help="sign every pending request without asking")
@click.option("--overwrite", is_flag=True, help="replace certificates saved for the same DN")
def autosign(ca_path: str, ca_name: str, assume_yes: bool, overwrite: bool) -> None:
    """Search for CSRs and sign them with the given CA."""
    passphrase = ask_passphrase()
    with AuthorityStore().load(ca_path, passphrase) as authority:
        click.echo(f"{label('Search CA')}: {ca_name}")

        def approve(request: CertificateRequest) -> bool:
            show_request(request)
            if assume_yes:
                return True
            click.echo(f"{label('Sign with')}: {click.style(authority.dn, bold=True)}")
            return click.confirm("Sign this?")

        results = run_in_session(
            lambda db: IssuanceService(db).autosign(
                authority, ca_name, approve=approve, overwrite=overwrite
            )
        )

    failures = 0
    for result in results:
        if result.certificate is not None:
            click.echo("")
            show_certificate(result.certificate, heading="Signed")
            click.echo("Saved OK")
        elif result.error is not None:
            failures += 1
            click.secho(
                f"Error signing {result.request.subject}: {result.error}", fg="red", err=True
            )

    click.echo("All CSRs processed.")
    if failures:
        raise click.ClickException(f"{failures} request(s) could not be signed")


@main.command()
@click.argument("hostnames", nargs=-1, required=True)
@click.option(
    "--reason",
    type=click.Choice([r.value for r in RevocationReason]),
    help="revocation reason recorded in the CRL",
)
def revoke(hostnames: tuple[str, ...], reason: str | None) -> None:
    """Revoke the certificates saved for HOSTNAMES."""
    revocation_reason = RevocationReason(reason) if reason else None

    async def work(db: AsyncSession) -> int:
        ledger = RevocationLedger(db)
        failures = 0
        for host in hostnames:
            try:
                outcome = await ledger.revoke(host, revocation_reason)
            except CertificateAuthorityError as e:
                failures += 1
                click.secho(f"{host}: {e}", fg="red", err=True)
                continue
            state = "revoked" if outcome.created else "already revoked"
            click.echo(f"{host}: {state} (serial {outcome.certificate.serial_hex})")
        return failures

    failures = run_in_session(work)
    if failures:
        raise click.ClickException(f"{failures} of {len(hostnames)} host(s) could not be revoked")


@main.command()
@click.option("--ca-path", required=True, help="the path to the signing CA")
@click.option(
    "--ca-config",
    default=POLICY_FILENAME,
    show_default=True,
    help="signing policy file, absolute or relative to --ca-path",
)
@click.option("--ca-name", help="CA label for revocations and the stored CRL, defaults to the DN")
@click.option(
    "--crlfilename",
    default=DEFAULT_CRL_FILENAME,
    show_default=True,
    help="CRL file to write, absolute or relative to --ca-path",
)
@click.option(
    "--revoked-path",
    default=f"./{REVOKED_DIRNAME}",
    show_default=True,
    help="directory of revoked certificates, absolute or relative to --ca-path",
)
def gencrl(
    ca_path: str, ca_config: str, ca_name: str | None, crlfilename: str, revoked_path: str
) -> None:
    """Generate a Certificate Revocation List from revoked certificates."""
    passphrase = ask_passphrase()
    with AuthorityStore().load(ca_path, passphrase) as authority:
        outcome = run_in_session(
            lambda db: CRLService(db).generate(
                authority,
                ca_config=ca_config,
                crl_filename=crlfilename,
                revoked_path=revoked_path,
                ca_label=ca_name,
            )
        )

    for failure in outcome.failures:
        click.secho(f"Skipped {failure.path}: {failure.error}", fg="yellow", err=True)
    click.echo(f"{label('CRL')}: {outcome.path}")
    click.echo(f"{label('Entries')}: {len(outcome.crl.entries)}")
    click.echo(f"{label('Next update')}: {outcome.crl.next_update.isoformat()}")


if __name__ == "__main__":
    main()
