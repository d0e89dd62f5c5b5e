"""Tests for CRLService."""

import shutil
from pathlib import Path

import pytest
from cryptography import x509

from certflow.ca.request_builder import CertificateRequestInput, RequestBuilder
from certflow.ca.signing_engine import SigningEngine
from certflow.errors import ConfigInvalidError, NotFoundError
from certflow.repository.repositories import CrlRepository
from certflow.services.crl_service import CRLService, resolve_path
from certflow.services.issuance_service import IssuanceService
from certflow.services.revocation_service import RevocationLedger


async def revoke_saved(db_session, authority, host="web1", ca_name=None):
    request = RequestBuilder().build(
        CertificateRequestInput(
            dn=f"/CN={host}.example.com",
            type="server",
            ca_path=str(authority.path),
            host=host,
            save=True,
            ca_name=ca_name,
            key_length=1024,
        )
    )
    result = await IssuanceService(db_session).issue(request, authority, save=True)
    await RevocationLedger(db_session).revoke(host)
    return result.certificate


def crl_serials(path: Path) -> list[int]:
    crl = x509.load_pem_x509_crl(path.read_bytes())
    return [entry.serial_number for entry in crl]


class TestResolvePath:
    def test_relative_paths_are_under_the_ca(self):
        assert resolve_path("/srv/ca", "crl.pem") == Path("/srv/ca/crl.pem")
        assert resolve_path("/srv/ca", "./revoked") == Path("/srv/ca/revoked")

    def test_absolute_paths_are_kept(self):
        assert resolve_path("/srv/ca", "/var/www/crl.pem") == Path("/var/www/crl.pem")


class TestCRLService:
    """Tests for CRLService.generate()."""

    @pytest.mark.asyncio
    async def test_generate_writes_crl_of_ledger(self, db_session, authority, ca_dir):
        certificate = await revoke_saved(db_session, authority)

        outcome = await CRLService(db_session).generate(authority)

        assert outcome.path == ca_dir / "crl.pem"
        assert outcome.ca_label == "/CN=Test CA"
        assert crl_serials(outcome.path) == [certificate.serial]
        assert outcome.failures == []

        stored = await CrlRepository(db_session).get("/CN=Test CA")
        assert stored.entry_count == 1
        assert stored.crl_pem == outcome.path.read_text()

    @pytest.mark.asyncio
    async def test_generate_uses_ca_label(self, db_session, authority):
        labelled = await revoke_saved(db_session, authority, host="a", ca_name="ca1")
        await revoke_saved(db_session, authority, host="b")

        outcome = await CRLService(db_session).generate(authority, ca_label="ca1")

        assert crl_serials(outcome.path) == [labelled.serial]

    @pytest.mark.asyncio
    async def test_revoked_directory_is_merged(self, db_session, authority, ca_dir):
        revoked = await revoke_saved(db_session, authority)
        request = RequestBuilder().build(
            CertificateRequestInput(
                dn="/CN=legacy", type="client", ca_path=str(ca_dir), key_length=1024
            )
        )
        legacy = SigningEngine().sign(request, authority)
        (ca_dir / "revoked" / "legacy.pem").write_text(legacy.pem)
        (ca_dir / "revoked" / "broken.pem").write_text("garbage")

        outcome = await CRLService(db_session).generate(authority)

        assert sorted(crl_serials(outcome.path)) == sorted([revoked.serial, legacy.serial])
        assert [f.path.name for f in outcome.failures] == ["broken.pem"]

    @pytest.mark.asyncio
    async def test_duplicate_serials_are_listed_once(self, db_session, authority, ca_dir):
        certificate = await revoke_saved(db_session, authority)
        (ca_dir / "revoked" / "web1.pem").write_text(certificate.pem)

        outcome = await CRLService(db_session).generate(authority)

        assert crl_serials(outcome.path) == [certificate.serial]

    @pytest.mark.asyncio
    async def test_regenerating_replaces_stored_crl(self, db_session, authority):
        service = CRLService(db_session)
        await service.generate(authority)
        await revoke_saved(db_session, authority)

        await service.generate(authority)

        stored = await CrlRepository(db_session).get("/CN=Test CA")
        assert stored.entry_count == 1

    @pytest.mark.asyncio
    async def test_custom_paths(self, db_session, authority, ca_dir, tmp_path):
        shutil.copy(ca_dir / "policy.toml", tmp_path / "policy.toml")
        output = tmp_path / "out" / "ca.crl"
        output.parent.mkdir()

        outcome = await CRLService(db_session).generate(
            authority,
            ca_config=tmp_path / "policy.toml",
            crl_filename=output,
            revoked_path=tmp_path / "none",
        )

        assert outcome.path == output
        assert output.is_file()

    @pytest.mark.asyncio
    async def test_bad_policy_writes_nothing(self, db_session, authority, ca_dir):
        (ca_dir / "policy.toml").write_text("crl_days = -1\n")

        with pytest.raises(ConfigInvalidError):
            await CRLService(db_session).generate(authority)

        assert not (ca_dir / "crl.pem").exists()
        assert await CrlRepository(db_session).get("/CN=Test CA") is None

    @pytest.mark.asyncio
    async def test_missing_crl_directory_raises(self, db_session, authority, tmp_path):
        output = tmp_path / "missing" / "ca.crl"

        with pytest.raises(NotFoundError, match="does not exist"):
            await CRLService(db_session).generate(authority, crl_filename=output)

        assert not output.parent.exists()
        assert await CrlRepository(db_session).get("/CN=Test CA") is None
