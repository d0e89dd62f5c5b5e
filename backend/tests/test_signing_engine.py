"""Unit tests for SigningEngine."""

from datetime import timedelta
from unittest.mock import patch

import pytest
from cryptography import x509
from cryptography.x509.oid import ExtendedKeyUsageOID, ExtensionOID

from certflow.ca.crypto import sha1_fingerprint
from certflow.ca.request_builder import CertificateRequestInput, RequestBuilder
from certflow.ca.signing_engine import SigningEngine, ca_label_for
from certflow.domain.states import CertificateType
from certflow.errors import AuthorityLockedError, SigningFailedError, UnsupportedDigestError


def build_request(**overrides):
    values = {
        "dn": "/CN=www.example.com",
        "type": "server",
        "ca_path": "/tmp/ca",
        "days": 365,
        "key_length": 1024,
    }
    values.update(overrides)
    return RequestBuilder().build(CertificateRequestInput(**values))


def extended_key_usages(cert: x509.Certificate) -> list:
    return list(cert.extensions.get_extension_for_oid(ExtensionOID.EXTENDED_KEY_USAGE).value)


class TestSigningEngineSign:
    """Tests for SigningEngine.sign()."""

    def test_server_certificate(self, authority):
        request = build_request()

        certificate = SigningEngine().sign(request, authority)
        cert = certificate.to_x509()

        assert str(certificate.subject) == "/CN=www.example.com"
        assert str(certificate.issuer) == "/CN=Test CA"
        assert certificate.request_id == request.id
        assert certificate.type is CertificateType.SERVER
        assert certificate.not_after - certificate.not_before == timedelta(days=365)
        assert certificate.sha1_fingerprint == sha1_fingerprint(cert)
        assert cert.serial_number == certificate.serial
        assert cert.issuer == authority.certificate.subject
        assert extended_key_usages(cert) == [ExtendedKeyUsageOID.SERVER_AUTH]

    def test_server_certificate_constraints_and_usage(self, authority):
        cert = SigningEngine().sign(build_request(), authority).to_x509()

        constraints = cert.extensions.get_extension_for_oid(ExtensionOID.BASIC_CONSTRAINTS)
        assert constraints.critical is True
        assert constraints.value.ca is False
        usage = cert.extensions.get_extension_for_oid(ExtensionOID.KEY_USAGE).value
        assert usage.digital_signature is True
        assert usage.key_encipherment is True
        assert usage.key_cert_sign is False

    def test_comma_form_subject_keeps_operator_order(self, authority):
        request = build_request(dn="CN=www.example.com,O=Example")

        cert = SigningEngine().sign(request, authority).to_x509()

        assert cert.subject.rfc4514_string() == "CN=www.example.com,O=Example"
        assert request.id == build_request(dn="/O=Example/CN=www.example.com").id

    def test_certificate_verifies_against_ca(self, authority):
        cert = SigningEngine().sign(build_request(), authority).to_x509()

        cert.verify_directly_issued_by(authority.certificate)

    def test_client_certificate_usage(self, authority):
        cert = SigningEngine().sign(build_request(type="client"), authority).to_x509()

        assert extended_key_usages(cert) == [ExtendedKeyUsageOID.CLIENT_AUTH]
        usage = cert.extensions.get_extension_for_oid(ExtensionOID.KEY_USAGE).value
        assert usage.key_encipherment is False

    def test_peer_certificate_usage(self, authority):
        cert = SigningEngine().sign(build_request(type="peer"), authority).to_x509()

        assert extended_key_usages(cert) == [
            ExtendedKeyUsageOID.SERVER_AUTH,
            ExtendedKeyUsageOID.CLIENT_AUTH,
        ]

    def test_subject_alt_names_are_added(self, authority):
        request = build_request(subject_alt_names=("DNS:www.example.com", "IP:10.0.0.1"))

        cert = SigningEngine().sign(request, authority).to_x509()

        san = cert.extensions.get_extension_for_oid(ExtensionOID.SUBJECT_ALTERNATIVE_NAME).value
        assert san.get_values_for_type(x509.DNSName) == ["www.example.com"]

    def test_custom_certificate_has_exactly_given_extensions(self, authority):
        request = build_request(
            type="custom",
            extensions="keyUsage:critical,digitalSignature;extendedKeyUsage:codeSigning",
        )

        cert = SigningEngine().sign(request, authority).to_x509()

        oids = {extension.oid for extension in cert.extensions}
        assert oids == {ExtensionOID.KEY_USAGE, ExtensionOID.EXTENDED_KEY_USAGE}
        assert cert.extensions.get_extension_for_oid(ExtensionOID.KEY_USAGE).critical is True
        assert extended_key_usages(cert) == [ExtendedKeyUsageOID.CODE_SIGNING]

    def test_extensions_are_ignored_for_fixed_types(self, authority):
        request = build_request(extensions="extendedKeyUsage:codeSigning")

        cert = SigningEngine().sign(request, authority).to_x509()

        assert extended_key_usages(cert) == [ExtendedKeyUsageOID.SERVER_AUTH]

    def test_serials_are_unique(self, authority):
        engine = SigningEngine()
        request = build_request()

        first = engine.sign(request, authority)
        second = engine.sign(request, authority)

        assert first.serial != second.serial

    def test_unsupported_digest_raises(self, authority):
        request = build_request(digest="SHA")

        with pytest.raises(UnsupportedDigestError):
            SigningEngine().sign(request, authority)

    def test_closed_authority_raises(self, authority):
        request = build_request()
        authority.close()

        with pytest.raises(AuthorityLockedError):
            SigningEngine().sign(request, authority)

    def test_signing_records_metrics(self, authority):
        with patch("certflow.ca.signing_engine.ca_metrics") as mock_metrics:
            SigningEngine().sign(build_request(type="client"), authority)

            mock_metrics.record_certificate_signed.assert_called_once()
            assert mock_metrics.record_certificate_signed.call_args[0][0] == "client"

    def test_certificate_is_not_placed(self, authority):
        certificate = SigningEngine().sign(build_request(host="web1"), authority)

        assert certificate.host == "web1"
        assert certificate.ca_label is None

        placed = certificate.placed("web1", ca_label_for(authority, None))
        assert placed.ca_label == "/CN=Test CA"
        assert placed.serial == certificate.serial


class TestSigningEngineAcceptExternal:
    """Tests for SigningEngine.accept_external()."""

    def test_accepts_certificate_for_request_key(self, authority):
        engine = SigningEngine()
        request = build_request(host="web1")
        signed = engine.sign(request, authority)

        accepted = engine.accept_external(request, signed.pem)

        assert accepted.serial == signed.serial
        assert accepted.subject == request.name
        assert accepted.request_id == request.id
        assert accepted.host == "web1"

    def test_subject_mismatch_is_accepted_with_warning(self, authority):
        engine = SigningEngine()
        request = build_request()
        # Same key, different subject
        other = RequestBuilder().build(
            CertificateRequestInput(dn="/CN=other.example.com", type="server", ca_path="/tmp/ca"),
            public_key=request.public_key,
        )
        signed = engine.sign(other, authority)

        with patch("certflow.ca.signing_engine.logger") as mock_logger:
            accepted = engine.accept_external(request, signed.pem)

            mock_logger.warning.assert_called_once()
            assert mock_logger.warning.call_args[0][0] == "issued_subject_mismatch"

        assert str(accepted.subject) == "/CN=other.example.com"

    def test_certificate_for_other_key_raises(self, authority):
        engine = SigningEngine()
        signed = engine.sign(build_request(), authority)

        with pytest.raises(SigningFailedError, match="public key"):
            engine.accept_external(build_request(), signed.pem)

    def test_garbage_pem_raises(self):
        with pytest.raises(SigningFailedError):
            SigningEngine().accept_external(build_request(), "-----BEGIN CERTIFICATE-----\n")


class TestCaLabel:
    def test_explicit_name_wins(self, authority):
        assert ca_label_for(authority, "ca1") == "ca1"
        assert ca_label_for(authority, None) == authority.dn
