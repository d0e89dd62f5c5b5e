"""Structural and transition tests for state machines.

These tests verify:
1. Every non-terminal state has a transition out
2. Terminal states have none
3. One test per transition table entry
4. One test per invariant
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from certflow.domain.models import IssuedCertificate, PendingRequest
from certflow.domain.state_machine import InvalidTransitionError
from certflow.domain.state_machines import (
    IssuedCertificateStateMachine,
    PendingRequestStateMachine,
)
from certflow.domain.states import (
    CertificateEvent,
    CertificateStatus,
    PendingRequestEvent,
    PendingRequestStatus,
    RevocationReason,
)
from certflow.errors import CertificateAuthorityError

NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)

# =============================================================================
# Structural Tests - PendingRequest
# =============================================================================


class TestPendingRequestStateMachineStructure:
    """Structural tests for PendingRequestStateMachine."""

    def test_pending_has_transition(self):
        covered_states = {state for state, _ in PendingRequestStateMachine.TRANSITIONS.keys()}

        assert PendingRequestStatus.PENDING in covered_states

    def test_signed_is_terminal(self):
        """A request is signed at most once."""
        transitions_from_signed = [
            (s, e)
            for s, e in PendingRequestStateMachine.TRANSITIONS.keys()
            if s == PendingRequestStatus.SIGNED
        ]

        assert transitions_from_signed == []

    def test_all_events_are_used(self):
        used_events = {event for _, event in PendingRequestStateMachine.TRANSITIONS.keys()}

        for event in PendingRequestEvent:
            assert event in used_events, f"Event {event} is never used in transitions"


# =============================================================================
# Structural Tests - IssuedCertificate
# =============================================================================


class TestIssuedCertificateStateMachineStructure:
    """Structural tests for IssuedCertificateStateMachine."""

    def test_all_states_have_transitions(self):
        covered_states = {state for state, _ in IssuedCertificateStateMachine.TRANSITIONS.keys()}

        for state in CertificateStatus:
            assert state in covered_states, f"State {state} has no transitions"

    def test_revocation_never_returns_to_issued(self):
        """Only REISSUED leaves REVOKED."""
        events_from_revoked = {
            e
            for s, e in IssuedCertificateStateMachine.TRANSITIONS.keys()
            if s == CertificateStatus.REVOKED
        }

        assert events_from_revoked == {CertificateEvent.REISSUED}

    def test_all_events_are_used(self):
        used_events = {event for _, event in IssuedCertificateStateMachine.TRANSITIONS.keys()}

        for event in CertificateEvent:
            assert event in used_events, f"Event {event} is never used in transitions"


# =============================================================================
# Transition Tests - PendingRequest
# =============================================================================


class TestPendingRequestTransitions:
    """One test per entry in PendingRequest transition table."""

    @pytest.fixture
    def mock_request(self):
        request = MagicMock()
        request.request_id = "test-request-id"
        request.status = PendingRequestStatus.PENDING.value
        request.signed_at = None
        return request

    def test_pending_certificate_issued_to_signed(self, mock_request):
        """(PENDING, CERTIFICATE_ISSUED) -> SIGNED"""
        sm = PendingRequestStateMachine(mock_request)

        new_state = sm.mark_signed(NOW)

        assert new_state == PendingRequestStatus.SIGNED
        assert mock_request.status == PendingRequestStatus.SIGNED.value
        assert mock_request.signed_at == NOW


# =============================================================================
# Transition Tests - IssuedCertificate
# =============================================================================


class TestIssuedCertificateTransitions:
    """One test per entry in IssuedCertificate transition table."""

    @pytest.fixture
    def mock_certificate(self):
        certificate = MagicMock()
        certificate.request_id = "test-request-id"
        certificate.status = CertificateStatus.ISSUED.value
        certificate.revoked_at = None
        certificate.revocation_reason = None
        return certificate

    def test_issued_reissued_to_issued(self, mock_certificate):
        """(ISSUED, REISSUED) -> ISSUED"""
        sm = IssuedCertificateStateMachine(mock_certificate)

        new_state = sm.reissue()

        assert new_state == CertificateStatus.ISSUED
        assert mock_certificate.status == CertificateStatus.ISSUED.value

    def test_issued_revocation_to_revoked(self, mock_certificate):
        """(ISSUED, REVOCATION_REQUESTED) -> REVOKED"""
        sm = IssuedCertificateStateMachine(mock_certificate)

        new_state = sm.revoke(NOW, RevocationReason.SUPERSEDED)

        assert new_state == CertificateStatus.REVOKED
        assert mock_certificate.status == CertificateStatus.REVOKED.value
        assert mock_certificate.revoked_at == NOW
        assert mock_certificate.revocation_reason == "superseded"

    def test_revoked_reissued_to_issued(self, mock_certificate):
        """(REVOKED, REISSUED) -> ISSUED, clearing the revocation"""
        mock_certificate.status = CertificateStatus.REVOKED.value
        mock_certificate.revoked_at = NOW
        mock_certificate.revocation_reason = "superseded"
        sm = IssuedCertificateStateMachine(mock_certificate)

        new_state = sm.reissue()

        assert new_state == CertificateStatus.ISSUED
        assert mock_certificate.revoked_at is None
        assert mock_certificate.revocation_reason is None


# =============================================================================
# Invariant Tests
# =============================================================================


class TestStateMachineInvariants:
    """Invariant tests across both state machines."""

    def test_request_cannot_be_signed_twice(self):
        request = PendingRequest(request_id="r1", status=PendingRequestStatus.PENDING.value)
        request.mark_signed()

        with pytest.raises(InvalidTransitionError) as exc_info:
            request.mark_signed()

        assert exc_info.value.current_state == "signed"
        assert exc_info.value.event == "certificate_issued"

    def test_certificate_cannot_be_revoked_twice(self):
        certificate = IssuedCertificate(request_id="c1", status=CertificateStatus.ISSUED.value)
        certificate.revoke(RevocationReason.KEY_COMPROMISE)
        revoked_at = certificate.revoked_at

        with pytest.raises(InvalidTransitionError):
            certificate.revoke()

        assert certificate.is_revoked
        assert certificate.revoked_at == revoked_at
        assert certificate.revocation_reason == "key_compromise"

    def test_invalid_transition_is_a_lifecycle_error(self):
        assert issubclass(InvalidTransitionError, CertificateAuthorityError)

    def test_can_transition_does_not_change_state(self):
        certificate = MagicMock()
        certificate.request_id = "c1"
        certificate.status = CertificateStatus.REVOKED.value
        sm = IssuedCertificateStateMachine(certificate)

        assert sm.can_transition(CertificateEvent.REISSUED)
        assert not sm.can_transition(CertificateEvent.REVOCATION_REQUESTED)
        assert certificate.status == CertificateStatus.REVOKED.value
