"""State machine implementations for persisted records.

Invariants:
    A pending request is signed at most once; SIGNED is terminal.
    Revocation never moves a certificate back to ISSUED. Only an explicit
    overwrite with a freshly signed certificate (REISSUED) does.
"""

from datetime import datetime
from typing import TYPE_CHECKING

from certflow.domain.state_machine import StateMachine
from certflow.domain.states import CertificateEvent as CEvent
from certflow.domain.states import CertificateStatus as CStatus
from certflow.domain.states import PendingRequestEvent as PREvent
from certflow.domain.states import PendingRequestStatus as PRStatus
from certflow.domain.states import RevocationReason

if TYPE_CHECKING:
    from certflow.domain.models import IssuedCertificate, PendingRequest

PRTransitions = dict[tuple[PRStatus, PREvent], PRStatus]
CTransitions = dict[tuple[CStatus, CEvent], CStatus]


class PendingRequestStateMachine(StateMachine[PRStatus, PREvent]):
    """State machine for PendingRequest.

    Transition Table:
        (PENDING, CERTIFICATE_ISSUED) -> SIGNED
    """

    TRANSITIONS: PRTransitions = {
        (PRStatus.PENDING, PREvent.CERTIFICATE_ISSUED): PRStatus.SIGNED,
    }

    def __init__(self, entity: "PendingRequest"):
        self._entity = entity

    def _get_state(self) -> PRStatus:
        return PRStatus(self._entity.status)

    def _set_state(self, state: PRStatus) -> None:
        self._entity.status = state.value

    def _get_entity_id(self) -> str:
        return self._entity.request_id

    def mark_signed(self, signed_at: datetime) -> PRStatus:
        new_state = self.transition(PREvent.CERTIFICATE_ISSUED)
        self._entity.signed_at = signed_at
        return new_state


class IssuedCertificateStateMachine(StateMachine[CStatus, CEvent]):
    """State machine for IssuedCertificate.

    Transition Table:
        (ISSUED, REISSUED) -> ISSUED
        (ISSUED, REVOCATION_REQUESTED) -> REVOKED
        (REVOKED, REISSUED) -> ISSUED
    """

    TRANSITIONS: CTransitions = {
        (CStatus.ISSUED, CEvent.REISSUED): CStatus.ISSUED,
        (CStatus.ISSUED, CEvent.REVOCATION_REQUESTED): CStatus.REVOKED,
        (CStatus.REVOKED, CEvent.REISSUED): CStatus.ISSUED,
    }

    def __init__(self, entity: "IssuedCertificate"):
        self._entity = entity

    def _get_state(self) -> CStatus:
        return CStatus(self._entity.status)

    def _set_state(self, state: CStatus) -> None:
        self._entity.status = state.value

    def _get_entity_id(self) -> str:
        return self._entity.request_id

    def reissue(self) -> CStatus:
        """Replace the stored certificate with a newly signed one."""
        new_state = self.transition(CEvent.REISSUED)
        self._entity.revoked_at = None
        self._entity.revocation_reason = None
        return new_state

    def revoke(self, revoked_at: datetime, reason: RevocationReason | None) -> CStatus:
        """Revoke the certificate.

        Raises:
            InvalidTransitionError: If already REVOKED
        """
        new_state = self.transition(CEvent.REVOCATION_REQUESTED)
        self._entity.revoked_at = revoked_at
        self._entity.revocation_reason = reason.value if reason else None
        return new_state
