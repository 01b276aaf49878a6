"""
Invitation lifecycle.

Expiry is never written back to storage: a pending invitation whose
``expires_at`` has passed simply reads as expired.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from app.models.collaboration_invitation import InvitationStatus
from app.schemas.collaboration import InvitationDecision, as_utc
from app.services.collaboration.errors import ExpiredError, ForbiddenError, InvalidTransitionError


def effective_status(status: InvitationStatus, expires_at: datetime, now: datetime) -> InvitationStatus:
    status = InvitationStatus(status)
    if status == InvitationStatus.PENDING and as_utc(now) >= as_utc(expires_at):
        return InvitationStatus.EXPIRED
    return status


def is_outstanding(status: InvitationStatus, expires_at: datetime, now: datetime) -> bool:
    """Pending and not yet expired."""
    return effective_status(status, expires_at, now) == InvitationStatus.PENDING


def decision_status(decision: InvitationDecision) -> InvitationStatus:
    if InvitationDecision(decision) == InvitationDecision.ACCEPT:
        return InvitationStatus.ACCEPTED
    return InvitationStatus.REJECTED


def ensure_addressed_to(
    invitee_id: Optional[UUID],
    invitee_email: str,
    user_id: UUID,
    user_email: Optional[str],
) -> None:
    """Only the invited identity may respond, matched by id or by e-mail."""
    if invitee_id is not None and invitee_id == user_id:
        return
    if user_email and invitee_email == user_email.strip().lower():
        return
    raise ForbiddenError("This invitation is addressed to someone else")


def ensure_can_respond(status: InvitationStatus, expires_at: datetime, now: datetime) -> None:
    """Accept/reject is only legal once, from the outstanding pending state."""
    current = effective_status(status, expires_at, now)
    if current == InvitationStatus.EXPIRED:
        raise ExpiredError("This invitation has expired")
    if current != InvitationStatus.PENDING:
        raise InvalidTransitionError(f"Invitation has already been {current.value}")
