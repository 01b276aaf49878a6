"""
Authorisation guards shared by the HTTP layer and the session manager.

Each ``ensure_*`` helper raises ``ForbiddenError`` (or
``InvalidTransitionError`` for owner changes) before any store mutation.
"""

from typing import Optional
from uuid import UUID

from app.models.book_collaborator import CollaboratorRole
from app.schemas.collaboration import BookCollaborator, BookComment
from app.services.collaboration.errors import ForbiddenError, InvalidTransitionError
from app.services.collaboration.permissions import (
    can_assign_role,
    can_manage,
    permissions_for_optional,
)


def ensure_member(role: Optional[CollaboratorRole]) -> CollaboratorRole:
    if role is None:
        raise ForbiddenError("You are not a collaborator on this book")
    return role


def ensure_can_invite(
    acting: Optional[CollaboratorRole],
    target: CollaboratorRole,
    *,
    editors_can_invite: bool = True,
) -> None:
    if CollaboratorRole(target) == CollaboratorRole.OWNER:
        raise InvalidTransitionError("The owner role cannot be assigned through an invitation")
    if not can_assign_role(acting, target, editors_can_invite=editors_can_invite):
        raise ForbiddenError(f"You cannot invite collaborators as {CollaboratorRole(target).value}")


def ensure_can_change_role(
    acting: Optional[CollaboratorRole],
    acting_user_id: UUID,
    collaborator: BookCollaborator,
    new_role: CollaboratorRole,
    *,
    editors_can_invite: bool = True,
) -> None:
    if collaborator.user_id == acting_user_id:
        raise ForbiddenError("You cannot change your own role")
    if collaborator.role == CollaboratorRole.OWNER or CollaboratorRole(new_role) == CollaboratorRole.OWNER:
        raise InvalidTransitionError("Cannot modify owner role")
    if not can_manage(acting, collaborator.role, editors_can_invite=editors_can_invite):
        raise ForbiddenError("You cannot manage this collaborator")
    if not can_assign_role(acting, new_role, editors_can_invite=editors_can_invite):
        raise ForbiddenError(f"You cannot assign the {CollaboratorRole(new_role).value} role")


def ensure_can_remove(
    acting: Optional[CollaboratorRole],
    acting_user_id: UUID,
    collaborator: BookCollaborator,
    *,
    editors_can_invite: bool = True,
) -> None:
    if collaborator.role == CollaboratorRole.OWNER:
        raise ForbiddenError("The book owner cannot be removed")
    if collaborator.user_id == acting_user_id:
        raise ForbiddenError("You cannot remove yourself")
    if not can_manage(acting, collaborator.role, editors_can_invite=editors_can_invite):
        raise ForbiddenError("You cannot manage this collaborator")


def ensure_can_cancel_invitation(
    acting: Optional[CollaboratorRole],
    acting_user_id: UUID,
    inviter_id: UUID,
) -> None:
    if acting == CollaboratorRole.OWNER or inviter_id == acting_user_id:
        return
    raise ForbiddenError("Only the inviter or the book owner can cancel this invitation")


def ensure_can_edit(acting: Optional[CollaboratorRole]) -> None:
    if not permissions_for_optional(acting).can_edit:
        raise ForbiddenError("Editing permission required")


def ensure_can_review(acting: Optional[CollaboratorRole]) -> None:
    if not permissions_for_optional(acting).can_review:
        raise ForbiddenError("Review permission required to comment")


def ensure_can_modify_comment(
    acting: Optional[CollaboratorRole],
    acting_user_id: UUID,
    comment: BookComment,
) -> None:
    if comment.user_id == acting_user_id or acting == CollaboratorRole.OWNER:
        return
    raise ForbiddenError("Only the author or the book owner can change this comment")
