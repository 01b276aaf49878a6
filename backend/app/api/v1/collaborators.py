from fastapi import APIRouter, Depends, Query, Request, Response, status
from starlette.concurrency import run_in_threadpool
from typing import List, Optional
from uuid import UUID

from app.api.deps import get_book_role, get_current_user, get_store
from app.core.config import settings
from app.core.rate_limiter import limiter
from app.models.book_collaborator import CollaboratorRole
from app.models.collaboration_invitation import InvitationStatus
from app.models.user import User
from app.schemas.collaboration import (
    BookCollaborator,
    CollaborationInvitation,
    CollaboratorListResponse,
    CollaboratorRoleUpdate,
    CollaboratorView,
    InvitationCreate,
    InvitationDecision,
)
from app.services.collaboration import access, formatting
from app.services.collaboration.errors import NotFoundError
from app.services.collaboration.permissions import assignable_roles, permissions_for
from app.services.collaboration.store import CollaborationStore

router = APIRouter()


def _view(collaborator: BookCollaborator) -> CollaboratorView:
    return CollaboratorView(
        **collaborator.model_dump(),
        display_name=formatting.display_name(collaborator.user),
        initials=formatting.initials(collaborator.user),
        avatar_color=formatting.avatar_color(collaborator.user_id),
        role_label=formatting.role_label(collaborator.role),
        role_description=formatting.role_description(collaborator.role),
    )


@router.get("/books/{book_id}/collaborators", response_model=CollaboratorListResponse)
async def list_collaborators(
    book_id: UUID,
    role: CollaboratorRole = Depends(get_book_role),
    store: CollaborationStore = Depends(get_store),
):
    """Collaborators of a book, highest role first, with display helpers."""
    collaborators = await run_in_threadpool(store.list_collaborators, book_id)
    return CollaboratorListResponse(
        collaborators=[_view(c) for c in formatting.sort_collaborators(collaborators)],
        current_user_role=role,
        current_user_permissions=permissions_for(role),
        assignable_roles=assignable_roles(role, editors_can_invite=settings.COLLAB_EDITORS_CAN_INVITE),
    )


@router.patch("/books/{book_id}/collaborators/{collaborator_id}", response_model=BookCollaborator)
async def change_collaborator_role(
    book_id: UUID,
    collaborator_id: UUID,
    payload: CollaboratorRoleUpdate,
    role: CollaboratorRole = Depends(get_book_role),
    current_user: User = Depends(get_current_user),
    store: CollaborationStore = Depends(get_store),
):
    collaborator = await run_in_threadpool(store.get_collaborator, collaborator_id, book_id=book_id)
    access.ensure_can_change_role(
        role,
        current_user.id,
        collaborator,
        payload.role,
        editors_can_invite=settings.COLLAB_EDITORS_CAN_INVITE,
    )
    return await run_in_threadpool(store.update_collaborator_role, collaborator_id, payload.role, book_id=book_id)


@router.delete("/books/{book_id}/collaborators/{collaborator_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_collaborator(
    book_id: UUID,
    collaborator_id: UUID,
    role: CollaboratorRole = Depends(get_book_role),
    current_user: User = Depends(get_current_user),
    store: CollaborationStore = Depends(get_store),
):
    collaborator = await run_in_threadpool(store.get_collaborator, collaborator_id, book_id=book_id)
    access.ensure_can_remove(
        role,
        current_user.id,
        collaborator,
        editors_can_invite=settings.COLLAB_EDITORS_CAN_INVITE,
    )
    await run_in_threadpool(store.remove_collaborator, collaborator_id, book_id=book_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/books/{book_id}/invitations", response_model=List[CollaborationInvitation])
async def list_book_invitations(
    book_id: UUID,
    status_filter: Optional[InvitationStatus] = Query(default=None, alias="status"),
    role: CollaboratorRole = Depends(get_book_role),
    store: CollaborationStore = Depends(get_store),
):
    return await run_in_threadpool(store.list_invitations, book_id, status_filter)


@router.post(
    "/books/{book_id}/invitations",
    response_model=CollaborationInvitation,
    status_code=status.HTTP_201_CREATED,
)
@limiter.limit(settings.RATE_LIMIT_INVITE)
async def invite_collaborator(
    request: Request,
    book_id: UUID,
    payload: InvitationCreate,
    role: CollaboratorRole = Depends(get_book_role),
    current_user: User = Depends(get_current_user),
    store: CollaborationStore = Depends(get_store),
):
    """Invite someone by e-mail. Delivery of the invitation happens elsewhere."""
    access.ensure_can_invite(role, payload.role, editors_can_invite=settings.COLLAB_EDITORS_CAN_INVITE)
    return await run_in_threadpool(
        store.create_invitation,
        book_id,
        current_user.id,
        payload.email,
        payload.role,
        payload.message,
    )


@router.delete("/books/{book_id}/invitations/{invitation_id}", status_code=status.HTTP_204_NO_CONTENT)
async def cancel_invitation(
    book_id: UUID,
    invitation_id: UUID,
    role: CollaboratorRole = Depends(get_book_role),
    current_user: User = Depends(get_current_user),
    store: CollaborationStore = Depends(get_store),
):
    invitation = await run_in_threadpool(store.get_invitation, invitation_id)
    if invitation.book_id != book_id:
        raise NotFoundError("Invitation not found")
    access.ensure_can_cancel_invitation(role, current_user.id, invitation.inviter_id)
    await run_in_threadpool(store.cancel_invitation, invitation_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/invitations/me", response_model=List[CollaborationInvitation])
async def my_invitations(
    current_user: User = Depends(get_current_user),
    store: CollaborationStore = Depends(get_store),
):
    """Outstanding invitations addressed to the caller."""
    return await run_in_threadpool(store.list_invitations_for_user, current_user.id, current_user.email)


@router.post("/invitations/{invitation_id}/accept", response_model=CollaborationInvitation)
async def accept_invitation(
    invitation_id: UUID,
    current_user: User = Depends(get_current_user),
    store: CollaborationStore = Depends(get_store),
):
    return await run_in_threadpool(
        store.respond_to_invitation, invitation_id, current_user.id, InvitationDecision.ACCEPT
    )


@router.post("/invitations/{invitation_id}/reject", response_model=CollaborationInvitation)
async def reject_invitation(
    invitation_id: UUID,
    current_user: User = Depends(get_current_user),
    store: CollaborationStore = Depends(get_store),
):
    return await run_in_threadpool(
        store.respond_to_invitation, invitation_id, current_user.id, InvitationDecision.REJECT
    )
