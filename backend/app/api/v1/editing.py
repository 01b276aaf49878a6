from fastapi import APIRouter, Depends, Response, status
from starlette.concurrency import run_in_threadpool
from typing import List
from uuid import UUID

from app.api.deps import get_book_role, get_current_user, get_store
from app.models.book_collaborator import CollaboratorRole
from app.models.user import User
from app.schemas.collaboration import (
    EditingSession,
    EditingSessionStart,
    EditingSessionTouch,
    PresenceUpdate,
    UserPresence,
)
from app.services.collaboration import access
from app.services.collaboration.store import CollaborationStore

router = APIRouter()


@router.get("/books/{book_id}/editing-sessions", response_model=List[EditingSession])
async def list_editing_sessions(
    book_id: UUID,
    role: CollaboratorRole = Depends(get_book_role),
    store: CollaborationStore = Depends(get_store),
):
    """Sections currently being edited (activity inside the staleness window)."""
    return await run_in_threadpool(store.list_editing_sessions, book_id)


@router.post("/books/{book_id}/editing-sessions", response_model=EditingSession)
async def start_editing_session(
    book_id: UUID,
    payload: EditingSessionStart,
    role: CollaboratorRole = Depends(get_book_role),
    current_user: User = Depends(get_current_user),
    store: CollaborationStore = Depends(get_store),
):
    access.ensure_can_edit(role)
    return await run_in_threadpool(
        store.start_editing_session,
        book_id,
        current_user.id,
        payload.section_id,
        payload.section_type,
        payload.cursor_position,
    )


@router.patch("/books/{book_id}/editing-sessions/{section_id}", response_model=EditingSession)
async def touch_editing_session(
    book_id: UUID,
    section_id: str,
    payload: EditingSessionTouch,
    role: CollaboratorRole = Depends(get_book_role),
    current_user: User = Depends(get_current_user),
    store: CollaborationStore = Depends(get_store),
):
    return await run_in_threadpool(
        store.touch_editing_session, book_id, current_user.id, section_id, payload.cursor_position
    )


@router.delete("/books/{book_id}/editing-sessions/{section_id}", status_code=status.HTTP_204_NO_CONTENT)
async def end_editing_session(
    book_id: UUID,
    section_id: str,
    role: CollaboratorRole = Depends(get_book_role),
    current_user: User = Depends(get_current_user),
    store: CollaborationStore = Depends(get_store),
):
    await run_in_threadpool(store.end_editing_session, book_id, current_user.id, section_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/books/{book_id}/presence", response_model=List[UserPresence])
async def list_presence(
    book_id: UUID,
    role: CollaboratorRole = Depends(get_book_role),
    store: CollaborationStore = Depends(get_store),
):
    return await run_in_threadpool(store.list_presence, book_id)


@router.put("/books/{book_id}/presence", response_model=UserPresence)
async def update_presence(
    book_id: UUID,
    payload: PresenceUpdate,
    role: CollaboratorRole = Depends(get_book_role),
    current_user: User = Depends(get_current_user),
    store: CollaborationStore = Depends(get_store),
):
    """Heartbeat: marks the caller online and records the section they are in."""
    return await run_in_threadpool(
        store.update_presence, book_id, current_user.id, payload.current_section, payload.metadata
    )


@router.delete("/books/{book_id}/presence", status_code=status.HTTP_204_NO_CONTENT)
async def leave_book(
    book_id: UUID,
    role: CollaboratorRole = Depends(get_book_role),
    current_user: User = Depends(get_current_user),
    store: CollaborationStore = Depends(get_store),
):
    await run_in_threadpool(store.end_all_editing_sessions, book_id, current_user.id)
    await run_in_threadpool(store.set_offline, book_id, current_user.id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
