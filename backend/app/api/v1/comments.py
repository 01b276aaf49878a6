from fastapi import APIRouter, Depends, HTTPException, Response, status
from starlette.concurrency import run_in_threadpool
from typing import List, Optional
from uuid import UUID

from app.api.deps import get_book_role, get_current_user, get_store
from app.models.book_collaborator import CollaboratorRole
from app.models.user import User
from app.schemas.collaboration import BookComment, CommentCreate, CommentUpdate
from app.services.collaboration import access
from app.services.collaboration.store import CollaborationStore

router = APIRouter()


@router.get("/books/{book_id}/comments", response_model=List[BookComment])
async def list_comments(
    book_id: UUID,
    section_id: Optional[str] = None,
    role: CollaboratorRole = Depends(get_book_role),
    store: CollaborationStore = Depends(get_store),
):
    return await run_in_threadpool(store.list_comments, book_id, section_id)


@router.post("/books/{book_id}/comments", response_model=BookComment, status_code=status.HTTP_201_CREATED)
async def add_comment(
    book_id: UUID,
    payload: CommentCreate,
    role: CollaboratorRole = Depends(get_book_role),
    current_user: User = Depends(get_current_user),
    store: CollaborationStore = Depends(get_store),
):
    access.ensure_can_review(role)
    return await run_in_threadpool(
        lambda: store.add_comment(
            book_id,
            current_user.id,
            payload.content,
            section_id=payload.section_id,
            position_start=payload.position_start,
            position_end=payload.position_end,
            comment_type=payload.comment_type,
            parent_id=payload.parent_id,
        )
    )


async def _comment_with_role(store: CollaborationStore, comment_id: UUID, user: User):
    comment = await run_in_threadpool(store.get_comment, comment_id)
    role = await run_in_threadpool(store.get_user_role, comment.book_id, user.id)
    if role is None:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Book access denied")
    return comment, role


@router.patch("/comments/{comment_id}", response_model=BookComment)
async def update_comment(
    comment_id: UUID,
    payload: CommentUpdate,
    current_user: User = Depends(get_current_user),
    store: CollaborationStore = Depends(get_store),
):
    """Edit the text or change the status (resolve / close / reopen)."""
    comment, role = await _comment_with_role(store, comment_id, current_user)
    access.ensure_can_modify_comment(role, current_user.id, comment)
    return await run_in_threadpool(
        lambda: store.update_comment(comment_id, content=payload.content, status=payload.status)
    )


@router.delete("/comments/{comment_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_comment(
    comment_id: UUID,
    current_user: User = Depends(get_current_user),
    store: CollaborationStore = Depends(get_store),
):
    comment, role = await _comment_with_role(store, comment_id, current_user)
    access.ensure_can_modify_comment(role, current_user.id, comment)
    await run_in_threadpool(store.delete_comment, comment_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
