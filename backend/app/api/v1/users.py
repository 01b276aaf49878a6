from fastapi import APIRouter, Depends, HTTPException, Query, status
from starlette.concurrency import run_in_threadpool
from typing import List, Optional
from uuid import UUID

from app.api.deps import get_current_user, get_store
from app.models.user import User
from app.schemas.collaboration import UserSummary
from app.services.collaboration.store import CollaborationStore

router = APIRouter()


@router.get("/users/me", response_model=UserSummary)
async def read_current_user(current_user: User = Depends(get_current_user)):
    return current_user


@router.get("/users/search", response_model=List[UserSummary])
async def search_users(
    q: str = Query(..., min_length=1, description="E-mail fragment"),
    book_id: Optional[UUID] = Query(default=None, description="Leave out people already on this book"),
    current_user: User = Depends(get_current_user),
    store: CollaborationStore = Depends(get_store),
):
    """Invitee lookup for the invite dialog."""
    excluded = {current_user.id}
    if book_id is not None:
        role = await run_in_threadpool(store.get_user_role, book_id, current_user.id)
        if role is None:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Book access denied")
        collaborators = await run_in_threadpool(store.list_collaborators, book_id)
        excluded.update(c.user_id for c in collaborators)
    return await run_in_threadpool(store.search_users, q, excluded)
