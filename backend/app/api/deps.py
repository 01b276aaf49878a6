from uuid import UUID

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy import func
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError
from starlette.concurrency import run_in_threadpool
from app.database import get_db
from app.core.security import verify_token
from app.models.user import User
from app.models.book_collaborator import CollaboratorRole
from app.services.collaboration.notifier import ChangeNotifier
from app.services.collaboration.store import CollaborationStore
from app.services.websocket_manager import BookChangeBroadcaster

# HTTP Bearer token scheme
security = HTTPBearer()

def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: Session = Depends(get_db)
) -> User:
    """Get current authenticated user from JWT token."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    email = verify_token(credentials.credentials)
    if email is None:
        raise credentials_exception

    try:
        user = db.query(User).filter(func.lower(User.email) == email).first()
    except SQLAlchemyError:
        # Surface a clearer error if the DB is not reachable instead of a generic 500
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database unavailable while validating credentials"
        )

    if user is None:
        raise credentials_exception

    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Inactive user"
        )

    return user


def get_notifier(request: Request) -> ChangeNotifier:
    return request.app.state.change_notifier


def get_store(request: Request) -> CollaborationStore:
    return request.app.state.collaboration_store


def get_broadcaster(request: Request) -> BookChangeBroadcaster:
    return request.app.state.change_broadcaster


async def get_book_role(
    book_id: UUID,
    current_user: User = Depends(get_current_user),
    store: CollaborationStore = Depends(get_store),
) -> CollaboratorRole:
    """Effective role of the caller on the book in the path.

    Unknown books surface as 404 through the collaboration error handler.
    """
    role = await run_in_threadpool(store.get_user_role, book_id, current_user.id)
    if role is None:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Book access denied")
    return role
