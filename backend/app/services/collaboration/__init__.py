from app.services.collaboration.errors import (
    CollaborationError,
    ConflictError,
    ExpiredError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    UnknownError,
)
from app.services.collaboration.manager import CollaborationSessionManager
from app.services.collaboration.notifier import ChangeAction, ChangeEvent, ChangeNotifier, CollaborationTable, Subscription
from app.services.collaboration.store import CollaborationStore

__all__ = [
    "ChangeAction",
    "ChangeEvent",
    "ChangeNotifier",
    "CollaborationError",
    "CollaborationSessionManager",
    "CollaborationStore",
    "CollaborationTable",
    "ConflictError",
    "ExpiredError",
    "ForbiddenError",
    "InvalidTransitionError",
    "NotFoundError",
    "Subscription",
    "UnknownError",
]
