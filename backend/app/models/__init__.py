from .user import User
from .book import Book
from .book_collaborator import BookCollaborator, CollaboratorRole
from .collaboration_invitation import CollaborationInvitation, InvitationStatus
from .editing_session import EditingSession, SectionType
from .user_presence import UserPresence
from .book_comment import BookComment, CommentStatus, CommentType

__all__ = [
    "User",
    "Book",
    "BookCollaborator",
    "CollaboratorRole",
    "CollaborationInvitation",
    "InvitationStatus",
    "EditingSession",
    "SectionType",
    "UserPresence",
    "BookComment",
    "CommentStatus",
    "CommentType",
]
