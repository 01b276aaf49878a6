from .collaboration import (
    BookCollaborator,
    BookComment,
    CollaborationInvitation,
    CollaboratorListResponse,
    CollaboratorPermissions,
    CollaboratorRoleUpdate,
    CollaboratorView,
    CommentCreate,
    CommentUpdate,
    EditingSession,
    EditingSessionStart,
    EditingSessionTouch,
    InvitationCreate,
    InvitationDecision,
    PresenceUpdate,
    UserPresence,
    UserSummary,
)

__all__ = [
    "BookCollaborator",
    "BookComment",
    "CollaborationInvitation",
    "CollaboratorListResponse",
    "CollaboratorPermissions",
    "CollaboratorRoleUpdate",
    "CollaboratorView",
    "CommentCreate",
    "CommentUpdate",
    "EditingSession",
    "EditingSessionStart",
    "EditingSessionTouch",
    "InvitationCreate",
    "InvitationDecision",
    "PresenceUpdate",
    "UserPresence",
    "UserSummary",
]
