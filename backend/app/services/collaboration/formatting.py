"""Display helpers for collaborator listings."""

from typing import Iterable, List, Optional

from app.models.book_collaborator import CollaboratorRole
from app.schemas.collaboration import BookCollaborator, UserSummary
from app.services.collaboration.permissions import role_rank


AVATAR_COLORS = (
    "#ef4444",
    "#f97316",
    "#eab308",
    "#22c55e",
    "#06b6d4",
    "#3b82f6",
    "#8b5cf6",
    "#ec4899",
)

ROLE_LABELS = {
    CollaboratorRole.OWNER: "Owner",
    CollaboratorRole.EDITOR: "Editor",
    CollaboratorRole.REVIEWER: "Reviewer",
    CollaboratorRole.VIEWER: "Viewer",
}

ROLE_DESCRIPTIONS = {
    CollaboratorRole.OWNER: "Full access to every feature",
    CollaboratorRole.EDITOR: "Can edit content and invite others",
    CollaboratorRole.REVIEWER: "Can leave comments and suggestions",
    CollaboratorRole.VIEWER: "Can only view the book",
}


def display_name(user: Optional[UserSummary]) -> str:
    if user is None:
        return "Unknown User"
    if user.display_name:
        return user.display_name
    return user.email.split("@")[0]


def initials(user: Optional[UserSummary]) -> str:
    if user is None:
        return "?"
    parts = [part for part in display_name(user).split(" ") if part]
    return "".join(part[0] for part in parts).upper()[:2] or "?"


def avatar_color(user_id) -> str:
    """Stable colour for a user id (31-multiplier string hash, 32-bit wrap)."""
    value = 0
    for char in str(user_id):
        value = (ord(char) + ((value << 5) - value)) & 0xFFFFFFFF
    if value >= 0x80000000:
        value -= 0x100000000
    return AVATAR_COLORS[abs(value) % len(AVATAR_COLORS)]


def role_label(role: CollaboratorRole) -> str:
    return ROLE_LABELS[CollaboratorRole(role)]


def role_description(role: CollaboratorRole) -> str:
    return ROLE_DESCRIPTIONS[CollaboratorRole(role)]


def sort_collaborators(collaborators: Iterable[BookCollaborator]) -> List[BookCollaborator]:
    """Highest role first, then alphabetically by display name."""
    return sorted(
        collaborators,
        key=lambda c: (-role_rank(c.role), display_name(c.user).casefold()),
    )
