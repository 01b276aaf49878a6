from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from app.models.book_collaborator import CollaboratorRole
from app.models.book_comment import CommentStatus, CommentType
from app.models.collaboration_invitation import InvitationStatus
from app.models.editing_session import SectionType


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo; every timestamp leaving the store is UTC-aware."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class _Entity(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    @field_validator("*", mode="after")
    @classmethod
    def _normalize_datetimes(cls, value):
        if isinstance(value, datetime):
            return as_utc(value)
        return value


class CollaboratorPermissions(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    can_edit: bool = Field(default=False, alias="canEdit")
    can_review: bool = Field(default=False, alias="canReview")
    can_invite: bool = Field(default=False, alias="canInvite")
    can_delete: bool = Field(default=False, alias="canDelete")
    can_publish: bool = Field(default=False, alias="canPublish")


class UserSummary(_Entity):
    id: UUID
    email: str
    display_name: Optional[str] = None


class BookCollaborator(_Entity):
    id: UUID
    book_id: UUID
    user_id: UUID
    role: CollaboratorRole
    permissions: CollaboratorPermissions
    invited_by: Optional[UUID] = None
    joined_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    user: Optional[UserSummary] = None
    # True for the synthesized owner record of a book author without a row
    is_virtual: bool = False


class CollaborationInvitation(_Entity):
    id: UUID
    book_id: UUID
    inviter_id: UUID
    invitee_email: str
    invitee_id: Optional[UUID] = None
    role: CollaboratorRole
    permissions: CollaboratorPermissions
    message: Optional[str] = None
    status: InvitationStatus
    expires_at: datetime
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    inviter: Optional[UserSummary] = None


class EditingSession(_Entity):
    id: UUID
    book_id: UUID
    user_id: UUID
    section_id: str
    section_type: SectionType
    cursor_position: Optional[Any] = None
    locked_at: Optional[datetime] = None
    last_activity: datetime
    user: Optional[UserSummary] = None


class UserPresence(_Entity):
    id: UUID
    book_id: UUID
    user_id: UUID
    current_section: Optional[str] = None
    is_online: bool
    metadata: Dict[str, Any] = Field(default_factory=dict)
    last_seen: datetime
    user: Optional[UserSummary] = None


class BookComment(_Entity):
    id: UUID
    book_id: UUID
    user_id: UUID
    section_id: Optional[str] = None
    content: str
    position_start: Optional[int] = None
    position_end: Optional[int] = None
    comment_type: CommentType
    status: CommentStatus
    parent_id: Optional[UUID] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    user: Optional[UserSummary] = None
    replies: List["BookComment"] = Field(default_factory=list)


class InvitationDecision(str, Enum):
    ACCEPT = "accept"
    REJECT = "reject"


# Request payloads

class InvitationCreate(BaseModel):
    email: EmailStr
    role: CollaboratorRole = CollaboratorRole.VIEWER
    message: Optional[str] = Field(default=None, max_length=2000)


class CollaboratorRoleUpdate(BaseModel):
    role: CollaboratorRole


class EditingSessionStart(BaseModel):
    section_id: str = Field(..., min_length=1, max_length=255)
    section_type: SectionType
    cursor_position: Optional[Any] = None


class EditingSessionTouch(BaseModel):
    cursor_position: Optional[Any] = None


class PresenceUpdate(BaseModel):
    current_section: Optional[str] = Field(default=None, max_length=255)
    metadata: Optional[Dict[str, Any]] = None


class CommentCreate(BaseModel):
    content: str = Field(..., min_length=1)
    section_id: Optional[str] = None
    position_start: Optional[int] = Field(default=None, ge=0)
    position_end: Optional[int] = Field(default=None, ge=0)
    comment_type: CommentType = CommentType.COMMENT
    parent_id: Optional[UUID] = None


class CommentUpdate(BaseModel):
    content: Optional[str] = Field(default=None, min_length=1)
    status: Optional[CommentStatus] = None


# Response views

class CollaboratorView(BookCollaborator):
    display_name: str
    initials: str
    avatar_color: str
    role_label: str
    role_description: str


class CollaboratorListResponse(BaseModel):
    collaborators: List[CollaboratorView]
    current_user_role: Optional[CollaboratorRole] = None
    current_user_permissions: CollaboratorPermissions
    assignable_roles: List[CollaboratorRole] = Field(default_factory=list)
