"""
Invitation to collaborate on a book.

Rows are addressed by e-mail so the invitee does not need an account yet;
invitee_id is filled in when the address already belongs to a user.
"""

from sqlalchemy import Column, String, Text, ForeignKey, DateTime, Enum, Index, JSON, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import enum
import uuid

from app.database import Base
from app.models.book_collaborator import CollaboratorRole, collaborator_role_enum


class InvitationStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    # Never stored: derived from PENDING once expires_at has passed
    EXPIRED = "expired"


class CollaborationInvitation(Base):
    __tablename__ = "collaboration_invitations"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    book_id = Column(Uuid, ForeignKey("books.id", ondelete="CASCADE"), nullable=False)
    inviter_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)

    # Always stored lower case
    invitee_email = Column(String(255), nullable=False, index=True)
    invitee_id = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    role = Column(collaborator_role_enum, default=CollaboratorRole.VIEWER, nullable=False)
    permissions = Column(JSON, nullable=False, default=dict)
    message = Column(Text, nullable=True)
    status = Column(
        Enum(
            InvitationStatus,
            name="invitationstatus",
            values_callable=lambda enum_cls: [member.value for member in enum_cls],
        ),
        default=InvitationStatus.PENDING,
        nullable=False,
    )

    expires_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    inviter = relationship("User", foreign_keys=[inviter_id])

    __table_args__ = (
        Index("ix_collaboration_invitations_book_email", "book_id", "invitee_email"),
    )

    def __repr__(self):
        return f"<CollaborationInvitation {self.invitee_email} -> Book {self.book_id} as {self.role}>"
