from sqlalchemy import Column, DateTime, Enum, ForeignKey, JSON, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.database import Base

import enum
import uuid


class CollaboratorRole(str, enum.Enum):
    OWNER = "owner"
    EDITOR = "editor"
    REVIEWER = "reviewer"
    VIEWER = "viewer"


collaborator_role_enum = Enum(
    CollaboratorRole,
    name="collaboratorrole",
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
)


class BookCollaborator(Base):
    __tablename__ = "book_collaborators"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    book_id = Column(Uuid, ForeignKey("books.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    role = Column(collaborator_role_enum, default=CollaboratorRole.VIEWER, nullable=False)
    permissions = Column(JSON, nullable=False, default=dict)
    invited_by = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    joined_at = Column(DateTime(timezone=True), server_default=func.now())
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    user = relationship("User", foreign_keys=[user_id])
    inviter = relationship("User", foreign_keys=[invited_by])

    __table_args__ = (
        UniqueConstraint("book_id", "user_id", name="uq_book_collaborators_book_user"),
    )

    def __repr__(self) -> str:
        return f"<BookCollaborator(book_id={self.book_id}, user_id={self.user_id}, role={self.role})>"
