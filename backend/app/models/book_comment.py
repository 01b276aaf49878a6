from sqlalchemy import Column, Text, String, Integer, DateTime, Enum, ForeignKey, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import enum
import uuid

from app.database import Base


class CommentType(str, enum.Enum):
    COMMENT = "comment"
    SUGGESTION = "suggestion"
    QUESTION = "question"
    APPROVAL = "approval"


class CommentStatus(str, enum.Enum):
    OPEN = "open"
    RESOLVED = "resolved"
    CLOSED = "closed"


class BookComment(Base):
    __tablename__ = "book_comments"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    book_id = Column(Uuid, ForeignKey("books.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    section_id = Column(String(255), nullable=True)
    content = Column(Text, nullable=False)
    position_start = Column(Integer, nullable=True)
    position_end = Column(Integer, nullable=True)
    comment_type = Column(
        Enum(
            CommentType,
            name="commenttype",
            values_callable=lambda enum_cls: [member.value for member in enum_cls],
        ),
        default=CommentType.COMMENT,
        nullable=False,
    )
    status = Column(
        Enum(
            CommentStatus,
            name="commentstatus",
            values_callable=lambda enum_cls: [member.value for member in enum_cls],
        ),
        default=CommentStatus.OPEN,
        nullable=False,
    )
    parent_id = Column(Uuid, ForeignKey("book_comments.id", ondelete="CASCADE"), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    user = relationship("User")
