from sqlalchemy import Column, String, DateTime, Enum, ForeignKey, JSON, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import enum
import uuid

from app.database import Base


class SectionType(str, enum.Enum):
    PAGE = "page"
    ELEMENT = "element"
    CHAPTER = "chapter"


class EditingSession(Base):
    __tablename__ = "editing_sessions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    book_id = Column(Uuid, ForeignKey("books.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    section_id = Column(String(255), nullable=False)
    section_type = Column(
        Enum(
            SectionType,
            name="sectiontype",
            values_callable=lambda enum_cls: [member.value for member in enum_cls],
        ),
        nullable=False,
    )
    cursor_position = Column(JSON, nullable=True)
    locked_at = Column(DateTime(timezone=True), server_default=func.now())
    last_activity = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    user = relationship("User")

    __table_args__ = (
        UniqueConstraint("book_id", "section_id", "user_id", name="uq_editing_sessions_book_section_user"),
    )
