from sqlalchemy import Column, String, Boolean, DateTime, ForeignKey, JSON, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from app.database import Base


class UserPresence(Base):
    __tablename__ = "user_presence"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    book_id = Column(Uuid, ForeignKey("books.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    current_section = Column(String(255), nullable=True)
    is_online = Column(Boolean, default=True, nullable=False)
    # "metadata" is reserved on declarative classes
    presence_metadata = Column("metadata", JSON, nullable=False, default=dict)
    last_seen = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    user = relationship("User")

    __table_args__ = (
        UniqueConstraint("book_id", "user_id", name="uq_user_presence_book_user"),
    )
