"""
Pytest configuration and fixtures.

Each test gets its own file-backed SQLite database under ``tmp_path`` with the
schema created from the model metadata, plus a controllable clock.
"""

import itertools
import os
import sys
import uuid
from datetime import datetime, timedelta, timezone
from typing import Generator

# Settings are read at import time
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("SECRET_KEY", "test-secret-key")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.database import Base
from app import models
from app.models.book_collaborator import CollaboratorRole
from app.services.collaboration.notifier import ChangeNotifier
from app.services.collaboration.permissions import permissions_payload
from app.services.collaboration.store import CollaborationStore


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'collab.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory) -> Generator[Session, None, None]:
    """Session for arranging fixtures and inspecting rows directly."""
    db = session_factory()
    try:
        yield db
    finally:
        db.rollback()
        db.close()


@pytest.fixture
def notifier() -> ChangeNotifier:
    return ChangeNotifier()


@pytest.fixture
def store(session_factory, notifier, clock) -> CollaborationStore:
    return CollaborationStore(session_factory, notifier, clock=clock)


@pytest.fixture
def make_user(db: Session):
    def _make_user(email: str, display_name: str = None) -> models.User:
        user = models.User(id=uuid.uuid4(), email=email, display_name=display_name, is_active=True)
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make_user


@pytest.fixture
def owner(make_user) -> models.User:
    return make_user("owner@example.com", "Olivia Owner")


@pytest.fixture
def editor_user(make_user) -> models.User:
    return make_user("editor@example.com", "Eddie Editor")


@pytest.fixture
def reviewer_user(make_user) -> models.User:
    return make_user("reviewer@example.com", "Rita Reviewer")


@pytest.fixture
def viewer_user(make_user) -> models.User:
    return make_user("viewer@example.com")


@pytest.fixture
def outsider(make_user) -> models.User:
    return make_user("b@example.com", "Bea Outsider")


@pytest.fixture
def book(db: Session, owner, clock) -> models.Book:
    book = models.Book(
        id=uuid.uuid4(),
        title="Field Guide to Tidepools",
        author_id=owner.id,
        created_at=clock(),
        updated_at=clock(),
    )
    db.add(book)
    db.commit()
    db.refresh(book)
    return book


@pytest.fixture
def add_member(db: Session, clock):
    """Insert a collaborator row directly, bypassing the store.

    Rows get strictly increasing ``created_at`` values so listings come back in
    insertion order.
    """
    sequence = itertools.count(1)

    def _add_member(book: models.Book, user: models.User, role: CollaboratorRole) -> models.BookCollaborator:
        row = models.BookCollaborator(
            id=uuid.uuid4(),
            book_id=book.id,
            user_id=user.id,
            role=role,
            permissions=permissions_payload(role),
            invited_by=book.author_id,
            joined_at=clock(),
            created_at=clock() + timedelta(milliseconds=next(sequence)),
            updated_at=clock(),
        )
        db.add(row)
        db.commit()
        db.refresh(row)
        return row

    return _add_member


@pytest.fixture
def team(book, editor_user, reviewer_user, viewer_user, add_member):
    """Book with one editor, one reviewer and one viewer besides the author."""
    return {
        "editor": add_member(book, editor_user, CollaboratorRole.EDITOR),
        "reviewer": add_member(book, reviewer_user, CollaboratorRole.REVIEWER),
        "viewer": add_member(book, viewer_user, CollaboratorRole.VIEWER),
    }
