"""
Persistent collaboration store.

Every public operation runs in its own session and transaction. Rows are
parsed into the pydantic entities of ``app.schemas.collaboration`` before they
leave this module, and change events are published only after a successful
commit.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple, Type, TypeVar
from uuid import UUID

from pydantic import BaseModel, ValidationError
from sqlalchemy import func, or_, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from app import models
from app.models.book_collaborator import CollaboratorRole
from app.models.book_comment import CommentStatus, CommentType
from app.models.collaboration_invitation import InvitationStatus
from app.models.editing_session import SectionType
from app.schemas.collaboration import (
    BookCollaborator,
    BookComment,
    CollaborationInvitation,
    EditingSession,
    InvitationDecision,
    UserPresence,
    UserSummary,
    as_utc,
)
from app.services.collaboration import lifecycle
from app.services.collaboration.errors import (
    CollaborationError,
    ConflictError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    UnknownError,
)
from app.services.collaboration.notifier import ChangeAction, ChangeEvent, ChangeNotifier, CollaborationTable
from app.services.collaboration.permissions import permissions_payload

logger = logging.getLogger(__name__)

EntityT = TypeVar("EntityT", bound=BaseModel)

VIRTUAL_OWNER_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_DNS, "collaborators.bookcollab")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def virtual_owner_id(book_id: UUID, user_id: UUID) -> UUID:
    """Deterministic id of the synthesized owner record for a book author."""
    return uuid.uuid5(VIRTUAL_OWNER_NAMESPACE, f"owner:{book_id}:{user_id}")


def _normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def _user_summary(user: Optional[models.User]) -> Optional[Dict[str, Any]]:
    if user is None:
        return None
    return {"id": user.id, "email": user.email, "display_name": user.display_name}


class CollaborationStore:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        notifier: Optional[ChangeNotifier] = None,
        *,
        clock: Callable[[], datetime] = _utcnow,
        invitation_ttl: timedelta = timedelta(days=7),
        editing_session_window: timedelta = timedelta(minutes=30),
        presence_window: timedelta = timedelta(minutes=5),
        user_search_limit: int = 10,
    ):
        self._session_factory = session_factory
        self._notifier = notifier
        self._clock = clock
        self.invitation_ttl = invitation_ttl
        self.editing_session_window = editing_session_window
        self.presence_window = presence_window
        self.user_search_limit = user_search_limit

    @classmethod
    def from_settings(
        cls,
        session_factory: Callable[[], Session],
        notifier: Optional[ChangeNotifier],
        settings,
        **kwargs,
    ) -> "CollaborationStore":
        return cls(
            session_factory,
            notifier,
            invitation_ttl=timedelta(days=settings.COLLAB_INVITATION_TTL_DAYS),
            editing_session_window=timedelta(minutes=settings.COLLAB_EDITING_SESSION_STALE_MINUTES),
            presence_window=timedelta(minutes=settings.COLLAB_PRESENCE_WINDOW_MINUTES),
            user_search_limit=settings.COLLAB_USER_SEARCH_LIMIT,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # plumbing

    def now(self) -> datetime:
        return as_utc(self._clock())

    @contextmanager
    def _session(self) -> Iterator[Tuple[Session, List[ChangeEvent]]]:
        db = self._session_factory()
        events: List[ChangeEvent] = []
        try:
            yield db, events
            db.commit()
        except CollaborationError:
            db.rollback()
            raise
        except IntegrityError as exc:
            db.rollback()
            logger.warning("Uniqueness constraint rejected collaboration write: %s", exc.orig)
            raise ConflictError("A conflicting record already exists", cause=exc) from exc
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("Collaboration store failure", exc_info=True)
            raise UnknownError("Collaboration storage is unavailable", cause=exc) from exc
        finally:
            db.close()
        if self._notifier is not None and events:
            self._notifier.publish_all(events)

    def _event(self, book_id: UUID, table: CollaborationTable, action: ChangeAction, row_id: Optional[UUID] = None) -> ChangeEvent:
        return ChangeEvent(book_id=book_id, table=table, action=action, row_id=row_id, occurred_at=self.now())

    def _parse(self, entity: Type[EntityT], data: Dict[str, Any]) -> EntityT:
        try:
            return entity.model_validate(data)
        except ValidationError as exc:
            logger.error("Malformed %s row: %s", entity.__name__, exc)
            raise UnknownError(f"Malformed {entity.__name__} record", cause=exc) from exc

    def _get_book(self, db: Session, book_id: UUID) -> models.Book:
        book = db.query(models.Book).filter(models.Book.id == book_id).first()
        if not book:
            raise NotFoundError("Book not found")
        return book

    def _lock_book(self, db: Session, book_id: UUID) -> None:
        """Hold the book row write lock (on SQLite, the database write lock) until commit."""
        db.execute(
            update(models.Book)
            .where(models.Book.id == book_id)
            .values(updated_at=models.Book.updated_at)
            .execution_options(synchronize_session=False)
        )

    def _get_user(self, db: Session, user_id: UUID) -> models.User:
        user = db.query(models.User).filter(models.User.id == user_id).first()
        if not user:
            raise NotFoundError("User not found")
        return user

    def _find_user_by_email(self, db: Session, email: str) -> Optional[models.User]:
        return db.query(models.User).filter(func.lower(models.User.email) == email).first()

    # ------------------------------------------------------------------
    # entity builders

    def _collaborator_entity(self, row: models.BookCollaborator) -> BookCollaborator:
        expected = permissions_payload(row.role)
        if row.permissions != expected:
            logger.warning(
                "Collaborator %s permissions drifted from role %s; using role-derived set",
                row.id,
                row.role,
            )
        return self._parse(
            BookCollaborator,
            {
                "id": row.id,
                "book_id": row.book_id,
                "user_id": row.user_id,
                "role": row.role,
                "permissions": expected,
                "invited_by": row.invited_by,
                "joined_at": row.joined_at,
                "created_at": row.created_at,
                "updated_at": row.updated_at,
                "user": _user_summary(row.user),
            },
        )

    def _virtual_owner(self, book: models.Book) -> BookCollaborator:
        return self._parse(
            BookCollaborator,
            {
                "id": virtual_owner_id(book.id, book.author_id),
                "book_id": book.id,
                "user_id": book.author_id,
                "role": CollaboratorRole.OWNER,
                "permissions": permissions_payload(CollaboratorRole.OWNER),
                "invited_by": None,
                "joined_at": book.created_at,
                "created_at": book.created_at,
                "updated_at": book.updated_at,
                "user": _user_summary(book.author),
                "is_virtual": True,
            },
        )

    def _invitation_entity(self, row: models.CollaborationInvitation, now: datetime) -> CollaborationInvitation:
        return self._parse(
            CollaborationInvitation,
            {
                "id": row.id,
                "book_id": row.book_id,
                "inviter_id": row.inviter_id,
                "invitee_email": row.invitee_email,
                "invitee_id": row.invitee_id,
                "role": row.role,
                # Snapshot taken at creation, returned as stored
                "permissions": row.permissions,
                "message": row.message,
                "status": lifecycle.effective_status(row.status, row.expires_at, now),
                "expires_at": row.expires_at,
                "created_at": row.created_at,
                "updated_at": row.updated_at,
                "inviter": _user_summary(row.inviter),
            },
        )

    def _editing_session_entity(self, row: models.EditingSession) -> EditingSession:
        return self._parse(
            EditingSession,
            {
                "id": row.id,
                "book_id": row.book_id,
                "user_id": row.user_id,
                "section_id": row.section_id,
                "section_type": row.section_type,
                "cursor_position": row.cursor_position,
                "locked_at": row.locked_at,
                "last_activity": row.last_activity,
                "user": _user_summary(row.user),
            },
        )

    def _presence_entity(self, row: models.UserPresence) -> UserPresence:
        return self._parse(
            UserPresence,
            {
                "id": row.id,
                "book_id": row.book_id,
                "user_id": row.user_id,
                "current_section": row.current_section,
                "is_online": row.is_online,
                "metadata": row.presence_metadata or {},
                "last_seen": row.last_seen,
                "user": _user_summary(row.user),
            },
        )

    def _comment_entity(self, row: models.BookComment, replies: Iterable[BookComment] = ()) -> BookComment:
        return self._parse(
            BookComment,
            {
                "id": row.id,
                "book_id": row.book_id,
                "user_id": row.user_id,
                "section_id": row.section_id,
                "content": row.content,
                "position_start": row.position_start,
                "position_end": row.position_end,
                "comment_type": row.comment_type,
                "status": row.status,
                "parent_id": row.parent_id,
                "created_at": row.created_at,
                "updated_at": row.updated_at,
                "user": _user_summary(row.user),
                "replies": list(replies),
            },
        )

    # ------------------------------------------------------------------
    # books / roles

    def get_book_author(self, book_id: UUID) -> UUID:
        with self._session() as (db, _):
            return self._get_book(db, book_id).author_id

    def get_user_role(self, book_id: UUID, user_id: UUID) -> Optional[CollaboratorRole]:
        """Effective role of a user on a book; None when they have no access."""
        with self._session() as (db, _):
            book = self._get_book(db, book_id)
            if book.author_id == user_id:
                return CollaboratorRole.OWNER
            row = (
                db.query(models.BookCollaborator)
                .filter(
                    models.BookCollaborator.book_id == book_id,
                    models.BookCollaborator.user_id == user_id,
                )
                .first()
            )
            return CollaboratorRole(row.role) if row else None

    # ------------------------------------------------------------------
    # collaborators

    def list_collaborators(self, book_id: UUID) -> List[BookCollaborator]:
        with self._session() as (db, _):
            book = self._get_book(db, book_id)
            rows = (
                db.query(models.BookCollaborator)
                .options(joinedload(models.BookCollaborator.user))
                .filter(models.BookCollaborator.book_id == book_id)
                .order_by(models.BookCollaborator.created_at.asc(), models.BookCollaborator.id.asc())
                .all()
            )
            collaborators = [self._collaborator_entity(row) for row in rows]
            if not any(row.user_id == book.author_id for row in rows):
                collaborators.insert(0, self._virtual_owner(book))
            return collaborators

    def get_collaborator(self, collaborator_id: UUID, *, book_id: Optional[UUID] = None) -> BookCollaborator:
        """Fetch one collaborator. With ``book_id`` the virtual owner id resolves too."""
        with self._session() as (db, _):
            row = db.query(models.BookCollaborator).filter(models.BookCollaborator.id == collaborator_id).first()
            if row and (book_id is None or row.book_id == book_id):
                return self._collaborator_entity(row)
            if book_id is not None:
                book = db.query(models.Book).filter(models.Book.id == book_id).first()
                if book and virtual_owner_id(book.id, book.author_id) == collaborator_id:
                    return self._virtual_owner(book)
            raise NotFoundError("Collaborator not found")

    def get_collaborator_for_user(self, book_id: UUID, user_id: UUID) -> Optional[BookCollaborator]:
        with self._session() as (db, _):
            book = self._get_book(db, book_id)
            row = (
                db.query(models.BookCollaborator)
                .filter(
                    models.BookCollaborator.book_id == book_id,
                    models.BookCollaborator.user_id == user_id,
                )
                .first()
            )
            if row:
                return self._collaborator_entity(row)
            if book.author_id == user_id:
                return self._virtual_owner(book)
            return None

    def add_collaborator(
        self,
        book_id: UUID,
        user_id: UUID,
        role: CollaboratorRole,
        invited_by: Optional[UUID] = None,
    ) -> BookCollaborator:
        role = CollaboratorRole(role)
        if role == CollaboratorRole.OWNER:
            raise InvalidTransitionError("The owner role cannot be granted to a collaborator")

        with self._session() as (db, events):
            book = self._get_book(db, book_id)
            self._get_user(db, user_id)
            if book.author_id == user_id:
                raise ConflictError("The book author is already its owner")
            existing = (
                db.query(models.BookCollaborator)
                .filter(
                    models.BookCollaborator.book_id == book_id,
                    models.BookCollaborator.user_id == user_id,
                )
                .first()
            )
            if existing:
                raise ConflictError("User is already a collaborator on this book")

            now = self.now()
            row = models.BookCollaborator(
                book_id=book_id,
                user_id=user_id,
                role=role,
                permissions=permissions_payload(role),
                invited_by=invited_by,
                joined_at=now,
                created_at=now,
                updated_at=now,
            )
            db.add(row)
            db.flush()
            events.append(self._event(book_id, CollaborationTable.COLLABORATORS, ChangeAction.INSERT, row.id))
            logger.info("Added collaborator %s to book %s as %s", user_id, book_id, role.value)
            return self._collaborator_entity(row)

    def _collaborator_row(
        self, db: Session, collaborator_id: UUID, book_id: Optional[UUID]
    ) -> Optional[models.BookCollaborator]:
        """Stored row for ``collaborator_id``; None when the id names a virtual owner."""
        row = db.query(models.BookCollaborator).filter(models.BookCollaborator.id == collaborator_id).first()
        if row and (book_id is None or row.book_id == book_id):
            return row
        books = db.query(models.Book.id, models.Book.author_id)
        if book_id is not None:
            books = books.filter(models.Book.id == book_id)
        if any(virtual_owner_id(b_id, author_id) == collaborator_id for b_id, author_id in books):
            return None
        raise NotFoundError("Collaborator not found")

    def update_collaborator_role(
        self,
        collaborator_id: UUID,
        new_role: CollaboratorRole,
        *,
        book_id: Optional[UUID] = None,
    ) -> BookCollaborator:
        new_role = CollaboratorRole(new_role)
        with self._session() as (db, events):
            row = self._collaborator_row(db, collaborator_id, book_id)
            if row is None:
                raise InvalidTransitionError("Cannot modify owner role")
            if new_role == CollaboratorRole.OWNER:
                raise InvalidTransitionError("Ownership cannot be changed through a role edit")
            if row.role == CollaboratorRole.OWNER:
                raise InvalidTransitionError("Cannot modify owner role")

            row.role = new_role
            row.permissions = permissions_payload(new_role)
            row.updated_at = self.now()
            db.flush()
            events.append(self._event(row.book_id, CollaborationTable.COLLABORATORS, ChangeAction.UPDATE, row.id))
            logger.info("Collaborator %s on book %s is now %s", row.user_id, row.book_id, new_role.value)
            return self._collaborator_entity(row)

    def remove_collaborator(self, collaborator_id: UUID, *, book_id: Optional[UUID] = None) -> None:
        with self._session() as (db, events):
            row = self._collaborator_row(db, collaborator_id, book_id)
            if row is None or row.role == CollaboratorRole.OWNER:
                raise ForbiddenError("The book owner cannot be removed")
            book_id = row.book_id
            db.delete(row)
            events.append(self._event(book_id, CollaborationTable.COLLABORATORS, ChangeAction.DELETE, collaborator_id))
            logger.info("Removed collaborator %s from book %s", collaborator_id, book_id)

    # ------------------------------------------------------------------
    # invitations

    def create_invitation(
        self,
        book_id: UUID,
        inviter_id: UUID,
        invitee_email: str,
        role: CollaboratorRole,
        message: Optional[str] = None,
        expires_in: Optional[timedelta] = None,
    ) -> CollaborationInvitation:
        role = CollaboratorRole(role)
        email = _normalize_email(invitee_email)
        if role == CollaboratorRole.OWNER:
            raise InvalidTransitionError("The owner role cannot be assigned through an invitation")

        with self._session() as (db, events):
            # One outstanding invitation per (book, email): concurrent invites queue here
            self._lock_book(db, book_id)
            book = self._get_book(db, book_id)
            now = self.now()

            if book.author and _normalize_email(book.author.email) == email:
                raise ConflictError("This user already owns the book")
            already_member = (
                db.query(models.BookCollaborator)
                .join(models.User, models.User.id == models.BookCollaborator.user_id)
                .filter(
                    models.BookCollaborator.book_id == book_id,
                    func.lower(models.User.email) == email,
                )
                .first()
            )
            if already_member:
                raise ConflictError("This user is already a collaborator on this book")

            pending = (
                db.query(models.CollaborationInvitation)
                .filter(
                    models.CollaborationInvitation.book_id == book_id,
                    models.CollaborationInvitation.invitee_email == email,
                    models.CollaborationInvitation.status == InvitationStatus.PENDING,
                )
                .all()
            )
            if any(lifecycle.is_outstanding(inv.status, inv.expires_at, now) for inv in pending):
                raise ConflictError("A pending invitation already exists for this email")

            invitee = self._find_user_by_email(db, email)
            row = models.CollaborationInvitation(
                book_id=book_id,
                inviter_id=inviter_id,
                invitee_email=email,
                invitee_id=invitee.id if invitee else None,
                role=role,
                permissions=permissions_payload(role),
                message=message,
                status=InvitationStatus.PENDING,
                expires_at=now + (expires_in if expires_in is not None else self.invitation_ttl),
                created_at=now,
                updated_at=now,
            )
            db.add(row)
            db.flush()
            events.append(self._event(book_id, CollaborationTable.INVITATIONS, ChangeAction.INSERT, row.id))
            logger.info("Invited %s to book %s as %s", email, book_id, role.value)
            return self._invitation_entity(row, now)

    def get_invitation(self, invitation_id: UUID) -> CollaborationInvitation:
        with self._session() as (db, _):
            row = (
                db.query(models.CollaborationInvitation)
                .filter(models.CollaborationInvitation.id == invitation_id)
                .first()
            )
            if not row:
                raise NotFoundError("Invitation not found")
            return self._invitation_entity(row, self.now())

    def list_invitations(
        self,
        book_id: UUID,
        status: Optional[InvitationStatus] = None,
    ) -> List[CollaborationInvitation]:
        """Invitations of a book, newest first; ``status`` matches the derived status."""
        with self._session() as (db, _):
            self._get_book(db, book_id)
            now = self.now()
            rows = (
                db.query(models.CollaborationInvitation)
                .options(joinedload(models.CollaborationInvitation.inviter))
                .filter(models.CollaborationInvitation.book_id == book_id)
                .order_by(models.CollaborationInvitation.created_at.desc())
                .all()
            )
            invitations = [self._invitation_entity(row, now) for row in rows]
            if status is not None:
                wanted = InvitationStatus(status)
                invitations = [inv for inv in invitations if inv.status == wanted]
            return invitations

    def list_invitations_for_user(self, user_id: UUID, email: Optional[str]) -> List[CollaborationInvitation]:
        """Outstanding invitations addressed to a user by id or by e-mail."""
        with self._session() as (db, _):
            now = self.now()
            criteria = [models.CollaborationInvitation.invitee_id == user_id]
            if email:
                criteria.append(models.CollaborationInvitation.invitee_email == _normalize_email(email))
            rows = (
                db.query(models.CollaborationInvitation)
                .options(joinedload(models.CollaborationInvitation.inviter))
                .filter(
                    or_(*criteria),
                    models.CollaborationInvitation.status == InvitationStatus.PENDING,
                )
                .order_by(models.CollaborationInvitation.created_at.desc())
                .all()
            )
            return [
                self._invitation_entity(row, now)
                for row in rows
                if lifecycle.is_outstanding(row.status, row.expires_at, now)
            ]

    def respond_to_invitation(
        self,
        invitation_id: UUID,
        user_id: UUID,
        decision: InvitationDecision,
    ) -> CollaborationInvitation:
        decision = InvitationDecision(decision)
        with self._session() as (db, events):
            row = (
                db.query(models.CollaborationInvitation)
                .filter(models.CollaborationInvitation.id == invitation_id)
                .first()
            )
            if not row:
                raise NotFoundError("Invitation not found")
            user = db.query(models.User).filter(models.User.id == user_id).first()
            lifecycle.ensure_addressed_to(row.invitee_id, row.invitee_email, user_id, user.email if user else None)

            now = self.now()
            lifecycle.ensure_can_respond(row.status, row.expires_at, now)

            row.status = lifecycle.decision_status(decision)
            row.updated_at = now
            if row.invitee_id is None:
                row.invitee_id = user_id

            if decision == InvitationDecision.ACCEPT:
                self._upsert_from_invitation(db, events, row, user_id, now)

            db.flush()
            events.append(self._event(row.book_id, CollaborationTable.INVITATIONS, ChangeAction.UPDATE, row.id))
            logger.info("User %s %s invitation %s", user_id, row.status.value, row.id)
            return self._invitation_entity(row, now)

    def _upsert_from_invitation(
        self,
        db: Session,
        events: List[ChangeEvent],
        invitation: models.CollaborationInvitation,
        user_id: UUID,
        now: datetime,
    ) -> None:
        book = self._get_book(db, invitation.book_id)
        if book.author_id == user_id:
            # The author stays owner; nothing to write
            return
        role = CollaboratorRole(invitation.role)
        existing = (
            db.query(models.BookCollaborator)
            .filter(
                models.BookCollaborator.book_id == invitation.book_id,
                models.BookCollaborator.user_id == user_id,
            )
            .first()
        )
        if existing:
            if existing.role == CollaboratorRole.OWNER:
                return
            existing.role = role
            existing.permissions = permissions_payload(role)
            existing.updated_at = now
            db.flush()
            events.append(self._event(book.id, CollaborationTable.COLLABORATORS, ChangeAction.UPDATE, existing.id))
            return

        collaborator = models.BookCollaborator(
            book_id=invitation.book_id,
            user_id=user_id,
            role=role,
            permissions=permissions_payload(role),
            invited_by=invitation.inviter_id,
            joined_at=now,
            created_at=now,
            updated_at=now,
        )
        db.add(collaborator)
        db.flush()
        events.append(self._event(book.id, CollaborationTable.COLLABORATORS, ChangeAction.INSERT, collaborator.id))

    def cancel_invitation(self, invitation_id: UUID) -> None:
        with self._session() as (db, events):
            row = (
                db.query(models.CollaborationInvitation)
                .filter(models.CollaborationInvitation.id == invitation_id)
                .first()
            )
            if not row:
                raise NotFoundError("Invitation not found")
            if row.status != InvitationStatus.PENDING:
                raise InvalidTransitionError(f"Invitation has already been {InvitationStatus(row.status).value}")
            book_id = row.book_id
            db.delete(row)
            events.append(self._event(book_id, CollaborationTable.INVITATIONS, ChangeAction.DELETE, invitation_id))
            logger.info("Cancelled invitation %s on book %s", invitation_id, book_id)

    # ------------------------------------------------------------------
    # editing sessions

    def _session_row(self, db: Session, book_id: UUID, user_id: UUID, section_id: str) -> Optional[models.EditingSession]:
        return (
            db.query(models.EditingSession)
            .filter(
                models.EditingSession.book_id == book_id,
                models.EditingSession.user_id == user_id,
                models.EditingSession.section_id == section_id,
            )
            .first()
        )

    def start_editing_session(
        self,
        book_id: UUID,
        user_id: UUID,
        section_id: str,
        section_type: SectionType,
        cursor_position: Any = None,
    ) -> EditingSession:
        with self._session() as (db, events):
            self._get_book(db, book_id)
            now = self.now()
            row = self._session_row(db, book_id, user_id, section_id)
            action = ChangeAction.UPDATE
            if row is None:
                row = models.EditingSession(
                    book_id=book_id,
                    user_id=user_id,
                    section_id=section_id,
                    locked_at=now,
                )
                db.add(row)
                action = ChangeAction.INSERT
            row.section_type = SectionType(section_type)
            row.cursor_position = cursor_position
            row.last_activity = now
            db.flush()
            events.append(self._event(book_id, CollaborationTable.EDITING_SESSIONS, action, row.id))
            return self._editing_session_entity(row)

    def touch_editing_session(
        self,
        book_id: UUID,
        user_id: UUID,
        section_id: str,
        cursor_position: Any = None,
    ) -> EditingSession:
        with self._session() as (db, events):
            row = self._session_row(db, book_id, user_id, section_id)
            if row is None:
                raise NotFoundError("Editing session not found")
            row.last_activity = self.now()
            if cursor_position is not None:
                row.cursor_position = cursor_position
            db.flush()
            events.append(self._event(book_id, CollaborationTable.EDITING_SESSIONS, ChangeAction.UPDATE, row.id))
            return self._editing_session_entity(row)

    def end_editing_session(self, book_id: UUID, user_id: UUID, section_id: str) -> bool:
        with self._session() as (db, events):
            row = self._session_row(db, book_id, user_id, section_id)
            if row is None:
                return False
            row_id = row.id
            db.delete(row)
            events.append(self._event(book_id, CollaborationTable.EDITING_SESSIONS, ChangeAction.DELETE, row_id))
            return True

    def end_all_editing_sessions(self, book_id: UUID, user_id: UUID) -> int:
        with self._session() as (db, events):
            rows = (
                db.query(models.EditingSession)
                .filter(
                    models.EditingSession.book_id == book_id,
                    models.EditingSession.user_id == user_id,
                )
                .all()
            )
            for row in rows:
                events.append(self._event(book_id, CollaborationTable.EDITING_SESSIONS, ChangeAction.DELETE, row.id))
                db.delete(row)
            return len(rows)

    def list_editing_sessions(self, book_id: UUID) -> List[EditingSession]:
        """Sessions with activity inside the staleness window."""
        with self._session() as (db, _):
            cutoff = self.now() - self.editing_session_window
            rows = (
                db.query(models.EditingSession)
                .options(joinedload(models.EditingSession.user))
                .filter(
                    models.EditingSession.book_id == book_id,
                    models.EditingSession.last_activity > cutoff,
                )
                .order_by(models.EditingSession.locked_at.asc())
                .all()
            )
            return [self._editing_session_entity(row) for row in rows]

    # ------------------------------------------------------------------
    # presence

    def update_presence(
        self,
        book_id: UUID,
        user_id: UUID,
        current_section: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> UserPresence:
        with self._session() as (db, events):
            self._get_book(db, book_id)
            row = (
                db.query(models.UserPresence)
                .filter(
                    models.UserPresence.book_id == book_id,
                    models.UserPresence.user_id == user_id,
                )
                .first()
            )
            action = ChangeAction.UPDATE
            if row is None:
                row = models.UserPresence(book_id=book_id, user_id=user_id, presence_metadata={})
                db.add(row)
                action = ChangeAction.INSERT
            row.current_section = current_section
            if metadata is not None:
                row.presence_metadata = metadata
            row.is_online = True
            row.last_seen = self.now()
            db.flush()
            events.append(self._event(book_id, CollaborationTable.PRESENCE, action, row.id))
            return self._presence_entity(row)

    def set_offline(self, book_id: UUID, user_id: UUID) -> bool:
        with self._session() as (db, events):
            row = (
                db.query(models.UserPresence)
                .filter(
                    models.UserPresence.book_id == book_id,
                    models.UserPresence.user_id == user_id,
                )
                .first()
            )
            if row is None:
                return False
            row.is_online = False
            db.flush()
            events.append(self._event(book_id, CollaborationTable.PRESENCE, ChangeAction.UPDATE, row.id))
            return True

    def list_presence(self, book_id: UUID) -> List[UserPresence]:
        """Users online and seen inside the presence window."""
        with self._session() as (db, _):
            cutoff = self.now() - self.presence_window
            rows = (
                db.query(models.UserPresence)
                .options(joinedload(models.UserPresence.user))
                .filter(
                    models.UserPresence.book_id == book_id,
                    models.UserPresence.is_online.is_(True),
                    models.UserPresence.last_seen > cutoff,
                )
                .order_by(models.UserPresence.last_seen.desc())
                .all()
            )
            return [self._presence_entity(row) for row in rows]

    # ------------------------------------------------------------------
    # comments

    def add_comment(
        self,
        book_id: UUID,
        user_id: UUID,
        content: str,
        *,
        section_id: Optional[str] = None,
        position_start: Optional[int] = None,
        position_end: Optional[int] = None,
        comment_type: CommentType = CommentType.COMMENT,
        parent_id: Optional[UUID] = None,
    ) -> BookComment:
        with self._session() as (db, events):
            self._get_book(db, book_id)
            if parent_id is not None:
                parent = (
                    db.query(models.BookComment)
                    .filter(models.BookComment.id == parent_id, models.BookComment.book_id == book_id)
                    .first()
                )
                if not parent:
                    raise NotFoundError("Parent comment not found")
                # Threads are one level deep; replies to replies join the root
                parent_id = parent.parent_id or parent.id
                if section_id is None:
                    section_id = parent.section_id

            now = self.now()
            row = models.BookComment(
                book_id=book_id,
                user_id=user_id,
                section_id=section_id,
                content=content,
                position_start=position_start,
                position_end=position_end,
                comment_type=CommentType(comment_type),
                status=CommentStatus.OPEN,
                parent_id=parent_id,
                created_at=now,
                updated_at=now,
            )
            db.add(row)
            db.flush()
            events.append(self._event(book_id, CollaborationTable.COMMENTS, ChangeAction.INSERT, row.id))
            return self._comment_entity(row)

    def get_comment(self, comment_id: UUID) -> BookComment:
        with self._session() as (db, _):
            row = db.query(models.BookComment).filter(models.BookComment.id == comment_id).first()
            if not row:
                raise NotFoundError("Comment not found")
            return self._comment_entity(row)

    def list_comments(self, book_id: UUID, section_id: Optional[str] = None) -> List[BookComment]:
        """Top-level comments, oldest first, each with its replies attached."""
        with self._session() as (db, _):
            self._get_book(db, book_id)
            query = (
                db.query(models.BookComment)
                .options(joinedload(models.BookComment.user))
                .filter(models.BookComment.book_id == book_id, models.BookComment.parent_id.is_(None))
            )
            if section_id is not None:
                query = query.filter(models.BookComment.section_id == section_id)
            roots = query.order_by(models.BookComment.created_at.asc()).all()
            if not roots:
                return []

            reply_rows = (
                db.query(models.BookComment)
                .options(joinedload(models.BookComment.user))
                .filter(models.BookComment.parent_id.in_([root.id for root in roots]))
                .order_by(models.BookComment.created_at.asc())
                .all()
            )
            replies: Dict[UUID, List[BookComment]] = {}
            for reply in reply_rows:
                replies.setdefault(reply.parent_id, []).append(self._comment_entity(reply))
            return [self._comment_entity(root, replies.get(root.id, [])) for root in roots]

    def update_comment(
        self,
        comment_id: UUID,
        *,
        content: Optional[str] = None,
        status: Optional[CommentStatus] = None,
    ) -> BookComment:
        with self._session() as (db, events):
            row = db.query(models.BookComment).filter(models.BookComment.id == comment_id).first()
            if not row:
                raise NotFoundError("Comment not found")
            if content is not None:
                row.content = content
            if status is not None:
                row.status = CommentStatus(status)
            row.updated_at = self.now()
            db.flush()
            events.append(self._event(row.book_id, CollaborationTable.COMMENTS, ChangeAction.UPDATE, row.id))
            return self._comment_entity(row)

    def delete_comment(self, comment_id: UUID) -> None:
        with self._session() as (db, events):
            row = db.query(models.BookComment).filter(models.BookComment.id == comment_id).first()
            if not row:
                raise NotFoundError("Comment not found")
            book_id = row.book_id
            db.query(models.BookComment).filter(models.BookComment.parent_id == comment_id).delete(
                synchronize_session=False
            )
            db.delete(row)
            events.append(self._event(book_id, CollaborationTable.COMMENTS, ChangeAction.DELETE, comment_id))

    # ------------------------------------------------------------------
    # utilities

    def find_user_by_email(self, email: str) -> Optional[UserSummary]:
        with self._session() as (db, _):
            user = self._find_user_by_email(db, _normalize_email(email))
            if user is None or not user.is_active:
                return None
            return self._parse(UserSummary, _user_summary(user))

    def search_users(self, query: str, exclude_user_ids: Iterable[UUID] = ()) -> List[UserSummary]:
        """Active users whose e-mail contains ``query``."""
        needle = (query or "").strip()
        if not needle:
            return []
        excluded = list(exclude_user_ids)
        with self._session() as (db, _):
            q = db.query(models.User).filter(
                models.User.email.ilike(f"%{needle}%"),
                models.User.is_active.is_(True),
            )
            if excluded:
                q = q.filter(models.User.id.notin_(excluded))
            rows = q.order_by(models.User.email.asc()).limit(self.user_search_limit).all()
            return [self._parse(UserSummary, _user_summary(row)) for row in rows]

    def cleanup_expired_data(self) -> Dict[str, int]:
        """Drop stale editing sessions and stale or offline presence rows.

        Invitations are left alone since their expiry is derived on read.
        Failures are logged, never raised.
        """
        try:
            with self._session() as (db, events):
                now = self.now()
                stale_sessions = (
                    db.query(models.EditingSession)
                    .filter(models.EditingSession.last_activity <= now - self.editing_session_window)
                    .all()
                )
                stale_presence = (
                    db.query(models.UserPresence)
                    .filter(
                        or_(
                            models.UserPresence.is_online.is_(False),
                            models.UserPresence.last_seen <= now - self.presence_window,
                        )
                    )
                    .all()
                )
                touched = set()
                for row in stale_sessions:
                    touched.add((row.book_id, CollaborationTable.EDITING_SESSIONS))
                    db.delete(row)
                for row in stale_presence:
                    touched.add((row.book_id, CollaborationTable.PRESENCE))
                    db.delete(row)
                for book_id, table in sorted(touched, key=lambda item: (str(item[0]), item[1].value)):
                    events.append(self._event(book_id, table, ChangeAction.DELETE))
                result = {"editing_sessions": len(stale_sessions), "presence": len(stale_presence)}
        except CollaborationError as exc:
            logger.warning("Collaboration cleanup failed: %s", exc)
            return {"editing_sessions": 0, "presence": 0}
        if any(result.values()):
            logger.info("Collaboration cleanup removed %s", result)
        return result
