"""Tests for collaborator persistence in CollaborationStore."""

import uuid
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from app import models
from app.models.book_collaborator import CollaboratorRole
from app.services.collaboration.errors import (
    ConflictError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    UnknownError,
)
from app.services.collaboration.notifier import ChangeAction, CollaborationTable
from app.services.collaboration.permissions import permissions_for
from app.services.collaboration.store import CollaborationStore, virtual_owner_id


class TestListCollaborators:
    def test_virtual_owner_synthesized(self, store, book, owner):
        collaborators = store.list_collaborators(book.id)

        assert len(collaborators) == 1
        virtual = collaborators[0]
        assert virtual.is_virtual is True
        assert virtual.role == CollaboratorRole.OWNER
        assert virtual.user_id == owner.id
        assert virtual.id == virtual_owner_id(book.id, owner.id)
        assert virtual.permissions == permissions_for(CollaboratorRole.OWNER)
        assert virtual.user.email == "owner@example.com"

    def test_virtual_owner_id_is_deterministic(self, store, book):
        first = store.list_collaborators(book.id)[0].id
        second = store.list_collaborators(book.id)[0].id
        assert first == second

    def test_explicit_owner_row_suppresses_virtual(self, store, book, owner, add_member):
        add_member(book, owner, CollaboratorRole.OWNER)

        collaborators = store.list_collaborators(book.id)

        assert len(collaborators) == 1
        assert collaborators[0].is_virtual is False

    def test_ordered_by_creation(self, store, book, clock, editor_user, viewer_user):
        clock.advance(minutes=1)
        store.add_collaborator(book.id, viewer_user.id, CollaboratorRole.VIEWER, book.author_id)
        clock.advance(minutes=1)
        store.add_collaborator(book.id, editor_user.id, CollaboratorRole.EDITOR, book.author_id)

        roles = [c.role for c in store.list_collaborators(book.id)]

        assert roles == [CollaboratorRole.OWNER, CollaboratorRole.VIEWER, CollaboratorRole.EDITOR]

    def test_rows_with_close_timestamps_keep_insertion_order(self, store, book, team):
        roles = [c.role for c in store.list_collaborators(book.id)]

        assert roles == [
            CollaboratorRole.OWNER,
            CollaboratorRole.EDITOR,
            CollaboratorRole.REVIEWER,
            CollaboratorRole.VIEWER,
        ]

    def test_unknown_book(self, store):
        with pytest.raises(NotFoundError):
            store.list_collaborators(uuid.uuid4())

    def test_drifted_permissions_are_rederived(self, store, book, viewer_user, add_member, db, caplog):
        row = add_member(book, viewer_user, CollaboratorRole.VIEWER)
        row.permissions = {"canEdit": True, "canReview": True, "canInvite": True, "canDelete": True, "canPublish": True}
        db.commit()

        collaborator = store.get_collaborator(row.id)

        assert collaborator.permissions == permissions_for(CollaboratorRole.VIEWER)
        assert "drifted" in caplog.text


class TestGetCollaborator:
    def test_for_user_includes_virtual_owner(self, store, book, owner):
        collaborator = store.get_collaborator_for_user(book.id, owner.id)
        assert collaborator.is_virtual is True

    def test_for_user_without_access(self, store, book, outsider):
        assert store.get_collaborator_for_user(book.id, outsider.id) is None

    def test_virtual_id_resolves_with_book(self, store, book, owner):
        collaborator = store.get_collaborator(virtual_owner_id(book.id, owner.id), book_id=book.id)
        assert collaborator.role == CollaboratorRole.OWNER

    def test_unknown_id(self, store, book):
        with pytest.raises(NotFoundError):
            store.get_collaborator(uuid.uuid4(), book_id=book.id)

    def test_user_role(self, store, book, owner, team, editor_user, outsider):
        assert store.get_user_role(book.id, owner.id) == CollaboratorRole.OWNER
        assert store.get_user_role(book.id, editor_user.id) == CollaboratorRole.EDITOR
        assert store.get_user_role(book.id, outsider.id) is None


class TestAddCollaborator:
    def test_adds_with_role_permissions(self, store, book, editor_user):
        collaborator = store.add_collaborator(book.id, editor_user.id, CollaboratorRole.EDITOR, book.author_id)

        assert collaborator.role == CollaboratorRole.EDITOR
        assert collaborator.permissions == permissions_for(CollaboratorRole.EDITOR)
        assert collaborator.invited_by == book.author_id
        assert collaborator.user.display_name == "Eddie Editor"

    def test_duplicate_conflicts(self, store, book, editor_user):
        store.add_collaborator(book.id, editor_user.id, CollaboratorRole.EDITOR)
        with pytest.raises(ConflictError):
            store.add_collaborator(book.id, editor_user.id, CollaboratorRole.VIEWER)

    def test_author_conflicts(self, store, book, owner):
        with pytest.raises(ConflictError):
            store.add_collaborator(book.id, owner.id, CollaboratorRole.EDITOR)

    def test_owner_role_rejected(self, store, book, editor_user):
        with pytest.raises(InvalidTransitionError):
            store.add_collaborator(book.id, editor_user.id, CollaboratorRole.OWNER)

    def test_unknown_user(self, store, book):
        with pytest.raises(NotFoundError):
            store.add_collaborator(book.id, uuid.uuid4(), CollaboratorRole.VIEWER)

    def test_at_most_one_row_per_user(self, store, book, editor_user, db):
        store.add_collaborator(book.id, editor_user.id, CollaboratorRole.EDITOR)
        with pytest.raises(ConflictError):
            store.add_collaborator(book.id, editor_user.id, CollaboratorRole.EDITOR)

        count = (
            db.query(models.BookCollaborator)
            .filter(models.BookCollaborator.book_id == book.id, models.BookCollaborator.user_id == editor_user.id)
            .count()
        )
        assert count == 1

    def test_publishes_insert(self, store, book, editor_user, notifier):
        events = []
        notifier.subscribe(book.id, [CollaborationTable.COLLABORATORS], events.append)

        collaborator = store.add_collaborator(book.id, editor_user.id, CollaboratorRole.EDITOR)

        assert len(events) == 1
        assert events[0].action == ChangeAction.INSERT
        assert events[0].row_id == collaborator.id


class TestUpdateRole:
    def test_role_change_rewrites_permissions(self, store, team, db):
        row = team["viewer"]

        updated = store.update_collaborator_role(row.id, CollaboratorRole.EDITOR)

        assert updated.role == CollaboratorRole.EDITOR
        assert updated.permissions == permissions_for(CollaboratorRole.EDITOR)
        db.expire_all()
        stored = db.query(models.BookCollaborator).filter(models.BookCollaborator.id == row.id).one()
        assert stored.permissions["canEdit"] is True

    def test_missing(self, store):
        with pytest.raises(NotFoundError):
            store.update_collaborator_role(uuid.uuid4(), CollaboratorRole.VIEWER)

    def test_to_owner_rejected(self, store, team):
        with pytest.raises(InvalidTransitionError):
            store.update_collaborator_role(team["editor"].id, CollaboratorRole.OWNER)

    def test_owner_row_rejected(self, store, book, owner, add_member):
        row = add_member(book, owner, CollaboratorRole.OWNER)
        with pytest.raises(InvalidTransitionError):
            store.update_collaborator_role(row.id, CollaboratorRole.EDITOR)

    @pytest.mark.parametrize("scoped", [True, False])
    def test_virtual_owner_rejected(self, store, book, owner, scoped):
        virtual = store.list_collaborators(book.id)[0]
        kwargs = {"book_id": book.id} if scoped else {}

        with pytest.raises(InvalidTransitionError):
            store.update_collaborator_role(virtual.id, CollaboratorRole.EDITOR, **kwargs)

    def test_row_from_another_book_not_found(self, store, team, make_user, db, clock):
        other = models.Book(id=uuid.uuid4(), title="Other", author_id=make_user("o2@example.com").id, created_at=clock())
        db.add(other)
        db.commit()

        with pytest.raises(NotFoundError):
            store.update_collaborator_role(team["viewer"].id, CollaboratorRole.EDITOR, book_id=other.id)


class TestRemoveCollaborator:
    def test_removes(self, store, book, team):
        store.remove_collaborator(team["reviewer"].id)
        user_ids = {c.user_id for c in store.list_collaborators(book.id)}
        assert team["reviewer"].user_id not in user_ids

    def test_owner_forbidden(self, store, book, owner, add_member):
        row = add_member(book, owner, CollaboratorRole.OWNER)
        with pytest.raises(ForbiddenError):
            store.remove_collaborator(row.id)

    @pytest.mark.parametrize("scoped", [True, False])
    def test_virtual_owner_forbidden(self, store, book, owner, notifier, scoped):
        virtual = store.list_collaborators(book.id)[0]
        kwargs = {"book_id": book.id} if scoped else {}
        events = []
        notifier.subscribe(book.id, [CollaborationTable.COLLABORATORS], events.append)

        with pytest.raises(ForbiddenError):
            store.remove_collaborator(virtual.id, **kwargs)

        assert events == []
        assert store.list_collaborators(book.id)[0].id == virtual.id

    def test_missing(self, store):
        with pytest.raises(NotFoundError):
            store.remove_collaborator(uuid.uuid4())


class TestStoreFailures:
    def test_database_errors_become_unknown(self, notifier):
        session = MagicMock()
        session.query.side_effect = OperationalError("SELECT 1", {}, Exception("connection refused"))
        store = CollaborationStore(lambda: session, notifier)

        with pytest.raises(UnknownError):
            store.list_collaborators(uuid.uuid4())

        session.rollback.assert_called_once()
        session.close.assert_called_once()

    def test_no_events_when_transaction_fails(self, store, book, editor_user, notifier):
        events = []
        notifier.subscribe(book.id, list(CollaborationTable), events.append)
        store.add_collaborator(book.id, editor_user.id, CollaboratorRole.EDITOR)
        events.clear()

        with pytest.raises(ConflictError):
            store.add_collaborator(book.id, editor_user.id, CollaboratorRole.VIEWER)

        assert events == []
