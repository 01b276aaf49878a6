"""HTTP and WebSocket tests for the collaboration API."""

import uuid
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from app import main as main_module
from app import models
from app.core.rate_limiter import limiter
from app.core.security import create_access_token
from app.database import get_db
from app.main import app
from app.models.book_collaborator import CollaboratorRole
from app.services.collaboration.store import virtual_owner_id
from app.services.websocket_manager import BookChangeBroadcaster

API = "/api/v1"


def _auth(user) -> dict:
    return {"Authorization": f"Bearer {create_access_token({'sub': user.email})}"}


@pytest.fixture
def client(session_factory, store, notifier, monkeypatch):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    monkeypatch.setattr(app.state, "change_notifier", notifier)
    monkeypatch.setattr(app.state, "collaboration_store", store)
    monkeypatch.setattr(app.state, "change_broadcaster", BookChangeBroadcaster(notifier, store.get_user_role))
    limiter.reset()
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_healthz_reports_redis_failure(self, client, monkeypatch):
        redis_client = MagicMock()
        redis_client.ping.side_effect = ConnectionError("redis unreachable")
        monkeypatch.setattr(main_module.redis_lib.Redis, "from_url", MagicMock(return_value=redis_client))

        body = client.get("/healthz").json()

        assert body["db"]["status"] == "ok"
        assert body["redis"]["status"] == "error"
        assert body["status"] == "degraded"


class TestAuth:
    def test_missing_token(self, client, book):
        response = client.get(f"{API}/books/{book.id}/collaborators")
        assert response.status_code in (401, 403)

    def test_bad_token(self, client, book):
        response = client.get(
            f"{API}/books/{book.id}/collaborators",
            headers={"Authorization": "Bearer not-a-jwt"},
        )
        assert response.status_code == 401

    def test_outsider_denied(self, client, book, outsider):
        response = client.get(f"{API}/books/{book.id}/collaborators", headers=_auth(outsider))
        assert response.status_code == 403

    def test_unknown_book(self, client, owner):
        response = client.get(f"{API}/books/{uuid.uuid4()}/collaborators", headers=_auth(owner))
        assert response.status_code == 404
        assert response.json()["code"] == "not_found"

    def test_me(self, client, owner):
        response = client.get(f"{API}/users/me", headers=_auth(owner))
        assert response.status_code == 200
        assert response.json()["email"] == "owner@example.com"


class TestCollaboratorEndpoints:
    def test_list_with_view_fields(self, client, book, owner, team):
        response = client.get(f"{API}/books/{book.id}/collaborators", headers=_auth(owner))

        assert response.status_code == 200
        body = response.json()
        first = body["collaborators"][0]
        assert first["is_virtual"] is True
        assert first["role"] == "owner"
        assert first["display_name"] == "Olivia Owner"
        assert first["initials"] == "OO"
        assert first["avatar_color"].startswith("#")
        assert first["permissions"]["canInvite"] is True
        assert body["current_user_role"] == "owner"
        assert body["assignable_roles"] == ["editor", "reviewer", "viewer"]
        assert [c["role"] for c in body["collaborators"]] == ["owner", "editor", "reviewer", "viewer"]

    def test_viewer_sees_list_without_powers(self, client, book, team, viewer_user):
        body = client.get(f"{API}/books/{book.id}/collaborators", headers=_auth(viewer_user)).json()

        assert body["current_user_role"] == "viewer"
        assert body["assignable_roles"] == []
        assert body["current_user_permissions"]["canEdit"] is False

    def test_change_role(self, client, book, owner, team):
        response = client.patch(
            f"{API}/books/{book.id}/collaborators/{team['viewer'].id}",
            json={"role": "reviewer"},
            headers=_auth(owner),
        )

        assert response.status_code == 200
        assert response.json()["role"] == "reviewer"
        assert response.json()["permissions"]["canReview"] is True

    def test_change_to_owner_rejected(self, client, book, owner, team):
        response = client.patch(
            f"{API}/books/{book.id}/collaborators/{team['editor'].id}",
            json={"role": "owner"},
            headers=_auth(owner),
        )

        assert response.status_code == 400
        assert response.json()["code"] == "invalid_transition"

    def test_editor_cannot_promote_to_editor(self, client, book, team, editor_user):
        response = client.patch(
            f"{API}/books/{book.id}/collaborators/{team['viewer'].id}",
            json={"role": "editor"},
            headers=_auth(editor_user),
        )

        assert response.status_code == 403
        assert response.json()["code"] == "forbidden"

    def test_remove(self, client, book, owner, team, store):
        response = client.delete(
            f"{API}/books/{book.id}/collaborators/{team['reviewer'].id}",
            headers=_auth(owner),
        )

        assert response.status_code == 204
        assert store.get_user_role(book.id, team["reviewer"].user_id) is None

    def test_owner_cannot_be_removed(self, client, book, owner, team, editor_user):
        response = client.delete(
            f"{API}/books/{book.id}/collaborators/{virtual_owner_id(book.id, owner.id)}",
            headers=_auth(editor_user),
        )

        assert response.status_code == 403


class TestInvitationEndpoints:
    def test_invite_accept_flow(self, client, book, owner, outsider):
        created = client.post(
            f"{API}/books/{book.id}/invitations",
            json={"email": "B@example.com", "role": "editor", "message": "Welcome aboard"},
            headers=_auth(owner),
        )
        assert created.status_code == 201
        invitation = created.json()
        assert invitation["invitee_email"] == "b@example.com"
        assert invitation["status"] == "pending"

        mine = client.get(f"{API}/invitations/me", headers=_auth(outsider)).json()
        assert [i["id"] for i in mine] == [invitation["id"]]

        accepted = client.post(f"{API}/invitations/{invitation['id']}/accept", headers=_auth(outsider))
        assert accepted.status_code == 200
        assert accepted.json()["status"] == "accepted"

        listing = client.get(f"{API}/books/{book.id}/collaborators", headers=_auth(outsider)).json()
        assert listing["current_user_role"] == "editor"
        assert client.get(f"{API}/invitations/me", headers=_auth(outsider)).json() == []

    def test_duplicate_pending_conflicts(self, client, book, owner):
        payload = {"email": "b@example.com", "role": "editor"}
        assert client.post(f"{API}/books/{book.id}/invitations", json=payload, headers=_auth(owner)).status_code == 201

        response = client.post(f"{API}/books/{book.id}/invitations", json=payload, headers=_auth(owner))

        assert response.status_code == 409
        assert response.json()["code"] == "conflict"

    def test_editor_invites_reviewer(self, client, book, team, editor_user):
        response = client.post(
            f"{API}/books/{book.id}/invitations",
            json={"email": "new@example.com", "role": "reviewer"},
            headers=_auth(editor_user),
        )
        assert response.status_code == 201

    def test_owner_role_not_invitable(self, client, book, team, editor_user, store):
        response = client.post(
            f"{API}/books/{book.id}/invitations",
            json={"email": "other@example.com", "role": "owner"},
            headers=_auth(editor_user),
        )

        assert response.status_code == 400
        assert store.list_invitations(book.id) == []

    def test_viewer_cannot_invite(self, client, book, team, viewer_user):
        response = client.post(
            f"{API}/books/{book.id}/invitations",
            json={"email": "new@example.com", "role": "viewer"},
            headers=_auth(viewer_user),
        )
        assert response.status_code == 403

    def test_invalid_email(self, client, book, owner):
        response = client.post(
            f"{API}/books/{book.id}/invitations",
            json={"email": "not-an-email", "role": "viewer"},
            headers=_auth(owner),
        )
        assert response.status_code == 422

    def test_expired_is_gone(self, client, book, owner, outsider, store, clock):
        invitation = store.create_invitation(book.id, owner.id, outsider.email, CollaboratorRole.EDITOR)
        clock.advance(days=8)

        response = client.post(f"{API}/invitations/{invitation.id}/accept", headers=_auth(outsider))

        assert response.status_code == 410
        assert response.json()["code"] == "expired"
        listing = client.get(
            f"{API}/books/{book.id}/invitations",
            params={"status": "expired"},
            headers=_auth(owner),
        ).json()
        assert [i["id"] for i in listing] == [str(invitation.id)]

    def test_wrong_user_cannot_accept(self, client, book, owner, outsider, viewer_user, store):
        invitation = store.create_invitation(book.id, owner.id, outsider.email, CollaboratorRole.EDITOR)

        response = client.post(f"{API}/invitations/{invitation.id}/accept", headers=_auth(viewer_user))

        assert response.status_code == 403

    def test_reject_then_accept_is_invalid(self, client, book, owner, outsider, store):
        invitation = store.create_invitation(book.id, owner.id, outsider.email, CollaboratorRole.EDITOR)
        assert client.post(f"{API}/invitations/{invitation.id}/reject", headers=_auth(outsider)).status_code == 200

        response = client.post(f"{API}/invitations/{invitation.id}/accept", headers=_auth(outsider))

        assert response.status_code == 400
        assert response.json()["code"] == "invalid_transition"

    def test_cancel(self, client, book, owner, store):
        invitation = store.create_invitation(book.id, owner.id, "x@example.com", CollaboratorRole.VIEWER, expires_in=timedelta(days=1))

        response = client.delete(f"{API}/books/{book.id}/invitations/{invitation.id}", headers=_auth(owner))

        assert response.status_code == 204
        assert store.list_invitations(book.id) == []

    def test_cancel_by_reviewer_forbidden(self, client, book, owner, team, reviewer_user, store):
        invitation = store.create_invitation(book.id, owner.id, "x@example.com", CollaboratorRole.VIEWER)

        response = client.delete(f"{API}/books/{book.id}/invitations/{invitation.id}", headers=_auth(reviewer_user))

        assert response.status_code == 403

    def test_cancel_through_other_book_not_found(self, client, book, owner, store, db, clock):
        other = models.Book(id=uuid.uuid4(), title="Other", author_id=owner.id, created_at=clock())
        db.add(other)
        db.commit()
        invitation = store.create_invitation(book.id, owner.id, "x@example.com", CollaboratorRole.VIEWER)

        response = client.delete(f"{API}/books/{other.id}/invitations/{invitation.id}", headers=_auth(owner))

        assert response.status_code == 404


class TestEditingAndPresence:
    def test_editor_session_lifecycle(self, client, book, team, editor_user):
        started = client.post(
            f"{API}/books/{book.id}/editing-sessions",
            json={"section_id": "page-1", "section_type": "page", "cursor_position": {"line": 1}},
            headers=_auth(editor_user),
        )
        assert started.status_code == 200

        touched = client.patch(
            f"{API}/books/{book.id}/editing-sessions/page-1",
            json={"cursor_position": {"line": 9}},
            headers=_auth(editor_user),
        )
        assert touched.json()["cursor_position"] == {"line": 9}

        sessions = client.get(f"{API}/books/{book.id}/editing-sessions", headers=_auth(editor_user)).json()
        assert [s["section_id"] for s in sessions] == ["page-1"]

        ended = client.delete(f"{API}/books/{book.id}/editing-sessions/page-1", headers=_auth(editor_user))
        assert ended.status_code == 204

    def test_viewer_cannot_edit(self, client, book, team, viewer_user):
        response = client.post(
            f"{API}/books/{book.id}/editing-sessions",
            json={"section_id": "page-1", "section_type": "page"},
            headers=_auth(viewer_user),
        )
        assert response.status_code == 403

    def test_touch_unknown_session(self, client, book, team, editor_user):
        response = client.patch(
            f"{API}/books/{book.id}/editing-sessions/page-404",
            json={},
            headers=_auth(editor_user),
        )
        assert response.status_code == 404

    def test_presence_heartbeat_and_leave(self, client, book, team, viewer_user):
        beat = client.put(
            f"{API}/books/{book.id}/presence",
            json={"current_section": "page-2", "metadata": {"tab": "preview"}},
            headers=_auth(viewer_user),
        )
        assert beat.status_code == 200
        assert beat.json()["is_online"] is True

        present = client.get(f"{API}/books/{book.id}/presence", headers=_auth(viewer_user)).json()
        assert [p["current_section"] for p in present] == ["page-2"]

        assert client.delete(f"{API}/books/{book.id}/presence", headers=_auth(viewer_user)).status_code == 204
        assert client.get(f"{API}/books/{book.id}/presence", headers=_auth(viewer_user)).json() == []

    def test_stale_presence_hidden(self, client, book, team, viewer_user, clock):
        client.put(f"{API}/books/{book.id}/presence", json={}, headers=_auth(viewer_user))
        clock.advance(minutes=6)

        assert client.get(f"{API}/books/{book.id}/presence", headers=_auth(viewer_user)).json() == []


class TestCommentEndpoints:
    def test_reviewer_comments_and_owner_resolves(self, client, book, team, reviewer_user, owner):
        created = client.post(
            f"{API}/books/{book.id}/comments",
            json={"content": "Citation missing", "section_id": "page-7", "comment_type": "question"},
            headers=_auth(reviewer_user),
        )
        assert created.status_code == 201
        comment_id = created.json()["id"]

        resolved = client.patch(
            f"{API}/comments/{comment_id}",
            json={"status": "resolved"},
            headers=_auth(owner),
        )
        assert resolved.status_code == 200
        assert resolved.json()["status"] == "resolved"

        threads = client.get(
            f"{API}/books/{book.id}/comments",
            params={"section_id": "page-7"},
            headers=_auth(reviewer_user),
        ).json()
        assert [t["id"] for t in threads] == [comment_id]

    def test_viewer_cannot_comment(self, client, book, team, viewer_user):
        response = client.post(
            f"{API}/books/{book.id}/comments",
            json={"content": "Hi"},
            headers=_auth(viewer_user),
        )
        assert response.status_code == 403

    def test_other_member_cannot_edit_comment(self, client, book, team, reviewer_user, editor_user, store):
        comment = store.add_comment(book.id, reviewer_user.id, "Mine")

        response = client.patch(
            f"{API}/comments/{comment.id}",
            json={"content": "Hijacked"},
            headers=_auth(editor_user),
        )

        assert response.status_code == 403

    def test_author_deletes_comment(self, client, book, team, reviewer_user, store):
        comment = store.add_comment(book.id, reviewer_user.id, "Oops")

        response = client.delete(f"{API}/comments/{comment.id}", headers=_auth(reviewer_user))

        assert response.status_code == 204
        assert store.list_comments(book.id) == []


class TestUserSearch:
    def test_excludes_caller_and_members(self, client, book, owner, team, outsider, make_user):
        make_user("bea.other@example.com")

        response = client.get(
            f"{API}/users/search",
            params={"q": "example.com", "book_id": str(book.id)},
            headers=_auth(owner),
        )

        emails = [u["email"] for u in response.json()]
        assert emails == ["b@example.com", "bea.other@example.com"]

    def test_requires_book_access(self, client, book, outsider):
        response = client.get(
            f"{API}/users/search",
            params={"q": "example", "book_id": str(book.id)},
            headers=_auth(outsider),
        )
        assert response.status_code == 403


class TestBookWebSocket:
    def test_rejects_bad_token(self, client, book):
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect(f"{API}/ws/books/{book.id}?token=bogus") as ws:
                ws.receive_json()

    def test_receives_changes(self, client, book, owner):
        token = create_access_token({"sub": owner.email})

        with client.websocket_connect(f"{API}/ws/books/{book.id}?token={token}") as ws:
            hello = ws.receive_json()
            assert hello["type"] == "connection_established"
            assert hello["book_id"] == str(book.id)

            client.post(
                f"{API}/books/{book.id}/invitations",
                json={"email": "new@example.com", "role": "viewer"},
                headers=_auth(owner),
            )
            change = ws.receive_json()

        assert change["type"] == "change"
        assert change["table"] == "collaboration_invitations"
        assert change["action"] == "INSERT"

    def test_removed_collaborator_is_disconnected(self, client, book, owner, team, viewer_user):
        token = create_access_token({"sub": viewer_user.email})

        with client.websocket_connect(f"{API}/ws/books/{book.id}?token={token}") as ws:
            assert ws.receive_json()["type"] == "connection_established"

            response = client.delete(
                f"{API}/books/{book.id}/collaborators/{team['viewer'].id}",
                headers=_auth(owner),
            )
            assert response.status_code == 204

            assert ws.receive_json() == {"type": "access_revoked", "book_id": str(book.id)}
            with pytest.raises(WebSocketDisconnect) as closed:
                ws.receive_json()
            assert closed.value.code == 1008

    def test_disconnect_marks_presence_offline(self, client, book, team, viewer_user, db):
        client.put(f"{API}/books/{book.id}/presence", json={"current_section": "ch-1"}, headers=_auth(viewer_user))
        token = create_access_token({"sub": viewer_user.email})

        with client.websocket_connect(f"{API}/ws/books/{book.id}?token={token}") as ws:
            assert ws.receive_json()["type"] == "connection_established"

        db.expire_all()
        row = (
            db.query(models.UserPresence)
            .filter(models.UserPresence.book_id == book.id, models.UserPresence.user_id == viewer_user.id)
            .one()
        )
        assert row.is_online is False
        assert client.get(f"{API}/books/{book.id}/presence", headers=_auth(viewer_user)).json() == []
