"""
Per-book, per-viewer collaboration session.

The manager keeps the last good collaborator / invitation lists for one book,
reloads them whenever the change notifier reports a write (including our own
writes) and runs the collaborator commands after checking the viewer's rights.

Store calls are blocking, so they run in the threadpool; results are applied
back on the event loop that started the manager.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Set
from uuid import UUID

from starlette.concurrency import run_in_threadpool

from app.models.book_collaborator import CollaboratorRole
from app.models.collaboration_invitation import InvitationStatus
from app.models.editing_session import SectionType
from app.schemas.collaboration import (
    BookCollaborator,
    CollaborationInvitation,
    CollaboratorPermissions,
    EditingSession,
    InvitationDecision,
    UserPresence,
    UserSummary,
)
from app.services.collaboration import access
from app.services.collaboration.errors import CollaborationError
from app.services.collaboration.notifier import ChangeEvent, ChangeNotifier, CollaborationTable, Subscription
from app.services.collaboration.permissions import permissions_for_optional
from app.services.collaboration.store import CollaborationStore

logger = logging.getLogger(__name__)

MEMBERSHIP_TABLES: FrozenSet[CollaborationTable] = frozenset(
    {CollaborationTable.COLLABORATORS, CollaborationTable.INVITATIONS}
)
PRESENCE_TABLES: FrozenSet[CollaborationTable] = frozenset(
    {CollaborationTable.PRESENCE, CollaborationTable.EDITING_SESSIONS}
)


class SessionStatus:
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    ERROR = "error"


class CollaborationSessionManager:
    def __init__(
        self,
        store: CollaborationStore,
        notifier: ChangeNotifier,
        user: UserSummary,
        book_id: Optional[UUID],
        *,
        track_presence: bool = False,
        error_clear_seconds: Optional[float] = 5.0,
        editors_can_invite: bool = True,
    ):
        self._store = store
        self._notifier = notifier
        self.user = user
        self.book_id = book_id
        self.track_presence = track_presence
        self.error_clear_seconds = error_clear_seconds
        self.editors_can_invite = editors_can_invite

        self.collaborators: List[BookCollaborator] = []
        self.invitations: List[CollaborationInvitation] = []
        self.presence: List[UserPresence] = []
        self.editing_sessions: List[EditingSession] = []
        self.error: Optional[str] = None

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._subscription: Optional[Subscription] = None
        self._generation = 0
        self._loads: Dict[CollaborationTable, asyncio.Task] = {}
        self._stale: Set[CollaborationTable] = set()
        self._loaded: Set[CollaborationTable] = set()
        self._pending_actions = 0
        self._error_timer: Optional[asyncio.TimerHandle] = None
        self._closed = False

    # ------------------------------------------------------------------
    # read model

    @property
    def tables(self) -> FrozenSet[CollaborationTable]:
        if self.track_presence:
            return MEMBERSHIP_TABLES | PRESENCE_TABLES
        return MEMBERSHIP_TABLES

    @property
    def current_user_role(self) -> Optional[CollaboratorRole]:
        for collaborator in self.collaborators:
            if collaborator.user_id == self.user.id:
                return collaborator.role
        return None

    @property
    def current_user_permissions(self) -> CollaboratorPermissions:
        return permissions_for_optional(self.current_user_role)

    @property
    def is_loading(self) -> bool:
        return bool(self._loads) or self._pending_actions > 0

    @property
    def status(self) -> str:
        if self.error:
            return SessionStatus.ERROR
        if self.is_loading:
            return SessionStatus.LOADING
        if self._loaded:
            return SessionStatus.READY
        return SessionStatus.IDLE

    @property
    def subscription(self) -> Optional[Subscription]:
        return self._subscription

    def state(self) -> Dict[str, Any]:
        snapshot: Dict[str, Any] = {
            "collaborators": list(self.collaborators),
            "invitations": list(self.invitations),
            "current_user_role": self.current_user_role,
            "current_user_permissions": self.current_user_permissions,
            "is_loading": self.is_loading,
            "error": self.error,
            "status": self.status,
        }
        if self.track_presence:
            snapshot["presence"] = list(self.presence)
            snapshot["editing_sessions"] = list(self.editing_sessions)
        return snapshot

    # ------------------------------------------------------------------
    # lifecycle

    async def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._closed = False
        self._generation += 1
        self._subscribe()
        await self.refresh()

    async def close(self) -> None:
        """Tear down the subscription; in-flight loads finish but are ignored."""
        if self.track_presence and self.book_id is not None:
            await self.leave()
        self._closed = True
        self._generation += 1
        self._unsubscribe()
        self._cancel_error_timer()
        logger.debug("Collaboration session closed for user %s on book %s", self.user.id, self.book_id)

    async def switch_book(self, book_id: Optional[UUID]) -> None:
        if book_id == self.book_id:
            return
        if self.track_presence and self.book_id is not None:
            await self.leave()
        self._generation += 1
        self._unsubscribe()
        self.book_id = book_id
        self.collaborators = []
        self.invitations = []
        self.presence = []
        self.editing_sessions = []
        self._loaded.clear()
        self._stale.clear()
        self.error = None
        self._subscribe()
        await self.refresh()

    def _subscribe(self) -> None:
        if self.book_id is None:
            return
        self._subscription = self._notifier.subscribe(self.book_id, self.tables, self._on_change)
        logger.debug("Collaboration session %s watching book %s", self._subscription.id, self.book_id)

    def _unsubscribe(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    def _on_change(self, event: ChangeEvent) -> None:
        # May run on a threadpool worker
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        generation = self._generation
        loop.call_soon_threadsafe(self._handle_change, event, generation)

    def _handle_change(self, event: ChangeEvent, generation: int) -> None:
        if generation != self._generation or self._closed or event.book_id != self.book_id:
            return
        logger.debug("Reloading %s for book %s after %s", event.table.value, event.book_id, event.action.value)
        self._request_load(event.table)

    # ------------------------------------------------------------------
    # loads

    async def refresh(self) -> None:
        if self.book_id is None:
            return
        await asyncio.gather(*(self._request_load(table) for table in self.tables))

    async def load_collaborators(self) -> None:
        await self._request_load(CollaborationTable.COLLABORATORS)

    async def load_invitations(self) -> None:
        await self._request_load(CollaborationTable.INVITATIONS)

    async def load_presence(self) -> None:
        await self._request_load(CollaborationTable.PRESENCE)

    async def load_editing_sessions(self) -> None:
        await self._request_load(CollaborationTable.EDITING_SESSIONS)

    def _request_load(self, table: CollaborationTable) -> "asyncio.Future[None]":
        """At most one load per table; requests during a load add one follow-up."""
        task = self._loads.get(table)
        if task is not None and not task.done():
            self._stale.add(table)
            return asyncio.shield(task)
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        task = self._loop.create_task(self._run_load(table, self._generation))
        self._loads[table] = task
        return asyncio.shield(task)

    async def _run_load(self, table: CollaborationTable, generation: int) -> None:
        try:
            while True:
                self._stale.discard(table)
                await self._load_once(table, generation)
                if generation != self._generation or table not in self._stale:
                    break
        finally:
            if self._loads.get(table) is asyncio.current_task():
                del self._loads[table]

    def _fetcher(self, table: CollaborationTable, book_id: UUID) -> Callable[[], List[Any]]:
        if table == CollaborationTable.COLLABORATORS:
            return lambda: self._store.list_collaborators(book_id)
        if table == CollaborationTable.INVITATIONS:
            return lambda: self._store.list_invitations(book_id, InvitationStatus.PENDING)
        if table == CollaborationTable.PRESENCE:
            return lambda: self._store.list_presence(book_id)
        if table == CollaborationTable.EDITING_SESSIONS:
            return lambda: self._store.list_editing_sessions(book_id)
        raise ValueError(f"Unsupported table {table}")

    async def _load_once(self, table: CollaborationTable, generation: int) -> None:
        book_id = self.book_id
        if book_id is None or table == CollaborationTable.COMMENTS:
            return
        try:
            result = await run_in_threadpool(self._fetcher(table, book_id))
        except CollaborationError as exc:
            if generation == self._generation:
                logger.warning("Failed to load %s for book %s: %s", table.value, book_id, exc.message)
                self._set_error(exc.message)
            return
        if generation != self._generation:
            logger.debug("Discarding %s result for retired session on book %s", table.value, book_id)
            return

        if table == CollaborationTable.COLLABORATORS:
            self.collaborators = result
        elif table == CollaborationTable.INVITATIONS:
            self.invitations = result
        elif table == CollaborationTable.PRESENCE:
            self.presence = result
        else:
            self.editing_sessions = result
        self._loaded.add(table)

    # ------------------------------------------------------------------
    # errors

    def _set_error(self, message: str) -> None:
        self.error = message
        self._cancel_error_timer()
        if self.error_clear_seconds and self._loop is not None:
            self._error_timer = self._loop.call_later(self.error_clear_seconds, self._expire_error, message)

    def _expire_error(self, message: str) -> None:
        if self.error == message:
            self.error = None
        self._error_timer = None

    def _cancel_error_timer(self) -> None:
        if self._error_timer is not None:
            self._error_timer.cancel()
            self._error_timer = None

    def clear_error(self) -> None:
        self.error = None
        self._cancel_error_timer()

    @asynccontextmanager
    async def _action(self, description: str):
        self.clear_error()
        self._pending_actions += 1
        try:
            yield
        except CollaborationError as exc:
            logger.info("Collaboration action '%s' failed: %s", description, exc.message)
            if not self._closed:
                self._set_error(exc.message)
            raise
        finally:
            self._pending_actions -= 1

    def _require_book(self) -> UUID:
        if self.book_id is None:
            raise ValueError("No book selected")
        return self.book_id

    async def _find_collaborator(self, collaborator_id: UUID) -> BookCollaborator:
        for collaborator in self.collaborators:
            if collaborator.id == collaborator_id:
                return collaborator
        book_id = self._require_book()
        return await run_in_threadpool(self._store.get_collaborator, collaborator_id, book_id=book_id)

    # ------------------------------------------------------------------
    # commands

    async def invite_collaborator(
        self,
        email: str,
        role: CollaboratorRole,
        message: Optional[str] = None,
    ) -> CollaborationInvitation:
        async with self._action("invite"):
            book_id = self._require_book()
            access.ensure_can_invite(self.current_user_role, role, editors_can_invite=self.editors_can_invite)
            invitation = await run_in_threadpool(
                self._store.create_invitation, book_id, self.user.id, email, role, message
            )
            await self._request_load(CollaborationTable.INVITATIONS)
            return invitation

    async def remove_collaborator(self, collaborator_id: UUID) -> None:
        async with self._action("remove"):
            collaborator = await self._find_collaborator(collaborator_id)
            access.ensure_can_remove(
                self.current_user_role,
                self.user.id,
                collaborator,
                editors_can_invite=self.editors_can_invite,
            )
            await run_in_threadpool(self._store.remove_collaborator, collaborator_id, book_id=self.book_id)
            await self._request_load(CollaborationTable.COLLABORATORS)

    async def change_collaborator_role(self, collaborator_id: UUID, new_role: CollaboratorRole) -> BookCollaborator:
        async with self._action("change role"):
            collaborator = await self._find_collaborator(collaborator_id)
            access.ensure_can_change_role(
                self.current_user_role,
                self.user.id,
                collaborator,
                new_role,
                editors_can_invite=self.editors_can_invite,
            )
            updated = await run_in_threadpool(
                self._store.update_collaborator_role, collaborator_id, new_role, book_id=self.book_id
            )
            await self._request_load(CollaborationTable.COLLABORATORS)
            return updated

    async def _respond(self, invitation_id: UUID, decision: InvitationDecision) -> CollaborationInvitation:
        invitation = await run_in_threadpool(
            self._store.respond_to_invitation, invitation_id, self.user.id, decision
        )
        if self.book_id is not None:
            await asyncio.gather(
                self._request_load(CollaborationTable.COLLABORATORS),
                self._request_load(CollaborationTable.INVITATIONS),
            )
        return invitation

    async def accept_invitation(self, invitation_id: UUID) -> CollaborationInvitation:
        async with self._action("accept invitation"):
            return await self._respond(invitation_id, InvitationDecision.ACCEPT)

    async def reject_invitation(self, invitation_id: UUID) -> CollaborationInvitation:
        async with self._action("reject invitation"):
            return await self._respond(invitation_id, InvitationDecision.REJECT)

    async def cancel_invitation(self, invitation_id: UUID) -> None:
        async with self._action("cancel invitation"):
            invitation = await run_in_threadpool(self._store.get_invitation, invitation_id)
            access.ensure_can_cancel_invitation(self.current_user_role, self.user.id, invitation.inviter_id)
            await run_in_threadpool(self._store.cancel_invitation, invitation_id)
            await self._request_load(CollaborationTable.INVITATIONS)

    # ------------------------------------------------------------------
    # presence and editing sessions

    async def heartbeat(self, current_section: Optional[str] = None, metadata: Optional[Dict[str, Any]] = None) -> UserPresence:
        book_id = self._require_book()
        return await run_in_threadpool(self._store.update_presence, book_id, self.user.id, current_section, metadata)

    async def begin_editing(
        self,
        section_id: str,
        section_type: SectionType,
        cursor_position: Any = None,
    ) -> EditingSession:
        async with self._action("start editing"):
            book_id = self._require_book()
            access.ensure_can_edit(self.current_user_role)
            return await run_in_threadpool(
                self._store.start_editing_session, book_id, self.user.id, section_id, section_type, cursor_position
            )

    async def end_editing(self, section_id: str) -> None:
        """Best effort: failures are logged, never raised."""
        book_id = self._require_book()
        try:
            await run_in_threadpool(self._store.end_editing_session, book_id, self.user.id, section_id)
        except CollaborationError as exc:
            logger.warning("Could not end editing session %s on book %s: %s", section_id, book_id, exc.message)

    async def leave(self) -> None:
        """Drop this viewer's sessions and presence for the current book; best effort."""
        book_id = self.book_id
        if book_id is None:
            return
        try:
            await run_in_threadpool(self._store.end_all_editing_sessions, book_id, self.user.id)
            await run_in_threadpool(self._store.set_offline, book_id, self.user.id)
        except CollaborationError as exc:
            logger.warning("Presence teardown failed for user %s on book %s: %s", self.user.id, book_id, exc.message)
