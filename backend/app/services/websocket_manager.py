"""
WebSocket bridge for book change notifications
Keeps sockets grouped by book and forwards store change events to them
"""

import json
import uuid
from typing import Callable, Dict, List, Any, Optional
from uuid import UUID
from fastapi import WebSocket
from starlette.concurrency import run_in_threadpool
import asyncio
import logging

from app.models.book_collaborator import CollaboratorRole
from app.services.collaboration.errors import CollaborationError, NotFoundError
from app.services.collaboration.notifier import ChangeEvent, ChangeNotifier, CollaborationTable, Subscription

logger = logging.getLogger(__name__)


class BookChangeBroadcaster:
    """Fans change events for a book out to every connected WebSocket"""

    def __init__(
        self,
        notifier: ChangeNotifier,
        role_lookup: Optional[Callable[[UUID, UUID], Optional[CollaboratorRole]]] = None,
    ):
        self._notifier = notifier
        # (book_id, user_id) -> role, None when the user has no access
        self._role_lookup = role_lookup
        # book_id -> connection_id -> websocket
        self.active_connections: Dict[UUID, Dict[str, WebSocket]] = {}
        # connection_id -> user info
        self.connection_users: Dict[str, Dict[str, Any]] = {}
        # One notifier subscription per book while it has sockets
        self._subscriptions: Dict[UUID, Subscription] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    async def connect(self, websocket: WebSocket, book_id: UUID, user_info: Dict[str, Any]) -> str:
        """Accept a socket, subscribe the book if needed and announce the user"""
        await websocket.accept()
        self._loop = asyncio.get_running_loop()

        connection_id = str(uuid.uuid4())
        already_present = self._user_connected(book_id, user_info.get("user_id"))

        self.active_connections.setdefault(book_id, {})[connection_id] = websocket
        self.connection_users[connection_id] = {
            **user_info,
            "book_id": str(book_id),
            "connection_id": connection_id,
        }
        if book_id not in self._subscriptions:
            self._subscriptions[book_id] = self._notifier.subscribe(
                book_id,
                list(CollaborationTable),
                self._on_change,
            )

        await self.send_personal_message({
            "type": "connection_established",
            "connection_id": connection_id,
            "book_id": str(book_id),
            "users": self.get_book_users(book_id, exclude_connection=connection_id),
        }, websocket)

        if not already_present:
            await self.broadcast_to_book(book_id, {
                "type": "user_joined",
                "user": self.connection_users[connection_id],
            }, exclude_connection=connection_id)

        logger.info("User %s connected to book %s", user_info.get("user_id"), book_id)
        return connection_id

    async def disconnect(self, connection_id: str) -> None:
        user_info = self.connection_users.pop(connection_id, None)
        if user_info is None:
            return
        book_id = UUID(user_info["book_id"])

        connections = self.active_connections.get(book_id, {})
        connections.pop(connection_id, None)
        if not connections:
            self.active_connections.pop(book_id, None)
            subscription = self._subscriptions.pop(book_id, None)
            if subscription is not None:
                subscription.unsubscribe()
            logger.info("User %s disconnected from book %s", user_info.get("user_id"), book_id)
            return

        if not self._user_connected(book_id, user_info.get("user_id")):
            await self.broadcast_to_book(book_id, {
                "type": "user_left",
                "user": user_info,
                "user_id": user_info.get("user_id"),
            })
        logger.info("User %s disconnected from book %s", user_info.get("user_id"), book_id)

    def is_user_connected(self, book_id: UUID, user_id: Optional[str]) -> bool:
        return self._user_connected(book_id, user_id)

    def _user_connected(self, book_id: UUID, user_id: Optional[str]) -> bool:
        if not user_id:
            return False
        return any(
            self.connection_users.get(conn_id, {}).get("user_id") == user_id
            for conn_id in self.active_connections.get(book_id, {})
        )

    def _on_change(self, event: ChangeEvent) -> None:
        # Called from whichever thread committed the change
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        asyncio.run_coroutine_threadsafe(self._deliver(event), loop)

    async def _deliver(self, event: ChangeEvent) -> None:
        if event.table == CollaborationTable.COLLABORATORS and self._role_lookup is not None:
            await self.revalidate_book(event.book_id)
        await self.broadcast_to_book(event.book_id, event.to_message())

    async def revalidate_book(self, book_id: UUID) -> None:
        """Re-check every connected user's role and close sockets that lost access"""
        roles: Dict[str, Optional[CollaboratorRole]] = {}
        for connection_id, websocket in list(self.active_connections.get(book_id, {}).items()):
            info = self.connection_users.get(connection_id)
            if info is None:
                continue
            user_id = info.get("user_id")
            if user_id not in roles:
                try:
                    roles[user_id] = await run_in_threadpool(self._role_lookup, book_id, UUID(user_id))
                except NotFoundError:
                    roles[user_id] = None
                except CollaborationError as e:
                    logger.warning("Could not re-check access of user %s on book %s: %s", user_id, book_id, e)
                    continue

            role = roles[user_id]
            if role is not None:
                info["role"] = CollaboratorRole(role).value
                continue

            await self.send_personal_message({"type": "access_revoked", "book_id": str(book_id)}, websocket)
            await self.disconnect(connection_id)
            try:
                await websocket.close(code=1008)
            except Exception as e:
                logger.warning("Error closing revoked connection %s: %s", connection_id, e)
            logger.info("Closed book %s socket of user %s after access was revoked", book_id, user_id)

    async def send_personal_message(self, message: Dict[str, Any], websocket: WebSocket) -> None:
        try:
            await websocket.send_text(json.dumps(message))
        except Exception as e:
            logger.warning("Error sending personal message: %s", e)

    async def broadcast_to_book(self, book_id: UUID, message: Dict[str, Any], exclude_connection: Optional[str] = None) -> None:
        """Send to every socket of a book concurrently; drop sockets that fail"""
        connections = self.active_connections.get(book_id)
        if not connections:
            return
        payload = json.dumps(message)

        async def send_one(connection_id: str, websocket: WebSocket) -> Optional[str]:
            if connection_id == exclude_connection:
                return None
            try:
                await websocket.send_text(payload)
                return None
            except Exception as e:
                logger.warning("Error broadcasting to connection %s: %s", connection_id, e)
                return connection_id

        results = await asyncio.gather(*(send_one(cid, ws) for cid, ws in list(connections.items())))
        for failed in results:
            if failed:
                await self.disconnect(failed)

    def get_book_users(self, book_id: UUID, exclude_connection: Optional[str] = None) -> List[Dict[str, Any]]:
        """Connected users of a book, one entry per user"""
        seen = set()
        users = []
        for conn_id in self.active_connections.get(book_id, {}):
            if conn_id == exclude_connection:
                continue
            info = self.connection_users.get(conn_id)
            if not info or info.get("user_id") in seen:
                continue
            seen.add(info.get("user_id"))
            users.append(info)
        return users

    def subscribed_books(self) -> List[UUID]:
        return list(self._subscriptions)
