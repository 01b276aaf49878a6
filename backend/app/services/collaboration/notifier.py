"""
In-process change notifications, keyed by book id and table.

The store publishes one event per committed row change. Subscribers receive
the event synchronously on the publishing thread; anything that needs to get
back onto an event loop has to hop there itself.
"""

import enum
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional
from uuid import UUID

logger = logging.getLogger(__name__)


class CollaborationTable(str, enum.Enum):
    COLLABORATORS = "book_collaborators"
    INVITATIONS = "collaboration_invitations"
    EDITING_SESSIONS = "editing_sessions"
    PRESENCE = "user_presence"
    COMMENTS = "book_comments"


class ChangeAction(str, enum.Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass(frozen=True)
class ChangeEvent:
    book_id: UUID
    table: CollaborationTable
    action: ChangeAction
    row_id: Optional[UUID] = None
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_message(self) -> Dict[str, object]:
        return {
            "type": "change",
            "book_id": str(self.book_id),
            "table": self.table.value,
            "action": self.action.value,
            "row_id": str(self.row_id) if self.row_id else None,
            "occurred_at": self.occurred_at.isoformat(),
        }


ChangeCallback = Callable[[ChangeEvent], None]


class Subscription:
    """Handle for one live subscription. Each handle has a fresh identity."""

    def __init__(self, notifier: "ChangeNotifier", book_id: UUID, tables: FrozenSet[CollaborationTable], callback: ChangeCallback):
        self.id = uuid.uuid4()
        self.book_id = book_id
        self.tables = tables
        self.callback = callback
        self._notifier = notifier
        self.active = True

    def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        self._notifier._remove(self)

    def __repr__(self) -> str:
        return f"<Subscription id={self.id} book={self.book_id} tables={sorted(t.value for t in self.tables)}>"


class ChangeNotifier:
    def __init__(self):
        self._lock = threading.Lock()
        self._subscriptions: Dict[UUID, Dict[UUID, Subscription]] = {}

    def subscribe(
        self,
        book_id: UUID,
        tables: Iterable[CollaborationTable],
        callback: ChangeCallback,
    ) -> Subscription:
        subscription = Subscription(self, book_id, frozenset(CollaborationTable(t) for t in tables), callback)
        with self._lock:
            self._subscriptions.setdefault(book_id, {})[subscription.id] = subscription
        logger.debug("Subscribed %s", subscription)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            book_subs = self._subscriptions.get(subscription.book_id)
            if not book_subs:
                return
            book_subs.pop(subscription.id, None)
            if not book_subs:
                del self._subscriptions[subscription.book_id]
        logger.debug("Unsubscribed %s", subscription)

    def publish(self, event: ChangeEvent) -> None:
        with self._lock:
            targets: List[Subscription] = [
                sub for sub in self._subscriptions.get(event.book_id, {}).values()
                if event.table in sub.tables
            ]
        for sub in targets:
            if not sub.active:
                continue
            try:
                sub.callback(event)
            except Exception:
                logger.exception("Change subscriber %s failed for %s", sub.id, event.table.value)

    def publish_all(self, events: Iterable[ChangeEvent]) -> None:
        for event in events:
            self.publish(event)

    def subscriber_count(self, book_id: Optional[UUID] = None) -> int:
        with self._lock:
            if book_id is not None:
                return len(self._subscriptions.get(book_id, {}))
            return sum(len(subs) for subs in self._subscriptions.values())
