from .collaboration import ChangeNotifier, CollaborationSessionManager, CollaborationStore
from .websocket_manager import BookChangeBroadcaster

__all__ = [
    "BookChangeBroadcaster",
    "ChangeNotifier",
    "CollaborationSessionManager",
    "CollaborationStore",
]
