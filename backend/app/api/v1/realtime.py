import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect
from starlette.concurrency import run_in_threadpool

from app.core.security import verify_token
from app.services.collaboration.errors import CollaborationError
from app.services.collaboration.formatting import display_name

router = APIRouter()
logger = logging.getLogger(__name__)


@router.websocket("/ws/books/{book_id}")
async def book_changes_ws(
    websocket: WebSocket,
    book_id: UUID,
    token: str = Query(..., description="Bearer token for authentication"),
):
    """Pushes change notifications for one book plus join/leave events."""
    store = websocket.app.state.collaboration_store
    broadcaster = websocket.app.state.change_broadcaster

    email = verify_token(token) if token else None
    if not email:
        await websocket.close(code=1008)
        return

    try:
        user = await run_in_threadpool(store.find_user_by_email, email)
        if user is None:
            await websocket.close(code=1008)
            return
        role = await run_in_threadpool(store.get_user_role, book_id, user.id)
        if role is None:
            await websocket.close(code=1008)
            return
    except CollaborationError as exc:
        logger.info("Rejecting book websocket for %s: %s", book_id, exc.message)
        await websocket.close(code=1008)
        return

    user_info = {
        "user_id": str(user.id),
        "name": display_name(user),
        "email": user.email,
        "role": role.value,
    }

    connection_id: Optional[str] = None
    try:
        connection_id = await broadcaster.connect(websocket, book_id, user_info)
        while True:
            try:
                await websocket.receive_text()
            except WebSocketDisconnect:
                break
            except Exception:
                logger.exception("Error receiving book websocket message")
                break
    finally:
        if connection_id:
            try:
                await broadcaster.disconnect(connection_id)
            except Exception:
                logger.exception("Failed to disconnect book websocket connection")
        if not broadcaster.is_user_connected(book_id, user_info["user_id"]):
            try:
                await run_in_threadpool(store.set_offline, book_id, user.id)
            except CollaborationError as exc:
                logger.warning("Presence teardown failed for user %s on book %s: %s", user.id, book_id, exc.message)
