"""
Periodic cleanup of collaboration scratch data.

Stale editing sessions and stale or offline presence rows are deleted on a
repeating interval. Invitations are never touched; their expiry is derived
when they are read.

Usage (from FastAPI startup):

    asyncio.create_task(start_collaboration_cleanup_task(store, 600))
"""

import asyncio
import logging

from starlette.concurrency import run_in_threadpool

from app.services.collaboration.store import CollaborationStore

logger = logging.getLogger(__name__)


async def run_cleanup_pass(store: CollaborationStore) -> dict:
    """One cleanup pass off the event loop; never raises."""
    try:
        return await run_in_threadpool(store.cleanup_expired_data)
    except Exception as exc:
        logger.warning("Collaboration cleanup pass failed: %s", exc)
        return {"editing_sessions": 0, "presence": 0}


async def start_collaboration_cleanup_task(store: CollaborationStore, interval_seconds: int) -> None:
    """Run :func:`run_cleanup_pass` until the task is cancelled."""
    logger.info("Collaboration cleanup task started (interval=%ds)", interval_seconds)
    while True:
        await asyncio.sleep(interval_seconds)
        await run_cleanup_pass(store)
