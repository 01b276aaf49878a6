import asyncio
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from app.api.errors import init_error_handlers
from app.api.v1 import collaborators, comments, editing, realtime, users
from app.core.config import settings
from app.core.logging import configure_logging
from app.core.rate_limiter import init_rate_limiter
from app.database import SessionLocal, engine
from app.services.collaboration.maintenance import start_collaboration_cleanup_task
from app.services.collaboration.notifier import ChangeNotifier
from app.services.collaboration.store import CollaborationStore
from app.services.websocket_manager import BookChangeBroadcaster
import time
from sqlalchemy import text
from typing import Dict
import redis as redis_lib

configure_logging()

app = FastAPI(
    title="BookCollab API",
    description="Multi-user book collaboration: roles, invitations, presence and comments",
    version="1.0.0"
)

# CORS middleware (configured via settings for production safety)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.BACKEND_CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

init_rate_limiter(app)
init_error_handlers(app)

# One notifier per process; the store publishes to it after each commit
change_notifier = ChangeNotifier()
app.state.change_notifier = change_notifier
app.state.collaboration_store = CollaborationStore.from_settings(SessionLocal, change_notifier, settings)
app.state.change_broadcaster = BookChangeBroadcaster(change_notifier, app.state.collaboration_store.get_user_role)

# Health check endpoint
@app.get("/health")
async def health_check():
    return {"status": "healthy", "service": "BookCollab Backend"}

# Detailed health including DB and Redis
@app.get("/healthz")
async def health_detailed() -> Dict[str, object]:
    resp: Dict[str, object] = {"service": "BookCollab Backend", "status": "healthy"}

    # DB check
    t0 = time.time()
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        resp["db"] = {"status": "ok", "elapsed_ms": round((time.time() - t0)*1000.0, 2)}
    except Exception as e:
        resp["db"] = {"status": "error", "error": str(e), "elapsed_ms": round((time.time() - t0)*1000.0, 2)}
        resp["status"] = "degraded"

    # Redis check
    t1 = time.time()
    try:
        client = redis_lib.Redis.from_url(settings.REDIS_URL, socket_connect_timeout=1, socket_timeout=1)
        pong = client.ping()
        resp["redis"] = {"status": "ok" if pong else "error", "elapsed_ms": round((time.time() - t1)*1000.0, 2)}
    except Exception as e:
        resp["redis"] = {"status": "error", "error": str(e), "elapsed_ms": round((time.time() - t1)*1000.0, 2)}
        resp["status"] = "degraded"

    return resp

# Include API routers
app.include_router(collaborators.router, prefix=settings.API_V1_STR, tags=["collaborators"])
app.include_router(editing.router, prefix=settings.API_V1_STR, tags=["editing sessions & presence"])
app.include_router(comments.router, prefix=settings.API_V1_STR, tags=["comments"])
app.include_router(users.router, prefix=settings.API_V1_STR, tags=["users"])
app.include_router(realtime.router, prefix=settings.API_V1_STR, tags=["realtime"])


@app.on_event("startup")
async def collaboration_cleanup_event() -> None:
    if settings.COLLAB_CLEANUP_INTERVAL_SECONDS > 0:
        app.state.cleanup_task = asyncio.create_task(
            start_collaboration_cleanup_task(app.state.collaboration_store, settings.COLLAB_CLEANUP_INTERVAL_SECONDS)
        )


@app.on_event("shutdown")
async def collaboration_cleanup_shutdown() -> None:
    task = getattr(app.state, "cleanup_task", None)
    if task is not None:
        task.cancel()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
