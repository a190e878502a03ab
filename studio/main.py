import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Optional

import redis
import uvicorn
from fastapi import FastAPI

from . import metrics
from .auth_middleware import StudioAuthMiddleware
from .config import StudioSettings, load_settings
from .dispatcher import GenerationDispatcher
from .pipeline.routes import pipeline_router
from .pipeline.sessions import EditorSessions
from .pipeline.store import MemoryStageStore, SupabaseStageStore

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

settings = load_settings()


# ── Redis client (optional) ───────────────────────────────────────────────────

def get_redis(redis_url: Optional[str]):
    """Create a Redis client. Returns None if Redis is not configured or unreachable."""
    if not redis_url:
        return None
    client = redis.from_url(redis_url, decode_responses=False)
    try:
        client.ping()
        logger.info(f"Redis connected: {redis_url[:30]}...")
    except redis.RedisError as e:
        logger.warning(f"Redis connection failed: {e} — notifications dedup in-process + record store only")
        return None
    return client


def build_store(config: StudioSettings):
    if config.supabase_configured:
        return SupabaseStageStore(config.supabase_url, config.supabase_service_role_key)
    logger.warning("SUPABASE_URL / SUPABASE_SERVICE_ROLE_KEY not set — using in-memory stage store")
    return MemoryStageStore()


def build_sessions(config: StudioSettings, store=None, dispatcher=None, redis_client=None) -> EditorSessions:
    if dispatcher is None:
        if not config.generation_endpoint_url:
            logger.warning("No generation endpoint configured — every dispatch will be rejected")
        dispatcher = GenerationDispatcher(
            config.generation_endpoint_url,
            config.generation_api_key,
            timeout=config.dispatch_timeout_seconds,
            max_retries=config.dispatch_max_retries,
        )
    return EditorSessions(
        store if store is not None else build_store(config),
        dispatcher,
        redis_client=redis_client,
        rates=config.rates,
        poll_interval=config.poll_interval_seconds,
        autosave_delay=config.autosave_delay_seconds,
        balance_max_age=config.balance_max_age_seconds,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Studio service starting up...")
    metrics.set_gauge("start_time", time.time())
    if getattr(app.state, "sessions", None) is None:
        app.state.sessions = build_sessions(settings, redis_client=get_redis(settings.redis_url))
    yield
    logger.info("Studio service shutting down...")
    sessions: EditorSessions = app.state.sessions
    await sessions.close_all()
    await sessions.dispatcher.aclose()


def create_app(config: StudioSettings = settings, sessions: Optional[EditorSessions] = None) -> FastAPI:
    app = FastAPI(title="Studio Orchestrator", lifespan=lifespan)
    app.state.sessions = sessions
    app.state.settings = config
    app.add_middleware(
        StudioAuthMiddleware,
        secret=config.shared_secret,
        environment=config.environment,
    )
    app.include_router(pipeline_router)

    @app.get("/health")
    def health_check():
        """Verify the service is running and which backends are configured."""
        return {
            "status": "ok",
            "supabase_configured": config.supabase_configured,
            "generation_endpoint_set": bool(config.generation_endpoint_url),
            "redis_configured": bool(config.redis_url),
        }

    @app.get("/metrics")
    def metrics_endpoint():
        """Return a snapshot of all orchestrator metrics."""
        current = app.state.sessions
        if current is not None:
            metrics.set_gauge("open_sessions", len(current))
            metrics.set_gauge("notifications_buffered", len(current.feed))
        return metrics.get_snapshot()

    return app


app = create_app()


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    uvicorn.run("studio.main:app", host="0.0.0.0", port=port, reload=True)
