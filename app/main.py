import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.cache.clients import RedisCacheClient, build_cache_client
from app.cache.layer import KeyValueCache
from app.cache.rate_limit import RateLimiter
from app.core.config import get_settings
from app.database import create_db_and_tables, dispose_engine
from app.events.bus import EventBus
from app.routers import cache, todos

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    await create_db_and_tables()

    client = await build_cache_client(settings)
    app.state.cache = KeyValueCache(client, settings)
    app.state.events = EventBus(
        client.redis if isinstance(client, RedisCacheClient) else None
    )
    app.state.rate_limiter = RateLimiter(
        app.state.cache,
        window_seconds=settings.rate_limit_window,
        max_requests=settings.rate_limit_max_requests,
    )
    app.state.cache.start_eviction_monitor(settings.cache_eviction_interval)
    logger.info(f"Started with {type(client).__name__}")

    yield

    await app.state.events.close()
    await app.state.cache.close()
    await dispose_engine()


app = FastAPI(
    title="Todo Sync API",
    description="Async todo API with a Redis-backed cache, rate limiting and change events",
    swagger_ui_parameters={"displayRequestDuration": True},
    version="1.0.0",
    lifespan=lifespan,
)

# Include routers
app.include_router(todos.router)
app.include_router(cache.router)


@app.get("/")
async def root():
    return {
        "message": "Welcome to Todo Sync API",
        "docs": "/docs",
        "version": "1.0.0",
    }


@app.get("/health")
async def health_check():
    return {"status": "healthy"}
