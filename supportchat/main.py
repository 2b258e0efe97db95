"""FastAPI application for the support chat core.

- Configures logging, optional CORS, Prometheus metrics and rate limiting.
- Mounts the REST routes (``/api``) and the WebSocket endpoints (``/ws``).
- Starts the Redis event relay when jobs run in a separate Celery worker, so
  events published by jobs reach sockets held by this process.
"""

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from .__version__ import __build_date__, __commit_sha__, __version__
from .app_logging import init_logging
from .container import get_container
from .rate_limit import limiter
from .routers import conversations, realtime

load_dotenv()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    container = get_container()
    if container.relay is not None and container.celery_app is not None:
        container.relay.start(container.hub)
    logger.info("Support chat API %s started", __version__)
    try:
        yield
    finally:
        container.shutdown()


app = FastAPI(title="Support Chat", version=__version__, lifespan=lifespan)
init_logging(app)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)
cors_origins = os.getenv("CORS_ORIGINS")
if cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in cors_origins.split(",") if o.strip()],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
app.include_router(conversations.router)
app.include_router(realtime.router)

Instrumentator().instrument(app).expose(app, include_in_schema=False, endpoint="/api/metrics")


@app.get("/api/health")
async def health():
    """Liveness check."""
    return {"status": "ok"}


@app.get("/api/version")
async def version():
    return {
        "version": __version__,
        "build_date": __build_date__,
        "commit_sha": __commit_sha__,
    }
