""" main.py: FastAPI application entry point and runtime configuration.

This module builds the ASGI app, mounts API routers, configures CORS (Cross-Origin Resource Sharing), and
exposes a Prometheus metrics endpoint. The lifespan handler starts the background scheduler (Progress Store
retries, idle session sweep) and, on shutdown, stops it and flushes pending Progress Store deliveries.
When executed directly, it starts a Uvicorn server using host/port values from configuration.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import make_asgi_app

from learnflow.config import CONFIG
from learnflow.runtime import get_runtime
from learnflow.services.scheduler import shutdown_background_scheduler, start_background_scheduler
from learnflow.version import __version__

# --- Router Imports ---
from learnflow.api import progress as progress_router
from learnflow.api import query as query_router
from learnflow.api import sessions as sessions_router

# Get a logger instance for this module
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Honour dependency overrides so tests run the lifespan against their own runtime
    runtime = app.dependency_overrides.get(get_runtime, get_runtime)()
    start_background_scheduler(app, runtime)
    logger.info("[lifespan] learnflow %s started", __version__)
    try:
        yield
    finally:
        shutdown_background_scheduler(app)
        await runtime.forwarder.drain()
        logger.info("[lifespan] learnflow stopped")


app = FastAPI(title="learnflow", version=__version__, lifespan=lifespan)

# Include routers
app.include_router(query_router.router, prefix="/api", tags=["Query"])
app.include_router(sessions_router.router, prefix="/api", tags=["Sessions"])
app.include_router(progress_router.router, prefix="/api", tags=["Progress"])

# Add Prometheus metrics endpoint
metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)

# Configure CORS
allow_origins = CONFIG.get('cors', {}).get('allow_origins', ["*"])
app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# The uvicorn server is used to run the FastAPI application.
if __name__ == '__main__':
    import uvicorn
    logger.info("[__main__] Starting Uvicorn server for learnflow\n")
    uvicorn.run(
        app,
        host=CONFIG.get('server', {}).get('host', '0.0.0.0'),
        port=CONFIG.get('server', {}).get('port', 8080)
    )
