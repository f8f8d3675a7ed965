# backend/poi_discovery/main.py
"""
FastAPI application for POI discovery.

The discovery pipeline (caches, store adapter, fallback worker and
background queue) is built in the lifespan and stored on app.state.
"""

from contextlib import asynccontextmanager
import logging
from typing import AsyncGenerator, Callable, Dict, Optional

from fastapi import APIRouter, FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from . import __version__
from .core.config import is_running_tests, settings
from .routes.v1 import discovery as discovery_v1
from .services.discovery.container import DiscoveryContainer, build_discovery_container
from .services.discovery.metrics import REGISTRY

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)

API_TITLE = "POI Discovery API"
API_DESCRIPTION = (
    "Resolves points of interest near a coordinate or matching free text, "
    "backed by semantic caching, a POI store and a generative fallback."
)

ContainerFactory = Callable[[], DiscoveryContainer]


def create_app(container_factory: Optional[ContainerFactory] = None) -> FastAPI:
    """Build the app. Tests pass a factory that wires fakes into the pipeline."""
    factory = container_factory or build_discovery_container

    @asynccontextmanager
    async def app_lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        logger.info(f"{API_TITLE} starting up (environment: {settings.environment})")
        if is_running_tests():
            logger.info("Running under pytest (test mode active)")

        container = factory()
        app.state.discovery = container
        await container.start()
        try:
            yield
        finally:
            logger.info(f"{API_TITLE} shutting down...")
            await container.shutdown()
            app.state.discovery = None

    app = FastAPI(
        title=API_TITLE,
        description=API_DESCRIPTION,
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=app_lifespan,
    )

    api_v1 = APIRouter(prefix="/api/v1")
    api_v1.include_router(discovery_v1.router, prefix="/discovery")
    app.include_router(api_v1)

    @app.get("/health")
    async def health() -> Dict[str, str]:
        return {"status": "ok", "version": __version__}

    @app.get("/metrics", include_in_schema=False)
    async def metrics() -> Response:
        return Response(content=generate_latest(REGISTRY), media_type=CONTENT_TYPE_LATEST)

    return app


app = create_app()
