"""FastAPI application: connection endpoints under ``/api``."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from agent_connect import __version__
from agent_connect.api.connections import router as connections_router
from agent_connect.config import get_settings
from agent_connect.database import Base, engine

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Create tables, build the connection service, dispose the pool on shutdown."""
    from agent_connect import models  # noqa: F401 - registers tables on Base.metadata
    from agent_connect.services.connection_service import get_connection_service

    # Alembic owns the schema in production; this only covers fresh dev databases
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    # Raises CredentialKeyError here rather than on the first request
    service = get_connection_service()
    logger.info("agent-connect %s ready; services: %s", __version__, ", ".join(service.registry.names) or "none")

    yield

    await engine.dispose()


app = FastAPI(
    title="agent-connect",
    description="OAuth connections and credential injection for automated agents",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["Authorization", "Content-Type"],
)

app.include_router(connections_router, prefix="/api")


@app.get("/api/health", tags=["health"])
async def health_check() -> dict[str, str]:
    return {"status": "ok", "version": __version__}
