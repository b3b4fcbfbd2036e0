"""COCO merge service FastAPI application entry point."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import get_settings
from app.repositories.duckdb_repo import DuckDBRepo
from app.repositories.storage import ObjectStore
from app.services.merge import MergeService
from app.services.merge_progress import MergeProgressStore

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application startup and shutdown.

    On startup:
    - Create DuckDB connection and initialize schema.
    - Open the object store and create the merge progress store.
    - Store all services on app.state for dependency injection.

    On shutdown:
    - Checkpoint and close DuckDB.
    """
    settings = get_settings()

    # Database
    db = DuckDBRepo(settings.db_path)
    db.initialize_schema()
    app.state.db = db

    # Object store
    storage = ObjectStore(settings.object_store_url)
    app.state.storage = storage
    logger.info("Object store rooted at %s", settings.object_store_url)

    # Merge engine
    progress = MergeProgressStore(ttl_seconds=settings.merge_progress_ttl_seconds)
    app.state.merge_progress = progress
    app.state.merge_service = MergeService(
        db=db,
        storage=storage,
        progress=progress,
        copy_concurrency=settings.copy_concurrency,
        timeout_seconds=settings.merge_timeout_seconds,
    )

    yield

    # Shutdown
    db.connection.execute("CHECKPOINT")  # Flush WAL to disk before container stops
    db.close()


app = FastAPI(
    title="COCO Merge",
    description="COCO dataset import, editing and merge service",
    version="0.1.0",
    lifespan=lifespan,
)

# Behind a reverse proxy (same origin): no CORS needed.
# In local dev: allow the frontend dev server origin.
settings = get_settings()
if not settings.behind_proxy:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_origin],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

# Router includes
from app.routers import annotations, categories, datasets, images  # noqa: E402

app.include_router(datasets.router)
app.include_router(categories.router)
app.include_router(annotations.router)
app.include_router(images.router)


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Simple health check endpoint."""
    return {"status": "ok"}
