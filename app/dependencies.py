"""FastAPI dependency injection for DuckDB, storage and merge services."""

from collections.abc import Generator

import duckdb
from fastapi import Depends, Request

from app.repositories.duckdb_repo import DuckDBRepo
from app.repositories.storage import ObjectStore
from app.services.ingestion import IngestionService
from app.services.merge import MergeService
from app.services.merge_progress import MergeProgressStore


def get_db(request: Request) -> DuckDBRepo:
    """Return the application-wide DuckDBRepo stored on app.state."""
    return request.app.state.db


def get_cursor(
    db: DuckDBRepo = Depends(get_db),
) -> Generator[duckdb.DuckDBPyConnection, None, None]:
    """Yield a DuckDB cursor, closing it after the request."""
    cursor = db.connection.cursor()
    try:
        yield cursor
    finally:
        cursor.close()


def get_storage(request: Request) -> ObjectStore:
    """Return the application-wide ObjectStore stored on app.state."""
    return request.app.state.storage


def get_progress_store(request: Request) -> MergeProgressStore:
    """Return the process-wide MergeProgressStore stored on app.state."""
    return request.app.state.merge_progress


def get_merge_service(request: Request) -> MergeService:
    """Return the application-wide MergeService stored on app.state."""
    return request.app.state.merge_service


def get_ingestion_service(
    db: DuckDBRepo = Depends(get_db),
    storage: ObjectStore = Depends(get_storage),
) -> IngestionService:
    """Compose an IngestionService from its collaborators."""
    return IngestionService(db=db, storage=storage)
