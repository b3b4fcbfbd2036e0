"""Shared pytest fixtures for the COCO merge service tests."""

from collections.abc import Callable
from pathlib import Path

import httpx
import pytest
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.repositories import records
from app.repositories.duckdb_repo import DuckDBRepo
from app.repositories.records import DatasetRecord
from app.repositories.storage import ObjectStore
from app.routers import annotations, categories, datasets, images
from app.services.merge import MergeService
from app.services.merge_progress import MergeProgressStore


@pytest.fixture()
def tmp_db_path(tmp_path: Path) -> Path:
    """Return a temporary DuckDB file path."""
    return tmp_path / "test.duckdb"


@pytest.fixture()
def db(tmp_db_path: Path) -> DuckDBRepo:
    """Create a DuckDBRepo with a temporary database, initialize schema, then close."""
    repo = DuckDBRepo(tmp_db_path)
    repo.initialize_schema()
    yield repo
    repo.close()


@pytest.fixture()
def object_store(tmp_path: Path) -> ObjectStore:
    """Object store rooted in a temporary local directory."""
    return ObjectStore(str(tmp_path / "objects"))


@pytest.fixture()
def progress_store() -> MergeProgressStore:
    return MergeProgressStore()


@pytest.fixture()
def merge_service(
    db: DuckDBRepo, object_store: ObjectStore, progress_store: MergeProgressStore
) -> MergeService:
    return MergeService(db=db, storage=object_store, progress=progress_store)


@pytest.fixture()
def make_dataset(db: DuckDBRepo, object_store: ObjectStore) -> Callable[..., DatasetRecord]:
    """Factory creating a dataset from compact descriptions.

    ``categories`` is a list of ``(external_id, name)`` tuples.
    ``images`` is a list of ``(file_name, [(category_external_id, bbox), ...])``
    tuples; each image gets a stored file (and a thumbnail when
    ``thumbnails=True``) unless ``with_files=False``.
    """

    def _make(
        name: str,
        categories: list[tuple[int, str]] = (),
        images: list[tuple[str, list]] = (),
        with_files: bool = True,
        thumbnails: bool = False,
    ) -> DatasetRecord:
        with db.transaction() as cursor:
            dataset = records.create_dataset(cursor, name, f"{name} description")
            by_external = {}
            for external_id, category_name in categories:
                category = records.create_category(
                    cursor, dataset.id, external_id, category_name
                )
                by_external[external_id] = category.id

            annotation_external_id = 1
            for image_external_id, (file_name, boxes) in enumerate(images, start=1):
                file_path = thumbnail_path = None
                if with_files:
                    file_path = object_store.put(
                        f"dataset-{dataset.id}/{file_name}",
                        f"{name}:{file_name}".encode(),
                        "image/jpeg",
                    )
                if thumbnails:
                    thumbnail_path = object_store.put(
                        f"dataset-{dataset.id}/thumbnails/{file_name}",
                        f"{name}:{file_name}:thumb".encode(),
                        "image/jpeg",
                    )
                image = records.create_image(
                    cursor,
                    dataset.id,
                    file_name,
                    640,
                    480,
                    image_external_id,
                    file_path=file_path,
                    thumbnail_path=thumbnail_path,
                )
                for category_external_id, bbox in boxes:
                    records.create_annotation(
                        cursor,
                        dataset.id,
                        image.id,
                        # Unknown external ids are stored as raw (dangling) ids.
                        by_external.get(category_external_id, category_external_id),
                        bbox,
                        bbox[2] * bbox[3],
                        False,
                        annotation_external_id,
                    )
                    annotation_external_id += 1
        return dataset

    return _make


def _build_app(
    db: DuckDBRepo, object_store: ObjectStore, progress_store: MergeProgressStore
) -> FastAPI:
    test_app = FastAPI()

    test_app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Wire services onto app.state
    test_app.state.db = db
    test_app.state.storage = object_store
    test_app.state.merge_progress = progress_store
    test_app.state.merge_service = MergeService(
        db=db, storage=object_store, progress=progress_store
    )

    # Include routers
    test_app.include_router(datasets.router)
    test_app.include_router(categories.router)
    test_app.include_router(annotations.router)
    test_app.include_router(images.router)

    @test_app.get("/health")
    async def health_check() -> dict[str, str]:
        return {"status": "ok"}

    return test_app


@pytest.fixture()
async def app_client(
    db: DuckDBRepo, object_store: ObjectStore, progress_store: MergeProgressStore
) -> httpx.AsyncClient:
    """Create a fully wired FastAPI test app and yield an async HTTP client."""
    test_app = _build_app(db, object_store, progress_store)
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=test_app),
        base_url="http://testserver",
    ) as client:
        yield client
