"""Datasets API router.

Endpoints:
- POST   /datasets/ingest          -- ingest a COCO dataset with SSE progress streaming
- GET    /datasets                 -- list all datasets
- POST   /datasets/analyze-merge   -- report category conflicts for a planned merge
- POST   /datasets/merge           -- merge datasets into a new or existing dataset
- GET    /datasets/merge-progress  -- poll a running merge
- GET    /datasets/{id}            -- get a single dataset
- PATCH  /datasets/{id}            -- rename or re-describe a dataset
- DELETE /datasets/{id}            -- delete a dataset, its records and its objects
- GET    /datasets/{id}/export     -- download the dataset as COCO JSON
- GET    /datasets/{id}/images     -- page through images with annotations and categories
"""

from __future__ import annotations

import json
import logging

import duckdb
from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse, StreamingResponse

from app.dependencies import (
    get_cursor,
    get_db,
    get_ingestion_service,
    get_merge_service,
    get_progress_store,
    get_storage,
)
from app.errors import DatasetNotFoundError, MergeFailedError, MergeValidationError
from app.models.annotation import AnnotationDetail
from app.models.dataset import (
    AnnotatedImageResponse,
    DatasetImagesResponse,
    DatasetListResponse,
    DatasetResponse,
    DatasetUpdate,
    IngestRequest,
)
from app.models.merge import (
    AnalyzeMergeRequest,
    MergeAnalysis,
    MergeProgressResponse,
    MergeRequest,
    MergeResult,
    MergeStrategy,
)
from app.repositories import records
from app.repositories.duckdb_repo import DuckDBRepo
from app.repositories.records import DatasetRecord
from app.repositories.storage import ObjectStore
from app.services.coco_export import build_coco, export_file_name
from app.services.ingestion import IngestionService
from app.services.merge import MergeService
from app.services.merge_analyzer import analyze_merge
from app.services.merge_progress import MergeProgressStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/datasets", tags=["datasets"])


def _response(dataset: DatasetRecord) -> DatasetResponse:
    return DatasetResponse(
        id=dataset.id,
        name=dataset.name,
        description=dataset.description,
        image_count=dataset.image_count,
        category_count=dataset.category_count,
        annotation_count=dataset.annotation_count,
        created_at=dataset.created_at,
    )


@router.post("/ingest")
def ingest_dataset(
    request: IngestRequest,
    ingestion_service: IngestionService = Depends(get_ingestion_service),
) -> StreamingResponse:
    """Ingest a COCO dataset with real-time progress via SSE.

    Streams ``text/event-stream`` events, each containing a JSON payload
    with ``stage``, ``current``, ``total``, ``message`` and
    ``dataset_id`` fields.  A failed import ends the stream with an
    ``error`` stage event and leaves nothing behind.
    """

    def progress_stream():
        try:
            for progress in ingestion_service.ingest_with_progress(
                annotation_path=request.annotation_path,
                dataset_name=request.dataset_name,
                description=request.description,
                image_dir=request.image_dir,
            ):
                event_data = json.dumps(
                    {
                        "stage": progress.stage,
                        "current": progress.current,
                        "total": progress.total,
                        "message": progress.message,
                        "dataset_id": progress.dataset_id,
                    }
                )
                yield f"data: {event_data}\n\n"
        except (OSError, ValueError, duckdb.Error) as exc:
            logger.exception("Ingestion of %s failed", request.annotation_path)
            event_data = json.dumps({"stage": "error", "message": str(exc)})
            yield f"data: {event_data}\n\n"

    return StreamingResponse(
        progress_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.get("", response_model=DatasetListResponse)
def list_datasets(
    cursor: duckdb.DuckDBPyConnection = Depends(get_cursor),
) -> DatasetListResponse:
    """Return all datasets ordered by creation date (newest first)."""
    return DatasetListResponse(
        datasets=[_response(d) for d in records.list_datasets(cursor)]
    )


# ------------------------------------------------------------------
# Merge
# ------------------------------------------------------------------


@router.post("/analyze-merge", response_model=MergeAnalysis)
def analyze_merge_endpoint(
    request: AnalyzeMergeRequest,
    cursor: duckdb.DuckDBPyConnection = Depends(get_cursor),
) -> MergeAnalysis:
    """Report exact-match and name conflicts between the datasets' categories.

    The conflict indices in the response are the ones a merge request's
    ``category_mapping_decisions`` refer to.
    """
    if len(request.source_dataset_ids) < 2:
        raise HTTPException(
            status_code=400, detail="At least two source datasets are required"
        )
    target_id = (
        request.target_dataset_id
        if request.merge_strategy is MergeStrategy.MERGE_INTO_EXISTING
        else None
    )
    try:
        return analyze_merge(
            cursor,
            request.source_dataset_ids,
            request.category_merge_strategy,
            target_dataset_id=target_id,
        )
    except DatasetNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))


@router.post("/merge", response_model=MergeResult)
def merge_datasets(
    request: MergeRequest,
    merge_service: MergeService = Depends(get_merge_service),
):
    """Merge the source datasets; the whole merge commits or rolls back.

    Runs synchronously (in FastAPI's worker thread pool) so progress can
    be polled from ``GET /datasets/merge-progress`` meanwhile.  A failed
    merge answers 500 with the partial statistics and errors.
    """
    try:
        return merge_service.merge(request)
    except MergeValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except DatasetNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except MergeFailedError as exc:
        return JSONResponse(
            status_code=500, content=exc.result.model_dump(mode="json")
        )


@router.get("/merge-progress", response_model=MergeProgressResponse)
def get_merge_progress(
    merge_id: str = Query(..., min_length=1),
    progress: MergeProgressStore = Depends(get_progress_store),
) -> MergeProgressResponse:
    """Return the progress snapshot of a merge, or 404 once it expired."""
    entry = progress.get(merge_id)
    if entry is None:
        raise HTTPException(status_code=404, detail="Merge not found")
    return MergeProgressResponse(
        merge_id=merge_id,
        current=entry.current,
        total=entry.total,
        percentage=entry.percentage,
        current_operation=entry.current_operation,
        errors=entry.errors,
        completed=entry.completed,
        success=entry.success,
        result=entry.result,
    )


# ------------------------------------------------------------------
# Single dataset
# ------------------------------------------------------------------


@router.get("/{dataset_id}", response_model=DatasetResponse)
def get_dataset(
    dataset_id: int,
    cursor: duckdb.DuckDBPyConnection = Depends(get_cursor),
) -> DatasetResponse:
    """Return a single dataset by ID, or 404."""
    dataset = records.find_dataset(cursor, dataset_id)
    if dataset is None:
        raise HTTPException(status_code=404, detail="Dataset not found")
    return _response(dataset)


@router.patch("/{dataset_id}", response_model=DatasetResponse)
def update_dataset(
    dataset_id: int,
    body: DatasetUpdate,
    cursor: duckdb.DuckDBPyConnection = Depends(get_cursor),
) -> DatasetResponse:
    """Rename and/or re-describe a dataset."""
    if body.name is not None and not body.name.strip():
        raise HTTPException(status_code=400, detail="Dataset name cannot be empty")
    dataset = records.update_dataset(
        cursor,
        dataset_id,
        name=body.name.strip() if body.name is not None else None,
        description=body.description,
    )
    if dataset is None:
        raise HTTPException(status_code=404, detail="Dataset not found")
    return _response(dataset)


@router.delete("/{dataset_id}", status_code=204)
def delete_dataset(
    dataset_id: int,
    db: DuckDBRepo = Depends(get_db),
    storage: ObjectStore = Depends(get_storage),
) -> None:
    """Delete a dataset, its records and every object under its key prefix."""
    with db.transaction() as cursor:
        deleted = records.delete_dataset(cursor, dataset_id)
    if not deleted:
        raise HTTPException(status_code=404, detail="Dataset not found")

    prefix = f"dataset-{dataset_id}/"
    for key in storage.list(prefix):
        try:
            storage.delete(key)
        except OSError:
            logger.warning("Failed to delete object %s", key, exc_info=True)
    logger.info("Deleted dataset %d", dataset_id)


@router.get("/{dataset_id}/export")
def export_dataset(
    dataset_id: int,
    cursor: duckdb.DuckDBPyConnection = Depends(get_cursor),
) -> JSONResponse:
    """Download the dataset as a COCO JSON attachment."""
    try:
        coco = build_coco(cursor, dataset_id)
    except DatasetNotFoundError:
        raise HTTPException(status_code=404, detail="Dataset not found")
    dataset = records.find_dataset(cursor, dataset_id)
    return JSONResponse(
        content=coco,
        headers={
            "Content-Disposition": (
                f'attachment; filename="{export_file_name(dataset.name)}"'
            )
        },
    )


@router.get("/{dataset_id}/images", response_model=DatasetImagesResponse)
def list_dataset_images(
    dataset_id: int,
    offset: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    cursor: duckdb.DuckDBPyConnection = Depends(get_cursor),
) -> DatasetImagesResponse:
    """Return a page of the dataset's images, each with its annotations and their categories."""
    if records.find_dataset(cursor, dataset_id) is None:
        raise HTTPException(status_code=404, detail="Dataset not found")

    images = records.list_images(cursor, dataset_id)
    page = images[offset : offset + limit]
    categories = {c.id: c for c in records.list_categories(cursor, dataset_id)}

    by_image: dict[int, list[AnnotationDetail]] = {image.id: [] for image in page}
    for annotation in records.list_annotations_for_images(cursor, list(by_image)):
        category = categories.get(annotation.category_id)
        by_image[annotation.image_id].append(
            AnnotationDetail(
                id=annotation.id,
                dataset_id=annotation.dataset_id,
                image_id=annotation.image_id,
                category_id=annotation.category_id,
                bbox=annotation.bbox,
                area=annotation.area,
                is_crowd=annotation.is_crowd,
                external_id=annotation.external_id,
                category_name=category.name if category is not None else None,
                supercategory=category.supercategory if category is not None else None,
            )
        )

    return DatasetImagesResponse(
        dataset_id=dataset_id,
        total=len(images),
        offset=offset,
        limit=limit,
        images=[
            AnnotatedImageResponse(
                id=image.id,
                dataset_id=image.dataset_id,
                file_name=image.file_name,
                width=image.width,
                height=image.height,
                external_id=image.external_id,
                file_path=image.file_path,
                thumbnail_path=image.thumbnail_path,
                annotations=by_image[image.id],
            )
            for image in page
        ],
    )
