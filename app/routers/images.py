"""Images API router.

Endpoints:
- PUT /images/{image_id}/file       -- upload the image file (raw request body)
- PUT /images/{image_id}/thumbnail  -- upload a pre-rendered thumbnail
- GET /images/{image_id}/file       -- serve the stored image file
- GET /images/{image_id}/thumbnail  -- serve the stored thumbnail
- DELETE /images/{image_id}         -- delete an image, its annotations and its objects
"""

from __future__ import annotations

import logging

import duckdb
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import Response

from app.dependencies import get_cursor, get_db, get_storage
from app.models.dataset import ImageResponse
from app.repositories import records
from app.repositories.duckdb_repo import DuckDBRepo
from app.repositories.records import ImageRecord
from app.repositories.storage import ObjectStore, content_type_for
from app.services.merge import object_key, thumbnail_key

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/images", tags=["images"])


def _find(cursor: duckdb.DuckDBPyConnection, image_id: int) -> ImageRecord:
    image = records.find_image(cursor, image_id)
    if image is None:
        raise HTTPException(status_code=404, detail="Image not found")
    return image


def _response(image: ImageRecord) -> ImageResponse:
    return ImageResponse(
        id=image.id,
        dataset_id=image.dataset_id,
        file_name=image.file_name,
        width=image.width,
        height=image.height,
        external_id=image.external_id,
        file_path=image.file_path,
        thumbnail_path=image.thumbnail_path,
    )


def _serve(storage: ObjectStore, key: str | None, file_name: str) -> Response:
    if key is None:
        raise HTTPException(status_code=404, detail="No stored file for this image")
    try:
        data = storage.get(key)
    except FileNotFoundError:
        logger.warning("Object %s referenced by an image is missing", key)
        raise HTTPException(status_code=404, detail="Stored file is missing")
    return Response(content=data, media_type=content_type_for(file_name))


@router.put("/{image_id}/file", response_model=ImageResponse)
async def upload_image_file(
    image_id: int,
    request: Request,
    cursor: duckdb.DuckDBPyConnection = Depends(get_cursor),
    storage: ObjectStore = Depends(get_storage),
) -> ImageResponse:
    """Store the request body as the image's file."""
    image = _find(cursor, image_id)
    data = await request.body()
    if not data:
        raise HTTPException(status_code=400, detail="Empty upload")

    key = storage.put(
        object_key(image.dataset_id, image.file_name),
        data,
        request.headers.get("content-type") or content_type_for(image.file_name),
    )
    records.update_image_paths(cursor, image.id, key, image.thumbnail_path)
    image.file_path = key
    return _response(image)


@router.put("/{image_id}/thumbnail", response_model=ImageResponse)
async def upload_thumbnail(
    image_id: int,
    request: Request,
    cursor: duckdb.DuckDBPyConnection = Depends(get_cursor),
    storage: ObjectStore = Depends(get_storage),
) -> ImageResponse:
    """Store the request body as the image's thumbnail."""
    image = _find(cursor, image_id)
    data = await request.body()
    if not data:
        raise HTTPException(status_code=400, detail="Empty upload")

    key = storage.put(
        thumbnail_key(image.dataset_id, image.file_name),
        data,
        content_type_for(image.file_name),
    )
    records.update_image_paths(cursor, image.id, image.file_path, key)
    image.thumbnail_path = key
    return _response(image)


@router.get("/{image_id}/file")
def get_image_file(
    image_id: int,
    cursor: duckdb.DuckDBPyConnection = Depends(get_cursor),
    storage: ObjectStore = Depends(get_storage),
) -> Response:
    """Serve the stored image file."""
    image = _find(cursor, image_id)
    return _serve(storage, image.file_path, image.file_name)


@router.get("/{image_id}/thumbnail")
def get_thumbnail(
    image_id: int,
    cursor: duckdb.DuckDBPyConnection = Depends(get_cursor),
    storage: ObjectStore = Depends(get_storage),
) -> Response:
    """Serve the stored thumbnail."""
    image = _find(cursor, image_id)
    return _serve(storage, image.thumbnail_path, image.file_name)


@router.delete("/{image_id}")
def delete_image(
    image_id: int,
    db: DuckDBRepo = Depends(get_db),
    storage: ObjectStore = Depends(get_storage),
) -> dict:
    """Delete an image, its annotations and its file and thumbnail objects.

    Objects still referenced by another image are kept; object delete
    failures are logged and do not fail the request.
    """
    with db.transaction() as cursor:
        image = _find(cursor, image_id)
        removed = records.delete_image(cursor, image.id)
        orphaned = [
            key
            for key in (image.file_path, image.thumbnail_path)
            if key and not records.object_key_in_use(cursor, key)
        ]

    for key in orphaned:
        try:
            storage.delete(key)
        except OSError:
            logger.warning("Failed to delete object %s", key, exc_info=True)
    logger.info("Deleted image %d (%d annotations)", image_id, removed)
    return {"deleted": image_id, "annotations_deleted": removed}
