"""Annotations CRUD router.

Endpoints:
- POST   /annotations                  -- create an annotation on an image
- PUT    /annotations/{annotation_id}  -- move/resize and/or relabel an annotation
- DELETE /annotations/{annotation_id}  -- delete an annotation
"""

from __future__ import annotations

import duckdb
from fastapi import APIRouter, Depends, HTTPException

from app.dependencies import get_cursor, get_db
from app.models.annotation import AnnotationCreate, AnnotationResponse, AnnotationUpdate
from app.repositories import records
from app.repositories.duckdb_repo import DuckDBRepo
from app.repositories.records import AnnotationRecord

router = APIRouter(prefix="/annotations", tags=["annotations"])


def _response(annotation: AnnotationRecord) -> AnnotationResponse:
    return AnnotationResponse(
        id=annotation.id,
        dataset_id=annotation.dataset_id,
        image_id=annotation.image_id,
        category_id=annotation.category_id,
        bbox=annotation.bbox,
        area=annotation.area,
        is_crowd=annotation.is_crowd,
        external_id=annotation.external_id,
    )


def _check_category(
    cursor: duckdb.DuckDBPyConnection, category_id: int, dataset_id: int
) -> None:
    """Reject categories that do not belong to the annotation's dataset."""
    category = records.find_category(cursor, category_id)
    if category is None or category.dataset_id != dataset_id:
        raise HTTPException(
            status_code=400,
            detail=f"Category {category_id} does not belong to dataset {dataset_id}",
        )


@router.post("", response_model=AnnotationResponse, status_code=201)
def create_annotation(
    body: AnnotationCreate,
    db: DuckDBRepo = Depends(get_db),
) -> AnnotationResponse:
    """Create an annotation; its external id is the dataset's next free one."""
    with db.transaction() as cursor:
        image = records.find_image(cursor, body.image_id)
        if image is None:
            raise HTTPException(status_code=404, detail="Image not found")
        _check_category(cursor, body.category_id, image.dataset_id)

        annotation = records.create_annotation(
            cursor,
            image.dataset_id,
            image.id,
            body.category_id,
            body.bbox.as_list(),
            body.bbox.w * body.bbox.h,
            body.is_crowd,
            records.next_external_id(cursor, "annotations", image.dataset_id),
        )
    return _response(annotation)


@router.put("/{annotation_id}", response_model=AnnotationResponse)
def update_annotation(
    annotation_id: int,
    body: AnnotationUpdate,
    cursor: duckdb.DuckDBPyConnection = Depends(get_cursor),
) -> AnnotationResponse:
    """Update bbox position/size (area is recomputed) and/or category."""
    current = records.find_annotation(cursor, annotation_id)
    if current is None:
        raise HTTPException(status_code=404, detail="Annotation not found")
    if body.category_id is not None:
        _check_category(cursor, body.category_id, current.dataset_id)

    annotation = records.update_annotation(
        cursor,
        annotation_id,
        bbox=body.bbox.as_list() if body.bbox is not None else None,
        category_id=body.category_id,
    )
    return _response(annotation)


@router.delete("/{annotation_id}")
def delete_annotation(
    annotation_id: int,
    cursor: duckdb.DuckDBPyConnection = Depends(get_cursor),
) -> dict:
    """Delete an annotation."""
    if not records.delete_annotation(cursor, annotation_id):
        raise HTTPException(status_code=404, detail="Annotation not found")
    return {"deleted": annotation_id}
