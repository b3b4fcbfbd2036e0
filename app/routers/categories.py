"""Categories API router.

Endpoints:
- GET   /categories?dataset_id=...  -- list a dataset's categories, ordered by name
- PATCH /categories/{category_id}   -- rename a category
"""

from __future__ import annotations

import duckdb
from fastapi import APIRouter, Depends, HTTPException, Query

from app.dependencies import get_cursor
from app.models.dataset import CategoryListResponse, CategoryResponse, CategoryUpdate
from app.repositories import records
from app.repositories.records import CategoryRecord

router = APIRouter(prefix="/categories", tags=["categories"])


def _response(category: CategoryRecord, annotation_count: int = 0) -> CategoryResponse:
    return CategoryResponse(
        id=category.id,
        dataset_id=category.dataset_id,
        external_id=category.external_id,
        name=category.name,
        supercategory=category.supercategory,
        annotation_count=annotation_count,
    )


@router.get("", response_model=CategoryListResponse)
def list_categories(
    dataset_id: int = Query(...),
    cursor: duckdb.DuckDBPyConnection = Depends(get_cursor),
) -> CategoryListResponse:
    """Return a dataset's categories with their annotation counts."""
    if records.find_dataset(cursor, dataset_id) is None:
        raise HTTPException(status_code=404, detail="Dataset not found")
    counts = records.category_annotation_counts(cursor, dataset_id)
    categories = sorted(
        records.list_categories(cursor, dataset_id), key=lambda c: (c.name, c.id)
    )
    return CategoryListResponse(
        categories=[_response(c, counts.get(c.id, 0)) for c in categories]
    )


@router.patch("/{category_id}", response_model=CategoryResponse)
def update_category(
    category_id: int,
    body: CategoryUpdate,
    cursor: duckdb.DuckDBPyConnection = Depends(get_cursor),
) -> CategoryResponse:
    """Rename a category (and optionally set its supercategory)."""
    name = body.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="Category name cannot be empty")
    category = records.update_category(cursor, category_id, name, body.supercategory)
    if category is None:
        raise HTTPException(status_code=404, detail="Category not found")
    return _response(category)
