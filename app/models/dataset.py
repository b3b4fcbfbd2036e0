"""Pydantic models for dataset ingestion, listing and editing."""

from datetime import datetime

from pydantic import BaseModel

from app.models.annotation import AnnotationDetail


class IngestRequest(BaseModel):
    """Request body for COCO dataset ingestion."""

    annotation_path: str
    dataset_name: str | None = None
    description: str | None = None
    image_dir: str | None = None


class DatasetResponse(BaseModel):
    """Single dataset record returned by the API."""

    id: int
    name: str
    description: str | None = None
    image_count: int
    category_count: int
    annotation_count: int
    created_at: datetime | None = None


class DatasetListResponse(BaseModel):
    """List of datasets returned by the API."""

    datasets: list[DatasetResponse]


class DatasetUpdate(BaseModel):
    """Request body for PATCH /datasets/{id} -- rename or re-describe."""

    name: str | None = None
    description: str | None = None


class CategoryResponse(BaseModel):
    id: int
    dataset_id: int
    external_id: int
    name: str
    supercategory: str | None = None
    annotation_count: int = 0


class CategoryListResponse(BaseModel):
    categories: list[CategoryResponse]


class CategoryUpdate(BaseModel):
    """Request body for PATCH /categories/{id}."""

    name: str
    supercategory: str | None = None


class ImageResponse(BaseModel):
    id: int
    dataset_id: int
    file_name: str
    width: int
    height: int
    external_id: int
    file_path: str | None = None
    thumbnail_path: str | None = None


class AnnotatedImageResponse(ImageResponse):
    annotations: list[AnnotationDetail] = []


class DatasetImagesResponse(BaseModel):
    """A page of a dataset's images with their annotations."""

    dataset_id: int
    total: int
    offset: int
    limit: int
    images: list[AnnotatedImageResponse]
