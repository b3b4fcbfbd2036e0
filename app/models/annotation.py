"""Pydantic models for annotation records."""

from pydantic import BaseModel


class BBox(BaseModel):
    """Bounding box in image-pixel space, top-left origin."""

    x: float
    y: float
    w: float
    h: float

    def as_list(self) -> list[float]:
        return [self.x, self.y, self.w, self.h]


class AnnotationResponse(BaseModel):
    """Single annotation record returned by the API."""

    id: int
    dataset_id: int
    image_id: int
    category_id: int
    bbox: list[float]
    area: float
    is_crowd: bool
    external_id: int


class AnnotationUpdate(BaseModel):
    """Request body for PUT /annotations/{id} -- move, resize or relabel."""

    bbox: BBox | None = None
    category_id: int | None = None


class AnnotationCreate(BaseModel):
    """Request body for POST /annotations."""

    image_id: int
    category_id: int
    bbox: BBox
    is_crowd: bool = False


class AnnotationDetail(AnnotationResponse):
    """Annotation with its category, as listed with a dataset's images."""

    category_name: str | None = None
    supercategory: str | None = None
