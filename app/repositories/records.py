"""Record access for datasets, categories, images and annotations.

Every function takes the DuckDB cursor it runs on as its first argument.
Callers that need atomicity pass the cursor yielded by
:meth:`DuckDBRepo.transaction`; read-only callers may pass any cursor.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime

from duckdb import DuckDBPyConnection

_DATASET_COLUMNS = (
    "d.id, d.name, d.description, d.created_at, "
    "(SELECT COUNT(*) FROM images i WHERE i.dataset_id = d.id), "
    "(SELECT COUNT(*) FROM categories c WHERE c.dataset_id = d.id), "
    "(SELECT COUNT(*) FROM annotations a WHERE a.dataset_id = d.id)"
)
_CATEGORY_COLUMNS = "id, dataset_id, external_id, name, supercategory"
_IMAGE_COLUMNS = (
    "id, dataset_id, file_name, width, height, external_id, "
    "file_path, thumbnail_path"
)
_ANNOTATION_COLUMNS = (
    "id, dataset_id, image_id, category_id, bbox_x, bbox_y, bbox_w, bbox_h, "
    "area, is_crowd, external_id"
)
_EXTERNAL_ID_TABLES = {"categories", "images", "annotations"}


@dataclass
class DatasetRecord:
    id: int
    name: str
    description: str | None
    created_at: datetime | None = None
    image_count: int = 0
    category_count: int = 0
    annotation_count: int = 0


@dataclass
class CategoryRecord:
    id: int
    dataset_id: int
    external_id: int
    name: str
    supercategory: str | None = None


@dataclass
class AnnotationRecord:
    id: int
    dataset_id: int
    image_id: int
    category_id: int
    bbox: list[float]
    area: float
    is_crowd: bool
    external_id: int
    # Populated by load_source_dataset when the category exists in the
    # annotation's own dataset.
    category: CategoryRecord | None = None


@dataclass
class ImageRecord:
    id: int
    dataset_id: int
    file_name: str
    width: int
    height: int
    external_id: int
    file_path: str | None = None
    thumbnail_path: str | None = None
    annotations: list[AnnotationRecord] = field(default_factory=list)


@dataclass
class SourceDataset:
    """A dataset loaded with its categories, images and annotations."""

    dataset: DatasetRecord
    categories: list[CategoryRecord]
    images: list[ImageRecord]

    @property
    def id(self) -> int:
        return self.dataset.id

    @property
    def name(self) -> str:
        return self.dataset.name or "Unnamed Dataset"

    @property
    def annotation_count(self) -> int:
        return sum(len(image.annotations) for image in self.images)

    def referenced_category_ids(self) -> set[int]:
        """Return every category id referenced by this dataset's annotations."""
        return {
            annotation.category_id
            for image in self.images
            for annotation in image.annotations
        }


# ------------------------------------------------------------------
# Row converters
# ------------------------------------------------------------------


def _dataset(row: tuple) -> DatasetRecord:
    return DatasetRecord(
        id=row[0],
        name=row[1],
        description=row[2],
        created_at=row[3],
        image_count=row[4],
        category_count=row[5],
        annotation_count=row[6],
    )


def _category(row: tuple) -> CategoryRecord:
    return CategoryRecord(
        id=row[0],
        dataset_id=row[1],
        external_id=row[2],
        name=row[3],
        supercategory=row[4],
    )


def _image(row: tuple) -> ImageRecord:
    return ImageRecord(
        id=row[0],
        dataset_id=row[1],
        file_name=row[2],
        width=row[3],
        height=row[4],
        external_id=row[5],
        file_path=row[6],
        thumbnail_path=row[7],
    )


def _annotation(row: tuple) -> AnnotationRecord:
    return AnnotationRecord(
        id=row[0],
        dataset_id=row[1],
        image_id=row[2],
        category_id=row[3],
        bbox=[row[4], row[5], row[6], row[7]],
        area=row[8],
        is_crowd=bool(row[9]),
        external_id=row[10],
    )


# ------------------------------------------------------------------
# Datasets
# ------------------------------------------------------------------


def find_dataset(cursor: DuckDBPyConnection, dataset_id: int) -> DatasetRecord | None:
    row = cursor.execute(
        f"SELECT {_DATASET_COLUMNS} FROM datasets d WHERE d.id = ?", [dataset_id]
    ).fetchone()
    return _dataset(row) if row is not None else None


def list_datasets(cursor: DuckDBPyConnection) -> list[DatasetRecord]:
    """Return all datasets, newest first."""
    rows = cursor.execute(
        f"SELECT {_DATASET_COLUMNS} FROM datasets d "
        "ORDER BY d.created_at DESC, d.id DESC"
    ).fetchall()
    return [_dataset(row) for row in rows]


def create_dataset(
    cursor: DuckDBPyConnection, name: str, description: str | None = None
) -> DatasetRecord:
    row = cursor.execute(
        "INSERT INTO datasets (name, description) VALUES (?, ?) "
        "RETURNING id, name, description, created_at",
        [name, description],
    ).fetchone()
    return DatasetRecord(id=row[0], name=row[1], description=row[2], created_at=row[3])


def update_dataset(
    cursor: DuckDBPyConnection,
    dataset_id: int,
    name: str | None = None,
    description: str | None = None,
) -> DatasetRecord | None:
    """Rename and/or re-describe a dataset; ``None`` fields are left as-is."""
    row = cursor.execute(
        "UPDATE datasets SET "
        "name = COALESCE(?, name), description = COALESCE(?, description) "
        "WHERE id = ? RETURNING id",
        [name, description, dataset_id],
    ).fetchone()
    if row is None:
        return None
    return find_dataset(cursor, dataset_id)


def delete_dataset(cursor: DuckDBPyConnection, dataset_id: int) -> bool:
    """Delete a dataset and all of its categories, images and annotations."""
    row = cursor.execute(
        "SELECT id FROM datasets WHERE id = ?", [dataset_id]
    ).fetchone()
    if row is None:
        return False
    cursor.execute("DELETE FROM annotations WHERE dataset_id = ?", [dataset_id])
    cursor.execute("DELETE FROM images WHERE dataset_id = ?", [dataset_id])
    cursor.execute("DELETE FROM categories WHERE dataset_id = ?", [dataset_id])
    cursor.execute("DELETE FROM datasets WHERE id = ?", [dataset_id])
    return True


def next_external_id(cursor: DuckDBPyConnection, table: str, dataset_id: int) -> int:
    """Return one past the largest external id used in *table* for a dataset."""
    if table not in _EXTERNAL_ID_TABLES:
        raise ValueError(f"No external ids on table {table!r}")
    return cursor.execute(
        f"SELECT COALESCE(MAX(external_id), 0) + 1 FROM {table} WHERE dataset_id = ?",
        [dataset_id],
    ).fetchone()[0]


# ------------------------------------------------------------------
# Categories
# ------------------------------------------------------------------


def find_category(cursor: DuckDBPyConnection, category_id: int) -> CategoryRecord | None:
    row = cursor.execute(
        f"SELECT {_CATEGORY_COLUMNS} FROM categories WHERE id = ?", [category_id]
    ).fetchone()
    return _category(row) if row is not None else None


def find_category_by_name(
    cursor: DuckDBPyConnection, dataset_id: int, name: str
) -> CategoryRecord | None:
    """Return the lowest-id category called *name* in a dataset, if any."""
    row = cursor.execute(
        f"SELECT {_CATEGORY_COLUMNS} FROM categories "
        "WHERE dataset_id = ? AND name = ? ORDER BY id LIMIT 1",
        [dataset_id, name],
    ).fetchone()
    return _category(row) if row is not None else None


def list_categories(cursor: DuckDBPyConnection, dataset_id: int) -> list[CategoryRecord]:
    rows = cursor.execute(
        f"SELECT {_CATEGORY_COLUMNS} FROM categories WHERE dataset_id = ? ORDER BY id",
        [dataset_id],
    ).fetchall()
    return [_category(row) for row in rows]


def category_annotation_counts(
    cursor: DuckDBPyConnection, dataset_id: int
) -> dict[int, int]:
    """Return ``{category_id: annotation_count}`` for a dataset."""
    rows = cursor.execute(
        "SELECT category_id, COUNT(*) FROM annotations "
        "WHERE dataset_id = ? GROUP BY category_id",
        [dataset_id],
    ).fetchall()
    return {row[0]: row[1] for row in rows}


def category_external_id_taken(
    cursor: DuckDBPyConnection, dataset_id: int, external_id: int
) -> bool:
    row = cursor.execute(
        "SELECT 1 FROM categories WHERE dataset_id = ? AND external_id = ?",
        [dataset_id, external_id],
    ).fetchone()
    return row is not None


def create_category(
    cursor: DuckDBPyConnection,
    dataset_id: int,
    external_id: int,
    name: str,
    supercategory: str | None = None,
) -> CategoryRecord:
    row = cursor.execute(
        "INSERT INTO categories (dataset_id, external_id, name, supercategory) "
        f"VALUES (?, ?, ?, ?) RETURNING {_CATEGORY_COLUMNS}",
        [dataset_id, external_id, name, supercategory],
    ).fetchone()
    return _category(row)


def update_category(
    cursor: DuckDBPyConnection,
    category_id: int,
    name: str,
    supercategory: str | None = None,
) -> CategoryRecord | None:
    row = cursor.execute(
        "UPDATE categories SET name = ?, supercategory = COALESCE(?, supercategory) "
        f"WHERE id = ? RETURNING {_CATEGORY_COLUMNS}",
        [name, supercategory, category_id],
    ).fetchone()
    return _category(row) if row is not None else None


# ------------------------------------------------------------------
# Images
# ------------------------------------------------------------------


def find_image(cursor: DuckDBPyConnection, image_id: int) -> ImageRecord | None:
    row = cursor.execute(
        f"SELECT {_IMAGE_COLUMNS} FROM images WHERE id = ?", [image_id]
    ).fetchone()
    return _image(row) if row is not None else None


def list_images(cursor: DuckDBPyConnection, dataset_id: int) -> list[ImageRecord]:
    rows = cursor.execute(
        f"SELECT {_IMAGE_COLUMNS} FROM images WHERE dataset_id = ? ORDER BY id",
        [dataset_id],
    ).fetchall()
    return [_image(row) for row in rows]


def image_annotation_counts(
    cursor: DuckDBPyConnection, dataset_id: int
) -> dict[int, int]:
    """Return ``{image_id: annotation_count}`` for a dataset."""
    rows = cursor.execute(
        "SELECT image_id, COUNT(*) FROM annotations "
        "WHERE dataset_id = ? GROUP BY image_id",
        [dataset_id],
    ).fetchall()
    return {row[0]: row[1] for row in rows}


def create_image(
    cursor: DuckDBPyConnection,
    dataset_id: int,
    file_name: str,
    width: int,
    height: int,
    external_id: int,
    file_path: str | None = None,
    thumbnail_path: str | None = None,
) -> ImageRecord:
    row = cursor.execute(
        "INSERT INTO images "
        "(dataset_id, file_name, width, height, external_id, file_path, thumbnail_path) "
        f"VALUES (?, ?, ?, ?, ?, ?, ?) RETURNING {_IMAGE_COLUMNS}",
        [dataset_id, file_name, width, height, external_id, file_path, thumbnail_path],
    ).fetchone()
    return _image(row)


def update_image_paths(
    cursor: DuckDBPyConnection,
    image_id: int,
    file_path: str | None,
    thumbnail_path: str | None,
) -> None:
    cursor.execute(
        "UPDATE images SET file_path = ?, thumbnail_path = ? WHERE id = ?",
        [file_path, thumbnail_path, image_id],
    )


def delete_image(cursor: DuckDBPyConnection, image_id: int) -> int:
    """Delete an image and its annotations; return the annotations removed."""
    removed = cursor.execute(
        "DELETE FROM annotations WHERE image_id = ? RETURNING id", [image_id]
    ).fetchall()
    cursor.execute("DELETE FROM images WHERE id = ?", [image_id])
    return len(removed)


def list_annotations_for_images(
    cursor: DuckDBPyConnection, image_ids: list[int]
) -> list[AnnotationRecord]:
    if not image_ids:
        return []
    placeholders = ", ".join("?" for _ in image_ids)
    rows = cursor.execute(
        f"SELECT {_ANNOTATION_COLUMNS} FROM annotations "
        f"WHERE image_id IN ({placeholders}) ORDER BY id",
        image_ids,
    ).fetchall()
    return [_annotation(row) for row in rows]


def object_key_in_use(cursor: DuckDBPyConnection, key: str) -> bool:
    """Return ``True`` if any image record points at object *key*."""
    row = cursor.execute(
        "SELECT 1 FROM images WHERE file_path = ? OR thumbnail_path = ? LIMIT 1",
        [key, key],
    ).fetchone()
    return row is not None


# ------------------------------------------------------------------
# Annotations
# ------------------------------------------------------------------


def find_annotation(
    cursor: DuckDBPyConnection, annotation_id: int
) -> AnnotationRecord | None:
    row = cursor.execute(
        f"SELECT {_ANNOTATION_COLUMNS} FROM annotations WHERE id = ?",
        [annotation_id],
    ).fetchone()
    return _annotation(row) if row is not None else None


def list_annotations(
    cursor: DuckDBPyConnection, dataset_id: int
) -> list[AnnotationRecord]:
    rows = cursor.execute(
        f"SELECT {_ANNOTATION_COLUMNS} FROM annotations WHERE dataset_id = ? ORDER BY id",
        [dataset_id],
    ).fetchall()
    return [_annotation(row) for row in rows]


def create_annotation(
    cursor: DuckDBPyConnection,
    dataset_id: int,
    image_id: int,
    category_id: int,
    bbox: list[float],
    area: float,
    is_crowd: bool,
    external_id: int,
) -> AnnotationRecord:
    x, y, w, h = (float(v) for v in bbox)
    row = cursor.execute(
        "INSERT INTO annotations "
        "(dataset_id, image_id, category_id, bbox_x, bbox_y, bbox_w, bbox_h, "
        "area, is_crowd, external_id) "
        f"VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?) RETURNING {_ANNOTATION_COLUMNS}",
        [dataset_id, image_id, category_id, x, y, w, h, area, is_crowd, external_id],
    ).fetchone()
    return _annotation(row)


def update_annotation(
    cursor: DuckDBPyConnection,
    annotation_id: int,
    bbox: list[float] | None = None,
    category_id: int | None = None,
) -> AnnotationRecord | None:
    """Move/resize an annotation and/or change its category.

    The area is recomputed from the new box whenever *bbox* is given.
    """
    current = find_annotation(cursor, annotation_id)
    if current is None:
        return None
    x, y, w, h = bbox if bbox is not None else current.bbox
    area = w * h if bbox is not None else current.area
    row = cursor.execute(
        "UPDATE annotations SET bbox_x = ?, bbox_y = ?, bbox_w = ?, bbox_h = ?, "
        "area = ?, category_id = ? "
        f"WHERE id = ? RETURNING {_ANNOTATION_COLUMNS}",
        [
            x,
            y,
            w,
            h,
            area,
            category_id if category_id is not None else current.category_id,
            annotation_id,
        ],
    ).fetchone()
    return _annotation(row)


def delete_annotation(cursor: DuckDBPyConnection, annotation_id: int) -> bool:
    row = cursor.execute(
        "DELETE FROM annotations WHERE id = ? RETURNING id", [annotation_id]
    ).fetchone()
    return row is not None


# ------------------------------------------------------------------
# Bulk load
# ------------------------------------------------------------------


def load_source_dataset(
    cursor: DuckDBPyConnection, dataset_id: int
) -> SourceDataset | None:
    """Load a dataset with its categories, images and annotations.

    Each annotation carries its category when that category exists in the
    same dataset; otherwise ``annotation.category`` is ``None`` and the
    reference is left for the merge engine to repair.
    """
    dataset = find_dataset(cursor, dataset_id)
    if dataset is None:
        return None

    categories = list_categories(cursor, dataset_id)
    by_id = {category.id: category for category in categories}
    images = list_images(cursor, dataset_id)

    annotations_by_image: dict[int, list[AnnotationRecord]] = defaultdict(list)
    for annotation in list_annotations(cursor, dataset_id):
        annotation.category = by_id.get(annotation.category_id)
        annotations_by_image[annotation.image_id].append(annotation)

    for image in images:
        image.annotations = annotations_by_image.get(image.id, [])

    return SourceDataset(dataset=dataset, categories=categories, images=images)
