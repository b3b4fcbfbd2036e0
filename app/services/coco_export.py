"""Export a stored dataset back to COCO JSON.

Every id in the output is the dataset's external (COCO) id, so an export
of an imported dataset reproduces the ids of the original file.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any

from duckdb import DuckDBPyConnection

from app.errors import DatasetNotFoundError
from app.repositories import records


def export_file_name(dataset_name: str) -> str:
    """Download file name for a dataset export."""
    slug = re.sub(r"[^a-z0-9]", "_", (dataset_name or "dataset").lower())
    return f"{slug}_annotations.json"


def build_coco(cursor: DuckDBPyConnection, dataset_id: int) -> dict[str, Any]:
    """Return the COCO document for *dataset_id*.

    Raises :class:`DatasetNotFoundError` if the dataset does not exist.
    """
    dataset = records.find_dataset(cursor, dataset_id)
    if dataset is None:
        raise DatasetNotFoundError([dataset_id])

    now = datetime.now(timezone.utc)
    categories = records.list_categories(cursor, dataset_id)
    category_external = {c.id: c.external_id for c in categories}
    images = records.list_images(cursor, dataset_id)
    image_external = {image.id: image.external_id for image in images}

    annotations = []
    for annotation in records.list_annotations(cursor, dataset_id):
        # Annotations can only point outside their dataset through a
        # broken record; such rows cannot be expressed in COCO.
        if (
            annotation.image_id not in image_external
            or annotation.category_id not in category_external
        ):
            continue
        annotations.append(
            {
                "id": annotation.external_id,
                "image_id": image_external[annotation.image_id],
                "category_id": category_external[annotation.category_id],
                "segmentation": [],
                "area": annotation.area,
                "bbox": annotation.bbox,
                "iscrowd": int(annotation.is_crowd),
            }
        )

    return {
        "info": {
            "description": dataset.description or dataset.name,
            "url": "",
            "version": "1.0",
            "year": now.year,
            "contributor": "",
            "date_created": now.isoformat(),
        },
        "licenses": [{"id": 1, "name": "Unknown License", "url": ""}],
        "images": [
            {
                "id": image.external_id,
                "width": image.width,
                "height": image.height,
                "file_name": image.file_name,
                "license": 1,
            }
            for image in images
        ],
        "annotations": annotations,
        "categories": [
            {
                "id": c.external_id,
                "name": c.name,
                "supercategory": c.supercategory or "",
            }
            for c in categories
        ],
    }
