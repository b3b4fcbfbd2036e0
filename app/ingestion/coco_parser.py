"""Streaming COCO JSON parser using ijson with DataFrame batch output.

Always opens files in **binary mode** (``"rb"``) because ijson's
``yajl2_c`` backend operates on raw bytes.  Uses ``use_float=True`` to
avoid ``Decimal`` overhead for coordinate values.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from pathlib import Path

import ijson
import pandas as pd

from app.ingestion.base_parser import BaseParser

logger = logging.getLogger(__name__)

CATEGORY_COLUMNS = ["external_id", "name", "supercategory"]


def _bbox(raw) -> list[float]:
    if not isinstance(raw, (list, tuple)) or len(raw) < 4:
        return [0.0, 0.0, 0.0, 0.0]
    try:
        return [float(v) for v in raw[:4]]
    except (TypeError, ValueError):
        return [0.0, 0.0, 0.0, 0.0]


class COCOParser(BaseParser):
    """Streaming parser for the COCO detection format.

    Yields :class:`pandas.DataFrame` batches keyed by the file's own
    (external) ids; the ingestion service joins them onto internal ids.
    """

    @property
    def format_name(self) -> str:  # noqa: D401
        """Format identifier."""
        return "coco"

    # ------------------------------------------------------------------
    # Low-level streaming helpers
    # ------------------------------------------------------------------

    def parse_categories(self, file_path: Path) -> pd.DataFrame:
        """Extract the ``categories`` array.

        Returns an empty frame if the key is missing or malformed rather
        than raising.  Repeated ids keep their first definition.
        """
        rows: list[dict] = []
        seen: set[int] = set()
        try:
            with open(file_path, "rb") as f:
                for cat in ijson.items(f, "categories.item"):
                    external_id = int(cat["id"])
                    if external_id in seen:
                        logger.warning(
                            "Duplicate category id %d in %s, keeping first",
                            external_id,
                            file_path,
                        )
                        continue
                    seen.add(external_id)
                    rows.append(
                        {
                            "external_id": external_id,
                            "name": str(cat["name"]),
                            "supercategory": cat.get("supercategory") or None,
                        }
                    )
        except (ijson.IncompleteJSONError, KeyError, TypeError, ValueError):
            logger.warning("Could not parse categories from %s", file_path)
        return pd.DataFrame(rows, columns=CATEGORY_COLUMNS)

    def parse_images_streaming(self, file_path: Path) -> Iterator[dict]:
        """Yield raw image dicts one at a time from the COCO file."""
        with open(file_path, "rb") as f:
            yield from ijson.items(f, "images.item", use_float=True)

    def parse_annotations_streaming(self, file_path: Path) -> Iterator[dict]:
        """Yield raw annotation dicts one at a time from the COCO file."""
        with open(file_path, "rb") as f:
            yield from ijson.items(f, "annotations.item", use_float=True)

    # ------------------------------------------------------------------
    # DataFrame batch builders
    # ------------------------------------------------------------------

    def build_image_batches(
        self, file_path: Path, dataset_id: int
    ) -> Iterator[pd.DataFrame]:
        """Yield DataFrames of image records.

        Column order: ``dataset_id, file_name, width, height, external_id``.
        """
        batch: list[dict] = []
        for image in self.parse_images_streaming(file_path):
            width = image.get("width") or 0
            height = image.get("height") or 0
            if width == 0 or height == 0:
                logger.warning(
                    "Image %s missing width/height, defaulting to 0",
                    image.get("id"),
                )
            batch.append(
                {
                    "dataset_id": dataset_id,
                    "file_name": image["file_name"],
                    "width": int(width),
                    "height": int(height),
                    "external_id": int(image["id"]),
                }
            )
            if len(batch) >= self.batch_size:
                yield pd.DataFrame(batch)
                batch = []
        if batch:
            yield pd.DataFrame(batch)

    def build_annotation_batches(
        self, file_path: Path, dataset_id: int
    ) -> Iterator[pd.DataFrame]:
        """Yield DataFrames of annotation records.

        Column order: ``dataset_id, image_external_id,
        category_external_id, bbox_x, bbox_y, bbox_w, bbox_h, area,
        is_crowd, external_id``.  Annotations without a ``category_id``
        get ``-1``, which never joins and is counted as skipped.
        """
        batch: list[dict] = []
        for ann in self.parse_annotations_streaming(file_path):
            bbox = _bbox(ann.get("bbox"))
            area = ann.get("area")
            cat_id = ann.get("category_id")
            batch.append(
                {
                    "dataset_id": dataset_id,
                    "image_external_id": int(ann["image_id"]),
                    "category_external_id": int(cat_id) if cat_id is not None else -1,
                    "bbox_x": bbox[0],
                    "bbox_y": bbox[1],
                    "bbox_w": bbox[2],
                    "bbox_h": bbox[3],
                    "area": float(area) if area is not None else bbox[2] * bbox[3],
                    "is_crowd": bool(ann.get("iscrowd", 0)),
                    "external_id": int(ann["id"]),
                }
            )
            if len(batch) >= self.batch_size:
                yield pd.DataFrame(batch)
                batch = []
        if batch:
            yield pd.DataFrame(batch)
