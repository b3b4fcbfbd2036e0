"""COCO ingestion service with streaming progress.

Coordinates COCO parsing, DuckDB bulk inserts and (optionally) upload of
the referenced image files into the object store.  Exposed to the API
layer as an SSE-compatible synchronous generator via
:meth:`IngestionService.ingest_with_progress`.
"""

from __future__ import annotations

import logging
import posixpath
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path

import fsspec
from duckdb import DuckDBPyConnection

from app.ingestion.coco_parser import COCOParser
from app.repositories import records
from app.repositories.duckdb_repo import DuckDBRepo
from app.repositories.storage import ObjectStore, content_type_for

logger = logging.getLogger(__name__)


@dataclass
class IngestionProgress:
    """Progress update emitted during dataset ingestion.

    *stage* is one of ``"categories"``, ``"images"``, ``"annotations"``,
    ``"files"``, ``"complete"``.  *total* is ``None`` while the total is
    not yet known (streaming).  *dataset_id* is set once the dataset
    record exists.
    """

    stage: str
    current: int
    total: int | None
    message: str
    dataset_id: int | None = None


class IngestionService:
    """Streaming parse -> bulk insert -> optional file upload.

    * *db* -- DuckDB repository; the whole import is one transaction.
    * *storage* -- object store receiving image files when an image
      directory is given.
    """

    def __init__(self, db: DuckDBRepo, storage: ObjectStore, batch_size: int = 1000) -> None:
        self.db = db
        self.storage = storage
        self.batch_size = batch_size

    def _upload_files(
        self, cursor: DuckDBPyConnection, dataset_id: int, image_dir: str
    ) -> tuple[int, int]:
        """Copy each image's file from *image_dir* into the object store.

        Returns ``(uploaded, missing)``.  Missing or unreadable files are
        logged and leave the image without a ``file_path``.
        """
        fs, root = fsspec.core.url_to_fs(image_dir)
        root = root.rstrip("/")
        uploaded = missing = 0
        for image in records.list_images(cursor, dataset_id):
            source = posixpath.join(root, image.file_name)
            try:
                data = fs.cat_file(source)
            except (FileNotFoundError, IsADirectoryError, PermissionError):
                logger.warning("Image file not found: %s", source, exc_info=True)
                missing += 1
                continue
            key = self.storage.put(
                f"dataset-{dataset_id}/{image.file_name}",
                data,
                content_type_for(image.file_name),
            )
            records.update_image_paths(cursor, image.id, key, None)
            uploaded += 1
        return uploaded, missing

    def ingest_with_progress(
        self,
        annotation_path: str,
        dataset_name: str | None = None,
        description: str | None = None,
        image_dir: str | None = None,
    ) -> Iterator[IngestionProgress]:
        """Import a COCO file as a new dataset, yielding progress events.

        This is a **synchronous** generator -- FastAPI wraps it in a
        :class:`StreamingResponse` for SSE delivery.  Nothing is visible
        to other readers until the final ``complete`` event; an error (or
        the consumer closing the stream early) rolls the import back.

        Annotations referencing an image or category id that is not in
        the file are skipped and counted.
        """
        path = Path(annotation_path)
        if not path.is_file():
            raise FileNotFoundError(f"Annotation file not found: {annotation_path}")

        name = dataset_name or path.stem
        parser = COCOParser(batch_size=self.batch_size)

        with self.db.transaction() as cursor:
            dataset = records.create_dataset(cursor, name, description)
            dataset_id = dataset.id

            # -- Categories -------------------------------------------------
            cat_df = parser.parse_categories(path)
            cat_df.insert(0, "dataset_id", dataset_id)
            if not cat_df.empty:
                cursor.execute(
                    "INSERT INTO categories (dataset_id, external_id, name, supercategory) "
                    "SELECT dataset_id, external_id, name, supercategory FROM cat_df"
                )
            yield IngestionProgress(
                stage="categories",
                current=len(cat_df),
                total=len(cat_df),
                message=f"Loaded {len(cat_df)} categories",
                dataset_id=dataset_id,
            )

            # -- Images -----------------------------------------------------
            image_count = 0
            for batch_df in parser.build_image_batches(path, dataset_id):
                cursor.execute(
                    "INSERT INTO images (dataset_id, file_name, width, height, external_id) "
                    "SELECT dataset_id, file_name, width, height, external_id FROM batch_df"
                )
                image_count += len(batch_df)
                yield IngestionProgress(
                    stage="images",
                    current=image_count,
                    total=None,
                    message=f"Parsed {image_count} images",
                    dataset_id=dataset_id,
                )

            # -- Annotations ------------------------------------------------
            parsed = 0
            for batch_df in parser.build_annotation_batches(path, dataset_id):
                cursor.execute(
                    "INSERT INTO annotations "
                    "(dataset_id, image_id, category_id, bbox_x, bbox_y, bbox_w, "
                    "bbox_h, area, is_crowd, external_id) "
                    "SELECT b.dataset_id, i.id, c.id, b.bbox_x, b.bbox_y, b.bbox_w, "
                    "b.bbox_h, b.area, b.is_crowd, b.external_id "
                    "FROM batch_df b "
                    "JOIN images i ON i.dataset_id = b.dataset_id "
                    "AND i.external_id = b.image_external_id "
                    "JOIN categories c ON c.dataset_id = b.dataset_id "
                    "AND c.external_id = b.category_external_id"
                )
                parsed += len(batch_df)
                yield IngestionProgress(
                    stage="annotations",
                    current=parsed,
                    total=None,
                    message=f"Parsed {parsed} annotations",
                    dataset_id=dataset_id,
                )

            ann_count = cursor.execute(
                "SELECT COUNT(*) FROM annotations WHERE dataset_id = ?", [dataset_id]
            ).fetchone()[0]
            skipped = parsed - ann_count
            if skipped:
                logger.warning(
                    "Skipped %d annotations with unknown image or category in %s",
                    skipped,
                    annotation_path,
                )

            # -- Image files ------------------------------------------------
            if image_dir:
                uploaded, missing = self._upload_files(cursor, dataset_id, image_dir)
                yield IngestionProgress(
                    stage="files",
                    current=uploaded,
                    total=image_count,
                    message=f"Stored {uploaded} image files ({missing} missing)",
                    dataset_id=dataset_id,
                )

            if description is None:
                records.update_dataset(
                    cursor,
                    dataset_id,
                    description=f"Uploaded COCO dataset with {image_count} images",
                )

        logger.info(
            "Ingested %s as dataset %d: %d categories, %d images, %d annotations "
            "(%d skipped)",
            annotation_path,
            dataset_id,
            len(cat_df),
            image_count,
            ann_count,
            skipped,
        )
        yield IngestionProgress(
            stage="complete",
            current=image_count,
            total=image_count,
            message=(
                f"Ingestion complete: {image_count} images, "
                f"{ann_count} annotations ({skipped} skipped)"
            ),
            dataset_id=dataset_id,
        )

    def ingest(self, annotation_path: str, **kwargs) -> IngestionProgress:
        """Run :meth:`ingest_with_progress` to completion; return the last event."""
        last = None
        for last in self.ingest_with_progress(annotation_path, **kwargs):
            pass
        return last

