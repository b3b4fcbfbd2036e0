"""Abstract base parser interface for dataset ingestion."""

from abc import ABC, abstractmethod
from collections.abc import Iterator
from pathlib import Path

import pandas as pd


class BaseParser(ABC):
    """Extension point for annotation format parsers.

    Subclasses implement streaming parse methods that yield pandas
    DataFrames in configurable batches, ready for DuckDB bulk insert via
    ``INSERT INTO table (...) SELECT ... FROM batch_df``.
    """

    def __init__(self, batch_size: int = 1000) -> None:
        self.batch_size = batch_size

    @property
    @abstractmethod
    def format_name(self) -> str:
        """Short identifier for the format, e.g. ``'coco'``."""
        ...

    @abstractmethod
    def parse_categories(self, file_path: Path) -> pd.DataFrame:
        """Return the file's categories.

        Columns: ``external_id, name, supercategory``.  Should return an
        empty frame rather than raise when category information is
        missing.
        """
        ...

    @abstractmethod
    def build_image_batches(
        self, file_path: Path, dataset_id: int
    ) -> Iterator[pd.DataFrame]:
        """Yield DataFrames of image records in batches.

        Columns: ``dataset_id, file_name, width, height, external_id``.
        """
        ...

    @abstractmethod
    def build_annotation_batches(
        self, file_path: Path, dataset_id: int
    ) -> Iterator[pd.DataFrame]:
        """Yield DataFrames of annotation records in batches.

        Columns: ``dataset_id, image_external_id, category_external_id,
        bbox_x, bbox_y, bbox_w, bbox_h, area, is_crowd, external_id``.
        Image and category references are still external (file) ids.
        """
        ...
