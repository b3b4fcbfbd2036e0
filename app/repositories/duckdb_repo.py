"""DuckDB connection wrapper with schema initialization and transactions."""

from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import duckdb


class DuckDBRepo:
    """Manages a DuckDB connection and schema lifecycle.

    Opens a single persistent connection at startup.  Callers obtain
    cursors via ``connection.cursor()`` for concurrent read access, or
    via :meth:`transaction` for multi-statement writes.
    """

    def __init__(self, db_path: str | Path) -> None:
        db_path = Path(db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self.connection: duckdb.DuckDBPyConnection = duckdb.connect(str(db_path))
        self.connection.execute("PRAGMA threads=4")

    def initialize_schema(self) -> None:
        """Create sequences, tables and unique indexes if they do not exist.

        No FOREIGN KEY constraints are used -- referential integrity of
        merged datasets is maintained by the merge engine.  The unique
        indexes enforce one external (COCO) id per dataset for each of
        categories, images and annotations.
        """
        for name in ("datasets", "categories", "images", "annotations"):
            self.connection.execute(
                f"CREATE SEQUENCE IF NOT EXISTS seq_{name} START 1"
            )

        self.connection.execute("""
            CREATE TABLE IF NOT EXISTS datasets (
                id              INTEGER DEFAULT nextval('seq_datasets'),
                name            VARCHAR NOT NULL,
                description     VARCHAR,
                created_at      TIMESTAMP DEFAULT current_timestamp
            )
        """)

        self.connection.execute("""
            CREATE TABLE IF NOT EXISTS categories (
                id              INTEGER DEFAULT nextval('seq_categories'),
                dataset_id      INTEGER NOT NULL,
                external_id     INTEGER NOT NULL,
                name            VARCHAR NOT NULL,
                supercategory   VARCHAR
            )
        """)

        self.connection.execute("""
            CREATE TABLE IF NOT EXISTS images (
                id              INTEGER DEFAULT nextval('seq_images'),
                dataset_id      INTEGER NOT NULL,
                file_name       VARCHAR NOT NULL,
                width           INTEGER NOT NULL,
                height          INTEGER NOT NULL,
                external_id     INTEGER NOT NULL,
                file_path       VARCHAR,
                thumbnail_path  VARCHAR
            )
        """)

        self.connection.execute("""
            CREATE TABLE IF NOT EXISTS annotations (
                id              INTEGER DEFAULT nextval('seq_annotations'),
                dataset_id      INTEGER NOT NULL,
                image_id        INTEGER NOT NULL,
                category_id     INTEGER NOT NULL,
                bbox_x          DOUBLE NOT NULL,
                bbox_y          DOUBLE NOT NULL,
                bbox_w          DOUBLE NOT NULL,
                bbox_h          DOUBLE NOT NULL,
                area            DOUBLE DEFAULT 0.0,
                is_crowd        BOOLEAN DEFAULT false,
                external_id     INTEGER NOT NULL
            )
        """)

        for table in ("categories", "images", "annotations"):
            self.connection.execute(
                f"CREATE UNIQUE INDEX IF NOT EXISTS uq_{table}_dataset_external "
                f"ON {table} (dataset_id, external_id)"
            )

    @contextmanager
    def transaction(self) -> Iterator[duckdb.DuckDBPyConnection]:
        """Yield a cursor inside ``BEGIN``; commit on exit, roll back on error.

        Every statement issued through the yielded cursor belongs to the
        same transaction, so concurrent readers never observe a partial
        write.
        """
        cursor = self.connection.cursor()
        cursor.begin()
        try:
            yield cursor
        except BaseException:
            cursor.rollback()
            raise
        else:
            cursor.commit()
        finally:
            cursor.close()

    def close(self) -> None:
        """Close the underlying DuckDB connection."""
        self.connection.close()
