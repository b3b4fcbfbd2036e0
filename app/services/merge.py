"""Dataset merge orchestration.

Merges two or more source datasets into a new or an existing target
dataset inside a single DuckDB transaction:

``INIT -> CATEGORIES_MAPPED -> IMAGES_RESOLVED -> ASSETS_COPIED ->
ANNOTATIONS_REPARENTED -> COMMITTED``, with ``FAILED`` reachable from
every state.

Source datasets are only read.  Object-store copies are not covered by
the transaction, so they are only ever written to keys no stored object
uses yet: if the commit fails after copies were made, the copied keys are
reported in ``MergeResult.orphaned_objects`` and left in place.  Objects
of target images replaced by the merge are deleted after the commit.
"""

from __future__ import annotations

import logging
import math
import time
import uuid
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass

from duckdb import DuckDBPyConnection

from app.errors import (
    DatasetNotFoundError,
    MergeFailedError,
    MergeTimeoutError,
    MergeValidationError,
)
from app.models.merge import (
    DuplicateWarning,
    MergeRequest,
    MergeResult,
    MergeState,
    MergeStatistics,
    MergeStrategy,
)
from app.repositories import records
from app.repositories.duckdb_repo import DuckDBRepo
from app.repositories.records import DatasetRecord, ImageRecord, SourceDataset
from app.repositories.storage import ObjectStore
from app.services.category_mapping import (
    CategoryMapping,
    CategoryMappingResolver,
    check_decisions,
    collect_entries,
)
from app.services.duplicate_images import (
    ImagePlacement,
    group_by_file_name,
    resolve_against_target,
    resolve_duplicates,
)
from app.services.merge_analyzer import group_conflicts
from app.services.merge_progress import MergeProgressStore

logger = logging.getLogger(__name__)

# Dataset creation, category mapping and duplicate resolution.
SETUP_STEPS = 3


def object_key(dataset_id: int, file_name: str) -> str:
    """Object-store key of an image file inside a dataset."""
    return f"dataset-{dataset_id}/{file_name}"


def thumbnail_key(dataset_id: int, file_name: str) -> str:
    """Object-store key of an image's thumbnail inside a dataset."""
    return f"dataset-{dataset_id}/thumbnails/{file_name}"


def _valid_bbox(bbox: list[float]) -> bool:
    return len(bbox) == 4 and all(
        isinstance(v, (int, float)) and math.isfinite(v) for v in bbox
    )


@dataclass
class CopyTask:
    """One queued object copy for a staged target image."""

    src: str
    dst: str
    image_id: int
    file_name: str
    is_thumbnail: bool = False


@dataclass
class StagedImage:
    placement: ImagePlacement
    record: ImageRecord


class MergeRun:
    """State of one merge execution.  Not reusable."""

    def __init__(
        self,
        merge_id: str,
        request: MergeRequest,
        storage: ObjectStore,
        progress: MergeProgressStore,
        copy_concurrency: int,
        deadline: float,
        clock: Callable[[], float],
    ) -> None:
        self.merge_id = merge_id
        self.request = request
        self.storage = storage
        self.progress = progress
        self.copy_concurrency = max(1, copy_concurrency)
        self.deadline = deadline
        self.clock = clock

        self.state = MergeState.INIT
        self.statistics = MergeStatistics(
            total_source_datasets=len(request.source_dataset_ids)
        )
        self.duplicate_warnings: list[DuplicateWarning] = []
        self.errors: list[str] = []
        self.copy_errors: list[str] = []
        self.annotation_errors: list[str] = []
        self.written_keys: list[str] = []
        self.claimed_keys: set[str] = set()
        self.replaced_keys: list[str] = []
        self.target: DatasetRecord | None = None
        self.next_image_external_id = 1
        self.next_annotation_external_id = 1

        self.current = 0
        self.total = 0

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def _transition(self, state: MergeState) -> None:
        logger.debug("Merge %s: %s -> %s", self.merge_id, self.state.value, state.value)
        self.state = state

    def _advance(self, operation: str, steps: int = 1) -> None:
        self.current += steps
        self.progress.update(self.merge_id, self.current, self.total, operation)

    def _check_deadline(self) -> None:
        if self.clock() > self.deadline:
            raise MergeTimeoutError(
                f"Merge {self.merge_id} exceeded its time limit and was rolled back"
            )

    def _unused_key(self, key_for: Callable[[str], str], file_name: str) -> str:
        """Return a destination key that no stored object or earlier copy uses.

        Copies happen before the commit, so they must never land on a key a
        committed image still points at.
        """
        key = key_for(file_name)
        attempt = 0
        while key in self.claimed_keys or self.storage.exists(key):
            attempt += 1
            revision = self.merge_id if attempt == 1 else f"{self.merge_id}_{attempt}"
            key = key_for(f"{revision}/{file_name}")
        self.claimed_keys.add(key)
        return key

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def _load(
        self, cursor: DuckDBPyConnection
    ) -> tuple[list[SourceDataset], DatasetRecord | None]:
        self.progress.update(self.merge_id, 0, 100, "Loading source datasets...")
        sources: list[SourceDataset] = []
        missing: list[int] = []
        for dataset_id in self.request.source_dataset_ids:
            source = records.load_source_dataset(cursor, dataset_id)
            if source is None:
                missing.append(dataset_id)
            else:
                sources.append(source)

        target = None
        if self.request.merge_strategy is MergeStrategy.MERGE_INTO_EXISTING:
            target = records.find_dataset(cursor, self.request.target_dataset_id)
            if target is None:
                missing.append(self.request.target_dataset_id)

        if missing:
            raise DatasetNotFoundError(missing)
        return sources, target

    def _check_decisions(
        self,
        cursor: DuckDBPyConnection,
        sources: list[SourceDataset],
        target: DatasetRecord | None,
    ) -> None:
        target_categories = (
            records.list_categories(cursor, target.id) if target is not None else []
        )
        conflicts, _ = group_conflicts(
            collect_entries(sources, target_categories),
            self.request.category_merge_strategy,
        )
        check_decisions(self.request.category_mapping_decisions, conflicts)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _select_target(
        self,
        cursor: DuckDBPyConnection,
        sources: list[SourceDataset],
        target: DatasetRecord | None,
    ) -> DatasetRecord:
        if target is not None:
            self._advance(f"Merging into existing dataset: {target.name}")
            return target
        self._advance("Creating merged dataset...")
        description = self.request.new_dataset_description or (
            "Merged dataset from: " + ", ".join(s.name for s in sources)
        )
        return records.create_dataset(
            cursor, self.request.new_dataset_name.strip(), description
        )

    def _map_categories(
        self, cursor: DuckDBPyConnection, sources: list[SourceDataset]
    ) -> CategoryMapping:
        self._advance("Processing categories...")
        resolver = CategoryMappingResolver(
            cursor,
            self.target.id,
            self.request.category_merge_strategy,
            self.request.category_mapping_decisions,
        )

        def on_category(operation: str) -> None:
            self._check_deadline()
            self._advance(operation)

        mapping = resolver.resolve(sources, on_category=on_category)
        stats = self.statistics
        stats.categories_processed = mapping.processed
        stats.categories_created = mapping.created
        stats.categories_reused = mapping.reused
        stats.orphan_categories_recovered = mapping.orphans_recovered
        stats.placeholder_categories_created = mapping.placeholders_created
        if mapping.placeholders_created:
            self.errors.append(
                f"{mapping.placeholders_created} placeholder categories created "
                "for annotations referencing missing categories"
            )
        return mapping

    def _skip(self, placement: ImagePlacement) -> None:
        self.statistics.images_processed += 1
        self.statistics.images_skipped += 1
        self.statistics.annotations_processed += len(placement.image.annotations)
        self._advance(
            f"Skipping duplicate image: {placement.file_name} from {placement.source.name}",
            steps=1 + len(placement.image.annotations),
        )

    def _resolve_images(
        self, cursor: DuckDBPyConnection, sources: list[SourceDataset]
    ) -> list[ImagePlacement]:
        self._advance("Resolving duplicate images...")
        strategy = self.request.handle_duplicate_images
        # Reserved before any target image is replaced so a deleted
        # external id is never reused inside this transaction.
        self.next_image_external_id = records.next_external_id(
            cursor, "images", self.target.id
        )
        self.next_annotation_external_id = records.next_external_id(
            cursor, "annotations", self.target.id
        )
        groups = group_by_file_name(sources)

        existing: dict[str, ImageRecord] = {}
        existing_counts: dict[int, int] = {}
        if self.request.merge_strategy is MergeStrategy.MERGE_INTO_EXISTING:
            for image in records.list_images(cursor, self.target.id):
                existing.setdefault(image.file_name, image)
            existing_counts = records.image_annotation_counts(cursor, self.target.id)

        taken = set(groups) | set(existing)
        survivors: list[ImagePlacement] = []
        for group in groups.values():
            resolution = resolve_duplicates(group, strategy, taken)
            if resolution.warning is not None:
                self.duplicate_warnings.append(resolution.warning)
                self.statistics.duplicate_images_found += len(group) - 1
            for placement in resolution.discarded:
                self._skip(placement)

            for placement in resolution.survivors:
                current = existing.get(placement.file_name)
                if current is None:
                    survivors.append(placement)
                    continue

                self.statistics.duplicate_images_found += 1
                incoming, replace = resolve_against_target(
                    placement, existing_counts.get(current.id, 0), strategy, taken
                )
                self.duplicate_warnings.append(
                    DuplicateWarning(
                        file_name=placement.file_name,
                        count=2,
                        datasets=[self.target.name, placement.source.name],
                        selected_dataset=(
                            placement.source.name
                            if replace
                            else self.target.name if incoming is None else None
                        ),
                        reason=(
                            f"Image already exists in target dataset; "
                            f"resolved with '{strategy.value}'"
                        ),
                    )
                )
                if replace:
                    self.replaced_keys.extend(
                        key for key in (current.file_path, current.thumbnail_path) if key
                    )
                    removed = records.delete_image(cursor, current.id)
                    del existing[placement.file_name]
                    logger.info(
                        "Replaced target image %s (%d annotations removed)",
                        placement.file_name,
                        removed,
                    )
                if incoming is None:
                    self._skip(placement)
                else:
                    survivors.append(incoming)

        self._transition(MergeState.IMAGES_RESOLVED)
        return survivors

    def _stage_images(
        self, cursor: DuckDBPyConnection, survivors: list[ImagePlacement]
    ) -> tuple[list[StagedImage], list[CopyTask]]:
        next_external_id = self.next_image_external_id
        staged: list[StagedImage] = []
        tasks: list[CopyTask] = []

        for placement in survivors:
            self._check_deadline()
            image = placement.image
            file_path = None
            thumbnail_path = None

            if image.file_path:
                file_path = self._unused_key(
                    lambda name: object_key(self.target.id, name), placement.file_name
                )
            else:
                self.statistics.images_without_file += 1
                self.copy_errors.append(
                    f"Image {image.file_name} from {placement.source.name} "
                    "has no stored file; record created without one"
                )

            if image.thumbnail_path and self.storage.exists(image.thumbnail_path):
                thumbnail_path = self._unused_key(
                    lambda name: thumbnail_key(self.target.id, name), placement.file_name
                )

            record = records.create_image(
                cursor,
                self.target.id,
                placement.file_name,
                image.width,
                image.height,
                next_external_id,
                file_path=file_path,
                thumbnail_path=thumbnail_path,
            )
            next_external_id += 1

            if file_path is not None:
                tasks.append(
                    CopyTask(image.file_path, file_path, record.id, placement.file_name)
                )
            if thumbnail_path is not None:
                tasks.append(
                    CopyTask(
                        image.thumbnail_path,
                        thumbnail_path,
                        record.id,
                        placement.file_name,
                        is_thumbnail=True,
                    )
                )

            staged.append(StagedImage(placement=placement, record=record))
            self.statistics.images_processed += 1
            self.statistics.images_copied += 1
            self._advance(
                f"Processing image: {placement.file_name} from {placement.source.name}"
            )

        return staged, tasks

    def _record_copy(
        self, task: CopyTask, future: Future, failed_thumbnails: set[int]
    ) -> None:
        kind = "thumbnail" if task.is_thumbnail else "file"
        try:
            future.result()
        except Exception as exc:
            logger.warning(
                "Failed to copy %s %s -> %s",
                kind,
                task.src,
                task.dst,
                exc_info=True,
            )
            if task.is_thumbnail:
                self.statistics.thumbnails_copy_failed += 1
                failed_thumbnails.add(task.image_id)
            else:
                self.statistics.files_copy_failed += 1
                self.copy_errors.append(f"Failed to copy file {task.file_name}: {exc}")
            return

        self.written_keys.append(task.dst)
        if task.is_thumbnail:
            self.statistics.thumbnails_copied += 1
        else:
            self.statistics.files_copied += 1

    def _copy_assets(
        self, cursor: DuckDBPyConnection, staged: list[StagedImage], tasks: list[CopyTask]
    ) -> None:
        """Run the queued copies with bounded fan-out; failures are per object.

        Once the deadline passes, copies not yet started are cancelled and
        the run fails after the running ones finish, so every written key
        is still accounted for.
        """
        self.progress.update(
            self.merge_id, self.current, self.total, f"Copying {len(tasks)} files..."
        )
        failed_thumbnails: set[int] = set()
        recorded: set[Future] = set()

        with ThreadPoolExecutor(max_workers=self.copy_concurrency) as pool:
            futures = {
                pool.submit(self.storage.copy, task.src, task.dst): task for task in tasks
            }
            for future in as_completed(futures):
                self._record_copy(futures[future], future, failed_thumbnails)
                recorded.add(future)
                if self.clock() > self.deadline:
                    for pending in futures:
                        pending.cancel()
                    break

        for future, task in futures.items():
            if future not in recorded and not future.cancelled():
                self._record_copy(task, future, failed_thumbnails)
        self._check_deadline()

        # The cursor is not shared with the copy threads.
        for item in staged:
            if item.record.id in failed_thumbnails:
                records.update_image_paths(
                    cursor, item.record.id, item.record.file_path, None
                )
                item.record.thumbnail_path = None

        self._transition(MergeState.ASSETS_COPIED)

    def _reparent_annotations(
        self,
        cursor: DuckDBPyConnection,
        staged: list[StagedImage],
        mapping: CategoryMapping,
    ) -> None:
        next_external_id = self.next_annotation_external_id
        stats = self.statistics

        for item in staged:
            self._check_deadline()
            source = item.placement.source
            for annotation in item.placement.image.annotations:
                self._advance(
                    f"Processing annotation for image: {item.placement.file_name}"
                )
                stats.annotations_processed += 1

                category_id = mapping.target_for(source.id, annotation.category_id)
                if category_id is None:
                    stats.annotations_skipped_no_category += 1
                    self.annotation_errors.append(
                        f"Annotation {annotation.id} for image {item.placement.file_name} "
                        f"skipped - category {annotation.category_id} not found"
                    )
                    continue

                if not _valid_bbox(annotation.bbox):
                    stats.annotations_copy_failed += 1
                    self.annotation_errors.append(
                        f"Failed to copy annotation {annotation.id} for image "
                        f"{item.placement.file_name}: invalid bbox {annotation.bbox}"
                    )
                    continue

                records.create_annotation(
                    cursor,
                    self.target.id,
                    item.record.id,
                    category_id,
                    annotation.bbox,
                    annotation.area,
                    annotation.is_crowd,
                    next_external_id,
                )
                next_external_id += 1
                stats.annotations_copied += 1

        self._transition(MergeState.ANNOTATIONS_REPARENTED)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def execute(self, cursor: DuckDBPyConnection) -> None:
        """Run every step up to (not including) the commit."""
        sources, target = self._load(cursor)
        self._check_decisions(cursor, sources, target)

        category_count = sum(len(s.categories) for s in sources)
        image_count = sum(len(s.images) for s in sources)
        annotation_count = sum(s.annotation_count for s in sources)
        self.total = category_count + image_count + annotation_count + SETUP_STEPS
        self.progress.initialize(self.merge_id, self.total)
        logger.info(
            "Merge %s: %d datasets, %d categories, %d images, %d annotations",
            self.merge_id,
            len(sources),
            category_count,
            image_count,
            annotation_count,
        )

        self.target = self._select_target(cursor, sources, target)
        mapping = self._map_categories(cursor, sources)
        self._transition(MergeState.CATEGORIES_MAPPED)

        survivors = self._resolve_images(cursor, sources)
        staged, tasks = self._stage_images(cursor, survivors)
        self._check_deadline()
        self._copy_assets(cursor, staged, tasks)
        self._reparent_annotations(cursor, staged, mapping)
        self._check_deadline()

        self.progress.update(
            self.merge_id, self.current, self.total, "Committing merged dataset..."
        )

    def release_replaced(self, cursor: DuckDBPyConnection) -> None:
        """Delete objects of replaced target images that nothing points at any more."""
        for key in self.replaced_keys:
            if records.object_key_in_use(cursor, key):
                continue
            try:
                self.storage.delete(key)
            except OSError:
                logger.warning("Failed to delete replaced object %s", key, exc_info=True)

    def result(self, success: bool, message: str) -> MergeResult:
        return MergeResult(
            success=success,
            merge_id=self.merge_id,
            dataset_id=self.target.id if self.target is not None and success else None,
            state=self.state,
            message=message,
            statistics=self.statistics,
            duplicate_warnings=self.duplicate_warnings,
            errors=self.errors + self.copy_errors + self.annotation_errors,
            copy_errors=self.copy_errors,
            annotation_errors=self.annotation_errors,
            orphaned_objects=[] if success else sorted(self.written_keys),
        )


class MergeService:
    """Validates merge requests and runs them against the stores.

    Collaborators are injected:

    * *db* -- DuckDB repository providing the merge transaction.
    * *storage* -- object store holding image files and thumbnails.
    * *progress* -- store polled by clients for run progress.
    """

    def __init__(
        self,
        db: DuckDBRepo,
        storage: ObjectStore,
        progress: MergeProgressStore,
        copy_concurrency: int = 5,
        timeout_seconds: float = 600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.db = db
        self.storage = storage
        self.progress = progress
        self.copy_concurrency = copy_concurrency
        self.timeout_seconds = timeout_seconds
        self.clock = clock

    @staticmethod
    def validate(request: MergeRequest) -> None:
        """Reject malformed requests before anything is read or written."""
        ids = request.source_dataset_ids
        if len(ids) < 2:
            raise MergeValidationError("At least two source datasets are required")
        if len(set(ids)) != len(ids):
            raise MergeValidationError("Source dataset ids must be distinct")

        match request.merge_strategy:
            case MergeStrategy.CREATE_NEW:
                if not (request.new_dataset_name or "").strip():
                    raise MergeValidationError(
                        "new_dataset_name is required when creating a new dataset"
                    )
            case MergeStrategy.MERGE_INTO_EXISTING:
                if request.target_dataset_id is None:
                    raise MergeValidationError(
                        "target_dataset_id is required when merging into an existing dataset"
                    )
                if request.target_dataset_id in ids:
                    raise MergeValidationError(
                        "The target dataset cannot also be a source dataset"
                    )

    def merge(self, request: MergeRequest) -> MergeResult:
        """Merge the requested datasets and return the itemised result.

        Raises :class:`MergeValidationError` or :class:`DatasetNotFoundError`
        with nothing written, or :class:`MergeFailedError` when the run
        failed and the transaction was rolled back.
        """
        merge_id = request.merge_id or f"merge_{uuid.uuid4().hex}"
        run = MergeRun(
            merge_id=merge_id,
            request=request,
            storage=self.storage,
            progress=self.progress,
            copy_concurrency=self.copy_concurrency,
            deadline=self.clock() + self.timeout_seconds,
            clock=self.clock,
        )

        try:
            self.validate(request)
            with self.db.transaction() as cursor:
                run.execute(cursor)
        except (MergeValidationError, DatasetNotFoundError) as exc:
            run.state = MergeState.FAILED
            self.progress.complete(merge_id, False, {"error": str(exc)}, str(exc))
            raise
        except Exception as exc:
            failed_in = run.state
            run.state = MergeState.FAILED
            logger.exception("Merge %s failed after state %s", merge_id, failed_in.value)
            if run.written_keys:
                logger.warning(
                    "Merge %s rolled back; %d copied objects remain: %s",
                    merge_id,
                    len(run.written_keys),
                    ", ".join(sorted(run.written_keys)),
                )
            run.errors.append(f"Merge failed after {failed_in.value}: {exc}")
            result = run.result(False, "Failed to merge datasets")
            self.progress.complete(
                merge_id, False, result.model_dump(mode="json"), "Merge failed"
            )
            raise MergeFailedError(str(exc), result) from exc

        run.state = MergeState.COMMITTED
        if run.replaced_keys:
            cursor = self.db.connection.cursor()
            try:
                run.release_replaced(cursor)
            finally:
                cursor.close()
        message = (
            f"Successfully merged {len(request.source_dataset_ids)} datasets "
            f'into "{run.target.name}"'
        )
        result = run.result(True, message)
        self.progress.complete(
            merge_id, True, result.model_dump(mode="json"), "Merge completed successfully!"
        )
        logger.info("Merge %s committed: dataset %d", merge_id, run.target.id)
        return result
