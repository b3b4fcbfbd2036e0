"""End-to-end tests for the merge orchestrator."""

from __future__ import annotations

from itertools import count

import pytest

from app.errors import DatasetNotFoundError, MergeFailedError, MergeValidationError
from app.models.merge import (
    CategoryMappingDecision,
    CategoryMergeStrategy,
    DuplicateImageStrategy,
    MappingAction,
    MergeRequest,
    MergeState,
    MergeStrategy,
)
from app.repositories import records
from app.repositories.duckdb_repo import DuckDBRepo
from app.repositories.storage import ObjectStore
from app.services.merge import MergeService
from app.services.merge_progress import MergeProgressStore

BOX = [0.0, 0.0, 10.0, 10.0]


def _load(db: DuckDBRepo, dataset_id: int):
    cursor = db.connection.cursor()
    try:
        return records.load_source_dataset(cursor, dataset_id)
    finally:
        cursor.close()


def _dataset_count(db: DuckDBRepo) -> int:
    return db.connection.execute("SELECT COUNT(*) FROM datasets").fetchone()[0]


def _request(ids, **kwargs) -> MergeRequest:
    kwargs.setdefault("new_dataset_name", "Merged")
    return MergeRequest(source_dataset_ids=ids, **kwargs)


@pytest.fixture()
def person_pair(make_dataset):
    a = make_dataset(
        "A",
        categories=[(1, "person"), (2, "car")],
        images=[("a1.jpg", [(1, BOX), (2, BOX)]), ("a2.jpg", [(1, BOX)])],
    )
    b = make_dataset(
        "B",
        categories=[(1, "person")],
        images=[("b1.jpg", [(1, BOX)])],
    )
    return a, b


@pytest.fixture()
def shared_three(make_dataset):
    """The same file name in three datasets, with 1, 2 and 3 annotations."""
    return [
        make_dataset(
            name,
            categories=[(1, "person")],
            images=[("shared.jpg", [(1, BOX)] * n)],
        )
        for name, n in (("A", 1), ("B", 2), ("C", 3))
    ]


# ------------------------------------------------------------------
# Category properties
# ------------------------------------------------------------------


class TestCategoryMerge:
    def test_merge_decision_single_target_category(
        self, db: DuckDBRepo, merge_service: MergeService, person_pair
    ) -> None:
        a, b = person_pair
        result = merge_service.merge(
            _request(
                [a.id, b.id],
                category_merge_strategy=CategoryMergeStrategy.KEEP_SEPARATE,
                category_mapping_decisions=[
                    CategoryMappingDecision(conflict_index=0, action=MappingAction.MERGE)
                ],
            )
        )

        assert result.success is True
        assert result.state is MergeState.COMMITTED
        merged = _load(db, result.dataset_id)
        persons = [c for c in merged.categories if c.name == "person"]
        assert len(persons) == 1
        person_annotations = [
            ann
            for image in merged.images
            for ann in image.annotations
            if ann.category_id == persons[0].id
        ]
        assert len(person_annotations) == 3

    def test_placeholder_for_missing_category(
        self, db: DuckDBRepo, merge_service: MergeService, make_dataset
    ) -> None:
        a = make_dataset(
            "A", categories=[(1, "person")], images=[("a.jpg", [(999, BOX)])]
        )
        b = make_dataset("B", categories=[(1, "person")])
        result = merge_service.merge(_request([a.id, b.id]))

        assert result.statistics.placeholder_categories_created == 1
        assert result.statistics.annotations_copied == 1
        merged = _load(db, result.dataset_id)
        names = {c.id: c.name for c in merged.categories}
        annotation = merged.images[0].annotations[0]
        assert names[annotation.category_id] == "[MISSING]_A_CategoryID_999"

    def test_category_missing_from_load_is_recovered(
        self, db: DuckDBRepo, merge_service: MergeService, make_dataset, monkeypatch
    ) -> None:
        a = make_dataset(
            "A",
            categories=[(1, "person"), (28, "toothbrush")],
            images=[("a.jpg", [(28, BOX)])],
        )
        b = make_dataset("B", categories=[(1, "person")])
        real_list = records.list_categories

        def without_toothbrush(cursor, dataset_id):
            categories = real_list(cursor, dataset_id)
            if dataset_id != a.id:
                return categories
            return [c for c in categories if c.name != "toothbrush"]

        monkeypatch.setattr(records, "list_categories", without_toothbrush)
        result = merge_service.merge(_request([a.id, b.id]))

        assert result.statistics.orphan_categories_recovered == 1
        assert result.statistics.placeholder_categories_created == 0
        assert result.statistics.annotations_copied == 1
        merged = _load(db, result.dataset_id)
        (annotation,) = merged.images[0].annotations
        assert annotation.category.name == "toothbrush"
        assert not annotation.category.name.startswith("[MISSING]_")

    def test_target_integrity(
        self, db: DuckDBRepo, merge_service: MergeService, person_pair, make_dataset
    ) -> None:
        a, b = person_pair
        c = make_dataset(
            "C", categories=[(1, "dog"), (2, "person")], images=[("c.jpg", [(1, BOX)])]
        )
        result = merge_service.merge(
            _request(
                [a.id, b.id, c.id],
                category_merge_strategy=CategoryMergeStrategy.KEEP_SEPARATE,
            )
        )

        merged = _load(db, result.dataset_id)
        external_ids = [cat.external_id for cat in merged.categories]
        assert len(external_ids) == len(set(external_ids))
        category_ids = {cat.id for cat in merged.categories}
        image_ids = {image.id for image in merged.images}
        for image in merged.images:
            for ann in image.annotations:
                assert ann.dataset_id == result.dataset_id
                assert ann.category_id in category_ids
                assert ann.image_id in image_ids
        annotation_external = [
            ann.external_id for image in merged.images for ann in image.annotations
        ]
        assert len(annotation_external) == len(set(annotation_external))


# ------------------------------------------------------------------
# Duplicate images
# ------------------------------------------------------------------


class TestDuplicateImages:
    def test_skip_keeps_one_image(
        self, db: DuckDBRepo, merge_service: MergeService, shared_three
    ) -> None:
        result = merge_service.merge(_request([d.id for d in shared_three]))

        merged = _load(db, result.dataset_id)
        assert [i.file_name for i in merged.images] == ["shared.jpg"]
        assert merged.annotation_count == 1
        assert result.statistics.images_skipped == 2
        assert result.statistics.duplicate_images_found == 2
        assert result.duplicate_warnings[0].selected_dataset == "A"

    def test_rename_keeps_every_image(
        self, db: DuckDBRepo, merge_service: MergeService, shared_three
    ) -> None:
        result = merge_service.merge(
            _request(
                [d.id for d in shared_three],
                handle_duplicate_images=DuplicateImageStrategy.RENAME,
            )
        )

        merged = _load(db, result.dataset_id)
        names = sorted(i.file_name for i in merged.images)
        assert names == ["shared.jpg", "shared_B.jpg", "shared_C.jpg"]
        assert merged.annotation_count == 6
        assert result.statistics.images_skipped == 0

    def test_keep_best_annotated(
        self, db: DuckDBRepo, merge_service: MergeService, shared_three
    ) -> None:
        result = merge_service.merge(
            _request(
                [d.id for d in shared_three],
                handle_duplicate_images=DuplicateImageStrategy.KEEP_BEST_ANNOTATED,
            )
        )
        merged = _load(db, result.dataset_id)
        assert merged.annotation_count == 3

    def test_sources_are_untouched(
        self, db: DuckDBRepo, merge_service: MergeService, shared_three
    ) -> None:
        before = [_load(db, d.id) for d in shared_three]
        merge_service.merge(_request([d.id for d in shared_three]))
        after = [_load(db, d.id) for d in shared_three]
        assert before == after


# ------------------------------------------------------------------
# Object copies
# ------------------------------------------------------------------


class TestAssetCopy:
    def test_files_and_thumbnails_copied(
        self,
        db: DuckDBRepo,
        object_store: ObjectStore,
        merge_service: MergeService,
        make_dataset,
    ) -> None:
        a = make_dataset("A", images=[("a.jpg", [])], thumbnails=True)
        b = make_dataset("B", images=[("b.jpg", [])])
        result = merge_service.merge(_request([a.id, b.id]))

        target = result.dataset_id
        assert object_store.get(f"dataset-{target}/a.jpg") == b"A:a.jpg"
        assert object_store.get(f"dataset-{target}/thumbnails/a.jpg") == b"A:a.jpg:thumb"
        assert result.statistics.files_copied == 2
        assert result.statistics.thumbnails_copied == 1

        images = {i.file_name: i for i in _load(db, target).images}
        assert images["a.jpg"].file_path == f"dataset-{target}/a.jpg"
        assert images["a.jpg"].thumbnail_path == f"dataset-{target}/thumbnails/a.jpg"
        assert images["b.jpg"].thumbnail_path is None

    def test_missing_source_file_is_not_fatal(
        self,
        db: DuckDBRepo,
        object_store: ObjectStore,
        merge_service: MergeService,
        make_dataset,
    ) -> None:
        a = make_dataset("A", categories=[(1, "x")], images=[("a.jpg", [(1, BOX)])])
        b = make_dataset("B", images=[("b.jpg", [])])
        object_store.delete(f"dataset-{a.id}/a.jpg")

        result = merge_service.merge(_request([a.id, b.id]))

        assert result.success is True
        assert result.statistics.files_copy_failed == 1
        assert result.statistics.files_copied == 1
        assert any("a.jpg" in e for e in result.copy_errors)
        merged = _load(db, result.dataset_id)
        assert merged.annotation_count == 1

    def test_image_without_file(
        self, db: DuckDBRepo, merge_service: MergeService, make_dataset
    ) -> None:
        a = make_dataset("A", images=[("a.jpg", [])], with_files=False)
        b = make_dataset("B", images=[("b.jpg", [])])
        result = merge_service.merge(_request([a.id, b.id]))

        assert result.statistics.images_without_file == 1
        images = {i.file_name: i for i in _load(db, result.dataset_id).images}
        assert images["a.jpg"].file_path is None

    def test_failed_thumbnail_copy_clears_path(
        self,
        db: DuckDBRepo,
        object_store: ObjectStore,
        merge_service: MergeService,
        make_dataset,
        monkeypatch,
    ) -> None:
        a = make_dataset("A", images=[("a.jpg", [])], thumbnails=True)
        b = make_dataset("B", images=[("b.jpg", [])])
        real_copy = object_store.copy

        def flaky_copy(src: str, dst: str) -> str:
            if "/thumbnails/" in dst:
                raise OSError("bucket unavailable")
            return real_copy(src, dst)

        monkeypatch.setattr(object_store, "copy", flaky_copy)
        result = merge_service.merge(_request([a.id, b.id]))

        assert result.success is True
        assert result.statistics.thumbnails_copy_failed == 1
        images = {i.file_name: i for i in _load(db, result.dataset_id).images}
        assert images["a.jpg"].thumbnail_path is None
        assert images["a.jpg"].file_path is not None


# ------------------------------------------------------------------
# Merge into an existing dataset
# ------------------------------------------------------------------


class TestMergeIntoExisting:
    def test_adds_to_target_and_reuses_categories(
        self, db: DuckDBRepo, merge_service: MergeService, person_pair, make_dataset
    ) -> None:
        a, b = person_pair
        target = make_dataset(
            "T", categories=[(1, "person")], images=[("t.jpg", [(1, BOX)])]
        )
        result = merge_service.merge(
            MergeRequest(
                source_dataset_ids=[a.id, b.id],
                merge_strategy=MergeStrategy.MERGE_INTO_EXISTING,
                target_dataset_id=target.id,
            )
        )

        assert result.dataset_id == target.id
        merged = _load(db, target.id)
        assert sorted(c.name for c in merged.categories) == ["car", "person"]
        assert len(merged.images) == 4
        assert merged.annotation_count == 5
        assert _dataset_count(db) == 3

    def test_overwrite_writes_new_key_and_drops_old_file(
        self,
        db: DuckDBRepo,
        object_store: ObjectStore,
        merge_service: MergeService,
        make_dataset,
    ) -> None:
        target = make_dataset("T", categories=[(1, "p")], images=[("x.jpg", [(1, BOX)])])
        a = make_dataset("A", categories=[(1, "p")], images=[("x.jpg", [(1, BOX)] * 2)])
        b = make_dataset("B", categories=[(1, "p")])

        merge_service.merge(
            MergeRequest(
                source_dataset_ids=[a.id, b.id],
                merge_strategy=MergeStrategy.MERGE_INTO_EXISTING,
                target_dataset_id=target.id,
                handle_duplicate_images=DuplicateImageStrategy.OVERWRITE,
                merge_id="m-over",
            )
        )
        (image,) = _load(db, target.id).images
        assert image.file_path == f"dataset-{target.id}/m-over/x.jpg"
        assert object_store.get(image.file_path) == b"A:x.jpg"
        assert not object_store.exists(f"dataset-{target.id}/x.jpg")

    @pytest.mark.parametrize(
        ("strategy", "image_count", "annotation_count"),
        [
            (DuplicateImageStrategy.SKIP, 1, 1),
            (DuplicateImageStrategy.OVERWRITE, 1, 2),
            (DuplicateImageStrategy.RENAME, 2, 3),
        ],
    )
    def test_same_name_as_target_image(
        self,
        db: DuckDBRepo,
        merge_service: MergeService,
        make_dataset,
        strategy,
        image_count,
        annotation_count,
    ) -> None:
        target = make_dataset("T", categories=[(1, "p")], images=[("x.jpg", [(1, BOX)])])
        a = make_dataset("A", categories=[(1, "p")], images=[("x.jpg", [(1, BOX)] * 2)])
        b = make_dataset("B", categories=[(1, "p")])

        merge_service.merge(
            MergeRequest(
                source_dataset_ids=[a.id, b.id],
                merge_strategy=MergeStrategy.MERGE_INTO_EXISTING,
                target_dataset_id=target.id,
                handle_duplicate_images=strategy,
            )
        )
        merged = _load(db, target.id)
        assert len(merged.images) == image_count
        assert merged.annotation_count == annotation_count


# ------------------------------------------------------------------
# Validation and failure
# ------------------------------------------------------------------


class TestValidationAndFailure:
    @pytest.mark.parametrize(
        "kwargs",
        [
            {"source_dataset_ids": [1]},
            {"source_dataset_ids": [1, 1]},
            {"source_dataset_ids": [1, 2], "new_dataset_name": "  "},
            {
                "source_dataset_ids": [1, 2],
                "merge_strategy": MergeStrategy.MERGE_INTO_EXISTING,
            },
            {
                "source_dataset_ids": [1, 2],
                "merge_strategy": MergeStrategy.MERGE_INTO_EXISTING,
                "target_dataset_id": 2,
            },
        ],
    )
    def test_invalid_request_writes_nothing(
        self, db: DuckDBRepo, merge_service: MergeService, person_pair, kwargs
    ) -> None:
        with pytest.raises(MergeValidationError):
            merge_service.merge(MergeRequest(**kwargs))
        assert _dataset_count(db) == 2

    def test_out_of_range_decision_writes_nothing(
        self, db: DuckDBRepo, merge_service: MergeService, person_pair
    ) -> None:
        a, b = person_pair
        request = _request(
            [a.id, b.id],
            category_mapping_decisions=[
                CategoryMappingDecision(conflict_index=3, action=MappingAction.MERGE)
            ],
        )
        with pytest.raises(MergeValidationError):
            merge_service.merge(request)
        assert _dataset_count(db) == 2

    def test_unknown_dataset_writes_nothing(
        self, db: DuckDBRepo, merge_service: MergeService, person_pair
    ) -> None:
        a, _ = person_pair
        with pytest.raises(DatasetNotFoundError):
            merge_service.merge(_request([a.id, 4242]))
        assert _dataset_count(db) == 2

    def test_failure_rolls_back_and_reports_written_objects(
        self,
        db: DuckDBRepo,
        object_store: ObjectStore,
        progress_store: MergeProgressStore,
        merge_service: MergeService,
        person_pair,
        monkeypatch,
    ) -> None:
        a, b = person_pair

        def boom(*args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(records, "create_annotation", boom)
        with pytest.raises(MergeFailedError) as excinfo:
            merge_service.merge(_request([a.id, b.id], merge_id="m-fail"))

        result = excinfo.value.result
        assert result.success is False
        assert result.state is MergeState.FAILED
        assert result.dataset_id is None
        assert any("disk full" in e for e in result.errors)
        assert len(result.orphaned_objects) == 3
        assert all(object_store.exists(key) for key in result.orphaned_objects)

        assert _dataset_count(db) == 2
        assert db.connection.execute("SELECT COUNT(*) FROM categories").fetchone()[0] == 3

        progress = progress_store.get("m-fail")
        assert progress.completed is True
        assert progress.success is False

    def test_failed_overwrite_leaves_target_files_intact(
        self,
        db: DuckDBRepo,
        object_store: ObjectStore,
        merge_service: MergeService,
        make_dataset,
        monkeypatch,
    ) -> None:
        target = make_dataset("T", categories=[(1, "p")], images=[("x.jpg", [(1, BOX)])])
        a = make_dataset("A", categories=[(1, "p")], images=[("x.jpg", [(1, BOX)] * 2)])
        b = make_dataset("B", categories=[(1, "p")])
        before = set(object_store.list())

        def boom(*args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(records, "create_annotation", boom)
        with pytest.raises(MergeFailedError) as excinfo:
            merge_service.merge(
                MergeRequest(
                    source_dataset_ids=[a.id, b.id],
                    merge_strategy=MergeStrategy.MERGE_INTO_EXISTING,
                    target_dataset_id=target.id,
                    handle_duplicate_images=DuplicateImageStrategy.OVERWRITE,
                )
            )

        (image,) = _load(db, target.id).images
        assert image.file_path == f"dataset-{target.id}/x.jpg"
        assert object_store.get(image.file_path) == b"T:x.jpg"
        orphaned = excinfo.value.result.orphaned_objects
        assert orphaned == sorted(set(object_store.list()) - before)
        assert image.file_path not in orphaned

    def test_deadline_during_copies_reports_every_written_object(
        self,
        db: DuckDBRepo,
        object_store: ObjectStore,
        progress_store: MergeProgressStore,
        make_dataset,
        monkeypatch,
    ) -> None:
        a = make_dataset("A", images=[(f"a{i}.jpg", []) for i in range(4)])
        b = make_dataset("B", images=[("b.jpg", [])])
        now = [0.0]
        service = MergeService(
            db=db,
            storage=object_store,
            progress=progress_store,
            copy_concurrency=1,
            timeout_seconds=100.0,
            clock=lambda: now[0],
        )
        real_copy = object_store.copy

        def slow_copy(src: str, dst: str) -> str:
            now[0] = 1000.0
            return real_copy(src, dst)

        monkeypatch.setattr(object_store, "copy", slow_copy)
        before = set(object_store.list())
        with pytest.raises(MergeFailedError) as excinfo:
            service.merge(_request([a.id, b.id]))

        assert "time limit" in str(excinfo.value)
        written = sorted(set(object_store.list()) - before)
        assert excinfo.value.result.orphaned_objects == written
        assert 1 <= len(written) < 5
        assert _dataset_count(db) == 2

    def test_deadline_exceeded_rolls_back(
        self,
        db: DuckDBRepo,
        object_store: ObjectStore,
        progress_store: MergeProgressStore,
        person_pair,
    ) -> None:
        a, b = person_pair
        ticks = count()
        service = MergeService(
            db=db,
            storage=object_store,
            progress=progress_store,
            timeout_seconds=0.5,
            clock=lambda: float(next(ticks)),
        )
        with pytest.raises(MergeFailedError) as excinfo:
            service.merge(_request([a.id, b.id]))
        assert "time limit" in str(excinfo.value)
        assert _dataset_count(db) == 2


# ------------------------------------------------------------------
# Progress
# ------------------------------------------------------------------


class TestProgress:
    def test_progress_is_monotonic_and_completes(
        self,
        db: DuckDBRepo,
        object_store: ObjectStore,
        person_pair,
        monkeypatch,
    ) -> None:
        a, b = person_pair
        store = MergeProgressStore()
        seen: list[int] = []
        real_update = store.update

        def recording_update(merge_id, current, total, operation, error=None):
            real_update(merge_id, current, total, operation, error)
            seen.append(store.get(merge_id).percentage)

        monkeypatch.setattr(store, "update", recording_update)
        service = MergeService(db=db, storage=object_store, progress=store)
        result = service.merge(_request([a.id, b.id], merge_id="m-1"))

        # 3 categories + 3 images + 4 annotations + 3 setup steps.
        final = store.get("m-1")
        assert final.total == 13
        assert final.current == 13
        assert final.percentage == 100
        assert final.completed is True
        assert final.success is True
        assert final.result["dataset_id"] == result.dataset_id

        after_init = seen[1:]
        assert after_init == sorted(after_init)
        assert max(seen) < 100

    def test_generated_merge_id(self, merge_service: MergeService, person_pair) -> None:
        a, b = person_pair
        result = merge_service.merge(_request([a.id, b.id]))
        assert result.merge_id.startswith("merge_")
