"""Tests for duplicate image resolution (pure logic, no database)."""

from __future__ import annotations

from itertools import count

import pytest

from app.models.merge import DuplicateImageStrategy
from app.repositories.records import (
    AnnotationRecord,
    DatasetRecord,
    ImageRecord,
    SourceDataset,
)
from app.services.duplicate_images import (
    ImagePlacement,
    group_by_file_name,
    renamed_file_name,
    resolve_against_target,
    resolve_duplicates,
)

_ids = count(1)


def _annotations(dataset_id: int, n: int) -> list[AnnotationRecord]:
    return [
        AnnotationRecord(
            id=next(_ids),
            dataset_id=dataset_id,
            image_id=0,
            category_id=1,
            bbox=[0.0, 0.0, 1.0, 1.0],
            area=1.0,
            is_crowd=False,
            external_id=i,
        )
        for i in range(n)
    ]


def _source(
    dataset_id: int, name: str, images: list[tuple[str, int]], filler: int = 0
) -> SourceDataset:
    """Dataset with the given ``(file_name, annotation_count)`` images.

    *filler* adds an extra image carrying that many annotations, to set
    the dataset-wide annotation total.
    """
    records = [
        ImageRecord(
            id=next(_ids),
            dataset_id=dataset_id,
            file_name=file_name,
            width=10,
            height=10,
            external_id=i,
            annotations=_annotations(dataset_id, n),
        )
        for i, (file_name, n) in enumerate(images, start=1)
    ]
    if filler:
        records.append(
            ImageRecord(
                id=next(_ids),
                dataset_id=dataset_id,
                file_name=f"filler_{name}.jpg",
                width=10,
                height=10,
                external_id=len(records) + 1,
                annotations=_annotations(dataset_id, filler),
            )
        )
    return SourceDataset(
        dataset=DatasetRecord(id=dataset_id, name=name, description=None),
        categories=[],
        images=records,
    )


@pytest.fixture()
def three_way():
    return [
        _source(1, "A", [("shared.jpg", 2)]),
        _source(2, "B", [("shared.jpg", 1)]),
        _source(3, "C", [("shared.jpg", 3), ("only_c.jpg", 0)]),
    ]


def test_group_by_file_name(three_way) -> None:
    groups = group_by_file_name(three_way)
    assert list(groups) == ["shared.jpg", "only_c.jpg"]
    assert [p.source.name for p in groups["shared.jpg"]] == ["A", "B", "C"]


def test_skip_keeps_first(three_way) -> None:
    group = group_by_file_name(three_way)["shared.jpg"]
    resolution = resolve_duplicates(group, DuplicateImageStrategy.SKIP, set())

    assert [p.source.name for p in resolution.survivors] == ["A"]
    assert [p.source.name for p in resolution.discarded] == ["B", "C"]
    assert resolution.warning.count == 3
    assert resolution.warning.selected_dataset == "A"
    assert resolution.warning.datasets == ["A", "B", "C"]


def test_rename_keeps_all_with_distinct_names(three_way) -> None:
    groups = group_by_file_name(three_way)
    taken = set(groups)
    resolution = resolve_duplicates(groups["shared.jpg"], DuplicateImageStrategy.RENAME, taken)

    names = [p.file_name for p in resolution.survivors]
    assert names == ["shared.jpg", "shared_B.jpg", "shared_C.jpg"]
    assert resolution.discarded == []
    assert {"shared_B.jpg", "shared_C.jpg"} <= taken
    assert resolution.warning.selected_dataset is None


def test_overwrite_keeps_last(three_way) -> None:
    group = group_by_file_name(three_way)["shared.jpg"]
    resolution = resolve_duplicates(group, DuplicateImageStrategy.OVERWRITE, set())
    assert [p.source.name for p in resolution.survivors] == ["C"]


def test_keep_best_annotated_tie_breaks_on_dataset_total() -> None:
    # Per-image counts [2, 5, 5]; dataset totals [50, 30, 80].
    sources = [
        _source(1, "A", [("x.jpg", 2)], filler=48),
        _source(2, "B", [("x.jpg", 5)], filler=25),
        _source(3, "C", [("x.jpg", 5)], filler=75),
    ]
    assert [s.annotation_count for s in sources] == [50, 30, 80]

    group = group_by_file_name(sources)["x.jpg"]
    resolution = resolve_duplicates(group, DuplicateImageStrategy.KEEP_BEST_ANNOTATED, set())
    assert [p.source.name for p in resolution.survivors] == ["C"]
    assert "with 5 annotations (80 in dataset)" in resolution.warning.reason


def test_keep_best_annotated_full_tie_keeps_first() -> None:
    sources = [
        _source(1, "A", [("x.jpg", 1)]),
        _source(2, "B", [("x.jpg", 1)]),
    ]
    group = group_by_file_name(sources)["x.jpg"]
    resolution = resolve_duplicates(group, DuplicateImageStrategy.KEEP_BEST_ANNOTATED, set())
    assert resolution.survivors[0].source.name == "A"


def test_single_member_group_passes_through(three_way) -> None:
    group = group_by_file_name(three_way)["only_c.jpg"]
    for strategy in DuplicateImageStrategy:
        resolution = resolve_duplicates(group, strategy, set())
        assert resolution.survivors == group
        assert resolution.warning is None


def test_renamed_file_name_adds_counter_when_taken() -> None:
    taken = {"img_A.png", "img_A_1.png"}
    assert renamed_file_name("img.png", "A", taken) == "img_A_2.png"
    assert renamed_file_name("noext", "B", set()) == "noext_B"


# ------------------------------------------------------------------
# Against an existing target image
# ------------------------------------------------------------------


def _placement(annotations: int) -> ImagePlacement:
    source = _source(1, "A", [("x.jpg", annotations)])
    return ImagePlacement(image=source.images[0], source=source, file_name="x.jpg")


def test_against_target_skip() -> None:
    assert resolve_against_target(_placement(3), 1, DuplicateImageStrategy.SKIP, set()) == (
        None,
        False,
    )


def test_against_target_rename() -> None:
    taken = {"x.jpg"}
    placement, replace = resolve_against_target(
        _placement(3), 1, DuplicateImageStrategy.RENAME, taken
    )
    assert placement.file_name == "x_A.jpg"
    assert replace is False
    assert "x_A.jpg" in taken


def test_against_target_overwrite() -> None:
    incoming = _placement(0)
    assert resolve_against_target(incoming, 9, DuplicateImageStrategy.OVERWRITE, set()) == (
        incoming,
        True,
    )


@pytest.mark.parametrize(("incoming", "existing", "replaced"), [(3, 2, True), (2, 2, False)])
def test_against_target_keep_best_annotated(incoming, existing, replaced) -> None:
    placement, replace = resolve_against_target(
        _placement(incoming), existing, DuplicateImageStrategy.KEEP_BEST_ANNOTATED, set()
    )
    assert replace is replaced
    assert (placement is not None) is replaced
