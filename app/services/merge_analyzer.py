"""Pre-flight category conflict analysis for dataset merges.

Categories from every source dataset (and from the target dataset when
merging into an existing one) are grouped by ``name|external_id``.  A
group with more than one member is a *conflict*: the categories are
candidates for merging, not proven identical.  Categories sharing a name
but spread over several external ids are reported separately as *name
conflicts* and are never suggested for merging.

:func:`group_conflicts` is shared with the category mapping resolver so
that ``conflict_index`` values from an analysis address the same
conflicts when the merge runs.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass

from duckdb import DuckDBPyConnection

from app.errors import DatasetNotFoundError
from app.models.merge import (
    CategoryMergeStrategy,
    CategorySummary,
    Conflict,
    ConflictMember,
    DatasetCategories,
    MappingAction,
    MergeAnalysis,
)
from app.repositories import records
from app.repositories.records import CategoryRecord

logger = logging.getLogger(__name__)

TARGET_DATASET_LABEL = "Target Dataset"


@dataclass
class CategoryEntry:
    """A category together with the dataset it was found in."""

    category: CategoryRecord
    dataset_id: int
    dataset_name: str
    annotation_count: int

    def member(self) -> ConflictMember:
        return ConflictMember(
            dataset_id=self.dataset_id,
            dataset_name=self.dataset_name,
            category_id=self.category.id,
            annotation_count=self.annotation_count,
        )


def _suggest(
    strategy: CategoryMergeStrategy, name: str, members: list[ConflictMember]
) -> tuple[MappingAction, str]:
    total = sum(m.annotation_count for m in members)
    match strategy:
        case CategoryMergeStrategy.MERGE_BY_NAME:
            return MappingAction.MERGE, (
                f'Same category name "{name}" found in {len(members)} datasets '
                f"with {total} total annotations. Suggested to merge."
            )
        case CategoryMergeStrategy.KEEP_SEPARATE:
            return MappingAction.KEEP_SEPARATE, (
                "Keep separate as requested. Will create prefixed categories."
            )
        case CategoryMergeStrategy.PREFIX_WITH_DATASET:
            return MappingAction.RENAME, (
                "Category name conflict. Will prefix with dataset names."
            )


def group_conflicts(
    entries: Iterable[CategoryEntry],
    strategy: CategoryMergeStrategy,
) -> tuple[list[Conflict], list[Conflict]]:
    """Return ``(conflicts, name_conflicts)`` for the given categories.

    Conflicts are ordered by the first appearance of their key in
    *entries*; that order is the stable ``conflict_index`` space.
    """
    entries = list(entries)

    by_key: dict[tuple[str, int], list[CategoryEntry]] = {}
    for entry in entries:
        key = (entry.category.name, entry.category.external_id)
        by_key.setdefault(key, []).append(entry)

    conflicts: list[Conflict] = []
    for (name, external_id), group in by_key.items():
        if len(group) < 2:
            continue
        members = [entry.member() for entry in group]
        action, reason = _suggest(strategy, name, members)
        conflicts.append(
            Conflict(
                category_name=name,
                external_id=external_id,
                datasets=members,
                suggested_action=action,
                reason=reason,
            )
        )

    by_name: dict[str, list[CategoryEntry]] = {}
    for entry in entries:
        by_name.setdefault(entry.category.name, []).append(entry)

    name_conflicts: list[Conflict] = []
    for name, group in by_name.items():
        external_ids = sorted({entry.category.external_id for entry in group})
        if len(external_ids) < 2:
            continue
        ids = ", ".join(str(i) for i in external_ids)
        name_conflicts.append(
            Conflict(
                category_name=name,
                external_id=-1,
                datasets=[entry.member() for entry in group],
                suggested_action=MappingAction.KEEP_SEPARATE,
                reason=(
                    f'Same category name "{name}" with different COCO IDs '
                    f"({ids}). Recommended to keep separate or manually review."
                ),
            )
        )

    return conflicts, name_conflicts


def _entries_for(
    cursor: DuckDBPyConnection, dataset_id: int, dataset_name: str
) -> list[CategoryEntry]:
    counts = records.category_annotation_counts(cursor, dataset_id)
    return [
        CategoryEntry(
            category=category,
            dataset_id=dataset_id,
            dataset_name=dataset_name,
            annotation_count=counts.get(category.id, 0),
        )
        for category in records.list_categories(cursor, dataset_id)
    ]


def analyze_merge(
    cursor: DuckDBPyConnection,
    source_dataset_ids: list[int],
    category_merge_strategy: CategoryMergeStrategy,
    target_dataset_id: int | None = None,
) -> MergeAnalysis:
    """Inspect the source (and target) categories and report conflicts.

    Raises :class:`DatasetNotFoundError` if any dataset id is unknown.
    Read-only: nothing is written.
    """
    ids = [target_dataset_id] if target_dataset_id is not None else []
    ids += source_dataset_ids
    datasets = {i: records.find_dataset(cursor, i) for i in ids}
    missing = [i for i, ds in datasets.items() if ds is None]
    if missing:
        raise DatasetNotFoundError(missing)

    entries: list[CategoryEntry] = []
    if target_dataset_id is not None:
        entries += _entries_for(cursor, target_dataset_id, TARGET_DATASET_LABEL)

    summaries: list[DatasetCategories] = []
    for dataset_id in source_dataset_ids:
        dataset = datasets[dataset_id]
        dataset_entries = _entries_for(
            cursor, dataset_id, dataset.name or "Unnamed Dataset"
        )
        entries += dataset_entries
        summaries.append(
            DatasetCategories(
                id=dataset.id,
                name=dataset.name,
                category_count=len(dataset_entries),
                categories=[
                    CategorySummary(
                        id=e.category.id,
                        name=e.category.name,
                        external_id=e.category.external_id,
                        annotation_count=e.annotation_count,
                    )
                    for e in dataset_entries
                ],
            )
        )

    conflicts, name_conflicts = group_conflicts(entries, category_merge_strategy)
    logger.info(
        "Merge analysis for datasets %s: %d conflicts, %d name conflicts",
        source_dataset_ids,
        len(conflicts),
        len(name_conflicts),
    )

    return MergeAnalysis(
        total_source_datasets=len(source_dataset_ids),
        total_categories=len(entries),
        exact_matches=len(conflicts),
        name_conflict_count=len(name_conflicts),
        conflicts=conflicts,
        name_conflicts=name_conflicts,
        datasets=summaries,
    )
