"""Category mapping for dataset merges.

Maps every reachable ``(source_dataset_id, source_category_id)`` pair --
declared in a source dataset or referenced by one of its annotations --
to exactly one category of the merge target, creating target categories
as needed.

Passes, in order:

1. Orphan repair: categories referenced by annotations but missing from a
   dataset's loaded category list are looked up directly and re-attached
   when they belong to that dataset.
2. Conflict detection with the same grouping (and index space) as
   :func:`app.services.merge_analyzer.group_conflicts`.
3. One target category per ``merge`` decision, cached by conflict index.
4. Per-category resolution via the user decision or the default strategy.
5. Placeholder categories for references that cannot be resolved at all.

Target categories are re-used by name, so running the resolution again
against a target that already has a category never duplicates it.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

from duckdb import DuckDBPyConnection

from app.errors import MergeValidationError
from app.models.merge import (
    CategoryMappingDecision,
    CategoryMergeStrategy,
    Conflict,
    MappingAction,
)
from app.repositories import records
from app.repositories.records import CategoryRecord, SourceDataset
from app.services.merge_analyzer import TARGET_DATASET_LABEL, CategoryEntry, group_conflicts

logger = logging.getLogger(__name__)

PLACEHOLDER_PREFIX = "[MISSING]_"


def placeholder_name(dataset_name: str, category_id: int) -> str:
    """Name of the category standing in for a category that no longer exists."""
    return f"{PLACEHOLDER_PREFIX}{dataset_name}_CategoryID_{category_id}"


def separate_name(dataset_name: str, category_name: str) -> str:
    return f"{dataset_name}_{category_name}"


def prefixed_name(dataset_name: str, category_name: str) -> str:
    return f"[{dataset_name}] {category_name}"


@dataclass
class CategoryMapping:
    """Result of category resolution for one merge run."""

    target_dataset_id: int
    mapping: dict[tuple[int, int], int] = field(default_factory=dict)
    conflicts: list[Conflict] = field(default_factory=list)
    processed: int = 0
    created: int = 0
    reused: int = 0
    orphans_recovered: int = 0
    placeholders_created: int = 0

    def target_for(self, dataset_id: int, category_id: int) -> int | None:
        return self.mapping.get((dataset_id, category_id))


def collect_entries(
    sources: list[SourceDataset],
    target_categories: Iterable[CategoryRecord] = (),
    working_categories: dict[int, list[CategoryRecord]] | None = None,
) -> list[CategoryEntry]:
    """Build the conflict-analysis entries for a merge.

    Target categories come first, then each source's categories in id
    order -- the same ordering the analyzer uses.
    """
    entries = [
        CategoryEntry(
            category=category,
            dataset_id=category.dataset_id,
            dataset_name=TARGET_DATASET_LABEL,
            annotation_count=0,
        )
        for category in target_categories
    ]
    for source in sources:
        counts: dict[int, int] = {}
        for image in source.images:
            for annotation in image.annotations:
                counts[annotation.category_id] = counts.get(annotation.category_id, 0) + 1
        categories = (
            working_categories[source.id]
            if working_categories is not None
            else source.categories
        )
        for category in sorted(categories, key=lambda c: c.id):
            entries.append(
                CategoryEntry(
                    category=category,
                    dataset_id=source.id,
                    dataset_name=source.name,
                    annotation_count=counts.get(category.id, 0),
                )
            )
    return entries


def check_decisions(
    decisions: list[CategoryMappingDecision], conflicts: list[Conflict]
) -> dict[int, CategoryMappingDecision]:
    """Index decisions by conflict, rejecting unknown or repeated indices."""
    by_index: dict[int, CategoryMappingDecision] = {}
    for decision in decisions:
        if decision.conflict_index >= len(conflicts):
            raise MergeValidationError(
                f"Decision references conflict {decision.conflict_index} but only "
                f"{len(conflicts)} conflicts exist; re-run the merge analysis"
            )
        if decision.conflict_index in by_index:
            raise MergeValidationError(
                f"More than one decision for conflict {decision.conflict_index}"
            )
        by_index[decision.conflict_index] = decision
    return by_index


class CategoryMappingResolver:
    """Resolves source categories onto one target dataset.

    *cursor* is the transaction every category is created in.  The
    resolver never writes to source datasets.
    """

    def __init__(
        self,
        cursor: DuckDBPyConnection,
        target_dataset_id: int,
        default_strategy: CategoryMergeStrategy,
        decisions: list[CategoryMappingDecision] | None = None,
    ) -> None:
        self.cursor = cursor
        self.target_dataset_id = target_dataset_id
        self.default_strategy = default_strategy
        self.decisions = decisions or []

        self.target_categories = records.list_categories(cursor, target_dataset_id)
        self._by_name: dict[str, int] = {}
        for category in self.target_categories:
            self._by_name.setdefault(category.name, category.id)
        self._taken_external_ids = {c.external_id for c in self.target_categories}
        self._next_external_id = records.next_external_id(
            cursor, "categories", target_dataset_id
        )

    # ------------------------------------------------------------------
    # Target category helpers
    # ------------------------------------------------------------------

    def _allocate_external_id(self, preferred: int | None) -> int:
        if preferred is not None and preferred not in self._taken_external_ids:
            external_id = preferred
        else:
            external_id = self._next_external_id
        self._taken_external_ids.add(external_id)
        self._next_external_id = max(self._next_external_id, external_id + 1)
        return external_id

    def _resolve_by_name(
        self,
        result: CategoryMapping,
        name: str,
        preferred_external_id: int | None,
        supercategory: str | None = None,
    ) -> tuple[int, bool]:
        """Return ``(target_category_id, created)`` for a category called *name*."""
        existing = self._by_name.get(name)
        if existing is not None:
            result.reused += 1
            return existing, False

        category = records.create_category(
            self.cursor,
            self.target_dataset_id,
            self._allocate_external_id(preferred_external_id),
            name,
            supercategory,
        )
        self._by_name[name] = category.id
        result.created += 1
        logger.debug(
            "Created target category %r (id=%d, external_id=%d)",
            name,
            category.id,
            category.external_id,
        )
        return category.id, True

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    def _repair_orphans(
        self, sources: list[SourceDataset], result: CategoryMapping
    ) -> dict[int, list[CategoryRecord]]:
        working: dict[int, list[CategoryRecord]] = {}
        for source in sources:
            categories = list(source.categories)
            declared = {category.id for category in categories}
            for category_id in sorted(source.referenced_category_ids() - declared):
                category = records.find_category(self.cursor, category_id)
                if category is not None and category.dataset_id == source.id:
                    categories.append(category)
                    declared.add(category_id)
                    result.orphans_recovered += 1
                    logger.info(
                        "Recovered category %d (%r) omitted from dataset %d",
                        category_id,
                        category.name,
                        source.id,
                    )
            working[source.id] = categories
        return working

    def _create_merge_targets(
        self,
        result: CategoryMapping,
        decisions: dict[int, CategoryMappingDecision],
        entries: dict[tuple[int, int], CategoryEntry],
    ) -> dict[int, int]:
        targets: dict[int, int] = {}
        for index, decision in decisions.items():
            if decision.action is not MappingAction.MERGE:
                continue
            conflict = result.conflicts[index]
            primary = conflict.datasets[0]
            if decision.selected_source_category_id is not None:
                for member in conflict.datasets:
                    if member.category_id == decision.selected_source_category_id:
                        primary = member
                        break
            primary_category = entries[(primary.dataset_id, primary.category_id)].category

            name = decision.target_category_name or primary_category.name
            external_id = (
                decision.target_external_id
                if decision.target_external_id is not None
                else primary_category.external_id
            )
            targets[index], _ = self._resolve_by_name(
                result, name, external_id, primary_category.supercategory
            )
        return targets

    def _resolve_category(
        self,
        result: CategoryMapping,
        source: SourceDataset,
        category: CategoryRecord,
        decision: CategoryMappingDecision | None,
        merge_target: int | None,
    ) -> int:
        if decision is not None:
            match decision.action:
                case MappingAction.MERGE:
                    return merge_target
                case MappingAction.RENAME:
                    name = decision.target_category_name or separate_name(
                        source.name, category.name
                    )
                case MappingAction.KEEP_SEPARATE:
                    name = separate_name(source.name, category.name)
        else:
            match self.default_strategy:
                case CategoryMergeStrategy.MERGE_BY_NAME:
                    name = category.name
                case CategoryMergeStrategy.PREFIX_WITH_DATASET:
                    name = prefixed_name(source.name, category.name)
                case CategoryMergeStrategy.KEEP_SEPARATE:
                    name = separate_name(source.name, category.name)

        target_id, _ = self._resolve_by_name(
            result, name, category.external_id, category.supercategory
        )
        return target_id

    def _map_true_orphans(
        self, sources: list[SourceDataset], result: CategoryMapping
    ) -> None:
        for source in sources:
            for category_id in sorted(source.referenced_category_ids()):
                if (source.id, category_id) in result.mapping:
                    continue
                name = placeholder_name(source.name, category_id)
                target_id, created = self._resolve_by_name(result, name, None)
                result.mapping[(source.id, category_id)] = target_id
                if created:
                    result.placeholders_created += 1
                logger.warning(
                    "Dataset %d references missing category %d; mapped to %r",
                    source.id,
                    category_id,
                    name,
                )

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def resolve(
        self,
        sources: list[SourceDataset],
        on_category: Callable[[str], None] | None = None,
    ) -> CategoryMapping:
        """Map every reachable source category onto the target dataset.

        *on_category* is called once per source category processed with a
        short description, for progress reporting.
        """
        result = CategoryMapping(target_dataset_id=self.target_dataset_id)

        working = self._repair_orphans(sources, result)

        entry_list = collect_entries(sources, self.target_categories, working)
        result.conflicts, _ = group_conflicts(entry_list, self.default_strategy)
        decisions = check_decisions(self.decisions, result.conflicts)
        entries = {(e.dataset_id, e.category.id): e for e in entry_list}

        conflict_of: dict[tuple[int, int], int] = {}
        for index, conflict in enumerate(result.conflicts):
            for member in conflict.datasets:
                conflict_of[(member.dataset_id, member.category_id)] = index

        merge_targets = self._create_merge_targets(result, decisions, entries)

        for source in sources:
            for category in sorted(working[source.id], key=lambda c: c.id):
                index = conflict_of.get((source.id, category.id))
                decision = decisions.get(index) if index is not None else None
                target_id = self._resolve_category(
                    result,
                    source,
                    category,
                    decision,
                    merge_targets.get(index) if index is not None else None,
                )
                result.mapping[(source.id, category.id)] = target_id
                result.processed += 1
                if on_category is not None:
                    on_category(f"Processing category: {category.name} from {source.name}")

        self._map_true_orphans(sources, result)

        logger.info(
            "Mapped %d categories into dataset %d (%d created, %d reused, "
            "%d recovered, %d placeholders)",
            result.processed,
            self.target_dataset_id,
            result.created,
            result.reused,
            result.orphans_recovered,
            result.placeholders_created,
        )
        return result
