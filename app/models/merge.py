"""Pydantic models for merge analysis, merge requests and merge results."""

from enum import Enum

from pydantic import BaseModel, Field


class MergeStrategy(str, Enum):
    """Whether the merge creates a new dataset or extends an existing one."""

    CREATE_NEW = "create_new"
    MERGE_INTO_EXISTING = "merge_into_existing"


class CategoryMergeStrategy(str, Enum):
    """Default treatment for categories not covered by a user decision."""

    KEEP_SEPARATE = "keep_separate"
    MERGE_BY_NAME = "merge_by_name"
    PREFIX_WITH_DATASET = "prefix_with_dataset"


class DuplicateImageStrategy(str, Enum):
    """How images sharing a file name across source datasets are reconciled."""

    SKIP = "skip"
    RENAME = "rename"
    OVERWRITE = "overwrite"
    KEEP_BEST_ANNOTATED = "keep_best_annotated"


class MappingAction(str, Enum):
    """Resolution chosen for one category conflict."""

    MERGE = "merge"
    KEEP_SEPARATE = "keep_separate"
    RENAME = "rename"


class MergeState(str, Enum):
    INIT = "init"
    CATEGORIES_MAPPED = "categories_mapped"
    IMAGES_RESOLVED = "images_resolved"
    ASSETS_COPIED = "assets_copied"
    ANNOTATIONS_REPARENTED = "annotations_reparented"
    COMMITTED = "committed"
    FAILED = "failed"


# ------------------------------------------------------------------
# Analysis
# ------------------------------------------------------------------


class AnalyzeMergeRequest(BaseModel):
    """Request body for ``POST /datasets/analyze-merge``."""

    source_dataset_ids: list[int]
    target_dataset_id: int | None = None
    merge_strategy: MergeStrategy = MergeStrategy.CREATE_NEW
    category_merge_strategy: CategoryMergeStrategy = CategoryMergeStrategy.MERGE_BY_NAME


class ConflictMember(BaseModel):
    """One category taking part in a conflict."""

    dataset_id: int
    dataset_name: str
    category_id: int
    annotation_count: int


class Conflict(BaseModel):
    """Categories from several datasets sharing a name (and external id)."""

    category_name: str
    external_id: int
    """Shared COCO id, or ``-1`` for a name conflict spanning several ids."""

    datasets: list[ConflictMember]
    suggested_action: MappingAction
    reason: str

    @property
    def key(self) -> str:
        return f"{self.category_name}|{self.external_id}"


class CategorySummary(BaseModel):
    id: int
    name: str
    external_id: int
    annotation_count: int


class DatasetCategories(BaseModel):
    id: int
    name: str
    category_count: int
    categories: list[CategorySummary]


class MergeAnalysis(BaseModel):
    """Response for ``POST /datasets/analyze-merge``.

    The order of ``conflicts`` is the index space referenced by
    :attr:`CategoryMappingDecision.conflict_index`.  Indices must not be
    reused once the set of datasets changes.
    """

    total_source_datasets: int
    total_categories: int
    exact_matches: int
    name_conflict_count: int
    conflicts: list[Conflict]
    name_conflicts: list[Conflict]
    datasets: list[DatasetCategories]


# ------------------------------------------------------------------
# Merge
# ------------------------------------------------------------------


class CategoryMappingDecision(BaseModel):
    """User resolution for ``conflicts[conflict_index]`` from a prior analysis."""

    conflict_index: int = Field(ge=0)
    action: MappingAction
    target_category_name: str | None = None
    target_external_id: int | None = None
    selected_source_category_id: int | None = None


class MergeRequest(BaseModel):
    """Request body for ``POST /datasets/merge``."""

    source_dataset_ids: list[int]
    new_dataset_name: str | None = None
    new_dataset_description: str | None = None
    merge_strategy: MergeStrategy = MergeStrategy.CREATE_NEW
    target_dataset_id: int | None = None
    category_merge_strategy: CategoryMergeStrategy = CategoryMergeStrategy.MERGE_BY_NAME
    handle_duplicate_images: DuplicateImageStrategy = DuplicateImageStrategy.SKIP
    category_mapping_decisions: list[CategoryMappingDecision] = []
    merge_id: str | None = None
    """Optional caller-chosen run id so progress can be polled before the
    merge call returns.  Generated when omitted."""


class DuplicateWarning(BaseModel):
    """A file name found in more than one source dataset."""

    file_name: str
    count: int
    datasets: list[str]
    selected_dataset: str | None = None
    reason: str


class MergeStatistics(BaseModel):
    """Itemised counters reported by every merge, successful or not."""

    total_source_datasets: int = 0
    categories_processed: int = 0
    categories_created: int = 0
    categories_reused: int = 0
    orphan_categories_recovered: int = 0
    placeholder_categories_created: int = 0
    images_processed: int = 0
    images_copied: int = 0
    images_skipped: int = 0
    images_without_file: int = 0
    duplicate_images_found: int = 0
    files_copied: int = 0
    files_copy_failed: int = 0
    thumbnails_copied: int = 0
    thumbnails_copy_failed: int = 0
    annotations_processed: int = 0
    annotations_copied: int = 0
    annotations_copy_failed: int = 0
    annotations_skipped_no_category: int = 0


class MergeResult(BaseModel):
    """Response for ``POST /datasets/merge``."""

    success: bool
    merge_id: str
    dataset_id: int | None = None
    state: MergeState
    message: str
    statistics: MergeStatistics
    duplicate_warnings: list[DuplicateWarning] = []
    errors: list[str] = []
    copy_errors: list[str] = []
    annotation_errors: list[str] = []
    orphaned_objects: list[str] = []
    """Object keys written before a failed commit; they are not cleaned up."""


class MergeProgressResponse(BaseModel):
    """Response for ``GET /datasets/merge-progress``."""

    merge_id: str
    current: int
    total: int
    percentage: int
    current_operation: str
    errors: list[str]
    completed: bool
    success: bool | None = None
    result: dict | None = None
