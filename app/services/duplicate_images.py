"""Duplicate image resolution for dataset merges.

Images from different source datasets that share a ``file_name`` are
duplicate candidates regardless of dimensions or external id.  Each
group of candidates is reduced to its surviving placements according to
the selected :class:`DuplicateImageStrategy`.
"""

from __future__ import annotations

import posixpath
from dataclasses import dataclass, field

from app.models.merge import DuplicateImageStrategy, DuplicateWarning
from app.repositories.records import ImageRecord, SourceDataset


@dataclass
class ImagePlacement:
    """A source image and the file name it will have in the target."""

    image: ImageRecord
    source: SourceDataset
    file_name: str


@dataclass
class DuplicateResolution:
    survivors: list[ImagePlacement]
    discarded: list[ImagePlacement] = field(default_factory=list)
    warning: DuplicateWarning | None = None


def group_by_file_name(
    sources: list[SourceDataset],
) -> dict[str, list[ImagePlacement]]:
    """Group every source image by file name, in source iteration order."""
    groups: dict[str, list[ImagePlacement]] = {}
    for source in sources:
        for image in source.images:
            groups.setdefault(image.file_name, []).append(
                ImagePlacement(image=image, source=source, file_name=image.file_name)
            )
    return groups


def renamed_file_name(file_name: str, dataset_name: str, taken: set[str]) -> str:
    """Return ``{base}_{dataset}{ext}``, suffixed with a counter if taken."""
    base, ext = posixpath.splitext(file_name)
    candidate = f"{base}_{dataset_name}{ext}"
    counter = 1
    while candidate in taken:
        candidate = f"{base}_{dataset_name}_{counter}{ext}"
        counter += 1
    return candidate


def _pick_best_annotated(group: list[ImagePlacement]) -> ImagePlacement:
    # max() keeps the first of equal keys, so remaining ties go to the
    # earliest source.
    return max(
        group,
        key=lambda p: (len(p.image.annotations), p.source.annotation_count),
    )


def resolve_duplicates(
    group: list[ImagePlacement],
    strategy: DuplicateImageStrategy,
    taken: set[str],
) -> DuplicateResolution:
    """Reduce one same-name group to its surviving placements.

    *taken* holds every file name already claimed in the target; names
    generated by ``rename`` are added to it.  Single-member groups pass
    through untouched and produce no warning.
    """
    if len(group) < 2:
        return DuplicateResolution(survivors=list(group))

    file_name = group[0].file_name
    dataset_names = [p.source.name for p in group]

    match strategy:
        case DuplicateImageStrategy.SKIP:
            survivors = [group[0]]
            selected = group[0]
            reason = (
                f"Using image from {selected.source.name} (first processed); "
                f"{len(group) - 1} duplicate(s) skipped"
            )
        case DuplicateImageStrategy.RENAME:
            survivors = [group[0]]
            for placement in group[1:]:
                new_name = renamed_file_name(file_name, placement.source.name, taken)
                taken.add(new_name)
                survivors.append(
                    ImagePlacement(
                        image=placement.image,
                        source=placement.source,
                        file_name=new_name,
                    )
                )
            selected = None
            reason = f"All {len(group)} copies kept; later copies renamed"
        case DuplicateImageStrategy.OVERWRITE:
            selected = group[-1]
            survivors = [selected]
            reason = f"Using image from {selected.source.name} (latest processed)"
        case DuplicateImageStrategy.KEEP_BEST_ANNOTATED:
            selected = _pick_best_annotated(group)
            survivors = [selected]
            reason = (
                f"Using image from {selected.source.name} with "
                f"{len(selected.image.annotations)} annotations "
                f"({selected.source.annotation_count} in dataset)"
            )

    kept = {id(p.image) for p in survivors}
    return DuplicateResolution(
        survivors=survivors,
        discarded=[p for p in group if id(p.image) not in kept],
        warning=DuplicateWarning(
            file_name=file_name,
            count=len(group),
            datasets=dataset_names,
            selected_dataset=selected.source.name if selected is not None else None,
            reason=reason,
        ),
    )


def resolve_against_target(
    placement: ImagePlacement,
    existing_annotation_count: int,
    strategy: DuplicateImageStrategy,
    taken: set[str],
) -> tuple[ImagePlacement | None, bool]:
    """Decide how an incoming image meets a same-name image already in the target.

    Returns ``(placement, replace_existing)``.  ``placement`` is ``None``
    when the incoming image is dropped; ``replace_existing`` is ``True``
    when the target's image (and its annotations) must be removed first.
    """
    match strategy:
        case DuplicateImageStrategy.SKIP:
            return None, False
        case DuplicateImageStrategy.RENAME:
            new_name = renamed_file_name(placement.file_name, placement.source.name, taken)
            taken.add(new_name)
            return (
                ImagePlacement(
                    image=placement.image, source=placement.source, file_name=new_name
                ),
                False,
            )
        case DuplicateImageStrategy.OVERWRITE:
            return placement, True
        case DuplicateImageStrategy.KEEP_BEST_ANNOTATED:
            if len(placement.image.annotations) > existing_annotation_count:
                return placement, True
            return None, False
