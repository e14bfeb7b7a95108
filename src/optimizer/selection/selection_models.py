"""Value types for building a selection over a catalog."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import Iterable, Mapping


class SelectionMode(StrEnum):
    ALL = "all"
    PRIMARY_ONLY = "primary_only"
    VARIANTS_ONLY = "variants_only"
    MANUAL = "manual"


class ExclusionReason(StrEnum):
    """Why an otherwise selected image will not be processed."""

    UNSUPPORTED_FORMAT = "unsupported_format"
    ALREADY_PROCESSED = "already_processed"
    TAG_FILTERED = "tag_filtered"
    MODEL_IMAGE = "model_image"


@dataclass(slots=True, frozen=True)
class CatalogImage:
    id: str
    source_ref: str
    position: int
    alt: str | None = None
    unsupported_format: bool = False
    already_processed: bool = False


@dataclass(slots=True, frozen=True)
class CatalogItem:
    """Product from the external catalog with its ordered images."""

    id: str
    title: str
    images: tuple[CatalogImage, ...] = ()
    tags: tuple[str, ...] = ()

    def ordered_images(self) -> list[CatalogImage]:
        return sorted(self.images, key=lambda image: image.position)


@dataclass(slots=True, frozen=True)
class Selection:
    """Immutable user selection; every transformation returns a new value.

    ``manual_images`` is only populated while ``mode`` is ``manual``.
    """

    selected_items: frozenset[str] = frozenset()
    mode: SelectionMode = SelectionMode.ALL
    manual_images: Mapping[str, frozenset[str]] = field(default_factory=dict)
    include_tags: tuple[str, ...] = ()
    exclude_tags: tuple[str, ...] = ()
    exclude_model_images: bool = False

    @classmethod
    def empty(cls) -> "Selection":
        return cls()

    def toggle_item(self, item_id: str) -> "Selection":
        if item_id in self.selected_items:
            manual = {key: value for key, value in self.manual_images.items() if key != item_id}
            return replace(
                self,
                selected_items=self.selected_items - {item_id},
                manual_images=manual,
            )
        return replace(self, selected_items=self.selected_items | {item_id})

    def toggle_image(self, item_id: str, image_id: str) -> "Selection":
        """Add or remove one image of an item; only valid in manual mode."""

        if self.mode is not SelectionMode.MANUAL:
            raise ValueError("images can only be picked individually in manual mode")
        current = self.manual_images.get(item_id, frozenset())
        updated = current - {image_id} if image_id in current else current | {image_id}
        manual = dict(self.manual_images)
        if updated:
            manual[item_id] = updated
        else:
            manual.pop(item_id, None)
        return replace(
            self,
            selected_items=self.selected_items | {item_id},
            manual_images=manual,
        )

    def with_mode(self, mode: SelectionMode | str) -> "Selection":
        resolved = SelectionMode(mode)
        manual = self.manual_images if resolved is SelectionMode.MANUAL else {}
        return replace(self, mode=resolved, manual_images=manual)

    def with_tag_filters(
        self,
        *,
        include: Iterable[str] = (),
        exclude: Iterable[str] = (),
    ) -> "Selection":
        return replace(self, include_tags=tuple(include), exclude_tags=tuple(exclude))

    def with_model_images_excluded(self, excluded: bool = True) -> "Selection":
        return replace(self, exclude_model_images=excluded)

    def select_all(self, item_ids: Iterable[str]) -> "Selection":
        return replace(self, selected_items=self.selected_items | frozenset(item_ids))

    def clear(self) -> "Selection":
        return Selection(mode=self.mode)


@dataclass(slots=True, frozen=True)
class ExcludedImage:
    group_ref: str
    image: CatalogImage
    reason: ExclusionReason


@dataclass(slots=True, frozen=True)
class SelectedGroup:
    """Catalog item with the images that passed every exclusion."""

    item: CatalogItem
    images: tuple[CatalogImage, ...]


@dataclass(slots=True)
class SelectionResult:
    groups: list[SelectedGroup] = field(default_factory=list)
    excluded: list[ExcludedImage] = field(default_factory=list)

    @property
    def images(self) -> list[tuple[CatalogItem, CatalogImage]]:
        return [(group.item, image) for group in self.groups for image in group.images]

    @property
    def image_count(self) -> int:
        return sum(len(group.images) for group in self.groups)

    @property
    def group_count(self) -> int:
        return len(self.groups)

    @property
    def is_empty(self) -> bool:
        return self.image_count == 0

    def excluded_counts(self) -> dict[ExclusionReason, int]:
        return dict(Counter(entry.reason for entry in self.excluded))


__all__ = [
    "CatalogImage",
    "CatalogItem",
    "ExcludedImage",
    "ExclusionReason",
    "SelectedGroup",
    "Selection",
    "SelectionMode",
    "SelectionResult",
]
