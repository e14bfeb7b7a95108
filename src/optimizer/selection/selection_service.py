"""Deterministic computation of the images a selection resolves to."""

from __future__ import annotations

import logging
from typing import Sequence

from .selection_models import (
    CatalogImage,
    CatalogItem,
    ExcludedImage,
    ExclusionReason,
    SelectedGroup,
    Selection,
    SelectionMode,
    SelectionResult,
)

logger = logging.getLogger(__name__)

VECTOR_MARKERS = (".svg",)
MODEL_KEYWORDS = (
    "model",
    "lifestyle",
    "worn",
    "wearing",
    "person",
    "woman",
    "man",
    "body",
    "hand",
    "finger",
    "neck",
    "ear",
)


def is_vector_source(source_ref: str) -> bool:
    """Detect vector images by their URL; the backend only handles rasters."""

    lowered = source_ref.lower()
    return any(marker in lowered for marker in VECTOR_MARKERS)


def is_model_image(image: CatalogImage) -> bool:
    """Heuristic for model or lifestyle shots: keyword match on URL and alt text."""

    haystacks = (image.source_ref.lower(), (image.alt or "").lower())
    return any(keyword in text for keyword in MODEL_KEYWORDS for text in haystacks)


def exclusion_reason(
    image: CatalogImage, *, exclude_model_images: bool = False
) -> ExclusionReason | None:
    if exclude_model_images and is_model_image(image):
        return ExclusionReason.MODEL_IMAGE
    if image.unsupported_format or is_vector_source(image.source_ref):
        return ExclusionReason.UNSUPPORTED_FORMAT
    if image.already_processed:
        return ExclusionReason.ALREADY_PROCESSED
    return None


def _matches_tags(item: CatalogItem, selection: Selection) -> bool:
    tags = {tag.lower() for tag in item.tags}
    if selection.include_tags and not any(tag.lower() in tags for tag in selection.include_tags):
        return False
    return not any(tag.lower() in tags for tag in selection.exclude_tags)


def _candidates(item: CatalogItem, selection: Selection) -> list[CatalogImage]:
    ordered = item.ordered_images()
    if selection.mode is SelectionMode.PRIMARY_ONLY:
        return ordered[:1]
    if selection.mode is SelectionMode.VARIANTS_ONLY:
        return ordered[1:]
    if selection.mode is SelectionMode.MANUAL:
        picked = selection.manual_images.get(item.id, frozenset())
        return [image for image in ordered if image.id in picked]
    return ordered


def compute_selection(items: Sequence[CatalogItem], selection: Selection) -> SelectionResult:
    """Resolve ``selection`` against the catalog ``items``.

    Output follows catalog order, then image position. An excluded primary
    image drops its item in primary-only mode; the next image is not promoted.
    Variants-only mode takes every image after the primary one.
    Items left with no eligible image are dropped.
    """

    result = SelectionResult()
    for item in items:
        if item.id not in selection.selected_items:
            continue
        candidates = _candidates(item, selection)
        if not _matches_tags(item, selection):
            result.excluded.extend(
                ExcludedImage(item.id, image, ExclusionReason.TAG_FILTERED) for image in candidates
            )
            continue
        eligible: list[CatalogImage] = []
        for image in candidates:
            reason = exclusion_reason(image, exclude_model_images=selection.exclude_model_images)
            if reason is None:
                eligible.append(image)
            else:
                result.excluded.append(ExcludedImage(item.id, image, reason))
        if eligible:
            result.groups.append(SelectedGroup(item=item, images=tuple(eligible)))

    logger.debug(
        "selection.computed",
        extra={
            "mode": selection.mode.value,
            "groups": result.group_count,
            "images": result.image_count,
            "excluded": len(result.excluded),
        },
    )
    return result


__all__ = ["compute_selection", "exclusion_reason", "is_model_image", "is_vector_source"]
