"""Item selection: which catalog images become part of a job."""

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
from .selection_service import compute_selection, is_model_image, is_vector_source

__all__ = [
    "CatalogImage",
    "CatalogItem",
    "ExcludedImage",
    "ExclusionReason",
    "SelectedGroup",
    "Selection",
    "SelectionMode",
    "SelectionResult",
    "compute_selection",
    "is_model_image",
    "is_vector_source",
]
