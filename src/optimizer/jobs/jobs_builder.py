"""Validation of a selection and its configuration into a job submission."""

from __future__ import annotations

from collections.abc import Collection, Mapping
from dataclasses import dataclass, field
from typing import Protocol

from ..config import DEFAULT_AI_MODEL
from ..selection import SelectionResult
from ..selection.selection_service import exclusion_reason
from ..selection.selection_models import ExclusionReason
from .jobs_errors import ErrorKind, JobValidationError
from .jobs_models import ItemSpec, JobConfig, JobSubmission, PresetType


class OwnerAuthorizer(Protocol):
    """Decides whether jobs may target the destination ``owner_ref``."""

    def is_authorized(self, owner_ref: str) -> bool:  # pragma: no cover - protocol
        ...


@dataclass(slots=True)
class AllowListAuthorizer:
    """Authorize owners from a static list; an empty list allows everyone."""

    allowed: frozenset[str] = field(default_factory=frozenset)

    def is_authorized(self, owner_ref: str) -> bool:
        if not owner_ref:
            return False
        return not self.allowed or owner_ref in self.allowed


def _resolve_prompt(
    config: JobConfig, presets: Mapping[str, str]
) -> tuple[str, PresetType] | None:
    custom = (config.custom_prompt or "").strip()
    if custom:
        return custom, PresetType.CUSTOM
    if config.preset_id and config.preset_id in presets:
        return presets[config.preset_id], PresetType.TEMPLATE
    return None


def build_job(
    selection: SelectionResult,
    config: JobConfig,
    *,
    owner_ref: str,
    authorizer: OwnerAuthorizer,
    presets: Mapping[str, str],
    supported_models: Collection[str],
    default_model: str = DEFAULT_AI_MODEL,
) -> JobSubmission:
    """Validate and assemble a :class:`JobSubmission`.

    Checks run in a fixed order: the selection must contain images, none of
    them may be in an unsupported format, the configuration must resolve to a
    prompt and a supported model, and the owner must be authorized. The first
    failing check raises :class:`JobValidationError`; nothing is persisted.
    """

    if selection.is_empty:
        raise JobValidationError(ErrorKind.EMPTY_SELECTION, "No images selected")

    unsupported = [
        image.id
        for _, image in selection.images
        if exclusion_reason(image) is ExclusionReason.UNSUPPORTED_FORMAT
    ]
    if unsupported:
        raise JobValidationError(
            ErrorKind.UNSUPPORTED_FORMAT,
            f"Unsupported image format: {', '.join(unsupported)}",
        )

    resolved = _resolve_prompt(config, presets)
    if resolved is None:
        raise JobValidationError(
            ErrorKind.MISSING_CONFIG, "Either preset_id or custom_prompt is required"
        )
    prompt, preset_type = resolved

    ai_model = config.ai_model or default_model
    if ai_model not in supported_models:
        raise JobValidationError(ErrorKind.MISSING_CONFIG, f"Unsupported AI model '{ai_model}'")

    if not authorizer.is_authorized(owner_ref):
        raise JobValidationError(
            ErrorKind.UNAUTHORIZED, f"Not authorized to target '{owner_ref}'"
        )

    items = [
        ItemSpec(
            group_ref=item.id,
            image_ref=image.id,
            source_ref=image.source_ref,
            position=image.position,
            title=item.title,
        )
        for item, image in selection.images
    ]
    return JobSubmission(
        owner_ref=owner_ref,
        ai_model=ai_model,
        prompt=prompt,
        preset_type=preset_type,
        approval_mode=config.approval_mode,
        trigger_type=config.trigger_type,
        group_count=selection.group_count,
        items=items,
        preset_id=config.preset_id if preset_type is PresetType.TEMPLATE else None,
        custom_prompt=prompt if preset_type is PresetType.CUSTOM else None,
    )


__all__ = ["AllowListAuthorizer", "OwnerAuthorizer", "build_job"]
