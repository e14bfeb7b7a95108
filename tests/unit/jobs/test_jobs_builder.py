from __future__ import annotations

import pytest

from src.optimizer.jobs.jobs_builder import AllowListAuthorizer, build_job
from src.optimizer.jobs.jobs_errors import ErrorKind, JobValidationError
from src.optimizer.jobs.jobs_models import ApprovalMode, JobConfig, PresetType
from src.optimizer.selection import (
    CatalogImage,
    CatalogItem,
    SelectedGroup,
    Selection,
    SelectionResult,
    compute_selection,
)
from tests.helpers.builders import catalog_item

pytestmark = pytest.mark.unit

PRESETS = {"white-bg": "Replace background with pure white"}
MODELS = ("flux-kontext-pro", "gpt4o-image")


def _selection(*items: CatalogItem) -> SelectionResult:
    return compute_selection(list(items), Selection.empty().select_all(item.id for item in items))


def _build(selection: SelectionResult, config: JobConfig, *, owner_ref: str = "shop-1", allowed=()):
    return build_job(
        selection,
        config,
        owner_ref=owner_ref,
        authorizer=AllowListAuthorizer(frozenset(allowed)),
        presets=PRESETS,
        supported_models=MODELS,
    )


def test_builds_one_item_per_selected_image() -> None:
    selection = _selection(catalog_item("a", 2), catalog_item("b", 1))

    submission = _build(selection, JobConfig(preset_id="white-bg"))

    assert [spec.image_ref for spec in submission.items] == ["a-img1", "a-img2", "b-img1"]
    assert submission.group_count == 2
    assert submission.prompt == PRESETS["white-bg"]
    assert submission.preset_type is PresetType.TEMPLATE
    assert submission.preset_id == "white-bg"
    assert submission.custom_prompt is None
    assert submission.ai_model == "flux-kontext-pro"
    assert submission.approval_mode is ApprovalMode.PREVIEW


def test_custom_prompt_takes_priority_over_preset() -> None:
    selection = _selection(catalog_item("a", 1))

    submission = _build(
        selection,
        JobConfig(preset_id="white-bg", custom_prompt="  Studio lighting  ", ai_model="gpt4o-image"),
    )

    assert submission.prompt == "Studio lighting"
    assert submission.preset_type is PresetType.CUSTOM
    assert submission.preset_id is None
    assert submission.ai_model == "gpt4o-image"


def test_empty_selection_is_rejected_first() -> None:
    with pytest.raises(JobValidationError) as exc_info:
        _build(SelectionResult(), JobConfig(), owner_ref="")

    assert exc_info.value.kind is ErrorKind.EMPTY_SELECTION
    assert exc_info.value.message == "No images selected"


def test_unsupported_format_is_checked_before_config() -> None:
    item = CatalogItem(
        id="a",
        title="Logo",
        images=(CatalogImage(id="a-img1", source_ref="https://cdn.test/logo.svg", position=1),),
    )
    selection = SelectionResult(groups=[SelectedGroup(item=item, images=item.images)])

    with pytest.raises(JobValidationError) as exc_info:
        _build(selection, JobConfig())

    assert exc_info.value.kind is ErrorKind.UNSUPPORTED_FORMAT


@pytest.mark.parametrize(
    "config",
    [
        JobConfig(),
        JobConfig(custom_prompt="   "),
        JobConfig(preset_id="unknown"),
        JobConfig(preset_id="white-bg", ai_model="dall-e"),
    ],
)
def test_missing_or_invalid_config_is_rejected(config: JobConfig) -> None:
    with pytest.raises(JobValidationError) as exc_info:
        _build(_selection(catalog_item("a", 1)), config, owner_ref="")

    assert exc_info.value.kind is ErrorKind.MISSING_CONFIG


def test_unauthorized_owner_is_rejected_last() -> None:
    with pytest.raises(JobValidationError) as exc_info:
        _build(
            _selection(catalog_item("a", 1)),
            JobConfig(preset_id="white-bg"),
            owner_ref="shop-9",
            allowed={"shop-1"},
        )

    assert exc_info.value.kind is ErrorKind.UNAUTHORIZED


def test_empty_allow_list_authorizes_any_non_empty_owner() -> None:
    authorizer = AllowListAuthorizer()

    assert authorizer.is_authorized("shop-42")
    assert not authorizer.is_authorized("")
