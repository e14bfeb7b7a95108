from __future__ import annotations

import pytest

from src.optimizer.selection import Selection, SelectionMode

pytestmark = pytest.mark.unit


def test_new_selection_is_empty() -> None:
    selection = Selection.empty()

    assert selection.selected_items == frozenset()
    assert selection.mode is SelectionMode.ALL
    assert dict(selection.manual_images) == {}


def test_transformations_return_new_values() -> None:
    original = Selection.empty()

    toggled = original.toggle_item("a")

    assert toggled is not original
    assert original.selected_items == frozenset()
    assert toggled.selected_items == frozenset({"a"})


def test_toggle_item_twice_deselects_and_forgets_manual_images() -> None:
    selection = Selection.empty().with_mode(SelectionMode.MANUAL).toggle_image("a", "a-img1")

    deselected = selection.toggle_item("a")

    assert "a" not in deselected.selected_items
    assert "a" not in deselected.manual_images


def test_toggle_image_requires_manual_mode() -> None:
    with pytest.raises(ValueError):
        Selection.empty().toggle_image("a", "a-img1")


def test_toggle_image_adds_then_removes() -> None:
    selection = Selection.empty().with_mode(SelectionMode.MANUAL)

    added = selection.toggle_image("a", "a-img1").toggle_image("a", "a-img2")
    removed = added.toggle_image("a", "a-img1")

    assert added.manual_images["a"] == frozenset({"a-img1", "a-img2"})
    assert removed.manual_images["a"] == frozenset({"a-img2"})
    assert "a" in removed.selected_items


def test_leaving_manual_mode_clears_manual_images() -> None:
    selection = Selection.empty().with_mode(SelectionMode.MANUAL).toggle_image("a", "a-img1")

    switched = selection.with_mode(SelectionMode.PRIMARY_ONLY)

    assert switched.mode is SelectionMode.PRIMARY_ONLY
    assert dict(switched.manual_images) == {}
    assert switched.selected_items == frozenset({"a"})


def test_select_all_and_clear() -> None:
    selection = Selection.empty().with_mode(SelectionMode.PRIMARY_ONLY).select_all(["a", "b"])

    cleared = selection.clear()

    assert selection.selected_items == frozenset({"a", "b"})
    assert cleared.selected_items == frozenset()
    assert cleared.mode is SelectionMode.PRIMARY_ONLY


def test_model_image_filter_returns_new_value_and_clear_drops_it() -> None:
    original = Selection.empty().with_mode(SelectionMode.VARIANTS_ONLY)

    filtered = original.with_model_images_excluded()

    assert filtered is not original
    assert original.exclude_model_images is False
    assert filtered.exclude_model_images is True
    assert filtered.clear().exclude_model_images is False
    assert filtered.clear().mode is SelectionMode.VARIANTS_ONLY
