"""Tests for rename, delete and user-defined field registries."""

import numpy as np
import pytest

from cellview_state.errors import ValidationError
from cellview_state.fields import FieldSource, OverlapStrategy, SourceFieldRef
from cellview_state.registries import DeleteRegistry, RenameRegistry, UserDefinedFieldsRegistry


class TestRenameRegistry:
    def test_rename_round_trip(self):
        registry = RenameRegistry()
        registry.set_field_rename("obs", "cluster", "cell type")
        assert registry.get_display_key("obs", "cluster") == "cell type"
        assert registry.is_field_renamed("obs", "cluster")

        registry.revert_field_rename("obs", "cluster")
        assert registry.get_display_key("obs", "cluster") == "cluster"

    def test_rename_to_original_removes_entry(self):
        registry = RenameRegistry()
        registry.set_field_rename(FieldSource.OBS, "cluster", "cell type")
        registry.set_field_rename(FieldSource.OBS, "cluster", "cluster")
        assert not registry.is_field_renamed("obs", "cluster")
        assert registry.to_dict() == {"fields": {}, "categories": {}}

    def test_category_renames(self):
        registry = RenameRegistry()
        registry.set_category_rename("obs", "cluster", 1, "B", "B cells")
        assert registry.get_category_renames("obs", "cluster") == {1: "B cells"}
        assert registry.get_display_category("obs", "cluster", 0, "A") == "A"
        assert registry.to_dict()["categories"] == {"obs:cluster:1": "B cells"}

        restored = RenameRegistry()
        restored.from_dict(registry.to_dict())
        assert restored.get_display_category("obs", "cluster", 1, "B") == "B cells"


class TestDeleteRegistry:
    def test_delete_restore_purge(self):
        registry = DeleteRegistry()
        registry.mark_deleted("obs", "score")
        registry.mark_deleted("var", "CD3E")
        assert registry.get_deleted_keys("obs") == ["score"]
        assert registry.get_counts() == {"obs": 1, "var": 1}

        registry.mark_purged("var", "CD3E")
        assert registry.is_deleted("var", "CD3E")
        assert registry.get_deleted_keys("var") == []

        registry.mark_restored("obs", "score")
        assert not registry.is_deleted("obs", "score")

    def test_from_dict_keeps_purged_deleted(self):
        registry = DeleteRegistry()
        registry.from_dict({"deleted": [], "purged": ["obs:x"]})
        assert registry.is_deleted("obs", "x")
        assert registry.is_purged("obs", "x")


def page(page_id, label, cells):
    return {"page_id": page_id, "label": label, "cells": np.array(cells)}


class TestUserDefinedFieldsRegistry:
    def test_categorical_template_and_capacity(self):
        registry = UserDefinedFieldsRegistry(max_fields=1)
        template = registry.create_from_categorical_codes(
            "copy", ["A", "B"], np.array([0, 1, 1], dtype=np.uint8),
            source_field=SourceFieldRef("cluster", 0, "categorical-obs"),
        )
        assert template.is_user_defined
        assert registry.get_field(template.user_defined_id) is template
        with pytest.raises(ValidationError):
            registry.create_from_categorical_codes("other", ["A"], np.zeros(3, dtype=np.uint8))

    def test_rejects_bad_key(self):
        registry = UserDefinedFieldsRegistry()
        with pytest.raises(ValidationError):
            registry.create_continuous_alias(" padded", FieldSource.OBS, SourceFieldRef("score", 1, "continuous-obs"))

    def test_pages_first_strategy(self):
        registry = UserDefinedFieldsRegistry()
        template, conflicts, uncovered = registry.create_from_pages(
            "pages", [page("p1", "Left", [0, 1, 2]), page("p2", "Right", [2, 3])], point_count=5,
        )
        assert template.categories == ["Left", "Right"]
        assert template.payload.codes.tolist() == [0, 0, 0, 1, 255]
        assert conflicts == 1
        assert uncovered == 1

    def test_pages_last_and_uncovered_label(self):
        registry = UserDefinedFieldsRegistry()
        template, _, _ = registry.create_from_pages(
            "pages", [page("p1", "Left", [0, 1, 2]), page("p2", "Right", [2, 3])], point_count=5,
            uncovered_label="rest", overlap_strategy=OverlapStrategy.LAST,
        )
        assert template.categories == ["Left", "Right", "rest"]
        assert template.payload.codes.tolist() == [0, 0, 1, 1, 2]

    def test_pages_overlap_label(self):
        registry = UserDefinedFieldsRegistry()
        template, conflicts, _ = registry.create_from_pages(
            "pages", [page("p1", "Left", [0, 1]), page("p2", "Right", [1, 2])], point_count=3,
            overlap_strategy="overlap-label",
        )
        assert template.categories == ["Left", "Right", "Overlap"]
        assert template.payload.codes.tolist() == [0, 2, 1]
        assert conflicts == 1

    def test_pages_intersections(self):
        registry = UserDefinedFieldsRegistry()
        template, conflicts, uncovered = registry.create_from_pages(
            "pages", [page("p1", "Left", [0, 1]), page("p2", "Right", [1, 2])], point_count=4,
            overlap_strategy=OverlapStrategy.INTERSECTIONS,
        )
        assert template.categories == ["Left", "Right", "Left & Right"]
        assert template.payload.codes.tolist() == [0, 2, 1, 255]
        assert template.page_info["intersection_labels"] == {"3": "Left & Right"}
        assert conflicts == 1
        assert uncovered == 1

    def test_serialization_round_trip(self):
        registry = UserDefinedFieldsRegistry()
        cat = registry.create_from_categorical_codes("copy", ["A", "B"], np.array([0, 0, 1, 255], dtype=np.uint8))
        alias = registry.create_continuous_alias(
            "score (copy)", FieldSource.OBS, SourceFieldRef("score", 1, "continuous-obs"))

        records = registry.to_dict()
        by_id = {r["id"]: r for r in records}
        assert by_id[cat.user_defined_id]["codesRLE"] == [[0, 2], [1, 1], [255, 1]]
        assert "codesRLE" not in by_id[alias.user_defined_id]

        restored = UserDefinedFieldsRegistry()
        restored.from_dict(records)
        restored_cat = restored.get_field(cat.user_defined_id)
        assert restored_cat.payload.codes.tolist() == [0, 0, 1, 255]
        restored_alias = restored.get_field(alias.user_defined_id)
        assert restored_alias.is_alias
        assert restored_alias.source_field.source_key == "score"
