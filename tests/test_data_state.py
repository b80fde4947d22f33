"""Tests for the DataState orchestrator: overlays, edits, views and serialization."""

import asyncio

import numpy as np
import pytest

from cellview_state import DataState, NullViewer
from cellview_state.errors import ValidationError
from cellview_state.helpers.palettes import hex_to_rgb
from cellview_state.state.highlights import page_color

from conftest import N_POINTS, make_obs_fields, make_var_fields


def keys(state, source="obs"):
    return [f.key for f in state.get_fields(source)]


class TestDataset:
    def test_load_dataset_sets_defaults(self, state, viewer):
        assert state.point_count == N_POINTS
        assert state.get_active_view_id() == "live"
        assert state.get_active_field() is None
        assert state.get_transparency().tolist() == [1.0] * N_POINTS
        assert viewer.colors["live"].shape == (N_POINTS, 4)

    def test_preloaded_array_length_is_checked(self, viewer):
        state = DataState(viewer=viewer)
        fields = make_obs_fields()
        fields[1].payload.values = np.zeros(3, dtype=np.float32)
        with pytest.raises(ValidationError):
            state.load_dataset(fields, point_count=N_POINTS)

    def test_set_active_field_returns_legend(self, state):
        result = asyncio.run(state.set_active_field(0))
        assert result["type"] == "success"
        assert result["field"]["key"] == "cluster"
        assert [c["label"] for c in result["legend"]["categories"]] == ["A", "B", "C"]

    def test_set_active_var_field_colors_by_gene(self, state):
        result = asyncio.run(state.set_active_var_field(2))
        assert result["legend"]["kind"] == "continuous"
        assert state.get_active_field().key == "GAPDH"

    def test_bad_index_is_an_error_result(self, state):
        assert asyncio.run(state.set_active_field(42))["type"] == "error"


class TestRenames:
    def test_rename_and_revert_field(self, state):
        result = state.rename_field(0, "clusters")
        assert result == {"type": "success", "key": "clusters", "original_key": "cluster"}
        assert keys(state)[0] == "clusters"
        assert state.to_dict()["renames"]

        state.revert_field_rename(0)
        assert keys(state)[0] == "cluster"
        assert state.get_field(0).original_key is None

    def test_rename_to_existing_key_is_rejected(self, state):
        result = state.rename_field(0, "score")
        assert result["type"] == "error"
        assert keys(state)[0] == "cluster"

    def test_rename_category_and_revert(self, active_cluster):
        state = active_cluster
        result = state.rename_category(0, 0, "Alpha")
        assert result["previous"] == "A"
        assert state.get_field(0).categories == ["Alpha", "B", "C"]
        assert state.get_legend()["categories"][0]["label"] == "Alpha"
        assert state.ctx.centroid_labels[0]["text"] == "Alpha"

        state.revert_category_rename(0, 0)
        assert state.get_field(0).categories == ["A", "B", "C"]

    def test_category_rename_collision_is_case_insensitive(self, active_cluster):
        result = active_cluster.rename_category(0, 0, " b ")
        assert result["type"] == "error"


class TestDeleteLifecycle:
    def test_delete_clears_active_field(self, active_cluster):
        state = active_cluster
        state.delete_field(0)
        assert state.get_active_field() is None
        assert [f.key for _, f in state.get_deleted_fields()] == ["cluster"]
        assert state.delete_field(0)["type"] == "error"

    def test_restore_renames_on_collision(self, state):
        state.delete_field(1)
        state.rename_field(2, "score")

        result = state.restore_field(1)
        assert result["ok"] is True
        assert result["original_key"] == "score"
        assert result["renamed_from"] == "score"
        assert result["key"] == "score (restored)"
        assert result["renamed_to"] == "score (restored)"
        assert not state.get_field(1).is_deleted

    def test_restore_without_collision_keeps_key(self, state):
        state.delete_field(1)
        result = state.restore_field(1)
        assert result["key"] == "score"
        assert result["renamed_from"] is None

    def test_purged_field_cannot_be_restored(self, state):
        state.delete_field(1)
        state.purge_deleted_field(1)
        assert state.get_deleted_fields() == []
        assert state.restore_field(1)["type"] == "error"

    def test_purge_requires_soft_delete(self, state):
        assert state.purge_deleted_field(1)["type"] == "error"


class TestDerivedFields:
    def test_duplicate_categorical_field(self, active_cluster):
        state = active_cluster
        state.set_color_for_category(0, 1, "#00ff00")
        result = asyncio.run(state.duplicate_field(0))

        copy_field = state.get_field(result["field_index"])
        assert copy_field.key == "cluster (copy)"
        assert copy_field.is_user_defined
        assert copy_field.payload.codes is not state.get_field(0).payload.codes
        assert copy_field.payload.colors[1] == (0, 255, 0)

    def test_delete_category_on_dataset_field_copies(self, active_cluster):
        state = active_cluster
        result = state.delete_category_to_unassigned(0, 1)

        assert result["mode"] == "copy"
        assert result["key"] == "cluster (edited)"
        assert result["source_deleted"] is True
        assert result["categories"] == ["A", "C", "unassigned"]

        edited = state.get_field(result["field_index"])
        assert edited.payload.codes.tolist() == [0, 2, 1, 0, 2, 1, 0, 2]
        assert state.get_field(0).is_deleted
        assert state.get_field(0).payload.codes.tolist() == [0, 1, 2, 0, 1, 2, 0, 1]
        assert state.get_active_field() is edited
        assert edited.payload.colors[2] == (211, 211, 211)

    def test_merge_on_derived_field_is_in_place(self, active_cluster):
        state = active_cluster
        edited = state.delete_category_to_unassigned(0, 1)
        index = edited["field_index"]

        result = state.merge_categories(index, 0, 1)
        assert result["mode"] == "in-place"
        assert result["field_index"] == index
        assert result["categories"] == ["merged A + C", "unassigned"]

        field = state.get_field(index)
        assert field.payload.codes.tolist() == [0, 1, 0, 0, 1, 0, 0, 1]
        template = state.user_defined.get_field(field.user_defined_id)
        assert template.categories == ["merged A + C", "unassigned"]

    def test_merge_on_dataset_field_copies(self, active_cluster):
        result = active_cluster.merge_categories(0, 0, 2, merged_label="AC")
        assert result["key"] == "cluster (merged)"
        assert result["categories"] == ["B", "AC"]

    def test_self_merge_is_rejected(self, active_cluster):
        assert active_cluster.merge_categories(0, 1, 1)["type"] == "error"

    def test_unassigned_bucket_cannot_be_deleted(self, active_cluster):
        state = active_cluster
        edited = state.delete_category_to_unassigned(0, 1)
        result = state.delete_category_to_unassigned(edited["field_index"], 2)
        assert result["type"] == "error"

    def test_edit_requires_loaded_field(self, state):
        assert state.delete_category_to_unassigned(2, 0)["type"] == "error"

    def test_delete_user_defined_field(self, active_cluster):
        state = active_cluster
        result = asyncio.run(state.duplicate_field(0))
        udf = state.get_field(result["field_index"])

        state.delete_user_defined_field(result["field_index"])
        assert udf.is_purged
        assert state.user_defined.get_field(udf.user_defined_id) is None
        assert state.delete_user_defined_field(0)["type"] == "error"

    def test_field_from_highlight_pages(self, state):
        state.add_highlight_direct([0, 1, 2])
        page = state.create_highlight_page()["page"]
        state.switch_to_page(page["id"])
        state.add_highlight_direct([2, 3])

        result = state.create_field_from_highlight_pages("groups", uncovered_label="rest")
        assert result["categories"] == ["Page 1", "Page 2", "rest"]
        assert result["conflicts"] == 1
        assert result["uncovered_count"] == 4

        field = state.get_field(result["field_index"])
        assert field.payload.codes.tolist() == [0, 0, 0, 1, 2, 2, 2, 2]
        assert field.payload.colors[0] == hex_to_rgb(page_color(0))

        again = state.create_field_from_highlight_pages("groups")
        assert again["type"] == "error"


class TestViews:
    def test_snapshot_is_isolated_from_live_edits(self, active_cluster, viewer):
        state = active_cluster
        view_id = state.create_view_from_active("snap")["view_id"]
        assert view_id in viewer.colors

        state.set_visibility_for_category(0, 0, False)
        assert state.get_active_view_label() == "cluster: hiding A"

        result = state.set_active_view(view_id)
        assert result["label"] == "snap"
        assert state.get_transparency().tolist() == [1.0] * N_POINTS
        assert state.get_active_view_label() == "snap"

        state.set_active_view("live")
        assert state.get_transparency()[0] == 0.0

    def test_unknown_view_falls_back_to_live(self, active_cluster):
        state = active_cluster
        view_id = state.create_view_from_active()["view_id"]
        state.set_active_view(view_id)
        state.set_active_view("nope")
        assert state.get_active_view_id() == "live"

    def test_renames_reach_snapshots(self, active_cluster):
        state = active_cluster
        view_id = state.create_view_from_active()["view_id"]
        state.rename_field(0, "clusters")
        assert state.views.get(view_id).obs_fields[0].key == "clusters"

    def test_remove_view(self, active_cluster, viewer):
        state = active_cluster
        view_id = state.create_view_from_active()["view_id"]
        state.set_active_view(view_id)

        assert state.remove_view("live")["type"] == "error"
        result = state.remove_view(view_id)
        assert result["active_view_id"] == "live"
        assert state.get_view_ids() == ["live"]
        assert view_id not in viewer.colors

    def test_clear_snapshot_views(self, active_cluster):
        state = active_cluster
        state.create_view_from_active()
        state.create_view_from_active()
        assert len(state.clear_snapshot_views()["removed"]) == 2
        assert state.get_view_ids() == ["live"]


class TestDimensions:
    def test_switch_dimension(self, active_cluster, viewer):
        state = active_cluster
        result = asyncio.run(state.set_dimension_level(2))
        assert result["dimension_level"] == 2
        assert state.get_dimension_level() == 2
        assert viewer.positions["live"].shape == (N_POINTS, 3)

    def test_four_dimensions_are_rejected(self, state):
        assert asyncio.run(state.set_dimension_level(4))["type"] == "error"

    def test_missing_dimension_is_rejected(self, state):
        assert asyncio.run(state.set_dimension_level(1))["type"] == "error"

    def test_view_dimensions_are_tracked(self, active_cluster, dimension_manager):
        state = active_cluster
        assert dimension_manager.get_view_dimension("live") == 3

        asyncio.run(state.set_dimension_level(2))
        view_id = state.create_view_from_active()["view_id"]
        assert dimension_manager.get_view_dimension("live") == 2
        assert dimension_manager.get_view_dimension(view_id) == 2

        state.remove_view(view_id)
        assert dimension_manager.get_view_dimension(view_id) == 3


class TestSerialization:
    def test_overlay_state_round_trips(self, active_cluster, obs_loader, var_loader, dimension_manager):
        state = active_cluster
        state.rename_field(0, "clusters")
        state.delete_field(2)
        asyncio.run(state.duplicate_field(0))
        data = state.to_dict()
        assert data["version"] == 1

        restored = DataState(viewer=NullViewer(), dimension_manager=dimension_manager,
                             obs_loader=obs_loader, var_loader=var_loader)
        restored.load_dataset(make_obs_fields(), make_var_fields(), point_count=N_POINTS)
        restored.from_dict(data)

        assert keys(restored) == ["clusters", "score", "batch", "clusters (copy)"]
        assert restored.get_field(2).is_deleted
        assert restored.get_field(3).payload.codes.tolist() == [0, 1, 2, 0, 1, 2, 0, 1]

    def test_snapshot_payload(self, active_cluster):
        payload = active_cluster.get_snapshot_payload(compress=False)
        assert payload["type"] == "success"
        assert payload["point_count"] == N_POINTS
        assert isinstance(payload["colors"], str)
        assert payload["centroid_labels"]

    def test_snapshot_payload_unknown_view(self, state):
        assert state.get_snapshot_payload("view_99")["type"] == "error"
