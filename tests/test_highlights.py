"""Tests for highlight pages, groups and counts."""

import numpy as np

from cellview_state import Field, NullViewer
from cellview_state.state.highlights import HighlightManager, page_color


def make_manager(point_count=10, transparency=None):
    viewer = NullViewer()
    manager = HighlightManager(viewer, lambda: transparency)
    manager.reset(point_count)
    return manager, viewer


class TestPages:
    def test_first_page_becomes_active(self):
        manager, _ = make_manager()
        first = manager.create_highlight_page()
        second = manager.create_highlight_page("Mine")
        assert manager.active_page_id == first.id
        assert (first.name, second.name) == ("Page 1", "Mine")
        assert first.color == page_color(0)

    def test_last_page_cannot_be_deleted(self):
        manager, _ = make_manager()
        page = manager.create_highlight_page()
        assert manager.delete_highlight_page(page.id) is False

    def test_deleting_active_page_switches(self):
        manager, viewer = make_manager()
        first = manager.create_highlight_page()
        second = manager.create_highlight_page()
        manager.switch_to_page(second.id)
        manager.add_highlight_direct([1, 2])

        assert manager.delete_highlight_page(second.id)
        assert manager.active_page_id == first.id
        assert viewer.highlight.sum() == 0

    def test_invalid_color_is_rejected(self):
        manager, _ = make_manager()
        page = manager.create_highlight_page()
        assert manager.set_highlight_page_color(page.id, "red") is False
        assert manager.set_highlight_page_color(page.id, "#123456")
        assert page.color == "#123456"

    def test_rename_requires_a_name(self):
        manager, _ = make_manager()
        page = manager.create_highlight_page()
        assert manager.rename_highlight_page(page.id, "  ") is False
        assert manager.rename_highlight_page(page.id, " Tumor ")
        assert page.name == "Tumor"


class TestGroups:
    def test_overlapping_groups_are_counted_once(self):
        manager, viewer = make_manager()
        manager.add_highlight_direct([1, 2, 3])
        manager.add_highlight_direct([3, 4, 4])

        assert manager.get_all_highlighted_cell_indices().tolist() == [1, 2, 3, 4]
        assert manager.get_total_highlighted_cell_count() == 4
        assert viewer.highlight[3] == 255

    def test_disabled_group_is_excluded(self):
        manager, _ = make_manager()
        group = manager.add_highlight_direct([1, 2])
        manager.add_highlight_direct([5])
        manager.toggle_highlight_enabled(group.id)
        assert manager.get_all_highlighted_cell_indices().tolist() == [5]

    def test_out_of_range_indices_are_dropped(self):
        manager, _ = make_manager(point_count=4)
        group = manager.add_highlight_direct([-1, 2, 9])
        assert group.cell_indices.tolist() == [2]
        assert manager.add_highlight_direct([7]) is None

    def test_category_highlight_uses_visible_cells(self):
        transparency = np.array([1, 0, 1, 1], dtype=np.float32)
        manager, _ = make_manager(point_count=4, transparency=transparency)
        field = Field.categorical("cluster", ["A", "B"], codes=np.array([0, 0, 1, 0], dtype=np.uint8))

        group = manager.add_highlight_from_category(field, 0, 0)
        assert group.label == "cluster: A"
        assert group.cell_indices.tolist() == [0, 3]

    def test_range_highlight_label(self):
        manager, _ = make_manager(point_count=4)
        field = Field.continuous("score", values=np.array([0.0, 1.5, 3.0, 4.5]))
        group = manager.add_highlight_from_range(field, 1, 1.0, 3.0)
        assert group.label == "score: 1.00 - 3.00"
        assert group.cell_indices.tolist() == [1, 2]

    def test_groups_follow_category_renames(self):
        manager, _ = make_manager(point_count=4)
        field = Field.categorical("cluster", ["A", "B"], codes=np.array([0, 1, 1, 0], dtype=np.uint8))
        group = manager.add_highlight_from_category(field, 0, 1)

        field.payload.categories = ["A", "Beta"]
        manager.refresh_group_labels("obs", 0, field)
        assert group.label == "cluster: Beta"

    def test_clear_all_highlights(self):
        manager, viewer = make_manager()
        manager.add_highlight_direct([1, 2])
        manager.clear_all_highlights()
        assert viewer.highlight.sum() == 0
        assert manager.active_page.groups == []


class TestCombine:
    def _two_pages(self):
        manager, _ = make_manager()
        first = manager.create_highlight_page("A")
        manager.add_highlight_direct([1, 2, 3])
        second = manager.create_highlight_page("B")
        manager.switch_to_page(second.id)
        manager.add_highlight_direct([3, 4])
        return manager, first, second

    def test_intersection(self):
        manager, first, second = self._two_pages()
        page = manager.combine_highlight_pages(first.id, second.id, "intersection")
        assert page.name == "A ∩ B"
        assert page.cell_set().tolist() == [3]
        assert page.groups[0].label == "Intersection of A & B"

    def test_union(self):
        manager, first, second = self._two_pages()
        page = manager.combine_highlight_pages(first.id, second.id, "union")
        assert page.name == "A ∪ B"
        assert page.cell_set().tolist() == [1, 2, 3, 4]

    def test_unknown_operation(self):
        manager, first, second = self._two_pages()
        assert manager.combine_highlight_pages(first.id, second.id, "xor") is None


class TestCounts:
    def test_visible_count_respects_filters_and_lod(self):
        transparency = np.array([1, 1, 0, 1, 1, 1], dtype=np.float32)
        manager, viewer = make_manager(point_count=6, transparency=transparency)
        manager.add_highlight_direct([0, 1, 2, 3])
        assert manager.get_highlighted_cell_count() == 3

        viewer.lod_visibility = np.array([1, 0, 1, 1, 1, 1], dtype=np.float32)
        viewer.lod_level = 2
        assert manager.get_highlighted_cell_count() == 2

    def test_count_for_page(self):
        manager, _ = make_manager()
        manager.add_highlight_direct([1, 2])
        assert manager.get_highlighted_cell_count_for_page(manager.active_page_id) == 2
        assert manager.get_highlighted_cell_count_for_page("page_99") == 0


class TestDataStateHighlights:
    def test_wrappers_return_results(self, active_cluster):
        state = active_cluster
        result = state.add_highlight_from_category(0, 2)
        assert result["type"] == "success"
        assert result["group"]["label"] == "cluster: C"
        assert state.get_total_highlighted_cell_count() == 2

        group_id = result["group"]["id"]
        assert state.remove_highlight_group(group_id)["type"] == "success"
        assert state.remove_highlight_group(group_id)["type"] == "error"

    def test_hidden_category_cannot_be_highlighted(self, active_cluster):
        state = active_cluster
        state.set_visibility_for_category(0, 2, False)
        assert state.add_highlight_from_category(0, 2)["type"] == "error"

    def test_rename_updates_group_labels(self, active_cluster):
        state = active_cluster
        state.add_highlight_from_category(0, 0)
        state.rename_field(0, "clusters")
        groups = state.get_highlight_pages()[0]["groups"]
        assert groups[0]["label"] == "clusters: A"

    def test_delete_last_page_is_an_error(self, state):
        page = state.create_highlight_page()["page"]
        assert state.delete_highlight_page(page["id"])["type"] == "error"

    def test_filter_change_updates_visible_count(self, active_cluster):
        state = active_cluster
        state.add_highlight_direct([0, 1, 2])
        assert state.get_highlighted_cell_count() == 3
        state.set_visibility_for_category(0, 0, False)
        assert state.get_highlighted_cell_count() == 2
