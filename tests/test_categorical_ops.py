"""Tests for category index transforms."""

import numpy as np
import pytest

from cellview_state.errors import InvariantViolation, ValidationError
from cellview_state.tools.categorical_ops import (
    apply_category_index_mapping,
    apply_category_index_mapping_in_place,
    build_delete_to_unassigned_transform,
    build_merge_categories_transform,
)


def labels_of(categories, codes):
    return [categories[c] for c in codes]


class TestDeleteToUnassigned:
    def test_appends_bucket_and_keeps_other_points(self):
        categories = ["A", "B", "C"]
        codes = np.array([0, 1, 2, 0], dtype=np.uint8)

        t = build_delete_to_unassigned_transform(categories, 1)
        new_codes = apply_category_index_mapping(codes, t.mapping, len(t.categories))

        assert t.categories == ["A", "C", "unassigned"]
        assert t.unassigned_new_index == 2
        assert t.kept_old_unassigned_index is None
        assert labels_of(t.categories, new_codes) == ["A", "unassigned", "C", "A"]
        assert t.mapping.tolist() == [0, 2, 1]
        assert new_codes.tolist() == [0, 2, 1, 0]

    def test_folds_unassigned_variants_into_existing_bucket(self):
        categories = ["Unassigned", "A", "unassigned 2", "B"]
        t = build_delete_to_unassigned_transform(categories, 3)

        assert t.categories == ["unassigned", "A"]
        assert t.kept_old_unassigned_index == 0
        assert t.merged_old_indices == [2, 3]
        assert t.mapping.tolist() == [0, 1, 0, 0]

    def test_deleting_canonical_bucket_is_rejected(self):
        with pytest.raises(InvariantViolation):
            build_delete_to_unassigned_transform(["A", "unassigned"], 1)

    def test_out_of_range_index(self):
        with pytest.raises(ValidationError):
            build_delete_to_unassigned_transform(["A"], 3)


class TestMergeCategories:
    def test_merge_example(self):
        t = build_merge_categories_transform(["A", "B", "C"], 0, 1)
        codes = apply_category_index_mapping(np.array([0, 1, 2], dtype=np.uint8), t.mapping, len(t.categories))

        assert t.categories == ["B", "C"]
        assert t.target_new_index == 0
        assert codes.tolist() == [0, 0, 1]

    def test_merge_forward_shifts_target(self):
        t = build_merge_categories_transform(["A", "B", "C", "D"], 1, 3)
        assert t.categories == ["A", "C", "D"]
        assert t.target_new_index == 2
        assert t.mapping.tolist() == [0, 2, 1, 2]

    def test_self_merge_is_rejected(self):
        with pytest.raises(InvariantViolation):
            build_merge_categories_transform(["A", "B"], 1, 1)


class TestApplyMapping:
    def test_sentinel_codes_are_untouched(self):
        mapping = np.array([1, 0], dtype=np.uint16)
        codes = np.array([0, 255, 1], dtype=np.uint8)
        out = apply_category_index_mapping(codes, mapping, 2)
        assert out.tolist() == [1, 255, 0]
        assert codes.tolist() == [0, 255, 1]

    def test_widens_past_255_categories(self):
        mapping = np.arange(300, dtype=np.uint16)
        codes = np.array([0, 5], dtype=np.uint8)
        out = apply_category_index_mapping(codes, mapping, 300)
        assert out.dtype == np.uint16

    def test_in_place(self):
        codes = np.array([0, 1, 2], dtype=np.uint8)
        assert apply_category_index_mapping_in_place(codes, np.array([2, 1, 0]))
        assert codes.tolist() == [2, 1, 0]
        assert not apply_category_index_mapping_in_place(np.zeros(0, dtype=np.uint8), np.array([0]))
