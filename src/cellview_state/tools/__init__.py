"""
Tools module for cellview_state.

Pure helpers: label and id utilities, run-length codec, category index
transforms, centroid computation and the LRU cache.
"""

from .utils import (
    normalize_for_compare,
    make_unique_label,
    make_field_id,
    parse_field_id,
    generate_id,
    rle_encode,
    rle_decode,
    pack_buffer,
    unpack_buffer,
    serialize_result,
)

from .categorical_ops import (
    DeleteToUnassignedTransform,
    MergeCategoriesTransform,
    build_delete_to_unassigned_transform,
    build_merge_categories_transform,
    apply_category_index_mapping,
    apply_category_index_mapping_in_place,
)

from .centroids import (
    compute_centroids_for_dimension,
    compute_all_dimension_centroids,
    normalize_centroids,
)

from .lru_cache import LRUCache

__all__ = [
    # Utils
    "normalize_for_compare",
    "make_unique_label",
    "make_field_id",
    "parse_field_id",
    "generate_id",
    "rle_encode",
    "rle_decode",
    "pack_buffer",
    "unpack_buffer",
    "serialize_result",

    # Categorical transforms
    "DeleteToUnassignedTransform",
    "MergeCategoriesTransform",
    "build_delete_to_unassigned_transform",
    "build_merge_categories_transform",
    "apply_category_index_mapping",
    "apply_category_index_mapping_in_place",

    # Centroids
    "compute_centroids_for_dimension",
    "compute_all_dimension_centroids",
    "normalize_centroids",

    # Cache
    "LRUCache",
]
