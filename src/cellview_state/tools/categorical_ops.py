"""
Category index transforms used by destructive categorical edits.

Both builders are state-free: they take a label list plus indices and return
an old-index -> new-index mapping and the derived label list. Applying the
mapping to a code buffer is a separate step so callers can choose between
allocating a new buffer and mutating an existing one.
"""

import re
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import numpy as np

from ..config import DEFAULT_UNASSIGNED_LABEL
from ..errors import InvariantViolation, ValidationError
from .utils import normalize_for_compare


@dataclass
class DeleteToUnassignedTransform:
    categories: List[str]
    mapping: np.ndarray
    unassigned_new_index: int
    kept_old_unassigned_index: Optional[int]
    merged_old_indices: List[int] = field(default_factory=list)


@dataclass
class MergeCategoriesTransform:
    categories: List[str]
    mapping: np.ndarray
    target_new_index: int


def _is_unassigned_variant(label, base_lower: str) -> bool:
    """Match "unassigned", "Unassigned 2", "UNASSIGNED 10"."""
    norm = normalize_for_compare(label)
    if not norm:
        return False
    return re.fullmatch(rf"{re.escape(base_lower)}(\s+\d+)?", norm) is not None


def _check_index(name: str, index, count: int) -> int:
    if isinstance(index, bool) or not isinstance(index, (int, np.integer)):
        raise ValidationError(f"{name} must be an integer, got {index!r}")
    if index < 0 or index >= count:
        raise ValidationError(f"{name} out of bounds ({index})")
    return int(index)


def build_delete_to_unassigned_transform(
    categories: Sequence[str],
    delete_index: int,
    unassigned_label: str = DEFAULT_UNASSIGNED_LABEL,
) -> DeleteToUnassignedTransform:
    """Fold one category, and any unassigned variants, into one bucket.

    Args:
        categories: Current ordered labels
        delete_index: Index of the category to delete
        unassigned_label: Canonical bucket label

    Returns:
        The transform; the mapping is defined for ``[0, len(categories))``

    Raises:
        ValidationError: ``delete_index`` is out of range
        InvariantViolation: ``delete_index`` is the canonical unassigned bucket
    """
    labels = list(categories or [])
    old_count = len(labels)
    base_lower = normalize_for_compare(unassigned_label) or DEFAULT_UNASSIGNED_LABEL
    canonical_label = base_lower

    unassigned_indices = []
    base_old_index: Optional[int] = None
    for i, label in enumerate(labels):
        if not _is_unassigned_variant(label, base_lower):
            continue
        unassigned_indices.append(i)
        if base_old_index is None and normalize_for_compare(label) == base_lower:
            base_old_index = i

    # Only suffixed variants present: the first one becomes the bucket
    if base_old_index is None and unassigned_indices:
        base_old_index = unassigned_indices[0]

    delete_index = _check_index("delete_index", delete_index, old_count)
    if base_old_index is not None and delete_index == base_old_index:
        raise InvariantViolation("Cannot delete the unassigned category")

    to_merge = set(unassigned_indices)
    to_merge.add(delete_index)
    to_merge.discard(base_old_index)

    mapping = np.zeros(old_count, dtype=np.uint16)
    new_categories: List[str] = []
    unassigned_new_index = -1

    for i in range(old_count):
        if i == base_old_index:
            unassigned_new_index = len(new_categories)
            new_categories.append(canonical_label)
            mapping[i] = unassigned_new_index
        elif i not in to_merge:
            mapping[i] = len(new_categories)
            new_categories.append("" if labels[i] is None else str(labels[i]))

    if unassigned_new_index < 0:
        unassigned_new_index = len(new_categories)
        new_categories.append(canonical_label)

    merged = sorted(to_merge)
    for idx in merged:
        mapping[idx] = unassigned_new_index

    return DeleteToUnassignedTransform(
        categories=new_categories,
        mapping=mapping,
        unassigned_new_index=unassigned_new_index,
        kept_old_unassigned_index=base_old_index,
        merged_old_indices=merged,
    )


def build_merge_categories_transform(
    categories: Sequence[str],
    from_index: int,
    to_index: int,
) -> MergeCategoriesTransform:
    """Fold ``from_index`` into ``to_index`` and drop the source label.

    Indices after ``from_index`` shift down by one.

    Raises:
        ValidationError: an index is out of range
        InvariantViolation: ``from_index == to_index``
    """
    labels = list(categories or [])
    old_count = len(labels)
    from_index = _check_index("from_index", from_index, old_count)
    to_index = _check_index("to_index", to_index, old_count)
    if from_index == to_index:
        raise InvariantViolation("Cannot merge a category into itself")

    target_new_index = to_index - 1 if to_index > from_index else to_index
    old = np.arange(old_count, dtype=np.int64)
    mapping = np.where(old > from_index, old - 1, old).astype(np.uint16)
    mapping[from_index] = target_new_index

    new_categories = [
        "" if label is None else str(label)
        for idx, label in enumerate(labels)
        if idx != from_index
    ]
    return MergeCategoriesTransform(
        categories=new_categories,
        mapping=mapping,
        target_new_index=target_new_index,
    )


def apply_category_index_mapping(codes: np.ndarray, mapping: np.ndarray, new_count: int) -> np.ndarray:
    """Return a remapped copy of ``codes``.

    Codes outside ``[0, len(mapping))`` (e.g. the 255 sentinel) are kept.
    A uint8 buffer widens to uint16 when ``new_count`` exceeds 255.
    """
    codes = np.asarray(codes)
    mapping = np.asarray(mapping)
    dtype = codes.dtype
    if dtype == np.uint8 and new_count > 255:
        dtype = np.uint16

    out = codes.astype(dtype, copy=True)
    in_range = codes < mapping.size
    if codes.dtype.kind == "i":
        in_range &= codes >= 0
    out[in_range] = mapping[codes[in_range]]
    return out


def apply_category_index_mapping_in_place(codes: np.ndarray, mapping: np.ndarray) -> bool:
    """Remap ``codes`` in place; returns False when nothing could be applied.

    The caller guarantees every mapped index fits the buffer's dtype.
    """
    if not isinstance(codes, np.ndarray) or codes.size == 0:
        return False
    mapping = np.asarray(mapping)
    if mapping.size == 0:
        return False

    in_range = codes < mapping.size
    if codes.dtype.kind == "i":
        in_range &= codes >= 0
    codes[in_range] = mapping[codes[in_range]].astype(codes.dtype)
    return True
