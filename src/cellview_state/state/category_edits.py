"""
Planning for destructive categorical edits (delete-to-unassigned, merge).

A plan is computed completely before anything is written to a field. Whether
codes are remapped in place or into a new buffer is an explicit
:class:`EditMode` carried by the plan.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

import numpy as np

from ..config import DEFAULT_CATEGORY_PALETTE, DEFAULT_UNASSIGNED_LABEL, NEUTRAL_GRAY
from ..errors import ValidationError
from ..fields import CategoryPayload, Field
from ..tools.categorical_ops import (
    apply_category_index_mapping,
    apply_category_index_mapping_in_place,
    build_delete_to_unassigned_transform,
    build_merge_categories_transform,
)
from ..tools.utils import make_unique_label
from ..tools.validation import validate_category_index, validate_category_label
from .colors import ensure_category_metadata

RGB = Tuple[int, int, int]


class EditMode(str, Enum):
    IN_PLACE = "in-place"
    COPY = "copy"


def edit_mode_for(field: Field) -> EditMode:
    """Derived fields are edited directly; dataset fields are copied."""
    return EditMode.IN_PLACE if field.is_user_defined else EditMode.COPY


@dataclass
class CategoryEditPlan:
    mode: EditMode
    categories: List[str]
    mapping: np.ndarray
    colors: Dict[int, RGB]
    visible: Dict[int, bool]
    operation: Dict
    old_count: int
    target_index: int = -1
    merged_old_indices: List[int] = field(default_factory=list)

    @property
    def new_count(self) -> int:
        return len(self.categories)


def _carry_state(
    payload: CategoryPayload,
    mapping: np.ndarray,
    new_count: int,
    preferred_source: Dict[int, int],
) -> Tuple[Dict[int, RGB], Dict[int, bool]]:
    """Carry colors and visibility from old to new indices.

    Each new index takes the state of ``preferred_source[new]`` when given,
    else the first old index that maps onto it.
    """
    sources: Dict[int, int] = {}
    for old_index, new_index in enumerate(mapping.tolist()):
        sources.setdefault(int(new_index), old_index)
    sources.update(preferred_source)

    colors: Dict[int, RGB] = {}
    visible: Dict[int, bool] = {}
    for new_index in range(new_count):
        old_index = sources.get(new_index)
        if old_index is None:
            continue
        colors[new_index] = tuple(payload.colors[old_index])
        visible[new_index] = payload.visible.get(old_index, True)
    return colors, visible


def plan_delete_to_unassigned(
    field: Field,
    category_index: int,
    mode: EditMode,
    unassigned_label: str = DEFAULT_UNASSIGNED_LABEL,
    palette: str = DEFAULT_CATEGORY_PALETTE,
) -> CategoryEditPlan:
    """Plan folding ``category_index`` into the unassigned bucket."""
    validate_category_index(category_index, field)
    payload = field.payload
    if payload.codes is None:
        raise ValidationError(f"Field '{field.key}' is not loaded")
    ensure_category_metadata(payload, palette)

    transform = build_delete_to_unassigned_transform(
        payload.categories, category_index, unassigned_label=unassigned_label
    )
    new_count = len(transform.categories)
    preferred = {}
    if transform.kept_old_unassigned_index is not None:
        preferred[transform.unassigned_new_index] = transform.kept_old_unassigned_index
    colors, visible = _carry_state(payload, transform.mapping, new_count, preferred)

    if transform.kept_old_unassigned_index is None:
        colors[transform.unassigned_new_index] = (NEUTRAL_GRAY, NEUTRAL_GRAY, NEUTRAL_GRAY)
        visible[transform.unassigned_new_index] = True

    return CategoryEditPlan(
        mode=mode,
        categories=transform.categories,
        mapping=transform.mapping,
        colors=colors,
        visible=visible,
        operation={
            "type": "delete-to-unassigned",
            "deletedCategory": payload.categories[category_index],
            "unassignedLabel": transform.categories[transform.unassigned_new_index],
            "timestamp": time.time(),
        },
        old_count=len(payload.categories),
        target_index=transform.unassigned_new_index,
        merged_old_indices=transform.merged_old_indices,
    )


def plan_merge_categories(
    field: Field,
    from_index: int,
    to_index: int,
    mode: EditMode,
    merged_label: Optional[str] = None,
    palette: str = DEFAULT_CATEGORY_PALETTE,
) -> CategoryEditPlan:
    """Plan folding ``from_index`` into ``to_index`` under a merged label."""
    validate_category_index(from_index, field)
    validate_category_index(to_index, field)
    payload = field.payload
    if payload.codes is None:
        raise ValidationError(f"Field '{field.key}' is not loaded")
    ensure_category_metadata(payload, palette)

    from_label = payload.categories[from_index]
    to_label = payload.categories[to_index]
    transform = build_merge_categories_transform(payload.categories, from_index, to_index)

    target = transform.target_new_index
    others = [c for i, c in enumerate(transform.categories) if i != target]
    if merged_label is not None and str(merged_label).strip():
        base_label = validate_category_label(merged_label)
    else:
        base_label = f"merged {from_label} + {to_label}"
    categories = list(transform.categories)
    categories[target] = make_unique_label(base_label, others)

    # The merged bucket keeps the dragged category's color
    colors, visible = _carry_state(payload, transform.mapping, len(categories), {target: from_index})
    visible[target] = payload.visible.get(from_index, True) or payload.visible.get(to_index, True)

    return CategoryEditPlan(
        mode=mode,
        categories=categories,
        mapping=transform.mapping,
        colors=colors,
        visible=visible,
        operation={
            "type": "merge-categories",
            "fromCategory": from_label,
            "toCategory": to_label,
            "mergedLabel": categories[target],
            "timestamp": time.time(),
        },
        old_count=len(payload.categories),
        target_index=target,
        merged_old_indices=[from_index, to_index],
    )


def remap_codes(codes: np.ndarray, plan: CategoryEditPlan) -> np.ndarray:
    """Apply the plan's mapping according to its mode.

    IN_PLACE mutates ``codes`` when every new index fits its dtype and
    returns the same array; otherwise a new buffer is allocated.
    """
    fits = plan.new_count <= np.iinfo(codes.dtype).max if codes.dtype.kind in "ui" else False
    if plan.mode == EditMode.IN_PLACE and fits:
        if apply_category_index_mapping_in_place(codes, plan.mapping):
            return codes
    return apply_category_index_mapping(codes, plan.mapping, plan.new_count)
