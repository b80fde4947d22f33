"""
Validation helpers for user-initiated mutations.

Each check raises :class:`~cellview_state.errors.ValidationError` with a
message suitable for showing to the user.
"""

from typing import Any, Optional, Sequence

import numpy as np

from ..config import MAX_CATEGORY_LABEL_LENGTH, MAX_FIELD_KEY_LENGTH
from ..errors import ValidationError


def validate_field_key(key: Any) -> str:
    if not key or not isinstance(key, str):
        raise ValidationError("Field name must be a non-empty string")
    if key.strip() != key:
        raise ValidationError("Field name cannot have leading/trailing whitespace")
    if len(key) > MAX_FIELD_KEY_LENGTH:
        raise ValidationError(f"Field name too long (max {MAX_FIELD_KEY_LENGTH} characters)")
    if ":" in key:
        raise ValidationError('Field name cannot contain ":"')
    return key


def validate_category_label(label: Any) -> str:
    if label is None:
        raise ValidationError("Category label cannot be None")
    value = str(label).strip()
    if not value:
        raise ValidationError("Category label cannot be empty")
    if len(value) > MAX_CATEGORY_LABEL_LENGTH:
        raise ValidationError(f"Category label too long (max {MAX_CATEGORY_LABEL_LENGTH} characters)")
    return value


def _is_int(value: Any) -> bool:
    return isinstance(value, (int, np.integer)) and not isinstance(value, bool)


def validate_field_index(index: Any, fields: Optional[Sequence]) -> int:
    if not _is_int(index) or index < 0:
        raise ValidationError("Field index must be a non-negative integer")
    if not fields or index >= len(fields):
        raise ValidationError(f"Field index {index} out of bounds")
    return int(index)


def validate_category_index(index: Any, field) -> int:
    if not _is_int(index) or index < 0:
        raise ValidationError("Category index must be a non-negative integer")
    if field is None or not field.is_categorical:
        raise ValidationError("Field is not categorical")
    if index >= len(field.categories):
        raise ValidationError(f"Category index {index} out of bounds")
    return int(index)


def validate_cell_indices(indices: Any, point_count: int) -> np.ndarray:
    """Coerce to an int64 array and bounds-check every entry."""
    try:
        arr = np.asarray(indices, dtype=np.int64).ravel()
    except (TypeError, ValueError) as exc:
        raise ValidationError("Cell indices must be integers") from exc
    if arr.size and (arr.min() < 0 or arr.max() >= point_count):
        raise ValidationError(f"Cell indices out of bounds [0, {point_count})")
    return arr


def is_duplicate_key(key: str, fields: Sequence, exclude_index: int = -1) -> bool:
    """True if a non-deleted field other than ``exclude_index`` uses ``key``."""
    return any(
        i != exclude_index and f is not None and f.key == key and not f.is_deleted
        for i, f in enumerate(fields or [])
    )
