"""
Per-point visibility from the conjunction of every enabled filter.

All functions here are synchronous and read a :class:`ViewContext`; the
orchestrator owns writing the results back and pushing them to the viewer.
"""

from typing import Dict, List, Optional

import numpy as np

from ..fields import CategoryPayload, ContinuousPayload, ContinuousStats, Field, FieldSource
from .view_context import ViewContext

FULL_RANGE_EPSILON_FLOOR = 1e-9
FULL_RANGE_EPSILON_SCALE = 1e-6
OUTLIER_DISABLED_THRESHOLD = 0.9999
OUTLIER_MIN_THRESHOLD = 0.001


def full_range_epsilon(stats: Optional[ContinuousStats]) -> float:
    if stats is None:
        return FULL_RANGE_EPSILON_FLOOR
    value_range = stats.max - stats.min
    if not np.isfinite(value_range) or value_range <= 0:
        return FULL_RANGE_EPSILON_FLOOR
    return max(FULL_RANGE_EPSILON_FLOOR, value_range * FULL_RANGE_EPSILON_SCALE)


def is_full_range(payload: ContinuousPayload) -> bool:
    if payload.stats is None or payload.filter is None:
        return True
    return payload.is_full_range(full_range_epsilon(payload.stats))


# =============================================================================
# Per-field masks
# =============================================================================

def category_filter_active(field: Field) -> bool:
    payload = field.payload
    return (
        isinstance(payload, CategoryPayload)
        and not field.is_deleted
        and payload.filter_enabled
        and bool(payload.categories)
        and bool(payload.hidden_indices())
    )


def continuous_filter_active(field: Field) -> bool:
    payload = field.payload
    return (
        isinstance(payload, ContinuousPayload)
        and not field.is_deleted
        and payload.filter_enabled
        and not is_full_range(payload)
    )


def outlier_filter_active(field: Optional[Field]) -> bool:
    """Outlier filtering only applies to a field exposing quantiles."""
    if field is None or field.outlier_quantiles is None or len(field.outlier_quantiles) == 0:
        return False
    if not field.outlier_filter_enabled:
        return False
    return field.outlier_threshold < OUTLIER_DISABLED_THRESHOLD


def category_mask(field: Field, point_count: int) -> np.ndarray:
    """Points passing the field's category-visibility filter.

    Codes outside the category range (the unassigned sentinel) always pass.
    """
    payload = field.payload
    codes = payload.codes
    if codes is None:
        return np.ones(point_count, dtype=bool)
    n_categories = len(payload.categories)
    lookup_size = max(n_categories, int(codes.max()) + 1 if codes.size else 0)
    lookup = np.ones(lookup_size, dtype=bool)
    for idx in payload.hidden_indices():
        lookup[idx] = False
    return lookup[codes[:point_count]]


def continuous_mask(payload: ContinuousPayload, point_count: int) -> np.ndarray:
    values = payload.values
    if values is None:
        return np.ones(point_count, dtype=bool)
    v = np.asarray(values[:point_count], dtype=np.float64)
    with np.errstate(invalid="ignore"):
        return (v >= payload.filter.min) & (v <= payload.filter.max) & ~np.isnan(v)


def outlier_mask(field: Field, point_count: int) -> np.ndarray:
    q = np.asarray(field.outlier_quantiles[:point_count], dtype=np.float64)
    with np.errstate(invalid="ignore"):
        return ~((q >= 0) & (q > field.outlier_threshold))


# =============================================================================
# Global visibility
# =============================================================================

def compute_global_visibility(
    ctx: ViewContext,
    point_count: int,
    exclude: Optional[Field] = None,
) -> np.ndarray:
    """Transparency buffer: 1.0 where every enabled filter passes, else 0.0.

    Args:
        ctx: Context to evaluate
        point_count: Dataset size
        exclude: Field whose own category filter is ignored (for counts)
    """
    visible = np.ones(point_count, dtype=bool)
    any_filter = False

    for field in ctx.obs_fields:
        if field is exclude:
            continue
        if category_filter_active(field):
            visible &= category_mask(field, point_count)
            any_filter = True
        elif continuous_filter_active(field):
            visible &= continuous_mask(field.payload, point_count)
            any_filter = True

    var_field = ctx.active_var_field()
    if var_field is not None and continuous_filter_active(var_field):
        visible &= continuous_mask(var_field.payload, point_count)
        any_filter = True

    active = ctx.active_field()
    if outlier_filter_active(active):
        visible &= outlier_mask(active, point_count)
        any_filter = True

    if not any_filter:
        return np.ones(point_count, dtype=np.float32)
    return visible.astype(np.float32)


def compute_outlier_severity(ctx: ViewContext, point_count: int) -> np.ndarray:
    """Per-point ``quantile / threshold`` for points over threshold, else -1.

    The maximum ratio across all non-deleted obs fields is kept.
    """
    severity = np.full(point_count, -1.0, dtype=np.float32)
    for field in ctx.obs_fields:
        if field.is_deleted or not outlier_filter_active(field):
            continue
        raw = field.outlier_threshold
        threshold = max(raw, OUTLIER_MIN_THRESHOLD)
        q = np.asarray(field.outlier_quantiles[:point_count], dtype=np.float64)
        with np.errstate(invalid="ignore"):
            over = (q > raw) & ~np.isnan(q)
        ratio = np.where(over, q / threshold, -1.0)
        np.maximum(severity, ratio.astype(np.float32), out=severity)
    return severity


# =============================================================================
# Counts
# =============================================================================

def compute_category_counts(ctx: ViewContext, field: Field, point_count: int) -> Optional[Dict[str, List[int]]]:
    """Per-category ``total``, ``available`` and ``visible`` counts.

    ``available`` applies every filter except the field's own category
    visibility; ``visible`` applies everything.
    """
    if not field.is_categorical or field.payload.codes is None:
        return None
    payload = field.payload
    n_categories = len(payload.categories)
    codes = payload.codes[:point_count].astype(np.int64)
    in_range = (codes >= 0) & (codes < n_categories)

    base = compute_global_visibility(ctx, point_count, exclude=field) > 0
    total = np.bincount(codes[in_range], minlength=n_categories)
    available = np.bincount(codes[in_range & base], minlength=n_categories)

    own = np.ones(n_categories, dtype=bool)
    if payload.filter_enabled:
        for idx in payload.hidden_indices():
            own[idx] = False
    visible = np.where(own, available, 0)

    return {
        "total": total.tolist(),
        "available": available.tolist(),
        "visible": visible.tolist(),
    }


def filtered_count(transparency: Optional[np.ndarray], point_count: int) -> Dict[str, int]:
    if transparency is None:
        return {"shown": point_count, "total": point_count}
    return {"shown": int(np.count_nonzero(transparency > 0.001)), "total": point_count}


# =============================================================================
# Filter descriptions
# =============================================================================

def _format_hidden(field: Field) -> str:
    hidden = [field.categories[i] for i in field.payload.hidden_indices()]
    preview = ", ".join(hidden[:2])
    extra = f" +{len(hidden) - 2}" if len(hidden) > 2 else ""
    return f"{field.key}: hiding {preview}{extra}"


def _format_range(field: Field) -> str:
    flt = field.payload.filter
    return f"{field.key}: {flt.min:.2f} - {flt.max:.2f}"


def get_active_filters_structured(ctx: ViewContext) -> List[Dict]:
    """Every narrowed filter, enabled or not, with a stable id.

    Ids are ``obs-category-i``, ``obs-continuous-i``, ``obs-outlier-i`` and
    ``var-continuous-i``.
    """
    filters = []
    for i, field in enumerate(ctx.obs_fields):
        if field.is_deleted:
            continue
        payload = field.payload
        if isinstance(payload, CategoryPayload) and payload.hidden_indices():
            filters.append({
                "id": f"obs-category-{i}",
                "type": "category",
                "source": FieldSource.OBS.value,
                "field_index": i,
                "field_key": field.key,
                "enabled": payload.filter_enabled,
                "text": _format_hidden(field),
            })
        elif isinstance(payload, ContinuousPayload) and not is_full_range(payload):
            filters.append({
                "id": f"obs-continuous-{i}",
                "type": "continuous",
                "source": FieldSource.OBS.value,
                "field_index": i,
                "field_key": field.key,
                "enabled": payload.filter_enabled,
                "text": _format_range(field),
            })
        if (field.outlier_quantiles is not None and len(field.outlier_quantiles)
                and field.outlier_threshold < OUTLIER_DISABLED_THRESHOLD):
            filters.append({
                "id": f"obs-outlier-{i}",
                "type": "outlier",
                "source": FieldSource.OBS.value,
                "field_index": i,
                "field_key": field.key,
                "enabled": field.outlier_filter_enabled,
                "text": f"{field.key}: outlier threshold {field.outlier_threshold:.2f}",
            })

    var_field = ctx.active_var_field()
    if var_field is not None and not is_full_range(var_field.payload):
        i = ctx.active_var_field_index
        filters.append({
            "id": f"var-continuous-{i}",
            "type": "continuous",
            "source": FieldSource.VAR.value,
            "field_index": i,
            "field_key": var_field.key,
            "enabled": var_field.payload.filter_enabled,
            "text": _format_range(var_field),
        })
    return filters


def get_filter_summary_lines(ctx: ViewContext) -> List[str]:
    lines = [f["text"] for f in get_active_filters_structured(ctx) if f["enabled"]]
    return lines or ["No filters active"]


def parse_filter_id(filter_id: str):
    """``"obs-category-3"`` -> ``("obs", "category", 3)``."""
    parts = str(filter_id).split("-")
    if len(parts) != 3 or not parts[2].isdigit():
        return None
    return parts[0], parts[1], int(parts[2])
