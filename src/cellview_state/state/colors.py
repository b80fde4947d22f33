"""
Color buffers, continuous color domains, legends and centroid buffers.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from ..config import DEFAULT_CATEGORY_PALETTE, HIDDEN_GRAY, NEUTRAL_GRAY
from ..fields import CategoryPayload, ContinuousPayload, ContinuousStats, Field, ValueRange
from ..helpers.palettes import get_category_color, is_known_colormap, sample_colormap
from ..tools.centroids import normalize_centroids
from ..tools.utils import rgb_to_hex

logger = logging.getLogger(__name__)

RGB = Tuple[int, int, int]


def _clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(value, hi))


def _clamp_range(rng: ValueRange, stats: ContinuousStats) -> None:
    rng.min = _clamp(rng.min, stats.min, stats.max)
    rng.max = _clamp(rng.max, stats.min, stats.max)
    if rng.min > rng.max:
        rng.min, rng.max = stats.min, stats.max


# =============================================================================
# Continuous fields
# =============================================================================

def ensure_continuous_metadata(payload: ContinuousPayload) -> Optional[Dict[str, Any]]:
    """Fill in stats, filter, color range and positive stats as needed."""
    if not isinstance(payload, ContinuousPayload):
        return None

    values = payload.values
    finite = None
    if payload.stats is None or not np.isfinite([payload.stats.min, payload.stats.max]).all():
        if values is not None and len(values):
            arr = np.asarray(values, dtype=np.float64)
            finite = arr[np.isfinite(arr)]
        if finite is not None and finite.size:
            lo, hi = float(finite.min()), float(finite.max())
            mean, count = float(finite.mean()), int(finite.size)
        else:
            lo, hi, mean, count = 0.0, 1.0, 0.0, 0
        if hi == lo:
            hi = lo + 1.0
        payload.stats = ContinuousStats(min=lo, max=hi, mean=mean, count=count)

    stats = payload.stats
    if payload.filter is None:
        payload.filter = ValueRange(stats.min, stats.max)
    else:
        _clamp_range(payload.filter, stats)

    if payload.color_range is None:
        payload.color_range = payload.filter.copy()
    else:
        _clamp_range(payload.color_range, stats)

    if payload.positive_stats is None and values is not None and len(values):
        arr = np.asarray(values, dtype=np.float64)
        with np.errstate(invalid="ignore"):
            positive = arr[np.isfinite(arr) & (arr > 0)]
        if positive.size:
            payload.positive_stats = ContinuousStats(min=float(positive.min()), max=float(positive.max()))

    if not is_known_colormap(payload.colormap):
        logger.warning("Unknown colormap %r; using viridis", payload.colormap)
        payload.colormap = "viridis"

    return {
        "stats": payload.stats,
        "filter": payload.filter,
        "color_range": payload.color_range,
        "positive_stats": payload.positive_stats,
    }


def continuous_color_domain(payload: ContinuousPayload) -> Dict[str, Any]:
    """The ``[min, max]`` interval the colormap spans, and its scale."""
    meta = ensure_continuous_metadata(payload)
    if meta is None:
        return {"min": 0.0, "max": 1.0, "scale": "linear", "using_filter": False}

    stats = meta["stats"]
    using_filter = payload.use_filter_color_range
    base = meta["color_range"] if using_filter else stats
    lo, hi = base.min, base.max
    scale = "log" if payload.use_log_scale else "linear"

    if scale == "log":
        pos = meta["positive_stats"]
        if pos is not None and pos.min > 0 and pos.max > 0:
            lo = max(lo, pos.min)
            hi = min(hi, pos.max)
            if not np.isfinite(lo) or lo <= 0:
                lo = pos.min
            if not np.isfinite(hi) or hi <= 0:
                hi = pos.max
            if hi <= lo:
                lo, hi = pos.min, pos.max
        else:
            lo, hi = 1.0, 10.0

    if not np.isfinite(lo) or not np.isfinite(hi):
        lo, hi = stats.min, stats.max

    if scale == "log":
        if lo <= 0:
            lo = max(hi / 10.0, 1e-6)
        if hi <= lo:
            hi = lo * 10.0
    elif hi == lo:
        hi = lo + 1.0

    return {"min": float(lo), "max": float(hi), "scale": scale, "using_filter": using_filter}


def continuous_rgb(payload: ContinuousPayload, point_count: int,
                   neutral: RGB = (NEUTRAL_GRAY,) * 3) -> np.ndarray:
    """(n, 3) uint8 colors; NaN and non-positive-under-log become neutral."""
    rgb = np.empty((point_count, 3), dtype=np.uint8)
    rgb[:] = neutral
    if payload.values is None:
        return rgb

    domain = continuous_color_domain(payload)
    v = np.asarray(payload.values[:point_count], dtype=np.float64)
    use_log = domain["scale"] == "log"
    with np.errstate(invalid="ignore", divide="ignore"):
        valid = np.isfinite(v)
        if use_log:
            valid &= v > 0
            lo = np.log10(domain["min"])
            span = (np.log10(domain["max"]) - lo) or 1.0
            t = (np.log10(v[valid]) - lo) / span
        else:
            span = (domain["max"] - domain["min"]) or 1.0
            t = (v[valid] - domain["min"]) / span
    rgb[valid] = sample_colormap(payload.colormap, t)
    return rgb


# =============================================================================
# Categorical fields
# =============================================================================

def ensure_category_metadata(payload: CategoryPayload, palette: str = DEFAULT_CATEGORY_PALETTE) -> None:
    """Default palette colors and all-visible flags for every category."""
    for idx in range(len(payload.categories)):
        color = payload.colors.get(idx)
        if color is None or len(color) != 3:
            payload.colors[idx] = get_category_color(idx, palette)
        payload.visible.setdefault(idx, True)


def categorical_rgb(payload: CategoryPayload, point_count: int,
                    palette: str = DEFAULT_CATEGORY_PALETTE,
                    neutral: RGB = (NEUTRAL_GRAY,) * 3,
                    hidden: RGB = (HIDDEN_GRAY,) * 3) -> np.ndarray:
    """(n, 3) uint8 colors; hidden categories gray, unassigned neutral."""
    rgb = np.empty((point_count, 3), dtype=np.uint8)
    rgb[:] = neutral
    if payload.codes is None:
        return rgb

    ensure_category_metadata(payload, palette)
    n_categories = len(payload.categories)
    table = np.empty((n_categories, 3), dtype=np.uint8)
    for idx in range(n_categories):
        table[idx] = payload.colors[idx] if payload.visible.get(idx, True) else hidden

    codes = payload.codes[:point_count].astype(np.int64)
    in_range = (codes >= 0) & (codes < n_categories)
    rgb[in_range] = table[codes[in_range]]
    return rgb


def compose_rgba(rgb: np.ndarray, transparency: np.ndarray) -> np.ndarray:
    rgba = np.empty((rgb.shape[0], 4), dtype=np.uint8)
    rgba[:, :3] = rgb
    rgba[:, 3] = np.round(np.clip(transparency, 0.0, 1.0) * 255).astype(np.uint8)
    return rgba


def field_rgb(field: Optional[Field], point_count: int, palette: str,
              neutral: RGB, hidden: RGB) -> np.ndarray:
    if field is None:
        rgb = np.empty((point_count, 3), dtype=np.uint8)
        rgb[:] = neutral
        return rgb
    if field.is_categorical:
        return categorical_rgb(field.payload, point_count, palette, neutral, hidden)
    return continuous_rgb(field.payload, point_count, neutral)


# =============================================================================
# Centroids
# =============================================================================

def centroids_for_dimension(field: Field, dim: int, dimension_manager) -> List[Dict]:
    """Centroids for ``dim``, normalized exactly once per dimension."""
    payload = field.payload
    centroids = payload.centroids_by_dim.get(int(dim)) or []
    if centroids and dimension_manager is not None and int(dim) not in payload.normalized_dims:
        norm = dimension_manager.get_norm_transform(dim)
        if norm is not None:
            normalize_centroids(centroids, norm.center, norm.scale)
            payload.normalized_dims.add(int(dim))
    return centroids


def build_centroid_buffers(
    field: Field,
    dim: int,
    dimension_manager,
    counts: Optional[Dict[str, List[int]]] = None,
    palette: str = DEFAULT_CATEGORY_PALETTE,
) -> Tuple[np.ndarray, np.ndarray, List[Dict]]:
    """Positions padded to 3D, RGBA colors and label records.

    Categories with no visible points get zero alpha and no label.
    """
    if not field.is_categorical:
        return np.zeros((0, 3), dtype=np.float32), np.zeros((0, 4), dtype=np.uint8), []

    payload = field.payload
    ensure_category_metadata(payload, palette)
    centroids = centroids_for_dimension(field, dim, dimension_manager)
    index_by_label = {str(c): i for i, c in enumerate(payload.categories)}
    visible_counts = (counts or {}).get("visible")

    positions = np.zeros((len(centroids), 3), dtype=np.float32)
    colors = np.zeros((len(centroids), 4), dtype=np.uint8)
    labels = []
    for i, centroid in enumerate(centroids):
        pos = centroid.get("position") or []
        for axis in range(min(len(pos), 3)):
            positions[i, axis] = pos[axis]

        # One centroid per category in order; renamed labels resolve by position
        if len(centroids) == len(payload.categories):
            idx = i
        else:
            idx = index_by_label.get(str(centroid.get("category")))
        color = payload.colors.get(idx, (0, 0, 0)) if idx is not None else (0, 0, 0)
        shown = idx is not None and payload.visible.get(idx, True)
        if visible_counts is not None and idx is not None and idx < len(visible_counts):
            shown = shown and visible_counts[idx] > 0
        colors[i, :3] = color
        colors[i, 3] = 255 if shown else 0
        if shown:
            labels.append({"text": str(payload.categories[idx]), "position": positions[i].tolist()})
    return positions, colors, labels


# =============================================================================
# Legend
# =============================================================================

def legend_for_field(field: Optional[Field], counts: Optional[Dict[str, List[int]]] = None,
                     palette: str = DEFAULT_CATEGORY_PALETTE) -> Optional[Dict[str, Any]]:
    if field is None:
        return None
    payload = field.payload
    if isinstance(payload, ContinuousPayload):
        meta = ensure_continuous_metadata(payload)
        domain = continuous_color_domain(payload)
        return {
            "kind": "continuous",
            "key": field.key,
            "stats": {"min": meta["stats"].min, "max": meta["stats"].max},
            "filter": {"min": meta["filter"].min, "max": meta["filter"].max},
            "scale": domain["scale"],
            "log_enabled": payload.use_log_scale,
            "colormap": payload.colormap,
            "colorbar": {
                "min": domain["min"],
                "max": domain["max"],
                "using_filter": domain["using_filter"],
            },
        }

    ensure_category_metadata(payload, palette)
    entries = []
    for idx, label in enumerate(payload.categories):
        entry = {
            "index": idx,
            "label": label,
            "color": rgb_to_hex(payload.colors[idx]),
            "visible": payload.visible.get(idx, True),
        }
        if counts is not None:
            entry["total"] = counts["total"][idx]
            entry["available"] = counts["available"][idx]
            entry["visible_count"] = counts["visible"][idx]
        entries.append(entry)
    return {"kind": "category", "key": field.key, "categories": entries}
