"""
Per-category centroid computation.
"""

import logging
from typing import Dict, List, Optional, Sequence

import numpy as np

logger = logging.getLogger(__name__)

# Centroids are only drawn for embeddings up to 3D
MAX_CENTROID_DIMENSION = 3


def compute_centroids_for_dimension(
    codes: np.ndarray,
    categories: Sequence[str],
    positions: np.ndarray,
    dim: int,
) -> List[Dict]:
    """Mean position and point count of every category.

    Args:
        codes: Per-point category codes
        categories: Ordered labels; codes >= len(categories) are skipped
        positions: Either (n_points, dim) or flat with stride ``dim``
        dim: Embedding dimension

    Returns:
        One ``{"category", "position", "n_points"}`` dict per category.
        Empty categories get a zero position.
    """
    n_categories = len(categories)
    pos = np.asarray(positions, dtype=np.float64).reshape(-1, dim)
    codes = np.asarray(codes)
    n = min(codes.size, pos.shape[0])
    codes = codes[:n].astype(np.int64)
    pos = pos[:n]

    valid = (codes >= 0) & (codes < n_categories)
    valid_codes = codes[valid]
    counts = np.bincount(valid_codes, minlength=n_categories)

    sums = np.zeros((n_categories, dim), dtype=np.float64)
    for axis in range(dim):
        sums[:, axis] = np.bincount(valid_codes, weights=pos[valid, axis], minlength=n_categories)

    centroids = []
    for idx, label in enumerate(categories):
        count = int(counts[idx])
        if count > 0:
            position = (sums[idx] / count).tolist()
        else:
            position = [0.0] * dim
        centroids.append({"category": str(label), "position": position, "n_points": count})
    return centroids


def compute_all_dimension_centroids(
    codes: np.ndarray,
    categories: Sequence[str],
    dimension_manager,
    dimensions: Optional[Sequence[int]] = None,
) -> Dict[int, List[Dict]]:
    """Centroids for every available embedding dimension up to 3D.

    Dimensions whose positions are not yet loaded are skipped; they are
    filled in later when the dimension becomes available.
    """
    if dimension_manager is None:
        return {}

    dims = dimensions if dimensions is not None else dimension_manager.get_available_dimensions()
    result: Dict[int, List[Dict]] = {}
    for dim in dims:
        if dim > MAX_CENTROID_DIMENSION:
            continue
        positions = dimension_manager.get_positions(dim)
        if positions is None:
            logger.debug("No cached positions for %dD; skipping centroids", dim)
            continue
        result[int(dim)] = compute_centroids_for_dimension(codes, categories, positions, dim)
    return result


def normalize_centroids(centroids: List[Dict], center: Sequence[float], scale: float) -> None:
    """Apply ``(p - center) * scale`` to each centroid position in place."""
    for centroid in centroids:
        position = centroid.get("position")
        if not position:
            continue
        for axis in range(min(len(position), 3)):
            position[axis] = (position[axis] - center[axis]) * scale
