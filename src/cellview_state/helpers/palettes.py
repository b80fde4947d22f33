"""
Category palettes and continuous colormap sampling backed by matplotlib.
"""

import colorsys
from typing import Tuple

import numpy as np
import matplotlib
from matplotlib import colors as mcolors

from ..config import DEFAULT_CATEGORY_PALETTE, DEFAULT_COLORMAP


def hex_to_rgb(hex_color: str) -> Tuple[int, int, int]:
    """Convert a hex colour string (e.g. ``'#1f77b4'``) to ``(R, G, B)``."""
    rgb_float = mcolors.to_rgb(hex_color)
    return tuple(int(round(c * 255)) for c in rgb_float)


def is_valid_hex_color(value) -> bool:
    """True for ``#RRGGBB`` strings only."""
    if not isinstance(value, str) or len(value) != 7 or not value.startswith("#"):
        return False
    try:
        int(value[1:], 16)
    except ValueError:
        return False
    return True


def get_category_color(index: int, palette: str = DEFAULT_CATEGORY_PALETTE) -> Tuple[int, int, int]:
    """Stable color for the ``index``-th category.

    Indices past the end of the qualitative palette get golden-angle hues.
    """
    cmap = matplotlib.colormaps[palette]
    n = getattr(cmap, "N", 0)
    listed = getattr(cmap, "colors", None)
    if listed is not None and index < n:
        r, g, b = mcolors.to_rgb(listed[index])
    else:
        hue = (index * 0.618033988749895) % 1.0
        r, g, b = colorsys.hls_to_rgb(hue, 0.5, 0.65)
    return int(round(r * 255)), int(round(g * 255)), int(round(b * 255))


def is_known_colormap(name: str) -> bool:
    return name in matplotlib.colormaps


def sample_colormap(name: str, t: np.ndarray) -> np.ndarray:
    """Sample a continuous colormap.

    Args:
        name: matplotlib colormap name; unknown names fall back to viridis
        t: Values in [0, 1] (clipped)

    Returns:
        (n, 3) uint8 RGB array
    """
    if name not in matplotlib.colormaps:
        name = DEFAULT_COLORMAP
    cmap = matplotlib.colormaps[name]
    rgba = cmap(np.clip(np.asarray(t, dtype=np.float64), 0.0, 1.0))
    return np.round(np.asarray(rgba)[..., :3] * 255).astype(np.uint8)
