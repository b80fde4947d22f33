"""
Engine-wide limits, defaults and colors.
"""

from dataclasses import dataclass
from typing import Tuple


# =============================================================================
# Limits
# =============================================================================

MAX_FIELD_KEY_LENGTH = 256
MAX_CATEGORY_LABEL_LENGTH = 256
MAX_USER_DEFINED_FIELDS = 20
MAX_INTERSECTION_PAGES = 12
MAX_CATEGORIES_PER_FIELD = 255

# Code value for points outside every category
UNASSIGNED_CODE = 255

MAX_RLE_RUN = 65535


# =============================================================================
# Cache sizes
# =============================================================================

OBS_CACHE_SIZE = 50
VAR_CACHE_SIZE = 20


# =============================================================================
# Colors
# =============================================================================

NEUTRAL_GRAY = 211
HIDDEN_GRAY = 128
DEFAULT_COLORMAP = "viridis"
DEFAULT_CATEGORY_PALETTE = "tab20"
DEFAULT_HIGHLIGHT_COLOR = "#ffcc00"

DEFAULT_UNASSIGNED_LABEL = "unassigned"
DEFAULT_VIEW_LABEL = "All cells"
LIVE_VIEW_ID = "live"

DEFAULT_DIMENSION = 3


@dataclass
class EngineConfig:
    """Tunables handed to :class:`~cellview_state.state.data_state.DataState`."""

    obs_cache_size: int = OBS_CACHE_SIZE
    var_cache_size: int = VAR_CACHE_SIZE
    cache_max_age: float = 0.0
    default_colormap: str = DEFAULT_COLORMAP
    category_palette: str = DEFAULT_CATEGORY_PALETTE
    unassigned_label: str = DEFAULT_UNASSIGNED_LABEL
    max_user_defined_fields: int = MAX_USER_DEFINED_FIELDS
    neutral_color: Tuple[int, int, int] = (NEUTRAL_GRAY, NEUTRAL_GRAY, NEUTRAL_GRAY)
    hidden_color: Tuple[int, int, int] = (HIDDEN_GRAY, HIDDEN_GRAY, HIDDEN_GRAY)
