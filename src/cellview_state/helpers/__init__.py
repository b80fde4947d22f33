"""
Helpers module for cellview_state.

Collaborator interfaces, palettes and logging setup.
"""

from .interfaces import (
    LoadedArrays,
    FieldLoader,
    NormTransform,
    Viewer,
    NullViewer,
    DimensionManager,
    InMemoryDimensionManager,
    NotificationCenter,
    LoggingNotificationCenter,
)

from .logging_config import setup_logging

from .palettes import (
    get_category_color,
    sample_colormap,
    is_valid_hex_color,
)

__all__ = [
    "LoadedArrays",
    "FieldLoader",
    "NormTransform",
    "Viewer",
    "NullViewer",
    "DimensionManager",
    "InMemoryDimensionManager",
    "NotificationCenter",
    "LoggingNotificationCenter",
    "setup_logging",
    "get_category_color",
    "sample_colormap",
    "is_valid_hex_color",
]
