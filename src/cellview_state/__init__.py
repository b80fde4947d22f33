"""
cellview_state - View and field state engine for single-cell exploration.

Keeps a live view and any number of frozen snapshot views consistent while a
user filters, recolors, renames, soft-deletes and derives per-cell fields.
Heavy per-cell arrays are loaded lazily and bounded by LRU caches.

Features:
- Rename, soft-delete and derived-field overlays keyed by original identity
- Category delete-to-unassigned and merge edits
- Visibility and color buffers from every enabled filter, with batch mode
- Multi-page cell highlighting with intersection/union
- Per-category centroids per embedding dimension
- AnnData bridge and a command dispatch table for UI callbacks

Basic Usage:
    >>> import anndata as ad
    >>> from cellview_state import create_data_state
    >>> adata = ad.read_h5ad("my_data.h5ad")
    >>> state = create_data_state(adata)
    >>> await state.set_active_field(0)
"""

__version__ = "0.1.0"

# Orchestrator
from .state import DataState, ViewContext, EditMode

# Field model
from .fields import Field, FieldKind, FieldSource, OverlapStrategy, SourceFieldRef

# Registries
from .registries import RenameRegistry, DeleteRegistry, UserDefinedFieldsRegistry

# Configuration and errors
from .config import EngineConfig
from .errors import (
    CellviewError,
    ValidationError,
    InvariantViolation,
    FieldLoadError,
    ConfigurationError,
)

# Collaborators
from .helpers import (
    LoadedArrays,
    Viewer,
    NullViewer,
    DimensionManager,
    InMemoryDimensionManager,
    NotificationCenter,
    LoggingNotificationCenter,
    setup_logging,
)

# Bridge
from .bridge import create_data_state, dispatch_command, run_command

__all__ = [
    # Version
    "__version__",

    # Main API
    "DataState",
    "ViewContext",
    "EditMode",
    "create_data_state",
    "dispatch_command",
    "run_command",

    # Fields
    "Field",
    "FieldKind",
    "FieldSource",
    "OverlapStrategy",
    "SourceFieldRef",

    # Registries
    "RenameRegistry",
    "DeleteRegistry",
    "UserDefinedFieldsRegistry",

    # Config and errors
    "EngineConfig",
    "CellviewError",
    "ValidationError",
    "InvariantViolation",
    "FieldLoadError",
    "ConfigurationError",

    # Collaborators
    "LoadedArrays",
    "Viewer",
    "NullViewer",
    "DimensionManager",
    "InMemoryDimensionManager",
    "NotificationCenter",
    "LoggingNotificationCenter",
    "setup_logging",
]
