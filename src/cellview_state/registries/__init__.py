"""
Registries module for cellview_state.

Sparse edit overlays keyed by a field's original identity.
"""

from .base import BaseRegistry
from .rename import RenameRegistry
from .delete import DeleteRegistry
from .user_defined import UserDefinedFieldsRegistry

__all__ = [
    "BaseRegistry",
    "RenameRegistry",
    "DeleteRegistry",
    "UserDefinedFieldsRegistry",
]
