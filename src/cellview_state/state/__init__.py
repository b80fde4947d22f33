"""
State module for cellview_state.

View contexts, the visibility/color pipeline, highlights, categorical edit
planning and the DataState orchestrator.
"""

from .view_context import ViewContext, ViewContextStore
from .loading import FieldLoaderCache
from .category_edits import EditMode, CategoryEditPlan, edit_mode_for
from .highlights import HighlightManager, HighlightPage, HighlightGroup
from .data_state import DataState

__all__ = [
    "ViewContext",
    "ViewContextStore",
    "FieldLoaderCache",
    "EditMode",
    "CategoryEditPlan",
    "edit_mode_for",
    "HighlightManager",
    "HighlightPage",
    "HighlightGroup",
    "DataState",
]
