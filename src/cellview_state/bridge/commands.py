"""
Command dispatch for UI callbacks.

A UI sends ``(command, data)``; the command names a DataState method and
``data`` holds its keyword arguments. Results are serialized to JSON-safe
structures and always carry a ``type`` key.
"""

import asyncio
import inspect
import json
import logging
from typing import Any, Dict, Optional

from ..errors import CellviewError
from ..tools.utils import error_result, serialize_result

logger = logging.getLogger(__name__)

DEFAULT_MAX_RESULT_SIZE = 30_000_000

COMMANDS = frozenset([
    # Active field
    "set_active_field",
    "set_active_var_field",
    "clear_active_field",
    "unload_var_field",

    # Category display and filters
    "set_visibility_for_category",
    "set_color_for_category",
    "show_all_categories",
    "hide_all_categories",
    "apply_continuous_filter",
    "reset_continuous_filter",
    "set_colormap",
    "set_log_scale",
    "set_color_range",
    "set_use_filter_color_range",
    "set_outlier_threshold_for_active",
    "toggle_filter_enabled",
    "remove_filter",

    # Queries
    "get_field_summaries",
    "get_active_filters_structured",
    "get_filter_summary_lines",
    "get_filtered_count",
    "get_category_counts",
    "get_legend",
    "get_cache_stats",
    "get_highlight_pages",
    "get_highlighted_cell_count",
    "get_total_highlighted_cell_count",
    "get_view_ids",
    "get_active_view_label",
    "get_dimension_level",
    "get_snapshot_payload",

    # Overlays
    "rename_field",
    "revert_field_rename",
    "rename_category",
    "revert_category_rename",
    "delete_field",
    "restore_field",
    "purge_deleted_field",
    "duplicate_field",
    "delete_category_to_unassigned",
    "merge_categories",
    "create_field_from_highlight_pages",
    "delete_user_defined_field",

    # Highlights
    "add_highlight_from_category",
    "add_highlight_from_range",
    "add_highlight_direct",
    "remove_highlight_group",
    "toggle_highlight_enabled",
    "clear_all_highlights",
    "create_highlight_page",
    "switch_to_page",
    "delete_highlight_page",
    "rename_highlight_page",
    "set_highlight_page_color",
    "combine_highlight_pages",

    # Views and dimensions
    "create_view_from_active",
    "set_active_view",
    "remove_view",
    "clear_snapshot_views",
    "set_dimension_level",
])


async def dispatch_command(state, command: str, data: Optional[Dict[str, Any]] = None,
                           max_result_size: int = DEFAULT_MAX_RESULT_SIZE) -> Dict[str, Any]:
    """
    Run one command against a DataState.

    Args:
        state: DataState instance
        command: Name of the method to call
        data: Keyword arguments for the method
        max_result_size: Largest serialized result, in bytes

    Returns:
        JSON-compatible dict; non-dict return values are wrapped as
        ``{"type": "result", "command", "value"}``
    """
    if command not in COMMANDS:
        return error_result(f"Unknown command: {command}")
    data = data or {}
    method = getattr(state, command)
    try:
        inspect.signature(method).bind(**data)
    except TypeError as exc:
        return error_result(f"Bad arguments for {command}: {exc}")

    try:
        result = method(**data)
        if inspect.isawaitable(result):
            result = await result
    except CellviewError as exc:
        logger.error("Command %s failed: %s", command, exc)
        return error_result(str(exc), command=command)

    if not isinstance(result, dict):
        result = {"type": "result", "command": command, "value": result}
    serialized = serialize_result(result)

    size = len(json.dumps(serialized).encode("utf-8"))
    if size > max_result_size:
        return error_result(f"Result too large: {size:,} bytes", command=command)
    return serialized


def run_command(state, command: str, data: Optional[Dict[str, Any]] = None,
                max_result_size: int = DEFAULT_MAX_RESULT_SIZE) -> Dict[str, Any]:
    """Synchronous wrapper around :func:`dispatch_command` for scripts."""
    return asyncio.run(dispatch_command(state, command, data, max_result_size))
