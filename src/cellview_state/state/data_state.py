"""
DataState: the orchestrator the rest of the application talks to.

It owns the working view context, the overlay registries, the loader
cache and the highlight manager, and keeps the viewer's buffers in sync.
User-facing mutators never raise on bad input: they log the rejection and
return ``{"type": "error", "message": ...}``. Load failures propagate.
"""

import copy
import functools
import logging
import time
from contextlib import contextmanager
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from ..config import DEFAULT_COLORMAP, DEFAULT_VIEW_LABEL, LIVE_VIEW_ID, EngineConfig
from ..errors import FieldLoadError, ValidationError
from ..fields import Field, FieldSource, OverlapStrategy, SourceFieldRef, ValueRange
from ..helpers.interfaces import DimensionManager, NotificationCenter, NullViewer, Viewer
from ..helpers.palettes import hex_to_rgb, is_known_colormap, is_valid_hex_color
from ..registries import DeleteRegistry, RenameRegistry, UserDefinedFieldsRegistry
from ..tools.centroids import MAX_CENTROID_DIMENSION, compute_all_dimension_centroids
from ..tools.utils import error_result, make_unique_label, normalize_for_compare, pack_buffer, success_result
from ..tools.validation import (
    is_duplicate_key,
    validate_category_index,
    validate_category_label,
    validate_cell_indices,
    validate_field_index,
    validate_field_key,
)
from .category_edits import (
    CategoryEditPlan,
    EditMode,
    edit_mode_for,
    plan_delete_to_unassigned,
    plan_merge_categories,
    remap_codes,
)
from .colors import (
    build_centroid_buffers,
    compose_rgba,
    ensure_category_metadata,
    ensure_continuous_metadata,
    field_rgb,
    legend_for_field,
)
from .highlights import HighlightManager
from .loading import FieldLoaderCache, install_arrays
from .overlays import apply_all_overlays, apply_delete_overlay, apply_rename_overlay, inject_user_defined_fields
from .view_context import ViewContext, ViewContextStore
from .visibility import (
    category_filter_active,
    compute_category_counts,
    compute_global_visibility,
    compute_outlier_severity,
    continuous_filter_active,
    filtered_count,
    get_active_filters_structured,
    get_filter_summary_lines,
    parse_filter_id,
)

logger = logging.getLogger(__name__)

SERIALIZATION_VERSION = 1


def _mutator(func):
    """Turn validation failures into error results."""
    @functools.wraps(func)
    def wrapper(self, *args, **kwargs):
        try:
            return func(self, *args, **kwargs)
        except ValidationError as exc:
            logger.warning("%s rejected: %s", func.__name__, exc)
            return error_result(str(exc))
    return wrapper


def _async_mutator(func):
    @functools.wraps(func)
    async def wrapper(self, *args, **kwargs):
        try:
            return await func(self, *args, **kwargs)
        except ValidationError as exc:
            logger.warning("%s rejected: %s", func.__name__, exc)
            return error_result(str(exc))
    return wrapper


def _source(source) -> FieldSource:
    try:
        return FieldSource(source)
    except ValueError as exc:
        raise ValidationError(f"Unknown field source: {source!r}") from exc


def _alias_source(field: Field) -> FieldSource:
    ref = field.source_field
    if ref is not None and ref.kind == "continuous-var":
        return FieldSource.VAR
    if ref is not None and ref.kind in ("continuous-obs", "categorical-obs"):
        return FieldSource.OBS
    return field.source


class DataState:
    """Field and view state engine for one dataset.

    Args:
        viewer: Render sink; a :class:`NullViewer` is used when omitted
        dimension_manager: Embedding positions per dimension
        notifications: Load progress sink
        obs_loader: ``async (field) -> LoadedArrays`` for obs columns
        var_loader: ``async (field) -> LoadedArrays`` for genes
        config: Engine tunables
        rename_registry: Field/category rename overlay
        delete_registry: Soft-delete overlay
        user_defined_registry: Derived field templates
    """

    def __init__(
        self,
        viewer: Optional[Viewer] = None,
        dimension_manager: Optional[DimensionManager] = None,
        notifications: Optional[NotificationCenter] = None,
        obs_loader=None,
        var_loader=None,
        config: Optional[EngineConfig] = None,
        rename_registry: Optional[RenameRegistry] = None,
        delete_registry: Optional[DeleteRegistry] = None,
        user_defined_registry: Optional[UserDefinedFieldsRegistry] = None,
    ):
        self.config = config or EngineConfig()
        self.viewer = viewer if viewer is not None else NullViewer()
        self.dimension_manager = dimension_manager
        self.notifications = notifications

        self.renames = rename_registry if rename_registry is not None else RenameRegistry()
        self.deletes = delete_registry if delete_registry is not None else DeleteRegistry()
        self.user_defined = (
            user_defined_registry if user_defined_registry is not None
            else UserDefinedFieldsRegistry(self.config.max_user_defined_fields)
        )

        self.loader_cache = FieldLoaderCache(
            obs_loader=obs_loader,
            var_loader=var_loader,
            obs_cache_size=self.config.obs_cache_size,
            var_cache_size=self.config.var_cache_size,
            max_age=self.config.cache_max_age,
            notifications=notifications,
            on_evict=self._on_cache_evict,
        )

        self.point_count = 0
        self.views = ViewContextStore()
        self.ctx = ViewContext()
        self.active_view_id = LIVE_VIEW_ID
        self.highlights = HighlightManager(self.viewer, lambda: self.ctx.transparency)

        self._batch_depth = 0
        self._dirty = {"visibility": False, "colors": False}
        self._dirty_fields = set()

    # =========================================================================
    # Dataset
    # =========================================================================

    def load_dataset(self, obs_fields: Sequence[Field], var_fields: Optional[Sequence[Field]] = None,
                     point_count: Optional[int] = None) -> None:
        """Replace the dataset. Overlays, derived fields and views are reset.

        Raises:
            ValidationError: the point count cannot be determined or a
                preloaded array has the wrong length
        """
        obs_fields = list(obs_fields or [])
        var_fields = list(var_fields or [])
        if point_count is None:
            point_count = self._infer_point_count(obs_fields + var_fields)
        point_count = int(point_count)
        for field in obs_fields + var_fields:
            data = field.payload.codes if field.is_categorical else field.payload.values
            if data is not None and len(data) != point_count:
                raise ValidationError(
                    f"Field '{field.key}' has {len(data)} values but the dataset has {point_count} points"
                )
            if field.is_continuous and field.payload.colormap == DEFAULT_COLORMAP:
                field.payload.colormap = self.config.default_colormap

        self.renames.clear()
        self.deletes.clear()
        self.user_defined.clear()
        self.loader_cache.clear()
        self.views.clear()
        self._batch_depth = 0
        self._reset_dirty()

        self.point_count = point_count
        self.active_view_id = LIVE_VIEW_ID
        dimension = self.dimension_manager.get_default_dimension() if self.dimension_manager else 3
        self.ctx = ViewContext(
            view_id=LIVE_VIEW_ID,
            obs_fields=obs_fields,
            var_fields=var_fields,
            dimension_level=dimension,
        )
        for source in (FieldSource.OBS, FieldSource.VAR):
            for field in self.ctx.fields_for(source):
                field.source = source
        apply_all_overlays(self.ctx, self.renames, self.deletes, self.user_defined)
        self.views.put(self.ctx)
        self.highlights.reset(point_count)

        logger.info("Loaded dataset: %d points, %d obs fields, %d var fields",
                    point_count, len(obs_fields), len(var_fields))
        self._recompute(visibility=True)
        self.viewer.set_highlight(self.highlights.highlight)

    def _infer_point_count(self, fields: Sequence[Field]) -> int:
        for field in fields:
            data = field.payload.codes if field.is_categorical else field.payload.values
            if data is not None:
                return len(data)
        if self.dimension_manager is not None:
            positions = self.dimension_manager.get_positions(self.dimension_manager.get_default_dimension())
            if positions is not None:
                return len(positions)
        raise ValidationError("Cannot determine the number of points")

    # =========================================================================
    # Field access
    # =========================================================================

    def get_fields(self, source=FieldSource.OBS) -> List[Field]:
        return self.ctx.fields_for(_source(source))

    def get_field(self, index: int, source=FieldSource.OBS) -> Optional[Field]:
        fields = self.get_fields(source)
        return fields[index] if 0 <= index < len(fields) else None

    def get_active_field(self) -> Optional[Field]:
        return self.ctx.active_field()

    def get_visible_fields(self, source=FieldSource.OBS) -> List[Tuple[int, Field]]:
        """``(index, field)`` pairs of non-deleted fields."""
        return [(i, f) for i, f in enumerate(self.get_fields(source)) if not f.is_deleted]

    def get_deleted_fields(self, source=FieldSource.OBS) -> List[Tuple[int, Field]]:
        """Soft-deleted fields that can still be restored."""
        return [(i, f) for i, f in enumerate(self.get_fields(source)) if f.is_deleted and not f.is_purged]

    def get_field_summaries(self, source=FieldSource.OBS) -> List[Dict[str, Any]]:
        summaries = []
        for i, field in enumerate(self.get_fields(source)):
            info = field.summary()
            info["index"] = i
            summaries.append(info)
        return summaries

    def _field_at(self, index, source) -> Tuple[FieldSource, List[Field], Field]:
        source = _source(source)
        fields = self.ctx.fields_for(source)
        index = validate_field_index(index, fields)
        return source, fields, fields[index]

    def _live_field_at(self, index, source) -> Tuple[FieldSource, List[Field], Field]:
        source, fields, field = self._field_at(index, source)
        if field.is_deleted:
            raise ValidationError(f"Field '{field.key}' is deleted")
        return source, fields, field

    def _continuous_at(self, index, source) -> Field:
        _, _, field = self._live_field_at(index, source)
        if not field.is_continuous:
            raise ValidationError(f"Field '{field.key}' is not continuous")
        ensure_continuous_metadata(field.payload)
        return field

    def _categorical_at(self, index, source) -> Field:
        _, _, field = self._live_field_at(index, source)
        if not field.is_categorical:
            raise ValidationError(f"Field '{field.key}' is not categorical")
        ensure_category_metadata(field.payload, self.config.category_palette)
        return field

    def _existing_keys(self, fields: Sequence[Field], exclude_index: int = -1) -> List[str]:
        return [f.key for i, f in enumerate(fields) if i != exclude_index and not f.is_deleted]

    # =========================================================================
    # Loading
    # =========================================================================

    async def ensure_field_loaded(self, index: int, silent: bool = False) -> Field:
        """Materialize an obs field's arrays.

        Raises:
            ValidationError: bad index
            FieldLoadError: the loader failed or returned mis-sized arrays
            ConfigurationError: no obs loader is configured
        """
        _, _, field = self._field_at(index, FieldSource.OBS)
        await self._ensure_loaded(field, silent)
        return field

    async def ensure_var_field_loaded(self, index: int, silent: bool = False) -> Field:
        _, _, field = self._field_at(index, FieldSource.VAR)
        await self._ensure_loaded(field, silent)
        return field

    async def _ensure_loaded(self, field: Field, silent: bool = False) -> None:
        if field.is_loaded:
            return
        if field.is_alias:
            source = await self._load_alias_source(field, silent)
            field.payload.values = source.payload.values
            field.outlier_quantiles = source.outlier_quantiles
            ensure_continuous_metadata(field.payload)
            return
        if field.is_user_defined:
            template = self.user_defined.get_field(field.user_defined_id)
            if template is None or not template.is_loaded:
                raise FieldLoadError(f"User-defined field '{field.key}' has no data")
            field.payload.codes = template.payload.codes.copy()
            self._ensure_centroids(field)
            return

        arrays = await self.loader_cache.load(field, self.point_count, silent)
        install_arrays(field, arrays)
        if field.is_categorical:
            ensure_category_metadata(field.payload, self.config.category_palette)
            self._ensure_centroids(field)
        else:
            ensure_continuous_metadata(field.payload)

    async def _load_alias_source(self, alias: Field, silent: bool) -> Field:
        ref = alias.source_field
        source = _alias_source(alias)
        fields = self.ctx.fields_for(source)
        match = next((f for f in fields if not f.is_user_defined and f.registry_key == ref.source_key), None)
        if match is None:
            # Source not in this context; load it detached by its original key
            match = Field.continuous(ref.source_key, source=source)
        await self._ensure_loaded(match, silent)
        return match

    def unload_var_field(self, index: int, preserve_active: bool = False) -> bool:
        """Drop a gene's arrays from its field and the cache.

        Returns:
            False when the field is active and ``preserve_active`` is set
        """
        _, _, field = self._field_at(index, FieldSource.VAR)
        is_active = self.ctx.active_source == FieldSource.VAR and self.ctx.active_var_field_index == index
        if is_active and preserve_active:
            return False
        if is_active:
            self.ctx.clear_active()
        field.release_arrays()
        if not field.is_user_defined:
            self.loader_cache.forget(FieldSource.VAR, field.registry_key)
        self._refresh(visibility=True, colors=True, field=field)
        return True

    def get_cache_stats(self) -> Dict[str, Dict]:
        return self.loader_cache.get_stats()

    def _all_contexts(self) -> List[ViewContext]:
        contexts = [self.ctx]
        contexts.extend(c for c in self.views.contexts.values() if c is not self.ctx)
        return contexts

    def _on_cache_evict(self, source: FieldSource, original_key: str) -> None:
        """Release evicted arrays from fields that nothing is using."""
        for ctx in self._all_contexts():
            active = ctx.active_field()
            for field in ctx.fields_for(source):
                if field.is_alias:
                    if _alias_source(field) != source or field.source_field.source_key != original_key:
                        continue
                elif field.is_user_defined or field.registry_key != original_key:
                    continue
                if field is active or category_filter_active(field) or continuous_filter_active(field):
                    continue
                field.release_arrays()

    # =========================================================================
    # Batch mode and recomputation
    # =========================================================================

    def begin_batch(self) -> None:
        self._batch_depth += 1

    def end_batch(self) -> None:
        """Leave one batch level; the outermost exit flushes pending work."""
        if self._batch_depth == 0:
            logger.warning("end_batch called outside of a batch")
            return
        self._batch_depth -= 1
        if self._batch_depth == 0 and (self._dirty["visibility"] or self._dirty["colors"]):
            logger.debug("Flushing batch (%d fields touched)", len(self._dirty_fields))
            self._recompute(visibility=self._dirty["visibility"])
            self._reset_dirty()

    def is_batch_mode(self) -> bool:
        return self._batch_depth > 0

    @contextmanager
    def batch(self):
        self.begin_batch()
        try:
            yield self
        finally:
            self.end_batch()

    def _reset_dirty(self) -> None:
        self._dirty = {"visibility": False, "colors": False}
        self._dirty_fields = set()

    def _refresh(self, visibility: bool = False, colors: bool = False, field: Optional[Field] = None) -> None:
        if field is not None:
            self._dirty_fields.add(field.key)
        if self._batch_depth:
            self._dirty["visibility"] |= visibility
            self._dirty["colors"] |= colors or visibility
            return
        self._recompute(visibility=visibility)
        self._dirty_fields = set()

    def _recompute(self, visibility: bool = True) -> None:
        """Recompute buffers of the working context and push them."""
        ctx = self.ctx
        n = self.point_count
        view_id = self.active_view_id
        if visibility or ctx.transparency is None or len(ctx.transparency) != n:
            ctx.transparency = compute_global_visibility(ctx, n)
            ctx.outlier_quantiles = compute_outlier_severity(ctx, n)
            self.highlights.invalidate_counts(visible_only=True)
            self.viewer.set_transparency(ctx.transparency, view_id)
            self.viewer.set_outlier_quantiles(ctx.outlier_quantiles, view_id)

        rgb = field_rgb(ctx.active_field(), n, self.config.category_palette,
                        self.config.neutral_color, self.config.hidden_color)
        ctx.colors = compose_rgba(rgb, ctx.transparency)
        self.viewer.set_colors(ctx.colors, view_id)
        self._update_centroids()

    def _ensure_centroids(self, field: Field, dim: Optional[int] = None) -> None:
        """Compute centroids for dimensions that became available."""
        dm = self.dimension_manager
        if dm is None or not field.is_categorical or field.payload.codes is None:
            return
        payload = field.payload
        if dim is None:
            if not payload.centroids_by_dim:
                payload.centroids_by_dim = compute_all_dimension_centroids(payload.codes, payload.categories, dm)
                payload.normalized_dims = set()
            return
        if int(dim) in payload.centroids_by_dim or dim > MAX_CENTROID_DIMENSION or not dm.has_dimension(dim):
            return
        computed = compute_all_dimension_centroids(payload.codes, payload.categories, dm, dimensions=[dim])
        payload.centroids_by_dim.update(computed)
        payload.normalized_dims.discard(int(dim))
        if field.is_user_defined:
            positions = dm.get_positions(dim)
            if positions is not None:
                self.user_defined.recompute_centroids_for_dimension(field.user_defined_id, dim, positions)

    def _update_centroids(self) -> None:
        ctx = self.ctx
        field = ctx.active_field()
        if field is None or field.is_deleted or not field.is_categorical or field.payload.codes is None:
            positions = np.zeros((0, 3), dtype=np.float32)
            colors = np.zeros((0, 4), dtype=np.uint8)
            labels: List[Dict] = []
        else:
            self._ensure_centroids(field, ctx.dimension_level)
            counts = compute_category_counts(ctx, field, self.point_count)
            positions, colors, labels = build_centroid_buffers(
                field, ctx.dimension_level, self.dimension_manager, counts, self.config.category_palette
            )
        ctx.centroid_positions = positions
        ctx.centroid_colors = colors
        ctx.centroid_labels = labels
        self.viewer.set_centroids(positions, colors, self.active_view_id)
        self.viewer.set_centroid_labels(labels, self.active_view_id)

    # =========================================================================
    # Active field
    # =========================================================================

    @_async_mutator
    async def set_active_field(self, index: int) -> Dict[str, Any]:
        """Load (if needed) and color by an obs field."""
        _, _, field = self._live_field_at(index, FieldSource.OBS)
        await self._ensure_loaded(field)
        self.ctx.active_source = FieldSource.OBS
        self.ctx.active_field_index = index
        self._refresh(visibility=True, colors=True, field=field)
        return success_result(field=field.summary(), legend=self.get_legend())

    @_async_mutator
    async def set_active_var_field(self, index: int) -> Dict[str, Any]:
        _, _, field = self._live_field_at(index, FieldSource.VAR)
        await self._ensure_loaded(field)
        self.ctx.active_source = FieldSource.VAR
        self.ctx.active_var_field_index = index
        self._refresh(visibility=True, colors=True, field=field)
        return success_result(field=field.summary(), legend=self.get_legend())

    def clear_active_field(self) -> Dict[str, Any]:
        self.ctx.clear_active()
        self._refresh(visibility=True, colors=True)
        return success_result()

    def _reactivate(self, source: FieldSource, index: int) -> None:
        self.ctx.active_source = source
        if source == FieldSource.VAR:
            self.ctx.active_var_field_index = index
        else:
            self.ctx.active_field_index = index

    def _clear_active_if(self, ctx: ViewContext, field: Field) -> None:
        if ctx.active_field() is field:
            ctx.clear_active()

    # =========================================================================
    # Category display and filters
    # =========================================================================

    @_mutator
    def set_visibility_for_category(self, field_index: int, category_index: int, visible: bool,
                                    source=FieldSource.OBS) -> Dict[str, Any]:
        field = self._categorical_at(field_index, source)
        category_index = validate_category_index(category_index, field)
        field.payload.visible[category_index] = bool(visible)
        self._refresh(visibility=True, colors=True, field=field)
        return success_result(category_index=category_index, visible=bool(visible))

    @_mutator
    def set_color_for_category(self, field_index: int, category_index: int, color,
                               source=FieldSource.OBS) -> Dict[str, Any]:
        field = self._categorical_at(field_index, source)
        category_index = validate_category_index(category_index, field)
        if isinstance(color, str):
            if not is_valid_hex_color(color.strip()):
                raise ValidationError(f"Invalid color: {color!r}")
            rgb = hex_to_rgb(color.strip())
        else:
            try:
                rgb = tuple(int(c) for c in color)
            except (TypeError, ValueError) as exc:
                raise ValidationError(f"Invalid color: {color!r}") from exc
            if len(rgb) != 3 or not all(0 <= c <= 255 for c in rgb):
                raise ValidationError(f"Invalid color: {color!r}")
        field.payload.colors[category_index] = rgb
        self._refresh(colors=True, field=field)
        return success_result(category_index=category_index, color=list(rgb))

    def _set_all_categories(self, field_index, visible: bool, source) -> Dict[str, Any]:
        field = self._categorical_at(field_index, source)
        for idx in range(len(field.categories)):
            field.payload.visible[idx] = visible
        self._refresh(visibility=True, colors=True, field=field)
        return success_result(n_categories=len(field.categories))

    @_mutator
    def show_all_categories(self, field_index: int, source=FieldSource.OBS) -> Dict[str, Any]:
        return self._set_all_categories(field_index, True, source)

    @_mutator
    def hide_all_categories(self, field_index: int, source=FieldSource.OBS) -> Dict[str, Any]:
        return self._set_all_categories(field_index, False, source)

    @_mutator
    def apply_continuous_filter(self, field_index: int, min_value: float, max_value: float,
                                source=FieldSource.OBS) -> Dict[str, Any]:
        field = self._continuous_at(field_index, source)
        lo, hi = float(min_value), float(max_value)
        if not np.isfinite([lo, hi]).all():
            raise ValidationError("Filter bounds must be finite numbers")
        if lo > hi:
            lo, hi = hi, lo
        payload = field.payload
        payload.filter = ValueRange(lo, hi)
        payload.color_range = ValueRange(lo, hi)
        ensure_continuous_metadata(payload)
        self._refresh(visibility=True, colors=True, field=field)
        return success_result(filter={"min": payload.filter.min, "max": payload.filter.max})

    @_mutator
    def reset_continuous_filter(self, field_index: int, source=FieldSource.OBS) -> Dict[str, Any]:
        field = self._continuous_at(field_index, source)
        stats = field.payload.stats
        field.payload.filter = ValueRange(stats.min, stats.max)
        field.payload.color_range = ValueRange(stats.min, stats.max)
        self._refresh(visibility=True, colors=True, field=field)
        return success_result()

    @_mutator
    def set_colormap(self, field_index: int, colormap: str, source=FieldSource.OBS) -> Dict[str, Any]:
        field = self._continuous_at(field_index, source)
        if not is_known_colormap(colormap):
            raise ValidationError(f"Unknown colormap: {colormap!r}")
        field.payload.colormap = colormap
        self._refresh(colors=True, field=field)
        return success_result(colormap=colormap)

    @_mutator
    def set_log_scale(self, field_index: int, enabled: bool, source=FieldSource.OBS) -> Dict[str, Any]:
        field = self._continuous_at(field_index, source)
        field.payload.use_log_scale = bool(enabled)
        self._refresh(colors=True, field=field)
        return success_result(log_scale=bool(enabled))

    @_mutator
    def set_color_range(self, field_index: int, min_value: Optional[float] = None,
                        max_value: Optional[float] = None, source=FieldSource.OBS) -> Dict[str, Any]:
        """Pin the colormap domain; ``None`` bounds fall back to the full range."""
        field = self._continuous_at(field_index, source)
        stats = field.payload.stats
        lo = stats.min if min_value is None else float(min_value)
        hi = stats.max if max_value is None else float(max_value)
        if lo > hi:
            lo, hi = hi, lo
        field.payload.color_range = ValueRange(lo, hi)
        field.payload.use_filter_color_range = True
        ensure_continuous_metadata(field.payload)
        self._refresh(colors=True, field=field)
        return success_result(color_range={"min": field.payload.color_range.min,
                                           "max": field.payload.color_range.max})

    @_mutator
    def set_use_filter_color_range(self, field_index: int, enabled: bool,
                                   source=FieldSource.OBS) -> Dict[str, Any]:
        field = self._continuous_at(field_index, source)
        field.payload.use_filter_color_range = bool(enabled)
        self._refresh(colors=True, field=field)
        return success_result(use_filter_color_range=bool(enabled))

    @_mutator
    def set_outlier_threshold_for_active(self, threshold: float) -> Dict[str, Any]:
        field = self.ctx.active_field()
        if field is None:
            raise ValidationError("No active field")
        value = float(threshold)
        if not np.isfinite(value):
            raise ValidationError("Outlier threshold must be a number")
        field.outlier_threshold = min(max(value, 0.0), 1.0)
        self._refresh(visibility=True, colors=True, field=field)
        return success_result(threshold=field.outlier_threshold)

    def _filter_target(self, filter_id: str) -> Tuple[str, Field]:
        parsed = parse_filter_id(filter_id)
        if parsed is None:
            raise ValidationError(f"Unknown filter id: {filter_id!r}")
        source, kind, index = parsed
        _, _, field = self._field_at(index, source)
        if kind not in ("category", "continuous", "outlier"):
            raise ValidationError(f"Unknown filter id: {filter_id!r}")
        return kind, field

    @_mutator
    def toggle_filter_enabled(self, filter_id: str, enabled: Optional[bool] = None) -> Dict[str, Any]:
        kind, field = self._filter_target(filter_id)
        if kind == "outlier":
            field.outlier_filter_enabled = (not field.outlier_filter_enabled) if enabled is None else bool(enabled)
            state = field.outlier_filter_enabled
        else:
            payload = field.payload
            payload.filter_enabled = (not payload.filter_enabled) if enabled is None else bool(enabled)
            state = payload.filter_enabled
        self._refresh(visibility=True, colors=True, field=field)
        return success_result(id=filter_id, enabled=state)

    @_mutator
    def remove_filter(self, filter_id: str) -> Dict[str, Any]:
        """Reset the filter behind ``filter_id`` to its pass-everything state."""
        kind, field = self._filter_target(filter_id)
        if kind == "category" and field.is_categorical:
            for idx in range(len(field.categories)):
                field.payload.visible[idx] = True
            field.payload.filter_enabled = True
        elif kind == "continuous" and field.is_continuous:
            ensure_continuous_metadata(field.payload)
            stats = field.payload.stats
            field.payload.filter = ValueRange(stats.min, stats.max)
            field.payload.filter_enabled = True
        elif kind == "outlier":
            field.outlier_threshold = 1.0
            field.outlier_filter_enabled = True
        else:
            raise ValidationError(f"Filter {filter_id!r} does not match field '{field.key}'")
        self._refresh(visibility=True, colors=True, field=field)
        return success_result(id=filter_id)

    # =========================================================================
    # Derived views of state
    # =========================================================================

    def get_active_filters_structured(self) -> List[Dict[str, Any]]:
        return get_active_filters_structured(self.ctx)

    def get_filter_summary_lines(self) -> List[str]:
        return get_filter_summary_lines(self.ctx)

    def get_filtered_count(self) -> Dict[str, int]:
        return filtered_count(self.ctx.transparency, self.point_count)

    def get_category_counts(self, field_index: int, source=FieldSource.OBS) -> Optional[Dict[str, List[int]]]:
        field = self.get_field(field_index, source)
        if field is None:
            return None
        return compute_category_counts(self.ctx, field, self.point_count)

    def get_legend(self, field_index: Optional[int] = None, source=None) -> Optional[Dict[str, Any]]:
        """Legend model of a field; the active field by default."""
        if field_index is None:
            field = self.ctx.active_field()
        else:
            field = self.get_field(field_index, source or FieldSource.OBS)
        if field is None:
            return None
        counts = compute_category_counts(self.ctx, field, self.point_count) if field.is_categorical else None
        return legend_for_field(field, counts, self.config.category_palette)

    def get_colors(self) -> Optional[np.ndarray]:
        return self.ctx.colors

    def get_transparency(self) -> Optional[np.ndarray]:
        return self.ctx.transparency

    def get_outlier_quantiles(self) -> Optional[np.ndarray]:
        return self.ctx.outlier_quantiles

    # =========================================================================
    # Renames
    # =========================================================================

    @_mutator
    def rename_field(self, index: int, new_key: str, source=FieldSource.OBS) -> Dict[str, Any]:
        source, fields, field = self._field_at(index, source)
        new_key = validate_field_key(new_key)
        if new_key == field.key:
            return success_result(key=field.key, original_key=field.registry_key, unchanged=True)
        if is_duplicate_key(new_key, fields, exclude_index=index):
            raise ValidationError(f"A field named '{new_key}' already exists")

        if field.is_user_defined:
            self.user_defined.update_field(field.user_defined_id, key=new_key)
            field.key = new_key
        else:
            self.renames.set_field_rename(source, field.registry_key, new_key)
            apply_rename_overlay(field, self.renames)

        self.highlights.refresh_group_labels(source.value, index, field)
        self.sync_snapshot_contexts()
        logger.info("Renamed %s field %r -> %r", source.value, field.registry_key, field.key)
        return success_result(key=field.key, original_key=field.registry_key)

    @_mutator
    def revert_field_rename(self, index: int, source=FieldSource.OBS) -> Dict[str, Any]:
        source, fields, field = self._field_at(index, source)
        if field.is_user_defined:
            raise ValidationError("User-defined fields have no original name to revert to")
        original = field.registry_key
        if field.original_key is None:
            return success_result(key=original, unchanged=True)
        if is_duplicate_key(original, fields, exclude_index=index):
            raise ValidationError(f"A field named '{original}' already exists")
        self.renames.revert_field_rename(source, original)
        apply_rename_overlay(field, self.renames)
        self.highlights.refresh_group_labels(source.value, index, field)
        self.sync_snapshot_contexts()
        return success_result(key=field.key)

    @_mutator
    def rename_category(self, field_index: int, category_index: int, new_label: str,
                        source=FieldSource.OBS) -> Dict[str, Any]:
        source, _, field = self._field_at(field_index, source)
        category_index = validate_category_index(category_index, field)
        label = validate_category_label(new_label)
        current = field.categories[category_index]
        if label == current:
            return success_result(label=label, unchanged=True)
        wanted = normalize_for_compare(label)
        if any(normalize_for_compare(c) == wanted for i, c in enumerate(field.categories) if i != category_index):
            raise ValidationError(f"Category '{label}' already exists")

        if field.is_user_defined:
            categories = list(field.categories)
            categories[category_index] = label
            field.payload.categories = categories
            self.user_defined.update_field(field.user_defined_id, categories=categories)
        else:
            originals = field.original_categories if field.original_categories is not None else field.categories
            self.renames.set_category_rename(source, field.registry_key, category_index,
                                             originals[category_index], label)
            apply_rename_overlay(field, self.renames)

        self.highlights.refresh_group_labels(source.value, field_index, field)
        self.sync_snapshot_contexts()
        self._refresh(colors=True, field=field)
        return success_result(label=label, previous=current)

    @_mutator
    def revert_category_rename(self, field_index: int, category_index: int,
                               source=FieldSource.OBS) -> Dict[str, Any]:
        source, _, field = self._field_at(field_index, source)
        category_index = validate_category_index(category_index, field)
        if field.is_user_defined:
            raise ValidationError("User-defined categories have no original label to revert to")
        if not self.renames.revert_category_rename(source, field.registry_key, category_index):
            return success_result(label=field.categories[category_index], unchanged=True)
        apply_rename_overlay(field, self.renames)
        self.highlights.refresh_group_labels(source.value, field_index, field)
        self.sync_snapshot_contexts()
        self._refresh(colors=True, field=field)
        return success_result(label=field.categories[category_index])

    # =========================================================================
    # Soft delete, restore, purge
    # =========================================================================

    @_mutator
    def delete_field(self, index: int, source=FieldSource.OBS) -> Dict[str, Any]:
        source, _, field = self._field_at(index, source)
        if field.is_deleted:
            raise ValidationError(f"Field '{field.key}' is already deleted")
        if field.is_user_defined:
            self.user_defined.update_field(field.user_defined_id, is_deleted=True)
            field.is_deleted = True
        else:
            self.deletes.mark_deleted(source, field.registry_key)
            apply_delete_overlay(field, self.deletes)
        self._clear_active_if(self.ctx, field)
        self.sync_snapshot_contexts()
        self._refresh(visibility=True, colors=True, field=field)
        logger.info("Deleted %s field %r", source.value, field.key)
        return success_result(key=field.key, original_key=field.registry_key)

    @_mutator
    def restore_field(self, index: int, source=FieldSource.OBS) -> Dict[str, Any]:
        """Undo a soft delete, renaming the field if its key is now taken."""
        source, fields, field = self._field_at(index, source)
        if not field.is_deleted:
            raise ValidationError(f"Field '{field.key}' is not deleted")
        if field.is_purged:
            raise ValidationError(f"Field '{field.key}' was permanently removed")

        renamed_from = None
        if is_duplicate_key(field.key, fields, exclude_index=index):
            renamed_from = field.key
            new_key = make_unique_label(f"{field.key} (restored)", self._existing_keys(fields, index))
            if field.is_user_defined:
                self.user_defined.update_field(field.user_defined_id, key=new_key)
                field.key = new_key
            else:
                self.renames.set_field_rename(source, field.registry_key, new_key)
                apply_rename_overlay(field, self.renames)

        if field.is_user_defined:
            self.user_defined.update_field(field.user_defined_id, is_deleted=False)
            field.is_deleted = False
            field.is_purged = False
        else:
            self.deletes.mark_restored(source, field.registry_key)
            apply_delete_overlay(field, self.deletes)

        self.sync_snapshot_contexts()
        self._refresh(visibility=True, colors=True, field=field)
        return success_result(
            ok=True,
            original_key=field.registry_key,
            key=field.key,
            user_defined_id=field.user_defined_id,
            renamed_from=renamed_from,
            renamed_to=field.key if renamed_from else None,
        )

    @_mutator
    def purge_deleted_field(self, index: int, source=FieldSource.OBS) -> Dict[str, Any]:
        source, _, field = self._field_at(index, source)
        if not field.is_deleted:
            raise ValidationError(f"Field '{field.key}' must be deleted before it can be purged")
        if field.is_user_defined:
            self.user_defined.delete_field(field.user_defined_id)
            field.is_purged = True
        else:
            self.deletes.mark_purged(source, field.registry_key)
            apply_delete_overlay(field, self.deletes)
            self.loader_cache.forget(source, field.registry_key)
        field.release_arrays()
        self.sync_snapshot_contexts()
        logger.info("Purged %s field %r", source.value, field.key)
        return success_result(key=field.key)

    @_mutator
    def delete_user_defined_field(self, index: int, source=FieldSource.OBS) -> Dict[str, Any]:
        """Remove a derived field and its template outright."""
        source, _, field = self._field_at(index, source)
        if not field.is_user_defined:
            raise ValidationError(f"Field '{field.key}' is not user-defined")
        self.user_defined.delete_field(field.user_defined_id)
        field.is_deleted = True
        field.is_purged = True
        field.release_arrays()
        self._clear_active_if(self.ctx, field)
        self.sync_snapshot_contexts()
        self._refresh(visibility=True, colors=True, field=field)
        return success_result(key=field.key)

    # =========================================================================
    # Derived fields
    # =========================================================================

    def _inject_template(self, template: Field) -> Tuple[int, Field]:
        fields = self.ctx.fields_for(template.source)
        inject_user_defined_fields(fields, template.source, self.user_defined)
        index = next(i for i, f in enumerate(fields) if f.user_defined_id == template.user_defined_id)
        return index, fields[index]

    @_async_mutator
    async def duplicate_field(self, index: int, source=FieldSource.OBS) -> Dict[str, Any]:
        """Copy a field into a new user-defined field named ``"{key} (copy)"``.

        Categorical fields get their own code buffer; continuous fields become
        aliases of their source.
        """
        source, fields, field = self._live_field_at(index, source)
        new_key = make_unique_label(f"{field.key} (copy)", self._existing_keys(fields))
        operation = {"type": "duplicate", "sourceKey": field.key, "timestamp": time.time()}

        if field.is_categorical:
            await self._ensure_loaded(field)
            template = self.user_defined.create_from_categorical_codes(
                new_key,
                list(field.categories),
                field.payload.codes.copy(),
                source=source,
                source_field=SourceFieldRef(field.registry_key, index, "categorical-obs"),
                operation=operation,
                dimension_manager=self.dimension_manager,
            )
        else:
            if field.is_alias:
                ref = copy.copy(field.source_field)
            else:
                kind = "continuous-var" if source == FieldSource.VAR else "continuous-obs"
                ref = SourceFieldRef(field.registry_key, index, kind)
            template = self.user_defined.create_continuous_alias(new_key, source, ref, operation)

        new_index, new_field = self._inject_template(template)
        if field.is_categorical:
            new_field.payload.colors = dict(field.payload.colors)
            new_field.payload.visible = dict(field.payload.visible)
        self.sync_snapshot_contexts()
        return success_result(field_index=new_index, key=new_field.key, user_defined_id=new_field.user_defined_id)

    def _editable_categorical(self, field_index, source) -> Tuple[FieldSource, Field]:
        source, _, field = self._live_field_at(field_index, source)
        if not field.is_categorical:
            raise ValidationError(f"Field '{field.key}' is not categorical")
        if not field.is_loaded:
            raise ValidationError(f"Field '{field.key}' must be loaded before editing")
        return source, field

    @_mutator
    def delete_category_to_unassigned(self, field_index: int, category_index: int,
                                      source=FieldSource.OBS) -> Dict[str, Any]:
        source, field = self._editable_categorical(field_index, source)
        plan = plan_delete_to_unassigned(
            field, category_index, edit_mode_for(field),
            unassigned_label=self.config.unassigned_label,
            palette=self.config.category_palette,
        )
        return self._apply_category_edit(source, field_index, field, plan, "edited")

    @_mutator
    def merge_categories(self, field_index: int, from_index: int, to_index: int,
                         merged_label: Optional[str] = None, source=FieldSource.OBS) -> Dict[str, Any]:
        source, field = self._editable_categorical(field_index, source)
        plan = plan_merge_categories(
            field, from_index, to_index, edit_mode_for(field),
            merged_label=merged_label,
            palette=self.config.category_palette,
        )
        return self._apply_category_edit(source, field_index, field, plan, "merged")

    def _apply_category_edit(self, source: FieldSource, index: int, field: Field,
                             plan: CategoryEditPlan, suffix: str) -> Dict[str, Any]:
        if plan.mode == EditMode.COPY:
            return self._apply_copy_edit(source, index, field, plan, suffix)

        codes = remap_codes(field.payload.codes, plan)
        centroids = compute_all_dimension_centroids(codes, plan.categories, self.dimension_manager)
        payload = field.payload
        payload.categories = list(plan.categories)
        payload.codes = codes
        payload.colors = dict(plan.colors)
        payload.visible = dict(plan.visible)
        payload.centroids_by_dim = copy.deepcopy(centroids)
        payload.normalized_dims = set()
        field.original_categories = None
        field.outlier_quantiles = None
        field.outlier_threshold = 1.0
        field.operation = plan.operation

        self.user_defined.update_field(
            field.user_defined_id,
            categories=plan.categories,
            codes=codes.copy(),
            centroids_by_dim=centroids,
            operation=plan.operation,
        )
        self.highlights.remap_category_groups(source.value, index, plan.mapping, field)
        self._reactivate(source, index)
        self.sync_snapshot_contexts()
        self._refresh(visibility=True, colors=True, field=field)
        logger.info("Applied %s to %r in place", plan.operation["type"], field.key)
        return success_result(mode=plan.mode.value, field_index=index, key=field.key,
                              categories=list(plan.categories))

    def _apply_copy_edit(self, source: FieldSource, index: int, field: Field,
                         plan: CategoryEditPlan, suffix: str) -> Dict[str, Any]:
        fields = self.ctx.fields_for(source)
        codes = remap_codes(field.payload.codes, plan)
        new_key = make_unique_label(f"{field.key} ({suffix})", self._existing_keys(fields))
        template = self.user_defined.create_from_categorical_codes(
            new_key,
            plan.categories,
            codes,
            source=source,
            source_field=SourceFieldRef(field.registry_key, index, "categorical-obs"),
            operation=plan.operation,
            dimension_manager=self.dimension_manager,
        )
        new_index, new_field = self._inject_template(template)
        new_field.payload.colors = dict(plan.colors)
        new_field.payload.visible = dict(plan.visible)
        new_field.payload.filter_enabled = field.payload.filter_enabled

        self.deletes.mark_deleted(source, field.registry_key)
        apply_delete_overlay(field, self.deletes)
        self._reactivate(source, new_index)
        self.sync_snapshot_contexts()
        self._refresh(visibility=True, colors=True, field=new_field)
        logger.info("Applied %s to %r as new field %r", plan.operation["type"], field.key, new_key)
        return success_result(
            mode=plan.mode.value,
            field_index=new_index,
            key=new_key,
            user_defined_id=new_field.user_defined_id,
            categories=list(plan.categories),
            source_deleted=True,
        )

    @_mutator
    def create_field_from_highlight_pages(
        self,
        key: str,
        page_ids: Optional[Sequence[str]] = None,
        uncovered_label: Optional[str] = None,
        overlap_strategy=OverlapStrategy.FIRST,
        overlap_label: Optional[str] = None,
        intersection_labels: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """Turn highlight pages into a categorical obs field, one category per page."""
        key = validate_field_key(key)
        if is_duplicate_key(key, self.ctx.obs_fields):
            raise ValidationError(f"A field named '{key}' already exists")
        try:
            strategy = OverlapStrategy(overlap_strategy)
        except ValueError as exc:
            raise ValidationError(f"Unknown overlap strategy: {overlap_strategy!r}") from exc

        if page_ids is None:
            pages = list(self.highlights.pages)
        else:
            pages = []
            for page_id in page_ids:
                page = self.highlights.get_page(page_id)
                if page is None:
                    raise ValidationError(f"Unknown highlight page: {page_id!r}")
                pages.append(page)

        template, conflicts, uncovered = self.user_defined.create_from_pages(
            key,
            [{"page_id": p.id, "label": p.name, "cells": p.cell_set()} for p in pages],
            self.point_count,
            uncovered_label=uncovered_label,
            overlap_strategy=strategy,
            overlap_label=overlap_label,
            intersection_labels=intersection_labels,
            dimension_manager=self.dimension_manager,
        )
        new_index, new_field = self._inject_template(template)
        ensure_category_metadata(new_field.payload, self.config.category_palette)
        for i, page in enumerate(pages):
            new_field.payload.colors[i] = hex_to_rgb(page.color)
        self.sync_snapshot_contexts()
        return success_result(
            field_index=new_index,
            key=new_field.key,
            user_defined_id=new_field.user_defined_id,
            categories=list(new_field.categories),
            conflicts=conflicts,
            uncovered_count=uncovered,
        )

    # =========================================================================
    # Highlights
    # =========================================================================

    @_mutator
    def add_highlight_from_category(self, field_index: int, category_index: int,
                                    source=FieldSource.OBS) -> Dict[str, Any]:
        source, _, field = self._live_field_at(field_index, source)
        category_index = validate_category_index(category_index, field)
        if not field.is_loaded:
            raise ValidationError(f"Field '{field.key}' is not loaded")
        group = self.highlights.add_highlight_from_category(field, field_index, category_index, source.value)
        if group is None:
            raise ValidationError("No visible cells in this category")
        return success_result(group=group.to_dict())

    @_mutator
    def add_highlight_from_range(self, field_index: int, min_value: float, max_value: float,
                                 source=FieldSource.OBS) -> Dict[str, Any]:
        field = self._continuous_at(field_index, source)
        if not field.is_loaded:
            raise ValidationError(f"Field '{field.key}' is not loaded")
        lo, hi = sorted((float(min_value), float(max_value)))
        group = self.highlights.add_highlight_from_range(field, field_index, lo, hi, _source(source).value)
        if group is None:
            raise ValidationError("No visible cells in this range")
        return success_result(group=group.to_dict())

    @_mutator
    def add_highlight_direct(self, cell_indices, label: Optional[str] = None) -> Dict[str, Any]:
        cells = validate_cell_indices(cell_indices, self.point_count)
        group = self.highlights.add_highlight_direct(cells, label=label)
        if group is None:
            raise ValidationError("No cells selected")
        return success_result(group=group.to_dict())

    @_mutator
    def remove_highlight_group(self, group_id: str) -> Dict[str, Any]:
        if not self.highlights.remove_highlight_group(group_id):
            raise ValidationError(f"Unknown highlight group: {group_id!r}")
        return success_result(id=group_id)

    @_mutator
    def toggle_highlight_enabled(self, group_id: str, enabled: Optional[bool] = None) -> Dict[str, Any]:
        if not self.highlights.toggle_highlight_enabled(group_id, enabled):
            raise ValidationError(f"Unknown highlight group: {group_id!r}")
        return success_result(id=group_id)

    def clear_all_highlights(self) -> Dict[str, Any]:
        self.highlights.clear_all_highlights()
        return success_result()

    def create_highlight_page(self, name: Optional[str] = None) -> Dict[str, Any]:
        page = self.highlights.create_highlight_page(name)
        return success_result(page=page.to_dict())

    @_mutator
    def switch_to_page(self, page_id: str) -> Dict[str, Any]:
        if not self.highlights.switch_to_page(page_id):
            raise ValidationError(f"Unknown highlight page: {page_id!r}")
        return success_result(active_page_id=page_id)

    @_mutator
    def delete_highlight_page(self, page_id: str) -> Dict[str, Any]:
        if not self.highlights.delete_highlight_page(page_id):
            raise ValidationError("Cannot delete this page")
        return success_result(active_page_id=self.highlights.active_page_id)

    @_mutator
    def rename_highlight_page(self, page_id: str, name: str) -> Dict[str, Any]:
        if not self.highlights.rename_highlight_page(page_id, name):
            raise ValidationError("Cannot rename this page")
        return success_result(id=page_id, name=str(name).strip())

    @_mutator
    def set_highlight_page_color(self, page_id: str, color: str) -> Dict[str, Any]:
        if not self.highlights.set_highlight_page_color(page_id, color):
            raise ValidationError(f"Invalid page color: {color!r}")
        return success_result(id=page_id, color=str(color).strip())

    @_mutator
    def combine_highlight_pages(self, page_id_1: str, page_id_2: str, operation: str) -> Dict[str, Any]:
        page = self.highlights.combine_highlight_pages(page_id_1, page_id_2, operation)
        if page is None:
            raise ValidationError("Cannot combine these pages")
        return success_result(page=page.to_dict())

    def get_highlight_pages(self) -> List[Dict[str, Any]]:
        return self.highlights.get_pages_summary()

    def get_all_highlighted_cell_indices(self) -> np.ndarray:
        return self.highlights.get_all_highlighted_cell_indices()

    def get_highlighted_cell_count(self) -> int:
        return self.highlights.get_highlighted_cell_count()

    def get_total_highlighted_cell_count(self) -> int:
        return self.highlights.get_total_highlighted_cell_count()

    # =========================================================================
    # Views
    # =========================================================================

    def capture_current_context(self) -> ViewContext:
        return self.ctx.clone()

    def restore_context(self, ctx: ViewContext) -> None:
        """Install a clone of ``ctx`` as the working set."""
        self.ctx = ctx.clone(view_id=self.active_view_id)
        apply_all_overlays(self.ctx, self.renames, self.deletes, self.user_defined)
        self._clear_deleted_active(self.ctx)
        self._recompute(visibility=True)

    def _clear_deleted_active(self, ctx: ViewContext) -> None:
        field = ctx.active_field()
        if field is not None and field.is_deleted:
            ctx.clear_active()

    def get_view_ids(self) -> List[str]:
        return self.views.view_ids()

    def get_active_view_id(self) -> str:
        return self.active_view_id

    def get_active_view_label(self) -> str:
        if self.active_view_id != LIVE_VIEW_ID:
            return self.ctx.label
        lines = [f["text"] for f in get_active_filters_structured(self.ctx) if f["enabled"]]
        return "; ".join(lines) if lines else DEFAULT_VIEW_LABEL

    @_mutator
    def create_view_from_active(self, label: Optional[str] = None) -> Dict[str, Any]:
        """Freeze the working set as a new snapshot view."""
        if not self.point_count:
            raise ValidationError("No dataset loaded")
        view_id = self.views.next_id()
        label = str(label).strip() if label and str(label).strip() else self.get_active_view_label()
        snapshot = self.ctx.clone(view_id=view_id, label=label)
        self.views.put(snapshot)
        if self.dimension_manager is not None:
            self.dimension_manager.set_view_dimension(view_id, snapshot.dimension_level)
        self.viewer.set_colors(snapshot.colors, view_id)
        self.viewer.set_transparency(snapshot.transparency, view_id)
        self.viewer.set_centroids(snapshot.centroid_positions, snapshot.centroid_colors, view_id)
        self.viewer.set_centroid_labels(snapshot.centroid_labels, view_id)
        logger.info("Created view %s (%s)", view_id, label)
        return success_result(view_id=view_id, label=label)

    def set_active_view(self, view_id: str) -> Dict[str, Any]:
        """Switch the working set; unknown ids fall back to ``live``."""
        target = self.views.get(view_id)
        if target is None:
            target = self.views.get(LIVE_VIEW_ID)
        if target is None or target.view_id == self.active_view_id:
            return success_result(view_id=self.active_view_id, label=self.ctx.label)

        self.views.put(self.ctx)
        self.ctx = target.clone()
        self.active_view_id = self.ctx.view_id
        apply_all_overlays(self.ctx, self.renames, self.deletes, self.user_defined)
        self._clear_deleted_active(self.ctx)
        if self.dimension_manager is not None:
            self.dimension_manager.set_view_dimension(self.active_view_id, self.ctx.dimension_level)
        self._recompute(visibility=True)
        return success_result(view_id=self.active_view_id, label=self.ctx.label,
                              dimension_level=self.ctx.dimension_level)

    @_mutator
    def remove_view(self, view_id: str) -> Dict[str, Any]:
        if view_id == LIVE_VIEW_ID:
            raise ValidationError("The live view cannot be removed")
        if view_id not in self.views:
            raise ValidationError(f"Unknown view: {view_id!r}")
        if self.active_view_id == view_id:
            self.set_active_view(LIVE_VIEW_ID)
        self.views.remove(view_id)
        self.viewer.remove_view(view_id)
        if self.dimension_manager is not None:
            self.dimension_manager.remove_view(view_id)
        return success_result(view_id=view_id, active_view_id=self.active_view_id)

    def clear_snapshot_views(self) -> Dict[str, Any]:
        if self.active_view_id != LIVE_VIEW_ID:
            self.set_active_view(LIVE_VIEW_ID)
        removed = self.views.clear_snapshots()
        for view_id in removed:
            self.viewer.remove_view(view_id)
            if self.dimension_manager is not None:
                self.dimension_manager.remove_view(view_id)
        return success_result(removed=removed)

    def sync_snapshot_contexts(self) -> None:
        """Re-apply overlays to every stored context other than the working set."""
        for ctx in self.views.contexts.values():
            if ctx is self.ctx or ctx.view_id == self.active_view_id:
                continue
            apply_all_overlays(ctx, self.renames, self.deletes, self.user_defined)
            self._clear_deleted_active(ctx)

    # =========================================================================
    # Dimensions
    # =========================================================================

    def get_dimension_level(self) -> int:
        return self.ctx.dimension_level

    @_async_mutator
    async def set_dimension_level(self, level: int) -> Dict[str, Any]:
        """Show the active view in another embedding dimension."""
        level = int(level)
        if level >= 4:
            raise ValidationError("4D embeddings are not supported")
        if level < 1:
            raise ValidationError(f"Invalid dimension: {level}")
        dm = self.dimension_manager
        if dm is None or not dm.has_dimension(level):
            raise ValidationError(f"{level}D embedding is not available")

        positions = await dm.get_positions_3d(level)
        self.ctx.dimension_level = level
        dm.set_view_dimension(self.active_view_id, level)
        self.viewer.set_positions(positions, self.active_view_id)
        self._refresh(colors=True)
        return success_result(dimension_level=level)

    # =========================================================================
    # Serialization
    # =========================================================================

    def to_dict(self) -> Dict[str, Any]:
        """Overlay state as a JSON-compatible dict."""
        return {
            "version": SERIALIZATION_VERSION,
            "renames": self.renames.to_dict(),
            "deletes": self.deletes.to_dict(),
            "userDefinedFields": self.user_defined.to_dict(),
        }

    def from_dict(self, data: Optional[Dict[str, Any]]) -> None:
        """Restore overlay state on top of the loaded dataset."""
        data = data or {}
        self.renames.from_dict(data.get("renames"))
        self.deletes.from_dict(data.get("deletes"))
        self.user_defined.from_dict(data.get("userDefinedFields"), self.dimension_manager)
        for ctx in self._all_contexts():
            apply_all_overlays(ctx, self.renames, self.deletes, self.user_defined)
            self._clear_deleted_active(ctx)
        self._recompute(visibility=True)

    @_mutator
    def get_snapshot_payload(self, view_id: Optional[str] = None, compress: bool = True) -> Dict[str, Any]:
        """Packed render buffers of a view for transport."""
        if view_id is None or view_id == self.active_view_id:
            ctx = self.ctx
        else:
            ctx = self.views.get(view_id)
            if ctx is None:
                raise ValidationError(f"Unknown view: {view_id!r}")

        def pack(array):
            return pack_buffer(array, compress=compress) if array is not None else None

        return success_result(
            view_id=ctx.view_id,
            label=ctx.label,
            point_count=self.point_count,
            dimension_level=ctx.dimension_level,
            compressed=compress,
            colors=pack(ctx.colors),
            transparency=pack(ctx.transparency),
            outlier_quantiles=pack(ctx.outlier_quantiles),
            centroid_positions=pack(ctx.centroid_positions),
            centroid_colors=pack(ctx.centroid_colors),
            centroid_labels=list(ctx.centroid_labels),
        )
