"""
Multi-page cell highlighting, independent of filtering.

Each page holds an ordered list of groups (category, range, manual,
combined). The highlight buffer is the deduplicated union of the enabled
groups of the active page.
"""

import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import numpy as np

from ..fields import Field
from ..helpers.palettes import get_category_color, is_valid_hex_color
from ..tools.utils import rgb_to_hex

logger = logging.getLogger(__name__)

HIGHLIGHT_ON = 255


def page_color(index: int) -> str:
    return rgb_to_hex(get_category_color(index, "tab10"))


def _format_value(v: float) -> str:
    if abs(v) >= 1000 or (0 < abs(v) < 0.01):
        return f"{v:.2e}"
    return f"{v:.2f}"


@dataclass
class HighlightGroup:
    id: str
    type: str
    label: str
    cell_indices: np.ndarray
    enabled: bool = True
    info: Dict[str, Any] = field(default_factory=dict)

    @property
    def cell_count(self) -> int:
        return int(self.cell_indices.size)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "type": self.type,
            "label": self.label,
            "enabled": self.enabled,
            "cell_count": self.cell_count,
        }
        data.update(self.info)
        return data


@dataclass
class HighlightPage:
    id: str
    name: str
    color: str
    groups: List[HighlightGroup] = field(default_factory=list)

    def cell_set(self) -> np.ndarray:
        """Sorted unique indices of all enabled groups."""
        parts = [g.cell_indices for g in self.groups if g.enabled and g.cell_indices.size]
        if not parts:
            return np.zeros(0, dtype=np.int64)
        return np.unique(np.concatenate(parts))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "color": self.color,
            "groups": [g.to_dict() for g in self.groups],
        }


class HighlightManager:
    """Owns highlight pages and the flat highlight buffer.

    Args:
        viewer: Receives the highlight buffer; also queried for LOD visibility
        get_transparency: Returns the current per-point transparency
    """

    def __init__(self, viewer=None, get_transparency: Optional[Callable[[], Optional[np.ndarray]]] = None):
        self.viewer = viewer
        self.get_transparency = get_transparency or (lambda: None)
        self.point_count = 0
        self.pages: List[HighlightPage] = []
        self.active_page_id: Optional[str] = None
        self.highlight = np.zeros(0, dtype=np.uint8)
        self._page_ids = itertools.count(1)
        self._group_ids = itertools.count(1)
        self._cached_count: Optional[int] = None
        self._cached_lod_signature: Optional[int] = None
        self._cached_total: Optional[int] = None

    def reset(self, point_count: int) -> None:
        self.point_count = int(point_count)
        self.pages = []
        self.active_page_id = None
        self._page_ids = itertools.count(1)
        self._group_ids = itertools.count(1)
        self.highlight = np.zeros(self.point_count, dtype=np.uint8)
        self.invalidate_counts()

    # =========================================================================
    # Pages
    # =========================================================================

    def get_page(self, page_id: str) -> Optional[HighlightPage]:
        return next((p for p in self.pages if p.id == page_id), None)

    @property
    def active_page(self) -> Optional[HighlightPage]:
        if self.active_page_id is None:
            return None
        return self.get_page(self.active_page_id)

    def ensure_page(self) -> HighlightPage:
        return self.active_page or self.create_highlight_page()

    def create_highlight_page(self, name: Optional[str] = None) -> HighlightPage:
        page = HighlightPage(
            id=f"page_{next(self._page_ids)}",
            name=name or f"Page {len(self.pages) + 1}",
            color=page_color(len(self.pages)),
        )
        self.pages.append(page)
        if len(self.pages) == 1:
            self.active_page_id = page.id
        return page

    def switch_to_page(self, page_id: str) -> bool:
        if self.get_page(page_id) is None:
            return False
        if self.active_page_id != page_id:
            self.active_page_id = page_id
            self.recompute()
        return True

    def delete_highlight_page(self, page_id: str) -> bool:
        page = self.get_page(page_id)
        if page is None or len(self.pages) <= 1:
            return False
        self.pages.remove(page)
        if self.active_page_id == page_id:
            self.active_page_id = self.pages[0].id
            self.recompute()
        return True

    def rename_highlight_page(self, page_id: str, name: str) -> bool:
        page = self.get_page(page_id)
        if page is None or not str(name or "").strip():
            return False
        page.name = str(name).strip()
        return True

    def set_highlight_page_color(self, page_id: str, color: str) -> bool:
        page = self.get_page(page_id)
        if page is None:
            return False
        value = str(color or "").strip()
        if not is_valid_hex_color(value):
            logger.warning("Invalid page color: %r", color)
            return False
        page.color = value
        return True

    def combine_highlight_pages(self, page_id_1: str, page_id_2: str, operation: str) -> Optional[HighlightPage]:
        """New page holding the intersection or union of two pages."""
        page1, page2 = self.get_page(page_id_1), self.get_page(page_id_2)
        if page1 is None or page2 is None:
            return None
        if operation not in ("intersection", "union"):
            logger.warning("Unknown page operation: %r", operation)
            return None

        set1, set2 = page1.cell_set(), page2.cell_set()
        if operation == "intersection":
            result = np.intersect1d(set1, set2)
            symbol, word = "∩", "Intersection"
        else:
            result = np.union1d(set1, set2)
            symbol, word = "∪", "Union"

        page = self.create_highlight_page(f"{page1.name} {symbol} {page2.name}")
        if result.size:
            page.groups.append(HighlightGroup(
                id=f"highlight_{next(self._group_ids)}",
                type="combined",
                label=f"{word} of {page1.name} & {page2.name}",
                cell_indices=result.astype(np.int64),
                info={"source_pages": [page1.id, page2.id], "operation": operation},
            ))
        if page.id == self.active_page_id:
            self.recompute()
        return page

    # =========================================================================
    # Buffer
    # =========================================================================

    def recompute(self) -> np.ndarray:
        """Rebuild the highlight buffer from the active page's enabled groups."""
        self.invalidate_counts()
        self.highlight = np.zeros(self.point_count, dtype=np.uint8)
        page = self.active_page
        if page is not None:
            cells = page.cell_set()
            cells = cells[(cells >= 0) & (cells < self.point_count)]
            self.highlight[cells] = HIGHLIGHT_ON
        if self.viewer is not None:
            self.viewer.set_highlight(self.highlight)
        return self.highlight

    def get_all_highlighted_cell_indices(self) -> np.ndarray:
        return np.flatnonzero(self.highlight > 0)

    def invalidate_counts(self, visible_only: bool = False) -> None:
        self._cached_count = None
        self._cached_lod_signature = None
        if not visible_only:
            self._cached_total = None

    def get_highlighted_cell_count(self) -> int:
        """Highlighted cells that are currently visible (filters and LOD)."""
        lod = self.viewer.get_lod_visibility() if self.viewer is not None else None
        level = self.viewer.get_current_lod_level() if self.viewer is not None else -1
        signature = level if lod is not None else -1
        if self._cached_count is not None and self._cached_lod_signature == signature:
            return self._cached_count

        mask = self.highlight > 0
        transparency = self.get_transparency()
        if transparency is not None and len(transparency) == mask.size:
            mask &= transparency > 0
        if lod is not None and len(lod) == mask.size:
            mask &= np.asarray(lod) > 0
        self._cached_count = int(np.count_nonzero(mask))
        self._cached_lod_signature = signature
        return self._cached_count

    def get_total_highlighted_cell_count(self) -> int:
        if self._cached_total is None:
            self._cached_total = int(np.count_nonzero(self.highlight))
        return self._cached_total

    def get_highlighted_cell_count_for_page(self, page_id: str) -> int:
        page = self.get_page(page_id)
        return int(page.cell_set().size) if page is not None else 0

    # =========================================================================
    # Groups
    # =========================================================================

    def _visible(self, transparency: Optional[np.ndarray]) -> np.ndarray:
        if transparency is None:
            transparency = self.get_transparency()
        if transparency is None or len(transparency) != self.point_count:
            return np.ones(self.point_count, dtype=bool)
        return np.asarray(transparency) > 0

    def get_cell_indices_for_category(self, field: Field, category_index: int,
                                      transparency: Optional[np.ndarray] = None) -> np.ndarray:
        """Visible points coded ``category_index``."""
        if not field.is_categorical or field.payload.codes is None:
            return np.zeros(0, dtype=np.int64)
        codes = field.payload.codes[:self.point_count]
        return np.flatnonzero((codes == category_index) & self._visible(transparency)).astype(np.int64)

    def get_cell_indices_for_range(self, field: Field, min_value: float, max_value: float,
                                   transparency: Optional[np.ndarray] = None) -> np.ndarray:
        """Visible points whose value lies in ``[min_value, max_value]``."""
        if not field.is_continuous or field.payload.values is None:
            return np.zeros(0, dtype=np.int64)
        v = np.asarray(field.payload.values[:self.point_count], dtype=np.float64)
        with np.errstate(invalid="ignore"):
            hit = (v >= min_value) & (v <= max_value)
        return np.flatnonzero(hit & self._visible(transparency)).astype(np.int64)

    def _add_group(self, group: HighlightGroup) -> HighlightGroup:
        self.ensure_page().groups.append(group)
        self.recompute()
        return group

    def add_highlight_from_category(self, field: Field, field_index: int, category_index: int,
                                    source: str = "obs") -> Optional[HighlightGroup]:
        if not field.is_categorical or not 0 <= category_index < len(field.categories):
            return None
        cells = self.get_cell_indices_for_category(field, category_index)
        if cells.size == 0:
            return None
        name = field.categories[category_index]
        return self._add_group(HighlightGroup(
            id=f"highlight_{next(self._group_ids)}",
            type="category",
            label=f"{field.key}: {name}",
            cell_indices=cells,
            info={
                "field_key": field.key,
                "field_index": field_index,
                "field_source": source,
                "category_index": category_index,
                "category_name": name,
            },
        ))

    def add_highlight_from_range(self, field: Field, field_index: int, min_value: float, max_value: float,
                                 source: str = "obs") -> Optional[HighlightGroup]:
        if not field.is_continuous:
            return None
        cells = self.get_cell_indices_for_range(field, min_value, max_value)
        if cells.size == 0:
            return None
        return self._add_group(HighlightGroup(
            id=f"highlight_{next(self._group_ids)}",
            type="range",
            label=f"{field.key}: {_format_value(min_value)} - {_format_value(max_value)}",
            cell_indices=cells,
            info={
                "field_key": field.key,
                "field_index": field_index,
                "field_source": source,
                "range_min": float(min_value),
                "range_max": float(max_value),
            },
        ))

    def add_highlight_direct(self, cell_indices, label: Optional[str] = None,
                             group_type: str = "manual", **info) -> Optional[HighlightGroup]:
        cells = np.unique(np.asarray(cell_indices, dtype=np.int64).ravel())
        cells = cells[(cells >= 0) & (cells < self.point_count)]
        if cells.size == 0:
            return None
        return self._add_group(HighlightGroup(
            id=f"highlight_{next(self._group_ids)}",
            type=group_type,
            label=label or f"Selection ({cells.size:,} cells)",
            cell_indices=cells,
            info=info,
        ))

    def _find_group(self, group_id: str) -> Optional[HighlightGroup]:
        page = self.active_page
        if page is None:
            return None
        return next((g for g in page.groups if g.id == group_id), None)

    def remove_highlight_group(self, group_id: str) -> bool:
        group = self._find_group(group_id)
        if group is None:
            return False
        self.active_page.groups.remove(group)
        self.recompute()
        return True

    def toggle_highlight_enabled(self, group_id: str, enabled: Optional[bool] = None) -> bool:
        group = self._find_group(group_id)
        if group is None:
            return False
        group.enabled = (not group.enabled) if enabled is None else bool(enabled)
        self.recompute()
        return True

    def clear_all_highlights(self) -> None:
        page = self.active_page
        if page is not None:
            page.groups = []
        self.recompute()

    def refresh_group_labels(self, source: str, field_index: int, field: Field) -> None:
        """Rewrite labels of category/range groups that point at ``field``."""
        for page in self.pages:
            for group in page.groups:
                if group.info.get("field_source") != source or group.info.get("field_index") != field_index:
                    continue
                group.info["field_key"] = field.key
                if group.type == "category" and field.is_categorical:
                    idx = group.info.get("category_index", -1)
                    if 0 <= idx < len(field.categories):
                        group.info["category_name"] = field.categories[idx]
                        group.label = f"{field.key}: {field.categories[idx]}"
                elif group.type == "range":
                    group.label = (f"{field.key}: {_format_value(group.info['range_min'])}"
                                   f" - {_format_value(group.info['range_max'])}")

    def remap_category_groups(self, source: str, field_index: int, mapping: np.ndarray, field: Field) -> None:
        """Follow a category index remap for groups on an edited field."""
        for page in self.pages:
            for group in page.groups:
                if (group.type != "category" or group.info.get("field_source") != source
                        or group.info.get("field_index") != field_index):
                    continue
                old = group.info.get("category_index", -1)
                if 0 <= old < len(mapping):
                    group.info["category_index"] = int(mapping[old])
        self.refresh_group_labels(source, field_index, field)

    def get_pages_summary(self) -> List[Dict[str, Any]]:
        return [p.to_dict() for p in self.pages]
