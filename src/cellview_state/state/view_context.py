"""
View contexts: isolated working sets of field state and render buffers.

One context is always ``live``; snapshots are independent clones. Cloning
copies every render buffer so that edits to one view never leak into another.
"""

import copy
import itertools
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import numpy as np

from ..config import DEFAULT_DIMENSION, DEFAULT_VIEW_LABEL, LIVE_VIEW_ID
from ..fields import Field, FieldSource


def _copy(array: Optional[np.ndarray]) -> Optional[np.ndarray]:
    return None if array is None else array.copy()


@dataclass
class ViewContext:
    view_id: str = LIVE_VIEW_ID
    label: str = DEFAULT_VIEW_LABEL
    obs_fields: List[Field] = field(default_factory=list)
    var_fields: List[Field] = field(default_factory=list)
    active_source: FieldSource = FieldSource.OBS
    active_field_index: int = -1
    active_var_field_index: int = -1
    colors: Optional[np.ndarray] = None
    transparency: Optional[np.ndarray] = None
    outlier_quantiles: Optional[np.ndarray] = None
    centroid_positions: Optional[np.ndarray] = None
    centroid_colors: Optional[np.ndarray] = None
    centroid_labels: List[Dict] = field(default_factory=list)
    dimension_level: int = DEFAULT_DIMENSION

    def fields_for(self, source) -> List[Field]:
        return self.var_fields if FieldSource(source) == FieldSource.VAR else self.obs_fields

    def active_field(self) -> Optional[Field]:
        if self.active_source == FieldSource.VAR:
            if 0 <= self.active_var_field_index < len(self.var_fields):
                return self.var_fields[self.active_var_field_index]
            return None
        if 0 <= self.active_field_index < len(self.obs_fields):
            return self.obs_fields[self.active_field_index]
        return None

    def active_var_field(self) -> Optional[Field]:
        if self.active_source != FieldSource.VAR:
            return None
        candidate = self.active_field()
        if candidate is None or candidate.is_deleted:
            return None
        return candidate

    def clear_active(self) -> None:
        self.active_source = FieldSource.OBS
        self.active_field_index = -1
        self.active_var_field_index = -1

    def clone(self, view_id: Optional[str] = None, label: Optional[str] = None) -> "ViewContext":
        return ViewContext(
            view_id=self.view_id if view_id is None else view_id,
            label=self.label if label is None else label,
            obs_fields=[f.clone() for f in self.obs_fields],
            var_fields=[f.clone() for f in self.var_fields],
            active_source=self.active_source,
            active_field_index=self.active_field_index,
            active_var_field_index=self.active_var_field_index,
            colors=_copy(self.colors),
            transparency=_copy(self.transparency),
            outlier_quantiles=_copy(self.outlier_quantiles),
            centroid_positions=_copy(self.centroid_positions),
            centroid_colors=_copy(self.centroid_colors),
            centroid_labels=copy.deepcopy(self.centroid_labels),
            dimension_level=self.dimension_level,
        )


class ViewContextStore:
    """Stored contexts by id, with ``live`` always present once initialized."""

    def __init__(self):
        self.contexts: Dict[str, ViewContext] = {}
        self._ids = itertools.count(1)

    def __contains__(self, view_id: str) -> bool:
        return str(view_id) in self.contexts

    def __len__(self) -> int:
        return len(self.contexts)

    def get(self, view_id: str) -> Optional[ViewContext]:
        return self.contexts.get(str(view_id))

    def put(self, ctx: ViewContext) -> None:
        self.contexts[ctx.view_id] = ctx

    def next_id(self) -> str:
        view_id = f"view_{next(self._ids)}"
        while view_id in self.contexts:
            view_id = f"view_{next(self._ids)}"
        return view_id

    def remove(self, view_id: str) -> bool:
        view_id = str(view_id)
        if view_id == LIVE_VIEW_ID:
            return False
        return self.contexts.pop(view_id, None) is not None

    def snapshot_ids(self) -> List[str]:
        return [v for v in self.contexts if v != LIVE_VIEW_ID]

    def view_ids(self) -> List[str]:
        ids = [LIVE_VIEW_ID] if LIVE_VIEW_ID in self.contexts else []
        return ids + self.snapshot_ids()

    def clear_snapshots(self) -> List[str]:
        removed = self.snapshot_ids()
        for view_id in removed:
            del self.contexts[view_id]
        return removed

    def clear(self) -> None:
        self.contexts.clear()
        self._ids = itertools.count(1)
