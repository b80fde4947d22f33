"""
Field model: one per-cell annotation column.

A field is a tagged variant. Its ``kind`` is derived from the payload type,
so a continuous field carrying categories cannot be constructed.
"""

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Tuple, Union

import numpy as np

from .config import DEFAULT_COLORMAP


class FieldKind(str, Enum):
    CATEGORY = "category"
    CONTINUOUS = "continuous"


class FieldSource(str, Enum):
    OBS = "obs"
    VAR = "var"


class OverlapStrategy(str, Enum):
    FIRST = "first"
    LAST = "last"
    OVERLAP_LABEL = "overlap-label"
    INTERSECTIONS = "intersections"


@dataclass
class ValueRange:
    min: float
    max: float

    def copy(self) -> "ValueRange":
        return ValueRange(self.min, self.max)


@dataclass
class ContinuousStats:
    min: float
    max: float
    mean: float = 0.0
    count: int = 0


@dataclass
class SourceFieldRef:
    """Provenance of a derived field.

    ``kind`` is one of ``categorical-obs``, ``continuous-obs``,
    ``continuous-var``.
    """

    source_key: str
    source_index: int
    kind: str

    def to_dict(self) -> Dict[str, Any]:
        return {"sourceKey": self.source_key, "sourceIndex": self.source_index, "kind": self.kind}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["SourceFieldRef"]:
        if not data:
            return None
        return cls(
            source_key=str(data.get("sourceKey", "")),
            source_index=int(data.get("sourceIndex", -1)),
            kind=str(data.get("kind", "")),
        )


# =============================================================================
# Payloads
# =============================================================================

@dataclass
class CategoryPayload:
    categories: List[str]
    codes: Optional[np.ndarray] = None
    colors: Dict[int, Tuple[int, int, int]] = field(default_factory=dict)
    visible: Dict[int, bool] = field(default_factory=dict)
    filter_enabled: bool = True
    centroids_by_dim: Dict[int, List[Dict]] = field(default_factory=dict)
    normalized_dims: Set[int] = field(default_factory=set)

    def has_data(self) -> bool:
        return self.codes is not None

    def hidden_indices(self) -> List[int]:
        return [i for i in range(len(self.categories)) if self.visible.get(i, True) is False]


@dataclass
class ContinuousPayload:
    values: Optional[np.ndarray] = None
    stats: Optional[ContinuousStats] = None
    positive_stats: Optional[ContinuousStats] = None
    filter: Optional[ValueRange] = None
    color_range: Optional[ValueRange] = None
    colormap: str = DEFAULT_COLORMAP
    use_log_scale: bool = False
    use_filter_color_range: bool = True
    filter_enabled: bool = True

    def has_data(self) -> bool:
        return self.values is not None

    def is_full_range(self, tolerance: float = 1e-6) -> bool:
        if self.stats is None or self.filter is None:
            return True
        return (self.filter.min <= self.stats.min + tolerance
                and self.filter.max >= self.stats.max - tolerance)


Payload = Union[CategoryPayload, ContinuousPayload]


# =============================================================================
# Field
# =============================================================================

@dataclass
class Field:
    key: str
    payload: Payload
    source: FieldSource = FieldSource.OBS
    original_key: Optional[str] = None
    original_categories: Optional[List[str]] = None
    is_deleted: bool = False
    is_purged: bool = False
    is_user_defined: bool = False
    user_defined_id: Optional[str] = None
    source_field: Optional[SourceFieldRef] = None
    operation: Optional[Dict[str, Any]] = None
    outlier_quantiles: Optional[np.ndarray] = None
    outlier_threshold: float = 1.0
    outlier_filter_enabled: bool = True
    created_at: Optional[float] = None
    # Provenance of fields derived from highlight pages
    page_info: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def categorical(cls, key: str, categories: List[str], codes: Optional[np.ndarray] = None,
                    source: FieldSource = FieldSource.OBS, **kwargs) -> "Field":
        payload = CategoryPayload(categories=[str(c) for c in categories], codes=codes)
        return cls(key=key, payload=payload, source=FieldSource(source), **kwargs)

    @classmethod
    def continuous(cls, key: str, values: Optional[np.ndarray] = None,
                   source: FieldSource = FieldSource.OBS, **kwargs) -> "Field":
        payload = ContinuousPayload(values=values)
        return cls(key=key, payload=payload, source=FieldSource(source), **kwargs)

    @property
    def kind(self) -> FieldKind:
        if isinstance(self.payload, CategoryPayload):
            return FieldKind.CATEGORY
        return FieldKind.CONTINUOUS

    @property
    def is_categorical(self) -> bool:
        return isinstance(self.payload, CategoryPayload)

    @property
    def is_continuous(self) -> bool:
        return isinstance(self.payload, ContinuousPayload)

    @property
    def registry_key(self) -> str:
        """Original key, used for every registry and cache lookup."""
        return self.original_key if self.original_key is not None else self.key

    @property
    def is_loaded(self) -> bool:
        return self.payload.has_data()

    @property
    def is_alias(self) -> bool:
        """A user-defined continuous field that borrows its source's values."""
        return self.is_user_defined and self.is_continuous and self.source_field is not None

    @property
    def categories(self) -> List[str]:
        if not isinstance(self.payload, CategoryPayload):
            raise TypeError(f"Field {self.key!r} is continuous and has no categories")
        return self.payload.categories

    def release_arrays(self) -> None:
        """Drop heavy per-point arrays; metadata stays."""
        if isinstance(self.payload, CategoryPayload):
            self.payload.codes = None
        else:
            self.payload.values = None
        self.outlier_quantiles = None

    def clone(self) -> "Field":
        """Copy for a view context.

        UI state is copied. Dataset arrays are shared because they are never
        mutated; user-defined code buffers are copied since edits on derived
        fields remap them in place.
        """
        payload = self.payload
        if isinstance(payload, CategoryPayload):
            codes = payload.codes
            if self.is_user_defined and codes is not None:
                codes = codes.copy()
            new_payload: Payload = CategoryPayload(
                categories=list(payload.categories),
                codes=codes,
                colors=dict(payload.colors),
                visible=dict(payload.visible),
                filter_enabled=payload.filter_enabled,
                centroids_by_dim=copy.deepcopy(payload.centroids_by_dim),
                normalized_dims=set(payload.normalized_dims),
            )
        else:
            new_payload = ContinuousPayload(
                values=payload.values,
                stats=copy.copy(payload.stats),
                positive_stats=copy.copy(payload.positive_stats),
                filter=payload.filter.copy() if payload.filter else None,
                color_range=payload.color_range.copy() if payload.color_range else None,
                colormap=payload.colormap,
                use_log_scale=payload.use_log_scale,
                use_filter_color_range=payload.use_filter_color_range,
                filter_enabled=payload.filter_enabled,
            )

        return Field(
            key=self.key,
            payload=new_payload,
            source=self.source,
            original_key=self.original_key,
            original_categories=list(self.original_categories) if self.original_categories is not None else None,
            is_deleted=self.is_deleted,
            is_purged=self.is_purged,
            is_user_defined=self.is_user_defined,
            user_defined_id=self.user_defined_id,
            source_field=copy.copy(self.source_field),
            operation=copy.deepcopy(self.operation),
            outlier_quantiles=self.outlier_quantiles,
            outlier_threshold=self.outlier_threshold,
            outlier_filter_enabled=self.outlier_filter_enabled,
            created_at=self.created_at,
            page_info=copy.deepcopy(self.page_info),
        )

    def reset_view_state(self) -> None:
        """Forget per-view UI state (colors, filters, visibility)."""
        if isinstance(self.payload, CategoryPayload):
            self.payload.colors = {}
            self.payload.visible = {}
            self.payload.filter_enabled = True
        else:
            self.payload.filter = None
            self.payload.color_range = None
            self.payload.use_log_scale = False
            self.payload.use_filter_color_range = True
            self.payload.filter_enabled = True
        self.outlier_threshold = 1.0
        self.outlier_filter_enabled = True

    def summary(self) -> Dict[str, Any]:
        """Lightweight description for UI listings."""
        info: Dict[str, Any] = {
            "key": self.key,
            "kind": self.kind.value,
            "source": self.source.value,
            "original_key": self.registry_key,
            "is_deleted": self.is_deleted,
            "is_purged": self.is_purged,
            "is_user_defined": self.is_user_defined,
            "loaded": self.is_loaded,
        }
        if self.is_categorical:
            info["n_categories"] = len(self.payload.categories)
        return info
