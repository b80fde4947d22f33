"""
Collaborator contracts consumed by the state engine.

The engine only talks to the viewer, dimension manager, notification center
and field loaders through these interfaces. Null/in-memory implementations
are provided for headless use and tests.
"""

import itertools
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from ..config import DEFAULT_DIMENSION

logger = logging.getLogger(__name__)


# =============================================================================
# Loader contract
# =============================================================================

@dataclass
class LoadedArrays:
    """Materialized per-point arrays for one field.

    Exactly one of ``values`` (continuous) or ``codes`` (categorical) is set.
    """

    values: Optional[np.ndarray] = None
    codes: Optional[np.ndarray] = None
    outlier_quantiles: Optional[np.ndarray] = None


# ``async def loader(field) -> LoadedArrays``; resolves by original key
FieldLoader = Callable[[Any], Awaitable[LoadedArrays]]


@dataclass
class NormTransform:
    center: Tuple[float, float, float]
    scale: float


# =============================================================================
# Viewer
# =============================================================================

class Viewer(ABC):
    """Push-only render sink.

    Snapshot views have their own buffers addressed by ``view_id``; the
    engine reads back only LOD visibility for cached highlight counts.
    """

    @abstractmethod
    def set_colors(self, colors: np.ndarray, view_id: Optional[str] = None) -> None:
        ...

    @abstractmethod
    def set_transparency(self, transparency: np.ndarray, view_id: Optional[str] = None) -> None:
        ...

    @abstractmethod
    def set_outlier_quantiles(self, quantiles: np.ndarray, view_id: Optional[str] = None) -> None:
        ...

    @abstractmethod
    def set_centroids(self, positions: np.ndarray, colors: np.ndarray, view_id: Optional[str] = None) -> None:
        ...

    @abstractmethod
    def set_centroid_labels(self, labels: List[Dict], view_id: Optional[str] = None) -> None:
        ...

    @abstractmethod
    def set_highlight(self, highlight: np.ndarray) -> None:
        ...

    def set_positions(self, positions: np.ndarray, view_id: Optional[str] = None) -> None:
        """Upload (n, 3) positions; optional for viewers without embeddings."""

    def remove_view(self, view_id: str) -> None:
        """Drop per-view buffers of a snapshot."""

    def get_lod_visibility(self) -> Optional[np.ndarray]:
        """Per-point LOD mask, or None when every point is drawn."""
        return None

    def get_current_lod_level(self) -> int:
        return -1


class NullViewer(Viewer):
    """Viewer that keeps the last pushed buffers; used headless and in tests."""

    def __init__(self):
        self.colors: Dict[Optional[str], np.ndarray] = {}
        self.transparency: Dict[Optional[str], np.ndarray] = {}
        self.outlier_quantiles: Dict[Optional[str], np.ndarray] = {}
        self.centroids: Dict[Optional[str], Tuple[np.ndarray, np.ndarray]] = {}
        self.centroid_labels: Dict[Optional[str], List[Dict]] = {}
        self.positions: Dict[Optional[str], np.ndarray] = {}
        self.highlight: Optional[np.ndarray] = None
        self.lod_visibility: Optional[np.ndarray] = None
        self.lod_level = -1

    def set_colors(self, colors, view_id=None):
        self.colors[view_id] = colors

    def set_transparency(self, transparency, view_id=None):
        self.transparency[view_id] = transparency

    def set_outlier_quantiles(self, quantiles, view_id=None):
        self.outlier_quantiles[view_id] = quantiles

    def set_centroids(self, positions, colors, view_id=None):
        self.centroids[view_id] = (positions, colors)

    def set_centroid_labels(self, labels, view_id=None):
        self.centroid_labels[view_id] = labels

    def set_highlight(self, highlight):
        self.highlight = highlight

    def set_positions(self, positions, view_id=None):
        self.positions[view_id] = positions

    def remove_view(self, view_id):
        for store in (self.colors, self.transparency, self.outlier_quantiles,
                      self.centroids, self.centroid_labels, self.positions):
            store.pop(view_id, None)

    def get_lod_visibility(self):
        return self.lod_visibility

    def get_current_lod_level(self):
        return self.lod_level


# =============================================================================
# Dimension manager
# =============================================================================

class DimensionManager(ABC):
    """Source of embedding positions per dimension (1D to 3D)."""

    @abstractmethod
    def get_available_dimensions(self) -> List[int]:
        ...

    @abstractmethod
    def get_positions(self, dim: int) -> Optional[np.ndarray]:
        """Raw (n_points, dim) positions, or None if not loaded yet."""

    @abstractmethod
    def get_norm_transform(self, dim: int) -> Optional[NormTransform]:
        ...

    def has_dimension(self, dim: int) -> bool:
        return dim in self.get_available_dimensions()

    def get_default_dimension(self) -> int:
        dims = self.get_available_dimensions()
        if DEFAULT_DIMENSION in dims or not dims:
            return DEFAULT_DIMENSION
        return max(dims)

    def set_view_dimension(self, view_id: str, dim: int) -> None:
        """Record which dimension a view is displaying."""

    def get_view_dimension(self, view_id: str) -> int:
        return self.get_default_dimension()

    def remove_view(self, view_id: str) -> None:
        """Forget per-view dimension tracking."""

    async def get_positions_3d(self, dim: int) -> np.ndarray:
        """Normalized positions padded to (n_points, 3)."""
        raw = self.get_positions(dim)
        if raw is None:
            raise KeyError(f"{dim}D positions are not available")
        raw = np.asarray(raw, dtype=np.float32).reshape(-1, dim)
        out = np.zeros((raw.shape[0], 3), dtype=np.float32)
        norm = self.get_norm_transform(dim)
        for axis in range(min(dim, 3)):
            column = raw[:, axis]
            if norm is not None:
                column = (column - norm.center[axis]) * norm.scale
            out[:, axis] = column
        return out


class InMemoryDimensionManager(DimensionManager):
    """Dimension manager over embeddings already held in memory.

    Each embedding is normalized to fit [-1, 1] around its bounding-box
    center.

    Args:
        embeddings: Mapping of dimension -> (n_points, dim) array
        default_dimension: Preferred dimension; defaults to 3D, else the highest
    """

    def __init__(self, embeddings: Dict[int, np.ndarray], default_dimension: Optional[int] = None):
        self._positions: Dict[int, np.ndarray] = {}
        self._norms: Dict[int, NormTransform] = {}
        self._default = default_dimension
        self._view_dimensions: Dict[str, int] = {}
        for dim, coords in embeddings.items():
            self.add_embedding(dim, coords)

    @staticmethod
    def _compute_norm(arr: np.ndarray) -> NormTransform:
        center = [0.0, 0.0, 0.0]
        if arr.size == 0:
            return NormTransform(center=(0.0, 0.0, 0.0), scale=1.0)
        lo = arr.min(axis=0)
        hi = arr.max(axis=0)
        for axis in range(min(arr.shape[1], 3)):
            center[axis] = float((lo[axis] + hi[axis]) / 2.0)
        extent = float(np.max(hi - lo))
        scale = 2.0 / extent if extent > 0 else 1.0
        return NormTransform(center=tuple(center), scale=scale)

    def get_available_dimensions(self):
        return sorted(self._positions)

    def get_positions(self, dim):
        return self._positions.get(int(dim))

    def get_norm_transform(self, dim):
        return self._norms.get(int(dim))

    def get_default_dimension(self):
        if self._default is not None and self._default in self._positions:
            return self._default
        return super().get_default_dimension()

    def add_embedding(self, dim: int, coords: np.ndarray) -> None:
        arr = np.asarray(coords, dtype=np.float32).reshape(-1, int(dim))
        self._positions[int(dim)] = arr
        self._norms[int(dim)] = self._compute_norm(arr)

    def set_view_dimension(self, view_id: str, dim: int) -> None:
        self._view_dimensions[str(view_id)] = int(dim)

    def get_view_dimension(self, view_id: str) -> int:
        return self._view_dimensions.get(str(view_id), self.get_default_dimension())

    def remove_view(self, view_id: str) -> None:
        self._view_dimensions.pop(str(view_id), None)


# =============================================================================
# Notifications
# =============================================================================

class NotificationCenter(ABC):
    """Fire-and-forget progress reporting; never gates correctness."""

    @abstractmethod
    def loading(self, message: str, category: str = "data") -> Optional[str]:
        ...

    @abstractmethod
    def complete(self, notification_id: Optional[str], message: str) -> None:
        ...

    @abstractmethod
    def fail(self, notification_id: Optional[str], message: str) -> None:
        ...


class LoggingNotificationCenter(NotificationCenter):
    """Routes notifications to the package logger."""

    def __init__(self):
        self._ids = itertools.count(1)
        self.history: List[Tuple[str, Optional[str], str]] = []

    def loading(self, message, category="data"):
        notification_id = f"notif_{next(self._ids)}"
        self.history.append(("loading", notification_id, message))
        logger.info("[%s] %s", category, message)
        return notification_id

    def complete(self, notification_id, message):
        self.history.append(("complete", notification_id, message))
        logger.info(message)

    def fail(self, notification_id, message):
        self.history.append(("fail", notification_id, message))
        logger.error(message)
