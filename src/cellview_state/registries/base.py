"""
Base class for overlay registries.

Registries persist user edits (renames, soft-deletes, derived fields) keyed
by a field's original identity. They hold data only and round-trip through
plain JSON-compatible structures.
"""

from abc import ABC, abstractmethod
from typing import Any

from ..tools.utils import make_field_id


class BaseRegistry(ABC):

    @staticmethod
    def field_id(source: Any, key: str) -> str:
        source = getattr(source, "value", source)
        return make_field_id(str(source), key)

    @abstractmethod
    def to_dict(self) -> Any:
        """Serialize to JSON-compatible data."""

    @abstractmethod
    def from_dict(self, data: Any) -> None:
        """Replace contents from the output of :meth:`to_dict`."""

    @abstractmethod
    def clear(self) -> None:
        ...
