"""
Field and category rename overlays.
"""

from typing import Dict, Optional

from .base import BaseRegistry


class RenameRegistry(BaseRegistry):
    """Maps ``"source:originalKey"`` to a display key.

    Category renames are keyed by ``"source:originalKey:categoryIndex"``.
    """

    def __init__(self):
        self._field_renames: Dict[str, str] = {}
        self._category_renames: Dict[str, str] = {}

    # -------------------------------------------------------------------------
    # Fields
    # -------------------------------------------------------------------------

    def set_field_rename(self, source, original_key: str, display_key: str) -> None:
        """Record a rename; renaming back to the original removes the entry."""
        field_id = self.field_id(source, original_key)
        if display_key == original_key:
            self._field_renames.pop(field_id, None)
        else:
            self._field_renames[field_id] = display_key

    def get_display_key(self, source, original_key: str) -> str:
        return self._field_renames.get(self.field_id(source, original_key), original_key)

    def is_field_renamed(self, source, original_key: str) -> bool:
        return self.field_id(source, original_key) in self._field_renames

    def revert_field_rename(self, source, original_key: str) -> bool:
        return self._field_renames.pop(self.field_id(source, original_key), None) is not None

    # -------------------------------------------------------------------------
    # Categories
    # -------------------------------------------------------------------------

    def _category_id(self, source, original_key: str, category_index: int) -> str:
        return f"{self.field_id(source, original_key)}:{int(category_index)}"

    def set_category_rename(self, source, original_key: str, category_index: int,
                            original_label: str, display_label: str) -> None:
        cat_id = self._category_id(source, original_key, category_index)
        if display_label == original_label:
            self._category_renames.pop(cat_id, None)
        else:
            self._category_renames[cat_id] = display_label

    def get_display_category(self, source, original_key: str, category_index: int,
                             original_label: str) -> str:
        return self._category_renames.get(
            self._category_id(source, original_key, category_index), original_label
        )

    def get_category_renames(self, source, original_key: str) -> Dict[int, str]:
        """All category renames of one field as ``{index: label}``."""
        prefix = self.field_id(source, original_key) + ":"
        renames = {}
        for cat_id, label in self._category_renames.items():
            if not cat_id.startswith(prefix):
                continue
            suffix = cat_id[len(prefix):]
            if suffix.isdigit():
                renames[int(suffix)] = label
        return renames

    def revert_category_rename(self, source, original_key: str, category_index: int) -> bool:
        cat_id = self._category_id(source, original_key, category_index)
        return self._category_renames.pop(cat_id, None) is not None

    def get_counts(self) -> Dict[str, int]:
        return {"fields": len(self._field_renames), "categories": len(self._category_renames)}

    # -------------------------------------------------------------------------
    # Serialization
    # -------------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Dict[str, str]]:
        return {"fields": dict(self._field_renames), "categories": dict(self._category_renames)}

    def from_dict(self, data: Optional[Dict]) -> None:
        data = data or {}
        self._field_renames = {str(k): str(v) for k, v in (data.get("fields") or {}).items()}
        self._category_renames = {str(k): str(v) for k, v in (data.get("categories") or {}).items()}

    def clear(self) -> None:
        self._field_renames.clear()
        self._category_renames.clear()
