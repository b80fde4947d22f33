"""
Soft-delete and purge overlays.
"""

from typing import Dict, List, Optional, Set

from ..tools.utils import parse_field_id
from .base import BaseRegistry


class DeleteRegistry(BaseRegistry):
    """Tracks soft-deleted fields plus a non-restorable purged subset."""

    def __init__(self):
        self._deleted: Set[str] = set()
        self._purged: Set[str] = set()

    def mark_deleted(self, source, original_key: str) -> None:
        self._deleted.add(self.field_id(source, original_key))

    def mark_restored(self, source, original_key: str) -> None:
        field_id = self.field_id(source, original_key)
        self._deleted.discard(field_id)
        self._purged.discard(field_id)

    def mark_purged(self, source, original_key: str) -> None:
        field_id = self.field_id(source, original_key)
        self._deleted.add(field_id)
        self._purged.add(field_id)

    def is_deleted(self, source, original_key: str) -> bool:
        return self.field_id(source, original_key) in self._deleted

    def is_purged(self, source, original_key: str) -> bool:
        return self.field_id(source, original_key) in self._purged

    def get_deleted_keys(self, source) -> List[str]:
        """Restorable (deleted, not purged) original keys of one source."""
        source = getattr(source, "value", source)
        keys = []
        for field_id in sorted(self._deleted - self._purged):
            src, key = parse_field_id(field_id)
            if src == source:
                keys.append(key)
        return keys

    def get_counts(self) -> Dict[str, int]:
        counts = {"obs": 0, "var": 0}
        for field_id in self._deleted - self._purged:
            src, _ = parse_field_id(field_id)
            if src in counts:
                counts[src] += 1
        return counts

    def to_dict(self) -> Dict[str, List[str]]:
        return {"deleted": sorted(self._deleted), "purged": sorted(self._purged)}

    def from_dict(self, data: Optional[Dict]) -> None:
        data = data or {}
        self._deleted = {str(x) for x in data.get("deleted") or []}
        self._purged = {str(x) for x in data.get("purged") or []}
        # A purged field is always deleted
        self._deleted |= self._purged

    def clear(self) -> None:
        self._deleted.clear()
        self._purged.clear()
