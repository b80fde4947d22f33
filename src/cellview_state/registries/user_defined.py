"""
Registry of user-defined (derived) field templates.

Templates are re-injected into every rebuilt field list. Categorical
templates own their code buffer; continuous templates are aliases that only
reference a source field and never persist values.
"""

import logging
import time
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from ..config import (
    MAX_CATEGORIES_PER_FIELD,
    MAX_INTERSECTION_PAGES,
    MAX_USER_DEFINED_FIELDS,
    UNASSIGNED_CODE,
)
from ..errors import ValidationError
from ..fields import Field, FieldSource, OverlapStrategy, SourceFieldRef
from ..tools.centroids import compute_all_dimension_centroids, compute_centroids_for_dimension
from ..tools.utils import generate_id, make_unique_label, rle_decode, rle_encode
from ..tools.validation import validate_field_key
from .base import BaseRegistry

logger = logging.getLogger(__name__)


def _popcount(value: int) -> int:
    return bin(value).count("1")


def _is_power_of_two(value: int) -> bool:
    return value > 0 and (value & (value - 1)) == 0


class UserDefinedFieldsRegistry(BaseRegistry):
    """Holds derived-field templates keyed by their stable id.

    Args:
        max_fields: Maximum number of non-deleted templates
    """

    def __init__(self, max_fields: int = MAX_USER_DEFINED_FIELDS):
        self.max_fields = max_fields
        self._fields: Dict[str, Field] = {}

    def __len__(self) -> int:
        return len(self._fields)

    def _active_count(self) -> int:
        return sum(1 for f in self._fields.values() if not f.is_deleted)

    def _check_capacity(self) -> None:
        if self._active_count() >= self.max_fields:
            raise ValidationError(f"Maximum {self.max_fields} user-defined fields allowed")

    # =========================================================================
    # Creation
    # =========================================================================

    def create_from_categorical_codes(
        self,
        key: str,
        categories: Sequence[str],
        codes: np.ndarray,
        source: FieldSource = FieldSource.OBS,
        source_field: Optional[SourceFieldRef] = None,
        operation: Optional[Dict[str, Any]] = None,
        dimension_manager=None,
    ) -> Field:
        """Create a categorical template from an existing code buffer.

        The buffer is stored as given; callers pass a fresh copy.
        """
        validate_field_key(key)
        if not categories:
            raise ValidationError("Categorical field needs at least one category")
        if codes is None:
            raise ValidationError("Categorical field needs a code buffer")
        if len(categories) > MAX_CATEGORIES_PER_FIELD and np.asarray(codes).dtype == np.uint8:
            raise ValidationError(f"Too many categories (max {MAX_CATEGORIES_PER_FIELD})")
        self._check_capacity()

        categories = [str(c) for c in categories]
        field_id = generate_id("user_cat")
        template = Field.categorical(
            key,
            categories,
            codes=np.asarray(codes),
            source=source,
            is_user_defined=True,
            user_defined_id=field_id,
            source_field=source_field,
            operation=operation,
            created_at=time.time(),
        )
        template.payload.centroids_by_dim = compute_all_dimension_centroids(
            template.payload.codes, categories, dimension_manager
        )
        self._fields[field_id] = template
        logger.info("Created user-defined categorical field %r (%s)", key, field_id)
        return template

    def create_continuous_alias(
        self,
        key: str,
        source: FieldSource,
        source_field: SourceFieldRef,
        operation: Optional[Dict[str, Any]] = None,
    ) -> Field:
        """Create a continuous alias that borrows values from ``source_field``."""
        validate_field_key(key)
        if source_field is None or not source_field.source_key:
            raise ValidationError("Continuous alias needs a source field reference")
        self._check_capacity()

        field_id = generate_id("user_cont")
        template = Field.continuous(
            key,
            values=None,
            source=source,
            is_user_defined=True,
            user_defined_id=field_id,
            source_field=source_field,
            operation=operation,
            created_at=time.time(),
        )
        self._fields[field_id] = template
        logger.info("Created continuous alias %r -> %r", key, source_field.source_key)
        return template

    def create_from_pages(
        self,
        key: str,
        pages: Sequence[Dict[str, Any]],
        point_count: int,
        uncovered_label: Optional[str] = None,
        overlap_strategy: OverlapStrategy = OverlapStrategy.FIRST,
        overlap_label: Optional[str] = None,
        intersection_labels: Optional[Dict[str, str]] = None,
        dimension_manager=None,
    ) -> Tuple[Field, int, int]:
        """Build a categorical field with one category per highlight page.

        Args:
            key: Field key
            pages: ``{"page_id", "label", "cells"}`` dicts; ``cells`` holds the
                page's highlighted indices
            point_count: Dataset size
            uncovered_label: Category for cells in no page; None leaves them
                at the unassigned sentinel
            overlap_strategy: How cells in several pages are coded
            overlap_label: Label of the shared category for ``overlap-label``
            intersection_labels: Requested labels keyed by membership bitmask
            dimension_manager: Used to compute centroids

        Returns:
            ``(template, conflicts, uncovered_count)``
        """
        validate_field_key(key)
        if not pages:
            raise ValidationError("At least one page is required")
        if not point_count:
            raise ValidationError("No cell data loaded yet")
        self._check_capacity()
        strategy = OverlapStrategy(overlap_strategy)

        page_labels = [str(p.get("label") or "Category") for p in pages]
        cell_sets = []
        for p in pages:
            cells = np.unique(np.asarray(p.get("cells", []), dtype=np.int64))
            cell_sets.append(cells[(cells >= 0) & (cells < point_count)])

        uncovered_trim = str(uncovered_label or "").strip()
        categories: List[str] = list(page_labels)
        overlap_category_label = None
        intersection_label_by_mask: Optional[Dict[str, str]] = None
        uncovered_category_label = None

        if strategy == OverlapStrategy.INTERSECTIONS:
            if len(pages) > MAX_INTERSECTION_PAGES:
                raise ValidationError(f"Too many pages for intersections (max {MAX_INTERSECTION_PAGES})")

            membership = np.zeros(point_count, dtype=np.int64)
            for page_index, cells in enumerate(cell_sets):
                membership[cells] |= (1 << page_index)

            covered = membership > 0
            masks, mask_counts = np.unique(membership[covered], return_counts=True)
            intersection_masks = sorted(
                (int(m) for m in masks if not _is_power_of_two(int(m))),
                key=lambda m: (_popcount(m), m),
            )
            overlap_count = int(sum(
                int(c) for m, c in zip(masks.tolist(), mask_counts.tolist()) if not _is_power_of_two(m)
            ))

            intersection_label_by_mask = {}
            index_by_mask: Dict[int, int] = {}
            for mask in intersection_masks:
                requested = str((intersection_labels or {}).get(str(mask), "") or "").strip()
                parts = [page_labels[i] for i in range(len(pages)) if mask & (1 << i)]
                base = requested or " & ".join(parts) or "Overlap"
                unique = make_unique_label(base, categories)
                intersection_label_by_mask[str(mask)] = unique
                index_by_mask[mask] = len(categories)
                categories.append(unique)

            if uncovered_trim:
                uncovered_category_label = make_unique_label(uncovered_trim, categories)
                categories.append(uncovered_category_label)

            if len(categories) > MAX_CATEGORIES_PER_FIELD:
                raise ValidationError(f"Too many categories (max {MAX_CATEGORIES_PER_FIELD})")

            fill = len(categories) - 1 if uncovered_trim else UNASSIGNED_CODE
            codes = np.full(point_count, fill, dtype=np.uint8)
            for page_index in range(len(pages)):
                codes[membership == (1 << page_index)] = page_index
            for mask, idx in index_by_mask.items():
                codes[membership == mask] = idx

            conflicts = overlap_count
            uncovered_count = int(point_count - np.count_nonzero(covered))
        else:
            overlap_index = -1
            if strategy == OverlapStrategy.OVERLAP_LABEL:
                base_overlap = str(overlap_label or "Overlap").strip() or "Overlap"
                overlap_category_label = make_unique_label(base_overlap, categories)
                overlap_index = len(categories)
                categories.append(overlap_category_label)

            if uncovered_trim:
                uncovered_category_label = make_unique_label(uncovered_trim, categories)
                categories.append(uncovered_category_label)

            if len(categories) > MAX_CATEGORIES_PER_FIELD:
                raise ValidationError(f"Too many categories (max {MAX_CATEGORIES_PER_FIELD})")

            fill = len(categories) - 1 if uncovered_trim else UNASSIGNED_CODE
            codes = np.full(point_count, fill, dtype=np.uint8)
            assigned = np.zeros(point_count, dtype=bool)
            conflicted = np.zeros(point_count, dtype=bool)

            for cat_index, cells in enumerate(cell_sets):
                already = assigned[cells]
                fresh = cells[~already]
                repeat = cells[already]
                codes[fresh] = cat_index
                assigned[fresh] = True
                conflicted[repeat] = True
                if strategy == OverlapStrategy.OVERLAP_LABEL and overlap_index >= 0:
                    codes[repeat] = overlap_index
                elif strategy == OverlapStrategy.LAST:
                    codes[repeat] = cat_index

            conflicts = int(np.count_nonzero(conflicted))
            uncovered_count = int(point_count - np.count_nonzero(assigned))

        field_id = generate_id("user_cat")
        template = Field.categorical(
            key,
            categories,
            codes=codes,
            source=FieldSource.OBS,
            is_user_defined=True,
            user_defined_id=field_id,
            created_at=time.time(),
            page_info={
                "source_pages": [{"page_id": p.get("page_id"), "label": p.get("label")} for p in pages],
                "overlap_strategy": strategy.value,
                "overlap_label": overlap_category_label,
                "intersection_labels": intersection_label_by_mask,
                "uncovered_label": uncovered_category_label,
            },
        )
        template.payload.centroids_by_dim = compute_all_dimension_centroids(codes, categories, dimension_manager)
        self._fields[field_id] = template
        logger.info("Created field %r from %d pages (%d conflicts, %d uncovered)",
                    key, len(pages), conflicts, uncovered_count)
        return template, conflicts, uncovered_count

    # =========================================================================
    # Access and updates
    # =========================================================================

    def recompute_centroids_for_dimension(self, field_id: str, dim: int, positions: np.ndarray) -> None:
        """Fill in centroids for a dimension that was unavailable at creation."""
        template = self._fields.get(field_id)
        if template is None or not template.is_categorical or template.payload.codes is None:
            return
        template.payload.centroids_by_dim[int(dim)] = compute_centroids_for_dimension(
            template.payload.codes, template.categories, positions, dim
        )
        template.payload.normalized_dims.discard(int(dim))

    def get_field(self, field_id: str) -> Optional[Field]:
        return self._fields.get(field_id)

    def get_all_fields(self) -> List[Field]:
        return list(self._fields.values())

    def get_all_fields_for_source(self, source) -> List[Field]:
        source = FieldSource(source)
        return [f for f in self._fields.values() if f.source == source]

    def delete_field(self, field_id: str) -> bool:
        return self._fields.pop(field_id, None) is not None

    def update_field(
        self,
        field_id: str,
        key: Optional[str] = None,
        categories: Optional[Sequence[str]] = None,
        codes: Optional[np.ndarray] = None,
        centroids_by_dim: Optional[Dict[int, List[Dict]]] = None,
        source_field: Optional[SourceFieldRef] = None,
        operation: Optional[Dict[str, Any]] = None,
        is_deleted: Optional[bool] = None,
        is_purged: Optional[bool] = None,
    ) -> bool:
        template = self._fields.get(field_id)
        if template is None:
            return False
        if key:
            template.key = key
        if template.is_categorical:
            if categories is not None:
                template.payload.categories = [str(c) for c in categories]
            if codes is not None:
                template.payload.codes = codes
            if centroids_by_dim is not None:
                template.payload.centroids_by_dim = centroids_by_dim
                template.payload.normalized_dims = set()
        if source_field is not None:
            template.source_field = source_field
        if operation is not None:
            template.operation = operation
        if is_deleted is not None:
            template.is_deleted = bool(is_deleted)
            if not is_deleted:
                template.is_purged = False
        if is_purged is not None:
            template.is_purged = bool(is_purged)
            if is_purged:
                template.is_deleted = True
        return True

    # =========================================================================
    # Serialization
    # =========================================================================

    def to_dict(self) -> List[Dict[str, Any]]:
        records = []
        for field_id, template in self._fields.items():
            record: Dict[str, Any] = {
                "id": field_id,
                "source": template.source.value,
                "kind": template.kind.value,
                "key": template.key,
                "isDeleted": template.is_deleted,
                "isPurged": template.is_purged,
                "sourceField": template.source_field.to_dict() if template.source_field else None,
                "operation": template.operation,
                "createdAt": template.created_at,
            }
            if template.is_categorical:
                codes = template.payload.codes
                if codes is None:
                    codes = np.zeros(0, dtype=np.uint8)
                page_info = template.page_info or {}
                record.update({
                    "categories": list(template.categories),
                    "codesRLE": rle_encode(codes),
                    "codesLength": int(codes.size),
                    "codesType": "Uint16Array" if codes.dtype == np.uint16 else "Uint8Array",
                    "centroidsByDim": {str(d): c for d, c in template.payload.centroids_by_dim.items()},
                    "normalizedDims": sorted(template.payload.normalized_dims),
                    "sourcePages": page_info.get("source_pages", []),
                    "overlapStrategy": page_info.get("overlap_strategy", OverlapStrategy.FIRST.value),
                    "overlapLabel": page_info.get("overlap_label"),
                    "intersectionLabels": page_info.get("intersection_labels"),
                    "uncoveredLabel": page_info.get("uncovered_label"),
                })
            records.append(record)
        return records

    def from_dict(self, data: Optional[List[Dict[str, Any]]], dimension_manager=None) -> None:
        self._fields.clear()
        for item in data or []:
            field_id = str(item["id"])
            source = FieldSource.VAR if item.get("source") == "var" else FieldSource.OBS
            common = dict(
                source=source,
                is_user_defined=True,
                user_defined_id=field_id,
                is_deleted=bool(item.get("isDeleted")),
                is_purged=bool(item.get("isPurged")),
                source_field=SourceFieldRef.from_dict(item.get("sourceField")),
                operation=item.get("operation"),
                created_at=item.get("createdAt"),
            )

            if item.get("kind") == "continuous":
                self._fields[field_id] = Field.continuous(item["key"], values=None, **common)
                continue

            dtype = np.uint16 if item.get("codesType") == "Uint16Array" else np.uint8
            codes = rle_decode(item.get("codesRLE") or [], item.get("codesLength", 0), dtype)
            categories = list(item.get("categories") or [])
            template = Field.categorical(
                item["key"],
                categories,
                codes=codes,
                page_info={
                    "source_pages": item.get("sourcePages") or [],
                    "overlap_strategy": item.get("overlapStrategy") or OverlapStrategy.FIRST.value,
                    "overlap_label": item.get("overlapLabel"),
                    "intersection_labels": item.get("intersectionLabels"),
                    "uncovered_label": item.get("uncoveredLabel"),
                },
                **common,
            )
            centroids = {int(d): c for d, c in (item.get("centroidsByDim") or {}).items()}
            if centroids:
                template.payload.centroids_by_dim = centroids
                template.payload.normalized_dims = {int(d) for d in item.get("normalizedDims") or []}
            else:
                template.payload.centroids_by_dim = compute_all_dimension_centroids(
                    codes, categories, dimension_manager
                )
            self._fields[field_id] = template

    def clear(self) -> None:
        self._fields.clear()
