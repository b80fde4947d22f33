"""
Overlay application: rename, then delete, then user-defined injection.

Dataset fields carry their raw keys and categories underneath the
overlays; user-defined fields are exempt from the rename/delete overlays
and take their key and deleted state from their template instead.
"""

import logging
from typing import List

from ..fields import Field, FieldSource
from ..registries import DeleteRegistry, RenameRegistry, UserDefinedFieldsRegistry

logger = logging.getLogger(__name__)


def apply_rename_overlay(field: Field, renames: RenameRegistry) -> None:
    source = field.source
    original = field.registry_key
    display = renames.get_display_key(source, original)
    if display != original:
        field.key = display
        field.original_key = original
    else:
        field.key = original
        field.original_key = None

    if not field.is_categorical:
        return
    category_renames = renames.get_category_renames(source, original)
    base = field.original_categories if field.original_categories is not None else field.categories
    if category_renames:
        if field.original_categories is None:
            field.original_categories = list(base)
        field.payload.categories = [
            category_renames.get(i, label) for i, label in enumerate(field.original_categories)
        ]
    elif field.original_categories is not None:
        field.payload.categories = list(field.original_categories)
        field.original_categories = None


def apply_delete_overlay(field: Field, deletes: DeleteRegistry) -> None:
    field.is_deleted = deletes.is_deleted(field.source, field.registry_key)
    field.is_purged = deletes.is_purged(field.source, field.registry_key)


def apply_overlays_to_fields(fields: List[Field], source: FieldSource,
                             renames: RenameRegistry, deletes: DeleteRegistry) -> None:
    """Re-apply rename and delete overlays to every dataset field."""
    for field in fields:
        if field.is_user_defined:
            continue
        field.source = FieldSource(source)
        apply_rename_overlay(field, renames)
        apply_delete_overlay(field, deletes)


def sync_user_defined_fields(fields: List[Field], registry: UserDefinedFieldsRegistry) -> None:
    """Copy key and lifecycle flags from templates onto injected clones.

    A clone whose template was removed is treated as purged.
    """
    for field in fields:
        if not field.is_user_defined:
            continue
        template = registry.get_field(field.user_defined_id)
        if template is None:
            field.is_deleted = True
            field.is_purged = True
            continue
        field.key = template.key
        field.is_deleted = template.is_deleted
        field.is_purged = template.is_purged


def inject_user_defined_fields(fields: List[Field], source: FieldSource,
                               registry: UserDefinedFieldsRegistry) -> List[Field]:
    """Append clones of templates not yet present in ``fields``.

    Returns:
        The newly injected fields
    """
    present = {f.user_defined_id for f in fields if f.is_user_defined}
    injected = []
    for template in registry.get_all_fields_for_source(source):
        if template.user_defined_id in present:
            continue
        clone = template.clone()
        clone.reset_view_state()
        fields.append(clone)
        injected.append(clone)
    if injected:
        logger.debug("Injected %d user-defined %s fields", len(injected), FieldSource(source).value)
    return injected


def apply_all_overlays(ctx, renames: RenameRegistry, deletes: DeleteRegistry,
                       registry: UserDefinedFieldsRegistry) -> None:
    """Rename, delete and user-defined overlays for both sources of ``ctx``."""
    for source in (FieldSource.OBS, FieldSource.VAR):
        fields = ctx.fields_for(source)
        apply_overlays_to_fields(fields, source, renames, deletes)
        sync_user_defined_fields(fields, registry)
        inject_user_defined_fields(fields, source, registry)
