"""Explicit field updates for sync writes.

An update is a list of ``FieldUpdate(field, value)``; a field that is not
listed is not touched.  ``apply_updates`` refuses any field sync does not
own, so internally-owned columns cannot be written from a sync path.
"""

from dataclasses import dataclass
from typing import Any

from review_hub.models.records import SYNC_WRITABLE_FIELDS


@dataclass(frozen=True)
class FieldUpdate:
    field: str
    value: Any


def apply_updates(record, updates: list[FieldUpdate]) -> None:
    """Set each listed field on *record*.

    Raises:
        ValueError: If an update targets a field outside the externally
            owned / sync-metadata groups.
    """
    for update in updates:
        if update.field not in SYNC_WRITABLE_FIELDS:
            raise ValueError(f"Sync may not write field '{update.field}'")
    for update in updates:
        setattr(record, update.field, update.value)
