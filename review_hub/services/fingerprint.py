"""
Content fingerprint and change summary for ACC items.

The fingerprint is a SHA-256 digest over the canonical JSON of seven
projected fields.  Only four of them are itemised in a change summary;
a change in any of the other three still changes the digest.

Pure functions, no database access.
"""

import hashlib
import json

from review_hub.services.external_item import ExternalItem

FINGERPRINT_FIELDS = (
    "status",
    "dueDate",
    "title",
    "description",
    "priority",
    "assignedTo",
    "updatedAt",
)

SUMMARY_FIELDS = ("status", "title", "dueDate", "priority")


def project_item(item: ExternalItem) -> dict:
    """Canonical projection of *item* onto FINGERPRINT_FIELDS."""
    return {
        "status": item.status,
        "dueDate": item.due_date.isoformat() if item.due_date else None,
        "title": item.title,
        "description": item.description,
        "priority": item.priority,
        "assignedTo": sorted(item.assigned_to),
        "updatedAt": item.updated_at.isoformat() if item.updated_at else None,
    }


def compute_fingerprint(item: ExternalItem) -> str:
    canonical = json.dumps(project_item(item), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def summary_values(*, status, title, due_date, priority) -> dict:
    """Build the comparable {field: value} map used by ``summarize_changes``."""
    return {
        "status": status,
        "title": title,
        "dueDate": due_date.isoformat() if due_date else None,
        "priority": priority,
    }


def summarize_changes(old: dict, new: dict) -> dict:
    """Return ``{field: {"old": ..., "new": ...}}`` for each differing SUMMARY_FIELDS entry."""
    changes = {}
    for field in SUMMARY_FIELDS:
        if old.get(field) != new.get(field):
            changes[field] = {"old": old.get(field), "new": new.get(field)}
    return changes


def detect_change(old_fingerprint: str | None, new_fingerprint: str, old: dict, new: dict) -> dict | None:
    """
    Compare fingerprints.

    Returns None when nothing changed, otherwise the change summary (which
    may be empty if only non-itemised fields moved).
    """
    if old_fingerprint == new_fingerprint:
        return None
    return summarize_changes(old, new)
