"""
Validated input schema for ACC item payloads.

The ACC list endpoints return loosely-shaped camelCase dicts.  Everything
downstream (fingerprint, merge, manual-response detection) works on an
``ExternalItem`` instead, so a missing key always becomes a defined default
(None / empty tuple) and a malformed value fails here, per item.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime

from review_hub.core.exceptions import ValidationError
from review_hub.utils.helpers import parse_iso_ts

logger = logging.getLogger(__name__)


def _text(value) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return str(value)


def _assignees(value) -> tuple[str, ...]:
    if not value:
        return ()
    if isinstance(value, str):
        return (value,)
    if isinstance(value, (list, tuple)):
        out = []
        for entry in value:
            if isinstance(entry, dict):
                entry = entry.get("id") or entry.get("userId") or entry.get("name")
            if entry:
                out.append(str(entry))
        return tuple(sorted(out))
    raise ValidationError("assignedTo must be a string or a list", details={"assignedTo": repr(value)})


def _due_date(value) -> date | None:
    if not value:
        return None
    if isinstance(value, date) and not isinstance(value, datetime):
        return value
    text = str(value)
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        raise ValidationError(f"Invalid dueDate: {text}", details={"dueDate": text}) from None


def _timestamp(value, field: str) -> datetime | None:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    try:
        return parse_iso_ts(str(value))
    except ValueError:
        raise ValidationError(f"Invalid {field}: {value}", details={field: str(value)}) from None


@dataclass(frozen=True)
class ExternalResponse:
    """Response block carried by an ACC item (entered in ACC or sent by us)."""

    text: str | None = None
    status: str | None = None
    responded_by: str | None = None
    responded_at: str | None = None

    @property
    def has_text(self) -> bool:
        return bool(self.text and self.text.strip())

    @classmethod
    def from_api(cls, raw) -> ExternalResponse | None:
        if raw is None:
            return None
        if isinstance(raw, str):
            return cls(text=raw)
        if not isinstance(raw, dict):
            raise ValidationError("response must be an object", details={"response": repr(raw)})
        return cls(
            text=_text(raw.get("text")),
            status=_text(raw.get("status")),
            responded_by=_text(raw.get("respondedBy")),
            responded_at=_text(raw.get("respondedAt")),
        )


@dataclass(frozen=True)
class ExternalItem:
    """One ACC request or submittal, normalised."""

    external_id: str
    number: str | None = None
    title: str | None = None
    status: str | None = None
    priority: str | None = None
    description: str | None = None
    discipline: str | None = None
    spec_section: str | None = None
    package_number: str | None = None
    contractor_comments: str | None = None
    created_by: str | None = None
    assigned_to: tuple[str, ...] = ()
    due_date: date | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    response: ExternalResponse | None = None

    @classmethod
    def from_api(cls, raw) -> ExternalItem:
        """Build an item from an ACC payload dict.

        Raises:
            ValidationError: If the payload is not an object, has no id, or
                carries an unparsable date/timestamp.
        """
        if not isinstance(raw, dict):
            raise ValidationError("ACC item payload must be an object")

        external_id = raw.get("id")
        if external_id is None or str(external_id).strip() == "":
            raise ValidationError("ACC item payload has no id", details={"id": "required"})

        created_at = _timestamp(raw.get("createdAt"), "createdAt")
        updated_at = _timestamp(raw.get("updatedAt"), "updatedAt") or created_at

        return cls(
            external_id=str(external_id),
            number=_text(raw.get("number") or raw.get("customIdentifier")),
            title=_text(raw.get("title")),
            status=_text(raw.get("status")),
            priority=_text(raw.get("priority")),
            description=_text(raw.get("description") or raw.get("question")),
            discipline=_text(raw.get("discipline")),
            spec_section=_text(raw.get("specSection")),
            package_number=_text(raw.get("packageNumber")),
            contractor_comments=_text(raw.get("contractorComments")),
            created_by=_text(raw.get("createdBy")),
            assigned_to=_assignees(raw.get("assignedTo")),
            due_date=_due_date(raw.get("dueDate")),
            created_at=created_at,
            updated_at=updated_at,
            response=ExternalResponse.from_api(raw.get("response")),
        )
