"""
Manual-response detection.

A manual response is a response entered directly in ACC instead of through
``response_service.send_response``.  It is detected when the ACC item
carries non-empty response text while the local record has no
``response_sent_at`` stamp.  Detection raises ``has_manual_response`` and
stores a JSON snapshot for an admin to confirm.

Snapshot shape (all strings / ISO timestamps, absent values are null):
    {"status", "text", "respondedBy", "respondedAt", "detectedAt"}

While unconfirmed, every sync replaces the snapshot with the latest ACC
data but keeps the first detection time.  Once confirmed, the record is
never re-flagged.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime

from review_hub.core.exceptions import DataCorruptionError
from review_hub.services.external_item import ExternalItem
from review_hub.services.helpers.field_updates import FieldUpdate
from review_hub.utils.helpers import as_utc

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ManualResponse:
    status: str | None
    text: str | None
    responded_by: str | None
    responded_at: str | None
    detected_at: str | None

    def to_payload(self) -> dict:
        return {
            "status": self.status,
            "text": self.text,
            "respondedBy": self.responded_by,
            "respondedAt": self.responded_at,
            "detectedAt": self.detected_at,
        }


def detect_manual_response(item: ExternalItem, record, now: datetime) -> list[FieldUpdate]:
    """Return the sync-metadata updates for a detected manual response (or [])."""
    response = item.response
    if response is None or not response.has_text:
        return []
    if record.response_sent_at is not None:
        return []
    if record.manual_response_confirmed_at is not None:
        return []

    first_detected = as_utc(record.manual_response_detected_at)
    detected_at = first_detected or now

    snapshot = ManualResponse(
        status=response.status or item.status,
        text=response.text,
        responded_by=response.responded_by,
        responded_at=response.responded_at,
        detected_at=detected_at.isoformat(),
    )

    if first_detected is None:
        logger.info(
            "Manual response detected in ACC external_id=%s, requires admin confirmation",
            item.external_id,
        )

    return [
        FieldUpdate("has_manual_response", True),
        FieldUpdate("manual_response_data", json.dumps(snapshot.to_payload())),
        FieldUpdate("manual_response_detected_at", detected_at),
    ]


def parse_manual_response(raw: str | None, *, record_ref: str | None = None) -> ManualResponse:
    """Parse a stored snapshot.

    Raises:
        DataCorruptionError: If *raw* is missing, not JSON, or not an object.
    """
    if not raw:
        raise DataCorruptionError("Manual response data is missing", record_ref=record_ref)
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, TypeError) as exc:
        logger.error("Failed to parse manual response data record=%s", record_ref)
        raise DataCorruptionError("Invalid manual response data", record_ref=record_ref) from exc
    if not isinstance(data, dict):
        logger.error("Manual response data is not an object record=%s", record_ref)
        raise DataCorruptionError("Invalid manual response data", record_ref=record_ref)

    return ManualResponse(
        status=data.get("status"),
        text=data.get("text"),
        responded_by=data.get("respondedBy"),
        responded_at=data.get("respondedAt"),
        detected_at=data.get("detectedAt"),
    )
