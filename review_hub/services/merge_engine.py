"""
Merge / upsert of ACC items into local records.

For every fetched item:

  1. Fingerprint the item (``fingerprint.compute_fingerprint``).
  2. Look the record up by (link_id, external_id).
  3. Build the write as a list of FieldUpdate:
       - externally owned fields, always
       - last_seen_at, always; first_seen_at on create
       - change flag, timestamp and summary when the fingerprint moved
  4. Run manual-response detection and append its updates.
  5. Apply through ``apply_updates``, which rejects internally-owned fields.
  6. On a detected change of an existing record, append a StatusHistory
     row with actor "sync".

A record whose official response is being dispatched (its
``dispatch:{kind}:{id}`` lease is held) is left untouched and reported as
deferred; the next cycle picks it up once the dispatch has committed.

Internally-owned fields never appear in the update list, so they cannot
be clobbered.  The change flag is only ever set here, never cleared.

The caller owns the transaction.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime

from review_hub.models import db
from review_hub.models.audit import SYNC_ACTOR, write_status_history
from review_hub.models.project import ExternalProjectLink
from review_hub.services.external_item import ExternalItem
from review_hub.services.fingerprint import (
    compute_fingerprint,
    detect_change,
    summary_values,
)
from review_hub.services.helpers.field_updates import FieldUpdate, apply_updates
from review_hub.services.locks import dispatch_lease_key, lease_is_held
from review_hub.services.manual_response import detect_manual_response
from review_hub.utils.helpers import utcnow

logger = logging.getLogger(__name__)


@dataclass
class MergePlan:
    updates: list[FieldUpdate]
    is_new: bool
    change_summary: dict | None = None
    previous_acc_status: str | None = None

    @property
    def changed(self) -> bool:
        return self.change_summary is not None


@dataclass
class MergeResult:
    record: object
    is_new: bool
    changed: bool
    manual_response_flagged: bool
    deferred: bool = False


def external_field_updates(item: ExternalItem, model, fingerprint: str) -> list[FieldUpdate]:
    """Externally-owned column values for *item*."""
    return [
        FieldUpdate("external_number", item.number or item.external_id),
        FieldUpdate("title", item.title or model.default_title),
        FieldUpdate("discipline", item.discipline),
        FieldUpdate("spec_section", item.spec_section),
        FieldUpdate("package_number", item.package_number),
        FieldUpdate("acc_status", item.status),
        FieldUpdate("priority", item.priority),
        FieldUpdate("acc_created_by", item.created_by),
        FieldUpdate("acc_assigned_to", json.dumps(list(item.assigned_to))),
        FieldUpdate("acc_due_date", item.due_date),
        FieldUpdate("acc_description", item.description),
        FieldUpdate("acc_contractor_comments", item.contractor_comments),
        FieldUpdate("acc_created_at", item.created_at),
        FieldUpdate("acc_updated_at", item.updated_at),
        FieldUpdate("acc_data_hash", fingerprint),
    ]


def plan_merge(item: ExternalItem, existing, model, now: datetime) -> MergePlan:
    """Build the sync write for *item* against *existing* (or None)."""
    fingerprint = compute_fingerprint(item)
    updates = external_field_updates(item, model, fingerprint)

    if existing is None:
        updates += [
            FieldUpdate("first_seen_at", now),
            FieldUpdate("last_seen_at", now),
            FieldUpdate("has_unacknowledged_change", False),
        ]
        return MergePlan(updates=updates, is_new=True)

    updates.append(FieldUpdate("last_seen_at", now))

    old_values = summary_values(
        status=existing.acc_status,
        title=existing.title,
        due_date=existing.acc_due_date,
        priority=existing.priority,
    )
    new_values = summary_values(
        status=item.status,
        title=item.title or model.default_title,
        due_date=item.due_date,
        priority=item.priority,
    )
    summary = detect_change(existing.acc_data_hash, fingerprint, old_values, new_values)
    if summary is not None:
        updates += [
            FieldUpdate("has_unacknowledged_change", True),
            FieldUpdate("last_acc_change_at", now),
            FieldUpdate("changes_summary", json.dumps(summary)),
        ]

    return MergePlan(
        updates=updates,
        is_new=False,
        change_summary=summary,
        previous_acc_status=existing.acc_status,
    )


def find_record(model, link_id: int, external_id: str):
    return model.query.filter_by(link_id=link_id, external_id=external_id).first()


def merge_item(link: ExternalProjectLink, model, item: ExternalItem, *, now: datetime | None = None) -> MergeResult:
    """Create or update the local record for one ACC item (flush, no commit)."""
    now = now or utcnow()
    existing = find_record(model, link.id, item.external_id)
    if existing is not None and lease_is_held(dispatch_lease_key(model.record_kind, existing.id)):
        logger.info(
            "Deferring %s external_id=%s, a response dispatch is in progress",
            model.record_kind, item.external_id,
            extra={"link_id": link.id, "record_id": existing.id},
        )
        return MergeResult(record=existing, is_new=False, changed=False,
                           manual_response_flagged=False, deferred=True)

    plan = plan_merge(item, existing, model, now)

    if existing is None:
        record = model(project_id=link.project_id, link_id=link.id, external_id=item.external_id)
        db.session.add(record)
    else:
        record = existing

    apply_updates(record, plan.updates)

    manual_updates = detect_manual_response(item, record, now)
    apply_updates(record, manual_updates)

    db.session.flush()

    if plan.changed:
        write_status_history(
            record_kind=model.record_kind,
            record_id=record.id,
            field_name="acc_data",
            old_value=plan.previous_acc_status,
            new_value=item.status,
            changed_by=SYNC_ACTOR,
            change_reason="ACC sync detected change",
        )
        logger.info(
            "ACC change detected on %s external_id=%s fields=%s",
            model.record_kind, item.external_id, sorted(plan.change_summary),
            extra={"link_id": link.id, "record_id": record.id},
        )

    return MergeResult(
        record=record,
        is_new=plan.is_new,
        changed=plan.changed,
        manual_response_flagged=bool(manual_updates),
    )
