"""
ACC Review Hub
Audit domain models.

Models:
    - AuditLog: immutable, append-only trail of sensitive actions
      (response dispatch, dispatch failure, manual-response confirmation)
    - StatusHistory: append-only log of internal-status / response-status
      field transitions; sync-caused rows carry actor "sync"

Both tables reject UPDATE and DELETE at the mapper level.
"""

import json
from datetime import UTC, datetime

from sqlalchemy import event

from review_hub.models import db

# ── Constants ────────────────────────────────────────────────────────────────

ACTION_SEND = "send"
ACTION_SEND_FAILED = "send-failed"
ACTION_CONFIRM_MANUAL = "confirm-manual"

AUDIT_ACTIONS = {ACTION_SEND, ACTION_SEND_FAILED, ACTION_CONFIRM_MANUAL}

SYNC_ACTOR = "sync"


class AuditLog(db.Model):
    """
    Immutable audit trail for dispatch and confirmation events.

    One row per action.  ``detail_json`` carries the action-specific payload
    (response status + file names for a send, captured response for a
    confirmation, error text for a failed send).
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_project", "project_id"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer,
        db.ForeignKey("projects.id", ondelete="SET NULL"),
        nullable=True,
    )

    # Polymorphic entity reference
    entity_type = db.Column(
        db.String(30), nullable=False,
        comment="request | submittal",
    )
    entity_id = db.Column(db.String(36), nullable=False)

    action = db.Column(
        db.String(30), nullable=False,
        comment="send | send-failed | confirm-manual",
    )
    actor = db.Column(db.String(150), nullable=False, default="system")

    detail_json = db.Column(db.Text, default="{}")

    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    @property
    def detail(self) -> dict:
        """Deserialise *detail_json* to a Python dict."""
        try:
            return json.loads(self.detail_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor": self.actor,
            "detail": self.detail,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


class StatusHistory(db.Model):
    """One field transition on a request/submittal."""

    __tablename__ = "status_history"
    __table_args__ = (
        db.Index("idx_history_record", "record_kind", "record_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    record_kind = db.Column(db.String(20), nullable=False)
    record_id = db.Column(db.Integer, nullable=False)
    field_name = db.Column(
        db.String(50), nullable=False,
        comment="internal_status | response_status | acc_data",
    )
    old_value = db.Column(db.String(200), nullable=True)
    new_value = db.Column(db.String(200), nullable=True)
    changed_by = db.Column(db.String(150), nullable=False)
    change_reason = db.Column(db.String(500), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    @property
    def is_sync(self) -> bool:
        return self.changed_by == SYNC_ACTOR

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "record_kind": self.record_kind,
            "record_id": self.record_id,
            "field_name": self.field_name,
            "old_value": self.old_value,
            "new_value": self.new_value,
            "changed_by": self.changed_by,
            "change_reason": self.change_reason,
            "is_sync": self.is_sync,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return (
            f"<StatusHistory {self.record_kind}/{self.record_id} "
            f"{self.field_name}: {self.old_value} → {self.new_value}>"
        )


# ── Append-only enforcement ──────────────────────────────────────────────────


def _reject_mutation(mapper, connection, target):
    raise RuntimeError(f"{type(target).__name__} rows are append-only")


for _model in (AuditLog, StatusHistory):
    event.listen(_model, "before_update", _reject_mutation)
    event.listen(_model, "before_delete", _reject_mutation)


# ── Convenience writers ──────────────────────────────────────────────────────


def write_audit(
    *,
    entity_type: str,
    entity_id,
    action: str,
    actor: str = "system",
    project_id: int | None = None,
    detail: dict | None = None,
) -> AuditLog:
    """
    Append a single audit row.  Uses ``flush`` so callers keep
    transaction control.
    """
    log = AuditLog(
        project_id=project_id,
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor=actor,
        detail_json=json.dumps(detail or {}, default=str),
    )
    db.session.add(log)
    db.session.flush()
    return log


def write_status_history(
    *,
    record_kind: str,
    record_id: int,
    field_name: str,
    old_value,
    new_value,
    changed_by: str,
    change_reason: str | None = None,
) -> StatusHistory:
    """Append one history row (flush only)."""
    entry = StatusHistory(
        record_kind=record_kind,
        record_id=record_id,
        field_name=field_name,
        old_value=None if old_value is None else str(old_value),
        new_value=None if new_value is None else str(new_value),
        changed_by=changed_by,
        change_reason=change_reason,
    )
    db.session.add(entry)
    db.session.flush()
    return entry
