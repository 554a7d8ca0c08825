"""
ACC Review Hub
Synchronization bookkeeping models.

Models:
    - SyncRunLog: one row per (link, module) sync cycle
    - SyncCursor: per-(project, module) watermark of the last completed cycle
    - Lease: short-lived named lock shared by every process on the database
"""

import json
from datetime import datetime, timezone

from review_hub.models import db

RUN_STARTED = "STARTED"
RUN_COMPLETED = "COMPLETED"
RUN_FAILED = "FAILED"

SYNC_MODULES = ("request", "submittal")
SYNC_TRIGGERS = ("CRON", "MANUAL", "API")


def _utcnow():
    return datetime.now(timezone.utc)


class SyncRunLog(db.Model):
    """
    Outcome of one module-sync cycle.

    Created in STARTED state before the first external call and closed
    exactly once as COMPLETED or FAILED.
    """

    __tablename__ = "sync_run_logs"
    __table_args__ = (
        db.Index("idx_sync_log_project_module", "project_id", "module"),
        db.Index("idx_sync_log_started", "started_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False,
    )
    link_id = db.Column(
        db.Integer, db.ForeignKey("external_project_links.id", ondelete="SET NULL"), nullable=True,
    )
    module = db.Column(db.String(20), nullable=False, comment="request | submittal")
    status = db.Column(db.String(20), nullable=False, default=RUN_STARTED)
    triggered_by = db.Column(db.String(20), nullable=False, default="MANUAL")

    items_processed = db.Column(db.Integer, default=0)
    new_items = db.Column(db.Integer, default=0)
    updated_items = db.Column(db.Integer, default=0)
    errors = db.Column(db.Text, default="[]", comment="JSON list of error strings")
    duration_ms = db.Column(db.Integer, nullable=True)

    started_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    @property
    def error_list(self) -> list:
        try:
            return json.loads(self.errors or "[]")
        except (json.JSONDecodeError, TypeError):
            return []

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "link_id": self.link_id,
            "module": self.module,
            "status": self.status,
            "triggered_by": self.triggered_by,
            "items_processed": self.items_processed,
            "new_items": self.new_items,
            "updated_items": self.updated_items,
            "errors": self.error_list,
            "duration_ms": self.duration_ms,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }

    def __repr__(self):
        return f"<SyncRunLog {self.id}: {self.module} [{self.status}]>"


class SyncCursor(db.Model):
    """Watermark of the last completed sync cycle for a (project, module) pair."""

    __tablename__ = "sync_cursors"
    __table_args__ = (
        db.UniqueConstraint("project_id", "module", name="uq_sync_cursor_project_module"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False,
    )
    module = db.Column(db.String(20), nullable=False)
    last_seen_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_run_id = db.Column(db.Integer, nullable=True)
    items_seen = db.Column(db.Integer, default=0)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    def to_dict(self):
        return {
            "project_id": self.project_id,
            "module": self.module,
            "last_seen_at": self.last_seen_at.isoformat() if self.last_seen_at else None,
            "last_run_id": self.last_run_id,
            "items_seen": self.items_seen,
        }


class Lease(db.Model):
    """
    Named lock row.  A lease is held while ``expires_at`` lies in the future;
    an expired lease may be taken over by any holder.
    """

    __tablename__ = "leases"

    id = db.Column(db.Integer, primary_key=True)
    lease_key = db.Column(db.String(200), unique=True, nullable=False)
    holder = db.Column(db.String(100), nullable=False)
    acquired_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False)

    def __repr__(self):
        return f"<Lease {self.lease_key} held by {self.holder}>"
