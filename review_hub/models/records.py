"""
ACC Review Hub
External record models — local mirrors of ACC items.

Models:
    - RequestRecord: mirror of one ACC request-for-information
    - SubmittalRecord: mirror of one ACC submittal
    - RecordAssignment: reviewer / QC reviewer assignment on a record
    - RecordComment: internal discussion thread on a record

Requests and submittals share one column layout (ExternalRecordMixin) but
live in separate tables.  Identity is (link_id, external_id); a project
may aggregate several links, so project_id alone is never a key.

Every column belongs to exactly one ownership group:

    EXTERNALLY_OWNED_FIELDS  overwritten verbatim on every sync
    INTERNALLY_OWNED_FIELDS  written by the review workflow only; sync never
                             writes them
    SYNC_METADATA_FIELDS     written by sync only, read by the UI layer

Assignments and comments are separate tables and internally owned by
construction.
"""

from datetime import datetime, timezone

from sqlalchemy.orm import declared_attr

from review_hub.models import db
from review_hub.utils.helpers import load_json

# ── Internal workflow states ─────────────────────────────────────────────────

STATUS_UNASSIGNED = "UNASSIGNED"
STATUS_ASSIGNED_FOR_REVIEW = "ASSIGNED_FOR_REVIEW"
STATUS_UNDER_REVIEW = "UNDER_REVIEW"
STATUS_UNDER_QC = "UNDER_QC"
STATUS_READY_FOR_RESPONSE = "READY_FOR_RESPONSE"
STATUS_SENT_TO_ACC = "SENT_TO_ACC"
STATUS_CLOSED = "CLOSED"

INTERNAL_STATUSES = (
    STATUS_UNASSIGNED,
    STATUS_ASSIGNED_FOR_REVIEW,
    STATUS_UNDER_REVIEW,
    STATUS_UNDER_QC,
    STATUS_READY_FOR_RESPONSE,
    STATUS_SENT_TO_ACC,
    STATUS_CLOSED,
)

# ── Field ownership groups ───────────────────────────────────────────────────

EXTERNALLY_OWNED_FIELDS = frozenset({
    "external_number",
    "title",
    "discipline",
    "spec_section",
    "package_number",
    "acc_status",
    "priority",
    "acc_created_by",
    "acc_assigned_to",
    "acc_due_date",
    "acc_description",
    "acc_contractor_comments",
    "acc_created_at",
    "acc_updated_at",
    "acc_data_hash",
})

INTERNALLY_OWNED_FIELDS = frozenset({
    "internal_status",
    "response_status",
    "response_text",
    "response_sent_at",
    "response_sent_by",
    "review_deadline",
    "qc_deadline",
})

SYNC_METADATA_FIELDS = frozenset({
    "first_seen_at",
    "last_seen_at",
    "has_unacknowledged_change",
    "last_acc_change_at",
    "changes_summary",
    "has_manual_response",
    "manual_response_data",
    "manual_response_detected_at",
    "manual_response_confirmed_at",
    "manual_response_confirmed_by",
})

# Sync may touch only these; anything else in a merge plan is a programming error.
SYNC_WRITABLE_FIELDS = EXTERNALLY_OWNED_FIELDS | SYNC_METADATA_FIELDS - {
    "manual_response_confirmed_at",
    "manual_response_confirmed_by",
}

# Identity columns, set once at creation.
IDENTITY_FIELDS = frozenset({"project_id", "link_id", "external_id"})


def _utcnow():
    return datetime.now(timezone.utc)


# ── Shared column layout ─────────────────────────────────────────────────────


class ExternalRecordMixin:
    """Column layout shared by RequestRecord and SubmittalRecord."""

    record_kind: str = ""
    default_title: str = "Untitled"

    id = db.Column(db.Integer, primary_key=True)

    @declared_attr
    def project_id(cls):
        return db.Column(
            db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"),
            nullable=False, index=True,
        )

    @declared_attr
    def link_id(cls):
        return db.Column(
            db.Integer, db.ForeignKey("external_project_links.id"),
            nullable=False, index=True,
        )

    @declared_attr
    def link(cls):
        return db.relationship("ExternalProjectLink", lazy="joined")

    @declared_attr
    def __table_args__(cls):
        return (
            db.UniqueConstraint("link_id", "external_id", name=f"uq_{cls.__tablename__}_link_external"),
            db.Index(f"ix_{cls.__tablename__}_project_manual", "project_id", "has_manual_response"),
        )

    external_id = db.Column(db.String(100), nullable=False)

    # ── Externally owned ─────────────────────────────────────────────────
    external_number = db.Column(db.String(100), nullable=False)
    title = db.Column(db.String(500), nullable=False)
    discipline = db.Column(db.String(100), nullable=True)
    spec_section = db.Column(db.String(100), nullable=True)
    package_number = db.Column(db.String(100), nullable=True)
    acc_status = db.Column(db.String(50), nullable=True)
    priority = db.Column(db.String(30), nullable=True)
    acc_created_by = db.Column(db.String(200), nullable=True)
    acc_assigned_to = db.Column(db.Text, default="[]", comment="JSON list of assignee ids")
    acc_due_date = db.Column(db.Date, nullable=True)
    acc_description = db.Column(db.Text, nullable=True)
    acc_contractor_comments = db.Column(db.Text, nullable=True)
    acc_created_at = db.Column(db.DateTime(timezone=True), nullable=True)
    acc_updated_at = db.Column(db.DateTime(timezone=True), nullable=True)
    acc_data_hash = db.Column(db.String(64), nullable=True, comment="SHA-256 fingerprint")

    # ── Internally owned ─────────────────────────────────────────────────
    internal_status = db.Column(db.String(30), nullable=False, default=STATUS_UNASSIGNED)
    response_status = db.Column(db.String(50), nullable=True)
    response_text = db.Column(db.Text, nullable=True)
    response_sent_at = db.Column(db.DateTime(timezone=True), nullable=True)
    response_sent_by = db.Column(db.String(100), nullable=True)
    review_deadline = db.Column(db.DateTime(timezone=True), nullable=True)
    qc_deadline = db.Column(db.DateTime(timezone=True), nullable=True)

    # ── Sync metadata ────────────────────────────────────────────────────
    first_seen_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_seen_at = db.Column(db.DateTime(timezone=True), nullable=True)
    has_unacknowledged_change = db.Column(db.Boolean, nullable=False, default=False)
    last_acc_change_at = db.Column(db.DateTime(timezone=True), nullable=True)
    changes_summary = db.Column(db.Text, nullable=True, comment="JSON: {field: {old, new}}")
    has_manual_response = db.Column(db.Boolean, nullable=False, default=False)
    manual_response_data = db.Column(
        db.Text, nullable=True,
        comment="JSON: {status, text, respondedBy, respondedAt, detectedAt}",
    )
    manual_response_detected_at = db.Column(db.DateTime(timezone=True), nullable=True)
    manual_response_confirmed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    manual_response_confirmed_by = db.Column(db.String(100), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def assigned_to(self) -> list:
        return load_json(self.acc_assigned_to, default=[]) or []

    @property
    def changes(self) -> dict:
        return load_json(self.changes_summary, default={}) or {}

    @property
    def ref(self) -> str:
        return f"{self.record_kind}/{self.id}"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.record_kind,
            "project_id": self.project_id,
            "link_id": self.link_id,
            "external_id": self.external_id,
            "external_number": self.external_number,
            "title": self.title,
            "discipline": self.discipline,
            "spec_section": self.spec_section,
            "package_number": self.package_number,
            "acc_status": self.acc_status,
            "priority": self.priority,
            "acc_created_by": self.acc_created_by,
            "acc_assigned_to": self.assigned_to,
            "acc_due_date": self.acc_due_date.isoformat() if self.acc_due_date else None,
            "acc_description": self.acc_description,
            "acc_updated_at": self.acc_updated_at.isoformat() if self.acc_updated_at else None,
            "internal_status": self.internal_status,
            "response_status": self.response_status,
            "response_text": self.response_text,
            "response_sent_at": self.response_sent_at.isoformat() if self.response_sent_at else None,
            "response_sent_by": self.response_sent_by,
            "review_deadline": self.review_deadline.isoformat() if self.review_deadline else None,
            "qc_deadline": self.qc_deadline.isoformat() if self.qc_deadline else None,
            "has_unacknowledged_change": self.has_unacknowledged_change,
            "last_acc_change_at": self.last_acc_change_at.isoformat() if self.last_acc_change_at else None,
            "changes_summary": self.changes,
            "has_manual_response": self.has_manual_response,
            "manual_response": load_json(self.manual_response_data),
            "manual_response_detected_at": (
                self.manual_response_detected_at.isoformat() if self.manual_response_detected_at else None
            ),
            "manual_response_confirmed_at": (
                self.manual_response_confirmed_at.isoformat() if self.manual_response_confirmed_at else None
            ),
            "manual_response_confirmed_by": self.manual_response_confirmed_by,
            "first_seen_at": self.first_seen_at.isoformat() if self.first_seen_at else None,
            "last_seen_at": self.last_seen_at.isoformat() if self.last_seen_at else None,
        }


class RequestRecord(ExternalRecordMixin, db.Model):
    """Local mirror of one ACC request-for-information."""

    __tablename__ = "acc_requests"

    record_kind = "request"
    default_title = "Untitled RFI"

    version_id = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self):
        return f"<RequestRecord {self.id}: {self.external_number}>"


class SubmittalRecord(ExternalRecordMixin, db.Model):
    """Local mirror of one ACC submittal."""

    __tablename__ = "acc_submittals"

    record_kind = "submittal"
    default_title = "Untitled Submittal"

    version_id = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self):
        return f"<SubmittalRecord {self.id}: {self.external_number}>"


RECORD_MODELS = {
    "request": RequestRecord,
    "submittal": SubmittalRecord,
}


# ── Assignment ───────────────────────────────────────────────────────────────

ASSIGNMENT_ROLES = ("REVIEWER", "QC_REVIEWER")


class RecordAssignment(db.Model):
    """Reviewer or QC reviewer assigned to a request/submittal."""

    __tablename__ = "record_assignments"
    __table_args__ = (
        db.UniqueConstraint(
            "record_kind", "record_id", "user_id", "role",
            name="uq_assignment_record_user_role",
        ),
        db.Index("idx_assignment_record", "record_kind", "record_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    record_kind = db.Column(db.String(20), nullable=False, comment="request | submittal")
    record_id = db.Column(db.Integer, nullable=False)
    user_id = db.Column(db.String(100), nullable=False, index=True)
    role = db.Column(db.String(20), nullable=False, comment="REVIEWER | QC_REVIEWER")
    assigned_by = db.Column(db.String(100), nullable=True)
    is_unread = db.Column(db.Boolean, nullable=False, default=True)
    assigned_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "record_kind": self.record_kind,
            "record_id": self.record_id,
            "user_id": self.user_id,
            "role": self.role,
            "assigned_by": self.assigned_by,
            "is_unread": self.is_unread,
            "assigned_at": self.assigned_at.isoformat() if self.assigned_at else None,
        }


# ── Comment ──────────────────────────────────────────────────────────────────


class RecordComment(db.Model):
    """Internal comment on a request/submittal; replies point at parent_id."""

    __tablename__ = "record_comments"
    __table_args__ = (
        db.Index("idx_comment_record", "record_kind", "record_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    record_kind = db.Column(db.String(20), nullable=False)
    record_id = db.Column(db.Integer, nullable=False)
    author_id = db.Column(db.String(100), nullable=False)
    text = db.Column(db.Text, nullable=False)
    parent_id = db.Column(
        db.Integer, db.ForeignKey("record_comments.id", ondelete="CASCADE"), nullable=True,
    )
    mentions = db.Column(db.Text, default="[]", comment="JSON list of mentioned user ids")
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "record_kind": self.record_kind,
            "record_id": self.record_id,
            "author_id": self.author_id,
            "text": self.text,
            "parent_id": self.parent_id,
            "mentions": load_json(self.mentions, default=[]),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
