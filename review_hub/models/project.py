"""
ACC Review Hub
Project domain models.

Models:
    - Project: internal project aggregating one or more ACC project links
    - ProjectMembership: a user's role and permission flags on a project
    - ExternalProjectLink: binding between a Project and one ACC project
"""

from datetime import datetime, timezone

from review_hub.models import db
from review_hub.utils.helpers import load_json

# ── Membership roles ─────────────────────────────────────────────────────────

ROLE_PROJECT_ADMIN = "PROJECT_ADMIN"
ROLE_REVIEWER = "REVIEWER"
ROLE_QC_REVIEWER = "QC_REVIEWER"
ROLE_VIEWER = "VIEWER"

PROJECT_ROLES = (ROLE_PROJECT_ADMIN, ROLE_REVIEWER, ROLE_QC_REVIEWER, ROLE_VIEWER)


def _utcnow():
    return datetime.now(timezone.utc)


# ── Project ──────────────────────────────────────────────────────────────────


class Project(db.Model):
    """
    Internal project.  Owns review workflow settings and aggregates any
    number of ACC project links.
    """

    __tablename__ = "projects"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")

    # Network share holding the per-item folders that responses attach from
    network_base_path = db.Column(db.String(500), nullable=True)
    is_network_path_valid = db.Column(db.Boolean, default=False)
    last_path_check_at = db.Column(db.DateTime(timezone=True), nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    sync_enabled = db.Column(db.Boolean, nullable=False, default=True)
    sync_interval_minutes = db.Column(db.Integer, default=2)
    last_sync_at = db.Column(db.DateTime(timezone=True), nullable=True)

    deadline_rules = db.Column(
        db.Text, nullable=True,
        comment='JSON: {"high": {"reviewPercent": 40, "qcPercent": 70}, ...}',
    )

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    # ── Relationships ────────────────────────────────────────────────────
    links = db.relationship(
        "ExternalProjectLink", backref="project", lazy="select",
        order_by="ExternalProjectLink.id",
    )
    memberships = db.relationship(
        "ProjectMembership", backref="project", lazy="dynamic",
        cascade="all, delete-orphan",
    )

    @property
    def deadline_rules_dict(self) -> dict:
        return load_json(self.deadline_rules, default={}) or {}

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "network_base_path": self.network_base_path,
            "is_network_path_valid": self.is_network_path_valid,
            "is_active": self.is_active,
            "sync_enabled": self.sync_enabled,
            "sync_interval_minutes": self.sync_interval_minutes,
            "last_sync_at": self.last_sync_at.isoformat() if self.last_sync_at else None,
            "deadline_rules": self.deadline_rules_dict,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Project {self.id}: {self.name}>"


# ── ProjectMembership ────────────────────────────────────────────────────────


class ProjectMembership(db.Model):
    """A user's role on a project plus explicit capability flags."""

    __tablename__ = "project_memberships"
    __table_args__ = (
        db.UniqueConstraint("project_id", "user_id", name="uq_membership_project_user"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    user_id = db.Column(db.String(100), nullable=False, index=True)
    role = db.Column(
        db.String(20), nullable=False, default=ROLE_VIEWER,
        comment="PROJECT_ADMIN | REVIEWER | QC_REVIEWER | VIEWER",
    )
    can_assign = db.Column(db.Boolean, nullable=False, default=False)
    can_send_to_acc = db.Column(db.Boolean, nullable=False, default=False)
    can_edit_settings = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_PROJECT_ADMIN

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "user_id": self.user_id,
            "role": self.role,
            "can_assign": self.can_assign,
            "can_send_to_acc": self.can_send_to_acc,
            "can_edit_settings": self.can_edit_settings,
        }

    def __repr__(self):
        return f"<ProjectMembership {self.user_id}@{self.project_id} [{self.role}]>"


# ── ExternalProjectLink ──────────────────────────────────────────────────────


class ExternalProjectLink(db.Model):
    """
    Binding between one internal Project and one ACC project instance.

    Deletion is refused while any Request or Submittal references the link
    (see project_service.remove_link).
    """

    __tablename__ = "external_project_links"
    __table_args__ = (
        db.UniqueConstraint("project_id", "acc_project_id", name="uq_link_project_acc_project"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    acc_project_id = db.Column(db.String(100), nullable=False)
    acc_hub_id = db.Column(db.String(100), nullable=True)
    acc_project_name = db.Column(db.String(200), default="", comment="Display name")
    folder_name = db.Column(
        db.String(200), default="",
        comment="Sub-folder of the project network share for this link",
    )
    encrypted_token = db.Column(db.Text, nullable=True, comment="Fernet-encrypted bearer token")

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    sync_requests = db.Column(db.Boolean, nullable=False, default=True)
    sync_submittals = db.Column(db.Boolean, nullable=False, default=True)

    last_sync_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_sync_status = db.Column(
        db.String(20), nullable=True,
        comment="success | partial | failed",
    )
    last_sync_error = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    def module_enabled(self, module: str) -> bool:
        """Return True if syncing *module* ('request' | 'submittal') is switched on."""
        if module == "request":
            return bool(self.sync_requests)
        if module == "submittal":
            return bool(self.sync_submittals)
        return False

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "acc_project_id": self.acc_project_id,
            "acc_hub_id": self.acc_hub_id,
            "acc_project_name": self.acc_project_name,
            "folder_name": self.folder_name,
            "has_token": bool(self.encrypted_token),
            "is_active": self.is_active,
            "sync_requests": self.sync_requests,
            "sync_submittals": self.sync_submittals,
            "last_sync_at": self.last_sync_at.isoformat() if self.last_sync_at else None,
            "last_sync_status": self.last_sync_status,
            "last_sync_error": self.last_sync_error,
        }

    def __repr__(self):
        return f"<ExternalProjectLink {self.id}: {self.acc_project_id} → project {self.project_id}>"
