"""Project, membership and ACC link administration."""

from __future__ import annotations

import json
import logging

from sqlalchemy import func, select

from review_hub.core.exceptions import ConflictError, NotFoundError, ValidationError
from review_hub.integrations.file_share import validate_network_path
from review_hub.models import db
from review_hub.models.project import (
    PROJECT_ROLES,
    ROLE_PROJECT_ADMIN,
    ROLE_VIEWER,
    ExternalProjectLink,
    Project,
    ProjectMembership,
)
from review_hub.models.records import RECORD_MODELS
from review_hub.utils.crypto import encrypt_secret
from review_hub.utils.helpers import utcnow

logger = logging.getLogger(__name__)

_MEMBER_FLAGS = ("can_assign", "can_send_to_acc", "can_edit_settings")


# ── Projects ─────────────────────────────────────────────────────────────────


def get_project(project_id: int) -> Project:
    project = db.session.get(Project, project_id)
    if project is None:
        raise NotFoundError(resource="Project", resource_id=project_id)
    return project


def list_projects(user_id: str | None = None) -> list[dict]:
    """All projects, or only those *user_id* is a member of."""
    query = Project.query
    if user_id:
        query = query.join(ProjectMembership).filter(ProjectMembership.user_id == user_id)
    return [p.to_dict() for p in query.order_by(Project.name).all()]


def _validate_deadline_rules(rules) -> str | None:
    if rules is None:
        return None
    if not isinstance(rules, dict):
        raise ValidationError("deadline_rules must be an object", details={"deadline_rules": "invalid"})
    for priority, rule in rules.items():
        if not isinstance(rule, dict):
            raise ValidationError(
                f"deadline_rules.{priority} must be an object",
                details={"deadline_rules": priority},
            )
        for key in ("reviewPercent", "qcPercent"):
            value = rule.get(key)
            if value is not None and (not isinstance(value, int) or not 0 < value <= 100):
                raise ValidationError(
                    f"deadline_rules.{priority}.{key} must be an integer between 1 and 100",
                    details={"deadline_rules": f"{priority}.{key}"},
                )
    return json.dumps({str(k).lower(): v for k, v in rules.items()})


def _apply_network_path(project: Project, path: str | None) -> None:
    project.network_base_path = path or None
    project.is_network_path_valid = validate_network_path(path) if path else False
    project.last_path_check_at = utcnow()


def create_project(data: dict, creator_user_id: str) -> dict:
    """Create a project; the creator becomes PROJECT_ADMIN with every flag."""
    name = str(data.get("name", "") or "").strip()
    if not name:
        raise ValidationError("name is required", details={"name": "required"})
    if not creator_user_id:
        raise ValidationError("creator user id is required", details={"user_id": "required"})

    project = Project(
        name=name,
        description=data.get("description", "") or "",
        sync_enabled=bool(data.get("sync_enabled", True)),
        sync_interval_minutes=int(data.get("sync_interval_minutes", 2) or 2),
        deadline_rules=_validate_deadline_rules(data.get("deadline_rules")),
    )
    _apply_network_path(project, data.get("network_base_path"))
    db.session.add(project)
    db.session.flush()

    db.session.add(ProjectMembership(
        project_id=project.id,
        user_id=creator_user_id,
        role=ROLE_PROJECT_ADMIN,
        can_assign=True,
        can_send_to_acc=True,
        can_edit_settings=True,
    ))
    db.session.commit()

    logger.info("Project %s created by %s", project.id, creator_user_id,
                extra={"project_id": project.id, "actor": creator_user_id})
    return project.to_dict()


def update_project(project_id: int, data: dict) -> dict:
    project = get_project(project_id)

    if "name" in data:
        name = str(data.get("name") or "").strip()
        if not name:
            raise ValidationError("name cannot be empty", details={"name": "required"})
        project.name = name
    if "description" in data:
        project.description = data.get("description") or ""
    for flag in ("is_active", "sync_enabled"):
        if flag in data:
            setattr(project, flag, bool(data[flag]))
    if "sync_interval_minutes" in data:
        project.sync_interval_minutes = int(data["sync_interval_minutes"])
    if "deadline_rules" in data:
        project.deadline_rules = _validate_deadline_rules(data["deadline_rules"])
    if "network_base_path" in data:
        _apply_network_path(project, data["network_base_path"])

    db.session.commit()
    return project.to_dict()


# ── Members ──────────────────────────────────────────────────────────────────


def _flags_for(role: str, data: dict) -> dict:
    is_admin = role == ROLE_PROJECT_ADMIN
    return {flag: bool(data.get(flag, is_admin)) for flag in _MEMBER_FLAGS}


def _check_role(role: str) -> None:
    if role not in PROJECT_ROLES:
        raise ValidationError(
            f"Invalid role: {role}", details={"role": f"must be one of {list(PROJECT_ROLES)}"},
        )


def list_members(project_id: int) -> list[dict]:
    project = get_project(project_id)
    return [m.to_dict() for m in project.memberships.order_by(ProjectMembership.id).all()]


def add_member(project_id: int, data: dict) -> dict:
    get_project(project_id)
    user_id = str(data.get("user_id", "") or "").strip()
    if not user_id:
        raise ValidationError("user_id is required", details={"user_id": "required"})
    role = data.get("role", ROLE_VIEWER)
    _check_role(role)

    if ProjectMembership.query.filter_by(project_id=project_id, user_id=user_id).first():
        raise ConflictError(
            f"User {user_id} is already a member of this project",
            resource="ProjectMembership", field="user_id", value=user_id,
        )

    membership = ProjectMembership(project_id=project_id, user_id=user_id, role=role, **_flags_for(role, data))
    db.session.add(membership)
    db.session.commit()
    return membership.to_dict()


def _get_membership(project_id: int, user_id: str) -> ProjectMembership:
    membership = ProjectMembership.query.filter_by(project_id=project_id, user_id=user_id).first()
    if membership is None:
        raise NotFoundError(resource="ProjectMembership", resource_id=user_id)
    return membership


def update_member(project_id: int, user_id: str, data: dict) -> dict:
    membership = _get_membership(project_id, user_id)
    if "role" in data:
        _check_role(data["role"])
        membership.role = data["role"]
    for flag in _MEMBER_FLAGS:
        if flag in data:
            setattr(membership, flag, bool(data[flag]))
    db.session.commit()
    return membership.to_dict()


def remove_member(project_id: int, user_id: str) -> None:
    membership = _get_membership(project_id, user_id)
    if membership.is_admin:
        admins = ProjectMembership.query.filter_by(project_id=project_id, role=ROLE_PROJECT_ADMIN).count()
        if admins <= 1:
            raise ConflictError("Cannot remove the last project admin", resource="ProjectMembership")
    db.session.delete(membership)
    db.session.commit()


# ── ACC links ────────────────────────────────────────────────────────────────


def get_link(link_id: int) -> ExternalProjectLink:
    link = db.session.get(ExternalProjectLink, link_id)
    if link is None:
        raise NotFoundError(resource="ExternalProjectLink", resource_id=link_id)
    return link


def count_link_records(link_id: int) -> dict:
    counts = {}
    for kind, model in RECORD_MODELS.items():
        counts[kind] = db.session.execute(
            select(func.count()).select_from(model).where(model.link_id == link_id)
        ).scalar_one()
    return counts


def list_links(project_id: int) -> list[dict]:
    project = get_project(project_id)
    return [{**link.to_dict(), "record_counts": count_link_records(link.id)} for link in project.links]


def add_link(project_id: int, data: dict) -> dict:
    get_project(project_id)
    acc_project_id = str(data.get("acc_project_id", "") or "").strip()
    if not acc_project_id:
        raise ValidationError("acc_project_id is required", details={"acc_project_id": "required"})

    if ExternalProjectLink.query.filter_by(project_id=project_id, acc_project_id=acc_project_id).first():
        raise ConflictError(
            f"ACC project {acc_project_id} is already linked to this project",
            resource="ExternalProjectLink", field="acc_project_id", value=acc_project_id,
        )

    token = data.get("access_token")
    link = ExternalProjectLink(
        project_id=project_id,
        acc_project_id=acc_project_id,
        acc_hub_id=data.get("acc_hub_id"),
        acc_project_name=data.get("acc_project_name", "") or "",
        folder_name=data.get("folder_name", "") or "",
        encrypted_token=encrypt_secret(token) if token else None,
        sync_requests=bool(data.get("sync_requests", True)),
        sync_submittals=bool(data.get("sync_submittals", True)),
    )
    db.session.add(link)
    db.session.commit()
    logger.info("ACC project %s linked", acc_project_id, extra={"project_id": project_id, "link_id": link.id})
    return link.to_dict()


def update_link(link_id: int, data: dict) -> dict:
    link = get_link(link_id)
    for field in ("acc_project_name", "folder_name", "acc_hub_id"):
        if field in data:
            setattr(link, field, data[field] or "")
    for flag in ("is_active", "sync_requests", "sync_submittals"):
        if flag in data:
            setattr(link, flag, bool(data[flag]))
    if data.get("access_token"):
        link.encrypted_token = encrypt_secret(data["access_token"])
    db.session.commit()
    return link.to_dict()


def remove_link(link_id: int) -> None:
    """Delete a link.  Refused while any request or submittal references it."""
    link = get_link(link_id)
    counts = count_link_records(link_id)
    if any(counts.values()):
        raise ConflictError(
            f"Cannot remove link {link_id}: {counts['request']} requests and "
            f"{counts['submittal']} submittals still reference it",
            resource="ExternalProjectLink",
        )
    db.session.delete(link)
    db.session.commit()
    logger.info("ACC link %s removed", link_id, extra={"link_id": link_id})
