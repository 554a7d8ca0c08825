"""
Project membership checks.

Usage:
    from review_hub.services.permission import check_can_send

    # Raises PermissionDenied (and logs a warning) if not allowed
    membership = check_can_send(project_id=1, user_id="alice", action="send_response")
"""

import logging

from sqlalchemy import or_

from review_hub.core.exceptions import PermissionDenied
from review_hub.models.project import ROLE_PROJECT_ADMIN, ProjectMembership

logger = logging.getLogger(__name__)


def get_membership(project_id: int, user_id: str) -> ProjectMembership | None:
    if not user_id:
        return None
    return ProjectMembership.query.filter_by(project_id=project_id, user_id=user_id).first()


def require_membership(project_id: int, user_id: str, action: str) -> ProjectMembership:
    """Return the user's membership or raise PermissionDenied."""
    membership = get_membership(project_id, user_id)
    if membership is None:
        logger.warning(
            "Non-member attempted '%s' on project %s", action, project_id,
            extra={"actor": user_id, "project_id": project_id},
        )
        raise PermissionDenied(user_id, action)
    return membership


def check_can_send(project_id: int, user_id: str, action: str) -> ProjectMembership:
    """
    Gate for response dispatch and manual-response confirmation.

    Allowed for PROJECT_ADMIN or any membership with ``can_send_to_acc``.
    """
    membership = require_membership(project_id, user_id, action)
    if membership.is_admin or membership.can_send_to_acc:
        return membership
    logger.warning(
        "Unauthorized '%s' attempt by %s (role=%s) on project %s",
        action, user_id, membership.role, project_id,
        extra={"actor": user_id, "project_id": project_id},
    )
    raise PermissionDenied(user_id, action, membership.role)


def check_can_assign(project_id: int, user_id: str) -> ProjectMembership:
    """Allowed for PROJECT_ADMIN or any membership with ``can_assign``."""
    membership = require_membership(project_id, user_id, "assign")
    if membership.is_admin or membership.can_assign:
        return membership
    logger.warning(
        "Unauthorized assign attempt by %s (role=%s) on project %s",
        user_id, membership.role, project_id,
        extra={"actor": user_id, "project_id": project_id},
    )
    raise PermissionDenied(user_id, "assign", membership.role)


def check_can_edit_settings(project_id: int, user_id: str) -> ProjectMembership:
    """Allowed for PROJECT_ADMIN or any membership with ``can_edit_settings``."""
    membership = require_membership(project_id, user_id, "edit_settings")
    if membership.is_admin or membership.can_edit_settings:
        return membership
    raise PermissionDenied(user_id, "edit_settings", membership.role)


def check_can_manage_jobs(user_id: str, action: str) -> ProjectMembership:
    """
    Gate for the background job endpoints, which span every project.

    Allowed for anyone who is PROJECT_ADMIN or holds ``can_edit_settings``
    on at least one project.
    """
    membership = None
    if user_id:
        membership = ProjectMembership.query.filter(
            ProjectMembership.user_id == user_id,
            or_(ProjectMembership.role == ROLE_PROJECT_ADMIN, ProjectMembership.can_edit_settings.is_(True)),
        ).first()
    if membership is None:
        logger.warning("Unauthorized '%s' attempt on scheduled jobs", action, extra={"actor": user_id})
        raise PermissionDenied(user_id, action)
    return membership
