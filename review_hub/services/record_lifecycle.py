"""
Record Lifecycle Service

Internal review workflow on requests and submittals:
  - Status transitions (STATUS_TRANSITIONS + role rules)
  - Assignment of reviewers / QC reviewers with deadline calculation
  - Acknowledgement of ACC changes (the only path that clears the flag)
  - Comments with @mentions
  - Status history

Workflow:
    UNASSIGNED → ASSIGNED_FOR_REVIEW → UNDER_REVIEW → UNDER_QC
      → READY_FOR_RESPONSE → SENT_TO_ACC → CLOSED

Every forward step except SENT_TO_ACC → CLOSED may also step back once.
CLOSED is terminal.  Manual-response confirmation is the only path that
jumps straight to CLOSED (see response_service).

Usage:
    from review_hub.services.record_lifecycle import transition_status

    record = transition_status("request", 12, "UNDER_REVIEW", user_id="alice")
"""

import json
import logging
import re
from datetime import datetime, time, timezone

from flask import current_app

from review_hub.core.exceptions import (
    ConflictError,
    InvalidTransitionError,
    PermissionDenied,
    ValidationError,
)
from review_hub.models import db
from review_hub.models.audit import StatusHistory, write_status_history
from review_hub.models.project import (
    ROLE_QC_REVIEWER,
    ROLE_REVIEWER,
    ROLE_VIEWER,
    Project,
)
from review_hub.models.records import (
    ASSIGNMENT_ROLES,
    INTERNAL_STATUSES,
    STATUS_ASSIGNED_FOR_REVIEW,
    STATUS_CLOSED,
    STATUS_READY_FOR_RESPONSE,
    STATUS_SENT_TO_ACC,
    STATUS_UNASSIGNED,
    STATUS_UNDER_QC,
    STATUS_UNDER_REVIEW,
    RecordAssignment,
    RecordComment,
)
from review_hub.services.helpers.records import get_record
from review_hub.services.permission import check_can_assign, get_membership, require_membership
from review_hub.utils.helpers import as_utc, utcnow

logger = logging.getLogger(__name__)


STATUS_TRANSITIONS = {
    STATUS_UNASSIGNED: [STATUS_ASSIGNED_FOR_REVIEW],
    STATUS_ASSIGNED_FOR_REVIEW: [STATUS_UNDER_REVIEW, STATUS_UNASSIGNED],
    STATUS_UNDER_REVIEW: [STATUS_UNDER_QC, STATUS_ASSIGNED_FOR_REVIEW],
    STATUS_UNDER_QC: [STATUS_READY_FOR_RESPONSE, STATUS_UNDER_REVIEW],
    STATUS_READY_FOR_RESPONSE: [STATUS_SENT_TO_ACC, STATUS_UNDER_QC],
    STATUS_SENT_TO_ACC: [STATUS_CLOSED],
    STATUS_CLOSED: [],
}

# Targets each role may never move a record into
_ROLE_BLOCKED_TARGETS = {
    ROLE_REVIEWER: {STATUS_SENT_TO_ACC, STATUS_CLOSED},
    ROLE_QC_REVIEWER: {STATUS_SENT_TO_ACC, STATUS_CLOSED},
}

_MENTION_RE = re.compile(r"@([A-Za-z0-9_.\-]+)")


# ═════════════════════════════════════════════════════════════════════════════
# Transitions
# ═════════════════════════════════════════════════════════════════════════════


def role_allows(role: str, target: str) -> bool:
    if role == ROLE_VIEWER:
        return False
    return target not in _ROLE_BLOCKED_TARGETS.get(role, set())


def can_transition(current: str, target: str, role: str) -> bool:
    """True if *role* may move a record from *current* to *target*."""
    if target not in STATUS_TRANSITIONS.get(current, []):
        return False
    return role_allows(role, target)


def validate_transition(current: str, target: str, role: str) -> dict:
    """
    Returns:
        {"valid": bool, "from": str, "to": str, "reason": str|None, "forbidden": bool}
    """
    if target not in INTERNAL_STATUSES:
        return {"valid": False, "from": current, "to": target,
                "reason": f"Unknown status: {target}", "forbidden": False}
    if target not in STATUS_TRANSITIONS.get(current, []):
        return {"valid": False, "from": current, "to": target,
                "reason": f"'{target}' is not reachable from '{current}'", "forbidden": False}
    if not role_allows(role, target):
        return {"valid": False, "from": current, "to": target,
                "reason": f"Role {role} may not move records to '{target}'", "forbidden": True}
    return {"valid": True, "from": current, "to": target, "reason": None, "forbidden": False}


def get_available_transitions(record, role: str) -> list[str]:
    return [t for t in STATUS_TRANSITIONS.get(record.internal_status, []) if role_allows(role, t)]


def apply_forced_status(record, new_status: str, changed_by: str, reason: str | None = None) -> None:
    """Set internal_status bypassing the transition table and append history (no commit)."""
    old_status = record.internal_status
    if old_status == new_status:
        return
    record.internal_status = new_status
    write_status_history(
        record_kind=record.record_kind,
        record_id=record.id,
        field_name="internal_status",
        old_value=old_status,
        new_value=new_status,
        changed_by=changed_by,
        change_reason=reason,
    )


def transition_status(
    kind: str,
    record_id: int,
    new_status: str,
    user_id: str,
    *,
    reason: str | None = None,
) -> dict:
    """
    Move a record to *new_status* on behalf of *user_id*.

    Raises:
        NotFoundError: Record missing.
        PermissionDenied: Not a member, or role may not reach *new_status*.
        ValidationError: Unknown status.
        InvalidTransitionError: *new_status* not reachable from the current one.
    """
    record = get_record(kind, record_id)
    membership = require_membership(record.project_id, user_id, "transition_status")

    check = validate_transition(record.internal_status, new_status, membership.role)
    if not check["valid"]:
        if new_status not in INTERNAL_STATUSES:
            raise ValidationError(check["reason"], details={"status": new_status})
        if check["forbidden"]:
            logger.warning(
                "Transition %s → %s refused for %s (role=%s) on %s",
                record.internal_status, new_status, user_id, membership.role, record.ref,
                extra={"actor": user_id, "record_id": record.id},
            )
            raise PermissionDenied(user_id, f"transition to {new_status}", membership.role)
        raise InvalidTransitionError(record.internal_status, new_status, check["reason"])

    apply_forced_status(record, new_status, user_id, reason)
    db.session.commit()
    logger.info("%s moved %s → %s by %s", record.ref, check["from"], new_status, user_id)
    return record.to_dict()


# ═════════════════════════════════════════════════════════════════════════════
# Assignment & deadlines
# ═════════════════════════════════════════════════════════════════════════════


def _deadline_percents(project: Project, priority: str | None) -> tuple[int, int]:
    review_pct = current_app.config.get("DEFAULT_REVIEW_PERCENT", 50)
    qc_pct = current_app.config.get("DEFAULT_QC_PERCENT", 75)
    if priority:
        rule = project.deadline_rules_dict.get(priority.lower())
        if isinstance(rule, dict):
            review_pct = rule.get("reviewPercent") or review_pct
            qc_pct = rule.get("qcPercent") or qc_pct
    return int(review_pct), int(qc_pct)


def compute_deadlines(project: Project, due_date, priority: str | None, now: datetime | None = None):
    """
    Review / QC deadlines as a share of the time left until *due_date*.

    Returns (review_deadline, qc_deadline), both None without a due date.
    """
    if due_date is None:
        return None, None
    now = now or utcnow()
    due = datetime.combine(due_date, time.min, tzinfo=timezone.utc)
    total = due - as_utc(now)
    review_pct, qc_pct = _deadline_percents(project, priority)
    return now + total * (review_pct / 100), now + total * (qc_pct / 100)


def assign_record(
    kind: str,
    record_id: int,
    assignee_user_id: str,
    role: str,
    assigned_by: str,
) -> dict:
    """
    Assign a reviewer or QC reviewer.

    Creates (or re-flags as unread) the assignment, recalculates review/QC
    deadlines from the ACC due date and forces ASSIGNED_FOR_REVIEW.
    """
    if role not in ASSIGNMENT_ROLES:
        raise ValidationError(
            f"Invalid assignment role: {role}",
            details={"role": f"must be one of {list(ASSIGNMENT_ROLES)}"},
        )
    if not assignee_user_id:
        raise ValidationError("user_id is required", details={"user_id": "required"})

    record = get_record(kind, record_id)
    check_can_assign(record.project_id, assigned_by)

    if get_membership(record.project_id, assignee_user_id) is None:
        raise ValidationError(
            f"User {assignee_user_id} is not a member of this project",
            details={"user_id": "not a project member"},
        )
    if record.internal_status == STATUS_CLOSED:
        raise ConflictError(f"{record.ref} is closed and cannot be reassigned", resource=kind)

    assignment = RecordAssignment.query.filter_by(
        record_kind=kind, record_id=record.id, user_id=assignee_user_id, role=role,
    ).first()
    if assignment is None:
        assignment = RecordAssignment(
            record_kind=kind, record_id=record.id, user_id=assignee_user_id, role=role,
        )
        db.session.add(assignment)
    assignment.assigned_by = assigned_by
    assignment.assigned_at = utcnow()
    assignment.is_unread = True

    project = db.session.get(Project, record.project_id)
    review_deadline, qc_deadline = compute_deadlines(project, record.acc_due_date, record.priority)
    record.review_deadline = review_deadline
    record.qc_deadline = qc_deadline

    apply_forced_status(record, STATUS_ASSIGNED_FOR_REVIEW, assigned_by, f"Assigned {role}")
    write_status_history(
        record_kind=kind,
        record_id=record.id,
        field_name="assignment",
        old_value=None,
        new_value=f"{role}: {assignee_user_id}",
        changed_by=assigned_by,
    )
    db.session.commit()

    logger.info("%s assigned to %s as %s by %s", record.ref, assignee_user_id, role, assigned_by)
    return {"assignment": assignment.to_dict(), "record": record.to_dict()}


def mark_assignment_read(kind: str, record_id: int, user_id: str) -> int:
    """Mark the user's unread assignments on a record as read. Returns rows touched."""
    record = get_record(kind, record_id)
    assignments = RecordAssignment.query.filter_by(
        record_kind=kind, record_id=record.id, user_id=user_id, is_unread=True,
    ).all()
    for assignment in assignments:
        assignment.is_unread = False
    db.session.commit()
    return len(assignments)


def list_assignments(kind: str, record_id: int) -> list[dict]:
    record = get_record(kind, record_id)
    rows = (
        RecordAssignment.query
        .filter_by(record_kind=kind, record_id=record.id)
        .order_by(RecordAssignment.assigned_at)
        .all()
    )
    return [a.to_dict() for a in rows]


# ═════════════════════════════════════════════════════════════════════════════
# Change acknowledgement
# ═════════════════════════════════════════════════════════════════════════════


def acknowledge_change(kind: str, record_id: int, user_id: str) -> dict:
    """Clear ``has_unacknowledged_change``. Idempotent."""
    record = get_record(kind, record_id)
    require_membership(record.project_id, user_id, "acknowledge_change")
    if record.has_unacknowledged_change:
        record.has_unacknowledged_change = False
        db.session.commit()
        logger.info("ACC change on %s acknowledged by %s", record.ref, user_id)
    return record.to_dict()


# ═════════════════════════════════════════════════════════════════════════════
# Comments
# ═════════════════════════════════════════════════════════════════════════════


def extract_mentions(text: str) -> list[str]:
    seen = []
    for user_id in _MENTION_RE.findall(text or ""):
        if user_id not in seen:
            seen.append(user_id)
    return seen


def add_comment(kind: str, record_id: int, author_id: str, text: str, parent_id: int | None = None) -> dict:
    if not text or not text.strip():
        raise ValidationError("Comment text is required", details={"text": "required"})

    record = get_record(kind, record_id)
    require_membership(record.project_id, author_id, "comment")

    if parent_id is not None:
        parent = db.session.get(RecordComment, parent_id)
        if parent is None or parent.record_kind != kind or parent.record_id != record.id:
            raise ValidationError("Parent comment not found on this record", details={"parent_id": parent_id})

    comment = RecordComment(
        record_kind=kind,
        record_id=record.id,
        author_id=author_id,
        text=text.strip(),
        parent_id=parent_id,
        mentions=json.dumps(extract_mentions(text)),
    )
    db.session.add(comment)
    db.session.commit()
    return comment.to_dict()


def list_comments(kind: str, record_id: int) -> list[dict]:
    record = get_record(kind, record_id)
    rows = (
        RecordComment.query
        .filter_by(record_kind=kind, record_id=record.id)
        .order_by(RecordComment.created_at, RecordComment.id)
        .all()
    )
    return [c.to_dict() for c in rows]


# ═════════════════════════════════════════════════════════════════════════════
# History
# ═════════════════════════════════════════════════════════════════════════════


def get_status_history(kind: str, record_id: int) -> list[dict]:
    record = get_record(kind, record_id)
    rows = (
        StatusHistory.query
        .filter_by(record_kind=kind, record_id=record.id)
        .order_by(StatusHistory.created_at.desc(), StatusHistory.id.desc())
        .all()
    )
    return [h.to_dict() for h in rows]
