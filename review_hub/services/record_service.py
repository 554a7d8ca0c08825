"""
Record Service

Read side of the review workflow: the per-project record list, a single
record with its assignments and comment thread, and the caller's own
open assignments.

Ordering follows the review desk: records with an unacknowledged ACC
change come first, then the earliest ACC due date (undated last), then
the newest.  Closed records are hidden unless ``show_closed`` is set.

Usage:
    from review_hub.services.record_service import list_records

    page = list_records(3, "request", {"status": "UNDER_REVIEW", "search": "beam"})
"""

import logging

from sqlalchemy import or_, select

from review_hub.core.exceptions import ValidationError
from review_hub.models import db
from review_hub.models.project import Project
from review_hub.models.records import (
    INTERNAL_STATUSES,
    RECORD_MODELS,
    STATUS_CLOSED,
    RecordAssignment,
    RecordComment,
)
from review_hub.services.helpers.records import get_record, record_model
from review_hub.services.record_lifecycle import get_available_transitions
from review_hub.utils.helpers import as_utc

logger = logging.getLogger(__name__)

MAX_PER_PAGE = 200


def _assigned_to(kind: str, user_id: str, model):
    return model.id.in_(
        select(RecordAssignment.record_id).where(
            RecordAssignment.record_kind == kind,
            RecordAssignment.user_id == user_id,
        )
    )


def list_records(project_id: int, kind: str, filters: dict | None = None) -> dict:
    """List one kind of record in a project with filtering and pagination.

    Args:
        project_id: Owning project.
        kind: 'request' or 'submittal'.
        filters: Parsed query parameters: status, priority, link_id,
            assigned_to, unacknowledged, show_closed, search, page, per_page.

    Returns:
        ``{"items", "total", "page", "pages"}``.

    Raises:
        ValidationError: Unknown kind or status, or a bad page size.
    """
    filters = filters or {}
    model = record_model(kind)

    status = filters.get("status")
    if status and status not in INTERNAL_STATUSES:
        raise ValidationError(f"Unknown status: {status}", details={"status": "invalid"})

    q = model.query.filter(model.project_id == project_id)
    if status:
        q = q.filter(model.internal_status == status)
    elif not filters.get("show_closed"):
        q = q.filter(model.internal_status != STATUS_CLOSED)
    if filters.get("priority"):
        q = q.filter(model.priority == filters["priority"])
    if filters.get("link_id"):
        q = q.filter(model.link_id == filters["link_id"])
    if filters.get("assigned_to"):
        q = q.filter(_assigned_to(kind, filters["assigned_to"], model))
    if filters.get("unacknowledged"):
        q = q.filter(model.has_unacknowledged_change.is_(True))
    if filters.get("search"):
        pattern = f"%{filters['search']}%"
        q = q.filter(or_(
            model.title.ilike(pattern),
            model.external_number.ilike(pattern),
            model.acc_description.ilike(pattern),
        ))

    q = q.order_by(
        model.has_unacknowledged_change.desc(),
        model.acc_due_date.is_(None),
        model.acc_due_date.asc(),
        model.created_at.desc(),
        model.id.desc(),
    )

    page = filters.get("page", 1)
    per_page = filters.get("per_page", 50)
    if page < 1 or not 1 <= per_page <= MAX_PER_PAGE:
        raise ValidationError(
            "Invalid pagination", details={"per_page": f"1..{MAX_PER_PAGE}", "page": ">= 1"},
        )
    paginated = q.paginate(page=page, per_page=per_page, error_out=False)
    return {
        "items": [r.to_dict() for r in paginated.items],
        "total": paginated.total,
        "page": paginated.page,
        "pages": paginated.pages,
    }


def get_record_detail(kind: str, record_id: int, role: str | None = None) -> dict:
    """One record with its project, assignments and top-level comments.

    When *role* is given the statuses that role may move the record to
    are included as ``available_transitions``.
    """
    record = get_record(kind, record_id)
    project = db.session.get(Project, record.project_id)

    assignments = (
        RecordAssignment.query
        .filter_by(record_kind=kind, record_id=record.id)
        .order_by(RecordAssignment.assigned_at, RecordAssignment.id)
        .all()
    )
    comments = (
        RecordComment.query
        .filter_by(record_kind=kind, record_id=record.id, parent_id=None)
        .order_by(RecordComment.created_at.desc(), RecordComment.id.desc())
        .all()
    )
    reply_count = (
        RecordComment.query
        .filter(RecordComment.record_kind == kind, RecordComment.record_id == record.id,
                RecordComment.parent_id.isnot(None))
        .count()
    )

    detail = {
        **record.to_dict(),
        "project": {"id": project.id, "name": project.name} if project else None,
        "acc_project_name": record.link.acc_project_name if record.link else None,
        "assignments": [a.to_dict() for a in assignments],
        "comments": [c.to_dict() for c in comments],
        "comment_count": len(comments) + reply_count,
    }
    if role is not None:
        detail["available_transitions"] = get_available_transitions(record, role)
    return detail


def list_user_records(project_id: int, user_id: str) -> list[dict]:
    """Open records across both kinds assigned to *user_id*.

    Each item carries the caller's own assignments.  Sorted by
    unacknowledged change, then internal review deadline, then ACC due
    date; undated records sort last.
    """
    rows = []
    for kind, model in RECORD_MODELS.items():
        records = (
            model.query
            .filter(
                model.project_id == project_id,
                model.internal_status != STATUS_CLOSED,
                _assigned_to(kind, user_id, model),
            )
            .all()
        )
        if not records:
            continue
        mine = {}
        for a in RecordAssignment.query.filter(
            RecordAssignment.record_kind == kind,
            RecordAssignment.user_id == user_id,
            RecordAssignment.record_id.in_([r.id for r in records]),
        ).order_by(RecordAssignment.assigned_at):
            mine.setdefault(a.record_id, []).append(a.to_dict())
        rows.extend((r, mine.get(r.id, [])) for r in records)

    def _key(row):
        record = row[0]
        deadline = as_utc(record.review_deadline)
        return (
            not record.has_unacknowledged_change,
            deadline is None,
            deadline.isoformat() if deadline else "",
            record.acc_due_date is None,
            record.acc_due_date.isoformat() if record.acc_due_date else "",
        )

    rows.sort(key=_key)
    logger.debug("%d open assignments for %s", len(rows), user_id, extra={"project_id": project_id})
    return [{**r.to_dict(), "my_assignments": assignments} for r, assignments in rows]
