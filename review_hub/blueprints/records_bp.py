"""Requests / Submittals review workflow blueprint.

Endpoint groups
───────────────
  Records            GET  /projects/<pid>/records?kind=&status=&priority=&link_id=
                          &assigned_to=&unacknowledged=&show_closed=&search=&page=&per_page=
                     GET  /projects/<pid>/my-records
                     GET  /records/<kind>/<rid>
  Manual responses   GET  /projects/<pid>/manual-responses?kind=
                     POST /records/<kind>/<rid>/manual-response/confirm
  Official response  POST /records/<kind>/<rid>/response
  Workflow           POST /records/<kind>/<rid>/assign
                     POST /records/<kind>/<rid>/transition
                     GET  /records/<kind>/<rid>/transitions
                     POST /records/<kind>/<rid>/acknowledge
                     POST /records/<kind>/<rid>/assignments/read
                     GET  /records/<kind>/<rid>/assignments
  History            GET  /records/<kind>/<rid>/history
  Comments           GET/POST /records/<kind>/<rid>/comments

``<kind>`` is ``request`` or ``submittal``.
"""

from flask import Blueprint, jsonify, request

from review_hub.services import record_lifecycle, record_service, response_service
from review_hub.services.helpers.records import get_record
from review_hub.services.permission import require_membership
from review_hub.utils.errors import E, api_error, register_error_handlers

records_bp = Blueprint("records", __name__, url_prefix="/api/v1")
register_error_handlers(records_bp)


def _actor() -> str:
    """Extract the acting user from request headers."""
    return request.headers.get("X-User", "")


def _require_reader(kind, rid, action):
    """The caller must belong to the record's project."""
    record = get_record(kind, rid)
    return require_membership(record.project_id, _actor(), action)


# ══════════════════════════════════════════════════════════════════
# 1.  Records
# ══════════════════════════════════════════════════════════════════


@records_bp.route("/projects/<int:pid>/records", methods=["GET"])
def list_records(pid):
    require_membership(pid, _actor(), "list_records")
    filters = {
        "status": request.args.get("status") or None,
        "priority": request.args.get("priority") or None,
        "link_id": request.args.get("link_id", type=int),
        "assigned_to": request.args.get("assigned_to") or None,
        "unacknowledged": request.args.get("unacknowledged", "false").lower() == "true",
        "show_closed": request.args.get("show_closed", "false").lower() == "true",
        "search": (request.args.get("search") or "").strip() or None,
        "page": request.args.get("page", 1, type=int),
        "per_page": request.args.get("per_page", 50, type=int),
    }
    return jsonify(record_service.list_records(pid, request.args.get("kind", "request"), filters))


@records_bp.route("/projects/<int:pid>/my-records", methods=["GET"])
def my_records(pid):
    """Open records assigned to the caller."""
    user_id = _actor()
    require_membership(pid, user_id, "list_my_records")
    items = record_service.list_user_records(pid, user_id)
    return jsonify({"items": items, "total": len(items)})


@records_bp.route("/records/<kind>/<int:rid>", methods=["GET"])
def get_record_detail(kind, rid):
    membership = _require_reader(kind, rid, "view_record")
    return jsonify(record_service.get_record_detail(kind, rid, role=membership.role))


# ══════════════════════════════════════════════════════════════════
# 2.  Manual responses
# ══════════════════════════════════════════════════════════════════


@records_bp.route("/projects/<int:pid>/manual-responses", methods=["GET"])
def list_manual_responses(pid):
    """Admin review queue of responses entered directly in ACC."""
    require_membership(pid, _actor(), "list_manual_responses")
    kind = request.args.get("kind") or None
    items = response_service.list_pending_manual_responses(pid, kind)
    return jsonify({"items": items, "total": len(items)})


@records_bp.route("/records/<kind>/<int:rid>/manual-response/confirm", methods=["POST"])
def confirm_manual_response(kind, rid):
    result = response_service.confirm_manual_response(kind, rid, _actor())
    return jsonify(result)


# ══════════════════════════════════════════════════════════════════
# 3.  Official response
# ══════════════════════════════════════════════════════════════════


@records_bp.route("/records/<kind>/<int:rid>/response", methods=["POST"])
def send_response(kind, rid):
    """Push status, response text and attachments to ACC."""
    data = request.get_json(silent=True) or {}
    result = response_service.send_response(
        kind, rid, _actor(),
        response_status=data.get("response_status"),
        response_text=data.get("response_text"),
        file_paths=data.get("file_paths"),
    )
    return jsonify(result)


# ══════════════════════════════════════════════════════════════════
# 4.  Workflow
# ══════════════════════════════════════════════════════════════════


@records_bp.route("/records/<kind>/<int:rid>/assign", methods=["POST"])
def assign(kind, rid):
    data = request.get_json(silent=True) or {}
    result = record_lifecycle.assign_record(
        kind, rid, data.get("user_id"), data.get("role", ""), _actor(),
    )
    return jsonify(result), 201


@records_bp.route("/records/<kind>/<int:rid>/transition", methods=["POST"])
def transition(kind, rid):
    data = request.get_json(silent=True) or {}
    new_status = data.get("status")
    if not new_status:
        return api_error(E.VALIDATION_REQUIRED, "status is required")
    result = record_lifecycle.transition_status(
        kind, rid, new_status, _actor(), reason=data.get("reason"),
    )
    return jsonify(result)


@records_bp.route("/records/<kind>/<int:rid>/transitions", methods=["GET"])
def available_transitions(kind, rid):
    """Statuses the caller may move the record to."""
    record = get_record(kind, rid)
    membership = require_membership(record.project_id, _actor(), "view_transitions")
    return jsonify({
        "current": record.internal_status,
        "available": record_lifecycle.get_available_transitions(record, membership.role),
    })


@records_bp.route("/records/<kind>/<int:rid>/acknowledge", methods=["POST"])
def acknowledge(kind, rid):
    return jsonify(record_lifecycle.acknowledge_change(kind, rid, _actor()))


@records_bp.route("/records/<kind>/<int:rid>/assignments/read", methods=["POST"])
def mark_read(kind, rid):
    count = record_lifecycle.mark_assignment_read(kind, rid, _actor())
    return jsonify({"updated": count})


@records_bp.route("/records/<kind>/<int:rid>/assignments", methods=["GET"])
def list_assignments(kind, rid):
    _require_reader(kind, rid, "list_assignments")
    return jsonify(record_lifecycle.list_assignments(kind, rid))


# ══════════════════════════════════════════════════════════════════
# 5.  History & comments
# ══════════════════════════════════════════════════════════════════


@records_bp.route("/records/<kind>/<int:rid>/history", methods=["GET"])
def history(kind, rid):
    _require_reader(kind, rid, "view_history")
    return jsonify(record_lifecycle.get_status_history(kind, rid))


@records_bp.route("/records/<kind>/<int:rid>/comments", methods=["GET"])
def list_comments(kind, rid):
    _require_reader(kind, rid, "list_comments")
    return jsonify(record_lifecycle.list_comments(kind, rid))


@records_bp.route("/records/<kind>/<int:rid>/comments", methods=["POST"])
def add_comment(kind, rid):
    data = request.get_json(silent=True) or {}
    result = record_lifecycle.add_comment(
        kind, rid, _actor(), data.get("text", ""), parent_id=data.get("parent_id"),
    )
    return jsonify(result), 201
