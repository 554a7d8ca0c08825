"""Projects, ACC links and synchronization blueprint.

Endpoint groups
───────────────
  Projects    GET/POST  /projects          (GET lists the caller's projects)
              GET/PUT   /projects/<pid>
  Members     GET/POST  /projects/<pid>/members
              PUT/DELETE /projects/<pid>/members/<user_id>
  ACC links   GET/POST  /projects/<pid>/links
              PUT/DELETE /links/<lid>
  Sync        POST /projects/<pid>/sync
              GET  /projects/<pid>/sync/logs?module=&limit=
              GET  /projects/<pid>/sync/cursor/<module>
  Jobs        GET  /jobs
              PUT  /jobs/<name>
              POST /jobs/<name>/run

Every endpoint acts as the X-User caller.  Project reads need membership,
project writes need settings rights, and the job endpoints need settings
rights on at least one project.
"""

from flask import Blueprint, jsonify, request

from review_hub.services import project_service, sync_service
from review_hub.services.permission import (
    check_can_edit_settings,
    check_can_manage_jobs,
    require_membership,
)
from review_hub.services.scheduler_service import SchedulerService
from review_hub.utils.errors import E, api_error, register_error_handlers

sync_bp = Blueprint("sync", __name__, url_prefix="/api/v1")
register_error_handlers(sync_bp)


def _actor() -> str:
    """Extract the acting user from request headers."""
    return request.headers.get("X-User", "")


# ══════════════════════════════════════════════════════════════════
# 1.  Projects & members
# ══════════════════════════════════════════════════════════════════


@sync_bp.route("/projects", methods=["GET"])
def list_projects():
    user_id = _actor()
    if not user_id:
        return api_error(E.FORBIDDEN, "X-User header is required")
    return jsonify(project_service.list_projects(user_id))


@sync_bp.route("/projects", methods=["POST"])
def create_project():
    data = request.get_json(silent=True) or {}
    return jsonify(project_service.create_project(data, _actor())), 201


@sync_bp.route("/projects/<int:pid>", methods=["GET"])
def get_project(pid):
    project = project_service.get_project(pid)
    require_membership(pid, _actor(), "view_project")
    return jsonify(project.to_dict())


@sync_bp.route("/projects/<int:pid>", methods=["PUT"])
def update_project(pid):
    check_can_edit_settings(pid, _actor())
    data = request.get_json(silent=True) or {}
    return jsonify(project_service.update_project(pid, data))


@sync_bp.route("/projects/<int:pid>/members", methods=["GET"])
def list_members(pid):
    require_membership(pid, _actor(), "list_members")
    return jsonify(project_service.list_members(pid))


@sync_bp.route("/projects/<int:pid>/members", methods=["POST"])
def add_member(pid):
    check_can_edit_settings(pid, _actor())
    data = request.get_json(silent=True) or {}
    return jsonify(project_service.add_member(pid, data)), 201


@sync_bp.route("/projects/<int:pid>/members/<user_id>", methods=["PUT"])
def update_member(pid, user_id):
    check_can_edit_settings(pid, _actor())
    data = request.get_json(silent=True) or {}
    return jsonify(project_service.update_member(pid, user_id, data))


@sync_bp.route("/projects/<int:pid>/members/<user_id>", methods=["DELETE"])
def remove_member(pid, user_id):
    check_can_edit_settings(pid, _actor())
    project_service.remove_member(pid, user_id)
    return "", 204


# ══════════════════════════════════════════════════════════════════
# 2.  ACC links
# ══════════════════════════════════════════════════════════════════


@sync_bp.route("/projects/<int:pid>/links", methods=["GET"])
def list_links(pid):
    require_membership(pid, _actor(), "list_links")
    return jsonify(project_service.list_links(pid))


@sync_bp.route("/projects/<int:pid>/links", methods=["POST"])
def add_link(pid):
    check_can_edit_settings(pid, _actor())
    data = request.get_json(silent=True) or {}
    return jsonify(project_service.add_link(pid, data)), 201


@sync_bp.route("/links/<int:lid>", methods=["PUT"])
def update_link(lid):
    link = project_service.get_link(lid)
    check_can_edit_settings(link.project_id, _actor())
    data = request.get_json(silent=True) or {}
    return jsonify(project_service.update_link(lid, data))


@sync_bp.route("/links/<int:lid>", methods=["DELETE"])
def remove_link(lid):
    link = project_service.get_link(lid)
    check_can_edit_settings(link.project_id, _actor())
    project_service.remove_link(lid)
    return "", 204


# ══════════════════════════════════════════════════════════════════
# 3.  Sync
# ══════════════════════════════════════════════════════════════════


@sync_bp.route("/projects/<int:pid>/sync", methods=["POST"])
def trigger_sync(pid):
    """Run a sync of every enabled link and module now."""
    require_membership(pid, _actor(), "trigger_sync")
    return jsonify(sync_service.sync_project(pid, trigger="API"))


@sync_bp.route("/projects/<int:pid>/sync/logs", methods=["GET"])
def sync_logs(pid):
    project_service.get_project(pid)
    require_membership(pid, _actor(), "view_sync_logs")
    limit = request.args.get("limit", 50, type=int)
    return jsonify(sync_service.get_sync_logs(pid, request.args.get("module"), limit=min(limit, 200)))


@sync_bp.route("/projects/<int:pid>/sync/cursor/<module>", methods=["GET"])
def sync_cursor(pid, module):
    require_membership(pid, _actor(), "view_sync_cursor")
    cursor = sync_service.get_sync_cursor(pid, module)
    if cursor is None:
        return api_error(E.NOT_FOUND, f"No sync cursor for {module}")
    return jsonify(cursor)


# ══════════════════════════════════════════════════════════════════
# 4.  Scheduled jobs
# ══════════════════════════════════════════════════════════════════


@sync_bp.route("/jobs", methods=["GET"])
def list_jobs():
    check_can_manage_jobs(_actor(), "list_jobs")
    return jsonify(SchedulerService.list_jobs())


@sync_bp.route("/jobs/<name>/run", methods=["POST"])
def run_job(name):
    check_can_manage_jobs(_actor(), "run_job")
    result = SchedulerService.run_job(name, force=True)
    if result["status"] == "error":
        return api_error(E.NOT_FOUND, result["error"])
    return jsonify(result)


@sync_bp.route("/jobs/<name>", methods=["PUT"])
def toggle_job(name):
    check_can_manage_jobs(_actor(), "toggle_job")
    data = request.get_json(silent=True) or {}
    if "enabled" not in data:
        return api_error(E.VALIDATION_REQUIRED, "enabled is required")
    job = SchedulerService.toggle_job(name, bool(data["enabled"]))
    if job is None:
        return api_error(E.NOT_FOUND, f"Unknown job: {name}")
    return jsonify(job)
