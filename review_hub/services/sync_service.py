"""
Sync Service — ACC → local record store.

    sync_all_projects(trigger)
      └─ sync_project(project_id, trigger)           per active, sync-enabled project
           └─ for each active link, for each enabled module:
                _sync_module(project, link, module, trigger)

One module cycle:
    1. Take the ``sync:{project}:{module}`` lease, skip the cycle if held.
    2. Open a SyncRunLog (STARTED) and commit it.
    3. Decrypt the link token and list every ACC item of the module.
    4. For each item: validate → merge (fingerprint, ownership split,
       manual-response detection) → commit.  A failing item is rolled
       back, its error appended to the run's error list, and the loop
       continues.
    5. Refresh the SyncCursor watermark, close the RunLog as COMPLETED,
       and report the module outcome (success | partial).
    6. Any failure outside the item loop closes the RunLog as FAILED and
       reports the module as failed.  It never propagates past the module.

Items whose record is mid-dispatch are deferred, not merged (see
merge_engine).  Once every module of a link has run, the link gets the
worst module outcome and the errors of all its modules.

Links and modules run one after another; a failure in one never stops
the next.
"""

import json
import logging
import time
from datetime import timedelta

from flask import current_app
from sqlalchemy import delete

from review_hub.core.exceptions import ExternalCallError, NotFoundError
from review_hub.integrations import acc_gateway as gw_module
from review_hub.models import db
from review_hub.models.project import ExternalProjectLink, Project
from review_hub.models.records import RECORD_MODELS
from review_hub.models.sync import (
    RUN_COMPLETED,
    RUN_FAILED,
    RUN_STARTED,
    SYNC_MODULES,
    SyncCursor,
    SyncRunLog,
)
from review_hub.services.external_item import ExternalItem
from review_hub.services.locks import lease, purge_expired_leases, sync_lease_key
from review_hub.services.merge_engine import merge_item
from review_hub.utils.crypto import unsealed_token
from review_hub.utils.helpers import utcnow

logger = logging.getLogger(__name__)

LINK_SUCCESS = "success"
LINK_PARTIAL = "partial"
LINK_FAILED = "failed"


# ═════════════════════════════════════════════════════════════════════════════
# Entry points
# ═════════════════════════════════════════════════════════════════════════════


def sync_all_projects(trigger: str = "CRON") -> dict:
    """Sync every active, sync-enabled project. Never raises for a single project."""
    projects = (
        Project.query
        .filter_by(is_active=True, sync_enabled=True)
        .order_by(Project.id)
        .all()
    )
    project_ids = [p.id for p in projects]
    logger.info("Starting sync for %d projects trigger=%s", len(project_ids), trigger)

    summary = {"projects": len(project_ids), "succeeded": 0, "failed": 0, "runs": []}
    for project_id in project_ids:
        try:
            result = sync_project(project_id, trigger=trigger)
            summary["runs"].extend(result["runs"])
            summary["succeeded"] += 1
        except Exception:
            db.session.rollback()
            summary["failed"] += 1
            logger.exception("Failed to sync project %s", project_id, extra={"project_id": project_id})

    logger.info(
        "Completed sync for all projects succeeded=%d failed=%d",
        summary["succeeded"], summary["failed"],
    )
    return summary


def sync_project(project_id: int, trigger: str = "MANUAL") -> dict:
    """
    Sync all enabled links / modules of one project.

    Returns:
        {"project_id", "runs": [run summary dicts]}

    Raises:
        NotFoundError: Unknown project.
    """
    project = db.session.get(Project, project_id)
    if project is None:
        raise NotFoundError(resource="Project", resource_id=project_id)

    links = (
        ExternalProjectLink.query
        .filter_by(project_id=project_id, is_active=True)
        .order_by(ExternalProjectLink.id)
        .all()
    )
    link_ids = [link.id for link in links]
    if not link_ids:
        logger.warning("Project %s has no active ACC links", project_id, extra={"project_id": project_id})

    runs = []
    for link_id in link_ids:
        link = db.session.get(ExternalProjectLink, link_id)
        link_runs = []
        for module in SYNC_MODULES:
            if not link.module_enabled(module):
                continue
            run = _sync_module(project_id, link_id, module, trigger)
            if run is not None:
                link_runs.append(run)
        if link_runs:
            _mark_link(link_id, link_runs)
        runs.extend(link_runs)

    project = db.session.get(Project, project_id)
    project.last_sync_at = utcnow()
    db.session.commit()

    logger.info("Project sync completed (%d runs)", len(runs), extra={"project_id": project_id})
    return {"project_id": project_id, "runs": runs}


# ═════════════════════════════════════════════════════════════════════════════
# Module cycle
# ═════════════════════════════════════════════════════════════════════════════


def _sync_module(project_id: int, link_id: int, module: str, trigger: str) -> dict | None:
    ttl = current_app.config.get("SYNC_LEASE_SECONDS", 600)
    with lease(sync_lease_key(project_id, module), ttl) as acquired:
        if not acquired:
            logger.warning(
                "Sync for project %s module %s already running, skipping",
                project_id, module,
                extra={"project_id": project_id, "link_id": link_id, "sync_module": module},
            )
            return None
        return _run_module_cycle(project_id, link_id, module, trigger)


def _run_module_cycle(project_id: int, link_id: int, module: str, trigger: str) -> dict:
    started = time.monotonic()
    log_extra = {"project_id": project_id, "link_id": link_id, "sync_module": module}

    run = SyncRunLog(
        project_id=project_id,
        link_id=link_id,
        module=module,
        status=RUN_STARTED,
        triggered_by=trigger,
        started_at=utcnow(),
    )
    db.session.add(run)
    db.session.commit()
    run_id = run.id
    log_extra["run_id"] = run_id
    logger.info("Starting %s sync", module, extra=log_extra)

    counts = {"processed": 0, "new": 0, "updated": 0, "deferred": 0}
    errors: list[str] = []

    try:
        link = db.session.get(ExternalProjectLink, link_id)
        raw_items = _fetch_items(link, module)
        model = RECORD_MODELS[module]

        for raw in raw_items:
            counts["processed"] += 1
            ref = raw.get("id") if isinstance(raw, dict) else None
            try:
                item = ExternalItem.from_api(raw)
                result = merge_item(link, model, item)
                db.session.commit()
            except Exception as exc:
                db.session.rollback()
                errors.append(f"{module} {ref}: {exc}")
                logger.error("Failed to process %s %s", module, ref, exc_info=True, extra=log_extra)
                link = db.session.get(ExternalProjectLink, link_id)
                continue
            if result.deferred:
                counts["deferred"] += 1
            elif result.is_new:
                counts["new"] += 1
            else:
                counts["updated"] += 1

        _touch_cursor(project_id, module, run_id, counts["processed"])
        _close_run(run_id, RUN_COMPLETED, counts, errors, started)

        logger.info(
            "%s sync completed processed=%d new=%d updated=%d deferred=%d errors=%d",
            module, counts["processed"], counts["new"], counts["updated"], counts["deferred"], len(errors),
            extra=log_extra,
        )
        status = RUN_COMPLETED
        link_status = LINK_PARTIAL if errors else LINK_SUCCESS

    except Exception as exc:
        db.session.rollback()
        errors.append(str(exc))
        logger.error("%s sync failed: %s", module, exc, exc_info=True, extra=log_extra)
        _close_run(run_id, RUN_FAILED, counts, errors, started)
        status = RUN_FAILED
        link_status = LINK_FAILED

    return {
        "run_id": run_id,
        "link_id": link_id,
        "module": module,
        "status": status,
        "items_processed": counts["processed"],
        "new_items": counts["new"],
        "updated_items": counts["updated"],
        "deferred_items": counts["deferred"],
        "errors": errors,
        "link_status": link_status,
    }


def _fetch_items(link: ExternalProjectLink, module: str) -> list:
    with unsealed_token(link):
        result = gw_module.acc_gateway.list_items(link, module)
    if not result.ok:
        raise ExternalCallError(f"ACC list failed: {result.error}", status_code=result.status_code)
    return result.data or []


def _touch_cursor(project_id: int, module: str, run_id: int, items_seen: int) -> None:
    cursor = SyncCursor.query.filter_by(project_id=project_id, module=module).first()
    if cursor is None:
        cursor = SyncCursor(project_id=project_id, module=module)
        db.session.add(cursor)
    cursor.last_seen_at = utcnow()
    cursor.last_run_id = run_id
    cursor.items_seen = items_seen
    db.session.commit()


def _close_run(run_id: int, status: str, counts: dict, errors: list[str], started: float) -> None:
    run = db.session.get(SyncRunLog, run_id)
    run.status = status
    run.items_processed = counts["processed"]
    run.new_items = counts["new"]
    run.updated_items = counts["updated"]
    run.errors = json.dumps(errors)
    run.duration_ms = int((time.monotonic() - started) * 1000)
    run.completed_at = utcnow()
    db.session.commit()


_LINK_SEVERITY = {LINK_SUCCESS: 0, LINK_PARTIAL: 1, LINK_FAILED: 2}


def _mark_link(link_id: int, runs: list[dict]) -> None:
    """Record the worst module outcome of this cycle on the link."""
    status = max((r["link_status"] for r in runs), key=_LINK_SEVERITY.__getitem__)
    errors = [f"{r['module']}: {e}" for r in runs for e in r["errors"]]
    link = db.session.get(ExternalProjectLink, link_id)
    link.last_sync_at = utcnow()
    link.last_sync_status = status
    link.last_sync_error = "; ".join(errors[:5]) or None
    db.session.commit()


# ═════════════════════════════════════════════════════════════════════════════
# Logs & maintenance
# ═════════════════════════════════════════════════════════════════════════════


def get_sync_logs(project_id: int, module: str | None = None, limit: int = 50) -> list[dict]:
    query = SyncRunLog.query.filter_by(project_id=project_id)
    if module:
        query = query.filter_by(module=module)
    rows = query.order_by(SyncRunLog.started_at.desc(), SyncRunLog.id.desc()).limit(limit).all()
    return [r.to_dict() for r in rows]


def get_sync_cursor(project_id: int, module: str) -> dict | None:
    cursor = SyncCursor.query.filter_by(project_id=project_id, module=module).first()
    return cursor.to_dict() if cursor else None


def cleanup_sync_logs(retention_days: int | None = None) -> dict:
    """Delete run logs older than the retention window and expired leases."""
    if retention_days is None:
        retention_days = current_app.config.get("SYNC_LOG_RETENTION_DAYS", 30)
    cutoff = utcnow() - timedelta(days=retention_days)

    result = db.session.execute(delete(SyncRunLog).where(SyncRunLog.started_at < cutoff))
    db.session.commit()
    deleted = result.rowcount or 0
    leases = purge_expired_leases()

    logger.info("Sync log cleanup deleted=%d leases_purged=%d cutoff=%s",
                deleted, leases, cutoff.isoformat())
    return {"deleted_logs": deleted, "purged_leases": leases}
