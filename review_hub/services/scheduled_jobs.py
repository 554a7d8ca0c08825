"""
ACC Review Hub
Scheduled Jobs.

Jobs:
    - acc_sync: pull Requests and Submittals for every sync-enabled project
    - sync_log_cleanup: drop old sync run logs and expired leases
"""

from __future__ import annotations

import logging
from typing import Any

from review_hub.services.scheduler_service import register_job
from review_hub.services.sync_service import cleanup_sync_logs, sync_all_projects

logger = logging.getLogger(__name__)


@register_job("acc_sync")
def run_acc_sync(app) -> dict[str, Any]:
    """Synchronize all active projects with ACC."""
    summary = sync_all_projects(trigger="CRON")
    logger.info(
        "acc_sync job finished: %d projects, %d runs",
        summary["projects"], len(summary["runs"]),
    )
    return {
        "projects": summary["projects"],
        "succeeded": summary["succeeded"],
        "failed": summary["failed"],
        "runs": len(summary["runs"]),
    }


@register_job("sync_log_cleanup")
def run_sync_log_cleanup(app) -> dict[str, Any]:
    """Delete sync run logs past the retention window."""
    return cleanup_sync_logs(app.config.get("SYNC_LOG_RETENTION_DAYS", 30))
