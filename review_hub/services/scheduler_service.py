"""
Background job registry and runner.

Jobs are plain functions registered by name with ``@register_job``.  The
outside timer (cron, a container scheduler, ``flask run-job``) only names
the job; its ``scheduled_jobs`` row holds the enable flag, the default
cadence and the run counters.
"""

from __future__ import annotations

import logging
import time
from typing import Callable

from flask import Flask

from review_hub.models import db
from review_hub.models.scheduling import JOB_ACTIVE, JOB_FAILED, JOB_PAUSED, ScheduledJob

logger = logging.getLogger(__name__)


_job_registry: dict[str, Callable] = {}


def register_job(name: str):
    """Register *fn* under *name*; the function receives the Flask app."""
    def decorator(fn: Callable) -> Callable:
        _job_registry[name] = fn
        return fn
    return decorator


def get_registered_jobs() -> dict[str, Callable]:
    return dict(_job_registry)


def _default_schedule(job_name: str, app: Flask) -> tuple[str, dict]:
    if job_name == "acc_sync":
        minutes = app.config.get("SYNC_INTERVAL_MINUTES", 2)
        return "interval", {"minutes": minutes}
    if job_name == "sync_log_cleanup":
        return "cron", {"hour": 3, "minute": 0}
    return "cron", {"hour": 0, "minute": 0}


class SchedulerService:
    """Persists the registry and runs jobs for one Flask app."""

    _app: Flask | None = None

    @classmethod
    def init_app(cls, app: Flask) -> None:
        cls._app = app
        app.extensions["scheduler"] = cls
        logger.debug("Scheduler bound with jobs: %s", ", ".join(sorted(_job_registry)))

    @classmethod
    def ensure_jobs_registered(cls) -> list[ScheduledJob]:
        """Insert a row for every registered job that has none yet."""
        if cls._app is None:
            return []

        created = []
        with cls._app.app_context():
            known = {name for (name,) in db.session.query(ScheduledJob.job_name)}
            for name, fn in _job_registry.items():
                if name in known:
                    continue
                schedule_type, schedule_config = _default_schedule(name, cls._app)
                job = ScheduledJob(
                    job_name=name,
                    description=(fn.__doc__ or name).strip().splitlines()[0],
                    schedule_type=schedule_type,
                    schedule_config=schedule_config,
                )
                db.session.add(job)
                created.append(job)
            if created:
                db.session.commit()
                logger.info("Registered scheduled jobs: %s", ", ".join(j.job_name for j in created))
        return created

    @classmethod
    def run_job(cls, job_name: str, *, force: bool = False) -> dict:
        """
        Run one job now.  A disabled job is skipped unless *force* is set.

        Returns:
            {"job_name", "status": success|failed|skipped|error,
             "duration_ms", "result", "error"}
        """
        fn = _job_registry.get(job_name)
        if fn is None or cls._app is None:
            reason = f"Unknown job: {job_name}" if fn is None else "Scheduler not initialized"
            return {"job_name": job_name, "status": "error", "error": reason}

        with cls._app.app_context():
            job = ScheduledJob.query.filter_by(job_name=job_name).first()
            if job is not None and not job.is_enabled and not force:
                logger.info("Job %s is paused, skipping", job_name)
                return {"job_name": job_name, "status": "skipped", "duration_ms": 0, "result": None, "error": None}

        started = time.monotonic()
        result, error = None, None
        try:
            with cls._app.app_context():
                result = fn(cls._app)
        except Exception as exc:
            error = str(exc)
            logger.exception("Job %s failed", job_name)
        outcome = {
            "job_name": job_name,
            "status": "failed" if error is not None else "success",
            "duration_ms": int((time.monotonic() - started) * 1000),
            "result": result,
            "error": error,
        }

        with cls._app.app_context():
            cls._record_outcome(outcome)
        return outcome

    @staticmethod
    def _record_outcome(outcome: dict) -> None:
        job = ScheduledJob.query.filter_by(job_name=outcome["job_name"]).first()
        if job is None:
            return
        result = outcome["result"]
        job.record_run(
            status=outcome["status"],
            duration_ms=outcome["duration_ms"],
            result=result if isinstance(result, dict) or result is None else {"output": str(result)},
            error=outcome["error"],
        )
        if outcome["status"] == "failed":
            job.status = JOB_FAILED
        elif job.is_enabled:
            job.status = JOB_ACTIVE
        db.session.commit()

    @classmethod
    def list_jobs(cls) -> list[dict]:
        rows = {j.job_name: j for j in ScheduledJob.query.all()}
        return [
            rows[name].to_dict() if name in rows else {"job_name": name, "is_enabled": None}
            for name in sorted(_job_registry)
        ]

    @classmethod
    def toggle_job(cls, job_name: str, enabled: bool) -> dict | None:
        job = ScheduledJob.query.filter_by(job_name=job_name).first()
        if job is None:
            return None
        job.is_enabled = enabled
        job.status = JOB_ACTIVE if enabled else JOB_PAUSED
        db.session.commit()
        logger.info("Job %s %s", job_name, "enabled" if enabled else "paused")
        return job.to_dict()
