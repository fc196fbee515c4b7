"""
School Budget Workflow
Scheduler Service.

Job registry plus one daemon thread that wakes every day at
``DIGEST_HOUR`` in ``SCHEDULER_TIMEZONE`` and runs the enabled jobs.
The thread is started only when ``ENABLE_SCHEDULER`` is set, so exactly one
process in a deployment should carry that flag. Jobs can always be run
manually through the admin API.
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timedelta
from typing import Callable
from zoneinfo import ZoneInfo

from flask import Flask

from budgetflow.models import db
from budgetflow.models.scheduling import ScheduledJob

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job Registry
# ═══════════════════════════════════════════════════════════════════════════

_job_registry: dict[str, Callable] = {}


def register_job(name: str):
    """Decorator to register a job function.

    Usage:
        @register_job("daily_task_digest")
        def daily_task_digest(app):
            ...
    """
    def decorator(fn: Callable) -> Callable:
        _job_registry[name] = fn
        return fn
    return decorator


def get_registered_jobs() -> dict[str, Callable]:
    return dict(_job_registry)


def seconds_until(hour: int, tz_name: str, now: datetime | None = None) -> float:
    """Seconds from ``now`` until the next ``hour``:00 in ``tz_name``."""
    tz = ZoneInfo(tz_name)
    now = (now or datetime.now(tz)).astimezone(tz)
    target = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if target <= now:
        target += timedelta(days=1)
    return (target - now).total_seconds()


class SchedulerService:
    """Class-level holder for the app, the daily thread and job bookkeeping."""

    _app: Flask | None = None
    _running: bool = False
    _thread: threading.Thread | None = None
    _stop: threading.Event | None = None

    @classmethod
    def init_app(cls, app: Flask) -> None:
        cls._app = app
        app.extensions["scheduler"] = cls
        logger.info("SchedulerService initialized with %d registered jobs",
                    len(_job_registry))
        if app.config.get("ENABLE_SCHEDULER"):
            cls.start()

    @classmethod
    def start(cls) -> None:
        if cls._running or cls._app is None:
            return
        cls.ensure_jobs_registered()
        cls._stop = threading.Event()
        cls._running = True
        cls._thread = threading.Thread(target=cls._loop, name="budget-scheduler", daemon=True)
        cls._thread.start()
        logger.info("Scheduler thread started")

    @classmethod
    def stop(cls) -> None:
        if cls._stop is not None:
            cls._stop.set()
        cls._running = False

    @classmethod
    def _loop(cls) -> None:
        cfg = cls._app.config
        hour = int(cfg.get("DIGEST_HOUR", 9))
        tz_name = cfg.get("SCHEDULER_TIMEZONE", "Asia/Kabul")
        while cls._running:
            wait = seconds_until(hour, tz_name)
            logger.info("Next scheduled run in %.0fs", wait)
            if cls._stop.wait(wait):
                break
            for name in list(_job_registry):
                with cls._app.app_context():
                    record = ScheduledJob.query.filter_by(job_name=name).first()
                    enabled = record is None or record.is_enabled
                if enabled:
                    cls.run_job(name)

    @classmethod
    def ensure_jobs_registered(cls) -> list[ScheduledJob]:
        """Insert a `scheduled_jobs` row for every registered job that lacks one."""
        if not cls._app:
            return []

        created = []
        with cls._app.app_context():
            for name, _fn in _job_registry.items():
                existing = ScheduledJob.query.filter_by(job_name=name).first()
                if not existing:
                    job = ScheduledJob(
                        job_name=name,
                        description=(_fn.__doc__ or f"Scheduled job: {name}").strip().splitlines()[0],
                        schedule_config=_get_default_schedule(cls._app),
                        status="active",
                        is_enabled=True,
                    )
                    db.session.add(job)
                    created.append(job)
            if created:
                db.session.commit()
                logger.info("Created %d scheduled job records", len(created))
        return created

    @classmethod
    def run_job(cls, job_name: str) -> dict:
        """Run ``job_name`` in an app context and record the outcome on its row.

        A failing job is logged and reported as ``status="failed"``; it never
        propagates into the scheduler loop or the admin request.
        """
        fn = _job_registry.get(job_name)
        if not fn:
            return {"status": "error", "error": f"Unknown job: {job_name}"}

        if not cls._app:
            return {"status": "error", "error": "Scheduler not initialized"}

        start = time.monotonic()
        result = None
        error = None
        status = "success"

        try:
            with cls._app.app_context():
                result = fn(cls._app)
        except Exception as exc:
            status = "failed"
            error = str(exc)
            logger.exception("Job %s failed: %s", job_name, exc, extra={"job_name": job_name})

        duration_ms = int((time.monotonic() - start) * 1000)

        try:
            with cls._app.app_context():
                job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
                if job_record:
                    job_record.record_run(
                        status=status,
                        duration_ms=duration_ms,
                        result=result if isinstance(result, dict) else {"output": str(result)},
                        error=error,
                    )
                    db.session.commit()
        except Exception:
            logger.exception("Failed to update job record for %s", job_name)

        return {
            "job_name": job_name,
            "status": status,
            "duration_ms": duration_ms,
            "result": result,
            "error": error,
        }

    @classmethod
    def list_jobs(cls) -> list[dict]:
        """Registered jobs joined with their `scheduled_jobs` row (None when not yet created)."""
        jobs = []
        for name in _job_registry:
            job_record = ScheduledJob.query.filter_by(job_name=name).first()
            jobs.append({
                "job_name": name,
                "registered": True,
                "db_record": job_record.to_dict() if job_record else None,
            })
        return jobs

    @classmethod
    def toggle_job(cls, job_name: str, enabled: bool) -> dict | None:
        job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
        if not job_record:
            return None
        job_record.is_enabled = enabled
        job_record.status = "active" if enabled else "paused"
        db.session.commit()
        return job_record.to_dict()


def _get_default_schedule(app: Flask) -> dict:
    hour = int(app.config.get("DIGEST_HOUR", 9))
    tz_name = app.config.get("SCHEDULER_TIMEZONE", "Asia/Kabul")
    return {"hour": str(hour), "minute": "0", "timezone": tz_name,
            "description": f"Daily at {hour:02d}:00 {tz_name}"}
