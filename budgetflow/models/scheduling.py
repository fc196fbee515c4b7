"""
School Budget Workflow
Job bookkeeping and outbound mail log.

Models:
    - ScheduledJob: one row per registered job (enable flag + last run)
    - EmailLog: one row per delivery attempt, retries included
"""

from datetime import datetime, timezone

from budgetflow.models import db

JOB_STATUSES = {"active", "paused"}
RUN_STATUSES = {"success", "failed"}
EMAIL_STATUSES = {"success", "failure"}
EMAIL_MODES = {"smtp", "log_only", "dry_run"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


class ScheduledJob(db.Model):
    """Persistent side of a job registered with ``@register_job``.

    Rows are created lazily by ``SchedulerService.ensure_jobs_registered``;
    admins pause a job by clearing ``is_enabled``.
    """

    __tablename__ = "scheduled_jobs"

    id = db.Column(db.Integer, primary_key=True)
    job_name = db.Column(db.String(100), unique=True, nullable=False)
    description = db.Column(db.String(500), default="")
    schedule_config = db.Column(db.JSON, default=dict,
                                comment="{hour, minute, timezone, description}")
    status = db.Column(db.String(20), default="active", comment="active, paused")
    is_enabled = db.Column(db.Boolean, default=True)

    last_run_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_run_status = db.Column(db.String(20), nullable=True, comment="success, failed")
    last_run_duration_ms = db.Column(db.Integer, nullable=True)
    last_run_result = db.Column(db.JSON, nullable=True)
    last_error = db.Column(db.Text, nullable=True)
    run_count = db.Column(db.Integer, default=0)
    failure_count = db.Column(db.Integer, default=0)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def record_run(self, *, status, duration_ms, result=None, error=None):
        if status not in RUN_STATUSES:
            raise ValueError(f"Invalid run status {status!r}. Use: {sorted(RUN_STATUSES)}")
        self.last_run_at = _utcnow()
        self.last_run_status = status
        self.last_run_duration_ms = duration_ms
        self.last_run_result = result
        self.run_count = (self.run_count or 0) + 1
        if status == "failed":
            self.failure_count = (self.failure_count or 0) + 1
            self.last_error = error
        else:
            self.last_error = None

    def to_dict(self):
        return {
            "id": self.id,
            "job_name": self.job_name,
            "description": self.description,
            "schedule_config": self.schedule_config,
            "status": self.status,
            "is_enabled": self.is_enabled,
            "last_run_at": _iso(self.last_run_at),
            "last_run_status": self.last_run_status,
            "last_run_duration_ms": self.last_run_duration_ms,
            "last_run_result": self.last_run_result,
            "last_error": self.last_error,
            "run_count": self.run_count,
            "failure_count": self.failure_count,
        }

    def __repr__(self):
        return f"<ScheduledJob {self.job_name} enabled={self.is_enabled}>"


class EmailLog(db.Model):
    """Append-only record of outbound mail.

    ``attempt`` counts from 1 per logical send; a message that needed three
    SMTP tries leaves three rows, the last one carrying the final status.
    """

    __tablename__ = "email_logs"

    id = db.Column(db.Integer, primary_key=True)
    recipient = db.Column(db.String(255), nullable=False, index=True)
    subject = db.Column(db.String(500), nullable=False)
    message = db.Column(db.Text, nullable=True)
    status = db.Column(db.String(20), nullable=False)
    error_message = db.Column(db.Text, nullable=True)
    attempt = db.Column(db.Integer, nullable=False, default=1)
    mode = db.Column(db.String(20), nullable=False, default="smtp")
    category = db.Column(db.String(40), nullable=True,
                         comment="stage_ready, submitted, status, complete, chat, digest, ...")
    sent_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "recipient": self.recipient,
            "subject": self.subject,
            "status": self.status,
            "error_message": self.error_message,
            "attempt": self.attempt,
            "mode": self.mode,
            "category": self.category,
            "sent_at": _iso(self.sent_at),
        }

    def __repr__(self):
        return f"<EmailLog {self.id} {self.category} to={self.recipient} {self.status}#{self.attempt}>"
