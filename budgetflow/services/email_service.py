"""
School Budget Workflow
Email Service.

All outbound mail goes through one process-wide SMTP transport:
a single pooled connection guarded by a lock and a sliding-window rate
limit (``EMAIL_RATE_LIMIT_PER_MINUTE``, 25 by default).

Delivery modes:
    smtp      SMTP_SERVER configured, real delivery
    log_only  no SMTP_SERVER, nothing leaves the process (dev/test)
    dry_run   EMAIL_DEBUG_DRYRUN=1, messages are rendered and logged only

Transient failures (SMTP 432, "concurrent … limit … exceeded") are retried
up to ``EMAIL_MAX_ATTEMPTS`` times with ``base * 2^(attempt-1)`` backoff.
Every attempt is written to ``email_logs``.
"""

from __future__ import annotations

import logging
import re
import smtplib
import threading
import time
from collections import deque
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any

from flask import current_app

from budgetflow.core.exceptions import TransientBackendError
from budgetflow.models import db
from budgetflow.models.scheduling import EMAIL_MODES, EMAIL_STATUSES, EmailLog

logger = logging.getLogger(__name__)

_TRANSIENT_RE = re.compile(r"concurrent.*limit.*exceeded", re.IGNORECASE)
TRANSIENT_CODES = {432}


# ═══════════════════════════════════════════════════════════════════════════
#  Email Templates
# ═══════════════════════════════════════════════════════════════════════════

_LAYOUT = """
<div style="font-family: Arial, sans-serif; max-width: 680px; margin: 0 auto;">
    <div style="background: #354A5F; color: white; padding: 16px 24px; border-radius: 8px 8px 0 0;">
        <h2 style="margin: 0; font-size: 18px;">{heading}</h2>
        <p style="margin: 4px 0 0; color: #cbd5e1; font-size: 13px;">{hq_name}</p>
    </div>
    <div style="background: #f8fafc; padding: 24px; border: 1px solid #e2e8f0; border-top: none;">
        {content}
        {link}
    </div>
    <div style="background: #f1f5f9; padding: 12px 24px; border-radius: 0 0 8px 8px;
                border: 1px solid #e2e8f0; border-top: none; text-align: center;">
        <p style="color: #94a3b8; font-size: 12px; margin: 0;">
            School budget workflow, automated notification
        </p>
    </div>
</div>
"""

_TEMPLATES: dict[str, dict[str, str]] = {
    "stage_ready": {
        "subject": "[Budget] {stage_label}: {count} item(s) at your stage — {department}",
        "heading": "{stage_label}: items waiting for you",
    },
    "awaiting_approval": {
        "subject": "[Budget] {count} budget request(s) waiting to be approved/reviewed",
        "heading": "Budgets awaiting central approval",
    },
    "budget_submitted": {
        "subject": "[Budget] New budget request: {school} ({period})",
        "heading": "A new budget request was submitted",
    },
    "budget_resubmitted": {
        "subject": "[Budget] Budget request resubmitted: {school} ({period})",
        "heading": "A revised budget request was resubmitted",
    },
    "status_in_review": {
        "subject": "[Budget] Your budget request is in review: {school} ({period})",
        "heading": "Budget request in review",
    },
    "status_revision_requested": {
        "subject": "[Budget] Revision requested: {school} ({period})",
        "heading": "Revision requested",
    },
    "status_approved_by_finance": {
        "subject": "[Budget] Approved by finance: {school} ({period})",
        "heading": "Budget approved by finance",
    },
    "workflow_complete": {
        "subject": "[Budget] Budget review completed: {school} ({period})",
        "heading": "Budget review completed",
    },
    "item_revised": {
        "subject": "[Budget] Item sent back for revision: {item_name}",
        "heading": "An item needs your answer",
    },
    "revision_answered": {
        "subject": "[Budget] Revision answered: {item_name}",
        "heading": "A revision request was answered",
    },
    "chat_first_message": {
        "subject": "[Budget] New message on {item_name} ({stage_label})",
        "heading": "New chat message",
    },
    "task_digest": {
        "subject": "[Budget] Daily summary: {count} step(s) waiting for you",
        "heading": "Your pending budget steps",
    },
    "admin_digest": {
        "subject": "[Budget] Daily summary: {count} pending step(s) across all schools",
        "heading": "Pending budget steps",
    },
}


class _SafeDict(dict):
    """Dict that returns {key} for missing keys instead of raising."""

    def __missing__(self, key):
        return f"{{{key}}}"


def render(template_name: str, context: dict[str, Any]) -> tuple[str, str] | None:
    """Return ``(subject, html)`` for a template, or None when unknown."""
    template = _TEMPLATES.get(template_name)
    if not template:
        logger.warning("Email template not found: %s", template_name)
        return None
    ctx = _SafeDict(context)
    ctx.setdefault("hq_name", current_app.config.get("HQ_NAME", ""))
    ctx.setdefault("content", "")
    url = context.get("link_url")
    ctx["link"] = (
        f'<p style="margin-top: 16px;"><a href="{url}">{context.get("link_label") or "Open"}</a></p>'
        if url else ""
    )
    subject = template["subject"].format_map(ctx)
    ctx["heading"] = template["heading"].format_map(ctx)
    return subject, _LAYOUT.format_map(ctx)


# ═══════════════════════════════════════════════════════════════════════════
#  Transport
# ═══════════════════════════════════════════════════════════════════════════


def is_transient(exc: Exception) -> bool:
    code = getattr(exc, "smtp_code", None)
    if code in TRANSIENT_CODES:
        return True
    return bool(_TRANSIENT_RE.search(str(exc)))


class SmtpTransport:
    """One SMTP connection shared by every sender in the process."""

    def __init__(self, server: str, port: int, *, use_tls: bool = True,
                 username: str | None = None, password: str | None = None,
                 rate_limit: int = 25, window_seconds: float = 60.0) -> None:
        self.server = server
        self.port = port
        self.use_tls = use_tls
        self.username = username
        self.password = password
        self.rate_limit = rate_limit
        self.window_seconds = window_seconds
        self._lock = threading.Lock()
        self._conn: smtplib.SMTP | None = None
        self._sent: deque[float] = deque()

    def _throttle(self) -> None:
        now = time.monotonic()
        while self._sent and now - self._sent[0] >= self.window_seconds:
            self._sent.popleft()
        if self.rate_limit and len(self._sent) >= self.rate_limit:
            wait = self.window_seconds - (now - self._sent[0])
            if wait > 0:
                logger.debug("SMTP rate limit reached, waiting %.1fs", wait)
                time.sleep(wait)
            self._sent.popleft()

    def _connect(self) -> smtplib.SMTP:
        conn = smtplib.SMTP(self.server, self.port, timeout=30)
        if self.use_tls:
            conn.starttls()
        if self.username and self.password:
            conn.login(self.username, self.password)
        return conn

    def send(self, msg) -> None:
        with self._lock:
            self._throttle()
            if self._conn is None:
                self._conn = self._connect()
            try:
                self._conn.send_message(msg)
            except smtplib.SMTPServerDisconnected:
                self._conn = self._connect()
                self._conn.send_message(msg)
            self._sent.append(time.monotonic())

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                try:
                    self._conn.quit()
                except smtplib.SMTPException:
                    logger.debug("SMTP quit failed", exc_info=True)
                self._conn = None


_transport: SmtpTransport | None = None
_transport_lock = threading.Lock()


def get_transport() -> SmtpTransport:
    global _transport
    with _transport_lock:
        if _transport is None:
            cfg = current_app.config
            _transport = SmtpTransport(
                cfg["SMTP_SERVER"],
                cfg.get("SMTP_PORT", 587),
                use_tls=cfg.get("SMTP_USE_TLS", True),
                username=cfg.get("EMAIL_USER"),
                password=cfg.get("EMAIL_PASS"),
                rate_limit=cfg.get("EMAIL_RATE_LIMIT_PER_MINUTE", 25),
            )
        return _transport


def shutdown() -> None:
    """Close the pooled connection (process teardown)."""
    global _transport
    with _transport_lock:
        if _transport is not None:
            _transport.close()
            _transport = None


# ═══════════════════════════════════════════════════════════════════════════
#  Service
# ═══════════════════════════════════════════════════════════════════════════


class EmailService:
    """Send mail through the shared transport and record every attempt."""

    @staticmethod
    def mode() -> str:
        cfg = current_app.config
        if cfg.get("EMAIL_DEBUG_DRYRUN"):
            return "dry_run"
        if not cfg.get("SMTP_SERVER"):
            return "log_only"
        return "smtp"

    @staticmethod
    def _deliver(*, to_email: str, subject: str, html_body: str) -> None:
        cfg = current_app.config
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = cfg.get("EMAIL_FROM") or cfg.get("EMAIL_USER")
        msg["To"] = to_email
        msg.attach(MIMEText(html_body, "html", "utf-8"))
        try:
            get_transport().send(msg)
        except (smtplib.SMTPException, OSError) as exc:
            if is_transient(exc):
                raise TransientBackendError(str(exc), getattr(exc, "smtp_code", None)) from exc
            raise

    @staticmethod
    def _log(*, to_email, subject, html_body, status, attempt, mode, category, error=None) -> EmailLog:
        if mode not in EMAIL_MODES:
            raise ValueError(f"Invalid email mode {mode!r}. Use: {sorted(EMAIL_MODES)}")
        if status not in EMAIL_STATUSES:
            raise ValueError(f"Invalid email status {status!r}. Use: {sorted(EMAIL_STATUSES)}")
        log = EmailLog(
            recipient=to_email,
            subject=subject[:500],
            message=html_body,
            status=status,
            error_message=str(error)[:1000] if error else None,
            attempt=attempt,
            mode=mode,
            category=category,
        )
        db.session.add(log)
        db.session.commit()
        return log

    @classmethod
    def send(cls, *, to_email: str, subject: str, html_body: str,
             category: str = "system") -> EmailLog:
        """Send one message with retries. Returns the last EmailLog row."""
        cfg = current_app.config
        mode = cls.mode()
        verbose = cfg.get("EMAIL_DEBUG_VERBOSE")

        if mode != "smtp":
            if verbose or mode == "dry_run":
                logger.info("Email (%s): to=%s subject='%s'", mode, to_email, subject,
                            extra={"recipient": to_email, "event_type": category})
            return cls._log(to_email=to_email, subject=subject, html_body=html_body,
                            status="success", attempt=1, mode=mode, category=category)

        max_attempts = max(1, int(cfg.get("EMAIL_MAX_ATTEMPTS", 3)))
        base = float(cfg.get("EMAIL_RETRY_BASE_SECONDS", 2.0))
        log = None
        for attempt in range(1, max_attempts + 1):
            try:
                cls._deliver(to_email=to_email, subject=subject, html_body=html_body)
            except TransientBackendError as exc:
                log = cls._log(to_email=to_email, subject=subject, html_body=html_body,
                               status="failure", attempt=attempt, mode=mode,
                               category=category, error=exc)
                if attempt < max_attempts:
                    delay = base * 2 ** (attempt - 1)
                    logger.warning("Transient SMTP failure, retry %d in %.1fs", attempt, delay,
                                   extra={"recipient": to_email})
                    time.sleep(delay)
                    continue
                logger.error("Email failed after %d attempts: to=%s", attempt, to_email,
                             extra={"recipient": to_email})
                return log
            except (smtplib.SMTPException, OSError) as exc:
                logger.error("Email failed: to=%s error=%s", to_email, exc,
                             extra={"recipient": to_email})
                return cls._log(to_email=to_email, subject=subject, html_body=html_body,
                                status="failure", attempt=attempt, mode=mode,
                                category=category, error=exc)
            if verbose:
                logger.info("Email sent: to=%s subject='%s'", to_email, subject,
                            extra={"recipient": to_email, "event_type": category})
            return cls._log(to_email=to_email, subject=subject, html_body=html_body,
                            status="success", attempt=attempt, mode=mode, category=category)
        return log

    @classmethod
    def send_from_template(cls, *, to_email: str, template_name: str,
                           context: dict[str, Any], category: str = "system") -> EmailLog | None:
        rendered = render(template_name, context)
        if rendered is None:
            return None
        subject, html_body = rendered
        return cls.send(to_email=to_email, subject=subject, html_body=html_body,
                        category=category)
