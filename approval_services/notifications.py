"""
approval_services.notifications -- Notification gateways and intent dispatch.

Responsibility:
    Turns the notify-intents produced by the Workflow Engine into messages.
    Delivery is best-effort: a failed notification is logged and reported,
    never allowed to undo the approval transition that produced it.

Gateways:
    - ``LoggingNotificationGateway`` -- records and logs every message
      (development, tests).
    - ``SmtpNotificationGateway`` -- plain-text e-mail over smtplib.  When
      no SMTP host is configured, messages are logged but not sent.
"""

from __future__ import annotations

import smtplib
import time
from dataclasses import dataclass, field
from email.mime.text import MIMEText
from typing import Any, Callable, Iterable, Mapping, Protocol

from approval_config.schema import SmtpSettings
from approval_kernel.domain.approval import NotificationKind, NotifyIntent
from approval_kernel.exceptions import NotificationDeliveryError
from approval_kernel.logging_config import get_logger

logger = get_logger("services.notifications")


# ---------------------------------------------------------------------------
# Message templates
# ---------------------------------------------------------------------------

_TEMPLATES: dict[NotificationKind, dict[str, str]] = {
    NotificationKind.APPROVAL_REQUIRED: {
        "subject": "Approval required: expense report {expense_report_id}",
        "body": (
            "Expense report {expense_report_id} is waiting for your decision "
            "at step '{step_name}' (step {step_index}).\n\n"
            "Approval request: {request_id}\n"
        ),
    },
    NotificationKind.APPROVED: {
        "subject": "Expense report {expense_report_id} approved",
        "body": (
            "Your expense report {expense_report_id} has been approved.\n\n"
            "Final approver: {actor_id}\n"
            "Comment: {comment}\n"
        ),
    },
    NotificationKind.REJECTED: {
        "subject": "Expense report {expense_report_id} rejected",
        "body": (
            "Your expense report {expense_report_id} was rejected at step "
            "'{step_name}' by {actor_id}.\n\n"
            "Comment: {comment}\n"
        ),
    },
    NotificationKind.INFO_REQUESTED: {
        "subject": "More information needed: expense report {expense_report_id}",
        "body": (
            "{actor_id} needs more information before deciding on expense "
            "report {expense_report_id}.\n\n"
            "Question: {comment}\n"
        ),
    },
    NotificationKind.INFO_PROVIDED: {
        "subject": "Information provided: expense report {expense_report_id}",
        "body": (
            "The submitter answered your request for information on expense "
            "report {expense_report_id}. It is waiting for your decision "
            "again.\n\n"
            "Reply: {comment}\n"
        ),
    },
}


class _SafeDict(dict):
    """Dict that returns {key} for missing keys instead of raising."""

    def __missing__(self, key):
        return f"{{{key}}}"


def render_message(
    template_kind: NotificationKind, payload: Mapping[str, Any],
) -> tuple[str, str]:
    """Return ``(subject, body)`` for a notification."""
    template = _TEMPLATES[template_kind]
    context = _SafeDict({"comment": "", "actor_id": "", **payload})
    return (
        template["subject"].format_map(context),
        template["body"].format_map(context),
    )


# ---------------------------------------------------------------------------
# Gateways
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DeliveryResult:
    """Outcome of one delivery attempt."""

    ok: bool
    reason: str | None = None

    @classmethod
    def delivered(cls) -> DeliveryResult:
        return cls(ok=True)

    @classmethod
    def failed(cls, reason: str) -> DeliveryResult:
        return cls(ok=False, reason=reason)


class NotificationGateway(Protocol):
    def send(
        self,
        recipient_id: str,
        template_kind: NotificationKind,
        payload: Mapping[str, Any],
    ) -> DeliveryResult:
        ...


@dataclass(frozen=True)
class SentMessage:
    recipient_id: str
    template_kind: NotificationKind
    subject: str
    body: str
    payload: Mapping[str, Any] = field(default_factory=dict)


class LoggingNotificationGateway:
    """Logs every message and keeps it in ``sent``."""

    def __init__(self) -> None:
        self.sent: list[SentMessage] = []

    def send(
        self,
        recipient_id: str,
        template_kind: NotificationKind,
        payload: Mapping[str, Any],
    ) -> DeliveryResult:
        subject, body = render_message(template_kind, payload)
        self.sent.append(
            SentMessage(recipient_id, template_kind, subject, body, dict(payload)),
        )
        logger.info(
            "notification_logged",
            extra={
                "recipient_id": recipient_id,
                "template_kind": template_kind.value,
                "subject": subject,
            },
        )
        return DeliveryResult.delivered()


class SmtpNotificationGateway:
    """Plain-text e-mail delivery.

    ``address_lookup`` maps a user id to an e-mail address; a recipient
    without an address is a failed delivery, not an exception.  With no
    SMTP host configured every message is logged and counts as delivered,
    whether or not an address is known.
    """

    def __init__(
        self,
        settings: SmtpSettings,
        address_lookup: Callable[[str], str | None],
    ) -> None:
        self._settings = settings
        self._lookup = address_lookup

    def send(
        self,
        recipient_id: str,
        template_kind: NotificationKind,
        payload: Mapping[str, Any],
    ) -> DeliveryResult:
        subject, body = render_message(template_kind, payload)
        address = self._lookup(recipient_id)

        if not self._settings.enabled:
            logger.info(
                "notification_logged",
                extra={
                    "recipient_id": recipient_id,
                    "to_email": address,
                    "template_kind": template_kind.value,
                    "subject": subject,
                    "smtp_enabled": False,
                },
            )
            return DeliveryResult.delivered()

        if not address:
            return DeliveryResult.failed(f"no e-mail address for {recipient_id}")

        msg = MIMEText(body, "plain")
        msg["Subject"] = subject
        msg["From"] = self._settings.sender
        msg["To"] = address

        try:
            with smtplib.SMTP(
                self._settings.host, self._settings.port, timeout=self._settings.timeout_seconds,
            ) as smtp:
                if self._settings.use_tls:
                    smtp.starttls()
                if self._settings.username and self._settings.password:
                    smtp.login(self._settings.username, self._settings.password)
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            return DeliveryResult.failed(str(exc)[:1000])

        logger.info(
            "notification_sent",
            extra={
                "recipient_id": recipient_id,
                "to_email": address,
                "template_kind": template_kind.value,
            },
        )
        return DeliveryResult.delivered()


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DispatchReport:
    """Per-intent delivery outcome, reported back to the caller."""

    recipient_id: str
    template_kind: NotificationKind
    delivered: bool
    attempts: int
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "recipient_id": self.recipient_id,
            "template_kind": self.template_kind.value,
            "delivered": self.delivered,
            "attempts": self.attempts,
            "error": self.error,
        }


def dispatch_intents(
    gateway: NotificationGateway,
    intents: Iterable[NotifyIntent],
    max_attempts: int = 1,
    budget_seconds: float | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> list[DispatchReport]:
    """Send every intent; failures are logged and reported, never raised.

    A gateway that raises is treated the same as one that returns a failed
    ``DeliveryResult``.  Once ``budget_seconds`` have elapsed no further
    attempt starts; the remaining intents are reported undelivered.  A send
    already in progress is bounded only by the gateway's own timeout.
    """
    deadline = None if budget_seconds is None else clock() + budget_seconds
    reports: list[DispatchReport] = []
    for intent in intents:
        attempts = 0
        result = DeliveryResult.failed("notification budget exhausted")
        while attempts < max(1, max_attempts):
            if deadline is not None and clock() >= deadline:
                break
            attempts += 1
            try:
                result = gateway.send(
                    intent.recipient_id, intent.template_kind, intent.payload,
                )
            except Exception as exc:
                result = DeliveryResult.failed(f"{type(exc).__name__}: {exc}")
            if result.ok:
                break

        if not result.ok:
            error = NotificationDeliveryError(
                intent.recipient_id,
                intent.template_kind.value,
                result.reason or "unknown",
            )
            logger.warning(
                "notification_delivery_failed",
                extra={
                    "recipient_id": intent.recipient_id,
                    "template_kind": intent.template_kind.value,
                    "attempts": attempts,
                    "error_code": error.code,
                    "reason": error.reason,
                },
            )

        reports.append(
            DispatchReport(
                recipient_id=intent.recipient_id,
                template_kind=intent.template_kind,
                delivered=result.ok,
                attempts=attempts,
                error=None if result.ok else result.reason,
            )
        )
    return reports
