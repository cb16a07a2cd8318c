"""
approval_services -- Service facade and notification delivery.

The facade is the only entry point for external callers; it owns
transactions, timeouts and post-commit notification dispatch.
"""

from approval_services.facade import ADMIN_ROLE, ApprovalFacade
from approval_services.notifications import (
    DeliveryResult,
    DispatchReport,
    LoggingNotificationGateway,
    NotificationGateway,
    SentMessage,
    SmtpNotificationGateway,
    dispatch_intents,
    render_message,
)
from approval_services.responses import FacadeResponse, error_response, status_for

__all__ = [
    "ADMIN_ROLE",
    "ApprovalFacade",
    "DeliveryResult",
    "DispatchReport",
    "FacadeResponse",
    "LoggingNotificationGateway",
    "NotificationGateway",
    "SentMessage",
    "SmtpNotificationGateway",
    "dispatch_intents",
    "error_response",
    "render_message",
    "status_for",
]
