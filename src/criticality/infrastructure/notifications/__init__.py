"""
Notification adapters for protocol events.
"""

from criticality.infrastructure.notifications.webhook import (
    ChannelSendResult,
    NotificationSendResult,
    WebhookNotificationService,
)

__all__ = [
    "ChannelSendResult",
    "NotificationSendResult",
    "WebhookNotificationService",
]
