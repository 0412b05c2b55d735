"""
Infrastructure layer for the Criticality protocol.

Contains adapters for external concerns (state files, ledger, webhooks).
"""

from criticality.infrastructure.notifications import WebhookNotificationService
from criticality.infrastructure.operations import NoopOperations
from criticality.infrastructure.persistence import (
    FilesystemDecisionLedger,
    InMemoryDecisionLedger,
    load_state,
    save_state,
)

__all__ = [
    # Persistence
    "load_state",
    "save_state",
    "InMemoryDecisionLedger",
    "FilesystemDecisionLedger",
    # Notifications
    "WebhookNotificationService",
    # Operations
    "NoopOperations",
]
