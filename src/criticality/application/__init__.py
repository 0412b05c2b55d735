"""
Application layer for the Criticality protocol.

Contains the tick loop and the checkpoint/resume service that coordinate
domain objects with persistence and notifications.
"""

from criticality.application.checkpoint_service import (
    ResumeResult,
    StartupState,
    get_startup_state,
    resume_from_checkpoint,
)
from criticality.application.orchestrator import (
    Actions,
    Guards,
    Orchestrator,
    TickResult,
    TickStopReason,
    TransitionDefinition,
    create_orchestrator,
    execute_tick,
    format_status,
    get_protocol_status,
)

__all__ = [
    "Actions",
    "Guards",
    "Orchestrator",
    "ResumeResult",
    "StartupState",
    "TickResult",
    "TickStopReason",
    "TransitionDefinition",
    "create_orchestrator",
    "execute_tick",
    "format_status",
    "get_protocol_status",
    "get_startup_state",
    "resume_from_checkpoint",
]
