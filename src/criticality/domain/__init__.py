"""
Domain layer for the Criticality protocol.

Contains the state model, transition table, blocking and escalation rules.
No I/O happens here.
"""

from criticality.domain.blocking import (
    TimeoutStrategy,
    check_timeout,
    enter_blocking,
    handle_timeout,
    resolve_blocking,
)
from criticality.domain.escalation import (
    EscalationConfig,
    EscalationDecision,
    determine_escalation,
)
from criticality.domain.exceptions import (
    BlockingError,
    ConfigurationError,
    LedgerValidationError,
    StartupStateError,
    StatePersistenceError,
)
from criticality.domain.interfaces import (
    DecisionLedgerInterface,
    ExternalOperations,
    ModelRouter,
    NotificationServiceInterface,
)
from criticality.domain.models import (
    ActiveState,
    ArtifactType,
    BlockedState,
    BlockingRecord,
    CompleteState,
    FailedState,
    ModelTier,
    ProtocolPhase,
    ProtocolState,
    ProtocolStateSnapshot,
    create_initial_state_snapshot,
)
from criticality.domain.transitions import (
    TransitionResult,
    get_valid_transitions,
    transition,
)

__all__ = [
    # Models
    "ProtocolPhase",
    "ArtifactType",
    "ModelTier",
    "ActiveState",
    "BlockedState",
    "FailedState",
    "CompleteState",
    "ProtocolState",
    "ProtocolStateSnapshot",
    "BlockingRecord",
    "create_initial_state_snapshot",
    # Transitions
    "TransitionResult",
    "get_valid_transitions",
    "transition",
    # Blocking
    "TimeoutStrategy",
    "enter_blocking",
    "resolve_blocking",
    "check_timeout",
    "handle_timeout",
    # Escalation
    "EscalationConfig",
    "EscalationDecision",
    "determine_escalation",
    # Interfaces
    "ExternalOperations",
    "NotificationServiceInterface",
    "ModelRouter",
    "DecisionLedgerInterface",
    # Exceptions
    "StatePersistenceError",
    "BlockingError",
    "LedgerValidationError",
    "StartupStateError",
    "ConfigurationError",
]
