"""
Criticality: a phase-driven protocol for specification-to-code generation.

A durable state machine walks a project through Ignition, Lattice,
CompositionAudit, Injection, Mesoscopic and MassDefect. Each tick moves at
most one step, every state change is persisted atomically, and humans are
consulted through blocking queries recorded in a decision ledger.

Example:
    from criticality import ArtifactType, create_orchestrator
    from criticality.infrastructure import NoopOperations

    orchestrator = create_orchestrator(".criticality-state.json", NoopOperations())
    orchestrator.add_artifact(ArtifactType.SPEC)
    result = orchestrator.run()
    print(result.stop_reason)
"""

# Application layer (tick loop, checkpoint/resume)
from criticality.application.checkpoint_service import (
    get_startup_state,
    resume_from_checkpoint,
)
from criticality.application.orchestrator import (
    Orchestrator,
    TickResult,
    TickStopReason,
    create_orchestrator,
    execute_tick,
)
from criticality.config import CriticalityConfig, load_config

# Domain exceptions
from criticality.domain.exceptions import (
    BlockingError,
    StartupStateError,
    StatePersistenceError,
)
from criticality.domain.models import (
    ArtifactType,
    ProtocolPhase,
    ProtocolStateSnapshot,
    create_initial_state_snapshot,
)

# Infrastructure (explicit import encouraged for dependency injection)
from criticality.infrastructure.persistence import load_state, save_state

__version__ = "0.1.0"

__all__ = [
    # Version
    "__version__",
    # Domain
    "ArtifactType",
    "ProtocolPhase",
    "ProtocolStateSnapshot",
    "create_initial_state_snapshot",
    # Application
    "Orchestrator",
    "TickResult",
    "TickStopReason",
    "create_orchestrator",
    "execute_tick",
    "get_startup_state",
    "resume_from_checkpoint",
    # Config
    "CriticalityConfig",
    "load_config",
    # Infrastructure
    "load_state",
    "save_state",
    # Exceptions
    "BlockingError",
    "StartupStateError",
    "StatePersistenceError",
]
