"""
Phase transition table.

Pure functions over the fixed phase chain: which phase follows which, which
artifacts gate entry, and whether a requested transition may fire. The
forward chain is linear; the three rollback edges are exposed separately and
are never taken implicitly.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum

from criticality.domain.models import (
    ArtifactType,
    BlockedState,
    CompleteState,
    FailedState,
    ProtocolPhase,
    ProtocolState,
    create_active_state,
    create_complete_state,
    default_phase_state,
    get_phase,
)

# =============================================================================
# TRANSITION TABLES
# =============================================================================

FORWARD_TRANSITIONS: dict[ProtocolPhase, ProtocolPhase] = {
    ProtocolPhase.IGNITION: ProtocolPhase.LATTICE,
    ProtocolPhase.LATTICE: ProtocolPhase.COMPOSITION_AUDIT,
    ProtocolPhase.COMPOSITION_AUDIT: ProtocolPhase.INJECTION,
    ProtocolPhase.INJECTION: ProtocolPhase.MESOSCOPIC,
    ProtocolPhase.MESOSCOPIC: ProtocolPhase.MASS_DEFECT,
    ProtocolPhase.MASS_DEFECT: ProtocolPhase.COMPLETE,
}

# Artifacts that must exist before entering the key phase
REQUIRED_ARTIFACTS: dict[ProtocolPhase, tuple[ArtifactType, ...]] = {
    ProtocolPhase.LATTICE: (ArtifactType.SPEC,),
    ProtocolPhase.COMPOSITION_AUDIT: (
        ArtifactType.LATTICE_CODE,
        ArtifactType.WITNESSES,
        ArtifactType.CONTRACTS,
    ),
    ProtocolPhase.INJECTION: (ArtifactType.VALIDATED_STRUCTURE,),
    ProtocolPhase.MESOSCOPIC: (ArtifactType.IMPLEMENTED_CODE,),
    ProtocolPhase.MASS_DEFECT: (ArtifactType.VERIFIED_CODE,),
    ProtocolPhase.COMPLETE: (ArtifactType.FINAL_ARTIFACT,),
}

# Rollback edges, each gated on a failure report
FAILURE_TRANSITIONS: dict[
    tuple[ProtocolPhase, ProtocolPhase], tuple[ArtifactType, ...]
] = {
    (ProtocolPhase.COMPOSITION_AUDIT, ProtocolPhase.IGNITION): (
        ArtifactType.CONTRADICTION_REPORT,
    ),
    (ProtocolPhase.INJECTION, ProtocolPhase.LATTICE): (
        ArtifactType.STRUCTURAL_DEFECT_REPORT,
    ),
    (ProtocolPhase.MESOSCOPIC, ProtocolPhase.INJECTION): (
        ArtifactType.CLUSTER_FAILURE_REPORT,
    ),
}


def get_valid_transitions(phase: ProtocolPhase) -> tuple[ProtocolPhase, ...]:
    """The (at most one) successor of a phase, independent of artifacts."""
    successor = FORWARD_TRANSITIONS.get(phase)
    return (successor,) if successor is not None else ()


def get_next_phase(phase: ProtocolPhase) -> ProtocolPhase | None:
    return FORWARD_TRANSITIONS.get(phase)


def get_required_artifacts(phase: ProtocolPhase) -> tuple[ArtifactType, ...]:
    """Artifacts required to enter a phase through the forward chain."""
    return REQUIRED_ARTIFACTS.get(phase, ())


def get_failure_transitions(phase: ProtocolPhase) -> tuple[ProtocolPhase, ...]:
    return tuple(to for (frm, to) in FAILURE_TRANSITIONS if frm == phase)


def is_valid_transition(from_phase: ProtocolPhase, to_phase: ProtocolPhase) -> bool:
    return FORWARD_TRANSITIONS.get(from_phase) == to_phase


def is_valid_failure_transition(
    from_phase: ProtocolPhase, to_phase: ProtocolPhase
) -> bool:
    return (from_phase, to_phase) in FAILURE_TRANSITIONS


def missing_artifacts(
    required: Iterable[ArtifactType], available: Iterable[ArtifactType]
) -> tuple[ArtifactType, ...]:
    """Required artifacts absent from the available set, sorted by name."""
    have = set(available)
    return tuple(sorted((a for a in required if a not in have), key=lambda a: a.value))


# =============================================================================
# TRANSITION RESULT
# =============================================================================


class TransitionErrorCode(Enum):
    INVALID_TRANSITION = "INVALID_TRANSITION"
    MISSING_ARTIFACTS = "MISSING_ARTIFACTS"
    STATE_NOT_ACTIVE = "STATE_NOT_ACTIVE"
    ALREADY_COMPLETE = "ALREADY_COMPLETE"
    BLOCKED_STATE = "BLOCKED_STATE"
    FAILED_STATE = "FAILED_STATE"


@dataclass(frozen=True)
class TransitionError:
    code: TransitionErrorCode
    message: str
    from_phase: ProtocolPhase
    to_phase: ProtocolPhase
    missing_artifacts: tuple[ArtifactType, ...] = ()


@dataclass(frozen=True)
class TransitionResult:
    """Either a new state (success) or a rejection."""

    success: bool
    state: ProtocolState | None = None
    error: TransitionError | None = None


def _reject(
    code: TransitionErrorCode,
    message: str,
    from_phase: ProtocolPhase,
    to_phase: ProtocolPhase,
    missing: tuple[ArtifactType, ...] = (),
) -> TransitionResult:
    return TransitionResult(
        success=False,
        error=TransitionError(code, message, from_phase, to_phase, missing),
    )


def _check_source_state(
    state: ProtocolState, target_phase: ProtocolPhase
) -> TransitionResult | None:
    """Rejection for states that cannot precede a transition, else None."""
    if isinstance(state, CompleteState):
        return _reject(
            TransitionErrorCode.ALREADY_COMPLETE,
            "Protocol execution is already complete; no further transitions allowed",
            ProtocolPhase.COMPLETE,
            target_phase,
        )
    from_phase = get_phase(state)
    if isinstance(state, BlockedState):
        return _reject(
            TransitionErrorCode.BLOCKED_STATE,
            f"Cannot transition from '{from_phase.value}' while in blocking state "
            "awaiting human intervention",
            from_phase,
            target_phase,
        )
    if isinstance(state, FailedState):
        return _reject(
            TransitionErrorCode.FAILED_STATE,
            f"Cannot transition from '{from_phase.value}' which is in a failed state",
            from_phase,
            target_phase,
        )
    return None


def _invalid_transition_message(
    from_phase: ProtocolPhase, to_phase: ProtocolPhase
) -> str:
    successor = FORWARD_TRANSITIONS.get(from_phase)
    if successor is None:
        return f"Phase '{from_phase.value}' does not support any transitions"
    order = list(ProtocolPhase)
    from_index, to_index = order.index(from_phase), order.index(to_phase)
    if to_index > from_index + 1:
        return (
            f"Cannot skip phases: transition from '{from_phase.value}' to "
            f"'{to_phase.value}' is not allowed. Valid next phase: '{successor.value}'"
        )
    return (
        f"Invalid transition from '{from_phase.value}' to '{to_phase.value}'. "
        f"Valid next phase: '{successor.value}'"
    )


def _enter(
    target_phase: ProtocolPhase, available: frozenset[ArtifactType]
) -> TransitionResult:
    if target_phase is ProtocolPhase.COMPLETE:
        ordered = tuple(a for a in ArtifactType if a in available)
        return TransitionResult(success=True, state=create_complete_state(ordered))
    return TransitionResult(
        success=True,
        state=create_active_state(default_phase_state(target_phase)),
    )


def transition(
    state: ProtocolState,
    target_phase: ProtocolPhase,
    available_artifacts: Iterable[ArtifactType] = (),
) -> TransitionResult:
    """
    Move an Active state forward to target_phase.

    Succeeds only when target_phase is the successor of the current phase and
    every artifact required to enter it is available. The new state carries
    the target phase's default sub-state, or is Complete.

    Args:
        state: Current protocol state
        target_phase: Requested phase
        available_artifacts: Artifacts produced so far

    Returns:
        TransitionResult with the new state or a rejection.
    """
    rejected = _check_source_state(state, target_phase)
    if rejected is not None:
        return rejected

    from_phase = get_phase(state)
    if not is_valid_transition(from_phase, target_phase):
        return _reject(
            TransitionErrorCode.INVALID_TRANSITION,
            _invalid_transition_message(from_phase, target_phase),
            from_phase,
            target_phase,
        )

    available = frozenset(available_artifacts)
    missing = missing_artifacts(get_required_artifacts(target_phase), available)
    if missing:
        return _reject(
            TransitionErrorCode.MISSING_ARTIFACTS,
            f"Cannot transition from '{from_phase.value}' to '{target_phase.value}': "
            f"missing required artifacts: {', '.join(a.value for a in missing)}",
            from_phase,
            target_phase,
            missing,
        )

    return _enter(target_phase, available)


def failure_transition(
    state: ProtocolState,
    target_phase: ProtocolPhase,
    available_artifacts: Iterable[ArtifactType] = (),
) -> TransitionResult:
    """Roll an Active state back along one of the failure edges."""
    rejected = _check_source_state(state, target_phase)
    if rejected is not None:
        return rejected

    from_phase = get_phase(state)
    required = FAILURE_TRANSITIONS.get((from_phase, target_phase))
    if required is None:
        valid = ", ".join(p.value for p in get_failure_transitions(from_phase))
        return _reject(
            TransitionErrorCode.INVALID_TRANSITION,
            f"Cannot transition from '{from_phase.value}' to '{target_phase.value}': "
            f"not a valid failure transition. Valid failure transitions: {valid or 'none'}",
            from_phase,
            target_phase,
        )

    available = frozenset(available_artifacts)
    missing = missing_artifacts(required, available)
    if missing:
        return _reject(
            TransitionErrorCode.MISSING_ARTIFACTS,
            f"Cannot roll back from '{from_phase.value}' to '{target_phase.value}': "
            f"missing required artifacts: {', '.join(a.value for a in missing)}",
            from_phase,
            target_phase,
            missing,
        )

    return _enter(target_phase, available)
