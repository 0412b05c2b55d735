"""
Domain models for the Criticality protocol.

These are pure data structures: the phase chain, per-phase sub-states, the
four-case protocol state, blocking records and the persisted snapshot.
All models are immutable (frozen dataclasses); updates build new values.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import ClassVar, Literal

# =============================================================================
# PHASES AND ARTIFACTS
# =============================================================================


class ProtocolPhase(Enum):
    """Ordered protocol phases. Complete is terminal."""

    IGNITION = "Ignition"
    LATTICE = "Lattice"
    COMPOSITION_AUDIT = "CompositionAudit"
    INJECTION = "Injection"
    MESOSCOPIC = "Mesoscopic"
    MASS_DEFECT = "MassDefect"
    COMPLETE = "Complete"


PROTOCOL_PHASES: tuple[ProtocolPhase, ...] = tuple(ProtocolPhase)


def is_valid_phase(value: object) -> bool:
    """True if value is a ProtocolPhase or the string name of one."""
    if isinstance(value, ProtocolPhase):
        return True
    return isinstance(value, str) and value in {p.value for p in ProtocolPhase}


class ArtifactType(Enum):
    """Durable outputs that gate entry into later phases."""

    SPEC = "spec"
    LATTICE_CODE = "latticeCode"
    WITNESSES = "witnesses"
    CONTRACTS = "contracts"
    VALIDATED_STRUCTURE = "validatedStructure"
    IMPLEMENTED_CODE = "implementedCode"
    VERIFIED_CODE = "verifiedCode"
    FINAL_ARTIFACT = "finalArtifact"
    # Failure reports that gate rollback transitions
    CONTRADICTION_REPORT = "contradictionReport"
    STRUCTURAL_DEFECT_REPORT = "structuralDefectReport"
    CLUSTER_FAILURE_REPORT = "clusterFailureReport"


class ModelTier(Enum):
    """Escalation tiers, in increasing capability and cost."""

    WORKER = "worker"
    FALLBACK = "fallback"
    ARCHITECT = "architect"


MODEL_TIER_ORDER: tuple[ModelTier, ...] = (
    ModelTier.WORKER,
    ModelTier.FALLBACK,
    ModelTier.ARCHITECT,
)


# =============================================================================
# PHASE SUB-STATES
# =============================================================================


class InterviewPhase(Enum):
    DISCOVERY = "Discovery"
    REQUIREMENTS = "Requirements"
    ARCHITECTURE = "Architecture"


class ContradictionSeverity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# --- Ignition ---


@dataclass(frozen=True)
class IgnitionInterviewing:
    step: ClassVar[str] = "interviewing"

    interview_phase: InterviewPhase = InterviewPhase.DISCOVERY
    question_index: int = 0


@dataclass(frozen=True)
class IgnitionSynthesizing:
    step: ClassVar[str] = "synthesizing"

    progress: float = 0


@dataclass(frozen=True)
class IgnitionAwaitingApproval:
    step: ClassVar[str] = "awaitingApproval"


# --- Lattice ---


@dataclass(frozen=True)
class LatticeGeneratingStructure:
    step: ClassVar[str] = "generatingStructure"

    current_module: str | None = None


@dataclass(frozen=True)
class LatticeCompilingCheck:
    step: ClassVar[str] = "compilingCheck"

    attempt: int = 1


@dataclass(frozen=True)
class LatticeRepairingStructure:
    step: ClassVar[str] = "repairingStructure"

    errors: tuple[str, ...] = ()
    repair_attempt: int = 1


# --- CompositionAudit ---


@dataclass(frozen=True)
class CompositionAuditAuditing:
    step: ClassVar[str] = "auditing"

    auditors_completed: int = 0


@dataclass(frozen=True)
class CompositionAuditReportingContradictions:
    step: ClassVar[str] = "reportingContradictions"

    severity: ContradictionSeverity = ContradictionSeverity.LOW


# --- Injection ---


@dataclass(frozen=True)
class InjectionSelectingFunction:
    step: ClassVar[str] = "selectingFunction"


@dataclass(frozen=True)
class InjectionImplementing:
    step: ClassVar[str] = "implementing"

    function_id: str
    attempt: int = 1


@dataclass(frozen=True)
class InjectionVerifying:
    step: ClassVar[str] = "verifying"

    function_id: str


@dataclass(frozen=True)
class InjectionEscalating:
    step: ClassVar[str] = "escalating"

    function_id: str
    from_tier: ModelTier
    to_tier: ModelTier


# --- Mesoscopic ---


@dataclass(frozen=True)
class MesoscopicGeneratingTests:
    step: ClassVar[str] = "generatingTests"

    cluster_id: str | None = None


@dataclass(frozen=True)
class MesoscopicExecutingCluster:
    step: ClassVar[str] = "executingCluster"

    cluster_id: str
    progress: float = 0


@dataclass(frozen=True)
class MesoscopicHandlingVerdict:
    step: ClassVar[str] = "handlingVerdict"

    cluster_id: str
    passed: bool


# --- MassDefect ---


@dataclass(frozen=True)
class MassDefectAnalyzingComplexity:
    step: ClassVar[str] = "analyzingComplexity"


@dataclass(frozen=True)
class MassDefectApplyingTransform:
    step: ClassVar[str] = "applyingTransform"

    pattern_id: str
    function_id: str


@dataclass(frozen=True)
class MassDefectVerifyingSemantics:
    step: ClassVar[str] = "verifyingSemantics"

    transform_id: str


SubState = (
    IgnitionInterviewing
    | IgnitionSynthesizing
    | IgnitionAwaitingApproval
    | LatticeGeneratingStructure
    | LatticeCompilingCheck
    | LatticeRepairingStructure
    | CompositionAuditAuditing
    | CompositionAuditReportingContradictions
    | InjectionSelectingFunction
    | InjectionImplementing
    | InjectionVerifying
    | InjectionEscalating
    | MesoscopicGeneratingTests
    | MesoscopicExecutingCluster
    | MesoscopicHandlingVerdict
    | MassDefectAnalyzingComplexity
    | MassDefectApplyingTransform
    | MassDefectVerifyingSemantics
)

# Disjoint sub-state sets per working phase
SUBSTATES_BY_PHASE: dict[ProtocolPhase, tuple[type, ...]] = {
    ProtocolPhase.IGNITION: (
        IgnitionInterviewing,
        IgnitionSynthesizing,
        IgnitionAwaitingApproval,
    ),
    ProtocolPhase.LATTICE: (
        LatticeGeneratingStructure,
        LatticeCompilingCheck,
        LatticeRepairingStructure,
    ),
    ProtocolPhase.COMPOSITION_AUDIT: (
        CompositionAuditAuditing,
        CompositionAuditReportingContradictions,
    ),
    ProtocolPhase.INJECTION: (
        InjectionSelectingFunction,
        InjectionImplementing,
        InjectionVerifying,
        InjectionEscalating,
    ),
    ProtocolPhase.MESOSCOPIC: (
        MesoscopicGeneratingTests,
        MesoscopicExecutingCluster,
        MesoscopicHandlingVerdict,
    ),
    ProtocolPhase.MASS_DEFECT: (
        MassDefectAnalyzingComplexity,
        MassDefectApplyingTransform,
        MassDefectVerifyingSemantics,
    ),
}


@dataclass(frozen=True)
class PhaseState:
    """A working phase paired with one of its own sub-states."""

    phase: ProtocolPhase
    substate: SubState

    def __post_init__(self) -> None:
        allowed = SUBSTATES_BY_PHASE.get(self.phase)
        if allowed is None:
            raise ValueError(f"Phase {self.phase.value} carries no sub-state")
        if not isinstance(self.substate, allowed):
            raise ValueError(
                f"Sub-state '{self.substate.step}' is not valid for phase "
                f"{self.phase.value}"
            )


def default_substate(phase: ProtocolPhase) -> SubState:
    """Initial sub-state a phase starts in."""
    defaults: dict[ProtocolPhase, SubState] = {
        ProtocolPhase.IGNITION: IgnitionInterviewing(InterviewPhase.DISCOVERY, 0),
        ProtocolPhase.LATTICE: LatticeGeneratingStructure(),
        ProtocolPhase.COMPOSITION_AUDIT: CompositionAuditAuditing(0),
        ProtocolPhase.INJECTION: InjectionSelectingFunction(),
        ProtocolPhase.MESOSCOPIC: MesoscopicGeneratingTests(),
        ProtocolPhase.MASS_DEFECT: MassDefectAnalyzingComplexity(),
    }
    if phase not in defaults:
        raise ValueError(f"Phase {phase.value} has no default sub-state")
    return defaults[phase]


def default_phase_state(phase: ProtocolPhase) -> PhaseState:
    return PhaseState(phase=phase, substate=default_substate(phase))


# =============================================================================
# PROTOCOL STATE
# =============================================================================


class BlockReason(Enum):
    """Why a phase is waiting on a human."""

    CANONICAL_CONFLICT = "canonical_conflict"
    UNRESOLVED_CONTRADICTION = "unresolved_contradiction"
    CIRCUIT_BREAKER = "circuit_breaker"
    SECURITY_REVIEW = "security_review"
    USER_REQUESTED = "user_requested"


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(UTC).isoformat()


@dataclass(frozen=True)
class ActiveState:
    """Normal progression inside a working phase."""

    kind: ClassVar[Literal["Active"]] = "Active"

    phase: PhaseState


@dataclass(frozen=True)
class BlockedState:
    """Paused awaiting a human answer."""

    kind: ClassVar[Literal["Blocked"]] = "Blocked"

    reason: BlockReason
    phase: ProtocolPhase
    query: str
    blocked_at: str
    options: tuple[str, ...] | None = None
    timeout_ms: int | None = None


@dataclass(frozen=True)
class FailedState:
    """Terminated abnormally. recoverable tells the caller a phase retry is sound."""

    kind: ClassVar[Literal["Failed"]] = "Failed"

    phase: ProtocolPhase
    error: str
    failed_at: str
    recoverable: bool
    code: str | None = None
    context: str | None = None


@dataclass(frozen=True)
class CompleteState:
    """Terminal success."""

    kind: ClassVar[Literal["Complete"]] = "Complete"

    artifacts: tuple[ArtifactType, ...] = ()


ProtocolState = ActiveState | BlockedState | FailedState | CompleteState

STATE_KINDS: tuple[str, ...] = ("Active", "Blocked", "Failed", "Complete")


def create_active_state(phase_state: PhaseState) -> ActiveState:
    return ActiveState(phase=phase_state)


def create_blocked_state(
    reason: BlockReason,
    phase: ProtocolPhase,
    query: str,
    options: tuple[str, ...] | list[str] | None = None,
    timeout_ms: int | None = None,
    blocked_at: str | None = None,
) -> BlockedState:
    return BlockedState(
        reason=reason,
        phase=phase,
        query=query,
        blocked_at=blocked_at or utc_now_iso(),
        options=tuple(options) if options is not None else None,
        timeout_ms=timeout_ms,
    )


def create_failed_state(
    phase: ProtocolPhase,
    error: str,
    recoverable: bool = False,
    code: str | None = None,
    context: str | None = None,
    failed_at: str | None = None,
) -> FailedState:
    return FailedState(
        phase=phase,
        error=error,
        failed_at=failed_at or utc_now_iso(),
        recoverable=recoverable,
        code=code,
        context=context,
    )


def create_complete_state(
    artifacts: tuple[ArtifactType, ...] | list[ArtifactType] = (),
) -> CompleteState:
    return CompleteState(artifacts=tuple(artifacts))


def get_phase(state: ProtocolState) -> ProtocolPhase:
    """Phase a state belongs to. Complete maps to the terminal phase."""
    if isinstance(state, ActiveState):
        return state.phase.phase
    if isinstance(state, (BlockedState, FailedState)):
        return state.phase
    if isinstance(state, CompleteState):
        return ProtocolPhase.COMPLETE
    raise TypeError(f"Unknown protocol state: {state!r}")


def get_step(state: ProtocolState) -> str | None:
    """Current sub-state step name, only defined for Active states."""
    if isinstance(state, ActiveState):
        return state.phase.substate.step
    return None


def is_terminal_state(state: ProtocolState) -> bool:
    return isinstance(state, (FailedState, CompleteState))


def can_transition(state: ProtocolState) -> bool:
    """Only Active and Blocked states may precede a transition."""
    return isinstance(state, (ActiveState, BlockedState))


# =============================================================================
# BLOCKING
# =============================================================================


@dataclass(frozen=True)
class BlockingResolution:
    """A human's answer to a blocking query."""

    query_id: str
    response: str
    resolved_at: str
    rationale: str | None = None


@dataclass(frozen=True)
class BlockingRecord:
    """One open (or answered) question raised during a phase."""

    id: str
    phase: ProtocolPhase
    query: str
    blocked_at: str
    resolved: bool = False
    options: tuple[str, ...] | None = None
    timeout_ms: int | None = None
    resolution: BlockingResolution | None = None


# =============================================================================
# SNAPSHOT
# =============================================================================


@dataclass(frozen=True)
class ProtocolStateSnapshot:
    """The unit of persistence."""

    state: ProtocolState
    artifacts: tuple[ArtifactType, ...] = ()
    blocking_queries: tuple[BlockingRecord, ...] = ()

    def artifact_set(self) -> frozenset[ArtifactType]:
        return frozenset(self.artifacts)


def create_initial_state_snapshot() -> ProtocolStateSnapshot:
    """Active in Ignition with no artifacts and no open queries."""
    return ProtocolStateSnapshot(
        state=create_active_state(default_phase_state(ProtocolPhase.IGNITION)),
        artifacts=(),
        blocking_queries=(),
    )


# =============================================================================
# DECISION LEDGER
# =============================================================================


class DecisionCategory(Enum):
    ARCHITECTURAL = "architectural"
    PHASE_STRUCTURE = "phase_structure"
    INJECTION = "injection"
    BLOCKING = "blocking"
    TESTING = "testing"
    ORCHESTRATOR = "orchestrator"
    CONSTRAINT = "constraint"
    SECURITY = "security"


class DecisionSource(Enum):
    USER_EXPLICIT = "user_explicit"
    DESIGN_CHOICE = "design_choice"
    INJECTION_FAILURE = "injection_failure"
    AUDITOR_CONTRADICTION = "auditor_contradiction"
    MESOSCOPIC_FAILURE = "mesoscopic_failure"
    HUMAN_RESOLUTION = "human_resolution"


class ConfidenceLevel(Enum):
    CANONICAL = "canonical"
    DELEGATED = "delegated"
    INFERRED = "inferred"
    PROVISIONAL = "provisional"
    SUSPENDED = "suspended"
    BLOCKING = "blocking"


class DecisionStatus(Enum):
    ACTIVE = "active"
    SUPERSEDED = "superseded"
    INVALIDATED = "invalidated"


class DecisionPhase(Enum):
    DESIGN = "design"
    IGNITION = "ignition"
    LATTICE = "lattice"
    COMPOSITION_AUDIT = "composition_audit"
    INJECTION = "injection"
    MESOSCOPIC = "mesoscopic"
    MASS_DEFECT = "mass_defect"


_DECISION_PHASE_BY_PROTOCOL_PHASE: dict[ProtocolPhase, DecisionPhase] = {
    ProtocolPhase.IGNITION: DecisionPhase.IGNITION,
    ProtocolPhase.LATTICE: DecisionPhase.LATTICE,
    ProtocolPhase.COMPOSITION_AUDIT: DecisionPhase.COMPOSITION_AUDIT,
    ProtocolPhase.INJECTION: DecisionPhase.INJECTION,
    ProtocolPhase.MESOSCOPIC: DecisionPhase.MESOSCOPIC,
    ProtocolPhase.MASS_DEFECT: DecisionPhase.MASS_DEFECT,
}


def decision_phase_for(phase: ProtocolPhase) -> DecisionPhase:
    """Ledger phase for a protocol phase; Complete falls back to design."""
    return _DECISION_PHASE_BY_PROTOCOL_PHASE.get(phase, DecisionPhase.DESIGN)


@dataclass(frozen=True)
class DecisionInput:
    """Fields a caller supplies when appending a decision."""

    category: DecisionCategory
    constraint: str
    source: DecisionSource
    confidence: ConfidenceLevel
    phase: DecisionPhase
    rationale: str | None = None
    dependencies: tuple[str, ...] = ()
    supersedes: tuple[str, ...] = ()
    failure_context: str | None = None
    human_query_id: str | None = None


@dataclass(frozen=True)
class Decision:
    """An entry in the append-only decision ledger."""

    id: str
    timestamp: str
    category: DecisionCategory
    constraint: str
    source: DecisionSource
    confidence: ConfidenceLevel
    status: DecisionStatus
    phase: DecisionPhase
    rationale: str | None = None
    dependencies: tuple[str, ...] = field(default_factory=tuple)
    supersedes: tuple[str, ...] = field(default_factory=tuple)
    superseded_by: str | None = None
    failure_context: str | None = None
    human_query_id: str | None = None


# =============================================================================
# COLLABORATOR RESULTS
# =============================================================================


@dataclass(frozen=True)
class ActionResult:
    """Outcome of an external operation run by a tick action."""

    success: bool
    artifacts: tuple[ArtifactType, ...] = ()
    error: str | None = None
    recoverable: bool | None = None


class NotificationEvent(Enum):
    BLOCK = "block"
    COMPLETE = "complete"
    ERROR = "error"
    PHASE_CHANGE = "phase_change"


@dataclass(frozen=True)
class ModelRequest:
    """A routed completion request."""

    tier: ModelTier
    prompt: str
    system_prompt: str | None = None
    max_tokens: int | None = None
    timeout_ms: int | None = None


@dataclass(frozen=True)
class ModelResult:
    """Response from a model router call."""

    success: bool
    content: str = ""
    error: str | None = None
    retryable: bool = False
