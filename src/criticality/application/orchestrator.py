"""
Orchestrator: the protocol tick loop.

Each tick inspects the current state, evaluates the guard of the outgoing
transition, executes at most one transition's action, and persists the
result. The orchestrator classifies and sequences; it never produces
artifacts itself.
"""

import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from criticality.application.checkpoint_service import get_startup_state
from criticality.domain.blocking import (
    check_timeout,
    enter_blocking,
    find_open_record,
    record_from_blocked_state,
    record_resolution_decision,
)
from criticality.domain.exceptions import (
    BlockingError,
    BlockingErrorCode,
    PersistenceErrorType,
    StatePersistenceError,
)
from criticality.domain.interfaces import (
    DecisionLedgerInterface,
    ExternalOperations,
    NotificationServiceInterface,
)
from criticality.domain.models import (
    ActionResult,
    ActiveState,
    ArtifactType,
    BlockedState,
    BlockingRecord,
    BlockingResolution,
    BlockReason,
    CompleteState,
    FailedState,
    NotificationEvent,
    ProtocolPhase,
    ProtocolStateSnapshot,
    create_active_state,
    create_failed_state,
    default_phase_state,
    get_phase,
    get_step,
    utc_now_iso,
)
from criticality.domain.transitions import (
    FORWARD_TRANSITIONS,
    get_required_artifacts,
    get_valid_transitions,
    transition,
)
from criticality.infrastructure.persistence.state_file import save_state

logger = logging.getLogger(__name__)


# =============================================================================
# TICK CONTEXT AND RESULT
# =============================================================================


@dataclass(frozen=True)
class TickContext:
    """Everything one tick may read."""

    snapshot: ProtocolStateSnapshot
    artifacts: frozenset[ArtifactType]
    operations: ExternalOperations
    pending_resolutions: tuple[BlockingResolution, ...] = ()
    notification_service: NotificationServiceInterface | None = None
    transitions: tuple["TransitionDefinition", ...] | None = None
    now: datetime | None = None


class TickStopReason(Enum):
    COMPLETE = "COMPLETE"
    BLOCKED = "BLOCKED"
    FAILED = "FAILED"
    NO_VALID_TRANSITION = "NO_VALID_TRANSITION"
    EXTERNAL_ERROR = "EXTERNAL_ERROR"


@dataclass(frozen=True)
class TickResult:
    transitioned: bool
    snapshot: ProtocolStateSnapshot
    should_continue: bool
    stop_reason: TickStopReason | None = None
    error: str | None = None


Guard = Callable[[TickContext], bool]
Action = Callable[[TickContext], ActionResult]


# =============================================================================
# GUARDS AND ACTIONS
# =============================================================================


class Guards:
    """Composable guard constructors."""

    @staticmethod
    def and_(*guards: Guard) -> Guard:
        return lambda ctx: all(g(ctx) for g in guards)

    @staticmethod
    def or_(*guards: Guard) -> Guard:
        return lambda ctx: any(g(ctx) for g in guards)

    @staticmethod
    def not_(guard: Guard) -> Guard:
        return lambda ctx: not guard(ctx)

    @staticmethod
    def has_artifacts(*artifacts: ArtifactType) -> Guard:
        return lambda ctx: all(a in ctx.artifacts for a in artifacts)

    @staticmethod
    def is_active() -> Guard:
        return lambda ctx: isinstance(ctx.snapshot.state, ActiveState)

    @staticmethod
    def blocking_resolved() -> Guard:
        return lambda ctx: len(ctx.pending_resolutions) > 0

    @staticmethod
    def always() -> Guard:
        return lambda ctx: True

    @staticmethod
    def never() -> Guard:
        return lambda ctx: False


class Actions:
    """Sequenceable action constructors."""

    @staticmethod
    def sequence(*actions: Action) -> Action:
        """Run actions in order, stopping at the first failure."""

        def run(ctx: TickContext) -> ActionResult:
            collected: list[ArtifactType] = []
            for action in actions:
                result = action(ctx)
                if not result.success:
                    return result
                collected.extend(result.artifacts)
            return ActionResult(success=True, artifacts=tuple(collected))

        return run

    @staticmethod
    def produce_artifacts(*artifacts: ArtifactType) -> Action:
        return lambda ctx: ActionResult(success=True, artifacts=artifacts)

    @staticmethod
    def noop() -> Action:
        return lambda ctx: ActionResult(success=True)

    @staticmethod
    def call_model(phase: ProtocolPhase) -> Action:
        return lambda ctx: ctx.operations.execute_model_call(phase)

    @staticmethod
    def compile() -> Action:
        return lambda ctx: ctx.operations.run_compilation()

    @staticmethod
    def test() -> Action:
        return lambda ctx: ctx.operations.run_tests()

    @staticmethod
    def archive(phase: ProtocolPhase) -> Action:
        return lambda ctx: ctx.operations.archive_phase_artifacts(phase)


@dataclass(frozen=True)
class TransitionDefinition:
    """A (from, to, guard, action) edge of the tick loop."""

    from_phase: ProtocolPhase
    to_phase: ProtocolPhase
    guard: Guard
    action: Action


def default_transition_definitions() -> tuple[TransitionDefinition, ...]:
    """One definition per forward edge, gated on its required artifacts."""
    return tuple(
        TransitionDefinition(
            from_phase=source,
            to_phase=target,
            guard=Guards.has_artifacts(*get_required_artifacts(target)),
            action=Actions.noop(),
        )
        for source, target in FORWARD_TRANSITIONS.items()
    )


# =============================================================================
# TICK
# =============================================================================


def _notify(
    service: NotificationServiceInterface | None,
    event: NotificationEvent,
    payload: Any,
) -> None:
    """Best-effort delivery: failures are logged and dropped."""
    if service is None:
        return
    try:
        service.notify(event, payload)
    except Exception as e:
        logger.warning("%s notification failed: %s", event.value, e)


def _merge_artifacts(
    existing: Sequence[ArtifactType], *extra: Iterable[ArtifactType]
) -> tuple[ArtifactType, ...]:
    """Union preserving existing order; new artifacts follow in declaration order."""
    seen = set(existing)
    for group in extra:
        seen.update(group)
    merged = list(existing)
    merged.extend(a for a in ArtifactType if a in seen and a not in existing)
    return tuple(merged)


def _tick_blocked(
    context: TickContext, state: BlockedState, state_path: Path
) -> TickResult:
    snapshot = context.snapshot
    record = find_open_record(snapshot.blocking_queries, state)

    try:
        timed_out = check_timeout(record, context.now).timed_out
    except ValueError as e:
        raise StatePersistenceError(
            f"Blocked state has an invalid blockedAt timestamp: {record.blocked_at!r}",
            PersistenceErrorType.VALIDATION_ERROR,
            cause=e,
        ) from e

    if timed_out:
        failed = create_failed_state(
            phase=state.phase,
            error=f"Blocking query timed out: {state.query}",
            recoverable=True,
            code="TIMEOUT",
            context=f'Unresolved query: "{state.query}"',
        )
        new_snapshot = replace(snapshot, state=failed)
        save_state(new_snapshot, state_path)
        logger.info("Blocking query in %s timed out", state.phase.value)
        _notify(context.notification_service, NotificationEvent.ERROR, failed)
        return TickResult(
            transitioned=True,
            snapshot=new_snapshot,
            should_continue=False,
            stop_reason=TickStopReason.FAILED,
            error=f"Blocking query timed out after {state.timeout_ms}ms",
        )

    if context.pending_resolutions:
        resolution = context.pending_resolutions[0]
        new_snapshot = replace(
            snapshot,
            state=create_active_state(default_phase_state(state.phase)),
            blocking_queries=tuple(
                q for q in snapshot.blocking_queries if q.id != resolution.query_id
            ),
        )
        save_state(new_snapshot, state_path)
        logger.info("Resumed %s after resolution of %s", state.phase.value, resolution.query_id)
        return TickResult(transitioned=True, snapshot=new_snapshot, should_continue=True)

    return TickResult(
        transitioned=False,
        snapshot=snapshot,
        should_continue=False,
        stop_reason=TickStopReason.BLOCKED,
    )


def _tick_active(
    context: TickContext, state: ActiveState, state_path: Path
) -> TickResult:
    snapshot = context.snapshot
    phase = get_phase(state)
    targets = get_valid_transitions(phase)
    definitions = context.transitions
    if definitions is None:
        definitions = default_transition_definitions()

    for target in targets:
        definition = next(
            (d for d in definitions if d.from_phase is phase and d.to_phase is target),
            None,
        )
        if definition is None:
            continue
        if not definition.guard(context):
            logger.debug("Guard for %s -> %s not satisfied", phase.value, target.value)
            return TickResult(transitioned=False, snapshot=snapshot, should_continue=True)

        action_result = definition.action(context)
        if not action_result.success:
            failed = create_failed_state(
                phase=phase,
                error=action_result.error or f"Action for {phase.value} -> {target.value} failed",
                recoverable=bool(action_result.recoverable),
                code="ACTION_FAILED",
            )
            new_snapshot = replace(snapshot, state=failed)
            save_state(new_snapshot, state_path)
            _notify(context.notification_service, NotificationEvent.ERROR, failed)
            return TickResult(
                transitioned=True,
                snapshot=new_snapshot,
                should_continue=False,
                stop_reason=TickStopReason.FAILED,
                error=failed.error,
            )

        artifacts = _merge_artifacts(
            snapshot.artifacts, context.artifacts, action_result.artifacts
        )
        result = transition(state, target, artifacts)
        if not result.success or result.state is None:
            message = result.error.message if result.error else "Transition rejected"
            logger.debug(message)
            return TickResult(
                transitioned=False, snapshot=snapshot, should_continue=True, error=message
            )

        new_snapshot = replace(snapshot, state=result.state, artifacts=artifacts)
        save_state(new_snapshot, state_path)
        logger.info("Transitioned %s -> %s", phase.value, target.value)
        _notify(context.notification_service, NotificationEvent.PHASE_CHANGE, result.state)

        complete = isinstance(result.state, CompleteState)
        return TickResult(
            transitioned=True,
            snapshot=new_snapshot,
            should_continue=not complete,
            stop_reason=TickStopReason.COMPLETE if complete else None,
        )

    return TickResult(
        transitioned=False,
        snapshot=snapshot,
        should_continue=False,
        stop_reason=TickStopReason.NO_VALID_TRANSITION,
    )


def execute_tick(context: TickContext, state_path: str | Path) -> TickResult:
    """
    Execute one tick: at most one state change, persisted.

    Args:
        context: Snapshot, artifacts, resolutions and collaborators
        state_path: Where to persist a changed snapshot

    Returns:
        TickResult describing what happened and whether to keep ticking
    """
    state = context.snapshot.state
    path = Path(state_path)

    if isinstance(state, CompleteState):
        _notify(context.notification_service, NotificationEvent.COMPLETE, state)
        return TickResult(
            transitioned=False,
            snapshot=context.snapshot,
            should_continue=False,
            stop_reason=TickStopReason.COMPLETE,
        )
    if isinstance(state, FailedState):
        _notify(context.notification_service, NotificationEvent.ERROR, state)
        return TickResult(
            transitioned=False,
            snapshot=context.snapshot,
            should_continue=False,
            stop_reason=TickStopReason.FAILED,
            error=state.error,
        )
    if isinstance(state, BlockedState):
        return _tick_blocked(context, state, path)
    return _tick_active(context, state, path)


# =============================================================================
# ORCHESTRATOR
# =============================================================================


@dataclass
class OrchestratorState:
    """In-memory bookkeeping for one running protocol instance."""

    snapshot: ProtocolStateSnapshot
    tick_count: int = 0
    running: bool = False
    last_result: TickResult | None = None
    previous_snapshot: ProtocolStateSnapshot | None = None
    pending_resolutions: list[BlockingResolution] = field(default_factory=list)


class Orchestrator:
    """
    Long-lived driver around execute_tick.

    add_artifact, resolve_blocking and block are the only ways to change
    the protocol between ticks.
    """

    def __init__(
        self,
        state_path: str | Path,
        operations: ExternalOperations,
        notification_service: NotificationServiceInterface | None = None,
        max_ticks: int = 1000,
        transitions: Sequence[TransitionDefinition] | None = None,
        ledger: DecisionLedgerInterface | None = None,
        snapshot: ProtocolStateSnapshot | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        """
        Args:
            state_path: State file to resume from and persist to
            operations: External operations used by transition actions
            notification_service: Optional best-effort event sink
            max_ticks: Safety bound for run()
            transitions: Transition definitions (defaults per forward edge)
            ledger: Records consumed blocking resolutions when given
            snapshot: Start from this snapshot instead of the state file
            clock: Time source for blocking timeouts
        """
        self._state_path = Path(state_path)
        self._operations = operations
        self._notification_service = notification_service
        self._max_ticks = max_ticks
        self._transitions = (
            tuple(transitions) if transitions is not None else default_transition_definitions()
        )
        self._ledger = ledger
        self._clock = clock or (lambda: datetime.now(UTC))

        if snapshot is None:
            snapshot = get_startup_state(self._state_path).snapshot
        self.state = OrchestratorState(snapshot=snapshot)
        self._artifacts: set[ArtifactType] = set(snapshot.artifacts)

    @property
    def snapshot(self) -> ProtocolStateSnapshot:
        return self.state.snapshot

    @property
    def artifacts(self) -> frozenset[ArtifactType]:
        return frozenset(self._artifacts)

    def _entering_block(self) -> BlockingRecord | None:
        """
        Open record if the protocol became Blocked since the last tick.

        A snapshot already Blocked when the orchestrator was created is not
        an edge, so resuming a blocked state file does not re-notify.
        """
        current = self.state.snapshot.state
        if not isinstance(current, BlockedState):
            return None
        previous = self.state.previous_snapshot
        if previous is None or isinstance(previous.state, BlockedState):
            return None
        return find_open_record(self.state.snapshot.blocking_queries, current)

    def tick(self) -> TickResult:
        """Execute one tick and update bookkeeping."""
        entering = self._entering_block()
        if entering is not None:
            try:
                self._operations.send_blocking_notification(entering.query)
            except Exception as e:
                logger.warning("Blocking notification failed: %s", e)
            _notify(self._notification_service, NotificationEvent.BLOCK, entering)

        before = self.state.snapshot
        context = TickContext(
            snapshot=before,
            artifacts=frozenset(self._artifacts),
            operations=self._operations,
            pending_resolutions=tuple(self.state.pending_resolutions),
            notification_service=self._notification_service,
            transitions=self._transitions,
            now=self._clock(),
        )
        result = execute_tick(context, self._state_path)

        consumed = (
            result.transitioned
            and isinstance(before.state, BlockedState)
            and isinstance(result.snapshot.state, ActiveState)
            and bool(self.state.pending_resolutions)
        )
        if consumed:
            self._record_resolution(before, self.state.pending_resolutions[0])
            self.state.pending_resolutions.clear()

        self._artifacts.update(result.snapshot.artifacts)
        # Snapshot as last seen by a tick, for edge-detecting new blocks
        self.state.previous_snapshot = result.snapshot
        self.state.snapshot = result.snapshot
        self.state.tick_count += 1
        self.state.last_result = result
        logger.debug(
            "Tick %d: %s (continue=%s)",
            self.state.tick_count,
            result.snapshot.state.kind,
            result.should_continue,
        )
        return result

    def _record_resolution(
        self, before: ProtocolStateSnapshot, resolution: BlockingResolution
    ) -> None:
        if self._ledger is None or not isinstance(before.state, BlockedState):
            return
        record = next(
            (q for q in before.blocking_queries if q.id == resolution.query_id),
            None,
        ) or record_from_blocked_state(before.state, resolution.query_id)
        record_resolution_decision(self._ledger, record, resolution)

    def run(self) -> TickResult:
        """Tick until told to stop or max_ticks is reached."""
        self.state.running = True
        try:
            while True:
                result = self.tick()
                if self.state.tick_count >= self._max_ticks and result.should_continue:
                    logger.warning("Maximum tick limit (%d) reached", self._max_ticks)
                    return replace(
                        result,
                        should_continue=False,
                        stop_reason=TickStopReason.EXTERNAL_ERROR,
                        error=f"Maximum tick limit ({self._max_ticks}) reached",
                    )
                if not result.should_continue:
                    return result
        finally:
            self.state.running = False

    def add_artifact(self, artifact: ArtifactType) -> None:
        self._artifacts.add(artifact)

    def resolve_blocking(self, response: str, rationale: str | None = None) -> BlockingResolution:
        """
        Queue an answer to the open query; the next tick consumes it.

        Raises:
            BlockingError: NOT_BLOCKING if the protocol is not blocked
        """
        state = self.state.snapshot.state
        if not isinstance(state, BlockedState):
            raise BlockingError(
                BlockingErrorCode.NOT_BLOCKING,
                "Cannot resolve: state is not in blocking state",
            )
        record = find_open_record(self.state.snapshot.blocking_queries, state)
        resolution = BlockingResolution(
            query_id=record.id,
            response=response,
            resolved_at=utc_now_iso(),
            rationale=rationale,
        )
        self.state.pending_resolutions.append(resolution)
        return resolution

    def block(
        self,
        reason: BlockReason,
        query: str,
        options: Sequence[str] | None = None,
        timeout_ms: int | None = None,
    ) -> BlockingRecord:
        """Pause the current phase with a question and persist it."""
        blocked, record = enter_blocking(
            self.state.snapshot.state,
            reason,
            query,
            options=tuple(options) if options is not None else None,
            timeout_ms=timeout_ms,
        )
        snapshot = replace(
            self.state.snapshot,
            state=blocked,
            blocking_queries=(*self.state.snapshot.blocking_queries, record),
        )
        save_state(snapshot, self._state_path)
        if self.state.previous_snapshot is None:
            self.state.previous_snapshot = self.state.snapshot
        self.state.snapshot = snapshot
        return record


def create_orchestrator(
    state_path: str | Path,
    operations: ExternalOperations,
    notification_service: NotificationServiceInterface | None = None,
    max_ticks: int = 1000,
    **kwargs: Any,
) -> Orchestrator:
    """Build an Orchestrator, resuming from state_path when it exists."""
    return Orchestrator(
        state_path,
        operations,
        notification_service=notification_service,
        max_ticks=max_ticks,
        **kwargs,
    )


# =============================================================================
# STATUS
# =============================================================================


@dataclass(frozen=True)
class BlockingStatus:
    query: str
    blocked_at: str
    options: tuple[str, ...] | None = None
    timeout_ms: int | None = None


@dataclass(frozen=True)
class FailedStatus:
    error: str
    recoverable: bool
    code: str | None = None


@dataclass(frozen=True)
class ProtocolStatus:
    """Operator-facing summary of a snapshot."""

    phase: ProtocolPhase
    substate: str
    artifacts: tuple[ArtifactType, ...]
    blocking: BlockingStatus | None = None
    failed: FailedStatus | None = None


def get_protocol_status(snapshot: ProtocolStateSnapshot) -> ProtocolStatus:
    state = snapshot.state
    blocking = None
    failed = None
    if isinstance(state, BlockedState):
        blocking = BlockingStatus(
            query=state.query,
            blocked_at=state.blocked_at,
            options=state.options,
            timeout_ms=state.timeout_ms,
        )
    elif isinstance(state, FailedState):
        failed = FailedStatus(
            error=state.error, recoverable=state.recoverable, code=state.code
        )
    return ProtocolStatus(
        phase=get_phase(state),
        substate=get_step(state) or state.kind,
        artifacts=snapshot.artifacts,
        blocking=blocking,
        failed=failed,
    )


def format_status(snapshot: ProtocolStateSnapshot, verbose: bool = False) -> str:
    """Plain-text status report."""
    status = get_protocol_status(snapshot)
    lines = [
        f"Phase: {status.phase.value}",
        f"State: {snapshot.state.kind} ({status.substate})",
        "Artifacts: "
        + (", ".join(a.value for a in status.artifacts) if status.artifacts else "none"),
    ]

    if status.blocking is not None:
        lines.append(f"Blocked: {status.blocking.query}")
        lines.append(f"Blocked at: {status.blocking.blocked_at}")
        if status.blocking.options:
            lines.append("Options:")
            lines.extend(
                f"  {i}. {option}" for i, option in enumerate(status.blocking.options, 1)
            )
        if status.blocking.timeout_ms is not None:
            lines.append(f"Timeout: {status.blocking.timeout_ms}ms")

    if status.failed is not None:
        lines.append(f"Failed: {status.failed.error}")
        if status.failed.code:
            lines.append(f"Code: {status.failed.code}")
        lines.append(f"Recoverable: {'yes' if status.failed.recoverable else 'no'}")

    if verbose and snapshot.blocking_queries:
        lines.append("Blocking queries:")
        for record in snapshot.blocking_queries:
            marker = "resolved" if record.resolved else "open"
            lines.append(f"  [{marker}] {record.id} ({record.phase.value}): {record.query}")

    return "\n".join(lines)
