"""
Blocking queries: pausing a phase to ask a human, and timing out.

enter_blocking/resolve_blocking/handle_timeout raise BlockingError on
misuse. check_timeout is a pure function of a record and a clock reading.
"""

from __future__ import annotations

import logging
import secrets
import string
import time
from collections.abc import Iterable
from dataclasses import dataclass, replace
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING

from criticality.domain.exceptions import BlockingError, BlockingErrorCode
from criticality.domain.models import (
    ActiveState,
    BlockedState,
    BlockingRecord,
    BlockingResolution,
    BlockReason,
    ConfidenceLevel,
    Decision,
    DecisionCategory,
    DecisionInput,
    DecisionSource,
    FailedState,
    ProtocolPhase,
    ProtocolState,
    create_active_state,
    create_blocked_state,
    create_failed_state,
    decision_phase_for,
    default_phase_state,
    get_phase,
    utc_now_iso,
)

if TYPE_CHECKING:
    from criticality.domain.interfaces import DecisionLedgerInterface

logger = logging.getLogger(__name__)

_ID_ALPHABET = string.ascii_lowercase + string.digits


def generate_blocking_query_id(phase: ProtocolPhase) -> str:
    """Unique id of the form blocking_<phase>_<epoch ms>_<6 base36 chars>."""
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(6))
    return f"blocking_{phase.value.lower()}_{int(time.time() * 1000)}_{suffix}"


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _to_ms(delta: timedelta) -> int:
    return int(delta / timedelta(milliseconds=1))


def record_from_blocked_state(
    state: BlockedState, query_id: str | None = None
) -> BlockingRecord:
    """Open record mirroring a Blocked state."""
    return BlockingRecord(
        id=query_id or f"blocking-{state.phase.value}",
        phase=state.phase,
        query=state.query,
        blocked_at=state.blocked_at,
        resolved=False,
        options=state.options,
        timeout_ms=state.timeout_ms,
    )


def find_open_record(
    records: Iterable[BlockingRecord], state: BlockedState
) -> BlockingRecord:
    """The unresolved record for the blocked phase, or one mirroring the state."""
    for record in records:
        if record.phase is state.phase and not record.resolved:
            return record
    return record_from_blocked_state(state)


# =============================================================================
# ENTER / RESOLVE
# =============================================================================


def enter_blocking(
    state: ProtocolState,
    reason: BlockReason,
    query: str,
    options: tuple[str, ...] | list[str] | None = None,
    timeout_ms: int | None = None,
    query_id: str | None = None,
) -> tuple[BlockedState, BlockingRecord]:
    """
    Pause the current phase with a question for a human.

    Args:
        state: Current protocol state
        reason: Why the protocol is blocking
        query: Question text
        options: Allowed answers, if multiple choice
        timeout_ms: Optional deadline relative to now
        query_id: Custom record id (generated when omitted)

    Returns:
        (blocked state, open blocking record)

    Raises:
        BlockingError: INVALID_PHASE in a terminal state, ALREADY_BLOCKING
            when a question is already open.
    """
    if isinstance(state, BlockedState):
        raise BlockingError(
            BlockingErrorCode.ALREADY_BLOCKING,
            f'Already in blocking state with query: "{state.query}"',
        )
    if isinstance(state, FailedState) or get_phase(state) is ProtocolPhase.COMPLETE:
        raise BlockingError(
            BlockingErrorCode.INVALID_PHASE,
            f"Cannot enter blocking state from {state.kind} state",
        )

    phase = get_phase(state)
    blocked = create_blocked_state(
        reason=reason,
        phase=phase,
        query=query,
        options=options,
        timeout_ms=timeout_ms,
    )
    record = BlockingRecord(
        id=query_id or generate_blocking_query_id(phase),
        phase=phase,
        query=query,
        blocked_at=blocked.blocked_at,
        resolved=False,
        options=blocked.options,
        timeout_ms=timeout_ms,
    )
    logger.info("Blocking in %s: %s", phase.value, query)
    return blocked, record


def record_resolution_decision(
    ledger: DecisionLedgerInterface,
    record: BlockingRecord,
    resolution: BlockingResolution,
) -> Decision:
    """Append the human answer to the ledger as a canonical decision."""
    return ledger.append(
        DecisionInput(
            category=DecisionCategory.BLOCKING,
            constraint=(
                f'Human resolution for query: "{record.query}" - '
                f'Response: "{resolution.response}"'
            ),
            source=DecisionSource.HUMAN_RESOLUTION,
            confidence=ConfidenceLevel.CANONICAL,
            phase=decision_phase_for(record.phase),
            rationale=resolution.rationale,
            human_query_id=record.id,
        )
    )


def resolve_blocking(
    state: ProtocolState,
    record: BlockingRecord,
    response: str,
    ledger: DecisionLedgerInterface,
    rationale: str | None = None,
    allow_custom_response: bool = False,
) -> tuple[ActiveState, BlockingRecord, Decision]:
    """
    Answer an open query and resume the blocked phase.

    The phase restarts from its default sub-state. The answer is recorded to
    the ledger.

    Returns:
        (active state, resolved record, ledger decision)

    Raises:
        BlockingError: NOT_BLOCKING, ALREADY_RESOLVED or INVALID_RESPONSE.
    """
    if not isinstance(state, BlockedState):
        raise BlockingError(
            BlockingErrorCode.NOT_BLOCKING,
            "Cannot resolve: state is not in blocking state",
        )
    if record.resolved:
        raise BlockingError(
            BlockingErrorCode.ALREADY_RESOLVED,
            f"Blocking query '{record.id}' has already been resolved",
        )
    if record.options and not allow_custom_response and response not in record.options:
        raise BlockingError(
            BlockingErrorCode.INVALID_RESPONSE,
            f"Response '{response}' is not in available options: "
            f"{', '.join(record.options)}. Pass allow_custom_response=True to "
            "allow custom responses.",
        )

    resolution = BlockingResolution(
        query_id=record.id,
        response=response,
        resolved_at=utc_now_iso(),
        rationale=rationale,
    )
    decision = record_resolution_decision(ledger, record, resolution)
    resolved = replace(record, resolved=True, resolution=resolution)
    logger.info("Resolved %s with %r", record.id, response)
    return create_active_state(default_phase_state(record.phase)), resolved, decision


# =============================================================================
# TIMEOUTS
# =============================================================================


@dataclass(frozen=True)
class TimeoutCheck:
    """Outcome of check_timeout."""

    timed_out: bool
    remaining_ms: int | None = None
    exceeded_by_ms: int | None = None


def get_timeout_deadline(record: BlockingRecord) -> datetime | None:
    if record.timeout_ms is None:
        return None
    return parse_timestamp(record.blocked_at) + timedelta(milliseconds=record.timeout_ms)


def check_timeout(record: BlockingRecord, now: datetime | None = None) -> TimeoutCheck:
    """
    Has the record's deadline passed?

    Never times out without timeout_ms. Otherwise timed out iff
    now >= blocked_at + timeout_ms.
    """
    deadline = get_timeout_deadline(record)
    if deadline is None:
        return TimeoutCheck(timed_out=False)

    current = now or datetime.now(UTC)
    if current >= deadline:
        return TimeoutCheck(timed_out=True, exceeded_by_ms=_to_ms(current - deadline))
    return TimeoutCheck(timed_out=False, remaining_ms=_to_ms(deadline - current))


def get_remaining_timeout(
    record: BlockingRecord, now: datetime | None = None
) -> int | None:
    """Milliseconds until timeout: None without a timeout, 0 once expired."""
    if record.timeout_ms is None:
        return None
    result = check_timeout(record, now)
    return 0 if result.timed_out else result.remaining_ms


def has_timeout(record: BlockingRecord) -> bool:
    return record.timeout_ms is not None


def is_blocking_record_active(record: BlockingRecord) -> bool:
    return not record.resolved


class TimeoutStrategy(Enum):
    ESCALATE = "escalate"
    DEFAULT = "default"
    FAIL = "fail"


def handle_timeout(
    state: ProtocolState,
    record: BlockingRecord,
    strategy: TimeoutStrategy,
    default_response: str | None = None,
    rationale: str | None = None,
    ledger: DecisionLedgerInterface | None = None,
) -> tuple[ProtocolState, BlockingRecord, Decision | None]:
    """
    Apply a timeout strategy to an expired query.

    escalate raises TIMEOUT_ESCALATION_NEEDED; default resolves with
    default_response (needs a ledger); fail yields a recoverable Failed state.

    Returns:
        (new state, updated record, ledger decision or None)
    """
    if not isinstance(state, BlockedState):
        raise BlockingError(
            BlockingErrorCode.NOT_BLOCKING,
            "Cannot handle timeout: state is not in blocking state",
        )
    if record.timeout_ms is None:
        raise BlockingError(
            BlockingErrorCode.NO_TIMEOUT,
            "Cannot handle timeout: no timeout configured for this blocking state",
        )
    if record.resolved:
        raise BlockingError(
            BlockingErrorCode.ALREADY_RESOLVED,
            f"Blocking query '{record.id}' has already been resolved",
        )

    if strategy is TimeoutStrategy.ESCALATE:
        raise BlockingError(
            BlockingErrorCode.TIMEOUT_ESCALATION_NEEDED,
            f"Timeout on blocking query '{record.id}' requires escalation",
        )

    if strategy is TimeoutStrategy.DEFAULT:
        if default_response is None:
            raise BlockingError(
                BlockingErrorCode.INVALID_RESPONSE,
                'Default response required for "default" timeout strategy',
            )
        if ledger is None:
            raise BlockingError(
                BlockingErrorCode.LEDGER_REQUIRED_FOR_DEFAULT_STRATEGY,
                'Ledger required for "default" timeout strategy',
            )
        active, resolved, decision = resolve_blocking(
            state,
            record,
            default_response,
            ledger,
            rationale=rationale or f"Timeout - using default response: {default_response}",
            allow_custom_response=True,
        )
        return active, resolved, decision

    failed = create_failed_state(
        phase=record.phase,
        error=f"Blocking query timed out: {record.query}",
        recoverable=True,
        code="BLOCKING_TIMEOUT",
        context=rationale or f"Query '{record.id}' exceeded {record.timeout_ms}ms",
    )
    return failed, replace(record, resolved=True), None
