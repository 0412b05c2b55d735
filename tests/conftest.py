"""Shared pytest fixtures for criticality tests."""

from datetime import UTC, datetime

import pytest

from criticality.domain.interfaces import (
    ExternalOperations,
    NotificationServiceInterface,
)
from criticality.domain.models import (
    ActionResult,
    ArtifactType,
    BlockReason,
    BlockingRecord,
    NotificationEvent,
    ProtocolPhase,
    ProtocolStateSnapshot,
    create_active_state,
    create_blocked_state,
    create_initial_state_snapshot,
    default_phase_state,
)
from criticality.infrastructure.persistence.ledger import InMemoryDecisionLedger

BLOCKED_AT = "2025-01-01T00:00:00+00:00"


class RecordingOperations(ExternalOperations):
    """ExternalOperations that records calls and returns canned results."""

    def __init__(self, model_result: ActionResult | None = None):
        self.calls: list[str] = []
        self.blocking_notifications: list[str] = []
        self._model_result = model_result or ActionResult(success=True)

    def execute_model_call(self, phase: ProtocolPhase) -> ActionResult:
        self.calls.append(f"model:{phase.value}")
        return self._model_result

    def run_compilation(self) -> ActionResult:
        self.calls.append("compile")
        return ActionResult(success=True)

    def run_tests(self) -> ActionResult:
        self.calls.append("test")
        return ActionResult(success=True)

    def archive_phase_artifacts(self, phase: ProtocolPhase) -> ActionResult:
        self.calls.append(f"archive:{phase.value}")
        return ActionResult(success=True)

    def send_blocking_notification(self, query: str) -> None:
        self.blocking_notifications.append(query)


class RecordingNotifications(NotificationServiceInterface):
    """Collects (event, payload) pairs instead of delivering them."""

    def __init__(self, fail: bool = False):
        self.events: list[tuple[NotificationEvent, object]] = []
        self._fail = fail

    def notify(self, event: NotificationEvent, payload: object) -> None:
        self.events.append((event, payload))
        if self._fail:
            raise RuntimeError("delivery failed")

    def kinds(self) -> list[NotificationEvent]:
        return [event for event, _ in self.events]


@pytest.fixture
def operations() -> RecordingOperations:
    return RecordingOperations()


@pytest.fixture
def notifications() -> RecordingNotifications:
    return RecordingNotifications()


@pytest.fixture
def failing_notifications() -> RecordingNotifications:
    return RecordingNotifications(fail=True)


@pytest.fixture
def make_operations():  # noqa: ANN201
    """Factory for operations whose model call returns a given result."""
    return RecordingOperations


@pytest.fixture
def ledger() -> InMemoryDecisionLedger:
    return InMemoryDecisionLedger(project="test-project")


@pytest.fixture
def state_path(tmp_path):  # noqa: ANN001
    """Path for a state file inside a temporary directory."""
    return tmp_path / "state.json"


@pytest.fixture
def fixed_now() -> datetime:
    return datetime(2025, 1, 1, 0, 0, 0, tzinfo=UTC)


@pytest.fixture
def initial_snapshot() -> ProtocolStateSnapshot:
    return create_initial_state_snapshot()


@pytest.fixture
def lattice_snapshot() -> ProtocolStateSnapshot:
    """Active in Lattice with the spec artifact."""
    return ProtocolStateSnapshot(
        state=create_active_state(default_phase_state(ProtocolPhase.LATTICE)),
        artifacts=(ArtifactType.SPEC,),
    )


@pytest.fixture
def blocked_snapshot() -> ProtocolStateSnapshot:
    """Blocked in Lattice on a multiple choice query with a one second timeout."""
    blocked = create_blocked_state(
        reason=BlockReason.USER_REQUESTED,
        phase=ProtocolPhase.LATTICE,
        query="Which database?",
        options=("PostgreSQL", "SQLite"),
        timeout_ms=1000,
        blocked_at=BLOCKED_AT,
    )
    record = BlockingRecord(
        id="blocking_lattice_1735689600000_abc123",
        phase=ProtocolPhase.LATTICE,
        query="Which database?",
        blocked_at=BLOCKED_AT,
        options=("PostgreSQL", "SQLite"),
        timeout_ms=1000,
    )
    return ProtocolStateSnapshot(
        state=blocked,
        artifacts=(ArtifactType.SPEC,),
        blocking_queries=(record,),
    )
