"""
Domain interfaces (Ports) for the Criticality protocol.

These abstract base classes define the collaborators the protocol core
consumes. The core never knows how artifacts are produced, how messages are
delivered, or how models are called.
"""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from criticality.domain.models import (
        ActionResult,
        Decision,
        DecisionCategory,
        DecisionInput,
        DecisionPhase,
        ModelRequest,
        ModelResult,
        ModelTier,
        NotificationEvent,
        ProtocolPhase,
    )


class ExternalOperations(ABC):
    """
    Port for the work that happens between ticks.

    Implementations call models, compilers and test runners. They are
    expected to honour their own timeouts and report failure through the
    returned ActionResult instead of raising past the tick boundary.
    """

    @abstractmethod
    def execute_model_call(self, phase: "ProtocolPhase") -> "ActionResult":
        """Run the model work for a phase, returning produced artifacts."""
        pass

    @abstractmethod
    def run_compilation(self) -> "ActionResult":
        pass

    @abstractmethod
    def run_tests(self) -> "ActionResult":
        pass

    @abstractmethod
    def archive_phase_artifacts(self, phase: "ProtocolPhase") -> "ActionResult":
        """Archive the outputs of a phase that is being left."""
        pass

    @abstractmethod
    def send_blocking_notification(self, query: str) -> None:
        pass


class NotificationServiceInterface(ABC):
    """
    Port for best-effort protocol event delivery.

    The orchestrator catches and logs anything raised here; protocol progress
    never depends on delivery.
    """

    @abstractmethod
    def notify(self, event: "NotificationEvent", payload: Any) -> None:
        """
        Deliver an event.

        Args:
            event: block, complete, error or phase_change
            payload: A BlockingRecord for block events, else the ProtocolState
        """
        pass


class ModelRouter(ABC):
    """
    Port for tiered model access.

    Consumed by the callers of individual synthesis steps together with the
    escalation engine; the tick loop does not use it directly.
    """

    @abstractmethod
    def prompt(
        self, tier: "ModelTier", text: str, timeout_ms: int | None = None
    ) -> "ModelResult":
        pass

    @abstractmethod
    def complete(self, request: "ModelRequest") -> "ModelResult":
        pass


class DecisionLedgerInterface(ABC):
    """
    Port for the append-only decision ledger.

    Entries are never deleted; superseding marks the old entry and links it
    to its replacement.
    """

    @abstractmethod
    def append(self, decision_input: "DecisionInput") -> "Decision":
        """
        Validate and append a new decision.

        Raises:
            LedgerValidationError: If the input violates ledger rules
        """
        pass

    @abstractmethod
    def get(self, decision_id: str) -> "Decision":
        """
        Raises:
            KeyError: If no decision has this id
        """
        pass

    @abstractmethod
    def list_decisions(
        self,
        category: "DecisionCategory | None" = None,
        phase: "DecisionPhase | None" = None,
    ) -> list["Decision"]:
        """Decisions in append order, optionally filtered."""
        pass

    @abstractmethod
    def supersede(
        self, old_id: str, decision_input: "DecisionInput"
    ) -> "Decision":
        """Append a replacement and mark old_id superseded."""
        pass
