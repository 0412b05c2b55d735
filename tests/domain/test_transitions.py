"""Tests for the phase transition table and transition()."""

import pytest

from criticality.domain.models import (
    ActiveState,
    ArtifactType,
    BlockReason,
    CompleteState,
    ProtocolPhase,
    create_active_state,
    create_blocked_state,
    create_complete_state,
    create_failed_state,
    default_phase_state,
    get_step,
)
from criticality.domain.transitions import (
    FORWARD_TRANSITIONS,
    TransitionErrorCode,
    failure_transition,
    get_failure_transitions,
    get_next_phase,
    get_required_artifacts,
    get_valid_transitions,
    is_valid_failure_transition,
    is_valid_transition,
    transition,
)

ALL_ARTIFACTS = tuple(ArtifactType)


def active(phase: ProtocolPhase) -> ActiveState:
    return create_active_state(default_phase_state(phase))


class TestTransitionTable:
    """Tests for the static forward and rollback tables."""

    def test_chain_is_linear(self) -> None:
        """Every working phase has exactly one successor; Complete has none."""
        for phase in ProtocolPhase:
            expected = 0 if phase is ProtocolPhase.COMPLETE else 1
            assert len(get_valid_transitions(phase)) == expected

    def test_next_phase(self) -> None:
        assert get_next_phase(ProtocolPhase.IGNITION) is ProtocolPhase.LATTICE
        assert get_next_phase(ProtocolPhase.MASS_DEFECT) is ProtocolPhase.COMPLETE
        assert get_next_phase(ProtocolPhase.COMPLETE) is None

    @pytest.mark.parametrize(
        ("phase", "required"),
        [
            (ProtocolPhase.IGNITION, ()),
            (ProtocolPhase.LATTICE, (ArtifactType.SPEC,)),
            (
                ProtocolPhase.COMPOSITION_AUDIT,
                (ArtifactType.LATTICE_CODE, ArtifactType.WITNESSES, ArtifactType.CONTRACTS),
            ),
            (ProtocolPhase.INJECTION, (ArtifactType.VALIDATED_STRUCTURE,)),
            (ProtocolPhase.MESOSCOPIC, (ArtifactType.IMPLEMENTED_CODE,)),
            (ProtocolPhase.MASS_DEFECT, (ArtifactType.VERIFIED_CODE,)),
            (ProtocolPhase.COMPLETE, (ArtifactType.FINAL_ARTIFACT,)),
        ],
    )
    def test_required_artifacts(
        self, phase: ProtocolPhase, required: tuple[ArtifactType, ...]
    ) -> None:
        assert get_required_artifacts(phase) == required

    def test_failure_edges_are_separate(self) -> None:
        """Rollback edges never appear among the forward transitions."""
        assert get_failure_transitions(ProtocolPhase.COMPOSITION_AUDIT) == (
            ProtocolPhase.IGNITION,
        )
        assert is_valid_failure_transition(ProtocolPhase.INJECTION, ProtocolPhase.LATTICE)
        assert not is_valid_transition(ProtocolPhase.INJECTION, ProtocolPhase.LATTICE)
        assert get_failure_transitions(ProtocolPhase.IGNITION) == ()


class TestTransition:
    """Tests for forward transition()."""

    @pytest.mark.parametrize(("source", "target"), list(FORWARD_TRANSITIONS.items()))
    def test_forward_with_all_artifacts(
        self, source: ProtocolPhase, target: ProtocolPhase
    ) -> None:
        result = transition(active(source), target, ALL_ARTIFACTS)

        assert result.success
        assert result.error is None
        if target is ProtocolPhase.COMPLETE:
            assert isinstance(result.state, CompleteState)
        else:
            assert result.state == active(target)

    def test_enters_default_substate(self) -> None:
        result = transition(active(ProtocolPhase.IGNITION), ProtocolPhase.LATTICE, [ArtifactType.SPEC])

        assert result.state is not None
        assert get_step(result.state) == "generatingStructure"

    def test_complete_carries_available_artifacts(self) -> None:
        result = transition(
            active(ProtocolPhase.MASS_DEFECT),
            ProtocolPhase.COMPLETE,
            [ArtifactType.FINAL_ARTIFACT, ArtifactType.SPEC],
        )

        assert result.state == create_complete_state(
            [ArtifactType.SPEC, ArtifactType.FINAL_ARTIFACT]
        )

    def test_missing_artifacts(self) -> None:
        """Entering CompositionAudit needs latticeCode, witnesses and contracts."""
        result = transition(
            active(ProtocolPhase.LATTICE),
            ProtocolPhase.COMPOSITION_AUDIT,
            [ArtifactType.LATTICE_CODE],
        )

        assert not result.success
        assert result.state is None
        assert result.error is not None
        assert result.error.code is TransitionErrorCode.MISSING_ARTIFACTS
        assert result.error.missing_artifacts == (
            ArtifactType.CONTRACTS,
            ArtifactType.WITNESSES,
        )
        assert "contracts, witnesses" in result.error.message

    def test_skip_is_rejected(self) -> None:
        result = transition(active(ProtocolPhase.IGNITION), ProtocolPhase.INJECTION, ALL_ARTIFACTS)

        assert result.error is not None
        assert result.error.code is TransitionErrorCode.INVALID_TRANSITION
        assert "Cannot skip phases" in result.error.message
        assert "'Lattice'" in result.error.message

    def test_backward_is_rejected(self) -> None:
        result = transition(active(ProtocolPhase.INJECTION), ProtocolPhase.LATTICE, ALL_ARTIFACTS)

        assert result.error is not None
        assert result.error.code is TransitionErrorCode.INVALID_TRANSITION
        assert "Invalid transition" in result.error.message

    def test_self_transition_is_rejected(self) -> None:
        result = transition(active(ProtocolPhase.LATTICE), ProtocolPhase.LATTICE, ALL_ARTIFACTS)

        assert result.error is not None
        assert result.error.code is TransitionErrorCode.INVALID_TRANSITION

    def test_from_complete(self) -> None:
        result = transition(create_complete_state(), ProtocolPhase.IGNITION, ALL_ARTIFACTS)

        assert result.error is not None
        assert result.error.code is TransitionErrorCode.ALREADY_COMPLETE

    def test_from_blocked(self) -> None:
        blocked = create_blocked_state(BlockReason.USER_REQUESTED, ProtocolPhase.LATTICE, "?")
        result = transition(blocked, ProtocolPhase.COMPOSITION_AUDIT, ALL_ARTIFACTS)

        assert result.error is not None
        assert result.error.code is TransitionErrorCode.BLOCKED_STATE

    def test_from_failed(self) -> None:
        failed = create_failed_state(ProtocolPhase.LATTICE, "boom")
        result = transition(failed, ProtocolPhase.COMPOSITION_AUDIT, ALL_ARTIFACTS)

        assert result.error is not None
        assert result.error.code is TransitionErrorCode.FAILED_STATE


class TestFailureTransition:
    """Tests for rollback along failure edges."""

    def test_rollback_with_report(self) -> None:
        result = failure_transition(
            active(ProtocolPhase.MESOSCOPIC),
            ProtocolPhase.INJECTION,
            [ArtifactType.CLUSTER_FAILURE_REPORT],
        )

        assert result.success
        assert result.state == active(ProtocolPhase.INJECTION)

    def test_rollback_without_report(self) -> None:
        result = failure_transition(
            active(ProtocolPhase.COMPOSITION_AUDIT), ProtocolPhase.IGNITION, []
        )

        assert result.error is not None
        assert result.error.code is TransitionErrorCode.MISSING_ARTIFACTS
        assert result.error.missing_artifacts == (ArtifactType.CONTRADICTION_REPORT,)

    def test_unknown_rollback_edge(self) -> None:
        result = failure_transition(
            active(ProtocolPhase.LATTICE), ProtocolPhase.IGNITION, ALL_ARTIFACTS
        )

        assert result.error is not None
        assert result.error.code is TransitionErrorCode.INVALID_TRANSITION
        assert "Valid failure transitions: none" in result.error.message
