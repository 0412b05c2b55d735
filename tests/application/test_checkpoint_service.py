"""Tests for detecting, validating and resuming persisted state."""

import json
from datetime import UTC, datetime, timedelta

import pytest

from criticality.application.checkpoint_service import (
    RecoveryAction,
    ResumeFailureReason,
    ValidationCode,
    cumulative_required_artifacts,
    detect_existing_state,
    get_startup_state,
    is_state_corrupted,
    resume_from_checkpoint,
    validate_persisted_structure,
    validate_state_integrity,
)
from criticality.domain.exceptions import StartupStateError
from criticality.domain.models import (
    ArtifactType,
    BlockReason,
    ProtocolPhase,
    ProtocolStateSnapshot,
    create_active_state,
    create_blocked_state,
    create_initial_state_snapshot,
    default_phase_state,
)
from criticality.infrastructure.persistence.state_file import save_state, serialize_state


def codes(issues) -> list[ValidationCode]:  # noqa: ANN001
    return [issue.code for issue in issues]


def write_document(path, **overrides) -> None:  # noqa: ANN001, ANN003
    data = json.loads(serialize_state(create_initial_state_snapshot()))
    data.update(overrides)
    path.write_text(json.dumps(data))


class TestDetection:
    """Tests for detect_existing_state."""

    def test_absent(self, state_path) -> None:  # noqa: ANN001
        detection = detect_existing_state(state_path)

        assert not detection.found
        assert detection.modified_at is None

    def test_present(self, state_path) -> None:  # noqa: ANN001
        save_state(create_initial_state_snapshot(), state_path)
        detection = detect_existing_state(state_path)

        assert detection.found
        assert detection.file_path == state_path
        assert detection.modified_at is not None


class TestStructureValidation:
    """Tests for validate_persisted_structure."""

    def test_valid_document(self) -> None:
        data = json.loads(serialize_state(create_initial_state_snapshot()))
        result = validate_persisted_structure(data)

        assert result.valid
        assert result.warnings == ()

    def test_not_an_object(self) -> None:
        result = validate_persisted_structure(["x"])

        assert codes(result.errors) == [ValidationCode.CORRUPTED_STRUCTURE]

    def test_future_version(self) -> None:
        result = validate_persisted_structure({"version": "3.0.0"})

        assert ValidationCode.FUTURE_VERSION in codes(result.errors)

    def test_older_major_version(self) -> None:
        result = validate_persisted_structure({"version": "1.4.0"})

        assert ValidationCode.INVALID_VERSION in codes(result.errors)

    def test_missing_fields(self) -> None:
        result = validate_persisted_structure({"version": "2.0.0", "state": {}})

        assert codes(result.errors) == [ValidationCode.CORRUPTED_STRUCTURE] * 3

    def test_unknown_artifacts_warn(self) -> None:
        data = json.loads(serialize_state(create_initial_state_snapshot()))
        data["artifacts"] = ["spec", "binary"]
        result = validate_persisted_structure(data)

        assert result.valid
        assert codes(result.warnings) == [ValidationCode.UNKNOWN_ARTIFACTS]
        assert "binary" in result.warnings[0].message


class TestIntegrityValidation:
    """Tests for validate_state_integrity."""

    def test_cumulative_artifacts(self) -> None:
        assert cumulative_required_artifacts(ProtocolPhase.IGNITION) == ()
        assert cumulative_required_artifacts(ProtocolPhase.INJECTION) == (
            ArtifactType.SPEC,
            ArtifactType.LATTICE_CODE,
            ArtifactType.WITNESSES,
            ArtifactType.CONTRACTS,
            ArtifactType.VALIDATED_STRUCTURE,
        )

    def test_missing_artifacts_for_phase(self, fixed_now: datetime) -> None:
        snapshot = ProtocolStateSnapshot(
            state=create_active_state(default_phase_state(ProtocolPhase.COMPOSITION_AUDIT)),
            artifacts=(ArtifactType.SPEC,),
        )

        result = validate_state_integrity(snapshot, fixed_now, now=fixed_now)

        assert codes(result.errors) == [ValidationCode.MISSING_ARTIFACTS]
        assert "latticeCode, witnesses, contracts" in result.errors[0].message

    def test_expired_blocking_timeout_warns(
        self, blocked_snapshot: ProtocolStateSnapshot, fixed_now: datetime
    ) -> None:
        now = fixed_now + timedelta(seconds=5)
        result = validate_state_integrity(blocked_snapshot, now, now=now)

        assert result.valid
        assert codes(result.warnings) == [ValidationCode.BLOCKING_TIMEOUT_EXPIRED]

    def test_unparseable_blocked_at_is_corrupted(self, fixed_now: datetime) -> None:
        snapshot = ProtocolStateSnapshot(
            state=create_blocked_state(
                BlockReason.USER_REQUESTED,
                ProtocolPhase.LATTICE,
                "Which database?",
                timeout_ms=1000,
                blocked_at="yesterday",
            ),
            artifacts=(ArtifactType.SPEC,),
        )

        result = validate_state_integrity(snapshot, fixed_now, now=fixed_now)

        assert not result.valid
        assert codes(result.errors) == [ValidationCode.CORRUPTED_STRUCTURE]
        assert "yesterday" in result.errors[0].message

    def test_stale_state_warns_when_allowed(self, fixed_now: datetime) -> None:
        result = validate_state_integrity(
            create_initial_state_snapshot(),
            fixed_now,
            max_age_ms=60_000,
            now=fixed_now + timedelta(minutes=5),
        )

        assert result.valid
        assert codes(result.warnings) == [ValidationCode.STALE_STATE]
        assert result.warnings[0].message == "State file is 5 minutes old"

    def test_stale_state_errors_when_disallowed(self, fixed_now: datetime) -> None:
        result = validate_state_integrity(
            create_initial_state_snapshot(),
            fixed_now,
            max_age_ms=60_000,
            allow_stale_state=False,
            now=fixed_now + timedelta(minutes=5),
        )

        assert codes(result.errors) == [ValidationCode.STALE_STATE]


class TestResumeFromCheckpoint:
    """Tests for resume_from_checkpoint."""

    def test_no_state_file(self, state_path) -> None:  # noqa: ANN001
        result = resume_from_checkpoint(state_path)

        assert not result.success
        assert result.reason is ResumeFailureReason.NO_STATE_FILE
        assert result.recovery_action is RecoveryAction.CLEAN_START

    def test_valid_state(self, state_path, lattice_snapshot) -> None:  # noqa: ANN001
        save_state(lattice_snapshot, state_path)

        result = resume_from_checkpoint(state_path)

        assert result.success
        assert result.snapshot == lattice_snapshot
        assert result.validation is not None
        assert result.validation.valid

    def test_corrupted_json(self, state_path) -> None:  # noqa: ANN001
        state_path.write_text("{truncated")

        result = resume_from_checkpoint(state_path)

        assert result.reason is ResumeFailureReason.CORRUPTED_STATE
        assert result.recovery_action is RecoveryAction.RETRY_WITH_BACKUP

    def test_empty_file(self, state_path) -> None:  # noqa: ANN001
        state_path.write_text("")

        result = resume_from_checkpoint(state_path)

        assert result.reason is ResumeFailureReason.CORRUPTED_STATE

    def test_future_version(self, state_path) -> None:  # noqa: ANN001
        write_document(state_path, version="9.0.0")

        result = resume_from_checkpoint(state_path)

        assert result.reason is ResumeFailureReason.INVALID_STATE
        assert result.recovery_action is RecoveryAction.CLEAN_START
        assert result.validation is not None
        assert codes(result.validation.errors) == [ValidationCode.FUTURE_VERSION]

    def test_undecodable_state(self, state_path) -> None:  # noqa: ANN001
        write_document(state_path, state={"kind": "Paused"})

        result = resume_from_checkpoint(state_path)

        assert result.reason is ResumeFailureReason.INVALID_STATE
        assert result.error is not None

    def test_missing_artifacts(self, state_path) -> None:  # noqa: ANN001
        snapshot = ProtocolStateSnapshot(
            state=create_active_state(default_phase_state(ProtocolPhase.LATTICE))
        )
        save_state(snapshot, state_path)

        result = resume_from_checkpoint(state_path)

        assert result.reason is ResumeFailureReason.INVALID_STATE
        assert result.validation is not None
        assert codes(result.validation.errors) == [ValidationCode.MISSING_ARTIFACTS]

    def test_stale_state_rejected(self, state_path) -> None:  # noqa: ANN001
        save_state(create_initial_state_snapshot(), state_path)
        later = datetime.now(UTC) + timedelta(days=2)

        allowed = resume_from_checkpoint(state_path, now=later)
        rejected = resume_from_checkpoint(state_path, allow_stale_state=False, now=later)

        assert allowed.success
        assert allowed.validation is not None
        assert codes(allowed.validation.warnings) == [ValidationCode.STALE_STATE]
        assert rejected.reason is ResumeFailureReason.STALE_STATE_REJECTED
        assert rejected.recovery_action is RecoveryAction.CLEAN_START


class TestStartupState:
    """Tests for get_startup_state."""

    def test_fresh_start(self, state_path) -> None:  # noqa: ANN001
        startup = get_startup_state(state_path)

        assert not startup.resumed
        assert startup.snapshot == create_initial_state_snapshot()
        assert not state_path.exists()

    def test_resumes(self, state_path, blocked_snapshot) -> None:  # noqa: ANN001
        save_state(blocked_snapshot, state_path)

        startup = get_startup_state(state_path)

        assert startup.resumed
        assert startup.snapshot == blocked_snapshot
        assert startup.validation is not None
        assert ValidationCode.BLOCKING_TIMEOUT_EXPIRED in codes(startup.validation.warnings)

    def test_unparseable_blocked_at_raises_startup_error(self, state_path) -> None:  # noqa: ANN001
        state = {
            "kind": "Blocked",
            "reason": "user_requested",
            "phase": "Lattice",
            "query": "Which database?",
            "blockedAt": "yesterday",
            "timeoutMs": 1000,
        }
        write_document(state_path, state=state, artifacts=["spec"])

        with pytest.raises(StartupStateError) as exc_info:
            get_startup_state(state_path)

        assert exc_info.value.resume_result.reason is ResumeFailureReason.INVALID_STATE

    def test_corrupted_file_is_not_replaced(self, state_path) -> None:  # noqa: ANN001
        state_path.write_text("{truncated")

        with pytest.raises(StartupStateError) as exc_info:
            get_startup_state(state_path)

        message = str(exc_info.value)
        assert "CORRUPTED_STATE" in message
        assert "RETRY_WITH_BACKUP" in message
        assert exc_info.value.resume_result.reason is ResumeFailureReason.CORRUPTED_STATE
        assert state_path.read_text() == "{truncated"


class TestIsStateCorrupted:
    """Tests for is_state_corrupted."""

    def test_missing_file_is_not_corrupted(self, state_path) -> None:  # noqa: ANN001
        assert not is_state_corrupted(state_path)

    def test_valid_file(self, state_path) -> None:  # noqa: ANN001
        save_state(create_initial_state_snapshot(), state_path)
        assert not is_state_corrupted(state_path)

    def test_garbage(self, state_path) -> None:  # noqa: ANN001
        state_path.write_text("not json at all")
        assert is_state_corrupted(state_path)
