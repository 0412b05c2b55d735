"""Tests for the JSON state file: serialization, decoding and atomic writes."""

import json

import pytest

from criticality.domain.exceptions import PersistenceErrorType, StatePersistenceError
from criticality.domain.models import (
    ArtifactType,
    BlockingRecord,
    BlockingResolution,
    BlockReason,
    CompositionAuditReportingContradictions,
    ContradictionSeverity,
    IgnitionInterviewing,
    InjectionEscalating,
    InterviewPhase,
    LatticeRepairingStructure,
    MassDefectApplyingTransform,
    MesoscopicHandlingVerdict,
    ModelTier,
    PhaseState,
    ProtocolPhase,
    ProtocolStateSnapshot,
    create_active_state,
    create_blocked_state,
    create_complete_state,
    create_failed_state,
    create_initial_state_snapshot,
)
from criticality.infrastructure.persistence.state_file import (
    PERSISTED_STATE_VERSION,
    deserialize_state,
    load_state,
    save_state,
    serialize_state,
    state_file_exists,
)

SNAPSHOTS = {
    "initial": create_initial_state_snapshot(),
    "interviewing": ProtocolStateSnapshot(
        state=create_active_state(
            PhaseState(
                ProtocolPhase.IGNITION,
                IgnitionInterviewing(InterviewPhase.ARCHITECTURE, 4),
            )
        ),
    ),
    "repairing": ProtocolStateSnapshot(
        state=create_active_state(
            PhaseState(
                ProtocolPhase.LATTICE,
                LatticeRepairingStructure(errors=("E1", "E2"), repair_attempt=2),
            )
        ),
        artifacts=(ArtifactType.SPEC,),
    ),
    "contradictions": ProtocolStateSnapshot(
        state=create_active_state(
            PhaseState(
                ProtocolPhase.COMPOSITION_AUDIT,
                CompositionAuditReportingContradictions(ContradictionSeverity.CRITICAL),
            )
        ),
    ),
    "escalating": ProtocolStateSnapshot(
        state=create_active_state(
            PhaseState(
                ProtocolPhase.INJECTION,
                InjectionEscalating("parse", ModelTier.WORKER, ModelTier.FALLBACK),
            )
        ),
    ),
    "verdict": ProtocolStateSnapshot(
        state=create_active_state(
            PhaseState(ProtocolPhase.MESOSCOPIC, MesoscopicHandlingVerdict("c1", passed=False))
        ),
    ),
    "transform": ProtocolStateSnapshot(
        state=create_active_state(
            PhaseState(ProtocolPhase.MASS_DEFECT, MassDefectApplyingTransform("p1", "f1"))
        ),
    ),
    "blocked": ProtocolStateSnapshot(
        state=create_blocked_state(
            BlockReason.CIRCUIT_BREAKER,
            ProtocolPhase.INJECTION,
            "Retry or skip?",
            options=["retry", "skip"],
            timeout_ms=5000,
        ),
        blocking_queries=(
            BlockingRecord(
                id="q1",
                phase=ProtocolPhase.LATTICE,
                query="Which database?",
                blocked_at="2025-01-01T00:00:00+00:00",
                resolved=True,
                resolution=BlockingResolution(
                    query_id="q1",
                    response="SQLite",
                    resolved_at="2025-01-01T00:01:00+00:00",
                    rationale="Embedded",
                ),
            ),
        ),
    ),
    "failed": ProtocolStateSnapshot(
        state=create_failed_state(
            ProtocolPhase.MESOSCOPIC, "cluster failed", True, code="X", context="c"
        ),
    ),
    "complete": ProtocolStateSnapshot(
        state=create_complete_state([ArtifactType.FINAL_ARTIFACT]),
        artifacts=(ArtifactType.SPEC, ArtifactType.FINAL_ARTIFACT),
    ),
}


def document(**overrides) -> str:  # noqa: ANN003
    data = json.loads(serialize_state(create_initial_state_snapshot()))
    data.update(overrides)
    return json.dumps(data)


def error_type_of(text: str) -> PersistenceErrorType:
    with pytest.raises(StatePersistenceError) as exc_info:
        deserialize_state(text)
    return exc_info.value.error_type


class TestSerialize:
    """Tests for serialize_state."""

    def test_document_fields(self) -> None:
        data = json.loads(serialize_state(SNAPSHOTS["repairing"]))

        assert data["version"] == PERSISTED_STATE_VERSION
        assert "persistedAt" in data
        assert data["artifacts"] == ["spec"]
        assert data["blockingQueries"] == []
        assert data["state"] == {
            "kind": "Active",
            "phase": {
                "phase": "Lattice",
                "substate": {"step": "repairingStructure", "errors": ["E1", "E2"], "repairAttempt": 2},
            },
        }

    def test_omits_absent_optionals(self) -> None:
        data = json.loads(serialize_state(SNAPSHOTS["initial"]))

        assert data["state"]["phase"]["substate"] == {
            "step": "interviewing",
            "interviewPhase": "Discovery",
            "questionIndex": 0,
        }

    def test_compact(self) -> None:
        assert "\n" not in serialize_state(SNAPSHOTS["initial"], pretty=False)

    def test_persisted_at_override(self) -> None:
        text = serialize_state(SNAPSHOTS["initial"], persisted_at="2025-01-01T00:00:00Z")
        assert json.loads(text)["persistedAt"] == "2025-01-01T00:00:00Z"


class TestDeserialize:
    """Tests for deserialize_state and its error taxonomy."""

    @pytest.mark.parametrize("name", list(SNAPSHOTS))
    def test_round_trip(self, name: str) -> None:
        snapshot = SNAPSHOTS[name]
        assert deserialize_state(serialize_state(snapshot)) == snapshot

    def test_invalid_json_is_parse_error(self) -> None:
        assert error_type_of("{not json") is PersistenceErrorType.PARSE_ERROR

    def test_non_object_is_schema_error(self) -> None:
        assert error_type_of("[1, 2]") is PersistenceErrorType.SCHEMA_ERROR

    def test_missing_fields_listed(self) -> None:
        with pytest.raises(StatePersistenceError) as exc_info:
            deserialize_state(json.dumps({"version": "2.0.0", "state": {"kind": "Active"}}))

        error = exc_info.value
        assert error.error_type is PersistenceErrorType.SCHEMA_ERROR
        assert error.details == "Missing fields: persistedAt, artifacts, blockingQueries"

    def test_bad_version_format(self) -> None:
        assert error_type_of(document(version="v2")) is PersistenceErrorType.SCHEMA_ERROR

    def test_unknown_kind_is_validation_error(self) -> None:
        assert error_type_of(document(state={"kind": "Paused"})) is (
            PersistenceErrorType.VALIDATION_ERROR
        )

    def test_unknown_artifact_is_validation_error(self) -> None:
        assert error_type_of(document(artifacts=["spec", "binary"])) is (
            PersistenceErrorType.VALIDATION_ERROR
        )

    def test_bad_phase_enum_is_validation_error(self) -> None:
        state = {
            "kind": "Active",
            "phase": {"phase": "Assembly", "substate": {"step": "interviewing"}},
        }
        assert error_type_of(document(state=state)) is PersistenceErrorType.VALIDATION_ERROR

    def test_unknown_step_is_schema_error(self) -> None:
        state = {"kind": "Active", "phase": {"phase": "Lattice", "substate": {"step": "dreaming"}}}
        assert error_type_of(document(state=state)) is PersistenceErrorType.SCHEMA_ERROR

    def test_step_from_other_phase_is_schema_error(self) -> None:
        state = {
            "kind": "Active",
            "phase": {"phase": "Lattice", "substate": {"step": "interviewing"}},
        }
        assert error_type_of(document(state=state)) is PersistenceErrorType.SCHEMA_ERROR

    def test_missing_substate_field_is_schema_error(self) -> None:
        state = {"kind": "Active", "phase": {"phase": "Injection", "substate": {"step": "verifying"}}}
        assert error_type_of(document(state=state)) is PersistenceErrorType.SCHEMA_ERROR

    def test_wrong_field_type_is_schema_error(self) -> None:
        state = {
            "kind": "Failed",
            "phase": "Lattice",
            "error": "boom",
            "failedAt": "2025-01-01T00:00:00Z",
            "recoverable": "yes",
        }
        assert error_type_of(document(state=state)) is PersistenceErrorType.SCHEMA_ERROR

    def test_unparseable_blocked_at_is_schema_error(self) -> None:
        state = {
            "kind": "Blocked",
            "reason": "user_requested",
            "phase": "Lattice",
            "query": "Which database?",
            "blockedAt": "yesterday",
            "timeoutMs": 1000,
        }
        with pytest.raises(StatePersistenceError) as exc_info:
            deserialize_state(document(state=state))

        error = exc_info.value
        assert error.error_type is PersistenceErrorType.SCHEMA_ERROR
        assert "state.blockedAt" in str(error)

    def test_unparseable_failed_at_is_schema_error(self) -> None:
        state = {
            "kind": "Failed",
            "phase": "Lattice",
            "error": "boom",
            "failedAt": "not a time",
            "recoverable": True,
        }
        assert error_type_of(document(state=state)) is PersistenceErrorType.SCHEMA_ERROR

    def test_unparseable_resolved_at_is_schema_error(self) -> None:
        record = {
            "id": "blocking_lattice_1",
            "phase": "Lattice",
            "query": "Which database?",
            "blockedAt": "2025-01-01T00:00:00+00:00",
            "resolved": True,
            "resolution": {
                "queryId": "blocking_lattice_1",
                "response": "PostgreSQL",
                "resolvedAt": "soon",
            },
        }
        assert error_type_of(document(blockingQueries=[record])) is (
            PersistenceErrorType.SCHEMA_ERROR
        )


class TestFileIO:
    """Tests for save_state and load_state."""

    def test_save_and_load(self, state_path) -> None:  # noqa: ANN001
        save_state(SNAPSHOTS["blocked"], state_path)

        assert state_file_exists(state_path)
        assert load_state(state_path) == SNAPSHOTS["blocked"]

    def test_save_leaves_no_temp_files(self, state_path) -> None:  # noqa: ANN001
        save_state(SNAPSHOTS["initial"], state_path)
        save_state(SNAPSHOTS["complete"], state_path)

        assert [p.name for p in state_path.parent.iterdir()] == [state_path.name]

    def test_failed_save_keeps_previous_file(self, state_path, monkeypatch) -> None:  # noqa: ANN001
        """A write that fails mid-way leaves the old file byte-identical."""
        save_state(SNAPSHOTS["initial"], state_path)
        before = state_path.read_bytes()

        def fail_replace(self, target):  # noqa: ANN001, ANN202
            raise OSError("disk full")

        monkeypatch.setattr("pathlib.Path.replace", fail_replace)

        with pytest.raises(StatePersistenceError) as exc_info:
            save_state(SNAPSHOTS["complete"], state_path)

        assert exc_info.value.error_type is PersistenceErrorType.FILE_ERROR
        assert exc_info.value.details == "Check that the directory exists and is writable"
        assert state_path.read_bytes() == before
        assert [p.name for p in state_path.parent.iterdir()] == [state_path.name]

    def test_save_into_missing_directory(self, tmp_path) -> None:  # noqa: ANN001
        with pytest.raises(StatePersistenceError) as exc_info:
            save_state(SNAPSHOTS["initial"], tmp_path / "missing" / "state.json")

        assert exc_info.value.error_type is PersistenceErrorType.FILE_ERROR

    def test_load_missing_file(self, state_path) -> None:  # noqa: ANN001
        with pytest.raises(StatePersistenceError) as exc_info:
            load_state(state_path)

        assert exc_info.value.error_type is PersistenceErrorType.FILE_ERROR
        assert exc_info.value.not_found

    def test_load_empty_file(self, state_path) -> None:  # noqa: ANN001
        state_path.write_text("  \n")

        with pytest.raises(StatePersistenceError) as exc_info:
            load_state(state_path)

        assert exc_info.value.error_type is PersistenceErrorType.CORRUPTION_ERROR

    def test_load_wraps_decode_errors(self, state_path) -> None:  # noqa: ANN001
        state_path.write_text("{broken")

        with pytest.raises(StatePersistenceError) as exc_info:
            load_state(state_path)

        assert exc_info.value.error_type is PersistenceErrorType.PARSE_ERROR
        assert str(exc_info.value).startswith(f'Error loading state from "{state_path}"')

    def test_state_file_exists_ignores_directories(self, tmp_path) -> None:  # noqa: ANN001
        assert not state_file_exists(tmp_path)
