"""
JSON state file for the protocol snapshot.

The persisted document is:

    {
      "version": "2.0.0",
      "persistedAt": "<ISO-8601>",
      "state": {"kind": "Active" | "Blocked" | "Failed" | "Complete", ...},
      "artifacts": ["spec", ...],
      "blockingQueries": [{"id": ..., "phase": ..., ...}]
    }

Writes go to a temp file in the target directory which is then renamed over
the destination, so a reader sees either the old or the new document.
"""

import json
import logging
import re
import uuid
from dataclasses import MISSING, fields
from enum import Enum
from pathlib import Path
from typing import Any

import jsonschema

from criticality.domain.blocking import parse_timestamp
from criticality.domain.exceptions import PersistenceErrorType, StatePersistenceError
from criticality.domain.models import (
    STATE_KINDS,
    SUBSTATES_BY_PHASE,
    ActiveState,
    ArtifactType,
    BlockedState,
    BlockingRecord,
    BlockingResolution,
    BlockReason,
    CompleteState,
    ContradictionSeverity,
    FailedState,
    InterviewPhase,
    ModelTier,
    PhaseState,
    ProtocolPhase,
    ProtocolState,
    ProtocolStateSnapshot,
    SubState,
    utc_now_iso,
)
from criticality.schemas import validate_state_document

logger = logging.getLogger(__name__)

PERSISTED_STATE_VERSION = "2.0.0"

REQUIRED_DOCUMENT_FIELDS = ("version", "persistedAt", "state", "artifacts", "blockingQueries")

VERSION_PATTERN = re.compile(r"^\d+\.\d+\.\d+$")

# Sub-state fields holding enum values
_SUBSTATE_ENUM_FIELDS: dict[str, type[Enum]] = {
    "interview_phase": InterviewPhase,
    "severity": ContradictionSeverity,
    "from_tier": ModelTier,
    "to_tier": ModelTier,
}


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


def _schema_error(message: str, details: str | None = None) -> StatePersistenceError:
    return StatePersistenceError(message, PersistenceErrorType.SCHEMA_ERROR, details=details)


def _validation_error(message: str, details: str | None = None) -> StatePersistenceError:
    return StatePersistenceError(
        message, PersistenceErrorType.VALIDATION_ERROR, details=details
    )


# =============================================================================
# ENCODING
# =============================================================================


def _substate_to_dict(substate: SubState) -> dict[str, Any]:
    data: dict[str, Any] = {"step": substate.step}
    for f in fields(substate):
        value = getattr(substate, f.name)
        if value is None:
            continue
        if isinstance(value, Enum):
            value = value.value
        elif isinstance(value, tuple):
            value = list(value)
        data[_camel(f.name)] = value
    return data


def state_to_dict(state: ProtocolState) -> dict[str, Any]:
    if isinstance(state, ActiveState):
        return {
            "kind": state.kind,
            "phase": {
                "phase": state.phase.phase.value,
                "substate": _substate_to_dict(state.phase.substate),
            },
        }
    if isinstance(state, BlockedState):
        data: dict[str, Any] = {
            "kind": state.kind,
            "reason": state.reason.value,
            "phase": state.phase.value,
            "query": state.query,
            "blockedAt": state.blocked_at,
        }
        if state.options is not None:
            data["options"] = list(state.options)
        if state.timeout_ms is not None:
            data["timeoutMs"] = state.timeout_ms
        return data
    if isinstance(state, FailedState):
        data = {
            "kind": state.kind,
            "phase": state.phase.value,
            "error": state.error,
            "failedAt": state.failed_at,
            "recoverable": state.recoverable,
        }
        if state.code is not None:
            data["code"] = state.code
        if state.context is not None:
            data["context"] = state.context
        return data
    if isinstance(state, CompleteState):
        return {"kind": state.kind, "artifacts": [a.value for a in state.artifacts]}
    raise TypeError(f"Unknown protocol state: {state!r}")


def record_to_dict(record: BlockingRecord) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": record.id,
        "phase": record.phase.value,
        "query": record.query,
        "blockedAt": record.blocked_at,
        "resolved": record.resolved,
    }
    if record.options is not None:
        data["options"] = list(record.options)
    if record.timeout_ms is not None:
        data["timeoutMs"] = record.timeout_ms
    if record.resolution is not None:
        resolution: dict[str, Any] = {
            "queryId": record.resolution.query_id,
            "response": record.resolution.response,
            "resolvedAt": record.resolution.resolved_at,
        }
        if record.resolution.rationale is not None:
            resolution["rationale"] = record.resolution.rationale
        data["resolution"] = resolution
    return data


def snapshot_to_dict(
    snapshot: ProtocolStateSnapshot, persisted_at: str | None = None
) -> dict[str, Any]:
    """Build the versioned JSON document for a snapshot."""
    return {
        "version": PERSISTED_STATE_VERSION,
        "persistedAt": persisted_at or utc_now_iso(),
        "state": state_to_dict(snapshot.state),
        "artifacts": [a.value for a in snapshot.artifacts],
        "blockingQueries": [record_to_dict(r) for r in snapshot.blocking_queries],
    }


def serialize_state(
    snapshot: ProtocolStateSnapshot,
    pretty: bool = True,
    indent: int = 2,
    persisted_at: str | None = None,
) -> str:
    """
    Serialize a snapshot to a JSON string.

    Args:
        snapshot: Snapshot to serialize
        pretty: Indent the output
        indent: Indent width when pretty
        persisted_at: Override the write timestamp

    Returns:
        JSON text
    """
    document = snapshot_to_dict(snapshot, persisted_at)
    return json.dumps(document, indent=indent if pretty else None)


# =============================================================================
# DECODING
# =============================================================================


def _enum_value(enum_type: type[Enum], value: Any, label: str) -> Any:
    try:
        return enum_type(value)
    except ValueError:
        valid = ", ".join(str(m.value) for m in enum_type)
        raise _validation_error(
            f"Invalid {label}: {value!r}", details=f"Valid values are: {valid}"
        ) from None


def _dict_to_substate(phase: ProtocolPhase, data: Any) -> SubState:
    if not isinstance(data, dict) or not isinstance(data.get("step"), str):
        raise _schema_error(f"Sub-state for phase {phase.value} is missing its step")

    step = data["step"]
    by_step = {cls.step: cls for cls in SUBSTATES_BY_PHASE[phase]}
    cls = by_step.get(step)
    if cls is None:
        raise _schema_error(
            f"Unknown sub-state '{step}' for phase {phase.value}",
            details=f"Valid steps are: {', '.join(by_step)}",
        )

    kwargs: dict[str, Any] = {}
    for f in fields(cls):
        key = _camel(f.name)
        if key not in data:
            if f.default is MISSING and f.default_factory is MISSING:
                raise _schema_error(
                    f"Sub-state '{step}' is missing required field '{key}'"
                )
            continue
        value = data[key]
        if f.name in _SUBSTATE_ENUM_FIELDS:
            value = _enum_value(_SUBSTATE_ENUM_FIELDS[f.name], value, key)
        elif isinstance(value, list):
            value = tuple(value)
        kwargs[f.name] = value
    result: SubState = cls(**kwargs)
    return result


def _timestamp(value: str, field: str) -> str:
    """Check an ISO-8601 timestamp, returning it unchanged."""
    try:
        parse_timestamp(value)
    except ValueError as e:
        raise _schema_error(
            f"Invalid timestamp in '{field}': {value!r}",
            details="Timestamps must be ISO-8601 (e.g. 2025-01-01T00:00:00+00:00)",
        ) from e
    return value


def _options(data: dict[str, Any]) -> tuple[str, ...] | None:
    options = data.get("options")
    return tuple(options) if options is not None else None


def _dict_to_state(data: dict[str, Any]) -> ProtocolState:
    kind = data["kind"]
    if kind == "Active":
        phase = _enum_value(ProtocolPhase, data["phase"]["phase"], "phase")
        if phase not in SUBSTATES_BY_PHASE:
            raise _validation_error(f"Active state cannot be in phase {phase.value}")
        substate = _dict_to_substate(phase, data["phase"]["substate"])
        return ActiveState(phase=PhaseState(phase=phase, substate=substate))
    if kind == "Blocked":
        return BlockedState(
            reason=_enum_value(BlockReason, data["reason"], "blocking reason"),
            phase=_enum_value(ProtocolPhase, data["phase"], "phase"),
            query=data["query"],
            blocked_at=_timestamp(data["blockedAt"], "state.blockedAt"),
            options=_options(data),
            timeout_ms=data.get("timeoutMs"),
        )
    if kind == "Failed":
        return FailedState(
            phase=_enum_value(ProtocolPhase, data["phase"], "phase"),
            error=data["error"],
            failed_at=_timestamp(data["failedAt"], "state.failedAt"),
            recoverable=data["recoverable"],
            code=data.get("code"),
            context=data.get("context"),
        )
    return CompleteState(artifacts=_artifacts(data["artifacts"]))


def _artifacts(values: list[str]) -> tuple[ArtifactType, ...]:
    return tuple(_enum_value(ArtifactType, v, "artifact type") for v in values)


def _dict_to_record(data: dict[str, Any]) -> BlockingRecord:
    resolution = None
    if "resolution" in data:
        raw = data["resolution"]
        resolution = BlockingResolution(
            query_id=raw["queryId"],
            response=raw["response"],
            resolved_at=_timestamp(raw["resolvedAt"], "resolution.resolvedAt"),
            rationale=raw.get("rationale"),
        )
    return BlockingRecord(
        id=data["id"],
        phase=_enum_value(ProtocolPhase, data["phase"], "phase"),
        query=data["query"],
        blocked_at=_timestamp(data["blockedAt"], "blockingQueries.blockedAt"),
        resolved=data["resolved"],
        options=_options(data),
        timeout_ms=data.get("timeoutMs"),
        resolution=resolution,
    )


def parse_state_document(text: str) -> dict[str, Any]:
    """
    Parse state file text into a JSON object.

    Raises:
        StatePersistenceError: parse_error for invalid JSON, schema_error if
            the top level is not an object
    """
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise StatePersistenceError(
            f"Invalid JSON in state document: {e.msg}",
            PersistenceErrorType.PARSE_ERROR,
            details=f"line {e.lineno}, column {e.colno}",
            cause=e,
        ) from e
    if not isinstance(data, dict):
        raise _schema_error("State document must be a JSON object")
    return data


def snapshot_from_dict(data: dict[str, Any]) -> ProtocolStateSnapshot:
    """
    Decode a parsed state document.

    Raises:
        StatePersistenceError: schema_error for structural problems,
            validation_error for unknown state kinds or enum values
    """
    missing = [name for name in REQUIRED_DOCUMENT_FIELDS if name not in data]
    if missing:
        raise _schema_error(
            f"Missing required field: {missing[0]}",
            details=f"Missing fields: {', '.join(missing)}",
        )

    version = data["version"]
    if not isinstance(version, str):
        raise _schema_error("Field 'version' must be a string")
    if not VERSION_PATTERN.match(version):
        raise _schema_error(
            f"Invalid version format: {version!r}",
            details="Version must be in semver format (e.g. 2.0.0)",
        )

    state = data["state"]
    if not isinstance(state, dict) or "kind" not in state:
        raise _schema_error("Field 'state' must be an object with a 'kind'")
    if state["kind"] not in STATE_KINDS:
        raise _validation_error(
            f"Unknown state kind: {state['kind']!r}",
            details=f"Valid kinds are: {', '.join(STATE_KINDS)}",
        )

    try:
        validate_state_document(data)
    except jsonschema.ValidationError as e:
        location = "/".join(str(p) for p in e.absolute_path) or "<root>"
        error_type = (
            PersistenceErrorType.VALIDATION_ERROR
            if e.validator in ("enum", "const")
            else PersistenceErrorType.SCHEMA_ERROR
        )
        raise StatePersistenceError(
            f"Invalid state document at {location}: {e.message}",
            error_type,
            cause=e,
        ) from e

    return ProtocolStateSnapshot(
        state=_dict_to_state(state),
        artifacts=_artifacts(data["artifacts"]),
        blocking_queries=tuple(_dict_to_record(r) for r in data["blockingQueries"]),
    )


def deserialize_state(text: str) -> ProtocolStateSnapshot:
    """Inverse of serialize_state."""
    return snapshot_from_dict(parse_state_document(text))


# =============================================================================
# FILE I/O
# =============================================================================


def save_state(snapshot: ProtocolStateSnapshot, path: str | Path) -> None:
    """
    Atomically write a snapshot to path.

    A failed save leaves any previous file untouched.

    Raises:
        StatePersistenceError: file_error if the write or rename fails
    """
    target = Path(path)
    temp_path = target.parent / f".state-{uuid.uuid4()}.tmp"
    text = serialize_state(snapshot)

    try:
        with open(temp_path, "w", encoding="utf-8") as f:
            f.write(text)
        temp_path.replace(target)
    except OSError as e:
        temp_path.unlink(missing_ok=True)
        raise StatePersistenceError(
            f'Failed to save state to "{target}": {e}',
            PersistenceErrorType.FILE_ERROR,
            details="Check that the directory exists and is writable",
            cause=e,
        ) from e

    logger.debug("Saved %s state to %s", snapshot.state.kind, target)


def read_state_text(path: str | Path) -> str:
    """
    Read raw state file text.

    Raises:
        StatePersistenceError: file_error (not_found set when absent) or
            corruption_error for an empty file
    """
    source = Path(path)
    try:
        with open(source, encoding="utf-8") as f:
            text = f.read()
    except FileNotFoundError as e:
        raise StatePersistenceError(
            f'State file not found: "{source}"',
            PersistenceErrorType.FILE_ERROR,
            cause=e,
            not_found=True,
        ) from e
    except (OSError, UnicodeDecodeError) as e:
        raise StatePersistenceError(
            f'Failed to read state file "{source}": {e}',
            PersistenceErrorType.FILE_ERROR,
            cause=e,
        ) from e

    if not text.strip():
        raise StatePersistenceError(
            f'State file is empty: "{source}"',
            PersistenceErrorType.CORRUPTION_ERROR,
            details="The file exists but contains no data",
        )
    return text


def load_state(path: str | Path) -> ProtocolStateSnapshot:
    """
    Load and decode a snapshot from path.

    Raises:
        StatePersistenceError: see read_state_text and snapshot_from_dict
    """
    text = read_state_text(path)
    try:
        snapshot = deserialize_state(text)
    except StatePersistenceError as e:
        raise StatePersistenceError(
            f'Error loading state from "{path}": {e}',
            e.error_type,
            details=e.details,
            cause=e.cause or e,
        ) from e

    logger.debug("Loaded %s state from %s", snapshot.state.kind, path)
    return snapshot


def state_file_exists(path: str | Path) -> bool:
    return Path(path).is_file()
