"""
Checkpoint service: detect, validate, and resume persisted protocol state.

Startup either begins fresh (no state file) or resumes a validated snapshot.
A state file that exists but cannot be resumed is reported to the caller
with a recommended recovery action; it is never silently replaced.
"""

import logging
import os
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any

from criticality.domain.blocking import check_timeout, record_from_blocked_state
from criticality.domain.exceptions import (
    PersistenceErrorType,
    StartupStateError,
    StatePersistenceError,
)
from criticality.domain.models import (
    PROTOCOL_PHASES,
    ArtifactType,
    BlockedState,
    FailedState,
    ProtocolPhase,
    ProtocolStateSnapshot,
    create_initial_state_snapshot,
    get_phase,
)
from criticality.domain.transitions import get_required_artifacts
from criticality.infrastructure.persistence.state_file import (
    PERSISTED_STATE_VERSION,
    REQUIRED_DOCUMENT_FIELDS,
    VERSION_PATTERN,
    load_state,
    parse_state_document,
    read_state_text,
    snapshot_from_dict,
    state_file_exists,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_STATE_AGE_MS = 24 * 60 * 60 * 1000


# =============================================================================
# RESULT TYPES
# =============================================================================


class ValidationCode(Enum):
    # Errors
    INVALID_VERSION = "INVALID_VERSION"
    FUTURE_VERSION = "FUTURE_VERSION"
    INVALID_PHASE = "INVALID_PHASE"
    INVALID_STATE = "INVALID_STATE"
    MISSING_ARTIFACTS = "MISSING_ARTIFACTS"
    CORRUPTED_STRUCTURE = "CORRUPTED_STRUCTURE"
    # Warnings, or an error when stale state is not allowed
    STALE_STATE = "STALE_STATE"
    # Warnings
    UNKNOWN_ARTIFACTS = "UNKNOWN_ARTIFACTS"
    OLD_VERSION = "OLD_VERSION"
    BLOCKING_TIMEOUT_EXPIRED = "BLOCKING_TIMEOUT_EXPIRED"


@dataclass(frozen=True)
class ValidationIssue:
    code: ValidationCode
    message: str
    details: str | None = None


@dataclass(frozen=True)
class StateValidationResult:
    """Errors prevent resumption; warnings do not."""

    errors: tuple[ValidationIssue, ...] = ()
    warnings: tuple[ValidationIssue, ...] = ()

    @property
    def valid(self) -> bool:
        return not self.errors

    def merge(self, other: "StateValidationResult") -> "StateValidationResult":
        return StateValidationResult(
            errors=self.errors + other.errors,
            warnings=self.warnings + other.warnings,
        )


class ResumeFailureReason(Enum):
    NO_STATE_FILE = "NO_STATE_FILE"
    CORRUPTED_STATE = "CORRUPTED_STATE"
    INVALID_STATE = "INVALID_STATE"
    READ_ERROR = "READ_ERROR"
    STALE_STATE_REJECTED = "STALE_STATE_REJECTED"


class RecoveryAction(Enum):
    CLEAN_START = "CLEAN_START"
    RETRY_WITH_BACKUP = "RETRY_WITH_BACKUP"
    MANUAL_INTERVENTION = "MANUAL_INTERVENTION"


@dataclass(frozen=True)
class ResumeResult:
    """Outcome of resume_from_checkpoint."""

    success: bool
    snapshot: ProtocolStateSnapshot | None = None
    validation: StateValidationResult | None = None
    reason: ResumeFailureReason | None = None
    error: Exception | None = None
    recovery_action: RecoveryAction | None = None


@dataclass(frozen=True)
class StateDetection:
    found: bool
    file_path: Path
    modified_at: datetime | None = None


@dataclass(frozen=True)
class StartupState:
    snapshot: ProtocolStateSnapshot
    resumed: bool
    validation: StateValidationResult | None = None


# =============================================================================
# DETECTION AND VALIDATION
# =============================================================================


def detect_existing_state(path: str | Path) -> StateDetection:
    """Report whether a state file exists and when it was last modified."""
    file_path = Path(path)
    if not state_file_exists(file_path):
        return StateDetection(found=False, file_path=file_path)
    try:
        mtime = os.stat(file_path).st_mtime
    except OSError:
        return StateDetection(found=True, file_path=file_path)
    return StateDetection(
        found=True,
        file_path=file_path,
        modified_at=datetime.fromtimestamp(mtime, tz=UTC),
    )


def _parse_version(version: str) -> tuple[int, int, int]:
    major, minor, patch = version.split(".")
    return int(major), int(minor), int(patch)


def cumulative_required_artifacts(phase: ProtocolPhase) -> tuple[ArtifactType, ...]:
    """Every artifact that had to exist for the protocol to reach phase."""
    required: list[ArtifactType] = []
    for reached in PROTOCOL_PHASES[1 : PROTOCOL_PHASES.index(phase) + 1]:
        required.extend(get_required_artifacts(reached))
    return tuple(required)


def validate_persisted_structure(data: Any) -> StateValidationResult:
    """
    Structural checks on a raw state document before decoding it.

    Checks version compatibility, required top-level fields and unknown
    artifact names.
    """
    if not isinstance(data, dict):
        return StateValidationResult(
            errors=(
                ValidationIssue(
                    ValidationCode.CORRUPTED_STRUCTURE, "State data is not an object"
                ),
            )
        )

    errors: list[ValidationIssue] = []
    warnings: list[ValidationIssue] = []

    version = data.get("version")
    if not isinstance(version, str):
        errors.append(
            ValidationIssue(ValidationCode.INVALID_VERSION, "Missing or invalid version field")
        )
    elif not VERSION_PATTERN.match(version):
        errors.append(
            ValidationIssue(
                ValidationCode.INVALID_VERSION,
                f'Invalid version format: "{version}"',
                'Version must be in semver format (e.g., "2.0.0")',
            )
        )
    else:
        found = _parse_version(version)
        current = _parse_version(PERSISTED_STATE_VERSION)
        if found > current:
            errors.append(
                ValidationIssue(
                    ValidationCode.FUTURE_VERSION,
                    f"State was saved with newer version: {version} "
                    f"(current: {PERSISTED_STATE_VERSION})",
                    "Upgrade your installation or use a compatible state file",
                )
            )
        elif found[0] < current[0]:
            errors.append(
                ValidationIssue(
                    ValidationCode.INVALID_VERSION,
                    f"Major version mismatch: {version} vs {PERSISTED_STATE_VERSION}",
                    "State file is from an incompatible major version",
                )
            )
        elif found < current:
            warnings.append(
                ValidationIssue(
                    ValidationCode.OLD_VERSION,
                    f"State was saved with older version: {version}",
                    f"Current version is {PERSISTED_STATE_VERSION}",
                )
            )

    for name in REQUIRED_DOCUMENT_FIELDS:
        if name not in data:
            errors.append(
                ValidationIssue(
                    ValidationCode.CORRUPTED_STRUCTURE,
                    f'Missing required field: "{name}"',
                )
            )

    artifacts = data.get("artifacts")
    if isinstance(artifacts, list):
        known = {a.value for a in ArtifactType}
        unknown = [str(a) for a in artifacts if a not in known]
        if unknown:
            warnings.append(
                ValidationIssue(
                    ValidationCode.UNKNOWN_ARTIFACTS,
                    f"Unknown artifact types: {', '.join(unknown)}",
                    "These may be from a newer version of the protocol",
                )
            )

    return StateValidationResult(errors=tuple(errors), warnings=tuple(warnings))


def validate_state_integrity(
    snapshot: ProtocolStateSnapshot,
    persisted_at: datetime,
    max_age_ms: int = DEFAULT_MAX_STATE_AGE_MS,
    allow_stale_state: bool = True,
    now: datetime | None = None,
) -> StateValidationResult:
    """
    Semantic checks on a decoded snapshot before resuming it.

    Args:
        snapshot: Decoded snapshot
        persisted_at: When the snapshot was written (file mtime)
        max_age_ms: Age beyond which state is stale
        allow_stale_state: Warn on stale state instead of rejecting it
        now: Clock reading, defaults to the current time

    Returns:
        Errors and warnings found
    """
    current = now or datetime.now(UTC)
    errors: list[ValidationIssue] = []
    warnings: list[ValidationIssue] = []
    state = snapshot.state

    try:
        phase = get_phase(state)
    except TypeError:
        return StateValidationResult(
            errors=(
                ValidationIssue(
                    ValidationCode.INVALID_STATE,
                    f"Invalid state kind: {type(state).__name__}",
                    "Valid kinds are: Active, Blocked, Failed, Complete",
                ),
            )
        )

    if isinstance(state, BlockedState):
        if not state.query:
            errors.append(
                ValidationIssue(ValidationCode.CORRUPTED_STRUCTURE, "Blocked state missing query")
            )
        if state.timeout_ms is not None:
            try:
                check = check_timeout(record_from_blocked_state(state), current)
            except ValueError:
                check = None
                errors.append(
                    ValidationIssue(
                        ValidationCode.CORRUPTED_STRUCTURE,
                        f"Blocked state has an invalid timestamp: {state.blocked_at!r}",
                        "blockedAt must be an ISO-8601 timestamp",
                    )
                )
            if check is not None and check.timed_out:
                warnings.append(
                    ValidationIssue(
                        ValidationCode.BLOCKING_TIMEOUT_EXPIRED,
                        "Blocking state timeout has expired",
                        f"Blocked at {state.blocked_at}, timeout was "
                        f"{state.timeout_ms}ms, exceeded by {check.exceeded_by_ms}ms",
                    )
                )

    if isinstance(state, FailedState) and not state.error:
        errors.append(
            ValidationIssue(
                ValidationCode.CORRUPTED_STRUCTURE, "Failed state missing error message"
            )
        )

    required = cumulative_required_artifacts(phase)
    available = snapshot.artifact_set()
    missing = [a.value for a in required if a not in available]
    if missing:
        errors.append(
            ValidationIssue(
                ValidationCode.MISSING_ARTIFACTS,
                f"Missing required artifacts for phase {phase.value}: {', '.join(missing)}",
                f"Phase {phase.value} requires: {', '.join(a.value for a in required)}",
            )
        )

    age = current - persisted_at
    if age > timedelta(milliseconds=max_age_ms):
        age_minutes = round(age.total_seconds() / 60)
        threshold_minutes = round(max_age_ms / 1000 / 60)
        if allow_stale_state:
            warnings.append(
                ValidationIssue(
                    ValidationCode.STALE_STATE,
                    f"State file is {age_minutes} minutes old",
                    f"Threshold is {threshold_minutes} minutes",
                )
            )
        else:
            errors.append(
                ValidationIssue(
                    ValidationCode.STALE_STATE,
                    f"State file is too old: {age_minutes} minutes",
                    f"Maximum allowed age is {threshold_minutes} minutes. "
                    "Pass allow_stale_state=True to resume anyway.",
                )
            )

    return StateValidationResult(errors=tuple(errors), warnings=tuple(warnings))


# =============================================================================
# RESUME
# =============================================================================


def _persistence_failure(error: StatePersistenceError) -> ResumeResult:
    if error.error_type in (
        PersistenceErrorType.PARSE_ERROR,
        PersistenceErrorType.CORRUPTION_ERROR,
    ):
        return ResumeResult(
            success=False,
            reason=ResumeFailureReason.CORRUPTED_STATE,
            error=error,
            recovery_action=RecoveryAction.RETRY_WITH_BACKUP,
        )
    if error.error_type in (
        PersistenceErrorType.SCHEMA_ERROR,
        PersistenceErrorType.VALIDATION_ERROR,
    ):
        return ResumeResult(
            success=False,
            reason=ResumeFailureReason.INVALID_STATE,
            error=error,
            recovery_action=RecoveryAction.CLEAN_START,
        )
    return ResumeResult(
        success=False,
        reason=ResumeFailureReason.READ_ERROR,
        error=error,
        recovery_action=RecoveryAction.MANUAL_INTERVENTION,
    )


def resume_from_checkpoint(
    path: str | Path,
    max_age_ms: int = DEFAULT_MAX_STATE_AGE_MS,
    allow_stale_state: bool = True,
    now: datetime | None = None,
) -> ResumeResult:
    """
    Load and validate persisted state for resumption.

    Returns:
        ResumeResult with the snapshot on success, otherwise a failure
        reason and recommended recovery action
    """
    detection = detect_existing_state(path)
    if not detection.found:
        return ResumeResult(
            success=False,
            reason=ResumeFailureReason.NO_STATE_FILE,
            recovery_action=RecoveryAction.CLEAN_START,
        )
    if detection.modified_at is None:
        return ResumeResult(
            success=False,
            reason=ResumeFailureReason.READ_ERROR,
            recovery_action=RecoveryAction.MANUAL_INTERVENTION,
        )

    try:
        data = parse_state_document(read_state_text(path))
    except StatePersistenceError as e:
        return _persistence_failure(e)

    structure = validate_persisted_structure(data)
    if not structure.valid:
        return ResumeResult(
            success=False,
            validation=structure,
            reason=ResumeFailureReason.INVALID_STATE,
            recovery_action=RecoveryAction.CLEAN_START,
        )

    try:
        snapshot = snapshot_from_dict(data)
    except StatePersistenceError as e:
        return _persistence_failure(e)

    integrity = validate_state_integrity(
        snapshot,
        detection.modified_at,
        max_age_ms=max_age_ms,
        allow_stale_state=allow_stale_state,
        now=now,
    )
    validation = structure.merge(integrity)

    if any(e.code is ValidationCode.STALE_STATE for e in validation.errors):
        return ResumeResult(
            success=False,
            validation=validation,
            reason=ResumeFailureReason.STALE_STATE_REJECTED,
            recovery_action=RecoveryAction.CLEAN_START,
        )
    if not validation.valid:
        return ResumeResult(
            success=False,
            validation=validation,
            reason=ResumeFailureReason.INVALID_STATE,
            recovery_action=RecoveryAction.CLEAN_START,
        )

    for warning in validation.warnings:
        logger.warning("%s: %s", warning.code.value, warning.message)
    return ResumeResult(success=True, snapshot=snapshot, validation=validation)


def get_startup_state(
    path: str | Path,
    max_age_ms: int = DEFAULT_MAX_STATE_AGE_MS,
    allow_stale_state: bool = True,
    now: datetime | None = None,
) -> StartupState:
    """
    Snapshot to start the protocol from.

    Fresh when no state file exists, the resumed snapshot when it validates.

    Raises:
        StartupStateError: If a state file exists but cannot be resumed
    """
    result = resume_from_checkpoint(path, max_age_ms, allow_stale_state, now)

    if result.success and result.snapshot is not None:
        logger.info("Resuming from %s state", result.snapshot.state.kind)
        return StartupState(
            snapshot=result.snapshot, resumed=True, validation=result.validation
        )

    if result.reason is ResumeFailureReason.NO_STATE_FILE:
        logger.info("No state file at %s, starting fresh", path)
        return StartupState(snapshot=create_initial_state_snapshot(), resumed=False)

    detail = ""
    if result.error is not None:
        detail = f": {result.error}"
    elif result.validation is not None and result.validation.errors:
        detail = f": {result.validation.errors[0].message}"
    reason = result.reason.value if result.reason else "UNKNOWN"
    action = (
        result.recovery_action.value
        if result.recovery_action
        else RecoveryAction.MANUAL_INTERVENTION.value
    )
    raise StartupStateError(
        f'Cannot resume state from "{path}" ({reason}){detail}. '
        f"Recommended action: {action}",
        result,
    )


def is_state_corrupted(path: str | Path) -> bool:
    """True if the state file exists but cannot be parsed as a state document."""
    try:
        load_state(path)
    except StatePersistenceError as e:
        return e.error_type in (
            PersistenceErrorType.PARSE_ERROR,
            PersistenceErrorType.CORRUPTION_ERROR,
            PersistenceErrorType.SCHEMA_ERROR,
        )
    return False
