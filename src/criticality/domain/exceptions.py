"""
Domain exceptions for the Criticality protocol.

Each exception carries its diagnosis as attributes so callers branch on
data (error_type, code) rather than on message text.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class PersistenceErrorType(Enum):
    """Classification of a state persistence failure."""

    PARSE_ERROR = "parse_error"
    SCHEMA_ERROR = "schema_error"
    FILE_ERROR = "file_error"
    VALIDATION_ERROR = "validation_error"
    CORRUPTION_ERROR = "corruption_error"


class StatePersistenceError(Exception):
    """
    Raised when a state snapshot cannot be saved, read, or decoded.

    Anything that invalidates the durable snapshot surfaces through this
    single type.
    """

    def __init__(
        self,
        message: str,
        error_type: PersistenceErrorType,
        details: str | None = None,
        cause: BaseException | None = None,
        not_found: bool = False,
    ):
        """
        Args:
            message: Human-readable error message
            error_type: Which persistence taxonomy entry this is
            details: Optional operator hint
            cause: Underlying exception, if any
            not_found: True when the state file does not exist
        """
        super().__init__(message)
        self.error_type = error_type
        self.details = details
        self.cause = cause
        self.not_found = not_found


class BlockingErrorCode(Enum):
    NOT_BLOCKING = "NOT_BLOCKING"
    ALREADY_BLOCKING = "ALREADY_BLOCKING"
    ALREADY_RESOLVED = "ALREADY_RESOLVED"
    INVALID_PHASE = "INVALID_PHASE"
    INVALID_RESPONSE = "INVALID_RESPONSE"
    NO_TIMEOUT = "NO_TIMEOUT"
    TIMEOUT_ESCALATION_NEEDED = "TIMEOUT_ESCALATION_NEEDED"
    LEDGER_REQUIRED_FOR_DEFAULT_STRATEGY = "LEDGER_REQUIRED_FOR_DEFAULT_STRATEGY"


class BlockingError(Exception):
    """Raised when a blocking query cannot be entered, answered, or timed out."""

    def __init__(self, code: BlockingErrorCode, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


class LedgerValidationError(Exception):
    """Raised when a decision does not satisfy ledger rules."""

    def __init__(self, message: str, errors: list[tuple[str, str]]):
        """
        Args:
            message: Summary message
            errors: (field, problem) pairs
        """
        super().__init__(message)
        self.errors = errors


class StartupStateError(Exception):
    """
    Raised when a state file exists but cannot be resumed safely.

    Carries the ResumeResult diagnosis, including the recommended recovery action,
    so the operator decides whether to start clean.
    """

    def __init__(self, message: str, resume_result: Any):
        super().__init__(message)
        self.resume_result = resume_result


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""

    pass
