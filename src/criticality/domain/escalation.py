"""
Escalation engine for per-function synthesis failures.

Given a typed failure and the attempt history of one function, decides
whether to retry on the same model tier, escalate to the next tier, or
circuit-break the function for human review. Every function here is pure:
attempt records are replaced, never mutated.

Escalation table:

    | Failure              | Tier      | Action                          |
    |----------------------|-----------|---------------------------------|
    | Syntax (recoverable) | any       | Retry, final retry with hint    |
    | Syntax (fatal)       | any       | Escalate                        |
    | Type                 | any       | Retry with type hint, escalate  |
    | Test / Complexity    | any       | Retry, then escalate            |
    | Test / Complexity    | architect | Circuit break + human review    |
    | Timeout              | any       | Escalate immediately            |
    | Semantic             | any       | Escalate immediately            |
    | Semantic             | architect | Circuit break + human review    |
    | Security             | < arch.   | Escalate straight to architect  |
    | Security             | architect | Circuit break + human review    |
    | Coherence            | any       | Circuit break                   |
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import ClassVar

from criticality.domain.models import MODEL_TIER_ORDER, ModelTier

logger = logging.getLogger(__name__)

# =============================================================================
# FAILURE TAXONOMY
# =============================================================================


class Resource(Enum):
    CPU = "cpu"
    MEMORY = "memory"
    TIME = "time"
    NETWORK = "network"


class ViolationType(Enum):
    CONTRACT = "contract"
    INVARIANT = "invariant"
    POSTCONDITION = "postcondition"
    PRECONDITION = "precondition"


class BigO(Enum):
    CONSTANT = "O(1)"
    LOGARITHMIC = "O(log n)"
    LINEAR = "O(n)"
    LINEARITHMIC = "O(n log n)"
    QUADRATIC = "O(n^2)"
    CUBIC = "O(n^3)"
    EXPONENTIAL = "O(2^n)"


class VulnerabilityType(Enum):
    """OWASP / CWE style vulnerability tags."""

    INJECTION = "injection"  # CWE-89, CWE-78
    BROKEN_AUTH = "broken-auth"
    SENSITIVE_DATA_EXPOSURE = "sensitive-data-exposure"
    XXE = "xxe"
    BROKEN_ACCESS_CONTROL = "broken-access-control"
    SECURITY_MISCONFIGURATION = "security-misconfiguration"
    XSS = "xss"  # CWE-79
    INSECURE_DESERIALIZATION = "insecure-deserialization"
    KNOWN_VULNERABLE_COMPONENTS = "known-vulnerable-components"
    INSUFFICIENT_LOGGING = "insufficient-logging"
    PATH_TRAVERSAL = "path-traversal"  # CWE-22


@dataclass(frozen=True)
class FailingTest:
    test_name: str
    expected: str
    actual: str
    error_message: str | None = None


@dataclass(frozen=True)
class SemanticViolation:
    type: ViolationType
    description: str
    violated_clause: str | None = None


@dataclass(frozen=True)
class SyntaxFailure:
    type: ClassVar[str] = "syntax"

    parse_error: str
    recoverable: bool


@dataclass(frozen=True)
class TypeFailure:
    type: ClassVar[str] = "type"

    compiler_error: str


@dataclass(frozen=True)
class TestFailure:
    type: ClassVar[str] = "test"
    __test__: ClassVar[bool] = False  # not a pytest test class

    failing_tests: tuple[FailingTest, ...]


@dataclass(frozen=True)
class TimeoutFailure:
    type: ClassVar[str] = "timeout"

    resource: Resource
    limit: int


@dataclass(frozen=True)
class SemanticFailure:
    type: ClassVar[str] = "semantic"

    violation: SemanticViolation


@dataclass(frozen=True)
class ComplexityFailure:
    type: ClassVar[str] = "complexity"

    expected: BigO
    measured: BigO


@dataclass(frozen=True)
class SecurityFailure:
    type: ClassVar[str] = "security"

    vulnerability: VulnerabilityType


@dataclass(frozen=True)
class CoherenceFailure:
    type: ClassVar[str] = "coherence"

    conflicting_functions: tuple[str, ...]


FailureType = (
    SyntaxFailure
    | TypeFailure
    | TestFailure
    | TimeoutFailure
    | SemanticFailure
    | ComplexityFailure
    | SecurityFailure
    | CoherenceFailure
)

_RECOVERABLE_SYNTAX_PATTERNS = [
    re.compile(r"missing.*semicolon", re.IGNORECASE),
    re.compile(r"expected.*[;{}()\[\]]", re.IGNORECASE),
    re.compile(r"unexpected token", re.IGNORECASE),
    re.compile(r"unterminated.*string", re.IGNORECASE),
    re.compile(r"unexpected end", re.IGNORECASE),
]


def is_syntax_recoverable(parse_error: str) -> bool:
    """True if the parse error looks fixable with a hint (missing bracket, typo)."""
    return any(p.search(parse_error) for p in _RECOVERABLE_SYNTAX_PATTERNS)


def create_syntax_failure(
    parse_error: str, recoverable: bool | None = None
) -> SyntaxFailure:
    if recoverable is None:
        recoverable = is_syntax_recoverable(parse_error)
    return SyntaxFailure(parse_error=parse_error, recoverable=recoverable)


def create_type_failure(compiler_error: str) -> TypeFailure:
    return TypeFailure(compiler_error=compiler_error)


def create_test_failure(failing_tests: list[FailingTest] | tuple[FailingTest, ...]) -> TestFailure:
    return TestFailure(failing_tests=tuple(failing_tests))


def create_timeout_failure(resource: Resource, limit: int) -> TimeoutFailure:
    return TimeoutFailure(resource=resource, limit=limit)


def create_semantic_failure(violation: SemanticViolation) -> SemanticFailure:
    return SemanticFailure(violation=violation)


def create_complexity_failure(expected: BigO, measured: BigO) -> ComplexityFailure:
    return ComplexityFailure(expected=expected, measured=measured)


def create_security_failure(vulnerability: VulnerabilityType) -> SecurityFailure:
    return SecurityFailure(vulnerability=vulnerability)


def create_coherence_failure(
    conflicting_functions: list[str] | tuple[str, ...],
) -> CoherenceFailure:
    return CoherenceFailure(conflicting_functions=tuple(conflicting_functions))


# =============================================================================
# TIERS
# =============================================================================


def get_next_tier(tier: ModelTier) -> ModelTier | None:
    """Next tier up the chain, or None at architect."""
    index = MODEL_TIER_ORDER.index(tier)
    if index >= len(MODEL_TIER_ORDER) - 1:
        return None
    return MODEL_TIER_ORDER[index + 1]


def is_highest_tier(tier: ModelTier) -> bool:
    return tier is ModelTier.ARCHITECT


# =============================================================================
# ATTEMPT TRACKING
# =============================================================================


@dataclass(frozen=True)
class FunctionAttempts:
    """Per-function attempt bookkeeping across tiers."""

    function_id: str
    attempts_by_tier: tuple[tuple[ModelTier, int], ...] = field(
        default_factory=lambda: tuple((t, 0) for t in MODEL_TIER_ORDER)
    )
    total_attempts: int = 0
    last_failure: FailureType | None = None
    syntax_hint_provided: bool = False

    def attempts_on(self, tier: ModelTier) -> int:
        return dict(self.attempts_by_tier).get(tier, 0)


def create_function_attempts(function_id: str) -> FunctionAttempts:
    return FunctionAttempts(function_id=function_id)


def record_attempt(
    attempts: FunctionAttempts,
    tier: ModelTier,
    failure: FailureType | None = None,
) -> FunctionAttempts:
    """New record with one more attempt on tier (and the failure, if given)."""
    counts = dict(attempts.attempts_by_tier)
    counts[tier] = counts.get(tier, 0) + 1
    return replace(
        attempts,
        attempts_by_tier=tuple((t, counts.get(t, 0)) for t in MODEL_TIER_ORDER),
        total_attempts=attempts.total_attempts + 1,
        last_failure=failure if failure is not None else attempts.last_failure,
    )


def record_syntax_hint(attempts: FunctionAttempts) -> FunctionAttempts:
    return replace(attempts, syntax_hint_provided=True)


def reset_syntax_hint(attempts: FunctionAttempts) -> FunctionAttempts:
    """Clear the hint flag; called when moving to a new tier."""
    return replace(attempts, syntax_hint_provided=False)


# =============================================================================
# DECISIONS
# =============================================================================


@dataclass(frozen=True)
class EscalationConfig:
    syntax_retry_limit: int = 2
    type_retry_limit: int = 2
    test_retry_limit: int = 3
    max_attempts_per_function: int = 8


DEFAULT_ESCALATION_CONFIG = EscalationConfig()

TYPE_HINT = (
    "Please ensure all types are used correctly. "
    "Review the type definitions provided."
)


@dataclass(frozen=True)
class RetrySame:
    type: ClassVar[str] = "retry_same"

    with_hint: bool
    hint: str | None = None


@dataclass(frozen=True)
class Escalate:
    type: ClassVar[str] = "escalate"

    to_tier: ModelTier


@dataclass(frozen=True)
class CircuitBreak:
    type: ClassVar[str] = "circuit_break"

    reason: str
    requires_human_review: bool


EscalationAction = RetrySame | Escalate | CircuitBreak


@dataclass(frozen=True)
class EscalationDecision:
    action: EscalationAction
    reason: str
    next_tier: ModelTier | None = None


def generate_syntax_hint(parse_error: str) -> str:
    return (
        f"SYNTAX ERROR in previous attempt:\n{parse_error}\n\n"
        "Please ensure the code is syntactically valid. "
        "Check for missing semicolons, brackets, and proper string termination."
    )


def _retry(tier: ModelTier, reason: str, hint: str | None = None) -> EscalationDecision:
    return EscalationDecision(
        action=RetrySame(with_hint=hint is not None, hint=hint),
        next_tier=tier,
        reason=reason,
    )


def _escalate_or_break(tier: ModelTier, reason: str) -> EscalationDecision:
    next_tier = get_next_tier(tier)
    if next_tier is None:
        return EscalationDecision(
            action=CircuitBreak(
                reason=f"All model tiers exhausted: {reason}",
                requires_human_review=False,
            ),
            reason=f"Cannot escalate from {tier.value} - circuit break",
        )
    return EscalationDecision(
        action=Escalate(to_tier=next_tier),
        next_tier=next_tier,
        reason=f"{reason} - escalating from {tier.value} to {next_tier.value}",
    )


def _with_human_review(decision: EscalationDecision) -> EscalationDecision:
    """Force human review on a circuit break decision."""
    if not isinstance(decision.action, CircuitBreak):
        return decision
    return EscalationDecision(
        action=replace(decision.action, requires_human_review=True),
        reason=f"{decision.reason} - requires human review",
    )


def _handle_syntax(
    failure: SyntaxFailure,
    attempts: FunctionAttempts,
    tier: ModelTier,
    config: EscalationConfig,
) -> EscalationDecision:
    if not failure.recoverable:
        return _escalate_or_break(tier, "Fatal syntax error - escalating")

    used = attempts.attempts_on(tier)
    limit = config.syntax_retry_limit
    if used < limit:
        if not attempts.syntax_hint_provided:
            return _retry(tier, f"Recoverable syntax error, retry {used + 1}/{limit}")
        return _retry(
            tier,
            f"Recoverable syntax error with hint, retry {used + 1}/{limit}",
            hint=generate_syntax_hint(failure.parse_error),
        )
    if used == limit and not attempts.syntax_hint_provided:
        return _retry(
            tier,
            "Final retry with syntax hint before escalation",
            hint=generate_syntax_hint(failure.parse_error),
        )
    return _escalate_or_break(tier, "Syntax error retry limit exceeded")


def _handle_type(used: int, tier: ModelTier, config: EscalationConfig) -> EscalationDecision:
    limit = config.type_retry_limit
    if used < limit:
        return _retry(
            tier,
            f"Type error, retry {used + 1}/{limit} with expanded context",
            hint=TYPE_HINT,
        )
    return _escalate_or_break(tier, "Type error retry limit exceeded")


def _handle_test(used: int, tier: ModelTier, config: EscalationConfig) -> EscalationDecision:
    limit = config.test_retry_limit
    if used < limit:
        return _retry(tier, f"Test failure, retry {used + 1}/{limit}")
    return _with_human_review(
        _escalate_or_break(tier, "Test failure retry limit exceeded")
    )


def _handle_security(tier: ModelTier) -> EscalationDecision:
    if is_highest_tier(tier):
        return EscalationDecision(
            action=CircuitBreak(
                reason="Security vulnerability detected - requires human review",
                requires_human_review=True,
            ),
            reason="Security vulnerability on architect model - circuit break with human review",
        )
    return EscalationDecision(
        action=Escalate(to_tier=ModelTier.ARCHITECT),
        next_tier=ModelTier.ARCHITECT,
        reason="Security vulnerability - immediate escalation to architect",
    )


def determine_escalation(
    failure: FailureType,
    attempts: FunctionAttempts,
    current_tier: ModelTier,
    config: EscalationConfig = DEFAULT_ESCALATION_CONFIG,
) -> EscalationDecision:
    """
    Decide what to do after a failed attempt.

    Total over every failure kind, tier, and attempt count: always returns a
    retry_same, escalate, or circuit_break decision and never raises for a
    known failure type.

    Args:
        failure: The failure just observed
        attempts: Attempt history for the function
        current_tier: Tier that produced the failure
        config: Retry limits

    Returns:
        EscalationDecision
    """
    if attempts.total_attempts >= config.max_attempts_per_function:
        decision = EscalationDecision(
            action=CircuitBreak(
                reason=f"Maximum attempts ({config.max_attempts_per_function}) exceeded",
                requires_human_review=False,
            ),
            reason=(
                f"Exceeded max attempts per function "
                f"({attempts.total_attempts}/{config.max_attempts_per_function})"
            ),
        )
    elif isinstance(failure, CoherenceFailure):
        decision = EscalationDecision(
            action=CircuitBreak(
                reason="Coherence failure - conflicting function implementations",
                requires_human_review=False,
            ),
            reason="Coherence failure detected - return to Lattice for structural review",
        )
    elif isinstance(failure, SecurityFailure):
        decision = _handle_security(current_tier)
    elif isinstance(failure, TimeoutFailure):
        decision = _escalate_or_break(current_tier, "Timeout - immediate escalation")
    elif isinstance(failure, SemanticFailure):
        decision = _with_human_review(
            _escalate_or_break(current_tier, "Semantic violation - immediate escalation")
        )
    elif isinstance(failure, SyntaxFailure):
        decision = _handle_syntax(failure, attempts, current_tier, config)
    elif isinstance(failure, TypeFailure):
        decision = _handle_type(attempts.attempts_on(current_tier), current_tier, config)
    elif isinstance(failure, (TestFailure, ComplexityFailure)):
        decision = _handle_test(attempts.attempts_on(current_tier), current_tier, config)
    else:
        raise TypeError(f"Unknown failure type: {failure!r}")

    logger.debug(
        "%s on %s (%s): %s",
        attempts.function_id,
        current_tier.value,
        failure.type,
        format_escalation_action(decision.action),
    )
    return decision


# =============================================================================
# SUMMARIES
# =============================================================================


def generate_failure_summary(
    function_id: str, signature: str, failure: FailureType
) -> str:
    """
    Describe WHAT failed for an escalation prompt.

    Only the current failure is rendered; prior attempts are deliberately
    left out so a retry never sees earlier broken implementations.
    """
    lines = [
        f"FUNCTION: {function_id}",
        f"SIGNATURE: {signature}",
        "",
        f"FAILURE TYPE: {failure.type.capitalize()}",
    ]

    if isinstance(failure, SyntaxFailure):
        lines.append(f"PARSE ERROR: {failure.parse_error}")
    elif isinstance(failure, TypeFailure):
        lines.append(f"COMPILER ERROR: {failure.compiler_error}")
    elif isinstance(failure, TestFailure):
        lines.append("FAILING TESTS:")
        for test in failure.failing_tests[:5]:
            lines.append(
                f"  - {test.test_name}: expected {test.expected}, got {test.actual}"
            )
    elif isinstance(failure, TimeoutFailure):
        lines.append(
            f"TIMEOUT: {failure.resource.value} exceeded limit of {failure.limit}ms"
        )
    elif isinstance(failure, SemanticFailure):
        violation = failure.violation
        lines.append(f"VIOLATION: {violation.type.value} - {violation.description}")
        if violation.violated_clause is not None:
            lines.append(f"CLAUSE: {violation.violated_clause}")
    elif isinstance(failure, ComplexityFailure):
        lines.append(f"EXPECTED: {failure.expected.value}")
        lines.append(f"MEASURED: {failure.measured.value}")
    elif isinstance(failure, SecurityFailure):
        lines.append(f"VULNERABILITY: {failure.vulnerability.value}")
    elif isinstance(failure, CoherenceFailure):
        lines.append(f"CONFLICTING FUNCTIONS: {', '.join(failure.conflicting_functions)}")

    lines.append("")
    lines.append("NOTE: Previous attempts discarded. Implement from scratch.")
    return "\n".join(lines)


def requires_immediate_escalation(failure: FailureType) -> bool:
    if isinstance(failure, SyntaxFailure):
        return not failure.recoverable
    return isinstance(
        failure, (SecurityFailure, TimeoutFailure, SemanticFailure, CoherenceFailure)
    )


def causes_circuit_break(failure: FailureType) -> bool:
    return isinstance(failure, CoherenceFailure)


def get_retry_limit(
    failure: FailureType, config: EscalationConfig = DEFAULT_ESCALATION_CONFIG
) -> int:
    """Same-tier retries allowed before escalation (0 means immediate)."""
    if isinstance(failure, SyntaxFailure):
        return config.syntax_retry_limit
    if isinstance(failure, TypeFailure):
        return config.type_retry_limit
    if isinstance(failure, (TestFailure, ComplexityFailure)):
        return config.test_retry_limit
    return 0


def format_escalation_action(action: EscalationAction) -> str:
    if isinstance(action, RetrySame):
        return "Retry with hint" if action.with_hint else "Retry"
    if isinstance(action, Escalate):
        return f"Escalate to {action.to_tier.value}"
    if action.requires_human_review:
        return f"Circuit break (human review required): {action.reason}"
    return f"Circuit break: {action.reason}"
