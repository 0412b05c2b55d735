"""
Decision ledger implementations.

The ledger is append-only: decisions are never removed, and superseding a
decision marks it and links it to its replacement.
"""

import json
import logging
import re
import uuid
from dataclasses import replace
from pathlib import Path
from typing import Any

from criticality.domain.exceptions import LedgerValidationError
from criticality.domain.interfaces import DecisionLedgerInterface
from criticality.domain.models import (
    ConfidenceLevel,
    Decision,
    DecisionCategory,
    DecisionInput,
    DecisionPhase,
    DecisionSource,
    DecisionStatus,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

LEDGER_VERSION = "1.0.0"

_ID_NUMBER = re.compile(r"_(\d+)$")


class InMemoryDecisionLedger(DecisionLedgerInterface):
    """
    In-memory decision ledger.

    Ids are `<category>_<NNN>` with an independent counter per category.
    """

    def __init__(self, project: str = "criticality"):
        self._project = project
        self._created = utc_now_iso()
        self._last_modified = self._created
        self._decisions: list[Decision] = []
        self._counters: dict[DecisionCategory, int] = {}

    def _next_id(self, category: DecisionCategory) -> str:
        count = self._counters.get(category, 0) + 1
        self._counters[category] = count
        return f"{category.value}_{count:03d}"

    def _track_id(self, decision: Decision) -> None:
        match = _ID_NUMBER.search(decision.id)
        if match:
            number = int(match.group(1))
            if number > self._counters.get(decision.category, 0):
                self._counters[decision.category] = number

    def _validate(self, decision_input: DecisionInput) -> None:
        errors: list[tuple[str, str]] = []
        if not decision_input.constraint.strip():
            errors.append(("constraint", "Constraint must be a non-empty string"))
        for i, dep in enumerate(decision_input.dependencies):
            if not dep.strip():
                errors.append((f"dependencies[{i}]", "Dependency must be a non-empty string"))
        for i, sup in enumerate(decision_input.supersedes):
            if not sup.strip():
                errors.append(
                    (f"supersedes[{i}]", "Supersedes entry must be a non-empty string")
                )
        if errors:
            summary = "\n".join(f"  - {name}: {problem}" for name, problem in errors)
            raise LedgerValidationError(
                f"Decision validation failed with {len(errors)} error(s):\n{summary}",
                errors,
            )

    def _changed(self) -> None:
        """Hook called after every mutation."""
        pass

    def append(self, decision_input: DecisionInput) -> Decision:
        self._validate(decision_input)
        decision = Decision(
            id=self._next_id(decision_input.category),
            timestamp=utc_now_iso(),
            category=decision_input.category,
            constraint=decision_input.constraint,
            source=decision_input.source,
            confidence=decision_input.confidence,
            status=DecisionStatus.ACTIVE,
            phase=decision_input.phase,
            rationale=decision_input.rationale,
            dependencies=decision_input.dependencies,
            supersedes=decision_input.supersedes,
            failure_context=decision_input.failure_context,
            human_query_id=decision_input.human_query_id,
        )
        self._decisions.append(decision)
        self._last_modified = decision.timestamp
        logger.debug("Appended decision %s", decision.id)
        self._changed()
        return decision

    def get(self, decision_id: str) -> Decision:
        for decision in self._decisions:
            if decision.id == decision_id:
                return decision
        raise KeyError(decision_id)

    def list_decisions(
        self,
        category: DecisionCategory | None = None,
        phase: DecisionPhase | None = None,
    ) -> list[Decision]:
        return [
            d
            for d in self._decisions
            if (category is None or d.category == category)
            and (phase is None or d.phase == phase)
        ]

    def supersede(
        self,
        old_id: str,
        decision_input: DecisionInput,
        force_override_canonical: bool = False,
    ) -> Decision:
        """
        Append a replacement for old_id and mark old_id superseded.

        Raises:
            KeyError: If old_id does not exist
            LedgerValidationError: If old_id is no longer active, or is
                canonical and force_override_canonical is not set
        """
        old = self.get(old_id)
        if old.status is not DecisionStatus.ACTIVE:
            raise LedgerValidationError(
                f"Cannot supersede decision '{old_id}': decision is already {old.status.value}",
                [("status", old.status.value)],
            )
        if old.confidence is ConfidenceLevel.CANONICAL and not force_override_canonical:
            raise LedgerValidationError(
                f"Cannot supersede canonical decision '{old_id}' without explicit override",
                [("confidence", old.confidence.value)],
            )

        supersedes = decision_input.supersedes
        if old_id not in supersedes:
            supersedes = (*supersedes, old_id)
        new = self.append(replace(decision_input, supersedes=supersedes))

        index = self._decisions.index(old)
        self._decisions[index] = replace(
            old, status=DecisionStatus.SUPERSEDED, superseded_by=new.id
        )
        self._changed()
        return new

    def __len__(self) -> int:
        return len(self._decisions)


# =============================================================================
# FILESYSTEM
# =============================================================================


def _decision_to_dict(decision: Decision) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": decision.id,
        "timestamp": decision.timestamp,
        "category": decision.category.value,
        "constraint": decision.constraint,
        "source": decision.source.value,
        "confidence": decision.confidence.value,
        "status": decision.status.value,
        "phase": decision.phase.value,
    }
    if decision.rationale is not None:
        data["rationale"] = decision.rationale
    if decision.dependencies:
        data["dependencies"] = list(decision.dependencies)
    if decision.supersedes:
        data["supersedes"] = list(decision.supersedes)
    if decision.superseded_by is not None:
        data["superseded_by"] = decision.superseded_by
    if decision.failure_context is not None:
        data["failure_context"] = decision.failure_context
    if decision.human_query_id is not None:
        data["human_query_id"] = decision.human_query_id
    return data


def _dict_to_decision(data: dict[str, Any]) -> Decision:
    return Decision(
        id=data["id"],
        timestamp=data["timestamp"],
        category=DecisionCategory(data["category"]),
        constraint=data["constraint"],
        source=DecisionSource(data["source"]),
        confidence=ConfidenceLevel(data["confidence"]),
        status=DecisionStatus(data["status"]),
        phase=DecisionPhase(data["phase"]),
        rationale=data.get("rationale"),
        dependencies=tuple(data.get("dependencies", ())),
        supersedes=tuple(data.get("supersedes", ())),
        superseded_by=data.get("superseded_by"),
        failure_context=data.get("failure_context"),
        human_query_id=data.get("human_query_id"),
    )


class FilesystemDecisionLedger(InMemoryDecisionLedger):
    """
    Decision ledger persisted to a single JSON file.

    File layout:
        {"meta": {version, created, project, last_modified}, "decisions": [...]}

    The whole file is rewritten atomically after every change.
    """

    def __init__(self, path: str | Path, project: str = "criticality"):
        super().__init__(project)
        self._path = Path(path)
        if self._path.exists():
            self._load()

    def _load(self) -> None:
        try:
            with open(self._path, encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise LedgerValidationError(
                f'Invalid JSON in ledger file "{self._path}": {e.msg}', [("file", e.msg)]
            ) from e

        if not isinstance(data, dict) or not isinstance(data.get("meta"), dict):
            raise LedgerValidationError(
                f'Invalid ledger file "{self._path}": missing meta section',
                [("meta", "missing")],
            )
        if not isinstance(data.get("decisions"), list):
            raise LedgerValidationError(
                f'Invalid ledger file "{self._path}": missing decisions list',
                [("decisions", "missing")],
            )

        meta = data["meta"]
        self._project = meta.get("project", self._project)
        self._created = meta.get("created", self._created)
        self._last_modified = meta.get("last_modified", self._created)
        try:
            for raw in data["decisions"]:
                decision = _dict_to_decision(raw)
                self._decisions.append(decision)
                self._track_id(decision)
        except (KeyError, ValueError) as e:
            raise LedgerValidationError(
                f'Invalid decision in ledger file "{self._path}": {e}',
                [("decisions", str(e))],
            ) from e
        logger.debug("Loaded %d decisions from %s", len(self._decisions), self._path)

    def _changed(self) -> None:
        document = {
            "meta": {
                "version": LEDGER_VERSION,
                "created": self._created,
                "project": self._project,
                "last_modified": self._last_modified,
            },
            "decisions": [_decision_to_dict(d) for d in self._decisions],
        }
        self._path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self._path.parent / f".ledger-{uuid.uuid4()}.tmp"
        try:
            with open(temp_path, "w", encoding="utf-8") as f:
                json.dump(document, f, indent=2)
            temp_path.replace(self._path)
        except OSError:
            temp_path.unlink(missing_ok=True)
            raise
