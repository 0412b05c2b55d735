"""
No-op external operations.

Used when ticking the protocol without real model, compiler or test
collaborators, e.g. from the CLI. Every operation succeeds and produces
nothing, so phases advance only on artifacts added from outside.
"""

import logging

from criticality.domain.interfaces import ExternalOperations
from criticality.domain.models import ActionResult, ProtocolPhase

logger = logging.getLogger(__name__)


class NoopOperations(ExternalOperations):
    def execute_model_call(self, phase: ProtocolPhase) -> ActionResult:
        logger.debug("No-op model call for %s", phase.value)
        return ActionResult(success=True)

    def run_compilation(self) -> ActionResult:
        return ActionResult(success=True)

    def run_tests(self) -> ActionResult:
        return ActionResult(success=True)

    def archive_phase_artifacts(self, phase: ProtocolPhase) -> ActionResult:
        logger.debug("No-op archive for %s", phase.value)
        return ActionResult(success=True)

    def send_blocking_notification(self, query: str) -> None:
        logger.info("Blocking query pending: %s", query)
