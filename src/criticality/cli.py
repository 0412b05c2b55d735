"""
Command-line interface for inspecting and driving a Criticality protocol run.

Usage:
    criticality status
    criticality resume
    criticality resolve "Use PostgreSQL"
"""

from __future__ import annotations

import logging
from dataclasses import replace
from pathlib import Path

import click
from rich.markup import escape

from criticality.application.checkpoint_service import get_startup_state
from criticality.application.orchestrator import (
    Orchestrator,
    TickStopReason,
    format_status,
    get_protocol_status,
)
from criticality.config import CriticalityConfig, load_config
from criticality.console import (
    console,
    print_error,
    print_failure,
    print_header,
    print_status,
    print_success,
)
from criticality.domain.blocking import find_open_record, resolve_blocking
from criticality.domain.exceptions import (
    BlockingError,
    ConfigurationError,
    LedgerValidationError,
    StartupStateError,
    StatePersistenceError,
)
from criticality.domain.models import BlockedState
from criticality.infrastructure.notifications import WebhookNotificationService
from criticality.infrastructure.operations import NoopOperations
from criticality.infrastructure.persistence import (
    FilesystemDecisionLedger,
    load_state,
    save_state,
    state_file_exists,
)
from criticality.logging_setup import setup_logging

logger = logging.getLogger(__name__)

DEFAULT_STATE_PATH = ".criticality-state.json"
DEFAULT_LEDGER_PATH = ".criticality-ledger.json"


class Settings:
    """Resolved paths and configuration shared by every command."""

    def __init__(
        self,
        state_path: Path,
        ledger_path: Path,
        config: CriticalityConfig | None = None,
        verbose: bool = False,
    ):
        self.state_path = state_path
        self.ledger_path = ledger_path
        self.config = config
        self.verbose = verbose


@click.group()
@click.option(
    "--state-path",
    "-s",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help=f"State file (default: {DEFAULT_STATE_PATH})",
)
@click.option(
    "--ledger-path",
    "-l",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help=f"Decision ledger file (default: {DEFAULT_LEDGER_PATH})",
)
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="JSON configuration file; its paths apply unless overridden",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(
    ctx: click.Context,
    state_path: Path | None,
    ledger_path: Path | None,
    config_path: Path | None,
    verbose: bool,
) -> None:
    """Criticality protocol state inspection and control."""
    config = None
    if config_path is not None:
        try:
            config = load_config(config_path)
        except ConfigurationError as e:
            print_error(str(e), hint="Fix the configuration file or omit --config")
            ctx.exit(1)

    log_file = None
    if config is not None:
        log_file = str(Path(config.paths.logs) / "criticality.log")
    setup_logging("criticality", log_file=log_file, verbose=verbose)

    if state_path is None:
        state_path = Path(config.paths.state if config else DEFAULT_STATE_PATH)
    if ledger_path is None:
        ledger_path = Path(config.paths.ledger if config else DEFAULT_LEDGER_PATH)

    ctx.obj = Settings(state_path, ledger_path, config=config, verbose=verbose)


@main.command()
@click.pass_obj
def status(settings: Settings) -> None:
    """Show the current protocol status."""
    if not state_file_exists(settings.state_path):
        console.print(f"No state file found at {settings.state_path}")
        return

    try:
        snapshot = load_state(settings.state_path)
    except StatePersistenceError as e:
        print_error(str(e), hint=e.details)
        raise SystemExit(1) from e

    print_header("Criticality Protocol Status", str(settings.state_path))
    if settings.verbose:
        console.print(format_status(snapshot, verbose=True), highlight=False, markup=False)
    else:
        print_status(get_protocol_status(snapshot), snapshot.state.kind)


@main.command()
@click.pass_obj
def resume(settings: Settings) -> None:
    """Resume from the state file and execute one tick."""
    try:
        startup = get_startup_state(settings.state_path)
    except StartupStateError as e:
        print_error(
            str(e),
            hint="Inspect the state file, restore a backup, or remove it to start clean",
        )
        raise SystemExit(1) from e

    if not startup.resumed:
        save_state(startup.snapshot, settings.state_path)
        console.print(f"Initialized new protocol state at {settings.state_path}")

    notifications = None
    if settings.config is not None and settings.config.notifications.enabled:
        notifications = WebhookNotificationService(settings.config.notifications)

    orchestrator = Orchestrator(
        settings.state_path,
        NoopOperations(),
        notification_service=notifications,
        ledger=FilesystemDecisionLedger(settings.ledger_path),
        snapshot=startup.snapshot,
    )
    try:
        result = orchestrator.tick()
    finally:
        if notifications is not None:
            notifications.close()

    if result.stop_reason is TickStopReason.COMPLETE:
        print_success("Protocol complete")
        return

    state = result.snapshot.state
    if result.stop_reason is TickStopReason.BLOCKED and isinstance(state, BlockedState):
        console.print(f"[yellow]Blocked:[/yellow] {escape(state.query)}", highlight=False)
        if state.options:
            for i, option in enumerate(state.options, 1):
                console.print(f"  {i}. {option}", highlight=False, markup=False)
        console.print('Answer with: criticality resolve "<response>"')
        return

    if result.stop_reason is TickStopReason.FAILED:
        print_failure("Protocol failed", result.error)
        raise SystemExit(1)

    print_status(get_protocol_status(result.snapshot), state.kind)


@main.command()
@click.argument("response", nargs=-1)
@click.option("--rationale", "-r", default=None, help="Why this answer was chosen")
@click.pass_obj
def resolve(settings: Settings, response: tuple[str, ...], rationale: str | None) -> None:
    """Answer the open blocking query with RESPONSE."""
    text = " ".join(response).strip()
    if not text:
        print_error("A response is required", hint='criticality resolve "<response>"')
        raise SystemExit(1)

    if not state_file_exists(settings.state_path):
        print_error(f"No state file found at {settings.state_path}")
        raise SystemExit(1)

    try:
        snapshot = load_state(settings.state_path)
    except StatePersistenceError as e:
        print_error(str(e), hint=e.details)
        raise SystemExit(1) from e

    state = snapshot.state
    if not isinstance(state, BlockedState):
        print_error(f"Protocol is not blocked (state: {state.kind})")
        raise SystemExit(1)

    record = find_open_record(snapshot.blocking_queries, state)
    try:
        ledger = FilesystemDecisionLedger(settings.ledger_path)
        active, _resolved, decision = resolve_blocking(
            state,
            record,
            text,
            ledger,
            rationale=rationale,
            allow_custom_response=True,
        )
    except (BlockingError, LedgerValidationError) as e:
        print_error(str(e))
        raise SystemExit(1) from e

    save_state(
        replace(
            snapshot,
            state=active,
            blocking_queries=tuple(
                q for q in snapshot.blocking_queries if q.id != record.id
            ),
        ),
        settings.state_path,
    )
    logger.debug("Recorded decision %s for %s", decision.id, record.id)
    print_success(f"Resolved: {text}\nDecision recorded as {decision.id}")


@main.command(name="help")
@click.pass_context
def help_command(ctx: click.Context) -> None:
    """Show this message and exit."""
    parent = ctx.parent
    click.echo(parent.get_help() if parent is not None else ctx.get_help())


if __name__ == "__main__":
    main()
