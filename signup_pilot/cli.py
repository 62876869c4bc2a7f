"""CLI entry point for signup-pilot."""

from __future__ import annotations

import asyncio
import json
import signal
import sys
import uuid
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, TypeVar

import click

from signup_pilot import __version__
from signup_pilot.browser.models import SENSITIVE_ACTIONS
from signup_pilot.utils.logging import configure_logging, get_logger, start_invocation
from signup_pilot.utils.result import ExitCode

# Default paths
DEFAULT_CONFIG = "./config"
DEFAULT_STATE = "./state"

T = TypeVar("T")


class Context:
    """CLI context for sharing state between commands."""

    def __init__(
        self,
        config_dir: Path,
        state_dir: Path,
        credentials_file: Optional[Path],
        log_level: Optional[str],
        log_format: Optional[str],
        dry_run: bool,
        correlation_id: str = "",
    ) -> None:
        self.config_dir = config_dir
        self.state_dir = state_dir
        self.credentials_file = credentials_file
        self.log_level = log_level
        self.log_format = log_format
        self.dry_run = dry_run
        self.correlation_id = correlation_id
        self.logger = get_logger("cli")

    def load_config(self):
        """Load configuration or exit with CONFIG_ERROR."""
        from signup_pilot.config import load_config

        result = load_config(self.config_dir)
        if result.is_err():
            error = result.unwrap_err()
            self.logger.error("config_invalid", field=error.field, error=error.message)
            output_json({"status": "error", "message": str(error)})
            sys.exit(ExitCode.CONFIG_ERROR)

        config = result.unwrap().with_state_dir(self.state_dir)
        if self.credentials_file is not None:
            config.credentials_file = self.credentials_file
        configure_logging(
            level=self.log_level or config.logging.level,
            format_type=self.log_format or config.logging.format,
        )
        return config

    def build_app(self):
        from signup_pilot.app import PilotApp

        return PilotApp(self.load_config())


pass_context = click.make_pass_decorator(Context)


def output_json(data: dict) -> None:
    """Output JSON to stdout."""
    click.echo(json.dumps(data, indent=2, default=str))


def run_with_shutdown(app: Any, make_coro: Callable[[], Awaitable[T]]) -> T:
    """
    Run a coroutine, closing the app's sessions on completion or on SIGINT/SIGTERM.
    """

    async def runner() -> T:
        loop = asyncio.get_running_loop()
        task = asyncio.ensure_future(make_coro())
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, task.cancel)
            except NotImplementedError:
                # Signal handlers are unavailable on some platforms
                pass
        try:
            return await task
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                try:
                    loop.remove_signal_handler(sig)
                except NotImplementedError:
                    pass
            await app.aclose()

    return asyncio.run(runner())


def exit_code_for(state: Any) -> int:
    """Map an attempt's final state onto a process exit code."""
    from signup_pilot.workflow import AttemptStatus

    if state.status is AttemptStatus.COMPLETED:
        return ExitCode.SUCCESS
    if state.status is AttemptStatus.PAUSED:
        return ExitCode.PAUSED_FOR_HUMAN
    if state.status is AttemptStatus.FAILED:
        if state.error_code == "COMPLIANCE_DENIED":
            return ExitCode.COMPLIANCE_DENIED
        return ExitCode.STAGE_FAILED
    return ExitCode.GENERAL_ERROR


def report_state(state: Any) -> None:
    output_json(state.to_dict())
    sys.exit(exit_code_for(state))


async def simulate_attempt(attempt_id: str, config: Any) -> Any:
    """Walk the pipeline with every automatic barrier passing, up to the first human step."""
    from signup_pilot.workflow import (
        LoggingNotifier,
        MemoryCheckpointStore,
        NoopBarrierExecutor,
        WorkflowOrchestrator,
    )

    async def no_delay(seconds: float) -> None:
        return None

    orchestrator = WorkflowOrchestrator(
        MemoryCheckpointStore(),
        NoopBarrierExecutor(),
        LoggingNotifier(),
        config=config.workflow,
        sleep=no_delay,
    )
    return await orchestrator.start(attempt_id)


def parse_contact(value: str) -> dict[str, str]:
    """Parse ``name:phone[:relationship]``."""
    parts = value.split(":")
    if len(parts) < 2:
        raise click.BadParameter(f"Expected name:phone[:relationship], got {value!r}")
    contact = {"name": parts[0].strip(), "phone": parts[1].strip()}
    if len(parts) > 2:
        contact["relationship"] = parts[2].strip()
    return contact


approve_option = click.option(
    "--approve",
    "approve",
    multiple=True,
    type=click.Choice(sorted(SENSITIVE_ACTIONS)),
    help="Pre-approve a sensitive browser action (can be repeated)",
)


@click.group()
@click.option(
    "--config",
    type=click.Path(exists=False, path_type=Path),
    default=DEFAULT_CONFIG,
    help="Path to config directory",
)
@click.option(
    "--state",
    type=click.Path(exists=False, path_type=Path),
    default=DEFAULT_STATE,
    help="Path to state directory (checkpoints, attempts, audit log)",
)
@click.option(
    "--credentials",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Path to parent credentials YAML file",
)
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warn", "error"], case_sensitive=False),
    default=None,
    help="Logging level (defaults to the config file)",
)
@click.option(
    "--log-format",
    type=click.Choice(["json", "text"], case_sensitive=False),
    default=None,
    help="Log format (defaults to the config file)",
)
@click.option(
    "--dry-run",
    is_flag=True,
    default=False,
    help="Show what would be done without touching any provider",
)
@click.version_option(version=__version__)
@click.pass_context
def cli(
    ctx: click.Context,
    config: Path,
    state: Path,
    credentials: Optional[Path],
    log_level: Optional[str],
    log_format: Optional[str],
    dry_run: bool,
) -> None:
    """
    signup-pilot - Compliance-gated registration automation.

    Checks whether a provider site may be automated, then drives a
    multi-stage registration attempt through a remote browser, pausing
    for the parent whenever a step needs a human.
    """
    configure_logging(level=log_level or "info", format_type=log_format or "json")
    correlation_id = start_invocation()

    ctx.obj = Context(
        config_dir=config,
        state_dir=state,
        credentials_file=credentials,
        log_level=log_level,
        log_format=log_format,
        dry_run=dry_run,
        correlation_id=correlation_id,
    )


@cli.command("check-url")
@click.argument("url")
@click.option("--provider-id", default=None, help="Known provider identifier")
@click.option("--provider-name", default=None, help="Provider name used in the explanation")
@pass_context
def check_url(ctx: Context, url: str, provider_id: Optional[str], provider_name: Optional[str]) -> None:
    """Evaluate whether automated access to URL is permitted."""
    from signup_pilot.compliance import parent_explanation

    app = ctx.build_app()
    verdict = run_with_shutdown(app, lambda: app.check_url(url, provider_id))

    output_json({
        **verdict.to_dict(),
        "explanation": parent_explanation(verdict, provider_name or verdict.host),
    })
    if verdict.is_red:
        sys.exit(ExitCode.COMPLIANCE_DENIED)


@cli.command()
@click.argument("url")
@click.option("--user-id", required=True, help="Parent account identifier")
@click.option("--attempt-id", default=None, help="Attempt identifier (generated if omitted)")
@click.option("--child-name", default="", help="Child's name as registered with the provider")
@click.option("--child-dob", type=click.DateTime(formats=["%Y-%m-%d"]), default=None, help="Child's date of birth")
@click.option("--grade", default=None, help="Child's school grade")
@click.option("--contact", "contacts", multiple=True, help="Emergency contact name:phone[:relationship]")
@click.option("--title", "title_contains", default=None, help="Program title to look for")
@click.option("--alt-title", "alt_titles", multiple=True, help="Alternate program title (can be repeated)")
@click.option("--week-of", type=click.DateTime(formats=["%Y-%m-%d"]), default=None, help="Preferred week")
@click.option("--time", "time_text", default=None, help="Preferred time text, e.g. '9:00 AM'")
@approve_option
@pass_context
def run(
    ctx: Context,
    url: str,
    user_id: str,
    attempt_id: Optional[str],
    child_name: str,
    child_dob,
    grade: Optional[str],
    contacts: tuple[str, ...],
    title_contains: Optional[str],
    alt_titles: tuple[str, ...],
    week_of,
    time_text: Optional[str],
    approve: tuple[str, ...],
) -> None:
    """Start a registration attempt for URL."""
    from signup_pilot.app import AttemptSpec
    from signup_pilot.providers import ChildProfile, ProviderIntent, detect_platform

    spec = AttemptSpec(
        attempt_id=attempt_id or f"att-{uuid.uuid4().hex[:12]}",
        url=url,
        user_id=user_id,
        child=ChildProfile(
            name=child_name,
            dob=child_dob.date() if child_dob else None,
            grade=grade,
            emergency_contacts=[parse_contact(c) for c in contacts],
        ),
        intent=ProviderIntent(
            title_contains=title_contains,
            week_of=week_of.date() if week_of else None,
            time_text=time_text,
            alt_titles=list(alt_titles),
        ),
    )

    ctx.logger.info("run_started", attempt_id=spec.attempt_id, url=url)

    if ctx.dry_run:
        config = ctx.load_config()
        simulated = asyncio.run(simulate_attempt(spec.attempt_id, config))
        first_pause = None
        if simulated.paused_barrier:
            first_pause = {"stage": simulated.current_stage.id, "barrier": simulated.paused_barrier}
        output_json({
            "status": "dry_run",
            "message": "Would start registration attempt",
            "attempt": spec.to_dict(),
            "platform": detect_platform(url),
            "stages": [
                {"id": s.id, "barriers": list(s.barriers), "requires_intervention": s.requires_intervention}
                for s in simulated.stages
            ],
            "first_pause": first_pause,
        })
        return

    app = ctx.build_app()
    try:
        state = run_with_shutdown(app, lambda: app.run_attempt(spec, approve))
    except ValueError as e:
        ctx.logger.error("run_failed", error=str(e))
        output_json({"status": "error", "message": str(e)})
        sys.exit(ExitCode.GENERAL_ERROR)

    report_state(state)


@cli.command()
@click.argument("attempt_id")
@click.argument("stage_id")
@approve_option
@pass_context
def resume(ctx: Context, attempt_id: str, stage_id: str, approve: tuple[str, ...]) -> None:
    """Continue ATTEMPT_ID's paused STAGE_ID after a human has acted."""
    from signup_pilot.errors import TransitionError

    app = ctx.build_app()
    try:
        state = run_with_shutdown(app, lambda: app.resume_attempt(attempt_id, stage_id, approve))
    except (KeyError, ValueError, TransitionError) as e:
        ctx.logger.error("resume_failed", attempt_id=attempt_id, error=str(e))
        output_json({"status": "error", "message": str(e)})
        sys.exit(ExitCode.GENERAL_ERROR)

    report_state(state)


@cli.command()
@click.argument("attempt_id")
@approve_option
@pass_context
def recover(ctx: Context, attempt_id: str, approve: tuple[str, ...]) -> None:
    """Rebuild ATTEMPT_ID from its last checkpoint and continue it."""
    app = ctx.build_app()
    try:
        state = run_with_shutdown(app, lambda: app.recover_attempt(attempt_id, approve))
    except (KeyError, ValueError) as e:
        ctx.logger.error("recover_failed", attempt_id=attempt_id, error=str(e))
        output_json({"status": "error", "message": str(e)})
        sys.exit(ExitCode.GENERAL_ERROR)

    report_state(state)


@cli.command()
@click.argument("attempt_id", required=False)
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"], case_sensitive=False),
    default="table",
    help="Output format",
)
@pass_context
def status(ctx: Context, attempt_id: Optional[str], output_format: str) -> None:
    """Show an attempt's state, or list attempts."""
    from signup_pilot.workflow import FileCheckpointStore

    config = ctx.load_config()
    store = FileCheckpointStore(config.workflow.checkpoint_dir)

    if attempt_id is None:
        attempts = asyncio.run(store.list_attempts())
        if output_format == "json":
            output_json({"attempts": attempts})
        else:
            click.echo(f"Attempts: {len(attempts)}")
            for attempt in attempts:
                click.echo(f"  {attempt}")
        return

    app = ctx.build_app()
    state = run_with_shutdown(app, lambda: app.attempt_status(attempt_id))
    if state is None:
        output_json({"status": "error", "message": f"Unknown attempt: {attempt_id}"})
        sys.exit(ExitCode.GENERAL_ERROR)

    if output_format == "json":
        output_json(state.to_dict())
        return

    current = state.current_stage
    click.echo(f"Attempt {state.attempt_id}")
    click.echo("=" * 40)
    click.echo(f"Status: {state.status.value}")
    click.echo(f"Current stage: {current.id if current else '-'}")
    click.echo(f"Progress: {state.total_progress:.0f}%")
    click.echo(f"Estimated time remaining: {state.estimated_time_remaining} min")
    if state.queue_position is not None:
        click.echo(f"Queue position: {state.queue_position}")
    if state.paused_barrier:
        click.echo(f"Waiting on: {state.paused_barrier}")
    if state.failure_reason:
        click.echo(f"Failure: {state.failure_reason}")
    click.echo("")
    for stage in state.stages:
        click.echo(f"  [{stage.status.value:>11}] {stage.id}")


@cli.command()
@pass_context
def providers(ctx: Context) -> None:
    """List supported registration platforms."""
    from signup_pilot.providers import PLATFORM_PATTERNS, list_platforms

    output_json({
        "providers": [
            {"platform": platform, "hosts": PLATFORM_PATTERNS.get(platform, [])}
            for platform in list_platforms()
        ],
    })


def main() -> None:
    """Main entry point."""
    try:
        cli()
    except Exception as e:
        logger = get_logger("cli")
        logger.error("cli_error", error=str(e))
        sys.exit(ExitCode.GENERAL_ERROR)


if __name__ == "__main__":
    main()
