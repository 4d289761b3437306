"""CLI entrypoint for agent-relay."""

import logging
import sys
from pathlib import Path

import rich_click as click

from agent_relay import __version__
from agent_relay.config import SUPPORTED_FRAME_FORMATS
from agent_relay.orchestrator.controllers import (
    ClassifyCommand,
    CommandResult,
    RelayCliController,
    RepairJsonCommand,
    RunCommand,
)
from agent_relay.orchestrator.models import FailureHint

click.rich_click.USE_MARKDOWN = True
CONTROLLER = RelayCliController()


@click.group()
@click.version_option(version=__version__, prog_name="agent-relay")
def agent_relay() -> None:
    """Fan out remote agent runs and stream their progress.

    Backends are configured with `AGENT_RELAY_*` environment variables.
    """


@agent_relay.command("run")
@click.argument("request_json", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--format",
    "frame_format",
    type=click.Choice(SUPPORTED_FRAME_FORMATS),
    default=None,
    help="Outbound framing. Defaults to AGENT_RELAY_FRAME_FORMAT (sse).",
)
@click.option(
    "--concurrency",
    type=click.IntRange(min=1),
    default=None,
    help="Override the request's concurrencyLimit.",
)
@click.option(
    "--run-timeout",
    "run_timeout_seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Override the run-wide wall-clock budget in seconds.",
)
@click.option("--verbose", is_flag=True, default=False, help="Log progress to stderr.")
def run(
    request_json: Path,
    frame_format: str | None,
    concurrency: int | None,
    run_timeout_seconds: float | None,
    verbose: bool,
) -> None:
    """Execute a run request and stream envelopes to stdout.

    Ctrl-C cancels the run; finished task results are kept and a final
    `run_complete` envelope is still written.
    """

    _configure_logging(verbose=verbose)
    result = CONTROLLER.run(
        RunCommand(
            request_path=request_json,
            frame_format=frame_format,
            concurrency=concurrency,
            run_timeout_seconds=run_timeout_seconds,
        ),
    )
    _emit(result)
    if not result.success:
        raise click.ClickException("Run rejected: configuration error.")


@agent_relay.command("repair-json")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def repair_json(path: Path) -> None:
    """Recover a JSON document from fenced, wrapped or truncated model output."""

    result = CONTROLLER.repair_json(RepairJsonCommand(path=path))
    _emit(result)
    if not result.success:
        raise click.ClickException("No JSON could be recovered.")


@agent_relay.command("classify")
@click.option("--message", required=True, help="Failure message reported by the backend.")
@click.option("--status", "status_code", type=int, default=None, help="HTTP status code, if any.")
@click.option(
    "--hint",
    type=click.Choice([hint.value for hint in FailureHint]),
    default=FailureHint.REMOTE.value,
    show_default=True,
    help="Where the failure originated.",
)
@click.option(
    "--retry-after-ms",
    type=click.FloatRange(min=0),
    default=None,
    help="Explicit retry delay, as from a Retry-After header.",
)
def classify(
    message: str,
    status_code: int | None,
    hint: str,
    retry_after_ms: float | None,
) -> None:
    """Show how a backend failure would be retried."""

    _emit(
        CONTROLLER.classify(
            ClassifyCommand(
                message=message,
                status_code=status_code,
                hint=hint,
                retry_after_ms=retry_after_ms,
            ),
        ),
    )


def _configure_logging(*, verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _emit(result: CommandResult) -> None:
    for line in result.lines:
        click.echo(line)
    for line in result.diagnostics:
        click.echo(line, err=True)


if __name__ == "__main__":  # pragma: no cover
    agent_relay()
