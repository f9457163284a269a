"""CLI entrypoint for jobdock."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from jobdock import __version__
from jobdock.environment.controllers import (
    EnvBatchCommand,
    EnvExecCommand,
    EnvironmentCliController,
)
from jobdock.orchestrator.controllers import (
    OrchestratorCliController,
    PromptEnqueueCommand,
    PromptListCommand,
    PromptMutateCommand,
    WorkerControlCommand,
    WorkerRunCommand,
)
from jobdock.queue.models import QueueStatus
from jobdock.supervisor.controllers import (
    ServiceStartProcessCommand,
    ServiceStopProcessCommand,
    SupervisorCliController,
)

click.rich_click.USE_MARKDOWN = True
ORCHESTRATOR_CONTROLLER = OrchestratorCliController()
ENVIRONMENT_CONTROLLER = EnvironmentCliController()
SUPERVISOR_CONTROLLER = SupervisorCliController()

T = TypeVar("T")

# Container, tracker, queue and supervisor errors all derive from RuntimeError.
_EXPECTED_ERRORS = (ValueError, RuntimeError, OSError)

_STATE_DIR_OPTION = click.option(
    "--state-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Prompt queue directory (default: JOBDOCK_STATE_DIR or .cache/jobdock/prompts).",
)


@click.group()
@click.version_option(version=__version__, prog_name="jobdock")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def jobdock(verbose: bool) -> None:
    """Prompt queue, background worker, container jobs and process supervisor."""

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@jobdock.group()
def prompt() -> None:
    """Prompt queue commands."""


@prompt.command("enqueue")
@_STATE_DIR_OPTION
@click.option("--source", default="cli", show_default=True, help="Recorded in prompt meta.")
@click.argument("text", nargs=-1, required=True)
def prompt_enqueue(state_dir: Path | None, source: str, text: tuple[str, ...]) -> None:
    """Add a free-text prompt to the queue, for example `fix ABC-123`."""

    _emit_lines(
        _guarded(
            lambda: ORCHESTRATOR_CONTROLLER.enqueue(
                PromptEnqueueCommand(state_dir=state_dir, prompt=" ".join(text), source=source),
            ),
        ),
    )


@prompt.command("list")
@_STATE_DIR_OPTION
@click.option(
    "--status",
    type=click.Choice([status.value for status in QueueStatus]),
    default=None,
    help="Only show prompts in this status.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=20,
    show_default=True,
    help="How many latest prompts to display.",
)
def prompt_list(state_dir: Path | None, status: str | None, limit: int) -> None:
    """List queued and finished prompts."""

    _emit_lines(
        _guarded(
            lambda: ORCHESTRATOR_CONTROLLER.list_prompts(
                PromptListCommand(state_dir=state_dir, status=status, limit=limit),
            ),
        ),
    )


@prompt.command("show")
@_STATE_DIR_OPTION
@click.argument("prompt_id")
def prompt_show(state_dir: Path | None, prompt_id: str) -> None:
    """Print one prompt with its result as JSON."""

    _emit_lines(
        _guarded(
            lambda: ORCHESTRATOR_CONTROLLER.show(
                PromptMutateCommand(state_dir=state_dir, prompt_id=prompt_id),
            ),
        ),
    )


@prompt.command("retry")
@_STATE_DIR_OPTION
@click.argument("prompt_id")
def prompt_retry(state_dir: Path | None, prompt_id: str) -> None:
    """Re-queue a failed prompt."""

    _emit_lines(
        _guarded(
            lambda: ORCHESTRATOR_CONTROLLER.retry(
                PromptMutateCommand(state_dir=state_dir, prompt_id=prompt_id),
            ),
        ),
    )


@jobdock.group()
def worker() -> None:
    """Background worker commands."""


@worker.command("run")
@_STATE_DIR_OPTION
@click.option(
    "--max-prompts",
    type=click.IntRange(min=1),
    default=None,
    help="Exit after processing this many prompts.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=None,
    help="Exit after this many consecutive empty polls (default: run until stopped).",
)
@click.option("--once", is_flag=True, help="Process at most one prompt, then exit.")
def worker_run(
    state_dir: Path | None,
    max_prompts: int | None,
    max_idle_polls: int | None,
    once: bool,
) -> None:
    """Run the worker loop in the foreground."""

    if once:
        max_prompts, max_idle_polls = 1, 1
    _emit_lines(
        _guarded(
            lambda: ORCHESTRATOR_CONTROLLER.run_worker(
                WorkerRunCommand(
                    state_dir=state_dir,
                    max_prompts=max_prompts,
                    max_idle_polls=max_idle_polls,
                ),
            ),
        ),
    )


@worker.command("start")
@_STATE_DIR_OPTION
def worker_start(state_dir: Path | None) -> None:
    """Start the worker detached in the background."""

    _emit_lines(
        _guarded(
            lambda: ORCHESTRATOR_CONTROLLER.start_background(
                WorkerControlCommand(state_dir=state_dir),
            ),
        ),
    )


@worker.command("stop")
@_STATE_DIR_OPTION
def worker_stop(state_dir: Path | None) -> None:
    """Ask the background worker to stop after its current prompt."""

    _emit_lines(
        _guarded(
            lambda: ORCHESTRATOR_CONTROLLER.stop_background(
                WorkerControlCommand(state_dir=state_dir),
            ),
        ),
    )


@worker.command("status")
@_STATE_DIR_OPTION
def worker_status(state_dir: Path | None) -> None:
    """Show worker liveness, the active prompt and queue counts."""

    _emit_lines(
        _guarded(
            lambda: ORCHESTRATOR_CONTROLLER.status(WorkerControlCommand(state_dir=state_dir)),
        ),
    )


@jobdock.group()
def env() -> None:
    """Container environment commands."""


@env.command("ensure")
def env_ensure() -> None:
    """Create the network, image and warm workers if missing."""

    _emit_lines(_guarded(ENVIRONMENT_CONTROLLER.ensure))


@env.command("batch")
@click.option("--json", "as_json", is_flag=True, help="Print the batch summary as one JSON line.")
@click.option(
    "--progress-file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Append each job id to this file as its container starts.",
)
@click.argument("job_ids", nargs=-1, required=True)
def env_batch(as_json: bool, progress_file: Path | None, job_ids: tuple[str, ...]) -> None:
    """Run one isolated job container per id, bounded by JOBDOCK_MAX_PARALLEL_JOBS."""

    result = _guarded(
        lambda: ENVIRONMENT_CONTROLLER.run_batch(
            EnvBatchCommand(job_ids=job_ids, as_json=as_json, progress_file=progress_file),
        ),
    )
    _emit_lines(result.lines)
    if not result.success:
        raise click.exceptions.Exit(1)


@env.command("exec")
@click.option("--name", default=None, help="Warm worker name (default: the first one).")
@click.option(
    "--timeout",
    "timeout_seconds",
    type=click.FloatRange(min=0.1),
    default=45.0,
    show_default=True,
    help="Seconds before the command is abandoned.",
)
@click.argument("command")
def env_exec(name: str | None, timeout_seconds: float, command: str) -> None:
    """Run a shell command inside a warm worker."""

    result = _guarded(
        lambda: ENVIRONMENT_CONTROLLER.exec_in_warm(
            EnvExecCommand(name=name, command=command, timeout_seconds=timeout_seconds),
        ),
    )
    _emit_lines(result.lines)
    if not result.success:
        raise click.exceptions.Exit(1)


@env.command("recreate")
def env_recreate() -> None:
    """Remove warm workers and the service container, then provision them again."""

    _emit_lines(_guarded(ENVIRONMENT_CONTROLLER.recreate))


@jobdock.group()
def service() -> None:
    """Process supervisor commands."""


@service.command("serve")
def service_serve() -> None:
    """Run the supervisor in the foreground until SIGTERM."""

    _emit_lines(_guarded(SUPERVISOR_CONTROLLER.serve))


@service.command("ping")
def service_ping() -> None:
    """Start the supervisor if needed and check it answers."""

    _emit_lines(_guarded(SUPERVISOR_CONTROLLER.ping))


@service.command("start-process")
@click.option("--name", required=True, help="Unique process name.")
@click.option("--cwd", type=click.Path(path_type=Path, file_okay=False), default=None)
@click.option("--env", "env_pairs", multiple=True, help="KEY=VALUE. Can be repeated.")
@click.argument("command")
@click.argument("args", nargs=-1)
def service_start_process(  # noqa: PLR0913
    name: str,
    cwd: Path | None,
    env_pairs: tuple[str, ...],
    command: str,
    args: tuple[str, ...],
) -> None:
    """Start a named background process under the supervisor."""

    _emit_lines(
        _guarded(
            lambda: SUPERVISOR_CONTROLLER.start_process(
                ServiceStartProcessCommand(
                    name=name,
                    command=command,
                    args=args,
                    cwd=cwd,
                    env=_parse_env_pairs(env_pairs),
                ),
            ),
        ),
    )


@service.command("stop-process")
@click.option(
    "--timeout-ms",
    type=click.IntRange(min=1),
    default=None,
    help="Grace period before SIGKILL (default 2000).",
)
@click.argument("name")
def service_stop_process(timeout_ms: int | None, name: str) -> None:
    """Stop a supervised process and its process group."""

    _emit_lines(
        _guarded(
            lambda: SUPERVISOR_CONTROLLER.stop_process(
                ServiceStopProcessCommand(name=name, timeout_ms=timeout_ms),
            ),
        ),
    )


@service.command("status")
def service_status() -> None:
    """List supervised processes."""

    _emit_lines(_guarded(SUPERVISOR_CONTROLLER.status))


@service.command("session")
def service_session() -> None:
    """Print the persisted supervisor session."""

    _emit_lines(_guarded(SUPERVISOR_CONTROLLER.session))


@service.command("set-base-url")
@click.argument("base_url", required=False)
def service_set_base_url(base_url: str | None) -> None:
    """Record (or clear) the base URL shared with supervised processes."""

    _emit_lines(_guarded(lambda: SUPERVISOR_CONTROLLER.set_base_url(base_url)))


def _parse_env_pairs(pairs: tuple[str, ...]) -> dict[str, str]:
    env: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"Expected KEY=VALUE, got {pair!r}", param_hint="--env")
        env[key] = value
    return env


def _guarded(action: Callable[[], T]) -> T:
    try:
        return action()
    except _EXPECTED_ERRORS as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    jobdock()
