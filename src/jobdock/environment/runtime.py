"""Thin wrapper over the container runtime CLI."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from jobdock.subprocesses import DEFAULT_GRACE_SECONDS, CommandResult, run_command

logger = logging.getLogger(__name__)


class ContainerRuntimeError(RuntimeError):
    """Container CLI failure with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class ContainerRuntime:
    """Invoke ``docker`` (or a compatible binary) with a hard timeout per call."""

    def __init__(self, *, binary: str = "docker", grace_seconds: float = DEFAULT_GRACE_SECONDS):
        self.binary = binary
        self.grace_seconds = grace_seconds

    def run(
        self,
        args: Sequence[str],
        *,
        timeout_seconds: float,
        input_text: str | None = None,
    ) -> CommandResult:
        command = [self.binary, *args]
        logger.debug("Running %s", " ".join(command))
        try:
            result = run_command(
                command,
                timeout_seconds=timeout_seconds,
                input_text=input_text,
                grace_seconds=self.grace_seconds,
            )
        except FileNotFoundError as error:
            raise ContainerRuntimeError(
                f"Container runtime not found: {self.binary}",
                transient=False,
            ) from error
        except OSError as error:
            raise ContainerRuntimeError(
                f"Container runtime failed to start: {error}",
                transient=True,
            ) from error
        if result.timed_out:
            logger.warning(
                "%s %s timed out after %.1fs",
                self.binary,
                args[0] if args else "",
                result.duration_seconds,
            )
        return result


def parse_name_states(output: str) -> dict[str, str]:
    """Parse ``{{.Names}}\\t{{.State}}`` lines into a name -> state mapping."""

    states: dict[str, str] = {}
    for line in output.splitlines():
        if not line.strip():
            continue
        name, _, state = line.partition("\t")
        states[name.strip()] = state.strip().lower()
    return states
