"""Provision warm workers and run one-shot job containers with resource limits."""

from __future__ import annotations

import logging
import re
import shlex
import time
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

from jobdock.common import utc_now
from jobdock.config import EnvironmentSettings
from jobdock.environment.models import (
    BatchSummary,
    CapacityReport,
    EnvironmentDescriptor,
    EnvironmentKind,
    ExecResult,
    JobResult,
    Mount,
    job_container_name,
    warm_container_name,
)
from jobdock.environment.runtime import ContainerRuntime, ContainerRuntimeError, parse_name_states
from jobdock.subprocesses import CommandResult

logger = logging.getLogger(__name__)

CACHE_MOUNT_TARGET = "/workspace/cache"
CODE_MOUNT_TARGET = "/workspace/src"
APP_DIR = "/workspace/app"
CREDENTIALS_MOUNT_ROOT = "/run/jobdock/credentials"
KEEPALIVE_COMMAND = ["tail", "-f", "/dev/null"]
READY_ATTEMPTS = 20
READY_INTERVAL_SECONDS = 0.5
_LOG_NAME_RE = re.compile(r"[^A-Za-z0-9_.-]+")


class EnvironmentOrchestrator:
    """Manage the container lifecycle for warm workers, jobs and the service container."""

    def __init__(
        self,
        settings: EnvironmentSettings,
        *,
        runtime: ContainerRuntime | None = None,
        run_log_dir: Path | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings
        self.runtime = runtime or ContainerRuntime(binary=settings.docker_binary)
        self.run_log_dir = run_log_dir or settings.cache_dir / "runs"
        self._sleep = sleep

    def ensure_network(self) -> bool:
        """Create the private network if missing. Returns True when it was created."""

        network = self.settings.network
        if self._call(["network", "inspect", network]).ok:
            return False
        self._check(["network", "create", network], action=f"create network {network}")
        logger.info("Created network %s", network)
        return True

    def ensure_base_image(self) -> bool:
        """Build the job image when absent or built for another platform.

        Returns True when a build ran.
        """

        settings = self.settings
        inspect = self._call(
            ["image", "inspect", "--format", "{{.Os}}/{{.Architecture}}", settings.image],
        )
        if inspect.ok:
            actual = inspect.stdout.strip()
            if not settings.platform or actual == settings.platform:
                return False
            if not settings.rebuild_on_platform_mismatch:
                logger.warning(
                    "Image %s is %s, expected %s; rebuild disabled",
                    settings.image,
                    actual,
                    settings.platform,
                )
                return False
            logger.info(
                "Image %s is %s, rebuilding for %s",
                settings.image,
                actual,
                settings.platform,
            )

        args = ["build", "-t", settings.image, "-f", str(settings.dockerfile)]
        if settings.platform:
            args += ["--platform", settings.platform]
        args.append(str(settings.build_context))
        self._check(
            args,
            action=f"build image {settings.image}",
            timeout_seconds=settings.build_timeout_seconds,
        )
        logger.info("Built image %s", settings.image)
        return True

    def list_containers(self, prefix: str) -> dict[str, str]:
        """Return name -> state for every container whose name starts with ``prefix``."""

        result = self._check(
            ["ps", "-a", "--filter", f"name={prefix}", "--format", "{{.Names}}\t{{.State}}"],
            action="list containers",
        )
        return {
            name: state
            for name, state in parse_name_states(result.stdout).items()
            if name.startswith(prefix)
        }

    def ensure_warm_capacity(self) -> CapacityReport:
        """Make sure the configured number of warm workers exist and are running.

        Idempotent: existing running workers are left alone, stopped ones are
        started, missing ones are created.
        """

        self.ensure_network()
        self.ensure_base_image()
        states = self.list_containers(self.settings.warm_prefix)
        report = CapacityReport(names=[])
        for index in range(1, self.settings.warm_count + 1):
            name = warm_container_name(index, prefix=self.settings.warm_prefix)
            report.names.append(name)
            state = states.get(name)
            if state == "running":
                continue
            if state is None:
                descriptor = self.warm_descriptor(index)
                self._check(
                    descriptor.run_args(KEEPALIVE_COMMAND, detach=True, remove=False),
                    action=f"create warm worker {name}",
                )
                report.created.append(name)
                logger.info("Created warm worker %s", name)
            else:
                self._check(["start", name], action=f"start warm worker {name}")
                report.started.append(name)
                logger.info("Started warm worker %s (was %s)", name, state)
            self._wait_ready(name)
        return report

    def run_job(self, job_id: str, command: str | None = None) -> JobResult:
        """Run one job to completion in a fresh, self-removing container."""

        settings = self.settings
        descriptor = self.job_descriptor(job_id)
        job_command = command or settings.job_command.format(job_id=shlex.quote(job_id))
        script = self.bootstrap_script(job_command)
        logger.info("Starting job %s in %s", job_id, descriptor.name)
        result = self._call(
            descriptor.run_args(["sh", "-c", script], detach=False, remove=True),
            timeout_seconds=settings.job_timeout_seconds,
        )
        if result.timed_out:
            self._force_remove(descriptor.name)
        error = None
        if result.timed_out:
            error = f"Job timed out after {settings.job_timeout_seconds}s"
        elif result.exit_code != 0:
            error = _last_line(result.stderr) or f"Job exited with code {result.exit_code}"
        job = JobResult(
            job_id=job_id,
            container=descriptor.name,
            ok=result.ok,
            exit_code=None if result.timed_out else result.exit_code,
            timed_out=result.timed_out,
            duration_seconds=result.duration_seconds,
            error=error,
        )
        job.log_path = self._write_run_log(job, script=script, result=result)
        logger.info("Job %s finished ok=%s in %.1fs", job_id, job.ok, job.duration_seconds)
        return job

    def run_batch(
        self,
        job_ids: Sequence[str],
        *,
        command_for: Callable[[str], str | None] | None = None,
        on_start: Callable[[str], None] | None = None,
    ) -> BatchSummary:
        """Run jobs concurrently over a bounded pool; one failure never stops the rest.

        ``on_start`` is called with each job id right before its container is
        launched, from the pool thread that runs it.
        """

        if not job_ids:
            return BatchSummary.from_results([])

        def _run_one(job_id: str) -> JobResult:
            try:
                if on_start is not None:
                    on_start(job_id)
                return self.run_job(job_id, command_for(job_id) if command_for else None)
            except Exception as error:  # noqa: BLE001
                logger.exception("Job %s could not run", job_id)
                return JobResult(
                    job_id=job_id,
                    container=job_container_name(job_id, prefix=self.settings.job_prefix),
                    ok=False,
                    exit_code=None,
                    error=str(error),
                )

        workers = max(1, min(self.settings.max_parallel_jobs, len(job_ids)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="jobdock-job") as pool:
            results = list(pool.map(_run_one, job_ids))
        summary = BatchSummary.from_results(results)
        logger.info(
            "Batch finished: %d total, %d succeeded, %d failed",
            summary.total,
            summary.succeeded,
            summary.failed,
        )
        return summary

    def exec_in_warm(self, name: str, command: str, *, timeout_seconds: float) -> ExecResult:
        result = self._call(["exec", name, "sh", "-lc", command], timeout_seconds=timeout_seconds)
        return ExecResult(
            ok=result.ok,
            timed_out=result.timed_out,
            exit_code=None if result.timed_out else result.exit_code,
            stdout=result.stdout,
            stderr=result.stderr,
        )

    def ensure_service(self) -> bool | None:
        """Keep the long-running service container up when a service command is configured.

        Returns None when no service is configured, otherwise whether it had to
        be created or started.
        """

        settings = self.settings
        if not settings.service_command:
            return None
        state = self.list_containers(settings.service_name).get(settings.service_name)
        if state == "running":
            return False
        if state is None:
            self.ensure_network()
            self.ensure_base_image()
            descriptor = self.service_descriptor()
            self._check(
                descriptor.run_args(
                    ["sh", "-c", self.bootstrap_script(settings.service_command)],
                    detach=True,
                    remove=False,
                ),
                action=f"create service container {descriptor.name}",
            )
            logger.info("Created service container %s", descriptor.name)
        else:
            self._check(["start", settings.service_name], action="start service container")
            logger.info("Started service container %s", settings.service_name)
        return True

    def remove_environments(self) -> list[str]:
        """Force-remove warm workers and the service container."""

        names = sorted(self.list_containers(self.settings.warm_prefix))
        if self.settings.service_name in self.list_containers(self.settings.service_name):
            names.append(self.settings.service_name)
        if names:
            self._check(["rm", "-f", *names], action="remove containers")
            logger.info("Removed containers: %s", ", ".join(names))
        return names

    def remove_job_containers(self, job_ids: Sequence[str]) -> list[str]:
        """Force-remove containers left behind for ``job_ids``. Returns the removed names."""

        prefix = self.settings.job_prefix
        wanted = {job_container_name(job_id, prefix=prefix) for job_id in job_ids}
        existing = self.list_containers(prefix)
        names = sorted(name for name in existing if name in wanted)
        if names:
            self._check(["rm", "-f", *names], action="remove job containers")
            logger.info("Removed job containers: %s", ", ".join(names))
        return names

    def recreate(self) -> CapacityReport:
        """Remove managed containers and provision them again from the current image."""

        removed = self.remove_environments()
        report = self.ensure_warm_capacity()
        report.removed = removed
        self.ensure_service()
        return report

    def warm_descriptor(self, index: int) -> EnvironmentDescriptor:
        settings = self.settings
        return EnvironmentDescriptor(
            name=warm_container_name(index, prefix=settings.warm_prefix),
            kind=EnvironmentKind.WARM_WORKER,
            image=settings.image,
            network=settings.network,
            mounts=self._mounts(),
            env={"JOBDOCK_CACHE_DIR": CACHE_MOUNT_TARGET},
            platform=settings.platform or None,
            workdir=CODE_MOUNT_TARGET,
        )

    def job_descriptor(self, job_id: str) -> EnvironmentDescriptor:
        settings = self.settings
        return EnvironmentDescriptor(
            name=job_container_name(job_id, prefix=settings.job_prefix),
            kind=EnvironmentKind.JOB,
            image=settings.image,
            network=settings.network,
            cpu_limit=settings.cpu_limit,
            mem_limit=settings.mem_limit,
            mounts=self._mounts(),
            env={"JOBDOCK_JOB_ID": job_id, "JOBDOCK_CACHE_DIR": CACHE_MOUNT_TARGET},
            labels={"jobdock.job": job_id},
            platform=settings.platform or None,
        )

    def service_descriptor(self) -> EnvironmentDescriptor:
        settings = self.settings
        return EnvironmentDescriptor(
            name=settings.service_name,
            kind=EnvironmentKind.SERVICE,
            image=settings.image,
            network=settings.network,
            mounts=self._mounts(),
            env={"JOBDOCK_CACHE_DIR": CACHE_MOUNT_TARGET},
            platform=settings.platform or None,
            restart_policy="unless-stopped",
        )

    def bootstrap_script(self, command: str) -> str:
        """Copy the read-only code mount into a writable workdir, run setup, then ``command``."""

        steps = [
            "set -e",
            f"mkdir -p {APP_DIR}",
            f"cp -a {CODE_MOUNT_TARGET}/. {APP_DIR}/",
            f"cd {APP_DIR}",
        ]
        if self.settings.setup_command:
            steps.append(self.settings.setup_command)
        steps.append(command)
        return "; ".join(steps)

    def _mounts(self) -> list[Mount]:
        settings = self.settings
        settings.cache_dir.mkdir(parents=True, exist_ok=True)
        mounts = [
            Mount(settings.cache_dir, CACHE_MOUNT_TARGET, read_only=False),
            Mount(settings.code_dir, CODE_MOUNT_TARGET, read_only=True),
        ]
        for path in settings.credentials_paths:
            mounts.append(Mount(path, f"{CREDENTIALS_MOUNT_ROOT}/{path.name}", read_only=True))
        return mounts

    def _wait_ready(self, name: str) -> None:
        for _ in range(READY_ATTEMPTS):
            if self._call(["exec", name, "true"]).ok:
                return
            self._sleep(READY_INTERVAL_SECONDS)
        raise ContainerRuntimeError(f"Warm worker {name} did not become ready", transient=True)

    def _force_remove(self, name: str) -> None:
        try:
            result = self._call(["rm", "-f", name])
        except ContainerRuntimeError as error:
            logger.warning("Could not remove timed-out container %s: %s", name, error)
            return
        if not result.ok:
            logger.warning("Could not remove timed-out container %s: %s", name, result.stderr)

    def _write_run_log(self, job: JobResult, *, script: str, result: CommandResult) -> Path | None:
        stamp = utc_now().strftime("%Y%m%dT%H%M%S%fZ")
        outcome = "ok" if job.ok else "fail"
        path = self.run_log_dir / f"{_LOG_NAME_RE.sub('_', job.job_id)}.{stamp}.{outcome}.log"
        lines = [
            f"job: {job.job_id}",
            f"container: {job.container}",
            f"exit_code: {job.exit_code}",
            f"timed_out: {job.timed_out}",
            f"duration_seconds: {job.duration_seconds:.3f}",
            f"script: {script}",
            "--- stdout ---",
            result.stdout,
            "--- stderr ---",
            result.stderr,
        ]
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text("\n".join(lines), encoding="utf-8")
        except OSError as error:
            logger.warning("Could not write run log for %s: %s", job.job_id, error)
            return None
        return path

    def _call(self, args: list[str], *, timeout_seconds: float | None = None) -> CommandResult:
        return self.runtime.run(
            args,
            timeout_seconds=timeout_seconds or self.settings.command_timeout_seconds,
        )

    def _check(
        self,
        args: list[str],
        *,
        action: str,
        timeout_seconds: float | None = None,
    ) -> CommandResult:
        result = self._call(args, timeout_seconds=timeout_seconds)
        if result.timed_out:
            raise ContainerRuntimeError(f"Timed out trying to {action}", transient=True)
        if result.exit_code != 0:
            detail = _last_line(result.stderr) or f"exit code {result.exit_code}"
            raise ContainerRuntimeError(f"Failed to {action}: {detail}", transient=True)
        return result


def _last_line(text: str) -> str:
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    return lines[-1] if lines else ""
