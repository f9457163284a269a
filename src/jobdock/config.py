"""Runtime configuration for the prompt queue, worker, environments and supervisor."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(slots=True)
class QueueSettings:
    """Prompt queue storage settings."""

    state_dir: Path = Path(".cache/jobdock/prompts")
    max_history: int = 200


@dataclass(slots=True)
class WorkerSettings:
    """Background worker loop settings."""

    poll_interval_seconds: float = 1.5
    # None sizes the timeout from the batch: job timeout per wave of parallel jobs plus a margin.
    dispatch_timeout_seconds: int | None = None
    probe_timeout_seconds: int = 45
    recover_on_start: bool = True
    probe_command_template: str = (
        "git ls-remote --exit-code --heads origin {branch} >/dev/null 2>&1"
    )


@dataclass(slots=True)
class EnvironmentSettings:
    """Container runtime and resource settings for isolated environments."""

    docker_binary: str = "docker"
    network: str = "jobdock-net"
    image: str = "jobdock-job:latest"
    dockerfile: Path = Path("Dockerfile.job")
    build_context: Path = Path(".")
    platform: str = "linux/amd64"
    rebuild_on_platform_mismatch: bool = True
    warm_count: int = 1
    warm_prefix: str = "jobdock-worker-"
    job_prefix: str = "jobdock-job-"
    cpu_limit: str = "1.0"
    mem_limit: str = "2g"
    max_parallel_jobs: int = 4
    cache_dir: Path = Path(".cache/jobdock/jobs")
    code_dir: Path = Path(".")
    credentials_paths: tuple[Path, ...] = ()
    job_command: str = "jobdock-plan {job_id}"
    setup_command: str = ""
    job_timeout_seconds: int = 1_800
    command_timeout_seconds: int = 120
    build_timeout_seconds: int = 1_800
    service_command: str = ""
    service_name: str = "jobdock-service"


@dataclass(slots=True)
class TrackerSettings:
    """Issue tracker HTTP API settings."""

    base_url: str = ""
    token: str = ""
    org_id: str = ""
    queue: str = ""
    request_timeout_seconds: float = 30.0


@dataclass(slots=True)
class SupervisorSettings:
    """Process supervisor settings."""

    root_dir: Path = Path(".cache/jobdock-service")
    start_retries: int = 100
    start_retry_interval_seconds: float = 0.05
    call_timeout_seconds: float = 10.0
    stop_timeout_seconds: float = 2.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    queue: QueueSettings = field(default_factory=QueueSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    environment: EnvironmentSettings = field(default_factory=EnvironmentSettings)
    tracker: TrackerSettings = field(default_factory=TrackerSettings)
    supervisor: SupervisorSettings = field(default_factory=SupervisorSettings)

    @classmethod
    def from_env(cls, state_dir: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        worker_defaults = WorkerSettings()
        environment_defaults = EnvironmentSettings()
        return cls(
            queue=QueueSettings(
                state_dir=state_dir
                or Path(os.getenv("JOBDOCK_STATE_DIR", ".cache/jobdock/prompts")),
                max_history=int(os.getenv("JOBDOCK_MAX_HISTORY", "200")),
            ),
            worker=WorkerSettings(
                poll_interval_seconds=float(os.getenv("JOBDOCK_POLL_INTERVAL_SECONDS", "1.5")),
                dispatch_timeout_seconds=_env_int("JOBDOCK_DISPATCH_TIMEOUT_SECONDS"),
                probe_timeout_seconds=int(os.getenv("JOBDOCK_PROBE_TIMEOUT_SECONDS", "45")),
                recover_on_start=_env_bool("JOBDOCK_RECOVER_ON_START", default=True),
                probe_command_template=os.getenv(
                    "JOBDOCK_PROBE_COMMAND_TEMPLATE",
                    worker_defaults.probe_command_template,
                ),
            ),
            environment=EnvironmentSettings(
                docker_binary=os.getenv("JOBDOCK_DOCKER_BINARY", "docker"),
                network=os.getenv("JOBDOCK_NETWORK", environment_defaults.network),
                image=os.getenv("JOBDOCK_IMAGE", environment_defaults.image),
                dockerfile=Path(os.getenv("JOBDOCK_DOCKERFILE", "Dockerfile.job")),
                build_context=Path(os.getenv("JOBDOCK_BUILD_CONTEXT", ".")),
                platform=os.getenv("JOBDOCK_PLATFORM", environment_defaults.platform),
                rebuild_on_platform_mismatch=_env_bool(
                    "JOBDOCK_REBUILD_ON_PLATFORM_MISMATCH",
                    default=True,
                ),
                warm_count=int(os.getenv("JOBDOCK_WARM_COUNT", "1")),
                warm_prefix=os.getenv("JOBDOCK_WARM_PREFIX", environment_defaults.warm_prefix),
                job_prefix=os.getenv("JOBDOCK_JOB_PREFIX", environment_defaults.job_prefix),
                cpu_limit=os.getenv("JOBDOCK_CPU_LIMIT", environment_defaults.cpu_limit),
                mem_limit=os.getenv("JOBDOCK_MEM_LIMIT", environment_defaults.mem_limit),
                max_parallel_jobs=int(os.getenv("JOBDOCK_MAX_PARALLEL_JOBS", "4")),
                cache_dir=Path(os.getenv("JOBDOCK_CACHE_DIR", ".cache/jobdock/jobs")),
                code_dir=Path(os.getenv("JOBDOCK_CODE_DIR", ".")),
                credentials_paths=_env_paths("JOBDOCK_CREDENTIALS_PATHS"),
                job_command=os.getenv("JOBDOCK_JOB_COMMAND", environment_defaults.job_command),
                setup_command=os.getenv("JOBDOCK_SETUP_COMMAND", ""),
                job_timeout_seconds=int(os.getenv("JOBDOCK_JOB_TIMEOUT_SECONDS", "1800")),
                command_timeout_seconds=int(
                    os.getenv("JOBDOCK_COMMAND_TIMEOUT_SECONDS", "120"),
                ),
                build_timeout_seconds=int(os.getenv("JOBDOCK_BUILD_TIMEOUT_SECONDS", "1800")),
                service_command=os.getenv("JOBDOCK_SERVICE_COMMAND", ""),
                service_name=os.getenv("JOBDOCK_SERVICE_NAME", environment_defaults.service_name),
            ),
            tracker=TrackerSettings(
                base_url=os.getenv("JOBDOCK_TRACKER_URL", "").strip(),
                token=os.getenv("JOBDOCK_TRACKER_TOKEN", "").strip(),
                org_id=os.getenv("JOBDOCK_TRACKER_ORG_ID", "").strip(),
                queue=os.getenv("JOBDOCK_TRACKER_QUEUE", "").strip().upper(),
                request_timeout_seconds=float(
                    os.getenv("JOBDOCK_TRACKER_TIMEOUT_SECONDS", "30.0"),
                ),
            ),
            supervisor=SupervisorSettings(
                root_dir=Path(os.getenv("JOBDOCK_SERVICE_DIR", ".cache/jobdock-service")),
                start_retries=int(os.getenv("JOBDOCK_SERVICE_START_RETRIES", "100")),
                start_retry_interval_seconds=float(
                    os.getenv("JOBDOCK_SERVICE_START_INTERVAL_SECONDS", "0.05"),
                ),
                call_timeout_seconds=float(
                    os.getenv("JOBDOCK_SERVICE_CALL_TIMEOUT_SECONDS", "10.0"),
                ),
                stop_timeout_seconds=float(
                    os.getenv("JOBDOCK_SERVICE_STOP_TIMEOUT_SECONDS", "2.0"),
                ),
            ),
        )

    def validate_for_worker(self) -> None:
        """Raise configuration error if worker loop settings are unusable."""

        if self.queue.max_history < 1:
            raise ValueError("JOBDOCK_MAX_HISTORY must be >= 1.")
        if self.worker.poll_interval_seconds < 0:
            raise ValueError("JOBDOCK_POLL_INTERVAL_SECONDS must be >= 0.")
        dispatch_timeout = self.worker.dispatch_timeout_seconds
        job_timeout = self.environment.job_timeout_seconds
        if dispatch_timeout is not None and dispatch_timeout <= job_timeout:
            raise ValueError(
                "JOBDOCK_DISPATCH_TIMEOUT_SECONDS must be greater than "
                "JOBDOCK_JOB_TIMEOUT_SECONDS.",
            )
        if self.worker.probe_timeout_seconds <= 0:
            raise ValueError("JOBDOCK_PROBE_TIMEOUT_SECONDS must be > 0.")
        if "{branch}" not in self.worker.probe_command_template:
            raise ValueError("JOBDOCK_PROBE_COMMAND_TEMPLATE must contain {branch}.")
        self.validate_for_environment()

    def validate_for_environment(self) -> None:
        """Raise configuration error if container settings are unusable."""

        env = self.environment
        if env.warm_count < 1:
            raise ValueError("JOBDOCK_WARM_COUNT must be >= 1.")
        if env.max_parallel_jobs < 1:
            raise ValueError("JOBDOCK_MAX_PARALLEL_JOBS must be >= 1.")
        if env.job_timeout_seconds <= 0:
            raise ValueError("JOBDOCK_JOB_TIMEOUT_SECONDS must be > 0.")
        try:
            cpus = float(env.cpu_limit)
        except ValueError as error:
            raise ValueError("JOBDOCK_CPU_LIMIT must be a number, for example 1.0.") from error
        if cpus <= 0:
            raise ValueError("JOBDOCK_CPU_LIMIT must be > 0.")
        if not env.mem_limit.strip():
            raise ValueError("JOBDOCK_MEM_LIMIT must not be empty.")
        if "{job_id}" not in env.job_command:
            raise ValueError("JOBDOCK_JOB_COMMAND must contain {job_id}.")

    def validate_for_tracker(self) -> None:
        """Raise configuration error if tracker access is not configured."""

        if not self.tracker.base_url:
            raise ValueError("JOBDOCK_TRACKER_URL is required for tracker queries.")
        if not self.tracker.base_url.startswith(("http://", "https://")):
            raise ValueError(f"Invalid JOBDOCK_TRACKER_URL: {self.tracker.base_url}")
        if not self.tracker.token:
            raise ValueError("JOBDOCK_TRACKER_TOKEN is required for tracker queries.")

    def validate_for_supervisor(self) -> None:
        if self.supervisor.start_retries < 1:
            raise ValueError("JOBDOCK_SERVICE_START_RETRIES must be >= 1.")
        if self.supervisor.stop_timeout_seconds <= 0:
            raise ValueError("JOBDOCK_SERVICE_STOP_TIMEOUT_SECONDS must be > 0.")


def _env_paths(name: str) -> tuple[Path, ...]:
    raw = os.getenv(name, "")
    return tuple(Path(item.strip()) for item in raw.split(os.pathsep) if item.strip())


def _env_bool(name: str, *, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _env_int(name: str) -> int | None:
    raw = os.getenv(name, "").strip()
    return int(raw) if raw else None
