"""Check whether an issue already has a change request before planning work for it."""

from __future__ import annotations

import logging
import re
import shlex
import unicodedata
from dataclasses import dataclass
from typing import Any, Protocol

from jobdock.environment.models import ExecResult
from jobdock.orchestrator.tracker import TrackerIssue

logger = logging.getLogger(__name__)

MAX_SLUG_LENGTH = 40
BRANCH_SEPARATOR = "_JD_"
_SLUG_RE = re.compile(r"[^a-z0-9]+")


class WarmExecutor(Protocol):
    def exec_in_warm(self, name: str, command: str, *, timeout_seconds: float) -> ExecResult: ...


@dataclass(slots=True, frozen=True)
class ProbeResult:
    issue_key: str
    branch: str
    exists: bool
    timed_out: bool = False

    def to_json(self) -> dict[str, Any]:
        return {
            "issue_key": self.issue_key,
            "branch": self.branch,
            "exists": self.exists,
            "timed_out": self.timed_out,
        }


def slugify(text: str, *, max_length: int = MAX_SLUG_LENGTH) -> str:
    """ASCII slug for branch names; falls back to "task" when nothing usable remains."""

    ascii_text = unicodedata.normalize("NFKD", text).encode("ascii", "ignore").decode("ascii")
    slug = _SLUG_RE.sub("-", ascii_text.lower()).strip("-")
    return slug[:max_length].rstrip("-") or "task"


def branch_name_for_issue(issue: TrackerIssue) -> str:
    return f"{issue.key}{BRANCH_SEPARATOR}{slugify(issue.summary)}"


class ChangeRequestProbe:
    """Run an existence check for an issue's change request inside a warm worker.

    The check is conservative: when it times out the change request is assumed
    to exist, so an ambiguous issue is skipped rather than planned twice.
    """

    def __init__(
        self,
        executor: WarmExecutor,
        *,
        warm_name: str,
        command_template: str,
        timeout_seconds: float,
    ) -> None:
        self.executor = executor
        self.warm_name = warm_name
        self.command_template = command_template
        self.timeout_seconds = timeout_seconds

    def check(self, issue: TrackerIssue) -> ProbeResult:
        branch = branch_name_for_issue(issue)
        command = self.command_template.format(
            branch=shlex.quote(branch),
            issue_key=shlex.quote(issue.key),
        )
        outcome = self.executor.exec_in_warm(
            self.warm_name,
            command,
            timeout_seconds=self.timeout_seconds,
        )
        if outcome.timed_out:
            logger.warning("Change-request probe for %s timed out; assuming it exists", issue.key)
            return ProbeResult(issue_key=issue.key, branch=branch, exists=True, timed_out=True)
        return ProbeResult(issue_key=issue.key, branch=branch, exists=outcome.ok)
