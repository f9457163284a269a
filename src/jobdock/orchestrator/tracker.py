"""Issue tracker query client."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
CLOSED_STATUS_KEYS = frozenset({"done", "closed", "resolved", "cancelled"})


class TrackerError(RuntimeError):
    """Tracker request failed; ``transient`` marks failures worth retrying later."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


@dataclass(slots=True, frozen=True)
class TrackerIssue:
    """Minimal issue projection used to plan jobs."""

    key: str
    summary: str
    status: str


class IssueTracker(Protocol):
    def search_open_assigned(self, *, queue: str | None) -> list[TrackerIssue]:
        """Return open issues assigned to the current user, optionally within ``queue``."""


class HttpIssueTracker:
    """Tracker REST client using OAuth token authorization."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        base_url: str,
        token: str,
        org_id: str = "",
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        headers = {"Authorization": f"OAuth {token}", "Accept": "application/json"}
        if org_id:
            headers["X-Org-ID"] = org_id
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers=headers,
            transport=transport,
        )
        self._login: str | None = None

    def current_login(self) -> str:
        if self._login is None:
            payload = self._request("GET", "/v3/myself")
            login = payload.get("login") if isinstance(payload, dict) else None
            if not isinstance(login, str) or not login:
                raise TrackerError("Tracker /v3/myself response has no login", transient=False)
            self._login = login
        return self._login

    def search_open_assigned(self, *, queue: str | None) -> list[TrackerIssue]:
        body: dict[str, Any] = {"filter": {"assignee": self.current_login()}}
        if queue:
            body["filter"]["queue"] = queue
        payload = self._request("POST", "/v3/issues/_search", json=body)
        if not isinstance(payload, list):
            raise TrackerError("Tracker search response is not a list", transient=False)

        issues = [issue for issue in (_parse_issue(entry) for entry in payload) if issue]
        open_issues = [issue for issue in issues if issue.status not in CLOSED_STATUS_KEYS]
        logger.info(
            "Tracker search returned %d issue(s), %d open (queue=%s)",
            len(issues),
            len(open_issues),
            queue or "*",
        )
        return open_issues

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> HttpIssueTracker:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as error:
            raise TrackerError(
                f"Tracker request timed out: {method} {path}",
                transient=True,
            ) from error
        except httpx.HTTPError as error:
            raise TrackerError(f"Tracker request failed: {error}", transient=True) from error
        if not response.is_success:
            raise TrackerError(
                f"Tracker {method} {path} returned HTTP {response.status_code}",
                transient=response.status_code >= 500 or response.status_code == 429,
            )
        try:
            return response.json()
        except ValueError as error:
            raise TrackerError(
                f"Tracker {method} {path} returned invalid JSON",
                transient=False,
            ) from error


def _parse_issue(entry: object) -> TrackerIssue | None:
    if not isinstance(entry, dict):
        return None
    key = entry.get("key")
    if not isinstance(key, str) or not key:
        return None
    return TrackerIssue(
        key=key.upper(),
        summary=str(entry.get("summary") or ""),
        status=_status_key(entry),
    )


def _status_key(entry: dict[str, Any]) -> str:
    for field_name in ("statusType", "status"):
        value = entry.get(field_name)
        if isinstance(value, dict) and isinstance(value.get("key"), str):
            return value["key"].lower()
    return ""
