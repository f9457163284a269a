from __future__ import annotations

import json

import allure
import httpx
import pytest

from jobdock.orchestrator.tracker import HttpIssueTracker, TrackerError, TrackerIssue

pytestmark = [
    allure.epic("Orchestrator"),
    allure.feature("Issue Tracker Client"),
]


def _tracker(handler) -> HttpIssueTracker:
    return HttpIssueTracker(
        base_url="https://tracker.example.com/",
        token="secret",
        org_id="42",
        transport=httpx.MockTransport(handler),
    )


def test_search_filters_by_login_and_queue_and_drops_closed() -> None:
    requests: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if request.url.path == "/v3/myself":
            return httpx.Response(200, json={"login": "dev"})
        return httpx.Response(
            200,
            json=[
                {"key": "crm-1", "summary": "Add export", "status": {"key": "open"}},
                {"key": "CRM-2", "summary": "Old", "statusType": {"key": "Done"}},
                {"summary": "no key"},
                "junk",
            ],
        )

    with _tracker(_handler) as tracker:
        issues = tracker.search_open_assigned(queue="CRM")
        tracker.search_open_assigned(queue=None)

    assert issues == [TrackerIssue(key="CRM-1", summary="Add export", status="open")]
    assert [request.url.path for request in requests] == [
        "/v3/myself",
        "/v3/issues/_search",
        "/v3/issues/_search",
    ]
    assert requests[0].headers["Authorization"] == "OAuth secret"
    assert requests[0].headers["X-Org-ID"] == "42"
    assert json.loads(requests[1].content) == {"filter": {"assignee": "dev", "queue": "CRM"}}
    assert json.loads(requests[2].content) == {"filter": {"assignee": "dev"}}


@pytest.mark.parametrize(
    ("status_code", "transient"),
    [(500, True), (429, True), (403, False)],
)
def test_http_errors_are_classified(status_code, transient) -> None:
    tracker = _tracker(lambda _request: httpx.Response(status_code))

    with pytest.raises(TrackerError) as error_info:
        tracker.search_open_assigned(queue=None)

    assert error_info.value.transient is transient


def test_timeouts_are_transient() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(TrackerError, match="timed out") as error_info:
        _tracker(_handler).search_open_assigned(queue=None)

    assert error_info.value.transient is True


def test_missing_login_is_permanent() -> None:
    tracker = _tracker(lambda _request: httpx.Response(200, json={}))

    with pytest.raises(TrackerError, match="no login") as error_info:
        tracker.current_login()

    assert error_info.value.transient is False
