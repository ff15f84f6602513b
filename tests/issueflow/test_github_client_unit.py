"""Unit tests for GitHubClient.

Testing Configuration:
- httpx.MockTransport serving canned GitHub API responses
- Retry delays set to zero
"""

import asyncio
import json

import httpx
import pytest

from src.issueflow.github.client import (
    GitHubAPIError,
    GitHubClient,
    RateLimitError,
    RepoRef,
    issue_reference_pattern,
)
from src.issueflow.retry.classifier import ErrorCategory, classify_error


REF = RepoRef(owner="acme", repo="widgets")


def run_async(coro):
    return asyncio.run(coro)


def _make_client(handler, **kwargs) -> GitHubClient:
    kwargs.setdefault("max_retries", 2)
    kwargs.setdefault("base_delay", 0.0)
    kwargs.setdefault("max_delay", 0.0)
    return GitHubClient(
        token="ghp_test", transport=httpx.MockTransport(handler), **kwargs
    )


def _call(client: GitHubClient, coro):
    async def scenario():
        try:
            return await coro
        finally:
            await client.close()

    return run_async(scenario())


class TestRepoRef:
    def test_parse(self):
        assert RepoRef.parse("acme/widgets") == REF
        assert REF.full_name == "acme/widgets"

    @pytest.mark.parametrize("value", ["", "acme", "/widgets", "acme/"])
    def test_parse_rejects_incomplete(self, value):
        assert RepoRef.parse(value) is None


class TestIssueReferencePattern:
    @pytest.mark.parametrize(
        "text", ["Closes #7", "fixes #7.", "see #7", "Resolves #7 and more"]
    )
    def test_matches(self, text):
        assert issue_reference_pattern(7).search(text)

    @pytest.mark.parametrize("text", ["#70", "issue 7", "#17"])
    def test_does_not_match(self, text):
        assert not issue_reference_pattern(7).search(text)


class TestIssues:
    def test_get_issue_context(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json={
                    "title": "Add health endpoint",
                    "body": None,
                    "labels": [{"name": "enhancement"}, "raw"],
                },
            )

        client = _make_client(handler)
        issue = _call(client, client.get_issue_context(7, REF))

        assert seen[0].url.path == "/repos/acme/widgets/issues/7"
        assert seen[0].headers["Authorization"] == "Bearer ghp_test"
        assert issue.title == "Add health endpoint"
        assert issue.body == ""
        assert issue.labels == ["enhancement", "raw"]

    def test_get_branch_sha(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/repos/acme/widgets/branches/main"
            return httpx.Response(200, json={"commit": {"sha": "abc123"}})

        client = _make_client(handler)
        assert _call(client, client.get_branch_sha("main", REF)) == "abc123"

    def test_add_issue_comment(self):
        bodies = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return httpx.Response(201, json={})

        client = _make_client(handler)
        _call(client, client.add_issue_comment(7, "hello", REF))

        assert bodies == [{"body": "hello"}]


class TestPullRequests:
    def test_find_open_pull_request_by_reference(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.params["state"] == "open"
            return httpx.Response(
                200,
                json=[
                    {"number": 3, "title": "Unrelated #70", "body": "", "head": {"ref": "x"}},
                    {"number": 4, "title": "Work", "body": "Closes #7", "head": {"ref": "y"}},
                ],
            )

        client = _make_client(handler)
        assert _call(client, client.find_open_pull_request_for_issue(7, REF)) == 4

    def test_find_open_pull_request_by_branch(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                json=[{"number": 9, "title": "", "body": None, "head": {"ref": "feat/issue-7"}}],
            )

        client = _make_client(handler)
        assert _call(client, client.find_open_pull_request_for_issue(7, REF)) == 9

    def test_find_open_pull_request_none(self):
        client = _make_client(lambda request: httpx.Response(200, json=[]))
        assert _call(client, client.find_open_pull_request_for_issue(7, REF)) is None

    @pytest.mark.parametrize(
        "required,expected",
        [
            (["CI / Tests"], True),
            (["CI / Tests", "CI / Lint"], False),
            (["CI / Missing"], False),
            ([], False),
        ],
    )
    def test_has_required_checks_passed(self, required, expected):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/pulls/12"):
                return httpx.Response(200, json={"head": {"sha": "deadbeef"}})
            assert request.url.path == "/repos/acme/widgets/commits/deadbeef/check-runs"
            return httpx.Response(
                200,
                json={
                    "check_runs": [
                        {"name": "CI / Tests", "status": "completed", "conclusion": "success"},
                        {"name": "CI / Lint", "status": "in_progress", "conclusion": None},
                    ]
                },
            )

        client = _make_client(handler)
        assert _call(client, client.has_required_checks_passed(12, required, REF)) is expected

    def test_has_human_approval_uses_latest_review_per_user(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                json=[
                    {"user": {"login": "alice", "type": "User"}, "state": "APPROVED"},
                    {"user": {"login": "alice", "type": "User"}, "state": "CHANGES_REQUESTED"},
                    {"user": {"login": "ci[bot]", "type": "Bot"}, "state": "APPROVED"},
                ],
            )

        client = _make_client(handler)
        assert _call(client, client.has_human_approval(12, REF)) is False

    def test_has_human_approval_true(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200, json=[{"user": {"login": "bob", "type": "User"}, "state": "APPROVED"}]
            )

        client = _make_client(handler)
        assert _call(client, client.has_human_approval(12, REF)) is True

    @pytest.mark.parametrize(
        "method_name,event",
        [("approve_pull_request", "APPROVE"), ("request_changes", "REQUEST_CHANGES")],
    )
    def test_reviews(self, method_name, event):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={})

        client = _make_client(handler)
        _call(client, getattr(client, method_name)(12, "because", REF))

        assert requests[0].url.path == "/repos/acme/widgets/pulls/12/reviews"
        assert json.loads(requests[0].content) == {"event": event, "body": "because"}

    def test_enable_auto_merge_uses_node_id(self):
        payloads = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/graphql":
                payloads.append(json.loads(request.content))
                return httpx.Response(200, json={"data": {}})
            return httpx.Response(200, json={"node_id": "PR_kwDO"})

        client = _make_client(handler)
        _call(client, client.enable_auto_merge(12, REF))

        assert payloads[0]["variables"] == {"pullRequestId": "PR_kwDO"}

    def test_enable_auto_merge_graphql_errors(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/graphql":
                return httpx.Response(
                    200, json={"errors": [{"message": "auto-merge not allowed"}]}
                )
            return httpx.Response(200, json={"node_id": "PR_kwDO"})

        client = _make_client(handler)
        with pytest.raises(GitHubAPIError, match="auto-merge not allowed"):
            _call(client, client.enable_auto_merge(12, REF))


class TestErrorHandling:
    def test_not_found_raises_without_retry(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(404, json={"message": "Not Found"})

        client = _make_client(handler)
        with pytest.raises(GitHubAPIError) as exc_info:
            _call(client, client.get_issue_context(7, REF))

        assert exc_info.value.status_code == 404
        assert len(calls) == 1

    def test_server_errors_are_retried(self):
        responses = [httpx.Response(502), httpx.Response(200, json={"commit": {"sha": "s"}})]

        def handler(request: httpx.Request) -> httpx.Response:
            return responses.pop(0)

        client = _make_client(handler)
        assert _call(client, client.get_branch_sha("main", REF)) == "s"

    def test_rate_limit(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                403,
                headers={"x-ratelimit-remaining": "0", "retry-after": "30"},
                json={"message": "API rate limit exceeded"},
            )

        client = _make_client(handler)
        with pytest.raises(RateLimitError) as exc_info:
            _call(client, client.get_branch_sha("main", REF))

        assert exc_info.value.retry_after == 30
        assert exc_info.value.status_code == 403
        assert classify_error(exc_info.value) == ErrorCategory.TRANSIENT

    def test_transport_errors_exhaust_retries(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            raise httpx.ConnectError("connection refused", request=request)

        client = _make_client(handler, max_retries=1)
        with pytest.raises(GitHubAPIError, match="Request failed after 1 retries"):
            _call(client, client.get_branch_sha("main", REF))

        assert len(calls) == 2

    def test_health_check(self):
        client = _make_client(lambda request: httpx.Response(200, json={}))
        assert _call(client, client.health_check()) is True

    def test_health_check_reports_unreachable_api(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = _make_client(handler)
        assert _call(client, client.health_check()) is False
