"""Property-based tests for webhook parsing and idempotent intake.

Testing Configuration:
- Library: Hypothesis (Python)
- Minimum iterations: 100 per property test
"""

import asyncio
import hashlib
import hmac
from unittest.mock import MagicMock

import pytest
from hypothesis import given, settings, strategies as st

from src.issueflow.state import InMemoryWorkflowRepository
from src.issueflow.webhook import (
    ActorType,
    EventIntake,
    QueueItem,
    TaskRefKind,
    build_envelope,
    extract_issue_number,
    is_actionable,
    verify_signature,
)


def run_async(coro):
    return asyncio.run(coro)


SECRET = "s3cret"


def _sign(secret: str, body: bytes) -> str:
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def _issue_payload(number=7, action="opened", sender="octocat"):
    return {
        "action": action,
        "issue": {
            "number": number,
            "html_url": f"https://github.com/acme/widgets/issues/{number}",
        },
        "repository": {"name": "widgets", "owner": {"login": "acme"}},
        "sender": {"login": sender},
    }


# =============================================================================
# Signature verification
# =============================================================================


class TestVerifySignature:
    @given(body=st.binary(max_size=512))
    @settings(max_examples=100)
    def test_valid_signature_accepted(self, body):
        assert verify_signature(SECRET, body, _sign(SECRET, body))

    @given(body=st.binary(min_size=1, max_size=512))
    @settings(max_examples=100)
    def test_signature_with_wrong_secret_rejected(self, body):
        assert not verify_signature(SECRET, body, _sign("other", body))

    def test_tampered_body_rejected(self):
        signature = _sign(SECRET, b'{"a": 1}')
        assert not verify_signature(SECRET, b'{"a": 2}', signature)

    @pytest.mark.parametrize(
        "header", [None, "", "sha1=abc", "abc", "sha256=", "sha256=ünïcode"]
    )
    def test_malformed_headers_rejected(self, header):
        assert not verify_signature(SECRET, b"{}", header)


# =============================================================================
# Allow-list
# =============================================================================


class TestIsActionable:
    @pytest.mark.parametrize(
        "event_type,action",
        [
            ("issues", "opened"),
            ("issues", "reopened"),
            ("issues", "labeled"),
            ("pull_request", "opened"),
            ("pull_request", "synchronize"),
            ("pull_request", "ready_for_review"),
        ],
    )
    def test_allowed_pairs(self, event_type, action):
        assert is_actionable(event_type, {"action": action})

    @pytest.mark.parametrize(
        "event_type,payload",
        [
            ("issues", {"action": "closed"}),
            ("issues", {}),
            ("pull_request", {"action": "closed"}),
            ("push", {"action": "opened"}),
            ("issue_comment", {"action": "created"}),
        ],
    )
    def test_rejected_pairs(self, event_type, payload):
        assert not is_actionable(event_type, payload)

    def test_workflow_dispatch_needs_no_action(self):
        assert is_actionable("workflow_dispatch", {})


# =============================================================================
# Issue number extraction
# =============================================================================


class TestExtractIssueNumber:
    @given(number=st.integers(min_value=1, max_value=10**6))
    @settings(max_examples=100)
    def test_issue_number(self, number):
        assert extract_issue_number({"issue": {"number": number}}) == number

    def test_pull_request_number(self):
        assert extract_issue_number({"pull_request": {"number": 12}}) == 12

    def test_dispatch_input_string(self):
        assert extract_issue_number({"inputs": {"issue_number": " 31 "}}) == 31

    @pytest.mark.parametrize(
        "payload",
        [
            {},
            {"issue": {"number": 0}},
            {"issue": {"number": -3}},
            {"issue": {"number": True}},
            {"issue": {"number": "abc"}},
            {"inputs": {"issue_number": "0"}},
            {"issue": "not a dict"},
        ],
    )
    def test_missing_or_invalid(self, payload):
        assert extract_issue_number(payload) is None


# =============================================================================
# Envelope construction
# =============================================================================


class TestBuildEnvelope:
    def test_issue_envelope(self):
        envelope = build_envelope("issues", "d1", _issue_payload())

        assert envelope.schema_version == "1.0"
        assert envelope.event_type == "github.issues"
        assert envelope.event_id == "gh_d1"
        assert envelope.source.repo == "acme/widgets"
        assert envelope.source.delivery_id == "d1"
        assert envelope.actor.type == ActorType.USER
        assert envelope.actor.login == "octocat"
        assert envelope.task_ref.kind == TaskRefKind.ISSUE
        assert envelope.task_ref.id == 7
        assert envelope.task_ref.url == "https://github.com/acme/widgets/issues/7"

    def test_bot_sender(self):
        envelope = build_envelope(
            "issues", "d2", _issue_payload(sender="dependabot[bot]")
        )
        assert envelope.actor.type == ActorType.BOT

    def test_pull_request_envelope_builds_url(self):
        payload = {
            "action": "opened",
            "pull_request": {"number": 5},
            "repository": {"name": "widgets", "owner": {"login": "acme"}},
        }

        envelope = build_envelope("pull_request", "d3", payload)

        assert envelope.task_ref.kind == TaskRefKind.PULL_REQUEST
        assert envelope.task_ref.url == "https://github.com/acme/widgets/pull/5"
        assert envelope.actor.login == "system"

    def test_workflow_dispatch_without_repository(self):
        envelope = build_envelope(
            "workflow_dispatch", "d4", {"inputs": {"issue_number": "9"}}
        )

        assert envelope.task_ref.kind == TaskRefKind.WORKFLOW_DISPATCH
        assert envelope.task_ref.id == 9
        assert envelope.source.repo == "unknown/unknown"


# =============================================================================
# Intake
# =============================================================================


class TestEventIntake:
    @given(delivery_ids=st.lists(st.text(min_size=1, max_size=12), max_size=20))
    @settings(max_examples=100)
    def test_each_delivery_queued_once(self, delivery_ids):
        repository = InMemoryWorkflowRepository()
        consumer = MagicMock()
        intake = EventIntake(repository, consumer)

        async def scenario():
            results = []
            for delivery_id in delivery_ids:
                envelope = build_envelope("issues", delivery_id, _issue_payload())
                results.append(await intake.admit(envelope))
            return results

        results = run_async(scenario())

        assert consumer.enqueue.call_count == len(set(delivery_ids))
        assert len(repository.events) == len(set(delivery_ids))
        assert sum(1 for r in results if r.inserted) == len(set(delivery_ids))

    def test_replay_returns_original_event_id(self):
        repository = InMemoryWorkflowRepository()
        consumer = MagicMock()
        intake = EventIntake(repository, consumer)
        envelope = build_envelope("issues", "d1", _issue_payload())

        async def scenario():
            return await intake.admit(envelope), await intake.admit(envelope)

        first, second = run_async(scenario())

        assert first.inserted is True
        assert second.inserted is False
        assert second.event_id == first.event_id
        queued = consumer.enqueue.call_args.args[0]
        assert isinstance(queued, QueueItem)
        assert queued.event_id == first.event_id
        assert queued.envelope is envelope
