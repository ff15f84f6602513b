"""GitHub webhook parsing for the orchestrator.

Signature verification, the actionable-event allow-list and envelope
construction. All functions are pure; the HTTP route in main.py calls them
in order and maps each outcome to a response.

GitHub Webhook Payload Structure (issues event):
{
  "action": "opened",
  "issue": {"number": 123, "html_url": "https://github.com/o/r/issues/123"},
  "repository": {"name": "r", "owner": {"login": "o"}},
  "sender": {"login": "someone"}
}
"""

import hashlib
import hmac
import logging
from typing import Any, Dict, Optional

from src.issueflow.webhook.models import (
    Actor,
    ActorType,
    EventEnvelope,
    EventSource,
    TaskRef,
    TaskRefKind,
)

logger = logging.getLogger(__name__)


SIGNATURE_PREFIX = "sha256="

ACTIONABLE_EVENTS = {
    "issues": {"opened", "reopened", "labeled"},
    "pull_request": {"opened", "synchronize", "reopened", "ready_for_review"},
}

# workflow_dispatch deliveries have no action field.
ANY_ACTION_EVENTS = {"workflow_dispatch"}


def verify_signature(secret: str, body: bytes, signature_header: Optional[str]) -> bool:
    """Check an X-Hub-Signature-256 header against the raw request body.

    Args:
        secret: The webhook secret shared with GitHub.
        body: Raw request body bytes, exactly as received.
        signature_header: Header value in the form "sha256=<hex>".

    Returns:
        True only for a well-formed header whose digest matches.
    """
    if not signature_header or not signature_header.startswith(SIGNATURE_PREFIX):
        return False

    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    provided = signature_header[len(SIGNATURE_PREFIX):]
    return hmac.compare_digest(expected.encode("ascii"), provided.encode("utf-8"))


def is_actionable(event_type: str, payload: Dict[str, Any]) -> bool:
    """Whether an event/action pair should start a workflow run."""
    if event_type in ANY_ACTION_EVENTS:
        return True

    action = payload.get("action")
    if not isinstance(action, str):
        return False
    return action in ACTIONABLE_EVENTS.get(event_type, set())


def _positive_int(value: Any) -> Optional[int]:
    # bool is an int subclass
    if isinstance(value, bool):
        return None
    if isinstance(value, int) and value > 0:
        return value
    if isinstance(value, str) and value.strip().isdigit():
        number = int(value.strip())
        return number if number > 0 else None
    return None


def extract_issue_number(payload: Dict[str, Any]) -> Optional[int]:
    """Find the issue (or pull request) number a delivery refers to.

    Looks at issue.number, then pull_request.number, then the
    workflow_dispatch input inputs.issue_number.
    """
    for key in ("issue", "pull_request"):
        section = payload.get(key)
        if isinstance(section, dict):
            number = _positive_int(section.get("number"))
            if number is not None:
                return number

    inputs = payload.get("inputs")
    if isinstance(inputs, dict):
        return _positive_int(inputs.get("issue_number"))

    return None


def _login(section: Any, default: str) -> str:
    if isinstance(section, dict):
        login = section.get("login")
        if isinstance(login, str) and login.strip():
            return login.strip()
    return default


def _repo_full_name(payload: Dict[str, Any]) -> str:
    repo = payload.get("repository")
    if not isinstance(repo, dict):
        return "unknown/unknown"

    owner = _login(repo.get("owner"), "unknown")
    name = repo.get("name")
    if not isinstance(name, str) or not name.strip():
        name = "unknown"
    return f"{owner}/{name.strip()}"


def build_envelope(
    event_type: str,
    delivery_id: str,
    payload: Dict[str, Any],
) -> EventEnvelope:
    """Normalize a GitHub delivery into an EventEnvelope.

    Args:
        event_type: X-GitHub-Event header value, e.g. "issues".
        delivery_id: X-GitHub-Delivery header value.
        payload: Parsed JSON body.

    Returns:
        The envelope. task_ref.id falls back to 0 when no number is found;
        callers reject such deliveries before building an envelope.
    """
    repo = _repo_full_name(payload)
    number = extract_issue_number(payload) or 0

    pull_request = payload.get("pull_request")
    issue = payload.get("issue")
    if isinstance(pull_request, dict):
        kind = TaskRefKind.PULL_REQUEST
        url = pull_request.get("html_url") or f"https://github.com/{repo}/pull/{number}"
    elif event_type in ANY_ACTION_EVENTS:
        kind = TaskRefKind.WORKFLOW_DISPATCH
        url = f"https://github.com/{repo}/issues/{number}"
    else:
        kind = TaskRefKind.ISSUE
        html_url = issue.get("html_url") if isinstance(issue, dict) else None
        url = html_url or f"https://github.com/{repo}/issues/{number}"

    login = _login(payload.get("sender"), "system")

    envelope = EventEnvelope(
        event_type=f"github.{event_type}",
        event_id=f"gh_{delivery_id}",
        source=EventSource(repo=repo, delivery_id=delivery_id),
        actor=Actor(
            type=ActorType.BOT if login.endswith("[bot]") else ActorType.USER,
            login=login,
        ),
        task_ref=TaskRef(kind=kind, id=number, url=str(url)),
        payload=payload,
    )

    logger.debug(
        "Built event envelope",
        extra={
            "event_id": envelope.event_id,
            "event_type": envelope.event_type,
            "repository": repo,
            "issue_number": number,
        },
    )
    return envelope
