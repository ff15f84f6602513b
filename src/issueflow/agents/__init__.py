"""Model collaborators: planning, execution and review.

Both agents talk to OpenAI-compatible endpoints and validate every reply
against the contracts in contracts.py.
"""

from src.issueflow.agents.contracts import (
    AgentResult,
    AgentResultStatus,
    FormalSpec,
    MergeDecisionPayload,
    MergeVerdict,
    StructuredOutputError,
    WorkItem,
)
from src.issueflow.agents.executor import ExecutorAgent
from src.issueflow.agents.planner import PlanResult, PlannerAgent

__all__ = [
    "AgentResult",
    "AgentResultStatus",
    "ExecutorAgent",
    "FormalSpec",
    "MergeDecisionPayload",
    "MergeVerdict",
    "PlanResult",
    "PlannerAgent",
    "StructuredOutputError",
    "WorkItem",
]
