"""Structured payload contracts exchanged with the model collaborators.

This module defines the schema-validated payloads that the planning and
execution models must return:
- FormalSpec: the plan produced from an issue, with its work breakdown
- AgentResult: the outcome of executing one work item
- MergeDecisionPayload: the review verdict for a pull request

Any response that fails these schemas is a contract violation and is
surfaced as StructuredOutputError, which the retry classifier treats as
deterministic.

The models use Pydantic for validation, consistent with state/models.py
and webhook/models.py.
"""

from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator


class StructuredOutputError(Exception):
    """Raised when a model response violates its structured contract.

    Attributes:
        message: Human-readable error description.
        cause: The underlying parse or validation error, if any.
    """

    def __init__(self, message: str, cause: Optional[Exception] = None):
        self.message = message
        self.cause = cause
        super().__init__(message)


class GitHubSource(BaseModel):
    repo: str = Field(..., min_length=1, description='"{owner}/{repo}" the issue lives in')
    issue: int = Field(..., ge=0, description="Issue number the spec was generated from")
    commit_baseline: str = Field(
        ..., min_length=1, description="Base branch SHA at planning time"
    )


class SpecSource(BaseModel):
    github: GitHubSource


class SpecConstraints(BaseModel):
    languages: List[str] = Field(default_factory=list)
    allowed_paths: List[str] = Field(default_factory=list)
    forbidden_paths: List[str] = Field(default_factory=list)


class ValidationPlan(BaseModel):
    ci_jobs: List[str] = Field(default_factory=list)


class WorkItem(BaseModel):
    """One unit of planned work; becomes a Task in the workflow run."""

    id: str = Field(..., min_length=1, description="Task key, unique within the spec")
    title: str = Field(..., min_length=1)
    owner_role: str = Field(..., min_length=1, description="Role expected to execute it")
    definition_of_done: List[str] = Field(default_factory=list)
    depends_on: List[str] = Field(
        default_factory=list,
        description="Keys of work items that must complete first",
    )


class FormalSpec(BaseModel):
    """Formal plan generated from a GitHub issue (version 1)."""

    spec_version: Literal[1] = Field(..., description="Schema version, always 1")
    spec_id: str = Field(..., min_length=1)
    source: SpecSource
    objective: str = Field(..., min_length=1)
    non_goals: List[str] = Field(default_factory=list)
    constraints: SpecConstraints = Field(default_factory=SpecConstraints)
    acceptance_criteria: List[str] = Field(..., min_length=1)
    design_notes: Dict[str, Any] = Field(default_factory=dict)
    work_breakdown: List[WorkItem] = Field(..., min_length=1)
    risk_checks: List[str] = Field(default_factory=list)
    validation_plan: ValidationPlan = Field(default_factory=ValidationPlan)
    stop_conditions: List[str] = Field(default_factory=list)

    @field_validator("work_breakdown")
    @classmethod
    def validate_unique_work_ids(cls, v: List[WorkItem]) -> List[WorkItem]:
        """Reject work items that share an id."""
        seen = set()
        duplicates = []
        for item in v:
            if item.id in seen and item.id not in duplicates:
                duplicates.append(item.id)
            seen.add(item.id)
        if duplicates:
            raise ValueError(f"duplicate work item ids: {', '.join(duplicates)}")
        return v


class AgentResultStatus(str, Enum):
    """Execution status reported by the execution model."""

    COMPLETED = "completed"
    BLOCKED = "blocked"
    NEEDS_REVIEW = "needs_review"


class CommandRun(BaseModel):
    cmd: str
    exit_code: int


class AgentResult(BaseModel):
    """Structured outcome of executing one work item."""

    task_id: str = Field(..., min_length=1, description="Must echo the task key")
    status: AgentResultStatus
    summary: str = Field(..., min_length=1)
    files_changed: List[str] = Field(default_factory=list)
    commands_ran: List[CommandRun] = Field(default_factory=list)
    open_questions: List[str] = Field(default_factory=list)
    handoff_notes: str = ""


class MergeVerdict(str, Enum):
    APPROVE = "approve"
    REQUEST_CHANGES = "request_changes"
    BLOCK = "block"


class MergeDecisionPayload(BaseModel):
    """Review verdict for a pull request."""

    decision: MergeVerdict
    rationale: str = Field(..., min_length=1)
    blocking_findings: List[str] = Field(default_factory=list)
