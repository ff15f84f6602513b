"""Planning and review agent backed by an OpenAI-compatible model.

The PlannerAgent covers the three planning-side collaborator calls of a
workflow run:
- generate_plan: convert an issue into a FormalSpec (YAML)
- summarize_review: summarize executed work against the spec
- generate_merge_decision: produce an approve/request_changes/block
  verdict, behind a hard required-checks gate

When no model endpoint is configured, or dry-run is enabled, the agent
returns synthetic payloads so the full pipeline can be exercised without
a model.

The agent uses LangChain's ChatOpenAI client against any OpenAI-compatible
endpoint (OpenAI, vLLM, etc.).

Source:
- src/issueflow/agents/contracts.py (FormalSpec, MergeDecisionPayload)
- src/issueflow/agents/parsing.py (parse_yaml_spec, parse_structured)
- src/issueflow/config.py (planner_llm_url, planner_llm_model)
"""

import json
import logging
import time
from dataclasses import dataclass
from typing import List, Optional

import yaml
from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from src.issueflow.agents.contracts import (
    FormalSpec,
    MergeDecisionPayload,
    MergeVerdict,
)
from src.issueflow.agents.parsing import (
    message_text,
    parse_structured,
    parse_yaml_spec,
)


logger = logging.getLogger(__name__)


CHECKS_NOT_PASSED_RATIONALE = "Required checks have not passed yet."
CHECKS_NOT_PASSED_FINDING = "One or more required checks are pending or failing."

PLAN_SYSTEM_PROMPT = """You are a strict software planning assistant.

Convert the GitHub issue into a FormalSpec version 1 YAML document. Output YAML only, no prose.

Required keys:
spec_version (always 1), spec_id, source.github.repo, source.github.issue,
source.github.commit_baseline, objective, non_goals, constraints.languages,
constraints.allowed_paths, constraints.forbidden_paths, acceptance_criteria (at least 1),
design_notes, work_breakdown (at least 1 item with id, title, owner_role,
definition_of_done, depends_on), risk_checks, validation_plan.ci_jobs, stop_conditions."""

REVIEW_SYSTEM_PROMPT = (
    "Summarize whether acceptance criteria appear met. Focus on concrete "
    "evidence and risks in under 12 bullets."
)

MERGE_SYSTEM_PROMPT = """Return ONLY a JSON object with keys decision, rationale, blocking_findings.

decision must be one of: approve, request_changes, block."""


def dump_spec_yaml(spec: FormalSpec) -> str:
    return yaml.safe_dump(spec.model_dump(mode="json"), sort_keys=False)


@dataclass(frozen=True)
class PlanResult:
    """A validated spec together with the raw YAML it was parsed from."""

    spec: FormalSpec
    raw_yaml: str


class PlannerAgent:
    """Model-backed planner, reviewer and merge-decision generator.

    Attributes:
        llm_url: Base URL of the OpenAI-compatible endpoint, or None.
        model_name: Model used for all planning calls.
        api_key: API key for the endpoint, if it needs one.
        dry_run: Return synthetic payloads instead of calling the model.
        timeout: Request timeout in seconds.
        temperature: Sampling temperature.
    """

    def __init__(
        self,
        llm_url: Optional[str],
        model_name: str,
        api_key: Optional[str] = None,
        dry_run: bool = False,
        timeout: float = 120.0,
        temperature: float = 0.1,
    ):
        self.llm_url = llm_url
        self.model_name = model_name
        self.api_key = api_key
        self.dry_run = dry_run or not llm_url
        self.timeout = timeout
        self.temperature = temperature
        self._llm: Optional[ChatOpenAI] = None

    @property
    def llm(self) -> ChatOpenAI:
        """Get the LLM client, creating it if necessary."""
        if self._llm is None:
            self._llm = ChatOpenAI(
                base_url=self.llm_url,
                model=self.model_name,
                temperature=self.temperature,
                timeout=self.timeout,
                api_key=self.api_key or "not-needed",
            )
        return self._llm

    async def generate_plan(
        self,
        repo: str,
        issue_number: int,
        issue_title: str,
        issue_body: str,
        baseline_commit: str,
    ) -> PlanResult:
        """Generate a FormalSpec for an issue.

        Raises:
            StructuredOutputError: If the model output is not a valid spec.
        """
        if self.dry_run:
            spec = self._dry_run_spec(repo, issue_number, issue_title, baseline_commit)
            return PlanResult(spec=spec, raw_yaml=dump_spec_yaml(spec))

        prompt = (
            f"repo: {repo}\n"
            f"issue: #{issue_number}\n"
            f"title: {issue_title}\n"
            f"body:\n{issue_body or '(no description provided)'}\n\n"
            f"baseline_commit: {baseline_commit}\n"
        )
        messages = [
            SystemMessage(content=PLAN_SYSTEM_PROMPT),
            HumanMessage(content=prompt),
        ]

        logger.info(
            "Requesting plan from model",
            extra={"repo": repo, "issue_number": issue_number, "model": self.model_name},
        )
        response = await self.llm.ainvoke(messages)
        raw_yaml = message_text(response)
        spec = parse_yaml_spec(raw_yaml)

        logger.info(
            "Plan generated",
            extra={
                "spec_id": spec.spec_id,
                "work_items": len(spec.work_breakdown),
            },
        )
        return PlanResult(spec=spec, raw_yaml=raw_yaml)

    async def summarize_review(
        self,
        spec: FormalSpec,
        agent_outputs: List[str],
        ci_summary: str,
    ) -> str:
        """Summarize the executed work for review."""
        if self.dry_run:
            return "\n".join(
                [
                    "DRY_RUN summary:",
                    f"- Spec {spec.spec_id} contains {len(spec.work_breakdown)} work item(s).",
                    f"- Agent outputs observed: {len(agent_outputs)}.",
                    f"- CI summary: {ci_summary}",
                ]
            )

        outputs = "\n---\n".join(agent_outputs)
        content = (
            f"SPEC:\n{dump_spec_yaml(spec)}\n\n"
            f"AGENT OUTPUTS:\n{outputs}\n\n"
            f"CI:\n{ci_summary}"
        )
        response = await self.llm.ainvoke(
            [SystemMessage(content=REVIEW_SYSTEM_PROMPT), HumanMessage(content=content)]
        )
        return message_text(response)

    async def generate_merge_decision(
        self,
        review_summary: str,
        required_checks_passed: bool,
    ) -> MergeDecisionPayload:
        """Produce a merge verdict.

        When required checks have not passed the verdict is forced to
        request_changes and the model is never consulted.

        Raises:
            StructuredOutputError: If the model output is not a valid verdict.
        """
        if not required_checks_passed:
            logger.info("Required checks not passed, forcing request_changes")
            return MergeDecisionPayload(
                decision=MergeVerdict.REQUEST_CHANGES,
                rationale=CHECKS_NOT_PASSED_RATIONALE,
                blocking_findings=[CHECKS_NOT_PASSED_FINDING],
            )

        if self.dry_run:
            return MergeDecisionPayload(
                decision=MergeVerdict.APPROVE,
                rationale="Required checks passed in dry-run mode.",
                blocking_findings=[],
            )

        content = (
            f"requiredChecksPassed={json.dumps(required_checks_passed)}\n"
            f"reviewSummary:\n{review_summary}"
        )
        response = await self.llm.ainvoke(
            [SystemMessage(content=MERGE_SYSTEM_PROMPT), HumanMessage(content=content)]
        )
        return parse_structured(
            MergeDecisionPayload, message_text(response), "Merge decision output"
        )

    def _dry_run_spec(
        self,
        repo: str,
        issue_number: int,
        issue_title: str,
        baseline_commit: str,
    ) -> FormalSpec:
        return FormalSpec.model_validate(
            {
                "spec_version": 1,
                "spec_id": f"spec_{issue_number}_{int(time.time() * 1000)}",
                "source": {
                    "github": {
                        "repo": repo,
                        "issue": issue_number,
                        "commit_baseline": baseline_commit,
                    }
                },
                "objective": f"Implement issue #{issue_number}: {issue_title}",
                "constraints": {
                    "languages": ["python"],
                    "allowed_paths": ["src/", "tests/"],
                    "forbidden_paths": [],
                },
                "acceptance_criteria": [
                    "Workflow run created from webhook event",
                    "At least one task executed with structured output",
                    "Run artifacts persisted",
                ],
                "work_breakdown": [
                    {
                        "id": f"T{issue_number}-1",
                        "title": f"Analyze and process issue #{issue_number}",
                        "owner_role": "backend-engineer",
                        "definition_of_done": [
                            "Task marked completed with artifact output"
                        ],
                        "depends_on": [],
                    }
                ],
                "risk_checks": ["No secrets in logs"],
                "validation_plan": {"ci_jobs": ["CI / Lint", "CI / Tests"]},
                "stop_conditions": ["All tasks complete"],
            }
        )
