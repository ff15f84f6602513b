"""Execution agent that runs one planned work item through a model.

The ExecutorAgent sends a work item and its spec to an OpenAI-compatible
model and validates the reply against the AgentResult contract. A reply
whose task_id does not echo the requested task key is rejected, so
results can never be recorded against the wrong task.

Source:
- src/issueflow/agents/contracts.py (AgentResult, FormalSpec)
- src/issueflow/agents/parsing.py (parse_structured)
- src/issueflow/config.py (executor_llm_url, executor_llm_model)
"""

import logging
from typing import Optional

from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from src.issueflow.agents.contracts import (
    AgentResult,
    AgentResultStatus,
    CommandRun,
    FormalSpec,
    StructuredOutputError,
)
from src.issueflow.agents.parsing import message_text, parse_structured


logger = logging.getLogger(__name__)


EXECUTOR_SYSTEM_PROMPT = """You are an execution worker in an automated delivery pipeline.

Return ONLY a JSON object matching AgentResult:
{
  "task_id": "<the task id you were given>",
  "status": "completed|blocked|needs_review",
  "summary": "what you did",
  "files_changed": ["path"],
  "commands_ran": [{"cmd": "command", "exit_code": 0}],
  "open_questions": [],
  "handoff_notes": ""
}

Keep files_changed focused and include the validation commands you ran."""


class ExecutorAgent:
    """Model-backed executor for individual work items."""

    def __init__(
        self,
        llm_url: Optional[str],
        model_name: str,
        api_key: Optional[str] = None,
        dry_run: bool = False,
        timeout: float = 300.0,
        temperature: float = 0.0,
        max_tokens: int = 2000,
    ):
        self.llm_url = llm_url
        self.model_name = model_name
        self.api_key = api_key
        self.dry_run = dry_run or not llm_url
        self.timeout = timeout
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._llm: Optional[ChatOpenAI] = None

    @property
    def llm(self) -> ChatOpenAI:
        if self._llm is None:
            self._llm = ChatOpenAI(
                base_url=self.llm_url,
                model=self.model_name,
                temperature=self.temperature,
                timeout=self.timeout,
                max_tokens=self.max_tokens,
                api_key=self.api_key or "not-needed",
            )
        return self._llm

    async def execute_task(
        self,
        task_key: str,
        task_title: str,
        owner_role: str,
        spec: FormalSpec,
    ) -> AgentResult:
        """Execute one work item and return its structured result.

        Args:
            task_key: Work item id from the spec.
            task_title: Work item title.
            owner_role: Role the model should act as.
            spec: The full spec for context.

        Returns:
            The validated AgentResult.

        Raises:
            StructuredOutputError: If the reply is not valid JSON, violates
                the AgentResult schema, or names a different task.
        """
        if self.dry_run:
            return AgentResult(
                task_id=task_key,
                status=AgentResultStatus.COMPLETED,
                summary=f'DRY_RUN completed task "{task_title}"',
                commands_ran=[CommandRun(cmd="echo dry-run", exit_code=0)],
                handoff_notes="No code changes produced in dry-run mode.",
            )

        prompt = (
            f"You are {owner_role}.\n\n"
            f"task_id={task_key}\n"
            f"task_title={task_title}\n\n"
            f"spec:\n{spec.model_dump_json(indent=2)}"
        )

        logger.info(
            "Executing task",
            extra={"task_key": task_key, "owner_role": owner_role, "model": self.model_name},
        )
        response = await self.llm.ainvoke(
            [SystemMessage(content=EXECUTOR_SYSTEM_PROMPT), HumanMessage(content=prompt)]
        )

        result = parse_structured(
            AgentResult, message_text(response), f"Output for task {task_key}"
        )
        if result.task_id != task_key:
            raise StructuredOutputError(
                f"Output task_id mismatch: expected {task_key}, received {result.task_id}"
            )

        return result
