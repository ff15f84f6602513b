"""PostgreSQL repository for workflow state.

This module implements the WorkflowRepository protocol using asyncpg:
- Connection pooling
- Transactions for multi-statement writes (stage transitions, task batches)
- Idempotent event admission via ON CONFLICT on the delivery id
- Runnable-task selection done in SQL

Source:
- migrations/001_workflow_state.sql (schema definition)
- src/issueflow/state/machine.py (WorkflowRepository protocol)
"""

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import asyncpg

from src.issueflow.state.models import (
    AgentAttempt,
    Artifact,
    Event,
    MergeDecision,
    RunStatus,
    RunView,
    StageTransition,
    Task,
    TaskSpec,
    TaskStatus,
    TaskView,
    WorkflowRun,
    WorkflowStage,
    new_id,
)


logger = logging.getLogger(__name__)


class DatabaseError(Exception):
    """Raised when a database operation fails.

    Attributes:
        message: Human-readable error description.
        original_error: The underlying exception, if any.
    """

    def __init__(
        self,
        message: str,
        original_error: Optional[Exception] = None,
    ):
        self.message = message
        self.original_error = original_error
        super().__init__(message)


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _json_in(value: Any) -> Optional[str]:
    return json.dumps(value) if value is not None else None


def _json_out(value: Any, default: Any = None) -> Any:
    if value is None:
        return default
    if isinstance(value, str):
        return json.loads(value)
    return value


def _row_to_event(row: asyncpg.Record) -> Event:
    return Event(
        id=row["id"],
        delivery_id=row["delivery_id"],
        event_type=row["event_type"],
        payload=_json_out(row["payload"], {}),
        workflow_run_id=row["workflow_run_id"],
        processed=row["processed"],
        error=row["error"],
        received_at=_utc(row["received_at"]),
        processed_at=_utc(row["processed_at"]),
    )


def _row_to_run(row: asyncpg.Record) -> WorkflowRun:
    return WorkflowRun(
        id=row["id"],
        external_task_ref=row["external_task_ref"],
        issue_number=row["issue_number"],
        repository=row["repository"],
        pr_number=row["pr_number"],
        status=RunStatus(row["status"]),
        current_stage=WorkflowStage(row["current_stage"]),
        spec_id=row["spec_id"],
        spec_content=row["spec_content"],
        dead_letter_reason=row["dead_letter_reason"],
        created_at=_utc(row["created_at"]),
        updated_at=_utc(row["updated_at"]),
    )


def _row_to_task(row: asyncpg.Record) -> Task:
    return Task(
        id=row["id"],
        workflow_run_id=row["workflow_run_id"],
        task_key=row["task_key"],
        title=row["title"],
        owner_role=row["owner_role"],
        definition_of_done=_json_out(row["definition_of_done"], []),
        status=TaskStatus(row["status"]),
        attempt_count=row["attempt_count"],
        depends_on=_json_out(row["depends_on"], []),
        last_result=_json_out(row["last_result"]),
        created_at=_utc(row["created_at"]),
        updated_at=_utc(row["updated_at"]),
    )


def _row_to_attempt(row: asyncpg.Record) -> AgentAttempt:
    return AgentAttempt(
        id=row["id"],
        task_id=row["task_id"],
        agent_role=row["agent_role"],
        attempt_number=row["attempt_number"],
        status=row["status"],
        output=_json_out(row["output"]),
        error=row["error"],
        error_category=row["error_category"],
        backoff_delay_ms=row["backoff_delay_ms"],
        duration_ms=row["duration_ms"],
        created_at=_utc(row["created_at"]),
    )


def _row_to_artifact(row: asyncpg.Record) -> Artifact:
    return Artifact(
        id=row["id"],
        workflow_run_id=row["workflow_run_id"],
        task_id=row["task_id"],
        kind=row["kind"],
        content=row["content"],
        metadata=_json_out(row["metadata"], {}),
        created_at=_utc(row["created_at"]),
    )


def _row_to_merge_decision(row: asyncpg.Record) -> MergeDecision:
    return MergeDecision(
        id=row["id"],
        workflow_run_id=row["workflow_run_id"],
        pr_number=row["pr_number"],
        decision=row["decision"],
        rationale=row["rationale"],
        blocking_findings=_json_out(row["blocking_findings"], []),
        created_at=_utc(row["created_at"]),
    )


def _row_to_transition(row: asyncpg.Record) -> StageTransition:
    return StageTransition(
        workflow_run_id=row["workflow_run_id"],
        from_stage=WorkflowStage(row["from_stage"]),
        to_stage=WorkflowStage(row["to_stage"]),
        transitioned_at=_utc(row["transitioned_at"]),
        metadata=_json_out(row["metadata"], {}),
    )


class PostgresWorkflowRepository:
    """PostgreSQL implementation of the WorkflowRepository protocol.

    Expects the schema from migrations/001_workflow_state.sql.

    Example:
        >>> async with PostgresWorkflowRepository("postgresql://...") as repo:
        ...     run = await repo.get_run(run_id)
    """

    def __init__(
        self,
        connection_string: str,
        min_pool_size: int = 2,
        max_pool_size: int = 10,
    ):
        self.connection_string = connection_string
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: Optional[asyncpg.Pool] = None

    @property
    def pool(self) -> asyncpg.Pool:
        """Get the connection pool.

        Raises:
            DatabaseError: If connect() has not been called.
        """
        if self._pool is None:
            raise DatabaseError(
                "Database pool not initialized. Call connect() first."
            )
        return self._pool

    async def connect(self) -> None:
        """Initialize the connection pool.

        Raises:
            DatabaseError: If the connection fails.
        """
        if self._pool is not None:
            logger.warning("Connection pool already initialized")
            return

        try:
            logger.info(
                "Connecting to PostgreSQL",
                extra={
                    "min_pool_size": self.min_pool_size,
                    "max_pool_size": self.max_pool_size,
                },
            )
            self._pool = await asyncpg.create_pool(
                self.connection_string,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
            )
            logger.info("PostgreSQL connection pool established")
        except Exception as e:
            logger.error("Failed to connect to PostgreSQL", extra={"error": str(e)})
            raise DatabaseError(
                f"Failed to connect to PostgreSQL: {e}",
                original_error=e,
            ) from e

    async def disconnect(self) -> None:
        if self._pool is not None:
            logger.info("Closing PostgreSQL connection pool")
            await self._pool.close()
            self._pool = None

    async def __aenter__(self) -> "PostgresWorkflowRepository":
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.disconnect()

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[asyncpg.Connection]:
        """Yield a connection with an open transaction."""
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                yield conn

    @asynccontextmanager
    async def _errors(self, operation: str, **context: Any) -> AsyncIterator[None]:
        """Wrap failures of ``operation`` in DatabaseError."""
        try:
            yield
        except DatabaseError:
            raise
        except Exception as e:
            logger.error(
                f"Failed to {operation}",
                extra={**context, "error": str(e)},
            )
            raise DatabaseError(f"Failed to {operation}: {e}", original_error=e) from e

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def record_event_if_new(
        self, delivery_id: str, event_type: str, payload: Dict[str, Any]
    ) -> Tuple[str, bool]:
        async with self._errors("record event", delivery_id=delivery_id):
            async with self._transaction() as conn:
                inserted_id = await conn.fetchval(
                    """
                    INSERT INTO events (id, delivery_id, event_type, payload)
                    VALUES ($1, $2, $3, $4)
                    ON CONFLICT (delivery_id) DO NOTHING
                    RETURNING id
                    """,
                    new_id(),
                    delivery_id,
                    event_type,
                    _json_in(payload),
                )
                if inserted_id is not None:
                    return inserted_id, True

                existing_id = await conn.fetchval(
                    "SELECT id FROM events WHERE delivery_id = $1",
                    delivery_id,
                )
                return existing_id, False

    async def get_event(self, event_id: str) -> Optional[Event]:
        async with self._errors("get event", event_id=event_id):
            row = await self.pool.fetchrow("SELECT * FROM events WHERE id = $1", event_id)
            return _row_to_event(row) if row else None

    async def link_event_to_run(self, event_id: str, run_id: str) -> None:
        async with self._errors("link event to run", event_id=event_id, run_id=run_id):
            await self.pool.execute(
                "UPDATE events SET workflow_run_id = $2 WHERE id = $1",
                event_id,
                run_id,
            )

    async def mark_event_processed(self, event_id: str, error: Optional[str] = None) -> None:
        async with self._errors("mark event processed", event_id=event_id):
            await self.pool.execute(
                """
                UPDATE events
                SET processed = TRUE, error = $2, processed_at = now()
                WHERE id = $1
                """,
                event_id,
                error,
            )

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    async def create_workflow_run(
        self,
        issue_number: int,
        external_task_ref: str,
        repository: Optional[str] = None,
    ) -> WorkflowRun:
        async with self._errors("create workflow run", issue_number=issue_number):
            row = await self.pool.fetchrow(
                """
                INSERT INTO workflow_runs (
                    id, external_task_ref, issue_number, repository, status, current_stage
                ) VALUES ($1, $2, $3, $4, $5, $6)
                RETURNING *
                """,
                new_id(),
                external_task_ref,
                issue_number,
                repository,
                RunStatus.IN_PROGRESS.value,
                WorkflowStage.TASK_REQUESTED.value,
            )
            return _row_to_run(row)

    async def get_run(self, run_id: str) -> Optional[WorkflowRun]:
        async with self._errors("get workflow run", run_id=run_id):
            row = await self.pool.fetchrow(
                "SELECT * FROM workflow_runs WHERE id = $1", run_id
            )
            return _row_to_run(row) if row else None

    async def update_run_stage(self, transition: StageTransition) -> None:
        run_id = transition.workflow_run_id
        async with self._errors("update run stage", run_id=run_id):
            async with self._transaction() as conn:
                await conn.execute(
                    """
                    UPDATE workflow_runs
                    SET current_stage = $2, updated_at = now()
                    WHERE id = $1
                    """,
                    run_id,
                    transition.to_stage.value,
                )
                await conn.execute(
                    """
                    INSERT INTO stage_transitions (
                        workflow_run_id, from_stage, to_stage, transitioned_at, metadata
                    ) VALUES ($1, $2, $3, $4, $5)
                    """,
                    run_id,
                    transition.from_stage.value,
                    transition.to_stage.value,
                    transition.transitioned_at,
                    _json_in(transition.metadata),
                )

    async def list_transitions(self, run_id: str) -> List[StageTransition]:
        async with self._errors("list stage transitions", run_id=run_id):
            rows = await self.pool.fetch(
                """
                SELECT * FROM stage_transitions
                WHERE workflow_run_id = $1
                ORDER BY transitioned_at ASC, id ASC
                """,
                run_id,
            )
            return [_row_to_transition(row) for row in rows]

    async def store_spec(self, run_id: str, spec_id: str, content: str) -> None:
        async with self._errors("store spec", run_id=run_id):
            await self.pool.execute(
                """
                UPDATE workflow_runs
                SET spec_id = $2, spec_content = $3, updated_at = now()
                WHERE id = $1
                """,
                run_id,
                spec_id,
                content,
            )

    async def set_run_pr_number(self, run_id: str, pr_number: int) -> None:
        async with self._errors("set run PR number", run_id=run_id):
            await self.pool.execute(
                "UPDATE workflow_runs SET pr_number = $2, updated_at = now() WHERE id = $1",
                run_id,
                pr_number,
            )

    async def mark_run_status(
        self, run_id: str, status: RunStatus, reason: Optional[str] = None
    ) -> None:
        async with self._errors("mark run status", run_id=run_id, status=status.value):
            await self.pool.execute(
                """
                UPDATE workflow_runs
                SET status = $2,
                    dead_letter_reason = COALESCE($3, dead_letter_reason),
                    updated_at = now()
                WHERE id = $1
                """,
                run_id,
                status.value,
                reason,
            )

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    async def create_tasks(self, run_id: str, tasks: List[TaskSpec]) -> List[Task]:
        async with self._errors("create tasks", run_id=run_id, count=len(tasks)):
            created = []
            async with self._transaction() as conn:
                for spec in tasks:
                    row = await conn.fetchrow(
                        """
                        INSERT INTO tasks (
                            id, workflow_run_id, task_key, title, owner_role,
                            definition_of_done, depends_on, status
                        ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                        RETURNING *
                        """,
                        new_id(),
                        run_id,
                        spec.task_key,
                        spec.title,
                        spec.owner_role,
                        _json_in(spec.definition_of_done),
                        _json_in(spec.depends_on),
                        TaskStatus.QUEUED.value,
                    )
                    created.append(_row_to_task(row))
            return created

    async def list_tasks(self, run_id: str) -> List[Task]:
        async with self._errors("list tasks", run_id=run_id):
            rows = await self.pool.fetch(
                """
                SELECT * FROM tasks
                WHERE workflow_run_id = $1
                ORDER BY created_at ASC, id ASC
                """,
                run_id,
            )
            return [_row_to_task(row) for row in rows]

    async def get_task(self, task_id: str) -> Optional[Task]:
        async with self._errors("get task", task_id=task_id):
            row = await self.pool.fetchrow("SELECT * FROM tasks WHERE id = $1", task_id)
            return _row_to_task(row) if row else None

    async def list_runnable_tasks(self, run_id: str) -> List[Task]:
        async with self._errors("list runnable tasks", run_id=run_id):
            rows = await self.pool.fetch(
                """
                SELECT t.* FROM tasks t
                WHERE t.workflow_run_id = $1
                  AND t.status = 'queued'
                  AND NOT EXISTS (
                      SELECT 1
                      FROM jsonb_array_elements_text(t.depends_on) AS dep(key)
                      WHERE NOT EXISTS (
                          SELECT 1 FROM tasks d
                          WHERE d.workflow_run_id = t.workflow_run_id
                            AND d.task_key = dep.key
                            AND d.status = 'completed'
                      )
                  )
                ORDER BY t.created_at ASC, t.id ASC
                """,
                run_id,
            )
            return [_row_to_task(row) for row in rows]

    async def mark_task_running(self, task_id: str) -> None:
        async with self._errors("mark task running", task_id=task_id):
            await self.pool.execute(
                "UPDATE tasks SET status = 'running', updated_at = now() WHERE id = $1",
                task_id,
            )

    async def mark_task_result(
        self, task_id: str, result: Dict[str, Any], status: TaskStatus
    ) -> None:
        async with self._errors("mark task result", task_id=task_id):
            await self.pool.execute(
                """
                UPDATE tasks
                SET status = $2,
                    last_result = $3,
                    attempt_count = attempt_count + 1,
                    updated_at = now()
                WHERE id = $1
                """,
                task_id,
                status.value,
                _json_in(result),
            )

    async def count_pending_tasks(self, run_id: str) -> int:
        async with self._errors("count pending tasks", run_id=run_id):
            value = await self.pool.fetchval(
                """
                SELECT count(*) FROM tasks
                WHERE workflow_run_id = $1 AND status <> 'completed'
                """,
                run_id,
            )
            return int(value or 0)

    # ------------------------------------------------------------------
    # Audit records
    # ------------------------------------------------------------------

    async def add_agent_attempt(self, attempt: AgentAttempt) -> None:
        async with self._errors("add agent attempt", task_id=attempt.task_id):
            await self.pool.execute(
                """
                INSERT INTO agent_attempts (
                    id, task_id, agent_role, attempt_number, status, output,
                    error, error_category, backoff_delay_ms, duration_ms, created_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
                """,
                attempt.id,
                attempt.task_id,
                attempt.agent_role,
                attempt.attempt_number,
                attempt.status,
                _json_in(attempt.output),
                attempt.error,
                attempt.error_category,
                attempt.backoff_delay_ms,
                attempt.duration_ms,
                attempt.created_at,
            )

    async def list_attempts(self, task_id: str) -> List[AgentAttempt]:
        async with self._errors("list agent attempts", task_id=task_id):
            rows = await self.pool.fetch(
                """
                SELECT * FROM agent_attempts
                WHERE task_id = $1
                ORDER BY created_at ASC
                """,
                task_id,
            )
            return [_row_to_attempt(row) for row in rows]

    async def add_artifact(self, artifact: Artifact) -> None:
        async with self._errors("add artifact", run_id=artifact.workflow_run_id):
            await self.pool.execute(
                """
                INSERT INTO artifacts (
                    id, workflow_run_id, task_id, kind, content, metadata, created_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7)
                """,
                artifact.id,
                artifact.workflow_run_id,
                artifact.task_id,
                artifact.kind,
                artifact.content,
                _json_in(artifact.metadata),
                artifact.created_at,
            )

    async def add_merge_decision(self, decision: MergeDecision) -> None:
        async with self._errors("add merge decision", run_id=decision.workflow_run_id):
            await self.pool.execute(
                """
                INSERT INTO merge_decisions (
                    id, workflow_run_id, pr_number, decision, rationale,
                    blocking_findings, created_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7)
                """,
                decision.id,
                decision.workflow_run_id,
                decision.pr_number,
                decision.decision,
                decision.rationale,
                _json_in(decision.blocking_findings),
                decision.created_at,
            )

    async def get_run_view(self, run_id: str) -> Optional[RunView]:
        run = await self.get_run(run_id)
        if run is None:
            return None

        async with self._errors("get run view", run_id=run_id):
            async with self.pool.acquire() as conn:
                task_rows = await conn.fetch(
                    """
                    SELECT t.*, (
                        SELECT count(*) FROM agent_attempts a WHERE a.task_id = t.id
                    ) AS attempts
                    FROM tasks t
                    WHERE t.workflow_run_id = $1
                    ORDER BY t.created_at ASC, t.id ASC
                    """,
                    run_id,
                )
                artifact_rows = await conn.fetch(
                    """
                    SELECT * FROM artifacts
                    WHERE workflow_run_id = $1
                    ORDER BY created_at ASC
                    """,
                    run_id,
                )
                decision_rows = await conn.fetch(
                    """
                    SELECT * FROM merge_decisions
                    WHERE workflow_run_id = $1
                    ORDER BY created_at ASC
                    """,
                    run_id,
                )

        return RunView(
            run=run,
            tasks=[
                TaskView(task=_row_to_task(row), attempts=int(row["attempts"]))
                for row in task_rows
            ],
            artifacts=[_row_to_artifact(row) for row in artifact_rows],
            merge_decisions=[_row_to_merge_decision(row) for row in decision_rows],
            transitions=await self.list_transitions(run_id),
        )

    async def health_check(self) -> bool:
        """Check database connectivity with a trivial query."""
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
            return True
        except Exception as e:
            logger.warning("Database health check failed", extra={"error": str(e)})
            return False
