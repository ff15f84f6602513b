"""FastAPI application entry point for the issueflow orchestrator.

Receives GitHub webhooks, admits actionable deliveries into the
orchestrator queue, and exposes the operator APIs:
- Autonomy status and mode changes
- Run and task inspection
- Manual review actions on a run's pull request
- Health, readiness and Prometheus metrics
"""

import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import CollectorRegistry

from src.issueflow.agents.executor import ExecutorAgent
from src.issueflow.agents.planner import PlannerAgent
from src.issueflow.auth import Caller, Role, caller_from_headers
from src.issueflow.autonomy.manager import AutonomyManager, AutonomyTransitionError
from src.issueflow.autonomy.models import AutonomyMode
from src.issueflow.config import OrchestratorSettings, get_settings
from src.issueflow.events.emitter import (
    CompositeEventEmitter,
    EventEmitter,
    LoggingEventEmitter,
)
from src.issueflow.events.metrics import (
    MetricsEventEmitter,
    OrchestratorMetrics,
    generate_metrics_output,
    get_metrics,
)
from src.issueflow.github.client import GitHubClient, RepoRef
from src.issueflow.orchestrator import PipelineOrchestrator
from src.issueflow.state.machine import WorkflowRepository
from src.issueflow.state.memory import InMemoryWorkflowRepository
from src.issueflow.state.models import Artifact
from src.issueflow.state.repository import PostgresWorkflowRepository
from src.issueflow.webhook.handler import (
    build_envelope,
    extract_issue_number,
    is_actionable,
    verify_signature,
)
from src.issueflow.webhook.intake import EventIntake

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


RUN_ACTIONS = {
    "approve": (Role.REVIEWER, Role.ADMIN),
    "request_changes": (Role.OPERATOR, Role.REVIEWER, Role.ADMIN),
    "block": (Role.OPERATOR, Role.REVIEWER, Role.ADMIN),
}


@dataclass
class AppContainer:
    """Everything the HTTP layer needs, wired once at startup."""

    webhook_secret: str
    repository: WorkflowRepository
    github: GitHubClient
    autonomy: AutonomyManager
    orchestrator: PipelineOrchestrator
    intake: EventIntake
    metrics: OrchestratorMetrics
    emitter: Optional[EventEmitter] = None
    registry: Optional[CollectorRegistry] = None


def _redact_secret(value: Optional[str], visible_chars: int = 4) -> str:
    """Redact a secret value, showing only the first few characters."""
    if not value:
        return "(unset)"
    if len(value) <= visible_chars:
        return "*" * len(value)
    return value[:visible_chars] + "*" * (len(value) - visible_chars)


def _log_configuration(settings: OrchestratorSettings) -> None:
    """Log configuration values with secrets redacted."""
    logger.info("Orchestrator configuration:")
    logger.info(f"  GitHub Base URL: {settings.github_base_url}")
    logger.info(f"  GitHub Token: {_redact_secret(settings.github_token)}")
    logger.info(
        f"  GitHub Webhook Secret: {_redact_secret(settings.github_webhook_secret)}"
    )
    logger.info(f"  Target Repository: {settings.target_owner}/{settings.target_repo}")
    logger.info(f"  Base Branch: {settings.base_branch}")
    logger.info(f"  Planner LLM URL: {settings.planner_llm_url or '(dry-run)'}")
    logger.info(f"  Planner LLM Model: {settings.planner_llm_model}")
    logger.info(f"  Executor LLM URL: {settings.executor_llm_url or '(dry-run)'}")
    logger.info(f"  Executor LLM Model: {settings.executor_llm_model}")
    logger.info(f"  Dry Run: {settings.dry_run}")
    logger.info(f"  Database URL: {_redact_secret(settings.database_url)}")
    logger.info(f"  Autonomy Mode: {settings.autonomy_mode.value}")
    logger.info(f"  Auto Merge Enabled: {settings.auto_merge_enabled}")
    logger.info(f"  Required Checks: {settings.required_checks_list or '(all)'}")
    logger.info(f"  Host: {settings.host}")
    logger.info(f"  Port: {settings.port}")


async def build_container(settings: OrchestratorSettings) -> AppContainer:
    """Wire all orchestrator dependencies from settings."""
    repository: WorkflowRepository
    if settings.database_url:
        postgres = PostgresWorkflowRepository(settings.database_url)
        await postgres.connect()
        repository = postgres
    else:
        logger.warning("No database_url configured, workflow state is kept in memory")
        repository = InMemoryWorkflowRepository()

    github = GitHubClient(token=settings.github_token, base_url=settings.github_base_url)
    planner = PlannerAgent(
        llm_url=settings.planner_llm_url,
        model_name=settings.planner_llm_model,
        api_key=settings.planner_llm_api_key,
        dry_run=settings.dry_run,
    )
    executor = ExecutorAgent(
        llm_url=settings.executor_llm_url,
        model_name=settings.executor_llm_model,
        api_key=settings.executor_llm_api_key,
        dry_run=settings.dry_run,
    )
    autonomy = AutonomyManager(settings.autonomy_mode)
    metrics = get_metrics()
    emitter = CompositeEventEmitter([LoggingEventEmitter(), MetricsEventEmitter(metrics)])

    orchestrator = PipelineOrchestrator(
        repository=repository,
        github=github,
        planner=planner,
        executor=executor,
        autonomy=autonomy,
        default_repo=RepoRef(owner=settings.target_owner, repo=settings.target_repo),
        base_branch=settings.base_branch,
        required_checks=settings.required_checks_list,
        auto_merge_enabled=settings.auto_merge_enabled,
        metrics=metrics,
        emitter=emitter,
    )

    return AppContainer(
        webhook_secret=settings.github_webhook_secret,
        repository=repository,
        github=github,
        autonomy=autonomy,
        orchestrator=orchestrator,
        intake=EventIntake(repository, orchestrator),
        metrics=metrics,
        emitter=emitter,
    )


async def shutdown_container(wired: AppContainer) -> None:
    """Finish queued runs, then release clients, emitters and the pool."""
    await wired.orchestrator.join()
    await wired.github.close()
    if wired.emitter is not None:
        await wired.emitter.close()
    if isinstance(wired.repository, PostgresWorkflowRepository):
        await wired.repository.disconnect()


def _error(status_code: int, error: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": error, **extra})


async def _json_body(request: Request) -> Optional[Dict[str, Any]]:
    try:
        body = await request.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


def create_app(container: Optional[AppContainer] = None) -> FastAPI:
    """Build the FastAPI application.

    Args:
        container: Pre-wired dependencies. When omitted, dependencies are
            built from environment settings during lifespan startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if container is not None:
            app.state.container = container
            yield
            return

        logger.info("issueflow starting up...")
        settings = get_settings()
        logging.getLogger().setLevel(settings.log_level)
        _log_configuration(settings)

        app.state.container = await build_container(settings)
        logger.info("issueflow started successfully")

        yield

        logger.info("issueflow shutting down...")
        await shutdown_container(app.state.container)
        logger.info("issueflow shutdown complete")

    app = FastAPI(
        title="issueflow",
        description="Issue-to-merge workflow orchestration for GitHub repositories",
        version="1.0.0",
        lifespan=lifespan,
    )
    if container is not None:
        app.state.container = container

    def _container(request: Request) -> AppContainer:
        return request.app.state.container

    @app.get("/health")
    async def health():
        """Liveness probe endpoint."""
        return {"status": "healthy"}

    @app.get("/ready")
    async def ready(request: Request):
        """Readiness probe: 503 until the repository answers.

        GitHub reachability is reported but does not affect the status code.
        """
        wired = _container(request)
        try:
            database_ok = await wired.repository.health_check()
        except Exception as e:
            logger.warning("Readiness check failed", extra={"error": str(e)})
            database_ok = False

        try:
            github_ok = await wired.github.health_check()
        except Exception as e:
            logger.warning("GitHub health check failed", extra={"error": str(e)})
            github_ok = False

        content = {
            "status": "ready" if database_ok else "not_ready",
            "dependencies": {
                "database": "healthy" if database_ok else "unhealthy",
                "github": "healthy" if github_ok else "unhealthy",
            },
            "queue_length": wired.orchestrator.queue_length,
        }
        return JSONResponse(status_code=200 if database_ok else 503, content=content)

    @app.get("/metrics", response_class=PlainTextResponse)
    async def metrics(request: Request):
        """Prometheus metrics endpoint."""
        output = generate_metrics_output(_container(request).registry)
        return PlainTextResponse(output.decode("utf-8"))

    @app.post("/webhooks/github")
    async def github_webhook(request: Request):
        """Verify, filter and admit a GitHub webhook delivery."""
        wired = _container(request)
        body = await request.body()
        event_type = request.headers.get("x-github-event", "")
        delivery_id = request.headers.get("x-github-delivery", "")
        signature = request.headers.get("x-hub-signature-256")

        def outcome(status_code: int, result: str, content: Dict[str, Any]) -> JSONResponse:
            wired.metrics.record_webhook(event_type, result)
            return JSONResponse(status_code=status_code, content=content)

        if not signature:
            return outcome(401, "missing_signature", {"error": "missing_signature"})

        if not event_type or not delivery_id or not body:
            return outcome(
                400,
                "missing_required_headers_or_body",
                {"error": "missing_required_headers_or_body"},
            )

        if not verify_signature(wired.webhook_secret, body, signature):
            logger.warning(
                "Rejected webhook with invalid signature",
                extra={"delivery_id": delivery_id, "event_type": event_type},
            )
            return outcome(401, "invalid_signature", {"error": "invalid_signature"})

        try:
            payload = json.loads(body)
        except ValueError:
            payload = None
        if not isinstance(payload, dict):
            return outcome(400, "invalid_json", {"error": "invalid_json"})

        if not is_actionable(event_type, payload):
            return outcome(
                202,
                "not_actionable",
                {"accepted": False, "reason": "event_not_actionable"},
            )

        if extract_issue_number(payload) is None:
            return outcome(
                202,
                "missing_issue_number",
                {"accepted": False, "reason": "missing_issue_number"},
            )

        envelope = build_envelope(event_type, delivery_id, payload)
        admission = await wired.intake.admit(envelope)
        if not admission.inserted:
            return outcome(
                200,
                "duplicate",
                {"accepted": False, "duplicate": True, "eventId": admission.event_id},
            )

        return outcome(202, "accepted", {"accepted": True, "eventId": admission.event_id})

    @app.get("/api/v1/autonomy/status")
    async def autonomy_status(request: Request):
        return _container(request).autonomy.status()

    @app.post("/api/v1/autonomy/mode")
    async def set_autonomy_mode(request: Request):
        wired = _container(request)
        caller = caller_from_headers(request.headers)
        if caller is None:
            return _error(401, "unauthenticated")
        if not caller.has_any(Role.ADMIN):
            return _error(403, "forbidden", required_roles=[Role.ADMIN.value])

        body = await _json_body(request)
        if body is None:
            return _error(400, "invalid_json")

        try:
            to_mode = AutonomyMode(body.get("mode"))
        except ValueError:
            return _error(
                400, "invalid_mode", allowed=[mode.value for mode in AutonomyMode]
            )

        reason = body.get("reason")
        if not isinstance(reason, str) or not reason.strip():
            return _error(400, "reason_required")

        try:
            record = wired.autonomy.transition(to_mode, caller.login, reason)
        except AutonomyTransitionError as e:
            return _error(
                409,
                "invalid_transition",
                **{
                    "from": e.from_mode.value,
                    "to": e.to_mode.value,
                    "allowed": [mode.value for mode in e.allowed],
                },
            )

        return {"mode": wired.autonomy.mode.value, "transition": record.to_api_dict()}

    @app.get("/api/runs/{run_id}")
    async def get_run(run_id: str, request: Request):
        view = await _container(request).repository.get_run_view(run_id)
        if view is None:
            return _error(404, "run_not_found")
        return JSONResponse(content=view.model_dump(mode="json"))

    @app.get("/api/tasks/{task_id}")
    async def get_task(task_id: str, request: Request):
        repository = _container(request).repository
        task = await repository.get_task(task_id)
        if task is None:
            return _error(404, "task_not_found")
        attempts = await repository.list_attempts(task_id)
        return JSONResponse(
            content={
                "task": task.model_dump(mode="json"),
                "attempts": [attempt.model_dump(mode="json") for attempt in attempts],
            }
        )

    @app.post("/api/runs/{run_id}/actions")
    async def run_action(run_id: str, request: Request):
        wired = _container(request)
        caller = caller_from_headers(request.headers)
        if caller is None:
            return _error(401, "unauthenticated")

        body = await _json_body(request)
        if body is None:
            return _error(400, "invalid_json")

        reason = body.get("reason")
        if not isinstance(reason, str) or not reason.strip():
            return _error(400, "reason_required")

        action = body.get("action")
        if action not in RUN_ACTIONS:
            return _error(400, "invalid_action", allowed=sorted(RUN_ACTIONS))

        if not caller.has_any(*RUN_ACTIONS[action]):
            return _error(
                403,
                "forbidden_action",
                required_roles=[role.value for role in RUN_ACTIONS[action]],
            )

        run = await wired.repository.get_run(run_id)
        if run is None:
            return _error(404, "run_not_found")
        if run.pr_number is None:
            return _error(409, "run_has_no_pull_request")

        ref = RepoRef.parse(run.repository or "") or wired.orchestrator.default_repo
        await _dispatch_manual_action(
            wired, caller, action, reason.strip(), run_id, run.pr_number, ref
        )

        return {"ok": True, "action": action, "runId": run_id, "prNumber": run.pr_number}

    return app


async def _dispatch_manual_action(
    wired: AppContainer,
    caller: Caller,
    action: str,
    reason: str,
    run_id: str,
    pr_number: int,
    ref: RepoRef,
) -> None:
    body = f"Manual {action} by {caller.login} for run {run_id}.\n\n{reason}"
    if action == "approve":
        await wired.github.approve_pull_request(pr_number, body, ref)
    else:
        await wired.github.request_changes(pr_number, body, ref)

    await wired.repository.add_artifact(
        Artifact(
            workflow_run_id=run_id,
            kind="manual_action",
            content=body,
            metadata={
                "action": action,
                "actor": caller.login,
                "reason": reason,
                "pr_number": pr_number,
            },
        )
    )
    logger.warning(
        "Manual run action applied",
        extra={
            "run_id": run_id,
            "action": action,
            "actor": caller.login,
            "pr_number": pr_number,
        },
    )


app = create_app()


if __name__ == "__main__":
    import uvicorn

    dev_settings = get_settings()
    uvicorn.run(
        "src.issueflow.main:app",
        host=dev_settings.host,
        port=dev_settings.port,
        reload=True,
    )
