"""Orchestrator configuration using pydantic-settings.

This module defines the OrchestratorSettings class that reads configuration
from environment variables with the ISSUEFLOW_ prefix. Required fields
must be set for the service to start.
"""

from typing import List, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from src.issueflow.autonomy.models import AutonomyMode


DEFAULT_MODEL = "Qwen/Qwen2.5-Coder-14B-Instruct-GPTQ-Int4"


def _validate_http_url(name: str, v: Optional[str]) -> Optional[str]:
    if v is None or not v.strip():
        return None
    if not v.startswith(("http://", "https://")):
        raise ValueError(f"{name} must start with http:// or https://")
    return v


class OrchestratorSettings(BaseSettings):
    """Orchestrator configuration from environment variables.

    All environment variables are prefixed with ISSUEFLOW_ (e.g.,
    ISSUEFLOW_GITHUB_TOKEN).

    Required fields:
    - github_webhook_secret: Secret for verifying webhook signatures
    - github_token: GitHub API token for reviews, comments and merges
    - target_owner / target_repo: Repository used when an event does not
      name one

    Leaving a model URL unset runs that agent in dry-run mode. Leaving
    database_url unset keeps workflow state in memory.
    """

    model_config = SettingsConfigDict(
        env_prefix="ISSUEFLOW_",
        case_sensitive=False,
    )

    # -------------------------------------------------------------------------
    # GitHub Configuration
    # -------------------------------------------------------------------------
    github_webhook_secret: str

    github_token: str

    # Base URL for GitHub API (supports GitHub Enterprise)
    github_base_url: str = "https://api.github.com"

    target_owner: str

    target_repo: str

    base_branch: str = "main"

    # -------------------------------------------------------------------------
    # Model Configuration
    # -------------------------------------------------------------------------
    planner_llm_url: Optional[str] = None

    planner_llm_model: str = DEFAULT_MODEL

    planner_llm_api_key: Optional[str] = None

    executor_llm_url: Optional[str] = None

    executor_llm_model: str = DEFAULT_MODEL

    executor_llm_api_key: Optional[str] = None

    # Forces both agents into dry-run regardless of configured URLs
    dry_run: bool = False

    # -------------------------------------------------------------------------
    # Workflow Configuration
    # -------------------------------------------------------------------------
    database_url: Optional[str] = None

    autonomy_mode: AutonomyMode = AutonomyMode.PR_ONLY

    auto_merge_enabled: bool = True

    # Comma-separated check run names; empty means every check run must pass
    required_checks: str = ""

    # -------------------------------------------------------------------------
    # Server Configuration
    # -------------------------------------------------------------------------
    host: str = "0.0.0.0"

    port: int = 8080

    log_level: str = "INFO"

    @property
    def required_checks_list(self) -> List[str]:
        return [name.strip() for name in self.required_checks.split(",") if name.strip()]

    # -------------------------------------------------------------------------
    # Validators
    # -------------------------------------------------------------------------
    @field_validator("github_webhook_secret")
    @classmethod
    def validate_webhook_secret(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("github_webhook_secret cannot be empty")
        return v

    @field_validator("github_token")
    @classmethod
    def validate_github_token(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("github_token cannot be empty")
        return v

    @field_validator("target_owner", "target_repo")
    @classmethod
    def validate_target(cls, v: str) -> str:
        if not v or not v.strip() or "/" in v:
            raise ValueError("target owner and repo must be non-empty names without '/'")
        return v.strip()

    @field_validator("planner_llm_url")
    @classmethod
    def validate_planner_url(cls, v: Optional[str]) -> Optional[str]:
        return _validate_http_url("planner_llm_url", v)

    @field_validator("executor_llm_url")
    @classmethod
    def validate_executor_url(cls, v: Optional[str]) -> Optional[str]:
        return _validate_http_url("executor_llm_url", v)

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        if not v.startswith(("postgresql://", "postgres://")):
            raise ValueError(
                "database_url must start with postgresql:// or postgres://"
            )
        return v

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        if not 1 <= v <= 65535:
            raise ValueError("port must be between 1 and 65535")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.strip().upper()
        if level not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError("log_level must be a standard logging level name")
        return level


def get_settings() -> OrchestratorSettings:
    """Create OrchestratorSettings from the environment.

    Raises:
        pydantic.ValidationError: If required fields are missing or invalid.
    """
    return OrchestratorSettings()
