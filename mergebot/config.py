import os
from typing import Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict

from .errors import ConfigurationError


def _truthy(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    """Immutable run configuration, built once by the entry point and passed down."""

    model_config = ConfigDict(frozen=True)

    # GitHub / workflow inputs
    github_token: str
    repository: str  # owner/repo
    action: str = ""
    trigger_branch: str = "merge-queue"
    base_branch: str = "main"
    queue_url: str = ""
    pr_number: Optional[int] = None
    sha: str = ""
    event_path: str = ""
    status_context: str = "automerge"
    sync_base_branch: bool = False

    # General
    github_api_url: str = "https://api.github.com"
    github_graphql_url: str = "https://api.github.com/graphql"
    log_level: str = "INFO"
    service_version: str = "dev"
    pushgateway_url: str = ""

    # Redis config (per-PR merge lock)
    redis_url: str = "redis://localhost:6379/0"
    redis_namespace: str = "automerge"
    redis_lock_ttl_seconds: int = 120

    # Retry/backoff and eventual consistency
    backoff_base_seconds: float = 1.0
    backoff_factor: float = 2.0
    max_backoff_seconds: float = 16.0
    max_attempts: int = 3
    consistency_timeout_seconds: float = 60.0
    # CI on a head produced by a base sync
    checks_timeout_seconds: float = 1800.0

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ

        def get(name: str, default: str = "") -> str:
            return (env.get(name) or default).strip()

        token = get("INPUT_GITHUB_TOKEN") or get("GITHUB_TOKEN")
        if not token:
            raise ConfigurationError("A GitHub token is required (INPUT_GITHUB_TOKEN or GITHUB_TOKEN)")
        repository = get("INPUT_REPOSITORY") or get("GITHUB_REPOSITORY")
        if repository.count("/") != 1:
            raise ConfigurationError(f"Repository must look like owner/repo, got {repository!r}")

        pr_raw = get("INPUT_PR_NUMBER")
        pr_number = None
        if pr_raw:
            try:
                pr_number = int(pr_raw)
            except ValueError:
                raise ConfigurationError(f"INPUT_PR_NUMBER must be an integer, got {pr_raw!r}") from None

        api_url = get("GITHUB_API_URL", "https://api.github.com").rstrip("/")
        try:
            return cls(
                github_token=token,
                repository=repository,
                action=get("INPUT_ACTION"),
                trigger_branch=get("INPUT_TRIGGER_BRANCH", "merge-queue"),
                base_branch=get("INPUT_BASE_BRANCH", "main"),
                queue_url=get("INPUT_QUEUE_URL"),
                pr_number=pr_number,
                sha=get("GITHUB_SHA"),
                event_path=get("GITHUB_EVENT_PATH"),
                status_context=get("INPUT_STATUS_CONTEXT", "automerge"),
                sync_base_branch=_truthy(get("INPUT_SYNC_BASE_BRANCH", "false")),
                github_api_url=api_url,
                github_graphql_url=get("GITHUB_GRAPHQL_URL", f"{api_url}/graphql"),
                log_level=get("LOG_LEVEL", "INFO").upper(),
                service_version=get("SERVICE_VERSION", "dev"),
                pushgateway_url=get("PUSHGATEWAY_URL"),
                redis_url=get("REDIS_URL", "redis://localhost:6379/0"),
                redis_namespace=get("REDIS_NAMESPACE", "automerge"),
                redis_lock_ttl_seconds=int(get("REDIS_LOCK_TTL_SECONDS", "120")),
                backoff_base_seconds=float(get("BACKOFF_BASE_SECONDS", "1")),
                backoff_factor=float(get("BACKOFF_FACTOR", "2")),
                max_backoff_seconds=float(get("MAX_BACKOFF_SECONDS", "16")),
                max_attempts=int(get("MAX_ATTEMPTS", "3")),
                consistency_timeout_seconds=float(get("CONSISTENCY_TIMEOUT_SECONDS", "60")),
                checks_timeout_seconds=float(get("CHECKS_TIMEOUT_SECONDS", "1800")),
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid numeric setting: {e}") from e

    @property
    def owner_repo(self) -> Tuple[str, str]:
        owner, repo = self.repository.split("/", 1)
        return owner, repo

    def redis_key(self, *parts: str) -> str:
        return f"{self.redis_namespace}:" + ":".join(parts)

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry ``attempt`` (1-based), capped at ``max_backoff_seconds``."""
        return min(
            self.backoff_base_seconds * (self.backoff_factor ** (attempt - 1)),
            self.max_backoff_seconds,
        )
