"""Application configuration"""

from typing import Dict, Literal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings

    Constructed once by the process entry point and handed to every component.
    """

    # Database
    database_url: str = "sqlite:///./issue_relay.db"

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    # Logging
    log_level: str = "INFO"

    # System A (GitLab)
    system_a_url: str = "https://gitlab.com"
    system_a_token: str = ""
    system_a_project: str = ""

    # System B (Jira Cloud)
    system_b_url: str = ""
    system_b_email: str = ""
    system_b_token: str = ""
    system_b_project_key: str = ""
    system_b_issue_type: str = "Task"
    # How Jira assignees are compared with GitLab usernames
    system_b_assignee_identity: Literal["email", "display_name"] = "email"

    # Key-value store used for deduplication claims
    kv_backend: Literal["sql", "redis", "memory"] = "sql"
    redis_url: str = "redis://localhost:6379/0"
    dedup_ttl_seconds: int = 300

    # Queue
    queue_max_attempts: int = 3
    queue_backoff_base_ms: int = 5000
    queue_backoff_max_ms: int = 300_000
    queue_lease_seconds: int = 30
    queue_max_stalled: int = 1
    queue_completed_retention_hours: int = 24
    queue_failed_retention_days: int = 7
    queue_backlog_threshold: int = 1000
    # Comment events can race the create job of their parent issue; give them a few tries.
    mapping_not_found_max_attempts: int = 3

    # Workers
    worker_concurrency: int = 10
    rate_limit_max_jobs: int = 10
    rate_limit_window_ms: int = 1000
    worker_poll_interval_ms: int = 500

    # Remote calls
    remote_call_timeout_seconds: float = 30.0

    # Conflicts
    conflict_strategy: Literal["a-wins", "b-wins", "manual", "last-write-wins"] = "last-write-wins"
    conflict_tie_breaker: Literal["a-wins", "b-wins"] = "a-wins"
    # A label -> B label. Given as JSON in the environment, e.g. LABEL_MAPPING='{"bug": "Bug"}'
    label_mapping: Dict[str, str] = {}
    # A open-state -> B status name
    status_mapping: Dict[str, str] = {"open": "To Do", "closed": "Done"}
    archive_label: str = "archived"

    # Metrics
    metrics_enabled: bool = True

    class Config:
        env_file = ".env"
        case_sensitive = False
        frozen = True
