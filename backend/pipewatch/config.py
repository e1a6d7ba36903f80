from pydantic import model_validator
from pydantic_settings import BaseSettings

from pipewatch.exceptions import ConfigurationError


class Settings(BaseSettings):
    # Storage
    database_url: str = "sqlite+aiosqlite:///./data/pipewatch.db"
    storage_max_records: int = 1000
    cleanup_interval_seconds: int = 86400

    # App
    environment: str = "development"
    log_level: str = "INFO"
    log_json: bool = False
    allowed_origins: str = "http://localhost:3000,http://localhost:8080"

    # CI provider
    ci_api_url: str = "https://api.github.com"
    ci_token: str = ""
    ci_owner: str = ""
    ci_repo: str = ""
    ci_workflow: str = "deploy-gh-pages.yml"
    ci_ref: str = "main"
    ci_request_timeout_seconds: float = 30.0

    # Content platform relay
    webhook_secret: str = ""

    # Polling intervals (seconds)
    git_poll_interval: float = 30.0
    marker_poll_interval: float = 30.0
    ci_poll_interval: float = 60.0
    workflow_poll_interval: float = 30.0
    workflow_max_wait_seconds: float = 1800.0
    maintenance_interval: float = 30.0

    # Retry / timeouts (milliseconds)
    retry_attempts: int = 3
    monitoring_timeout_ms: int = 2100000
    webhook_timeout_ms: int = 30000
    job_duration_threshold_ms: int = 300000

    # Alerts
    alert_error_rate: float = 10.0
    alert_pipeline_duration_ms: int = 600000
    alert_build_time_ms: int = 600000
    alert_cooldown_seconds: int = 300
    alert_site_response_ms: int = 3000

    # Post-deploy site check (disabled when site_url is empty)
    site_url: str = ""
    site_check_timeout_seconds: float = 30.0

    # Alert notifications (each channel disabled when its URL is empty)
    alert_webhook_url: str = ""
    slack_webhook_url: str = ""
    notification_timeout_seconds: float = 5.0

    # Trigger detection
    repo_path: str = "."
    marker_files: str = "static/deployment-timestamp.txt,static/build-info.txt,static/CACHE-BUSTER.txt"
    marker_window_seconds: int = 300

    # Monitors
    enable_git_monitor: bool = True
    enable_marker_monitor: bool = True
    enable_ci_monitor: bool = True
    max_active_runs: int = 500

    model_config = {"env_file": ".env", "extra": "ignore"}

    @property
    def marker_file_list(self) -> list[str]:
        return [f.strip() for f in self.marker_files.split(",") if f.strip()]

    @model_validator(mode="after")
    def _validate_production(self):
        if self.environment == "production":
            if not self.ci_token:
                raise ValueError("Production requires CI_TOKEN")
            if not self.webhook_secret:
                raise ValueError("Production requires WEBHOOK_SECRET")
            if not (self.ci_owner and self.ci_repo):
                raise ValueError("Production requires CI_OWNER and CI_REPO")
        return self

    def require_secrets(self) -> None:
        """Raise ConfigurationError when a secret needed at runtime is missing."""
        missing = [
            name for name, value in (
                ("CI_TOKEN", self.ci_token),
                ("WEBHOOK_SECRET", self.webhook_secret),
                ("CI_OWNER", self.ci_owner),
                ("CI_REPO", self.ci_repo),
            )
            if not value
        ]
        if missing:
            raise ConfigurationError(
                f"Missing required configuration: {', '.join(missing)}"
            )


settings = Settings()
