"""Configuration management for Containers Up."""

from functools import lru_cache

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    environment: str = Field(default="production", description="Environment name")
    log_level: str = Field(default="INFO", description="Logging level")
    log_to_file: bool = Field(default=False, description="Also write logs to a rotating file")
    log_file_path: str = Field(default="logs/containers-up.log", description="Log file path")

    # Storage
    database_url: SecretStr | None = Field(
        default=None, description="PostgreSQL DSN; in-memory storage when unset"
    )
    hosts_file: str | None = Field(
        default=None, description="JSON list of hosts for in-memory storage"
    )

    # Webhook server
    webhook_host: str = Field(default="0.0.0.0", description="Webhook server bind address")  # nosec B104
    webhook_port: int = Field(default=3001, description="Webhook server port")
    require_compose_label: bool = Field(
        default=True, description="Require the docker_compose label on dependabot PRs"
    )

    # Admission / queueing
    max_queue_time_mins: int = Field(
        default=10, ge=0, description="Minutes a job waits for a running job on the same host"
    )
    queue_poll_seconds: float = Field(
        default=1.0, gt=0, description="Polling interval while a job is queued"
    )

    # Pull and restart
    compose_filename: str = Field(default="compose.yml", description="Compose file per folder")
    pull_before_restart: bool = Field(
        default=True, description="Pull referenced images before restarting a compose unit"
    )
    cleanup_after_restart: bool = Field(
        default=True, description="Prune unused images on the host after a restart"
    )
    self_compose_marker: str = Field(
        default="containers-up",
        description="Compose path fragment identifying this app's own unit (restarted detached)",
    )
    command_timeout_seconds: int = Field(
        default=900, description="Ceiling for a single local or SSH command"
    )
    ssh_key_dir: str = Field(default="~/.ssh", description="Directory holding per-host SSH keys")

    # Commit squashing
    squash_update_message: str = Field(
        default="Update dependencies", description="Marker carried by squashed commits"
    )
    squash_days_ago: int = Field(
        default=5, ge=0, description="Age after which a previous squash commit is left alone"
    )
    squash_max_update_commits: int = Field(
        default=5, ge=1, description="Maximum consecutive squash commits kept on the branch"
    )
    squash_delay_minutes: float = Field(
        default=15, ge=0, description="Debounce delay before squashing after a restart"
    )

    # Update checks
    update_check_interval_minutes: int = Field(
        default=0, ge=0, description="Periodic scan interval; 0 disables periodic scans"
    )
    registry_concurrency: int = Field(default=2, ge=1, description="Parallel registry lookups")
    registry_timeout_seconds: float = Field(default=30, description="Registry HTTP timeout")

    # Registry credentials
    docker_username: str | None = Field(default=None, description="Docker Hub username")
    docker_token: SecretStr | None = Field(default=None, description="Docker Hub token")
    ghcr_username: str | None = Field(default=None, description="GitHub registry username")
    ghcr_token: SecretStr | None = Field(default=None, description="GitHub registry token")
    container_registry_username: str | None = Field(
        default=None, description="Fallback registry username"
    )
    container_registry_token: SecretStr | None = Field(
        default=None, description="Fallback registry token"
    )

    # Notifications
    notify_url: str | None = Field(default=None, description="JSON webhook for notifications")
    app_url: str | None = Field(default=None, description="Dashboard URL linked in notifications")

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment.lower() == "development"

    def registry_credentials(self, registry: str) -> tuple[str, str] | None:
        """Return the (username, token) pair to use for *registry*, if any."""
        username: str | None = None
        token: SecretStr | None = None

        if "docker.io" in registry:
            username, token = self.docker_username, self.docker_token
        elif "ghcr.io" in registry:
            username, token = self.ghcr_username, self.ghcr_token

        if token is None:
            username, token = self.container_registry_username, self.container_registry_token

        if not username or token is None:
            return None
        return username, token.get_secret_value()


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
