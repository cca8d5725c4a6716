"""Configuration for the launchpad deployment engine."""

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings from environment (LAUNCHPAD_* variables or .env)."""

    model_config = SettingsConfigDict(
        env_prefix="LAUNCHPAD_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Logging
    service_name: str = "launchpad"
    log_format: Literal["json", "console"] = "console"
    log_level: str = "INFO"

    # Redis (cache, message bus, worker input)
    redis_url: str = "redis://localhost:6379"
    stream_prefix: str = "launchpad"
    request_stream: str = "launchpad:requests"
    consumer_group: str = "launchpad-workers"
    event_stream_maxlen: int = 10000

    # Filesystem layout
    work_dir: str = "/tmp/launchpad/builds"
    projects_dir: str = "/var/www/projects"
    releases_to_keep: int = Field(default=3, ge=1)
    web_owner: str = "www-data:www-data"

    # Port allocation
    port_backend: Literal["file", "redis"] = "file"
    port_map_file: str = "/var/www/port-map.json"
    base_port: int = 4000
    port_range: int = Field(default=1000, ge=1)

    # Resource caps for builds and containers
    build_memory: str = "512m"
    build_cpus: float = 0.5
    container_memory: str = "512m"
    container_cpus: float = 0.5
    toolchain_image: str = "node:20-alpine"

    # Step timeouts, seconds
    default_timeout: int = 300
    build_timeout: int = 1200
    test_timeout: int = 300

    # Command output cap per stream, bytes
    max_output_bytes: int = 20 * 1024 * 1024
    kill_grace_period: float = 5.0

    # Pipeline
    max_concurrent: int = Field(default=1, ge=1)
    skip_tests: bool = False
    # Record failing tests in test.log and carry on deploying
    allow_test_failures: bool = False
    status_retention_hours: int = 24
    status_cleanup_interval: int = 3600
    status_cache_ttl: int = 86400

    # Health check
    health_check_path: str = "/"
    health_check_interval: float = 2.0
    health_check_attempts: int = 30
    health_check_timeout: float = 5.0

    # Reverse proxy
    base_domain: str = "launchpad.local"
    nginx_sites_available: str = "/etc/nginx/sites-available"
    nginx_sites_enabled: str = "/etc/nginx/sites-enabled"
    nginx_reload_command: str = "nginx -t && nginx -s reload"

    # Container registry and naming
    registry_url: str | None = None
    image_prefix: str = "launchpad"
    container_prefix: str = "lp"

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensure log level is valid."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper_v = v.upper()
        if upper_v not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return upper_v

    def topic(self, name: str) -> str:
        """Stream name for a message bus topic (deployments, build-logs, ...)."""
        return f"{self.stream_prefix}:{name}"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
