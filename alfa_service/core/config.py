"""Application configuration using Pydantic Settings.

This project loads configuration from environment variables.

Optionally, you may point `ENV_FILE` at a local env file (for development).
Relative directories (policies, output, server jar) are resolved against
`WORKSPACE_ROOT`, which is also the workspace root announced to the
language server.
"""

import os
import shlex
from enum import Enum
from pathlib import Path

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class AppEnvironment(str, Enum):
    """Application environment values."""

    LOCAL = "local"
    TEST = "test"
    PROD = "prod"


class Settings(BaseSettings):
    """
    Application settings with type validation.

    Configuration is loaded from environment variables, with support
    for .env files in development.
    """

    model_config = SettingsConfigDict(
        env_file=os.getenv("ENV_FILE") or None, env_prefix="", extra="ignore"
    )

    # Application
    app_env: AppEnvironment = AppEnvironment.LOCAL
    app_name: str = "alfa-compiler-service"
    app_log_level: str = "INFO"

    # Observability
    observability_enabled: bool = True
    observability_structured_logs: bool = True

    # HTTP server
    host: str = "127.0.0.1"
    port: int = Field(default=3000, ge=1, le=65535)
    max_request_size_mb: int = Field(default=1, ge=1)

    # Metrics token for protecting /metrics endpoint (optional outside prod)
    metrics_token: str | None = None

    # Language server process
    # When LANGUAGE_SERVER_COMMAND is set it replaces the java -jar launch
    # entirely (useful for wrappers and test doubles).
    language_server_autostart: bool = True
    language_server_java: str = "java"
    language_server_jar: str = "server/alfa-language-server.jar"
    language_server_debug: bool = True
    language_server_command: str | None = None
    language_server_extra_args: str = ""

    # Shared directories
    workspace_root: str = "."
    policies_dir: str = "server/policies"
    output_dir: str = "src-gen"

    # Settle delays stand in for a completion signal the language server
    # does not expose. They are heuristics, not guarantees.
    initialize_settle_seconds: float = Field(default=2.0, ge=0)
    compile_settle_seconds: float = Field(default=1.0, ge=0)
    upload_settle_seconds: float = Field(default=1.5, ge=0)

    # Bounds
    request_timeout_seconds: float = Field(default=30.0, gt=0)
    compile_timeout_seconds: float = Field(default=30.0, gt=0)
    shutdown_timeout_seconds: float = Field(default=5.0, gt=0)

    # Output handling
    output_read_retries: int = Field(default=1, ge=0)
    xml_indent: int = Field(default=2, ge=0)

    @property
    def workspace_path(self) -> Path:
        """Absolute workspace root."""
        return Path(self.workspace_root).expanduser().resolve()

    def _resolve(self, value: str) -> Path:
        path = Path(value).expanduser()
        if not path.is_absolute():
            path = self.workspace_path / path
        return path

    @property
    def policies_path(self) -> Path:
        """Directory where uploaded policies are written."""
        return self._resolve(self.policies_dir)

    @property
    def output_path(self) -> Path:
        """Directory the language server writes compiled artifacts into."""
        return self._resolve(self.output_dir)

    @property
    def language_server_jar_path(self) -> Path:
        return self._resolve(self.language_server_jar)

    @property
    def language_server_argv(self) -> list[str]:
        """Full command line used to launch the language server."""
        if self.language_server_command:
            argv = shlex.split(self.language_server_command)
        else:
            argv = [self.language_server_java, "-jar", str(self.language_server_jar_path)]
            if self.language_server_debug:
                argv.extend(["-trace", "-log"])
        argv.extend(shlex.split(self.language_server_extra_args))
        return argv

    @property
    def language_server_required_files(self) -> tuple[Path, ...]:
        """Files that must exist before the language server can be spawned."""
        if self.language_server_command:
            return ()
        return (self.language_server_jar_path,)

    @field_validator("app_env", mode="before")
    @classmethod
    def validate_app_env(cls, v: str | AppEnvironment) -> AppEnvironment:
        """Validate and parse app_env to AppEnvironment enum."""
        if isinstance(v, AppEnvironment):
            return v
        try:
            return AppEnvironment(v.lower())
        except ValueError:
            raise ValueError(
                f"app_env must be one of {[e.value for e in AppEnvironment]}, got '{v}'"
            )

    @field_validator("app_log_level")
    @classmethod
    def validate_app_log_level(cls, v: str) -> str:
        """Normalize and validate the log level name."""
        level = v.strip().upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"app_log_level must be one of {list(LOG_LEVELS)}, got '{v}'")
        return level

    @field_validator("language_server_command", mode="before")
    @classmethod
    def empty_command_is_unset(cls, v: str | None) -> str | None:
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @model_validator(mode="after")
    def validate_timing(self) -> "Settings":
        """The cycle bound must leave room for the settle delay."""
        if self.compile_timeout_seconds <= self.compile_settle_seconds:
            raise ValueError(
                "COMPILE_TIMEOUT_SECONDS must be greater than COMPILE_SETTLE_SECONDS "
                f"({self.compile_timeout_seconds} <= {self.compile_settle_seconds})"
            )
        return self

    @model_validator(mode="after")
    def validate_production_settings(self) -> "Settings":
        """
        Validate production-specific settings.

        These checks prevent insecure configurations from being deployed to production.
        """
        if self.app_env == AppEnvironment.PROD:
            if self.observability_enabled and (
                not self.metrics_token or len(self.metrics_token) < 16
            ):
                raise ValueError(
                    "METRICS_TOKEN must be set and at least 16 characters in production"
                )

            # -trace/-log make the language server write verbose logs
            if self.language_server_debug and not self.language_server_command:
                raise ValueError("LANGUAGE_SERVER_DEBUG must be disabled in production")

        return self


settings = Settings()
