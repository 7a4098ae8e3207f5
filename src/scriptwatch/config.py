"""Configuration using pydantic-settings.

Values come from ``SCRIPTWATCH_*`` environment variables or a ``.env``
file in the working directory. CLI flags override them per invocation.
"""

from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from scriptwatch.poller import (
    DEFAULT_BACKOFF_EXPONENT,
    DEFAULT_INITIAL_DELAY_SECONDS,
    DEFAULT_MATCH_TOLERANCE_MS,
    DEFAULT_MAX_DELAY_SECONDS,
    DEFAULT_TIMEOUT_MS,
    PollOptions,
)


class Settings(BaseSettings):
    """Settings loaded from environment variables.

    Environment variables (all optional, prefixed with SCRIPTWATCH_):
    - SCRIPT_ID: Apps Script project to run functions in
    - GCP_PROJECT_ID: Cloud project whose logs hold the script's entries
    - ACCESS_TOKEN: Bearer token; skips token.json when set
    - TOKEN_PATH: Authorized-user token file
    """

    model_config = SettingsConfigDict(
        env_prefix="SCRIPTWATCH_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Target project
    script_id: str = ""
    gcp_project_id: str = ""
    function: str = "testFontSwap"
    dev_mode: bool = True

    # Credentials
    access_token: str = ""
    token_path: str = "token.json"

    # Polling
    initial_delay_seconds: float = DEFAULT_INITIAL_DELAY_SECONDS
    max_delay_seconds: float = DEFAULT_MAX_DELAY_SECONDS
    backoff_exponent: float = DEFAULT_BACKOFF_EXPONENT
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    match_tolerance_ms: int = DEFAULT_MATCH_TOLERANCE_MS

    # Logging
    log_level: str = "INFO"
    json_logs: bool = False

    def poll_options(self, **overrides: float) -> PollOptions:
        """Build PollOptions from settings, with optional per-call overrides."""
        values = {
            "initial_delay_seconds": self.initial_delay_seconds,
            "max_delay_seconds": self.max_delay_seconds,
            "backoff_exponent": self.backoff_exponent,
            "timeout_ms": self.timeout_ms,
            "match_tolerance_ms": self.match_tolerance_ms,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return PollOptions(**values)

    def require(self, *names: str) -> None:
        """Raise ValueError listing any of ``names`` that are unset."""
        missing = [n for n in names if not getattr(self, n)]
        if missing:
            env_names = ", ".join(f"SCRIPTWATCH_{n.upper()}" for n in missing)
            raise ValueError(f"Missing configuration: {env_names}")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is one loguru knows."""
        allowed = {"TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"}
        upper = v.upper()
        if upper not in allowed:
            raise ValueError(f"log_level must be one of: {sorted(allowed)}")
        return upper

    @field_validator("timeout_ms", "match_tolerance_ms")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must not be negative")
        return v


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Settings are loaded once and cached for the lifetime of the process.
    """
    return Settings()
