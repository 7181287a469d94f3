"""Configuration settings for Job-Sync."""

from enum import Enum
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ContextRole(str, Enum):
    """Role of the execution context this process runs as."""

    BACKGROUND = "background"
    FOREGROUND = "foreground"


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Sync-specific tuning lives in ``SyncConfig`` (``SYNC_`` prefix); these
    are the process-wide options every context reads first.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    context_role: ContextRole = Field(
        default=ContextRole.FOREGROUND,
        description="Execution context role: 'background' daemon or 'foreground' caller",
    )

    data_dir: Path = Field(
        default=Path("./data"),
        description="Directory holding the local store files",
    )

    log_level: str = Field(
        default="INFO",
        description="Logging level: DEBUG, INFO, WARNING, ERROR",
    )
    log_file: Path | None = Field(
        default=None,
        description="Optional log file shared by all contexts",
    )

    @field_validator("context_role", mode="before")
    @classmethod
    def validate_context_role(cls, v: str | ContextRole) -> ContextRole:
        """Convert string role to ContextRole enum."""
        if isinstance(v, ContextRole):
            return v
        if isinstance(v, str):
            try:
                return ContextRole(v.lower().strip())
            except ValueError:
                raise ValueError(
                    f"Invalid context role: {v}. Must be 'background' or 'foreground'"
                ) from None
        raise ValueError(f"Invalid context role type: {type(v)}")

    @field_validator("log_level", mode="before")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is a known level."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v.upper()


# Singleton instance for easy import
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get the application settings singleton."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Reset the settings singleton (useful for testing)."""
    global _settings
    _settings = None
