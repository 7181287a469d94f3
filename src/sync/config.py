"""Configuration settings for the sync engine."""

import json
from pathlib import Path
from typing import Annotated

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from src.sync.models import EndpointCandidate


class SyncConfig(BaseSettings):
    """Sync engine configuration.

    All settings have sensible defaults and can be overridden via
    environment variables with SYNC_ prefix or a .env file.

    Attributes:
        endpoints: Remote base addresses; list order is probing priority.
        probe_timeout: Ceiling in seconds for one health check.
        probe_interval_ms: Background re-probe period.
        reconcile_interval_ms: Background reconciliation period.
        poll_fallback_ms: Change-detection polling period.
        submit_timeout: Ceiling in seconds for one submission attempt.
        max_attempts: Submission attempts per record per pass.
        retry_delay: Fixed pause in seconds between attempts.
        failure_threshold: Consecutive failed submissions before re-probing.
        syncing_stale_after: Seconds before an abandoned ``syncing`` claim
            may be taken over.
        store_db_path: SQLite file of the primary (extension-scoped) tier;
            unset means ``sync_store.db`` in the application data directory.
        store_json_path: JSON file of the secondary (page-scoped) tier;
            unset means ``sync_store.json`` in the data directory.
        store_json_enabled: False drops the JSON tier entirely.
        store_json_quota_bytes: Size limit of the JSON tier.
    """

    model_config = SettingsConfigDict(
        env_prefix="SYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        enable_decoding=False,
        extra="ignore",
    )

    # Remote endpoints
    endpoints: list[str] = Field(
        default_factory=lambda: ["http://localhost:3001"],
        description="Remote base URLs in priority order (JSON list or comma-separated)",
    )
    probe_timeout: Annotated[float, Field(gt=0)] = Field(
        default=5.0,
        description="Health check timeout per candidate in seconds",
    )

    # Background intervals
    probe_interval_ms: Annotated[int, Field(gt=0)] = Field(
        default=30 * 60 * 1000,
        description="Re-probe interval in milliseconds",
    )
    reconcile_interval_ms: Annotated[int, Field(gt=0)] = Field(
        default=5 * 60 * 1000,
        description="Reconciliation interval in milliseconds",
    )
    poll_fallback_ms: Annotated[int, Field(gt=0)] = Field(
        default=2000,
        description="Change-detection polling interval in milliseconds",
    )

    # Submission
    submit_timeout: Annotated[float, Field(gt=0)] = Field(
        default=10.0,
        description="Timeout per submission attempt in seconds",
    )
    max_attempts: Annotated[int, Field(gt=0)] = Field(
        default=3,
        description="Submission attempts per record before marking it failed",
    )
    retry_delay: Annotated[float, Field(ge=0)] = Field(
        default=1.0,
        description="Fixed delay between submission attempts in seconds",
    )
    failure_threshold: Annotated[int, Field(gt=0)] = Field(
        default=3,
        description="Consecutive failed submissions that trigger a re-probe",
    )
    syncing_stale_after: Annotated[float, Field(gt=0)] = Field(
        default=300.0,
        description="Seconds after which an unfinished 'syncing' claim is retried",
    )

    # Local store tiers
    store_db_path: Path | None = Field(
        default=None,
        description="Path to the SQLite primary store (default under data_dir)",
    )
    store_json_path: Path | None = Field(
        default=None,
        description="Path to the JSON fallback store (default under data_dir)",
    )
    store_json_enabled: bool = Field(
        default=True,
        description="Whether the JSON fallback tier is used at all",
    )
    store_json_quota_bytes: int | None = Field(
        default=5 * 1024 * 1024,
        description="Size limit of the JSON fallback store in bytes",
    )

    @field_validator("endpoints", mode="before")
    @classmethod
    def parse_endpoints(cls, v: object) -> list[str]:
        """Parse SYNC_ENDPOINTS from env-friendly formats.

        Supports:
        - JSON list: ["http://localhost:3001", "https://tracker.example.com"]
        - Comma-separated: http://localhost:3001, https://tracker.example.com
        """
        if v is None:
            return []
        if isinstance(v, list):
            return [str(item).strip() for item in v if str(item).strip()]
        if not isinstance(v, str):
            raise ValueError("endpoints must be a list or a string")

        raw = v.strip()
        if raw.startswith("["):
            try:
                parsed = json.loads(raw)
            except json.JSONDecodeError as exc:
                raise ValueError(f"endpoints is not valid JSON: {exc}") from exc
            if not isinstance(parsed, list):
                raise ValueError("endpoints JSON must be a list")
            return [str(item).strip() for item in parsed if str(item).strip()]
        return [item.strip() for item in raw.replace("\n", ",").split(",") if item.strip()]

    @field_validator("endpoints")
    @classmethod
    def validate_endpoints(cls, v: list[str]) -> list[str]:
        for address in v:
            if not address.startswith(("http://", "https://")):
                raise ValueError(f"Endpoint must be an http(s) URL: {address}")
        return v

    def endpoint_candidates(self) -> list[EndpointCandidate]:
        """Endpoint candidates with priority taken from list order."""
        return [
            EndpointCandidate(priority=index, address=address.rstrip("/"))
            for index, address in enumerate(self.endpoints)
        ]

    def store_paths(self, data_dir: Path) -> tuple[Path, Path | None]:
        """Resolve the tier files, defaulting to ``sync_store.*`` in ``data_dir``.

        The JSON path is None when that tier is disabled.
        """
        db_path = self.store_db_path or data_dir / "sync_store.db"
        if not self.store_json_enabled:
            return db_path, None
        return db_path, self.store_json_path or data_dir / "sync_store.json"


# Singleton instance for easy import
_sync_config: SyncConfig | None = None


def get_sync_config() -> SyncConfig:
    """Get the sync configuration singleton."""
    global _sync_config
    if _sync_config is None:
        _sync_config = SyncConfig()
    return _sync_config


def reset_sync_config() -> None:
    """Reset the sync configuration singleton (useful for testing)."""
    global _sync_config
    _sync_config = None
