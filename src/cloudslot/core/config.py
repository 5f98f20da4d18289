"""Configuration management for cloudslot."""

from typing import Optional

from pydantic import Field, HttpUrl, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


SNAPSHOT_ERROR_POLICIES = ("ignore", "log", "raise")


class Settings(BaseSettings):
    """Orchestrator configuration settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage used to stage local packages. Unset means local packages are rejected.
    default_storage_account: Optional[str] = Field(
        None,
        description="Bucket that receives transient package uploads",
    )
    package_key_prefix: str = Field("packages/", description="Key prefix for transient uploads")

    # Management endpoint
    management_url: Optional[HttpUrl] = Field(None, description="Management API base URL")
    management_token: Optional[str] = Field(None, description="Bearer token for the management API")
    request_timeout_seconds: float = Field(60.0, description="Per-request timeout")

    # Retry budget for remote calls
    retry_max_attempts: int = Field(3, description="Attempts per remote call")
    retry_backoff_base: float = Field(0.5, description="First backoff delay in seconds")
    retry_max_backoff: float = Field(30.0, description="Upper bound for a single backoff delay")

    # Snapshot fetch failures other than not-found
    snapshot_error_policy: str = Field("log", description="ignore | log | raise")
    verbose: bool = Field(False, description="Log diagnostics for expected conditions")

    # AWS configuration
    aws_region: str = Field("us-east-1")
    s3_endpoint_url: Optional[HttpUrl] = Field(None)

    # Observability
    log_level: str = Field("INFO")
    log_format: str = Field("json")

    @field_validator("snapshot_error_policy")
    @classmethod
    def check_snapshot_error_policy(cls, v: str) -> str:
        policy = v.strip().lower()
        if policy not in SNAPSHOT_ERROR_POLICIES:
            raise ValueError(f"snapshot_error_policy must be one of {', '.join(SNAPSHOT_ERROR_POLICIES)}")
        return policy

    @field_validator("retry_max_attempts")
    @classmethod
    def check_retry_attempts(cls, v: int) -> int:
        if v < 1:
            raise ValueError("retry_max_attempts must be at least 1")
        return v

    @field_validator("retry_backoff_base", "retry_max_backoff", "request_timeout_seconds")
    @classmethod
    def check_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("must not be negative")
        return v

    @field_validator("default_storage_account", "management_token", mode="before")
    @classmethod
    def blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        if isinstance(v, str) and not v.strip():
            return None
        return v
