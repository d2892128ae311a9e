"""Configuration management for the stack bootstrap engine."""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # AWS Configuration
    aws_region: str = Field(default="us-east-1", description="AWS region for the ambient session")
    aws_profile: Optional[str] = Field(default=None, description="AWS profile name")

    # Cross-account access
    default_target_role: str = Field(
        default="OrganizationAccountAccessRole",
        description="Role assumed in target accounts when no role is requested",
    )
    fallback_target_role: str = Field(
        default="AWSControlTowerExecution",
        description="Role tried when the default target role cannot be assumed",
    )
    role_session_name: str = Field(default="StackBootstrap", description="STS role session name")
    role_session_duration_seconds: int = Field(
        default=3600, description="Lifetime of assumed-role credentials"
    )

    # Stack naming
    stack_name_prefix: str = Field(default="DevRamps", description="Prefix for every stack name")

    # Deployment polling
    poll_interval_seconds: float = Field(default=2.0, description="Seconds between status polls")
    stack_timeout_seconds: float = Field(
        default=600.0, description="Ceiling for a single stack operation"
    )
    change_set_timeout_seconds: float = Field(
        default=300.0, description="Ceiling for a change preview to become ready"
    )

    # Merge strategies
    bucket_policy_account_warning_threshold: int = Field(
        default=50, description="Warn when a merged bucket policy lists more accounts"
    )

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")

    @property
    def target_roles(self) -> list[str]:
        """Role names tried in order when no specific role is requested."""
        return [self.default_target_role, self.fallback_target_role]


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()

