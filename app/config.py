from pathlib import Path
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .core.recovery.models import AutoRecoveryConfig, RequiredApprovals


BASE_DIR = Path(__file__).resolve().parents[1]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=BASE_DIR / ".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Server Settings
    host: str = Field(default="127.0.0.1", description="Server host")
    port: int = Field(default=8000, description="Server port")
    log_level: str = Field(default="INFO", description="Logging level")

    # Automatic Recovery Policy
    recovery_enabled: bool = Field(default=True, description="Allow unattended recovery executions")
    recovery_max_concurrent: int = Field(
        default=5,
        ge=1,
        description="Maximum tracked non-terminal recovery executions",
    )
    recovery_cooldown_seconds: float = Field(
        default=300.0,
        ge=0,
        description="Minimum seconds between unattended recoveries of the same error",
    )
    recovery_blacklisted_services: List[str] = Field(
        default_factory=list,
        description="Services never recovered unattended",
    )
    recovery_require_approval_high_risk: bool = Field(
        default=True,
        description="High risk strategies need a human to start them",
    )
    recovery_require_approval_production: bool = Field(
        default=True,
        description="Errors from the production environment need a human to start recovery",
    )
    recovery_critical_services: List[str] = Field(
        default_factory=list,
        description="Services whose recovery always needs approval",
    )

    # Execution
    recovery_retry_base_delay_seconds: float = Field(
        default=2.0,
        ge=0,
        description="Backoff before retry n is n times this delay",
    )
    recovery_resolution_window_minutes: int = Field(
        default=10,
        ge=0,
        description="An error counts as resolved when it has not recurred within this window",
    )
    recovery_history_limit: int = Field(
        default=100,
        ge=1,
        le=1000,
        description="Maximum executions returned by history queries",
    )
    recovery_auto_rollback: bool = Field(
        default=False,
        description="Roll back completed rollback-required steps when an execution fails",
    )
    recovery_continue_after_retry_exhaustion: bool = Field(
        default=False,
        description="Keep running later steps after a retryable step exhausts its retries",
    )
    recovery_seed_default_strategies: bool = Field(
        default=True,
        description="Register the built-in strategies on startup",
    )

    # Retention
    recovery_retention_interval_seconds: int = Field(
        default=3600,
        ge=1,
        description="Seconds between retention sweeps of the active set",
    )
    recovery_retention_max_age_seconds: int = Field(
        default=86400,
        ge=0,
        description="Finished executions older than this are evicted from the active set",
    )

    # Health Checks
    recovery_health_check_base_url: str = Field(
        default="",
        description="Base URL for health_check steps; empty disables the built-in handler",
    )
    recovery_health_check_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="HTTP timeout for health_check steps",
    )

    def auto_recovery_config(self) -> AutoRecoveryConfig:
        return AutoRecoveryConfig(
            enabled=self.recovery_enabled,
            max_concurrent_recoveries=self.recovery_max_concurrent,
            cooldown_period=self.recovery_cooldown_seconds,
            blacklisted_services=list(self.recovery_blacklisted_services),
            required_approvals=RequiredApprovals(
                high_risk=self.recovery_require_approval_high_risk,
                production_environment=self.recovery_require_approval_production,
                critical_services=list(self.recovery_critical_services),
            ),
        )


# Global settings instance
settings = Settings()
