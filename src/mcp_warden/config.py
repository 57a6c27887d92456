"""Configuration management for MCP Warden."""

from __future__ import annotations

from functools import lru_cache
from typing import Self

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_parse_none_str="",
    )

    # Application
    environment: str = Field(default="production", description="Environment name")
    log_level: str = Field(default="INFO", description="Logging level")

    # Logging Configuration
    log_to_file: bool = Field(default=False, description="Enable file-based logging")
    log_directory: str = Field(default="logs", description="Directory for log files")
    log_file_max_bytes: int = Field(
        default=52428800,  # 50MB
        description="Max size per log file before rotation",
    )
    log_file_backup_count: int = Field(
        default=10, description="Number of rotated log files to keep"
    )
    log_file_prefix: str = Field(default="mcp_warden", description="Prefix for log file names")

    # Injection Detector
    detector_threshold: float = Field(
        default=0.7, description="Risk score at or above which a payload is malicious (0.0-1.0)"
    )
    detector_max_context_length: int = Field(
        default=4000, description="Characters scanned per payload; the rest is ignored"
    )
    detector_enable_heuristics: bool = Field(
        default=True, description="Enable the suspicious-term heuristic phase"
    )

    # Reputation Ledger
    # Weights and thresholds carried over from the first deployment; not tuned.
    reputation_weight_response_time: float = Field(default=0.15)
    reputation_weight_error_rate: float = Field(default=0.2)
    reputation_weight_security_incidents: float = Field(default=0.3)
    reputation_weight_uptime: float = Field(default=0.15)
    reputation_weight_community_rating: float = Field(default=0.1)
    reputation_weight_compliance: float = Field(default=0.15)
    reputation_weight_threat_intelligence: float = Field(default=0.2)
    reputation_critical_threshold: int = Field(
        default=300, description="Scores below this are classified critical"
    )
    reputation_warning_threshold: int = Field(
        default=600, description="Scores below this are classified high risk"
    )
    reputation_medium_threshold: int = Field(
        default=800, description="Scores below this are classified medium risk"
    )
    reputation_ema_alpha: float = Field(
        default=0.3, description="Weight given to a new sample in moving averages"
    )
    reputation_history_limit: int = Field(
        default=100, description="Historical scores kept per server"
    )
    reputation_event_history_limit: int = Field(
        default=1000, description="Security events kept in the ledger event log"
    )

    # Sandbox
    sandbox_violation_log_limit: int = Field(
        default=1000, description="Violations kept in memory (oldest evicted)"
    )
    sandbox_history_limit: int = Field(
        default=200, description="Audit history entries kept per sandboxed server"
    )

    # Persistence
    store_backend: str = Field(default="memory", description="Record store: memory or sqlite")
    store_db_path: str = Field(
        default="data/mcp_warden.db", description="Path to the SQLite record store"
    )
    store_timeout_seconds: float = Field(
        default=2.0, description="Timeout for a single persistence call"
    )

    # Reporting
    report_time_range_days: int = Field(default=7, description="Default report window in days")

    @field_validator("detector_threshold", "reputation_ema_alpha")
    @classmethod
    def validate_float_0_1(cls, v: float) -> float:
        """Validate float values are between 0 and 1."""
        if not 0 <= v <= 1:
            raise ValueError(f"Value must be between 0 and 1, got: {v}")
        return v

    @field_validator(
        "detector_max_context_length",
        "reputation_history_limit",
        "reputation_event_history_limit",
        "sandbox_violation_log_limit",
        "sandbox_history_limit",
        "report_time_range_days",
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Validate limits are positive."""
        if v <= 0:
            raise ValueError(f"Value must be positive, got: {v}")
        return v

    @field_validator("store_backend")
    @classmethod
    def validate_store_backend(cls, v: str) -> str:
        """Validate record store backend choice."""
        valid_backends = ["memory", "sqlite"]
        if v not in valid_backends:
            raise ValueError(f"store_backend must be one of {valid_backends}, got: {v}")
        return v

    @field_validator("store_timeout_seconds")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        """Validate the persistence timeout is positive."""
        if v <= 0:
            raise ValueError(f"store_timeout_seconds must be positive, got: {v}")
        return v

    @model_validator(mode="after")
    def validate_reputation_thresholds(self) -> Self:
        """Validate risk tier thresholds are ordered."""
        critical = self.reputation_critical_threshold
        warning = self.reputation_warning_threshold
        medium = self.reputation_medium_threshold
        if not 0 <= critical < warning < medium <= 1000:
            raise ValueError(
                "reputation thresholds must satisfy 0 <= critical < warning < medium <= 1000"
            )
        weights = (
            self.reputation_weight_response_time,
            self.reputation_weight_error_rate,
            self.reputation_weight_security_incidents,
            self.reputation_weight_uptime,
            self.reputation_weight_community_rating,
            self.reputation_weight_compliance,
            self.reputation_weight_threat_intelligence,
        )
        if any(w < 0 for w in weights) or sum(weights) <= 0:
            raise ValueError("reputation weights must be non-negative with a positive total")
        return self

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment.lower() == "development"

    @property
    def log_file_path(self) -> str:
        """Get the full log file path."""
        return f"{self.log_directory}/{self.log_file_prefix}.log"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
