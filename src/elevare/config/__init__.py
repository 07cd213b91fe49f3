"""
Configuration Module
====================

Application settings and domain constants.

Settings are loaded from environment variables (and `.env`) with
pydantic-settings. Operational escalation configuration (role directory,
channels, snapshot sources) lives in a YAML file, see
`elevare.escalation.domain.value_objects.EscalationConfig`.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator
from functools import lru_cache
from pathlib import Path
from typing import List, Optional


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Uses Pydantic for validation and type safety.
    """

    # ========== Application ==========
    app_name: str = Field(default="elevare-escalations", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: str = Field(default="development", description="Environment name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Root log level")

    # ========== Server ==========
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port", ge=1, le=65535)

    # ========== Database ==========
    database_url: str = Field(
        default="postgresql+asyncpg://localhost:5432/elevare",
        description="Relational store connection URL (async driver)"
    )
    db_pool_size: int = Field(default=5, description="Database connection pool size", ge=1)
    db_max_overflow: int = Field(default=10, description="Max overflow connections", ge=0)

    # ========== Escalation Engine ==========
    escalation_config_path: Path = Field(
        default=Path("escalation_config.yaml"),
        description="Path to the escalation YAML configuration"
    )
    escalation_sweep_interval_seconds: int = Field(
        default=900,
        description="Seconds between evaluator sweeps (0 disables the scheduler)",
        ge=0
    )
    escalation_sweep_timeout_seconds: float = Field(
        default=300.0,
        description="Upper bound for a whole sweep",
        gt=0
    )
    escalation_fetch_timeout_seconds: float = Field(
        default=30.0,
        description="Timeout for one entity-type snapshot fetch",
        gt=0
    )
    escalation_call_timeout_seconds: float = Field(
        default=10.0,
        description="Timeout for a single store or dispatcher call",
        gt=0
    )
    escalation_max_workers: int = Field(
        default=8,
        description="Concurrent escalation tasks within a sweep",
        ge=1,
        le=128
    )
    escalation_shutdown_grace_seconds: float = Field(
        default=10.0,
        description="Grace period for in-flight work on shutdown",
        ge=0
    )
    custom_predicate_timeout_seconds: float = Field(
        default=2.0,
        description="Timeout for a custom predicate evaluation",
        gt=0
    )

    # ========== Slack Integration ==========
    slack_webhook_url: Optional[str] = Field(
        default=None,
        description="Slack webhook URL for escalation notifications"
    )
    slack_channel: str = Field(
        default="#escalations",
        description="Default Slack channel for escalation notifications"
    )
    slack_timeout_seconds: float = Field(
        default=5.0,
        description="Timeout for Slack API calls",
        ge=0.1,
        le=30
    )
    console_base_url: str = Field(
        default="http://localhost:5173",
        description="Administration console URL used for entity links"
    )

    # ========== CORS ==========
    cors_origins: List[str] = Field(
        default=["http://localhost:5173", "http://localhost:3000"],
        description="Allowed CORS origins"
    )

    # ========== Grafana OTLP Metrics ==========
    grafana_host: Optional[str] = Field(
        default=None,
        description="Grafana OTLP gateway URL"
    )
    grafana_api_key: Optional[str] = Field(
        default=None,
        description="Grafana API key for OTLP authentication"
    )
    grafana_instance_id: Optional[str] = Field(
        default=None,
        description="Grafana instance ID for OTLP authentication"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Ensure environment is one of allowed values."""
        allowed = {"development", "test", "staging", "production"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in allowed:
            raise ValueError(f"log_level must be one of {allowed}")
        return v.upper()


@lru_cache()
def get_settings() -> Settings:
    """Returns cached Settings instance."""
    return Settings()


# Global settings instance
settings = get_settings()


# ========== Constants ==========

class EntityType(str):
    """Operational domains watched by the engine."""
    MAINTENANCE = "maintenance"
    SUPPORT_TICKET = "support_ticket"
    LEGAL_CASE = "legal_case"
    COMPLIANCE = "compliance"
    INSPECTION = "inspection"
    CONSTRUCTION = "construction"


class TriggerCondition(str):
    """Rule trigger kinds, one matcher each."""
    SLA_BREACH = "sla_breach"
    STATUS_STALE = "status_stale"
    HIGH_PRIORITY_UNASSIGNED = "high_priority_unassigned"
    OVERDUE = "overdue"
    CUSTOM = "custom"


class EscalationRole(str):
    """Roles a rule can escalate to."""
    ADMIN = "admin"
    MANAGER = "manager"
    SENIOR_MANAGER = "senior_manager"
    DIRECTOR = "director"
    LEGAL_HEAD = "legal_head"
    OPERATIONS_HEAD = "operations_head"


class Priority(str):
    """Entity priority levels used across domains."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"
    CRITICAL = "critical"


class EntityStatus(str):
    """Statuses the engine reasons about."""
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    RESOLVED = "resolved"
    CLOSED = "closed"
    CANCELLED = "cancelled"


class NotificationChannel(str):
    """Delivery channels for escalation notifications."""
    IN_APP = "in_app"
    SLACK = "slack"


class NotificationStatus(str):
    """Delivery status recorded on an escalation event."""
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"


class SweepState(str):
    """Evaluator state machine."""
    IDLE = "idle"
    LOADING_RULES = "loading_rules"
    DISPATCHING = "dispatching"
    AWAITING_WORKERS = "awaiting_workers"


class SweepStatus(str):
    """Outcome of a finished sweep."""
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    FAILED = "failed"
    SKIPPED = "skipped"


# ========== Lists for validation ==========

VALID_ENTITY_TYPES = [
    EntityType.MAINTENANCE, EntityType.SUPPORT_TICKET,
    EntityType.LEGAL_CASE, EntityType.COMPLIANCE,
    EntityType.INSPECTION, EntityType.CONSTRUCTION
]
VALID_TRIGGER_CONDITIONS = [
    TriggerCondition.SLA_BREACH, TriggerCondition.STATUS_STALE,
    TriggerCondition.HIGH_PRIORITY_UNASSIGNED, TriggerCondition.OVERDUE,
    TriggerCondition.CUSTOM
]
VALID_ROLES = [
    EscalationRole.ADMIN, EscalationRole.MANAGER,
    EscalationRole.SENIOR_MANAGER, EscalationRole.DIRECTOR,
    EscalationRole.LEGAL_HEAD, EscalationRole.OPERATIONS_HEAD
]
VALID_PRIORITIES = [
    Priority.LOW, Priority.MEDIUM, Priority.HIGH,
    Priority.URGENT, Priority.CRITICAL
]
VALID_CHANNELS = [NotificationChannel.IN_APP, NotificationChannel.SLACK]

# Time-based conditions stop applying once an entity reaches one of these
TERMINAL_STATUSES = frozenset([
    EntityStatus.COMPLETED, EntityStatus.RESOLVED,
    EntityStatus.CLOSED, EntityStatus.CANCELLED
])
HIGH_PRIORITIES = frozenset([Priority.HIGH, Priority.URGENT])
