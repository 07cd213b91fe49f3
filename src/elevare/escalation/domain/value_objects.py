"""
Escalation Value Objects
=========================

Operational configuration loaded from YAML.

Holds the role directory used to turn `escalate_to_role` into a concrete
recipient, default notification channels, and the table mappings the SQL
snapshot provider uses to read each domain.
"""

import re
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from elevare.config import (
    EntityType, NotificationChannel,
    VALID_ENTITY_TYPES, VALID_ROLES, VALID_CHANNELS
)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class SnapshotSourceConfig(BaseModel):
    """
    Where one entity type lives in the shared relational store.

    Optional columns map to NULL in the snapshot when unset.
    """
    table: str
    id_column: str = "id"
    title_column: str = "title"
    status_column: str = "status"
    priority_column: Optional[str] = "priority"
    created_at_column: str = "created_at"
    status_changed_column: str = "updated_at"
    due_column: Optional[str] = None
    assignee_column: Optional[str] = "assigned_to"

    @field_validator(
        "table", "id_column", "title_column", "status_column", "priority_column",
        "created_at_column", "status_changed_column", "due_column", "assignee_column"
    )
    @classmethod
    def validate_identifier(cls, v: Optional[str]) -> Optional[str]:
        """Only plain SQL identifiers; these names end up in queries."""
        if v is not None and not _IDENTIFIER.match(v):
            raise ValueError(f"'{v}' is not a valid SQL identifier")
        return v


def default_snapshot_sources() -> Dict[str, SnapshotSourceConfig]:
    """Table layout of the administration console's domains."""
    return {
        EntityType.MAINTENANCE: SnapshotSourceConfig(
            table="maintenance_requests", title_column="description"
        ),
        EntityType.SUPPORT_TICKET: SnapshotSourceConfig(
            table="support_tickets", title_column="subject", due_column="sla_due_at"
        ),
        EntityType.LEGAL_CASE: SnapshotSourceConfig(
            table="legal_cases", title_column="summary"
        ),
        EntityType.COMPLIANCE: SnapshotSourceConfig(
            table="compliance_checks", title_column="check_type",
            priority_column=None, due_column="due_date"
        ),
        EntityType.INSPECTION: SnapshotSourceConfig(
            table="inspections", title_column="inspection_type", priority_column=None,
            due_column="scheduled_at", assignee_column="inspector_id"
        ),
        EntityType.CONSTRUCTION: SnapshotSourceConfig(
            table="construction_projects", priority_column=None,
            due_column="planned_end", assignee_column="managed_by"
        ),
    }


class RoleRecipients(BaseModel):
    """Who receives escalations for one role."""
    default: Optional[str] = Field(default=None, description="User id for any entity type")
    by_entity_type: Dict[str, str] = Field(
        default_factory=dict,
        description="Per entity type user id overrides"
    )
    slack_channel: Optional[str] = Field(default=None, description="Slack channel for this role")

    @field_validator("by_entity_type")
    @classmethod
    def validate_entity_types(cls, v: Dict[str, str]) -> Dict[str, str]:
        for entity_type in v:
            if entity_type not in VALID_ENTITY_TYPES:
                raise ValueError(f"unknown entity type '{entity_type}'")
        return v


class EscalationConfig(BaseModel):
    """
    Escalation configuration loaded from YAML.

    This is a value object - replaced wholesale on reload, never mutated.
    """
    role_directory: Dict[str, RoleRecipients] = Field(
        default_factory=dict,
        description="Recipients per escalation role"
    )
    default_recipient: Optional[str] = Field(
        default=None,
        description="Fallback recipient when a role has no directory entry"
    )
    default_channels: List[str] = Field(
        default_factory=lambda: [NotificationChannel.IN_APP],
        description="Channels used when a rule names none"
    )
    snapshot_sources: Dict[str, SnapshotSourceConfig] = Field(
        default_factory=default_snapshot_sources,
        description="Table mapping per entity type"
    )

    @field_validator("role_directory")
    @classmethod
    def validate_roles(cls, v: Dict[str, RoleRecipients]) -> Dict[str, RoleRecipients]:
        for role in v:
            if role not in VALID_ROLES:
                raise ValueError(f"unknown role '{role}'")
        return v

    @field_validator("default_channels")
    @classmethod
    def validate_channels(cls, v: List[str]) -> List[str]:
        for channel in v:
            if channel not in VALID_CHANNELS:
                raise ValueError(f"unknown channel '{channel}'")
        return v

    @field_validator("snapshot_sources")
    @classmethod
    def fill_snapshot_sources(cls, v: Dict[str, SnapshotSourceConfig]) -> Dict[str, SnapshotSourceConfig]:
        """Unknown types are rejected; missing types fall back to defaults."""
        for entity_type in v:
            if entity_type not in VALID_ENTITY_TYPES:
                raise ValueError(f"unknown entity type '{entity_type}'")

        merged = default_snapshot_sources()
        merged.update(v)
        return merged

    def recipient_for(self, role: str, entity_type: str) -> Optional[str]:
        """Entity-type override, then role default, then global default."""
        entry = self.role_directory.get(role)
        if entry is not None:
            if entity_type in entry.by_entity_type:
                return entry.by_entity_type[entity_type]
            if entry.default:
                return entry.default
        return self.default_recipient

    def slack_channel_for(self, role: Optional[str]) -> Optional[str]:
        entry = self.role_directory.get(role) if role else None
        return entry.slack_channel if entry else None

    def channels_for(self, requested: Optional[List[str]]) -> List[str]:
        return list(requested) if requested else list(self.default_channels)

    def get_source(self, entity_type: str) -> Optional[SnapshotSourceConfig]:
        return self.snapshot_sources.get(entity_type)
