"""
Core Exceptions
================

Custom exceptions for the escalation engine.

Validation and lookup errors surface to API callers as structured 4xx
responses. Dependency, dispatch and conflict errors are raised inside
sweeps and handled there: logged, recorded, and never retried explicitly.
"""

from typing import Optional, Any, List, Dict


class ApplicationException(Exception):
    """Base exception for all application errors."""

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class DomainException(ApplicationException):
    """Base exception for domain logic violations."""


class RepositoryException(ApplicationException):
    """Base exception for repository/data access errors."""


class ValidationException(ApplicationException):
    """
    Malformed rule or event input.

    Carries field-level messages so controllers can return them verbatim.
    Never retried.
    """

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        errors: Optional[List[Dict[str, str]]] = None,
        details: Optional[dict] = None
    ):
        self.errors = list(errors or [])
        if field and not self.errors:
            self.errors.append({"field": field, "message": message})
        super().__init__(message, details)


class ResourceNotFoundException(ApplicationException):
    """Exception when a requested resource is not found."""

    def __init__(
        self,
        resource_type: str,
        resource_id: Optional[str] = None,
        details: Optional[dict] = None
    ):
        self.resource_type = resource_type
        self.resource_id = resource_id
        message = f"{resource_type}"
        if resource_id:
            message += f" with id '{resource_id}'"
        message += " not found"
        super().__init__(message, details)


class ConfigurationException(ApplicationException):
    """Exception for configuration errors."""


class ExternalServiceException(ApplicationException):
    """Base exception for collaborator failures."""

    def __init__(
        self,
        service_name: str,
        message: str,
        details: Optional[dict] = None
    ):
        self.service_name = service_name
        super().__init__(f"{service_name}: {message}", details)


class DependencyException(ExternalServiceException):
    """
    Snapshot provider, recipient directory, predicate resolver or storage
    unavailable during a sweep. The affected unit of work is skipped.
    """


class DispatchException(ExternalServiceException):
    """Notification delivery failed after the event was durably created."""

    def __init__(
        self,
        channel: str,
        message: str,
        event_id: Optional[str] = None,
        details: Optional[dict] = None
    ):
        self.channel = channel
        self.event_id = event_id
        super().__init__(f"Notification channel '{channel}'", message, details)


class ConflictException(DomainException):
    """An open event already exists for the (rule, entity) pair."""

    def __init__(self, rule_id: Any, entity_id: str, details: Optional[dict] = None):
        self.rule_id = rule_id
        self.entity_id = entity_id
        super().__init__(
            f"Open escalation already exists for rule {rule_id} and entity {entity_id}",
            details or {"rule_id": str(rule_id), "entity_id": entity_id}
        )


class RuleInUseException(DomainException):
    """A rule referenced by escalation events cannot be deleted."""

    def __init__(self, rule_id: str, event_count: int):
        self.rule_id = rule_id
        self.event_count = event_count
        super().__init__(
            f"Escalation rule {rule_id} is referenced by {event_count} event(s); "
            "deactivate it instead",
            {"rule_id": rule_id, "event_count": event_count}
        )
