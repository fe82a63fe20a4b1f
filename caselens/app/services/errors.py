from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict


class ServiceComponent(str, Enum):
    """Collaborators and stages that can raise or degrade a request."""

    CATALOG = "catalog"
    CHUNK_STORE = "chunk_store"
    EMBEDDING = "embedding"
    GENERATION = "generation"
    FILTERS = "filters"
    SEARCH = "search"
    QA = "qa"
    INGESTION = "ingestion"


class ServiceSeverity(str, Enum):
    """Severity ladder for service errors."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


@dataclass(slots=True)
class ServiceError:
    component: ServiceComponent
    code: str
    message: str
    severity: ServiceSeverity = ServiceSeverity.ERROR
    retryable: bool = False
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    context: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "component": self.component.value,
            "code": self.code,
            "message": self.message,
            "severity": self.severity.value,
            "retryable": self.retryable,
            "occurred_at": self.occurred_at.isoformat(),
            "context": dict(self.context),
        }


class ServiceException(Exception):
    """Base exception conveying a structured service error."""

    default_status: int = 500

    def __init__(self, error: ServiceError, *, status_code: int | None = None) -> None:
        super().__init__(error.message)
        self.error = error
        self.status_code = status_code

    @classmethod
    def build(
        cls,
        component: ServiceComponent,
        code: str,
        message: str,
        *,
        severity: ServiceSeverity = ServiceSeverity.ERROR,
        retryable: bool = False,
        **context: Any,
    ) -> "ServiceException":
        return cls(
            ServiceError(
                component=component,
                code=code,
                message=message,
                severity=severity,
                retryable=retryable,
                context=context,
            )
        )


class InvalidRequestError(ServiceException):
    """Malformed caller input; never retried automatically."""

    default_status = 400


class NotFoundError(ServiceException):
    """A referenced project or file is missing, or archived where an active one is required."""

    default_status = 404


class UpstreamServiceError(ServiceException):
    """The embedding or generation service is unavailable or returned garbage."""

    default_status = 502


class RequestTimeoutError(ServiceException):
    """An external call exceeded its caller-supplied budget."""

    default_status = 504


@dataclass(slots=True)
class DegradedResultWarning:
    """Attached to a successful result when a sub-strategy was skipped."""

    component: ServiceComponent
    code: str
    message: str
    context: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_exception(cls, exc: ServiceException, message: str) -> "DegradedResultWarning":
        return cls(
            component=exc.error.component,
            code=exc.error.code,
            message=message,
            context={"cause": exc.error.message},
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "component": self.component.value,
            "code": self.code,
            "message": self.message,
            "context": dict(self.context),
        }


def http_status_for_error(exc: ServiceException) -> int:
    """Map a service exception to an HTTP status code."""

    if exc.status_code:
        return exc.status_code
    if type(exc) is ServiceException and (
        exc.error.severity is ServiceSeverity.CRITICAL or exc.error.retryable
    ):
        return 503
    return exc.default_status


__all__ = [
    "ServiceComponent",
    "ServiceSeverity",
    "ServiceError",
    "ServiceException",
    "InvalidRequestError",
    "NotFoundError",
    "UpstreamServiceError",
    "RequestTimeoutError",
    "DegradedResultWarning",
    "http_status_for_error",
]
