"""Core type definitions for grantflow.

This module defines the fundamental types used throughout the review core:
- FormType: The closed set of application form types
- ApplicationStatus: Lifecycle states for applications
- Role: Actor roles (the submitting student and every reviewing role)
- ErrorType: Error taxonomy for collected and aborting errors
- FieldRejectionReason / AttachmentRejectionReason / TransitionRejectionReason:
  Reason codes reported back to the caller for anything that was not applied
- EventType: Audit and notification event types
- Actor: Explicit identity passed into every core call

These types form the contract between the HTTP layer and the core.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, FrozenSet


class FormType(str, Enum):
    """Application form types.

    UG forms are for undergraduate projects and conferences, PG forms for
    postgraduate workshops and conferences, R1 for research conference travel.
    """
    UG1 = "UG1"
    UG2 = "UG2"
    UG3A = "UG3A"
    UG3B = "UG3B"
    PG1 = "PG1"
    PG2A = "PG2A"
    PG2B = "PG2B"
    R1 = "R1"


class ApplicationStatus(str, Enum):
    """Application lifecycle states.

    Terminal states: approved, rejected.
    """
    PENDING = "pending"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: FrozenSet[ApplicationStatus] = frozenset(
    {ApplicationStatus.APPROVED, ApplicationStatus.REJECTED}
)


class Role(str, Enum):
    """Actor roles.

    Every role except STUDENT is a reviewing role.
    """
    STUDENT = "student"
    GUIDE = "guide"
    HOD = "hod"
    DEPARTMENT_COORDINATOR = "department_coordinator"
    INSTITUTE_COORDINATOR = "institute_coordinator"
    PRINCIPAL = "principal"
    ADMIN = "admin"

    @property
    def is_reviewer(self) -> bool:
        return self is not Role.STUDENT


class ErrorType(str, Enum):
    """Error taxonomy.

    Field- and attachment-level errors are collected; conflict, malformed
    requests and persistence failures abort the whole submission.
    """
    VALIDATION = "validation"
    AUTHORIZATION = "authorization"
    ATTACHMENT = "attachment"
    CONFLICT = "conflict"
    STORAGE_ERROR = "storage_error"
    PERSISTENCE_ERROR = "persistence_error"
    PERSISTENCE_TIMEOUT = "persistence_timeout"


class FieldRejectionReason(str, Enum):
    """Why a field in the request delta was not written."""
    NOT_AUTHORIZED = "NOT_AUTHORIZED"
    UNKNOWN_FIELD = "UNKNOWN_FIELD"
    INVALID_VALUE = "INVALID_VALUE"


class AttachmentRejectionReason(str, Enum):
    """Why an uploaded file (or a whole slot delta) was not applied."""
    TYPE_REJECTED = "TYPE_REJECTED"
    SIZE_EXCEEDED = "SIZE_EXCEEDED"
    EMPTY_FILE = "EMPTY_FILE"
    EXCLUSIVITY_VIOLATION = "EXCLUSIVITY_VIOLATION"
    CARDINALITY_EXCEEDED = "CARDINALITY_EXCEEDED"
    STORAGE_ERROR = "STORAGE_ERROR"
    INVALID_REMOVE_ID = "INVALID_REMOVE_ID"
    UNKNOWN_SLOT = "UNKNOWN_SLOT"
    NOT_AUTHORIZED = "NOT_AUTHORIZED"


class TransitionRejectionReason(str, Enum):
    """Why a requested status change was refused."""
    INVALID_TRANSITION = "INVALID_TRANSITION"
    REMARK_REQUIRED = "REMARK_REQUIRED"
    NOT_AUTHORIZED = "NOT_AUTHORIZED"
    INCOMPLETE_APPLICATION = "INCOMPLETE_APPLICATION"


class EventType(str, Enum):
    """Audit event types.

    Every accepted mutation emits a typed event; status changes are also
    forwarded to the application owner as notifications.
    """
    APPLICATION_CREATED = "application.created"
    FIELDS_UPDATED = "fields.updated"
    ATTACHMENTS_RECONCILED = "attachments.reconciled"
    REMARK_RECORDED = "remark.recorded"
    REVIEW_STARTED = "review.started"
    APPLICATION_APPROVED = "application.approved"
    APPLICATION_REJECTED = "application.rejected"
    APPLICATION_REOPENED = "application.reopened"
    APPLICATION_DELETED = "application.deleted"


@dataclass(frozen=True)
class Actor:
    """Identity of the user performing an operation.

    The HTTP layer resolves the session and passes the actor explicitly;
    the core never reads ambient session state.

    Attributes:
        role: Role the actor is acting as
        id: Stable identifier (the SVV net id in the portal)

    Examples:
        >>> student = Actor(role=Role.STUDENT, id="student@somaiya.edu")
        >>> student.role.is_reviewer
        False
    """
    role: Role
    id: str

    def __post_init__(self):
        if isinstance(self.role, str) and not isinstance(self.role, Role):
            object.__setattr__(self, "role", Role(self.role))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for serialization."""
        return {"role": self.role.value, "id": self.id}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Actor":
        """Create Actor from dict."""
        return cls(role=Role(data["role"]), id=data["id"])


__all__ = [
    "FormType",
    "ApplicationStatus",
    "TERMINAL_STATUSES",
    "Role",
    "ErrorType",
    "FieldRejectionReason",
    "AttachmentRejectionReason",
    "TransitionRejectionReason",
    "EventType",
    "Actor",
]
