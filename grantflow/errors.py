"""Structured error types for grantflow.

Two families live here:

- Collected rejections (FieldRejection, FileRejection): frozen records that
  describe a single field or file that was not applied. A submission can
  partially succeed, so these are accumulated into the SubmissionResult and
  never raised.
- Aborting errors (GrantflowError subclasses): raised only for conditions
  that invalidate the whole request (malformed payload, request-level
  authorization, persistence failure). A version conflict is reported on
  the result, with ConflictError as its error envelope.

Every error carries an ErrorType from the taxonomy so the HTTP layer can map
it to a response without string matching.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from grantflow.types import (
    AttachmentRejectionReason,
    ErrorType,
    FieldRejectionReason,
    TransitionRejectionReason,
)


@dataclass(frozen=True)
class FieldRejection:
    """A field from the request delta that was not written.

    Attributes:
        field: Field name as sent by the client
        reason: Why the write was refused
        message: Optional human-readable detail

    Examples:
        >>> rej = FieldRejection(
        ...     field="projectTitle",
        ...     reason=FieldRejectionReason.NOT_AUTHORIZED,
        ... )
        >>> rej.to_dict()
        {'fieldName': 'projectTitle', 'reason': 'NOT_AUTHORIZED'}
    """
    field: str
    reason: FieldRejectionReason
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for serialization."""
        result: Dict[str, Any] = {
            "fieldName": self.field,
            "reason": self.reason.value,
        }
        if self.message is not None:
            result["message"] = self.message
        return result


@dataclass(frozen=True)
class FileRejection:
    """A file (or a whole slot delta) that was not applied.

    Attributes:
        file_name: Original file name of the upload, or the attachment id when
            the rejection concerns an already-committed file
        reason: Why the file was refused
        message: Optional human-readable detail
        attachment_id: Set when the rejection concerns a committed attachment
    """
    file_name: str
    reason: AttachmentRejectionReason
    message: Optional[str] = None
    attachment_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for serialization."""
        result: Dict[str, Any] = {
            "fileName": self.file_name,
            "reason": self.reason.value,
        }
        if self.message is not None:
            result["message"] = self.message
        if self.attachment_id is not None:
            result["attachmentId"] = self.attachment_id
        return result


class GrantflowError(Exception):
    """Base class for aborting errors.

    Attributes:
        error_type: Taxonomy category of the error
        message: Human-readable error message
    """

    error_type: ErrorType = ErrorType.VALIDATION

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for serialization."""
        return {"type": self.error_type.value, "message": self.message}


class MalformedRequestError(GrantflowError):
    """The request is structurally invalid (unknown form type, bad payload shape)."""

    error_type = ErrorType.VALIDATION


class AuthorizationError(GrantflowError):
    """The actor may not perform this request at all."""

    error_type = ErrorType.AUTHORIZATION


class ConflictError(GrantflowError):
    """The application changed since the client read it.

    Attributes:
        application_id: The application whose version moved
        expected_version: The version the writer observed
    """

    error_type = ErrorType.CONFLICT

    def __init__(self, application_id: str, expected_version: Optional[int]):
        self.application_id = application_id
        self.expected_version = expected_version
        super().__init__(
            f"Application '{application_id}' was modified concurrently "
            f"(expected version {expected_version}); re-fetch and resubmit"
        )


class PersistenceError(GrantflowError):
    """The application repository failed."""

    error_type = ErrorType.PERSISTENCE_ERROR


class PersistenceTimeoutError(PersistenceError):
    """The application repository did not answer within the timeout."""

    error_type = ErrorType.PERSISTENCE_TIMEOUT


class TransitionRejectedError(GrantflowError):
    """A requested status transition was refused.

    Attributes:
        reason: The rejection reason code
    """

    def __init__(self, reason: TransitionRejectionReason, message: str):
        self.reason = reason
        if reason is TransitionRejectionReason.NOT_AUTHORIZED:
            self.error_type = ErrorType.AUTHORIZATION
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["reason"] = self.reason.value
        return result


__all__ = [
    "FieldRejection",
    "FileRejection",
    "GrantflowError",
    "MalformedRequestError",
    "AuthorizationError",
    "ConflictError",
    "PersistenceError",
    "PersistenceTimeoutError",
    "TransitionRejectedError",
]
