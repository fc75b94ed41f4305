"""grantflow: review core for student grant applications.

grantflow implements the parts of a grant-application portal that decide
what may change and what actually changes:
- Role- and status-gated field permissions, declared as data per form type
- Attachment slots with type, size, cardinality and exclusivity rules
- Reconciliation of uploaded files against a slot's committed files
- The review state machine (pending, under review, approved, rejected)
- One orchestrated, version-checked save per submission, with events and
  best-effort owner notifications

Storage, persistence and notification delivery are collaborators passed in
by the caller; in-memory implementations live in ``grantflow.memory``.

Basic usage:
    >>> from grantflow.memory import InMemoryApplicationRepository, InMemoryAttachmentStore
    >>> from grantflow.orchestrator import SubmissionOrchestrator
    >>> orchestrator = SubmissionOrchestrator(
    ...     InMemoryApplicationRepository(), InMemoryAttachmentStore()
    ... )
    >>> result = orchestrator.submit_or_update(
    ...     "student", "s1", None, "UG1", {"projectTitle": "Solar dryer"}, {}
    ... )
    >>> result.version
    1
"""

__version__ = "0.1.0"

# Version info
VERSION = (0, 1, 0)

# Core exports
from grantflow.orchestrator import (
    AttachmentDelta,
    StatusResult,
    SubmissionOrchestrator,
    SubmissionResult,
)

# Package metadata
__all__ = [
    "__version__",
    "VERSION",
    "AttachmentDelta",
    "StatusResult",
    "SubmissionOrchestrator",
    "SubmissionResult",
]
