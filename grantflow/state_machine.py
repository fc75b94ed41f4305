"""Application state machine.

This module owns the ``status`` of an application. It enforces the review
lifecycle:

    pending -> under_review -> approved | rejected
    pending ---------------> approved | rejected

``under_review`` is optional. ``approved`` and ``rejected`` are terminal;
only an admin may move an application out of a terminal state (reopen it
or flip the decision).

Every accepted transition:
- records the actor's remark in ``remarks_by_role`` under the actor's role
- appends a StatusChange to the status history
- produces one event and one notification for the application owner

Usage:
    >>> from grantflow.models import Application
    >>> from grantflow.types import Actor, FormType, Role
    >>> app = Application.new(FormType.UG1, owner_id="student_1")
    >>> sm = ApplicationStateMachine()
    >>> hod = Actor(role=Role.HOD, id="hod_1")
    >>> outcome = sm.transition(hod, app, ApplicationStatus.REJECTED, "incomplete")
    >>> outcome.application.status
    <ApplicationStatus.REJECTED: 'rejected'>
    >>> app.status
    <ApplicationStatus.PENDING: 'pending'>
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, FrozenSet, List, Optional, Set

from grantflow.errors import TransitionRejectedError
from grantflow.events import ApplicationEvent, Notification
from grantflow.forms import get_form_definition
from grantflow.models import Application, StatusChange
from grantflow.types import (
    Actor,
    ApplicationStatus,
    EventType,
    Role,
    TransitionRejectionReason,
)

logger = logging.getLogger(__name__)


# Valid transitions for reviewing roles. Terminal states map to nothing.
VALID_TRANSITIONS: Dict[ApplicationStatus, Set[ApplicationStatus]] = {
    ApplicationStatus.PENDING: {
        ApplicationStatus.UNDER_REVIEW,
        ApplicationStatus.APPROVED,
        ApplicationStatus.REJECTED,
    },
    ApplicationStatus.UNDER_REVIEW: {
        ApplicationStatus.APPROVED,
        ApplicationStatus.REJECTED,
    },
    ApplicationStatus.APPROVED: set(),
    ApplicationStatus.REJECTED: set(),
}

# Entering these requires every required field and slot to be filled in.
REVIEW_STATUSES: FrozenSet[ApplicationStatus] = frozenset({
    ApplicationStatus.UNDER_REVIEW,
    ApplicationStatus.APPROVED,
})

STATUS_TO_EVENT_TYPE: Dict[ApplicationStatus, EventType] = {
    ApplicationStatus.PENDING: EventType.APPLICATION_REOPENED,
    ApplicationStatus.UNDER_REVIEW: EventType.REVIEW_STARTED,
    ApplicationStatus.APPROVED: EventType.APPLICATION_APPROVED,
    ApplicationStatus.REJECTED: EventType.APPLICATION_REJECTED,
}


@dataclass(frozen=True)
class TransitionOutcome:
    """Result of an accepted transition.

    Attributes:
        application: Copy of the application with the new status applied
        event: The status-change event
        notifications: Notifications to dispatch after the change is persisted
    """
    application: Application
    event: ApplicationEvent
    notifications: List[Notification] = field(default_factory=list)


def _clean_remark(remark: Optional[str]) -> Optional[str]:
    if remark is None:
        return None
    remark = remark.strip()
    return remark or None


class ApplicationStateMachine:
    """Validates and applies status transitions.

    The state machine is stateless: it reads the status from the application
    it is given and returns a modified copy, leaving persistence to the
    caller.
    """

    def allowed_targets(self, role: Role, current: ApplicationStatus) -> Set[ApplicationStatus]:
        """Statuses ``role`` may move an application to from ``current``."""
        role = Role(role)
        if not role.is_reviewer:
            return set()
        if role is Role.ADMIN and current.is_terminal:
            return {s for s in ApplicationStatus if s is not current}
        return set(VALID_TRANSITIONS[current])

    def can_transition(self, role: Role, current: ApplicationStatus, target: ApplicationStatus) -> bool:
        return ApplicationStatus(target) in self.allowed_targets(role, ApplicationStatus(current))

    def check(
        self,
        actor: Actor,
        application: Application,
        target_status: ApplicationStatus,
        remark: Optional[str] = None,
    ) -> None:
        """Raise TransitionRejectedError if the transition is not allowed.

        Raises:
            TransitionRejectedError: NOT_AUTHORIZED, INVALID_TRANSITION,
                REMARK_REQUIRED or INCOMPLETE_APPLICATION
        """
        current = application.status
        target = ApplicationStatus(target_status)

        if not actor.role.is_reviewer:
            raise TransitionRejectedError(
                TransitionRejectionReason.NOT_AUTHORIZED,
                f"Role '{actor.role.value}' cannot change application status",
            )

        if not self.can_transition(actor.role, current, target):
            allowed = self.allowed_targets(actor.role, current)
            raise TransitionRejectedError(
                TransitionRejectionReason.INVALID_TRANSITION,
                (
                    f"Invalid status transition: cannot move from '{current.value}' "
                    f"to '{target.value}'. Allowed: "
                    f"{', '.join(sorted(s.value for s in allowed))}"
                    if allowed
                    else f"Invalid status transition: '{current.value}' is final"
                ),
            )

        if target is ApplicationStatus.REJECTED and _clean_remark(remark) is None:
            raise TransitionRejectedError(
                TransitionRejectionReason.REMARK_REQUIRED,
                "A rejection must include a remark for the student",
            )

        if target in REVIEW_STATUSES:
            missing = self.missing_requirements(application)
            if missing:
                raise TransitionRejectedError(
                    TransitionRejectionReason.INCOMPLETE_APPLICATION,
                    f"Application is incomplete: {', '.join(missing)}",
                )

    def missing_requirements(self, application: Application) -> List[str]:
        """Required fields that are empty and slots outside their cardinality."""
        definition = get_form_definition(application.form_type)
        return (
            definition.validator.missing_required(application.fields)
            + definition.incomplete_slots(application.attachments)
        )

    def transition(
        self,
        actor: Actor,
        application: Application,
        target_status: ApplicationStatus,
        remark: Optional[str] = None,
    ) -> TransitionOutcome:
        """Move an application to ``target_status``.

        Args:
            actor: Who is changing the status
            application: The application in its current (server-known) state
            target_status: Requested status
            remark: Reason shown to the student; required for rejections

        Returns:
            TransitionOutcome with the updated copy, event and notifications

        Raises:
            TransitionRejectedError: If the transition is refused; the
                application is left untouched
        """
        target = ApplicationStatus(target_status)
        try:
            self.check(actor, application, target, remark)
        except TransitionRejectedError as exc:
            logger.info(
                "Transition %s -> %s by %s/%s refused on %s: %s",
                application.status.value, target.value, actor.role.value, actor.id,
                application.id, exc.reason.value,
            )
            raise

        remark = _clean_remark(remark)
        previous = application.status
        updated = application.copy()
        updated.status = target
        if remark is not None:
            updated.remarks_by_role[actor.role.value] = remark
        updated.status_history.append(StatusChange(
            status=target,
            changed_at=datetime.now(timezone.utc),
            changed_by=actor.id,
            changed_by_role=actor.role,
            remark=remark,
        ))

        payload = {"fromStatus": previous.value, "status": target.value}
        if remark is not None:
            payload["remark"] = remark
        event = ApplicationEvent.now(
            type=STATUS_TO_EVENT_TYPE[target],
            application_id=application.id,
            actor=actor,
            status=target,
            payload=payload,
        )
        logger.info(
            "Application %s moved %s -> %s by %s/%s",
            application.id, previous.value, target.value, actor.role.value, actor.id,
        )
        return TransitionOutcome(
            application=updated,
            event=event,
            notifications=[Notification(recipient_id=application.owner_id, event=event)],
        )

    def record_remark(self, actor: Actor, application: Application, remark: str) -> TransitionOutcome:
        """Record a reviewer's remark without changing the status.

        Raises:
            TransitionRejectedError: NOT_AUTHORIZED for students, and for
                non-admin reviewers once the application is final;
                REMARK_REQUIRED for an empty remark
        """
        if not actor.role.is_reviewer or (
            application.status.is_terminal and actor.role is not Role.ADMIN
        ):
            raise TransitionRejectedError(
                TransitionRejectionReason.NOT_AUTHORIZED,
                f"Role '{actor.role.value}' cannot add remarks while the application "
                f"is {application.status.value}",
            )
        cleaned = _clean_remark(remark)
        if cleaned is None:
            raise TransitionRejectedError(
                TransitionRejectionReason.REMARK_REQUIRED,
                "Remark is empty",
            )

        updated = application.copy()
        updated.remarks_by_role[actor.role.value] = cleaned
        event = ApplicationEvent.now(
            type=EventType.REMARK_RECORDED,
            application_id=application.id,
            actor=actor,
            status=application.status,
            payload={"remark": cleaned},
        )
        return TransitionOutcome(
            application=updated,
            event=event,
            notifications=[Notification(recipient_id=application.owner_id, event=event)],
        )


__all__ = [
    "ApplicationStateMachine",
    "TransitionOutcome",
    "VALID_TRANSITIONS",
    "REVIEW_STATUSES",
    "STATUS_TO_EVENT_TYPE",
]
