"""Role-field permission engine.

Decides whether an actor may write a field (or an attachment slot) of an
application, given the actor's role and the application's current status.
The decision is a lookup in the form's FieldEditabilityTable with two
universal rules layered on top:

- ``status`` is never writable through this path. Status changes go through
  the ApplicationStateMachine, because they change every other field's
  entitlement for the next evaluation.
- ``admin`` may write every other name the form declares.

The status must always be the application's persisted status as loaded by
the server. Callers must not pass a status taken from the request body.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Tuple

from grantflow.errors import FieldRejection
from grantflow.types import ApplicationStatus, FieldRejectionReason, Role

logger = logging.getLogger(__name__)

STATUS_FIELD = "status"


class FieldEditabilityTable:
    """Static map from (role, status) to the names that role may write.

    Names are field names or attachment slot names. A missing pair means
    nothing is editable for that role in that status.

    Examples:
        >>> table = FieldEditabilityTable({
        ...     (Role.STUDENT, ApplicationStatus.PENDING): {"projectTitle"},
        ... })
        >>> table.writable(Role.STUDENT, ApplicationStatus.PENDING)
        frozenset({'projectTitle'})
        >>> table.writable(Role.STUDENT, ApplicationStatus.APPROVED)
        frozenset()
    """

    def __init__(self, grants: Mapping[Tuple[Role, ApplicationStatus], Iterable[str]]):
        self._grants: Dict[Tuple[Role, ApplicationStatus], FrozenSet[str]] = {
            (Role(role), ApplicationStatus(status)): frozenset(names)
            for (role, status), names in grants.items()
        }

    def writable(self, role: Role, status: ApplicationStatus) -> FrozenSet[str]:
        return self._grants.get((role, status), frozenset())

    def pairs(self) -> List[Tuple[Role, ApplicationStatus]]:
        return list(self._grants)

    def __contains__(self, key: Tuple[Role, ApplicationStatus]) -> bool:
        return key in self._grants


@dataclass(frozen=True)
class FilterResult:
    """Outcome of filtering a field delta.

    Attributes:
        accepted: Fields the actor may write, with their values
        rejected: One rejection per refused field, in request order
    """
    accepted: Dict[str, Any] = field(default_factory=dict)
    rejected: List[FieldRejection] = field(default_factory=list)

    @property
    def rejected_names(self) -> List[str]:
        return [r.field for r in self.rejected]


class PermissionEngine:
    """Authorizes field and slot writes for one form type.

    The engine is a pure function of its table and the declared names; it
    keeps no per-request state and can be shared across threads.

    Attributes:
        table: The form's editability table
        known_names: Every field and slot name the form declares

    Examples:
        >>> table = FieldEditabilityTable({
        ...     (Role.STUDENT, ApplicationStatus.PENDING): {"projectTitle"},
        ... })
        >>> engine = PermissionEngine(table, known_names={"projectTitle", "amountSanctioned"})
        >>> engine.authorize(Role.STUDENT, ApplicationStatus.PENDING, "projectTitle")
        True
        >>> engine.authorize(Role.STUDENT, ApplicationStatus.REJECTED, "projectTitle")
        False
        >>> engine.authorize(Role.ADMIN, ApplicationStatus.APPROVED, "amountSanctioned")
        True
    """

    def __init__(self, table: FieldEditabilityTable, known_names: Iterable[str]):
        self.table = table
        self.known_names: FrozenSet[str] = frozenset(known_names)

    def is_known(self, name: str) -> bool:
        return name in self.known_names

    def authorize(self, role: Role, status: ApplicationStatus, field_name: str) -> bool:
        """Decide whether ``role`` may write ``field_name`` while in ``status``.

        Args:
            role: The actor's role
            status: The application's persisted status
            field_name: Field or slot name

        Returns:
            True if the write is allowed
        """
        if field_name == STATUS_FIELD:
            return False
        if Role(role) is Role.ADMIN:
            return True
        return field_name in self.table.writable(Role(role), ApplicationStatus(status))

    def filter_writable(
        self,
        role: Role,
        status: ApplicationStatus,
        delta_fields: Mapping[str, Any],
    ) -> FilterResult:
        """Split a field delta into writable fields and rejections.

        Unknown names are reported as UNKNOWN_FIELD for every role;
        ``status`` and names the role may not write are NOT_AUTHORIZED.

        Args:
            role: The actor's role
            status: The application's persisted status
            delta_fields: Field name to value, as sent by the client

        Returns:
            FilterResult with accepted values and rejections
        """
        accepted: Dict[str, Any] = {}
        rejected: List[FieldRejection] = []

        for name, value in delta_fields.items():
            if name == STATUS_FIELD:
                rejected.append(FieldRejection(
                    field=name,
                    reason=FieldRejectionReason.NOT_AUTHORIZED,
                    message="Status can only change through a status transition",
                ))
            elif not self.is_known(name):
                rejected.append(FieldRejection(
                    field=name,
                    reason=FieldRejectionReason.UNKNOWN_FIELD,
                    message=f"Field '{name}' is not part of this form",
                ))
            elif self.authorize(role, status, name):
                accepted[name] = value
            else:
                rejected.append(FieldRejection(
                    field=name,
                    reason=FieldRejectionReason.NOT_AUTHORIZED,
                    message=(
                        f"Role '{Role(role).value}' may not edit '{name}' "
                        f"while the application is {ApplicationStatus(status).value}"
                    ),
                ))

        if rejected:
            logger.info(
                "Refused %d field write(s) for role=%s status=%s: %s",
                len(rejected),
                Role(role).value,
                ApplicationStatus(status).value,
                ", ".join(r.field for r in rejected),
            )
        return FilterResult(accepted=accepted, rejected=rejected)


__all__ = [
    "STATUS_FIELD",
    "FieldEditabilityTable",
    "FilterResult",
    "PermissionEngine",
]
