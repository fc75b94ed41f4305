"""Submission orchestrator for grantflow.

This module provides the SubmissionOrchestrator, the single entry point the
HTTP layer calls to create or update an application. It coordinates the
permission engine, the attachment reconciler and the state machine, then
persists the merged application with one conditional save.

Order of work for one request:

1. Resolve the actor, form definition and application (server state only).
2. Filter and validate the field delta against the persisted status.
3. Reconcile each attachment slot (slots in parallel, deletes deferred).
4. Apply the requested status transition or standalone remark.
5. Save once, conditioned on the version that was loaded.
6. On success run the deferred deletes, emit events and notify the owner.
   On conflict or failure delete the blobs this request stored.

Usage:
    >>> from grantflow.memory import InMemoryApplicationRepository, InMemoryAttachmentStore
    >>> orchestrator = SubmissionOrchestrator(
    ...     InMemoryApplicationRepository(), InMemoryAttachmentStore()
    ... )
    >>> result = orchestrator.submit_or_update(
    ...     "student", "s1", None, "UG1", {"projectTitle": "Line follower"}, {}
    ... )
    >>> result.persisted_fields
    {'projectTitle': 'Line follower'}
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from grantflow.collaborators import (
    ApplicationRepository,
    AttachmentStore,
    CollaboratorTimeoutError,
    NotificationSink,
    call_with_timeout,
)
from grantflow.config import Settings, get_settings
from grantflow.errors import (
    AuthorizationError,
    ConflictError,
    FieldRejection,
    FileRejection,
    GrantflowError,
    MalformedRequestError,
    PersistenceError,
    PersistenceTimeoutError,
    TransitionRejectedError,
)
from grantflow.events import ApplicationEvent, EventEmitter, Notification, NotificationDispatcher
from grantflow.forms import FormDefinition, get_form_definition
from grantflow.models import Application, Upload
from grantflow.reconciliation import AttachmentReconciler, ReconcileResult
from grantflow.slots import SlotDefinition
from grantflow.state_machine import ApplicationStateMachine, TransitionOutcome
from grantflow.types import (
    Actor,
    ApplicationStatus,
    AttachmentRejectionReason,
    EventType,
    FieldRejectionReason,
    Role,
    TransitionRejectionReason,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AttachmentDelta:
    """Client-declared change to one attachment slot.

    Attributes:
        uploads: New files, in the client's priority order
        keep_ids: Committed ids to retain; None retains everything not removed
        remove_ids: Committed ids to delete
    """
    uploads: Tuple[Upload, ...] = ()
    keep_ids: Optional[Tuple[str, ...]] = None
    remove_ids: Tuple[str, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "uploads", tuple(self.uploads))
        object.__setattr__(self, "remove_ids", tuple(self.remove_ids))
        if self.keep_ids is not None:
            object.__setattr__(self, "keep_ids", tuple(self.keep_ids))

    @property
    def has_uploads(self) -> bool:
        return bool(self.uploads)


@dataclass(frozen=True)
class StatusResult:
    """Outcome of a requested status change.

    Attributes:
        accepted: Whether the transition was applied
        new_status: Status after the request (unchanged when refused)
        reason: Rejection reason when refused
        message: Human-readable detail when refused
    """
    accepted: bool
    new_status: ApplicationStatus
    reason: Optional[TransitionRejectionReason] = None
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "accepted": self.accepted,
            "newStatus": self.new_status.value,
        }
        if self.reason is not None:
            result["reason"] = self.reason.value
        if self.message is not None:
            result["message"] = self.message
        return result


@dataclass
class SubmissionResult:
    """What a submission actually changed.

    When ``conflict`` is True nothing was persisted, every other
    collection is empty and ``to_dict`` carries a ConflictError envelope.

    Attributes:
        application_id: The application that was created or updated
        persisted_fields: Fields written, with their values
        rejected_fields: Fields not written, in request order
        attachment_results: Per-slot accepted files and rejections
        status_result: Outcome of the status change, if one was requested
        conflict: Set when the optimistic-concurrency check failed
        version: Version of the application after the request, or the
            version the request was based on when it conflicted
    """
    application_id: Optional[str]
    persisted_fields: Dict[str, Any] = field(default_factory=dict)
    rejected_fields: List[FieldRejection] = field(default_factory=list)
    attachment_results: Dict[str, ReconcileResult] = field(default_factory=dict)
    status_result: Optional[StatusResult] = None
    conflict: bool = False
    version: Optional[int] = None

    @classmethod
    def conflicted(cls, application_id: Optional[str], expected_version: Optional[int]) -> "SubmissionResult":
        return cls(application_id=application_id, conflict=True, version=expected_version)

    @property
    def ok(self) -> bool:
        """True when the request was applied in full."""
        return (
            not self.conflict
            and not self.rejected_fields
            and not any(r.rejections for r in self.attachment_results.values())
            and (self.status_result is None or self.status_result.accepted)
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for the HTTP response body."""
        result: Dict[str, Any] = {
            "applicationId": self.application_id,
            "persistedFields": dict(self.persisted_fields),
            "rejectedFields": [r.to_dict() for r in self.rejected_fields],
            "attachmentResults": {
                slot: r.to_dict() for slot, r in self.attachment_results.items()
            },
            "conflict": self.conflict,
        }
        if self.conflict:
            result["error"] = ConflictError(self.application_id, self.version).to_dict()
        if self.status_result is not None:
            result["statusResult"] = self.status_result.to_dict()
        if self.version is not None:
            result["version"] = self.version
        return result


class SubmissionOrchestrator:
    """Entry point for create/update requests.

    One orchestrator serves all requests; it keeps no per-request state.

    Attributes:
        repository: Application document store
        reconciler: Attachment reconciler bound to the attachment store
        state_machine: Status transition rules
        emitter: Receives an event for every accepted change
        dispatcher: Delivers owner notifications best-effort
    """

    def __init__(
        self,
        repository: ApplicationRepository,
        store: AttachmentStore,
        notification_sink: Optional[NotificationSink] = None,
        settings: Optional[Settings] = None,
        emitter: Optional[EventEmitter] = None,
        state_machine: Optional[ApplicationStateMachine] = None,
    ):
        settings = settings or get_settings()
        self.repository = repository
        self.store = store
        self.reconciler = AttachmentReconciler(store, timeout=settings.STORAGE_TIMEOUT_SECONDS)
        self.state_machine = state_machine or ApplicationStateMachine()
        self.emitter = emitter or EventEmitter()
        self.dispatcher = NotificationDispatcher(
            notification_sink,
            enabled=settings.ENABLE_NOTIFICATIONS,
            timeout=settings.NOTIFICATION_TIMEOUT_SECONDS,
        )
        self.persistence_timeout = settings.PERSISTENCE_TIMEOUT_SECONDS
        self.slot_workers = max(1, settings.SLOT_WORKERS)

    def submit_or_update(
        self,
        actor_role: Any,
        actor_id: str,
        application_id: Optional[str],
        form_type: Any,
        field_delta: Optional[Mapping[str, Any]] = None,
        attachment_deltas: Optional[Mapping[str, AttachmentDelta]] = None,
        status_delta: Optional[Any] = None,
        remark: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> SubmissionResult:
        """Create or update an application.

        Args:
            actor_role: Role of the caller (Role or its value)
            actor_id: Identity of the caller
            application_id: Existing application, or None to create one
            form_type: Form type of the application (FormType or its value)
            field_delta: Field name to new value
            attachment_deltas: Slot name to AttachmentDelta
            status_delta: Requested new status, if any
            remark: Remark accompanying the status change, or a standalone
                reviewer remark when no status change is requested
            expected_version: Version the client read; a mismatch is a conflict

        Returns:
            SubmissionResult describing what was and was not applied

        Raises:
            MalformedRequestError: Unknown form type/role/status, bad payload
                shape, unknown application or form type mismatch
            AuthorizationError: The actor may not create or touch this application
            PersistenceError: The repository failed (nothing persisted)
            PersistenceTimeoutError: The repository did not answer in time
        """
        actor = self._resolve_actor(actor_role, actor_id)
        definition = get_form_definition(form_type)
        field_delta = self._require_mapping(field_delta, "field delta")
        attachment_deltas = self._require_mapping(attachment_deltas, "attachment deltas")
        for slot_name, delta in attachment_deltas.items():
            if not isinstance(delta, AttachmentDelta):
                raise MalformedRequestError(
                    f"Attachment delta for '{slot_name}' must be an AttachmentDelta"
                )
        target_status = self._parse_status(status_delta)

        application, creating = self._load_or_create(actor, application_id, definition)
        if not creating and expected_version is not None and expected_version != application.version:
            logger.info(
                "Conflict on %s: client read version %s, stored version is %s",
                application.id, expected_version, application.version,
            )
            return SubmissionResult.conflicted(application.id, expected_version)

        # Authorization always uses the persisted status, never the request's.
        prior_status = application.status
        working = application.copy()

        persisted_fields, rejected_fields = self._apply_fields(
            actor, prior_status, definition, working, field_delta
        )
        attachment_results = self._reconcile_attachments(
            actor, prior_status, definition, working, attachment_deltas
        )

        status_result: Optional[StatusResult] = None
        outcome: Optional[TransitionOutcome] = None
        if target_status is not None:
            try:
                outcome = self.state_machine.transition(actor, working, target_status, remark)
            except TransitionRejectedError as exc:
                status_result = StatusResult(
                    accepted=False,
                    new_status=prior_status,
                    reason=exc.reason,
                    message=exc.message,
                )
            else:
                working = outcome.application
                status_result = StatusResult(accepted=True, new_status=working.status)
        elif remark is not None and remark.strip():
            try:
                outcome = self.state_machine.record_remark(actor, working, remark)
            except TransitionRejectedError as exc:
                rejected_fields.append(FieldRejection(
                    field="remark",
                    reason=FieldRejectionReason.NOT_AUTHORIZED,
                    message=exc.message,
                ))
            else:
                working = outcome.application

        attachments_changed = any(r.changed for r in attachment_results.values())
        if not (creating or persisted_fields or attachments_changed or outcome):
            return SubmissionResult(
                application_id=application.id,
                rejected_fields=rejected_fields,
                attachment_results=attachment_results,
                status_result=status_result,
                version=application.version,
            )

        new_version = self._save(
            working,
            None if creating else application.version,
            attachment_results.values(),
        )
        if new_version is None:
            return SubmissionResult.conflicted(application.id, application.version)
        working.version = new_version

        for result in attachment_results.values():
            if result.pending_deletes:
                self.reconciler.commit_deletes(result)

        self._publish(
            actor, working, creating, persisted_fields, attachment_results, outcome
        )
        return SubmissionResult(
            application_id=working.id,
            persisted_fields=persisted_fields,
            rejected_fields=rejected_fields,
            attachment_results=attachment_results,
            status_result=status_result,
            version=new_version,
        )

    def delete_application(self, actor_role: Any, actor_id: str, application_id: str) -> None:
        """Delete an application and every attachment blob it references.

        The owner may delete while the application is pending; an admin may
        delete at any time.

        Raises:
            MalformedRequestError: The application does not exist
            AuthorizationError: The actor may not delete it
            PersistenceError: The repository failed
        """
        actor = self._resolve_actor(actor_role, actor_id)
        application = self._load(application_id)
        if application is None:
            raise MalformedRequestError(f"Application '{application_id}' not found")

        is_owner = actor.role is Role.STUDENT and actor.id == application.owner_id
        if not (actor.role is Role.ADMIN or (is_owner and application.status is ApplicationStatus.PENDING)):
            raise AuthorizationError(
                f"Role '{actor.role.value}' may not delete application '{application_id}' "
                f"while it is {application.status.value}"
            )

        try:
            call_with_timeout(self.repository.delete, self.persistence_timeout, application_id)
        except CollaboratorTimeoutError:
            raise PersistenceTimeoutError(f"Deleting '{application_id}' timed out") from None
        except Exception as exc:
            raise PersistenceError(f"Deleting '{application_id}' failed: {exc}") from exc

        for files in application.attachments.values():
            for attachment in files:
                try:
                    call_with_timeout(
                        self.store.delete, self.reconciler.timeout, attachment.storage_ref
                    )
                except Exception:
                    logger.warning(
                        "Blob %s of deleted application %s is orphaned",
                        attachment.storage_ref, application_id, exc_info=True,
                    )

        logger.info("Application %s deleted by %s/%s", application_id, actor.role.value, actor.id)
        self.emitter.emit(ApplicationEvent.now(
            type=EventType.APPLICATION_DELETED,
            application_id=application_id,
            actor=actor,
            status=application.status,
        ))

    # Request resolution

    def _resolve_actor(self, actor_role: Any, actor_id: str) -> Actor:
        try:
            role = Role(actor_role)
        except ValueError:
            raise MalformedRequestError(f"Unknown role: {actor_role!r}") from None
        if not actor_id:
            raise MalformedRequestError("Actor id is required")
        return Actor(role=role, id=actor_id)

    def _require_mapping(self, value: Optional[Mapping[str, Any]], what: str) -> Mapping[str, Any]:
        if value is None:
            return {}
        if not isinstance(value, Mapping):
            raise MalformedRequestError(f"The {what} must be a mapping, got {type(value).__name__}")
        return value

    def _parse_status(self, status_delta: Optional[Any]) -> Optional[ApplicationStatus]:
        if status_delta is None:
            return None
        try:
            return ApplicationStatus(status_delta)
        except ValueError:
            raise MalformedRequestError(f"Unknown status: {status_delta!r}") from None

    def _load(self, application_id: str) -> Optional[Application]:
        try:
            return call_with_timeout(self.repository.load, self.persistence_timeout, application_id)
        except CollaboratorTimeoutError:
            raise PersistenceTimeoutError(f"Loading '{application_id}' timed out") from None
        except Exception as exc:
            raise PersistenceError(f"Loading '{application_id}' failed: {exc}") from exc

    def _load_or_create(
        self,
        actor: Actor,
        application_id: Optional[str],
        definition: FormDefinition,
    ) -> Tuple[Application, bool]:
        if application_id is None:
            if actor.role is not Role.STUDENT:
                raise AuthorizationError("Only students can create applications")
            application = Application.new(definition.form_type, owner_id=actor.id)
            logger.debug("Creating %s application %s for %s", definition.form_type.value,
                         application.id, actor.id)
            return application, True

        application = self._load(application_id)
        if application is None:
            raise MalformedRequestError(f"Application '{application_id}' not found")
        if application.form_type is not definition.form_type:
            raise MalformedRequestError(
                f"Application '{application_id}' is a {application.form_type.value} form, "
                f"not {definition.form_type.value}"
            )
        if actor.role is Role.STUDENT and actor.id != application.owner_id:
            raise AuthorizationError(
                f"Student '{actor.id}' does not own application '{application_id}'"
            )
        return application, False

    # Fields

    def _apply_fields(
        self,
        actor: Actor,
        status: ApplicationStatus,
        definition: FormDefinition,
        working: Application,
        field_delta: Mapping[str, Any],
    ) -> Tuple[Dict[str, Any], List[FieldRejection]]:
        misplaced = [
            FieldRejection(
                field=name,
                reason=FieldRejectionReason.UNKNOWN_FIELD,
                message=f"'{name}' is an attachment slot; send it as an attachment delta",
            )
            for name in field_delta
            if definition.slot(name) is not None
        ]
        filtered = definition.permissions.filter_writable(
            actor.role,
            status,
            {k: v for k, v in field_delta.items() if definition.slot(k) is None},
        )
        invalid = definition.validator.validate_delta(filtered.accepted)
        invalid_names = {r.field for r in invalid}

        persisted = {
            name: value for name, value in filtered.accepted.items()
            if name not in invalid_names
        }
        working.fields.update(persisted)

        order = {name: i for i, name in enumerate(field_delta)}
        rejected = sorted(misplaced + filtered.rejected + invalid, key=lambda r: order.get(r.field, len(order)))
        return persisted, rejected

    # Attachments

    def _reconcile_attachments(
        self,
        actor: Actor,
        status: ApplicationStatus,
        definition: FormDefinition,
        working: Application,
        deltas: Mapping[str, AttachmentDelta],
    ) -> Dict[str, ReconcileResult]:
        results: Dict[str, ReconcileResult] = {}
        jobs: Dict[str, Tuple[SlotDefinition, AttachmentDelta]] = {}

        for slot_name, delta in deltas.items():
            slot_def = definition.slot(slot_name)
            if slot_def is None:
                results[slot_name] = self._refused_slot(
                    slot_name, [], delta,
                    AttachmentRejectionReason.UNKNOWN_SLOT,
                    f"Slot '{slot_name}' is not part of this form",
                )
            elif not definition.permissions.authorize(actor.role, status, slot_name):
                results[slot_name] = self._refused_slot(
                    slot_name, working.files_in(slot_name), delta,
                    AttachmentRejectionReason.NOT_AUTHORIZED,
                    f"Role '{actor.role.value}' may not change '{slot_name}' "
                    f"while the application is {status.value}",
                )
            else:
                jobs[slot_name] = (slot_def, delta)

        # Slots sharing an exclusivity group may not all receive uploads at once.
        uploads_by_group: Dict[str, List[str]] = {}
        for slot_name, (slot_def, delta) in jobs.items():
            if slot_def.exclusivity_group is not None and delta.has_uploads:
                uploads_by_group.setdefault(slot_def.exclusivity_group, []).append(slot_name)
        for group, slot_names in uploads_by_group.items():
            if len(slot_names) < 2:
                continue
            message = f"Only one of {', '.join(slot_names)} may receive files in one submission"
            for slot_name in slot_names:
                _, delta = jobs.pop(slot_name)
                results[slot_name] = self._refused_slot(
                    slot_name, working.files_in(slot_name), delta,
                    AttachmentRejectionReason.EXCLUSIVITY_VIOLATION, message,
                )

        results.update(self._run_reconciliations(working, jobs))

        # A slot that received files replaces what its group siblings hold.
        clear_jobs: Dict[str, Tuple[SlotDefinition, AttachmentDelta]] = {}
        for slot_name, result in list(results.items()):
            if slot_name not in jobs or not result.stored:
                continue
            for sibling in definition.exclusivity_siblings(slot_name):
                if not working.files_in(sibling) or sibling in clear_jobs:
                    continue
                if not definition.permissions.authorize(actor.role, status, sibling):
                    continue
                if sibling in jobs:
                    if results[sibling].slot_rejected:
                        continue
                    # Reconciled this request without uploads: clear what it kept.
                    self._clear_reconciled(results[sibling])
                else:
                    clear_jobs[sibling] = (definition.slots[sibling], AttachmentDelta(keep_ids=()))
        if clear_jobs:
            logger.info("Clearing exclusivity siblings: %s", ", ".join(clear_jobs))
            results.update(self._run_reconciliations(working, clear_jobs))

        for slot_name, result in results.items():
            if definition.slot(slot_name) is not None:
                working.attachments[slot_name] = list(result.accepted_files)
        return results

    def _run_reconciliations(
        self,
        working: Application,
        jobs: Mapping[str, Tuple[SlotDefinition, AttachmentDelta]],
    ) -> Dict[str, ReconcileResult]:
        def run(item: Tuple[str, Tuple[SlotDefinition, AttachmentDelta]]) -> ReconcileResult:
            slot_name, (slot_def, delta) = item
            return self.reconciler.reconcile(
                slot_def,
                working.files_in(slot_name),
                delta.uploads,
                keep_ids=delta.keep_ids,
                remove_ids=delta.remove_ids,
                defer_deletes=True,
            )

        items = list(jobs.items())
        if len(items) <= 1 or self.slot_workers == 1:
            return {slot_name: run((slot_name, job)) for slot_name, job in items}

        # Independent slots: store calls may overlap across slots.
        with ThreadPoolExecutor(
            max_workers=min(self.slot_workers, len(items)),
            thread_name_prefix="grantflow-slot",
        ) as pool:
            return dict(zip((name for name, _ in items), pool.map(run, items)))

    def _clear_reconciled(self, result: ReconcileResult) -> None:
        """Move a reconciled sibling's retained files to its pending deletes."""
        result.pending_deletes.extend(result.accepted_files)
        result.accepted_files = []

    def _refused_slot(
        self,
        slot_name: str,
        previous: List[Any],
        delta: AttachmentDelta,
        reason: AttachmentRejectionReason,
        message: str,
    ) -> ReconcileResult:
        rejections = [
            FileRejection(file_name=u.file_name, reason=reason, message=message)
            for u in delta.uploads
        ]
        if not rejections:
            rejections.append(FileRejection(file_name=slot_name, reason=reason, message=message))
        logger.info("Slot %s refused: %s", slot_name, message)
        return ReconcileResult(
            slot=slot_name,
            accepted_files=list(previous),
            rejections=rejections,
            slot_rejected=True,
        )

    # Persistence and publication

    def _save(
        self,
        application: Application,
        expected_version: Optional[int],
        results: Iterable[ReconcileResult],
    ) -> Optional[int]:
        """Conditionally save; returns the new version, or None on conflict."""
        results = list(results)
        try:
            saved = call_with_timeout(
                self.repository.save, self.persistence_timeout, application, expected_version
            )
        except CollaboratorTimeoutError:
            # The write may still land; keep stored blobs so records never dangle.
            logger.warning("Saving %s timed out; outcome unknown", application.id)
            raise PersistenceTimeoutError(f"Saving '{application.id}' timed out") from None
        except GrantflowError:
            self._rollback(results)
            raise
        except Exception as exc:
            self._rollback(results)
            raise PersistenceError(f"Saving '{application.id}' failed: {exc}") from exc

        if not saved.ok:
            logger.info(
                "Conflict saving %s at version %s; discarding request", application.id, expected_version
            )
            self._rollback(results)
            return None
        return saved.new_version

    def _rollback(self, results: List[ReconcileResult]) -> None:
        for result in results:
            if result.stored:
                self.reconciler.rollback(result)

    def _publish(
        self,
        actor: Actor,
        application: Application,
        created: bool,
        persisted_fields: Dict[str, Any],
        attachment_results: Dict[str, ReconcileResult],
        outcome: Optional[TransitionOutcome],
    ) -> None:
        events: List[ApplicationEvent] = []
        notifications: List[Notification] = []

        if created:
            created_event = ApplicationEvent.now(
                type=EventType.APPLICATION_CREATED,
                application_id=application.id,
                actor=actor,
                status=application.status,
                payload={"formType": application.form_type.value},
            )
            events.append(created_event)
            notifications.append(Notification(recipient_id=application.owner_id, event=created_event))
        if persisted_fields:
            events.append(ApplicationEvent.now(
                type=EventType.FIELDS_UPDATED,
                application_id=application.id,
                actor=actor,
                status=application.status,
                payload={"fields": sorted(persisted_fields)},
            ))
        changed_slots = {
            slot: result.accepted_ids
            for slot, result in attachment_results.items()
            if result.changed
        }
        if changed_slots:
            events.append(ApplicationEvent.now(
                type=EventType.ATTACHMENTS_RECONCILED,
                application_id=application.id,
                actor=actor,
                status=application.status,
                payload={"slots": changed_slots},
            ))
        if outcome is not None:
            events.append(outcome.event)
            notifications.extend(outcome.notifications)

        for event in events:
            self.emitter.emit(event)
        self.dispatcher.dispatch(notifications)


__all__ = [
    "AttachmentDelta",
    "StatusResult",
    "SubmissionResult",
    "SubmissionOrchestrator",
]
