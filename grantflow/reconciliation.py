"""Attachment reconciliation engine.

Given a slot's committed files and a client-declared delta (new uploads,
ids to keep, ids to remove), the reconciler computes the slot's new
committed file set and performs the store/delete calls against the
attachment store.

Rules, applied in order:

1. ``remove_ids`` must name committed files. Any unknown id rejects the whole
   slot delta so that a stale client never deletes something it did not mean
   to.
2. In a slot with an exclusivity group, one request may not mix a ZIP bundle
   with loose files. The raw batch is judged, before any per-file check, and
   a mixed batch rejects the whole slot delta.
3. Every upload is checked against the slot's allowed types and size limit.
   A failing file is rejected on its own. Retained files are the committed
   files that are kept and not removed; in an exclusivity-grouped slot a batch
   replaces retained files of the other kind once one of its files is stored.
4. Retained files come first, then valid uploads in the order submitted.
   Uploads beyond the slot's maximum are rejected, newest first.
5. Accepted uploads are stored one by one. An Attachment is minted only
   after its bytes were stored. Committed files that did not survive are
   deleted afterwards (or handed back to the caller when deletes are
   deferred until the application is saved).

Nothing here raises for a single bad file: every problem becomes a
FileRejection on the result.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set

from grantflow.collaborators import AttachmentStore, call_with_timeout
from grantflow.errors import FileRejection
from grantflow.models import Attachment, Upload, new_attachment_id
from grantflow.slots import SlotDefinition, exclusivity_kind
from grantflow.types import AttachmentRejectionReason

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    """Outcome of reconciling one slot.

    Attributes:
        slot: Slot name
        accepted_files: The slot's new committed file set, in order
        rejections: Per-file (or per-slot) rejections
        stored: Attachments stored during this pass
        deleted: Committed attachments whose bytes were deleted
        pending_deletes: Attachments to delete once the caller commits
        slot_rejected: True when the whole slot delta was refused
    """
    slot: str
    accepted_files: List[Attachment] = field(default_factory=list)
    rejections: List[FileRejection] = field(default_factory=list)
    stored: List[Attachment] = field(default_factory=list)
    deleted: List[Attachment] = field(default_factory=list)
    pending_deletes: List[Attachment] = field(default_factory=list)
    slot_rejected: bool = False

    @property
    def changed(self) -> bool:
        return bool(self.stored or self.deleted or self.pending_deletes)

    @property
    def accepted_ids(self) -> List[str]:
        return [a.id for a in self.accepted_files]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for serialization."""
        return {
            "accepted": [a.to_dict() for a in self.accepted_files],
            "rejections": [r.to_dict() for r in self.rejections],
        }


class AttachmentReconciler:
    """Reconciles attachment slots against an attachment store.

    The reconciler is stateless between calls; one instance can serve
    concurrent reconciliations of different slots.

    Attributes:
        store: Blob store used for put/delete
        timeout: Per-call timeout in seconds (None waits indefinitely)

    Examples:
        >>> from grantflow.memory import InMemoryAttachmentStore
        >>> from grantflow.slots import PDF_TYPES, slot
        >>> reconciler = AttachmentReconciler(InMemoryAttachmentStore())
        >>> pdfs = slot("pdfDocuments", PDF_TYPES, max_mb=5, max_count=5)
        >>> result = reconciler.reconcile(
        ...     pdfs, [], [Upload("a.pdf", "application/pdf", b"%PDF-1.4")]
        ... )
        >>> len(result.accepted_files), result.rejections
        (1, [])
    """

    def __init__(self, store: AttachmentStore, timeout: Optional[float] = None):
        self.store = store
        self.timeout = timeout

    def reconcile(
        self,
        slot_def: SlotDefinition,
        previous_files: Sequence[Attachment],
        new_uploads: Iterable[Upload] = (),
        keep_ids: Optional[Iterable[str]] = None,
        remove_ids: Optional[Iterable[str]] = None,
        defer_deletes: bool = False,
    ) -> ReconcileResult:
        """Compute and apply a slot's new committed file set.

        Args:
            slot_def: Rules of the slot
            previous_files: Files currently committed to the slot
            new_uploads: Files submitted in this request, in client order
            keep_ids: Committed ids the client wants retained; None keeps
                every committed file that is not removed
            remove_ids: Committed ids the client explicitly deletes
            defer_deletes: Return deletions in ``pending_deletes`` instead of
                deleting now

        Returns:
            ReconcileResult with the accepted files and rejections
        """
        previous = list(previous_files)
        uploads = list(new_uploads)
        removals = list(remove_ids or [])
        result = ReconcileResult(slot=slot_def.name)

        previous_ids = {a.id for a in previous}
        unknown = [i for i in removals if i not in previous_ids]
        if unknown:
            return self._reject_slot(
                result,
                previous,
                uploads,
                AttachmentRejectionReason.INVALID_REMOVE_ID,
                f"Cannot remove {', '.join(unknown)}: not committed to slot '{slot_def.name}'",
                extra=[
                    FileRejection(
                        file_name=i,
                        reason=AttachmentRejectionReason.INVALID_REMOVE_ID,
                        message=f"'{i}' is not committed to slot '{slot_def.name}'",
                        attachment_id=i,
                    )
                    for i in unknown
                ],
            )

        # Judged on the raw batch: a ZIP sent to a PDF-only slot still mixes kinds.
        batch_kinds: Set[str] = set()
        if slot_def.exclusivity_group is not None:
            batch_kinds = {exclusivity_kind(u) for u in uploads}
            if len(batch_kinds) > 1:
                return self._reject_slot(
                    result,
                    previous,
                    uploads,
                    AttachmentRejectionReason.EXCLUSIVITY_VIOLATION,
                    f"Slot '{slot_def.name}' cannot mix a ZIP bundle and loose files "
                    f"in one submission",
                )

        valid: List[Upload] = []
        for upload in uploads:
            rejection = self._check_upload(slot_def, upload)
            if rejection is None:
                valid.append(upload)
            else:
                result.rejections.append(rejection)

        batch_kind = batch_kinds.pop() if batch_kinds and valid else None

        keep = None if keep_ids is None else set(keep_ids)
        remove = set(removals)
        retained = [
            a for a in previous
            if (keep is None or a.id in keep) and a.id not in remove
        ]
        replaced: List[Attachment] = []
        if batch_kind is not None:
            replaced = [a for a in retained if exclusivity_kind(a) != batch_kind]
            retained = [a for a in retained if exclusivity_kind(a) == batch_kind]

        room = max(0, slot_def.max_count - len(retained))
        to_store, excess = valid[:room], valid[room:]
        for upload in excess:
            result.rejections.append(FileRejection(
                file_name=upload.file_name,
                reason=AttachmentRejectionReason.CARDINALITY_EXCEEDED,
                message=f"Slot '{slot_def.name}' holds at most {slot_def.max_count} file(s)",
            ))

        for upload in to_store:
            attachment = self._store(slot_def, upload, result)
            if attachment is not None:
                result.stored.append(attachment)

        if replaced:
            if result.stored:
                logger.info(
                    "Slot %s: %d %s upload(s) replace %d committed file(s) of another kind",
                    slot_def.name, len(result.stored), batch_kind, len(replaced),
                )
            else:
                # Nothing of the new kind landed, so the committed files stay.
                kept = {a.id for a in retained + replaced}
                retained = [a for a in previous if a.id in kept]

        result.accepted_files = retained + result.stored

        surviving = {a.id for a in retained}
        obsolete = [a for a in previous if a.id not in surviving]
        if defer_deletes:
            result.pending_deletes = obsolete
        else:
            self._delete_all(obsolete, result)

        if result.changed or result.rejections:
            logger.debug(
                "Slot %s reconciled: %d kept, %d stored, %d removed, %d rejected",
                slot_def.name,
                len(retained),
                len(result.stored),
                len(obsolete),
                len(result.rejections),
            )
        return result

    def commit_deletes(self, result: ReconcileResult) -> List[FileRejection]:
        """Delete the files a deferred reconciliation marked for removal.

        Returns:
            STORAGE_ERROR rejections for deletes that failed (also appended
            to ``result.rejections``)
        """
        pending, result.pending_deletes = result.pending_deletes, []
        before = len(result.rejections)
        self._delete_all(pending, result)
        return result.rejections[before:]

    def rollback(self, result: ReconcileResult) -> None:
        """Delete everything a reconciliation stored.

        Used when the application save fails, so that no blob is left
        without a committed record. Failures are logged.
        """
        for attachment in result.stored:
            try:
                call_with_timeout(self.store.delete, self.timeout, attachment.storage_ref)
            except Exception:
                logger.warning(
                    "Rollback could not delete %s (%s); blob is orphaned",
                    attachment.id, attachment.storage_ref, exc_info=True,
                )
        result.stored = []
        result.pending_deletes = []

    def _check_upload(self, slot_def: SlotDefinition, upload: Upload) -> Optional[FileRejection]:
        if not slot_def.accepts_type(upload):
            return FileRejection(
                file_name=upload.file_name,
                reason=AttachmentRejectionReason.TYPE_REJECTED,
                message=f"'{upload.file_name}' ({upload.mime_type}) is not accepted in '{slot_def.name}'",
            )
        if upload.size_bytes == 0:
            return FileRejection(
                file_name=upload.file_name,
                reason=AttachmentRejectionReason.EMPTY_FILE,
                message=f"'{upload.file_name}' is empty",
            )
        if upload.size_bytes > slot_def.max_size_bytes:
            return FileRejection(
                file_name=upload.file_name,
                reason=AttachmentRejectionReason.SIZE_EXCEEDED,
                message=(
                    f"'{upload.file_name}' is {upload.size_bytes} bytes; "
                    f"'{slot_def.name}' allows {slot_def.max_size_bytes}"
                ),
            )
        return None

    def _store(
        self,
        slot_def: SlotDefinition,
        upload: Upload,
        result: ReconcileResult,
    ) -> Optional[Attachment]:
        metadata = {
            "slot": slot_def.name,
            "originalName": upload.file_name,
            "mimeType": upload.mime_type,
            "sizeBytes": upload.size_bytes,
        }
        try:
            storage_ref = call_with_timeout(
                self.store.put, self.timeout, upload.data, metadata,
                on_late_result=self._discard_late_blob,
            )
        except Exception as exc:
            logger.warning("Storing %s in slot %s failed: %s", upload.file_name, slot_def.name, exc)
            result.rejections.append(FileRejection(
                file_name=upload.file_name,
                reason=AttachmentRejectionReason.STORAGE_ERROR,
                message=f"Could not store '{upload.file_name}'",
            ))
            return None
        return Attachment(
            id=new_attachment_id(),
            slot=slot_def.name,
            original_name=upload.file_name,
            mime_type=upload.mime_type,
            size_bytes=upload.size_bytes,
            storage_ref=storage_ref,
        )

    def _discard_late_blob(self, storage_ref: str) -> None:
        """Delete bytes whose put finished after the request gave up on it."""
        try:
            self.store.delete(storage_ref)
        except Exception:
            logger.warning("Late blob %s could not be deleted and is orphaned", storage_ref, exc_info=True)
        else:
            logger.info("Deleted late blob %s", storage_ref)

    def _delete_all(self, attachments: List[Attachment], result: ReconcileResult) -> None:
        for attachment in attachments:
            try:
                call_with_timeout(self.store.delete, self.timeout, attachment.storage_ref)
            except Exception as exc:
                logger.warning(
                    "Deleting %s (%s) failed, blob is orphaned: %s",
                    attachment.id, attachment.storage_ref, exc,
                )
                result.rejections.append(FileRejection(
                    file_name=attachment.original_name,
                    reason=AttachmentRejectionReason.STORAGE_ERROR,
                    message=f"Could not delete '{attachment.original_name}'",
                    attachment_id=attachment.id,
                ))
            else:
                result.deleted.append(attachment)

    def _reject_slot(
        self,
        result: ReconcileResult,
        previous: List[Attachment],
        uploads: List[Upload],
        reason: AttachmentRejectionReason,
        message: str,
        extra: Optional[List[FileRejection]] = None,
    ) -> ReconcileResult:
        logger.info("Slot %s delta rejected: %s", result.slot, message)
        result.slot_rejected = True
        result.accepted_files = list(previous)
        result.rejections.extend(extra or [])
        result.rejections.extend(
            FileRejection(file_name=u.file_name, reason=reason, message=message)
            for u in uploads
        )
        return result


__all__ = [
    "ReconcileResult",
    "AttachmentReconciler",
]
