"""Unit tests for the attachment reconciliation engine.

Tests cover:
- Per-file type, emptiness and size checks
- Cardinality limits with submission-order priority
- Exclusivity groups inside one slot
- keep_ids / remove_ids semantics, including stale remove ids
- Idempotence of repeated reconciliation
- Deferred deletes, rollback and storage failures
"""

import threading
import time

import pytest

from grantflow.forms import FORM_DEFINITIONS, get_form_definition
from grantflow.memory import InMemoryAttachmentStore
from grantflow.reconciliation import AttachmentReconciler
from grantflow.slots import MB, PDF_TYPES, ZIP_TYPES, slot
from grantflow.types import AttachmentRejectionReason

from tests.factories import FailingAttachmentStore, pdf, png, sample_upload, zip_file


PDF_SLOT = slot("pdfDocuments", PDF_TYPES, max_mb=5, max_count=5)
SIGNATURE_SLOT = slot("guideSignature", PDF_TYPES, max_mb=1)
MIXED_SLOT = slot("additionalDocuments", PDF_TYPES | ZIP_TYPES, max_mb=5, max_count=5,
                  group="additionalDocuments")

GROUPED_SLOTS = [
    pytest.param(slot_def, id=f"{definition.form_type.value}-{name}")
    for definition in FORM_DEFINITIONS.values()
    for name, slot_def in definition.slots.items()
    if slot_def.exclusivity_group is not None
]
MULTI_FILE_GROUPED_SLOTS = [p for p in GROUPED_SLOTS if p.values[0].max_count > 1]


@pytest.fixture
def reconciler(store):
    return AttachmentReconciler(store)


def _reasons(result):
    return [r.reason for r in result.rejections]


def _commit(reconciler, slot_def, uploads):
    """Reconcile uploads into an empty slot and return the committed files."""
    result = reconciler.reconcile(slot_def, [], uploads)
    assert result.rejections == []
    return result.accepted_files


class TestUploadChecks:
    """Test the per-file checks."""

    def test_accepts_valid_upload(self, reconciler, store):
        result = reconciler.reconcile(PDF_SLOT, [], [pdf("a.pdf")])
        assert [a.original_name for a in result.accepted_files] == ["a.pdf"]
        assert result.accepted_files[0].slot == "pdfDocuments"
        assert result.accepted_files[0].storage_ref in store
        assert result.rejections == []

    def test_stored_metadata(self, reconciler, store):
        result = reconciler.reconcile(PDF_SLOT, [], [pdf("a.pdf", size=10)])
        metadata = store.metadata(result.accepted_files[0].storage_ref)
        assert metadata == {
            "slot": "pdfDocuments",
            "originalName": "a.pdf",
            "mimeType": "application/pdf",
            "sizeBytes": 10,
        }

    def test_rejects_wrong_type(self, reconciler, store):
        result = reconciler.reconcile(PDF_SLOT, [], [png("photo.png")])
        assert _reasons(result) == [AttachmentRejectionReason.TYPE_REJECTED]
        assert result.accepted_files == []
        assert len(store) == 0

    def test_rejects_empty_file(self, reconciler):
        result = reconciler.reconcile(PDF_SLOT, [], [pdf("empty.pdf", size=0)])
        assert _reasons(result) == [AttachmentRejectionReason.EMPTY_FILE]

    def test_rejects_oversized_file(self, reconciler):
        result = reconciler.reconcile(SIGNATURE_SLOT, [], [pdf("big.pdf", size=MB + 1)])
        assert _reasons(result) == [AttachmentRejectionReason.SIZE_EXCEEDED]

    def test_file_at_limit_is_accepted(self, reconciler):
        result = reconciler.reconcile(SIGNATURE_SLOT, [], [pdf("edge.pdf", size=MB)])
        assert result.rejections == []

    def test_bad_file_does_not_block_others(self, reconciler):
        result = reconciler.reconcile(PDF_SLOT, [], [png("x.png"), pdf("a.pdf")])
        assert [a.original_name for a in result.accepted_files] == ["a.pdf"]
        assert result.rejections[0].file_name == "x.png"


class TestCardinality:
    """Test count limits."""

    def test_six_pdfs_into_five_slot(self, reconciler, store):
        uploads = [pdf(f"f{i}.pdf") for i in range(1, 7)]
        result = reconciler.reconcile(PDF_SLOT, [], uploads)
        assert [a.original_name for a in result.accepted_files] == [
            "f1.pdf", "f2.pdf", "f3.pdf", "f4.pdf", "f5.pdf",
        ]
        assert len(result.rejections) == 1
        assert result.rejections[0].file_name == "f6.pdf"
        assert result.rejections[0].reason is AttachmentRejectionReason.CARDINALITY_EXCEEDED
        assert len(store) == 5

    def test_retained_files_count_toward_limit(self, reconciler):
        previous = _commit(reconciler, PDF_SLOT, [pdf(f"old{i}.pdf") for i in range(3)])
        result = reconciler.reconcile(PDF_SLOT, previous, [pdf("n1.pdf"), pdf("n2.pdf"), pdf("n3.pdf")])
        assert [a.original_name for a in result.accepted_files] == [
            "old0.pdf", "old1.pdf", "old2.pdf", "n1.pdf", "n2.pdf",
        ]
        assert [r.file_name for r in result.rejections] == ["n3.pdf"]

    def test_single_slot_rejects_second_file(self, reconciler):
        previous = _commit(reconciler, SIGNATURE_SLOT, [pdf("sig.pdf")])
        result = reconciler.reconcile(SIGNATURE_SLOT, previous, [pdf("sig2.pdf")])
        assert result.accepted_files == previous
        assert _reasons(result) == [AttachmentRejectionReason.CARDINALITY_EXCEEDED]

    def test_single_slot_replacement_with_empty_keep(self, reconciler, store):
        previous = _commit(reconciler, SIGNATURE_SLOT, [pdf("sig.pdf")])
        result = reconciler.reconcile(SIGNATURE_SLOT, previous, [pdf("sig2.pdf")], keep_ids=[])
        assert [a.original_name for a in result.accepted_files] == ["sig2.pdf"]
        assert result.deleted == previous
        assert previous[0].storage_ref not in store


class TestExclusivity:
    """Test exclusivity groups inside one slot."""

    def test_zip_and_pdf_together_rejects_whole_slot(self, reconciler, store):
        result = reconciler.reconcile(MIXED_SLOT, [], [zip_file("a.zip"), pdf("b.pdf")])
        assert result.slot_rejected is True
        assert result.accepted_files == []
        assert _reasons(result) == [AttachmentRejectionReason.EXCLUSIVITY_VIOLATION] * 2
        assert len(store) == 0

    def test_violation_keeps_committed_files(self, reconciler):
        previous = _commit(reconciler, MIXED_SLOT, [pdf("kept.pdf")])
        result = reconciler.reconcile(MIXED_SLOT, previous, [zip_file(), pdf()])
        assert result.accepted_files == previous
        assert result.pending_deletes == [] and result.deleted == []

    def test_zip_replaces_committed_pdfs(self, reconciler, store):
        previous = _commit(reconciler, MIXED_SLOT, [pdf("a.pdf"), pdf("b.pdf")])
        result = reconciler.reconcile(MIXED_SLOT, previous, [zip_file("all.zip")])
        assert [a.original_name for a in result.accepted_files] == ["all.zip"]
        assert {a.id for a in result.deleted} == {a.id for a in previous}
        assert len(store) == 1

    def test_same_kind_batch_appends(self, reconciler):
        previous = _commit(reconciler, MIXED_SLOT, [pdf("a.pdf")])
        result = reconciler.reconcile(MIXED_SLOT, previous, [pdf("b.pdf")])
        assert [a.original_name for a in result.accepted_files] == ["a.pdf", "b.pdf"]

    def test_zip_sent_to_pdf_only_slot_still_mixes_kinds(self, reconciler, store):
        pdf_files = get_form_definition("UG1").slot("pdfFiles")
        result = reconciler.reconcile(pdf_files, [], [zip_file("all.zip"), pdf("a.pdf")])
        assert result.slot_rejected is True
        assert [(r.file_name, r.reason) for r in result.rejections] == [
            ("all.zip", AttachmentRejectionReason.EXCLUSIVITY_VIOLATION),
            ("a.pdf", AttachmentRejectionReason.EXCLUSIVITY_VIOLATION),
        ]
        assert result.stored == []
        assert len(store) == 0

    def test_invalid_files_still_count_toward_kinds(self, reconciler, store):
        result = reconciler.reconcile(MIXED_SLOT, [], [pdf("ok.pdf"), zip_file("empty.zip", size=0)])
        assert _reasons(result) == [AttachmentRejectionReason.EXCLUSIVITY_VIOLATION] * 2
        assert len(store) == 0

    def test_lone_zip_in_pdf_only_slot_is_a_type_error(self, reconciler):
        pdf_files = get_form_definition("UG1").slot("pdfFiles")
        previous = _commit(reconciler, pdf_files, [pdf("a.pdf")])
        result = reconciler.reconcile(pdf_files, previous, [zip_file()])
        assert _reasons(result) == [AttachmentRejectionReason.TYPE_REJECTED]
        assert result.accepted_files == previous

    def test_pdf_and_image_bills_coexist(self, reconciler):
        bills = get_form_definition("PG2A").slot("bills")
        result = reconciler.reconcile(bills, [], [pdf("bill1.pdf"), png("bill2.png")])
        assert result.rejections == []
        assert [a.original_name for a in result.accepted_files] == ["bill1.pdf", "bill2.png"]

    def test_pdf_bill_keeps_committed_image_bills(self, reconciler, store):
        bills = get_form_definition("PG2A").slot("bills")
        previous = _commit(reconciler, bills, [png("bill1.png")])
        result = reconciler.reconcile(bills, previous, [pdf("bill2.pdf")])
        assert [a.original_name for a in result.accepted_files] == ["bill1.png", "bill2.pdf"]
        assert result.deleted == [] and result.rejections == []
        assert previous[0].storage_ref in store

    def test_rejected_batch_does_not_replace(self, reconciler):
        previous = _commit(reconciler, MIXED_SLOT, [pdf("a.pdf"), pdf("b.pdf")])
        result = reconciler.reconcile(MIXED_SLOT, previous, [zip_file("empty.zip", size=0)])
        assert result.accepted_files == previous
        assert result.deleted == []

    def test_failed_store_does_not_replace(self):
        store = FailingAttachmentStore(fail_put_names={"all.zip"})
        reconciler = AttachmentReconciler(store)
        previous = _commit(reconciler, MIXED_SLOT, [pdf("a.pdf")])
        result = reconciler.reconcile(MIXED_SLOT, previous, [zip_file("all.zip")])
        assert result.accepted_files == previous
        assert _reasons(result) == [AttachmentRejectionReason.STORAGE_ERROR]
        assert previous[0].storage_ref in store


class TestGroupedFormSlots:
    """Exclusivity rules hold for every grouped slot of every form."""

    @pytest.mark.parametrize("slot_def", GROUPED_SLOTS)
    def test_mixed_batch_is_refused(self, reconciler, store, slot_def):
        result = reconciler.reconcile(slot_def, [], [zip_file(), pdf()])
        assert result.slot_rejected is True
        assert _reasons(result) == [AttachmentRejectionReason.EXCLUSIVITY_VIOLATION] * 2
        assert len(store) == 0

    @pytest.mark.parametrize("slot_def", GROUPED_SLOTS)
    def test_mixed_batch_keeps_committed_files(self, reconciler, slot_def):
        previous = _commit(reconciler, slot_def, [sample_upload(slot_def, "first")])
        result = reconciler.reconcile(slot_def, previous, [zip_file(), pdf()])
        assert result.accepted_files == previous
        assert result.deleted == [] and result.pending_deletes == []

    @pytest.mark.parametrize("slot_def", MULTI_FILE_GROUPED_SLOTS)
    def test_same_kind_batch_appends(self, reconciler, slot_def):
        previous = _commit(reconciler, slot_def, [sample_upload(slot_def, "first")])
        second = sample_upload(slot_def, "second")
        result = reconciler.reconcile(slot_def, previous, [second])
        assert result.rejections == []
        assert [a.original_name for a in result.accepted_files] == [
            previous[0].original_name, second.file_name,
        ]


class TestKeepAndRemove:
    """Test keep_ids / remove_ids."""

    def test_keep_none_retains_everything(self, reconciler):
        previous = _commit(reconciler, PDF_SLOT, [pdf("a.pdf"), pdf("b.pdf")])
        result = reconciler.reconcile(PDF_SLOT, previous)
        assert result.accepted_files == previous
        assert result.changed is False

    def test_files_missing_from_keep_are_deleted(self, reconciler, store):
        previous = _commit(reconciler, PDF_SLOT, [pdf("a.pdf"), pdf("b.pdf")])
        result = reconciler.reconcile(PDF_SLOT, previous, keep_ids=[previous[0].id])
        assert result.accepted_files == [previous[0]]
        assert result.deleted == [previous[1]]
        assert previous[1].storage_ref not in store

    def test_remove_wins_over_keep(self, reconciler):
        previous = _commit(reconciler, PDF_SLOT, [pdf("a.pdf"), pdf("b.pdf")])
        result = reconciler.reconcile(
            PDF_SLOT, previous,
            keep_ids=[a.id for a in previous],
            remove_ids=[previous[0].id],
        )
        assert result.accepted_files == [previous[1]]

    def test_unknown_remove_id_rejects_slot(self, reconciler, store):
        previous = _commit(reconciler, PDF_SLOT, [pdf("a.pdf")])
        result = reconciler.reconcile(PDF_SLOT, previous, [pdf("new.pdf")], remove_ids=["att_stale"])
        assert result.slot_rejected is True
        assert result.accepted_files == previous
        assert _reasons(result) == [
            AttachmentRejectionReason.INVALID_REMOVE_ID,
            AttachmentRejectionReason.INVALID_REMOVE_ID,
        ]
        assert result.rejections[0].attachment_id == "att_stale"
        assert len(store) == 1

    def test_unknown_keep_ids_are_ignored(self, reconciler):
        previous = _commit(reconciler, PDF_SLOT, [pdf("a.pdf")])
        result = reconciler.reconcile(PDF_SLOT, previous, keep_ids=[previous[0].id, "att_other"])
        assert result.accepted_files == previous
        assert result.rejections == []

    def test_reconcile_is_idempotent(self, reconciler):
        previous = _commit(reconciler, PDF_SLOT, [pdf("a.pdf"), pdf("b.pdf"), pdf("c.pdf")])
        keep = [previous[0].id, previous[2].id]
        first = reconciler.reconcile(PDF_SLOT, previous, keep_ids=keep, remove_ids=[previous[2].id])
        second = reconciler.reconcile(
            PDF_SLOT, first.accepted_files, keep_ids=keep, remove_ids=[],
        )
        third = reconciler.reconcile(PDF_SLOT, second.accepted_files, keep_ids=keep)
        assert first.accepted_ids == second.accepted_ids == third.accepted_ids == [previous[0].id]
        assert second.changed is False and third.changed is False


class TestDeferredDeletes:
    """Test deferred deletes, commit and rollback."""

    def test_deferred_deletes_wait_for_commit(self, reconciler, store):
        previous = _commit(reconciler, PDF_SLOT, [pdf("a.pdf"), pdf("b.pdf")])
        result = reconciler.reconcile(PDF_SLOT, previous, keep_ids=[], defer_deletes=True)
        assert result.accepted_files == []
        assert result.pending_deletes == previous
        assert all(a.storage_ref in store for a in previous)

        assert reconciler.commit_deletes(result) == []
        assert result.pending_deletes == []
        assert result.deleted == previous
        assert len(store) == 0

    def test_rollback_deletes_stored_blobs(self, reconciler, store):
        previous = _commit(reconciler, PDF_SLOT, [pdf("a.pdf")])
        result = reconciler.reconcile(
            PDF_SLOT, previous, [pdf("b.pdf")], keep_ids=[], defer_deletes=True
        )
        assert len(store) == 2
        reconciler.rollback(result)
        assert len(store) == 1
        assert previous[0].storage_ref in store
        assert result.stored == [] and result.pending_deletes == []


class TestStorageFailures:
    """Test collaborator failures become per-file rejections."""

    def test_put_failure_rejects_only_that_file(self):
        store = FailingAttachmentStore(fail_put_names={"bad.pdf"})
        reconciler = AttachmentReconciler(store)
        result = reconciler.reconcile(PDF_SLOT, [], [pdf("good.pdf"), pdf("bad.pdf"), pdf("also.pdf")])
        assert [a.original_name for a in result.accepted_files] == ["good.pdf", "also.pdf"]
        assert _reasons(result) == [AttachmentRejectionReason.STORAGE_ERROR]
        assert result.rejections[0].file_name == "bad.pdf"

    def test_delete_failure_reports_and_drops_record(self):
        store = FailingAttachmentStore()
        reconciler = AttachmentReconciler(store)
        previous = _commit(reconciler, PDF_SLOT, [pdf("a.pdf")])
        store.fail_delete_refs.add(previous[0].storage_ref)

        result = reconciler.reconcile(PDF_SLOT, previous, remove_ids=[previous[0].id])
        assert result.accepted_files == []
        assert _reasons(result) == [AttachmentRejectionReason.STORAGE_ERROR]
        assert result.rejections[0].attachment_id == previous[0].id
        assert result.deleted == []

    def test_failed_commit_returns_new_rejections(self):
        store = FailingAttachmentStore()
        reconciler = AttachmentReconciler(store)
        previous = _commit(reconciler, PDF_SLOT, [pdf("a.pdf")])
        store.fail_delete_refs.add(previous[0].storage_ref)

        result = reconciler.reconcile(PDF_SLOT, previous, keep_ids=[], defer_deletes=True)
        failures = reconciler.commit_deletes(result)
        assert [f.reason for f in failures] == [AttachmentRejectionReason.STORAGE_ERROR]

    def test_timeout_is_a_storage_error(self):
        class SlowStore(InMemoryAttachmentStore):
            def put(self, data, metadata):
                time.sleep(0.5)
                return super().put(data, metadata)

        reconciler = AttachmentReconciler(SlowStore(), timeout=0.05)
        result = reconciler.reconcile(PDF_SLOT, [], [pdf("slow.pdf")])
        assert result.accepted_files == []
        assert _reasons(result) == [AttachmentRejectionReason.STORAGE_ERROR]

    def test_put_finishing_after_timeout_is_deleted(self):
        discarded = threading.Event()

        class LateStore(InMemoryAttachmentStore):
            def put(self, data, metadata):
                time.sleep(0.2)
                return super().put(data, metadata)

            def delete(self, storage_ref):
                super().delete(storage_ref)
                discarded.set()

        store = LateStore()
        reconciler = AttachmentReconciler(store, timeout=0.02)
        result = reconciler.reconcile(PDF_SLOT, [], [pdf("late.pdf")])
        assert _reasons(result) == [AttachmentRejectionReason.STORAGE_ERROR]
        assert discarded.wait(timeout=5)
        assert len(store) == 0
