"""
End-to-end tests for DistributionService over the in-memory adapters.

Covers creation with auto-inclusion, the full hand-off lifecycle, verification
with discrepancies, draft editing, history, transmittal and concurrency.
"""
import asyncio
import pytest
from unittest.mock import AsyncMock

from conftest import ACCOUNTING, LOGISTIC, NORMAL, OUTSIDER, RECEIVER, SENDER, URGENT
from services.distribution.errors import (
    DiscrepancyConfirmationRequiredError,
    IllegalTransitionError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from services.distribution.models import (
    DistributionAction,
    DistributionStatus,
    DocumentRef,
    DocumentType,
    DocumentVerdict,
    HistoryAction,
    VerificationStatus,
)
from services.distribution.service import DistributionService
from services.distribution.store import InMemoryDistributionStore
from services.distribution.verification import VerificationEngine


def invoice_ref(document_id):
    return DocumentRef(document_type=DocumentType.INVOICE, document_id=document_id)


def additional_ref(document_id):
    return DocumentRef(document_type=DocumentType.ADDITIONAL_DOCUMENT, document_id=document_id)


async def create_invoice_distribution(service, *invoice_ids, notes=None):
    return await service.create_distribution(
        SENDER,
        document_type=DocumentType.INVOICE,
        type_id=URGENT.id,
        origin_department_id=ACCOUNTING.id,
        destination_department_id=LOGISTIC.id,
        notes=notes,
        selected_documents=[invoice_ref(i) for i in invoice_ids],
    )


async def advance_to_received(service, distribution_id):
    distribution = await service.get_distribution(distribution_id)
    await service.verify_sender(distribution_id, SENDER, VerificationEngine.prefill(distribution))
    await service.send(distribution_id, SENDER)
    return await service.receive(distribution_id, RECEIVER)


class TestCreateDistribution:

    @pytest.mark.asyncio
    async def test_creates_draft_with_auto_included_attachments(self, service):
        distribution, warnings = await create_invoice_distribution(service, "inv-1", notes="Originals")

        assert distribution.status == DistributionStatus.DRAFT
        assert distribution.distribution_number == "25/000H-ACC/U/00001"
        assert distribution.creator == SENDER
        assert distribution.notes == "Originals"
        assert [(l.document_id, l.auto_included) for l in distribution.documents] == [
            ("inv-1", False),
            ("ad-1", True),
        ]
        assert [w.document_id for w in warnings] == ["ad-2"]
        assert "INV-001" in warnings[0].message

    @pytest.mark.asyncio
    async def test_creation_writes_one_history_entry(self, service):
        distribution, _ = await create_invoice_distribution(service, "inv-1")
        history = await service.get_history(distribution.id)
        assert len(history) == 1
        assert history[0].action == HistoryAction.CREATED
        assert history[0].to_status == DistributionStatus.DRAFT
        assert history[0].actor == SENDER

    @pytest.mark.asyncio
    async def test_shared_attachment_included_once(self, service):
        distribution, warnings = await create_invoice_distribution(service, "inv-2", "inv-1")
        auto = distribution.auto_included_links
        assert [l.document_id for l in auto] == ["ad-1", "ad-3"]
        assert auto[0].included_by == ["inv-1", "inv-2"]
        assert len(warnings) == 1

    @pytest.mark.asyncio
    async def test_sequence_increments_per_type(self, service):
        first, _ = await create_invoice_distribution(service, "inv-1")
        second, _ = await create_invoice_distribution(service, "inv-2")
        other, _ = await service.create_distribution(
            SENDER, DocumentType.ADDITIONAL_DOCUMENT, NORMAL.id, ACCOUNTING.id, LOGISTIC.id,
        )
        assert first.distribution_number.endswith("/U/00001")
        assert second.distribution_number.endswith("/U/00002")
        assert other.distribution_number == "25/000H-ACC/N/00001"

    @pytest.mark.asyncio
    async def test_duplicate_selection_collapsed(self, service):
        distribution, _ = await create_invoice_distribution(service, "inv-1", "inv-1")
        assert len(distribution.explicit_links) == 1

    @pytest.mark.asyncio
    async def test_same_origin_and_destination_rejected(self, service, store):
        with pytest.raises(ValidationError):
            await service.create_distribution(
                SENDER, DocumentType.INVOICE, URGENT.id, ACCOUNTING.id, ACCOUNTING.id,
            )
        assert store.count() == 0

    @pytest.mark.asyncio
    async def test_creator_must_belong_to_origin(self, service, store):
        with pytest.raises(UnauthorizedError):
            await service.create_distribution(
                OUTSIDER, DocumentType.INVOICE, URGENT.id, ACCOUNTING.id, LOGISTIC.id,
            )
        assert store.count() == 0

    @pytest.mark.asyncio
    async def test_document_elsewhere_rejected(self, service):
        with pytest.raises(ValidationError):
            await create_invoice_distribution(service, "inv-3")

    @pytest.mark.asyncio
    async def test_unknown_document(self, service):
        with pytest.raises(NotFoundError):
            await create_invoice_distribution(service, "inv-404")

    @pytest.mark.asyncio
    async def test_document_type_must_match(self, service):
        with pytest.raises(ValidationError):
            await service.create_distribution(
                SENDER, DocumentType.INVOICE, URGENT.id, ACCOUNTING.id, LOGISTIC.id,
                selected_documents=[additional_ref("ad-1")],
            )

    @pytest.mark.asyncio
    async def test_unknown_type_and_department(self, service):
        with pytest.raises(NotFoundError):
            await service.create_distribution(SENDER, DocumentType.INVOICE, "type-x", ACCOUNTING.id, LOGISTIC.id)
        with pytest.raises(NotFoundError):
            await service.create_distribution(SENDER, DocumentType.INVOICE, URGENT.id, ACCOUNTING.id, "dept-x")

    @pytest.mark.asyncio
    async def test_notes_length_bound(self, service):
        with pytest.raises(ValidationError):
            await create_invoice_distribution(service, "inv-1", notes="x" * 1001)

    @pytest.mark.asyncio
    async def test_empty_distribution_allowed(self, service):
        distribution, warnings = await create_invoice_distribution(service)
        assert distribution.documents == []
        assert warnings == []


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_full_lifecycle(self, service):
        distribution, _ = await create_invoice_distribution(service, "inv-1")
        did = distribution.id

        verified = await service.verify_sender(did, SENDER, VerificationEngine.prefill(distribution), notes="checked")
        assert verified.status == DistributionStatus.VERIFIED_BY_SENDER
        assert verified.sender_verifier == SENDER
        assert all(l.sender_verified for l in verified.documents)

        sent = await service.send(did, SENDER)
        assert sent.status == DistributionStatus.SENT

        received = await service.receive(did, RECEIVER)
        assert received.status == DistributionStatus.RECEIVED

        verified = await service.verify_receiver(did, RECEIVER, VerificationEngine.prefill(received))
        assert verified.status == DistributionStatus.VERIFIED_BY_RECEIVER
        assert verified.receiver_verifier == RECEIVER
        assert verified.has_discrepancies is False

        completed = await service.complete(did, RECEIVER)
        assert completed.status == DistributionStatus.COMPLETED
        for field in ("sender_verified_at", "sent_at", "received_at", "receiver_verified_at", "completed_at"):
            assert getattr(completed, field) is not None
        assert completed.sent_at < completed.received_at < completed.completed_at

        history = await service.get_history(did)
        assert [h.action for h in history] == [
            HistoryAction.CREATED,
            HistoryAction.SENDER_VERIFIED,
            HistoryAction.SENT,
            HistoryAction.RECEIVED,
            HistoryAction.RECEIVER_VERIFIED,
            HistoryAction.COMPLETED,
        ]
        assert history[1].notes == "checked"
        assert completed.version == 5

    @pytest.mark.asyncio
    async def test_send_before_sender_verification(self, service):
        distribution, _ = await create_invoice_distribution(service, "inv-1")
        with pytest.raises(IllegalTransitionError):
            await service.send(distribution.id, SENDER)

        stored = await service.get_distribution(distribution.id)
        assert stored.status == DistributionStatus.DRAFT
        assert len(await service.get_history(distribution.id)) == 1

    @pytest.mark.asyncio
    async def test_wrong_department(self, service):
        distribution, _ = await create_invoice_distribution(service, "inv-1")
        with pytest.raises(UnauthorizedError):
            await service.verify_sender(distribution.id, RECEIVER, VerificationEngine.prefill(distribution))

        await service.verify_sender(distribution.id, SENDER, VerificationEngine.prefill(distribution))
        await service.send(distribution.id, SENDER)
        with pytest.raises(UnauthorizedError):
            await service.receive(distribution.id, SENDER)
        assert (await service.get_distribution(distribution.id)).status == DistributionStatus.SENT

    @pytest.mark.asyncio
    async def test_completed_accepts_nothing(self, service):
        distribution, _ = await create_invoice_distribution(service, "inv-1")
        received = await advance_to_received(service, distribution.id)
        await service.verify_receiver(distribution.id, RECEIVER, VerificationEngine.prefill(received))
        await service.complete(distribution.id, RECEIVER)

        with pytest.raises(IllegalTransitionError):
            await service.complete(distribution.id, RECEIVER)
        with pytest.raises(IllegalTransitionError):
            await service.receive(distribution.id, RECEIVER)

    @pytest.mark.asyncio
    async def test_sender_verification_needs_every_document(self, service):
        distribution, _ = await create_invoice_distribution(service, "inv-1")
        with pytest.raises(ValidationError):
            await service.verify_sender(distribution.id, SENDER, [
                DocumentVerdict(document_type=DocumentType.INVOICE, document_id="inv-1"),
            ])
        assert (await service.get_distribution(distribution.id)).status == DistributionStatus.DRAFT

    @pytest.mark.asyncio
    async def test_sender_cannot_report_missing_even_without_notes(self, service):
        distribution, _ = await create_invoice_distribution(service, "inv-1")
        verdicts = VerificationEngine.prefill(distribution)
        verdicts[1] = DocumentVerdict(
            document_type=DocumentType.ADDITIONAL_DOCUMENT, document_id="ad-1", status=VerificationStatus.MISSING,
        )
        with pytest.raises(ValidationError) as exc:
            await service.verify_sender(distribution.id, SENDER, verdicts)
        assert "only accepts 'verified'" in exc.value.message
        assert exc.value.details["documents"] == ["ad-1"]

    @pytest.mark.asyncio
    async def test_unknown_distribution(self, service):
        with pytest.raises(NotFoundError):
            await service.send("missing-id", SENDER)
        with pytest.raises(NotFoundError):
            await service.get_history("missing-id")

    @pytest.mark.asyncio
    async def test_available_actions(self, service):
        distribution, _ = await create_invoice_distribution(service, "inv-1")
        assert service.available_actions(distribution, SENDER) == [DistributionAction.VERIFY_SENDER]
        assert service.available_actions(distribution, RECEIVER) == []


class TestReceiverDiscrepancies:

    def verdicts(self, status=VerificationStatus.MISSING, notes="not in envelope"):
        return [
            DocumentVerdict(document_type=DocumentType.INVOICE, document_id="inv-1"),
            DocumentVerdict(
                document_type=DocumentType.ADDITIONAL_DOCUMENT, document_id="ad-1", status=status, notes=notes,
            ),
        ]

    @pytest.mark.asyncio
    async def test_discrepancy_without_force_changes_nothing(self, service):
        distribution, _ = await create_invoice_distribution(service, "inv-1")
        await advance_to_received(service, distribution.id)
        history_before = await service.get_history(distribution.id)

        with pytest.raises(DiscrepancyConfirmationRequiredError) as exc:
            await service.verify_receiver(distribution.id, RECEIVER, self.verdicts())

        assert [d.document_id for d in exc.value.discrepancies] == ["ad-1"]
        stored = await service.get_distribution(distribution.id)
        assert stored.status == DistributionStatus.RECEIVED
        assert stored.receiver_verified_at is None
        assert not any(l.receiver_verified for l in stored.documents)
        assert await service.get_history(distribution.id) == history_before

    @pytest.mark.asyncio
    async def test_forced_discrepancy_commits_once(self, service):
        distribution, _ = await create_invoice_distribution(service, "inv-1")
        await advance_to_received(service, distribution.id)
        count_before = len(await service.get_history(distribution.id))

        verified = await service.verify_receiver(distribution.id, RECEIVER, self.verdicts(), force=True)

        assert verified.status == DistributionStatus.VERIFIED_BY_RECEIVER
        assert verified.has_discrepancies is True
        assert verified.discrepancies[0].notes == "not in envelope"
        history = await service.get_history(distribution.id)
        assert len(history) == count_before + 1
        assert history[-1].action == HistoryAction.RECEIVER_VERIFIED_WITH_DISCREPANCIES
        assert "discrepanc" in history[-1].description

        # discrepancy is data on the status, completion still follows
        completed = await service.complete(distribution.id, RECEIVER)
        assert completed.status == DistributionStatus.COMPLETED
        assert completed.has_discrepancies is True

    @pytest.mark.asyncio
    async def test_missing_notes_rejected_before_anything_else(self, service):
        distribution, _ = await create_invoice_distribution(service, "inv-1")
        await advance_to_received(service, distribution.id)
        with pytest.raises(ValidationError):
            await service.verify_receiver(distribution.id, RECEIVER, self.verdicts(notes=" "), force=True)
        assert (await service.get_distribution(distribution.id)).status == DistributionStatus.RECEIVED

    @pytest.mark.asyncio
    async def test_received_documents_move_to_destination(self, service, catalog):
        distribution, _ = await create_invoice_distribution(service, "inv-1")
        await advance_to_received(service, distribution.id)
        await service.verify_receiver(distribution.id, RECEIVER, self.verdicts(), force=True)

        moved = [(m["document_id"], m["to_location"]) for m in catalog.movements]
        assert moved == [("inv-1", LOGISTIC.location_code)]
        invoice = await catalog.get_document(DocumentType.INVOICE, "inv-1")
        assert invoice.location_code == LOGISTIC.location_code
        missing = await catalog.get_document(DocumentType.ADDITIONAL_DOCUMENT, "ad-1")
        assert missing.location_code == ACCOUNTING.location_code

    @pytest.mark.asyncio
    async def test_tracking_failure_keeps_transition(self, store, catalog, clock):
        tracker = AsyncMock()
        tracker.record_movement.side_effect = RuntimeError("location service down")
        service = DistributionService(store, catalog, location_tracker=tracker, clock=clock)

        distribution, _ = await create_invoice_distribution(service, "inv-1")
        received = await advance_to_received(service, distribution.id)
        verified = await service.verify_receiver(distribution.id, RECEIVER, VerificationEngine.prefill(received))

        assert verified.status == DistributionStatus.VERIFIED_BY_RECEIVER
        assert tracker.record_movement.await_count == 2
        stored = await service.get_distribution(distribution.id)
        assert stored.status == DistributionStatus.VERIFIED_BY_RECEIVER

    @pytest.mark.asyncio
    async def test_one_failed_movement_does_not_block_the_rest(self, store, catalog, clock):
        attempts = []

        async def record_movement(document_type, document_id, **kwargs):
            attempts.append(document_id)
            if len(attempts) == 1:
                raise RuntimeError("location service timeout")
            await catalog.record_movement(document_type, document_id, **kwargs)

        tracker = AsyncMock()
        tracker.record_movement.side_effect = record_movement
        service = DistributionService(store, catalog, location_tracker=tracker, clock=clock)

        distribution, _ = await create_invoice_distribution(service, "inv-2")
        received = await advance_to_received(service, distribution.id)
        await service.verify_receiver(distribution.id, RECEIVER, VerificationEngine.prefill(received))

        assert attempts == ["inv-2", "ad-1", "ad-3"]
        assert [m["document_id"] for m in catalog.movements] == ["ad-1", "ad-3"]
        invoice = await catalog.get_document(DocumentType.INVOICE, "inv-2")
        assert invoice.location_code == ACCOUNTING.location_code
        moved = await catalog.get_document(DocumentType.ADDITIONAL_DOCUMENT, "ad-3")
        assert moved.location_code == LOGISTIC.location_code


class TestDraftEditing:

    @pytest.mark.asyncio
    async def test_update_draft(self, service):
        distribution, _ = await create_invoice_distribution(service, "inv-1", notes="first")
        updated = await service.update_draft(distribution.id, SENDER, type_id=NORMAL.id, notes="second")
        assert updated.type_id == NORMAL.id
        assert updated.notes == "second"
        history = await service.get_history(distribution.id)
        assert history[-1].action == HistoryAction.UPDATED
        assert set(history[-1].metadata["changes"]) == {"type_id", "notes"}

    @pytest.mark.asyncio
    async def test_update_without_changes_writes_nothing(self, service):
        distribution, _ = await create_invoice_distribution(service, "inv-1", notes="same")
        await service.update_draft(distribution.id, SENDER, notes="same")
        assert len(await service.get_history(distribution.id)) == 1

    @pytest.mark.asyncio
    async def test_update_destination_to_origin_rejected(self, service):
        distribution, _ = await create_invoice_distribution(service, "inv-1")
        with pytest.raises(ValidationError):
            await service.update_draft(distribution.id, SENDER, destination_department_id=ACCOUNTING.id)

    @pytest.mark.asyncio
    async def test_update_after_send_rejected(self, service):
        distribution, _ = await create_invoice_distribution(service, "inv-1")
        await service.verify_sender(distribution.id, SENDER, VerificationEngine.prefill(distribution))
        with pytest.raises(IllegalTransitionError):
            await service.update_draft(distribution.id, SENDER, notes="late")

    @pytest.mark.asyncio
    async def test_attach_recomputes_auto_inclusions(self, service):
        distribution, _ = await create_invoice_distribution(service, "inv-1")
        updated, warnings = await service.attach_documents(distribution.id, SENDER, [invoice_ref("inv-2")])
        assert [l.document_id for l in updated.explicit_links] == ["inv-1", "inv-2"]
        assert [l.document_id for l in updated.auto_included_links] == ["ad-1", "ad-3"]
        assert [w.document_id for w in warnings] == ["ad-2"]

    @pytest.mark.asyncio
    async def test_detach_invoice_drops_its_attachments(self, service):
        distribution, _ = await create_invoice_distribution(service, "inv-1", "inv-2")
        updated = await service.detach_document(distribution.id, SENDER, DocumentType.INVOICE, "inv-2")
        assert [l.document_id for l in updated.documents] == ["inv-1", "ad-1"]
        assert updated.auto_included_links[0].included_by == ["inv-1"]

    @pytest.mark.asyncio
    async def test_auto_included_cannot_be_detached(self, service):
        distribution, _ = await create_invoice_distribution(service, "inv-1")
        with pytest.raises(ValidationError):
            await service.detach_document(distribution.id, SENDER, DocumentType.ADDITIONAL_DOCUMENT, "ad-1")

    @pytest.mark.asyncio
    async def test_discard_draft(self, service, store):
        distribution, _ = await create_invoice_distribution(service, "inv-1")
        await service.discard_draft(distribution.id, SENDER)
        assert store.count() == 0
        with pytest.raises(NotFoundError):
            await service.get_distribution(distribution.id)

    @pytest.mark.asyncio
    async def test_discard_after_sender_verification_rejected(self, service):
        distribution, _ = await create_invoice_distribution(service, "inv-1")
        await service.verify_sender(distribution.id, SENDER, VerificationEngine.prefill(distribution))
        with pytest.raises(IllegalTransitionError):
            await service.discard_draft(distribution.id, SENDER)

    @pytest.mark.asyncio
    async def test_only_origin_members_edit(self, service):
        distribution, _ = await create_invoice_distribution(service, "inv-1")
        with pytest.raises(UnauthorizedError):
            await service.update_draft(distribution.id, RECEIVER, notes="mine now")
        with pytest.raises(UnauthorizedError):
            await service.discard_draft(distribution.id, RECEIVER)


class TestTransmittalAndCandidates:

    @pytest.mark.asyncio
    async def test_transmittal_snapshot(self, service):
        distribution, _ = await create_invoice_distribution(service, "inv-2")
        snapshot = await service.get_transmittal_snapshot(distribution.id)
        assert snapshot.total_documents == len(distribution.documents) == 3
        invoice_row = snapshot.documents[0]
        assert invoice_row.number == "INV-002"
        assert invoice_row.currency == "IDR"
        assert snapshot.creator.department == ACCOUNTING.name
        assert snapshot.distribution_type.name == URGENT.name

    @pytest.mark.asyncio
    async def test_transmittal_for_empty_distribution(self, service):
        distribution, _ = await create_invoice_distribution(service)
        snapshot = await service.get_transmittal_snapshot(distribution.id)
        assert snapshot.total_documents == 0
        assert snapshot.display_rows[0].placeholder is True

    @pytest.mark.asyncio
    async def test_candidate_documents(self, service):
        invoices = await service.list_candidate_documents(ACCOUNTING.id, DocumentType.INVOICE)
        assert [d.number for d in invoices] == ["INV-001", "INV-002"]
        assert [a.id for a in invoices[0].attached_documents] == ["ad-1", "ad-2"]

        found = await service.list_candidate_documents(ACCOUNTING.id, DocumentType.INVOICE, search="jaya")
        assert [d.number for d in found] == ["INV-002"]

        with pytest.raises(NotFoundError):
            await service.list_candidate_documents("dept-x", DocumentType.INVOICE)


class SlowInMemoryStore(InMemoryDistributionStore):
    """Yields to the event loop after every read so concurrent writers interleave."""

    async def get(self, distribution_id):
        distribution = await super().get(distribution_id)
        await asyncio.sleep(0)
        return distribution


class TestConcurrency:

    @pytest.mark.asyncio
    async def test_concurrent_transitions_commit_once(self, catalog, clock):
        service = DistributionService(SlowInMemoryStore(), catalog, clock=clock)
        distribution, _ = await create_invoice_distribution(service, "inv-1")
        await service.verify_sender(distribution.id, SENDER, VerificationEngine.prefill(distribution))

        results = await asyncio.gather(
            service.send(distribution.id, SENDER),
            service.send(distribution.id, SENDER),
            return_exceptions=True,
        )

        succeeded = [r for r in results if not isinstance(r, Exception)]
        failed = [r for r in results if isinstance(r, Exception)]
        assert len(succeeded) == 1
        assert len(failed) == 1
        assert isinstance(failed[0], IllegalTransitionError)

        history = await service.get_history(distribution.id)
        assert [h.action for h in history].count(HistoryAction.SENT) == 1

    @pytest.mark.asyncio
    async def test_stale_version_rejected(self, service, store):
        distribution, _ = await create_invoice_distribution(service, "inv-1")
        stale = await store.get(distribution.id)
        await service.update_draft(distribution.id, SENDER, notes="fresh")

        stale.notes = "stale"
        assert await store.commit(stale, expected_version=stale.version, new_history=[]) is False
        assert (await store.get(distribution.id)).notes == "fresh"
