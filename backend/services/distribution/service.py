"""
Distribution Hub - Distribution Service

Public contract of the distribution workflow engine. Each operation:

1. loads the aggregate (NotFoundError if absent),
2. runs every check (input validation, status, actor department) before
   touching anything,
3. applies the change to a deep copy,
4. commits the copy together with exactly one history entry through the
   store's compare-and-swap on `version`.

A failed check or a lost compare-and-swap leaves the stored aggregate and its
history untouched.
"""

import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

from services.distribution_config import DistributionSettings
from services.distribution.auto_inclusion import resolve_auto_inclusions
from services.distribution.catalog import DocumentCatalog, DocumentLocationTracker
from services.distribution.errors import (
    IllegalTransitionError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from services.distribution.history import HistoryRecorder, timeline
from services.distribution.models import (
    Actor,
    AdditionalDocument,
    Department,
    Discrepancy,
    Distribution,
    DistributionAction,
    DistributionStatus,
    DistributionType,
    DistributionWarning,
    DocumentLink,
    DocumentRef,
    DocumentType,
    DocumentVerdict,
    HistoryAction,
    HistoryEntry,
    InvoiceDocument,
    VerificationStatus,
)
from services.distribution.state_machine import DistributionStateMachine
from services.distribution.store import DistributionStore
from services.distribution.transmittal import TransmittalSnapshot, build_transmittal_snapshot
from services.distribution.verification import VerificationEngine

logger = logging.getLogger(__name__)

CatalogRecord = Union[InvoiceDocument, AdditionalDocument]

_UNSET = object()


class DistributionService:
    """Facade over the distribution workflow engine."""

    def __init__(
        self,
        store: DistributionStore,
        catalog: DocumentCatalog,
        location_tracker: Optional[DocumentLocationTracker] = None,
        settings: Optional[DistributionSettings] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.store = store
        self.catalog = catalog
        self.location_tracker = location_tracker
        self.settings = settings or DistributionSettings()
        self.recorder = HistoryRecorder(clock=clock)
        self.verification = VerificationEngine(notes_max_length=self.settings.notes_max_length)

    # =========================================================================
    # LOOKUPS
    # =========================================================================

    async def get_distribution(self, distribution_id: str) -> Distribution:
        distribution = await self.store.get(distribution_id)
        if distribution is None:
            raise NotFoundError(f"Distribution {distribution_id} not found", details={"distribution_id": distribution_id})
        return distribution

    async def get_history(self, distribution_id: str) -> Tuple[HistoryEntry, ...]:
        history = await self.store.get_history(distribution_id)
        if history is None:
            raise NotFoundError(f"Distribution {distribution_id} not found", details={"distribution_id": distribution_id})
        return timeline(history)

    async def list_candidate_documents(
        self,
        department_id: str,
        document_type: DocumentType,
        search: Optional[str] = None
    ) -> List[CatalogRecord]:
        await self._require_department(department_id)
        return await self.catalog.list_candidate_documents(department_id, DocumentType(document_type), search)

    def available_actions(self, distribution: Distribution, actor: Actor) -> List[DistributionAction]:
        return DistributionStateMachine.available_actions(distribution, actor)

    async def _require_department(self, department_id: str) -> Department:
        department = await self.catalog.get_department(department_id)
        if department is None:
            raise NotFoundError(f"Department {department_id} not found", details={"department_id": department_id})
        return department

    async def _require_type(self, type_id: str) -> DistributionType:
        distribution_type = await self.catalog.get_distribution_type(type_id)
        if distribution_type is None:
            raise NotFoundError(f"Distribution type {type_id} not found", details={"type_id": type_id})
        return distribution_type

    # =========================================================================
    # VALIDATION HELPERS
    # =========================================================================

    def _validate_notes(self, notes: Optional[str], field: str = "notes") -> Optional[str]:
        if notes is None:
            return None
        notes = notes.strip()
        if len(notes) > self.settings.notes_max_length:
            raise ValidationError(
                f"{field} exceed {self.settings.notes_max_length} characters",
                details={"field": field, "length": len(notes)},
            )
        return notes or None

    @staticmethod
    def _validate_departments(origin_id: str, destination_id: str) -> None:
        if origin_id == destination_id:
            raise ValidationError(
                "Origin and destination departments must differ",
                details={"origin_department_id": origin_id, "destination_department_id": destination_id},
            )

    @staticmethod
    def _ensure_origin_member(distribution: Distribution, actor: Actor, operation: str) -> None:
        if actor.department_id != distribution.origin_department_id:
            logger.warning(
                "Unauthorized draft operation: id=%s, operation=%s, actor=%s, actor_department=%s",
                distribution.id, operation, actor.id, actor.department_id
            )
            raise UnauthorizedError(
                f"Only members of the origin department may {operation} this distribution",
                details={
                    "distribution_id": distribution.id,
                    "required_department_id": distribution.origin_department_id,
                    "actor_department_id": actor.department_id,
                },
            )

    @staticmethod
    def _ensure_draft(distribution: Distribution, operation: str) -> None:
        if distribution.status != DistributionStatus.DRAFT:
            raise IllegalTransitionError(
                f"Cannot {operation} a distribution in status '{distribution.status.value}'; only drafts can be changed",
                details={"distribution_id": distribution.id, "current_status": distribution.status.value},
            )

    async def _resolve_selection(
        self,
        document_type: DocumentType,
        origin: Department,
        refs: Sequence[DocumentRef]
    ) -> List[CatalogRecord]:
        """Load explicitly selected documents; they must match the type and sit at the origin."""
        records: List[CatalogRecord] = []
        seen = set()
        for ref in refs:
            if ref.key in seen:
                continue
            seen.add(ref.key)
            if ref.document_type != document_type:
                raise ValidationError(
                    f"A {document_type.value} distribution cannot carry {ref.document_type.value} documents",
                    details={"document_type": ref.document_type.value, "document_id": ref.document_id},
                )
            record = await self.catalog.get_document(ref.document_type, ref.document_id)
            if record is None:
                raise NotFoundError(
                    f"Document {ref.document_type.value}:{ref.document_id} not found",
                    details={"document_type": ref.document_type.value, "document_id": ref.document_id},
                )
            if (record.location_code or "").strip().upper() != origin.location_code.strip().upper():
                raise ValidationError(
                    f"Document {record.number} is not located at {origin.name} ({origin.location_code})",
                    details={
                        "document_id": record.id,
                        "document_location": record.location_code,
                        "expected_location": origin.location_code,
                    },
                )
            records.append(record)
        return records

    @staticmethod
    def _explicit_link(record: CatalogRecord) -> DocumentLink:
        return DocumentLink(
            document_type=DocumentType(record.document_type),
            document_id=record.id,
            document_number=record.number,
        )

    async def _compose(
        self,
        document_type: DocumentType,
        origin: Department,
        explicit_links: Sequence[DocumentLink]
    ) -> Tuple[List[DocumentLink], List[DistributionWarning]]:
        """
        Explicit links followed by the auto-included links derived from the
        explicit invoice links, recomputed from current catalog data.
        """
        links = [link.model_copy(deep=True) for link in explicit_links]
        if document_type != DocumentType.INVOICE:
            return links, []

        invoices = []
        for link in links:
            record = await self.catalog.get_document(DocumentType.INVOICE, link.document_id)
            if record is not None:
                invoices.append(record)

        result = resolve_auto_inclusions(invoices, origin.location_code)
        explicit_keys = {link.key for link in links}
        links.extend(link for link in result.included if link.key not in explicit_keys)
        return links, result.warnings

    async def _issue_number(self, distribution_type: DistributionType, origin: Department, now: datetime) -> str:
        year = now.strftime("%y")
        sequence = await self.store.next_sequence(f"{distribution_type.code}:{year}")
        prefix = origin.location_code if not origin.akronim else f"{origin.location_code}-{origin.akronim}"
        return f"{year}/{prefix}/{distribution_type.code}/{sequence:0{self.settings.sequence_width}d}"

    async def _commit(self, original: Distribution, updated: Distribution, entry: HistoryEntry) -> Distribution:
        """Compare-and-swap commit of `updated` with one new history entry."""
        updated.version = original.version + 1
        updated.history = original.history + (entry,)
        committed = await self.store.commit(updated, expected_version=original.version, new_history=[entry])
        if not committed:
            current = await self.store.get(original.id)
            current_status = current.status.value if current else None
            logger.warning(
                "Concurrent modification of distribution %s: expected version %s, status now %s",
                original.id, original.version, current_status
            )
            if current is None:
                raise NotFoundError(f"Distribution {original.id} not found", details={"distribution_id": original.id})
            raise IllegalTransitionError(
                f"Distribution {original.distribution_number} was modified concurrently "
                f"(status is now '{current_status}')",
                details={"distribution_id": original.id, "current_status": current_status},
            )
        return updated

    # =========================================================================
    # CREATION & DRAFT EDITING
    # =========================================================================

    async def create_distribution(
        self,
        actor: Actor,
        document_type: DocumentType,
        type_id: str,
        origin_department_id: str,
        destination_department_id: str,
        notes: Optional[str] = None,
        selected_documents: Sequence[DocumentRef] = ()
    ) -> Tuple[Distribution, List[DistributionWarning]]:
        """Create a draft distribution. Returns the draft and auto-inclusion warnings."""
        document_type = DocumentType(document_type)
        self._validate_departments(origin_department_id, destination_department_id)
        notes = self._validate_notes(notes)

        if actor.department_id != origin_department_id:
            raise UnauthorizedError(
                "Distributions can only be created by members of the origin department",
                details={"origin_department_id": origin_department_id, "actor_department_id": actor.department_id},
            )

        distribution_type = await self._require_type(type_id)
        origin = await self._require_department(origin_department_id)
        await self._require_department(destination_department_id)

        records = await self._resolve_selection(document_type, origin, selected_documents)
        explicit = [self._explicit_link(record) for record in records]
        links, warnings = await self._compose(document_type, origin, explicit)

        now = self.recorder.now()
        distribution = Distribution(
            distribution_number=await self._issue_number(distribution_type, origin, now),
            document_type=document_type,
            type_id=distribution_type.id,
            origin_department_id=origin_department_id,
            destination_department_id=destination_department_id,
            notes=notes,
            creator=actor,
            created_at=now,
            updated_at=now,
            documents=links,
        )
        auto_count = len(distribution.auto_included_links)
        entry = self.recorder.record(
            action=HistoryAction.CREATED,
            description=(
                f"Distribution {distribution.distribution_number} created by {actor.name or actor.id} "
                f"with {len(links)} document(s) ({auto_count} auto-included)"
            ),
            actor=actor,
            notes=notes,
            to_status=DistributionStatus.DRAFT,
            metadata={"warnings": len(warnings), "auto_included": auto_count},
            created_at=now,
        )
        distribution.history = (entry,)
        await self.store.insert(distribution)

        logger.info(
            "Distribution created: id=%s, number=%s, type=%s, %s -> %s, documents=%d, warnings=%d",
            distribution.id, distribution.distribution_number, document_type.value,
            origin_department_id, destination_department_id, len(links), len(warnings)
        )
        return distribution, warnings

    async def update_draft(
        self,
        distribution_id: str,
        actor: Actor,
        type_id: Optional[str] = None,
        destination_department_id: Optional[str] = None,
        notes=_UNSET
    ) -> Distribution:
        """Edit type, destination or notes of a draft."""
        original = await self.get_distribution(distribution_id)
        self._ensure_draft(original, "update")
        self._ensure_origin_member(original, actor, "update")

        updated = original.model_copy(deep=True)
        changed: Dict[str, Dict] = {}

        if type_id is not None and type_id != original.type_id:
            await self._require_type(type_id)
            changed["type_id"] = {"from": original.type_id, "to": type_id}
            updated.type_id = type_id

        if destination_department_id is not None and destination_department_id != original.destination_department_id:
            self._validate_departments(original.origin_department_id, destination_department_id)
            await self._require_department(destination_department_id)
            changed["destination_department_id"] = {
                "from": original.destination_department_id,
                "to": destination_department_id,
            }
            updated.destination_department_id = destination_department_id

        if notes is not _UNSET:
            new_notes = self._validate_notes(notes)
            if new_notes != original.notes:
                changed["notes"] = {"from": original.notes, "to": new_notes}
                updated.notes = new_notes

        if not changed:
            return original

        now = self.recorder.now()
        updated.updated_at = now
        entry = self.recorder.record(
            action=HistoryAction.UPDATED,
            description=f"Distribution {original.distribution_number} updated: {', '.join(sorted(changed))}",
            actor=actor,
            from_status=original.status,
            to_status=original.status,
            metadata={"changes": changed},
            created_at=now,
        )
        return await self._commit(original, updated, entry)

    async def attach_documents(
        self,
        distribution_id: str,
        actor: Actor,
        documents: Sequence[DocumentRef]
    ) -> Tuple[Distribution, List[DistributionWarning]]:
        """Add explicit documents to a draft and recompute auto-inclusions."""
        original = await self.get_distribution(distribution_id)
        self._ensure_draft(original, "attach documents to")
        self._ensure_origin_member(original, actor, "attach documents to")

        origin = await self._require_department(original.origin_department_id)
        existing = {link.key for link in original.explicit_links}
        new_refs = [ref for ref in documents if ref.key not in existing]
        if not new_refs:
            return original, []

        records = await self._resolve_selection(original.document_type, origin, new_refs)
        explicit = original.explicit_links + [self._explicit_link(record) for record in records]
        links, warnings = await self._compose(original.document_type, origin, explicit)

        updated = original.model_copy(deep=True)
        updated.documents = links
        now = self.recorder.now()
        updated.updated_at = now
        numbers = ", ".join(record.number for record in records)
        entry = self.recorder.record(
            action=HistoryAction.DOCUMENTS_ATTACHED,
            description=f"{len(records)} document(s) attached to distribution {original.distribution_number}: {numbers}",
            actor=actor,
            from_status=original.status,
            to_status=original.status,
            metadata={"documents": [record.id for record in records], "warnings": len(warnings)},
            created_at=now,
        )
        return await self._commit(original, updated, entry), warnings

    async def detach_document(
        self,
        distribution_id: str,
        actor: Actor,
        document_type: DocumentType,
        document_id: str
    ) -> Distribution:
        """
        Remove an explicitly selected document from a draft. Auto-included
        links cannot be removed on their own; they follow their invoices.
        """
        original = await self.get_distribution(distribution_id)
        self._ensure_draft(original, "detach documents from")
        self._ensure_origin_member(original, actor, "detach documents from")

        link = original.find_link(document_type, document_id)
        if link is None:
            raise NotFoundError(
                f"Document {DocumentType(document_type).value}:{document_id} is not part of "
                f"distribution {original.distribution_number}",
                details={"document_type": DocumentType(document_type).value, "document_id": document_id},
            )
        if link.auto_included:
            raise ValidationError(
                f"Document {link.document_number or document_id} was included automatically with "
                f"invoice(s) {', '.join(link.included_by)}; remove the invoice instead",
                details={"document_id": document_id, "included_by": link.included_by},
            )

        origin = await self._require_department(original.origin_department_id)
        explicit = [l for l in original.explicit_links if l.key != link.key]
        links, _ = await self._compose(original.document_type, origin, explicit)

        updated = original.model_copy(deep=True)
        updated.documents = links
        now = self.recorder.now()
        updated.updated_at = now
        removed_auto = len(original.auto_included_links) - len(updated.auto_included_links)
        entry = self.recorder.record(
            action=HistoryAction.DOCUMENT_DETACHED,
            description=(
                f"Document {link.document_number or document_id} detached from distribution "
                f"{original.distribution_number}"
            ),
            actor=actor,
            from_status=original.status,
            to_status=original.status,
            metadata={"document_id": document_id, "auto_included_removed": max(removed_auto, 0)},
            created_at=now,
        )
        return await self._commit(original, updated, entry)

    async def discard_draft(self, distribution_id: str, actor: Actor) -> None:
        """Delete a draft. Distributions that left draft are never deleted."""
        original = await self.get_distribution(distribution_id)
        self._ensure_draft(original, "discard")
        self._ensure_origin_member(original, actor, "discard")

        deleted = await self.store.delete_draft(original.id, expected_version=original.version)
        if not deleted:
            current = await self.store.get(original.id)
            raise IllegalTransitionError(
                f"Distribution {original.distribution_number} was modified concurrently",
                details={"distribution_id": original.id, "current_status": current.status.value if current else None},
            )
        logger.info("Draft distribution discarded: id=%s, number=%s, actor=%s",
                    original.id, original.distribution_number, actor.id)

    # =========================================================================
    # LIFECYCLE TRANSITIONS
    # =========================================================================

    async def _transition(
        self,
        distribution_id: str,
        action: DistributionAction,
        actor: Actor,
        notes: Optional[str] = None,
        prepare: Optional[Callable[[Distribution], List[Discrepancy]]] = None
    ) -> Tuple[Distribution, List[Discrepancy]]:
        original = await self.get_distribution(distribution_id)
        DistributionStateMachine.ensure_allowed(original, action, actor)

        updated = original.model_copy(deep=True)
        discrepancies = prepare(updated) if prepare else []

        now = self.recorder.now()
        from_status, to_status = DistributionStateMachine.apply(updated, action, actor, now)
        entry = self.recorder.for_transition(
            updated, action, actor, from_status, to_status,
            notes=notes, discrepancies=discrepancies, created_at=now,
        )
        committed = await self._commit(original, updated, entry)

        logger.info(
            "Distribution transition: id=%s, number=%s, %s -> %s (action=%s, actor=%s)",
            committed.id, committed.distribution_number, from_status.value, to_status.value,
            DistributionAction(action).value, actor.id
        )
        return committed, discrepancies

    async def verify_sender(
        self,
        distribution_id: str,
        actor: Actor,
        verdicts: Sequence[DocumentVerdict],
        notes: Optional[str] = None
    ) -> Distribution:
        notes = self._validate_notes(notes, "verification notes")
        self.verification.ensure_all_verified(verdicts)
        self.verification.validate_notes(verdicts)

        def prepare(distribution: Distribution) -> List[Discrepancy]:
            self.verification.apply_sender(distribution, verdicts)
            return []

        distribution, _ = await self._transition(
            distribution_id, DistributionAction.VERIFY_SENDER, actor, notes=notes, prepare=prepare
        )
        return distribution

    async def send(self, distribution_id: str, actor: Actor) -> Distribution:
        distribution, _ = await self._transition(distribution_id, DistributionAction.SEND, actor)
        return distribution

    async def receive(self, distribution_id: str, actor: Actor) -> Distribution:
        distribution, _ = await self._transition(distribution_id, DistributionAction.RECEIVE, actor)
        return distribution

    async def verify_receiver(
        self,
        distribution_id: str,
        actor: Actor,
        verdicts: Sequence[DocumentVerdict],
        notes: Optional[str] = None,
        force: bool = False
    ) -> Distribution:
        """
        Receiver verification. Raises DiscrepancyConfirmationRequiredError
        when any verdict is not 'verified' and `force` is False.
        """
        notes = self._validate_notes(notes, "verification notes")
        self.verification.validate_notes(verdicts)

        def prepare(distribution: Distribution) -> List[Discrepancy]:
            return self.verification.apply_receiver(distribution, verdicts, force=force)

        distribution, _ = await self._transition(
            distribution_id, DistributionAction.VERIFY_RECEIVER, actor, notes=notes, prepare=prepare
        )
        await self._track_received_documents(distribution, actor)
        return distribution

    async def complete(self, distribution_id: str, actor: Actor) -> Distribution:
        distribution, _ = await self._transition(distribution_id, DistributionAction.COMPLETE, actor)
        return distribution

    async def _track_received_documents(self, distribution: Distribution, actor: Actor) -> None:
        """Record moved documents (everything not reported missing) at the destination."""
        if self.location_tracker is None:
            return
        try:
            origin = await self._require_department(distribution.origin_department_id)
            destination = await self._require_department(distribution.destination_department_id)
        except NotFoundError:
            logger.exception(
                "Location tracking skipped for distribution %s; the transition is committed",
                distribution.distribution_number
            )
            return

        failed = []
        for link in distribution.documents:
            if link.verification_status == VerificationStatus.MISSING:
                continue
            try:
                await self.location_tracker.record_movement(
                    link.document_type,
                    link.document_id,
                    from_location=origin.location_code,
                    to_location=destination.location_code,
                    distribution_id=distribution.id,
                    reason=f"Received via distribution {distribution.distribution_number}",
                    moved_by=actor.id,
                )
            except Exception:
                failed.append(link.document_id)
                logger.exception(
                    "Location tracking failed for %s:%s in distribution %s",
                    link.document_type.value, link.document_id, distribution.distribution_number
                )

        if failed:
            logger.warning(
                "Distribution %s committed with %d untracked document movement(s): %s",
                distribution.distribution_number, len(failed), ", ".join(failed)
            )

    # =========================================================================
    # TRANSMITTAL
    # =========================================================================

    async def get_transmittal_snapshot(self, distribution_id: str) -> TransmittalSnapshot:
        distribution = await self.get_distribution(distribution_id)
        distribution_type = await self._require_type(distribution.type_id)
        origin = await self._require_department(distribution.origin_department_id)
        destination = await self._require_department(distribution.destination_department_id)
        creator_department = await self.catalog.get_department(distribution.creator.department_id)

        records: Dict[Tuple[str, str], Optional[CatalogRecord]] = {}
        for link in distribution.documents:
            record = await self.catalog.get_document(link.document_type, link.document_id)
            if record is None:
                logger.warning(
                    "Transmittal for %s: document %s:%s not found in catalog",
                    distribution.distribution_number, link.document_type.value, link.document_id
                )
            records[link.key] = record

        return build_transmittal_snapshot(
            distribution,
            distribution_type,
            origin,
            destination,
            records,
            creator_department=creator_department,
            default_currency=self.settings.default_currency,
            generated_at=self.recorder.now(),
        )
