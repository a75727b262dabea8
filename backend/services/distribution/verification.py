"""
Distribution Hub - Verification Engine

Sender and receiver verification sub-protocols that gate the
draft -> verified_by_sender and received -> verified_by_receiver transitions.

Verification is all-or-nothing: a submission must carry exactly one verdict
per document link, and either every verdict is applied or none is. The
engine works on an aggregate copy prepared by the service; nothing is
persisted here.
"""

import logging
from typing import Dict, List, Sequence, Tuple

from services.distribution.errors import (
    DiscrepancyConfirmationRequiredError,
    ValidationError,
)
from services.distribution.models import (
    Discrepancy,
    Distribution,
    DocumentVerdict,
    VerificationStatus,
)

logger = logging.getLogger(__name__)


class VerificationEngine:
    """Validates verdict submissions and applies them to document links."""

    def __init__(self, notes_max_length: int = 1000):
        self.notes_max_length = notes_max_length

    # -------------------------------------------------------------------------
    # Pre-submit checks
    # -------------------------------------------------------------------------

    def validate_notes(self, verdicts: Sequence[DocumentVerdict]) -> None:
        """
        Local pre-submit constraint: every non-verified verdict needs notes,
        and no notes may exceed the configured length.
        """
        missing_notes = []
        for verdict in verdicts:
            notes = (verdict.notes or "").strip()
            if verdict.status != VerificationStatus.VERIFIED and not notes:
                missing_notes.append({
                    "document_type": verdict.document_type.value,
                    "document_id": verdict.document_id,
                    "status": verdict.status.value,
                })
            if verdict.notes and len(verdict.notes) > self.notes_max_length:
                raise ValidationError(
                    f"Verification notes exceed {self.notes_max_length} characters",
                    details={"document_id": verdict.document_id},
                )

        if missing_notes:
            raise ValidationError(
                "Notes are required for documents marked missing or damaged",
                details={"documents": missing_notes},
            )

    def match_verdicts(
        self,
        distribution: Distribution,
        verdicts: Sequence[DocumentVerdict]
    ) -> Dict[Tuple[str, str], DocumentVerdict]:
        """
        Pair verdicts with links. Every link must receive exactly one verdict
        and every verdict must name a link of this distribution.
        """
        matched: Dict[Tuple[str, str], DocumentVerdict] = {}
        link_keys = {link.key for link in distribution.documents}

        for verdict in verdicts:
            if verdict.key not in link_keys:
                raise ValidationError(
                    f"Document {verdict.document_type.value}:{verdict.document_id} "
                    f"is not part of distribution {distribution.distribution_number}",
                    details={"document_type": verdict.document_type.value, "document_id": verdict.document_id},
                )
            if verdict.key in matched:
                raise ValidationError(
                    f"Duplicate verdict for {verdict.document_type.value}:{verdict.document_id}",
                    details={"document_type": verdict.document_type.value, "document_id": verdict.document_id},
                )
            matched[verdict.key] = verdict

        unverified = [
            {"document_type": link.document_type.value, "document_id": link.document_id}
            for link in distribution.documents
            if link.key not in matched
        ]
        if unverified:
            raise ValidationError(
                f"{len(unverified)} document(s) have no verdict; every document must be verified",
                details={"documents": unverified},
            )

        return matched

    # -------------------------------------------------------------------------
    # Sender protocol
    # -------------------------------------------------------------------------

    @staticmethod
    def ensure_all_verified(verdicts: Sequence[DocumentVerdict]) -> None:
        """The sender protocol only knows 'verified'."""
        not_verified = [v for v in verdicts if v.status != VerificationStatus.VERIFIED]
        if not_verified:
            raise ValidationError(
                "Sender verification only accepts 'verified'; deselect documents that are not in hand",
                details={"documents": [v.document_id for v in not_verified]},
            )

    def apply_sender(self, distribution: Distribution, verdicts: Sequence[DocumentVerdict]) -> None:
        """Mark every link sender-verified."""
        self.ensure_all_verified(verdicts)
        matched = self.match_verdicts(distribution, verdicts)
        for link in distribution.documents:
            verdict = matched[link.key]
            link.sender_verified = True
            link.verification_status = VerificationStatus.VERIFIED
            link.verification_notes = verdict.notes or None

    # -------------------------------------------------------------------------
    # Receiver protocol
    # -------------------------------------------------------------------------

    def find_discrepancies(
        self,
        distribution: Distribution,
        verdicts: Sequence[DocumentVerdict]
    ) -> List[Discrepancy]:
        matched = self.match_verdicts(distribution, verdicts)
        discrepancies = []
        for link in distribution.documents:
            verdict = matched[link.key]
            if verdict.status != VerificationStatus.VERIFIED:
                discrepancies.append(Discrepancy(
                    document_type=link.document_type,
                    document_id=link.document_id,
                    document_number=link.document_number,
                    status=verdict.status,
                    notes=(verdict.notes or "").strip(),
                ))
        return discrepancies

    def apply_receiver(
        self,
        distribution: Distribution,
        verdicts: Sequence[DocumentVerdict],
        force: bool = False
    ) -> List[Discrepancy]:
        """
        Apply receiver verdicts.

        Without `force`, any non-verified verdict raises
        DiscrepancyConfirmationRequiredError and nothing is applied. With
        `force`, the verdicts are applied and the discrepancies are appended
        to the distribution's permanent discrepancy record.
        """
        self.validate_notes(verdicts)
        discrepancies = self.find_discrepancies(distribution, verdicts)

        if discrepancies and not force:
            logger.info(
                "Receiver verification of %s needs confirmation: %d discrepancies",
                distribution.distribution_number, len(discrepancies)
            )
            raise DiscrepancyConfirmationRequiredError(discrepancies)

        matched = self.match_verdicts(distribution, verdicts)
        for link in distribution.documents:
            verdict = matched[link.key]
            link.receiver_verified = verdict.status == VerificationStatus.VERIFIED
            link.verification_status = verdict.status
            link.verification_notes = (verdict.notes or "").strip() or None

        if discrepancies:
            logger.warning(
                "Distribution %s verified by receiver with %d discrepancies (forced)",
                distribution.distribution_number, len(discrepancies)
            )
            distribution.discrepancies = list(distribution.discrepancies) + discrepancies

        return discrepancies

    # -------------------------------------------------------------------------
    # Select-all pre-fill
    # -------------------------------------------------------------------------

    @staticmethod
    def prefill(distribution: Distribution) -> List[DocumentVerdict]:
        """
        Verdict list marking every link verified, for a "select all" control.
        The result is an ordinary submission and is validated like any other.
        """
        return [
            DocumentVerdict(
                document_type=link.document_type,
                document_id=link.document_id,
                status=VerificationStatus.VERIFIED,
            )
            for link in distribution.documents
        ]

    @staticmethod
    def summarize(discrepancies: Sequence[Discrepancy]) -> Dict[str, int]:
        summary = {status.value: 0 for status in VerificationStatus if status != VerificationStatus.VERIFIED}
        for discrepancy in discrepancies:
            summary[discrepancy.status.value] += 1
        return summary
