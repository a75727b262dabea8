"""
Distribution Hub - Auto-Inclusion Resolver

When invoices are distributed, the supplementary documents attached to them
travel along. A supplementary document is included only when it is
physically at the origin department (its location code matches the origin's);
otherwise it is left out and the caller gets a warning.

The resolver is a pure function of the selected invoices and the origin
location code. It never touches a distribution; the service merges its
result into the aggregate.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Set, Tuple

from services.distribution.models import (
    DistributionWarning,
    DocumentLink,
    DocumentType,
    InvoiceDocument,
)

logger = logging.getLogger(__name__)


@dataclass
class AutoInclusionResult:
    """Supplementary documents to include, and warnings for those excluded."""
    included: List[DocumentLink] = field(default_factory=list)
    warnings: List[DistributionWarning] = field(default_factory=list)

    @property
    def included_keys(self) -> Set[Tuple[str, str]]:
        return {link.key for link in self.included}


def _location_matches(document_location, origin_location_code: str) -> bool:
    if not document_location or not origin_location_code:
        return False
    return document_location.strip().upper() == origin_location_code.strip().upper()


def resolve_auto_inclusions(
    invoices: Iterable[InvoiceDocument],
    origin_location_code: str
) -> AutoInclusionResult:
    """
    Compute auto-included supplementary documents for a set of invoices.

    Each supplementary document appears at most once in either list, even when
    several selected invoices reference it. An included document records every
    selected invoice that references it in `included_by`; an excluded one is
    reported once, naming the first invoice that referenced it.
    """
    included: Dict[str, DocumentLink] = {}
    excluded: Dict[str, DistributionWarning] = {}

    # Sort for a stable result regardless of selection order
    for invoice in sorted(invoices, key=lambda inv: inv.id):
        for attached in invoice.attached_documents:
            if attached.id in included:
                if invoice.id not in included[attached.id].included_by:
                    included[attached.id].included_by.append(invoice.id)
                continue
            if attached.id in excluded:
                continue

            if _location_matches(attached.location_code, origin_location_code):
                included[attached.id] = DocumentLink(
                    document_type=DocumentType.ADDITIONAL_DOCUMENT,
                    document_id=attached.id,
                    document_number=attached.number,
                    auto_included=True,
                    included_by=[invoice.id],
                )
            else:
                logger.info(
                    "Excluding additional document %s attached to invoice %s: location %s != %s",
                    attached.number, invoice.number, attached.location_code, origin_location_code
                )
                excluded[attached.id] = DistributionWarning(
                    message=(
                        f"Additional document {attached.number} attached to invoice "
                        f"{invoice.number} has different location. It will not be "
                        f"included in the distribution."
                    ),
                    document_id=attached.id,
                    document_number=attached.number,
                    invoice_id=invoice.id,
                    invoice_number=invoice.number,
                    document_location=attached.location_code,
                    expected_location=origin_location_code,
                )

    return AutoInclusionResult(
        included=[included[key] for key in sorted(included)],
        warnings=[excluded[key] for key in sorted(excluded)],
    )
