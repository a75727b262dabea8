"""
Distribution Hub - Distribution Models

Enums and pydantic models shared by the distribution workflow engine:
the Distribution aggregate, its DocumentLink entries, history entries,
verification verdicts and the reference records resolved through the
document catalog.
"""

import uuid
from datetime import date, datetime, timezone
from enum import Enum
from typing import Annotated, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# ENUMS
# =============================================================================

class DocumentType(str, Enum):
    """Kinds of documents a distribution can carry."""
    INVOICE = "invoice"
    ADDITIONAL_DOCUMENT = "additional_document"


class DistributionStatus(str, Enum):
    """Lifecycle states of a distribution, in workflow order."""
    DRAFT = "draft"
    VERIFIED_BY_SENDER = "verified_by_sender"
    SENT = "sent"
    RECEIVED = "received"
    VERIFIED_BY_RECEIVER = "verified_by_receiver"
    COMPLETED = "completed"


class DistributionAction(str, Enum):
    """Actions that move a distribution through its lifecycle."""
    VERIFY_SENDER = "verify_sender"
    SEND = "send"
    RECEIVE = "receive"
    VERIFY_RECEIVER = "verify_receiver"
    COMPLETE = "complete"


class VerificationStatus(str, Enum):
    """Per-document verification outcome."""
    VERIFIED = "verified"
    MISSING = "missing"
    DAMAGED = "damaged"


class HistoryAction(str, Enum):
    """Labels written to the distribution history."""
    CREATED = "created"
    UPDATED = "updated"
    DOCUMENTS_ATTACHED = "documents_attached"
    DOCUMENT_DETACHED = "document_detached"
    SENDER_VERIFIED = "sender_verified"
    SENT = "sent"
    RECEIVED = "received"
    RECEIVER_VERIFIED = "receiver_verified"
    RECEIVER_VERIFIED_WITH_DISCREPANCIES = "receiver_verified_with_discrepancies"
    COMPLETED = "completed"


# =============================================================================
# IDENTITY & REFERENCE DATA
# =============================================================================

class Actor(BaseModel):
    """Caller identity as resolved by the identity capability."""
    model_config = ConfigDict(frozen=True)

    id: str
    department_id: str
    name: Optional[str] = None


class Department(BaseModel):
    id: str
    name: str
    location_code: str
    project: Optional[str] = None
    akronim: Optional[str] = None


class DistributionType(BaseModel):
    """Distribution classification (priority/category). Cosmetic but required."""
    id: str
    name: str
    code: str
    color: str = "#6B7280"
    priority: int = 0
    description: Optional[str] = None


class DocumentRef(BaseModel):
    """(document_type, document_id) pair identifying a document owned elsewhere."""
    model_config = ConfigDict(frozen=True)

    document_type: DocumentType
    document_id: str

    @property
    def key(self) -> Tuple[str, str]:
        return (self.document_type.value, self.document_id)


# =============================================================================
# CATALOG DOCUMENTS (closed tagged variant)
# =============================================================================

class AttachedDocument(BaseModel):
    """Supplementary document attached to an invoice, with its current location."""
    id: str
    number: str
    location_code: Optional[str] = None


class InvoiceDocument(BaseModel):
    document_type: Literal["invoice"] = "invoice"
    id: str
    number: str
    document_date: Optional[date] = None
    description: Optional[str] = None
    supplier_name: Optional[str] = None
    amount: Optional[float] = None
    currency: Optional[str] = None
    location_code: Optional[str] = None
    attached_documents: List[AttachedDocument] = Field(default_factory=list)

    @property
    def ref(self) -> DocumentRef:
        return DocumentRef(document_type=DocumentType.INVOICE, document_id=self.id)


class AdditionalDocument(BaseModel):
    document_type: Literal["additional_document"] = "additional_document"
    id: str
    number: str
    document_date: Optional[date] = None
    type_name: Optional[str] = None
    description: Optional[str] = None
    location_code: Optional[str] = None

    @property
    def ref(self) -> DocumentRef:
        return DocumentRef(document_type=DocumentType.ADDITIONAL_DOCUMENT, document_id=self.id)


CatalogDocument = Annotated[
    Union[InvoiceDocument, AdditionalDocument],
    Field(discriminator="document_type"),
]


# =============================================================================
# AGGREGATE PARTS
# =============================================================================

class DocumentLink(BaseModel):
    """Join between a distribution and one concrete document."""
    document_type: DocumentType
    document_id: str
    document_number: Optional[str] = None
    auto_included: bool = False
    # invoice ids whose attachments caused this link (auto-included links only)
    included_by: List[str] = Field(default_factory=list)
    sender_verified: bool = False
    receiver_verified: bool = False
    verification_status: VerificationStatus = VerificationStatus.VERIFIED
    verification_notes: Optional[str] = None

    @property
    def key(self) -> Tuple[str, str]:
        return (self.document_type.value, self.document_id)

    @property
    def ref(self) -> DocumentRef:
        return DocumentRef(document_type=self.document_type, document_id=self.document_id)


class DistributionWarning(BaseModel):
    """Ephemeral creation-time notice about an excluded supplementary document."""
    model_config = ConfigDict(frozen=True)

    type: Literal["location_mismatch"] = "location_mismatch"
    message: str
    document_type: DocumentType = DocumentType.ADDITIONAL_DOCUMENT
    document_id: str
    document_number: str
    invoice_id: str
    invoice_number: str
    document_location: Optional[str] = None
    expected_location: Optional[str] = None


class DocumentVerdict(BaseModel):
    """One party's verdict for one document link."""
    document_type: DocumentType
    document_id: str
    status: VerificationStatus = VerificationStatus.VERIFIED
    notes: Optional[str] = None

    @property
    def key(self) -> Tuple[str, str]:
        return (self.document_type.value, self.document_id)


class Discrepancy(BaseModel):
    """A receiver verdict other than verified, acknowledged or pending confirmation."""
    model_config = ConfigDict(frozen=True)

    document_type: DocumentType
    document_id: str
    document_number: Optional[str] = None
    status: VerificationStatus
    notes: str


class HistoryEntry(BaseModel):
    """Append-only audit record. Never mutated once written."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    action: HistoryAction
    description: str
    created_at: datetime = Field(default_factory=utc_now)
    actor: Optional[Actor] = None
    notes: Optional[str] = None
    from_status: Optional[DistributionStatus] = None
    to_status: Optional[DistributionStatus] = None
    metadata: Dict = Field(default_factory=dict)


# =============================================================================
# DISTRIBUTION AGGREGATE
# =============================================================================

class Distribution(BaseModel):
    """
    Transfer of one or more documents from an origin department to a
    destination department.

    Mutated only through the service layer; every write goes through the
    store's compare-and-swap on `version`.
    """
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    distribution_number: str
    document_type: DocumentType
    type_id: str
    origin_department_id: str
    destination_department_id: str
    status: DistributionStatus = DistributionStatus.DRAFT
    notes: Optional[str] = None

    creator: Actor
    sender_verifier: Optional[Actor] = None
    receiver_verifier: Optional[Actor] = None

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    sender_verified_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    received_at: Optional[datetime] = None
    receiver_verified_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    documents: List[DocumentLink] = Field(default_factory=list)
    discrepancies: List[Discrepancy] = Field(default_factory=list)
    history: Tuple[HistoryEntry, ...] = ()
    version: int = 0

    @property
    def has_discrepancies(self) -> bool:
        return bool(self.discrepancies)

    @property
    def explicit_links(self) -> List[DocumentLink]:
        return [link for link in self.documents if not link.auto_included]

    @property
    def auto_included_links(self) -> List[DocumentLink]:
        return [link for link in self.documents if link.auto_included]

    def find_link(self, document_type: DocumentType, document_id: str) -> Optional[DocumentLink]:
        key = (DocumentType(document_type).value, document_id)
        for link in self.documents:
            if link.key == key:
                return link
        return None

    def to_response(self) -> Dict:
        """JSON-ready representation used by the API."""
        data = self.model_dump(mode="json")
        data["has_discrepancies"] = self.has_discrepancies
        data["total_documents"] = len(self.documents)
        return data
