"""
Distribution Hub - Transmittal Advice Snapshot

Builds the immutable, fully denormalized record of a distribution that an
external renderer turns into the printed/PDF transmittal advice. Safe to call
at any lifecycle stage; never mutates the aggregate.
"""

import json
from datetime import date, datetime
from typing import Dict, List, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict

from services.distribution.models import (
    AdditionalDocument,
    Department,
    Distribution,
    DistributionType,
    DocumentType,
    InvoiceDocument,
    VerificationStatus,
    utc_now,
)

NO_DOCUMENTS_MESSAGE = "No documents attached"

DOCUMENT_TYPE_LABELS = {
    DocumentType.INVOICE.value: "Invoice",
    DocumentType.ADDITIONAL_DOCUMENT.value: "Additional Document",
}


class TransmittalDepartment(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    location_code: str
    project: Optional[str] = None
    akronim: Optional[str] = None


class TransmittalCreator(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    department: str


class TransmittalDistributionType(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    code: str
    color: str


class TransmittalDocumentRow(BaseModel):
    model_config = ConfigDict(frozen=True)

    sequence: int
    document_type: Optional[DocumentType] = None
    type: str
    number: str
    description: str = ""
    document_date: Optional[date] = None
    amount: Optional[float] = None
    currency: Optional[str] = None
    auto_included: bool = False
    verification_status: Optional[VerificationStatus] = None
    verification_notes: Optional[str] = None
    placeholder: bool = False


class TransmittalSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    distribution_id: str
    distribution_number: str
    distribution_date: datetime
    distribution_type: TransmittalDistributionType
    status: str
    origin_department: TransmittalDepartment
    destination_department: TransmittalDepartment
    creator: TransmittalCreator
    notes: Optional[str] = None
    documents: Tuple[TransmittalDocumentRow, ...] = ()
    total_documents: int = 0
    has_discrepancies: bool = False
    qr_code_data: str
    generated_at: datetime

    @property
    def display_rows(self) -> Tuple[TransmittalDocumentRow, ...]:
        """Rows for rendering: a single placeholder row when nothing is attached."""
        if self.documents:
            return self.documents
        return (TransmittalDocumentRow(
            sequence=0,
            type="",
            number="",
            description=NO_DOCUMENTS_MESSAGE,
            placeholder=True,
        ),)

    def to_dict(self) -> Dict:
        data = self.model_dump(mode="json")
        data["display_rows"] = [row.model_dump(mode="json") for row in self.display_rows]
        return data


def _department(department: Department) -> TransmittalDepartment:
    return TransmittalDepartment(
        id=department.id,
        name=department.name,
        location_code=department.location_code,
        project=department.project,
        akronim=department.akronim,
    )


def _qr_code_data(distribution: Distribution) -> str:
    return json.dumps({
        "distribution_id": distribution.id,
        "distribution_number": distribution.distribution_number,
        "total_documents": len(distribution.documents),
    }, sort_keys=True)


def build_transmittal_snapshot(
    distribution: Distribution,
    distribution_type: DistributionType,
    origin: Department,
    destination: Department,
    documents: Mapping[Tuple[str, str], Union[InvoiceDocument, AdditionalDocument, None]],
    creator_department: Optional[Department] = None,
    default_currency: str = "IDR",
    generated_at: Optional[datetime] = None
) -> TransmittalSnapshot:
    """
    Project a distribution into a transmittal snapshot.

    `documents` maps link keys to the catalog records resolved by the caller.
    A link whose record could not be resolved still gets a row so the total
    always matches the distribution's composition.
    """
    rows: List[TransmittalDocumentRow] = []
    for sequence, link in enumerate(distribution.documents, start=1):
        record = documents.get(link.key)
        row = {
            "sequence": sequence,
            "document_type": link.document_type,
            "type": DOCUMENT_TYPE_LABELS[link.document_type.value],
            "number": link.document_number or link.document_id,
            "auto_included": link.auto_included,
            "verification_status": link.verification_status if distribution.receiver_verified_at else None,
            "verification_notes": link.verification_notes,
        }
        if record is None:
            row["description"] = "Document record unavailable"
        elif isinstance(record, InvoiceDocument):
            row.update({
                "number": record.number,
                "description": record.description or record.supplier_name or "",
                "document_date": record.document_date,
                "amount": record.amount,
                "currency": (record.currency or default_currency) if record.amount is not None else record.currency,
            })
        else:
            row.update({
                "number": record.number,
                "type": record.type_name or row["type"],
                "description": record.description or "",
                "document_date": record.document_date,
            })
        rows.append(TransmittalDocumentRow(**row))

    creator = distribution.creator
    return TransmittalSnapshot(
        distribution_id=distribution.id,
        distribution_number=distribution.distribution_number,
        distribution_date=distribution.created_at,
        distribution_type=TransmittalDistributionType(
            id=distribution_type.id,
            name=distribution_type.name,
            code=distribution_type.code,
            color=distribution_type.color,
        ),
        status=distribution.status.value,
        origin_department=_department(origin),
        destination_department=_department(destination),
        creator=TransmittalCreator(
            id=creator.id,
            name=creator.name or creator.id,
            department=creator_department.name if creator_department else creator.department_id,
        ),
        notes=distribution.notes,
        documents=tuple(rows),
        total_documents=len(rows),
        has_discrepancies=distribution.has_discrepancies,
        qr_code_data=_qr_code_data(distribution),
        generated_at=generated_at or utc_now(),
    )
