"""
Distribution Hub - Document Catalog Adapter

Read-side access to the records the distribution engine references but does
not own: invoices and additional documents (with their current location),
departments and distribution types. A separate location-tracking capability
records document movements once a distribution has been received.

Implementations:
- InMemoryDocumentCatalog: programmatic catalog for tests and demos
- MongoDocumentCatalog: motor-backed catalog over the hub's collections
"""

import logging
import re
from abc import ABC, abstractmethod
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Union

from dateutil import parser as date_parser
from pydantic import TypeAdapter

from services.distribution.models import (
    AdditionalDocument,
    AttachedDocument,
    CatalogDocument,
    Department,
    DistributionType,
    DocumentType,
    InvoiceDocument,
)

logger = logging.getLogger(__name__)

_catalog_document_adapter = TypeAdapter(CatalogDocument)


def _matches_search(document: Union[InvoiceDocument, AdditionalDocument], search: Optional[str]) -> bool:
    if not search:
        return True
    needle = search.strip().lower()
    haystack = [document.number, document.description]
    if isinstance(document, InvoiceDocument):
        haystack.append(document.supplier_name)
    else:
        haystack.append(document.type_name)
    return any(needle in value.lower() for value in haystack if value)


INVOICE_SEARCH_FIELDS = ["invoice_number", "description", "supplier.name"]
ADDITIONAL_SEARCH_FIELDS = ["document_number", "remarks", "type.type_name"]


def _search_clauses(search: str, fields: List[str]) -> List[Dict[str, Any]]:
    """Case-insensitive literal substring match over `fields`, mirroring `_matches_search`."""
    pattern = re.escape(search.strip())
    return [{field: {"$regex": pattern, "$options": "i"}} for field in fields]


def _same_location(left: Optional[str], right: Optional[str]) -> bool:
    if not left or not right:
        return False
    return left.strip().upper() == right.strip().upper()


class DocumentCatalog(ABC):
    """
    Lookup of documents eligible for distribution plus the reference data
    (departments, distribution types) a distribution points at.
    """

    @abstractmethod
    async def list_candidate_documents(
        self,
        department_id: str,
        document_type: DocumentType,
        search: Optional[str] = None
    ) -> List[Union[InvoiceDocument, AdditionalDocument]]:
        """Documents of the given type currently located at the department."""
        pass

    @abstractmethod
    async def get_document(
        self,
        document_type: DocumentType,
        document_id: str
    ) -> Optional[Union[InvoiceDocument, AdditionalDocument]]:
        pass

    @abstractmethod
    async def get_department(self, department_id: str) -> Optional[Department]:
        pass

    @abstractmethod
    async def get_distribution_type(self, type_id: str) -> Optional[DistributionType]:
        pass


class DocumentLocationTracker(ABC):
    """Records physical document movements between location codes."""

    @abstractmethod
    async def record_movement(
        self,
        document_type: DocumentType,
        document_id: str,
        from_location: Optional[str],
        to_location: str,
        distribution_id: Optional[str] = None,
        reason: Optional[str] = None,
        moved_by: Optional[str] = None
    ) -> None:
        pass


# =============================================================================
# IN-MEMORY CATALOG
# =============================================================================

class InMemoryDocumentCatalog(DocumentCatalog, DocumentLocationTracker):
    """
    In-memory catalog for testing.

    Records can be added programmatically. Attached documents on invoices are
    resolved live from the additional-document records, so a location change
    is visible to the next auto-inclusion run.
    """

    def __init__(self):
        self._departments: Dict[str, Department] = {}
        self._types: Dict[str, DistributionType] = {}
        self._invoices: Dict[str, InvoiceDocument] = {}
        self._additional: Dict[str, AdditionalDocument] = {}
        self._attachments: Dict[str, List[str]] = {}
        self.movements: List[Dict[str, Any]] = []

    def add_department(self, department: Department) -> Department:
        self._departments[department.id] = department
        return department

    def add_distribution_type(self, distribution_type: DistributionType) -> DistributionType:
        self._types[distribution_type.id] = distribution_type
        return distribution_type

    def add_additional_document(self, document: AdditionalDocument) -> AdditionalDocument:
        self._additional[document.id] = document
        return document

    def add_invoice(self, invoice: InvoiceDocument, attached_ids: Optional[List[str]] = None) -> InvoiceDocument:
        """Add an invoice. `attached_ids` link previously added additional documents."""
        self._invoices[invoice.id] = invoice.model_copy(update={"attached_documents": []})
        self._attachments[invoice.id] = list(attached_ids or [])
        return invoice

    def _with_attachments(self, invoice: InvoiceDocument) -> InvoiceDocument:
        attached = [
            AttachedDocument(id=doc.id, number=doc.number, location_code=doc.location_code)
            for doc in (self._additional.get(doc_id) for doc_id in self._attachments.get(invoice.id, []))
            if doc is not None
        ]
        return invoice.model_copy(update={"attached_documents": attached})

    async def list_candidate_documents(self, department_id, document_type, search=None):
        department = self._departments.get(department_id)
        if department is None:
            return []
        if DocumentType(document_type) == DocumentType.INVOICE:
            pool = [self._with_attachments(inv) for inv in self._invoices.values()]
        else:
            pool = list(self._additional.values())
        return [
            doc for doc in sorted(pool, key=lambda d: d.number)
            if _same_location(doc.location_code, department.location_code) and _matches_search(doc, search)
        ]

    async def get_document(self, document_type, document_id):
        if DocumentType(document_type) == DocumentType.INVOICE:
            invoice = self._invoices.get(document_id)
            return self._with_attachments(invoice) if invoice else None
        return self._additional.get(document_id)

    async def get_department(self, department_id):
        return self._departments.get(department_id)

    async def get_distribution_type(self, type_id):
        return self._types.get(type_id)

    async def record_movement(
        self,
        document_type,
        document_id,
        from_location,
        to_location,
        distribution_id=None,
        reason=None,
        moved_by=None
    ):
        store = self._invoices if DocumentType(document_type) == DocumentType.INVOICE else self._additional
        document = store.get(document_id)
        if document is not None:
            store[document_id] = document.model_copy(update={"location_code": to_location})
        self.movements.append({
            "document_type": DocumentType(document_type).value,
            "document_id": document_id,
            "from_location": from_location,
            "to_location": to_location,
            "distribution_id": distribution_id,
            "reason": reason,
            "moved_by": moved_by,
            "moved_at": datetime.now(timezone.utc).isoformat(),
        })


# =============================================================================
# MONGO CATALOG
# =============================================================================

class MongoDocumentCatalog(DocumentCatalog, DocumentLocationTracker):
    """
    Catalog over the hub's MongoDB collections.

    Collections: departments, distribution_types, invoices,
    additional_documents, document_locations.
    """

    def __init__(self, db):
        self.db = db

    @staticmethod
    def _parse_date(value) -> Optional[date]:
        """Legacy records carry dates as free-form strings."""
        if value is None or value == "":
            return None
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, date):
            return value
        try:
            return date_parser.parse(str(value)).date()
        except (ValueError, OverflowError):
            logger.warning("Unparseable document date: %r", value)
            return None

    async def _attached_by_invoice(self, invoice_ids: List[str]) -> Dict[str, List[Dict[str, Any]]]:
        """Attached documents for a batch of invoices, in one query."""
        attached: Dict[str, List[Dict[str, Any]]] = {invoice_id: [] for invoice_id in invoice_ids}
        if not invoice_ids:
            return attached
        docs = await self.db.additional_documents.find(
            {"invoice_ids": {"$in": invoice_ids}},
            {"_id": 0, "id": 1, "invoice_ids": 1, "document_number": 1, "current_location": 1}
        ).to_list(None)
        for d in sorted(docs, key=lambda d: d.get("document_number", "")):
            entry = {"id": d["id"], "number": d.get("document_number", ""), "location_code": d.get("current_location")}
            for invoice_id in d.get("invoice_ids") or []:
                if invoice_id in attached:
                    attached[invoice_id].append(entry)
        return attached

    async def _invoices_from_records(self, records: List[Dict[str, Any]]) -> List[InvoiceDocument]:
        attached = await self._attached_by_invoice([r["id"] for r in records])
        return [self._invoice_from_record(r, attached[r["id"]]) for r in records]

    def _invoice_from_record(self, record: Dict[str, Any], attached: List[Dict[str, Any]]) -> InvoiceDocument:
        return _catalog_document_adapter.validate_python({
            "document_type": DocumentType.INVOICE.value,
            "id": record["id"],
            "number": record.get("invoice_number", ""),
            "document_date": self._parse_date(record.get("invoice_date")),
            "description": record.get("description"),
            "supplier_name": (record.get("supplier") or {}).get("name"),
            "amount": record.get("amount"),
            "currency": record.get("currency"),
            "location_code": record.get("current_location"),
            "attached_documents": attached,
        })

    def _additional_from_record(self, record: Dict[str, Any]) -> AdditionalDocument:
        return _catalog_document_adapter.validate_python({
            "document_type": DocumentType.ADDITIONAL_DOCUMENT.value,
            "id": record["id"],
            "number": record.get("document_number", ""),
            "document_date": self._parse_date(record.get("document_date")),
            "type_name": (record.get("type") or {}).get("type_name"),
            "description": record.get("remarks"),
            "location_code": record.get("current_location"),
        })

    async def list_candidate_documents(self, department_id, document_type, search=None):
        department = await self.get_department(department_id)
        if department is None:
            return []

        query: Dict[str, Any] = {"current_location": department.location_code}
        if DocumentType(document_type) == DocumentType.INVOICE:
            if search:
                query["$or"] = _search_clauses(search, INVOICE_SEARCH_FIELDS)
            records = await self.db.invoices.find(query, {"_id": 0}).sort("invoice_number", 1).to_list(500)
            return await self._invoices_from_records(records)

        if search:
            query["$or"] = _search_clauses(search, ADDITIONAL_SEARCH_FIELDS)
        records = await self.db.additional_documents.find(query, {"_id": 0}).sort("document_number", 1).to_list(500)
        return [self._additional_from_record(r) for r in records]

    async def get_document(self, document_type, document_id):
        if DocumentType(document_type) == DocumentType.INVOICE:
            record = await self.db.invoices.find_one({"id": document_id}, {"_id": 0})
            if record is None:
                return None
            return (await self._invoices_from_records([record]))[0]
        record = await self.db.additional_documents.find_one({"id": document_id}, {"_id": 0})
        return self._additional_from_record(record) if record else None

    async def get_department(self, department_id):
        record = await self.db.departments.find_one({"id": department_id}, {"_id": 0})
        return Department(**record) if record else None

    async def get_distribution_type(self, type_id):
        record = await self.db.distribution_types.find_one({"id": type_id}, {"_id": 0})
        return DistributionType(**record) if record else None

    async def record_movement(
        self,
        document_type,
        document_id,
        from_location,
        to_location,
        distribution_id=None,
        reason=None,
        moved_by=None
    ):
        collection = (
            self.db.invoices if DocumentType(document_type) == DocumentType.INVOICE
            else self.db.additional_documents
        )
        now = datetime.now(timezone.utc).isoformat()
        await self.db.document_locations.insert_one({
            "document_type": DocumentType(document_type).value,
            "document_id": document_id,
            "location_code": to_location,
            "from_location": from_location,
            "moved_by": moved_by,
            "moved_at": now,
            "distribution_id": distribution_id,
            "reason": reason,
        })
        await collection.update_one(
            {"id": document_id},
            {"$set": {"current_location": to_location, "updated_utc": now}}
        )
