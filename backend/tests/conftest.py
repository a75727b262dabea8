"""
Shared fixtures for distribution tests.

Seed data:
- Accounting (000H) holds INV-001, INV-002 and additional documents AD-001, AD-003
- Site Office (017C) holds INV-003 and AD-002
- INV-001 references AD-001 and AD-002; INV-002 references AD-001 and AD-003
"""
import pytest
from datetime import date, datetime, timedelta, timezone

from services.distribution_config import DistributionSettings
from services.distribution.catalog import InMemoryDocumentCatalog
from services.distribution.models import (
    Actor,
    AdditionalDocument,
    Department,
    DistributionType,
    InvoiceDocument,
)
from services.distribution.service import DistributionService
from services.distribution.store import InMemoryDistributionStore


class TickingClock:
    """Deterministic clock advancing one second per reading."""

    def __init__(self, start=None):
        self.current = start or datetime(2025, 3, 1, 8, 0, tzinfo=timezone.utc)

    def __call__(self):
        self.current = self.current + timedelta(seconds=1)
        return self.current


ACCOUNTING = Department(id="dept-acc", name="Accounting", location_code="000H", project="000H", akronim="ACC")
LOGISTIC = Department(id="dept-log", name="Logistic", location_code="000HLOG", project="000H", akronim="LOG")
SITE = Department(id="dept-site", name="Site Office", location_code="017C", project="017C", akronim="SITE")

URGENT = DistributionType(id="type-urgent", name="Urgent", code="U", color="#DC2626", priority=1)
NORMAL = DistributionType(id="type-normal", name="Normal", code="N")

SENDER = Actor(id="user-ana", department_id=ACCOUNTING.id, name="Ana")
RECEIVER = Actor(id="user-budi", department_id=LOGISTIC.id, name="Budi")
OUTSIDER = Actor(id="user-citra", department_id=SITE.id, name="Citra")


def build_catalog() -> InMemoryDocumentCatalog:
    catalog = InMemoryDocumentCatalog()
    for department in (ACCOUNTING, LOGISTIC, SITE):
        catalog.add_department(department)
    catalog.add_distribution_type(URGENT)
    catalog.add_distribution_type(NORMAL)

    catalog.add_additional_document(AdditionalDocument(
        id="ad-1", number="AD-001", type_name="Delivery Order",
        document_date=date(2025, 2, 10), location_code="000H",
    ))
    catalog.add_additional_document(AdditionalDocument(
        id="ad-2", number="AD-002", type_name="Goods Receipt",
        document_date=date(2025, 2, 11), location_code="017C",
    ))
    catalog.add_additional_document(AdditionalDocument(
        id="ad-3", number="AD-003", type_name="Tax Invoice",
        document_date=date(2025, 2, 12), location_code="000H",
    ))

    catalog.add_invoice(InvoiceDocument(
        id="inv-1", number="INV-001", supplier_name="PT Maju", amount=1500000.0,
        currency="IDR", document_date=date(2025, 2, 1), location_code="000H",
    ), attached_ids=["ad-1", "ad-2"])
    catalog.add_invoice(InvoiceDocument(
        id="inv-2", number="INV-002", supplier_name="PT Jaya", amount=250.0,
        document_date=date(2025, 2, 3), location_code="000H",
    ), attached_ids=["ad-1", "ad-3"])
    catalog.add_invoice(InvoiceDocument(
        id="inv-3", number="INV-003", supplier_name="PT Sentosa", amount=99.0,
        currency="USD", document_date=date(2025, 2, 5), location_code="017C",
    ))
    return catalog


@pytest.fixture
def catalog():
    return build_catalog()


@pytest.fixture
def store():
    return InMemoryDistributionStore()


@pytest.fixture
def clock():
    return TickingClock()


@pytest.fixture
def service(store, catalog, clock):
    return DistributionService(
        store,
        catalog,
        location_tracker=catalog,
        settings=DistributionSettings(notes_max_length=1000, sequence_width=5, default_currency="IDR"),
        clock=clock,
    )
