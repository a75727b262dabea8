"""
Distribution Hub - Distribution Workflow Module

Moves invoices and additional documents between departments through a
two-sided, verified hand-off:

    draft -> verified_by_sender -> sent -> received -> verified_by_receiver -> completed

Components:
- DistributionStateMachine: transition table and actor eligibility
- VerificationEngine: sender/receiver verification with discrepancy confirmation
- resolve_auto_inclusions: pulls co-located attachments along with invoices
- HistoryRecorder: append-only history entries
- build_transmittal_snapshot: denormalized transmittal advice record
- DocumentCatalog / DistributionStore: adapters (in-memory and MongoDB)
- DistributionService: the public operations
"""

from .errors import (
    DistributionError,
    ValidationError,
    NotFoundError,
    UnauthorizedError,
    IllegalTransitionError,
    DiscrepancyConfirmationRequiredError,
)
from .models import (
    Actor,
    Department,
    DistributionType,
    DocumentRef,
    DocumentType,
    DocumentVerdict,
    Distribution,
    DistributionAction,
    DistributionStatus,
    VerificationStatus,
    HistoryAction,
    InvoiceDocument,
    AdditionalDocument,
)
from .state_machine import DistributionStateMachine
from .verification import VerificationEngine
from .auto_inclusion import resolve_auto_inclusions, AutoInclusionResult
from .history import HistoryRecorder
from .transmittal import build_transmittal_snapshot, TransmittalSnapshot
from .catalog import DocumentCatalog, DocumentLocationTracker, InMemoryDocumentCatalog, MongoDocumentCatalog
from .store import DistributionStore, InMemoryDistributionStore, MongoDistributionStore
from .service import DistributionService

__all__ = [
    'DistributionError',
    'ValidationError',
    'NotFoundError',
    'UnauthorizedError',
    'IllegalTransitionError',
    'DiscrepancyConfirmationRequiredError',
    'Actor',
    'Department',
    'DistributionType',
    'DocumentRef',
    'DocumentType',
    'DocumentVerdict',
    'Distribution',
    'DistributionAction',
    'DistributionStatus',
    'VerificationStatus',
    'HistoryAction',
    'InvoiceDocument',
    'AdditionalDocument',
    'DistributionStateMachine',
    'VerificationEngine',
    'resolve_auto_inclusions',
    'AutoInclusionResult',
    'HistoryRecorder',
    'build_transmittal_snapshot',
    'TransmittalSnapshot',
    'DocumentCatalog',
    'DocumentLocationTracker',
    'InMemoryDocumentCatalog',
    'MongoDocumentCatalog',
    'DistributionStore',
    'InMemoryDistributionStore',
    'MongoDistributionStore',
    'DistributionService',
]
