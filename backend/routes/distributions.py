"""
Distribution Hub - Distributions Router

HTTP surface over the distribution workflow engine: draft creation and
editing, the verified hand-off transitions, history and transmittal preview.
"""

from fastapi import APIRouter, Depends, HTTPException, Query
from typing import Optional, List
from pydantic import BaseModel, Field
import logging

from routes.auth import get_current_actor
from services.distribution.errors import (
    DistributionError,
    ValidationError,
    NotFoundError,
    UnauthorizedError,
    IllegalTransitionError,
    DiscrepancyConfirmationRequiredError,
)
from services.distribution.models import (
    Actor,
    DocumentRef,
    DocumentType,
    DocumentVerdict,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/distributions", tags=["distributions"])

# Distribution service - set by main app
distribution_service = None

def set_service(service):
    global distribution_service
    distribution_service = service


ERROR_STATUS_CODES = [
    (DiscrepancyConfirmationRequiredError, 428),
    (ValidationError, 422),
    (NotFoundError, 404),
    (UnauthorizedError, 403),
    (IllegalTransitionError, 409),
]


def _http_error(e: DistributionError) -> HTTPException:
    for error_class, status_code in ERROR_STATUS_CODES:
        if isinstance(e, error_class):
            return HTTPException(status_code=status_code, detail=e.to_dict())
    return HTTPException(status_code=400, detail=e.to_dict())


# ==================== MODELS ====================

class CreateDistributionRequest(BaseModel):
    document_type: DocumentType
    type_id: str
    origin_department_id: str
    destination_department_id: str
    notes: Optional[str] = None
    documents: List[DocumentRef] = Field(default_factory=list)


class UpdateDistributionRequest(BaseModel):
    type_id: Optional[str] = None
    destination_department_id: Optional[str] = None
    notes: Optional[str] = None


class AttachDocumentsRequest(BaseModel):
    documents: List[DocumentRef]


class VerificationRequest(BaseModel):
    document_verifications: List[DocumentVerdict] = Field(default_factory=list)
    verification_notes: Optional[str] = None


class ReceiverVerificationRequest(VerificationRequest):
    force_complete_with_discrepancies: bool = False


def _detail_response(distribution, actor: Actor) -> dict:
    data = distribution.to_response()
    data["available_actions"] = [a.value for a in distribution_service.available_actions(distribution, actor)]
    return {"success": True, "data": data}


# ==================== QUERY ENDPOINTS ====================

@router.get("/candidates")
async def list_candidate_documents(
    document_type: DocumentType = Query(...),
    department_id: Optional[str] = Query(None),
    search: Optional[str] = Query(None),
    actor: Actor = Depends(get_current_actor)
):
    """Documents currently located at a department (defaults to the caller's)."""
    try:
        documents = await distribution_service.list_candidate_documents(
            department_id or actor.department_id, document_type, search
        )
    except DistributionError as e:
        raise _http_error(e)
    return {
        "success": True,
        "data": [d.model_dump(mode="json") for d in documents],
        "total": len(documents),
    }


@router.get("/{distribution_id}")
async def get_distribution(distribution_id: str, actor: Actor = Depends(get_current_actor)):
    try:
        distribution = await distribution_service.get_distribution(distribution_id)
    except DistributionError as e:
        raise _http_error(e)
    return _detail_response(distribution, actor)


@router.get("/{distribution_id}/history")
async def get_distribution_history(distribution_id: str, actor: Actor = Depends(get_current_actor)):
    try:
        history = await distribution_service.get_history(distribution_id)
    except DistributionError as e:
        raise _http_error(e)
    return {"success": True, "data": [entry.model_dump(mode="json") for entry in history]}


@router.get("/{distribution_id}/transmittal-preview")
async def get_transmittal_preview(distribution_id: str, actor: Actor = Depends(get_current_actor)):
    """Denormalized transmittal advice data for rendering or export."""
    try:
        snapshot = await distribution_service.get_transmittal_snapshot(distribution_id)
    except DistributionError as e:
        raise _http_error(e)
    return {"success": True, "data": snapshot.to_dict()}


# ==================== DRAFT ENDPOINTS ====================

@router.post("", status_code=201)
async def create_distribution(req: CreateDistributionRequest, actor: Actor = Depends(get_current_actor)):
    """
    Create a draft distribution.

    For invoice distributions, additional documents attached to the selected
    invoices are included automatically when they sit at the origin location;
    the others come back as warnings.
    """
    try:
        distribution, warnings = await distribution_service.create_distribution(
            actor,
            document_type=req.document_type,
            type_id=req.type_id,
            origin_department_id=req.origin_department_id,
            destination_department_id=req.destination_department_id,
            notes=req.notes,
            selected_documents=req.documents,
        )
    except DistributionError as e:
        raise _http_error(e)

    response = _detail_response(distribution, actor)
    response["warnings"] = [w.model_dump(mode="json") for w in warnings]
    response["auto_included"] = len(distribution.auto_included_links)
    return response


@router.put("/{distribution_id}")
async def update_distribution(
    distribution_id: str,
    req: UpdateDistributionRequest,
    actor: Actor = Depends(get_current_actor)
):
    changes = req.model_dump(exclude_unset=True)
    try:
        distribution = await distribution_service.update_draft(distribution_id, actor, **changes)
    except DistributionError as e:
        raise _http_error(e)
    return _detail_response(distribution, actor)


@router.delete("/{distribution_id}")
async def discard_distribution(distribution_id: str, actor: Actor = Depends(get_current_actor)):
    try:
        await distribution_service.discard_draft(distribution_id, actor)
    except DistributionError as e:
        raise _http_error(e)
    return {"success": True, "message": "Distribution discarded"}


@router.post("/{distribution_id}/attach-documents")
async def attach_documents(
    distribution_id: str,
    req: AttachDocumentsRequest,
    actor: Actor = Depends(get_current_actor)
):
    try:
        distribution, warnings = await distribution_service.attach_documents(distribution_id, actor, req.documents)
    except DistributionError as e:
        raise _http_error(e)
    response = _detail_response(distribution, actor)
    response["warnings"] = [w.model_dump(mode="json") for w in warnings]
    return response


@router.delete("/{distribution_id}/detach-document/{document_type}/{document_id}")
async def detach_document(
    distribution_id: str,
    document_type: DocumentType,
    document_id: str,
    actor: Actor = Depends(get_current_actor)
):
    try:
        distribution = await distribution_service.detach_document(distribution_id, actor, document_type, document_id)
    except DistributionError as e:
        raise _http_error(e)
    return _detail_response(distribution, actor)


# ==================== WORKFLOW ACTIONS ====================

@router.post("/{distribution_id}/verify-sender")
async def verify_sender(
    distribution_id: str,
    req: VerificationRequest,
    actor: Actor = Depends(get_current_actor)
):
    try:
        distribution = await distribution_service.verify_sender(
            distribution_id, actor, req.document_verifications, notes=req.verification_notes
        )
    except DistributionError as e:
        raise _http_error(e)
    return _detail_response(distribution, actor)


@router.post("/{distribution_id}/send")
async def send_distribution(distribution_id: str, actor: Actor = Depends(get_current_actor)):
    try:
        distribution = await distribution_service.send(distribution_id, actor)
    except DistributionError as e:
        raise _http_error(e)
    return _detail_response(distribution, actor)


@router.post("/{distribution_id}/receive")
async def receive_distribution(distribution_id: str, actor: Actor = Depends(get_current_actor)):
    try:
        distribution = await distribution_service.receive(distribution_id, actor)
    except DistributionError as e:
        raise _http_error(e)
    return _detail_response(distribution, actor)


@router.post("/{distribution_id}/verify-receiver")
async def verify_receiver(
    distribution_id: str,
    req: ReceiverVerificationRequest,
    actor: Actor = Depends(get_current_actor)
):
    """
    Receiver verification. Reporting missing or damaged documents without
    `force_complete_with_discrepancies` returns 428 with the discrepancy list;
    resubmitting with the flag set commits the verification.
    """
    try:
        distribution = await distribution_service.verify_receiver(
            distribution_id,
            actor,
            req.document_verifications,
            notes=req.verification_notes,
            force=req.force_complete_with_discrepancies,
        )
    except DistributionError as e:
        raise _http_error(e)
    return _detail_response(distribution, actor)


@router.post("/{distribution_id}/complete")
async def complete_distribution(distribution_id: str, actor: Actor = Depends(get_current_actor)):
    try:
        distribution = await distribution_service.complete(distribution_id, actor)
    except DistributionError as e:
        raise _http_error(e)
    return _detail_response(distribution, actor)
