"""
Compliance Case Hub - Approvals Router

KYC / BRA approval workflow endpoints. The workflow kind is a path segment so
every kind shares one set of routes.

Every response body carries `success`, `error` and `message`; failed
operations map their error code to an HTTP status.
"""

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from fastapi.responses import JSONResponse
from typing import List, Optional
from pydantic import BaseModel
import logging

from .auth import get_current_actor
from services.actors import Actor, Capability
from services.approval_engine import ApprovalEngine, ApprovalError, DocumentUpload, WorkflowErrorCode, WorkflowKind
from services.workflow_config import get_max_upload_bytes
from services.workflow_orchestrator import WorkflowResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/workflows", tags=["approvals"])

# Workflow service - set by main app
workflow_service = None

def set_dependencies(service):
    global workflow_service
    workflow_service = service


ERROR_STATUS_CODES = {
    WorkflowErrorCode.NOT_FOUND: 404,
    WorkflowErrorCode.UNAUTHORIZED: 403,
    WorkflowErrorCode.ALREADY_INITIALIZED: 409,
    WorkflowErrorCode.ALREADY_REJECTED: 409,
    WorkflowErrorCode.STAGE_MISMATCH: 409,
    WorkflowErrorCode.STALE_WRITE_CONFLICT: 409,
    WorkflowErrorCode.STORAGE_UNAVAILABLE: 502,
}


# ==================== MODELS ====================

class RejectRequest(BaseModel):
    rejection_reason: Optional[str] = None


# ==================== HELPERS ====================

def _respond(result: WorkflowResult, success_status: int = 200) -> JSONResponse:
    if result.success:
        return JSONResponse(status_code=success_status, content=result.to_dict())
    return JSONResponse(status_code=ERROR_STATUS_CODES.get(result.error, 400), content=result.to_dict())


def _error_response(code: WorkflowErrorCode, message: str) -> JSONResponse:
    return _respond(WorkflowResult.failure(ApprovalError(code, message)))


def _can_view(actor: Actor, kind: WorkflowKind) -> bool:
    """Reviewers of any stage of the workflow, and the operations users who start it."""
    definition = ApprovalEngine.get_definition(kind)
    return actor.has_any_capability(
        [Capability.OPERATION_MANAGEMENT, *definition.stage_capabilities.values()]
    )


def _view_denied(kind: WorkflowKind) -> JSONResponse:
    return _error_response(
        WorkflowErrorCode.UNAUTHORIZED,
        f"Insufficient permissions. {kind.value} role required.",
    )


async def _read_upload(document: Optional[UploadFile], stage: str) -> Optional[DocumentUpload]:
    if document is None or not document.filename:
        return None
    # One byte past the stage limit is enough for the size check to fail
    content = await document.read(get_max_upload_bytes(stage.lower()) + 1)
    return DocumentUpload(
        file_name=document.filename,
        mime_type=document.content_type or "application/octet-stream",
        content=content,
    )


# ==================== QUERY ENDPOINTS ====================

@router.get("/{kind}/jobs")
async def list_workflow_jobs(
    kind: str,
    status: Optional[List[str]] = Query(None),
    actor: Actor = Depends(get_current_actor)
):
    """Jobs in the workflow, newest first. `status` may repeat or be comma separated."""
    try:
        workflow_kind = ApprovalEngine.parse_kind(kind)
    except ApprovalError as e:
        return _respond(WorkflowResult.failure(e))
    if not _can_view(actor, workflow_kind):
        return _view_denied(workflow_kind)

    statuses = [s.strip() for value in (status or []) for s in value.split(",") if s.strip()]
    jobs = await workflow_service.list_jobs(workflow_kind, statuses or None)
    return {"success": True, "kind": workflow_kind.value, "jobs": jobs, "total": len(jobs)}


@router.get("/{kind}/jobs/{job_id}/status")
async def get_workflow_status(kind: str, job_id: str, actor: Actor = Depends(get_current_actor)):
    try:
        workflow_kind = ApprovalEngine.parse_kind(kind)
    except ApprovalError as e:
        return _respond(WorkflowResult.failure(e))
    if not _can_view(actor, workflow_kind):
        return _view_denied(workflow_kind)
    return _respond(await workflow_service.get_status(job_id, workflow_kind))


# ==================== TRANSITION ENDPOINTS ====================

@router.post("/{kind}/jobs/{job_id}/initialize")
async def initialize_workflow(kind: str, job_id: str, actor: Actor = Depends(get_current_actor)):
    """Start the approval workflow for a job. Requires operation management."""
    try:
        workflow_kind = ApprovalEngine.parse_kind(kind)
    except ApprovalError as e:
        return _respond(WorkflowResult.failure(e))

    if not actor.has_capability(Capability.OPERATION_MANAGEMENT):
        return _error_response(
            WorkflowErrorCode.UNAUTHORIZED,
            "Insufficient permissions. Operation management role required.",
        )

    result = await workflow_service.initialize(job_id, workflow_kind, actor)
    return _respond(result, success_status=201)


@router.put("/{kind}/jobs/{job_id}/reject")
async def reject_workflow(
    kind: str,
    job_id: str,
    body: RejectRequest,
    actor: Actor = Depends(get_current_actor)
):
    try:
        workflow_kind = ApprovalEngine.parse_kind(kind)
    except ApprovalError as e:
        return _respond(WorkflowResult.failure(e))
    result = await workflow_service.reject(job_id, workflow_kind, actor, body.rejection_reason)
    return _respond(result)


@router.put("/{kind}/jobs/{job_id}/{stage}-approve")
async def approve_stage(
    kind: str,
    job_id: str,
    stage: str,
    document: Optional[UploadFile] = File(None),
    notes: Optional[str] = Form(None),
    actor: Actor = Depends(get_current_actor)
):
    """
    Approve the current stage with a supporting document.

    Multipart form:
    - document: PDF, Word, Excel or image file (required)
    - notes: free-text reviewer notes
    """
    try:
        workflow_kind = ApprovalEngine.parse_kind(kind)
    except ApprovalError as e:
        return _respond(WorkflowResult.failure(e))

    upload = await _read_upload(document, stage)
    result = await workflow_service.advance(job_id, workflow_kind, stage, actor, upload, notes)
    return _respond(result)
