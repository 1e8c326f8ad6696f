"""
Compliance Case Hub - Approval Workflow Service

Binds the approval engine to jobs, storage and notifications.

Every workflow operation returns a WorkflowResult; validation failures are never
raised to the caller. Side effects are partitioned:
- document upload failure aborts the operation before anything is written
- predecessor document deletion, notifications and successor-workflow
  start-up are best effort and only logged on failure

Sequence for a stage approval:
    read approval -> validate -> upload -> compare-and-swap write
    -> delete predecessor document -> job status + timeline -> notify
    -> (KYC completed) start BRA
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from services.actors import Actor
from services.approval_engine import (
    AdvanceOutcome, Approval, ApprovalEngine, ApprovalError, ApprovalStage, ApprovalStatus,
    DocumentUpload, StoredDocument, TimelineEntry, WorkflowErrorCode, WorkflowKind,
    PREDECESSOR_STAGE, STAGE_LABELS, utcnow_iso
)
from services.blob_store import BlobStore, UploadResult
from services.case_store import CaseStore, DuplicateApprovalError, Job, StaleWriteConflictError
from services.notification_service import Audience, NotificationEvent, Notifier
from services.workflow_config import UPLOAD_TIMEOUT_SECONDS, get_max_upload_bytes

logger = logging.getLogger(__name__)


@dataclass
class WorkflowResult:
    """Outcome of a workflow operation."""
    success: bool
    message: str = ""
    error: Optional[WorkflowErrorCode] = None
    approval: Optional[Approval] = None
    details: Dict[str, Any] = field(default_factory=dict)
    successor_initialized: bool = False

    @classmethod
    def ok(cls, approval: Optional[Approval], message: str, **details) -> "WorkflowResult":
        return cls(success=True, message=message, approval=approval, details=details)

    @classmethod
    def failure(cls, error: ApprovalError) -> "WorkflowResult":
        return cls(success=False, message=error.message, error=error.code, details=error.details)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "error": self.error.value if self.error else None,
            "message": self.message,
            "approval": self.approval.to_dict() if self.approval else None,
            "successor_initialized": self.successor_initialized,
            **self.details,
        }


class ApprovalWorkflowService:
    """
    Orchestrates the approval workflows for every workflow kind.

    Usage:
        service = ApprovalWorkflowService(case_store, blob_store, notifier)
        result = await service.initialize(job_id, WorkflowKind.KYC, actor)
        result = await service.advance(job_id, WorkflowKind.KYC, "lmro", actor, upload, "ok")
    """

    def __init__(
        self,
        case_store: CaseStore,
        blob_store: BlobStore,
        notifier: Notifier,
        upload_timeout_seconds: Optional[float] = None
    ):
        self.case_store = case_store
        self.blob_store = blob_store
        self.notifier = notifier
        self.upload_timeout_seconds = upload_timeout_seconds or UPLOAD_TIMEOUT_SECONDS

    # =========================================================================
    # INITIALIZE
    # =========================================================================

    async def initialize(
        self,
        job_id: str,
        kind: WorkflowKind,
        actor: Actor,
        chained_from: Optional[WorkflowKind] = None
    ) -> WorkflowResult:
        """Create the approval for (job, kind) if the job is ready for it."""
        kind = WorkflowKind(kind)
        definition = ApprovalEngine.get_definition(kind)

        try:
            job = await self._require_job(job_id)
            if job.status != definition.predecessor_job_status.value:
                raise ApprovalError(
                    WorkflowErrorCode.INVALID_JOB_STATE,
                    f"Job must be in status '{definition.predecessor_job_status.value}' to start "
                    f"{kind.value}. Current status: {job.status}",
                    {"job_status": job.status, "required_status": definition.predecessor_job_status.value},
                )

            existing = await self.case_store.get_approval(job.id, kind)
            if existing is not None:
                raise self._existing_approval_error(existing)

            approval = ApprovalEngine.create_approval(job.id, kind)
            try:
                await self.case_store.insert_approval(approval)
            except DuplicateApprovalError:
                existing = await self.case_store.get_approval(job.id, kind)
                raise self._existing_approval_error(existing, kind)
        except ApprovalError as e:
            logger.warning("%s initialize blocked for job %s: %s", kind.value, job_id, e.message)
            return WorkflowResult.failure(e)

        if chained_from is not None:
            description = f"{kind.value} process automatically initialized after {chained_from.value} completion"
        else:
            description = f"{kind.value} process initialized"

        await self.case_store.update_job_status(
            job.id,
            definition.pending_job_status.value,
            TimelineEntry(status=definition.pending_job_status.value, description=description, updated_by=actor.id),
            expected_statuses=definition.statuses_before(definition.pending_job_status),
        )

        await self._notify(
            NotificationEvent(
                title=f"New {kind.value} Review Required",
                description=f"{kind.value} review required for {job.client_name}'s job",
                category=definition.notification_category,
                related_entity={"model": "Job", "id": job.id},
            ),
            Audience.holders_of(definition.stage_capabilities[ApprovalStage.LMRO]),
        )

        logger.info("%s approval initialized for job %s by %s", kind.value, job.id, actor.id)
        return WorkflowResult.ok(approval, f"{kind.value} process initialized successfully")

    @staticmethod
    def _existing_approval_error(existing: Optional[Approval], kind: Optional[WorkflowKind] = None) -> ApprovalError:
        if existing is None:
            return ApprovalError(
                WorkflowErrorCode.ALREADY_INITIALIZED,
                f"{kind.value if kind else 'Approval'} process already initialized for this job",
            )
        if existing.status == ApprovalStatus.REJECTED:
            return ApprovalError(
                WorkflowErrorCode.ALREADY_REJECTED,
                f"{existing.kind.value} process was previously rejected for this job",
                {
                    "current_stage": existing.current_stage.value,
                    "rejection": existing.rejection.to_dict() if existing.rejection else None,
                },
            )
        return ApprovalError(
            WorkflowErrorCode.ALREADY_INITIALIZED,
            f"{existing.kind.value} process already initialized for this job",
            {"current_status": existing.status.value, "current_stage": existing.current_stage.value},
        )

    # =========================================================================
    # ADVANCE
    # =========================================================================

    async def advance(
        self,
        job_id: str,
        kind: WorkflowKind,
        stage: Any,
        actor: Actor,
        document: Optional[DocumentUpload],
        notes: Optional[str] = None
    ) -> WorkflowResult:
        """Approve `stage` with a freshly uploaded document."""
        kind = WorkflowKind(kind)
        definition = ApprovalEngine.get_definition(kind)

        try:
            stage = ApprovalEngine.parse_stage(stage)
            approval = await self._require_approval(job_id, kind)
            ApprovalEngine.validate_advance(approval, stage, actor, document)

            stored = await self._store_document(approval, stage, actor, document)
            outcome = ApprovalEngine.apply_advance(approval, stage, actor, stored, notes)
            try:
                saved = await self.case_store.save_approval(
                    outcome.approval, approval.current_stage, approval.version
                )
            except StaleWriteConflictError:
                await self._delete_quietly(stored.storage_id, "orphaned upload after write conflict")
                raise await self._conflict_error(job_id, kind, stage)
        except ApprovalError as e:
            logger.warning("%s %s approval blocked for job %s: %s", kind.value, stage, job_id, e.message)
            return WorkflowResult.failure(e)

        if outcome.purged_document is not None:
            await self._delete_quietly(
                outcome.purged_document.storage_id,
                f"superseded {STAGE_LABELS[PREDECESSOR_STAGE[stage]]} document",
            )

        job = await self.case_store.get_job(saved.job_id)
        job_status = ApprovalEngine.job_status_for_stage(kind, stage)
        if outcome.completed:
            description = f"{kind.value} process completed and approved with final document submission"
        else:
            description = f"{kind.value} approved by {STAGE_LABELS[stage]} with document submission"
        # A later stage may already have written its status; never move the job back
        await self.case_store.update_job_status(
            saved.job_id, job_status.value,
            TimelineEntry(status=job_status.value, description=description, updated_by=actor.id),
            expected_statuses=definition.statuses_before(job_status),
        )

        await self._notify_advance(saved, outcome, job)

        result = WorkflowResult.ok(saved, description)
        if outcome.completed and definition.successor_kind is not None:
            result.successor_initialized = await self._start_successor(
                saved.job_id, definition.successor_kind, actor, kind
            )
        return result

    async def _store_document(
        self,
        approval: Approval,
        stage: ApprovalStage,
        actor: Actor,
        document: DocumentUpload
    ) -> StoredDocument:
        folder = ApprovalEngine.blob_folder(approval.kind, approval.job_id, stage)
        try:
            result = await asyncio.wait_for(
                self.blob_store.upload(
                    document.content,
                    file_name=document.file_name,
                    mime_type=document.mime_type,
                    folder=folder,
                    max_size_bytes=get_max_upload_bytes(stage.value),
                    timeout_seconds=self.upload_timeout_seconds,
                ),
                timeout=self.upload_timeout_seconds,
            )
        except asyncio.TimeoutError:
            result = UploadResult(
                success=False, error=f"Upload timed out after {self.upload_timeout_seconds} seconds"
            )
        except Exception as e:
            logger.exception("Blob store raised during upload for job %s", approval.job_id)
            result = UploadResult(success=False, error=f"{type(e).__name__}: {e}")

        if not result.success:
            logger.error(
                "Document upload failed for job %s (%s %s): %s",
                approval.job_id, approval.kind.value, stage.value, result.error
            )
            raise ApprovalError(
                WorkflowErrorCode.STORAGE_UNAVAILABLE,
                "Failed to upload document to cloud storage",
                {"storage_error": result.error},
            )

        return StoredDocument(
            url=result.url,
            file_name=document.file_name,
            mime_type=document.mime_type,
            storage_id=result.object_id,
            uploaded_at=utcnow_iso(),
            uploaded_by=actor.id,
        )

    async def _conflict_error(self, job_id: str, kind: WorkflowKind, stage: ApprovalStage) -> ApprovalError:
        """Explain a lost compare-and-swap using the reloaded record."""
        current = await self.case_store.get_approval(job_id, kind)
        if current is None:
            return ApprovalError(WorkflowErrorCode.NOT_FOUND, f"{kind.value} approval record not found")
        if current.is_finalized:
            return ApprovalError(
                WorkflowErrorCode.ALREADY_FINALIZED,
                f"{kind.value} process is already {current.status.value}",
                {"status": current.status.value, "current_stage": current.current_stage.value},
            )
        if current.current_stage != stage:
            return ApprovalError(
                WorkflowErrorCode.STAGE_MISMATCH,
                f"Current approval stage is {STAGE_LABELS[current.current_stage]}, not {STAGE_LABELS[stage]}",
                {"current_stage": current.current_stage.value, "requested_stage": stage.value},
            )
        return ApprovalError(
            WorkflowErrorCode.STALE_WRITE_CONFLICT,
            f"{kind.value} approval was modified concurrently; reload and retry",
            {"current_stage": current.current_stage.value, "version": current.version},
        )

    async def _notify_advance(self, approval: Approval, outcome: AdvanceOutcome, job: Optional[Job]) -> None:
        kind = approval.kind
        definition = ApprovalEngine.get_definition(kind)
        client_name = job.client_name if job else "Unknown Client"
        related = {"model": "Job", "id": approval.job_id}

        if not outcome.completed:
            next_label = STAGE_LABELS[outcome.to_stage]
            if outcome.to_stage == ApprovalStage.CEO:
                title = f"Final {kind.value} Approval Required"
                description = (
                    f"{STAGE_LABELS[outcome.from_stage]} has approved {client_name}'s {kind.value}. "
                    f"{next_label} final review required."
                )
            else:
                title = f"{kind.value} Approval Required"
                description = (
                    f"{STAGE_LABELS[outcome.from_stage]} has approved {client_name}'s {kind.value}. "
                    f"{next_label} review required."
                )
            await self._notify(
                NotificationEvent(title, description, definition.notification_category, related),
                Audience.holders_of(definition.stage_capabilities[outcome.to_stage]),
            )
            return

        description = f"{kind.value} process for {client_name}'s job has been completed successfully."
        if job and job.assigned_person:
            await self._notify(
                NotificationEvent(f"{kind.value} Process Completed", description,
                                  definition.notification_category, related),
                Audience.user(job.assigned_person),
            )
        await self._notify(
            NotificationEvent(f"{kind.value} Completed", description, definition.notification_category, related),
            Audience.admins(),
        )

    async def _start_successor(
        self,
        job_id: str,
        successor: WorkflowKind,
        actor: Actor,
        completed_kind: WorkflowKind
    ) -> bool:
        """Start the next workflow. Failures never undo the completed one."""
        try:
            result = await self.initialize(job_id, successor, actor, chained_from=completed_kind)
        except Exception as e:
            logger.error("Error auto-initializing %s for job %s: %s", successor.value, job_id, e)
            return False
        if not result.success:
            logger.warning(
                "%s not auto-initialized for job %s after %s completion: %s",
                successor.value, job_id, completed_kind.value, result.message
            )
            return False
        logger.info("%s process automatically initialized for job %s", successor.value, job_id)
        return True

    # =========================================================================
    # REJECT
    # =========================================================================

    async def reject(self, job_id: str, kind: WorkflowKind, actor: Actor, reason: Optional[str]) -> WorkflowResult:
        """Reject at the current stage. Stored documents stay as audit trail."""
        kind = WorkflowKind(kind)
        definition = ApprovalEngine.get_definition(kind)

        try:
            approval = await self._require_approval(job_id, kind)
            ApprovalEngine.validate_reject(approval, actor, reason)
            updated = ApprovalEngine.apply_reject(approval, actor, reason)
            try:
                saved = await self.case_store.save_approval(updated, approval.current_stage, approval.version)
            except StaleWriteConflictError:
                raise await self._conflict_error(job_id, kind, approval.current_stage)
        except ApprovalError as e:
            logger.warning("%s rejection blocked for job %s: %s", kind.value, job_id, e.message)
            return WorkflowResult.failure(e)

        reason = saved.rejection.reason
        rejected_status = definition.rejected_job_status.value
        await self.case_store.update_job_status(
            saved.job_id, rejected_status,
            TimelineEntry(status=rejected_status, description=f"{kind.value} rejected: {reason}", updated_by=actor.id),
            expected_statuses=definition.statuses_before(definition.rejected_job_status),
        )

        job = await self.case_store.get_job(saved.job_id)
        client_name = job.client_name if job else "Unknown Client"
        related = {"model": "Job", "id": saved.job_id}
        if job and job.assigned_person:
            await self._notify(
                NotificationEvent(
                    f"{kind.value} Request Rejected",
                    f"{kind.value} for {client_name}'s job has been rejected: {reason}",
                    definition.notification_category, related,
                ),
                Audience.user(job.assigned_person),
            )
        await self._notify(
            NotificationEvent(
                f"{kind.value} Rejected",
                f"{kind.value} for {client_name}'s job rejected by {actor.name or actor.id}: {reason}",
                definition.notification_category, related,
            ),
            Audience.admins(),
        )

        return WorkflowResult.ok(saved, f"{kind.value} rejected")

    # =========================================================================
    # QUERIES
    # =========================================================================

    async def get_status(self, job_id: str, kind: WorkflowKind) -> WorkflowResult:
        """Approval state for a job, or whether one can be started."""
        kind = WorkflowKind(kind)
        definition = ApprovalEngine.get_definition(kind)
        try:
            job = await self._require_job(job_id)
        except ApprovalError as e:
            return WorkflowResult.failure(e)

        approval = await self.case_store.get_approval(job.id, kind)
        job_info = {
            "client_name": job.client_name,
            "service_type": job.service_type,
            "created_at": job.created_at,
        }
        if approval is None:
            return WorkflowResult.ok(
                None,
                f"{kind.value} approval not initiated yet",
                exists=False,
                job_id=job.id,
                job_status=job.status,
                can_initialize=job.status == definition.predecessor_job_status.value,
                job_info=job_info,
            )
        return WorkflowResult.ok(
            approval,
            f"{kind.value} approval is {approval.status.value}",
            exists=True,
            job_id=job.id,
            job_status=job.status,
            can_initialize=False,
            job_info=job_info,
        )

    async def list_jobs(self, kind: WorkflowKind, statuses: Optional[Iterable[str]] = None) -> List[Dict[str, Any]]:
        """Jobs in a workflow's substatuses (or the given statuses), newest first."""
        definition = ApprovalEngine.get_definition(WorkflowKind(kind))
        if not statuses:
            statuses = [s.value for s in definition.job_statuses()]
        jobs = await self.case_store.list_jobs(statuses)
        return [job.to_summary() for job in jobs]

    # =========================================================================
    # HELPERS
    # =========================================================================

    async def _require_job(self, job_id: str) -> Job:
        job = await self.case_store.get_job(job_id)
        if job is None:
            raise ApprovalError(WorkflowErrorCode.NOT_FOUND, "Job not found", {"job_id": str(job_id)})
        return job

    async def _require_approval(self, job_id: str, kind: WorkflowKind) -> Approval:
        approval = await self.case_store.get_approval(job_id, kind)
        if approval is None:
            raise ApprovalError(
                WorkflowErrorCode.NOT_FOUND,
                f"{kind.value} approval record not found",
                {"job_id": str(job_id)},
            )
        return approval

    async def _delete_quietly(self, object_id: str, what: str) -> None:
        try:
            result = await self.blob_store.delete(object_id)
        except Exception as e:
            logger.error("Error deleting %s %s: %s", what, object_id, e)
            return
        if result.success:
            logger.info("Deleted %s: %s", what, object_id)
        else:
            logger.error("Error deleting %s %s: %s", what, object_id, result.error)

    async def _notify(self, event: NotificationEvent, audience: Audience) -> None:
        try:
            await self.notifier.notify(event, audience)
        except Exception as e:
            logger.warning("Notification '%s' to %s failed: %s", event.title, audience.describe(), e)
