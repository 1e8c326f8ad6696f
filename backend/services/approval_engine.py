"""
Compliance Case Hub - Approval Engine

This module implements the three-stage sequential approval state machine
(LMRO -> DLMRO -> CEO) shared by every compliance workflow kind (KYC, BRA).

The engine is pure business logic with no direct HTTP, storage or DB calls.
It validates requested transitions and computes the resulting Approval record;
the orchestrator performs uploads, persistence and notifications around it.

Stage flow:
- lmro     --approve--> dlmro     --approve--> ceo --approve--> completed
- lmro | dlmro | ceo   --reject-->  rejected
- completed and rejected are terminal

Each workflow kind is described by a WorkflowDefinition row (predecessor job
status, per-stage capability, per-stage job status, successor kind), so adding
a kind means adding a row, not a controller.
"""

import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from services.actors import Actor, Capability
from services.workflow_config import get_max_upload_bytes, is_allowed_mime_type

logger = logging.getLogger(__name__)


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# =============================================================================
# ENUMS
# =============================================================================

class WorkflowKind(str, Enum):
    """Compliance workflows that run the approval state machine."""
    KYC = "KYC"
    BRA = "BRA"


class ApprovalStage(str, Enum):
    """Current stage of an approval. Drives authorization and UI state."""
    LMRO = "lmro"
    DLMRO = "dlmro"
    CEO = "ceo"
    COMPLETED = "completed"
    REJECTED = "rejected"


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    REJECTED = "rejected"


class ApprovalEvent(str, Enum):
    """Events that trigger approval stage transitions."""
    ON_STAGE_APPROVED = "on_stage_approved"
    ON_REJECTED = "on_rejected"


class JobStatus(str, Enum):
    """
    Job status values. Spans pre-workflow states and the substates written by
    each approval workflow.
    """
    # Operation management
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CORRECTED = "corrected"
    CANCELLED = "cancelled"
    OPERATIONS_COMPLETE = "operations-complete"

    # KYC
    KYC_PENDING = "kyc-pending"
    KYC_LMRO_APPROVED = "kyc-lmro-approved"
    KYC_DLMRO_APPROVED = "kyc-dlmro-approved"
    KYC_COMPLETE = "kyc-complete"
    KYC_REJECTED = "kyc-rejected"

    # BRA
    BRA_PENDING = "bra-pending"
    BRA_LMRO_APPROVED = "bra-lmro-approved"
    BRA_DLMRO_APPROVED = "bra-dlmro-approved"
    BRA_COMPLETE = "bra-complete"
    BRA_REJECTED = "bra-rejected"


class WorkflowErrorCode(str, Enum):
    """Caller-facing error taxonomy. Every value is recoverable."""
    INVALID_JOB_STATE = "InvalidJobState"
    ALREADY_INITIALIZED = "AlreadyInitialized"
    ALREADY_REJECTED = "AlreadyRejected"
    STAGE_MISMATCH = "StageMismatch"
    UNAUTHORIZED = "Unauthorized"
    DOCUMENT_REQUIRED = "DocumentRequired"
    DOCUMENT_INVALID = "DocumentInvalid"
    PREDECESSOR_NOT_APPROVED = "PredecessorNotApproved"
    ALREADY_FINALIZED = "AlreadyFinalized"
    STORAGE_UNAVAILABLE = "StorageUnavailable"
    STALE_WRITE_CONFLICT = "StaleWriteConflict"
    NOT_FOUND = "NotFound"
    REASON_REQUIRED = "ReasonRequired"


class ApprovalError(Exception):
    """A blocked workflow operation with a specific, user-visible reason."""

    def __init__(self, code: WorkflowErrorCode, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details or {}

    def __repr__(self) -> str:
        return f"ApprovalError({self.code.value!r}, {self.message!r})"


# =============================================================================
# STAGE TRANSITIONS
# =============================================================================

REVIEW_STAGES: Tuple[ApprovalStage, ...] = (
    ApprovalStage.LMRO,
    ApprovalStage.DLMRO,
    ApprovalStage.CEO,
)

# Format: {current_stage: {event: next_stage}}
APPROVAL_TRANSITIONS: Dict[ApprovalStage, Dict[ApprovalEvent, ApprovalStage]] = {
    ApprovalStage.LMRO: {
        ApprovalEvent.ON_STAGE_APPROVED: ApprovalStage.DLMRO,
        ApprovalEvent.ON_REJECTED: ApprovalStage.REJECTED,
    },
    ApprovalStage.DLMRO: {
        ApprovalEvent.ON_STAGE_APPROVED: ApprovalStage.CEO,
        ApprovalEvent.ON_REJECTED: ApprovalStage.REJECTED,
    },
    ApprovalStage.CEO: {
        ApprovalEvent.ON_STAGE_APPROVED: ApprovalStage.COMPLETED,
        ApprovalEvent.ON_REJECTED: ApprovalStage.REJECTED,
    },
    ApprovalStage.COMPLETED: {},
    ApprovalStage.REJECTED: {},
}

PREDECESSOR_STAGE: Dict[ApprovalStage, ApprovalStage] = {
    ApprovalStage.DLMRO: ApprovalStage.LMRO,
    ApprovalStage.CEO: ApprovalStage.DLMRO,
}

STAGE_LABELS: Dict[ApprovalStage, str] = {
    ApprovalStage.LMRO: "LMRO",
    ApprovalStage.DLMRO: "DLMRO",
    ApprovalStage.CEO: "CEO",
    ApprovalStage.COMPLETED: "Completed",
    ApprovalStage.REJECTED: "Rejected",
}


# =============================================================================
# WORKFLOW DEFINITIONS BY KIND
# =============================================================================

@dataclass(frozen=True)
class WorkflowDefinition:
    """Everything that distinguishes one approval workflow kind from another."""
    kind: WorkflowKind
    predecessor_job_status: JobStatus
    pending_job_status: JobStatus
    stage_capabilities: Dict[ApprovalStage, Capability]
    stage_job_statuses: Dict[ApprovalStage, JobStatus]
    rejected_job_status: JobStatus
    folder_prefix: str
    notification_category: str
    successor_kind: Optional[WorkflowKind] = None

    @property
    def completed_job_status(self) -> JobStatus:
        return self.stage_job_statuses[ApprovalStage.CEO]

    def job_statuses(self) -> List[JobStatus]:
        """All job statuses owned by this workflow, in flow order."""
        return [
            self.pending_job_status,
            *(self.stage_job_statuses[s] for s in REVIEW_STAGES),
            self.rejected_job_status,
        ]

    def statuses_before(self, status: JobStatus) -> List[str]:
        """
        Job statuses a job may hold just before this workflow writes `status`.

        A successful run moves predecessor -> pending -> each stage status in
        turn; a rejection can follow any of the in-flight statuses.
        """
        flow = [
            self.predecessor_job_status,
            self.pending_job_status,
            *(self.stage_job_statuses[s] for s in REVIEW_STAGES),
        ]
        if status == self.rejected_job_status:
            earlier = flow[:-1]
        else:
            earlier = flow[:flow.index(status)]
        return [s.value for s in earlier]



WORKFLOW_DEFINITIONS: Dict[WorkflowKind, WorkflowDefinition] = {
    WorkflowKind.KYC: WorkflowDefinition(
        kind=WorkflowKind.KYC,
        predecessor_job_status=JobStatus.OPERATIONS_COMPLETE,
        pending_job_status=JobStatus.KYC_PENDING,
        stage_capabilities={
            ApprovalStage.LMRO: Capability.KYC_LMRO,
            ApprovalStage.DLMRO: Capability.KYC_DLMRO,
            ApprovalStage.CEO: Capability.KYC_CEO,
        },
        stage_job_statuses={
            ApprovalStage.LMRO: JobStatus.KYC_LMRO_APPROVED,
            ApprovalStage.DLMRO: JobStatus.KYC_DLMRO_APPROVED,
            ApprovalStage.CEO: JobStatus.KYC_COMPLETE,
        },
        rejected_job_status=JobStatus.KYC_REJECTED,
        folder_prefix="kyc-documents",
        notification_category="kyc",
        successor_kind=WorkflowKind.BRA,
    ),
    WorkflowKind.BRA: WorkflowDefinition(
        kind=WorkflowKind.BRA,
        predecessor_job_status=JobStatus.KYC_COMPLETE,
        pending_job_status=JobStatus.BRA_PENDING,
        stage_capabilities={
            ApprovalStage.LMRO: Capability.BRA_LMRO,
            ApprovalStage.DLMRO: Capability.BRA_DLMRO,
            ApprovalStage.CEO: Capability.BRA_CEO,
        },
        stage_job_statuses={
            ApprovalStage.LMRO: JobStatus.BRA_LMRO_APPROVED,
            ApprovalStage.DLMRO: JobStatus.BRA_DLMRO_APPROVED,
            ApprovalStage.CEO: JobStatus.BRA_COMPLETE,
        },
        rejected_job_status=JobStatus.BRA_REJECTED,
        folder_prefix="bra-documents",
        notification_category="bra",
    ),
}


# =============================================================================
# RECORDS
# =============================================================================

@dataclass
class StoredDocument:
    """Reference to a document held by the blob store."""
    url: str
    file_name: str
    mime_type: str
    storage_id: str
    uploaded_at: str
    uploaded_by: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "file_name": self.file_name,
            "mime_type": self.mime_type,
            "storage_id": self.storage_id,
            "uploaded_at": self.uploaded_at,
            "uploaded_by": self.uploaded_by,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["StoredDocument"]:
        if not data:
            return None
        return cls(
            url=data["url"],
            file_name=data.get("file_name", ""),
            mime_type=data.get("mime_type", ""),
            storage_id=data["storage_id"],
            uploaded_at=data.get("uploaded_at", ""),
            uploaded_by=data.get("uploaded_by", ""),
        )


@dataclass
class StageRecord:
    approved: bool = False
    approved_by: Optional[str] = None
    approved_at: Optional[str] = None
    notes: str = ""
    document: Optional[StoredDocument] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "approved": self.approved,
            "approved_by": self.approved_by,
            "approved_at": self.approved_at,
            "notes": self.notes,
            "document": self.document.to_dict() if self.document else None,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "StageRecord":
        data = data or {}
        return cls(
            approved=bool(data.get("approved", False)),
            approved_by=data.get("approved_by"),
            approved_at=data.get("approved_at"),
            notes=data.get("notes") or "",
            document=StoredDocument.from_dict(data.get("document")),
        )


@dataclass
class Rejection:
    reason: str
    rejected_by: str
    rejected_at: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reason": self.reason,
            "rejected_by": self.rejected_by,
            "rejected_at": self.rejected_at,
        }


@dataclass
class Approval:
    """
    One approval per (job, workflow kind).

    status and current_stage move together: completed <-> completed,
    rejected <-> rejected. version increments on every committed write and is
    part of the compare-and-swap filter.
    """
    job_id: str
    kind: WorkflowKind
    status: ApprovalStatus = ApprovalStatus.IN_PROGRESS
    current_stage: ApprovalStage = ApprovalStage.LMRO
    lmro: StageRecord = field(default_factory=StageRecord)
    dlmro: StageRecord = field(default_factory=StageRecord)
    ceo: StageRecord = field(default_factory=StageRecord)
    rejection: Optional[Rejection] = None
    completed_at: Optional[str] = None
    version: int = 0
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def stage_record(self, stage: ApprovalStage) -> StageRecord:
        if stage not in REVIEW_STAGES:
            raise KeyError(f"No stage record for '{stage.value}'")
        return getattr(self, stage.value)

    @property
    def is_finalized(self) -> bool:
        return self.status in (ApprovalStatus.COMPLETED, ApprovalStatus.REJECTED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "kind": self.kind.value,
            "status": self.status.value,
            "current_stage": self.current_stage.value,
            "lmro": self.lmro.to_dict(),
            "dlmro": self.dlmro.to_dict(),
            "ceo": self.ceo.to_dict(),
            "rejection": self.rejection.to_dict() if self.rejection else None,
            "completed_at": self.completed_at,
            "version": self.version,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Approval":
        rejection = data.get("rejection")
        return cls(
            job_id=str(data["job_id"]),
            kind=WorkflowKind(data["kind"]),
            status=ApprovalStatus(data.get("status", ApprovalStatus.IN_PROGRESS.value)),
            current_stage=ApprovalStage(data.get("current_stage", ApprovalStage.LMRO.value)),
            lmro=StageRecord.from_dict(data.get("lmro")),
            dlmro=StageRecord.from_dict(data.get("dlmro")),
            ceo=StageRecord.from_dict(data.get("ceo")),
            rejection=Rejection(**rejection) if rejection else None,
            completed_at=data.get("completed_at"),
            version=int(data.get("version", 0)),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )


@dataclass
class DocumentUpload:
    """A document submitted with a stage approval, before it is stored."""
    file_name: str
    mime_type: str
    content: bytes

    @property
    def size(self) -> int:
        return len(self.content or b"")


@dataclass
class TimelineEntry:
    status: str
    description: str
    updated_by: Optional[str] = None
    timestamp: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "description": self.description,
            "timestamp": self.timestamp,
            "updated_by": self.updated_by,
        }


@dataclass
class AdvanceOutcome:
    """Result of applying a stage approval to an Approval record."""
    approval: Approval
    from_stage: ApprovalStage
    to_stage: ApprovalStage
    purged_document: Optional[StoredDocument] = None

    @property
    def completed(self) -> bool:
        return self.to_stage == ApprovalStage.COMPLETED


# =============================================================================
# MAIN APPROVAL ENGINE
# =============================================================================

class ApprovalEngine:
    """
    Generic approval state machine.

    Validation methods raise ApprovalError; apply methods return a new
    Approval and never mutate their input.
    """

    @staticmethod
    def get_definition(kind: WorkflowKind) -> WorkflowDefinition:
        return WORKFLOW_DEFINITIONS[WorkflowKind(kind)]

    @staticmethod
    def parse_kind(value: str) -> WorkflowKind:
        try:
            return WorkflowKind((value or "").upper())
        except ValueError:
            raise ApprovalError(
                WorkflowErrorCode.NOT_FOUND,
                f"Unknown workflow kind '{value}'. Valid: {[k.value for k in WorkflowKind]}",
            )

    @staticmethod
    def parse_stage(value: Any) -> ApprovalStage:
        if isinstance(value, ApprovalStage):
            return value
        try:
            return ApprovalStage((value or "").lower())
        except ValueError:
            raise ApprovalError(
                WorkflowErrorCode.STAGE_MISMATCH,
                f"Unknown approval stage '{value}'. Valid: {[s.value for s in REVIEW_STAGES]}",
            )

    @staticmethod
    def can_transition(
        current_stage: ApprovalStage,
        event: ApprovalEvent
    ) -> Tuple[bool, Optional[ApprovalStage], str]:
        """
        Check if an event is valid for the current stage.

        Returns:
            (can_transition, next_stage, reason)
        """
        stage_transitions = APPROVAL_TRANSITIONS.get(current_stage)
        if stage_transitions is None:
            return (False, None, f"No transitions defined for stage '{current_stage}'")

        next_stage = stage_transitions.get(event)
        if next_stage is None:
            valid_events = [e.value for e in stage_transitions]
            return (False, None, f"Event '{event.value}' not valid for stage '{current_stage.value}'. Valid: {valid_events}")

        return (True, next_stage, "Transition allowed")

    @staticmethod
    def create_approval(job_id: str, kind: WorkflowKind) -> Approval:
        now = utcnow_iso()
        return Approval(
            job_id=str(job_id),
            kind=WorkflowKind(kind),
            status=ApprovalStatus.IN_PROGRESS,
            current_stage=ApprovalStage.LMRO,
            created_at=now,
            updated_at=now,
        )

    @staticmethod
    def blob_folder(kind: WorkflowKind, job_id: str, stage: ApprovalStage) -> str:
        definition = ApprovalEngine.get_definition(kind)
        return f"{definition.folder_prefix}/{job_id}/{stage.value}"

    @staticmethod
    def job_status_for_stage(kind: WorkflowKind, stage: ApprovalStage) -> JobStatus:
        """Job status written after `stage` is approved."""
        return ApprovalEngine.get_definition(kind).stage_job_statuses[stage]

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    @staticmethod
    def ensure_not_finalized(approval: Approval) -> None:
        if approval.is_finalized:
            raise ApprovalError(
                WorkflowErrorCode.ALREADY_FINALIZED,
                f"{approval.kind.value} process is already {approval.status.value}",
                {"status": approval.status.value, "current_stage": approval.current_stage.value},
            )

    @staticmethod
    def authorize(kind: WorkflowKind, stage: ApprovalStage, actor: Actor) -> None:
        definition = ApprovalEngine.get_definition(kind)
        capability = definition.stage_capabilities.get(stage)
        if capability is None or not actor.has_capability(capability):
            raise ApprovalError(
                WorkflowErrorCode.UNAUTHORIZED,
                f"Insufficient permissions. {kind.value} {STAGE_LABELS[stage]} role required.",
                {"required_capability": capability.value if capability else None},
            )

    @staticmethod
    def validate_document(document: Optional[DocumentUpload], stage: ApprovalStage) -> None:
        label = STAGE_LABELS[stage]
        if document is None:
            raise ApprovalError(
                WorkflowErrorCode.DOCUMENT_REQUIRED,
                f"Document upload is required for {label} approval",
            )
        if not is_allowed_mime_type(document.mime_type):
            raise ApprovalError(
                WorkflowErrorCode.DOCUMENT_INVALID,
                f"Invalid file type '{document.mime_type}'. Only PDF, Word, Excel, and image files are allowed.",
                {"mime_type": document.mime_type},
            )
        if document.size == 0:
            raise ApprovalError(
                WorkflowErrorCode.DOCUMENT_INVALID,
                f"Uploaded document '{document.file_name}' is empty",
            )
        max_bytes = get_max_upload_bytes(stage.value)
        if document.size > max_bytes:
            raise ApprovalError(
                WorkflowErrorCode.DOCUMENT_INVALID,
                f"Document exceeds the {label} limit of {max_bytes} bytes",
                {"size": document.size, "max_size": max_bytes},
            )

    @staticmethod
    def validate_advance(
        approval: Approval,
        stage: ApprovalStage,
        actor: Actor,
        document: Optional[DocumentUpload]
    ) -> None:
        """
        Check every precondition of a stage approval, in order:
        finalized, stage match, role, document, predecessor approved.
        """
        ApprovalEngine.ensure_not_finalized(approval)

        if approval.current_stage != stage:
            raise ApprovalError(
                WorkflowErrorCode.STAGE_MISMATCH,
                f"Current approval stage is {STAGE_LABELS[approval.current_stage]}, not {STAGE_LABELS.get(stage, stage)}",
                {"current_stage": approval.current_stage.value, "requested_stage": stage.value},
            )

        ApprovalEngine.authorize(approval.kind, stage, actor)
        ApprovalEngine.validate_document(document, stage)

        predecessor = PREDECESSOR_STAGE.get(stage)
        if predecessor is not None and not approval.stage_record(predecessor).approved:
            raise ApprovalError(
                WorkflowErrorCode.PREDECESSOR_NOT_APPROVED,
                f"{STAGE_LABELS[predecessor]} approval is required first",
                {"predecessor_stage": predecessor.value},
            )

    @staticmethod
    def validate_reject(approval: Approval, actor: Actor, reason: Optional[str]) -> None:
        ApprovalEngine.ensure_not_finalized(approval)
        if not (reason or "").strip():
            raise ApprovalError(WorkflowErrorCode.REASON_REQUIRED, "Rejection reason is required")
        definition = ApprovalEngine.get_definition(approval.kind)
        capability = definition.stage_capabilities[approval.current_stage]
        if not actor.has_capability(capability):
            raise ApprovalError(
                WorkflowErrorCode.UNAUTHORIZED,
                f"Insufficient permissions for current stage: {approval.current_stage.value}",
                {"required_capability": capability.value},
            )

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    @staticmethod
    def apply_advance(
        approval: Approval,
        stage: ApprovalStage,
        actor: Actor,
        document: StoredDocument,
        notes: Optional[str] = None
    ) -> AdvanceOutcome:
        """
        Approve `stage` with an already-stored document.

        The predecessor stage's document is detached from the new record and
        returned as `purged_document` so the caller can delete it once the
        write is committed. Only the newest stage document stays referenced.
        """
        can, next_stage, reason = ApprovalEngine.can_transition(
            approval.current_stage, ApprovalEvent.ON_STAGE_APPROVED
        )
        if not can or approval.current_stage != stage:
            logger.warning(
                "Blocked approval transition: job=%s kind=%s stage=%s reason=%s",
                approval.job_id, approval.kind.value, stage.value, reason
            )
            raise ApprovalError(WorkflowErrorCode.STAGE_MISMATCH, reason)

        now = utcnow_iso()
        updated = copy.deepcopy(approval)

        purged = None
        predecessor = PREDECESSOR_STAGE.get(stage)
        if predecessor is not None:
            previous = updated.stage_record(predecessor)
            purged = previous.document
            previous.document = None

        setattr(updated, stage.value, StageRecord(
            approved=True,
            approved_by=actor.id,
            approved_at=now,
            notes=notes or "",
            document=document,
        ))

        updated.current_stage = next_stage
        if next_stage == ApprovalStage.COMPLETED:
            updated.status = ApprovalStatus.COMPLETED
            updated.completed_at = now
        updated.updated_at = now

        logger.info(
            "Approval transition: job=%s kind=%s %s -> %s actor=%s",
            approval.job_id, approval.kind.value, stage.value, next_stage.value, actor.id
        )
        return AdvanceOutcome(
            approval=updated,
            from_stage=stage,
            to_stage=next_stage,
            purged_document=purged,
        )

    @staticmethod
    def apply_reject(approval: Approval, actor: Actor, reason: str) -> Approval:
        """Reject at the current stage. Stored documents are kept as audit trail."""
        can, next_stage, why = ApprovalEngine.can_transition(
            approval.current_stage, ApprovalEvent.ON_REJECTED
        )
        if not can:
            raise ApprovalError(WorkflowErrorCode.ALREADY_FINALIZED, why)

        now = utcnow_iso()
        updated = copy.deepcopy(approval)
        updated.status = ApprovalStatus.REJECTED
        updated.current_stage = next_stage
        updated.rejection = Rejection(reason=reason.strip(), rejected_by=actor.id, rejected_at=now)
        updated.updated_at = now

        logger.info(
            "Approval transition: job=%s kind=%s %s -> %s actor=%s",
            approval.job_id, approval.kind.value, approval.current_stage.value, next_stage.value, actor.id
        )
        return updated
