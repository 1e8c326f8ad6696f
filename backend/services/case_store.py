"""
Compliance Case Hub - Case Store

Persistence for Jobs and Approvals.

Writes are field-level so other subsystems updating unrelated job fields are
never clobbered:
- approvals are saved with a compare-and-swap on (current_stage, version)
- job status changes are a single $set + $push, so timeline appends are atomic,
  and can be made conditional on the status the job is expected to hold

Implementations:
- MongoCaseStore: motor (MongoDB), used by the server
- InMemoryCaseStore: same semantics behind an asyncio.Lock, for tests and demos
"""

import asyncio
import copy
import dataclasses
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from pymongo.errors import DuplicateKeyError

from services.approval_engine import (
    Approval, ApprovalStage, TimelineEntry, WorkflowKind, utcnow_iso
)

logger = logging.getLogger(__name__)


class StaleWriteConflictError(Exception):
    """The approval changed between read and write."""

    def __init__(self, job_id: str, kind: WorkflowKind, expected_stage: ApprovalStage, expected_version: int):
        super().__init__(
            f"Approval {kind.value}/{job_id} is no longer at stage "
            f"{expected_stage.value} (version {expected_version})"
        )
        self.job_id = job_id
        self.kind = kind
        self.expected_stage = expected_stage
        self.expected_version = expected_version


class DuplicateApprovalError(Exception):
    """An approval already exists for this (job, kind)."""


@dataclass
class Job:
    """The slice of a job record the approval workflows read."""
    id: str
    status: str
    client_name: str = ""
    service_type: str = ""
    assigned_person: Optional[str] = None
    timeline: List[Dict[str, Any]] = field(default_factory=list)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Job":
        return cls(
            id=str(data.get("id") or data.get("_id")),
            status=data.get("status", "pending"),
            client_name=data.get("client_name") or "Unknown Client",
            service_type=data.get("service_type") or "",
            assigned_person=data.get("assigned_person"),
            timeline=list(data.get("timeline") or []),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )

    def to_summary(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "client_name": self.client_name,
            "service_type": self.service_type,
            "status": self.status,
            "assigned_person": self.assigned_person,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "timeline": self.timeline,
        }


def _approval_key(job_id: str, kind: WorkflowKind):
    return (str(job_id), WorkflowKind(kind).value)


class CaseStore(ABC):

    @abstractmethod
    async def get_job(self, job_id: str) -> Optional[Job]:
        ...

    @abstractmethod
    async def list_jobs(self, statuses: Iterable[str]) -> List[Job]:
        ...

    @abstractmethod
    async def update_job_status(
        self,
        job_id: str,
        status: str,
        timeline_entry: TimelineEntry,
        expected_statuses: Optional[Iterable[str]] = None
    ) -> bool:
        """
        Set the job status and append `timeline_entry` in one write.

        With `expected_statuses`, the status is only changed while the job still
        holds one of them; otherwise the timeline entry is appended alone and
        False is returned.
        """

    @abstractmethod
    async def get_approval(self, job_id: str, kind: WorkflowKind) -> Optional[Approval]:
        ...

    @abstractmethod
    async def insert_approval(self, approval: Approval) -> Approval:
        """Store a new approval. Raises DuplicateApprovalError."""

    @abstractmethod
    async def save_approval(
        self,
        approval: Approval,
        expected_stage: ApprovalStage,
        expected_version: int
    ) -> Approval:
        """
        Write `approval` only if the stored record is still at
        (expected_stage, expected_version). Returns the saved record with its
        version bumped. Raises StaleWriteConflictError.
        """


# =============================================================================
# MONGODB
# =============================================================================

class MongoCaseStore(CaseStore):
    """
    Case store on top of a motor database.

    Collections:
    - jobs:      keyed by `id`
    - approvals: keyed by (`job_id`, `kind`), unique
    """

    def __init__(self, db):
        self.db = db

    async def create_indexes(self) -> None:
        await self.db.jobs.create_index("id", unique=True)
        await self.db.jobs.create_index("status")
        await self.db.jobs.create_index("created_at")
        await self.db.approvals.create_index([("job_id", 1), ("kind", 1)], unique=True)
        await self.db.approvals.create_index("current_stage")
        logger.info("Case store indexes created")

    async def get_job(self, job_id: str) -> Optional[Job]:
        doc = await self.db.jobs.find_one({"id": str(job_id)}, {"_id": 0})
        return Job.from_dict(doc) if doc else None

    async def list_jobs(self, statuses: Iterable[str]) -> List[Job]:
        statuses = list(statuses)
        query = {"status": {"$in": statuses}} if statuses else {}
        docs = await self.db.jobs.find(query, {"_id": 0}).sort("created_at", -1).to_list(None)
        return [Job.from_dict(d) for d in docs]

    async def update_job_status(
        self,
        job_id: str,
        status: str,
        timeline_entry: TimelineEntry,
        expected_statuses: Optional[Iterable[str]] = None
    ) -> bool:
        query = {"id": str(job_id)}
        if expected_statuses is not None:
            query["status"] = {"$in": list(expected_statuses)}
        entry = timeline_entry.to_dict()

        result = await self.db.jobs.update_one(
            query,
            {
                "$set": {"status": status, "updated_at": utcnow_iso()},
                "$push": {"timeline": entry},
            },
        )
        if expected_statuses is None or result.matched_count:
            return True

        logger.warning("Job %s has moved past %s; recording timeline entry only", job_id, status)
        await self.db.jobs.update_one(
            {"id": str(job_id)},
            {"$set": {"updated_at": utcnow_iso()}, "$push": {"timeline": entry}},
        )
        return False

    async def get_approval(self, job_id: str, kind: WorkflowKind) -> Optional[Approval]:
        job_id, kind_value = _approval_key(job_id, kind)
        doc = await self.db.approvals.find_one({"job_id": job_id, "kind": kind_value}, {"_id": 0})
        return Approval.from_dict(doc) if doc else None

    async def insert_approval(self, approval: Approval) -> Approval:
        try:
            await self.db.approvals.insert_one(approval.to_dict())
        except DuplicateKeyError:
            raise DuplicateApprovalError(f"{approval.kind.value} approval already exists for job {approval.job_id}")
        return approval

    async def save_approval(
        self,
        approval: Approval,
        expected_stage: ApprovalStage,
        expected_version: int
    ) -> Approval:
        saved = dataclasses.replace(approval, version=expected_version + 1)
        fields = saved.to_dict()
        fields.pop("job_id")
        fields.pop("kind")
        fields.pop("created_at")

        result = await self.db.approvals.update_one(
            {
                "job_id": approval.job_id,
                "kind": approval.kind.value,
                "current_stage": expected_stage.value,
                "version": expected_version,
            },
            {"$set": fields},
        )
        if result.matched_count == 0:
            raise StaleWriteConflictError(approval.job_id, approval.kind, expected_stage, expected_version)
        return saved


# =============================================================================
# IN-MEMORY
# =============================================================================

class InMemoryCaseStore(CaseStore):
    """Dict-backed case store with the same conflict semantics as Mongo."""

    def __init__(self):
        self.jobs: Dict[str, Dict[str, Any]] = {}
        self.approvals: Dict[tuple, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    def add_job(self, job: Dict[str, Any]) -> Job:
        record = copy.deepcopy(job)
        record.setdefault("timeline", [])
        record.setdefault("created_at", utcnow_iso())
        self.jobs[str(record["id"])] = record
        return Job.from_dict(record)

    async def get_job(self, job_id: str) -> Optional[Job]:
        record = self.jobs.get(str(job_id))
        return Job.from_dict(copy.deepcopy(record)) if record else None

    async def list_jobs(self, statuses: Iterable[str]) -> List[Job]:
        statuses = set(statuses)
        records = [r for r in self.jobs.values() if not statuses or r.get("status") in statuses]
        records.sort(key=lambda r: r.get("created_at") or "", reverse=True)
        return [Job.from_dict(copy.deepcopy(r)) for r in records]

    async def update_job_status(
        self,
        job_id: str,
        status: str,
        timeline_entry: TimelineEntry,
        expected_statuses: Optional[Iterable[str]] = None
    ) -> bool:
        async with self._lock:
            record = self.jobs.get(str(job_id))
            if record is None:
                return False
            changed = expected_statuses is None or record.get("status") in set(expected_statuses)
            if changed:
                record["status"] = status
            else:
                logger.warning("Job %s has moved past %s; recording timeline entry only", job_id, status)
            record["updated_at"] = utcnow_iso()
            record.setdefault("timeline", []).append(timeline_entry.to_dict())
            return changed

    async def get_approval(self, job_id: str, kind: WorkflowKind) -> Optional[Approval]:
        record = self.approvals.get(_approval_key(job_id, kind))
        return Approval.from_dict(copy.deepcopy(record)) if record else None

    async def insert_approval(self, approval: Approval) -> Approval:
        key = _approval_key(approval.job_id, approval.kind)
        async with self._lock:
            if key in self.approvals:
                raise DuplicateApprovalError(f"{approval.kind.value} approval already exists for job {approval.job_id}")
            self.approvals[key] = approval.to_dict()
        return approval

    async def save_approval(
        self,
        approval: Approval,
        expected_stage: ApprovalStage,
        expected_version: int
    ) -> Approval:
        key = _approval_key(approval.job_id, approval.kind)
        async with self._lock:
            current = self.approvals.get(key)
            if (
                current is None
                or current["current_stage"] != expected_stage.value
                or current["version"] != expected_version
            ):
                raise StaleWriteConflictError(approval.job_id, approval.kind, expected_stage, expected_version)
            saved = dataclasses.replace(approval, version=expected_version + 1)
            self.approvals[key] = saved.to_dict()
        return saved
