"""
Tests for the approval workflow service (services/workflow_orchestrator.py).

Runs the full KYC -> BRA flow against the in-memory case store, blob store and
notifier, including storage failures, concurrent approvals and side-effect
failures that must not block compliance progress.
"""
import asyncio

import httpx
import pytest
from unittest.mock import AsyncMock, MagicMock

from services.actors import Actor, Capability
from services.approval_engine import (
    ApprovalEngine, ApprovalStage, ApprovalStatus, DocumentUpload, WorkflowErrorCode, WorkflowKind
)
from services.blob_store import CloudinaryBlobStore, InMemoryBlobStore
from services.case_store import InMemoryCaseStore, StaleWriteConflictError
from services.notification_service import Audience, InMemoryNotifier
from services.workflow_orchestrator import ApprovalWorkflowService


OPS = Actor(id="u-ops", name="Ops", role_name="operations",
            capabilities=frozenset({Capability.OPERATION_MANAGEMENT}))
LMRO = Actor(id="u-lmro", name="Lena", role_name="compliance",
             capabilities=frozenset({Capability.KYC_LMRO, Capability.BRA_LMRO}))
DLMRO = Actor(id="u-dlmro", name="Dan", role_name="compliance",
              capabilities=frozenset({Capability.KYC_DLMRO, Capability.BRA_DLMRO}))
CEO = Actor(id="u-ceo", name="Cara", role_name="executive",
            capabilities=frozenset({Capability.KYC_CEO, Capability.BRA_CEO}))
KYC_ONLY_LMRO = Actor(id="u-kyc", name="Kim", role_name="compliance",
                      capabilities=frozenset({Capability.KYC_LMRO}))
ADMIN = Actor(id="u-admin", name="Root", role_name="admin")


def upload(name="evidence.pdf", mime="application/pdf"):
    return DocumentUpload(file_name=name, mime_type=mime, content=b"%PDF-1.4 test")


@pytest.fixture
def store():
    s = InMemoryCaseStore()
    s.add_job({
        "id": "job-1",
        "status": "operations-complete",
        "client_name": "Acme Ltd",
        "service_type": "incorporation",
        "assigned_person": "u-ops",
    })
    return s


@pytest.fixture
def blobs():
    return InMemoryBlobStore()


@pytest.fixture
def notifier():
    return InMemoryNotifier()


@pytest.fixture
def service(store, blobs, notifier):
    return ApprovalWorkflowService(store, blobs, notifier, upload_timeout_seconds=5)


async def run_to_stage(service, stage, kind=WorkflowKind.KYC):
    """Initialize and approve every stage before `stage`."""
    if kind == WorkflowKind.KYC:
        result = await service.initialize("job-1", kind, OPS)
        assert result.success, result.message
    for s, actor in (("lmro", LMRO), ("dlmro", DLMRO), ("ceo", CEO)):
        if s == stage:
            return
        result = await service.advance("job-1", kind, s, actor, upload(f"{s}.pdf"))
        assert result.success, result.message


class TestInitialize:
    """Starting a workflow."""

    @pytest.mark.asyncio
    async def test_initialize_kyc(self, service, store, notifier):
        result = await service.initialize("job-1", WorkflowKind.KYC, OPS)

        assert result.success is True
        assert result.approval.current_stage == ApprovalStage.LMRO
        assert result.approval.status == ApprovalStatus.IN_PROGRESS

        job = await store.get_job("job-1")
        assert job.status == "kyc-pending"
        assert job.timeline[-1]["description"] == "KYC process initialized"
        assert job.timeline[-1]["updated_by"] == "u-ops"

        event, audience = notifier.sent[-1]
        assert event.title == "New KYC Review Required"
        assert "Acme Ltd" in event.description
        assert audience == Audience.holders_of(Capability.KYC_LMRO)

    @pytest.mark.asyncio
    async def test_missing_job(self, service):
        result = await service.initialize("nope", WorkflowKind.KYC, OPS)
        assert result.success is False
        assert result.error == WorkflowErrorCode.NOT_FOUND

    @pytest.mark.asyncio
    async def test_job_not_ready(self, service, store):
        store.jobs["job-1"]["status"] = "pending"
        result = await service.initialize("job-1", WorkflowKind.KYC, OPS)
        assert result.error == WorkflowErrorCode.INVALID_JOB_STATE
        assert result.details["required_status"] == "operations-complete"

    @pytest.mark.asyncio
    async def test_bra_requires_completed_kyc(self, service):
        result = await service.initialize("job-1", WorkflowKind.BRA, OPS)
        assert result.error == WorkflowErrorCode.INVALID_JOB_STATE

    @pytest.mark.asyncio
    async def test_already_initialized(self, service, store):
        await service.initialize("job-1", WorkflowKind.KYC, OPS)
        store.jobs["job-1"]["status"] = "operations-complete"

        result = await service.initialize("job-1", WorkflowKind.KYC, OPS)
        assert result.error == WorkflowErrorCode.ALREADY_INITIALIZED
        assert result.details["current_stage"] == "lmro"

    @pytest.mark.asyncio
    async def test_rejected_approval_is_never_recreated(self, service, store):
        await service.initialize("job-1", WorkflowKind.KYC, OPS)
        await service.reject("job-1", WorkflowKind.KYC, LMRO, "incomplete file")
        store.jobs["job-1"]["status"] = "operations-complete"

        result = await service.initialize("job-1", WorkflowKind.KYC, OPS)
        assert result.error == WorkflowErrorCode.ALREADY_REJECTED
        approval = await store.get_approval("job-1", WorkflowKind.KYC)
        assert approval.status == ApprovalStatus.REJECTED

    @pytest.mark.asyncio
    async def test_duplicate_insert_reports_already_initialized(self, service, store):
        """Another request created the approval between our read and insert."""
        existing = ApprovalEngine.create_approval("job-1", WorkflowKind.KYC)
        await store.insert_approval(existing)
        store.get_approval = AsyncMock(side_effect=[None, existing])

        result = await service.initialize("job-1", WorkflowKind.KYC, OPS)

        assert result.error == WorkflowErrorCode.ALREADY_INITIALIZED
        assert len(store.approvals) == 1
        assert (await store.get_job("job-1")).status == "operations-complete"


class TestAdvance:
    """Stage approvals."""

    @pytest.mark.asyncio
    async def test_lmro_approval(self, service, store, blobs, notifier):
        await service.initialize("job-1", WorkflowKind.KYC, OPS)
        result = await service.advance("job-1", WorkflowKind.KYC, "lmro", LMRO, upload(), "id verified")

        assert result.success is True
        approval = result.approval
        assert approval.current_stage == ApprovalStage.DLMRO
        assert approval.lmro.approved_by == "u-lmro"
        assert approval.lmro.notes == "id verified"
        assert approval.lmro.document.storage_id in blobs.objects
        assert approval.lmro.document.storage_id.startswith("kyc-documents/job-1/lmro/")
        assert approval.version == 1

        job = await store.get_job("job-1")
        assert job.status == "kyc-lmro-approved"
        assert job.timeline[-1]["description"] == "KYC approved by LMRO with document submission"

        event, audience = notifier.sent[-1]
        assert event.title == "KYC Approval Required"
        assert audience == Audience.holders_of(Capability.KYC_DLMRO)

    @pytest.mark.asyncio
    async def test_dlmro_approval_purges_lmro_document(self, service, store, blobs, notifier):
        await run_to_stage(service, "dlmro")
        lmro_doc = (await store.get_approval("job-1", WorkflowKind.KYC)).lmro.document

        result = await service.advance("job-1", WorkflowKind.KYC, "dlmro", DLMRO, upload())

        assert result.success is True
        assert result.approval.lmro.document is None
        assert result.approval.lmro.approved is True
        assert blobs.deleted == [lmro_doc.storage_id]
        assert lmro_doc.storage_id not in blobs.objects

        event, audience = notifier.sent[-1]
        assert event.title == "Final KYC Approval Required"
        assert audience == Audience.holders_of(Capability.KYC_CEO)

    @pytest.mark.asyncio
    async def test_kyc_completion_starts_bra(self, service, store, notifier):
        await run_to_stage(service, "ceo")
        notifier.sent.clear()

        result = await service.advance("job-1", WorkflowKind.KYC, "ceo", CEO, upload("final.pdf"))

        assert result.success is True
        assert result.approval.status == ApprovalStatus.COMPLETED
        assert result.approval.completed_at is not None
        assert result.successor_initialized is True

        # Only the newest stage document stays referenced
        assert result.approval.lmro.document is None
        assert result.approval.dlmro.document is None
        assert result.approval.ceo.document is not None

        bra = await store.get_approval("job-1", WorkflowKind.BRA)
        assert bra.current_stage == ApprovalStage.LMRO

        job = await store.get_job("job-1")
        assert job.status == "bra-pending"
        statuses = [t["status"] for t in job.timeline]
        assert statuses[-2:] == ["kyc-complete", "bra-pending"]
        assert job.timeline[-1]["description"] == "BRA process automatically initialized after KYC completion"

        titles = [(e.title, a) for e, a in notifier.sent]
        assert ("KYC Process Completed", Audience.user("u-ops")) in titles
        assert ("KYC Completed", Audience.admins()) in titles
        assert ("New BRA Review Required", Audience.holders_of(Capability.BRA_LMRO)) in titles

    @pytest.mark.asyncio
    async def test_full_bra_flow(self, service, store):
        await run_to_stage(service, None)
        await run_to_stage(service, None, kind=WorkflowKind.BRA)

        bra = await store.get_approval("job-1", WorkflowKind.BRA)
        assert bra.status == ApprovalStatus.COMPLETED
        assert (await store.get_job("job-1")).status == "bra-complete"

    @pytest.mark.asyncio
    async def test_stage_mismatch_uploads_nothing(self, service, blobs):
        await service.initialize("job-1", WorkflowKind.KYC, OPS)
        result = await service.advance("job-1", WorkflowKind.KYC, "dlmro", DLMRO, upload())

        assert result.error == WorkflowErrorCode.STAGE_MISMATCH
        assert blobs.objects == {}

    @pytest.mark.asyncio
    async def test_wrong_kind_capability(self, service, store, blobs):
        await run_to_stage(service, None)
        stored_before = dict(blobs.objects)

        result = await service.advance("job-1", WorkflowKind.BRA, "lmro", KYC_ONLY_LMRO, upload())

        assert result.error == WorkflowErrorCode.UNAUTHORIZED
        bra = await store.get_approval("job-1", WorkflowKind.BRA)
        assert bra.version == 0
        assert bra.current_stage == ApprovalStage.LMRO
        assert blobs.objects == stored_before

    @pytest.mark.asyncio
    async def test_unauthorized_changes_nothing(self, service, store, blobs):
        await service.initialize("job-1", WorkflowKind.KYC, OPS)

        result = await service.advance("job-1", WorkflowKind.KYC, "lmro", DLMRO, upload())

        assert result.error == WorkflowErrorCode.UNAUTHORIZED
        approval = await store.get_approval("job-1", WorkflowKind.KYC)
        assert approval.version == 0
        assert approval.current_stage == ApprovalStage.LMRO
        assert blobs.objects == {}
        assert (await store.get_job("job-1")).status == "kyc-pending"

    @pytest.mark.asyncio
    async def test_admin_can_approve_any_stage(self, service):
        await service.initialize("job-1", WorkflowKind.KYC, OPS)
        result = await service.advance("job-1", WorkflowKind.KYC, "lmro", ADMIN, upload())
        assert result.success is True

    @pytest.mark.asyncio
    async def test_document_required(self, service, store, blobs):
        await service.initialize("job-1", WorkflowKind.KYC, OPS)

        result = await service.advance("job-1", WorkflowKind.KYC, "lmro", LMRO, None)

        assert result.error == WorkflowErrorCode.DOCUMENT_REQUIRED
        approval = await store.get_approval("job-1", WorkflowKind.KYC)
        assert approval.version == 0
        assert approval.current_stage == ApprovalStage.LMRO
        assert approval.lmro.approved is False
        assert blobs.objects == {}

    @pytest.mark.asyncio
    async def test_invalid_document_type(self, service):
        await service.initialize("job-1", WorkflowKind.KYC, OPS)
        result = await service.advance(
            "job-1", WorkflowKind.KYC, "lmro", LMRO, upload("notes.txt", "text/plain")
        )
        assert result.error == WorkflowErrorCode.DOCUMENT_INVALID

    @pytest.mark.asyncio
    async def test_missing_approval(self, service):
        result = await service.advance("job-1", WorkflowKind.KYC, "lmro", LMRO, upload())
        assert result.error == WorkflowErrorCode.NOT_FOUND

    @pytest.mark.asyncio
    async def test_unknown_stage(self, service):
        await service.initialize("job-1", WorkflowKind.KYC, OPS)
        result = await service.advance("job-1", WorkflowKind.KYC, "cfo", LMRO, upload())
        assert result.error == WorkflowErrorCode.STAGE_MISMATCH

    @pytest.mark.asyncio
    async def test_completed_approval_is_final(self, service):
        await run_to_stage(service, None)
        result = await service.advance("job-1", WorkflowKind.KYC, "ceo", CEO, upload())
        assert result.error == WorkflowErrorCode.ALREADY_FINALIZED


class TestStorageFailures:
    """Upload failures abort before anything is committed."""

    @pytest.mark.asyncio
    async def test_upload_failure(self, service, store, blobs):
        await service.initialize("job-1", WorkflowKind.KYC, OPS)
        blobs.fail_uploads = True

        result = await service.advance("job-1", WorkflowKind.KYC, "lmro", LMRO, upload())

        assert result.success is False
        assert result.error == WorkflowErrorCode.STORAGE_UNAVAILABLE
        approval = await store.get_approval("job-1", WorkflowKind.KYC)
        assert approval.current_stage == ApprovalStage.LMRO
        assert approval.version == 0
        assert (await store.get_job("job-1")).status == "kyc-pending"

    @pytest.mark.asyncio
    async def test_upload_timeout(self, store, blobs, notifier):
        service = ApprovalWorkflowService(store, blobs, notifier, upload_timeout_seconds=0.05)
        await service.initialize("job-1", WorkflowKind.KYC, OPS)
        blobs.upload_delay = 1.0

        result = await service.advance("job-1", WorkflowKind.KYC, "lmro", LMRO, upload())

        assert result.error == WorkflowErrorCode.STORAGE_UNAVAILABLE
        assert "timed out" in result.details["storage_error"]

    @pytest.mark.asyncio
    async def test_malformed_cloudinary_response(self, store, notifier):
        def handler(request):
            return httpx.Response(200, text="<html>gateway</html>")

        blob_store = CloudinaryBlobStore(
            cloud_name="demo", api_key="k", api_secret="s",
            api_base="https://api.test/v1_1", transport=httpx.MockTransport(handler),
        )
        service = ApprovalWorkflowService(store, blob_store, notifier)
        await service.initialize("job-1", WorkflowKind.KYC, OPS)

        result = await service.advance("job-1", WorkflowKind.KYC, "lmro", LMRO, upload())

        assert result.error == WorkflowErrorCode.STORAGE_UNAVAILABLE
        approval = await store.get_approval("job-1", WorkflowKind.KYC)
        assert approval.version == 0
        assert approval.lmro.document is None

    @pytest.mark.asyncio
    async def test_blob_store_exception(self, store, notifier):
        blob_store = MagicMock()
        blob_store.upload = AsyncMock(side_effect=RuntimeError("sdk exploded"))
        service = ApprovalWorkflowService(store, blob_store, notifier)
        await service.initialize("job-1", WorkflowKind.KYC, OPS)

        result = await service.advance("job-1", WorkflowKind.KYC, "lmro", LMRO, upload())

        assert result.error == WorkflowErrorCode.STORAGE_UNAVAILABLE
        assert "sdk exploded" in result.details["storage_error"]
        assert (await store.get_job("job-1")).status == "kyc-pending"

    @pytest.mark.asyncio
    async def test_delete_failure_does_not_block(self, service, store, blobs):

        await run_to_stage(service, "dlmro")
        blobs.fail_deletes = True

        result = await service.advance("job-1", WorkflowKind.KYC, "dlmro", DLMRO, upload())

        assert result.success is True
        assert result.approval.lmro.document is None
        assert (await store.get_job("job-1")).status == "kyc-dlmro-approved"


class TestConcurrency:
    """Conditional writes keep concurrent approvals from both succeeding."""

    @pytest.mark.asyncio
    async def test_two_lmro_approvals_race(self, service, store, blobs):
        await service.initialize("job-1", WorkflowKind.KYC, OPS)
        # Both requests read the record before either write lands
        blobs.upload_delay = 0.01

        results = await asyncio.gather(
            service.advance("job-1", WorkflowKind.KYC, "lmro", LMRO, upload("a.pdf")),
            service.advance("job-1", WorkflowKind.KYC, "lmro", ADMIN, upload("b.pdf")),
        )

        winners = [r for r in results if r.success]
        losers = [r for r in results if not r.success]
        assert len(winners) == 1
        assert losers[0].error == WorkflowErrorCode.STAGE_MISMATCH

        approval = await store.get_approval("job-1", WorkflowKind.KYC)
        assert approval.version == 1
        # The losing upload was cleaned up
        assert list(blobs.objects) == [approval.lmro.document.storage_id]
        assert len(blobs.deleted) == 1

        job = await store.get_job("job-1")
        assert [t["status"] for t in job.timeline].count("kyc-lmro-approved") == 1

    @pytest.mark.asyncio
    async def test_stale_write_without_stage_change(self, service, store, blobs):
        await service.initialize("job-1", WorkflowKind.KYC, OPS)
        store.save_approval = AsyncMock(
            side_effect=StaleWriteConflictError("job-1", WorkflowKind.KYC, ApprovalStage.LMRO, 0)
        )

        result = await service.advance("job-1", WorkflowKind.KYC, "lmro", LMRO, upload())

        assert result.error == WorkflowErrorCode.STALE_WRITE_CONFLICT
        assert blobs.objects == {}
        assert len(blobs.deleted) == 1


class TestJobStatusOrdering:
    """A late job-status write never moves the job backwards."""

    @pytest.mark.asyncio
    async def test_late_write_keeps_newer_status(self, service, store):
        await service.initialize("job-1", WorkflowKind.KYC, OPS)
        # A DLMRO write for this job landed first
        store.jobs["job-1"]["status"] = "kyc-dlmro-approved"

        result = await service.advance("job-1", WorkflowKind.KYC, "lmro", LMRO, upload())

        assert result.success is True
        job = await store.get_job("job-1")
        assert job.status == "kyc-dlmro-approved"
        assert job.timeline[-1]["status"] == "kyc-lmro-approved"

    @pytest.mark.asyncio
    async def test_rejection_overrides_in_flight_status(self, service, store):
        await run_to_stage(service, "dlmro")

        await service.reject("job-1", WorkflowKind.KYC, DLMRO, "adverse media")

        assert (await store.get_job("job-1")).status == "kyc-rejected"

    @pytest.mark.asyncio
    async def test_late_advance_after_rejection(self, service, store):
        await service.initialize("job-1", WorkflowKind.KYC, OPS)
        store.jobs["job-1"]["status"] = "kyc-rejected"

        await service.advance("job-1", WorkflowKind.KYC, "lmro", LMRO, upload())

        assert (await store.get_job("job-1")).status == "kyc-rejected"


class TestReject:

    """Rejections."""

    @pytest.mark.asyncio
    async def test_reject_at_dlmro(self, service, store, blobs, notifier):
        await run_to_stage(service, "dlmro")
        notifier.sent.clear()

        result = await service.reject("job-1", WorkflowKind.KYC, DLMRO, "UBO not verified")

        assert result.success is True
        assert result.approval.status == ApprovalStatus.REJECTED
        assert result.approval.rejection.reason == "UBO not verified"
        assert result.approval.lmro.document is not None
        assert blobs.deleted == []

        job = await store.get_job("job-1")
        assert job.status == "kyc-rejected"
        assert job.timeline[-1]["description"] == "KYC rejected: UBO not verified"

        assert [audience for _, audience in notifier.sent] == [Audience.user("u-ops"), Audience.admins()]
        assert notifier.sent[0][0].title == "KYC Request Rejected"

    @pytest.mark.asyncio
    async def test_rejected_is_final(self, service):
        await service.initialize("job-1", WorkflowKind.KYC, OPS)
        await service.reject("job-1", WorkflowKind.KYC, LMRO, "no")

        again = await service.reject("job-1", WorkflowKind.KYC, LMRO, "still no")
        advance = await service.advance("job-1", WorkflowKind.KYC, "lmro", LMRO, upload())
        assert again.error == WorkflowErrorCode.ALREADY_FINALIZED
        assert advance.error == WorkflowErrorCode.ALREADY_FINALIZED

    @pytest.mark.asyncio
    async def test_reason_required(self, service):
        await service.initialize("job-1", WorkflowKind.KYC, OPS)
        result = await service.reject("job-1", WorkflowKind.KYC, LMRO, "")
        assert result.error == WorkflowErrorCode.REASON_REQUIRED

    @pytest.mark.asyncio
    async def test_reject_needs_current_stage_role(self, service):
        await run_to_stage(service, "ceo")
        result = await service.reject("job-1", WorkflowKind.KYC, DLMRO, "late objection")
        assert result.error == WorkflowErrorCode.UNAUTHORIZED


class TestSideEffectFailures:
    """Notification and successor failures never undo a committed approval."""

    @pytest.mark.asyncio
    async def test_notifier_errors_are_swallowed(self, store, blobs):
        notifier = MagicMock()
        notifier.notify = AsyncMock(side_effect=RuntimeError("smtp down"))
        service = ApprovalWorkflowService(store, blobs, notifier)

        init = await service.initialize("job-1", WorkflowKind.KYC, OPS)
        result = await service.advance("job-1", WorkflowKind.KYC, "lmro", LMRO, upload())

        assert init.success is True
        assert result.success is True
        assert notifier.notify.await_count == 2

    @pytest.mark.asyncio
    async def test_successor_failure_is_swallowed(self, service, store):
        await run_to_stage(service, "ceo")
        store.insert_approval = AsyncMock(side_effect=RuntimeError("db down"))

        result = await service.advance("job-1", WorkflowKind.KYC, "ceo", CEO, upload())

        assert result.success is True
        assert result.successor_initialized is False
        assert (await store.get_job("job-1")).status == "kyc-complete"

    @pytest.mark.asyncio
    async def test_existing_successor_is_left_alone(self, service, store):
        await run_to_stage(service, "ceo")
        await store.insert_approval(ApprovalEngine.create_approval("job-1", WorkflowKind.BRA))

        result = await service.advance("job-1", WorkflowKind.KYC, "ceo", CEO, upload())

        assert result.success is True
        assert result.successor_initialized is False


class TestQueries:
    """Status and job listing."""

    @pytest.mark.asyncio
    async def test_status_before_initialize(self, service):
        result = await service.get_status("job-1", WorkflowKind.KYC)
        assert result.success is True
        assert result.approval is None
        assert result.details["exists"] is False
        assert result.details["can_initialize"] is True
        assert result.details["job_info"]["client_name"] == "Acme Ltd"

    @pytest.mark.asyncio
    async def test_status_after_initialize(self, service):
        await service.initialize("job-1", WorkflowKind.KYC, OPS)
        result = await service.get_status("job-1", WorkflowKind.KYC)
        assert result.details["exists"] is True
        assert result.details["can_initialize"] is False
        assert result.to_dict()["approval"]["current_stage"] == "lmro"

    @pytest.mark.asyncio
    async def test_status_missing_job(self, service):
        result = await service.get_status("ghost", WorkflowKind.BRA)
        assert result.error == WorkflowErrorCode.NOT_FOUND

    @pytest.mark.asyncio
    async def test_list_jobs(self, service, store):
        store.add_job({"id": "job-2", "status": "kyc-lmro-approved", "created_at": "2024-02-01T00:00:00+00:00"})
        store.add_job({"id": "job-3", "status": "bra-pending", "created_at": "2024-03-01T00:00:00+00:00"})
        store.add_job({"id": "job-4", "status": "kyc-complete", "created_at": "2024-04-01T00:00:00+00:00"})

        kyc = await service.list_jobs(WorkflowKind.KYC)
        assert [j["id"] for j in kyc] == ["job-4", "job-2"]

        only_complete = await service.list_jobs(WorkflowKind.KYC, ["kyc-complete"])
        assert [j["id"] for j in only_complete] == ["job-4"]
