"""
Procurement Workflow Hub - Workflows Router

Record submission, stage transitions, bulk/group actions and the purchase
order fan-out step.

The caller's tenant, user id and role come from the x-tenant-id, x-user-id
and x-user-role headers set by the upstream gateway.
"""

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field
import logging

from services.batch import selection_state
from services.workflow_errors import WorkflowError, RecordNotFound
from services.workflow_models import RecordStatus, RecordType, TERMINAL_POSITIONS

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/workflows", tags=["workflows"])

# Database and services - set by main app
db = None
workflow_engine = None
bulk_coordinator = None
group_coordinator = None
fanout_linker = None

def set_dependencies(database, engine, bulk, groups, fanout):
    global db, workflow_engine, bulk_coordinator, group_coordinator, fanout_linker
    db = database
    workflow_engine = engine
    bulk_coordinator = bulk
    group_coordinator = groups
    fanout_linker = fanout


def workflow_http_error(e: WorkflowError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=e.to_dict())


# ==================== MODELS ====================

class UserContext(BaseModel):
    tenant_id: str
    user_id: str
    role: str


async def get_user_context(
    x_tenant_id: str = Header(...),
    x_user_id: str = Header(...),
    x_user_role: str = Header(...)
) -> UserContext:
    return UserContext(tenant_id=x_tenant_id, user_id=x_user_id, role=x_user_role)


class SubmitRequest(BaseModel):
    record_type: RecordType
    payload: Dict[str, Any] = Field(default_factory=dict)
    group_key: Optional[str] = None
    fulfillment_partner_id: Optional[str] = None


class ApproveRequest(BaseModel):
    remarks: Optional[str] = None
    expected_stage: Optional[str] = None
    expected_revision: Optional[int] = None


class RejectRequest(BaseModel):
    reason_code: Optional[str] = None
    remarks: Optional[str] = None
    expected_stage: Optional[str] = None
    expected_revision: Optional[int] = None


class BulkApproveRequest(BaseModel):
    record_ids: List[str]
    remarks: Optional[str] = None


class BulkRejectRequest(BaseModel):
    record_ids: List[str]
    reason_code: Optional[str] = None
    remarks: Optional[str] = None


class FanoutRequest(BaseModel):
    record_ids: List[str]
    external_ref_number: str
    external_ref_date: str


async def _get_tenant_record(record_id: str, user: UserContext):
    record = await workflow_engine.records.get(record_id)
    if record.tenant_id != user.tenant_id:
        raise RecordNotFound(f"Record {record_id} not found", details={"record_id": record_id})
    return record


# ==================== RECORD ENDPOINTS ====================

@router.post("/records")
async def submit_record(request: SubmitRequest, user: UserContext = Depends(get_user_context)):
    """Submit a record into the tenant's active workflow for its type."""
    try:
        record = await workflow_engine.submit(
            tenant_id=user.tenant_id,
            record_type=request.record_type,
            requester_id=user.user_id,
            payload=request.payload,
            group_key=request.group_key,
            fulfillment_partner_id=request.fulfillment_partner_id,
        )
    except WorkflowError as e:
        raise workflow_http_error(e)
    return record.to_view()


@router.get("/queue")
async def get_workflow_queue(
    record_type: Optional[RecordType] = Query(None),
    status: Optional[RecordStatus] = Query(None),
    stage: Optional[str] = Query(None),
    skip: int = Query(0),
    limit: int = Query(50),
    user: UserContext = Depends(get_user_context)
):
    """In-flight records for the caller's tenant."""
    query: Dict[str, Any] = {"tenant_id": user.tenant_id}

    if record_type:
        query["record_type"] = record_type.value
    if status:
        query["status"] = status.value
    if stage:
        query["current_stage"] = stage
    else:
        query["current_stage"] = {"$nin": sorted(TERMINAL_POSITIONS)}

    total = await db.workflow_records.count_documents(query)
    docs = await db.workflow_records.find(
        query,
        {"_id": 0, "id": 1, "record_type": 1, "requester_id": 1, "current_stage": 1,
         "status": 1, "group_key": 1, "revision": 1, "created_utc": 1, "updated_utc": 1}
    ).sort("created_utc", -1).skip(skip).limit(limit).to_list(limit)

    return {"records": docs, "total": total, "skip": skip, "limit": limit}


@router.get("/records/{record_id}")
async def get_record(record_id: str, user: UserContext = Depends(get_user_context)):
    try:
        record = await _get_tenant_record(record_id, user)
    except WorkflowError as e:
        raise workflow_http_error(e)
    return record.to_view()


@router.get("/records/{record_id}/state")
async def get_record_state(record_id: str, user: UserContext = Depends(get_user_context)):
    try:
        await _get_tenant_record(record_id, user)
        state = await workflow_engine.get_workflow_state(record_id)
    except WorkflowError as e:
        raise workflow_http_error(e)

    can_approve, approve_reason = await workflow_engine.can_approve(record_id, user.role)
    can_reject, reject_reason = await workflow_engine.can_reject(record_id, user.role)
    state["actions"] = {
        "can_approve": can_approve,
        "approve_reason": approve_reason,
        "can_reject": can_reject,
        "reject_reason": reject_reason,
    }
    return state


@router.get("/records/{record_id}/rejections")
async def get_record_rejections(record_id: str, user: UserContext = Depends(get_user_context)):
    try:
        await _get_tenant_record(record_id, user)
    except WorkflowError as e:
        raise workflow_http_error(e)
    rejections = await workflow_engine.records.list_rejections(record_id)
    return {"record_id": record_id, "rejections": rejections}


@router.get("/records/{record_id}/approvals")
async def get_record_approvals(record_id: str, user: UserContext = Depends(get_user_context)):
    try:
        await _get_tenant_record(record_id, user)
    except WorkflowError as e:
        raise workflow_http_error(e)
    approvals = await workflow_engine.records.list_approvals(record_id)
    return {"record_id": record_id, "approvals": approvals}


@router.post("/records/{record_id}/approve")
async def approve_record(
    record_id: str,
    request: ApproveRequest,
    user: UserContext = Depends(get_user_context)
):
    try:
        await _get_tenant_record(record_id, user)
        result = await workflow_engine.approve(
            record_id, user.role, user.user_id,
            remarks=request.remarks,
            expected_stage=request.expected_stage,
            expected_revision=request.expected_revision,
        )
    except WorkflowError as e:
        raise workflow_http_error(e)
    return result.to_dict()


@router.post("/records/{record_id}/reject")
async def reject_record(
    record_id: str,
    request: RejectRequest,
    user: UserContext = Depends(get_user_context)
):
    try:
        await _get_tenant_record(record_id, user)
        result = await workflow_engine.reject(
            record_id, user.role, user.user_id,
            reason_code=request.reason_code,
            remarks=request.remarks,
            expected_stage=request.expected_stage,
            expected_revision=request.expected_revision,
        )
    except WorkflowError as e:
        raise workflow_http_error(e)
    return result.to_dict()


@router.post("/records/{record_id}/resubmit")
async def resubmit_record(record_id: str, user: UserContext = Depends(get_user_context)):
    try:
        await _get_tenant_record(record_id, user)
        record = await workflow_engine.resubmit(record_id, user.role, user.user_id)
    except WorkflowError as e:
        raise workflow_http_error(e)
    return record.to_view()


# ==================== BULK / GROUP ENDPOINTS ====================

@router.post("/bulk/approve")
async def bulk_approve(request: BulkApproveRequest, user: UserContext = Depends(get_user_context)):
    """Approve many records independently; per-record failures are reported."""
    outcome = await bulk_coordinator.bulk_approve(
        request.record_ids, user.user_id, user.role, remarks=request.remarks, tenant_id=user.tenant_id
    )
    return outcome.to_dict()


@router.post("/bulk/reject")
async def bulk_reject(request: BulkRejectRequest, user: UserContext = Depends(get_user_context)):
    outcome = await bulk_coordinator.bulk_reject(
        request.record_ids, user.user_id, user.role,
        reason_code=request.reason_code, remarks=request.remarks, tenant_id=user.tenant_id
    )
    return outcome.to_dict()


@router.get("/groups/{record_id}")
async def get_group(
    record_id: str,
    selected: Optional[List[str]] = Query(None),
    user: UserContext = Depends(get_user_context)
):
    """Members of a record's group and how much of it `selected` covers."""
    try:
        await _get_tenant_record(record_id, user)
        members = await group_coordinator.expand(record_id)
    except WorkflowError as e:
        raise workflow_http_error(e)
    return {
        "record_id": record_id,
        "members": members,
        "selection_state": selection_state(members, selected or []).value,
    }


@router.post("/groups/approve")
async def approve_groups(request: BulkApproveRequest, user: UserContext = Depends(get_user_context)):
    """Approve every member of every selected record's group."""
    outcome = await group_coordinator.bulk_approve_groups(
        request.record_ids, user.user_id, user.role, remarks=request.remarks, tenant_id=user.tenant_id
    )
    return outcome.to_dict()


# ==================== FAN-OUT ====================

@router.post("/fanout")
async def create_linked_purchase_orders(
    request: FanoutRequest,
    user: UserContext = Depends(get_user_context)
):
    """Create one linked purchase order per fulfillment partner from approved records."""
    try:
        outcome = await fanout_linker.create_linked_artifacts(
            request.record_ids,
            request.external_ref_number,
            request.external_ref_date,
            user.tenant_id,
            user.user_id,
        )
    except WorkflowError as e:
        raise workflow_http_error(e)
    return outcome.to_dict()
