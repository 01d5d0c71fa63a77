"""
Procurement Workflow Hub - Config Router

Workflow definitions per tenant and record type, tenant settings, and the
engine's effective settings.
"""

from fastapi import APIRouter, HTTPException, Query
from typing import Optional, List, Dict
from pydantic import BaseModel, Field
import logging

from services.workflow_config import get_workflow_settings, is_fanout_enabled_for_tenant
from services.workflow_errors import WorkflowError
from services.workflow_models import (
    RecordStatus,
    RecordType,
    RejectionPolicyOverride,
    Stage,
    WorkflowDefinition,
    utc_now,
)
from services.rejection_policy import resolve_rejection_policy

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/config", tags=["config"])

# Database and registry - set by main app
db = None
registry = None

def set_dependencies(database, workflow_registry):
    global db, registry
    db = database
    registry = workflow_registry


def _http_error(e: WorkflowError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=e.to_dict())


# ==================== MODELS ====================

class WorkflowDefinitionRequest(BaseModel):
    tenant_id: str
    record_type: RecordType
    name: str
    description: Optional[str] = None
    stages: List[Stage]
    global_rejection_defaults: Optional[RejectionPolicyOverride] = None
    status_on_submission: RecordStatus = RecordStatus.PENDING_APPROVAL
    status_on_approval: Dict[str, RecordStatus] = Field(default_factory=dict)
    status_on_rejection: Dict[str, RecordStatus] = Field(default_factory=dict)
    updated_by: Optional[str] = None


class TenantSettings(BaseModel):
    fanout_enabled: bool = False


# ==================== WORKFLOW DEFINITIONS ====================

@router.post("/workflows")
async def save_workflow_definition(request: WorkflowDefinitionRequest):
    """Create or update the active workflow for a tenant and record type."""
    definition = WorkflowDefinition(**request.model_dump(exclude={"updated_by"}))
    try:
        saved = await registry.save(definition, actor_id=request.updated_by)
    except WorkflowError as e:
        raise _http_error(e)
    return saved.to_document()


@router.get("/workflows/active")
async def get_active_workflow(
    tenant_id: str = Query(...),
    record_type: RecordType = Query(...)
):
    try:
        definition = await registry.resolve_active(tenant_id, record_type)
    except WorkflowError as e:
        raise _http_error(e)
    return definition.to_document()


@router.get("/workflows/versions")
async def list_workflow_versions(
    tenant_id: str = Query(...),
    record_type: RecordType = Query(...)
):
    versions = await registry.list_versions(tenant_id, record_type)
    return {
        "tenant_id": tenant_id,
        "record_type": record_type.value,
        "versions": [
            {
                "id": d.id,
                "version": d.version,
                "is_active": d.is_active,
                "stage_count": len(d.stages),
                "updated_utc": d.updated_utc,
                "updated_by": d.updated_by,
            }
            for d in versions
        ],
    }


@router.get("/workflows/{definition_id}/versions/{version}")
async def get_workflow_version(definition_id: str, version: int):
    try:
        definition = await registry.get_version(definition_id, version)
    except WorkflowError as e:
        raise _http_error(e)
    return definition.to_document()


@router.get("/workflows/{definition_id}/versions/{version}/rejection-policy/{stage_key}")
async def get_effective_rejection_policy(definition_id: str, version: int, stage_key: str):
    """Merged rejection policy for one stage, for admin preview."""
    try:
        definition = await registry.get_version(definition_id, version)
    except WorkflowError as e:
        raise _http_error(e)
    if definition.get_stage(stage_key) is None:
        raise HTTPException(status_code=404, detail=f"Stage '{stage_key}' not found")

    policy = resolve_rejection_policy(definition, stage_key)
    result = policy.model_dump(mode="json")
    result["notify_roles"] = policy.notify_roles()
    result["visible_roles"] = policy.visible_roles()
    return result


@router.post("/workflows/deactivate")
async def deactivate_workflow(
    tenant_id: str = Query(...),
    record_type: RecordType = Query(...)
):
    deactivated = await registry.deactivate(tenant_id, record_type)
    if not deactivated:
        raise HTTPException(status_code=404, detail="No active workflow")
    return {"success": True, "tenant_id": tenant_id, "record_type": record_type.value}


# ==================== TENANT SETTINGS ====================

@router.get("/tenants/{tenant_id}/settings")
async def get_tenant_settings(tenant_id: str):
    settings = await db.tenant_settings.find_one({"tenant_id": tenant_id}, {"_id": 0})
    settings = settings or {"tenant_id": tenant_id, "fanout_enabled": False}
    settings["fanout_effective"] = is_fanout_enabled_for_tenant(tenant_id, settings)
    return settings


@router.put("/tenants/{tenant_id}/settings")
async def update_tenant_settings(tenant_id: str, settings: TenantSettings):
    await db.tenant_settings.update_one(
        {"tenant_id": tenant_id},
        {"$set": {**settings.model_dump(), "tenant_id": tenant_id, "updated_utc": utc_now()}},
        upsert=True
    )
    logger.info("Tenant settings updated: tenant=%s, fanout_enabled=%s", tenant_id, settings.fanout_enabled)
    return await get_tenant_settings(tenant_id)


# ==================== ENGINE SETTINGS ====================

@router.get("/settings")
async def get_engine_settings():
    """Effective environment-driven engine settings."""
    return get_workflow_settings()
