"""
Procurement Workflow Hub - Workflow Data Model

Typed records for everything the approval engine reads and writes:

- WorkflowDefinition / Stage: administrator-owned configuration, scoped to
  (tenant_id, record_type) and versioned on every update.
- RejectionPolicyOverride: a partial rejection policy. Used for the
  definition-wide defaults and for per-stage overrides. None means "inherit".
- EffectiveRejectionPolicy: the fully merged policy for one stage.
- WorkflowRecord: a requisition / order / purchase order moving through its
  bound definition.

Roles, statuses and record types are closed enumerations. A record persists a
single canonical status; the fulfillment view and the legacy order status are
derived from it at read time.
"""

from enum import Enum
from datetime import datetime, timezone
from typing import Optional, Dict, List, Any
import random
import string
import uuid

from pydantic import BaseModel, Field


# =============================================================================
# ENUMERATIONS
# =============================================================================

class RecordType(str, Enum):
    """Record types that can be driven through a configurable workflow."""
    ORDER = "ORDER"                       # Purchase requisition / its split orders
    PURCHASE_ORDER = "PURCHASE_ORDER"
    GRN = "GRN"
    INVOICE = "INVOICE"
    RETURN_REQUEST = "RETURN_REQUEST"


class WorkflowRole(str, Enum):
    """Roles that can act at, or be notified from, a workflow stage."""
    LOCATION_ADMIN = "LOCATION_ADMIN"
    SITE_ADMIN = "SITE_ADMIN"
    COMPANY_ADMIN = "COMPANY_ADMIN"
    FINANCE_ADMIN = "FINANCE_ADMIN"
    VENDOR = "VENDOR"
    SUPER_ADMIN = "SUPER_ADMIN"
    EMPLOYEE = "EMPLOYEE"
    REQUESTOR = "REQUESTOR"               # The record's original requester


class RecordStatus(str, Enum):
    """Canonical lifecycle status of a record."""
    DRAFT = "DRAFT"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    PENDING_SITE_ADMIN_APPROVAL = "PENDING_SITE_ADMIN_APPROVAL"
    SITE_ADMIN_APPROVED = "SITE_ADMIN_APPROVED"
    PENDING_COMPANY_ADMIN_APPROVAL = "PENDING_COMPANY_ADMIN_APPROVAL"
    COMPANY_ADMIN_APPROVED = "COMPANY_ADMIN_APPROVED"
    PENDING_FINANCE_APPROVAL = "PENDING_FINANCE_APPROVAL"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    LINKED_TO_PO = "LINKED_TO_PO"
    IN_SHIPMENT = "IN_SHIPMENT"
    PARTIALLY_DELIVERED = "PARTIALLY_DELIVERED"
    FULLY_DELIVERED = "FULLY_DELIVERED"
    CLOSED = "CLOSED"
    CANCELLED = "CANCELLED"


class FulfillmentStatus(str, Enum):
    """Execution view of an approved record (derived, never persisted)."""
    CREATED = "CREATED"
    DISPATCHED = "DISPATCHED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


class ResubmissionStrategy(str, Enum):
    """How a rejected record re-enters the workflow."""
    NEW_ENTITY = "NEW_ENTITY"     # A new record instance is created
    SAME_ENTITY = "SAME_ENTITY"   # The same record restarts at the initial stage


class TerminalState(str, Enum):
    """Absorbing workflow positions. No stage key may use these values."""
    APPROVED_TERMINAL = "APPROVED_TERMINAL"
    REJECTED = "REJECTED"


# Statuses from which approve/reject may be attempted. A record positioned at a
# stage but carrying any other status is not actionable.
ACTIONABLE_STATUSES = frozenset({
    RecordStatus.PENDING_APPROVAL,
    RecordStatus.PENDING_SITE_ADMIN_APPROVAL,
    RecordStatus.SITE_ADMIN_APPROVED,
    RecordStatus.PENDING_COMPANY_ADMIN_APPROVAL,
    RecordStatus.COMPANY_ADMIN_APPROVED,
    RecordStatus.PENDING_FINANCE_APPROVAL,
    RecordStatus.APPROVED,
    RecordStatus.REJECTED,        # Sent back: still positioned at its stage
})

TERMINAL_POSITIONS = frozenset(t.value for t in TerminalState)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


_BASE36 = string.digits + string.ascii_uppercase


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_audit_id(prefix: str) -> str:
    """Audit identifiers like REJ-LQ2X9K3A-7F3K."""
    millis = int(datetime.now(timezone.utc).timestamp() * 1000)
    suffix = "".join(random.choices(_BASE36, k=4))
    return f"{prefix}-{_to_base36(millis)}-{suffix}"


# =============================================================================
# REJECTION POLICY LAYERS
# =============================================================================

class RejectionPolicyOverride(BaseModel):
    """
    Partial rejection policy. Every field is optional; an unset field inherits
    from the layer below and never resets it to the system default.
    """
    is_terminal_on_reject: Optional[bool] = None
    stop_further_stages_on_reject: Optional[bool] = None
    is_reason_code_mandatory: Optional[bool] = None
    is_remarks_mandatory: Optional[bool] = None
    max_remarks_length: Optional[int] = Field(default=None, ge=0, le=10000)
    allowed_reason_codes: Optional[List[str]] = None
    notify_roles_on_reject: Optional[List[WorkflowRole]] = None
    notify_requestor: Optional[bool] = None
    exclude_from_notification: Optional[List[WorkflowRole]] = None
    visible_to_roles_after_reject: Optional[List[WorkflowRole]] = None
    hidden_from_roles_after_reject: Optional[List[WorkflowRole]] = None
    resubmission_strategy: Optional[ResubmissionStrategy] = None
    allow_resubmission: Optional[bool] = None
    resubmission_allowed_roles: Optional[List[WorkflowRole]] = None
    rejected_status: Optional[RecordStatus] = None

    def explicit_fields(self) -> Dict[str, Any]:
        """Fields this layer sets explicitly."""
        return {name: value for name, value in self if value is not None}


class EffectiveRejectionPolicy(BaseModel):
    """Fully resolved rejection behavior for one stage of one definition."""
    is_terminal_on_reject: bool
    stop_further_stages_on_reject: bool
    is_reason_code_mandatory: bool
    is_remarks_mandatory: bool
    max_remarks_length: Optional[int]
    allowed_reason_codes: Optional[List[str]]
    notify_roles_on_reject: List[WorkflowRole]
    notify_requestor: bool
    exclude_from_notification: List[WorkflowRole]
    visible_to_roles_after_reject: List[WorkflowRole]
    hidden_from_roles_after_reject: List[WorkflowRole]
    resubmission_strategy: ResubmissionStrategy
    allow_resubmission: bool
    resubmission_allowed_roles: List[WorkflowRole]
    rejected_status: RecordStatus

    def notify_roles(self) -> List[str]:
        """Configured roles, plus the requester when enabled, minus exclusions."""
        roles = list(self.notify_roles_on_reject)
        if self.notify_requestor:
            roles.append(WorkflowRole.REQUESTOR)
        excluded = set(self.exclude_from_notification)
        result = []
        for role in roles:
            if role in excluded or role.value in result:
                continue
            result.append(role.value)
        return result

    def visible_roles(self) -> List[str]:
        hidden = set(self.hidden_from_roles_after_reject)
        result = []
        for role in self.visible_to_roles_after_reject:
            if role in hidden or role.value in result:
                continue
            result.append(role.value)
        return result


# =============================================================================
# WORKFLOW DEFINITION
# =============================================================================

class Stage(BaseModel):
    """One approval checkpoint of a workflow definition."""
    stage_key: str = Field(min_length=1, max_length=50)
    stage_name: str
    stage_description: Optional[str] = None
    allowed_roles: List[WorkflowRole] = Field(default_factory=list)
    order: int = Field(ge=1)
    can_approve: bool = True
    can_reject: bool = True
    is_terminal: bool = False
    is_optional: bool = False
    # Carried for configuration round-trips only; never evaluated.
    auto_approve_condition: Optional[str] = None
    timeout_hours: Optional[float] = Field(default=None, ge=0)
    escalate_to: Optional[str] = None
    rejection_override: Optional[RejectionPolicyOverride] = None


class WorkflowDefinition(BaseModel):
    """Ordered stage configuration for one (tenant, record type)."""
    id: str = Field(default_factory=lambda: f"WF-{uuid.uuid4().hex[:12].upper()}")
    tenant_id: str
    record_type: RecordType
    name: str
    description: Optional[str] = None
    version: int = Field(default=1, ge=1)
    is_active: bool = True
    stages: List[Stage] = Field(default_factory=list)
    global_rejection_defaults: Optional[RejectionPolicyOverride] = None
    status_on_submission: RecordStatus = RecordStatus.PENDING_APPROVAL
    status_on_approval: Dict[str, RecordStatus] = Field(default_factory=dict)
    status_on_rejection: Dict[str, RecordStatus] = Field(default_factory=dict)
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    created_utc: Optional[str] = None
    updated_utc: Optional[str] = None

    def sorted_stages(self) -> List[Stage]:
        return sorted(self.stages, key=lambda s: s.order)

    def get_stage(self, stage_key: str) -> Optional[Stage]:
        for stage in self.stages:
            if stage.stage_key == stage_key:
                return stage
        return None

    def initial_stage(self) -> Stage:
        return self.sorted_stages()[0]

    def terminal_stage(self) -> Optional[Stage]:
        for stage in self.stages:
            if stage.is_terminal:
                return stage
        return None

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "WorkflowDefinition":
        data = {k: v for k, v in document.items() if k != "_id"}
        return cls.model_validate(data)


# =============================================================================
# RECORD INSTANCE
# =============================================================================

def derive_fulfillment_status(
    status: RecordStatus,
    current_stage: Optional[str]
) -> Optional[FulfillmentStatus]:
    """Execution view of a record. None until the record is fully approved."""
    if status == RecordStatus.CANCELLED:
        return FulfillmentStatus.CANCELLED
    if current_stage != TerminalState.APPROVED_TERMINAL.value:
        return None
    mapping = {
        RecordStatus.IN_SHIPMENT: FulfillmentStatus.DISPATCHED,
        RecordStatus.PARTIALLY_DELIVERED: FulfillmentStatus.DISPATCHED,
        RecordStatus.FULLY_DELIVERED: FulfillmentStatus.DELIVERED,
        RecordStatus.CLOSED: FulfillmentStatus.DELIVERED,
    }
    return mapping.get(status, FulfillmentStatus.CREATED)


def derive_legacy_order_status(
    status: RecordStatus,
    current_stage: Optional[str]
) -> str:
    """Legacy order status string for readers that predate the canonical status."""
    if status in (RecordStatus.IN_SHIPMENT, RecordStatus.PARTIALLY_DELIVERED):
        return "Dispatched"
    if status in (RecordStatus.FULLY_DELIVERED, RecordStatus.CLOSED):
        return "Delivered"
    if current_stage == TerminalState.APPROVED_TERMINAL.value:
        return "Awaiting fulfilment"
    return "Awaiting approval"


class WorkflowRecord(BaseModel):
    """A business record bound to one version of a workflow definition."""
    id: str = Field(default_factory=lambda: f"REC-{uuid.uuid4().hex[:12].upper()}")
    tenant_id: str
    record_type: RecordType
    requester_id: str
    definition_id: str
    definition_version: int
    current_stage: str
    status: RecordStatus
    revision: int = 1
    group_key: Optional[str] = None
    fulfillment_partner_id: Optional[str] = None
    linked_artifact_id: Optional[str] = None
    resubmitted_from: Optional[str] = None
    resubmitted_to: Optional[str] = None
    rejected_at_stage: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    stage_audit: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    workflow_history: List[Dict[str, Any]] = Field(default_factory=list)
    created_utc: str = Field(default_factory=utc_now)
    updated_utc: str = Field(default_factory=utc_now)

    @property
    def is_absorbed(self) -> bool:
        return self.current_stage in TERMINAL_POSITIONS

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "WorkflowRecord":
        data = {k: v for k, v in document.items() if k != "_id"}
        return cls.model_validate(data)

    def to_view(self) -> Dict[str, Any]:
        """Read model with the derived compatibility fields."""
        view = self.to_document()
        fulfillment = derive_fulfillment_status(self.status, self.current_stage)
        view["fulfillment_status"] = fulfillment.value if fulfillment else None
        view["legacy_order_status"] = derive_legacy_order_status(self.status, self.current_stage)
        return view
