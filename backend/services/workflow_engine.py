"""
Procurement Workflow Hub - Configurable Workflow Engine

State machine that moves records through the ordered stages of their bound
workflow definition. Stages, roles and rejection behavior come from the
WorkflowRegistry instead of being hard-coded per record type.

Positions:
- a stage_key of the bound definition (in flight)
- APPROVED_TERMINAL (absorbing, reached by approving at the terminal stage)
- REJECTED (absorbing, reached by a terminal rejection)

Every single-record operation validates first, then performs exactly one
conditional write through WorkflowRecordStore. A failed validation mutates
nothing; a concurrent writer surfaces as StaleState.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Dict, List, Tuple, Any
import logging

from services.rejection_policy import resolve_rejection_policy
from services.record_store import WorkflowRecordStore
from services.workflow_errors import (
    InvalidTransition,
    ReasonCodeNotAllowed,
    ReasonCodeRequired,
    RemarksRequired,
    RemarksTooLong,
    ResubmissionNotAllowed,
    RoleNotAllowedAtStage,
    StaleState,
    WorkflowError,
)
from services.workflow_events import WorkflowEvent, WorkflowEventBus, WorkflowEventType
from services.workflow_models import (
    ACTIONABLE_STATUSES,
    EffectiveRejectionPolicy,
    RecordStatus,
    RecordType,
    ResubmissionStrategy,
    Stage,
    TerminalState,
    WorkflowDefinition,
    WorkflowRecord,
    WorkflowRole,
    generate_audit_id,
    utc_now,
)
from services.workflow_registry import WorkflowRegistry

logger = logging.getLogger(__name__)


class WorkflowAction(str, Enum):
    """Actions recorded in workflow history and stage audit."""
    SUBMITTED = "SUBMITTED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    RESUBMITTED = "RESUBMITTED"
    LINKED = "LINKED"


class WorkflowHistoryEntry:
    """Represents a single entry in a record's workflow history."""

    def __init__(
        self,
        from_stage: Optional[str],
        to_stage: str,
        from_status: Optional[str],
        to_status: str,
        action: str,
        actor: str = "system",
        actor_role: Optional[str] = None,
        reason: Optional[str] = None,
        metadata: Optional[Dict] = None
    ):
        self.timestamp = utc_now()
        self.from_stage = from_stage
        self.to_stage = to_stage
        self.from_status = from_status
        self.to_status = to_status
        self.action = action
        self.actor = actor
        self.actor_role = actor_role
        self.reason = reason
        self.metadata = metadata or {}

    def to_dict(self) -> Dict:
        return {
            "timestamp": self.timestamp,
            "from_stage": self.from_stage,
            "to_stage": self.to_stage,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "action": self.action,
            "actor": self.actor,
            "actor_role": self.actor_role,
            "reason": self.reason,
            "metadata": self.metadata
        }


# =============================================================================
# RESULTS
# =============================================================================

@dataclass
class RejectionOutcome:
    """What a rejection decided, for notification and visibility consumers."""
    rejection_id: Optional[str]
    reason_code: Optional[str]
    remarks: Optional[str]
    is_terminal: bool
    notify_roles: List[str] = field(default_factory=list)
    visible_to_roles: List[str] = field(default_factory=list)
    allow_resubmission: bool = False
    resubmission_strategy: Optional[str] = None
    resubmission_allowed_roles: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rejection_id": self.rejection_id,
            "reason_code": self.reason_code,
            "remarks": self.remarks,
            "is_terminal": self.is_terminal,
            "notify_roles": self.notify_roles,
            "visible_to_roles": self.visible_to_roles,
            "allow_resubmission": self.allow_resubmission,
            "resubmission_strategy": self.resubmission_strategy,
            "resubmission_allowed_roles": self.resubmission_allowed_roles,
        }


@dataclass
class TransitionResult:
    """Outcome of a successful approve or reject."""
    record: WorkflowRecord
    action: str
    previous_stage: str
    previous_status: str
    rejection: Optional[RejectionOutcome] = None
    audit_id: Optional[str] = None

    @property
    def new_stage(self) -> str:
        return self.record.current_stage

    @property
    def new_status(self) -> str:
        return self.record.status.value

    @property
    def is_terminal(self) -> bool:
        return self.record.is_absorbed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "record_id": self.record.id,
            "action": self.action,
            "previous_stage": self.previous_stage,
            "new_stage": self.new_stage,
            "previous_status": self.previous_status,
            "new_status": self.new_status,
            "is_terminal": self.is_terminal,
            "revision": self.record.revision,
            "audit_id": self.audit_id,
            "rejection": self.rejection.to_dict() if self.rejection else None,
        }


# =============================================================================
# ENGINE
# =============================================================================

def _coerce_role(role: Any) -> Optional[WorkflowRole]:
    try:
        return WorkflowRole(role)
    except ValueError:
        return None


def _is_blank(value: Optional[str]) -> bool:
    return value is None or not value.strip()


class WorkflowEngine:
    """
    Stage transition engine over registry-managed definitions.

    The pure helpers (get_next_stage, validate_rejection_input) are static so
    they can be used without storage; everything that reads or writes records
    goes through the injected registry and record store.

    Committed transitions are published on `events`; listener failures are
    logged by the bus and never affect the transition.
    """

    def __init__(
        self,
        registry: WorkflowRegistry,
        records: WorkflowRecordStore,
        events: Optional[WorkflowEventBus] = None
    ):
        self.registry = registry
        self.records = records
        self.events = events or WorkflowEventBus()

    # -------------------------------------------------------------------------
    # Pure helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def get_next_stage(definition: WorkflowDefinition, stage_key: str) -> Optional[Stage]:
        """
        The stage after `stage_key` in ascending order, or None at the last stage
        or for a key the definition does not contain.
        """
        stages = definition.sorted_stages()
        for index, stage in enumerate(stages):
            if stage.stage_key == stage_key:
                return stages[index + 1] if index + 1 < len(stages) else None
        return None

    @staticmethod
    def validate_rejection_input(
        policy: EffectiveRejectionPolicy,
        reason_code: Optional[str],
        remarks: Optional[str]
    ) -> None:
        if policy.is_reason_code_mandatory and _is_blank(reason_code):
            raise ReasonCodeRequired("A reason code is required to reject at this stage")

        if policy.is_remarks_mandatory and _is_blank(remarks):
            raise RemarksRequired("Remarks are required to reject at this stage")

        if remarks and policy.max_remarks_length is not None and len(remarks) > policy.max_remarks_length:
            raise RemarksTooLong(
                f"Remarks exceed maximum length of {policy.max_remarks_length} characters",
                details={"max_remarks_length": policy.max_remarks_length, "length": len(remarks)}
            )

        if policy.allowed_reason_codes and not _is_blank(reason_code):
            if reason_code not in policy.allowed_reason_codes:
                raise ReasonCodeNotAllowed(
                    f"Reason code '{reason_code}' is not allowed at this stage",
                    details={"allowed_reason_codes": policy.allowed_reason_codes}
                )

    @staticmethod
    def _check_expectations(
        record: WorkflowRecord,
        expected_stage: Optional[str],
        expected_revision: Optional[int]
    ) -> None:
        if expected_stage is not None and record.current_stage != expected_stage:
            raise StaleState(
                f"Record {record.id} is at '{record.current_stage}', expected '{expected_stage}'",
                details={"record_id": record.id, "current_stage": record.current_stage}
            )
        if expected_revision is not None and record.revision != expected_revision:
            raise StaleState(
                f"Record {record.id} is at revision {record.revision}, expected {expected_revision}",
                details={"record_id": record.id, "revision": record.revision}
            )

    @staticmethod
    def _actionable_stage(record: WorkflowRecord, definition: WorkflowDefinition) -> Stage:
        if record.is_absorbed:
            logger.warning("Transition blocked: record=%s is absorbed in %s", record.id, record.current_stage)
            raise InvalidTransition(
                f"Record {record.id} is already {record.current_stage}",
                details={"record_id": record.id, "current_stage": record.current_stage}
            )
        if record.status not in ACTIONABLE_STATUSES:
            raise InvalidTransition(
                f"Record {record.id} in status {record.status.value} cannot be actioned",
                details={"record_id": record.id, "status": record.status.value}
            )
        stage = definition.get_stage(record.current_stage)
        if stage is None:
            raise InvalidTransition(
                f"Stage '{record.current_stage}' is not part of workflow {definition.id} v{definition.version}",
                details={"record_id": record.id, "current_stage": record.current_stage}
            )
        return stage

    @staticmethod
    def _check_role(stage: Stage, role: Optional[WorkflowRole], actor_role: Any) -> None:
        if role is None or role not in stage.allowed_roles:
            logger.warning(
                "Transition blocked: role=%s not allowed at stage=%s", actor_role, stage.stage_key
            )
            raise RoleNotAllowedAtStage(
                f"Role '{actor_role}' cannot act at stage '{stage.stage_key}'",
                details={
                    "stage_key": stage.stage_key,
                    "allowed_roles": [r.value for r in stage.allowed_roles],
                }
            )

    # -------------------------------------------------------------------------
    # Loading
    # -------------------------------------------------------------------------

    async def _bound_definition(self, record: WorkflowRecord) -> WorkflowDefinition:
        """
        Definition version the record was started under. The scope must still
        have an active workflow; a deactivated scope stops all transitions.
        """
        active = await self.registry.resolve_active(record.tenant_id, record.record_type)
        if active.id == record.definition_id and active.version == record.definition_version:
            return active
        return await self.registry.get_version(record.definition_id, record.definition_version)

    async def _load_for_action(
        self,
        record_id: str,
        actor_role: Any,
        expected_stage: Optional[str],
        expected_revision: Optional[int]
    ) -> Tuple[WorkflowRecord, WorkflowDefinition, Stage]:
        record = await self.records.get(record_id)
        self._check_expectations(record, expected_stage, expected_revision)
        definition = await self._bound_definition(record)
        stage = self._actionable_stage(record, definition)
        self._check_role(stage, _coerce_role(actor_role), actor_role)
        return record, definition, stage

    async def _publish(
        self,
        event_type: WorkflowEventType,
        record: WorkflowRecord,
        actor_id: str,
        actor_role: Optional[str] = None,
        previous: Optional[WorkflowRecord] = None,
        **extra: Any
    ) -> None:
        """Publish a committed transition. Never raises."""
        try:
            event = WorkflowEvent(
                event_type=event_type,
                tenant_id=record.tenant_id,
                record_type=record.record_type.value,
                record_id=record.id,
                current_stage=record.current_stage,
                current_status=record.status.value,
                actor_id=actor_id,
                actor_role=actor_role,
                previous_stage=previous.current_stage if previous else None,
                previous_status=previous.status.value if previous else None,
                **extra
            )
            await self.events.publish(event)
        except Exception as e:
            logger.error("Failed to publish %s for record %s: %s", event_type.value, record.id, str(e))

    # -------------------------------------------------------------------------
    # Submission
    # -------------------------------------------------------------------------

    async def submit(
        self,
        tenant_id: str,
        record_type: RecordType,
        requester_id: str,
        payload: Optional[Dict[str, Any]] = None,
        group_key: Optional[str] = None,
        fulfillment_partner_id: Optional[str] = None
    ) -> WorkflowRecord:
        """Start a record at the initial stage of the active definition."""
        definition = await self.registry.resolve_active(tenant_id, record_type)
        initial = definition.initial_stage()

        entry = WorkflowHistoryEntry(
            from_stage=None,
            to_stage=initial.stage_key,
            from_status=None,
            to_status=definition.status_on_submission.value,
            action=WorkflowAction.SUBMITTED.value,
            actor=requester_id,
            metadata={"definition_id": definition.id, "definition_version": definition.version}
        )
        record = WorkflowRecord(
            tenant_id=tenant_id,
            record_type=definition.record_type,
            requester_id=requester_id,
            definition_id=definition.id,
            definition_version=definition.version,
            current_stage=initial.stage_key,
            status=definition.status_on_submission,
            group_key=group_key,
            fulfillment_partner_id=fulfillment_partner_id,
            payload=payload or {},
            workflow_history=[entry.to_dict()],
        )
        await self.records.insert(record)

        logger.info(
            "Record submitted: record=%s, tenant=%s, type=%s, workflow=%s v%s, stage=%s",
            record.id, tenant_id, definition.record_type.value, definition.id,
            definition.version, initial.stage_key
        )
        await self._publish(WorkflowEventType.ENTITY_SUBMITTED, record, requester_id)
        return record

    # -------------------------------------------------------------------------
    # Approve
    # -------------------------------------------------------------------------

    async def approve(
        self,
        record_id: str,
        actor_role: Any,
        actor_id: str,
        remarks: Optional[str] = None,
        expected_stage: Optional[str] = None,
        expected_revision: Optional[int] = None
    ) -> TransitionResult:
        """
        Approve a record at its current stage.

        Approving at the terminal stage (or the last stage) absorbs the record
        into APPROVED_TERMINAL; otherwise it moves to the next stage by order.
        Optional stages are entered like any other stage.
        """
        record, definition, stage = await self._load_for_action(
            record_id, actor_role, expected_stage, expected_revision
        )
        if not stage.can_approve:
            raise InvalidTransition(
                f"Stage '{stage.stage_key}' does not allow approval",
                details={"stage_key": stage.stage_key}
            )

        next_stage = self.get_next_stage(definition, stage.stage_key)
        if stage.is_terminal or next_stage is None:
            new_position = TerminalState.APPROVED_TERMINAL.value
            new_status = definition.status_on_approval.get(stage.stage_key, RecordStatus.APPROVED)
        else:
            new_position = next_stage.stage_key
            new_status = definition.status_on_approval.get(stage.stage_key, RecordStatus.PENDING_APPROVAL)

        now = utc_now()
        stage_audit = dict(record.stage_audit)
        stage_audit[stage.stage_key] = {
            "action": WorkflowAction.APPROVED.value,
            "actor_id": actor_id,
            "actor_role": _coerce_role(actor_role).value,
            "remarks": remarks,
            "at": now,
        }
        entry = WorkflowHistoryEntry(
            from_stage=record.current_stage,
            to_stage=new_position,
            from_status=record.status.value,
            to_status=new_status.value,
            action=WorkflowAction.APPROVED.value,
            actor=actor_id,
            actor_role=_coerce_role(actor_role).value,
            reason=remarks,
        )
        updated = await self.records.apply_transition(
            record,
            {
                "current_stage": new_position,
                "status": new_status.value,
                "stage_audit": stage_audit,
                "updated_utc": now,
            },
            entry.to_dict()
        )

        role_value = _coerce_role(actor_role).value
        audit_id = await self._record_approval(
            updated, record, definition, stage, actor_id, role_value, remarks
        )

        logger.info(
            "Workflow transition: record=%s, %s -> %s (action=APPROVED, actor=%s, role=%s)",
            record.id, record.current_stage, new_position, actor_id, actor_role
        )
        event_type = (
            WorkflowEventType.ENTITY_APPROVED if updated.is_absorbed
            else WorkflowEventType.ENTITY_APPROVED_AT_STAGE
        )
        await self._publish(
            event_type, updated, actor_id, role_value, previous=record,
            remarks=remarks, metadata={"stage_key": stage.stage_key, "audit_id": audit_id},
        )
        return TransitionResult(
            record=updated,
            action=WorkflowAction.APPROVED.value,
            previous_stage=record.current_stage,
            previous_status=record.status.value,
            audit_id=audit_id,
        )

    async def _record_approval(
        self,
        record: WorkflowRecord,
        previous: WorkflowRecord,
        definition: WorkflowDefinition,
        stage: Stage,
        actor_id: str,
        actor_role: str,
        remarks: Optional[str]
    ) -> Optional[str]:
        """Append the approval audit entry after the record write has committed."""
        audit_id = generate_audit_id("APR")
        try:
            await self.records.insert_approval({
                "audit_id": audit_id,
                "record_id": record.id,
                "tenant_id": record.tenant_id,
                "record_type": record.record_type.value,
                "definition_id": definition.id,
                "definition_version": definition.version,
                "stage_key": stage.stage_key,
                "stage_name": stage.stage_name,
                "approved_by": actor_id,
                "approved_by_role": actor_role,
                "approved_at": utc_now(),
                "remarks": remarks,
                "previous_status": previous.status.value,
                "resulting_status": record.status.value,
                "resulting_stage": record.current_stage,
            })
        except Exception as e:
            logger.error("Failed to write approval audit for record %s: %s", record.id, str(e))
            return None
        return audit_id

    # -------------------------------------------------------------------------
    # Reject
    # -------------------------------------------------------------------------

    async def reject(
        self,
        record_id: str,
        actor_role: Any,
        actor_id: str,
        reason_code: Optional[str] = None,
        remarks: Optional[str] = None,
        expected_stage: Optional[str] = None,
        expected_revision: Optional[int] = None
    ) -> TransitionResult:
        """
        Reject a record at its current stage under the stage's effective
        rejection policy.

        - is_terminal_on_reject: the record is absorbed into REJECTED
        - otherwise, stop_further_stages_on_reject: the record stays at the
          stage with the rejected status (sent back)
        - otherwise: the record continues to the next stage, or is absorbed
          into REJECTED when there is none
        """
        record, definition, stage = await self._load_for_action(
            record_id, actor_role, expected_stage, expected_revision
        )
        if not stage.can_reject:
            raise InvalidTransition(
                f"Stage '{stage.stage_key}' does not allow rejection",
                details={"stage_key": stage.stage_key}
            )

        policy = resolve_rejection_policy(definition, stage.stage_key)
        self.validate_rejection_input(policy, reason_code, remarks)

        if policy.is_terminal_on_reject:
            new_position = TerminalState.REJECTED.value
        elif policy.stop_further_stages_on_reject:
            new_position = stage.stage_key
        else:
            next_stage = None if stage.is_terminal else self.get_next_stage(definition, stage.stage_key)
            new_position = next_stage.stage_key if next_stage else TerminalState.REJECTED.value
        new_status = policy.rejected_status

        now = utc_now()
        role_value = _coerce_role(actor_role).value
        stage_audit = dict(record.stage_audit)
        stage_audit[stage.stage_key] = {
            "action": WorkflowAction.REJECTED.value,
            "actor_id": actor_id,
            "actor_role": role_value,
            "reason_code": reason_code,
            "remarks": remarks,
            "at": now,
        }
        entry = WorkflowHistoryEntry(
            from_stage=record.current_stage,
            to_stage=new_position,
            from_status=record.status.value,
            to_status=new_status.value,
            action=WorkflowAction.REJECTED.value,
            actor=actor_id,
            actor_role=role_value,
            reason=remarks,
            metadata={"reason_code": reason_code},
        )
        updated = await self.records.apply_transition(
            record,
            {
                "current_stage": new_position,
                "status": new_status.value,
                "rejected_at_stage": stage.stage_key,
                "stage_audit": stage_audit,
                "updated_utc": now,
            },
            entry.to_dict()
        )

        is_terminal = new_position == TerminalState.REJECTED.value
        rejection_id = await self._record_rejection(
            updated, record.status.value, definition, stage, policy,
            role_value, actor_id, reason_code, remarks, is_terminal
        )

        logger.info(
            "Workflow transition: record=%s, %s -> %s (action=REJECTED, actor=%s, role=%s, reason=%s)",
            record.id, record.current_stage, new_position, actor_id, actor_role, reason_code
        )
        if is_terminal:
            event_type = WorkflowEventType.ENTITY_REJECTED
        elif new_position == stage.stage_key:
            event_type = WorkflowEventType.ENTITY_SENT_BACK
        else:
            event_type = WorkflowEventType.ENTITY_REJECTED_AT_STAGE
        await self._publish(
            event_type, updated, actor_id, role_value, previous=record,
            reason_code=reason_code, remarks=remarks, notify_roles=policy.notify_roles(),
            metadata={"stage_key": stage.stage_key, "rejection_id": rejection_id},
        )
        return TransitionResult(
            record=updated,
            action=WorkflowAction.REJECTED.value,
            previous_stage=record.current_stage,
            previous_status=record.status.value,
            audit_id=rejection_id,
            rejection=RejectionOutcome(
                rejection_id=rejection_id,
                reason_code=reason_code,
                remarks=remarks,
                is_terminal=is_terminal,
                notify_roles=policy.notify_roles(),
                visible_to_roles=policy.visible_roles(),
                allow_resubmission=policy.allow_resubmission,
                resubmission_strategy=policy.resubmission_strategy.value,
                resubmission_allowed_roles=[r.value for r in policy.resubmission_allowed_roles],
            ),
        )

    async def _record_rejection(
        self,
        record: WorkflowRecord,
        previous_status: str,
        definition: WorkflowDefinition,
        stage: Stage,
        policy: EffectiveRejectionPolicy,
        actor_role: str,
        actor_id: str,
        reason_code: Optional[str],
        remarks: Optional[str],
        is_terminal: bool
    ) -> Optional[str]:
        """
        Append the rejection audit entry. Runs after the record write has
        committed, so a failure here is logged and does not undo the rejection.
        """
        rejection_id = generate_audit_id("REJ")
        try:
            await self.records.insert_rejection({
                "rejection_id": rejection_id,
                "record_id": record.id,
                "tenant_id": record.tenant_id,
                "record_type": record.record_type.value,
                "definition_id": definition.id,
                "definition_version": definition.version,
                "stage_key": stage.stage_key,
                "stage_name": stage.stage_name,
                "reason_code": reason_code,
                "remarks": remarks,
                "rejected_by": actor_id,
                "rejected_by_role": actor_role,
                "rejected_at": utc_now(),
                "is_terminal": is_terminal,
                "previous_status": previous_status,
                "resolution": None,
                "resulting_status": record.status.value,
                "notify_roles": policy.notify_roles(),
                "visible_to_roles": policy.visible_roles(),
                "resubmission_strategy": policy.resubmission_strategy.value,
                "allow_resubmission": policy.allow_resubmission,
                "policy": policy.model_dump(mode="json"),
            })
        except Exception as e:
            logger.error("Failed to write rejection audit for record %s: %s", record.id, str(e))
            return None
        return rejection_id

    # -------------------------------------------------------------------------
    # Resubmission
    # -------------------------------------------------------------------------

    async def resubmit(self, record_id: str, actor_role: Any, actor_id: str) -> WorkflowRecord:
        """
        Re-enter a rejected record under the active definition.

        NEW_ENTITY creates a new record linked through `resubmitted_from` and
        stamps the rejected record with `resubmitted_to`, so it can only be
        resubmitted once. SAME_ENTITY restarts this record at the initial stage.
        """
        record = await self.records.get(record_id)
        if record.current_stage != TerminalState.REJECTED.value:
            raise ResubmissionNotAllowed(
                f"Record {record.id} is not rejected",
                details={"record_id": record.id, "current_stage": record.current_stage}
            )
        if record.resubmitted_to:
            raise ResubmissionNotAllowed(
                f"Record {record.id} was already resubmitted as {record.resubmitted_to}",
                details={"record_id": record.id, "resubmitted_to": record.resubmitted_to}
            )

        bound = await self.registry.get_version(record.definition_id, record.definition_version)
        policy = resolve_rejection_policy(bound, record.rejected_at_stage or "")
        if not policy.allow_resubmission:
            raise ResubmissionNotAllowed(f"Resubmission is disabled for record {record.id}")

        role = _coerce_role(actor_role)
        is_requestor = (
            WorkflowRole.REQUESTOR in policy.resubmission_allowed_roles
            and actor_id == record.requester_id
        )
        if not is_requestor and (role is None or role not in policy.resubmission_allowed_roles):
            raise ResubmissionNotAllowed(
                f"Role '{actor_role}' may not resubmit record {record.id}",
                details={"resubmission_allowed_roles": [r.value for r in policy.resubmission_allowed_roles]}
            )

        active = await self.registry.resolve_active(record.tenant_id, record.record_type)
        initial = active.initial_stage()
        actor_role_value = role.value if role else WorkflowRole.REQUESTOR.value

        if policy.resubmission_strategy == ResubmissionStrategy.NEW_ENTITY:
            entry = WorkflowHistoryEntry(
                from_stage=None,
                to_stage=initial.stage_key,
                from_status=None,
                to_status=active.status_on_submission.value,
                action=WorkflowAction.RESUBMITTED.value,
                actor=actor_id,
                actor_role=actor_role_value,
                metadata={"resubmitted_from": record.id},
            )
            new_record = WorkflowRecord(
                tenant_id=record.tenant_id,
                record_type=record.record_type,
                requester_id=record.requester_id,
                definition_id=active.id,
                definition_version=active.version,
                current_stage=initial.stage_key,
                status=active.status_on_submission,
                fulfillment_partner_id=record.fulfillment_partner_id,
                resubmitted_from=record.id,
                payload=dict(record.payload),
                workflow_history=[entry.to_dict()],
            )
            source_entry = WorkflowHistoryEntry(
                from_stage=record.current_stage,
                to_stage=record.current_stage,
                from_status=record.status.value,
                to_status=record.status.value,
                action=WorkflowAction.RESUBMITTED.value,
                actor=actor_id,
                actor_role=actor_role_value,
                metadata={"resubmitted_to": new_record.id},
            )
            # Source is claimed before the copy exists; a racing resubmit gets StaleState
            await self.records.apply_transition(
                record,
                {"resubmitted_to": new_record.id, "updated_utc": utc_now()},
                source_entry.to_dict()
            )
            await self.records.insert(new_record)
            await self._resolve_rejections(record.id, actor_id)

            logger.info("Record resubmitted as new entity: %s -> %s", record.id, new_record.id)
            await self._publish(
                WorkflowEventType.ENTITY_RESUBMITTED, new_record, actor_id, actor_role_value,
                previous=record, metadata={"resubmitted_from": record.id},
            )
            return new_record

        entry = WorkflowHistoryEntry(
            from_stage=record.current_stage,
            to_stage=initial.stage_key,
            from_status=record.status.value,
            to_status=active.status_on_submission.value,
            action=WorkflowAction.RESUBMITTED.value,
            actor=actor_id,
            actor_role=actor_role_value,
        )
        updated = await self.records.apply_transition(
            record,
            {
                "current_stage": initial.stage_key,
                "status": active.status_on_submission.value,
                "definition_id": active.id,
                "definition_version": active.version,
                "rejected_at_stage": None,
                "stage_audit": {},
                "updated_utc": utc_now(),
            },
            entry.to_dict()
        )
        await self._resolve_rejections(record.id, actor_id)

        logger.info("Record resubmitted in place: %s (stage=%s)", record.id, initial.stage_key)
        await self._publish(
            WorkflowEventType.ENTITY_RESUBMITTED, updated, actor_id, actor_role_value, previous=record
        )
        return updated

    async def _resolve_rejections(self, record_id: str, actor_id: str) -> None:
        try:
            await self.records.resolve_rejections(record_id, WorkflowAction.RESUBMITTED.value, actor_id)
        except Exception as e:
            logger.error("Failed to resolve rejections for record %s: %s", record_id, str(e))

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def can_approve(self, record_id: str, actor_role: Any) -> Tuple[bool, str]:
        """(allowed, reason) without writing anything."""
        try:
            _, _, stage = await self._load_for_action(record_id, actor_role, None, None)
        except WorkflowError as e:
            return (False, e.message)
        if not stage.can_approve:
            return (False, f"Stage '{stage.stage_key}' does not allow approval")
        return (True, "Approval allowed")

    async def can_reject(self, record_id: str, actor_role: Any) -> Tuple[bool, str]:
        try:
            _, _, stage = await self._load_for_action(record_id, actor_role, None, None)
        except WorkflowError as e:
            return (False, e.message)
        if not stage.can_reject:
            return (False, f"Stage '{stage.stage_key}' does not allow rejection")
        return (True, "Rejection allowed")

    async def get_workflow_state(self, record_id: str) -> Dict[str, Any]:
        """Current position of a record and the stage that would follow it."""
        record = await self.records.get(record_id)
        definition = await self.registry.get_version(record.definition_id, record.definition_version)
        stage = definition.get_stage(record.current_stage)
        next_stage = self.get_next_stage(definition, record.current_stage) if stage else None

        return {
            "record_id": record.id,
            "record": record.to_view(),
            "definition_id": definition.id,
            "definition_version": definition.version,
            "current_stage": record.current_stage,
            "current_stage_name": stage.stage_name if stage else None,
            "allowed_roles": [r.value for r in stage.allowed_roles] if stage else [],
            "next_stage": next_stage.stage_key if next_stage else None,
            "is_terminal": record.is_absorbed,
            "status": record.status.value,
            "revision": record.revision,
            "stages": [
                {"stage_key": s.stage_key, "stage_name": s.stage_name, "order": s.order}
                for s in definition.sorted_stages()
            ],
        }
