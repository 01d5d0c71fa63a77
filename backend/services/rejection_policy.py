"""
Procurement Workflow Hub - Rejection Policy Resolver

Computes the effective rejection behavior for a stage by layering, lowest
precedence first:

1. SYSTEM_DEFAULT_REJECTION_POLICY
2. definition.global_rejection_defaults
3. definition.status_on_rejection[stage_key] (rejected_status only)
4. stage.rejection_override

Only explicitly set fields of a layer replace the layer below. Resolution is
pure: no I/O and no mutation of the definition.
"""

from typing import Optional

from services.workflow_config import WORKFLOW_MAX_REMARKS_LENGTH
from services.workflow_models import (
    EffectiveRejectionPolicy,
    RejectionPolicyOverride,
    ResubmissionStrategy,
    RecordStatus,
    WorkflowDefinition,
    WorkflowRole,
)


SYSTEM_DEFAULT_REJECTION_POLICY = EffectiveRejectionPolicy(
    is_terminal_on_reject=True,
    stop_further_stages_on_reject=True,
    is_reason_code_mandatory=True,
    is_remarks_mandatory=False,
    max_remarks_length=WORKFLOW_MAX_REMARKS_LENGTH,
    allowed_reason_codes=None,
    notify_roles_on_reject=[WorkflowRole.REQUESTOR],
    notify_requestor=True,
    exclude_from_notification=[],
    visible_to_roles_after_reject=[WorkflowRole.REQUESTOR, WorkflowRole.COMPANY_ADMIN],
    hidden_from_roles_after_reject=[],
    resubmission_strategy=ResubmissionStrategy.NEW_ENTITY,
    allow_resubmission=True,
    resubmission_allowed_roles=[WorkflowRole.REQUESTOR],
    rejected_status=RecordStatus.REJECTED,
)


def merge_policy_layers(
    base: EffectiveRejectionPolicy,
    *layers: Optional[RejectionPolicyOverride]
) -> EffectiveRejectionPolicy:
    """Apply override layers over a complete policy, later layers winning."""
    merged = base.model_dump()
    for layer in layers:
        if layer is None:
            continue
        merged.update(layer.explicit_fields())
    return EffectiveRejectionPolicy(**merged)


def resolve_rejection_policy(
    definition: WorkflowDefinition,
    stage_key: str
) -> EffectiveRejectionPolicy:
    """
    Effective rejection policy for one stage of a definition.

    A stage_key the definition does not contain resolves to the
    system + definition layers only.
    """
    stage = definition.get_stage(stage_key)

    status_layer = None
    mapped_status = definition.status_on_rejection.get(stage_key)
    if mapped_status is not None:
        status_layer = RejectionPolicyOverride(rejected_status=mapped_status)

    return merge_policy_layers(
        SYSTEM_DEFAULT_REJECTION_POLICY,
        definition.global_rejection_defaults,
        status_layer,
        stage.rejection_override if stage else None,
    )
