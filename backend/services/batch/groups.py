"""
Procurement Workflow Hub - Group Coordinator

Records split from one logical requisition (for example one per vendor) share
a `group_key`. Selecting any member selects the whole group, so a group is
approved together or reported as partially applied.

Group approval is best-effort: every member is its own transition, failed
members are reported and already-approved members are not rolled back.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..record_store import WorkflowRecordStore
from ..workflow_errors import RecordNotFound
from .bulk import BulkOperationCoordinator, BulkOutcome, unique_ids

logger = logging.getLogger(__name__)


class SelectionState(str, Enum):
    NONE = "NONE"
    SOME = "SOME"
    ALL = "ALL"


def selection_state(group_ids: Iterable[str], selected_ids: Iterable[str]) -> SelectionState:
    """How much of a group is selected."""
    members = set(group_ids)
    chosen = members & set(selected_ids)
    if not chosen:
        return SelectionState.NONE
    if chosen == members:
        return SelectionState.ALL
    return SelectionState.SOME


@dataclass
class GroupBulkOutcome:
    """Bulk outcome plus which groups were only partly applied."""
    bulk: BulkOutcome
    groups: Dict[str, List[str]] = field(default_factory=dict)
    partially_applied_groups: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        result = self.bulk.to_dict()
        result["groups"] = self.groups
        result["partially_applied_groups"] = self.partially_applied_groups
        return result


class GroupCoordinator:

    def __init__(self, records: WorkflowRecordStore, bulk: BulkOperationCoordinator):
        self.records = records
        self.bulk = bulk

    async def expand(self, selected_id: str) -> List[str]:
        """
        All members of the selected record's group, each exactly once.
        A record without a group_key is a group of one.

        Raises:
            RecordNotFound: the selected id does not exist
        """
        record = await self.records.get(selected_id)
        if not record.group_key:
            return [record.id]
        members = await self.records.find_group_member_ids(record.tenant_id, record.group_key)
        if record.id not in members:
            members.append(record.id)
        return unique_ids(members)

    async def expand_many(
        self,
        selected_ids: List[str],
        tenant_id: Optional[str] = None
    ) -> Tuple[List[str], Dict[str, List[str]]]:
        """
        Expand several selections into one id list with no repeats.

        Unknown ids, and ids belonging to a tenant other than `tenant_id`, are
        passed through unexpanded so the bulk operation reports them as
        RecordNotFound without revealing their group.

        Returns:
            (record_ids, {group_key: member_ids})
        """
        record_ids: List[str] = []
        groups: Dict[str, List[str]] = {}

        for selected_id in unique_ids(selected_ids):
            if selected_id in record_ids:
                continue
            try:
                record = await self.records.get(selected_id)
            except RecordNotFound:
                record_ids.append(selected_id)
                continue
            if tenant_id is not None and record.tenant_id != tenant_id:
                record_ids.append(selected_id)
                continue

            if record.group_key:
                members = groups.get(record.group_key)
                if members is None:
                    members = await self.expand(selected_id)
                    groups[record.group_key] = members
            else:
                members = [record.id]
            record_ids.extend(m for m in members if m not in record_ids)

        return record_ids, groups

    async def bulk_approve_groups(
        self,
        selected_ids: List[str],
        actor_id: str,
        actor_role: str,
        remarks: Optional[str] = None,
        tenant_id: Optional[str] = None
    ) -> GroupBulkOutcome:
        record_ids, groups = await self.expand_many(selected_ids, tenant_id=tenant_id)
        outcome = await self.bulk.bulk_approve(
            record_ids, actor_id, actor_role, remarks=remarks, tenant_id=tenant_id
        )

        failed_ids = {f.record_id for f in outcome.failed}
        partial = []
        for group_key, members in groups.items():
            member_failures = [m for m in members if m in failed_ids]
            if member_failures and len(member_failures) < len(members):
                partial.append(group_key)

        if partial:
            logger.warning(
                "Group approval partially applied: groups=%s, actor=%s", partial, actor_id
            )
        return GroupBulkOutcome(bulk=outcome, groups=groups, partially_applied_groups=partial)
