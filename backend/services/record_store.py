"""
Procurement Workflow Hub - Workflow Record Store

Reads and conditional writes for `workflow_records`, plus the approval and
rejection audit collections `workflow_approvals` and `workflow_rejections`.

Every transition write is a compare-and-set on (id, current_stage, revision):
the update only applies if the record is still where the caller read it, and
it always increments `revision`. A miss means another writer got there first.
"""

from typing import Dict, Any, List, Optional
import logging

from pymongo import ReturnDocument

from services.workflow_errors import RecordNotFound, StaleState
from services.workflow_models import (
    RecordStatus,
    TerminalState,
    WorkflowRecord,
    utc_now,
)

logger = logging.getLogger(__name__)


class WorkflowRecordStore:

    def __init__(self, db):
        self.collection = db.workflow_records
        self.rejections = db.workflow_rejections
        self.approvals = db.workflow_approvals

    async def create_indexes(self):
        await self.collection.create_index("id", unique=True)
        await self.collection.create_index([("tenant_id", 1), ("group_key", 1)])
        await self.collection.create_index([("tenant_id", 1), ("record_type", 1), ("status", 1)])
        await self.rejections.create_index("rejection_id", unique=True)
        await self.rejections.create_index("record_id")
        await self.approvals.create_index("audit_id", unique=True)
        await self.approvals.create_index("record_id")

    async def get(self, record_id: str) -> WorkflowRecord:
        doc = await self.collection.find_one({"id": record_id}, {"_id": 0})
        if not doc:
            raise RecordNotFound(f"Record {record_id} not found", details={"record_id": record_id})
        return WorkflowRecord.from_document(doc)

    async def find_many(self, record_ids: List[str], tenant_id: Optional[str] = None) -> List[WorkflowRecord]:
        query: Dict[str, Any] = {"id": {"$in": list(record_ids)}}
        if tenant_id:
            query["tenant_id"] = tenant_id
        docs = await self.collection.find(query, {"_id": 0}).to_list(len(record_ids) or 1)
        return [WorkflowRecord.from_document(d) for d in docs]

    async def find_group_member_ids(self, tenant_id: str, group_key: str) -> List[str]:
        docs = await self.collection.find(
            {"tenant_id": tenant_id, "group_key": group_key},
            {"_id": 0, "id": 1}
        ).to_list(10000)
        return sorted(d["id"] for d in docs)

    async def insert(self, record: WorkflowRecord) -> WorkflowRecord:
        await self.collection.insert_one(record.to_document())
        return record

    async def apply_transition(
        self,
        record: WorkflowRecord,
        update: Dict[str, Any],
        history_entry: Dict[str, Any]
    ) -> WorkflowRecord:
        """
        Conditionally write a transition read from `record`.

        Raises:
            StaleState: the stored record no longer matches the read position/revision
        """
        doc = await self.collection.find_one_and_update(
            {
                "id": record.id,
                "current_stage": record.current_stage,
                "revision": record.revision,
            },
            {
                "$set": update,
                "$inc": {"revision": 1},
                "$push": {"workflow_history": history_entry},
            },
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            logger.warning(
                "Stale transition rejected: record=%s, read_stage=%s, read_revision=%s",
                record.id, record.current_stage, record.revision
            )
            raise StaleState(
                f"Record {record.id} changed since it was read; re-fetch and retry",
                details={
                    "record_id": record.id,
                    "read_stage": record.current_stage,
                    "read_revision": record.revision,
                }
            )
        return WorkflowRecord.from_document(doc)

    async def link_to_artifact(
        self,
        record_ids: List[str],
        artifact_id: str,
        tenant_id: str,
        history_entry: Dict[str, Any]
    ) -> List[str]:
        """
        Link fully approved, unlinked records to a purchase order artifact.

        Returns:
            Ids actually linked to `artifact_id`, in `record_ids` order. Records
            linked elsewhere or moved concurrently are left out.
        """
        result = await self.collection.update_many(
            {
                "id": {"$in": list(record_ids)},
                "tenant_id": tenant_id,
                "current_stage": TerminalState.APPROVED_TERMINAL.value,
                "linked_artifact_id": None,
            },
            {
                "$set": {
                    "linked_artifact_id": artifact_id,
                    "status": RecordStatus.LINKED_TO_PO.value,
                    "updated_utc": utc_now(),
                },
                "$inc": {"revision": 1},
                "$push": {"workflow_history": history_entry},
            }
        )
        if result.modified_count == 0:
            return []
        docs = await self.collection.find(
            {"id": {"$in": list(record_ids)}, "linked_artifact_id": artifact_id},
            {"_id": 0, "id": 1}
        ).to_list(len(record_ids))
        linked = {d["id"] for d in docs}
        return [rid for rid in record_ids if rid in linked]

    async def insert_rejection(self, rejection: Dict[str, Any]) -> None:
        await self.rejections.insert_one(dict(rejection))

    async def list_rejections(self, record_id: str) -> List[Dict[str, Any]]:
        return await self.rejections.find(
            {"record_id": record_id}, {"_id": 0}
        ).sort("rejected_at", 1).to_list(1000)

    async def resolve_rejections(self, record_id: str, resolution: str, resolved_by: str) -> int:
        """Stamp open rejection entries of a record with how they were resolved."""
        result = await self.rejections.update_many(
            {"record_id": record_id, "resolution": None},
            {"$set": {"resolution": resolution, "resolved_by": resolved_by, "resolved_at": utc_now()}}
        )
        return result.modified_count

    async def insert_approval(self, approval: Dict[str, Any]) -> None:
        await self.approvals.insert_one(dict(approval))

    async def list_approvals(self, record_id: str) -> List[Dict[str, Any]]:
        return await self.approvals.find(
            {"record_id": record_id}, {"_id": 0}
        ).sort("approved_at", 1).to_list(1000)
