"""
Procurement Workflow Hub - Purchase Order Fan-out

Turns a set of fully approved records into linked purchase order artifacts,
one per fulfillment partner (vendor).

Each partition is created and linked independently. A failing partition is
reported and never blocks or rolls back another. Records that are not
eligible (not fully approved, already linked, in another tenant, missing a
fulfillment partner) are reported and left untouched.

The step is tenant-gated by WORKFLOW_FANOUT_ENABLED and the tenant's
settings.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Union

from ..logistics import DispatchOutcome, ShipmentDispatcher
from ..record_store import WorkflowRecordStore
from ..workflow_config import is_fanout_enabled_for_tenant
from ..workflow_engine import WorkflowAction, WorkflowHistoryEntry
from ..workflow_errors import FanoutNotEnabled, InvalidFanoutRequest, WorkflowError
from ..workflow_models import RecordStatus, TerminalState, utc_now
from .bulk import unique_ids

logger = logging.getLogger(__name__)


@dataclass
class FanoutOutcome:
    artifacts_created: List[Dict[str, Any]] = field(default_factory=list)
    failures: List[Dict[str, Any]] = field(default_factory=list)
    dispatch: Optional[DispatchOutcome] = None

    def record_error(
        self,
        partition: Optional[str],
        error: str,
        message: str,
        record_ids: List[str],
        artifact_id: Optional[str] = None
    ) -> None:
        self.failures.append({
            "partition": partition,
            "error": error,
            "message": message,
            "record_ids": record_ids,
            "artifact_id": artifact_id,
        })

    def to_dict(self) -> Dict[str, Any]:
        return {
            "artifacts_created": self.artifacts_created,
            "failures": self.failures,
            "dispatch": self.dispatch.to_dict() if self.dispatch else None,
        }


def _as_iso_date(value: Union[str, date, datetime]) -> str:
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return str(value)


class FanoutLinker:
    """
    Creates purchase order artifacts in `purchase_orders` and links the
    approved records to them.

    Usage:
        linker = FanoutLinker(db, records)
        outcome = await linker.create_linked_artifacts(
            ["REC-1", "REC-2"], "PO-2024-001", "2024-03-01", "tenant-a", "u-7"
        )
    """

    def __init__(
        self,
        db,
        records: WorkflowRecordStore,
        dispatcher: Optional[ShipmentDispatcher] = None
    ):
        self.artifacts = db.purchase_orders
        self.tenant_settings = db.tenant_settings
        self.records = records
        self.dispatcher = dispatcher

    async def create_indexes(self):
        await self.artifacts.create_index("id", unique=True)
        await self.artifacts.create_index([("tenant_id", 1), ("fulfillment_partner_id", 1)])
        await self.tenant_settings.create_index("tenant_id", unique=True)

    async def create_linked_artifacts(
        self,
        record_ids: List[str],
        external_ref_number: str,
        external_ref_date: Union[str, date, datetime],
        tenant_id: str,
        actor_id: str
    ) -> FanoutOutcome:
        """
        Raises:
            InvalidFanoutRequest: empty selection or reference number
            FanoutNotEnabled: the tenant is not opted in
        """
        ids = unique_ids(record_ids or [])
        if not ids:
            raise InvalidFanoutRequest("At least one record is required")
        if not external_ref_number or not external_ref_number.strip():
            raise InvalidFanoutRequest("external_ref_number is required")

        settings = await self.tenant_settings.find_one({"tenant_id": tenant_id}, {"_id": 0})
        if not is_fanout_enabled_for_tenant(tenant_id, settings):
            raise FanoutNotEnabled(
                f"Purchase order fan-out is not enabled for tenant '{tenant_id}'",
                details={"tenant_id": tenant_id}
            )

        outcome = FanoutOutcome()
        partitions = await self._partition(ids, tenant_id, outcome)

        for partner_id in sorted(partitions):
            members = partitions[partner_id]
            artifact = self._build_artifact(
                partner_id, members, external_ref_number, external_ref_date, tenant_id, actor_id
            )
            try:
                await self.artifacts.insert_one(dict(artifact))
            except Exception as e:
                logger.error("Fan-out artifact insert failed: tenant=%s, partner=%s: %s", tenant_id, partner_id, str(e))
                outcome.record_error(partner_id, "InternalError", str(e), members)
                continue

            entry = WorkflowHistoryEntry(
                from_stage=TerminalState.APPROVED_TERMINAL.value,
                to_stage=TerminalState.APPROVED_TERMINAL.value,
                from_status=None,
                to_status=RecordStatus.LINKED_TO_PO.value,
                action=WorkflowAction.LINKED.value,
                actor=actor_id,
                metadata={"artifact_id": artifact["id"], "external_ref_number": external_ref_number},
            )
            try:
                linked = await self.records.link_to_artifact(members, artifact["id"], tenant_id, entry.to_dict())
            except Exception as e:
                logger.error("Fan-out linking failed: artifact=%s: %s", artifact["id"], str(e))
                outcome.record_error(partner_id, "InternalError", str(e), members, artifact["id"])
                continue

            if len(linked) < len(members):
                unlinked = [m for m in members if m not in linked]
                await self._trim_artifact(artifact, linked)
                outcome.record_error(
                    partner_id,
                    "StaleState",
                    f"Only {len(linked)} of {len(members)} records were linked; the rest changed concurrently",
                    unlinked,
                    artifact["id"],
                )
            if linked:
                outcome.artifacts_created.append(artifact)

        logger.info(
            "Fan-out complete: tenant=%s, ref=%s, artifacts=%s, failures=%s",
            tenant_id, external_ref_number, len(outcome.artifacts_created), len(outcome.failures)
        )

        if self.dispatcher and outcome.artifacts_created:
            outcome.dispatch = await self.dispatcher.dispatch(outcome.artifacts_created)

        return outcome

    async def _trim_artifact(self, artifact: Dict[str, Any], linked: List[str]) -> None:
        """Narrow a stored artifact to the records that were actually linked to it."""
        update: Dict[str, Any] = {"record_ids": list(linked), "updated_utc": utc_now()}
        if not linked:
            update["status"] = "CANCELLED"
        artifact.update(update)
        try:
            await self.artifacts.update_one({"id": artifact["id"]}, {"$set": update})
        except Exception as e:
            logger.error("Failed to narrow artifact %s to linked records: %s", artifact["id"], str(e))

    async def _partition(
        self,
        ids: List[str],
        tenant_id: str,
        outcome: FanoutOutcome
    ) -> Dict[str, List[str]]:
        """Group eligible records by fulfillment partner; report the rest."""
        found = {r.id: r for r in await self.records.find_many(ids, tenant_id)}
        partitions: Dict[str, List[str]] = {}

        for record_id in ids:
            record = found.get(record_id)
            if record is None:
                outcome.record_error(None, "RecordNotFound", f"Record {record_id} not found", [record_id])
                continue
            if record.current_stage != TerminalState.APPROVED_TERMINAL.value:
                outcome.record_error(
                    record.fulfillment_partner_id, "InvalidTransition",
                    f"Record {record_id} is not fully approved", [record_id]
                )
                continue
            if record.linked_artifact_id:
                outcome.record_error(
                    record.fulfillment_partner_id, "InvalidTransition",
                    f"Record {record_id} is already linked to {record.linked_artifact_id}", [record_id]
                )
                continue
            if not record.fulfillment_partner_id:
                outcome.record_error(
                    None, "InvalidFanoutRequest",
                    f"Record {record_id} has no fulfillment partner", [record_id]
                )
                continue
            partitions.setdefault(record.fulfillment_partner_id, []).append(record_id)

        return partitions

    @staticmethod
    def _build_artifact(
        partner_id: str,
        record_ids: List[str],
        external_ref_number: str,
        external_ref_date: Union[str, date, datetime],
        tenant_id: str,
        actor_id: str
    ) -> Dict[str, Any]:
        return {
            "id": f"PO-{uuid.uuid4().hex[:12].upper()}",
            "tenant_id": tenant_id,
            "fulfillment_partner_id": partner_id,
            "external_ref_number": external_ref_number.strip(),
            "external_ref_date": _as_iso_date(external_ref_date),
            "record_ids": list(record_ids),
            "status": "CREATED",
            "created_by": actor_id,
            "created_utc": utc_now(),
        }
