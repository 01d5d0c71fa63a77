"""
Tests for the purchase order fan-out step.
"""
from unittest.mock import AsyncMock

import pytest

from services.batch import FanoutLinker
from services.logistics import LogisticsProvider, ShipmentDispatcher
from services.workflow_errors import FanoutNotEnabled, InvalidFanoutRequest
from services.workflow_models import RecordType


@pytest.fixture
def fanout_enabled(monkeypatch):
    monkeypatch.setattr("services.workflow_config.WORKFLOW_FANOUT_ENABLED", True)
    monkeypatch.setattr("services.workflow_config.WORKFLOW_FANOUT_TENANTS", ["tenant-a"])


async def approved_records(registry, engine, definition, partners):
    await registry.save(definition)
    result = []
    for partner in partners:
        record = await engine.submit(
            "tenant-a", RecordType.ORDER, "requester-1",
            group_key="G-1", fulfillment_partner_id=partner
        )
        await engine.approve(record.id, "SITE_ADMIN", "u1")
        await engine.approve(record.id, "COMPANY_ADMIN", "u2")
        result.append(record)
    return result


class StubProvider(LogisticsProvider):
    name = "stub"

    def __init__(self):
        self.created = []

    async def create_shipment(self, artifact):
        self.created.append(artifact["id"])
        return {"shipment_id": f"SHP-{len(self.created)}"}

    async def get_status(self, shipment_id):
        return {"shipment_id": shipment_id, "status": "IN_TRANSIT"}

    async def cancel(self, shipment_id):
        return True

    async def check_serviceability(self, origin, destination):
        return True


@pytest.mark.asyncio
class TestFanoutGate:

    async def test_disabled_globally(self, fanout, monkeypatch):
        monkeypatch.setattr("services.workflow_config.WORKFLOW_FANOUT_ENABLED", False)
        with pytest.raises(FanoutNotEnabled):
            await fanout.create_linked_artifacts(["REC-1"], "PO-1", "2024-03-01", "tenant-a", "u1")

    async def test_tenant_not_opted_in(self, fanout, fanout_enabled):
        with pytest.raises(FanoutNotEnabled):
            await fanout.create_linked_artifacts(["REC-1"], "PO-1", "2024-03-01", "tenant-z", "u1")

    async def test_tenant_settings_opt_in(self, fanout, fanout_enabled, mock_db):
        await mock_db.tenant_settings.insert_one({"tenant_id": "tenant-z", "fanout_enabled": True})
        outcome = await fanout.create_linked_artifacts(["REC-1"], "PO-1", "2024-03-01", "tenant-z", "u1")
        assert outcome.failures[0]["error"] == "RecordNotFound"

    async def test_request_validation(self, fanout, fanout_enabled):
        with pytest.raises(InvalidFanoutRequest):
            await fanout.create_linked_artifacts([], "PO-1", "2024-03-01", "tenant-a", "u1")
        with pytest.raises(InvalidFanoutRequest):
            await fanout.create_linked_artifacts(["REC-1"], "  ", "2024-03-01", "tenant-a", "u1")


@pytest.mark.asyncio
class TestFanoutLinking:

    async def test_one_artifact_per_partner(self, registry, engine, records, fanout, mock_db,
                                             two_stage_definition, fanout_enabled):
        recs = await approved_records(registry, engine, two_stage_definition, ["V-2", "V-1", "V-2"])

        outcome = await fanout.create_linked_artifacts(
            [r.id for r in recs], "PO-2024-001", "2024-03-01", "tenant-a", "buyer-1"
        )

        assert outcome.failures == []
        assert [a["fulfillment_partner_id"] for a in outcome.artifacts_created] == ["V-1", "V-2"]
        by_partner = {a["fulfillment_partner_id"]: a for a in outcome.artifacts_created}
        assert by_partner["V-2"]["record_ids"] == [recs[0].id, recs[2].id]
        assert by_partner["V-1"]["external_ref_number"] == "PO-2024-001"
        assert len(mock_db.purchase_orders.documents) == 2

        for record in recs:
            stored = await records.get(record.id)
            assert stored.status.value == "LINKED_TO_PO"
            assert stored.current_stage == "APPROVED_TERMINAL"
            assert stored.linked_artifact_id == by_partner[record.fulfillment_partner_id]["id"]
            assert stored.revision == 4
            assert stored.workflow_history[-1]["action"] == "LINKED"

    async def test_ineligible_records_reported(self, registry, engine, records, fanout,
                                               two_stage_definition, fanout_enabled):
        (approved,) = await approved_records(registry, engine, two_stage_definition, ["V-1"])
        pending = await engine.submit("tenant-a", RecordType.ORDER, "r", fulfillment_partner_id="V-1")
        no_partner = await engine.submit("tenant-a", RecordType.ORDER, "r")
        await engine.approve(no_partner.id, "SITE_ADMIN", "u1")
        await engine.approve(no_partner.id, "COMPANY_ADMIN", "u2")

        outcome = await fanout.create_linked_artifacts(
            [approved.id, pending.id, no_partner.id, "REC-NOPE"], "PO-9", "2024-03-01", "tenant-a", "u1"
        )

        assert len(outcome.artifacts_created) == 1
        errors = {f["record_ids"][0]: f["error"] for f in outcome.failures}
        assert errors == {
            pending.id: "InvalidTransition",
            no_partner.id: "InvalidFanoutRequest",
            "REC-NOPE": "RecordNotFound",
        }
        assert (await records.get(pending.id)).current_stage == "SITE"

    async def test_already_linked_records_not_relinked(self, registry, engine, fanout,
                                                       two_stage_definition, fanout_enabled):
        recs = await approved_records(registry, engine, two_stage_definition, ["V-1"])
        await fanout.create_linked_artifacts([recs[0].id], "PO-1", "2024-03-01", "tenant-a", "u1")

        outcome = await fanout.create_linked_artifacts([recs[0].id], "PO-2", "2024-03-02", "tenant-a", "u1")
        assert outcome.artifacts_created == []
        assert outcome.failures[0]["error"] == "InvalidTransition"

    async def test_partition_failure_isolated(self, registry, engine, records, fanout, mock_db,
                                              two_stage_definition, fanout_enabled):
        recs = await approved_records(registry, engine, two_stage_definition, ["V-1", "V-2"])
        original = records.link_to_artifact

        async def failing_link(record_ids, artifact_id, tenant_id, history_entry):
            if recs[0].id in record_ids:
                raise RuntimeError("write concern timeout")
            return await original(record_ids, artifact_id, tenant_id, history_entry)

        records.link_to_artifact = failing_link
        outcome = await fanout.create_linked_artifacts(
            [r.id for r in recs], "PO-3", "2024-03-01", "tenant-a", "u1"
        )

        assert [a["fulfillment_partner_id"] for a in outcome.artifacts_created] == ["V-2"]
        assert outcome.failures[0]["partition"] == "V-1"
        assert outcome.failures[0]["error"] == "InternalError"
        del records.link_to_artifact
        assert (await records.get(recs[1].id)).status.value == "LINKED_TO_PO"
        assert (await records.get(recs[0].id)).status.value == "COMPANY_ADMIN_APPROVED"

    async def test_partial_link_reported_as_stale(self, registry, engine, records, fanout, mock_db,
                                                  two_stage_definition, fanout_enabled):
        recs = await approved_records(registry, engine, two_stage_definition, ["V-1", "V-1"])
        original = records.link_to_artifact

        async def link_after_concurrent_fanout(record_ids, artifact_id, tenant_id, history_entry):
            await mock_db.workflow_records.update_one(
                {"id": recs[1].id}, {"$set": {"linked_artifact_id": "PO-OTHER"}}
            )
            return await original(record_ids, artifact_id, tenant_id, history_entry)

        records.link_to_artifact = link_after_concurrent_fanout
        outcome = await fanout.create_linked_artifacts(
            [r.id for r in recs], "PO-4", "2024-03-01", "tenant-a", "u1"
        )

        assert len(outcome.artifacts_created) == 1
        artifact = outcome.artifacts_created[0]
        assert artifact["record_ids"] == [recs[0].id]
        assert outcome.failures[0]["error"] == "StaleState"
        assert outcome.failures[0]["artifact_id"] == artifact["id"]
        assert outcome.failures[0]["record_ids"] == [recs[1].id]

        stored = await mock_db.purchase_orders.find_one({"id": artifact["id"]}, {"_id": 0})
        assert stored["record_ids"] == [recs[0].id]

    async def test_nothing_linked_cancels_artifact(self, registry, engine, records, fanout, mock_db,
                                                   two_stage_definition, fanout_enabled):
        recs = await approved_records(registry, engine, two_stage_definition, ["V-1"])
        records.link_to_artifact = AsyncMock(return_value=[])

        outcome = await fanout.create_linked_artifacts(
            [recs[0].id], "PO-6", "2024-03-01", "tenant-a", "u1"
        )

        assert outcome.artifacts_created == []
        assert outcome.failures[0]["error"] == "StaleState"
        stored = await mock_db.purchase_orders.find_one({"id": outcome.failures[0]["artifact_id"]}, {"_id": 0})
        assert stored["status"] == "CANCELLED"
        assert stored["record_ids"] == []

    async def test_dispatch_follows_linking(self, registry, engine, mock_db, records,
                                            two_stage_definition, fanout_enabled):
        provider = StubProvider()
        linker = FanoutLinker(mock_db, records, dispatcher=ShipmentDispatcher(provider, retry_delay=0))
        recs = await approved_records(registry, engine, two_stage_definition, ["V-1", "V-2"])

        outcome = await linker.create_linked_artifacts(
            [r.id for r in recs], "PO-5", "2024-03-01", "tenant-a", "u1"
        )

        assert len(provider.created) == 2
        assert [d["shipment_id"] for d in outcome.dispatch.dispatched] == ["SHP-1", "SHP-2"]
        assert outcome.to_dict()["dispatch"]["failures"] == []
