"""
Tests for workflow events published after committed transitions.
"""
import pytest

from services.workflow_events import WorkflowEvent, WorkflowEventBus, WorkflowEventType
from services.workflow_errors import RoleNotAllowedAtStage
from services.workflow_models import RecordType, RejectionPolicyOverride


def collect(engine, event_type="*"):
    seen = []
    engine.events.subscribe(event_type, seen.append)
    return seen


def sample_event(event_type=WorkflowEventType.ENTITY_SUBMITTED):
    return WorkflowEvent(
        event_type=event_type,
        tenant_id="tenant-a",
        record_type="ORDER",
        record_id="REC-1",
        current_stage="SITE",
        current_status="PENDING_APPROVAL",
        actor_id="u1",
    )


class TestEventPayload:

    def test_event_ids(self):
        event = sample_event()
        assert event.event_id.startswith("WFE-")
        assert event.to_dict()["event_type"] == "ENTITY_SUBMITTED"


@pytest.mark.asyncio
class TestEventBus:

    async def test_typed_and_wildcard_listeners(self):
        bus = WorkflowEventBus()
        typed, everything = [], []
        bus.subscribe(WorkflowEventType.ENTITY_APPROVED, typed.append)
        bus.subscribe("*", everything.append)

        await bus.publish(sample_event())
        await bus.publish(sample_event(WorkflowEventType.ENTITY_APPROVED))

        assert [e.event_type for e in typed] == [WorkflowEventType.ENTITY_APPROVED]
        assert len(everything) == 2

    async def test_async_listener_and_unsubscribe(self):
        bus = WorkflowEventBus()
        seen = []

        async def listener(event):
            seen.append(event.record_id)

        unsubscribe = bus.subscribe("*", listener)
        await bus.publish(sample_event())
        unsubscribe()
        await bus.publish(sample_event())

        assert seen == ["REC-1"]

    async def test_failures_are_reported_not_raised(self):
        bus = WorkflowEventBus()
        seen = []

        def broken(event):
            raise RuntimeError("smtp down")

        bus.subscribe("*", broken)
        bus.subscribe("*", seen.append)
        event = sample_event()

        failures = await bus.publish(event)

        assert len(seen) == 1
        assert failures[0].to_dict() == {
            "event_id": event.event_id,
            "listener": broken.__qualname__,
            "error": "smtp down",
        }


@pytest.mark.asyncio
class TestEngineEvents:

    async def test_submit_and_approvals(self, registry, engine, two_stage_definition):
        seen = collect(engine)
        await registry.save(two_stage_definition)
        record = await engine.submit("tenant-a", RecordType.ORDER, "requester-1")

        await engine.approve(record.id, "SITE_ADMIN", "site-user")
        await engine.approve(record.id, "COMPANY_ADMIN", "company-user")

        assert [e.event_type for e in seen] == [
            WorkflowEventType.ENTITY_SUBMITTED,
            WorkflowEventType.ENTITY_APPROVED_AT_STAGE,
            WorkflowEventType.ENTITY_APPROVED,
        ]
        assert seen[1].previous_stage == "SITE"
        assert seen[1].current_stage == "COMPANY"
        assert seen[1].actor_role == "SITE_ADMIN"
        assert seen[2].current_stage == "APPROVED_TERMINAL"

    async def test_terminal_reject_and_resubmit(self, registry, engine, two_stage_definition):
        seen = collect(engine)
        await registry.save(two_stage_definition)
        record = await engine.submit("tenant-a", RecordType.ORDER, "requester-1")

        await engine.reject(record.id, "SITE_ADMIN", "u1", reason_code="QTY")
        new_record = await engine.resubmit(record.id, "EMPLOYEE", "requester-1")

        rejected, resubmitted = seen[1], seen[2]
        assert rejected.event_type == WorkflowEventType.ENTITY_REJECTED
        assert rejected.reason_code == "QTY"
        assert rejected.notify_roles == ["REQUESTOR"]
        assert resubmitted.event_type == WorkflowEventType.ENTITY_RESUBMITTED
        assert resubmitted.record_id == new_record.id
        assert resubmitted.metadata["resubmitted_from"] == record.id

    async def test_send_back_event(self, registry, engine, definition_factory):
        definition = definition_factory(
            global_rejection_defaults=RejectionPolicyOverride(
                is_terminal_on_reject=False, stop_further_stages_on_reject=True
            )
        )
        seen = collect(engine, WorkflowEventType.ENTITY_SENT_BACK)
        await registry.save(definition)
        record = await engine.submit("tenant-a", RecordType.ORDER, "requester-1")

        await engine.reject(record.id, "SITE_ADMIN", "u1", reason_code="QTY")

        assert len(seen) == 1
        assert seen[0].current_stage == "SITE"

    async def test_failed_validation_publishes_nothing(self, registry, engine, two_stage_definition):
        await registry.save(two_stage_definition)
        record = await engine.submit("tenant-a", RecordType.ORDER, "requester-1")
        seen = collect(engine)

        with pytest.raises(RoleNotAllowedAtStage):
            await engine.approve(record.id, "COMPANY_ADMIN", "u1")
        assert seen == []

    async def test_failing_listener_leaves_transition_committed(self, registry, engine, records,
                                                                two_stage_definition):
        async def broken(event):
            raise RuntimeError("notification service unavailable")

        engine.events.subscribe(WorkflowEventType.ENTITY_APPROVED_AT_STAGE, broken)
        await registry.save(two_stage_definition)
        record = await engine.submit("tenant-a", RecordType.ORDER, "requester-1")

        result = await engine.approve(record.id, "SITE_ADMIN", "u1")

        assert result.new_stage == "COMPANY"
        stored = await records.get(record.id)
        assert stored.current_stage == "COMPANY"
        assert stored.revision == 2
