"""
Tests for the workflow definition registry: validation, versioning and
active-definition resolution.
"""
import random

import pytest

from services.workflow_errors import DefinitionNotFound, InvalidDefinition, NoActiveWorkflow
from services.workflow_models import RecordType, Stage, WorkflowDefinition, WorkflowRole
from services.workflow_registry import WorkflowRegistry


ROLES = [r for r in WorkflowRole if r != WorkflowRole.REQUESTOR]


def random_valid_definition(rng, tenant_id="tenant-a"):
    count = rng.randint(1, 6)
    orders = sorted(rng.sample(range(1, 50), count))
    keys = rng.sample([f"STAGE_{i}" for i in range(20)], count)
    stages = [
        Stage(
            stage_key=keys[i],
            stage_name=f"Stage {i}",
            allowed_roles=rng.sample(ROLES, rng.randint(1, 3)),
            order=orders[i],
            is_terminal=(i == count - 1),
            is_optional=rng.random() < 0.3,
        )
        for i in range(count)
    ]
    rng.shuffle(stages)
    return WorkflowDefinition(
        tenant_id=tenant_id, record_type=RecordType.ORDER, name="Random", stages=stages
    )


class TestValidation:
    """Test definition invariants."""

    def test_valid_definition_has_no_errors(self, two_stage_definition):
        assert WorkflowRegistry.validate_definition(two_stage_definition) == []

    def test_random_valid_definitions(self):
        rng = random.Random(1234)
        for _ in range(200):
            definition = random_valid_definition(rng)
            assert WorkflowRegistry.validate_definition(definition) == []

    def test_random_duplicate_orders_rejected(self):
        rng = random.Random(99)
        for _ in range(100):
            definition = random_valid_definition(rng)
            if len(definition.stages) < 2:
                continue
            first, second = rng.sample(definition.stages, 2)
            if second.is_terminal:
                first, second = second, first
            second.order = first.order
            errors = WorkflowRegistry.validate_definition(definition)
            assert any("Duplicate stage orders" in e for e in errors)

    def test_random_terminal_count_rejected(self):
        rng = random.Random(7)
        for _ in range(100):
            definition = random_valid_definition(rng)
            if rng.random() < 0.5:
                for stage in definition.stages:
                    stage.is_terminal = False
            else:
                if len(definition.stages) < 2:
                    continue
                for stage in definition.stages:
                    stage.is_terminal = True
            errors = WorkflowRegistry.validate_definition(definition)
            assert any("exactly one terminal stage" in e for e in errors)

    def test_empty_stages(self, definition_factory):
        definition = definition_factory(stages=[])
        assert WorkflowRegistry.validate_definition(definition) == ["Workflow must have at least one stage"]

    def test_duplicate_keys(self, definition_factory):
        definition = definition_factory()
        definition.stages[1].stage_key = "SITE"
        errors = WorkflowRegistry.validate_definition(definition)
        assert any("Duplicate stage keys" in e for e in errors)

    def test_stage_without_roles(self, definition_factory):
        definition = definition_factory()
        definition.stages[0].allowed_roles = []
        errors = WorkflowRegistry.validate_definition(definition)
        assert "Stage 'SITE' has no allowed roles" in errors

    def test_terminal_state_collision(self, definition_factory):
        definition = definition_factory(status_on_approval={})
        definition.stages[0].stage_key = "APPROVED_TERMINAL"
        errors = WorkflowRegistry.validate_definition(definition)
        assert any("collide with terminal states" in e for e in errors)

    def test_terminal_must_be_last(self, definition_factory):
        definition = definition_factory()
        definition.stages[0].is_terminal = True
        definition.stages[1].is_terminal = False
        errors = WorkflowRegistry.validate_definition(definition)
        assert any("must have the highest order" in e for e in errors)

    def test_status_mapping_unknown_stage(self, definition_factory):
        definition = definition_factory(status_on_approval={"FINANCE": "APPROVED"})
        errors = WorkflowRegistry.validate_definition(definition)
        assert any("status_on_approval references unknown stages" in e for e in errors)


@pytest.mark.asyncio
class TestSaveAndResolve:
    """Test persistence, versioning and resolution."""

    async def test_invalid_definition_not_written(self, registry, mock_db, definition_factory):
        definition = definition_factory(stages=[])
        with pytest.raises(InvalidDefinition) as exc:
            await registry.save(definition)
        assert exc.value.details["errors"]
        assert mock_db.workflow_definitions.documents == []

    async def test_first_save_is_version_one_and_active(self, registry, two_stage_definition):
        saved = await registry.save(two_stage_definition, actor_id="admin-1")
        assert saved.version == 1
        assert saved.is_active is True
        assert saved.updated_by == "admin-1"

        active = await registry.resolve_active("tenant-a", RecordType.ORDER)
        assert active.id == saved.id
        assert active.version == 1

    async def test_update_creates_new_version_and_deactivates_old(self, registry, definition_factory):
        first = await registry.save(definition_factory())
        second = await registry.save(definition_factory(name="Revised"))

        assert second.id == first.id
        assert second.version == 2

        active = await registry.resolve_active("tenant-a", RecordType.ORDER)
        assert active.version == 2
        assert active.name == "Revised"

        old = await registry.get_version(first.id, 1)
        assert old.is_active is False

        versions = await registry.list_versions("tenant-a", RecordType.ORDER)
        assert [v.version for v in versions] == [2, 1]
        assert [v.is_active for v in versions] == [True, False]

    async def test_exactly_one_active_per_scope(self, registry, mock_db, definition_factory):
        for i in range(4):
            await registry.save(definition_factory(name=f"v{i}"))
        active = [d for d in mock_db.workflow_definitions.documents if d["is_active"]]
        assert len(active) == 1
        assert active[0]["version"] == 4

    async def test_scopes_are_independent(self, registry, definition_factory):
        await registry.save(definition_factory())
        await registry.save(definition_factory(tenant_id="tenant-b"))
        await registry.save(definition_factory(record_type=RecordType.GRN))

        a = await registry.resolve_active("tenant-a", RecordType.ORDER)
        b = await registry.resolve_active("tenant-b", RecordType.ORDER)
        grn = await registry.resolve_active("tenant-a", RecordType.GRN)
        assert len({a.id, b.id, grn.id}) == 3

    async def test_no_active_workflow(self, registry):
        with pytest.raises(NoActiveWorkflow):
            await registry.resolve_active("tenant-a", RecordType.INVOICE)

    async def test_deactivate(self, registry, two_stage_definition):
        await registry.save(two_stage_definition)
        assert await registry.deactivate("tenant-a", RecordType.ORDER) is True
        assert await registry.deactivate("tenant-a", RecordType.ORDER) is False
        with pytest.raises(NoActiveWorkflow):
            await registry.resolve_active("tenant-a", RecordType.ORDER)

    async def test_get_missing_version(self, registry):
        with pytest.raises(DefinitionNotFound):
            await registry.get_version("WF-NOPE", 3)

    async def test_create_indexes(self, registry, mock_db):
        await registry.create_indexes()
        kwargs = [k for _, k in mock_db.workflow_definitions.indexes]
        assert any(k.get("partialFilterExpression") == {"is_active": True} for k in kwargs)
