"""
Procurement Workflow Hub - Workflow Definition Registry

Stores and resolves workflow definitions in the `workflow_definitions`
collection. At most one definition is active per (tenant_id, record_type).

Every save of a definition for a scope that already has one produces a new
version under the same definition id. Older versions stay readable so that
records bound to them keep evaluating against the stages they started with.
"""

from typing import List, Optional
import logging

from pymongo import DESCENDING

from services.workflow_errors import (
    DefinitionNotFound,
    InvalidDefinition,
    NoActiveWorkflow,
)
from services.workflow_models import (
    RecordType,
    TERMINAL_POSITIONS,
    WorkflowDefinition,
    utc_now,
)

logger = logging.getLogger(__name__)


class WorkflowRegistry:
    """Persistence and lookup of versioned workflow definitions."""

    def __init__(self, db):
        self.collection = db.workflow_definitions

    async def create_indexes(self):
        await self.collection.create_index([("id", 1), ("version", 1)], unique=True)
        await self.collection.create_index(
            [("tenant_id", 1), ("record_type", 1)],
            unique=True,
            partialFilterExpression={"is_active": True},
            name="one_active_definition_per_scope",
        )

    # =========================================================================
    # VALIDATION
    # =========================================================================

    @staticmethod
    def validate_definition(definition: WorkflowDefinition) -> List[str]:
        """
        Check a definition against the registry invariants.

        Returns:
            List of human-readable violations; empty when the definition is valid
        """
        errors = []

        if not definition.tenant_id or not definition.tenant_id.strip():
            errors.append("tenant_id is required")

        if not definition.stages:
            errors.append("Workflow must have at least one stage")
            return errors

        keys = [s.stage_key for s in definition.stages]
        duplicate_keys = sorted({k for k in keys if keys.count(k) > 1})
        if duplicate_keys:
            errors.append(f"Duplicate stage keys: {duplicate_keys}")

        orders = [s.order for s in definition.stages]
        duplicate_orders = sorted({o for o in orders if orders.count(o) > 1})
        if duplicate_orders:
            errors.append(f"Duplicate stage orders: {duplicate_orders}")

        reserved = sorted(k for k in set(keys) if k in TERMINAL_POSITIONS)
        if reserved:
            errors.append(f"Stage keys collide with terminal states: {reserved}")

        for stage in definition.stages:
            if not stage.allowed_roles:
                errors.append(f"Stage '{stage.stage_key}' has no allowed roles")

        terminal = [s for s in definition.stages if s.is_terminal]
        if len(terminal) != 1:
            errors.append(f"Workflow must have exactly one terminal stage, found {len(terminal)}")
        elif terminal[0].order != max(orders):
            errors.append(f"Terminal stage '{terminal[0].stage_key}' must have the highest order")

        known = set(keys)
        for mapping_name in ("status_on_approval", "status_on_rejection"):
            unknown = sorted(k for k in getattr(definition, mapping_name) if k not in known)
            if unknown:
                errors.append(f"{mapping_name} references unknown stages: {unknown}")

        return errors

    # =========================================================================
    # WRITES
    # =========================================================================

    async def save(
        self,
        definition: WorkflowDefinition,
        actor_id: Optional[str] = None
    ) -> WorkflowDefinition:
        """
        Validate and store a definition as the active one for its scope.

        An existing active definition for the same scope is superseded: the new
        document takes its id with the next version number and the old version
        is deactivated. Nothing is written when validation fails.

        Raises:
            InvalidDefinition: with the list of violations in details["errors"]
        """
        errors = self.validate_definition(definition)
        if errors:
            raise InvalidDefinition(
                f"Invalid workflow definition: {'; '.join(errors)}",
                details={"errors": errors}
            )

        current = await self.collection.find_one(
            {
                "tenant_id": definition.tenant_id,
                "record_type": definition.record_type.value,
                "is_active": True,
            },
            {"_id": 0}
        )
        lineage_id = current["id"] if current else definition.id
        latest = await self._latest_version(lineage_id)

        now = utc_now()
        stored = definition.model_copy(update={
            "id": lineage_id,
            "version": (latest + 1) if latest else 1,
            "is_active": False,
            "created_by": definition.created_by or actor_id,
            "updated_by": actor_id,
            "created_utc": definition.created_utc or now,
            "updated_utc": now,
        })

        # Insert inactive first so the scope is never left without its previous
        # active version if the insert fails.
        await self.collection.insert_one(stored.to_document())
        await self.collection.update_many(
            {
                "tenant_id": stored.tenant_id,
                "record_type": stored.record_type.value,
                "is_active": True,
            },
            {"$set": {"is_active": False, "updated_utc": now}}
        )
        await self.collection.update_one(
            {"id": stored.id, "version": stored.version},
            {"$set": {"is_active": True}}
        )

        logger.info(
            "Saved workflow definition: id=%s, version=%s, tenant=%s, record_type=%s, stages=%s",
            stored.id, stored.version, stored.tenant_id, stored.record_type.value, len(stored.stages)
        )
        return stored.model_copy(update={"is_active": True})

    async def deactivate(self, tenant_id: str, record_type: RecordType) -> bool:
        """Deactivate the active definition for a scope. Returns False if none was active."""
        result = await self.collection.update_many(
            {"tenant_id": tenant_id, "record_type": RecordType(record_type).value, "is_active": True},
            {"$set": {"is_active": False, "updated_utc": utc_now()}}
        )
        if result.modified_count:
            logger.info("Deactivated workflow: tenant=%s, record_type=%s", tenant_id, record_type)
        return result.modified_count > 0

    # =========================================================================
    # READS
    # =========================================================================

    async def resolve_active(self, tenant_id: str, record_type: RecordType) -> WorkflowDefinition:
        """
        The single active definition for a scope.

        Raises:
            NoActiveWorkflow: when the scope has no active definition
        """
        record_type = RecordType(record_type)
        doc = await self.collection.find_one(
            {"tenant_id": tenant_id, "record_type": record_type.value, "is_active": True},
            {"_id": 0}
        )
        if not doc:
            raise NoActiveWorkflow(
                f"No active workflow for tenant '{tenant_id}' and record type '{record_type.value}'",
                details={"tenant_id": tenant_id, "record_type": record_type.value}
            )
        return WorkflowDefinition.from_document(doc)

    async def get_version(self, definition_id: str, version: int) -> WorkflowDefinition:
        doc = await self.collection.find_one({"id": definition_id, "version": version}, {"_id": 0})
        if not doc:
            raise DefinitionNotFound(
                f"Workflow definition {definition_id} v{version} not found",
                details={"definition_id": definition_id, "version": version}
            )
        return WorkflowDefinition.from_document(doc)

    async def list_versions(self, tenant_id: str, record_type: RecordType) -> List[WorkflowDefinition]:
        """All stored versions for a scope, newest first."""
        docs = await self.collection.find(
            {"tenant_id": tenant_id, "record_type": RecordType(record_type).value},
            {"_id": 0}
        ).sort("version", DESCENDING).to_list(1000)
        return [WorkflowDefinition.from_document(d) for d in docs]

    async def _latest_version(self, definition_id: str) -> int:
        docs = await self.collection.find(
            {"id": definition_id}, {"_id": 0, "version": 1}
        ).sort("version", DESCENDING).limit(1).to_list(1)
        return docs[0]["version"] if docs else 0
