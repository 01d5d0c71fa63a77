"""
Procurement Workflow Hub - Bulk Transitions

Applies approve or reject to many records independently. Each record is its
own transition with its own conditional write: one record failing never
affects another, and nothing is rolled back.

Duplicate ids in a request are processed once. Concurrency is bounded by
WORKFLOW_BULK_MAX_CONCURRENCY.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..workflow_config import get_bulk_max_concurrency
from ..workflow_engine import TransitionResult, WorkflowEngine
from ..workflow_errors import RecordNotFound, WorkflowError

logger = logging.getLogger(__name__)

INTERNAL_ERROR_CODE = "InternalError"


@dataclass
class BulkFailure:
    record_id: str
    error: str
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.record_id, "error": self.error, "message": self.message}


@dataclass
class BulkOutcome:
    """Per-record results of a bulk operation, in request order."""
    succeeded: List[str] = field(default_factory=list)
    failed: List[BulkFailure] = field(default_factory=list)
    results: Dict[str, TransitionResult] = field(default_factory=dict)

    def record_success(self, record_id: str, result: TransitionResult) -> None:
        self.succeeded.append(record_id)
        self.results[record_id] = result

    def record_error(self, record_id: str, error: str, message: str) -> None:
        self.failed.append(BulkFailure(record_id, error, message))

    def failure_for(self, record_id: str) -> Optional[BulkFailure]:
        for failure in self.failed:
            if failure.record_id == record_id:
                return failure
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "succeeded": list(self.succeeded),
            "failed": [f.to_dict() for f in self.failed],
            "success_count": len(self.succeeded),
            "failure_count": len(self.failed),
        }


def unique_ids(record_ids: List[str]) -> List[str]:
    """Drop repeated ids, keeping first-seen order."""
    seen = set()
    result = []
    for record_id in record_ids:
        if record_id in seen:
            continue
        seen.add(record_id)
        result.append(record_id)
    return result


class BulkOperationCoordinator:
    """
    Fans single-record transitions out over a bounded number of concurrent
    calls and collects a BulkOutcome.

    Usage:
        bulk = BulkOperationCoordinator(engine)
        outcome = await bulk.bulk_approve(["REC-1", "REC-2"], "u-42", "SITE_ADMIN")
    """

    def __init__(self, engine: WorkflowEngine, max_concurrency: Optional[int] = None):
        self.engine = engine
        self.max_concurrency = max_concurrency or get_bulk_max_concurrency()

    async def bulk_approve(
        self,
        record_ids: List[str],
        actor_id: str,
        actor_role: str,
        remarks: Optional[str] = None,
        tenant_id: Optional[str] = None
    ) -> BulkOutcome:
        async def approve_one(record_id: str) -> TransitionResult:
            await self._check_tenant(record_id, tenant_id)
            return await self.engine.approve(record_id, actor_role, actor_id, remarks=remarks)

        return await self._run(record_ids, approve_one, "approve")

    async def bulk_reject(
        self,
        record_ids: List[str],
        actor_id: str,
        actor_role: str,
        reason_code: Optional[str] = None,
        remarks: Optional[str] = None,
        tenant_id: Optional[str] = None
    ) -> BulkOutcome:
        async def reject_one(record_id: str) -> TransitionResult:
            await self._check_tenant(record_id, tenant_id)
            return await self.engine.reject(
                record_id, actor_role, actor_id, reason_code=reason_code, remarks=remarks
            )

        return await self._run(record_ids, reject_one, "reject")

    async def _check_tenant(self, record_id: str, tenant_id: Optional[str]) -> None:
        """Records of another tenant are reported as not found."""
        if tenant_id is None:
            return
        record = await self.engine.records.get(record_id)
        if record.tenant_id != tenant_id:
            raise RecordNotFound(f"Record {record_id} not found", details={"record_id": record_id})

    async def _run(
        self,
        record_ids: List[str],
        operation: Callable[[str], Awaitable[TransitionResult]],
        label: str
    ) -> BulkOutcome:
        ids = unique_ids(record_ids)
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def attempt(record_id: str):
            async with semaphore:
                try:
                    return await operation(record_id)
                except WorkflowError as e:
                    return e
                except Exception as e:
                    logger.exception("Unexpected error during bulk %s of %s", label, record_id)
                    return e

        results = await asyncio.gather(*[attempt(record_id) for record_id in ids])

        outcome = BulkOutcome()
        for record_id, result in zip(ids, results):
            if isinstance(result, WorkflowError):
                outcome.record_error(record_id, result.code, result.message)
            elif isinstance(result, Exception):
                outcome.record_error(record_id, INTERNAL_ERROR_CODE, str(result))
            else:
                outcome.record_success(record_id, result)

        logger.info(
            "Bulk %s complete: requested=%s, unique=%s, succeeded=%s, failed=%s",
            label, len(record_ids), len(ids), len(outcome.succeeded), len(outcome.failed)
        )
        return outcome
