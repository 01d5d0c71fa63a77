"""
Procurement Workflow Hub - Logistics Follow-up

Shipment creation for purchase orders produced by the fan-out step. This runs
strictly after the approval and linking writes have committed: a shipping
failure is recorded per artifact and never changes a record's workflow
position.

Carriers plug in by implementing LogisticsProvider. Providers are expected to
be HTTP integrations, so httpx transport errors are retried the same way as
a provider's own retryable LogisticsError.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from services.workflow_config import LOGISTICS_MAX_RETRIES, LOGISTICS_RETRY_DELAY

logger = logging.getLogger(__name__)


class LogisticsError(Exception):
    """Raised by providers. `retryable` marks transient failures."""

    def __init__(self, message: str, retryable: bool = True, details: Optional[Dict] = None):
        self.message = message
        self.retryable = retryable
        self.details = details or {}
        super().__init__(self.message)


class LogisticsProvider(ABC):
    """Interface a carrier integration implements."""

    name: str = "provider"

    @abstractmethod
    async def create_shipment(self, artifact: Dict[str, Any]) -> Dict[str, Any]:
        """Create a shipment for a purchase order artifact. Returns at least {"shipment_id": ...}."""

    @abstractmethod
    async def get_status(self, shipment_id: str) -> Dict[str, Any]:
        """Current carrier status for a shipment."""

    @abstractmethod
    async def cancel(self, shipment_id: str) -> bool:
        """Cancel a shipment. Returns True if the carrier accepted the cancellation."""

    @abstractmethod
    async def check_serviceability(self, origin: str, destination: str) -> bool:
        """Whether the carrier can ship between two postal codes / locations."""


@dataclass
class DispatchOutcome:
    dispatched: List[Dict[str, Any]] = field(default_factory=list)
    failures: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dispatched": self.dispatched,
            "failures": self.failures,
        }


class ShipmentDispatcher:
    """Creates one shipment per artifact, retrying transient provider failures."""

    def __init__(
        self,
        provider: LogisticsProvider,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None
    ):
        self.provider = provider
        self.max_retries = max(1, max_retries if max_retries is not None else LOGISTICS_MAX_RETRIES)
        self.retry_delay = retry_delay if retry_delay is not None else LOGISTICS_RETRY_DELAY

    async def dispatch(self, artifacts: List[Dict[str, Any]]) -> DispatchOutcome:
        outcome = DispatchOutcome()
        for artifact in artifacts:
            artifact_id = artifact.get("id")
            try:
                shipment = await self._create_with_retry(artifact)
            except (LogisticsError, httpx.HTTPError) as e:
                logger.error("Shipment creation failed for artifact %s: %s", artifact_id, str(e))
                outcome.failures.append({"artifact_id": artifact_id, "error": str(e)})
                continue
            outcome.dispatched.append({
                "artifact_id": artifact_id,
                "shipment_id": shipment.get("shipment_id"),
                "provider": self.provider.name,
            })
        return outcome

    async def _create_with_retry(self, artifact: Dict[str, Any]) -> Dict[str, Any]:
        last_error: Optional[Exception] = None
        for attempt in range(self.max_retries):
            try:
                return await self.provider.create_shipment(artifact)
            except LogisticsError as e:
                if not e.retryable:
                    raise
                last_error = e
            except httpx.TransportError as e:
                last_error = e
            logger.warning(
                "Shipment attempt %d/%d failed for artifact %s: %s",
                attempt + 1, self.max_retries, artifact.get("id"), str(last_error)
            )
            if attempt + 1 < self.max_retries:
                await asyncio.sleep(self.retry_delay * (attempt + 1))

        raise LogisticsError(
            f"Shipment creation failed after {self.max_retries} attempts: {last_error}",
            retryable=False
        )
