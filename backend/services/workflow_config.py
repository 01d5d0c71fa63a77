"""
Procurement Workflow Hub - Workflow Configuration

Environment-driven settings for the approval engine and its follow-up steps.

Feature Flag: WORKFLOW_FANOUT_ENABLED
- When True: tenants listed in WORKFLOW_FANOUT_TENANTS, or whose
  tenant_settings document has fanout_enabled, may create linked purchase
  orders from approved records
- When False: the fan-out step is refused for every tenant
"""

import os
from typing import Optional, Dict, Any, List


# =============================================================================
# FEATURE FLAGS
# =============================================================================

WORKFLOW_FANOUT_ENABLED = os.environ.get("WORKFLOW_FANOUT_ENABLED", "false").lower() == "true"

WORKFLOW_FANOUT_TENANTS: List[str] = [
    t.strip() for t in os.environ.get("WORKFLOW_FANOUT_TENANTS", "").split(",") if t.strip()
]


# =============================================================================
# ENGINE LIMITS
# =============================================================================

# Concurrent transition calls issued by one bulk operation
WORKFLOW_BULK_MAX_CONCURRENCY = int(os.environ.get("WORKFLOW_BULK_MAX_CONCURRENCY", "5"))

# System-default cap on rejection remarks
WORKFLOW_MAX_REMARKS_LENGTH = int(os.environ.get("WORKFLOW_MAX_REMARKS_LENGTH", "2000"))

# Post-commit shipment creation
LOGISTICS_MAX_RETRIES = int(os.environ.get("LOGISTICS_MAX_RETRIES", "3"))
LOGISTICS_RETRY_DELAY = float(os.environ.get("LOGISTICS_RETRY_DELAY", "1.0"))  # seconds


# =============================================================================
# HELPERS
# =============================================================================

def get_bulk_max_concurrency() -> int:
    return max(1, WORKFLOW_BULK_MAX_CONCURRENCY)


def is_fanout_enabled_for_tenant(
    tenant_id: str,
    tenant_settings: Optional[Dict[str, Any]] = None
) -> bool:
    """
    Check whether the fan-out step may run for a tenant.

    Args:
        tenant_id: Tenant requesting the fan-out
        tenant_settings: Optional tenant_settings document for the tenant

    Returns:
        True only when the global flag is on and the tenant is opted in
    """
    if not WORKFLOW_FANOUT_ENABLED:
        return False
    if tenant_id in WORKFLOW_FANOUT_TENANTS:
        return True
    return bool((tenant_settings or {}).get("fanout_enabled"))


def get_workflow_settings() -> Dict[str, Any]:
    """Effective engine settings, for the config endpoint."""
    return {
        "fanout_enabled": WORKFLOW_FANOUT_ENABLED,
        "fanout_tenants": list(WORKFLOW_FANOUT_TENANTS),
        "bulk_max_concurrency": get_bulk_max_concurrency(),
        "max_remarks_length": WORKFLOW_MAX_REMARKS_LENGTH,
        "logistics_max_retries": LOGISTICS_MAX_RETRIES,
        "logistics_retry_delay": LOGISTICS_RETRY_DELAY,
    }
