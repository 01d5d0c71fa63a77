"""
Procurement Workflow Hub - Workflow Exceptions

Single-record operations raise these synchronously and mutate nothing.
Batch, group and fan-out operations catch them per item and report the
`code` in their outcome instead of raising.
"""

from typing import Dict, Any, Optional


class WorkflowError(Exception):
    """Base exception for workflow engine errors."""
    code = "WorkflowError"
    status_code = 400

    def __init__(self, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.message = message or self.code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


# =============================================================================
# VALIDATION
# =============================================================================

class WorkflowValidationError(WorkflowError):
    """The request is not acceptable in the record's current state."""
    code = "ValidationError"
    status_code = 422


class RoleNotAllowedAtStage(WorkflowValidationError):
    code = "RoleNotAllowedAtStage"


class InvalidTransition(WorkflowValidationError):
    code = "InvalidTransition"


class ReasonCodeRequired(WorkflowValidationError):
    code = "ReasonCodeRequired"


class RemarksRequired(WorkflowValidationError):
    code = "RemarksRequired"


class RemarksTooLong(WorkflowValidationError):
    code = "RemarksTooLong"


class ReasonCodeNotAllowed(WorkflowValidationError):
    code = "ReasonCodeNotAllowed"


class ResubmissionNotAllowed(WorkflowValidationError):
    code = "ResubmissionNotAllowed"


class FanoutNotEnabled(WorkflowValidationError):
    code = "FanoutNotEnabled"
    status_code = 403


class InvalidFanoutRequest(WorkflowValidationError):
    code = "InvalidFanoutRequest"


# =============================================================================
# NOT FOUND
# =============================================================================

class WorkflowNotFoundError(WorkflowError):
    code = "NotFound"
    status_code = 404


class NoActiveWorkflow(WorkflowNotFoundError):
    code = "NoActiveWorkflow"


class RecordNotFound(WorkflowNotFoundError):
    code = "RecordNotFound"


class DefinitionNotFound(WorkflowNotFoundError):
    code = "DefinitionNotFound"


# =============================================================================
# CONCURRENCY / CONFIGURATION
# =============================================================================

class StaleState(WorkflowError):
    """The record changed between read and write; re-fetch and retry."""
    code = "StaleState"
    status_code = 409


class InvalidDefinition(WorkflowError):
    """A workflow definition violates its invariants and was not saved."""
    code = "InvalidDefinition"
