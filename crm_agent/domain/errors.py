"""
Error taxonomy for the agent core.

Tool implementations raise these freely; the tool executor converts them
into ErrorOutcome values so the model can adapt. Only AuthError and
ProviderError end a turn.
"""

from typing import Dict, Any, Optional


class AgentError(Exception):
    """Base class for structured agent errors"""

    code = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        suggestion: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        code: Optional[str] = None
    ):
        super().__init__(message)
        self.message = message
        self.suggestion = suggestion
        self.details = details or {}
        if code:
            self.code = code

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.suggestion:
            data["suggestion"] = self.suggestion
        if self.details:
            data["details"] = self.details
        return data


class AuthError(AgentError):
    """Missing or invalid identity"""
    code = "UNAUTHORIZED"


class ValidationError(AgentError):
    """Bad tool input or invalid state transition"""
    code = "VALIDATION_ERROR"


class InvalidTransitionError(ValidationError):
    """Approval state machine transition not allowed from the current status"""
    code = "INVALID_TRANSITION"

    def __init__(self, approval_id: str, action: str, current_status: str, message: Optional[str] = None):
        super().__init__(
            message or f"Cannot {action} approval {approval_id}: current status is '{current_status}'",
            suggestion="Refresh the approval and retry if appropriate",
            details={"approvalId": approval_id, "currentStatus": current_status, "attemptedAction": action}
        )
        self.approval_id = approval_id
        self.current_status = current_status


class NotFoundError(AgentError):
    """Referenced entity is missing or belongs to another organization"""
    code = "NOT_FOUND"


class ConflictError(AgentError):
    """Version mismatch or duplicate identifier"""
    code = "CONFLICT"


class ProviderError(AgentError):
    """Model provider call failed; carries any text streamed before the failure"""
    code = "PROVIDER_ERROR"

    def __init__(self, message: str, partial_output: str = "", **kwargs):
        super().__init__(message, **kwargs)
        self.partial_output = partial_output
