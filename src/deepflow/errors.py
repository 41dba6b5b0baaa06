"""Deepflow Error Hierarchy.

Structured exception types for workflow orchestration, provider dispatch
and spend control.
"""

from __future__ import annotations


class DeepflowError(Exception):
    """Base error for all Deepflow exceptions."""

    code = "DEEPFLOW_ERROR"

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class ConfigurationError(DeepflowError):
    """Invalid or missing configuration."""

    code = "CONFIGURATION"


class ValidationError(DeepflowError):
    """Data validation failed."""

    code = "VALIDATION"


# Provider Errors
class ProviderError(DeepflowError):
    """Upstream AI provider call failed.

    Covers network failures, timeouts, authentication problems, rate limits
    and malformed responses. SDK exception types never escape the provider
    layer; they are wrapped into this error at the adapter edge.
    """

    code = "PROVIDER_ERROR"

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        model: str | None = None,
        status_code: int | None = None,
        retryable: bool = False,
    ):
        super().__init__(
            message,
            {
                "provider": provider,
                "model": model,
                "status_code": status_code,
                "retryable": retryable,
            },
        )
        self.provider = provider
        self.model = model
        self.status_code = status_code
        self.retryable = retryable


class RateLimitError(ProviderError):
    """Provider rate limit exceeded."""

    code = "RATE_LIMIT"

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        model: str | None = None,
        retry_after: float | None = None,
    ):
        super().__init__(message, provider=provider, model=model, status_code=429, retryable=True)
        self.retry_after = retry_after
        self.details["retry_after"] = retry_after


class UnknownProviderError(ProviderError):
    """No provider is registered for a model identifier."""

    code = "UNKNOWN_PROVIDER"

    def __init__(self, model: str, message: str | None = None):
        super().__init__(
            message or f"No provider registered for model '{model}'",
            model=model,
        )


# Spend Errors
class AdmissionDenied(DeepflowError):
    """Spend guard rejected a request.

    Expected control flow rather than a failure: the orchestrator pauses
    the execution instead of letting this propagate.
    """

    code = "ADMISSION_DENIED"

    def __init__(self, reason: str, suggestion: str | None = None, user_id: str | None = None):
        super().__init__(reason, {"suggestion": suggestion, "user_id": user_id})
        self.reason = reason
        self.suggestion = suggestion
        self.user_id = user_id


# Workflow Errors
class WorkflowError(DeepflowError):
    """Base error for workflow failures."""

    code = "WORKFLOW_ERROR"


class WorkflowValidationError(WorkflowError):
    """Workflow definition is structurally invalid."""

    code = "WORKFLOW_INVALID"

    def __init__(self, message: str, workflow_id: str | None = None, step_id: str | None = None):
        super().__init__(message, {"workflow_id": workflow_id, "step_id": step_id})
        self.workflow_id = workflow_id
        self.step_id = step_id


class WorkflowNotFoundError(WorkflowError):
    """Workflow definition not registered."""

    code = "WORKFLOW_NOT_FOUND"


class ExecutionNotFoundError(WorkflowError):
    """Execution record does not exist."""

    code = "EXECUTION_NOT_FOUND"


class InvalidTransitionError(WorkflowError):
    """Requested status change is not allowed from the current status."""

    code = "INVALID_TRANSITION"

    def __init__(self, message: str, current: str | None = None, requested: str | None = None):
        super().__init__(message, {"current": current, "requested": requested})
        self.current = current
        self.requested = requested


class ExecutionConflictError(WorkflowError):
    """Another caller already owns the execution."""

    code = "EXECUTION_CONFLICT"


class InterpolationGap(WorkflowError):
    """Prompt placeholder could not be resolved.

    Never raised by the orchestrator; recorded as a warning and the literal
    placeholder is kept in the prompt.
    """

    code = "INTERPOLATION_GAP"

    def __init__(self, placeholder: str, step_id: str | None = None):
        super().__init__(
            f"Unresolved placeholder {placeholder}",
            {"placeholder": placeholder, "step_id": step_id},
        )
        self.placeholder = placeholder
        self.step_id = step_id


# Persistence Errors
class PersistenceError(DeepflowError):
    """Session or usage store read/write failed."""

    code = "PERSISTENCE_ERROR"
