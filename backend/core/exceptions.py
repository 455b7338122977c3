"""Custom exceptions for the workflow execution engine."""


class WorkflowError(Exception):
    """Base exception for the workflow execution engine."""

    def __init__(self, message: str, status_code: int = 500):
        """Initialize exception with message and status code.

        Args:
            message: Exception message
            status_code: HTTP status code used by the control API
        """
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


class ValidationError(WorkflowError):
    """Workflow or step definition has an invalid shape."""

    def __init__(self, message: str = "Validation failed"):
        """Initialize ValidationError with 422 status code."""
        super().__init__(message, 422)


class NotFoundError(WorkflowError):
    """Execution, checkpoint or handler not found."""

    def __init__(self, message: str = "Resource not found"):
        """Initialize NotFoundError with 404 status code."""
        super().__init__(message, 404)


class InvalidStateError(WorkflowError):
    """Operation not allowed in the execution's current state."""

    def __init__(self, message: str = "Invalid execution state"):
        """Initialize InvalidStateError with 409 status code."""
        super().__init__(message, 409)


class InvalidHandlerError(WorkflowError):
    """Step handler does not expose an execute capability."""

    def __init__(self, message: str = "Invalid step handler"):
        """Initialize InvalidHandlerError with 422 status code."""
        super().__init__(message, 422)


class ExpressionError(WorkflowError):
    """Custom condition expression is malformed or uses a forbidden construct."""

    def __init__(self, message: str = "Invalid expression"):
        """Initialize ExpressionError with 422 status code."""
        super().__init__(message, 422)


class StepTimeoutError(WorkflowError):
    """Step exceeded its allotted time."""

    def __init__(self, step_id: str, timeout_ms: int):
        """Initialize StepTimeoutError with 504 status code."""
        self.step_id = step_id
        self.timeout_ms = timeout_ms
        super().__init__(f"Step {step_id} timed out after {timeout_ms}ms", 504)


class StepCancelledError(WorkflowError):
    """Step was cancelled by the engine or a caller."""

    def __init__(self, step_id: str, reason: str = "cancelled"):
        """Initialize StepCancelledError with 499 status code."""
        self.step_id = step_id
        self.reason = reason
        super().__init__(f"Step {step_id} was cancelled: {reason}", 499)
