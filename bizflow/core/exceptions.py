"""Custom exceptions for the workflow execution core with detailed error information."""

from datetime import datetime
from typing import Optional, Dict, Any, List
from enum import Enum


class ErrorSeverity(Enum):
    """Error severity levels for categorizing exceptions."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Categories of errors, used to decide retry policy and HTTP status."""
    NOT_FOUND = "not_found"
    VALIDATION = "validation"
    EXECUTION = "execution"
    AUTHORIZATION = "authorization"
    STATE = "state"
    STORAGE = "storage"
    CONFIGURATION = "configuration"


class WorkflowEngineError(Exception):
    """Base exception for all workflow core errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        category: ErrorCategory = ErrorCategory.EXECUTION,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = False,
        retry_after: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.severity = severity
        self.category = category
        self.details = details or {}
        self.recoverable = recoverable
        self.retry_after = retry_after
        self.context = context or {}
        self.timestamp = datetime.utcnow()

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging and API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "details": self.details,
            "recoverable": self.recoverable,
            "retry_after": self.retry_after,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "exception_type": self.__class__.__name__
        }

    def add_context(self, **kwargs):
        """Add additional context to the exception."""
        self.context.update(kwargs)
        return self

    def add_details(self, **kwargs):
        """Add additional details to the exception."""
        self.details.update(kwargs)
        return self


class NotFoundError(WorkflowEngineError):
    """Raised when a definition, instance, step or step execution is missing."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.NOT_FOUND,
            **kwargs
        )


class WorkflowNotFoundError(NotFoundError):
    """Raised when a workflow definition does not exist."""

    def __init__(self, workflow_id: str, version: Optional[int] = None):
        message = "Workflow not found"
        if version is not None:
            message = f"Workflow version {version} not found"
        super().__init__(message)
        self.add_context(workflow_id=workflow_id)
        if version is not None:
            self.add_context(workflow_version=version)


class InstanceNotFoundError(NotFoundError):
    """Raised when a workflow instance does not exist."""

    def __init__(self, instance_id: str):
        super().__init__("Workflow instance not found")
        self.add_context(instance_id=instance_id)


class StepNotFoundError(NotFoundError):
    """Raised when a step is not part of the workflow definition."""

    def __init__(self, step_id: str, workflow_id: Optional[str] = None):
        super().__init__("Step not found")
        self.add_context(step_id=step_id)
        if workflow_id:
            self.add_context(workflow_id=workflow_id)


class StepExecutionNotFoundError(NotFoundError):
    """Raised when no open step execution exists for an instance/step pair."""

    def __init__(self, instance_id: str, step_id: str):
        super().__init__("Step execution not found")
        self.add_context(instance_id=instance_id, step_id=step_id)


class FormValidationError(WorkflowEngineError):
    """Raised when submitted form input fails the step's field schema.

    Every offending field is reported at once in ``field_errors``.
    """

    def __init__(self, field_errors: Dict[str, str], step_id: Optional[str] = None, **kwargs):
        message = "Validation failed: " + "; ".join(
            f"{name}: {error}" for name, error in field_errors.items()
        )
        super().__init__(
            message,
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.VALIDATION,
            **kwargs
        )
        self.field_errors = dict(field_errors)
        self.add_details(field_errors=self.field_errors)
        if step_id:
            self.add_context(step_id=step_id)


class DefinitionValidationError(WorkflowEngineError):
    """Raised when a workflow definition or its steps fail authoring validation."""

    def __init__(
        self,
        message: str,
        validation_errors: Optional[List[str]] = None,
        workflow_id: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.VALIDATION,
            **kwargs
        )
        self.validation_errors = validation_errors or []
        if workflow_id:
            self.add_context(workflow_id=workflow_id)
        if validation_errors:
            self.add_details(validation_errors=validation_errors)


class StepExecutionError(WorkflowEngineError):
    """Raised by the step processor when a step's business logic fails.

    Each occurrence consumes one retry unit of the step.
    """

    def __init__(
        self,
        message: str,
        step_id: Optional[str] = None,
        step_type: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.EXECUTION,
            recoverable=True,
            **kwargs
        )
        if step_id:
            self.add_context(step_id=step_id)
        if step_type:
            self.add_context(step_type=step_type)


class RetryPendingError(WorkflowEngineError):
    """Raised when a step attempt failed but the step may be executed again."""

    def __init__(
        self,
        message: str,
        retry_count: int,
        max_retries: int,
        retry_after: Optional[int] = None,
        instance_id: Optional[str] = None,
        step_id: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.EXECUTION,
            recoverable=True,
            retry_after=retry_after,
            **kwargs
        )
        self.retry_count = retry_count
        self.max_retries = max_retries
        self.add_details(retry_count=retry_count, max_retries=max_retries)
        if instance_id:
            self.add_context(instance_id=instance_id)
        if step_id:
            self.add_context(step_id=step_id)


class WorkflowFailedError(WorkflowEngineError):
    """Raised when a step exhausted its retries and the instance is now failed."""

    def __init__(
        self,
        message: str,
        instance_id: Optional[str] = None,
        step_id: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.EXECUTION,
            **kwargs
        )
        if instance_id:
            self.add_context(instance_id=instance_id)
        if step_id:
            self.add_context(step_id=step_id)


class WorkflowAuthorizationError(WorkflowEngineError):
    """Raised when an actor is not allowed to perform an operation."""

    def __init__(self, message: str, actor_id: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.AUTHORIZATION,
            **kwargs
        )
        if actor_id:
            self.add_context(actor_id=actor_id)


class InvalidWorkflowStateError(WorkflowEngineError):
    """Raised when an operation is not valid for the current workflow state."""

    def __init__(self, message: str, status: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.STATE,
            **kwargs
        )
        if status:
            self.add_context(status=status)


class ConcurrencyConflictError(WorkflowEngineError):
    """Raised when a record was modified by another writer since it was read."""

    def __init__(self, message: str, record_id: Optional[str] = None, table: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.STATE,
            recoverable=True,
            **kwargs
        )
        if record_id:
            self.add_context(record_id=record_id)
        if table:
            self.add_context(table=table)


class ExecutionEngineError(WorkflowEngineError):
    """Raised when execution engine operations fail unexpectedly."""

    def __init__(
        self,
        message: str,
        instance_id: Optional[str] = None,
        workflow_id: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.EXECUTION,
            **kwargs
        )
        if instance_id:
            self.add_context(instance_id=instance_id)
        if workflow_id:
            self.add_context(workflow_id=workflow_id)


class StorageError(WorkflowEngineError):
    """Raised when storage operations fail."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        table: Optional[str] = None,
        **kwargs
    ):
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        super().__init__(
            message,
            category=ErrorCategory.STORAGE,
            **kwargs
        )
        if operation:
            self.add_context(operation=operation)
        if table:
            self.add_context(table=table)


class TransientError(StorageError):
    """Raised for transient storage errors that should be retried."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            recoverable=True,
            retry_after=1,
            **kwargs
        )


class ToolRegistryError(WorkflowEngineError):
    """Raised when tool registry operations fail."""

    def __init__(
        self,
        message: str,
        tool_slug: Optional[str] = None,
        operation: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.CONFIGURATION,
            **kwargs
        )
        if tool_slug:
            self.add_context(tool_slug=tool_slug)
        if operation:
            self.add_context(operation=operation)


class ConfigurationError(WorkflowEngineError):
    """Raised when configuration is invalid or missing."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.CONFIGURATION,
            **kwargs
        )
        if config_key:
            self.add_context(config_key=config_key)


def create_error_response(error: WorkflowEngineError) -> Dict[str, Any]:
    """Create a standardized error response from a WorkflowEngineError."""
    return {
        "error": error.error_code,
        "message": error.message,
        "details": {
            **error.details,
            "severity": error.severity.value,
            "category": error.category.value,
            "recoverable": error.recoverable,
            "retry_after": error.retry_after,
            "timestamp": error.timestamp.isoformat()
        },
        "context": error.context
    }
