"""Core workflow execution components."""

from .exceptions import (
    WorkflowEngineError,
    NotFoundError,
    FormValidationError,
    DefinitionValidationError,
    StepExecutionError,
    RetryPendingError,
    WorkflowFailedError,
    WorkflowAuthorizationError,
    InvalidWorkflowStateError,
    ConcurrencyConflictError,
    ExecutionEngineError,
    StorageError,
    ToolRegistryError,
    ConfigurationError,
)
from .logging import setup_logging, get_logger
from .step_processor import StepProcessor
from .execution_engine import WorkflowExecutionEngine

__all__ = [
    "WorkflowEngineError",
    "NotFoundError",
    "FormValidationError",
    "DefinitionValidationError",
    "StepExecutionError",
    "RetryPendingError",
    "WorkflowFailedError",
    "WorkflowAuthorizationError",
    "InvalidWorkflowStateError",
    "ConcurrencyConflictError",
    "ExecutionEngineError",
    "StorageError",
    "ToolRegistryError",
    "ConfigurationError",
    "setup_logging",
    "get_logger",
    "StepProcessor",
    "WorkflowExecutionEngine",
]
