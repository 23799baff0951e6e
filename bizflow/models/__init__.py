"""Data models for the workflow execution core."""

from .core import (
    WorkflowCategory,
    TriggerType,
    WorkflowStatus,
    StepType,
    StepExecutionStatus,
    RetryConfig,
    FormFieldConfig,
    FormStepConfig,
    AIProcessingStepConfig,
    ToolExecutionStepConfig,
    ApprovalGateStepConfig,
    TransformAction,
    DataTransformStepConfig,
    ConditionalStepConfig,
    WorkflowDefinition,
    WorkflowStep,
    WorkflowDefinitionWithSteps,
    WorkflowDefinitionInput,
    WorkflowStepInput,
    WorkflowInstance,
    WorkflowStepExecution,
    WorkflowInstanceWithDetails,
    WorkflowExecutionRequest,
    StepExecutionRequest,
    StepProcessingResult,
    ToolInvocationResult,
    WorkflowExecutionResult,
    StepExecutionResult,
    WorkflowProgress,
    WorkflowStatistics,
    ValidationResult,
)

__all__ = [
    "WorkflowCategory",
    "TriggerType",
    "WorkflowStatus",
    "StepType",
    "StepExecutionStatus",
    "RetryConfig",
    "FormFieldConfig",
    "FormStepConfig",
    "AIProcessingStepConfig",
    "ToolExecutionStepConfig",
    "ApprovalGateStepConfig",
    "TransformAction",
    "DataTransformStepConfig",
    "ConditionalStepConfig",
    "WorkflowDefinition",
    "WorkflowStep",
    "WorkflowDefinitionWithSteps",
    "WorkflowDefinitionInput",
    "WorkflowStepInput",
    "WorkflowInstance",
    "WorkflowStepExecution",
    "WorkflowInstanceWithDetails",
    "WorkflowExecutionRequest",
    "StepExecutionRequest",
    "StepProcessingResult",
    "ToolInvocationResult",
    "WorkflowExecutionResult",
    "StepExecutionResult",
    "WorkflowProgress",
    "WorkflowStatistics",
    "ValidationResult",
]
