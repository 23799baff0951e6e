"""Core Pydantic models for the workflow execution core."""

import re
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class WorkflowCategory(str, Enum):
    """Business area a workflow definition belongs to."""
    ONBOARDING = "onboarding"
    APPROVAL = "approval"
    OPERATIONS = "operations"
    COMPLIANCE = "compliance"
    ANALYTICS = "analytics"
    CUSTOM = "custom"


class TriggerType(str, Enum):
    """How a workflow is started."""
    MANUAL = "manual"
    SCHEDULED = "scheduled"
    EVENT_BASED = "event_based"
    API = "api"


class WorkflowStatus(str, Enum):
    """Enumeration of workflow instance statuses."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    WAITING_APPROVAL = "waiting_approval"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (WorkflowStatus.COMPLETED, WorkflowStatus.FAILED, WorkflowStatus.CANCELLED)


class StepType(str, Enum):
    """Enumeration of step types understood by the step processor."""
    FORM_INPUT = "form_input"
    AI_PROCESSING = "ai_processing"
    TOOL_EXECUTION = "tool_execution"
    APPROVAL_GATE = "approval_gate"
    DATA_TRANSFORM = "data_transform"
    CONDITIONAL = "conditional"


class StepExecutionStatus(str, Enum):
    """Enumeration of step execution statuses."""
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    WAITING_INPUT = "waiting_input"


# Statuses of a step execution that may still be executed.
OPEN_EXECUTION_STATUSES = (StepExecutionStatus.PENDING, StepExecutionStatus.WAITING_INPUT)


class ValidationResult(BaseModel):
    """Result of a validation pass."""
    is_valid: bool = Field(..., description="Whether the input is valid")
    errors: List[str] = Field(default_factory=list, description="List of validation errors")
    warnings: List[str] = Field(default_factory=list, description="List of validation warnings")


# ---------------------------------------------------------------------------
# Step configuration variants
# ---------------------------------------------------------------------------

class _ConfigModel(BaseModel):
    """Base for step configuration payloads, stored with camelCase keys."""
    model_config = ConfigDict(populate_by_name=True)


class RetryConfig(_ConfigModel):
    """Bounded retry settings of a step."""
    max_retries: int = Field(3, alias="maxRetries", ge=0, description="Retries allowed after the first attempt")
    retry_delay_seconds: int = Field(60, alias="retryDelaySeconds", ge=0, description="Hint for callers scheduling a retry")


class FieldValidationRules(_ConfigModel):
    min: Optional[float] = None
    max: Optional[float] = None
    min_length: Optional[int] = Field(None, alias="minLength")
    max_length: Optional[int] = Field(None, alias="maxLength")
    pattern: Optional[str] = None

    @field_validator('pattern')
    @classmethod
    def validate_pattern(cls, pattern):
        """Ensure the pattern compiles."""
        if pattern is not None:
            try:
                re.compile(pattern)
            except re.error as e:
                raise ValueError(f"Invalid pattern: {e}")
        return pattern


class FormFieldConfig(_ConfigModel):
    """One field of a form_input step."""
    name: str
    type: Literal["string", "number", "boolean", "date", "enum", "array"] = "string"
    required: bool = False
    label: Optional[str] = None
    placeholder: Optional[str] = None
    options: Optional[List[str]] = None
    validation: Optional[FieldValidationRules] = None

    @property
    def display_name(self) -> str:
        return self.label or self.name


class FormStepConfig(_ConfigModel):
    step_type: Literal["form_input"] = "form_input"
    fields: List[FormFieldConfig] = Field(default_factory=list)
    submit_label: Optional[str] = Field(None, alias="submitLabel")
    description: Optional[str] = None

    @field_validator('fields')
    @classmethod
    def validate_unique_field_names(cls, fields):
        """Ensure field names are unique."""
        names = [field.name for field in fields]
        if len(names) != len(set(names)):
            raise ValueError("Form field names must be unique")
        return fields


class AIProcessingStepConfig(_ConfigModel):
    step_type: Literal["ai_processing"] = "ai_processing"
    prompt: str
    output_key: str = Field(..., alias="outputKey")
    temperature: Optional[float] = None
    max_tokens: Optional[int] = Field(None, alias="maxTokens")


class ToolExecutionStepConfig(_ConfigModel):
    step_type: Literal["tool_execution"] = "tool_execution"
    tool_slug: str = Field(..., alias="toolSlug")
    parameter_mapping: Dict[str, Any] = Field(default_factory=dict, alias="parameterMapping")
    output_mapping: Dict[str, str] = Field(default_factory=dict, alias="outputMapping")


class ApprovalGateStepConfig(_ConfigModel):
    step_type: Literal["approval_gate"] = "approval_gate"
    approver_role: Optional[str] = Field(None, alias="approverRole")
    approver_user_id: Optional[str] = Field(None, alias="approverUserId")
    approval_message: str = Field("", alias="approvalMessage")
    allow_comments: bool = Field(True, alias="allowComments")
    timeout_hours: Optional[int] = Field(None, alias="timeoutHours")


class TransformAction(_ConfigModel):
    type: Literal["set", "append", "transform", "notification", "log"]
    target: Optional[str] = None
    value: Any = None
    transform: Optional[str] = None
    recipient: Optional[str] = None
    subject: Optional[str] = None
    body: Optional[str] = None
    message: Optional[str] = None


class DataTransformStepConfig(_ConfigModel):
    step_type: Literal["data_transform"] = "data_transform"
    actions: List[TransformAction] = Field(default_factory=list)


class ConditionalStepConfig(_ConfigModel):
    step_type: Literal["conditional"] = "conditional"
    condition: str = ""
    true_branch: List[str] = Field(default_factory=list, alias="trueBranch")
    false_branch: List[str] = Field(default_factory=list, alias="falseBranch")


StepConfiguration = Annotated[
    Union[
        FormStepConfig,
        AIProcessingStepConfig,
        ToolExecutionStepConfig,
        ApprovalGateStepConfig,
        DataTransformStepConfig,
        ConditionalStepConfig,
    ],
    Field(discriminator="step_type"),
]


# ---------------------------------------------------------------------------
# Definitions
# ---------------------------------------------------------------------------

class WorkflowDefinition(BaseModel):
    """Immutable workflow template."""
    id: str = Field(..., description="Unique identifier of the definition")
    name: str = Field(..., description="Human readable name")
    slug: str = Field(..., description="URL-friendly unique identifier")
    description: str = Field("", description="What the workflow does")
    category: WorkflowCategory = WorkflowCategory.CUSTOM
    is_active: bool = True
    trigger_type: TriggerType = TriggerType.MANUAL
    trigger_config: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    version: int = Field(1, ge=1, description="Incremented on every edit")
    organization_id: Optional[str] = None
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class WorkflowStep(BaseModel):
    """One step of a workflow definition."""
    id: str = Field(..., description="Unique identifier of the step")
    workflow_id: str = Field(..., description="Owning definition")
    name: str = Field(..., description="Step name")
    step_order: int = Field(..., ge=1, description="1-based position within the definition")
    step_type: StepType
    configuration: StepConfiguration
    is_required: bool = True
    timeout_minutes: int = Field(60, ge=1)
    retry_config: RetryConfig = Field(default_factory=RetryConfig)
    depends_on_steps: List[str] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @model_validator(mode='before')
    @classmethod
    def tag_configuration(cls, data):
        """Tag a raw configuration payload with the step's type."""
        if isinstance(data, dict):
            configuration = data.get("configuration")
            step_type = data.get("step_type")
            if configuration is None:
                configuration = {}
            if isinstance(configuration, dict) and step_type is not None:
                data = dict(data)
                data["configuration"] = {**configuration, "step_type": StepType(step_type).value}
        return data

    @model_validator(mode='after')
    def validate_configuration_variant(self):
        """Ensure the configuration variant matches the step type."""
        if self.configuration.step_type != self.step_type.value:
            raise ValueError(
                f"Configuration for '{self.configuration.step_type}' does not match step type '{self.step_type.value}'"
            )
        return self

    def configuration_payload(self) -> Dict[str, Any]:
        """Configuration as stored: camelCase keys, no type tag."""
        return self.configuration.model_dump(by_alias=True, exclude={"step_type"}, exclude_none=True)


class WorkflowDefinitionWithSteps(BaseModel):
    """A definition together with its steps ordered by step_order."""
    definition: WorkflowDefinition
    steps: List[WorkflowStep] = Field(default_factory=list)

    @field_validator('steps')
    @classmethod
    def sort_steps(cls, steps):
        return sorted(steps, key=lambda step: step.step_order)

    def find_step(self, step_id: str) -> Optional[WorkflowStep]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None


class WorkflowStepInput(BaseModel):
    """Authoring payload for a step; the definition service assigns an id when none is given."""
    id: Optional[str] = None
    name: str
    step_order: int = Field(..., ge=1)
    step_type: StepType
    configuration: Dict[str, Any] = Field(default_factory=dict)
    is_required: bool = True
    timeout_minutes: Optional[int] = Field(None, ge=1)
    retry_config: Optional[RetryConfig] = None
    depends_on_steps: List[str] = Field(default_factory=list)

    @field_validator('name')
    @classmethod
    def validate_name(cls, name):
        """Ensure step name is not empty."""
        if not name or not name.strip():
            raise ValueError("Step name cannot be empty")
        return name.strip()


class WorkflowDefinitionInput(BaseModel):
    """Authoring payload for a definition."""
    name: str
    slug: str
    description: str = ""
    category: WorkflowCategory = WorkflowCategory.CUSTOM
    is_active: bool = True
    trigger_type: TriggerType = TriggerType.MANUAL
    trigger_config: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    organization_id: Optional[str] = None
    created_by: Optional[str] = None

    @field_validator('name')
    @classmethod
    def validate_name(cls, name):
        """Ensure workflow name is not empty."""
        if not name or not name.strip():
            raise ValueError("Workflow name cannot be empty")
        return name.strip()

    @field_validator('slug')
    @classmethod
    def validate_slug(cls, slug):
        """Ensure slug is URL-friendly."""
        if not slug or not re.match(r'^[a-z0-9]+(?:-[a-z0-9]+)*$', slug.strip()):
            raise ValueError("Slug must contain only lowercase letters, digits and single hyphens")
        return slug.strip()


# ---------------------------------------------------------------------------
# Runtime records
# ---------------------------------------------------------------------------

class WorkflowInstance(BaseModel):
    """One execution of a workflow definition."""
    id: str
    workflow_id: str
    workflow_version: int = Field(..., ge=1)
    current_step_id: Optional[str] = None
    status: WorkflowStatus = WorkflowStatus.PENDING
    initiator_id: str
    organization_id: Optional[str] = None
    context_data: Dict[str, Any] = Field(default_factory=dict)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    lock_version: int = Field(1, description="Optimistic concurrency token")


class WorkflowStepExecution(BaseModel):
    """Record of the attempts to run one step within an instance."""
    id: str
    workflow_instance_id: str
    workflow_step_id: str
    execution_order: int = Field(..., ge=1)
    status: StepExecutionStatus = StepExecutionStatus.PENDING
    input_data: Dict[str, Any] = Field(default_factory=dict)
    output_data: Dict[str, Any] = Field(default_factory=dict)
    error_message: Optional[str] = None
    execution_time_ms: Optional[int] = None
    retry_count: int = Field(0, ge=0)
    executed_by: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    lock_version: int = Field(1, description="Optimistic concurrency token")


class WorkflowInstanceWithDetails(BaseModel):
    instance: WorkflowInstance
    definition: WorkflowDefinition
    steps: List[WorkflowStep] = Field(default_factory=list)
    executions: List[WorkflowStepExecution] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Requests and results
# ---------------------------------------------------------------------------

class StepProcessingResult(BaseModel):
    """What the step processor produced for one step."""
    output: Dict[str, Any] = Field(default_factory=dict)
    context_updates: Dict[str, Any] = Field(default_factory=dict)
    requires_user_input: bool = False
    next_action: Optional[str] = None


class ToolInvocationResult(BaseModel):
    """Response of the tool invocation collaborator."""
    success: bool
    data: Any = None
    error: Optional[str] = None


class WorkflowExecutionRequest(BaseModel):
    workflow_id: str
    initial_data: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class WorkflowExecutionResult(BaseModel):
    instance_id: str
    status: WorkflowStatus
    current_step: Optional[WorkflowStep] = None
    message: str


class StepExecutionRequest(BaseModel):
    instance_id: str
    step_id: str
    input_data: Dict[str, Any] = Field(default_factory=dict)
    user_id: str


class StepExecutionResult(BaseModel):
    success: bool = True
    execution_id: str
    output_data: Dict[str, Any] = Field(default_factory=dict)
    next_step: Optional[WorkflowStep] = None
    next_action: Optional[str] = None
    instance_status: WorkflowStatus


class WorkflowProgress(BaseModel):
    total_steps: int
    completed_steps: int
    current_step: int
    percent_complete: int


class WorkflowStatistics(BaseModel):
    total_instances: int = 0
    completed_instances: int = 0
    failed_instances: int = 0
    cancelled_instances: int = 0
    in_progress_instances: int = 0
    average_completion_time: float = Field(0.0, description="Mean seconds from start to completion")
    success_rate: float = Field(0.0, description="Completed share of finished instances, in percent")
