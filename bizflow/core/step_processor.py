"""Step processor: per-step-type business logic.

The processor is stateless. Everything a step needs arrives as arguments
and everything it produces is returned as a ``StepProcessingResult``; the
execution engine decides what a failure means for the instance.
"""

import re
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, StrictBool, ValidationError

from ..models.core import (
    AIProcessingStepConfig,
    ApprovalGateStepConfig,
    DataTransformStepConfig,
    FormFieldConfig,
    FormStepConfig,
    StepProcessingResult,
    StepType,
    ToolExecutionStepConfig,
    TransformAction,
    ValidationResult,
    WorkflowStep,
)
from .exceptions import (
    ConfigurationError,
    FormValidationError,
    StepExecutionError,
    WorkflowEngineError,
)
from .interfaces import CompletionClient, ToolInvoker
from .interpolation import get_nested_value, interpolate
from .logging import get_logger

logger = get_logger(__name__)

CONDITIONAL_EVALUATION_REQUIRED = "conditional_evaluation_required"


def _is_blank(value: Any) -> bool:
    return value is None or value == ""


def _check_type(field: FormFieldConfig, value: Any) -> Optional[str]:
    """Return an error message if ``value`` does not match the field type."""
    label = field.display_name
    if field.type == "number":
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return f"{label} must be a number"
    elif field.type == "boolean":
        if not isinstance(value, bool):
            return f"{label} must be true or false"
    elif field.type == "string":
        if not isinstance(value, str):
            return f"{label} must be a string"
    elif field.type == "date":
        if not isinstance(value, str):
            return f"{label} must be a date"
        try:
            datetime.fromisoformat(value)
        except ValueError:
            return f"{label} must be a valid ISO date"
    elif field.type == "enum":
        if field.options and value not in field.options:
            return f"{label} must be one of: {', '.join(field.options)}"
    elif field.type == "array":
        if not isinstance(value, list):
            return f"{label} must be a list"
    return None


def _check_rules(field: FormFieldConfig, value: Any) -> Optional[str]:
    """Return an error message if ``value`` breaks the field's validation rules."""
    rules = field.validation
    if rules is None:
        return None
    label = field.display_name

    if isinstance(value, str):
        if rules.min_length is not None and len(value) < rules.min_length:
            return f"{label} must be at least {rules.min_length} characters"
        if rules.max_length is not None and len(value) > rules.max_length:
            return f"{label} must be at most {rules.max_length} characters"
        if rules.pattern is not None and not re.search(rules.pattern, value):
            return f"{label} has an invalid format"
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        if rules.min is not None and value < rules.min:
            return f"{label} must be at least {rules.min:g}"
        if rules.max is not None and value > rules.max:
            return f"{label} must be at most {rules.max:g}"
    return None


def validate_form_data(fields: Iterable[FormFieldConfig], input_data: Dict[str, Any]) -> Dict[str, str]:
    """Validate form input against a field list.

    Returns a mapping of field name to the first error found for that field;
    an empty mapping means the input is valid.
    """
    field_errors: Dict[str, str] = {}
    for field in fields:
        value = input_data.get(field.name)
        if _is_blank(value):
            if field.required:
                field_errors[field.name] = f"{field.display_name} is required"
            continue

        error = _check_type(field, value) or _check_rules(field, value)
        if error:
            field_errors[field.name] = error
    return field_errors


class ApprovalDecision(BaseModel):
    """Input accepted by an approval gate."""
    approved: StrictBool = False
    comment: Optional[str] = None


class StepHandler(ABC):
    """Executes one step type."""

    step_type: StepType

    @abstractmethod
    def handle(
        self,
        step: WorkflowStep,
        input_data: Dict[str, Any],
        context_data: Dict[str, Any],
        actor_id: str,
    ) -> StepProcessingResult:
        ...


class FormInputHandler(StepHandler):
    step_type = StepType.FORM_INPUT

    def handle(self, step, input_data, context_data, actor_id):
        config: FormStepConfig = step.configuration
        field_errors = validate_form_data(config.fields, input_data)
        if field_errors:
            raise FormValidationError(field_errors, step_id=step.id)

        validated = {
            field.name: input_data[field.name]
            for field in config.fields
            if field.name in input_data
        }
        return StepProcessingResult(output=dict(validated), context_updates=dict(validated))


class AIProcessingHandler(StepHandler):
    step_type = StepType.AI_PROCESSING

    def __init__(self, completion_client: Optional[CompletionClient]):
        self.completion_client = completion_client

    def handle(self, step, input_data, context_data, actor_id):
        config: AIProcessingStepConfig = step.configuration
        if self.completion_client is None:
            raise StepExecutionError(
                "No completion client is configured",
                step_id=step.id,
                step_type=step.step_type.value,
            )

        prompt = interpolate(config.prompt, context_data)
        options: Dict[str, Any] = {}
        if config.temperature is not None:
            options["temperature"] = config.temperature
        if config.max_tokens is not None:
            options["max_tokens"] = config.max_tokens

        response = self.completion_client.complete(prompt, [], **options)
        return StepProcessingResult(
            output={config.output_key: response},
            context_updates={config.output_key: response},
        )


class ToolExecutionHandler(StepHandler):
    step_type = StepType.TOOL_EXECUTION

    def __init__(self, tool_invoker: Optional[ToolInvoker]):
        self.tool_invoker = tool_invoker

    def handle(self, step, input_data, context_data, actor_id):
        config: ToolExecutionStepConfig = step.configuration
        if self.tool_invoker is None:
            raise StepExecutionError(
                "No tool invoker is configured",
                step_id=step.id,
                step_type=step.step_type.value,
            )

        parameters = {
            name: interpolate(template, context_data)
            for name, template in config.parameter_mapping.items()
        }
        result = self.tool_invoker.invoke(config.tool_slug, parameters, actor_id)
        if not result.success:
            raise StepExecutionError(
                result.error or "Tool execution failed",
                step_id=step.id,
                step_type=step.step_type.value,
            )

        context_updates: Dict[str, Any] = {f"{config.tool_slug}_result": result.data}
        for context_key, path in config.output_mapping.items():
            context_updates[context_key] = get_nested_value(result.data, path)

        output = result.data if isinstance(result.data, dict) else {"result": result.data}
        return StepProcessingResult(output=output, context_updates=context_updates)


class ApprovalGateHandler(StepHandler):
    step_type = StepType.APPROVAL_GATE

    def handle(self, step, input_data, context_data, actor_id):
        config: ApprovalGateStepConfig = step.configuration
        try:
            decision = ApprovalDecision.model_validate(input_data)
        except ValidationError:
            decision = ApprovalDecision()

        if decision.approved is not True:
            raise StepExecutionError(
                "Approval was not granted",
                step_id=step.id,
                step_type=step.step_type.value,
            )

        comment = decision.comment if config.allow_comments else None
        timestamp = datetime.utcnow().isoformat()
        return StepProcessingResult(
            output={"approved": True, "approvalComment": comment, "approvedAt": timestamp},
            context_updates={
                "lastApproval": {
                    "approved": True,
                    "comment": comment,
                    "timestamp": timestamp,
                    "approvedBy": actor_id,
                }
            },
        )


class DataTransformHandler(StepHandler):
    step_type = StepType.DATA_TRANSFORM

    def handle(self, step, input_data, context_data, actor_id):
        config: DataTransformStepConfig = step.configuration
        working = dict(context_data)
        output: Dict[str, Any] = {}
        updates: Dict[str, Any] = {}

        for action in config.actions:
            self._apply(step, action, working, output, updates)

        return StepProcessingResult(output=output, context_updates=updates)

    def _apply(
        self,
        step: WorkflowStep,
        action: TransformAction,
        working: Dict[str, Any],
        output: Dict[str, Any],
        updates: Dict[str, Any],
    ) -> None:
        if action.type in ("set", "append") and not action.target:
            raise StepExecutionError(
                f"'{action.type}' action requires a target",
                step_id=step.id,
                step_type=step.step_type.value,
            )

        if action.type == "set":
            value = interpolate(action.value, working)
            working[action.target] = value
            updates[action.target] = value
            output[action.target] = value

        elif action.type == "append":
            existing = working.get(action.target)
            if existing is None:
                existing = []
            if not isinstance(existing, list):
                raise StepExecutionError(
                    f"Cannot append to '{action.target}': existing value is not a list",
                    step_id=step.id,
                    step_type=step.step_type.value,
                )
            value = existing + [interpolate(action.value, working)]
            working[action.target] = value
            updates[action.target] = value

        elif action.type == "notification":
            output["notification"] = {
                "recipient": interpolate(action.recipient, working),
                "subject": interpolate(action.subject, working),
                "body": interpolate(action.body, working),
            }

        elif action.type == "log":
            message = interpolate(action.message or "", working)
            logger.info(message)
            output["logMessage"] = message

        # "transform" actions are accepted but have no effect yet


class ConditionalHandler(StepHandler):
    step_type = StepType.CONDITIONAL

    def handle(self, step, input_data, context_data, actor_id):
        return StepProcessingResult(next_action=CONDITIONAL_EVALUATION_REQUIRED)


class StepProcessor:
    """Dispatches a step to the handler registered for its type."""

    def __init__(
        self,
        completion_client: Optional[CompletionClient] = None,
        tool_invoker: Optional[ToolInvoker] = None,
        handlers: Optional[List[StepHandler]] = None,
    ):
        if handlers is None:
            handlers = [
                FormInputHandler(),
                AIProcessingHandler(completion_client),
                ToolExecutionHandler(tool_invoker),
                ApprovalGateHandler(),
                DataTransformHandler(),
                ConditionalHandler(),
            ]

        self._handlers: Dict[StepType, StepHandler] = {handler.step_type: handler for handler in handlers}
        missing = [step_type.value for step_type in StepType if step_type not in self._handlers]
        if missing:
            raise ConfigurationError(f"No step handler registered for: {', '.join(missing)}")

    def process_step(
        self,
        step: WorkflowStep,
        input_data: Dict[str, Any],
        context_data: Dict[str, Any],
        actor_id: str,
    ) -> StepProcessingResult:
        """
        Execute a step's business logic.

        Args:
            step: Step to execute
            input_data: Data submitted for this attempt
            context_data: Accumulated instance context (not modified)
            actor_id: User executing the step

        Returns:
            Output and context updates produced by the step

        Raises:
            FormValidationError: If form input is invalid
            StepExecutionError: If the step's logic or a collaborator fails
        """
        handler = self._handlers[step.step_type]
        logger.debug(f"Processing step {step.id} ({step.step_type.value})")

        try:
            return handler.handle(step, input_data or {}, dict(context_data or {}), actor_id)
        except WorkflowEngineError:
            raise
        except Exception as e:
            logger.error(f"Step {step.id} raised {type(e).__name__}: {e}", exc_info=True)
            raise StepExecutionError(
                f"Step '{step.name}' failed: {e}",
                step_id=step.id,
                step_type=step.step_type.value,
            ) from e

    def validate_step_input(self, step: WorkflowStep, input_data: Dict[str, Any]) -> ValidationResult:
        """Check that the required fields of a form step are present."""
        if step.step_type != StepType.FORM_INPUT:
            return ValidationResult(is_valid=True)

        errors = [
            f"{field.display_name} is required"
            for field in step.configuration.fields
            if field.required and _is_blank((input_data or {}).get(field.name))
        ]
        return ValidationResult(is_valid=not errors, errors=errors)
