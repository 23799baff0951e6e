"""Tests for the step processor and its per-type handlers."""

import pytest

from bizflow.core.exceptions import ConfigurationError, FormValidationError, StepExecutionError
from bizflow.core.step_processor import (
    FormInputHandler,
    StepProcessor,
    validate_form_data,
)
from bizflow.models.core import FormFieldConfig, StepType, ToolInvocationResult

from conftest import FakeCompletionClient, FakeToolInvoker, form_step, make_step


def fields(*specs):
    return [FormFieldConfig.model_validate(schema) for schema in specs]


class TestFormValidation:
    """Test cases for form field validation."""

    def test_reports_every_missing_required_field(self):
        """Both missing fields are reported in one pass."""
        errors = validate_form_data(
            fields(
                {"name": "firstName", "required": True, "label": "First Name"},
                {"name": "email", "required": True, "label": "Email Address"},
                {"name": "phone", "required": False},
            ),
            {},
        )

        assert set(errors) == {"firstName", "email"}
        assert errors["firstName"] == "First Name is required"

    def test_empty_string_counts_as_missing(self):
        errors = validate_form_data(fields({"name": "title", "required": True}), {"title": ""})
        assert errors == {"title": "title is required"}

    def test_optional_field_may_be_omitted(self):
        assert validate_form_data(fields({"name": "phone", "type": "string"}), {}) == {}

    def test_type_checks(self):
        """Values must match the declared field type."""
        schema = fields(
            {"name": "amount", "type": "number"},
            {"name": "urgent", "type": "boolean"},
            {"name": "startDate", "type": "date"},
            {"name": "tags", "type": "array"},
            {"name": "department", "type": "enum", "options": ["HR", "IT"]},
        )
        errors = validate_form_data(schema, {
            "amount": "12",
            "urgent": "yes",
            "startDate": "next week",
            "tags": "a,b",
            "department": "Legal",
        })

        assert set(errors) == {"amount", "urgent", "startDate", "tags", "department"}
        assert "HR, IT" in errors["department"]

    def test_boolean_is_not_a_number(self):
        errors = validate_form_data(fields({"name": "amount", "type": "number"}), {"amount": True})
        assert "amount" in errors

    def test_valid_values_pass(self):
        schema = fields(
            {"name": "amount", "type": "number", "validation": {"min": 1, "max": 5000}},
            {"name": "startDate", "type": "date"},
            {"name": "code", "type": "string", "validation": {"minLength": 3, "pattern": "^[A-Z]+$"}},
        )
        assert validate_form_data(schema, {"amount": 1500, "startDate": "2024-03-01", "code": "ABC"}) == {}

    def test_validation_rules(self):
        schema = fields(
            {"name": "amount", "type": "number", "validation": {"min": 1, "max": 100}},
            {"name": "code", "type": "string", "validation": {"maxLength": 3}},
            {"name": "ref", "type": "string", "validation": {"pattern": "^REF-"}},
        )
        errors = validate_form_data(schema, {"amount": 250, "code": "ABCD", "ref": "X-1"})

        assert errors["amount"] == "amount must be at most 100"
        assert errors["code"] == "code must be at most 3 characters"
        assert errors["ref"] == "ref has an invalid format"


class TestFormInputHandler:
    """Test cases for form_input steps."""

    def test_output_contains_only_schema_fields(self):
        step = form_step([{"name": "title", "required": True}, {"name": "notes"}])
        result = FormInputHandler().handle(step, {"title": "Laptop", "extra": 1}, {}, "user-1")

        assert result.output == {"title": "Laptop"}
        assert result.context_updates == {"title": "Laptop"}

    def test_invalid_input_raises_form_error(self):
        step = form_step([{"name": "a", "required": True}, {"name": "b", "required": True}])

        with pytest.raises(FormValidationError) as exc_info:
            FormInputHandler().handle(step, {}, {}, "user-1")

        assert set(exc_info.value.field_errors) == {"a", "b"}
        assert "a is required" in exc_info.value.message
        assert "b is required" in exc_info.value.message


class TestAIProcessing:
    """Test cases for ai_processing steps."""

    def test_prompt_is_interpolated_and_stored_under_output_key(self, completion_client, step_processor):
        step = make_step(StepType.AI_PROCESSING, {
            "prompt": "Welcome {{firstName}} to {{department}}",
            "outputKey": "welcomeEmail",
            "temperature": 0.2,
        })

        result = step_processor.process_step(step, {}, {"firstName": "Ada", "department": "IT"}, "user-1")

        assert completion_client.calls[0]["prompt"] == "Welcome Ada to IT"
        assert completion_client.calls[0]["history"] == []
        assert completion_client.calls[0]["options"] == {"temperature": 0.2}
        assert result.output == {"welcomeEmail": "Generated text"}
        assert result.context_updates == {"welcomeEmail": "Generated text"}

    def test_client_failure_becomes_step_error(self):
        processor = StepProcessor(completion_client=FakeCompletionClient(error=RuntimeError("rate limited")))
        step = make_step(StepType.AI_PROCESSING, {"prompt": "Hi", "outputKey": "reply"})

        with pytest.raises(StepExecutionError) as exc_info:
            processor.process_step(step, {}, {}, "user-1")

        assert "rate limited" in exc_info.value.message

    def test_missing_client(self):
        processor = StepProcessor(completion_client=None)
        step = make_step(StepType.AI_PROCESSING, {"prompt": "Hi", "outputKey": "reply"})

        with pytest.raises(StepExecutionError):
            processor.process_step(step, {}, {}, "user-1")


class TestToolExecution:
    """Test cases for tool_execution steps."""

    def test_parameters_are_interpolated_and_results_mapped(self):
        invoker = FakeToolInvoker({
            "createEmployeeRecord": ToolInvocationResult(success=True, data={"employee": {"id": "emp-1"}}),
        })
        processor = StepProcessor(completion_client=FakeCompletionClient(), tool_invoker=invoker)
        step = make_step(StepType.TOOL_EXECUTION, {
            "toolSlug": "createEmployeeRecord",
            "parameterMapping": {"name": "{{firstName}} {{lastName}}", "email": "{{email}}"},
            "outputMapping": {"employeeId": "employee.id"},
        })

        result = processor.process_step(
            step, {}, {"firstName": "Ada", "lastName": "Lovelace", "email": "ada@example.com"}, "user-1"
        )

        assert invoker.calls[0]["parameters"] == {"name": "Ada Lovelace", "email": "ada@example.com"}
        assert invoker.calls[0]["actor_id"] == "user-1"
        assert result.output == {"employee": {"id": "emp-1"}}
        assert result.context_updates["createEmployeeRecord_result"] == {"employee": {"id": "emp-1"}}
        assert result.context_updates["employeeId"] == "emp-1"

    def test_scalar_result_is_wrapped(self):
        invoker = FakeToolInvoker({"count": ToolInvocationResult(success=True, data=7)})
        processor = StepProcessor(tool_invoker=invoker)
        step = make_step(StepType.TOOL_EXECUTION, {"toolSlug": "count"})

        result = processor.process_step(step, {}, {}, "user-1")

        assert result.output == {"result": 7}

    def test_failed_tool_raises_with_its_error(self, tool_invoker, step_processor):
        tool_invoker.results["broken"] = ToolInvocationResult(success=False, error="Service down")
        step = make_step(StepType.TOOL_EXECUTION, {"toolSlug": "broken"})

        with pytest.raises(StepExecutionError) as exc_info:
            step_processor.process_step(step, {}, {}, "user-1")

        assert exc_info.value.message == "Service down"

    def test_failed_tool_without_error_message(self, tool_invoker, step_processor):
        tool_invoker.results["silent"] = ToolInvocationResult(success=False)
        step = make_step(StepType.TOOL_EXECUTION, {"toolSlug": "silent"})

        with pytest.raises(StepExecutionError) as exc_info:
            step_processor.process_step(step, {}, {}, "user-1")

        assert exc_info.value.message == "Tool execution failed"


class TestApprovalGate:
    """Test cases for approval_gate steps."""

    def test_approval_records_decision(self, step_processor):
        step = make_step(StepType.APPROVAL_GATE, {"approverRole": "manager"})

        result = step_processor.process_step(step, {"approved": True, "comment": "Looks good"}, {}, "mgr-1")

        approval = result.context_updates["lastApproval"]
        assert approval["approved"] is True
        assert approval["comment"] == "Looks good"
        assert approval["approvedBy"] == "mgr-1"
        assert approval["timestamp"]
        assert result.output["approved"] is True

    @pytest.mark.parametrize("input_data", [{}, {"approved": False}, {"approved": "true"}, {"approved": 1}])
    def test_anything_but_true_is_rejected(self, step_processor, input_data):
        step = make_step(StepType.APPROVAL_GATE, {})

        with pytest.raises(StepExecutionError) as exc_info:
            step_processor.process_step(step, input_data, {}, "mgr-1")

        assert exc_info.value.message == "Approval was not granted"

    def test_comment_dropped_when_comments_disabled(self, step_processor):
        step = make_step(StepType.APPROVAL_GATE, {"allowComments": False})

        result = step_processor.process_step(step, {"approved": True, "comment": "ignored"}, {}, "mgr-1")

        assert result.context_updates["lastApproval"]["comment"] is None


class TestDataTransform:
    """Test cases for data_transform steps."""

    def test_set_interpolates_to_string(self, step_processor):
        """A templated value is always a string, even when the context value is a number."""
        step = make_step(StepType.DATA_TRANSFORM, {"actions": [
            {"type": "set", "target": "approvedAmount", "value": "{{amount}}"},
            {"type": "set", "target": "limit", "value": 5000},
        ]})

        result = step_processor.process_step(step, {}, {"amount": 1500}, "user-1")

        assert result.context_updates["approvedAmount"] == "1500"
        assert result.context_updates["limit"] == 5000

    def test_append_builds_list(self, step_processor):
        step = make_step(StepType.DATA_TRANSFORM, {"actions": [
            {"type": "append", "target": "history", "value": "created"},
            {"type": "append", "target": "history", "value": "by {{owner}}"},
        ]})

        result = step_processor.process_step(step, {}, {"history": ["draft"], "owner": "ada"}, "user-1")

        assert result.context_updates["history"] == ["draft", "created", "by ada"]

    def test_append_to_non_list_fails(self, step_processor):
        step = make_step(StepType.DATA_TRANSFORM, {"actions": [
            {"type": "append", "target": "history", "value": "x"},
        ]})

        with pytest.raises(StepExecutionError):
            step_processor.process_step(step, {}, {"history": "not a list"}, "user-1")

    def test_set_requires_target(self, step_processor):
        step = make_step(StepType.DATA_TRANSFORM, {"actions": [{"type": "set", "value": "x"}]})

        with pytest.raises(StepExecutionError):
            step_processor.process_step(step, {}, {}, "user-1")

    def test_notification_and_log(self, step_processor):
        step = make_step(StepType.DATA_TRANSFORM, {"actions": [
            {"type": "notification", "recipient": "{{email}}", "subject": "Welcome", "body": "{{welcomeEmail}}"},
            {"type": "log", "message": "Done for {{firstName}}"},
        ]})

        result = step_processor.process_step(
            step, {}, {"email": "ada@example.com", "welcomeEmail": "Hello", "firstName": "Ada"}, "user-1"
        )

        assert result.output["notification"] == {"recipient": "ada@example.com", "subject": "Welcome", "body": "Hello"}
        assert result.output["logMessage"] == "Done for Ada"
        assert result.context_updates == {}

    def test_context_is_not_mutated(self, step_processor):
        context = {"total": 1}
        step = make_step(StepType.DATA_TRANSFORM, {"actions": [{"type": "set", "target": "total", "value": 2}]})

        step_processor.process_step(step, {}, context, "user-1")

        assert context == {"total": 1}


class TestStepProcessor:
    """Test cases for dispatch and input checks."""

    def test_conditional_is_a_no_op(self, step_processor):
        step = make_step(StepType.CONDITIONAL, {"condition": "amount > 100"})

        result = step_processor.process_step(step, {}, {"amount": 500}, "user-1")

        assert result.output == {}
        assert result.context_updates == {}
        assert result.next_action == "conditional_evaluation_required"

    def test_missing_handler_is_a_configuration_error(self):
        with pytest.raises(ConfigurationError):
            StepProcessor(handlers=[FormInputHandler()])

    def test_validate_step_input_checks_required_fields(self, step_processor):
        step = form_step([{"name": "title", "required": True, "label": "Title"}, {"name": "notes"}])

        assert step_processor.validate_step_input(step, {"title": "x"}).is_valid
        result = step_processor.validate_step_input(step, {})
        assert not result.is_valid
        assert result.errors == ["Title is required"]

    def test_validate_step_input_ignores_other_types(self, step_processor):
        step = make_step(StepType.APPROVAL_GATE, {})
        assert step_processor.validate_step_input(step, {}).is_valid
