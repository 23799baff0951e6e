"""Tests for the workflow execution engine."""

import threading

import pytest

from bizflow.core.exceptions import (
    ConcurrencyConflictError,
    FormValidationError,
    InstanceNotFoundError,
    InvalidWorkflowStateError,
    RetryPendingError,
    StepExecutionNotFoundError,
    StepNotFoundError,
    WorkflowAuthorizationError,
    WorkflowFailedError,
    WorkflowNotFoundError,
)
from bizflow.core.execution_engine import WorkflowExecutionEngine, find_next_step
from bizflow.models.core import (
    StepExecutionStatus,
    StepType,
    ToolInvocationResult,
    WorkflowStatus,
)

from conftest import form_step, make_definition, make_step


def purchase_request_steps(max_retries=3):
    return [
        form_step(
            [
                {"name": "item", "required": True, "label": "Item"},
                {"name": "amount", "type": "number", "required": True, "label": "Amount"},
            ],
            step_order=1,
            name="Request",
            step_id="request",
        ),
        make_step(StepType.APPROVAL_GATE, {"approverRole": "manager"}, step_order=2,
                  name="Approve", step_id="approve", max_retries=max_retries),
        make_step(StepType.DATA_TRANSFORM, {"actions": [
            {"type": "set", "target": "approvedAmount", "value": "{{amount}}"},
        ]}, step_order=3, name="Record", step_id="record"),
    ]


@pytest.fixture
def purchase_workflow(memory_definitions):
    return memory_definitions.add(make_definition(purchase_request_steps(max_retries=1), workflow_id="purchase"))


class TestInstanceCreation:
    """Test cases for starting workflow instances."""

    def test_create_instance_opens_first_step(self, engine, memory_store, purchase_workflow):
        result = engine.create_instance("purchase", "user-1", initial_context={"requester": "user-1"})

        assert result.status == WorkflowStatus.IN_PROGRESS
        assert result.current_step.id == "request"
        assert result.message == "Workflow started successfully"

        instance = memory_store.get_instance(result.instance_id)
        assert instance.workflow_version == 1
        assert instance.current_step_id == "request"
        assert instance.context_data == {"requester": "user-1"}
        assert instance.started_at is not None

        executions = memory_store.list_executions(result.instance_id)
        assert len(executions) == 1
        assert executions[0].status == StepExecutionStatus.PENDING
        assert executions[0].execution_order == 1
        assert executions[0].input_data == {"requester": "user-1"}

    def test_unknown_workflow(self, engine):
        with pytest.raises(WorkflowNotFoundError):
            engine.create_instance("missing", "user-1")

    def test_inactive_workflow(self, engine, memory_definitions, memory_store):
        memory_definitions.add(make_definition([form_step([{"name": "a"}])], workflow_id="off", is_active=False))

        with pytest.raises(InvalidWorkflowStateError):
            engine.create_instance("off", "user-1")
        assert memory_store.list_instances() == []

    def test_workflow_without_steps_writes_nothing(self, engine, memory_definitions, memory_store):
        memory_definitions.add(make_definition([], workflow_id="empty"))

        with pytest.raises(InvalidWorkflowStateError):
            engine.create_instance("empty", "user-1")
        assert memory_store.list_instances() == []


class TestStepSequencing:
    """Test cases for step execution and advancement."""

    def test_full_run_accumulates_context(self, engine, memory_store, purchase_workflow):
        instance_id = engine.create_instance("purchase", "user-1").instance_id

        first = engine.execute_step(instance_id, "request", {"item": "Laptop", "amount": 1500}, "user-1")
        assert first.next_step.id == "approve"
        assert first.instance_status == WorkflowStatus.IN_PROGRESS

        second = engine.execute_step(instance_id, "approve", {"approved": True, "comment": "ok"}, "mgr-1")
        assert second.next_step.id == "record"

        third = engine.execute_step(instance_id, "record", {}, "user-1")
        assert third.next_step is None
        assert third.instance_status == WorkflowStatus.COMPLETED

        instance = memory_store.get_instance(instance_id)
        assert instance.status == WorkflowStatus.COMPLETED
        assert instance.completed_at is not None
        assert instance.context_data["item"] == "Laptop"
        assert instance.context_data["amount"] == 1500
        assert instance.context_data["lastApproval"]["approvedBy"] == "mgr-1"
        assert instance.context_data["approvedAmount"] == "1500"

        executions = memory_store.list_executions(instance_id)
        assert [e.execution_order for e in executions] == [1, 2, 3]
        assert all(e.status == StepExecutionStatus.COMPLETED for e in executions)
        assert executions[1].input_data["item"] == "Laptop"
        assert executions[0].executed_by == "user-1"
        assert executions[1].executed_by == "mgr-1"

    def test_only_the_open_step_can_run(self, engine, purchase_workflow):
        instance_id = engine.create_instance("purchase", "user-1").instance_id

        with pytest.raises(StepExecutionNotFoundError):
            engine.execute_step(instance_id, "approve", {"approved": True}, "mgr-1")

    def test_unknown_step(self, engine, purchase_workflow):
        instance_id = engine.create_instance("purchase", "user-1").instance_id

        with pytest.raises(StepNotFoundError):
            engine.execute_step(instance_id, "nope", {}, "user-1")

    def test_unknown_instance(self, engine):
        with pytest.raises(InstanceNotFoundError):
            engine.execute_step("missing", "request", {}, "user-1")

    def test_completed_step_cannot_run_again(self, engine, purchase_workflow):
        instance_id = engine.create_instance("purchase", "user-1").instance_id
        engine.execute_step(instance_id, "request", {"item": "Laptop", "amount": 10}, "user-1")

        with pytest.raises(StepExecutionNotFoundError):
            engine.execute_step(instance_id, "request", {"item": "Desk", "amount": 20}, "user-1")

    def test_find_next_step(self):
        steps = purchase_request_steps()
        assert find_next_step(steps, steps[0]).id == "approve"
        assert find_next_step(steps, steps[2]) is None


class TestFailureHandling:
    """Test cases for validation errors, retries and terminal failure."""

    def test_form_errors_do_not_consume_retries(self, engine, memory_store, purchase_workflow):
        instance_id = engine.create_instance("purchase", "user-1").instance_id

        for _ in range(3):
            with pytest.raises(FormValidationError) as exc_info:
                engine.execute_step(instance_id, "request", {}, "user-1")

        assert set(exc_info.value.field_errors) == {"item", "amount"}
        execution = memory_store.get_open_execution(instance_id, "request")
        assert execution.status == StepExecutionStatus.WAITING_INPUT
        assert execution.retry_count == 0
        assert memory_store.get_instance(instance_id).status == WorkflowStatus.IN_PROGRESS

        result = engine.execute_step(instance_id, "request", {"item": "Laptop", "amount": 1}, "user-1")
        assert result.next_step.id == "approve"

    def test_retry_then_fail(self, engine, memory_store, purchase_workflow):
        """With max_retries=1 the second failed attempt fails the workflow."""
        instance_id = engine.create_instance("purchase", "user-1").instance_id
        engine.execute_step(instance_id, "request", {"item": "Laptop", "amount": 1}, "user-1")

        with pytest.raises(RetryPendingError) as exc_info:
            engine.execute_step(instance_id, "approve", {"approved": False}, "mgr-1")
        assert exc_info.value.retry_count == 1
        assert exc_info.value.max_retries == 1
        assert exc_info.value.retry_after == 0

        execution = memory_store.get_open_execution(instance_id, "approve")
        assert execution.status == StepExecutionStatus.PENDING
        assert execution.error_message == "Approval was not granted"

        with pytest.raises(WorkflowFailedError):
            engine.execute_step(instance_id, "approve", {"approved": False}, "mgr-1")

        instance = memory_store.get_instance(instance_id)
        assert instance.status == WorkflowStatus.FAILED
        assert instance.metadata["errorMessage"] == "Approval was not granted"
        assert instance.metadata["failedStepId"] == "approve"
        assert instance.completed_at is not None

        executions = memory_store.list_executions(instance_id)
        assert executions[-1].status == StepExecutionStatus.FAILED
        assert executions[-1].retry_count == 1

    def test_retry_can_succeed(self, engine, memory_store, purchase_workflow):
        instance_id = engine.create_instance("purchase", "user-1").instance_id
        engine.execute_step(instance_id, "request", {"item": "Laptop", "amount": 1}, "user-1")

        with pytest.raises(RetryPendingError):
            engine.execute_step(instance_id, "approve", {}, "mgr-1")
        result = engine.execute_step(instance_id, "approve", {"approved": True}, "mgr-1")

        assert result.next_step.id == "record"
        executions = memory_store.list_executions(instance_id)
        assert executions[1].status == StepExecutionStatus.COMPLETED
        assert executions[1].retry_count == 1
        assert executions[1].error_message is None

    def test_attempts_are_bounded(self, engine, memory_definitions, tool_invoker):
        tool_invoker.results["flaky"] = ToolInvocationResult(success=False, error="Service down")
        memory_definitions.add(make_definition(
            [make_step(StepType.TOOL_EXECUTION, {"toolSlug": "flaky"}, max_retries=3, step_id="call")],
            workflow_id="tooling",
        ))
        instance_id = engine.create_instance("tooling", "user-1").instance_id

        for _ in range(3):
            with pytest.raises(RetryPendingError):
                engine.execute_step(instance_id, "call", {}, "user-1")
        with pytest.raises(WorkflowFailedError):
            engine.execute_step(instance_id, "call", {}, "user-1")

        assert len(tool_invoker.calls) == 4

    def test_failed_workflow_rejects_steps(self, engine, memory_definitions, tool_invoker):
        tool_invoker.results["broken"] = ToolInvocationResult(success=False, error="boom")
        memory_definitions.add(make_definition(
            [make_step(StepType.TOOL_EXECUTION, {"toolSlug": "broken"}, max_retries=0, step_id="call")],
            workflow_id="broken",
        ))
        instance_id = engine.create_instance("broken", "user-1").instance_id

        with pytest.raises(WorkflowFailedError):
            engine.execute_step(instance_id, "call", {}, "user-1")
        with pytest.raises(InvalidWorkflowStateError):
            engine.execute_step(instance_id, "call", {}, "user-1")


class TestCancellation:
    """Test cases for cancelling instances."""

    def test_initiator_can_cancel(self, engine, memory_store, purchase_workflow):
        instance_id = engine.create_instance("purchase", "user-1").instance_id

        cancelled = engine.cancel_workflow(instance_id, "user-1")

        assert cancelled.status == WorkflowStatus.CANCELLED
        assert cancelled.completed_at is not None
        with pytest.raises(InvalidWorkflowStateError):
            engine.execute_step(instance_id, "request", {"item": "x", "amount": 1}, "user-1")

    def test_other_user_cannot_cancel(self, engine, memory_store, purchase_workflow):
        instance_id = engine.create_instance("purchase", "user-1").instance_id

        with pytest.raises(WorkflowAuthorizationError):
            engine.cancel_workflow(instance_id, "user-2")
        assert memory_store.get_instance(instance_id).status == WorkflowStatus.IN_PROGRESS

    def test_finished_workflow_cannot_be_cancelled(self, engine, purchase_workflow):
        instance_id = engine.create_instance("purchase", "user-1").instance_id
        engine.cancel_workflow(instance_id, "user-1")

        with pytest.raises(InvalidWorkflowStateError):
            engine.cancel_workflow(instance_id, "user-1")


class TestVersionPinning:
    """Instances keep running the definition version they started on."""

    def test_instance_uses_pinned_steps(self, engine, memory_definitions, memory_store):
        memory_definitions.add(make_definition(purchase_request_steps(), workflow_id="purchase"))
        old_instance = engine.create_instance("purchase", "user-1").instance_id

        new_steps = [
            form_step([{"name": "title", "required": True}], step_order=1, step_id="title-form",
                      workflow_id="purchase"),
        ]
        updated = memory_definitions.replace_steps("purchase", new_steps)
        assert updated.definition.version == 2

        new_instance = engine.create_instance("purchase", "user-1")
        assert new_instance.current_step.id == "title-form"
        assert memory_store.get_instance(new_instance.instance_id).workflow_version == 2

        result = engine.execute_step(old_instance, "request", {"item": "Laptop", "amount": 1}, "user-1")
        assert result.next_step.id == "approve"

        details = engine.get_instance_details(old_instance)
        assert details.definition.version == 1
        assert [step.id for step in details.steps] == ["request", "approve", "record"]


class TestConcurrency:
    """Test cases for concurrent and stale writers."""

    def test_stale_instance_update_conflicts(self, engine, memory_store, purchase_workflow):
        instance_id = engine.create_instance("purchase", "user-1").instance_id
        first = memory_store.get_instance(instance_id)
        second = memory_store.get_instance(instance_id)

        first.metadata = {"note": "first"}
        memory_store.update_instance(first)

        second.metadata = {"note": "second"}
        with pytest.raises(ConcurrencyConflictError):
            memory_store.update_instance(second)

    def test_parallel_submissions_complete_the_step_once(self, memory_definitions, memory_store, step_processor):
        engine = WorkflowExecutionEngine(memory_definitions, memory_store, step_processor)
        memory_definitions.add(make_definition(purchase_request_steps(), workflow_id="purchase"))
        instance_id = engine.create_instance("purchase", "user-1").instance_id

        outcomes = []

        def submit():
            try:
                engine.execute_step(instance_id, "request", {"item": "Laptop", "amount": 5}, "user-1")
                outcomes.append("ok")
            except StepExecutionNotFoundError:
                outcomes.append("already done")

        threads = [threading.Thread(target=submit) for _ in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert outcomes.count("ok") == 1
        executions = memory_store.list_executions(instance_id)
        assert [e.workflow_step_id for e in executions] == ["request", "approve"]


class TestQueries:
    """Test cases for progress, listing and statistics."""

    def test_progress(self, engine, purchase_workflow):
        instance_id = engine.create_instance("purchase", "user-1").instance_id

        progress = engine.get_progress(instance_id)
        assert progress.total_steps == 3
        assert progress.completed_steps == 0
        assert progress.current_step == 1
        assert progress.percent_complete == 0

        engine.execute_step(instance_id, "request", {"item": "Laptop", "amount": 1}, "user-1")
        progress = engine.get_progress(instance_id)
        assert progress.completed_steps == 1
        assert progress.current_step == 2
        assert progress.percent_complete == 33

    def test_progress_of_completed_workflow(self, engine, purchase_workflow):
        instance_id = engine.create_instance("purchase", "user-1").instance_id
        engine.execute_step(instance_id, "request", {"item": "Laptop", "amount": 1}, "user-1")
        engine.execute_step(instance_id, "approve", {"approved": True}, "mgr-1")
        engine.execute_step(instance_id, "record", {}, "user-1")

        progress = engine.get_progress(instance_id)
        assert progress.completed_steps == 3
        assert progress.percent_complete == 100

    def test_fetch_user_instances(self, engine, purchase_workflow):
        first = engine.create_instance("purchase", "user-1").instance_id
        second = engine.create_instance("purchase", "user-1").instance_id
        engine.create_instance("purchase", "user-2")
        engine.cancel_workflow(first, "user-1")

        instances = engine.fetch_user_instances("user-1")
        assert [i.id for i in instances] == [second, first]

        cancelled = engine.fetch_user_instances("user-1", status=WorkflowStatus.CANCELLED)
        assert [i.id for i in cancelled] == [first]

        assert engine.fetch_instance("missing") is None

    def test_statistics(self, engine, purchase_workflow):
        done = engine.create_instance("purchase", "user-1").instance_id
        engine.execute_step(done, "request", {"item": "Laptop", "amount": 1}, "user-1")
        engine.execute_step(done, "approve", {"approved": True}, "mgr-1")
        engine.execute_step(done, "record", {}, "user-1")

        cancelled = engine.create_instance("purchase", "user-1").instance_id
        engine.cancel_workflow(cancelled, "user-1")

        engine.create_instance("purchase", "user-1")

        stats = engine.get_statistics(workflow_id="purchase")
        assert stats.total_instances == 3
        assert stats.completed_instances == 1
        assert stats.cancelled_instances == 1
        assert stats.in_progress_instances == 1
        assert stats.failed_instances == 0
        assert stats.success_rate == 50.0
        assert stats.average_completion_time >= 0

    def test_statistics_without_instances(self, engine):
        stats = engine.get_statistics()
        assert stats.total_instances == 0
        assert stats.success_rate == 0.0
        assert stats.average_completion_time == 0.0
