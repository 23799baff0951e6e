"""Execution Engine: workflow instance lifecycle and step sequencing."""

import threading
import time
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..models.core import (
    StepExecutionResult,
    StepExecutionStatus,
    WorkflowExecutionResult,
    WorkflowInstance,
    WorkflowInstanceWithDetails,
    WorkflowProgress,
    WorkflowStatistics,
    WorkflowStatus,
    WorkflowStep,
    WorkflowStepExecution,
)
from .exceptions import (
    ExecutionEngineError,
    FormValidationError,
    InstanceNotFoundError,
    InvalidWorkflowStateError,
    RetryPendingError,
    StepExecutionError,
    StepExecutionNotFoundError,
    StepNotFoundError,
    WorkflowAuthorizationError,
    WorkflowEngineError,
    WorkflowFailedError,
    WorkflowNotFoundError,
)
from .interfaces import DefinitionAccessor, WorkflowStore
from .logging import clear_logging_context, get_logger, set_logging_context
from .step_processor import StepProcessor

logger = get_logger(__name__)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def find_next_step(steps: List[WorkflowStep], current: WorkflowStep) -> Optional[WorkflowStep]:
    """Return the step whose order directly follows ``current``, if any."""
    for step in sorted(steps, key=lambda s: s.step_order):
        if step.step_order == current.step_order + 1:
            return step
    return None


class WorkflowExecutionEngine:
    """Drives workflow instances through their steps.

    The engine is the only writer of instance and step-execution records.
    Calls on the same instance are serialized by a per-instance lock, and
    every store update is checked against the record's ``lock_version``.
    """

    def __init__(self, definitions: DefinitionAccessor, store: WorkflowStore, step_processor: StepProcessor):
        """Initialize the execution engine.

        Args:
            definitions: Source of workflow definitions and their steps
            store: Persistence for instances and step executions
            step_processor: Executes the business logic of single steps
        """
        self.definitions = definitions
        self.store = store
        self.step_processor = step_processor

        self._instance_locks: Dict[str, threading.RLock] = {}
        self._lock_manager = threading.RLock()

        logger.info("WorkflowExecutionEngine initialized")

    def _get_instance_lock(self, instance_id: str) -> threading.RLock:
        """Get or create the lock serializing work on one instance."""
        with self._lock_manager:
            if instance_id not in self._instance_locks:
                self._instance_locks[instance_id] = threading.RLock()
            return self._instance_locks[instance_id]

    def _release_instance_lock(self, instance_id: str) -> None:
        """Forget the lock of an instance that reached a terminal state."""
        with self._lock_manager:
            self._instance_locks.pop(instance_id, None)

    def create_instance(
        self,
        workflow_id: str,
        initiator_id: str,
        organization_id: Optional[str] = None,
        initial_context: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> WorkflowExecutionResult:
        """
        Start a new instance of a workflow definition.

        Args:
            workflow_id: ID of the definition to run
            initiator_id: User starting the workflow
            organization_id: Tenant the instance belongs to
            initial_context: Seed values for the instance context
            metadata: Free-form metadata stored on the instance

        Returns:
            Result carrying the new instance ID and its first step

        Raises:
            WorkflowNotFoundError: If the definition does not exist
            InvalidWorkflowStateError: If the definition is inactive or has no steps
        """
        set_logging_context(workflow_id=workflow_id, operation="create_instance")
        try:
            definition = self.definitions.get_definition_with_steps(workflow_id)
            if definition is None:
                raise WorkflowNotFoundError(workflow_id)
            if not definition.definition.is_active:
                raise InvalidWorkflowStateError(f"Workflow '{definition.definition.name}' is not active")
            if not definition.steps:
                raise InvalidWorkflowStateError(f"Workflow '{definition.definition.name}' has no steps")

            first_step = definition.steps[0]
            now = datetime.utcnow()
            instance = WorkflowInstance(
                id=str(uuid.uuid4()),
                workflow_id=workflow_id,
                workflow_version=definition.definition.version,
                current_step_id=first_step.id,
                status=WorkflowStatus.IN_PROGRESS,
                initiator_id=initiator_id,
                organization_id=organization_id or definition.definition.organization_id,
                context_data=dict(initial_context or {}),
                started_at=now,
                metadata=dict(metadata or {}),
            )
            instance = self.store.insert_instance(instance)

            self.store.insert_execution(WorkflowStepExecution(
                id=str(uuid.uuid4()),
                workflow_instance_id=instance.id,
                workflow_step_id=first_step.id,
                execution_order=1,
                status=StepExecutionStatus.PENDING,
                input_data=dict(instance.context_data),
            ))

            logger.info(
                f"Started instance {instance.id} of workflow {workflow_id} "
                f"v{instance.workflow_version} for {initiator_id}"
            )
            return WorkflowExecutionResult(
                instance_id=instance.id,
                status=instance.status,
                current_step=first_step,
                message="Workflow started successfully",
            )
        except WorkflowEngineError:
            raise
        except Exception as e:
            logger.error(f"Unexpected error creating instance: {str(e)}", exc_info=True)
            raise ExecutionEngineError(f"Failed to start workflow: {str(e)}", workflow_id=workflow_id) from e
        finally:
            clear_logging_context()

    def execute_step(
        self,
        instance_id: str,
        step_id: str,
        input_data: Optional[Dict[str, Any]],
        actor_id: str,
    ) -> StepExecutionResult:
        """
        Execute the open step of an instance and advance the workflow.

        Args:
            instance_id: ID of the workflow instance
            step_id: ID of the step to execute
            input_data: Data submitted for this step
            actor_id: User executing the step

        Returns:
            Result with the step output and the next step, if any

        Raises:
            NotFoundError: If the instance, definition, step or open execution is missing
            InvalidWorkflowStateError: If the instance is not in progress
            FormValidationError: If form input is invalid (no retry consumed)
            RetryPendingError: If the step failed and may be executed again
            WorkflowFailedError: If the step failed with no retries left
        """
        set_logging_context(instance_id=instance_id, step_id=step_id, operation="execute_step")
        try:
            with self._get_instance_lock(instance_id):
                return self._execute_step_locked(instance_id, step_id, input_data or {}, actor_id)
        except WorkflowEngineError:
            raise
        except Exception as e:
            logger.error(f"Unexpected error executing step {step_id}: {str(e)}", exc_info=True)
            raise ExecutionEngineError(f"Failed to execute step: {str(e)}", instance_id=instance_id) from e
        finally:
            clear_logging_context()

    def _execute_step_locked(
        self,
        instance_id: str,
        step_id: str,
        input_data: Dict[str, Any],
        actor_id: str,
    ) -> StepExecutionResult:
        instance = self.store.get_instance(instance_id)
        if instance is None:
            raise InstanceNotFoundError(instance_id)

        definition = self.definitions.get_definition_with_steps(instance.workflow_id, instance.workflow_version)
        if definition is None:
            raise WorkflowNotFoundError(instance.workflow_id, instance.workflow_version)

        step = definition.find_step(step_id)
        if step is None:
            raise StepNotFoundError(step_id, instance.workflow_id)

        if instance.status != WorkflowStatus.IN_PROGRESS:
            raise InvalidWorkflowStateError(
                f"Workflow is {instance.status.value}, steps can only run while it is in progress",
                status=instance.status.value,
            )

        execution = self.store.get_open_execution(instance_id, step_id)
        if execution is None:
            raise StepExecutionNotFoundError(instance_id, step_id)

        started = time.monotonic()
        execution.status = StepExecutionStatus.EXECUTING
        execution.executed_by = actor_id
        execution.started_at = datetime.utcnow()
        execution = self.store.update_execution(execution)

        try:
            result = self.step_processor.process_step(step, input_data, instance.context_data, actor_id)
        except FormValidationError as e:
            execution.status = StepExecutionStatus.WAITING_INPUT
            execution.error_message = e.message
            execution.execution_time_ms = _elapsed_ms(started)
            self.store.update_execution(execution)
            logger.info(f"Step {step.id} rejected input: {e.message}")
            raise
        except Exception as e:
            error = e if isinstance(e, WorkflowEngineError) else StepExecutionError(
                str(e), step_id=step.id, step_type=step.step_type.value
            )
            self._handle_step_failure(instance, step, execution, error, started)

        instance.context_data = {**instance.context_data, **result.context_updates}

        execution.status = StepExecutionStatus.COMPLETED
        execution.output_data = result.output
        execution.error_message = None
        execution.completed_at = datetime.utcnow()
        execution.execution_time_ms = _elapsed_ms(started)
        execution = self.store.update_execution(execution)

        next_step = find_next_step(definition.steps, step)
        if next_step is not None:
            instance.current_step_id = next_step.id
            instance = self.store.update_instance(instance)
            self.store.insert_execution(WorkflowStepExecution(
                id=str(uuid.uuid4()),
                workflow_instance_id=instance.id,
                workflow_step_id=next_step.id,
                execution_order=execution.execution_order + 1,
                status=StepExecutionStatus.PENDING,
                input_data=dict(instance.context_data),
            ))
            logger.info(f"Step {step.id} completed, advancing to step {next_step.id}")
        else:
            instance.status = WorkflowStatus.COMPLETED
            instance.completed_at = datetime.utcnow()
            instance = self.store.update_instance(instance)
            self._release_instance_lock(instance.id)
            logger.info(f"Step {step.id} completed, workflow {instance.id} completed")

        return StepExecutionResult(
            success=True,
            execution_id=execution.id,
            output_data=result.output,
            next_step=next_step,
            next_action=result.next_action,
            instance_status=instance.status,
        )

    def _handle_step_failure(
        self,
        instance: WorkflowInstance,
        step: WorkflowStep,
        execution: WorkflowStepExecution,
        error: WorkflowEngineError,
        started: float,
    ) -> None:
        """Record a failed attempt and raise the resulting retry or terminal error."""
        max_retries = step.retry_config.max_retries
        execution.error_message = error.message
        execution.execution_time_ms = _elapsed_ms(started)

        if execution.retry_count < max_retries:
            execution.retry_count += 1
            execution.status = StepExecutionStatus.PENDING
            self.store.update_execution(execution)
            logger.warning(
                f"Step {step.id} failed (retry {execution.retry_count}/{max_retries}): {error.message}"
            )
            raise RetryPendingError(
                f"Step '{step.name}' failed: {error.message}. Retry {execution.retry_count} of {max_retries} is pending",
                retry_count=execution.retry_count,
                max_retries=max_retries,
                retry_after=step.retry_config.retry_delay_seconds,
                instance_id=instance.id,
                step_id=step.id,
            ) from error

        execution.status = StepExecutionStatus.FAILED
        execution.completed_at = datetime.utcnow()
        self.store.update_execution(execution)

        instance.status = WorkflowStatus.FAILED
        instance.completed_at = datetime.utcnow()
        instance.metadata = {**instance.metadata, "errorMessage": error.message, "failedStepId": step.id}
        self.store.update_instance(instance)
        self._release_instance_lock(instance.id)

        logger.error(f"Workflow {instance.id} failed at step {step.id} after {max_retries} retries: {error.message}")
        raise WorkflowFailedError(
            f"Workflow failed at step '{step.name}': {error.message}",
            instance_id=instance.id,
            step_id=step.id,
        ) from error

    def cancel_workflow(self, instance_id: str, actor_id: str) -> WorkflowInstance:
        """
        Cancel a running instance.

        Args:
            instance_id: ID of the workflow instance
            actor_id: User requesting the cancellation

        Returns:
            The cancelled instance

        Raises:
            InstanceNotFoundError: If the instance does not exist
            WorkflowAuthorizationError: If the actor did not start the workflow
            InvalidWorkflowStateError: If the instance already finished
        """
        set_logging_context(instance_id=instance_id, operation="cancel_workflow")
        try:
            with self._get_instance_lock(instance_id):
                instance = self.store.get_instance(instance_id)
                if instance is None:
                    raise InstanceNotFoundError(instance_id)
                if instance.initiator_id != actor_id:
                    raise WorkflowAuthorizationError(
                        "Only the workflow initiator can cancel this workflow",
                        actor_id=actor_id,
                    )
                if instance.status.is_terminal:
                    raise InvalidWorkflowStateError(
                        f"Cannot cancel a {instance.status.value} workflow",
                        status=instance.status.value,
                    )

                instance.status = WorkflowStatus.CANCELLED
                instance.completed_at = datetime.utcnow()
                instance = self.store.update_instance(instance)

            self._release_instance_lock(instance_id)
            logger.info(f"Workflow {instance_id} cancelled by {actor_id}")
            return instance
        except WorkflowEngineError:
            raise
        except Exception as e:
            logger.error(f"Unexpected error cancelling workflow: {str(e)}", exc_info=True)
            raise ExecutionEngineError(f"Failed to cancel workflow: {str(e)}", instance_id=instance_id) from e
        finally:
            clear_logging_context()

    def fetch_instance(self, instance_id: str) -> Optional[WorkflowInstance]:
        """Return an instance, or None if it does not exist."""
        try:
            return self.store.get_instance(instance_id)
        except WorkflowEngineError:
            raise
        except Exception as e:
            raise ExecutionEngineError(f"Failed to fetch instance: {str(e)}", instance_id=instance_id) from e

    def fetch_user_instances(
        self,
        user_id: str,
        status: Optional[WorkflowStatus] = None,
        workflow_id: Optional[str] = None,
        limit: Optional[int] = 50,
    ) -> List[WorkflowInstance]:
        """Return the instances started by a user, newest first."""
        try:
            return self.store.list_instances(
                initiator_id=user_id,
                status=status,
                workflow_id=workflow_id,
                limit=limit,
            )
        except WorkflowEngineError:
            raise
        except Exception as e:
            raise ExecutionEngineError(f"Failed to fetch user instances: {str(e)}") from e

    def _load_pinned(self, instance_id: str):
        instance = self.store.get_instance(instance_id)
        if instance is None:
            raise InstanceNotFoundError(instance_id)
        definition = self.definitions.get_definition_with_steps(instance.workflow_id, instance.workflow_version)
        if definition is None:
            raise WorkflowNotFoundError(instance.workflow_id, instance.workflow_version)
        return instance, definition

    def get_instance_details(self, instance_id: str) -> WorkflowInstanceWithDetails:
        """Return an instance with its pinned definition, steps and executions."""
        try:
            instance, definition = self._load_pinned(instance_id)
            return WorkflowInstanceWithDetails(
                instance=instance,
                definition=definition.definition,
                steps=definition.steps,
                executions=self.store.list_executions(instance_id),
            )
        except WorkflowEngineError:
            raise
        except Exception as e:
            raise ExecutionEngineError(f"Failed to load instance details: {str(e)}", instance_id=instance_id) from e

    def get_progress(self, instance_id: str) -> WorkflowProgress:
        """Report how far an instance has advanced through its steps."""
        try:
            instance, definition = self._load_pinned(instance_id)
            total = len(definition.steps)

            if instance.status == WorkflowStatus.COMPLETED:
                completed = total
                current = total
            else:
                current_step = definition.find_step(instance.current_step_id) if instance.current_step_id else None
                current = current_step.step_order if current_step else 0
                completed = sum(1 for step in definition.steps if step.step_order < current)

            percent = round(completed / total * 100) if total else 0
            return WorkflowProgress(
                total_steps=total,
                completed_steps=completed,
                current_step=current,
                percent_complete=percent,
            )
        except WorkflowEngineError:
            raise
        except Exception as e:
            raise ExecutionEngineError(f"Failed to compute progress: {str(e)}", instance_id=instance_id) from e

    def get_statistics(
        self,
        workflow_id: Optional[str] = None,
        organization_id: Optional[str] = None,
    ) -> WorkflowStatistics:
        """Aggregate instance outcomes for a workflow and/or organization."""
        try:
            instances = self.store.list_instances(workflow_id=workflow_id, organization_id=organization_id)
        except WorkflowEngineError:
            raise
        except Exception as e:
            raise ExecutionEngineError(f"Failed to compute statistics: {str(e)}", workflow_id=workflow_id) from e

        counts = {status: 0 for status in WorkflowStatus}
        durations = []
        for instance in instances:
            counts[instance.status] += 1
            if instance.status == WorkflowStatus.COMPLETED and instance.started_at and instance.completed_at:
                durations.append((instance.completed_at - instance.started_at).total_seconds())

        finished = (
            counts[WorkflowStatus.COMPLETED]
            + counts[WorkflowStatus.FAILED]
            + counts[WorkflowStatus.CANCELLED]
        )
        success_rate = counts[WorkflowStatus.COMPLETED] / finished * 100 if finished else 0.0

        return WorkflowStatistics(
            total_instances=len(instances),
            completed_instances=counts[WorkflowStatus.COMPLETED],
            failed_instances=counts[WorkflowStatus.FAILED],
            cancelled_instances=counts[WorkflowStatus.CANCELLED],
            in_progress_instances=counts[WorkflowStatus.IN_PROGRESS],
            average_completion_time=sum(durations) / len(durations) if durations else 0.0,
            success_rate=round(success_rate, 1),
        )
