"""Workflow store implementations: SQLAlchemy-backed and in-memory."""

import itertools
import threading
from datetime import datetime
from typing import Callable, Dict, List, Optional

from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ..core.error_recovery import RetryPolicy, with_retry
from ..core.exceptions import ConcurrencyConflictError, StorageError, TransientError
from ..core.interfaces import WorkflowStore
from ..core.logging import get_logger
from ..models.core import (
    OPEN_EXECUTION_STATUSES,
    StepExecutionStatus,
    WorkflowInstance,
    WorkflowStatus,
    WorkflowStepExecution,
)
from .models import WorkflowInstanceModel, WorkflowStepExecutionModel

logger = get_logger(__name__)

STORE_RETRY_POLICY = RetryPolicy(max_attempts=3, base_delay=0.05, retryable_exceptions=[TransientError])


def _instance_from_model(model: WorkflowInstanceModel) -> WorkflowInstance:
    return WorkflowInstance(
        id=model.id,
        workflow_id=model.workflow_id,
        workflow_version=model.workflow_version,
        current_step_id=model.current_step_id,
        status=WorkflowStatus(model.status),
        initiator_id=model.initiator_id,
        organization_id=model.organization_id,
        context_data=model.context_data or {},
        started_at=model.started_at,
        completed_at=model.completed_at,
        metadata=model.instance_metadata or {},
        created_at=model.created_at,
        updated_at=model.updated_at,
        lock_version=model.lock_version,
    )


def _execution_from_model(model: WorkflowStepExecutionModel) -> WorkflowStepExecution:
    return WorkflowStepExecution(
        id=model.id,
        workflow_instance_id=model.workflow_instance_id,
        workflow_step_id=model.workflow_step_id,
        execution_order=model.execution_order,
        status=StepExecutionStatus(model.status),
        input_data=model.input_data or {},
        output_data=model.output_data or {},
        error_message=model.error_message,
        execution_time_ms=model.execution_time_ms,
        retry_count=model.retry_count,
        executed_by=model.executed_by,
        started_at=model.started_at,
        completed_at=model.completed_at,
        created_at=model.created_at,
        lock_version=model.lock_version,
    )


def _apply_instance(model: WorkflowInstanceModel, instance: WorkflowInstance) -> None:
    dumped = instance.model_dump(mode="json", include={"context_data", "metadata"})
    model.current_step_id = instance.current_step_id
    model.status = instance.status.value
    model.context_data = dumped["context_data"]
    model.started_at = instance.started_at
    model.completed_at = instance.completed_at
    model.instance_metadata = dumped["metadata"]


def _apply_execution(model: WorkflowStepExecutionModel, execution: WorkflowStepExecution) -> None:
    dumped = execution.model_dump(mode="json", include={"input_data", "output_data"})
    model.status = execution.status.value
    model.input_data = dumped["input_data"]
    model.output_data = dumped["output_data"]
    model.error_message = execution.error_message
    model.execution_time_ms = execution.execution_time_ms
    model.retry_count = execution.retry_count
    model.executed_by = execution.executed_by
    model.started_at = execution.started_at
    model.completed_at = execution.completed_at


class SqlWorkflowStore(WorkflowStore):
    """WorkflowStore persisting to SQL through SQLAlchemy sessions.

    Optimistic concurrency relies on the ``version_id_col`` mapping of the
    instance and execution models.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def _run(self, operation: str, table: str, work: Callable[[Session], object]):
        """Run ``work`` in a session, committing on success and mapping database errors."""
        session = self._session_factory()
        try:
            result = work(session)
            session.commit()
            return result
        except StaleDataError as e:
            session.rollback()
            raise ConcurrencyConflictError(
                f"Record in {table} was modified concurrently",
                table=table,
            ) from e
        except OperationalError as e:
            session.rollback()
            raise TransientError(f"Database unavailable during {operation}: {str(e)}", operation=operation, table=table) from e
        except SQLAlchemyError as e:
            session.rollback()
            raise StorageError(f"Failed to {operation}: {str(e)}", operation=operation, table=table) from e
        finally:
            session.close()

    # Instances

    @with_retry(STORE_RETRY_POLICY)
    def insert_instance(self, instance: WorkflowInstance) -> WorkflowInstance:
        def work(session: Session):
            now = datetime.utcnow()
            model = WorkflowInstanceModel(
                id=instance.id,
                workflow_id=instance.workflow_id,
                workflow_version=instance.workflow_version,
                initiator_id=instance.initiator_id,
                organization_id=instance.organization_id,
                created_at=instance.created_at or now,
                updated_at=instance.updated_at or now,
            )
            _apply_instance(model, instance)
            session.add(model)
            session.flush()
            return _instance_from_model(model)

        return self._run("insert instance", "workflow_instances", work)

    @with_retry(STORE_RETRY_POLICY)
    def get_instance(self, instance_id: str) -> Optional[WorkflowInstance]:
        def work(session: Session):
            model = session.get(WorkflowInstanceModel, instance_id)
            return _instance_from_model(model) if model else None

        return self._run("get instance", "workflow_instances", work)

    @with_retry(STORE_RETRY_POLICY)
    def update_instance(self, instance: WorkflowInstance) -> WorkflowInstance:
        def work(session: Session):
            model = session.get(WorkflowInstanceModel, instance.id)
            if model is None:
                raise StorageError(f"Instance {instance.id} does not exist", operation="update", table="workflow_instances")
            if model.lock_version != instance.lock_version:
                raise ConcurrencyConflictError(
                    f"Instance {instance.id} is at version {model.lock_version}, not {instance.lock_version}",
                    record_id=instance.id,
                    table="workflow_instances",
                )
            _apply_instance(model, instance)
            model.updated_at = datetime.utcnow()
            session.flush()
            return _instance_from_model(model)

        return self._run("update instance", "workflow_instances", work)

    @with_retry(STORE_RETRY_POLICY)
    def list_instances(
        self,
        initiator_id: Optional[str] = None,
        status: Optional[WorkflowStatus] = None,
        workflow_id: Optional[str] = None,
        organization_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[WorkflowInstance]:
        def work(session: Session):
            query = session.query(WorkflowInstanceModel)
            if initiator_id is not None:
                query = query.filter(WorkflowInstanceModel.initiator_id == initiator_id)
            if status is not None:
                query = query.filter(WorkflowInstanceModel.status == WorkflowStatus(status).value)
            if workflow_id is not None:
                query = query.filter(WorkflowInstanceModel.workflow_id == workflow_id)
            if organization_id is not None:
                query = query.filter(WorkflowInstanceModel.organization_id == organization_id)
            query = query.order_by(WorkflowInstanceModel.created_at.desc())
            if limit is not None:
                query = query.limit(limit)
            return [_instance_from_model(model) for model in query.all()]

        return self._run("list instances", "workflow_instances", work)

    @with_retry(STORE_RETRY_POLICY)
    def count_instances(self, workflow_id: str) -> int:
        def work(session: Session):
            return session.query(WorkflowInstanceModel).filter(
                WorkflowInstanceModel.workflow_id == workflow_id
            ).count()

        return self._run("count instances", "workflow_instances", work)

    # Step executions

    @with_retry(STORE_RETRY_POLICY)
    def insert_execution(self, execution: WorkflowStepExecution) -> WorkflowStepExecution:
        def work(session: Session):
            model = WorkflowStepExecutionModel(
                id=execution.id,
                workflow_instance_id=execution.workflow_instance_id,
                workflow_step_id=execution.workflow_step_id,
                execution_order=execution.execution_order,
                created_at=execution.created_at or datetime.utcnow(),
            )
            _apply_execution(model, execution)
            session.add(model)
            session.flush()
            return _execution_from_model(model)

        return self._run("insert step execution", "workflow_step_executions", work)

    @with_retry(STORE_RETRY_POLICY)
    def get_execution(self, execution_id: str) -> Optional[WorkflowStepExecution]:
        def work(session: Session):
            model = session.get(WorkflowStepExecutionModel, execution_id)
            return _execution_from_model(model) if model else None

        return self._run("get step execution", "workflow_step_executions", work)

    @with_retry(STORE_RETRY_POLICY)
    def update_execution(self, execution: WorkflowStepExecution) -> WorkflowStepExecution:
        def work(session: Session):
            model = session.get(WorkflowStepExecutionModel, execution.id)
            if model is None:
                raise StorageError(
                    f"Step execution {execution.id} does not exist",
                    operation="update",
                    table="workflow_step_executions",
                )
            if model.lock_version != execution.lock_version:
                raise ConcurrencyConflictError(
                    f"Step execution {execution.id} is at version {model.lock_version}, not {execution.lock_version}",
                    record_id=execution.id,
                    table="workflow_step_executions",
                )
            _apply_execution(model, execution)
            session.flush()
            return _execution_from_model(model)

        return self._run("update step execution", "workflow_step_executions", work)

    @with_retry(STORE_RETRY_POLICY)
    def get_open_execution(self, instance_id: str, step_id: str) -> Optional[WorkflowStepExecution]:
        def work(session: Session):
            model = (
                session.query(WorkflowStepExecutionModel)
                .filter(
                    WorkflowStepExecutionModel.workflow_instance_id == instance_id,
                    WorkflowStepExecutionModel.workflow_step_id == step_id,
                    WorkflowStepExecutionModel.status.in_([status.value for status in OPEN_EXECUTION_STATUSES]),
                )
                .order_by(WorkflowStepExecutionModel.execution_order.desc())
                .first()
            )
            return _execution_from_model(model) if model else None

        return self._run("get open step execution", "workflow_step_executions", work)

    @with_retry(STORE_RETRY_POLICY)
    def list_executions(self, instance_id: str) -> List[WorkflowStepExecution]:
        def work(session: Session):
            models = (
                session.query(WorkflowStepExecutionModel)
                .filter(WorkflowStepExecutionModel.workflow_instance_id == instance_id)
                .order_by(WorkflowStepExecutionModel.execution_order)
                .all()
            )
            return [_execution_from_model(model) for model in models]

        return self._run("list step executions", "workflow_step_executions", work)


class InMemoryWorkflowStore(WorkflowStore):
    """WorkflowStore keeping records in process memory.

    Records are copied in and out so callers never share mutable state with
    the store.
    """

    def __init__(self):
        self._instances: Dict[str, WorkflowInstance] = {}
        self._executions: Dict[str, WorkflowStepExecution] = {}
        self._sequence: Dict[str, int] = {}
        self._counter = itertools.count()
        self._lock = threading.Lock()

    def insert_instance(self, instance: WorkflowInstance) -> WorkflowInstance:
        with self._lock:
            if instance.id in self._instances:
                raise StorageError(f"Instance {instance.id} already exists", operation="insert", table="instances")
            now = datetime.utcnow()
            stored = instance.model_copy(deep=True, update={
                "created_at": instance.created_at or now,
                "updated_at": instance.updated_at or now,
                "lock_version": 1,
            })
            self._instances[stored.id] = stored
            self._sequence[stored.id] = next(self._counter)
            return stored.model_copy(deep=True)

    def get_instance(self, instance_id: str) -> Optional[WorkflowInstance]:
        with self._lock:
            stored = self._instances.get(instance_id)
            return stored.model_copy(deep=True) if stored else None

    def update_instance(self, instance: WorkflowInstance) -> WorkflowInstance:
        with self._lock:
            stored = self._instances.get(instance.id)
            if stored is None:
                raise StorageError(f"Instance {instance.id} does not exist", operation="update", table="instances")
            if stored.lock_version != instance.lock_version:
                raise ConcurrencyConflictError(
                    f"Instance {instance.id} is at version {stored.lock_version}, not {instance.lock_version}",
                    record_id=instance.id,
                    table="instances",
                )
            updated = instance.model_copy(deep=True, update={
                "lock_version": stored.lock_version + 1,
                "updated_at": datetime.utcnow(),
            })
            self._instances[instance.id] = updated
            return updated.model_copy(deep=True)

    def list_instances(
        self,
        initiator_id: Optional[str] = None,
        status: Optional[WorkflowStatus] = None,
        workflow_id: Optional[str] = None,
        organization_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[WorkflowInstance]:
        with self._lock:
            matches = [
                instance for instance in self._instances.values()
                if (initiator_id is None or instance.initiator_id == initiator_id)
                and (status is None or instance.status == status)
                and (workflow_id is None or instance.workflow_id == workflow_id)
                and (organization_id is None or instance.organization_id == organization_id)
            ]
            matches.sort(key=lambda instance: (instance.created_at, self._sequence[instance.id]), reverse=True)
            if limit is not None:
                matches = matches[:limit]
            return [instance.model_copy(deep=True) for instance in matches]

    def count_instances(self, workflow_id: str) -> int:
        with self._lock:
            return sum(1 for instance in self._instances.values() if instance.workflow_id == workflow_id)

    def insert_execution(self, execution: WorkflowStepExecution) -> WorkflowStepExecution:
        with self._lock:
            if execution.id in self._executions:
                raise StorageError(
                    f"Step execution {execution.id} already exists", operation="insert", table="step_executions"
                )
            stored = execution.model_copy(deep=True, update={
                "created_at": execution.created_at or datetime.utcnow(),
                "lock_version": 1,
            })
            self._executions[stored.id] = stored
            return stored.model_copy(deep=True)

    def get_execution(self, execution_id: str) -> Optional[WorkflowStepExecution]:
        with self._lock:
            stored = self._executions.get(execution_id)
            return stored.model_copy(deep=True) if stored else None

    def update_execution(self, execution: WorkflowStepExecution) -> WorkflowStepExecution:
        with self._lock:
            stored = self._executions.get(execution.id)
            if stored is None:
                raise StorageError(
                    f"Step execution {execution.id} does not exist", operation="update", table="step_executions"
                )
            if stored.lock_version != execution.lock_version:
                raise ConcurrencyConflictError(
                    f"Step execution {execution.id} is at version {stored.lock_version}, not {execution.lock_version}",
                    record_id=execution.id,
                    table="step_executions",
                )
            updated = execution.model_copy(deep=True, update={"lock_version": stored.lock_version + 1})
            self._executions[execution.id] = updated
            return updated.model_copy(deep=True)

    def get_open_execution(self, instance_id: str, step_id: str) -> Optional[WorkflowStepExecution]:
        with self._lock:
            candidates = [
                execution for execution in self._executions.values()
                if execution.workflow_instance_id == instance_id
                and execution.workflow_step_id == step_id
                and execution.status in OPEN_EXECUTION_STATUSES
            ]
            if not candidates:
                return None
            return max(candidates, key=lambda execution: execution.execution_order).model_copy(deep=True)

    def list_executions(self, instance_id: str) -> List[WorkflowStepExecution]:
        with self._lock:
            executions = [
                execution for execution in self._executions.values()
                if execution.workflow_instance_id == instance_id
            ]
            executions.sort(key=lambda execution: execution.execution_order)
            return [execution.model_copy(deep=True) for execution in executions]
