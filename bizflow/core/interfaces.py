"""Collaborator contracts of the execution core.

The engine and the step processor only talk to these abstractions; the
concrete implementations (SQL store, tool registry, Anthropic client) are
wired in by the application factory or by tests.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from ..models.core import (
    ToolInvocationResult,
    WorkflowDefinitionWithSteps,
    WorkflowInstance,
    WorkflowStatus,
    WorkflowStepExecution,
)


class DefinitionAccessor(ABC):
    """Supplies workflow definitions and their ordered steps."""

    @abstractmethod
    def get_definition_with_steps(
        self, workflow_id: str, version: Optional[int] = None
    ) -> Optional[WorkflowDefinitionWithSteps]:
        """Return the definition, pinned to ``version`` when given, or None if unknown."""


class CompletionClient(ABC):
    """Text completion backend used by ai_processing steps."""

    @abstractmethod
    def complete(self, prompt: str, history: List[Dict[str, str]], **options) -> str:
        """Return the completion text for ``prompt`` following ``history``."""


class ToolInvoker(ABC):
    """Invokes business tools by slug on behalf of an actor."""

    @abstractmethod
    def invoke(self, tool_slug: str, parameters: Dict[str, Any], actor_id: str) -> ToolInvocationResult:
        """Run the tool and report success, data or error."""


class WorkflowStore(ABC):
    """Persistence of workflow instances and step executions.

    Updates are optimistic: the record's ``lock_version`` must match the
    stored one, otherwise ``ConcurrencyConflictError`` is raised. A
    successful update returns the record with its new ``lock_version``.
    """

    @abstractmethod
    def insert_instance(self, instance: WorkflowInstance) -> WorkflowInstance:
        ...

    @abstractmethod
    def get_instance(self, instance_id: str) -> Optional[WorkflowInstance]:
        ...

    @abstractmethod
    def update_instance(self, instance: WorkflowInstance) -> WorkflowInstance:
        ...

    @abstractmethod
    def list_instances(
        self,
        initiator_id: Optional[str] = None,
        status: Optional[WorkflowStatus] = None,
        workflow_id: Optional[str] = None,
        organization_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[WorkflowInstance]:
        """Return matching instances, newest first."""

    @abstractmethod
    def count_instances(self, workflow_id: str) -> int:
        """Number of instances referencing a workflow definition."""

    @abstractmethod
    def insert_execution(self, execution: WorkflowStepExecution) -> WorkflowStepExecution:
        ...

    @abstractmethod
    def get_execution(self, execution_id: str) -> Optional[WorkflowStepExecution]:
        ...

    @abstractmethod
    def update_execution(self, execution: WorkflowStepExecution) -> WorkflowStepExecution:
        ...

    @abstractmethod
    def get_open_execution(self, instance_id: str, step_id: str) -> Optional[WorkflowStepExecution]:
        """Return the pending or waiting_input execution of a step, if any."""

    @abstractmethod
    def list_executions(self, instance_id: str) -> List[WorkflowStepExecution]:
        """Return the executions of an instance ordered by execution_order."""
