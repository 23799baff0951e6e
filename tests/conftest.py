"""Pytest configuration and fixtures."""

import os
import tempfile
import uuid
from typing import Any, Dict, List, Optional

import pytest

from bizflow.core.definition_service import InMemoryDefinitionStore, WorkflowDefinitionService
from bizflow.core.execution_engine import WorkflowExecutionEngine
from bizflow.core.interfaces import CompletionClient, ToolInvoker
from bizflow.core.step_processor import StepProcessor
from bizflow.models.core import (
    RetryConfig,
    StepType,
    ToolInvocationResult,
    WorkflowDefinition,
    WorkflowDefinitionWithSteps,
    WorkflowStep,
)
from bizflow.storage.database import create_database_engine, create_session_factory, create_tables
from bizflow.storage.store import InMemoryWorkflowStore, SqlWorkflowStore


class FakeCompletionClient(CompletionClient):
    """Completion client returning a canned reply and recording prompts."""

    def __init__(self, reply: str = "Generated text", error: Optional[Exception] = None):
        self.reply = reply
        self.error = error
        self.calls: List[Dict[str, Any]] = []

    def complete(self, prompt, history, **options):
        self.calls.append({"prompt": prompt, "history": history, "options": options})
        if self.error is not None:
            raise self.error
        return self.reply


class FakeToolInvoker(ToolInvoker):
    """Tool invoker answering from a table of canned results."""

    def __init__(self, results: Optional[Dict[str, ToolInvocationResult]] = None):
        self.results = results or {}
        self.calls: List[Dict[str, Any]] = []

    def invoke(self, tool_slug, parameters, actor_id):
        self.calls.append({"tool_slug": tool_slug, "parameters": parameters, "actor_id": actor_id})
        if tool_slug not in self.results:
            return ToolInvocationResult(success=False, error=f"Tool '{tool_slug}' is not registered")
        return self.results[tool_slug]


def make_step(
    step_type: StepType,
    configuration: Dict[str, Any],
    step_order: int = 1,
    name: Optional[str] = None,
    workflow_id: str = "wf-test",
    max_retries: int = 3,
    step_id: Optional[str] = None,
) -> WorkflowStep:
    """Build a validated step for tests."""
    return WorkflowStep.model_validate({
        "id": step_id or f"step-{step_order}-{uuid.uuid4().hex[:6]}",
        "workflow_id": workflow_id,
        "name": name or f"Step {step_order}",
        "step_order": step_order,
        "step_type": step_type,
        "configuration": configuration,
        "retry_config": RetryConfig(max_retries=max_retries, retry_delay_seconds=0),
    })


def form_step(fields: List[Dict[str, Any]], step_order: int = 1, **kwargs) -> WorkflowStep:
    return make_step(StepType.FORM_INPUT, {"fields": fields}, step_order=step_order, **kwargs)


def make_definition(
    steps: List[WorkflowStep],
    workflow_id: str = "wf-test",
    is_active: bool = True,
    organization_id: Optional[str] = None,
) -> WorkflowDefinitionWithSteps:
    """Wrap steps into a definition at version 1."""
    return WorkflowDefinitionWithSteps(
        definition=WorkflowDefinition(
            id=workflow_id,
            name="Test Workflow",
            slug="test-workflow",
            is_active=is_active,
            organization_id=organization_id,
        ),
        steps=[step.model_copy(update={"workflow_id": workflow_id}) for step in steps],
    )


@pytest.fixture
def temp_db():
    """Create a temporary database file and return its session factory."""
    db_fd, db_path = tempfile.mkstemp(suffix=".db")
    os.close(db_fd)

    engine = create_database_engine(f"sqlite:///{db_path}")
    create_tables(engine)

    yield create_session_factory(engine)

    engine.dispose()
    try:
        os.unlink(db_path)
    except OSError:
        pass


@pytest.fixture
def definition_service(temp_db):
    """Create a WorkflowDefinitionService backed by the temporary database."""
    return WorkflowDefinitionService(temp_db, default_retry_config=RetryConfig(max_retries=2, retry_delay_seconds=0))


@pytest.fixture
def sql_store(temp_db):
    """Create a SqlWorkflowStore backed by the temporary database."""
    return SqlWorkflowStore(temp_db)


@pytest.fixture
def memory_definitions():
    return InMemoryDefinitionStore()


@pytest.fixture
def memory_store():
    return InMemoryWorkflowStore()


@pytest.fixture
def completion_client():
    return FakeCompletionClient()


@pytest.fixture
def tool_invoker():
    return FakeToolInvoker()


@pytest.fixture
def step_processor(completion_client, tool_invoker):
    return StepProcessor(completion_client=completion_client, tool_invoker=tool_invoker)


@pytest.fixture
def engine(memory_definitions, memory_store, step_processor):
    """Create an in-memory WorkflowExecutionEngine for testing."""
    return WorkflowExecutionEngine(memory_definitions, memory_store, step_processor)
