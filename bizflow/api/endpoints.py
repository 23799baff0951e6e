"""FastAPI REST endpoints for the workflow execution core."""

from datetime import datetime
from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from ..core.definition_service import WorkflowDefinitionService
from ..core.exceptions import (
    ConcurrencyConflictError,
    DefinitionValidationError,
    FormValidationError,
    InvalidWorkflowStateError,
    NotFoundError,
    RetryPendingError,
    StepExecutionError,
    TransientError,
    WorkflowAuthorizationError,
    WorkflowEngineError,
    WorkflowFailedError,
    WorkflowNotFoundError,
    create_error_response,
)
from ..core.execution_engine import WorkflowExecutionEngine
from ..core.logging import get_logger
from ..models.core import (
    StepExecutionResult,
    ValidationResult,
    WorkflowCategory,
    WorkflowDefinition,
    WorkflowDefinitionInput,
    WorkflowDefinitionWithSteps,
    WorkflowExecutionRequest,
    WorkflowExecutionResult,
    WorkflowInstance,
    WorkflowInstanceWithDetails,
    WorkflowProgress,
    WorkflowStatistics,
    WorkflowStatus,
    WorkflowStep,
    WorkflowStepInput,
)

logger = get_logger(__name__)

# Create router
router = APIRouter(prefix="/api/v1", tags=["workflow"])


class WorkflowServices:
    """The services one application instance works with."""

    def __init__(self, definition_service: WorkflowDefinitionService, execution_engine: WorkflowExecutionEngine):
        self.definition_service = definition_service
        self.execution_engine = execution_engine


def init_dependencies(app, services: WorkflowServices) -> None:
    """Attach the services used by the endpoints to an application."""
    app.state.services = services


def _get_services(request: Request) -> WorkflowServices:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Workflow services not initialized"
        )
    return services


def get_definition_service(request: Request) -> WorkflowDefinitionService:
    """Dependency to get the definition service."""
    return _get_services(request).definition_service


def get_execution_engine(request: Request) -> WorkflowExecutionEngine:
    """Dependency to get the execution engine."""
    return _get_services(request).execution_engine


def get_actor_id(x_user_id: Optional[str] = Header(None)) -> str:
    """Dependency returning the calling user from the X-User-Id header."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "MissingActor", "message": "X-User-Id header is required"}
        )
    return x_user_id.strip()


def get_organization_id(x_organization_id: Optional[str] = Header(None)) -> Optional[str]:
    """Dependency returning the caller's organization from the X-Organization-Id header."""
    return x_organization_id.strip() if x_organization_id and x_organization_id.strip() else None


def error_status_code(error: WorkflowEngineError) -> int:
    """Map an engine error to its HTTP status code."""
    if isinstance(error, NotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(error, FormValidationError):
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    if isinstance(error, DefinitionValidationError):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(error, WorkflowAuthorizationError):
        return status.HTTP_403_FORBIDDEN
    if isinstance(error, (InvalidWorkflowStateError, ConcurrencyConflictError, RetryPendingError)):
        return status.HTTP_409_CONFLICT
    if isinstance(error, (WorkflowFailedError, StepExecutionError)):
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    if isinstance(error, TransientError):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def to_http_exception(error: WorkflowEngineError) -> HTTPException:
    """Convert an engine error to an HTTPException with a structured body."""
    status_code = error_status_code(error)
    if status_code >= 500:
        logger.error(f"{error.error_code}: {error.message}")
    else:
        logger.warning(f"{error.error_code}: {error.message}")

    headers = None
    if error.retry_after is not None:
        headers = {"Retry-After": str(error.retry_after)}
    return HTTPException(status_code=status_code, detail=create_error_response(error), headers=headers)


def _internal_error(operation: str, error: Exception) -> HTTPException:
    logger.error(f"Unexpected error during {operation}: {str(error)}", exc_info=True)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={
            "error": "InternalError",
            "message": f"An unexpected error occurred during {operation}",
            "details": {"original_error": str(error)},
            "timestamp": datetime.utcnow().isoformat()
        }
    )


# Request models

class CreateWorkflowRequest(BaseModel):
    """Request model for creating a workflow definition."""
    definition: WorkflowDefinitionInput = Field(..., description="Definition fields")
    steps: List[WorkflowStepInput] = Field(default_factory=list, description="Steps of the workflow")


class ValidateStepsRequest(BaseModel):
    """Request model for validating a step list without storing it."""
    steps: List[WorkflowStepInput] = Field(default_factory=list)


class ExecuteStepRequest(BaseModel):
    """Request model for executing a step."""
    input_data: Dict[str, Any] = Field(default_factory=dict, description="Data submitted for the step")


# Workflow definitions

@router.post(
    "/workflows",
    response_model=WorkflowDefinitionWithSteps,
    status_code=status.HTTP_201_CREATED,
    summary="Create a workflow definition"
)
def create_workflow(
    request: CreateWorkflowRequest,
    actor_id: str = Depends(get_actor_id),
    organization_id: Optional[str] = Depends(get_organization_id),
    definition_service: WorkflowDefinitionService = Depends(get_definition_service)
) -> WorkflowDefinitionWithSteps:
    """Create a workflow definition with its steps."""
    definition = request.definition.model_copy(update={
        "created_by": request.definition.created_by or actor_id,
        "organization_id": request.definition.organization_id or organization_id,
    })
    try:
        return definition_service.create_workflow(definition, request.steps)
    except WorkflowEngineError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise _internal_error("workflow creation", e)


@router.get(
    "/workflows",
    response_model=List[WorkflowDefinition],
    summary="List workflow definitions"
)
def list_workflows(
    category: Optional[WorkflowCategory] = Query(None),
    is_active: Optional[bool] = Query(None),
    organization_id: Optional[str] = Depends(get_organization_id),
    definition_service: WorkflowDefinitionService = Depends(get_definition_service)
) -> List[WorkflowDefinition]:
    """List the definitions visible to the caller's organization."""
    try:
        return definition_service.fetch_all_workflows(
            category=category,
            is_active=is_active,
            organization_id=organization_id
        )
    except WorkflowEngineError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise _internal_error("workflow listing", e)


@router.post(
    "/workflows/validate",
    response_model=ValidationResult,
    summary="Validate a step list"
)
def validate_workflow(
    request: ValidateStepsRequest,
    definition_service: WorkflowDefinitionService = Depends(get_definition_service)
) -> ValidationResult:
    """Validate steps, including their configuration, without storing anything."""
    try:
        steps = [definition_service.step_builder.build("draft", step) for step in request.steps]
    except DefinitionValidationError as e:
        return ValidationResult(is_valid=False, errors=e.validation_errors or [e.message])
    return definition_service.validate_workflow_steps(steps)


@router.get(
    "/workflows/{workflow_id}",
    response_model=WorkflowDefinitionWithSteps,
    summary="Get a workflow definition"
)
def get_workflow(
    workflow_id: str,
    version: Optional[int] = Query(None, ge=1),
    definition_service: WorkflowDefinitionService = Depends(get_definition_service)
) -> WorkflowDefinitionWithSteps:
    """Get a definition with its steps, optionally at an older version."""
    try:
        definition = definition_service.get_definition_with_steps(workflow_id, version)
    except WorkflowEngineError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise _internal_error("workflow retrieval", e)

    if definition is None:
        raise to_http_exception(WorkflowNotFoundError(workflow_id, version))
    return definition


@router.post(
    "/workflows/{workflow_id}/steps",
    response_model=WorkflowStep,
    status_code=status.HTTP_201_CREATED,
    summary="Add a step to a workflow"
)
def add_workflow_step(
    workflow_id: str,
    step: WorkflowStepInput,
    actor_id: str = Depends(get_actor_id),
    definition_service: WorkflowDefinitionService = Depends(get_definition_service)
) -> WorkflowStep:
    """Add a step; the definition version is incremented."""
    try:
        logger.info(f"{actor_id} adding step '{step.name}' to workflow {workflow_id}")
        return definition_service.add_workflow_step(workflow_id, step)
    except WorkflowEngineError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise _internal_error("step creation", e)


# Workflow instances

@router.post(
    "/instances",
    response_model=WorkflowExecutionResult,
    status_code=status.HTTP_201_CREATED,
    summary="Start a workflow instance"
)
def start_instance(
    request: WorkflowExecutionRequest,
    actor_id: str = Depends(get_actor_id),
    organization_id: Optional[str] = Depends(get_organization_id),
    execution_engine: WorkflowExecutionEngine = Depends(get_execution_engine)
) -> WorkflowExecutionResult:
    """Start an instance of a workflow definition."""
    try:
        return execution_engine.create_instance(
            workflow_id=request.workflow_id,
            initiator_id=actor_id,
            organization_id=organization_id,
            initial_context=request.initial_data,
            metadata=request.metadata
        )
    except WorkflowEngineError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise _internal_error("workflow start", e)


@router.get(
    "/instances",
    response_model=List[WorkflowInstance],
    summary="List the caller's workflow instances"
)
def list_instances(
    status_filter: Optional[WorkflowStatus] = Query(None, alias="status"),
    workflow_id: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    actor_id: str = Depends(get_actor_id),
    execution_engine: WorkflowExecutionEngine = Depends(get_execution_engine)
) -> List[WorkflowInstance]:
    """List instances started by the caller, newest first."""
    try:
        return execution_engine.fetch_user_instances(
            actor_id,
            status=status_filter,
            workflow_id=workflow_id,
            limit=limit
        )
    except WorkflowEngineError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise _internal_error("instance listing", e)


@router.get(
    "/instances/{instance_id}",
    response_model=WorkflowInstanceWithDetails,
    summary="Get a workflow instance with its steps and executions"
)
def get_instance(
    instance_id: str,
    execution_engine: WorkflowExecutionEngine = Depends(get_execution_engine)
) -> WorkflowInstanceWithDetails:
    try:
        return execution_engine.get_instance_details(instance_id)
    except WorkflowEngineError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise _internal_error("instance retrieval", e)


@router.get(
    "/instances/{instance_id}/progress",
    response_model=WorkflowProgress,
    summary="Get the progress of a workflow instance"
)
def get_instance_progress(
    instance_id: str,
    execution_engine: WorkflowExecutionEngine = Depends(get_execution_engine)
) -> WorkflowProgress:
    try:
        return execution_engine.get_progress(instance_id)
    except WorkflowEngineError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise _internal_error("progress retrieval", e)


@router.post(
    "/instances/{instance_id}/steps/{step_id}/execute",
    response_model=StepExecutionResult,
    summary="Execute a step of a workflow instance"
)
def execute_step(
    instance_id: str,
    step_id: str,
    request: ExecuteStepRequest,
    actor_id: str = Depends(get_actor_id),
    execution_engine: WorkflowExecutionEngine = Depends(get_execution_engine)
) -> StepExecutionResult:
    """
    Execute the open step of an instance.

    A failed step that may be retried answers 409 with a Retry-After header;
    form input errors answer 422 and leave the step open.
    """
    try:
        return execution_engine.execute_step(instance_id, step_id, request.input_data, actor_id)
    except WorkflowEngineError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise _internal_error("step execution", e)


@router.post(
    "/instances/{instance_id}/cancel",
    response_model=WorkflowInstance,
    summary="Cancel a workflow instance"
)
def cancel_instance(
    instance_id: str,
    actor_id: str = Depends(get_actor_id),
    execution_engine: WorkflowExecutionEngine = Depends(get_execution_engine)
) -> WorkflowInstance:
    """Cancel an instance; only its initiator may do so."""
    try:
        return execution_engine.cancel_workflow(instance_id, actor_id)
    except WorkflowEngineError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise _internal_error("workflow cancellation", e)


@router.get(
    "/statistics",
    response_model=WorkflowStatistics,
    summary="Get workflow instance statistics"
)
def get_statistics(
    workflow_id: Optional[str] = Query(None),
    organization_id: Optional[str] = Depends(get_organization_id),
    execution_engine: WorkflowExecutionEngine = Depends(get_execution_engine)
) -> WorkflowStatistics:
    try:
        return execution_engine.get_statistics(workflow_id=workflow_id, organization_id=organization_id)
    except WorkflowEngineError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise _internal_error("statistics retrieval", e)
