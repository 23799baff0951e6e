"""Workflow definition authoring, validation and versioned access."""

import copy
import threading
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..models.core import (
    RetryConfig,
    ValidationResult,
    WorkflowCategory,
    WorkflowDefinition,
    WorkflowDefinitionInput,
    WorkflowDefinitionWithSteps,
    WorkflowStep,
    WorkflowStepInput,
)
from ..storage.models import (
    WorkflowDefinitionModel,
    WorkflowDefinitionVersionModel,
    WorkflowInstanceModel,
    WorkflowStepModel,
)
from .exceptions import (
    DefinitionValidationError,
    InvalidWorkflowStateError,
    StepNotFoundError,
    StorageError,
    WorkflowEngineError,
    WorkflowNotFoundError,
)
from .interfaces import DefinitionAccessor
from .logging import get_logger

logger = get_logger(__name__)

_UPDATABLE_DEFINITION_FIELDS = {
    "name", "slug", "description", "category", "is_active",
    "trigger_type", "trigger_config", "metadata", "organization_id",
}


def validate_workflow_steps(steps: List[WorkflowStep]) -> ValidationResult:
    """
    Validate the step list of a workflow definition.

    Args:
        steps: Steps of one definition, in any order

    Returns:
        ValidationResult: errors for missing steps, bad ordering, unnamed
        steps and dangling dependencies
    """
    errors: List[str] = []
    warnings: List[str] = []

    if not steps:
        errors.append("Workflow must have at least one step")
        return ValidationResult(is_valid=False, errors=errors)

    orders = [step.step_order for step in steps]
    if len(orders) != len(set(orders)):
        errors.append("Step orders must be unique")

    if sorted(orders) != list(range(1, len(steps) + 1)):
        errors.append("Step orders must be sequential starting from 1")

    step_ids = {step.id for step in steps}
    for step in steps:
        if not step.name or not step.name.strip():
            errors.append(f"Step {step.step_order} must have a name")
        if not step.step_type:
            errors.append(f"Step {step.step_order} must have a type")
        for dependency in step.depends_on_steps:
            if dependency not in step_ids:
                errors.append(f"Step '{step.name}' depends on unknown step '{dependency}'")
            elif dependency == step.id:
                errors.append(f"Step '{step.name}' cannot depend on itself")
        if step.depends_on_steps:
            warnings.append(f"Step '{step.name}' declares dependencies; steps still run in step order")

    return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)


def _raise_if_invalid(steps: List[WorkflowStep], workflow_id: Optional[str] = None) -> None:
    result = validate_workflow_steps(steps)
    if not result.is_valid:
        raise DefinitionValidationError(
            f"Workflow step validation failed: {'; '.join(result.errors)}",
            validation_errors=result.errors,
            workflow_id=workflow_id,
        )


def _validation_messages(error: ValidationError) -> List[str]:
    return [
        f"{'.'.join(str(part) for part in item['loc'])}: {item['msg']}" if item["loc"] else item["msg"]
        for item in error.errors()
    ]


class StepBuilder:
    """Turns authoring payloads into validated steps, applying configured defaults."""

    def __init__(self, default_retry_config: Optional[RetryConfig] = None, default_timeout_minutes: int = 60):
        self.default_retry_config = default_retry_config or RetryConfig()
        self.default_timeout_minutes = default_timeout_minutes

    def build(self, workflow_id: str, step_input: WorkflowStepInput) -> WorkflowStep:
        try:
            return WorkflowStep(
                id=step_input.id or str(uuid.uuid4()),
                workflow_id=workflow_id,
                name=step_input.name,
                step_order=step_input.step_order,
                step_type=step_input.step_type,
                configuration=dict(step_input.configuration),
                is_required=step_input.is_required,
                timeout_minutes=step_input.timeout_minutes or self.default_timeout_minutes,
                retry_config=step_input.retry_config or self.default_retry_config.model_copy(),
                depends_on_steps=list(step_input.depends_on_steps),
            )
        except ValidationError as e:
            messages = _validation_messages(e)
            raise DefinitionValidationError(
                f"Invalid configuration for step '{step_input.name}': {'; '.join(messages)}",
                validation_errors=messages,
                workflow_id=workflow_id,
            ) from e

    def merge(self, step: WorkflowStep, updates: Dict[str, Any]) -> WorkflowStep:
        """Apply field updates to a step and re-validate it."""
        data = step.model_dump(exclude={"configuration"})
        data["configuration"] = step.configuration_payload()
        for key, value in updates.items():
            if key in ("id", "workflow_id", "created_at"):
                continue
            data[key] = value
        try:
            return WorkflowStep.model_validate(data)
        except ValidationError as e:
            messages = _validation_messages(e)
            raise DefinitionValidationError(
                f"Invalid update for step '{step.name}': {'; '.join(messages)}",
                validation_errors=messages,
                workflow_id=step.workflow_id,
            ) from e


class WorkflowDefinitionService(DefinitionAccessor):
    """SQL-backed authoring service and definition accessor.

    Every edit after creation snapshots the current definition and steps
    and increments the version, so instances pinned to an older version
    keep reading the steps they started with.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        default_retry_config: Optional[RetryConfig] = None,
        default_timeout_minutes: int = 60,
    ):
        self._session_factory = session_factory
        self.step_builder = StepBuilder(default_retry_config, default_timeout_minutes)

    # Conversions

    @staticmethod
    def _definition_from_model(model: WorkflowDefinitionModel) -> WorkflowDefinition:
        return WorkflowDefinition(
            id=model.id,
            name=model.name,
            slug=model.slug,
            description=model.description or "",
            category=model.category,
            is_active=model.is_active,
            trigger_type=model.trigger_type,
            trigger_config=model.trigger_config or {},
            metadata=model.definition_metadata or {},
            version=model.version,
            organization_id=model.organization_id,
            created_by=model.created_by,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    @staticmethod
    def _step_from_model(model: WorkflowStepModel) -> WorkflowStep:
        return WorkflowStep.model_validate({
            "id": model.id,
            "workflow_id": model.workflow_id,
            "name": model.name,
            "step_order": model.step_order,
            "step_type": model.step_type,
            "configuration": model.configuration or {},
            "is_required": model.is_required,
            "timeout_minutes": model.timeout_minutes,
            "retry_config": model.retry_config or {},
            "depends_on_steps": model.depends_on_steps or [],
            "created_at": model.created_at,
            "updated_at": model.updated_at,
        })

    @staticmethod
    def _step_to_model(step: WorkflowStep) -> WorkflowStepModel:
        model = WorkflowStepModel(id=step.id, workflow_id=step.workflow_id)
        WorkflowDefinitionService._apply_step(model, step)
        return model

    @staticmethod
    def _apply_step(model: WorkflowStepModel, step: WorkflowStep) -> None:
        model.name = step.name
        model.step_order = step.step_order
        model.step_type = step.step_type.value
        model.configuration = step.configuration_payload()
        model.is_required = step.is_required
        model.timeout_minutes = step.timeout_minutes
        model.retry_config = step.retry_config.model_dump(by_alias=True)
        model.depends_on_steps = list(step.depends_on_steps)

    def _with_steps(self, model: WorkflowDefinitionModel) -> WorkflowDefinitionWithSteps:
        return WorkflowDefinitionWithSteps(
            definition=self._definition_from_model(model),
            steps=[self._step_from_model(step) for step in model.steps],
        )

    # Internal helpers

    @staticmethod
    def _load(session: Session, workflow_id: str) -> WorkflowDefinitionModel:
        model = session.get(WorkflowDefinitionModel, workflow_id)
        if model is None:
            raise WorkflowNotFoundError(workflow_id)
        return model

    @staticmethod
    def _instance_count(session: Session, workflow_id: str) -> int:
        return session.query(WorkflowInstanceModel).filter(
            WorkflowInstanceModel.workflow_id == workflow_id
        ).count()

    def _snapshot_and_bump(self, session: Session, model: WorkflowDefinitionModel) -> int:
        """Freeze the current version and increment it."""
        existing = session.query(WorkflowDefinitionVersionModel).filter_by(
            workflow_id=model.id, version=model.version
        ).first()
        if existing is None:
            snapshot = self._with_steps(model).model_dump(mode="json")
            session.add(WorkflowDefinitionVersionModel(
                workflow_id=model.id,
                version=model.version,
                snapshot=snapshot,
            ))
        model.version += 1
        model.updated_at = datetime.utcnow()
        return model.version

    def _transaction(self, operation: str, work: Callable[[Session], Any]) -> Any:
        """Run ``work`` in a session and commit, translating database errors."""
        session = self._session_factory()
        try:
            result = work(session)
            session.commit()
            return result
        except WorkflowEngineError:
            session.rollback()
            raise
        except IntegrityError as e:
            session.rollback()
            logger.error(f"Integrity error during {operation}: {str(e)}")
            raise DefinitionValidationError(f"Failed to {operation}: duplicate or conflicting data") from e
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Database error during {operation}: {str(e)}")
            raise StorageError(f"Failed to {operation}: {str(e)}", operation=operation) from e
        finally:
            session.close()

    # Authoring

    def create_workflow(
        self,
        definition: WorkflowDefinitionInput,
        steps: List[WorkflowStepInput],
    ) -> WorkflowDefinitionWithSteps:
        """
        Create a workflow definition with its steps at version 1.

        Args:
            definition: Definition fields
            steps: Step payloads

        Returns:
            WorkflowDefinitionWithSteps: The stored definition

        Raises:
            DefinitionValidationError: If the steps are invalid or the slug is taken
            StorageError: If the storage operation fails
        """
        logger.info(f"Creating workflow '{definition.name}' ({definition.slug})")
        workflow_id = str(uuid.uuid4())
        built_steps = [self.step_builder.build(workflow_id, step) for step in steps]
        _raise_if_invalid(built_steps)

        def work(session: Session):
            if session.query(WorkflowDefinitionModel).filter_by(slug=definition.slug).first():
                raise DefinitionValidationError(f"Workflow with slug '{definition.slug}' already exists")

            now = datetime.utcnow()
            model = WorkflowDefinitionModel(
                id=workflow_id,
                name=definition.name,
                slug=definition.slug,
                description=definition.description,
                category=definition.category.value,
                is_active=definition.is_active,
                trigger_type=definition.trigger_type.value,
                trigger_config=definition.trigger_config,
                definition_metadata=definition.metadata,
                version=1,
                organization_id=definition.organization_id,
                created_by=definition.created_by,
                created_at=now,
                updated_at=now,
            )
            model.steps = [self._step_to_model(step) for step in built_steps]
            session.add(model)
            session.flush()
            return self._with_steps(model)

        created = self._transaction("create workflow", work)
        logger.info(f"Created workflow '{definition.name}' with ID: {workflow_id}")
        return created

    def update_workflow(self, workflow_id: str, updates: Dict[str, Any]) -> WorkflowDefinition:
        """Update definition fields and increment the version."""
        unknown = set(updates) - _UPDATABLE_DEFINITION_FIELDS
        if unknown:
            raise DefinitionValidationError(
                f"Cannot update workflow fields: {', '.join(sorted(unknown))}",
                workflow_id=workflow_id,
            )

        def work(session: Session):
            model = self._load(session, workflow_id)
            current = self._definition_from_model(model)
            data = current.model_dump(include=set(WorkflowDefinitionInput.model_fields))
            data.update(updates)
            try:
                validated = WorkflowDefinitionInput.model_validate(data)
            except ValidationError as e:
                messages = _validation_messages(e)
                raise DefinitionValidationError(
                    f"Invalid workflow update: {'; '.join(messages)}",
                    validation_errors=messages,
                    workflow_id=workflow_id,
                ) from e

            if validated.slug != model.slug and session.query(WorkflowDefinitionModel).filter_by(
                slug=validated.slug
            ).first():
                raise DefinitionValidationError(f"Workflow with slug '{validated.slug}' already exists")

            self._snapshot_and_bump(session, model)
            model.name = validated.name
            model.slug = validated.slug
            model.description = validated.description
            model.category = validated.category.value
            model.is_active = validated.is_active
            model.trigger_type = validated.trigger_type.value
            model.trigger_config = validated.trigger_config
            model.definition_metadata = validated.metadata
            model.organization_id = validated.organization_id
            session.flush()
            return self._definition_from_model(model)

        updated = self._transaction("update workflow", work)
        logger.info(f"Updated workflow {workflow_id} to version {updated.version}")
        return updated

    def add_workflow_step(self, workflow_id: str, step: WorkflowStepInput) -> WorkflowStep:
        """Add a step to a definition and increment its version."""

        def work(session: Session):
            model = self._load(session, workflow_id)
            new_step = self.step_builder.build(workflow_id, step)
            existing = [self._step_from_model(s) for s in model.steps]
            _raise_if_invalid(existing + [new_step], workflow_id)

            self._snapshot_and_bump(session, model)
            model.steps.append(self._step_to_model(new_step))
            session.flush()
            return new_step

        added = self._transaction("add workflow step", work)
        logger.info(f"Added step '{added.name}' to workflow {workflow_id}")
        return added

    def update_workflow_step(self, workflow_id: str, step_id: str, updates: Dict[str, Any]) -> WorkflowStep:
        """Update a step and increment the definition version."""

        def work(session: Session):
            model = self._load(session, workflow_id)
            step_model = next((s for s in model.steps if s.id == step_id), None)
            if step_model is None:
                raise StepNotFoundError(step_id, workflow_id)

            updated_step = self.step_builder.merge(self._step_from_model(step_model), updates)
            others = [self._step_from_model(s) for s in model.steps if s.id != step_id]
            _raise_if_invalid(others + [updated_step], workflow_id)

            self._snapshot_and_bump(session, model)
            self._apply_step(step_model, updated_step)
            session.flush()
            return self._step_from_model(step_model)

        updated = self._transaction("update workflow step", work)
        logger.info(f"Updated step {step_id} of workflow {workflow_id}")
        return updated

    def delete_workflow_step(self, workflow_id: str, step_id: str) -> None:
        """
        Remove a step, renumbering the following steps.

        Raises:
            InvalidWorkflowStateError: If any instance references the workflow
        """

        def work(session: Session):
            model = self._load(session, workflow_id)
            step_model = next((s for s in model.steps if s.id == step_id), None)
            if step_model is None:
                raise StepNotFoundError(step_id, workflow_id)
            if self._instance_count(session, workflow_id) > 0:
                raise InvalidWorkflowStateError(
                    "Cannot delete a step of a workflow that has instances; add a new step instead"
                ).add_context(workflow_id=workflow_id, step_id=step_id)

            remaining = []
            for position, s in enumerate(
                sorted((s for s in model.steps if s.id != step_id), key=lambda s: s.step_order), start=1
            ):
                remaining.append(self._step_from_model(s).model_copy(update={"step_order": position}))
            _raise_if_invalid(remaining, workflow_id)

            self._snapshot_and_bump(session, model)
            model.steps.remove(step_model)
            for s in model.steps:
                s.step_order = next(r.step_order for r in remaining if r.id == s.id)
            session.flush()

        self._transaction("delete workflow step", work)
        logger.info(f"Deleted step {step_id} of workflow {workflow_id}")

    def increment_workflow_version(self, workflow_id: str) -> int:
        """Snapshot the current version and return the new version number."""

        def work(session: Session):
            model = self._load(session, workflow_id)
            return self._snapshot_and_bump(session, model)

        return self._transaction("increment workflow version", work)

    def delete_workflow(self, workflow_id: str) -> bool:
        """
        Delete a definition with its steps and version history.

        Returns:
            True if the workflow was deleted, False if it did not exist

        Raises:
            InvalidWorkflowStateError: If any instance references the workflow
        """

        def work(session: Session):
            model = session.get(WorkflowDefinitionModel, workflow_id)
            if model is None:
                return False
            if self._instance_count(session, workflow_id) > 0:
                raise InvalidWorkflowStateError(
                    "Cannot delete a workflow that has instances; deactivate it instead"
                ).add_context(workflow_id=workflow_id)
            session.delete(model)
            return True

        deleted = self._transaction("delete workflow", work)
        if deleted:
            logger.info(f"Deleted workflow {workflow_id}")
        return deleted

    # Reads

    def get_definition_with_steps(
        self, workflow_id: str, version: Optional[int] = None
    ) -> Optional[WorkflowDefinitionWithSteps]:
        """Return the current definition, or the snapshot of an older version."""

        def work(session: Session):
            model = session.get(WorkflowDefinitionModel, workflow_id)
            if model is None:
                return None
            if version is None or version == model.version:
                return self._with_steps(model)
            snapshot = session.query(WorkflowDefinitionVersionModel).filter_by(
                workflow_id=workflow_id, version=version
            ).first()
            if snapshot is None:
                return None
            return WorkflowDefinitionWithSteps.model_validate(snapshot.snapshot)

        return self._transaction("get workflow definition", work)

    def fetch_all_workflows(
        self,
        category: Optional[WorkflowCategory] = None,
        is_active: Optional[bool] = None,
        organization_id: Optional[str] = None,
    ) -> List[WorkflowDefinition]:
        """List definitions; an organization sees its own and the shared ones."""

        def work(session: Session):
            query = session.query(WorkflowDefinitionModel)
            if category is not None:
                query = query.filter(WorkflowDefinitionModel.category == WorkflowCategory(category).value)
            if is_active is not None:
                query = query.filter(WorkflowDefinitionModel.is_active == is_active)
            if organization_id is not None:
                query = query.filter(
                    (WorkflowDefinitionModel.organization_id == organization_id)
                    | (WorkflowDefinitionModel.organization_id.is_(None))
                )
            models = query.order_by(WorkflowDefinitionModel.name).all()
            return [self._definition_from_model(model) for model in models]

        return self._transaction("list workflows", work)

    def fetch_workflow_by_slug(self, slug: str) -> Optional[WorkflowDefinitionWithSteps]:
        def work(session: Session):
            model = session.query(WorkflowDefinitionModel).filter_by(slug=slug).first()
            return self._with_steps(model) if model else None

        return self._transaction("fetch workflow by slug", work)

    def fetch_workflow_by_id(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        def work(session: Session):
            model = session.get(WorkflowDefinitionModel, workflow_id)
            return self._definition_from_model(model) if model else None

        return self._transaction("fetch workflow", work)

    def fetch_workflow_steps(self, workflow_id: str) -> List[WorkflowStep]:
        def work(session: Session):
            model = self._load(session, workflow_id)
            return [self._step_from_model(step) for step in model.steps]

        return self._transaction("fetch workflow steps", work)

    def validate_workflow_steps(self, steps: List[WorkflowStep]) -> ValidationResult:
        return validate_workflow_steps(steps)


class InMemoryDefinitionStore(DefinitionAccessor):
    """Definition accessor holding definitions in memory, with version snapshots."""

    def __init__(self):
        self._current: Dict[str, WorkflowDefinitionWithSteps] = {}
        self._versions: Dict[str, Dict[int, WorkflowDefinitionWithSteps]] = {}
        self._lock = threading.Lock()

    def add(self, definition: WorkflowDefinitionWithSteps) -> WorkflowDefinitionWithSteps:
        """Register a definition as given."""
        with self._lock:
            stored = copy.deepcopy(definition)
            self._current[stored.definition.id] = stored
            self._versions.setdefault(stored.definition.id, {})
            return copy.deepcopy(stored)

    def replace_steps(self, workflow_id: str, steps: List[WorkflowStep]) -> WorkflowDefinitionWithSteps:
        """Swap in a new step list, snapshotting the current version first."""
        _raise_if_invalid(steps, workflow_id)
        with self._lock:
            current = self._current.get(workflow_id)
            if current is None:
                raise WorkflowNotFoundError(workflow_id)
            self._versions[workflow_id][current.definition.version] = copy.deepcopy(current)
            definition = current.definition.model_copy(update={
                "version": current.definition.version + 1,
                "updated_at": datetime.utcnow(),
            })
            updated = WorkflowDefinitionWithSteps(definition=definition, steps=copy.deepcopy(steps))
            self._current[workflow_id] = updated
            return copy.deepcopy(updated)

    def get_definition_with_steps(
        self, workflow_id: str, version: Optional[int] = None
    ) -> Optional[WorkflowDefinitionWithSteps]:
        with self._lock:
            current = self._current.get(workflow_id)
            if current is None:
                return None
            if version is None or version == current.definition.version:
                return copy.deepcopy(current)
            snapshot = self._versions[workflow_id].get(version)
            return copy.deepcopy(snapshot) if snapshot else None
