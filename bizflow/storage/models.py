"""SQLAlchemy database models for the workflow execution core."""

from datetime import datetime
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from .database import Base


class WorkflowDefinitionModel(Base):
    """Database model for workflow definitions."""
    __tablename__ = "workflow_definitions"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    slug = Column(String, nullable=False, unique=True)
    description = Column(Text, default="")
    category = Column(String, nullable=False, default="custom")
    is_active = Column(Boolean, nullable=False, default=True)
    trigger_type = Column(String, nullable=False, default="manual")
    trigger_config = Column(JSON, default=dict)
    # "metadata" is reserved by the declarative base
    definition_metadata = Column("metadata", JSON, default=dict)
    version = Column(Integer, nullable=False, default=1)
    organization_id = Column(String)
    created_by = Column(String)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    steps = relationship(
        "WorkflowStepModel",
        back_populates="workflow",
        cascade="all, delete-orphan",
        order_by="WorkflowStepModel.step_order",
    )
    versions = relationship("WorkflowDefinitionVersionModel", cascade="all, delete-orphan")


class WorkflowStepModel(Base):
    """Database model for the steps of a workflow definition."""
    __tablename__ = "workflow_steps"

    id = Column(String, primary_key=True)
    workflow_id = Column(String, ForeignKey("workflow_definitions.id"), nullable=False)
    name = Column(String, nullable=False)
    step_order = Column(Integer, nullable=False)
    step_type = Column(String, nullable=False)
    configuration = Column(JSON, nullable=False, default=dict)
    is_required = Column(Boolean, nullable=False, default=True)
    timeout_minutes = Column(Integer, nullable=False, default=60)
    retry_config = Column(JSON, nullable=False, default=lambda: {"maxRetries": 3, "retryDelaySeconds": 60})
    depends_on_steps = Column(JSON, default=list)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    workflow = relationship("WorkflowDefinitionModel", back_populates="steps")


class WorkflowDefinitionVersionModel(Base):
    """Frozen copy of a definition and its steps at a past version."""
    __tablename__ = "workflow_definition_versions"
    __table_args__ = (UniqueConstraint("workflow_id", "version", name="uq_workflow_definition_version"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    workflow_id = Column(String, ForeignKey("workflow_definitions.id"), nullable=False)
    version = Column(Integer, nullable=False)
    snapshot = Column(JSON, nullable=False)  # WorkflowDefinitionWithSteps as JSON
    created_at = Column(DateTime, default=datetime.utcnow)


class WorkflowInstanceModel(Base):
    """Database model for workflow instances."""
    __tablename__ = "workflow_instances"

    id = Column(String, primary_key=True)
    workflow_id = Column(String, ForeignKey("workflow_definitions.id"), nullable=False)
    workflow_version = Column(Integer, nullable=False)
    current_step_id = Column(String)
    status = Column(String, nullable=False)  # pending, in_progress, completed, failed, cancelled
    initiator_id = Column(String, nullable=False)
    organization_id = Column(String)
    context_data = Column(JSON, default=dict)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)
    instance_metadata = Column("metadata", JSON, default=dict)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    lock_version = Column(Integer, nullable=False)

    executions = relationship("WorkflowStepExecutionModel", back_populates="instance")

    __mapper_args__ = {"version_id_col": lock_version}


class WorkflowStepExecutionModel(Base):
    """Database model for step execution attempts."""
    __tablename__ = "workflow_step_executions"

    id = Column(String, primary_key=True)
    workflow_instance_id = Column(String, ForeignKey("workflow_instances.id"), nullable=False)
    workflow_step_id = Column(String, nullable=False)
    execution_order = Column(Integer, nullable=False)
    status = Column(String, nullable=False)  # pending, executing, completed, failed, waiting_input
    input_data = Column(JSON, default=dict)
    output_data = Column(JSON, default=dict)
    error_message = Column(Text)
    execution_time_ms = Column(Integer)
    retry_count = Column(Integer, nullable=False, default=0)
    executed_by = Column(String)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow)
    lock_version = Column(Integer, nullable=False)

    instance = relationship("WorkflowInstanceModel", back_populates="executions")

    __mapper_args__ = {"version_id_col": lock_version}


class ToolRegistryModel(Base):
    """Database model for registered tools."""
    __tablename__ = "tool_registry"

    slug = Column(String, primary_key=True)
    description = Column(Text)
    function_module = Column(String, nullable=False)  # Module path where function is defined
    function_name = Column(String, nullable=False)    # Function name within the module
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
