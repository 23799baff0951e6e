"""Index migrations for the workflow tables."""

from sqlalchemy import Engine, text
from ..core.logging import get_logger

logger = get_logger(__name__)

WORKFLOW_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_workflow_definitions_org ON workflow_definitions(organization_id)",
    "CREATE INDEX IF NOT EXISTS idx_workflow_definitions_category ON workflow_definitions(category)",
    "CREATE INDEX IF NOT EXISTS idx_workflow_steps_workflow_id ON workflow_steps(workflow_id)",
    "CREATE INDEX IF NOT EXISTS idx_workflow_steps_order ON workflow_steps(workflow_id, step_order)",
    "CREATE INDEX IF NOT EXISTS idx_workflow_instances_workflow_id ON workflow_instances(workflow_id)",
    "CREATE INDEX IF NOT EXISTS idx_workflow_instances_status_org ON workflow_instances(status, organization_id)",
    "CREATE INDEX IF NOT EXISTS idx_workflow_instances_initiator ON workflow_instances(initiator_id)",
    "CREATE INDEX IF NOT EXISTS idx_workflow_instances_created ON workflow_instances(created_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_workflow_step_executions_instance ON workflow_step_executions(workflow_instance_id)",
    "CREATE INDEX IF NOT EXISTS idx_workflow_step_executions_order "
    "ON workflow_step_executions(workflow_instance_id, execution_order)",
    "CREATE INDEX IF NOT EXISTS idx_workflow_step_executions_status ON workflow_step_executions(status)",
]


def run_index_migrations(engine: Engine) -> None:
    """Create the lookup indexes used by the definition service and the store."""
    try:
        with engine.connect() as connection:
            for statement in WORKFLOW_INDEXES:
                connection.execute(text(statement))
            connection.commit()
        logger.info(f"Ensured {len(WORKFLOW_INDEXES)} workflow indexes")
    except Exception as e:
        logger.error(f"Failed to create workflow indexes: {str(e)}")
        raise
