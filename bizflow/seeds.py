"""Built-in workflow definitions installed at startup."""

from typing import List, Tuple

from .core.definition_service import WorkflowDefinitionService
from .core.logging import get_logger
from .models.core import (
    StepType,
    TriggerType,
    WorkflowCategory,
    WorkflowDefinitionInput,
    WorkflowStepInput,
)

logger = get_logger(__name__)


def employee_onboarding() -> Tuple[WorkflowDefinitionInput, List[WorkflowStepInput]]:
    """Employee Onboarding: data collection, approval, record creation and welcome."""
    definition = WorkflowDefinitionInput(
        name="Employee Onboarding",
        slug="employee-onboarding",
        description=(
            "Complete workflow for onboarding new employees including data collection, "
            "document submission, approvals, and account setup"
        ),
        category=WorkflowCategory.ONBOARDING,
        is_active=True,
        trigger_type=TriggerType.MANUAL,
        metadata={"estimatedDuration": "2-3 days", "requiredRoles": ["admin", "manager"]},
    )

    steps = [
        WorkflowStepInput(
            name="Collect Personal Information",
            step_order=1,
            step_type=StepType.FORM_INPUT,
            timeout_minutes=1440,
            configuration={"fields": [
                {"name": "firstName", "type": "string", "required": True, "label": "First Name"},
                {"name": "lastName", "type": "string", "required": True, "label": "Last Name"},
                {"name": "email", "type": "string", "required": True, "label": "Email Address"},
                {"name": "phone", "type": "string", "required": False, "label": "Phone Number"},
                {"name": "startDate", "type": "date", "required": True, "label": "Start Date"},
            ]},
        ),
        WorkflowStepInput(
            name="Assign Department and Role",
            step_order=2,
            step_type=StepType.FORM_INPUT,
            timeout_minutes=1440,
            configuration={"fields": [
                {
                    "name": "department", "type": "enum", "required": True, "label": "Department",
                    "options": ["Sales", "Operations", "Finance", "HR", "IT", "Marketing"],
                },
                {
                    "name": "role", "type": "enum", "required": True, "label": "Role",
                    "options": ["admin", "user", "manager", "staff", "volunteer"],
                },
                {"name": "manager", "type": "string", "required": False, "label": "Direct Manager"},
            ]},
        ),
        WorkflowStepInput(
            name="Manager Approval",
            step_order=3,
            step_type=StepType.APPROVAL_GATE,
            timeout_minutes=2880,
            configuration={
                "approverRole": "manager",
                "approvalMessage": "Please review and approve the new employee onboarding request",
                "allowComments": True,
            },
        ),
        WorkflowStepInput(
            name="Create Employee Record",
            step_order=4,
            step_type=StepType.TOOL_EXECUTION,
            timeout_minutes=30,
            configuration={
                "toolSlug": "createEmployeeRecord",
                "parameterMapping": {
                    "name": "{{firstName}} {{lastName}}",
                    "email": "{{email}}",
                    "role": "{{role}}",
                    "startDate": "{{startDate}}",
                },
            },
        ),
        WorkflowStepInput(
            name="Generate Welcome Email",
            step_order=5,
            step_type=StepType.AI_PROCESSING,
            timeout_minutes=10,
            configuration={
                "prompt": (
                    "Generate a personalized welcome email for a new employee named {{firstName}} {{lastName}} "
                    "who will be joining as a {{role}} in the {{department}} department starting on {{startDate}}. "
                    "Include information about their first day, who to contact, and what to expect."
                ),
                "outputKey": "welcomeEmail",
            },
        ),
        WorkflowStepInput(
            name="Send Onboarding Materials",
            step_order=6,
            step_type=StepType.DATA_TRANSFORM,
            timeout_minutes=5,
            configuration={"actions": [
                {
                    "type": "notification",
                    "recipient": "{{email}}",
                    "subject": "Welcome to the Team!",
                    "body": "{{welcomeEmail}}",
                },
                {"type": "log", "message": "Employee onboarding completed for {{firstName}} {{lastName}}"},
            ]},
        ),
    ]
    return definition, steps


DEFAULT_WORKFLOWS = [employee_onboarding]


def seed_default_workflows(service: WorkflowDefinitionService) -> int:
    """Install the built-in definitions whose slug is not taken yet; returns how many were created."""
    created = 0
    for builder in DEFAULT_WORKFLOWS:
        definition, steps = builder()
        if service.fetch_workflow_by_slug(definition.slug) is not None:
            logger.debug(f"Workflow '{definition.slug}' already installed")
            continue
        service.create_workflow(definition, steps)
        created += 1
        logger.info(f"Installed workflow '{definition.slug}'")
    return created
