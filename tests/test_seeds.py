"""Tests for the built-in workflow definitions."""

from bizflow.models.core import StepType
from bizflow.seeds import employee_onboarding, seed_default_workflows


class TestSeeds:

    def test_onboarding_shape(self):
        definition, steps = employee_onboarding()

        assert definition.slug == "employee-onboarding"
        assert [step.step_type for step in steps] == [
            StepType.FORM_INPUT,
            StepType.FORM_INPUT,
            StepType.APPROVAL_GATE,
            StepType.TOOL_EXECUTION,
            StepType.AI_PROCESSING,
            StepType.DATA_TRANSFORM,
        ]

    def test_seeding_is_idempotent(self, definition_service):
        assert seed_default_workflows(definition_service) == 1
        assert seed_default_workflows(definition_service) == 0

        stored = definition_service.fetch_workflow_by_slug("employee-onboarding")
        assert len(stored.steps) == 6
        assert stored.steps[3].configuration.tool_slug == "createEmployeeRecord"
        assert stored.steps[4].configuration.output_key == "welcomeEmail"
