"""Tests for the tool registry and the default business tools."""

import pytest

from bizflow.core.exceptions import ToolRegistryError
from bizflow.core.tool_registry import ToolRegistry
from bizflow.models.core import ToolInvocationResult
from bizflow.tools import create_employee_record, register_default_tools, send_notification


def echo_tool(parameters, actor_id):
    """Echo the parameters back with the caller."""
    return {"parameters": parameters, "actor": actor_id}


def failing_tool(parameters, actor_id):
    raise ValueError("upstream unavailable")


@pytest.fixture
def tool_registry(temp_db):
    """Create a ToolRegistry persisting to the temporary database."""
    return ToolRegistry(temp_db)


class TestToolRegistry:
    """Test cases for ToolRegistry component."""

    def test_register_and_get_tool(self, tool_registry):
        tool_registry.register_tool("echo", echo_tool, "Echo tool")

        assert tool_registry.tool_exists("echo")
        assert tool_registry.get_tool("echo") is echo_tool
        assert tool_registry.list_tools() == {"echo": "Echo tool"}

    def test_duplicate_registration(self, tool_registry):
        tool_registry.register_tool("echo", echo_tool)

        with pytest.raises(ToolRegistryError):
            tool_registry.register_tool("echo", echo_tool)

    def test_non_callable_rejected(self, tool_registry):
        with pytest.raises(ToolRegistryError):
            tool_registry.register_tool("bad", "not a function")

    def test_lazy_load_after_cache_clear(self, tool_registry):
        """Registrations survive a cleared cache and resolve by module path."""
        tool_registry.register_tool("echo", echo_tool, "Echo tool")
        tool_registry.clear_cache()

        assert tool_registry.get_tool("echo") is echo_tool

    def test_registrations_shared_through_storage(self, temp_db):
        ToolRegistry(temp_db).register_tool("echo", echo_tool)

        restarted = ToolRegistry(temp_db)
        assert restarted.tool_exists("echo")
        assert restarted.invoke("echo", {"a": 1}, "user-1").success

    def test_unknown_tool(self, tool_registry):
        assert not tool_registry.tool_exists("missing")
        with pytest.raises(ToolRegistryError):
            tool_registry.get_tool("missing")

    def test_unregister(self, tool_registry):
        tool_registry.register_tool("echo", echo_tool)

        assert tool_registry.unregister_tool("echo") is True
        assert not tool_registry.tool_exists("echo")
        assert tool_registry.unregister_tool("echo") is False

    def test_memory_only_registry(self):
        registry = ToolRegistry()
        registry.register_tool("echo", echo_tool)

        assert registry.invoke("echo", {}, "user-1").data == {"parameters": {}, "actor": "user-1"}


class TestToolInvocation:
    """Test cases for invoking tools by slug."""

    def test_invoke_passes_parameters_and_actor(self, tool_registry):
        tool_registry.register_tool("echo", echo_tool)

        result = tool_registry.invoke("echo", {"name": "Ada"}, "user-1")

        assert result.success
        assert result.data == {"parameters": {"name": "Ada"}, "actor": "user-1"}

    def test_tool_exception_becomes_failed_result(self, tool_registry):
        tool_registry.register_tool("failing", failing_tool)

        result = tool_registry.invoke("failing", {}, "user-1")

        assert not result.success
        assert result.error == "upstream unavailable"

    def test_unknown_tool_becomes_failed_result(self, tool_registry):
        result = tool_registry.invoke("missing", {}, "user-1")

        assert not result.success
        assert "not registered" in result.error


class TestBusinessTools:
    """Test cases for the default business tools."""

    def test_create_employee_record(self):
        result = create_employee_record(
            {"name": "Ada Lovelace", "email": "ada@example.com", "role": "manager", "startDate": "2024-03-01"},
            "hr-1",
        )

        employee = result["employee"]
        assert result["success"] is True
        assert employee["id"].startswith("emp-")
        assert employee["department"] == "Management"
        assert employee["status"] == "active"
        assert employee["createdBy"] == "hr-1"
        assert result["nextSteps"]

    def test_create_employee_record_requires_name_and_email(self):
        result = create_employee_record({"email": "ada@example.com"}, "hr-1")

        assert isinstance(result, ToolInvocationResult)
        assert not result.success
        assert "name" in result.error

    def test_create_employee_record_rejects_bad_email(self):
        result = create_employee_record({"name": "Ada", "email": "not-an-email"}, "hr-1")
        assert not result.success

    def test_send_notification(self):
        result = send_notification({"recipient": "ada@example.com", "subject": "Hi"}, "system")
        assert result["notification"]["status"] == "queued"
        assert not send_notification({}, "system").success

    def test_register_default_tools_is_idempotent(self, tool_registry):
        register_default_tools(tool_registry)
        register_default_tools(tool_registry)

        assert set(tool_registry.list_tools()) == {"createEmployeeRecord", "sendNotification"}

    def test_failed_tool_result_passes_through(self, tool_registry):
        register_default_tools(tool_registry)

        result = tool_registry.invoke("createEmployeeRecord", {"name": "Ada"}, "hr-1")

        assert not result.success
        assert "email" in result.error
