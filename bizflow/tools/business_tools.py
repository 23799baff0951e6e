"""Default business tools available to tool_execution steps."""

import re
import uuid
from datetime import datetime
from typing import Any, Dict

from ..core.logging import get_logger
from ..models.core import ToolInvocationResult

logger = get_logger(__name__)

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

_ROLE_DEPARTMENTS = {
    "admin": "Administration",
    "manager": "Management",
    "staff": "General Staff",
    "volunteer": "Community",
    "user": "General",
}


def infer_department(role: str) -> str:
    return _ROLE_DEPARTMENTS.get((role or "").lower(), "General")


def create_employee_record(parameters: Dict[str, Any], actor_id: str) -> Any:
    """
    Create an employee record from onboarding data.

    Args:
        parameters: name, email, role and startDate of the new employee
        actor_id: User running the workflow step

    Returns:
        Dictionary with the created employee and follow-up actions
    """
    missing = [key for key in ("name", "email") if not parameters.get(key)]
    if missing:
        return ToolInvocationResult(success=False, error=f"Missing required parameters: {', '.join(missing)}")

    email = str(parameters["email"])
    if not _EMAIL_PATTERN.match(email):
        return ToolInvocationResult(success=False, error=f"Invalid email address: {email}")

    role = str(parameters.get("role") or "user")
    employee = {
        "id": f"emp-{uuid.uuid4().hex[:12]}",
        "name": parameters["name"],
        "email": email,
        "role": role,
        "startDate": parameters.get("startDate"),
        "status": "active",
        "department": infer_department(role),
        "createdAt": datetime.utcnow().isoformat(),
        "createdBy": actor_id,
    }

    logger.info(f"Created employee record {employee['id']} for {employee['name']}")
    return {
        "success": True,
        "employee": employee,
        "message": f"Employee record created successfully for {employee['name']}",
        "nextSteps": [
            "Send welcome email to new employee",
            "Schedule onboarding session",
            "Assign necessary system access",
            "Provide employee handbook",
        ],
    }


def send_notification(parameters: Dict[str, Any], actor_id: str) -> Any:
    """Queue a notification; delivery is left to the host platform."""
    recipient = parameters.get("recipient")
    if not recipient:
        return ToolInvocationResult(success=False, error="Notification recipient is required")

    notification = {
        "id": f"ntf-{uuid.uuid4().hex[:12]}",
        "recipient": recipient,
        "subject": parameters.get("subject", ""),
        "body": parameters.get("body", ""),
        "status": "queued",
        "queuedAt": datetime.utcnow().isoformat(),
        "sentBy": actor_id,
    }
    logger.info(f"Queued notification {notification['id']} to {recipient}")
    return {"success": True, "notification": notification}


DEFAULT_TOOLS = {
    "createEmployeeRecord": (create_employee_record, "Create an employee record from onboarding data"),
    "sendNotification": (send_notification, "Queue a notification to a recipient"),
}


def register_default_tools(registry) -> None:
    """Register the default business tools that are not registered yet."""
    for slug, (function, description) in DEFAULT_TOOLS.items():
        if registry.tool_exists(slug):
            continue
        registry.register_tool(slug, function, description)
