"""Business tools invoked by tool_execution steps."""

from .business_tools import (
    create_employee_record,
    send_notification,
    DEFAULT_TOOLS,
    register_default_tools,
)

__all__ = [
    "create_employee_record",
    "send_notification",
    "DEFAULT_TOOLS",
    "register_default_tools",
]
