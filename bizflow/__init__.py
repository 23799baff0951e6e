"""Workflow execution core for multi-step business processes."""

__version__ = "1.0.0"
