"""HTTP API for the workflow execution core."""
