"""HTTP API of the workflow service."""
