"""FlowSearch research workflow service."""
