"""Services shared across the application: the workflow store and the LLM client."""
