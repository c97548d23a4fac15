"""Core modules: configuration, logging, rate limiting, and the workflow engine."""
