"""FormFlow: graph-based workflow execution engine for form-driven processes."""

__version__ = "1.0.0"
