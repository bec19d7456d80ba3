"""Budget-governed agent execution engine for CiteMind jobs."""

__version__ = "0.1.0"
