"""Tool invokers consumed by agent steps."""
