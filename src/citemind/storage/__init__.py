"""Persistence primitives shared by the orchestrator."""
