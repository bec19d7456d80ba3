"""Budget-governed agent execution: governor, critic and runner."""
