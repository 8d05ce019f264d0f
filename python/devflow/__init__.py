"""devflow: workflow orchestration core for an autonomous coding agent."""

__version__ = "0.3.0"
