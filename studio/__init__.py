"""Studio generation orchestrator service."""
