"""Application layer: the broker orchestrator and its background workers."""
