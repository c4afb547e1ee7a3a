"""Infrastructure layer: storage, persistence, logging and adapters."""
