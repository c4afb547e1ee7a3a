"""Domain layer: catalog, lifecycle records, exceptions and ports."""
