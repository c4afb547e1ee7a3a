"""Configuration: settings schema, settings loading and catalog loading."""
