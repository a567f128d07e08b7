"""Configuration: runtime settings and YAML flow definitions."""
