"""Built-in workflow definitions (YAML)."""
