"""Settings loader (YAML + ${ENV} substitution)."""
