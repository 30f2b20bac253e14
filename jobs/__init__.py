"""Job source, enrichment and broadcast collaborators."""
