"""Rate limiting, the fetch orchestrator and the service container."""
