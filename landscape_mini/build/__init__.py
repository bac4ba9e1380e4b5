"""Build pipeline: resource session, phases and the orchestrator."""
