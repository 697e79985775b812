"""HTTP API for the pipeline orchestrator."""
