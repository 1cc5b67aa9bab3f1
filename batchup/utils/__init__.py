"""Helpers shared by the orchestrator, the CLI and the server."""
