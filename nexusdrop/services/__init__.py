"""API-facing services."""
