"""Build Chain - HTTP API."""
