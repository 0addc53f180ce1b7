"""Build Chain - multi-agent build pipeline service."""

__version__ = "0.1.0"
