from __future__ import annotations


class ConfigurationError(Exception):
    """Raised when a plan, catalog or threshold definition cannot be run."""
